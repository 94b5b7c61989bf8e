"""
serialization.py
~~~~~~~~~~~~~~~~

Binary weight format for networks.

All values are little-endian::

    u64 layer_count
    for each layer:
        u64 weight_count, weight_count x f32    weights, row-major
        u64 rows, u64 cols                      weight matrix shape
        u64 bias_count, bias_count x f32        biases
        u32 activation                          ActivationFunction value

The loss function is not stored. Decoding requires the caller to pass the
loss function the network was trained with; passing a different one is
not detected.
"""

import logging
import os
import struct
from typing import Tuple

import numpy as np

from digitnet.activation import ActivationFunction
from digitnet.exceptions import DecodeError
from digitnet.layer import DenseLayer
from digitnet.loss import LossFunction
from digitnet.network import Network

logger = logging.getLogger(__name__)

_U64 = struct.Struct('<Q')
_U32 = struct.Struct('<I')
_F32 = np.dtype('<f4')


def _encode_floats(values: np.ndarray) -> bytes:
    flat = np.ascontiguousarray(values, dtype=_F32).reshape(-1)
    return _U64.pack(flat.size) + flat.tobytes(order='C')


def encode_layer(layer: DenseLayer) -> bytes:
    """Encode one layer's weights, biases and activation tag."""
    rows, cols = layer.weights.shape
    return b''.join([
        _encode_floats(layer.weights),
        _U64.pack(rows),
        _U64.pack(cols),
        _encode_floats(layer.bias),
        _U32.pack(layer.activation.value),
    ])


def encode(network: Network) -> bytes:
    """
    Encode every layer of a network.

    Example:
        >>> data = encode(net)
        >>> clone = decode(data, LossFunction.CROSS_ENTROPY)
    """
    layers = network.get_layers()
    return _U64.pack(len(layers)) + b''.join(
        encode_layer(layer) for layer in layers
    )


class _Reader:
    """Cursor over a byte buffer that raises DecodeError on truncation."""

    def __init__(self, data: bytes):
        self.data = memoryview(data)
        self.offset = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self.offset

    def _take(self, size: int, what: str) -> memoryview:
        if size > self.remaining:
            raise DecodeError(
                f"Truncated weight data: needed {size} bytes for {what} at "
                f"offset {self.offset}, only {self.remaining} left"
            )
        chunk = self.data[self.offset:self.offset + size]
        self.offset += size
        return chunk

    def u64(self, what: str) -> int:
        return _U64.unpack(self._take(_U64.size, what))[0]

    def u32(self, what: str) -> int:
        return _U32.unpack(self._take(_U32.size, what))[0]

    def floats(self, what: str) -> np.ndarray:
        count = self.u64(f"{what} length")
        if count > self.remaining // _F32.itemsize:
            raise DecodeError(
                f"Truncated weight data: {what} declares {count} values, "
                f"only {self.remaining} bytes left"
            )
        raw = self._take(count * _F32.itemsize, what)
        return np.frombuffer(raw, dtype=_F32).astype(np.float32)


def _decode_layer(reader: _Reader, index: int) -> DenseLayer:
    weights = reader.floats(f"layer {index} weights")
    rows = reader.u64(f"layer {index} rows")
    cols = reader.u64(f"layer {index} cols")
    bias = reader.floats(f"layer {index} biases")
    tag = reader.u32(f"layer {index} activation")

    if weights.size != rows * cols:
        raise DecodeError(
            f"Layer {index}: {weights.size} weight values do not fill a "
            f"{rows}x{cols} matrix"
        )
    if bias.size != cols:
        raise DecodeError(
            f"Layer {index}: {bias.size} biases for {cols} output neurons"
        )
    try:
        activation = ActivationFunction(tag)
    except ValueError:
        raise DecodeError(
            f"Layer {index}: unknown activation tag {tag}"
        ) from None

    return DenseLayer.from_parameters(
        weights.reshape(rows, cols), bias, activation
    )


def decode(data: bytes, loss_fn: LossFunction) -> Network:
    """
    Rebuild a network from ``encode`` output.

    Args:
        data: Encoded weights
        loss_fn: Loss function the network was trained with

    Returns:
        A new Network with fresh (empty) layer caches

    Raises:
        DecodeError: If the buffer is truncated, inconsistent or has
            trailing bytes
    """
    reader = _Reader(data)
    layer_count = reader.u64('layer count')

    layers = [_decode_layer(reader, i) for i in range(layer_count)]

    if reader.remaining:
        raise DecodeError(
            f"{reader.remaining} unexpected trailing bytes after "
            f"{layer_count} layer(s)"
        )
    return Network(loss_fn, layers)


def save_weights(network: Network, path: str) -> None:
    """Write a network's encoded weights to a file."""
    directory = os.path.dirname(path)
    if directory and not os.path.exists(directory):
        os.makedirs(directory)

    data = encode(network)
    with open(path, 'wb') as f:
        f.write(data)

    logger.info(
        f"Saved {len(network.get_layers())} layer(s) to {path} "
        f"({len(data)} bytes)"
    )


def load_weights(path: str, loss_fn: LossFunction) -> Network:
    """
    Read a network from a weight file.

    Raises:
        OSError: If the file cannot be read
        DecodeError: If the file contents are malformed
    """
    with open(path, 'rb') as f:
        data = f.read()

    try:
        network = decode(data, loss_fn)
    except DecodeError as e:
        e.source = path
        raise

    logger.info(f"Loaded {len(network.get_layers())} layer(s) from {path}")
    return network


def describe(data: bytes) -> Tuple[Tuple[int, int, str], ...]:
    """Summarize encoded weights as (rows, cols, activation) per layer."""
    network = decode(data, LossFunction.MEAN_SQUARED_ERROR)
    return tuple(
        (layer.input_size, layer.output_size, layer.activation.name.lower())
        for layer in network.get_layers()
    )
