"""
mnist_loader.py
~~~~~~~~~~~~~~~

Readers for the MNIST IDX files and a mini-batch helper.

Images come back as an (n, 784) float32 matrix scaled to [0, 1]. Labels
come back either as raw class indices, shape (n, 1), or one-hot rows,
shape (n, 10). Files ending in ``.gz`` are decompressed on the fly.
"""

import gzip
import logging
import os
from typing import NamedTuple, Sequence, Tuple

import numpy as np

from digitnet.exceptions import DecodeError

logger = logging.getLogger(__name__)

IMAGE_MAGIC_NUMBER = 2051
LABEL_MAGIC_NUMBER = 2049
IMAGE_WIDTH = 28
IMAGE_HEIGHT = 28
IMAGE_FEATURE_SIZE = IMAGE_WIDTH * IMAGE_HEIGHT
NUM_CLASSES = 10

TRAIN_IMAGES = 'train-images.idx3-ubyte'
TRAIN_LABELS = 'train-labels.idx1-ubyte'
TEST_IMAGES = 't10k-images.idx3-ubyte'
TEST_LABELS = 't10k-labels.idx1-ubyte'


class MnistData(NamedTuple):
    """Training labels are one-hot, test labels are raw indices."""
    train_images: np.ndarray
    train_labels: np.ndarray
    test_images: np.ndarray
    test_labels: np.ndarray


def _read_bytes(path: str) -> bytes:
    opener = gzip.open if path.endswith('.gz') else open
    with opener(path, 'rb') as f:
        return f.read()


def _read_header(contents: bytes, path: str, expected_magic: int,
                 word_count: int) -> Tuple[int, ...]:
    header_size = 4 * word_count
    if len(contents) < header_size:
        raise DecodeError(
            f"File {path} is too short for an IDX header "
            f"({len(contents)} bytes)",
            source=path
        )

    words = np.frombuffer(contents, dtype='>u4', count=word_count)
    magic_number = int(words[0])
    if magic_number != expected_magic:
        raise DecodeError(
            f"Invalid magic number for {path}: expected {expected_magic}, "
            f"got {magic_number}",
            source=path
        )
    return tuple(int(w) for w in words[1:])


def _read_payload(contents: bytes, path: str, offset: int,
                  size: int) -> np.ndarray:
    available = len(contents) - offset
    if available < size:
        raise DecodeError(
            f"File {path} is truncated: expected {size} data bytes, "
            f"found {available}",
            source=path
        )
    return np.frombuffer(contents, dtype=np.uint8, count=size, offset=offset)


def load_images(path: str) -> np.ndarray:
    """
    Load an IDX3 image file.

    Args:
        path: Path to e.g. train-images.idx3-ubyte (optionally .gz)

    Returns:
        (num_images, 784) float32 matrix with pixels scaled to [0, 1]

    Raises:
        DecodeError: On a bad magic number, non 28x28 images or truncation
        OSError: If the file cannot be read
    """
    contents = _read_bytes(path)
    num_images, num_rows, num_cols = _read_header(
        contents, path, IMAGE_MAGIC_NUMBER, 4
    )

    if num_rows != IMAGE_HEIGHT or num_cols != IMAGE_WIDTH:
        raise DecodeError(
            f"Image dimensions in {path} are {num_rows}x{num_cols}, "
            f"expected {IMAGE_HEIGHT}x{IMAGE_WIDTH}",
            source=path
        )

    pixels = _read_payload(
        contents, path, 16, num_images * IMAGE_FEATURE_SIZE
    )
    images = pixels.reshape(num_images, IMAGE_FEATURE_SIZE)
    logger.debug(f"Loaded {num_images} images from {path}")
    return images.astype(np.float32) / 255.0


def load_labels(path: str, one_hot: bool) -> np.ndarray:
    """
    Load an IDX1 label file.

    Args:
        path: Path to e.g. train-labels.idx1-ubyte (optionally .gz)
        one_hot: Return (n, 10) one-hot rows instead of (n, 1) indices

    Raises:
        DecodeError: On a bad magic number, truncation or a label >= 10
        OSError: If the file cannot be read
    """
    contents = _read_bytes(path)
    (num_labels,) = _read_header(contents, path, LABEL_MAGIC_NUMBER, 2)
    labels = _read_payload(contents, path, 8, num_labels)

    if num_labels and int(labels.max()) >= NUM_CLASSES:
        bad = int(labels[labels >= NUM_CLASSES][0])
        raise DecodeError(
            f"Label {bad} out of bounds for {NUM_CLASSES} classes in {path}",
            source=path
        )

    logger.debug(f"Loaded {num_labels} labels from {path}")
    if one_hot:
        encoded = np.zeros((num_labels, NUM_CLASSES), dtype=np.float32)
        encoded[np.arange(num_labels), labels] = 1.0
        return encoded
    return labels.astype(np.float32).reshape(num_labels, 1)


def get_mini_batch(
    data: np.ndarray,
    targets: np.ndarray,
    indices: Sequence[int]
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Gather the rows named by ``indices``, in that order.

    An empty index list gives (0, cols) matrices.
    """
    index_array = np.asarray(indices, dtype=np.intp)
    return data[index_array], targets[index_array]


def find_data_file(data_dir: str, filename: str) -> str:
    """Path of an MNIST file in data_dir, preferring the plain file over its .gz copy."""
    path = os.path.join(data_dir, filename)
    if not os.path.exists(path) and os.path.exists(path + '.gz'):
        return path + '.gz'
    return path


def load_data(data_dir: str = 'data') -> MnistData:
    """
    Load the four standard MNIST files from a directory.

    Each file may be stored plain or gzipped.
    """
    logger.info(f"Loading MNIST data from {data_dir}")
    data = MnistData(
        train_images=load_images(find_data_file(data_dir, TRAIN_IMAGES)),
        train_labels=load_labels(find_data_file(data_dir, TRAIN_LABELS), one_hot=True),
        test_images=load_images(find_data_file(data_dir, TEST_IMAGES)),
        test_labels=load_labels(find_data_file(data_dir, TEST_LABELS), one_hot=False),
    )
    if data.train_images.shape[0] != data.train_labels.shape[0]:
        raise DecodeError(
            f"{data.train_images.shape[0]} training images but "
            f"{data.train_labels.shape[0]} training labels",
            source=data_dir
        )
    if data.test_images.shape[0] != data.test_labels.shape[0]:
        raise DecodeError(
            f"{data.test_images.shape[0]} test images but "
            f"{data.test_labels.shape[0]} test labels",
            source=data_dir
        )
    logger.info(
        f"Data loaded: {data.train_images.shape[0]} training, "
        f"{data.test_images.shape[0]} test"
    )
    return data
