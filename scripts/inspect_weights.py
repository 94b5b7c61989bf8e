#!/usr/bin/env python3
"""
Inspect and verify a digitnet weight file.

Prints each layer's shape and activation, checks that the file survives a
decode/encode round trip byte for byte, and optionally checks the model's
accuracy on the MNIST test set.

Usage:
    python scripts/inspect_weights.py [path/to/mnist_model.bin] [data_dir]
"""

import os
import sys

import numpy as np

from digitnet import mnist_loader
from digitnet.exceptions import DecodeError
from digitnet.loss import LossFunction
from digitnet.serialization import decode, describe, encode
from digitnet.train import calculate_accuracy


def print_layers(data: bytes) -> None:
    """
    Print a table of the layers stored in the weight data.

    Parameters:
    -----------
    data : bytes
        Contents of the weight file
    """
    print(f"\n📐 Layers:")
    total_params = 0
    for index, (rows, cols, activation) in enumerate(describe(data)):
        params = rows * cols + cols
        total_params += params
        print(f"   {index}: {rows:>5} -> {cols:<5} {activation:<8} "
              f"({params:,} parameters)")
    print(f"   Total: {total_params:,} parameters")


def verify_round_trip(data: bytes) -> bool:
    """
    Check that decoding and re-encoding reproduces the file exactly.

    Parameters:
    -----------
    data : bytes
        Contents of the weight file

    Returns:
    --------
    bool
        True if the bytes are identical
    """
    print(f"\n🔍 Verifying round trip...")
    network = decode(data, LossFunction.CROSS_ENTROPY)
    if encode(network) != data:
        print("❌ Re-encoded weights differ from the file!")
        return False

    probe = np.random.default_rng(0).random((4, network.input_size),
                                            dtype=np.float32)
    clone = decode(encode(network), LossFunction.CROSS_ENTROPY)
    if not np.array_equal(network.predict(probe), clone.predict(probe)):
        print("❌ Decoded copies disagree on the same input!")
        return False

    print("✅ Verification passed! Weights round-trip exactly.")
    return True


def report_accuracy(data: bytes, data_dir: str) -> None:
    """
    Evaluate the weights on the MNIST test set, if it is available.

    Parameters:
    -----------
    data : bytes
        Contents of the weight file
    data_dir : str
        Directory holding the MNIST IDX files
    """
    try:
        images = mnist_loader.load_images(
            mnist_loader.find_data_file(data_dir, mnist_loader.TEST_IMAGES))
        labels = mnist_loader.load_labels(
            mnist_loader.find_data_file(data_dir, mnist_loader.TEST_LABELS), one_hot=False)
    except (OSError, DecodeError) as e:
        print(f"\n⚠️  Skipping accuracy check: {e}")
        return

    network = decode(data, LossFunction.CROSS_ENTROPY)
    accuracy, correct = calculate_accuracy(network, images, labels)
    print(f"\n🎯 Test accuracy: {accuracy:.2%} ({correct}/{images.shape[0]})")


def main():
    """Main inspection function."""
    print("=" * 60)
    print("digitnet Weight File Inspector")
    print("=" * 60)

    model_path = sys.argv[1] if len(sys.argv) > 1 else 'mnist_model.bin'
    data_dir = sys.argv[2] if len(sys.argv) > 2 else 'data'

    if not os.path.exists(model_path):
        print(f"❌ Error: Weight file not found: {model_path}")
        sys.exit(1)

    with open(model_path, 'rb') as f:
        data = f.read()
    print(f"📂 {model_path} ({len(data):,} bytes)")

    try:
        print_layers(data)
        if not verify_round_trip(data):
            sys.exit(1)
        report_accuracy(data, data_dir)
    except DecodeError as e:
        print(f"\n❌ Malformed weight file: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
