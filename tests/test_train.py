"""
test_train.py
~~~~~~~~~~~~~

Tests for the training driver and command-line entry point.
"""

import os
import struct

import numpy as np
import pytest

from digitnet.activation import ActivationFunction
from digitnet.layer import DenseLayer
from digitnet.loss import LossFunction
from digitnet.mnist_loader import TEST_IMAGES, TEST_LABELS, TRAIN_IMAGES, TRAIN_LABELS
from digitnet.network import Network
from digitnet.serialization import load_weights
from digitnet.train import build_mnist_network, calculate_accuracy, main, train


def blobs(rng, per_class=10, classes=3, features=4):
    """Well separated clusters with one-hot and raw labels."""
    labels = np.repeat(np.arange(classes), per_class)
    centers = np.eye(classes, features, dtype=np.float32) * 3.0
    images = centers[labels] + 0.1 * rng.standard_normal((labels.size, features))
    one_hot = np.eye(classes, dtype=np.float32)[labels]
    return images.astype(np.float32), one_hot, labels.reshape(-1, 1).astype(np.float32)


class CountingWrapper:
    """Forwards to a network and counts the calls."""

    def __init__(self, network):
        self.network = network
        self.batches = 0
        self.inferences = 0

    def train_batch(self, inputs, targets, learning_rate):
        self.batches += 1
        return self.network.train_batch(inputs, targets, learning_rate)

    def infer(self, inputs):
        self.inferences += 1
        return self.network.infer(inputs)


def write_idx_dataset(data_dir, rng, train_count=12, test_count=4):
    """Write the four MNIST files with random pixels."""
    os.makedirs(data_dir, exist_ok=True)
    for name, count in ((TRAIN_IMAGES, train_count), (TEST_IMAGES, test_count)):
        pixels = rng.integers(0, 256, size=(count, 784), dtype=np.uint8)
        with open(os.path.join(data_dir, name), 'wb') as f:
            f.write(struct.pack('>IIII', 2051, count, 28, 28) + pixels.tobytes())
    for name, count in ((TRAIN_LABELS, train_count), (TEST_LABELS, test_count)):
        labels = (np.arange(count) % 10).astype(np.uint8)
        with open(os.path.join(data_dir, name), 'wb') as f:
            f.write(struct.pack('>II', 2049, count) + labels.tobytes())


@pytest.mark.unit
class TestCalculateAccuracy:
    """Test argmax accuracy on raw labels."""

    def test_identity_network(self):
        """Test that an identity layer scores its inputs' argmax."""
        net = Network(LossFunction.MEAN_SQUARED_ERROR, [
            DenseLayer.from_parameters(
                np.eye(3), np.zeros(3), ActivationFunction.LINEAR
            )
        ])
        images = np.array([[0.9, 0.1, 0.0],
                           [0.0, 0.2, 0.8],
                           [0.3, 0.6, 0.1],
                           [0.5, 0.4, 0.1]], dtype=np.float32)
        labels = np.array([[0], [2], [1], [2]], dtype=np.float32)

        accuracy, correct = calculate_accuracy(net, images, labels)

        assert correct == 3
        assert accuracy == pytest.approx(0.75)

    def test_empty_set(self):
        net = Network(LossFunction.MEAN_SQUARED_ERROR)
        assert calculate_accuracy(net, np.zeros((0, 3)), np.zeros((0, 1))) == (0.0, 0)

    def test_does_not_touch_caches(self, rng):
        net = Network.from_sizes([4, 3], rng=rng)
        calculate_accuracy(net, rng.random((5, 4)), np.zeros((5, 1)))
        assert not net.get_layers()[0].has_cache


@pytest.mark.unit
class TestTrain:
    """Test the epoch loop."""

    def test_history_and_callbacks(self, rng):
        """Test one stats dict per epoch and a yield after every batch."""
        images, one_hot, raw = blobs(rng)
        net = Network.from_sizes([4, 3], rng=rng)
        epochs_seen = []
        yields = []

        history = train(
            net, images, one_hot, epochs=3, learning_rate=0.5, batch_size=8,
            test_images=images, test_labels=raw,
            callback=epochs_seen.append,
            yield_func=lambda: yields.append(1),
            rng=rng
        )

        assert [stats['epoch'] for stats in history] == [1, 2, 3]
        assert epochs_seen == history
        # 30 samples in batches of 8 is 4 batches per epoch
        assert len(yields) == 12
        assert all(stats['total_epochs'] == 3 for stats in history)
        assert all(stats['total'] == 30 for stats in history)
        assert history[-1]['elapsed_time'] >= history[0]['elapsed_time']

    def test_without_test_set(self, rng):
        """Test that accuracy fields stay empty with no evaluation data."""
        images, one_hot, _ = blobs(rng)
        net = Network.from_sizes([4, 3], rng=rng)

        history = train(net, images, one_hot, 1, 0.1, 10, rng=rng)

        assert history[0]['accuracy'] is None
        assert history[0]['correct'] is None
        assert history[0]['loss'] > 0.0

    def test_learns_separable_data(self, rng):
        """Test that loss falls and accuracy is high after training."""
        images, one_hot, raw = blobs(rng)
        net = Network.from_sizes([4, 8, 3], rng=rng)

        history = train(
            net, images, one_hot, epochs=40, learning_rate=1.0, batch_size=5,
            test_images=images, test_labels=raw, rng=rng
        )

        assert history[-1]['loss'] < history[0]['loss']
        assert history[-1]['accuracy'] >= 0.9

    def test_zero_epochs(self, rng):
        images, one_hot, _ = blobs(rng)
        net = Network.from_sizes([4, 3], rng=rng)
        before = net.get_layers()[0].weights.copy()

        assert train(net, images, one_hot, 0, 0.1, 10, rng=rng) == []
        assert np.array_equal(before, net.get_layers()[0].weights)

    def test_accepts_network_wrapper(self, rng):
        """Test that any object with train_batch and infer can be trained."""
        images, one_hot, raw = blobs(rng)
        net = Network.from_sizes([4, 3], rng=rng)
        wrapper = CountingWrapper(net)

        history = train(
            wrapper, images, one_hot, epochs=2, learning_rate=0.5, batch_size=10,
            test_images=images, test_labels=raw, rng=rng
        )

        assert len(history) == 2
        assert wrapper.batches == 6
        assert wrapper.inferences == 2
        assert calculate_accuracy(wrapper, images, raw)[1] == history[-1]['correct']


@pytest.mark.unit
class TestBuildMnistNetwork:

    def test_architecture(self, rng):
        net = build_mnist_network(rng=rng)
        assert net.loss_fn is LossFunction.CROSS_ENTROPY
        assert net.architecture() == [
            {'input_size': 784, 'output_size': 128, 'activation': 'relu'},
            {'input_size': 128, 'output_size': 64, 'activation': 'relu'},
            {'input_size': 64, 'output_size': 10, 'activation': 'softmax'},
        ]


@pytest.mark.integration
class TestMain:
    """Test the command-line entry point on a tiny generated dataset."""

    def test_trains_then_loads(self, tmp_path, rng):
        """Test that the first run writes a model and the second reuses it."""
        data_dir = str(tmp_path / 'data')
        model_path = str(tmp_path / 'out' / 'model.bin')
        write_idx_dataset(data_dir, rng)
        argv = ['--data-dir', data_dir, '--model-path', model_path,
                '--epochs', '1', '--batch-size', '4']

        assert main(argv) == 0
        assert os.path.exists(model_path)
        first = load_weights(model_path, LossFunction.CROSS_ENTROPY)
        modified = os.path.getmtime(model_path)

        assert main(argv) == 0
        assert os.path.getmtime(model_path) == modified
        assert first.architecture() == build_mnist_network().architecture()

    def test_missing_data(self, tmp_path):
        argv = ['--data-dir', str(tmp_path / 'nothing'),
                '--model-path', str(tmp_path / 'model.bin')]
        assert main(argv) == 1

    def test_corrupt_model(self, tmp_path, rng):
        """Test that an undecodable weight file is reported, not raised."""
        data_dir = str(tmp_path / 'data')
        write_idx_dataset(data_dir, rng)
        model_path = tmp_path / 'model.bin'
        model_path.write_bytes(b'\x05\x00\x00')

        assert main(['--data-dir', data_dir, '--model-path', str(model_path)]) == 1
