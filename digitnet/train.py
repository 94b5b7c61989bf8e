"""
train.py
~~~~~~~~

Training driver: epoch loop, shuffling, mini-batches and evaluation.

Run ``python -m digitnet.train`` to train the default MNIST network (or
load it, if the weight file already exists) and report test accuracy.
"""

import argparse
import logging
import os
import sys
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from digitnet import mnist_loader
from digitnet.activation import ActivationFunction
from digitnet.exceptions import DecodeError
from digitnet.layer import DenseLayer
from digitnet.loss import LossFunction
from digitnet.network import Network
from digitnet.serialization import load_weights, save_weights

logger = logging.getLogger(__name__)

DEFAULT_MODEL_PATH = 'mnist_model.bin'


def configure_logging() -> None:
    """
    Set up logging from the environment.

    LOG_LEVEL picks the level (default INFO). With FLASK_ENV=production
    the chatty third-party loggers are limited to warnings.
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('digitnet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


def build_mnist_network(rng: Optional[np.random.Generator] = None) -> Network:
    """The default digit classifier: 784 -> 128 -> 64 -> 10."""
    net = Network(LossFunction.CROSS_ENTROPY)
    net.add_layer(DenseLayer(
        mnist_loader.IMAGE_FEATURE_SIZE, 128, ActivationFunction.RELU, rng=rng
    ))
    net.add_layer(DenseLayer(128, 64, ActivationFunction.RELU, rng=rng))
    net.add_layer(DenseLayer(
        64, mnist_loader.NUM_CLASSES, ActivationFunction.SOFTMAX, rng=rng
    ))
    return net


def calculate_accuracy(
    network: Network,
    images: np.ndarray,
    raw_labels: np.ndarray
) -> Tuple[float, int]:
    """
    Fraction of images whose highest-scoring class matches the label.

    Args:
        network: Network to evaluate (its caches are not touched), or any
            object with a matching infer method such as a locked server entry
        images: (n, features) matrix
        raw_labels: (n, 1) class indices

    Returns:
        (accuracy, number correct); (0.0, 0) for an empty set
    """
    if images.shape[0] == 0:
        return 0.0, 0

    predicted = np.argmax(network.infer(images), axis=1)
    actual = np.asarray(raw_labels).reshape(-1).astype(np.intp)
    correct = int(np.sum(predicted == actual))
    return correct / images.shape[0], correct


def train(
    network: Network,
    images: np.ndarray,
    labels: np.ndarray,
    epochs: int,
    learning_rate: float,
    batch_size: int,
    test_images: Optional[np.ndarray] = None,
    test_labels: Optional[np.ndarray] = None,
    callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    yield_func: Optional[Callable[[], None]] = None,
    rng: Optional[np.random.Generator] = None
) -> List[Dict[str, Any]]:
    """
    Train with shuffled mini-batch gradient descent.

    Args:
        network: Network to train in place, or any object with matching
            train_batch and infer methods such as a locked server entry
        images: (n, features) training inputs
        labels: (n, outputs) training targets
        epochs: Passes over the training data
        learning_rate: SGD step size
        batch_size: Rows per batch (the last batch may be smaller)
        test_images: Optional evaluation inputs
        test_labels: Raw (n, 1) evaluation labels
        callback: Called after every epoch with that epoch's stats
        yield_func: Called after every batch, e.g. to let a server
            handle other requests during long training runs
        rng: Optional generator used for shuffling

    Returns:
        One stats dict per epoch
    """
    rng = rng if rng is not None else np.random.default_rng()
    num_samples = images.shape[0]
    indices = np.arange(num_samples)
    history = []
    start_time = time.time()

    for epoch in range(epochs):
        rng.shuffle(indices)
        epoch_loss = 0.0
        num_batches = 0

        for batch_start in range(0, num_samples, batch_size):
            batch_indices = indices[batch_start:batch_start + batch_size]
            batch_inputs, batch_targets = mnist_loader.get_mini_batch(
                images, labels, batch_indices
            )
            if batch_inputs.shape[0] > 0:
                epoch_loss += network.train_batch(
                    batch_inputs, batch_targets, learning_rate
                )
                num_batches += 1

            if yield_func is not None:
                yield_func()

        stats = {
            'epoch': epoch + 1,
            'total_epochs': epochs,
            'loss': epoch_loss / num_batches if num_batches else 0.0,
            'accuracy': None,
            'correct': None,
            'total': None,
            'elapsed_time': time.time() - start_time
        }

        if test_images is not None and test_labels is not None:
            accuracy, correct = calculate_accuracy(
                network, test_images, test_labels
            )
            stats.update(
                accuracy=accuracy,
                correct=correct,
                total=int(test_images.shape[0])
            )
            logger.info(
                f"Epoch {epoch + 1}/{epochs} - Avg Loss: {stats['loss']:.6f} "
                f"- Test Accuracy: {accuracy:.2%}"
            )
        else:
            logger.info(
                f"Epoch {epoch + 1}/{epochs} - Avg Loss: {stats['loss']:.6f}"
            )

        history.append(stats)
        if callback is not None:
            callback(stats)

    return history


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Train or evaluate the MNIST digit classifier.'
    )
    parser.add_argument(
        '--data-dir',
        default=os.getenv('DIGITNET_DATA_DIR', 'data'),
        help='directory holding the MNIST IDX files'
    )
    parser.add_argument(
        '--model-path',
        default=os.getenv('DIGITNET_MODEL_PATH', DEFAULT_MODEL_PATH),
        help='weight file to load, or to write after training'
    )
    parser.add_argument('--epochs', type=int, default=30)
    parser.add_argument('--learning-rate', type=float, default=0.01)
    parser.add_argument('--batch-size', type=int, default=64)
    parser.add_argument(
        '--retrain',
        action='store_true',
        help='train a new model even if the weight file exists'
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Command-line entry point; returns the process exit status."""
    configure_logging()
    args = parse_args(argv)

    try:
        data = mnist_loader.load_data(args.data_dir)

        if os.path.exists(args.model_path) and not args.retrain:
            logger.info(f"Loading existing model from {args.model_path}")
            net = load_weights(args.model_path, LossFunction.CROSS_ENTROPY)
        else:
            logger.info("No existing model found. Training a new one.")
            logger.info(
                f"Epochs: {args.epochs}, Learning Rate: {args.learning_rate}, "
                f"Batch Size: {args.batch_size}"
            )
            net = build_mnist_network()
            train(
                net,
                data.train_images,
                data.train_labels,
                args.epochs,
                args.learning_rate,
                args.batch_size,
                test_images=data.test_images,
                test_labels=data.test_labels
            )
            save_weights(net, args.model_path)

    except DecodeError as e:
        logger.error(f"Could not decode {e.source or 'input'}: {e}")
        return 1
    except OSError as e:
        logger.error(f"Could not read training files: {e}")
        return 1

    accuracy, correct = calculate_accuracy(
        net, data.test_images, data.test_labels
    )
    logger.info(
        f"Final Test Accuracy: {accuracy:.2%} "
        f"({correct}/{data.test_images.shape[0]})"
    )
    return 0


if __name__ == '__main__':
    sys.exit(main())
