"""
loss.py
~~~~~~~

Loss functions comparing network predictions against targets.

Both the loss and its derivative are averaged over the batch (the number
of rows), so gradients do not grow with batch size.
"""

from enum import Enum

import numpy as np

from digitnet.exceptions import ShapeError

# Smallest step above 1.0 for float32; keeps ln() and division finite
EPSILON = float(np.finfo(np.float32).eps)


class LossFunction(Enum):
    """The loss functions a network can be trained with."""

    MEAN_SQUARED_ERROR = 0
    CROSS_ENTROPY = 1

    @classmethod
    def from_name(cls, name: str) -> 'LossFunction':
        """
        Look up a loss function by name, ignoring case.

        Accepts the member names plus the short aliases 'mse' and 'ce'.

        Raises:
            ValueError: If no loss function has that name
        """
        key = str(name).strip().upper()
        aliases = {'MSE': 'MEAN_SQUARED_ERROR', 'CE': 'CROSS_ENTROPY'}
        key = aliases.get(key, key)
        try:
            return cls[key]
        except KeyError:
            valid = ', '.join(member.name.lower() for member in cls)
            raise ValueError(
                f"Unknown loss function '{name}'. Expected one of: {valid}"
            ) from None

    def calculate(self, predictions: np.ndarray, targets: np.ndarray) -> float:
        """
        Compute the scalar loss for a batch.

        Args:
            predictions: (batch_size, n) network output
            targets: (batch_size, n) expected output

        Returns:
            The loss averaged over the batch; 0.0 for an empty batch

        Raises:
            ShapeError: If predictions and targets differ in shape
        """
        _check_shapes(predictions, targets, 'loss calculation')
        batch_size = predictions.shape[0]
        if batch_size == 0:
            return 0.0

        if self is LossFunction.MEAN_SQUARED_ERROR:
            diff = predictions - targets
            return float(np.sum(diff * diff) / (2.0 * batch_size))
        if self is LossFunction.CROSS_ENTROPY:
            clipped = np.clip(predictions, EPSILON, 1.0 - EPSILON)
            return float(-np.sum(targets * np.log(clipped)) / batch_size)
        raise ValueError(f"Unhandled loss function: {self!r}")

    def derivative(self, predictions: np.ndarray,
                   targets: np.ndarray) -> np.ndarray:
        """
        Gradient of the loss with respect to the predictions.

        When the output layer is softmax and the loss is cross-entropy the
        network skips this and uses (predictions - targets) / batch_size.
        """
        _check_shapes(predictions, targets, 'loss derivative')
        batch_size = predictions.shape[0]
        if batch_size == 0:
            return np.zeros_like(predictions)

        if self is LossFunction.MEAN_SQUARED_ERROR:
            return (predictions - targets) / batch_size
        if self is LossFunction.CROSS_ENTROPY:
            clipped = np.clip(predictions, EPSILON, 1.0 - EPSILON)
            return -(targets / clipped) / batch_size
        raise ValueError(f"Unhandled loss function: {self!r}")


def _check_shapes(predictions: np.ndarray, targets: np.ndarray,
                  operation: str) -> None:
    if predictions.shape != targets.shape:
        raise ShapeError(
            f"Predictions {predictions.shape} and targets {targets.shape} "
            f"shape mismatch for {operation}"
        )
