"""
activation.py
~~~~~~~~~~~~~

Activation functions applied to a layer's pre-activation matrix.

Each function is a member of a closed enum. The integer value of a member
is the tag written into serialized weight files, so the order must never
change.
"""

from enum import Enum

import numpy as np


class ActivationFunction(Enum):
    """The activation functions a layer can use."""

    LINEAR = 0
    SIGMOID = 1
    RELU = 2
    SOFTMAX = 3

    @classmethod
    def from_name(cls, name: str) -> 'ActivationFunction':
        """
        Look up an activation by name, ignoring case.

        Args:
            name: e.g. 'relu', 'Sigmoid', 'SOFTMAX'

        Returns:
            The matching ActivationFunction

        Raises:
            ValueError: If no activation has that name
        """
        try:
            return cls[str(name).strip().upper()]
        except KeyError:
            valid = ', '.join(member.name.lower() for member in cls)
            raise ValueError(
                f"Unknown activation '{name}'. Expected one of: {valid}"
            ) from None

    def activate(self, z: np.ndarray) -> np.ndarray:
        """
        Apply the activation to a (batch_size, n) matrix.

        Softmax normalizes each row independently. A matrix with a single
        row or a single column is normalized over all of its elements.
        """
        if self is ActivationFunction.LINEAR:
            return z.copy()
        if self is ActivationFunction.SIGMOID:
            # exp overflows to inf for very negative z, which saturates to 0
            with np.errstate(over='ignore'):
                return 1.0 / (1.0 + np.exp(-z))
        if self is ActivationFunction.RELU:
            return np.maximum(z, 0)
        if self is ActivationFunction.SOFTMAX:
            return _softmax(z)
        raise ValueError(f"Unhandled activation: {self!r}")

    def derivative(self, z: np.ndarray) -> np.ndarray:
        """
        Elementwise derivative of the activation with respect to z.

        For SOFTMAX this returns only the diagonal of the Jacobian,
        p * (1 - p). That is not the true gradient: it is only correct when
        the network replaces the whole chain with the fused
        softmax/cross-entropy gradient (predictions - targets). Pairing a
        softmax output with any other loss trains on a wrong gradient.
        """
        if self is ActivationFunction.LINEAR:
            return np.ones_like(z)
        if self is ActivationFunction.SIGMOID:
            s = self.activate(z)
            return s * (1.0 - s)
        if self is ActivationFunction.RELU:
            return (z > 0).astype(z.dtype)
        if self is ActivationFunction.SOFTMAX:
            p = self.activate(z)
            return p * (1.0 - p)
        raise ValueError(f"Unhandled activation: {self!r}")


def _softmax(z: np.ndarray) -> np.ndarray:
    if z.size == 0:
        return z.copy()

    if z.ndim < 2 or z.shape[0] == 1 or z.shape[1] == 1:
        exp_z = np.exp(z - np.max(z))
        return exp_z / np.sum(exp_z)

    exp_z = np.exp(z - np.max(z, axis=1, keepdims=True))
    return exp_z / np.sum(exp_z, axis=1, keepdims=True)
