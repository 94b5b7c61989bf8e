"""
layer.py
~~~~~~~~

Fully connected (dense) layer with manual backpropagation.

A layer remembers the input and the pre-activation sum (z) of its most
recent forward pass, because the backward pass needs both. The cache is
tagged: ``backward`` only runs after a ``forward`` and consumes it, so a
stale or missing cache fails loudly instead of producing a wrong gradient.

Not thread-safe. Concurrent callers must use separate layers or hold a
lock across the forward/backward pair.
"""

import logging
from typing import Optional

import numpy as np

from digitnet.activation import ActivationFunction
from digitnet.exceptions import ShapeError, StateError

logger = logging.getLogger(__name__)

DTYPE = np.float32


def as_matrix(data, name: str = 'input') -> np.ndarray:
    """
    Convert array-like data to a 2-D float32 matrix.

    Raises:
        ShapeError: If the data is not two-dimensional
    """
    matrix = np.asarray(data, dtype=DTYPE)
    if matrix.ndim != 2:
        raise ShapeError(
            f"{name} must be a 2-D (batch_size, features) matrix, "
            f"got shape {matrix.shape}"
        )
    return matrix


class DenseLayer:
    """
    A dense layer computing ``activation(input @ weights + bias)``.

    Attributes:
        weights: (input_size, output_size) matrix
        bias: (output_size,) vector added to every row
        activation: ActivationFunction applied to the weighted sum
        input_cache: input of the last forward pass
        z_cache: pre-activation sum of the last forward pass
        has_cache: True between a forward pass and its backward pass
    """

    def __init__(
        self,
        input_size: int,
        output_size: int,
        activation: ActivationFunction,
        rng: Optional[np.random.Generator] = None
    ):
        """
        Create a layer with randomly initialized weights and zero biases.

        ReLU layers use He scaling (std = sqrt(2 / input_size)); every
        other activation uses std = sqrt(1 / input_size).

        Args:
            input_size: Number of input features
            output_size: Number of neurons
            activation: Activation applied to the weighted sum
            rng: Optional generator used for weight initialization
        """
        rng = rng if rng is not None else np.random.default_rng()

        if activation is ActivationFunction.RELU:
            std_dev = np.sqrt(2.0 / input_size)
        else:
            std_dev = np.sqrt(1.0 / input_size)

        self.weights = rng.normal(
            0.0, std_dev, size=(input_size, output_size)
        ).astype(DTYPE)
        self.bias = np.zeros(output_size, dtype=DTYPE)
        self.activation = activation

        self.input_cache = np.zeros((0, 0), dtype=DTYPE)
        self.z_cache = np.zeros((0, 0), dtype=DTYPE)
        self.has_cache = False

    @classmethod
    def from_parameters(
        cls,
        weights: np.ndarray,
        bias: np.ndarray,
        activation: ActivationFunction
    ) -> 'DenseLayer':
        """
        Build a layer from existing parameters, skipping random init.

        Raises:
            ShapeError: If the bias length does not match the weight columns
        """
        weights = as_matrix(weights, 'weights')
        bias = np.asarray(bias, dtype=DTYPE).reshape(-1)
        if bias.shape[0] != weights.shape[1]:
            raise ShapeError(
                f"Bias length ({bias.shape[0]}) must match weight columns "
                f"({weights.shape[1]})"
            )

        layer = cls.__new__(cls)
        layer.weights = weights.copy()
        layer.bias = bias.copy()
        layer.activation = activation
        layer.input_cache = np.zeros((0, 0), dtype=DTYPE)
        layer.z_cache = np.zeros((0, 0), dtype=DTYPE)
        layer.has_cache = False
        return layer

    @property
    def input_size(self) -> int:
        return self.weights.shape[0]

    @property
    def output_size(self) -> int:
        return self.weights.shape[1]

    def __repr__(self) -> str:
        return (
            f"DenseLayer({self.input_size}, {self.output_size}, "
            f"{self.activation.name})"
        )

    def _weighted_sum(self, inputs: np.ndarray) -> np.ndarray:
        if inputs.shape[1] != self.weights.shape[0]:
            raise ShapeError(
                f"FORWARD: Input columns ({inputs.shape[1]}) must match "
                f"weight rows ({self.weights.shape[0]}). Input dims: "
                f"{inputs.shape[0]}x{inputs.shape[1]}, weight dims: "
                f"{self.weights.shape[0]}x{self.weights.shape[1]}"
            )
        return inputs @ self.weights + self.bias

    def forward(self, inputs) -> np.ndarray:
        """
        Run a batch through the layer and cache what backward needs.

        Args:
            inputs: (batch_size, input_size) matrix

        Returns:
            (batch_size, output_size) activated output
        """
        inputs = as_matrix(inputs)
        z = self._weighted_sum(inputs)

        self.input_cache = inputs.copy()
        self.z_cache = z
        self.has_cache = True
        return self.activation.activate(z)

    def compute(self, inputs) -> np.ndarray:
        """Same output as ``forward`` without touching the cache."""
        inputs = as_matrix(inputs)
        return self.activation.activate(self._weighted_sum(inputs))

    def backward(self, gradient_wrt_z, learning_rate: float) -> np.ndarray:
        """
        Update weights and bias from the gradient of the last forward batch.

        Args:
            gradient_wrt_z: dError/dZ, shape (batch_size, output_size)
            learning_rate: SGD step size

        Returns:
            dError/dA of the previous layer, shape (batch_size, input_size).
            It still has to be multiplied by the previous layer's
            activation derivative.

        Raises:
            StateError: If there is no forward pass to pair with
            ShapeError: If the gradient does not match the cached batch
        """
        if not self.has_cache:
            raise StateError(
                "BACKWARD: no cached forward pass; call forward() on this "
                "batch before backward()"
            )

        gradient_wrt_z = as_matrix(gradient_wrt_z, 'gradient_wrt_z')
        if gradient_wrt_z.shape[1] != self.weights.shape[1]:
            raise ShapeError(
                f"BACKWARD: Gradient_wrt_Z columns ({gradient_wrt_z.shape[1]}) "
                f"must match weights columns ({self.weights.shape[1]}) "
                f"(output_size)."
            )
        if gradient_wrt_z.shape[0] != self.input_cache.shape[0]:
            raise ShapeError(
                f"BACKWARD: Gradient_wrt_Z rows ({gradient_wrt_z.shape[0]}) "
                f"must match batch size of cached input "
                f"({self.input_cache.shape[0]})."
            )

        self.has_cache = False

        batch_size = self.input_cache.shape[0]
        if batch_size == 0:
            return np.zeros((0, self.weights.shape[0]), dtype=DTYPE)

        d_weights = (self.input_cache.T @ gradient_wrt_z) / batch_size
        d_bias = np.sum(gradient_wrt_z, axis=0) / batch_size

        # Must use the weights from before this update
        gradient_to_pass_back = gradient_wrt_z @ self.weights.T

        self.weights -= learning_rate * d_weights
        self.bias -= learning_rate * d_bias

        return gradient_to_pass_back
