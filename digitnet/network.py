"""
network.py
~~~~~~~~~~

Feedforward neural network trained with mini-batch gradient descent.

A Network is an ordered list of DenseLayers plus the loss function it is
trained with. Layer widths are not checked when layers are added; a
mismatch surfaces as a ShapeError on the first forward pass.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np

from digitnet.activation import ActivationFunction
from digitnet.exceptions import StateError
from digitnet.layer import DenseLayer, as_matrix
from digitnet.loss import LossFunction

logger = logging.getLogger(__name__)


class Network:
    """
    A stack of dense layers with a single loss function.

    The loss function is chosen at construction and is not part of the
    serialized weights; whoever reloads a network must pass the same one.
    """

    def __init__(
        self,
        loss_fn: LossFunction,
        layers: Optional[Iterable[DenseLayer]] = None
    ):
        self.loss_fn = loss_fn
        self.layers: List[DenseLayer] = list(layers) if layers else []

    @classmethod
    def from_sizes(
        cls,
        sizes: List[int],
        loss_fn: LossFunction = LossFunction.CROSS_ENTROPY,
        hidden_activation: ActivationFunction = ActivationFunction.RELU,
        output_activation: ActivationFunction = ActivationFunction.SOFTMAX,
        rng: Optional[np.random.Generator] = None
    ) -> 'Network':
        """
        Build a network from a list of layer widths.

        Example:
            >>> net = Network.from_sizes([784, 128, 64, 10])
            >>> [layer.activation.name for layer in net.get_layers()]
            ['RELU', 'RELU', 'SOFTMAX']
        """
        net = cls(loss_fn)
        for i in range(len(sizes) - 1):
            is_output = i == len(sizes) - 2
            activation = output_activation if is_output else hidden_activation
            net.add_layer(DenseLayer(sizes[i], sizes[i + 1], activation, rng=rng))
        return net

    def __repr__(self) -> str:
        return f"Network({self.loss_fn.name}, {self.layers!r})"

    def add_layer(self, layer: DenseLayer) -> None:
        self.layers.append(layer)

    def get_layers(self) -> Tuple[DenseLayer, ...]:
        return tuple(self.layers)

    @property
    def input_size(self) -> int:
        return self.layers[0].input_size if self.layers else 0

    @property
    def output_size(self) -> int:
        return self.layers[-1].output_size if self.layers else 0

    def architecture(self) -> List[Dict[str, Any]]:
        """Describe each layer as a JSON-friendly dict."""
        return [
            {
                'input_size': layer.input_size,
                'output_size': layer.output_size,
                'activation': layer.activation.name.lower()
            }
            for layer in self.layers
        ]

    def predict(self, inputs) -> np.ndarray:
        """
        Run a batch through every layer, caching for a backward pass.

        Use ``infer`` when the caches must stay untouched.
        """
        output = as_matrix(inputs)
        for layer in self.layers:
            output = layer.forward(output)
        return output

    def infer(self, inputs) -> np.ndarray:
        """Run a batch through every layer without caching anything."""
        output = as_matrix(inputs)
        for layer in self.layers:
            output = layer.compute(output)
        return output

    def train_batch(self, inputs, targets, learning_rate: float) -> float:
        """
        One step of gradient descent on a single batch.

        Args:
            inputs: (batch_size, input_size) matrix
            targets: (batch_size, output_size) matrix
            learning_rate: SGD step size

        Returns:
            The loss of the batch, measured before the parameter update

        Raises:
            StateError: If the network has no layers
            ShapeError: If inputs or targets do not fit the layers
        """
        if not self.layers:
            raise StateError("Cannot train a network with no layers")

        targets = as_matrix(targets, 'targets')

        # Forward pass fills every layer's input and z caches
        predictions = self.predict(inputs)
        loss = self.loss_fn.calculate(predictions, targets)

        last_layer = self.layers[-1]
        if (last_layer.activation is ActivationFunction.SOFTMAX and
                self.loss_fn is LossFunction.CROSS_ENTROPY):
            # Softmax and cross-entropy derivatives cancel to P - Y
            batch_size = predictions.shape[0]
            if batch_size == 0:
                return loss
            d_error_dz = (predictions - targets) / batch_size
        else:
            d_error_da = self.loss_fn.derivative(predictions, targets)
            d_error_dz = d_error_da * last_layer.activation.derivative(
                last_layer.z_cache
            )

        gradient = last_layer.backward(d_error_dz, learning_rate)

        for layer in reversed(self.layers[:-1]):
            d_error_dz = gradient * layer.activation.derivative(layer.z_cache)
            gradient = layer.backward(d_error_dz, learning_rate)

        logger.debug(
            f"Trained batch of {predictions.shape[0]}: loss={loss:.6f}"
        )
        return loss
