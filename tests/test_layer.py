"""
test_layer.py
~~~~~~~~~~~~~

Unit tests for the dense layer: initialization, forward caching and
backpropagation.
"""

import numpy as np
import pytest

from digitnet.activation import ActivationFunction
from digitnet.exceptions import ShapeError, StateError
from digitnet.layer import DenseLayer
from digitnet.loss import LossFunction


@pytest.fixture
def identity_layer():
    """A 2->2 linear layer with identity weights and zero bias."""
    return DenseLayer.from_parameters(
        np.eye(2, dtype=np.float32),
        np.zeros(2, dtype=np.float32),
        ActivationFunction.LINEAR
    )


@pytest.mark.unit
class TestInitialization:
    """Test construction of new layers."""

    def test_shapes_and_dtype(self, rng):
        """Test parameter shapes, zero bias and empty caches."""
        layer = DenseLayer(5, 3, ActivationFunction.SIGMOID, rng=rng)

        assert layer.weights.shape == (5, 3)
        assert layer.weights.dtype == np.float32
        assert layer.bias.shape == (3,)
        assert np.array_equal(layer.bias, np.zeros(3))
        assert layer.input_cache.shape == (0, 0)
        assert layer.z_cache.shape == (0, 0)
        assert layer.has_cache is False
        assert (layer.input_size, layer.output_size) == (5, 3)

    @pytest.mark.parametrize('activation, variance', [
        (ActivationFunction.RELU, 2.0),
        (ActivationFunction.SIGMOID, 1.0),
        (ActivationFunction.SOFTMAX, 1.0),
        (ActivationFunction.LINEAR, 1.0),
    ])
    def test_weight_scale(self, activation, variance, rng):
        """Test He scaling for ReLU and 1/fan-in scaling otherwise."""
        input_size = 400
        layer = DenseLayer(input_size, 200, activation, rng=rng)
        expected_std = np.sqrt(variance / input_size)

        assert abs(float(layer.weights.mean())) < 0.1 * expected_std
        assert float(layer.weights.std()) == pytest.approx(expected_std, rel=0.05)

    def test_from_parameters_copies(self):
        """Test that the layer owns copies of the given arrays."""
        weights = np.ones((2, 3), dtype=np.float32)
        bias = np.zeros(3, dtype=np.float32)
        layer = DenseLayer.from_parameters(weights, bias, ActivationFunction.RELU)

        weights[0, 0] = 42.0
        assert layer.weights[0, 0] == 1.0
        assert layer.activation is ActivationFunction.RELU

    def test_from_parameters_bias_mismatch(self):
        with pytest.raises(ShapeError):
            DenseLayer.from_parameters(
                np.ones((2, 3)), np.zeros(2), ActivationFunction.LINEAR
            )


@pytest.mark.unit
class TestForward:
    """Test the forward pass and its cache."""

    def test_identity_layer_returns_input_exactly(self, identity_layer):
        """Test that an identity linear layer is an exact pass-through."""
        inputs = np.array([[1.0, 2.0], [3.0, 4.0]], dtype=np.float32)
        out = identity_layer.forward(inputs)
        assert np.array_equal(out, inputs)

    def test_bias_added_to_every_row(self):
        """Test that the bias broadcasts across the batch."""
        layer = DenseLayer.from_parameters(
            np.zeros((2, 3)), np.array([1.0, -1.0, 0.5]), ActivationFunction.LINEAR
        )
        out = layer.forward(np.ones((4, 2)))
        assert np.array_equal(out, np.tile([1.0, -1.0, 0.5], (4, 1)))

    def test_caches_input_and_z(self):
        """Test that forward stores the input and the pre-activation sum."""
        layer = DenseLayer.from_parameters(
            np.array([[1.0, -1.0]]), np.array([0.0, 0.5]), ActivationFunction.RELU
        )
        inputs = np.array([[2.0], [-3.0]], dtype=np.float32)
        out = layer.forward(inputs)

        assert layer.has_cache is True
        assert np.array_equal(layer.input_cache, inputs)
        assert np.allclose(layer.z_cache, [[2.0, -1.5], [-3.0, 3.5]])
        assert np.allclose(out, [[2.0, 0.0], [0.0, 3.5]])

    def test_cache_is_a_copy(self, identity_layer):
        """Test that mutating the caller's array does not change the cache."""
        inputs = np.array([[1.0, 2.0]], dtype=np.float32)
        identity_layer.forward(inputs)
        inputs[0, 0] = 100.0
        assert identity_layer.input_cache[0, 0] == 1.0

    def test_forward_overwrites_cache(self, identity_layer):
        """Test that each forward replaces the previous cache."""
        identity_layer.forward(np.ones((3, 2)))
        identity_layer.forward(np.ones((5, 2)))
        assert identity_layer.input_cache.shape == (5, 2)
        assert identity_layer.z_cache.shape == (5, 2)

    def test_input_width_mismatch(self, rng):
        """Test that a wrong input width names both dimensions."""
        layer = DenseLayer(4, 2, ActivationFunction.RELU, rng=rng)
        with pytest.raises(ShapeError) as exc_info:
            layer.forward(np.zeros((3, 5)))
        assert 'Input columns (5)' in str(exc_info.value)
        assert 'weight rows (4)' in str(exc_info.value)

    def test_rejects_vectors(self, identity_layer):
        """Test that a 1-D input is not silently reshaped."""
        with pytest.raises(ShapeError):
            identity_layer.forward(np.array([1.0, 2.0]))

    def test_compute_leaves_cache_alone(self, rng):
        """Test that compute matches forward without caching."""
        layer = DenseLayer(3, 2, ActivationFunction.SIGMOID, rng=rng)
        inputs = rng.random((4, 3)).astype(np.float32)

        computed = layer.compute(inputs)
        assert layer.has_cache is False
        assert layer.input_cache.shape == (0, 0)

        assert np.array_equal(computed, layer.forward(inputs))


@pytest.mark.unit
class TestBackward:
    """Test gradients, parameter updates and cache bookkeeping."""

    def test_known_gradients(self):
        """Test dW, db, propagated gradient and the SGD update by hand."""
        layer = DenseLayer.from_parameters(
            np.array([[1.0, 2.0], [3.0, 4.0]]),
            np.zeros(2),
            ActivationFunction.LINEAR
        )
        layer.forward(np.array([[1.0, 1.0]]))
        grad_prev = layer.backward(np.array([[1.0, 0.0]]), learning_rate=0.5)

        # Propagated with the weights from before the update
        assert np.allclose(grad_prev, [[1.0, 3.0]])
        assert np.allclose(layer.weights, [[0.5, 2.0], [2.5, 4.0]])
        assert np.allclose(layer.bias, [-0.5, 0.0])

    def test_gradients_are_batch_averaged(self):
        """Test that dW and db divide by the batch size."""
        layer = DenseLayer.from_parameters(
            np.zeros((1, 1)), np.zeros(1), ActivationFunction.LINEAR
        )
        layer.forward(np.array([[1.0], [3.0]]))
        layer.backward(np.array([[2.0], [4.0]]), learning_rate=1.0)

        # dW = (1*2 + 3*4) / 2 = 7, db = (2 + 4) / 2 = 3
        assert layer.weights[0, 0] == pytest.approx(-7.0)
        assert layer.bias[0] == pytest.approx(-3.0)

    def test_zero_row_batch(self, rng):
        """Test that an empty batch returns (0, input_size) and changes nothing."""
        layer = DenseLayer(3, 2, ActivationFunction.RELU, rng=rng)
        weights_before = layer.weights.copy()
        bias_before = layer.bias.copy()

        layer.forward(np.zeros((0, 3), dtype=np.float32))
        grad = layer.backward(np.zeros((0, 2), dtype=np.float32), learning_rate=0.1)

        assert grad.shape == (0, 3)
        assert np.array_equal(layer.weights, weights_before)
        assert np.array_equal(layer.bias, bias_before)

    def test_backward_without_forward(self, rng):
        """Test that backward on a fresh layer fails loudly."""
        layer = DenseLayer(3, 2, ActivationFunction.RELU, rng=rng)
        with pytest.raises(StateError):
            layer.backward(np.zeros((1, 2)), learning_rate=0.1)

    def test_backward_consumes_cache(self, identity_layer):
        """Test that a second backward needs a new forward."""
        identity_layer.forward(np.ones((2, 2)))
        identity_layer.backward(np.ones((2, 2)), learning_rate=0.1)
        assert identity_layer.has_cache is False

        with pytest.raises(StateError):
            identity_layer.backward(np.ones((2, 2)), learning_rate=0.1)

    def test_gradient_column_mismatch(self, identity_layer):
        identity_layer.forward(np.ones((2, 2)))
        with pytest.raises(ShapeError) as exc_info:
            identity_layer.backward(np.ones((2, 3)), learning_rate=0.1)
        assert 'columns (3)' in str(exc_info.value)

    def test_gradient_batch_mismatch(self, identity_layer):
        """Test that a gradient for another batch size is rejected."""
        identity_layer.forward(np.ones((2, 2)))
        with pytest.raises(ShapeError) as exc_info:
            identity_layer.backward(np.ones((4, 2)), learning_rate=0.1)
        assert 'rows (4)' in str(exc_info.value)
        assert '(2)' in str(exc_info.value)
        # A rejected gradient leaves the cache usable
        assert identity_layer.has_cache is True

    @pytest.mark.parametrize('activation, loss_fn', [
        (ActivationFunction.SIGMOID, LossFunction.MEAN_SQUARED_ERROR),
        (ActivationFunction.LINEAR, LossFunction.MEAN_SQUARED_ERROR),
        (ActivationFunction.RELU, LossFunction.MEAN_SQUARED_ERROR),
    ])
    def test_step_decreases_loss(self, activation, loss_fn, rng):
        """Test that one update moves downhill for a small learning rate."""
        layer = DenseLayer(4, 3, activation, rng=rng)
        inputs = rng.random((8, 4)).astype(np.float32)
        targets = rng.random((8, 3)).astype(np.float32)

        output = layer.forward(inputs)
        loss_before = loss_fn.calculate(output, targets)

        gradient = (loss_fn.derivative(output, targets) *
                    activation.derivative(layer.z_cache))
        layer.backward(gradient, learning_rate=0.05)

        loss_after = loss_fn.calculate(layer.compute(inputs), targets)
        assert loss_after < loss_before
