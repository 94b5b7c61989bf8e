"""
digitnet package
~~~~~~~~~~~~~~~~

Feedforward neural network engine for MNIST digit recognition.
Contains the layer, activation, loss and network implementation, the
binary weight format, MNIST data loading, model persistence, and the
API server.
"""

from digitnet.activation import ActivationFunction
from digitnet.exceptions import DecodeError, DigitNetError, ShapeError, StateError
from digitnet.layer import DenseLayer
from digitnet.loss import LossFunction
from digitnet.network import Network

__version__ = "1.0.0"

__all__ = [
    'ActivationFunction',
    'DecodeError',
    'DenseLayer',
    'DigitNetError',
    'LossFunction',
    'Network',
    'ShapeError',
    'StateError',
]
