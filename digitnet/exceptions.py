"""
exceptions.py
~~~~~~~~~~~~~

Error types shared by the engine, the data loaders and the server.
"""


class DigitNetError(Exception):
    """Base class for all digitnet errors."""


class ShapeError(DigitNetError, ValueError):
    """
    Raised when matrix dimensions do not line up.

    This always indicates a wiring mistake in the caller (wrong layer
    widths, targets of the wrong shape, a gradient for a different batch).
    """


class StateError(DigitNetError, RuntimeError):
    """Raised when an operation is called out of order."""


class DecodeError(DigitNetError, ValueError):
    """Raised when an IDX file or a weight buffer cannot be decoded."""

    def __init__(self, message: str, source: str = None):
        super().__init__(message)
        self.source = source
