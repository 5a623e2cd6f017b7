"""
Exceptions raised by toynet.

Construction and shape problems derive from ValueError so callers that
already guard numeric code with ``except ValueError`` keep working.
"""


class ToyNetError(Exception):
    """Base class for all toynet errors."""


class ShapeMismatchError(ToyNetError, ValueError):
    """Operands or inputs have incompatible dimensions."""


class NetworkConfigurationError(ToyNetError, ValueError):
    """Invalid layer template, layer ordering or hyperparameter."""


class MatrixParseError(ToyNetError, ValueError):
    """Text could not be parsed into a rectangular matrix."""


class ModelFormatError(ToyNetError, ValueError):
    """A persisted model is malformed or missing a required field."""
