"""
Declarative layer descriptors consumed by NeuralNetwork construction.
"""

from dataclasses import dataclass
from enum import Enum

from .activations import ActivationFunction, to_activation_function
from .exceptions import NetworkConfigurationError

#: Upper bound on dropout rates; at 1.0 every cell would be dropped.
MAX_DROPOUT_RATE = 0.9


class LayerType(Enum):
    """Layer kinds; values are the names used in model files."""
    Convolution = 'Convolution'
    Pooling = 'Pooling'
    FullyConnected = 'FullyConnected'
    Dropout = 'Dropout'
    Reshape = 'Reshape'


@dataclass(frozen=True)
class LayerTemplate:
    """
    Immutable description of one layer.

    Only the fields relevant to ``layer_type`` are set; build instances with
    the classmethod factories rather than the constructor.

    Example:
        >>> templates = [
        ...     LayerTemplate.convolution(kernel_size=3, depth=4, activation='relu'),
        ...     LayerTemplate.max_pooling(pool_size=2, stride=2),
        ...     LayerTemplate.fully_connected(10, 'softmax'),
        ... ]
    """
    layer_type: LayerType
    layer_size: int = 0
    activation: ActivationFunction = None
    pool_size: int = 0
    stride: int = 1
    kernel_size: int = 0
    depth: int = 0
    dropout_rate: float = 0.0

    @classmethod
    def fully_connected(cls, layer_size, activation):
        if layer_size < 1:
            raise NetworkConfigurationError("Layer size must be positive")
        return cls(LayerType.FullyConnected, layer_size=layer_size,
                   activation=to_activation_function(activation))

    @classmethod
    def max_pooling(cls, pool_size, stride):
        if pool_size < 1 or stride < 1:
            raise NetworkConfigurationError("Pool size and stride must be positive")
        return cls(LayerType.Pooling, pool_size=pool_size, stride=stride)

    @classmethod
    def convolution(cls, kernel_size, depth, activation, stride=1):
        """Convolution template; only stride 1 is supported."""
        if stride != 1:
            raise NetworkConfigurationError("Convolution only supports stride 1")
        if kernel_size < 1 or depth < 1:
            raise NetworkConfigurationError("Kernel size and depth must be positive")
        return cls(LayerType.Convolution, kernel_size=kernel_size, depth=depth,
                   activation=to_activation_function(activation), stride=1)

    @classmethod
    def dropout(cls, rate):
        if not 0.0 <= rate <= MAX_DROPOUT_RATE:
            raise NetworkConfigurationError(
                f"Dropout rate must be in [0, {MAX_DROPOUT_RATE}], got {rate}"
            )
        return cls(LayerType.Dropout, dropout_rate=float(rate))
