"""
toynet
======

A neural network engine written from scratch on top of a small 2-D Matrix
primitive. It trains multilayer perceptrons and convolutional networks with:
- Convolution (cross-correlation / full convolution duality)
- Max pooling with argmax gradient routing
- Dropout with a per-batch mask
- Fully connected layers with norm-clipped SGD updates
- Parallel mini-batch training with cooperative cancellation
- An adaptive learning rate driven by the trend of recent batch losses
- XML model files and CSV training logs
"""

from .matrix import Matrix
from .activations import ActivationFunction, ReLU, Sigmoid, Softmax, get_activation
from .losses import CrossEntropyLoss, MSELoss, cross_entropy_cost, mean_squared_error, get_loss
from .templates import LayerTemplate, LayerType
from .layers import (ConvolutionLayer, DropoutLayer, FullyConnectedLayer, Layer,
                     PoolingLayer, ReshapeLayer)
from .events import BatchTrained, EpochTrained, SampleTrained, TrainingEvents, TrainingFinished
from .network import NeuralNetwork
from .telemetry import TrainingLog
from .trainer import PatienceController, Trainer, TrainerConfig, TrainingState
from .exceptions import (MatrixParseError, ModelFormatError, NetworkConfigurationError,
                         ShapeMismatchError, ToyNetError)
from .utils import make_rng, one_hot, one_hot_encode, samples_from_arrays
from . import matrix_ops
from . import visualizations

__version__ = "1.0.0"
__all__ = [
    # Matrix
    'Matrix', 'matrix_ops',
    # Activations / losses
    'ActivationFunction', 'ReLU', 'Sigmoid', 'Softmax', 'get_activation',
    'CrossEntropyLoss', 'MSELoss', 'cross_entropy_cost', 'mean_squared_error', 'get_loss',
    # Layers
    'LayerTemplate', 'LayerType', 'Layer', 'FullyConnectedLayer', 'ConvolutionLayer',
    'PoolingLayer', 'DropoutLayer', 'ReshapeLayer',
    # Network and training
    'NeuralNetwork', 'Trainer', 'TrainerConfig', 'TrainingState', 'PatienceController',
    'TrainingLog', 'TrainingEvents', 'SampleTrained', 'BatchTrained', 'EpochTrained',
    'TrainingFinished',
    # Errors
    'ToyNetError', 'ShapeMismatchError', 'NetworkConfigurationError', 'MatrixParseError',
    'ModelFormatError',
    # Utilities
    'make_rng', 'one_hot', 'one_hot_encode', 'samples_from_arrays',
]
