"""
Activation Functions
====================

Non-linear activation functions applied by FullyConnected and Convolution
layers. Each activation implements a forward pass and the derivative used
during backpropagation; both operate on Matrix objects.

Activations:
- ReLU: max(x, 0). The derivative at exactly 0 is 1.
- Sigmoid: 1 / (1 + exp(-x))
- Softmax: exp(x - max) / (sum(exp(x - max)) + tiny), output layer only

Note on Softmax:
    The derivative used here is the element-wise shortcut s * (1 - s), not
    the full Jacobian. At the output layer the seeded error is already
    (expected - predicted), the combined softmax + cross-entropy gradient,
    so the shortcut only rescales it.
"""

from enum import Enum

import numpy as np


class ActivationFunction(Enum):
    """Activation kinds understood by layer templates and model files."""
    ReLU = 'ReLU'
    Sigmoid = 'Sigmoid'
    Softmax = 'Softmax'


class Activation:
    """Base class for all activation functions."""

    kind = None

    def forward(self, x):
        """Apply activation function to a Matrix."""
        raise NotImplementedError

    def derivative(self, x):
        """Derivative of the activation w.r.t. its (pre-activation) input."""
        raise NotImplementedError

    def __call__(self, x):
        return self.forward(x)

    def __repr__(self):
        return f"{self.__class__.__name__}()"


class ReLU(Activation):
    """
    Rectified Linear Unit: f(x) = max(0, x)

    Derivative:
        f'(x) = 1 if x >= 0 else 0
    """

    kind = ActivationFunction.ReLU

    def forward(self, x):
        return x.apply(lambda v: np.maximum(v, 0.0))

    def derivative(self, x):
        return x.apply(lambda v: (v >= 0).astype(np.float64))


class Sigmoid(Activation):
    """
    Sigmoid: f(x) = 1 / (1 + exp(-x))

    Derivative:
        f'(x) = f(x) * (1 - f(x))
    """

    kind = ActivationFunction.Sigmoid

    @staticmethod
    def _sigmoid(v):
        # Clip for numerical stability
        return 1.0 / (1.0 + np.exp(-np.clip(v, -500, 500)))

    def forward(self, x):
        return x.apply(self._sigmoid)

    def derivative(self, x):
        def grad(v):
            s = self._sigmoid(v)
            return s * (1.0 - s)
        return x.apply(grad)


class Softmax(Activation):
    """
    Softmax: f(x_i) = exp(x_i - max(x)) / (sum(exp(x_j - max(x))) + tiny)

    Applied over every cell of the matrix (a single column in practice).
    Shifting by the maximum keeps exp() from overflowing on large inputs.
    """

    kind = ActivationFunction.Softmax

    @staticmethod
    def _softmax(v):
        exp_v = np.exp(v - np.max(v))
        return exp_v / (np.sum(exp_v) + np.finfo(np.float64).tiny)

    def forward(self, x):
        return x.apply(self._softmax)

    def derivative(self, x):
        """Element-wise s * (1 - s); see module notes."""
        def grad(v):
            s = self._softmax(v)
            return s * (1.0 - s)
        return x.apply(grad)


# ====================================
# Activation Registry
# ====================================

ACTIVATIONS = {
    ActivationFunction.ReLU: ReLU,
    ActivationFunction.Sigmoid: Sigmoid,
    ActivationFunction.Softmax: Softmax,
}


def to_activation_function(name):
    """
    Resolve a name ('relu', 'ReLU', 'Softmax') or enum member to an
    ActivationFunction.
    """
    if isinstance(name, ActivationFunction):
        return name
    if isinstance(name, Activation):
        return name.kind

    for member in ActivationFunction:
        if member.value.lower() == str(name).lower():
            return member
    available = ', '.join(m.value for m in ActivationFunction)
    raise ValueError(f"Unknown activation '{name}'. Available: {available}")


def get_activation(name):
    """
    Get activation function by name or enum member.

    Args:
        name: ActivationFunction, string name or Activation instance

    Returns:
        Activation instance

    Example:
        >>> act = get_activation('relu')
        >>> act(Matrix.from_column([-1, 0, 1])).to_array().ravel().tolist()
        [0.0, 0.0, 1.0]
    """
    if isinstance(name, Activation):
        return name
    return ACTIVATIONS[to_activation_function(name)]()
