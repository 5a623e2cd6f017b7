"""
Loss Functions
==============

Loss functions measure how wrong the network's predictions are.

- Cross-entropy: L = -sum(y_true * log(y_pred)), used for training and
  evaluation of the softmax output layer
- Mean squared error: L = mean((y_pred - y_true)^2)

Predictions must be floor-clamped away from zero by the caller before
cross-entropy is taken; ``clamp_prediction`` does exactly that.
"""

import numpy as np

#: Smallest positive normal float, added to predictions before log().
EPSILON = np.finfo(np.float64).tiny


def clamp_prediction(predicted, epsilon=EPSILON):
    """Shift every prediction up by ``epsilon`` so log() stays finite."""
    return predicted + epsilon


def cross_entropy_cost(expected, predicted):
    """
    Cross-entropy cost between a one-hot target and a prediction.

    Both arguments are Matrix objects of the same shape. Returns +inf when a
    true-class probability is exactly zero; clamp first.
    """
    y = expected.to_array()
    p = predicted.to_array()
    if y.shape != p.shape:
        raise ValueError(f"Shapes differ: {y.shape} vs {p.shape}")
    with np.errstate(divide='ignore', invalid='ignore'):
        terms = np.where(y != 0, y * np.log(p), 0.0)
    return float(-np.sum(terms))


def mean_squared_error(expected, predicted):
    """Mean of the squared differences over every cell."""
    y = expected.to_array()
    p = predicted.to_array()
    if y.shape != p.shape:
        raise ValueError(f"Shapes differ: {y.shape} vs {p.shape}")
    return float(np.mean((p - y) ** 2))


class Loss:
    """Base class for loss functions."""

    def forward(self, expected, predicted):
        raise NotImplementedError

    def __call__(self, expected, predicted):
        return self.forward(expected, predicted)


class CrossEntropyLoss(Loss):
    """
    Cross-entropy with the prediction shifted by ``epsilon`` first.

    Args:
        epsilon: Small constant to prevent log(0)
    """

    def __init__(self, epsilon=EPSILON):
        self.epsilon = epsilon

    def forward(self, expected, predicted):
        return cross_entropy_cost(expected, clamp_prediction(predicted, self.epsilon))


class MSELoss(Loss):
    """Mean Squared Error."""

    def forward(self, expected, predicted):
        return mean_squared_error(expected, predicted)


LOSSES = {
    'cross_entropy': CrossEntropyLoss,
    'mse': MSELoss,
}

_ALIASES = {
    'ce': 'cross_entropy',
    'crossentropy': 'cross_entropy',
    'mean_squared_error': 'mse',
}


def get_loss(name):
    """Resolve 'cross_entropy' / 'mse' (or an alias, any case) to a Loss instance."""
    if isinstance(name, Loss):
        return name

    key = name.strip().lower().replace('-', '_').replace(' ', '_')
    key = _ALIASES.get(key, key)
    try:
        return LOSSES[key]()
    except KeyError:
        raise ValueError(f"Unknown loss {name!r}; expected one of {sorted(LOSSES)}") from None
