"""
Gradient Checking Tests
=======================

Verify the accumulated parameter changes and propagated errors match
numerical approximations.

Method: Centered finite differences
    f'(x) ≈ (f(x + ε) - f(x - ε)) / (2ε)

Layers accumulate *changes* (learning_rate * -dL/dθ, since the seeded error
is expected - predicted), so with learning_rate = 1 the accumulated change
must equal the negative numerical gradient.
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from toynet.matrix import Matrix
from toynet.layers import FullyConnectedLayer, ConvolutionLayer, PoolingLayer
from toynet.activations import ReLU, Sigmoid, Softmax


def numerical_gradient(f, x, epsilon=1e-5):
    """
    Compute numerical gradient using centered finite differences.

    Args:
        f: Function that takes x and returns scalar loss
        x: Point at which to compute gradient
        epsilon: Small perturbation

    Returns:
        Numerical gradient, same shape as x
    """
    grad = np.zeros_like(x)

    it = np.nditer(x, flags=['multi_index'])
    while not it.finished:
        idx = it.multi_index

        x[idx] += epsilon
        loss_plus = f(x)

        x[idx] -= 2 * epsilon
        loss_minus = f(x)

        x[idx] += epsilon

        grad[idx] = (loss_plus - loss_minus) / (2 * epsilon)

        it.iternext()

    return grad


def relative_error(analytical, numerical):
    """Maximum relative error across all elements."""
    diff = np.abs(analytical - numerical)
    denom = np.maximum(np.abs(analytical) + np.abs(numerical), 1e-8)
    return np.max(diff / denom)


def half_squared_error(target, output):
    """L = 0.5 * sum((target - output)^2); its error signal is target - output."""
    return 0.5 * np.sum((target - output) ** 2)


class TestFullyConnectedGradients:
    """Gradient tests for FullyConnectedLayer."""

    def setup_method(self):
        self.rng = np.random.default_rng(42)
        self.x = Matrix.from_array(self.rng.standard_normal((5, 1)))
        self.target = self.rng.uniform(0, 1, (3, 1))

    def _accumulate(self, layer):
        activated, aux = layer.forward([self.x])
        error = Matrix.from_array(self.target - activated[0].to_array())
        return layer.backward([error], [self.x], aux, learning_rate=1.0)

    def test_weight_gradients(self):
        """Accumulated weight change equals -dL/dW."""
        layer = FullyConnectedLayer(5, 3, 'sigmoid', rng=self.rng)
        self._accumulate(layer)
        analytical = layer.grads['weight'].to_array()

        biases = layer.biases

        def loss_fn(w):
            z = w @ self.x.to_array() + biases.to_array()
            return half_squared_error(self.target, 1 / (1 + np.exp(-z)))

        numerical = numerical_gradient(loss_fn, layer.weights.to_array())

        error = relative_error(analytical, -numerical)
        assert error < 1e-5, f"Weight gradient error: {error}"

    def test_bias_gradients(self):
        """Accumulated bias change equals -dL/db."""
        layer = FullyConnectedLayer(5, 3, 'sigmoid', rng=self.rng)
        self._accumulate(layer)
        analytical = layer.grads['bias'].to_array()

        weights = layer.weights

        def loss_fn(b):
            z = weights.to_array() @ self.x.to_array() + b
            return half_squared_error(self.target, 1 / (1 + np.exp(-z)))

        numerical = numerical_gradient(loss_fn, layer.biases.to_array())

        error = relative_error(analytical, -numerical)
        assert error < 1e-5, f"Bias gradient error: {error}"

    def test_propagated_error_uses_incoming_error(self):
        """The error handed back is W^T . error, before any activation derivative."""
        layer = FullyConnectedLayer(5, 3, 'sigmoid', rng=self.rng)
        activated, aux = layer.forward([self.x])
        error = Matrix.from_array(self.rng.standard_normal((3, 1)))

        propagated = layer.backward([error], [self.x], aux, learning_rate=0.25)

        expected = layer.weights.to_array().T @ error.to_array()
        np.testing.assert_allclose(propagated[0].to_array(), expected)

    def test_input_gradients_relu_active_region(self):
        """With every ReLU active, W^T . error is exactly -dL/dx."""
        biases = Matrix.filled(3, 1, 100.0)
        layer = FullyConnectedLayer(5, 3, 'relu', rng=self.rng, biases=biases)
        propagated = self._accumulate(layer)[0].to_array()

        weights = layer.weights.to_array()

        def loss_fn(x):
            return half_squared_error(self.target, np.maximum(weights @ x + 100.0, 0))

        numerical = numerical_gradient(loss_fn, self.x.to_array())

        error = relative_error(propagated, -numerical)
        assert error < 1e-5, f"Input gradient error: {error}"


class TestConvolutionGradients:
    """Gradient tests for ConvolutionLayer."""

    def setup_method(self):
        self.rng = np.random.default_rng(7)
        self.layer = ConvolutionLayer((2, 6, 6), kernel_size=3, depth=2, activation='sigmoid',
                                      rng=self.rng)
        self.x = [Matrix.from_array(self.rng.standard_normal((6, 6))) for _ in range(2)]
        self.target = [self.rng.uniform(0, 1, (4, 4)) for _ in range(2)]

    def _loss(self, inputs, kernels, biases):
        layer = ConvolutionLayer((2, 6, 6), 3, 2, 'sigmoid', kernels=kernels, biases=biases)
        activated, _ = layer.forward(inputs)
        return sum(half_squared_error(t, a.to_array()) for t, a in zip(self.target, activated))

    def _accumulate(self):
        activated, aux = self.layer.forward(self.x)
        errors = [Matrix.from_array(t - a.to_array()) for t, a in zip(self.target, activated)]
        return self.layer.backward(errors, self.x, aux, learning_rate=1.0)

    def test_kernel_gradients(self):
        """Accumulated kernel change equals -dL/dK for every kernel."""
        self._accumulate()
        kernels = self.layer.kernels
        biases = self.layer.biases

        for i in range(2):
            for j in range(2):
                def loss_fn(k, i=i, j=j):
                    trial = [[m.copy() for m in row] for row in kernels]
                    trial[i][j] = Matrix.from_array(k)
                    return self._loss(self.x, trial, biases)

                numerical = numerical_gradient(loss_fn, kernels[i][j].to_array())
                analytical = self.layer.grads['kernels'][i][j].to_array()

                error = relative_error(analytical, -numerical)
                assert error < 1e-5, f"Kernel ({i}, {j}) gradient error: {error}"

    def test_bias_gradients(self):
        self._accumulate()
        kernels = self.layer.kernels

        def loss_fn(b):
            return self._loss(self.x, kernels, Matrix.from_array(b))

        numerical = numerical_gradient(loss_fn, self.layer.biases.to_array())
        error = relative_error(self.layer.grads['bias'].to_array(), -numerical)
        assert error < 1e-5, f"Bias gradient error: {error}"

    def test_input_gradients(self):
        """Propagated error equals -dL/dX for every input channel."""
        propagated = self._accumulate()
        kernels = self.layer.kernels
        biases = self.layer.biases

        for j in range(2):
            def loss_fn(x, j=j):
                trial = [m.copy() for m in self.x]
                trial[j] = Matrix.from_array(x)
                return self._loss(trial, kernels, biases)

            numerical = numerical_gradient(loss_fn, self.x[j].to_array())
            error = relative_error(propagated[j].to_array(), -numerical)
            assert error < 1e-5, f"Input channel {j} gradient error: {error}"


class TestPoolingGradients:
    """Gradient tests for PoolingLayer."""

    def test_input_gradients(self):
        rng = np.random.default_rng(3)
        # Distinct values so every window has a unique maximum
        values = rng.permutation(36).reshape(6, 6).astype(np.float64)
        x = Matrix.from_array(values)
        weights = rng.standard_normal((3, 3))

        pool = PoolingLayer(pool_size=2, stride=2)
        activated, aux = pool.forward([x])
        propagated = pool.backward([Matrix.from_array(weights)], [x], aux, 1.0)

        def loss_fn(v):
            pooled, _ = PoolingLayer(2, 2).forward([Matrix.from_array(v)])
            return np.sum(pooled[0].to_array() * weights)

        numerical = numerical_gradient(loss_fn, values.copy(), epsilon=1e-3)
        np.testing.assert_allclose(propagated[0].to_array(), numerical, atol=1e-6)


class TestActivationGradients:
    """Gradient tests for activation derivatives."""

    def test_relu_gradients(self):
        relu = ReLU()
        # Stay away from 0 where ReLU is not differentiable
        x = np.array([[-2.0], [-0.5], [0.3], [1.7]])

        analytical = relu.derivative(Matrix.from_array(x)).to_array()
        numerical = numerical_gradient(lambda v: np.sum(np.maximum(v, 0)), x.copy())

        np.testing.assert_allclose(analytical, numerical, atol=1e-6)

    def test_sigmoid_gradients(self):
        sigmoid = Sigmoid()
        x = np.random.default_rng(0).standard_normal((5, 1))

        analytical = sigmoid.derivative(Matrix.from_array(x)).to_array()
        numerical = numerical_gradient(lambda v: np.sum(1 / (1 + np.exp(-v))), x.copy())

        np.testing.assert_allclose(analytical, numerical, atol=1e-6)

    def test_softmax_derivative_is_jacobian_diagonal_only(self):
        """
        Intentional approximation: Softmax.derivative is s * (1 - s), the
        diagonal of the Jacobian. It is not a general Jacobian-vector product.
        """
        softmax = Softmax()
        x = np.array([[0.2], [1.5], [-0.7]])
        s = softmax(Matrix.from_array(x)).to_array()
        jacobian = np.diagflat(s) - s @ s.T

        shortcut = softmax.derivative(Matrix.from_array(x)).to_array()
        np.testing.assert_allclose(shortcut, np.diag(jacobian).reshape(-1, 1))

        v = np.array([[1.0], [-2.0], [0.5]])
        assert not np.allclose(shortcut * v, jacobian @ v)
