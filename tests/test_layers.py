"""
Tests for Network Layers
========================

Unit tests for fully connected, convolution, pooling, dropout and reshape
layers, including update rules and XML round trips.
"""

import threading
import xml.etree.ElementTree as ET

import numpy as np
import pytest
import sys
import os

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from toynet.matrix import Matrix
from toynet.layers import (ConvolutionLayer, DropoutLayer, FullyConnectedLayer, Layer,
                           PoolingLayer, ReshapeLayer, MAX_NORM)
from toynet.activations import ActivationFunction
from toynet.exceptions import ModelFormatError, NetworkConfigurationError, ShapeMismatchError


def roundtrip(layer):
    """Serialize a layer's head/data pair and load it back."""
    heads = ET.Element('LayersHead')
    data = ET.Element('LayersData')
    layer.save_description(heads)
    layer.save_data(data)
    return Layer.load(heads[0], data[0], rng=np.random.default_rng(0))


class TestFullyConnected:
    """Tests for FullyConnectedLayer."""

    def test_forward_shape(self):
        layer = FullyConnectedLayer(6, 4, 'relu', rng=np.random.default_rng(0))
        activated, aux = layer.forward([Matrix.from_column(np.arange(6))])

        assert activated[0].shape == (4, 1)
        assert aux[0].shape == (4, 1)

    def test_forward_values(self):
        """Output is activation(W . x + b)."""
        weights = Matrix.from_array([[1.0, -1.0], [0.5, 2.0]])
        biases = Matrix.from_column([0.0, -4.0])
        layer = FullyConnectedLayer(2, 2, 'relu', weights=weights, biases=biases)

        activated, aux = layer.forward([Matrix.from_column([3.0, 1.0])])

        assert aux[0].to_array().ravel().tolist() == [2.0, -0.5]
        assert activated[0].to_array().ravel().tolist() == [2.0, 0.0]

    def test_rejects_multiple_channels(self):
        layer = FullyConnectedLayer(2, 2, 'sigmoid', rng=np.random.default_rng(0))
        with pytest.raises(ShapeMismatchError):
            layer.forward([Matrix(2, 1), Matrix(2, 1)])

    def test_initialization_limits(self):
        """He for ReLU uses sqrt(6 / fan_in); Xavier uses sqrt(6 / (rows + columns))."""
        relu = FullyConnectedLayer(24, 10, 'relu', rng=np.random.default_rng(1))
        softmax = FullyConnectedLayer(24, 10, 'softmax', rng=np.random.default_rng(1))

        assert np.abs(relu.weights.to_array()).max() <= np.sqrt(6 / 24)
        assert np.abs(softmax.weights.to_array()).max() <= np.sqrt(6 / 34)
        assert relu.biases.sum() == 0.0

    def test_update_averages_and_resets(self):
        weights = Matrix(1, 2)
        layer = FullyConnectedLayer(2, 1, 'relu', weights=weights)
        layer.grads['weight'] = Matrix.from_array([[0.2, 0.0]])
        layer.grads['bias'] = Matrix.from_column([0.4])

        layer.update_weights_and_biases(batch_size=2)

        np.testing.assert_allclose(layer.weights.to_array(), [[0.1, 0.0]])
        np.testing.assert_allclose(layer.biases.to_array(), [[0.2]])
        assert layer.grads['weight'].sum() == 0.0
        assert layer.grads['bias'].sum() == 0.0

    def test_update_clips_weight_change_norm(self):
        layer = FullyConnectedLayer(2, 1, 'relu', weights=Matrix(1, 2))
        layer.grads['weight'] = Matrix.from_array([[30.0, 40.0]])

        layer.update_weights_and_biases(batch_size=1)

        assert layer.weights.norm() == pytest.approx(MAX_NORM)
        np.testing.assert_allclose(layer.weights.to_array(), [[0.3, 0.4]], atol=1e-9)

    def test_concurrent_accumulation(self):
        """Parallel backward calls add up exactly like sequential ones."""
        rng = np.random.default_rng(5)
        weights = Matrix.from_array(rng.standard_normal((3, 4)))
        x = Matrix.from_array(rng.standard_normal((4, 1)))
        error = Matrix.from_array(rng.standard_normal((3, 1)))

        reference = FullyConnectedLayer(4, 3, 'sigmoid', weights=weights.copy())
        _, aux = reference.forward([x])
        reference.backward([error], [x], aux, 0.1)
        single = reference.grads['weight'].to_array()

        layer = FullyConnectedLayer(4, 3, 'sigmoid', weights=weights.copy())
        threads = [threading.Thread(target=layer.backward, args=([error], [x], aux, 0.1))
                   for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        np.testing.assert_allclose(layer.grads['weight'].to_array(), 8 * single)

    def test_xml_roundtrip(self):
        layer = FullyConnectedLayer(5, 3, 'softmax', rng=np.random.default_rng(2))
        loaded = roundtrip(layer)

        assert isinstance(loaded, FullyConnectedLayer)
        assert loaded.activation_function is ActivationFunction.Softmax
        assert loaded.weights.allclose(layer.weights, atol=0)
        assert loaded.biases.allclose(layer.biases, atol=0)


class TestConvolution:
    """Tests for ConvolutionLayer."""

    def test_forward_shape(self):
        layer = ConvolutionLayer((3, 10, 8), kernel_size=3, depth=4, activation='relu',
                                 rng=np.random.default_rng(0))
        inputs = [Matrix.random(10, 8, -1, 1, np.random.default_rng(i)) for i in range(3)]
        activated, aux = layer.forward(inputs)

        assert len(activated) == 4
        assert all(a.shape == (8, 6) for a in activated)
        assert layer.output_shape == (4, 8, 6)

    def test_forward_sums_channels_and_adds_bias(self):
        kernels = [[Matrix.filled(2, 2, 1.0), Matrix.filled(2, 2, 2.0)]]
        layer = ConvolutionLayer((2, 3, 3), 2, 1, 'relu', kernels=kernels,
                                 biases=Matrix.from_column([0.5]))

        inputs = [Matrix.filled(3, 3, 1.0), Matrix.filled(3, 3, 1.0)]
        activated, aux = layer.forward(inputs)

        # 4 * 1 + 4 * 2 + 0.5
        np.testing.assert_allclose(aux[0].to_array(), np.full((2, 2), 12.5))
        assert activated[0] == aux[0]

    def test_backward_shapes(self):
        """Propagated errors have the shape of the layer's inputs."""
        rng = np.random.default_rng(1)
        layer = ConvolutionLayer((2, 7, 7), 3, 5, 'sigmoid', rng=rng)
        inputs = [Matrix.random(7, 7, -1, 1, rng) for _ in range(2)]
        activated, aux = layer.forward(inputs)

        errors = [Matrix.random(5, 5, -1, 1, rng) for _ in range(5)]
        propagated = layer.backward(errors, inputs, aux, 0.1)

        assert len(propagated) == 2
        assert all(p.shape == (7, 7) for p in propagated)

    def test_stride_must_be_one(self):
        with pytest.raises(NetworkConfigurationError):
            ConvolutionLayer((1, 5, 5), 3, 2, 'relu', stride=2)

    def test_rejects_wrong_input(self):
        layer = ConvolutionLayer((1, 5, 5), 3, 2, 'relu', rng=np.random.default_rng(0))
        with pytest.raises(ShapeMismatchError):
            layer.forward([Matrix(5, 4)])
        with pytest.raises(ShapeMismatchError):
            layer.forward([Matrix(5, 5), Matrix(5, 5)])

    def test_update_clips_each_kernel(self):
        kernels = [[Matrix(2, 2)], [Matrix(2, 2)]]
        layer = ConvolutionLayer((1, 3, 3), 2, 2, 'relu', kernels=kernels)
        layer.grads['kernels'][0][0] = Matrix.filled(2, 2, 10.0)
        layer.grads['kernels'][1][0] = Matrix.filled(2, 2, 0.1)
        layer.grads['bias'] = Matrix.from_column([4.0, 0.0])

        layer.update_weights_and_biases(batch_size=2)

        assert layer.kernels[0][0].norm() == pytest.approx(MAX_NORM)
        np.testing.assert_allclose(layer.kernels[1][0].to_array(), np.full((2, 2), 0.05))
        # Biases are not clipped
        np.testing.assert_allclose(layer.biases.to_array(), [[2.0], [0.0]])

    def test_xml_roundtrip(self):
        layer = ConvolutionLayer((2, 6, 6), 3, 3, 'relu', rng=np.random.default_rng(4))
        layer.params['bias'] = Matrix.from_column([0.1, -0.2, 0.3])
        loaded = roundtrip(layer)

        assert isinstance(loaded, ConvolutionLayer)
        assert loaded.output_shape == layer.output_shape
        for i in range(3):
            for j in range(2):
                assert loaded.kernels[i][j] == layer.kernels[i][j]
        assert loaded.biases == layer.biases

    def test_load_missing_kernel_fails(self):
        layer = ConvolutionLayer((1, 4, 4), 2, 2, 'relu', rng=np.random.default_rng(0))
        heads = ET.Element('LayersHead')
        data = ET.Element('LayersData')
        layer.save_description(heads)
        layer.save_data(data)
        kernels = data[0].find('Kernels')
        kernels.remove(kernels[0])

        with pytest.raises(ModelFormatError):
            Layer.load(heads[0], data[0])


class TestPooling:
    """Tests for PoolingLayer."""

    def test_forward_shape(self):
        pool = PoolingLayer(pool_size=2, stride=2)
        activated, aux = pool.forward([Matrix(8, 6), Matrix(8, 6)])

        assert [a.shape for a in activated] == [(4, 3), (4, 3)]
        assert [m.shape for m in aux] == [(4, 3), (4, 3)]

    def test_max_values(self):
        x = Matrix.from_array([[1, 2, 5, 6],
                               [3, 4, 7, 8],
                               [9, 10, 13, 14],
                               [11, 12, 15, 16]])
        activated, aux = PoolingLayer(2, 2).forward([x])

        np.testing.assert_array_equal(activated[0].to_array(), [[4, 8], [12, 16]])
        np.testing.assert_array_equal(aux[0].to_array(), [[5, 7], [13, 15]])

    def test_backward_gradient_routing(self):
        """Gradients land only on the argmax cells."""
        x = Matrix.from_array([[1, 2], [3, 4]])
        pool = PoolingLayer(2, 2)
        activated, aux = pool.forward([x])

        propagated = pool.backward([Matrix.from_array([[1.0]])], [x], aux, 0.1)

        np.testing.assert_array_equal(propagated[0].to_array(), [[0, 0], [0, 1]])

    def test_xml_roundtrip(self):
        loaded = roundtrip(PoolingLayer(3, 2))
        assert isinstance(loaded, PoolingLayer)
        assert (loaded.pool_size, loaded.stride) == (3, 2)


class TestDropout:
    """Tests for DropoutLayer."""

    def test_mask_drops_exact_count(self):
        layer = DropoutLayer((10, 10), 0.3, rng=np.random.default_rng(0))
        mask = layer.mask.to_array()

        assert np.sum(mask == 0) == 30
        np.testing.assert_allclose(mask[mask != 0], 1 / 0.7)

    def test_mask_shared_by_channels(self):
        layer = DropoutLayer((4, 4), 0.5, rng=np.random.default_rng(1))
        ones = Matrix.filled(4, 4, 1.0)
        activated, aux = layer.forward([ones, ones * 2])

        np.testing.assert_allclose(activated[1].to_array(), 2 * activated[0].to_array())
        assert aux[0] == activated[0]

    def test_backward_uses_same_mask(self):
        layer = DropoutLayer((3, 3), 0.4, rng=np.random.default_rng(2))
        error = Matrix.filled(3, 3, 1.0)
        propagated = layer.backward([error], [error], [], 0.1)

        assert propagated[0] == layer.mask

    def test_mask_regenerated_on_update(self):
        layer = DropoutLayer((20, 20), 0.5, rng=np.random.default_rng(3))
        before = layer.mask
        activated, _ = layer.forward([Matrix.filled(20, 20, 1.0)])
        assert layer.mask is before

        layer.update_weights_and_biases(8)

        assert layer.mask != before
        assert np.sum(layer.mask.to_array() == 0) == 200

    def test_predict_scales(self):
        layer = DropoutLayer((2, 2), 0.25, rng=np.random.default_rng(0))
        output = layer.predict([Matrix.filled(2, 2, 4.0)])
        np.testing.assert_allclose(output[0].to_array(), np.full((2, 2), 3.0))

    @pytest.mark.parametrize('rate', [-0.1, 0.95])
    def test_rate_out_of_range(self, rate):
        with pytest.raises(NetworkConfigurationError):
            DropoutLayer((2, 2), rate)

    def test_xml_roundtrip(self):
        loaded = roundtrip(DropoutLayer((5, 1), 0.2, rng=np.random.default_rng(0)))
        assert isinstance(loaded, DropoutLayer)
        assert (loaded.input_height, loaded.input_width, loaded.rate) == (5, 1, 0.2)


class TestReshape:
    """Tests for ReshapeLayer."""

    def test_forward_flattens_channel_major(self):
        a = Matrix.from_array([[1, 2], [3, 4]])
        b = Matrix.from_array([[5, 6], [7, 8]])
        activated, aux = ReshapeLayer(2, 2).forward([a, b])

        assert activated[0].to_array().ravel().tolist() == [1, 2, 3, 4, 5, 6, 7, 8]
        assert aux[0] == activated[0]

    def test_backward_restores_channels(self):
        layer = ReshapeLayer(2, 3)
        channels = [Matrix.random(2, 3, -1, 1, np.random.default_rng(i)) for i in range(3)]
        flat, _ = layer.forward(channels)

        restored = layer.backward(flat, channels, [], 0.1)

        assert restored == channels

    def test_xml_roundtrip(self):
        loaded = roundtrip(ReshapeLayer(4, 5))
        assert isinstance(loaded, ReshapeLayer)
        assert (loaded.rows, loaded.columns) == (4, 5)


class TestLayerLoading:

    def test_unknown_layer_type(self):
        head = ET.Element('LayerHead', LayerType='Recurrent')
        with pytest.raises(ModelFormatError):
            Layer.load(head, ET.Element('LayerData'))

    def test_missing_field(self):
        head = ET.Element('LayerHead', LayerType='Pooling')
        ET.SubElement(head, 'PoolSize').text = '2'
        with pytest.raises(ModelFormatError):
            Layer.load(head, ET.Element('LayerData'))
