"""
Network Layers
==============

The building blocks of a NeuralNetwork, each operating on a channel list
(a list of 2-D Matrix objects).

Layers implemented:
- FullyConnectedLayer: activation(W . x + b) over a single-column input
- ConvolutionLayer: stride-1 valid cross-correlation with a bank of kernels
- PoolingLayer: max pooling with an argmax map for gradient routing
- DropoutLayer: fixed-count inverted dropout mask shared by all channels
- ReshapeLayer: flattens feature maps for the fully connected stack

Every layer follows the same contract:
    forward(inputs) -> (activated, aux)
    backward(error, prev_activated, aux, learning_rate) -> error for previous layer
    update_weights_and_biases(batch_size)

``aux`` is whatever the layer needs during backward (pre-activation values,
argmax maps, ...) and is handed back unchanged.

Gradient sums are scaled by the learning rate at accumulation time and may
be written by several sample workers at once, so accumulation is guarded
by a per-layer lock.
"""

import threading
import xml.etree.ElementTree as ET

import numpy as np

from . import matrix_ops
from .activations import ActivationFunction, get_activation, to_activation_function
from .exceptions import ModelFormatError, NetworkConfigurationError, ShapeMismatchError
from .matrix import Matrix
from .persistence import add_text_element, parse_matrix, required_float, required_int, required_text
from .templates import MAX_DROPOUT_RATE, LayerType

#: Frobenius-norm ceiling applied to every weight/kernel update.
MAX_NORM = 0.5

_FLOAT_EPSILON = np.finfo(np.float32).tiny


def initialize_for(matrix, activation, rng=None):
    """He initialization for ReLU, Xavier for Sigmoid and Softmax."""
    if activation is ActivationFunction.ReLU:
        return matrix.initialize_he(rng)
    return matrix.initialize_xavier(rng)


def clip_by_norm(change, max_norm=MAX_NORM):
    """Rescale ``change`` so its Frobenius norm does not exceed ``max_norm``."""
    coefficient = max_norm / (change.norm() + _FLOAT_EPSILON)
    if coefficient < 1:
        return change * coefficient
    return change


class Layer:
    """Base class for all layers."""

    layer_type = None

    def __init__(self):
        self.params = {}    # Trainable parameters
        self.grads = {}     # Accumulated (learning-rate scaled) changes
        self._lock = threading.Lock()

    def forward(self, inputs):
        """Forward pass; returns (activated, aux)."""
        raise NotImplementedError

    def backward(self, error, prev_activated, aux, learning_rate):
        """Backward pass; returns the error for the previous layer."""
        raise NotImplementedError

    def update_weights_and_biases(self, batch_size):
        """Apply the averaged accumulated change and reset the sums."""

    def predict(self, inputs):
        """Inference-time output for ``inputs``."""
        activated, _ = self.forward(inputs)
        return activated

    def __call__(self, inputs):
        return self.forward(inputs)

    def parameter_count(self):
        count = 0
        for value in self.params.values():
            if isinstance(value, Matrix):
                count += len(value)
            else:
                count += sum(len(m) for row in value for m in row)
        return count

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_description(self, parent):
        """Append this layer's <LayerHead> to ``parent``."""
        head = ET.SubElement(parent, 'LayerHead', LayerType=self.layer_type.value)
        self._write_description(head)
        return head

    def save_data(self, parent):
        """Append this layer's <LayerData> to ``parent``."""
        data = ET.SubElement(parent, 'LayerData')
        self._write_data(data)
        return data

    def _write_description(self, head):
        pass

    def _write_data(self, data):
        pass

    @classmethod
    def from_xml(cls, head, data, rng=None):
        raise NotImplementedError

    @staticmethod
    def load(head, data, rng=None):
        """
        Rebuild a layer from a <LayerHead>/<LayerData> pair.

        Raises:
            ModelFormatError: unknown layer type or missing/invalid fields.
        """
        type_name = head.get('LayerType')
        try:
            layer_type = LayerType(type_name)
        except ValueError as exc:
            raise ModelFormatError(f"Unknown layer type: {type_name!r}") from exc
        try:
            return LAYER_TYPES[layer_type].from_xml(head, data, rng)
        except (NetworkConfigurationError, ShapeMismatchError) as exc:
            raise ModelFormatError(f"Invalid {type_name} layer: {exc}") from exc


def _single_channel(channels, what):
    if len(channels) != 1:
        raise ShapeMismatchError(f"Fully connected layer can only have one {what}, got {len(channels)}")
    return channels[0]


class FullyConnectedLayer(Layer):
    """
    Fully Connected Layer.

    Args:
        previous_layer_size: Number of input features
        layer_size: Number of output neurons
        activation: ActivationFunction or name
        rng: numpy Generator used for initialization
        weights, biases: Restored parameters; skip initialization when given

    Forward: output = activation(W . x + b), W shaped (layer_size, previous_layer_size)

    Backward:
        delta = learning_rate * activation'(z) * error
        weight sum += delta . x^T
        bias sum += delta
        error for previous layer = W^T . error
    """

    layer_type = LayerType.FullyConnected

    def __init__(self, previous_layer_size, layer_size, activation, rng=None,
                 weights=None, biases=None):
        super().__init__()
        self.previous_layer_size = previous_layer_size
        self.layer_size = layer_size
        self.activation_function = to_activation_function(activation)
        self.activation = get_activation(self.activation_function)

        if weights is None:
            weights = initialize_for(Matrix(layer_size, previous_layer_size),
                                     self.activation_function, rng)
        if biases is None:
            biases = Matrix(layer_size, 1)
        if weights.shape != (layer_size, previous_layer_size) or biases.shape != (layer_size, 1):
            raise ShapeMismatchError(
                f"Weights {weights.shape} / biases {biases.shape} do not fit "
                f"a {previous_layer_size} -> {layer_size} layer"
            )

        self.params['weight'] = weights
        self.params['bias'] = biases
        self._reset_sums()

    def _reset_sums(self):
        self.grads['weight'] = Matrix(self.layer_size, self.previous_layer_size)
        self.grads['bias'] = Matrix(self.layer_size, 1)

    @property
    def weights(self):
        return self.params['weight']

    @property
    def biases(self):
        return self.params['bias']

    def forward(self, inputs):
        x = _single_channel(inputs, 'input')
        z = self.params['weight'].dot(x) + self.params['bias']
        return [self.activation(z)], [z]

    def backward(self, error, prev_activated, aux, learning_rate):
        err = _single_channel(error, 'error')
        delta = self.activation.derivative(aux[0]).multiply(err) * learning_rate
        weight_change = delta.dot(prev_activated[0].transpose())

        with self._lock:
            self.grads['weight'] = self.grads['weight'] + weight_change
            self.grads['bias'] = self.grads['bias'] + delta

        return [self.params['weight'].transpose().dot(err)]

    def update_weights_and_biases(self, batch_size):
        multiplier = 1.0 / batch_size
        with self._lock:
            weight_change = clip_by_norm(self.grads['weight'] * multiplier)
            self.params['weight'] = self.params['weight'] + weight_change
            self.params['bias'] = self.params['bias'] + self.grads['bias'] * multiplier
            self._reset_sums()

    def _write_description(self, head):
        add_text_element(head, 'previousLayerSize', self.previous_layer_size)
        add_text_element(head, 'layerSize', self.layer_size)
        add_text_element(head, 'activationFunction', self.activation_function.value)

    def _write_data(self, data):
        add_text_element(data, 'Weights', self.params['weight'].to_file_string())
        add_text_element(data, 'Biases', self.params['bias'].to_file_string())

    @classmethod
    def from_xml(cls, head, data, rng=None):
        previous_layer_size = required_int(head, 'previousLayerSize')
        layer_size = required_int(head, 'layerSize')
        activation = _required_activation(head, 'activationFunction')
        weights = parse_matrix(required_text(data, 'Weights'), 'Weights')
        biases = parse_matrix(required_text(data, 'Biases'), 'Biases')
        return cls(previous_layer_size, layer_size, activation, rng=rng,
                   weights=weights, biases=biases)

    def __repr__(self):
        return (f"FullyConnected({self.previous_layer_size} -> {self.layer_size}, "
                f"{self.activation_function.value})")


class ConvolutionLayer(Layer):
    """
    2D Convolution Layer (stride 1, no padding).

    Args:
        input_shape: (input_depth, input_height, input_width)
        kernel_size: Side of the square kernels
        depth: Number of output feature maps
        activation: ActivationFunction or name
        stride: Must be 1
        rng: numpy Generator used for initialization
        kernels, biases: Restored parameters; skip initialization when given

    Kernels form a depth x input_depth grid of kernel_size x kernel_size
    matrices; there is one bias per output map.

    Forward:
        Z[i] = sum_j cross_correlation_valid(X[j], K[i][j]) + b[i]
        A[i] = activation(Z[i])

    Backward:
        dZ[i] = error[i] * activation'(Z[i])
        K sum[i][j] += learning_rate * cross_correlation_valid(X[j], dZ[i])
        b sum[i] += learning_rate * sum(dZ[i])
        dX[j] = sum_i convolution_full(dZ[i], K[i][j])
    """

    layer_type = LayerType.Convolution

    def __init__(self, input_shape, kernel_size, depth, activation, stride=1, rng=None,
                 kernels=None, biases=None):
        super().__init__()
        if stride != 1:
            raise NetworkConfigurationError("Convolution only supports stride 1")

        self.input_depth, self.input_height, self.input_width = input_shape
        self.kernel_size = kernel_size
        self.depth = depth
        self.stride = stride
        self.activation_function = to_activation_function(activation)
        self.activation = get_activation(self.activation_function)

        self.output_rows, self.output_columns = matrix_ops.size_after_convolution(
            (self.input_height, self.input_width), (kernel_size, kernel_size), stride)
        if self.output_rows < 1 or self.output_columns < 1:
            raise NetworkConfigurationError(
                f"Kernel {kernel_size}x{kernel_size} does not fit input "
                f"{self.input_height}x{self.input_width}"
            )

        if kernels is None:
            kernels = [[initialize_for(Matrix(kernel_size, kernel_size), self.activation_function, rng)
                        for _ in range(self.input_depth)]
                       for _ in range(depth)]
        if biases is None:
            biases = Matrix(depth, 1)
        self._check_parameters(kernels, biases)

        self.params['kernels'] = kernels
        self.params['bias'] = biases
        self._reset_sums()

    def _check_parameters(self, kernels, biases):
        if len(kernels) != self.depth or any(len(row) != self.input_depth for row in kernels):
            raise ShapeMismatchError(f"Expected {self.depth}x{self.input_depth} kernels")
        for row in kernels:
            for kernel in row:
                if kernel.shape != (self.kernel_size, self.kernel_size):
                    raise ShapeMismatchError(
                        f"Kernel {kernel.shape} is not {self.kernel_size}x{self.kernel_size}"
                    )
        if biases.shape != (self.depth, 1):
            raise ShapeMismatchError(f"Expected {self.depth} biases, got {biases.shape}")

    def _reset_sums(self):
        self.grads['kernels'] = [[Matrix(self.kernel_size, self.kernel_size)
                                  for _ in range(self.input_depth)]
                                 for _ in range(self.depth)]
        self.grads['bias'] = Matrix(self.depth, 1)

    @property
    def kernels(self):
        return self.params['kernels']

    @property
    def biases(self):
        return self.params['bias']

    @property
    def output_shape(self):
        return self.depth, self.output_rows, self.output_columns

    def _check_inputs(self, inputs):
        if len(inputs) != self.input_depth:
            raise ShapeMismatchError(f"Expected {self.input_depth} channels, got {len(inputs)}")
        for channel in inputs:
            if channel.shape != (self.input_height, self.input_width):
                raise ShapeMismatchError(
                    f"Expected {self.input_height}x{self.input_width} channel, got {channel.shape}"
                )

    def forward(self, inputs):
        self._check_inputs(inputs)
        kernels = self.params['kernels']
        biases = self.params['bias']

        pre_activation = []
        activated = []
        for i in range(self.depth):
            z = Matrix(self.output_rows, self.output_columns)
            for j in range(self.input_depth):
                z = z + matrix_ops.cross_correlation_valid(inputs[j], kernels[i][j], self.stride)
            z = z + biases[i, 0]
            pre_activation.append(z)
            activated.append(self.activation(z))

        return activated, pre_activation

    def backward(self, error, prev_activated, aux, learning_rate):
        kernels = self.params['kernels']
        kernel_changes = [[None] * self.input_depth for _ in range(self.depth)]
        bias_changes = np.zeros(self.depth)
        previous_error = [Matrix(self.input_height, self.input_width) for _ in range(self.input_depth)]

        for i in range(self.depth):
            dz = error[i].multiply(self.activation.derivative(aux[i]))
            for j in range(self.input_depth):
                kernel_changes[i][j] = matrix_ops.cross_correlation_valid(prev_activated[j], dz) * learning_rate
                previous_error[j] = previous_error[j] + matrix_ops.convolution_full(dz, kernels[i][j])
            bias_changes[i] = learning_rate * dz.sum()

        with self._lock:
            sums = self.grads['kernels']
            for i in range(self.depth):
                for j in range(self.input_depth):
                    sums[i][j] = sums[i][j] + kernel_changes[i][j]
            self.grads['bias'] = self.grads['bias'] + Matrix.from_column(bias_changes)

        return previous_error

    def update_weights_and_biases(self, batch_size):
        multiplier = 1.0 / batch_size
        with self._lock:
            kernels = self.params['kernels']
            sums = self.grads['kernels']
            for i in range(self.depth):
                for j in range(self.input_depth):
                    kernels[i][j] = kernels[i][j] + clip_by_norm(sums[i][j] * multiplier)
            self.params['bias'] = self.params['bias'] + self.grads['bias'] * multiplier
            self._reset_sums()

    def _write_description(self, head):
        add_text_element(head, 'inputShape',
                         f"{self.input_depth} {self.input_height} {self.input_width}")
        add_text_element(head, 'depth', self.depth)
        add_text_element(head, 'kernelSize', self.kernel_size)
        add_text_element(head, 'stride', self.stride)
        add_text_element(head, 'activationFunction', self.activation_function.value)

    def _write_data(self, data):
        kernels_element = ET.SubElement(data, 'Kernels')
        for i, row in enumerate(self.params['kernels']):
            for j, kernel in enumerate(row):
                element = add_text_element(kernels_element, 'Kernel', kernel.to_file_string())
                element.set('Index', f"{i} {j}")

        biases_element = ET.SubElement(data, 'Biases')
        for i in range(self.depth):
            element = add_text_element(biases_element, 'Bias', repr(self.params['bias'][i, 0]))
            element.set('Index', str(i))

    @classmethod
    def from_xml(cls, head, data, rng=None):
        input_shape = _parse_ints(required_text(head, 'inputShape'), 3, 'inputShape')
        depth = required_int(head, 'depth')
        kernel_size = required_int(head, 'kernelSize')
        stride = required_int(head, 'stride')
        activation = _required_activation(head, 'activationFunction')

        kernels_element = data.find('Kernels')
        biases_element = data.find('Biases')
        if kernels_element is None or biases_element is None:
            raise ModelFormatError("Convolution data requires <Kernels> and <Biases>")

        kernels = [[None] * input_shape[0] for _ in range(depth)]
        for element in kernels_element.findall('Kernel'):
            i, j = _parse_ints(element.get('Index'), 2, 'Kernel Index')
            if not (0 <= i < depth and 0 <= j < input_shape[0]):
                raise ModelFormatError(f"Kernel index ({i}, {j}) out of range")
            kernels[i][j] = parse_matrix(element.text, f"Kernel {i} {j}")
        if any(k is None for row in kernels for k in row):
            raise ModelFormatError("Convolution data is missing kernels")

        biases = [None] * depth
        for element in biases_element.findall('Bias'):
            (i,) = _parse_ints(element.get('Index'), 1, 'Bias Index')
            if not 0 <= i < depth:
                raise ModelFormatError(f"Bias index {i} out of range")
            try:
                biases[i] = float(element.text)
            except (TypeError, ValueError) as exc:
                raise ModelFormatError(f"Invalid bias value {element.text!r}") from exc
        if any(b is None for b in biases):
            raise ModelFormatError("Convolution data is missing biases")

        return cls(tuple(input_shape), kernel_size, depth, activation, stride=stride, rng=rng,
                   kernels=kernels, biases=Matrix.from_column(biases))

    def __repr__(self):
        return (f"Convolution({self.input_depth}x{self.input_height}x{self.input_width} -> "
                f"{self.depth}x{self.output_rows}x{self.output_columns}, "
                f"kernel={self.kernel_size}, {self.activation_function.value})")


class PoolingLayer(Layer):
    """
    Max Pooling Layer.

    Keeps the largest value of every pool_size x pool_size window, moving
    ``stride`` cells at a time. The argmax map (aux output) records which
    input cell won each window so backward can route the gradient to it;
    every other cell receives zero.
    """

    layer_type = LayerType.Pooling

    def __init__(self, pool_size, stride):
        super().__init__()
        if pool_size < 1 or stride < 1:
            raise NetworkConfigurationError("Pool size and stride must be positive")
        self.pool_size = pool_size
        self.stride = stride

    def forward(self, inputs):
        activated = []
        index_maps = []
        for channel in inputs:
            pooled, index_map = matrix_ops.max_pooling(channel, self.pool_size, self.stride)
            activated.append(pooled)
            index_maps.append(index_map)
        return activated, index_maps

    def backward(self, error, prev_activated, aux, learning_rate):
        return [
            matrix_ops.max_unpooling(error[i], aux[i], prev_activated[i].rows, prev_activated[i].columns)
            for i in range(len(error))
        ]

    def _write_description(self, head):
        add_text_element(head, 'PoolSize', self.pool_size)
        add_text_element(head, 'Stride', self.stride)

    @classmethod
    def from_xml(cls, head, data, rng=None):
        return cls(required_int(head, 'PoolSize'), required_int(head, 'Stride'))

    def __repr__(self):
        return f"Pooling(pool_size={self.pool_size}, stride={self.stride})"


class DropoutLayer(Layer):
    """
    Dropout Layer for regularization.

    The mask has the shape of one input channel and is shared by every
    channel: all cells hold 1 / (1 - rate) except exactly
    int(rate * rows * columns) randomly chosen cells, which hold 0.

    The same mask is used for forward and backward and is only redrawn in
    ``update_weights_and_biases``, i.e. once per mini-batch.

    At prediction time the mask is not applied; inputs are scaled by
    (1 - rate) instead.
    """

    layer_type = LayerType.Dropout

    def __init__(self, input_shape, rate, rng=None):
        super().__init__()
        if not 0.0 <= rate <= MAX_DROPOUT_RATE:
            raise NetworkConfigurationError(
                f"Dropout rate must be in [0, {MAX_DROPOUT_RATE}], got {rate}"
            )
        self.input_height, self.input_width = input_shape
        self.rate = rate
        self.rng = rng if rng is not None else np.random.default_rng()
        self.mask = self.generate_mask()

    def generate_mask(self):
        size = self.input_height * self.input_width
        amount_to_drop = int(self.rate * size)
        values = np.full(size, 1.0 / (1.0 - self.rate))
        values[self.rng.choice(size, size=amount_to_drop, replace=False)] = 0.0
        return Matrix.from_array(values.reshape(self.input_height, self.input_width))

    def forward(self, inputs):
        mask = self.mask
        masked = [channel.multiply(mask) for channel in inputs]
        return masked, masked

    def backward(self, error, prev_activated, aux, learning_rate):
        mask = self.mask
        return [channel.multiply(mask) for channel in error]

    def update_weights_and_biases(self, batch_size):
        self.mask = self.generate_mask()

    def predict(self, inputs):
        return [channel * (1.0 - self.rate) for channel in inputs]

    def _write_description(self, head):
        add_text_element(head, 'InputHeight', self.input_height)
        add_text_element(head, 'InputWidth', self.input_width)
        add_text_element(head, 'DropoutRate', repr(float(self.rate)))

    @classmethod
    def from_xml(cls, head, data, rng=None):
        shape = (required_int(head, 'InputHeight'), required_int(head, 'InputWidth'))
        return cls(shape, required_float(head, 'DropoutRate'), rng=rng)

    def __repr__(self):
        return f"Dropout(rate={self.rate})"


class ReshapeLayer(Layer):
    """
    Flattens feature maps into one column for the fully connected stack.

    ``rows`` and ``columns`` are the shape of each incoming channel; backward
    splits the error column back into channels of that shape.
    """

    layer_type = LayerType.Reshape

    def __init__(self, rows, columns):
        super().__init__()
        self.rows = rows
        self.columns = columns

    def forward(self, inputs):
        flat = matrix_ops.flatten(inputs)
        return [flat], [flat]

    def backward(self, error, prev_activated, aux, learning_rate):
        return matrix_ops.unflatten(error[0], self.rows, self.columns)

    def _write_description(self, head):
        add_text_element(head, 'RowsAmount', self.rows)
        add_text_element(head, 'ColumnsAmount', self.columns)

    @classmethod
    def from_xml(cls, head, data, rng=None):
        return cls(required_int(head, 'RowsAmount'), required_int(head, 'ColumnsAmount'))

    def __repr__(self):
        return f"Reshape({self.rows}x{self.columns} -> column)"


# ============================================================================
# Helpers
# ============================================================================

def _required_activation(element, tag):
    text = required_text(element, tag)
    try:
        return to_activation_function(text.strip())
    except ValueError as exc:
        raise ModelFormatError(f"Invalid <{tag}>: {text!r}") from exc


def _parse_ints(text, count, what):
    parts = (text or '').split()
    if len(parts) != count:
        raise ModelFormatError(f"{what} must hold {count} integers, got {text!r}")
    try:
        return [int(p) for p in parts]
    except ValueError as exc:
        raise ModelFormatError(f"{what} must hold integers, got {text!r}") from exc


LAYER_TYPES = {
    LayerType.FullyConnected: FullyConnectedLayer,
    LayerType.Convolution: ConvolutionLayer,
    LayerType.Pooling: PoolingLayer,
    LayerType.Dropout: DropoutLayer,
    LayerType.Reshape: ReshapeLayer,
}
