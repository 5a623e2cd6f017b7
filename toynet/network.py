"""
Neural Network Orchestrator
===========================

This is the main class that ties everything together:
- Building a validated layer stack from LayerTemplates
- Forward pass (with a trace of every layer's outputs)
- Backward pass (backpropagation)
- Parallel mini-batch training with cooperative cancellation
- Prediction and evaluation
- Model saving/loading (XML)

Layer stack rules:
    - at least one template; the last one is FullyConnected with Softmax
    - Convolution/Pooling may not appear after a FullyConnected layer
    - Dropout may not be first
    - one Reshape layer is inserted in front of the first FullyConnected
      layer when the incoming data is not already a single column
"""

import logging
import threading
import xml.etree.ElementTree as ET
from concurrent.futures import ThreadPoolExecutor

import numpy as np
from tqdm import tqdm

from . import matrix_ops
from .activations import ActivationFunction
from .events import BatchTrained, EpochTrained, SampleTrained, TrainingEvents, TrainingFinished
from .exceptions import ModelFormatError, NetworkConfigurationError, ShapeMismatchError
from .layers import (ConvolutionLayer, DropoutLayer, FullyConnectedLayer, Layer,
                     PoolingLayer, ReshapeLayer)
from .losses import clamp_prediction, cross_entropy_cost
from .matrix import Matrix
from .persistence import (add_text_element, file_exists, optional_float, read_xml,
                          required_float, required_int, required_text, write_xml)
from .templates import LayerType

logger = logging.getLogger(__name__)

#: Upper bound on the training samples scored at the end of every epoch.
CORRECTNESS_SAMPLE_LIMIT = 1000


def _normalize_input_shape(input_shape):
    """An int n means a single n x 1 channel."""
    if isinstance(input_shape, (int, np.integer)):
        return 1, int(input_shape), 1
    depth, rows, columns = input_shape
    return int(depth), int(rows), int(columns)


class NeuralNetwork:
    """
    Feedforward network over channel lists of Matrix objects.

    A sample is a tuple (channels, target): a list of input matrices and a
    one-hot single-column target.

    Args:
        input_shape: (depth, rows, columns), or an int for a flat input
        templates: Sequence of LayerTemplate, first to last
        rng: numpy Generator for initialization, dropout and shuffling
        max_workers: Thread count for per-sample work (None = executor default)

    Example:
        >>> net = NeuralNetwork(4, [
        ...     LayerTemplate.fully_connected(4, 'relu'),
        ...     LayerTemplate.fully_connected(2, 'softmax'),
        ... ], rng=np.random.default_rng(0))
        >>> net.train(samples, learning_rate=0.5, epochs=50, batch_size=8)
        >>> net.predict([Matrix.from_column([1, 1, 1, 1])]).index_of_max()
        1
    """

    def __init__(self, input_shape, templates, rng=None, max_workers=None):
        self.input_shape = _normalize_input_shape(input_shape)
        self.rng = rng if rng is not None else np.random.default_rng()
        self.max_workers = max_workers
        self.learning_rate = 0.0
        self.last_train_correctness = 0.0

        self.layers = self._build_layers(list(templates))
        logger.info("Built network %s with %d layers", self.input_shape, len(self.layers))

    @classmethod
    def _from_layers(cls, input_shape, layers, rng=None, learning_rate=0.0,
                     last_train_correctness=0.0, max_workers=None):
        network = cls.__new__(cls)
        network.input_shape = _normalize_input_shape(input_shape)
        network.rng = rng if rng is not None else np.random.default_rng()
        network.max_workers = max_workers
        network.learning_rate = learning_rate
        network.last_train_correctness = last_train_correctness
        network.layers = list(layers)
        return network

    def _build_layers(self, templates):
        if not templates:
            raise NetworkConfigurationError("At least one layer should be provided")

        last = templates[-1]
        if last.layer_type is not LayerType.FullyConnected:
            raise NetworkConfigurationError("Last layer should be fully connected")
        if last.activation is not ActivationFunction.Softmax:
            raise NetworkConfigurationError("Last layer should have softmax activation function")
        if templates[0].layer_type is LayerType.Dropout:
            raise NetworkConfigurationError("Dropout layer can't be first in sequence")

        layers = []
        depth, rows, columns = self.input_shape
        seen_fully_connected = False

        for template in templates:
            layer_type = template.layer_type

            if layer_type is LayerType.Convolution:
                if seen_fully_connected:
                    raise NetworkConfigurationError("Convolution layer can't follow a fully connected layer")
                layer = ConvolutionLayer((depth, rows, columns), template.kernel_size, template.depth,
                                         template.activation, stride=template.stride, rng=self.rng)
                depth, rows, columns = layer.output_shape

            elif layer_type is LayerType.Pooling:
                if seen_fully_connected:
                    raise NetworkConfigurationError("Pooling layer can't follow a fully connected layer")
                rows, columns = matrix_ops.size_after_pooling((rows, columns), template.pool_size,
                                                              template.stride)
                if rows < 1 or columns < 1:
                    raise NetworkConfigurationError(
                        f"Pool size {template.pool_size} does not fit the incoming feature maps"
                    )
                layer = PoolingLayer(template.pool_size, template.stride)

            elif layer_type is LayerType.Dropout:
                layer = DropoutLayer((rows, columns), template.dropout_rate, rng=self.rng)

            elif layer_type is LayerType.FullyConnected:
                if not seen_fully_connected and (depth != 1 or columns != 1):
                    layers.append(ReshapeLayer(rows, columns))
                    depth, rows, columns = 1, rows * columns * depth, 1
                layer = FullyConnectedLayer(rows, template.layer_size, template.activation, rng=self.rng)
                depth, rows, columns = 1, template.layer_size, 1
                seen_fully_connected = True

            else:
                raise NetworkConfigurationError(f"Unsupported layer template: {layer_type}")

            layers.append(layer)

        return layers

    # ------------------------------------------------------------------
    # Forward / backward
    # ------------------------------------------------------------------

    def _check_input(self, channels):
        depth, rows, columns = self.input_shape
        if len(channels) != depth:
            raise ShapeMismatchError(f"Expected {depth} input channels, got {len(channels)}")
        for channel in channels:
            if channel.shape != (rows, columns):
                raise ShapeMismatchError(
                    f"Input channels have wrong dimensions: got {channel.rows}x{channel.columns}, "
                    f"expected {rows}x{columns}"
                )

    def feedforward(self, channels):
        """
        Forward pass recording every layer's outputs.

        Returns:
            (output, trace): the single output matrix and a list of
            (activated, aux) per layer, entry 0 holding the input.
        """
        self._check_input(channels)
        trace = [(channels, [])]
        current = channels
        for layer in self.layers:
            current, aux = layer.forward(current)
            trace.append((current, aux))

        if len(current) != 1:
            raise ShapeMismatchError("Prediction should return only one matrix")
        return current[0], trace

    def backpropagation(self, expected, prediction, trace):
        """
        Backward pass seeded with (expected - prediction).

        Layers accumulate their own changes; nothing is applied until
        ``update_weights_and_biases``.
        """
        error = [expected.subtract(prediction)]
        for i in range(len(self.layers) - 1, -1, -1):
            prev_activated = trace[i][0]
            aux = trace[i + 1][1]
            error = self.layers[i].backward(error, prev_activated, aux, self.learning_rate)
        return error

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def _train_sample(self, sample, cancel_event):
        if cancel_event.is_set():
            return None
        channels, expected = sample
        prediction, trace = self.feedforward(channels)
        prediction = clamp_prediction(prediction)
        loss = cross_entropy_cost(expected, prediction)
        self.backpropagation(expected, prediction, trace)
        return loss

    def train(self, data, learning_rate, epochs, batch_size, cancel_event=None,
              events=None, verbose=False):
        """
        Train with mini-batch SGD, processing the samples of a batch in parallel.

        Args:
            data: Sequence of (channels, target) samples
            learning_rate: Initial learning rate (observers may change
                ``self.learning_rate`` while training runs)
            epochs: Number of passes over ``data``
            batch_size: Samples per weight update. The last batch may be shorter;
                its update and mean loss are averaged over the samples it holds,
                not over ``batch_size``
            cancel_event: threading.Event; when set, the current batch is
                abandoned without updating weights
            events: TrainingEvents channel receiving progress events
            verbose: Show a tqdm progress bar per epoch

        Returns:
            True if every epoch ran, False if training was cancelled.
        """
        data = list(data)
        if not data:
            raise ValueError("Training data is empty")
        if batch_size < 1:
            raise ValueError("Batch size must be positive")

        cancel_event = cancel_event if cancel_event is not None else threading.Event()
        events = events if events is not None else TrainingEvents()
        self.learning_rate = learning_rate
        n_batches = (len(data) + batch_size - 1) // batch_size

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            for epoch in range(1, epochs + 1):
                data = [data[i] for i in self.rng.permutation(len(data))]
                batch_starts = range(0, len(data), batch_size)

                # Progress bar for batches
                if verbose:
                    pbar = tqdm(batch_starts, total=n_batches, desc=f"Epoch {epoch}/{epochs}")
                else:
                    pbar = batch_starts

                for begin in pbar:
                    if cancel_event.is_set():
                        return self._finish_cancelled(events)

                    batch = data[begin:begin + batch_size]
                    futures = [executor.submit(self._train_sample, sample, cancel_event)
                               for sample in batch]
                    losses = [future.result() for future in futures]

                    for offset, loss in enumerate(losses):
                        if loss is not None:
                            events.publish(SampleTrained(epoch, begin + offset, loss))

                    if cancel_event.is_set():
                        return self._finish_cancelled(events)

                    for layer in self.layers:
                        layer.update_weights_and_biases(len(batch))

                    mean_loss = sum(losses) / len(batch)
                    percent = 100.0 * (begin + len(batch)) / len(data)
                    logger.debug("Epoch %d: %.1f%% done, batch loss %.4f", epoch, percent, mean_loss)
                    events.publish(BatchTrained(epoch, percent, mean_loss))

                    if verbose:
                        pbar.set_postfix({'loss': f'{mean_loss:.4f}', 'lr': f'{self.learning_rate:.6f}'})

                order = self.rng.permutation(len(data))[:CORRECTNESS_SAMPLE_LIMIT]
                correctness = self.calculate_correctness([data[i] for i in order])
                self.last_train_correctness = correctness
                logger.info("Epoch %d/%d - correctness: %.2f%% - lr: %.6f",
                            epoch, epochs, correctness, self.learning_rate)
                events.publish(EpochTrained(epoch, correctness))

        events.publish(TrainingFinished(cancelled=False))
        return True

    def _finish_cancelled(self, events):
        logger.warning("Training cancelled; discarding the current batch")
        events.publish(TrainingFinished(cancelled=True))
        return False

    def train_in_background(self, data, learning_rate, epochs, batch_size, events=None,
                            verbose=False):
        """
        Run ``train`` on a background thread.

        Returns:
            (future, cancel_event): the future resolves to ``train``'s result;
            set ``cancel_event`` to stop training.
        """
        cancel_event = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(self.train, data, learning_rate, epochs, batch_size,
                                 cancel_event, events, verbose)
        executor.shutdown(wait=False)
        return future, cancel_event

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def predict(self, channels):
        """
        Network output for one input; Dropout layers only scale their inputs.

        Args:
            channels: List of input matrices, or a single Matrix
        """
        if isinstance(channels, Matrix):
            channels = [channels]
        self._check_input(channels)

        current = channels
        for layer in self.layers:
            current = layer.predict(current)

        if len(current) != 1:
            raise ShapeMismatchError("Prediction should return only one matrix")
        return current[0]

    def predict_class(self, channels):
        return self.predict(channels).index_of_max()

    def calculate_correctness(self, samples):
        """Percentage (0-100) of samples whose predicted class is the expected one."""
        samples = list(samples)
        if not samples:
            raise ValueError("Cannot calculate correctness of an empty sample set")

        guessed = 0
        lock = threading.Lock()

        def check(sample):
            nonlocal guessed
            channels, expected = sample
            if self.predict(channels).index_of_max() == expected.index_of_max():
                with lock:
                    guessed += 1

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            list(executor.map(check, samples))

        return guessed * 100.0 / len(samples)

    def calculate_error(self, samples):
        """Mean cross-entropy of the (epsilon-shifted) predictions."""
        samples = list(samples)
        if not samples:
            raise ValueError("Cannot calculate error of an empty sample set")

        def error(sample):
            channels, expected = sample
            return cross_entropy_cost(expected, clamp_prediction(self.predict(channels)))

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            errors = list(executor.map(error, samples))
        return sum(errors) / len(errors)

    def is_convolutional(self):
        return any(layer.layer_type in (LayerType.Convolution, LayerType.Pooling)
                   for layer in self.layers)

    def feature_maps(self, channels):
        """
        Outputs of every Convolution and Pooling layer for one input.

        Returns:
            List of dicts with 'layer_index', 'layer' and 'feature_maps'
        """
        if isinstance(channels, Matrix):
            channels = [channels]
        self._check_input(channels)

        maps = []
        current = channels
        for i, layer in enumerate(self.layers):
            current = layer.predict(current)
            if isinstance(layer, (ConvolutionLayer, PoolingLayer)):
                maps.append({
                    'layer_index': i,
                    'layer': layer,
                    'feature_maps': [m.copy() for m in current],
                })
        return maps

    def summary(self):
        """Model summary as text; returns (text, total_params)."""
        lines = [
            "=" * 70,
            "Neural Network Summary",
            "=" * 70,
            f"Input shape: {self.input_shape}",
            "-" * 70,
        ]
        total_params = 0
        for i, layer in enumerate(self.layers):
            n_params = layer.parameter_count()
            total_params += n_params
            lines.append(f"{i:3d}. {str(layer):<50} Params: {n_params:,}")
        lines.append("-" * 70)
        lines.append(f"Total trainable parameters: {total_params:,}")
        lines.append("=" * 70)
        return '\n'.join(lines), total_params

    # ------------------------------------------------------------------
    # Saving / loading
    # ------------------------------------------------------------------

    def to_xml(self, test_correctness=None):
        """Build the <Root> element describing the whole model."""
        root = ET.Element('Root')

        config = ET.SubElement(root, 'Config')
        add_text_element(config, 'LearningRate', repr(float(self.learning_rate)))
        add_text_element(config, 'LayersAmount', len(self.layers))
        add_text_element(config, 'LastTrainCorrectness', repr(float(self.last_train_correctness)))
        if test_correctness is not None:
            add_text_element(config, 'TestCorrectness', repr(float(test_correctness)))
        add_text_element(config, 'InputShape', ' '.join(str(v) for v in self.input_shape))

        heads = ET.SubElement(root, 'LayersHead')
        for layer in self.layers:
            layer.save_description(heads)

        data = ET.SubElement(root, 'LayersData')
        for layer in self.layers:
            layer.save_data(data)

        return root

    @classmethod
    def from_xml(cls, root, rng=None, max_workers=None):
        """
        Rebuild a network from a <Root> element.

        Raises:
            ModelFormatError: any required field is missing or invalid
        """
        config = root.find('Config')
        heads = root.find('LayersHead')
        data = root.find('LayersData')
        if config is None or heads is None or data is None:
            raise ModelFormatError("Model requires <Config>, <LayersHead> and <LayersData>")

        learning_rate = required_float(config, 'LearningRate')
        last_train_correctness = required_float(config, 'LastTrainCorrectness')
        layers_amount = required_int(config, 'LayersAmount')
        shape_text = required_text(config, 'InputShape').split()
        try:
            input_shape = tuple(int(v) for v in shape_text)
        except ValueError as exc:
            raise ModelFormatError(f"Invalid <InputShape>: {shape_text}") from exc
        if len(input_shape) != 3:
            raise ModelFormatError(f"<InputShape> must hold 3 integers, got {shape_text}")

        head_elements = heads.findall('LayerHead')
        data_elements = data.findall('LayerData')
        if (layers_amount < 1 or len(head_elements) != layers_amount
                or len(data_elements) != layers_amount):
            raise ModelFormatError(
                f"Expected {layers_amount} layers, found {len(head_elements)} heads "
                f"and {len(data_elements)} data entries"
            )

        rng = rng if rng is not None else np.random.default_rng()
        layers = [Layer.load(head_elements[i], data_elements[i], rng)
                  for i in range(layers_amount)]

        last = layers[-1]
        if not isinstance(last, FullyConnectedLayer) or last.activation_function is not ActivationFunction.Softmax:
            raise ModelFormatError("Last layer should be fully connected with softmax activation")

        return cls._from_layers(input_shape, layers, rng=rng, learning_rate=learning_rate,
                                last_train_correctness=last_train_correctness,
                                max_workers=max_workers)

    def save_to_xml_file(self, path, test_correctness=None):
        """Write the model to ``path``; returns False if the file can't be written."""
        written = write_xml(self.to_xml(test_correctness), path)
        if written is None:
            return False
        logger.info("Model saved to %s", path)
        return True

    @classmethod
    def load_from_xml_file(cls, path, rng=None, max_workers=None):
        """
        Load a model written by ``save_to_xml_file``.

        Raises:
            FileNotFoundError: ``path`` does not exist
            ModelFormatError: the file is not a valid model
        """
        if not file_exists(path):
            raise FileNotFoundError(path)
        network = cls.from_xml(read_xml(path), rng=rng, max_workers=max_workers)
        logger.info("Model loaded from %s", path)
        return network

    def __repr__(self):
        return f"NeuralNetwork(input_shape={self.input_shape}, layers={len(self.layers)})"
