"""
Trainer
=======

Runs NeuralNetwork.train with:
- Patience: an adaptive learning rate that drops whenever the trend of the
  recent mini-batch losses stops going down
- Stop conditions: a non-finite sample loss, or the learning rate reaching
  its minimum at the end of an epoch
- Telemetry: per-sample, per-batch and per-epoch logs plus the trained model,
  written to a timestamped run directory

Patience mechanics:
    initial_ignore (fraction of the first epoch) is skipped entirely. After
    that, every batch appends (elapsed seconds, mean batch loss) to a window
    of ``patience_amount`` entries. Once the window is full a least-squares
    line is fitted through it; a slope >= 0 means the loss is flat or rising,
    so the learning rate is replaced by modifier(lr, epoch) (floored at the
    minimum) and the window starts over.
"""

import logging
import math
import os
import threading
import time
import xml.etree.ElementTree as ET
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum

from .events import BatchTrained, EpochTrained, SampleTrained, TrainingEvents
from .persistence import add_text_element, create_run_directory, write_xml
from .statistics import linear_regression
from .telemetry import TrainingLog, write_class_correctness

logger = logging.getLogger(__name__)

#: Samples used for epoch telemetry when no test data is given.
EPOCH_LOG_SAMPLE_LIMIT = 1000

MAX_INITIAL_IGNORE = 0.95


def default_learning_rate_modifier(learning_rate, epoch):
    return learning_rate * 0.9


class TrainingState(Enum):
    NOT_STARTED = 'NotStarted'
    RUNNING = 'Running'
    FINISHED = 'Finished'
    CANCELLED = 'Cancelled'


@dataclass
class TrainerConfig:
    """Hyperparameters of one training run."""
    initial_learning_rate: float
    min_learning_rate: float
    epochs: int
    batch_size: int
    use_patience: bool = False
    initial_ignore: float = 0.0
    patience: float = 0.0

    def to_xml(self):
        root = ET.Element('Root')
        base = ET.SubElement(root, 'BaseConfig')
        add_text_element(base, 'InitialLearningRate', repr(float(self.initial_learning_rate)))
        add_text_element(base, 'EpochAmount', self.epochs)
        add_text_element(base, 'BatchSize', self.batch_size)
        if self.use_patience:
            patience = ET.SubElement(root, 'PatienceConfig')
            add_text_element(patience, 'InitialIgnore', repr(float(self.initial_ignore)))
            add_text_element(patience, 'Patience', repr(float(self.patience)))
        return root


class PatienceController:
    """
    Lowers ``network.learning_rate`` when batch losses stop decreasing.

    Args:
        network: Object with a mutable ``learning_rate`` attribute
        min_learning_rate: Floor for the learning rate
        initial_ignore: Epoch percentage (0-100) to skip before collecting
        patience_amount: Number of batch losses fitted at once
        learning_rate_modifier: f(learning_rate, epoch) -> new learning rate
        clock: Returns the current time in seconds
    """

    def __init__(self, network, min_learning_rate, initial_ignore, patience_amount,
                 learning_rate_modifier=None, clock=time.perf_counter):
        self.network = network
        self.min_learning_rate = min_learning_rate
        self.initial_ignore = initial_ignore
        self.learning_rate_modifier = learning_rate_modifier or default_learning_rate_modifier
        self.clock = clock
        self.window = deque(maxlen=max(1, patience_amount))
        self.has_crossed_ignore_threshold = False

    def attach(self, events):
        events.subscribe(BatchTrained, self.on_batch)
        return self

    def on_batch(self, event):
        if not self.has_crossed_ignore_threshold:
            if event.epoch_percent >= self.initial_ignore:
                self.has_crossed_ignore_threshold = True
            return
        if self.network.learning_rate <= self.min_learning_rate:
            return

        # Sliding window: a fit that keeps the rate leaves the window in place
        self.window.append((self.clock(), event.mean_loss))
        if len(self.window) < self.window.maxlen:
            return

        slope, _ = linear_regression(list(self.window))
        if slope >= 0:
            old = self.network.learning_rate
            new = max(self.min_learning_rate, self.learning_rate_modifier(old, event.epoch))
            self.network.learning_rate = new
            self.window.clear()
            logger.info("Loss trend %.3g >= 0, learning rate %.6g -> %.6g", slope, old, new)


class Trainer:
    """
    One training run of a NeuralNetwork.

    Example:
        >>> trainer = Trainer(net, train_samples, initial_learning_rate=0.05,
        ...                   min_learning_rate=0.001, epochs=20, batch_size=32)
        >>> trainer.set_patience(initial_ignore=0.1, patience=0.2)
        >>> trainer.set_log_saving('runs', save_network=True, test_data=test_samples)
        >>> trainer.run()
        <TrainingState.FINISHED: 'Finished'>
    """

    def __init__(self, network, data, initial_learning_rate, min_learning_rate, epochs,
                 batch_size, clock=time.perf_counter):
        self.network = network
        self.data = list(data)
        if not self.data:
            raise ValueError("Training data is empty")
        if batch_size < 1:
            raise ValueError("Batch size must be positive")

        self.config = TrainerConfig(initial_learning_rate, min_learning_rate, epochs, batch_size)
        self.clock = clock
        self.state = TrainingState.NOT_STARTED

        self.patience_amount = 0
        self.learning_rate_modifier = default_learning_rate_modifier

        self.save_to_log = False
        self.save_network = False
        self.test_data = None
        self.class_names = None
        self.training_log_dir = None
        self.training_log = TrainingLog()

    def set_patience(self, initial_ignore, patience, learning_rate_modifier=None):
        """
        Enable the adaptive learning rate.

        Args:
            initial_ignore: Fraction of the first epoch to skip, clamped to [0, 0.95]
            patience: Fraction of an epoch's batches per trend window, clamped to [0, 1]
            learning_rate_modifier: f(learning_rate, epoch) -> new rate (default: * 0.9)
        """
        initial_ignore = min(max(initial_ignore, 0.0), MAX_INITIAL_IGNORE)
        patience = min(max(patience, 0.0), 1.0)

        self.config.use_patience = True
        self.config.initial_ignore = initial_ignore
        self.config.patience = patience
        self.patience_amount = max(1, int(len(self.data) * patience / self.config.batch_size))
        if learning_rate_modifier is not None:
            self.learning_rate_modifier = learning_rate_modifier
        return self

    def set_log_saving(self, output_dir, save_network, test_data=None, class_names=None):
        """
        Write training logs into a new timestamped directory under ``output_dir``.

        Args:
            save_network: Also write NeuralNetwork.xml
            test_data: Samples used for epoch telemetry (default: first 1000
                training samples) and the per-class test correctness
            class_names: Sequence or dict mapping class index to name
        """
        self.training_log_dir = create_run_directory(output_dir)
        self.save_to_log = True
        self.save_network = save_network
        self.test_data = list(test_data) if test_data is not None else None
        self.class_names = class_names
        return self

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def _observe(self, events, cancel_event, start):
        network = self.network

        def elapsed():
            return self.clock() - start

        def stop_on_invalid_loss(event):
            if not math.isfinite(event.loss):
                logger.warning("Loss became %s at epoch %d; cancelling training", event.loss, event.epoch)
                cancel_event.set()

        def stop_on_min_learning_rate(event):
            if network.learning_rate <= self.config.min_learning_rate:
                logger.warning("Learning rate reached its minimum %.6g; stopping training",
                               self.config.min_learning_rate)
                cancel_event.set()

        events.subscribe(SampleTrained, stop_on_invalid_loss)
        events.subscribe(EpochTrained, stop_on_min_learning_rate)

        if self.config.use_patience:
            PatienceController(network, self.config.min_learning_rate,
                               self.config.initial_ignore * 100, self.patience_amount,
                               self.learning_rate_modifier, self.clock).attach(events)

        if self.save_to_log:
            log = self.training_log
            epoch_log_data = self._epoch_log_data()

            events.subscribe(SampleTrained, lambda e: log.record_sample(
                e.epoch, e.index, e.loss, network.learning_rate, elapsed()))
            events.subscribe(BatchTrained, lambda e: log.record_batch(
                e.epoch, e.mean_loss, network.learning_rate, elapsed()))
            events.subscribe(EpochTrained, lambda e: log.record_epoch(
                e.epoch, network.calculate_correctness(epoch_log_data),
                network.calculate_error(epoch_log_data)))

    def _epoch_log_data(self):
        if self.test_data:
            return self.test_data
        return self.data[:EPOCH_LOG_SAMPLE_LIMIT]

    def run(self, cancel_event=None, verbose=False):
        """
        Train synchronously on the calling thread.

        Returns:
            The final TrainingState (FINISHED or CANCELLED)
        """
        if self.state is not TrainingState.NOT_STARTED:
            raise RuntimeError(f"Trainer already used (state: {self.state.value})")

        cancel_event = cancel_event if cancel_event is not None else threading.Event()
        events = TrainingEvents()
        self.state = TrainingState.RUNNING

        if self.save_to_log:
            epoch_log_data = self._epoch_log_data()
            self.training_log.record_epoch(0, self.network.calculate_correctness(epoch_log_data),
                                           self.network.calculate_error(epoch_log_data))

        start = self.clock()
        self._observe(events, cancel_event, start)
        logger.info("Training for %d epochs, batch size %d, learning rate %.6g",
                    self.config.epochs, self.config.batch_size, self.config.initial_learning_rate)

        try:
            completed = self.network.train(self.data, self.config.initial_learning_rate,
                                           self.config.epochs, self.config.batch_size,
                                           cancel_event=cancel_event, events=events, verbose=verbose)
        except Exception:
            self.state = TrainingState.CANCELLED
            raise

        self.state = TrainingState.FINISHED if completed else TrainingState.CANCELLED
        logger.info("Training %s after %.1fs", self.state.value.lower(), self.clock() - start)

        if self.save_to_log:
            self.save_training_data()
        return self.state

    def run_in_background(self, verbose=False):
        """
        Run training on a background thread.

        Returns:
            (future, cancel_event): the future resolves to the final state;
            set ``cancel_event`` to stop training early.
        """
        cancel_event = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(self.run, cancel_event, verbose)
        executor.shutdown(wait=False)
        return future, cancel_event

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    def save_training_data(self):
        directory = self.training_log_dir
        self.training_log.save(directory)

        if self.save_network:
            test_correctness = None
            if self.test_data:
                test_correctness = self.network.calculate_correctness(self.test_data)
            self.network.save_to_xml_file(os.path.join(directory, 'NeuralNetwork.xml'), test_correctness)

        write_xml(self.config.to_xml(), os.path.join(directory, 'TrainerConfig.xml'))
        write_class_correctness(os.path.join(directory, 'ClassCorrectness.csv'), self.network,
                                self.data, self.test_data, self.class_names)
