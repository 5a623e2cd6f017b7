"""
Training Telemetry
==================

Records what happens during a training run and writes it out as
``;``-separated CSV tables:

- AllErrors.csv: Epoch; DataIndex; Error; LearningRate; ElapsedSeconds
- BatchError.csv: Epoch; AvgBatchError; LearningRate; ElapsedSeconds
- EpochError.csv: Epoch; Correctness; TestError; AvgTrainError; ElapsedSeconds
- ClassCorrectness.csv: ClassIndex; ClassName; TestCorrectness; TrainCorrectness

Epoch 0 in EpochError.csv is the measurement taken before training starts.
"""

import logging
import os
from dataclasses import dataclass

from .persistence import write_csv

logger = logging.getLogger(__name__)

#: Per-class train correctness is measured on at most this many samples.
CLASS_SAMPLE_LIMIT = 1000

NULL = 'null'
UNKNOWN_CLASS = 'Unknown'


@dataclass(frozen=True)
class SampleRecord:
    epoch: int
    index: int
    loss: float
    learning_rate: float
    elapsed_seconds: float


@dataclass(frozen=True)
class BatchRecord:
    epoch: int
    mean_loss: float
    learning_rate: float
    elapsed_seconds: float


@dataclass(frozen=True)
class EpochRecord:
    epoch: int
    correctness: float
    test_error: float


class TrainingLog:
    """
    In-memory record of one training run.

    Records are appended from the training thread only.
    """

    def __init__(self):
        self.samples = []
        self.batches = []
        self.epochs = []

    def record_sample(self, epoch, index, loss, learning_rate, elapsed_seconds):
        self.samples.append(SampleRecord(epoch, index, loss, learning_rate, elapsed_seconds))

    def record_batch(self, epoch, mean_loss, learning_rate, elapsed_seconds):
        self.batches.append(BatchRecord(epoch, mean_loss, learning_rate, elapsed_seconds))

    def record_epoch(self, epoch, correctness, test_error):
        self.epochs.append(EpochRecord(epoch, correctness, test_error))

    def samples_for_epoch(self, epoch):
        return [s for s in self.samples if s.epoch == epoch]

    def average_train_error(self, epoch):
        """Mean sample loss of ``epoch``, or None if no sample was recorded."""
        losses = [s.loss for s in self.samples_for_epoch(epoch)]
        if not losses:
            return None
        return sum(losses) / len(losses)

    def epoch_elapsed_seconds(self, epoch):
        times = [s.elapsed_seconds for s in self.samples_for_epoch(epoch)]
        return max(times) if times else 0.0

    @property
    def learning_rates(self):
        return [b.learning_rate for b in self.batches]

    # ------------------------------------------------------------------
    # CSV tables
    # ------------------------------------------------------------------

    def sample_rows(self):
        return [[s.epoch, s.index, s.loss, s.learning_rate, s.elapsed_seconds] for s in self.samples]

    def batch_rows(self):
        return [[b.epoch, b.mean_loss, b.learning_rate, b.elapsed_seconds] for b in self.batches]

    def epoch_rows(self):
        rows = []
        for record in self.epochs:
            average = self.average_train_error(record.epoch)
            rows.append([
                record.epoch,
                record.correctness,
                record.test_error,
                NULL if average is None else average,
                self.epoch_elapsed_seconds(record.epoch),
            ])
        return rows

    def save(self, directory):
        """Write AllErrors.csv, BatchError.csv and EpochError.csv into ``directory``."""
        write_csv(os.path.join(directory, 'AllErrors.csv'),
                  ['Epoch', 'DataIndex', 'Error', 'LearningRate', 'ElapsedSeconds'],
                  self.sample_rows())
        write_csv(os.path.join(directory, 'BatchError.csv'),
                  ['Epoch', 'AvgBatchError', 'LearningRate', 'ElapsedSeconds'],
                  self.batch_rows())
        write_csv(os.path.join(directory, 'EpochError.csv'),
                  ['Epoch', 'Correctness', 'TestError', 'AvgTrainError', 'ElapsedSeconds'],
                  self.epoch_rows())
        logger.info("Training log saved to %s", directory)


# ============================================================================
# Per-class correctness
# ============================================================================

def class_name(class_names, index):
    if class_names is None:
        return UNKNOWN_CLASS
    if isinstance(class_names, dict):
        return class_names.get(index, UNKNOWN_CLASS)
    return class_names[index] if index < len(class_names) else UNKNOWN_CLASS


def _samples_of_class(samples, index):
    return [s for s in samples if s[1][index, 0] == 1.0]


def _format_correctness(network, samples):
    if not samples:
        return NULL
    return f"{network.calculate_correctness(samples):.3f}%"


def class_correctness_rows(network, train_data, test_data=None, class_names=None):
    """
    One row per class: index, name, test correctness, train correctness.

    Test correctness is ``null`` without test data; train correctness uses
    at most CLASS_SAMPLE_LIMIT samples of each class.
    """
    classes_amount = train_data[0][1].rows
    rows = []
    for i in range(classes_amount):
        if test_data is None:
            test_correctness = NULL
        else:
            test_correctness = _format_correctness(network, _samples_of_class(test_data, i))
        train_samples = _samples_of_class(train_data, i)[:CLASS_SAMPLE_LIMIT]
        rows.append([i, class_name(class_names, i), test_correctness,
                     _format_correctness(network, train_samples)])
    return rows


def write_class_correctness(path, network, train_data, test_data=None, class_names=None):
    return write_csv(path, ['ClassIndex', 'ClassName', 'TestCorrectness', 'TrainCorrectness'],
                     class_correctness_rows(network, train_data, test_data, class_names))
