"""
Typed training events and the channel that delivers them.

NeuralNetwork.train publishes events; observers (patience controller,
training log, stop conditions) subscribe to the channel independently of
each other. Delivery is synchronous on the training thread, in
subscription order.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class SampleTrained:
    """One sample finished forward + backward."""
    epoch: int
    index: int
    loss: float


@dataclass(frozen=True)
class BatchTrained:
    """Weights were updated after a mini-batch."""
    epoch: int
    epoch_percent: float
    mean_loss: float


@dataclass(frozen=True)
class EpochTrained:
    epoch: int
    correctness: float


@dataclass(frozen=True)
class TrainingFinished:
    cancelled: bool


class TrainingEvents:
    """
    Publish/subscribe channel for training events.

    Example:
        >>> events = TrainingEvents()
        >>> losses = []
        >>> events.subscribe(BatchTrained, lambda e: losses.append(e.mean_loss))
        >>> events.publish(BatchTrained(epoch=0, epoch_percent=50.0, mean_loss=0.3))
        >>> losses
        [0.3]
    """

    def __init__(self):
        self._handlers = []

    def subscribe(self, event_type, handler):
        """Call ``handler(event)`` for every published ``event_type`` instance."""
        self._handlers.append((event_type, handler))
        return handler

    def subscribe_all(self, handler):
        return self.subscribe(object, handler)

    def unsubscribe(self, handler):
        self._handlers = [(t, h) for t, h in self._handlers if h is not handler]

    def publish(self, event):
        for event_type, handler in list(self._handlers):
            if isinstance(event, event_type):
                handler(event)
