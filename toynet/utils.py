"""
Utility Functions
=================

Helper functions for:
- Converting NumPy arrays into (channels, target) samples
- One-hot encoding
- Random number generators
- Metrics (confusion matrix)
- Image augmentation of samples
"""

import numpy as np

from . import matrix_ops
from .matrix import Matrix


def make_rng(seed=None):
    """Create the numpy Generator passed around as ``rng=``."""
    return np.random.default_rng(seed)


def one_hot_encode(labels, num_classes=None):
    """
    Convert integer labels to one-hot encoded vectors.

    Args:
        labels: Integer labels, shape (N,)
        num_classes: Number of classes (inferred if None)

    Returns:
        One-hot matrix, shape (N, num_classes)
    """
    labels = np.asarray(labels).astype(int)

    if num_classes is None:
        num_classes = labels.max() + 1

    one_hot = np.zeros((len(labels), num_classes), dtype=np.float64)
    one_hot[np.arange(len(labels)), labels] = 1.0

    return one_hot


def one_hot(label, num_classes):
    """Single-column one-hot target Matrix for ``label``."""
    target = Matrix(num_classes, 1)
    target[label, 0] = 1.0
    return target


def samples_from_arrays(X, y, num_classes=None):
    """
    Convert arrays into the (channels, target) samples the network consumes.

    Args:
        X: Images, shape (N, C, H, W), or flat features, shape (N, F)
        y: Integer labels, shape (N,), or one-hot targets, shape (N, num_classes)
        num_classes: Number of classes (inferred if None)

    Returns:
        List of (list of Matrix, single-column Matrix) tuples
    """
    X = np.asarray(X, dtype=np.float64)
    y = np.asarray(y)
    if len(X) != len(y):
        raise ValueError(f"X has {len(X)} samples but y has {len(y)}")

    if X.ndim == 2:
        X = X[:, np.newaxis, :, np.newaxis]
    if X.ndim != 4:
        raise ValueError(f"X must have shape (N, F) or (N, C, H, W), got {X.shape}")

    targets = one_hot_encode(y, num_classes) if y.ndim == 1 else y.astype(np.float64)

    samples = []
    for image, target in zip(X, targets):
        channels = [Matrix.from_array(channel) for channel in image]
        samples.append((channels, Matrix.from_column(target)))
    return samples


def samples_to_arrays(samples):
    """Inverse of ``samples_from_arrays``: returns X (N, C, H, W) and integer labels."""
    X = np.array([[channel.to_array() for channel in channels] for channels, _ in samples])
    y = np.array([target.index_of_max() for _, target in samples])
    return X, y


def confusion_matrix(network, samples, num_classes=None):
    """
    Compute confusion matrix of ``network`` over ``samples``.

    Returns:
        Array of shape (num_classes, num_classes); rows are true classes
    """
    samples = list(samples)
    if num_classes is None:
        num_classes = samples[0][1].rows

    cm = np.zeros((num_classes, num_classes), dtype=int)
    for channels, target in samples:
        cm[target.index_of_max(), network.predict(channels).index_of_max()] += 1
    return cm


def augment_samples(samples, rng, min_scale=0.9, max_scale=1.1, min_degrees=-10.0,
                    max_degrees=10.0, background=0.0):
    """
    Random rotation/scale of every channel; targets are shared, not copied.

    Each sample gets one transform applied to all of its channels.
    """
    augmented = []
    for channels, target in samples:
        seed = int(rng.integers(0, 2 ** 32))
        shifted = [
            matrix_ops.random_shift(channel, np.random.default_rng(seed), min_scale, max_scale,
                                    min_degrees, max_degrees, background)
            for channel in channels
        ]
        augmented.append((shifted, target))
    return augmented
