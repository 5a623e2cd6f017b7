"""
Visualization Utilities
=======================

This module provides functions for visualizing:
- Training progress (batch loss, learning rate, epoch correctness)
- Feature maps from convolutional layers
- Convolution kernels
- Confusion matrix
"""

import logging

import numpy as np
import matplotlib.pyplot as plt

from .telemetry import class_name

logger = logging.getLogger(__name__)


def _finish(fig, save_path, what, show):
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info("%s saved to %s", what, save_path)

    if show:
        plt.show()
    return fig


def plot_training_log(training_log, figsize=(16, 5), save_path=None, show=True):
    """
    Plot a TrainingLog: batch loss, learning rate and epoch correctness.

    Args:
        training_log: TrainingLog recorded by a Trainer
        figsize: Figure size
        save_path: Path to save figure
        show: Call plt.show()
    """
    fig, axes = plt.subplots(1, 3, figsize=figsize)

    batches = training_log.batches
    steps = range(1, len(batches) + 1)

    # Loss plot
    axes[0].plot(steps, [b.mean_loss for b in batches], 'b-', label='Batch Loss', linewidth=1)
    axes[0].set_xlabel('Batch', fontsize=12)
    axes[0].set_ylabel('Loss', fontsize=12)
    axes[0].set_title('Mean Batch Loss', fontsize=14)
    axes[0].grid(True, alpha=0.3)

    # Learning rate plot
    axes[1].plot(steps, training_log.learning_rates, 'g-', linewidth=2)
    axes[1].set_xlabel('Batch', fontsize=12)
    axes[1].set_ylabel('Learning Rate', fontsize=12)
    axes[1].set_title('Learning Rate', fontsize=14)
    axes[1].grid(True, alpha=0.3)

    # Correctness plot
    epochs = [e.epoch for e in training_log.epochs]
    axes[2].plot(epochs, [e.correctness for e in training_log.epochs], 'b-o',
                 label='Correctness (%)', linewidth=2)
    axes[2].set_xlabel('Epoch', fontsize=12)
    axes[2].set_ylabel('Correctness (%)', fontsize=12)
    axes[2].set_title('Epoch Correctness', fontsize=14)
    axes[2].set_ylim(0, 100)
    axes[2].grid(True, alpha=0.3)

    return _finish(fig, save_path, "Training log plot", show)


def _grid(n):
    n_cols = int(np.ceil(np.sqrt(n)))
    n_rows = int(np.ceil(n / n_cols))
    return n_rows, n_cols


def visualize_feature_maps(feature_maps, max_maps=16, figsize=(12, 12), save_path=None,
                           show=True, title='Feature Maps'):
    """
    Visualize the feature maps of one layer.

    Args:
        feature_maps: List of Matrix (one per channel), e.g. an entry of
            NeuralNetwork.feature_maps()['feature_maps']
        max_maps: Maximum number of feature maps to display
    """
    n_maps = min(len(feature_maps), max_maps)
    n_rows, n_cols = _grid(n_maps)

    fig, axes = plt.subplots(n_rows, n_cols, figsize=figsize)
    axes = np.array(axes).flatten()

    for i in range(n_maps):
        axes[i].imshow(feature_maps[i].to_array(), cmap='viridis')
        axes[i].set_title(f'Map {i}', fontsize=8)
        axes[i].axis('off')

    # Hide unused subplots
    for i in range(n_maps, len(axes)):
        axes[i].axis('off')

    plt.suptitle(title, fontsize=14)
    return _finish(fig, save_path, "Feature maps", show)


def visualize_kernels(layer, max_kernels=32, figsize=(12, 8), save_path=None, show=True):
    """
    Visualize the kernels of a ConvolutionLayer, averaged over input channels.
    """
    kernels = layer.kernels
    n_kernels = min(len(kernels), max_kernels)
    n_rows, n_cols = _grid(n_kernels)

    fig, axes = plt.subplots(n_rows, n_cols, figsize=figsize)
    axes = np.array(axes).flatten()

    for i in range(n_kernels):
        kernel_img = np.mean([k.to_array() for k in kernels[i]], axis=0)

        # Normalize for visualization
        kernel_img = (kernel_img - kernel_img.min()) / (kernel_img.max() - kernel_img.min() + 1e-8)

        axes[i].imshow(kernel_img, cmap='gray')
        axes[i].set_title(f'Kernel {i}', fontsize=8)
        axes[i].axis('off')

    for i in range(n_kernels, len(axes)):
        axes[i].axis('off')

    plt.suptitle('Convolution Kernels', fontsize=14)
    return _finish(fig, save_path, "Kernels visualization", show)


def visualize_confusion_matrix(cm, class_names=None, figsize=(10, 8), save_path=None, show=True):
    """
    Confusion matrix as a heat map of per-class recall.

    Each cell shows the sample count and its share of the true class.

    Args:
        cm: Counts from utils.confusion_matrix, rows are true classes
        class_names: Sequence or dict mapping class index to name
    """
    cm = np.asarray(cm)
    n_classes = len(cm)
    totals = cm.sum(axis=1, keepdims=True)
    recall = np.divide(cm, totals, out=np.zeros(cm.shape), where=totals > 0)

    if class_names is None:
        labels = [str(i) for i in range(n_classes)]
    else:
        labels = [class_name(class_names, i) for i in range(n_classes)]

    fig, ax = plt.subplots(figsize=figsize)
    im = ax.imshow(recall, vmin=0.0, vmax=1.0, cmap='Blues')
    fig.colorbar(im, ax=ax, label='Share of true class')

    ax.set_xticks(range(n_classes))
    ax.set_yticks(range(n_classes))
    ax.set_xticklabels(labels, rotation=45, ha='right')
    ax.set_yticklabels(labels)
    ax.set_xlabel('Predicted class', fontsize=12)
    ax.set_ylabel('True class', fontsize=12)
    ax.set_title(f'Confusion Matrix ({np.trace(cm)}/{cm.sum()} correct)', fontsize=14)

    for (i, j), count in np.ndenumerate(cm):
        ax.text(j, i, f'{count}\n{recall[i, j]:.0%}', ha='center', va='center', fontsize=8,
                color='white' if recall[i, j] > 0.5 else 'black')

    return _finish(fig, save_path, "Confusion matrix", show)
