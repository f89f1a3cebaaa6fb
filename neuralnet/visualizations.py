"""
Visualization Utilities
=======================

This module provides functions for visualizing:
- Training sessions (validation/test cost and accuracy curves)
- Convolutional kernels
- Feature maps from extract_deep_features()
"""

import numpy as np
import matplotlib.pyplot as plt


def _grid(count, figsize):
    n_cols = int(np.ceil(np.sqrt(count)))
    n_rows = int(np.ceil(count / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=figsize)
    return fig, np.array(axes).flatten()


def _finish(fig, save_path, label, show):
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"{label} saved to {save_path}")

    if show:
        plt.show()
    return fig


def plot_training_session(result, figsize=(14, 5), save_path=None, show=True):
    """
    Plot the reports collected during a training session.

    Args:
        result: TrainingSessionResult
        figsize: Figure size
        save_path: Path to save figure
        show: Call plt.show()
    """
    history = result.history
    if not history['val_loss'] and not history['test_loss']:
        raise ValueError("The training session has no validation or test reports to plot")

    fig, axes = plt.subplots(1, 2, figsize=figsize)

    for key, title, ax in (('loss', 'Cost', axes[0]), ('accuracy', 'Accuracy (%)', axes[1])):
        val = history[f'val_{key}']
        test = history[f'test_{key}']
        if val:
            ax.plot(range(1, len(val) + 1), val, 'r-', label=f'Validation {key}', linewidth=2)
        if test:
            ax.plot(range(1, len(test) + 1), test, 'b-', label=f'Test {key}', linewidth=2)
        ax.set_xlabel('Epoch', fontsize=12)
        ax.set_ylabel(title, fontsize=12)
        ax.legend(fontsize=10)
        ax.grid(True, alpha=0.3)

    fig.suptitle(f'Training session ({result.stop_reason.name.lower()}, '
                 f'{result.completed_epochs} epochs)', fontsize=14)
    return _finish(fig, save_path, "Training session plot", show)


def visualize_kernels(layer, max_kernels=32, figsize=(12, 8), save_path=None, show=True):
    """
    Visualize the kernels of a convolutional layer.

    Multi-channel kernels are averaged across their channels, every kernel
    is normalized to [0, 1].

    Args:
        layer: ConvolutionalLayer
        max_kernels: Maximum number of kernels to display
    """
    info = layer.kernel_info
    kernels = layer.weights.reshape(-1, info.channels, info.height, info.width)
    n_kernels = min(kernels.shape[0], max_kernels)

    fig, axes = _grid(n_kernels, figsize)

    for i in range(n_kernels):
        image = kernels[i].mean(axis=0)
        image = (image - image.min()) / (image.max() - image.min() + 1e-8)
        axes[i].imshow(image, cmap='gray')
        axes[i].set_title(f'Kernel {i}', fontsize=8)
        axes[i].axis('off')

    for i in range(n_kernels, len(axes)):
        axes[i].axis('off')

    fig.suptitle('Convolutional Kernels', fontsize=14)
    return _finish(fig, save_path, "Kernels", show)


def visualize_feature_maps(activation, info, sample=0, max_maps=16, figsize=(12, 12), save_path=None, show=True):
    """
    Visualize the channels of a layer activation.

    Args:
        activation: (n, channels * height * width) array, e.g. from extract_deep_features()
        info: TensorInfo of the layer output
        sample: Index of the sample to display
    """
    maps = np.asarray(activation)[sample].reshape(info.channels, info.height, info.width)
    n_maps = min(info.channels, max_maps)

    fig, axes = _grid(n_maps, figsize)

    for i in range(n_maps):
        axes[i].imshow(maps[i], cmap='viridis')
        axes[i].set_title(f'Channel {i}', fontsize=8)
        axes[i].axis('off')

    # Hide unused subplots
    for i in range(n_maps, len(axes)):
        axes[i].axis('off')

    fig.suptitle('Feature Maps', fontsize=14)
    return _finish(fig, save_path, "Feature maps", show)
