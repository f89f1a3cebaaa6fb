"""
Datasets
========

Helpers to feed samples to the trainer:
- SamplesBatch: a pair of (n, inputs) / (n, outputs) tensors
- BatchesCollection: a training set split into mini-batches, reshuffled
  across batches at every epoch
- ValidationDataset / TestDataset: evaluation sets with their options
- one_hot_encode: integer labels to one-hot rows
"""

import numpy as np

from .exceptions import ShapeError
from .initialization import get_rng
from .tensor import DTYPE, Tensor


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

    one_hot = np.zeros((len(labels), num_classes), dtype=DTYPE)
    one_hot[np.arange(len(labels)), labels] = 1.0

    return one_hot


def _pair(x, y):
    x = np.asarray(x, dtype=DTYPE)
    y = np.asarray(y, dtype=DTYPE)
    if x.ndim == 0 or y.ndim == 0 or len(x) == 0:
        raise ShapeError("The dataset can't be empty")
    if len(x) != len(y):
        raise ShapeError(f"The number of samples ({len(x)}) and labels ({len(y)}) must match")
    return x.reshape(len(x), -1), y.reshape(len(y), -1)


class SamplesBatch:
    """Inputs and expected outputs of a mini-batch, as owned tensors."""

    def __init__(self, x, y):
        if x.entities != y.entities:
            raise ShapeError(f"The batch has {x.entities} samples but {y.entities} labels")
        self.x = x
        self.y = y

    @classmethod
    def from_arrays(cls, x, y):
        x, y = _pair(x, y)
        return cls(Tensor.from_array(x), Tensor.from_array(y))

    @property
    def size(self):
        return self.x.entities

    def free(self):
        self.x.try_free()
        self.y.try_free()

    def __repr__(self):
        return f"SamplesBatch(samples={self.size}, inputs={self.x.length}, outputs={self.y.length})"


class BatchesCollection:
    """
    A training set split into mini-batches.

    All batches have batch_size samples except possibly the last one, which
    holds the remainder. cross_shuffle() reshuffles the samples across every
    batch while keeping the batch sizes.

    Example:
        >>> batches = BatchesCollection.from_arrays(X_train, y_train, batch_size=32)
        >>> batches.cross_shuffle(np.random.default_rng(42))
    """

    def __init__(self, batches):
        self.batches = list(batches)
        if not self.batches:
            raise ShapeError("The collection must contain at least one batch")

    @classmethod
    def from_arrays(cls, x, y, batch_size):
        if batch_size < 1:
            raise ValueError("The batch size must be at least 1")
        x, y = _pair(x, y)
        n_samples = len(x)
        return cls(SamplesBatch(Tensor.from_array(x[start:start + batch_size]),
                                Tensor.from_array(y[start:start + batch_size]))
                   for start in range(0, n_samples, batch_size))

    @property
    def samples(self):
        return sum(batch.size for batch in self.batches)

    @property
    def input_features(self):
        return self.batches[0].x.length

    @property
    def output_features(self):
        return self.batches[0].y.length

    def cross_shuffle(self, rng=None):
        """Shuffle the samples across all the batches, in place."""
        rng = get_rng(rng)
        x = np.concatenate([batch.x.data for batch in self.batches])
        y = np.concatenate([batch.y.data for batch in self.batches])
        indices = rng.permutation(len(x))
        start = 0
        for batch in self.batches:
            end = start + batch.size
            batch.x.data[:] = x[indices[start:end]]
            batch.y.data[:] = y[indices[start:end]]
            start = end
        # Batch order matters as well for the last, smaller batch
        rng.shuffle(self.batches)

    def to_arrays(self):
        x = np.concatenate([batch.x.data for batch in self.batches])
        y = np.concatenate([batch.y.data for batch in self.batches])
        return x, y

    def free(self):
        for batch in self.batches:
            batch.free()

    def __iter__(self):
        return iter(self.batches)

    def __len__(self):
        return len(self.batches)

    def __repr__(self):
        return f"BatchesCollection(batches={len(self)}, samples={self.samples})"


class ValidationDataset:
    """
    Validation set used for early stopping.

    Training stops when the validation accuracy, in percent, stayed within
    `tolerance` for the last `epochs` epochs.

    Args:
        x, y: Samples and expected outputs
        tolerance: Convergence tolerance, must be positive (default: 1e-2)
        epochs: Size of the convergence window, at least 1 (default: 5)
    """

    def __init__(self, x, y, tolerance=1e-2, epochs=5):
        if tolerance <= 0:
            raise ValueError("The tolerance must be a positive number")
        if epochs < 1:
            raise ValueError("The number of epochs must be at least 1")
        self.x, self.y = _pair(x, y)
        self.tolerance = tolerance
        self.epochs = epochs


class TestDataset:
    """
    Test set evaluated after every epoch.

    Args:
        x, y: Samples and expected outputs
        callback: Optional callable receiving (epoch, DatasetEvaluationResult)
    """

    __test__ = False

    def __init__(self, x, y, callback=None):
        self.x, self.y = _pair(x, y)
        self.callback = callback
