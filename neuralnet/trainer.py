"""
Network Trainer
===============

The epoch loop driving backpropagation and the optimizers.

Every epoch:
1. Shuffle the training samples across the mini-batches
2. Backpropagate each batch, checking for cancellation before each one
3. Stop if the weights overflowed
4. Optionally evaluate the training set and report it
5. Evaluate the validation set and stop early once its cost converged
6. Evaluate the test set and report it

The session result keeps every report collected until the training stopped,
whatever the stop reason.
"""

import logging
import threading
import time
from collections import deque, namedtuple
from enum import IntEnum

from tqdm import tqdm

from .datasets import BatchesCollection
from .initialization import get_rng
from .optimizers import get_optimizer

logger = logging.getLogger(__name__)


class TrainingStopReason(IntEnum):
    EPOCHS_COMPLETED = 0
    EARLY_STOPPING = 1
    TRAINING_CANCELED = 2
    NUMERIC_OVERFLOW = 3


DatasetEvaluationResult = namedtuple('DatasetEvaluationResult', ['cost', 'accuracy'])

BatchProgress = namedtuple('BatchProgress', ['processed_items', 'percentage'])

TrainingProgress = namedtuple('TrainingProgress', ['iteration', 'result'])


class TrainingSessionResult:
    """
    Outcome of a training session.

    Attributes:
        stop_reason: TrainingStopReason
        completed_epochs: Number of epochs fully processed
        training_time: Elapsed time in seconds
        validation_reports: DatasetEvaluationResult per evaluated epoch
        test_reports: DatasetEvaluationResult per evaluated epoch
    """

    def __init__(self, stop_reason, completed_epochs, training_time, validation_reports=(), test_reports=()):
        self.stop_reason = stop_reason
        self.completed_epochs = completed_epochs
        self.training_time = training_time
        self.validation_reports = list(validation_reports)
        self.test_reports = list(test_reports)

    @property
    def history(self):
        """Reports as lists of values, keyed like a training history."""
        return {
            'val_loss': [report.cost for report in self.validation_reports],
            'val_accuracy': [report.accuracy for report in self.validation_reports],
            'test_loss': [report.cost for report in self.test_reports],
            'test_accuracy': [report.accuracy for report in self.test_reports],
        }

    def __repr__(self):
        return (f"TrainingSessionResult({self.stop_reason.name}, epochs={self.completed_epochs}, "
                f"time={self.training_time:.2f}s)")


class RelativeConvergence:
    """
    Sliding window over the last `epochs` values, converged once the window
    is full and its values span less than `tolerance`.
    """

    def __init__(self, tolerance, epochs):
        if tolerance <= 0:
            raise ValueError("The tolerance must be a positive number")
        if epochs < 1:
            raise ValueError("The number of epochs must be at least 1")
        self.tolerance = tolerance
        self._window = deque(maxlen=epochs)

    def update(self, value):
        self._window.append(value)

    @property
    def has_converged(self):
        if len(self._window) < self._window.maxlen:
            return False
        return max(self._window) - min(self._window) < self.tolerance


class CancellationToken:
    """Cooperative cancellation flag, checked before every batch."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self):
        return self._event.is_set()


def train_network(network, dataset, epochs, dropout=0.0, optimizer='sgd', batch_size=32,
                  batch_progress=None, training_progress=None, validation=None, test=None,
                  token=None, seed=None, verbose=False):
    """
    Train a network.

    Args:
        network: SequentialNetwork or ComputationGraphNetwork
        dataset: BatchesCollection, or an (x, y) tuple split with batch_size
        epochs: Maximum number of epochs, at least 1
        dropout: Dropout probability for hidden fully connected layers, in [0, 1)
        optimizer: Optimizer instance or registry name
        batch_size: Mini-batch size when dataset is a tuple
        batch_progress: Optional callable receiving a BatchProgress after each batch
        training_progress: Optional callable receiving a TrainingProgress with the
            training set evaluation after each epoch
        validation: Optional ValidationDataset for early stopping
        test: Optional TestDataset evaluated after each epoch
        token: Optional CancellationToken
        seed: Seed or numpy Generator for shuffling and dropout
        verbose: Show a progress bar over the batches

    Returns:
        TrainingSessionResult
    """
    if epochs < 1:
        raise ValueError("The number of epochs must be at least 1")
    if not 0 <= dropout < 1:
        raise ValueError("The dropout probability must be in the [0, 1) range")

    owned = not isinstance(dataset, BatchesCollection)
    batches = BatchesCollection.from_arrays(*dataset, batch_size) if owned else dataset
    try:
        return _optimize(network, batches, epochs, dropout, get_optimizer(optimizer), batch_progress,
                         training_progress, validation, test, token, get_rng(seed), verbose)
    finally:
        if owned:
            batches.free()


def _optimize(network, batches, epochs, dropout, optimizer, batch_progress, training_progress,
              validation, test, token, rng, verbose):
    optimizer.reset()
    convergence = RelativeConvergence(validation.tolerance, validation.epochs) if validation else None
    validation_reports, test_reports = [], []
    samples = batches.samples
    start_time = time.perf_counter()

    def result(reason, completed):
        return TrainingSessionResult(reason, completed, time.perf_counter() - start_time,
                                     validation_reports, test_reports)

    logger.info(f"Training {network!r} with {optimizer!r} on {samples} samples")

    for epoch in range(epochs):
        batches.cross_shuffle(rng)
        processed = 0

        # Progress bar for batches
        if verbose:
            pbar = tqdm(batches, total=len(batches), desc=f"Epoch {epoch+1}/{epochs}")
        else:
            pbar = batches

        for batch in pbar:
            if token is not None and token.is_cancelled:
                logger.warning(f"Training canceled after {epoch} epochs")
                return result(TrainingStopReason.TRAINING_CANCELED, epoch)
            network.backpropagate(batch, dropout, optimizer, rng)
            processed += batch.size
            if batch_progress is not None:
                batch_progress(BatchProgress(processed, processed / samples * 100.0))

        if network.is_in_numeric_overflow:
            logger.warning(f"Numeric overflow detected at epoch {epoch + 1}")
            return result(TrainingStopReason.NUMERIC_OVERFLOW, epoch)

        if training_progress is not None:
            x, y = batches.to_arrays()
            cost, _, accuracy = network.evaluate(x, y)
            training_progress(TrainingProgress(epoch + 1, DatasetEvaluationResult(cost, accuracy)))

        message = f"Epoch {epoch+1}/{epochs}"
        if validation is not None:
            cost, _, accuracy = network.evaluate(validation.x, validation.y)
            validation_reports.append(DatasetEvaluationResult(cost, accuracy))
            message += f" | Validation Loss: {cost:.4f} Acc: {accuracy:.2f}%"
            convergence.update(accuracy)
            if convergence.has_converged:
                logger.info(f"{message} | Early stopping")
                return result(TrainingStopReason.EARLY_STOPPING, epoch + 1)

        if test is not None:
            cost, _, accuracy = network.evaluate(test.x, test.y)
            report = DatasetEvaluationResult(cost, accuracy)
            test_reports.append(report)
            message += f" | Test Loss: {cost:.4f} Acc: {accuracy:.2f}%"
            if test.callback is not None:
                test.callback(epoch + 1, report)

        logger.info(message)

    return result(TrainingStopReason.EPOCHS_COMPLETED, epochs)
