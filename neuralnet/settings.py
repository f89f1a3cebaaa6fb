"""
Network Settings
================

Runtime options shared by evaluation and training, plus the accuracy testers
used to count correctly classified samples.

An accuracy tester is a callable (yhat, y) -> boolean array with one value
per row.
"""

import numpy as np


def argmax_tester():
    """A sample is classified when the largest output matches the expected class."""
    def tester(yhat, y):
        return np.argmax(yhat, axis=1) == np.argmax(y, axis=1)
    return tester


def threshold_tester(threshold=0.5):
    """
    A sample is classified when every output is on the same side of the
    threshold as its expected value, for multi-label outputs.
    """
    if not 0 < threshold < 1:
        raise ValueError("The threshold must be in the (0, 1) range")

    def tester(yhat, y):
        return np.all((yhat > threshold) == (y > threshold), axis=1)
    return tester


class NetworkSettings:
    """
    Args:
        maximum_batch_size: Largest number of samples processed at once when
            evaluating a dataset (default: 4096, must be at least 10)
        accuracy_tester: Callable counting classified samples (default: argmax_tester())
        max_workers: Threads used by the CPU backend (default: os.cpu_count())
    """

    def __init__(self, maximum_batch_size=4096, accuracy_tester=None, max_workers=None):
        if maximum_batch_size < 10:
            raise ValueError("The maximum batch size must be at least 10")
        if max_workers is not None and max_workers < 1:
            raise ValueError("The number of workers must be at least 1")
        self.maximum_batch_size = maximum_batch_size
        self.accuracy_tester = accuracy_tester if accuracy_tester is not None else argmax_tester()
        self.max_workers = max_workers

    def __repr__(self):
        return f"NetworkSettings(maximum_batch_size={self.maximum_batch_size}, max_workers={self.max_workers})"
