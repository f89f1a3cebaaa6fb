"""
Parallel Loops
==============

A fixed-size worker pool running data-parallel "for each row" loops.

Each loop splits range(count) into contiguous chunks, runs body(start, end)
on every chunk and joins before returning. Chunks write disjoint regions of
the output, so no ordering between iterations is needed. numpy releases the
GIL inside its vectorized routines, which is where the actual work happens.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor, wait

from .exceptions import ComputationError

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    Thread pool for synchronous parallel loops.

    Args:
        max_workers: Number of threads (default: os.cpu_count())
        min_chunk: Minimum number of iterations per task, smaller loops run inline
    """

    def __init__(self, max_workers=None, min_chunk=1):
        if max_workers is not None and max_workers < 1:
            raise ValueError("The number of workers must be at least 1")
        if min_chunk < 1:
            raise ValueError("The chunk size must be at least 1")
        self.max_workers = max_workers or os.cpu_count() or 1
        self.min_chunk = min_chunk
        self._executor = None

    def _get_executor(self):
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers,
                                                thread_name_prefix='neuralnet')
        return self._executor

    def partition(self, count):
        """Split range(count) into at most max_workers contiguous (start, end) ranges."""
        if count <= 0:
            return []
        chunks = max(1, min(self.max_workers, count // self.min_chunk))
        size, extra = divmod(count, chunks)
        ranges = []
        start = 0
        for i in range(chunks):
            end = start + size + (1 if i < extra else 0)
            ranges.append((start, end))
            start = end
        return ranges

    def run(self, count, body):
        """
        Execute body(start, end) over range(count) and wait for completion.

        Raises:
            ComputationError: If any task fails, the whole loop is considered failed
        """
        ranges = self.partition(count)
        if not ranges:
            return
        if len(ranges) == 1:
            try:
                body(*ranges[0])
            except Exception as exc:
                raise ComputationError(f"Error while running the parallel loop: {exc}") from exc
            return

        futures = [self._get_executor().submit(body, start, end) for start, end in ranges]
        wait(futures)
        for future in futures:
            exc = future.exception()
            if exc is not None:
                logger.debug("Parallel loop task failed", exc_info=exc)
                raise ComputationError(f"Error while running the parallel loop: {exc}") from exc

    def map(self, function, items):
        """Run function(item) for each item in parallel, returning results in order."""
        items = list(items)
        results = [None] * len(items)

        def body(start, end):
            for i in range(start, end):
                results[i] = function(items[i])

        self.run(len(items), body)
        return results

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def __repr__(self):
        return f"WorkerPool(max_workers={self.max_workers})"


def run_parallel(pool, count, body):
    """Run a loop on the given pool, or inline when no pool is provided."""
    if pool is None:
        try:
            body(0, count)
        except Exception as exc:
            raise ComputationError(f"Error while running the loop: {exc}") from exc
    elif count > 0:
        pool.run(count, body)
