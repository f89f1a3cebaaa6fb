"""
Execution Backend
=================

The strategy object layers run their kernels on.

A backend groups the layer-level operations (fully connected, convolution,
pooling, batch normalization, activation, dropout) behind one interface.
Networks receive a backend through their constructor and bind it to their
layers, so an alternative implementation only needs to provide the same
methods.

CpuBackend runs the numpy kernels from blas, convolution and normalization,
optionally spreading every loop over a WorkerPool.
"""

import numpy as np

from . import blas
from . import convolution
from . import normalization
from .parallel import WorkerPool, run_parallel
from .tensor import DTYPE, Tensor


class CpuBackend:
    """
    CPU implementation of the layer operations.

    Args:
        pool: WorkerPool for the parallel loops, None runs every loop inline

    Example:
        >>> backend = CpuBackend.parallel(max_workers=4)
        >>> network = SequentialNetwork(*layers, backend=backend)
    """

    def __init__(self, pool=None):
        self.pool = pool

    @classmethod
    def parallel(cls, max_workers=None):
        return cls(WorkerPool(max_workers))

    @property
    def max_workers(self):
        return self.pool.max_workers if self.pool is not None else 1

    # ------------------------------------------------------------------
    # Fully connected
    # ------------------------------------------------------------------

    def fully_connected_forward(self, x, w, b, out=None):
        return blas.multiply_with_sum(x, w, b, out=out, pool=self.pool)

    def fully_connected_backward_data(self, dy, w, out=None):
        return blas.multiply_transposed_right(dy, w, out=out, pool=self.pool)

    def fully_connected_backward_filter(self, x, dy, out=None):
        return blas.multiply_transposed_left(x, dy, out=out, pool=self.pool)

    def fully_connected_backward_bias(self, dy, out=None):
        return blas.compress_vertically(dy, out=out, pool=self.pool)

    # ------------------------------------------------------------------
    # Convolution
    # ------------------------------------------------------------------

    def convolution_forward(self, x, x_info, w, w_info, b, mode, out=None):
        return convolution.convolution_forward(x, x_info, w, w_info, b, mode, out=out, pool=self.pool)

    def convolution_backward_data(self, dy, dy_info, w, w_info, mode, out=None):
        return convolution.convolution_backward_data(dy, dy_info, w, w_info, mode, out=out, pool=self.pool)

    def convolution_backward_filter(self, x, x_info, dy, dy_info, mode, out=None):
        return convolution.convolution_backward_filter(x, x_info, dy, dy_info, mode, out=out, pool=self.pool)

    def convolution_backward_bias(self, dy, dy_info, out=None):
        return convolution.convolution_backward_bias(dy, dy_info, out=out, pool=self.pool)

    # ------------------------------------------------------------------
    # Pooling
    # ------------------------------------------------------------------

    def pooling_forward(self, x, x_info, out=None):
        return convolution.max_pool_2x2(x, x_info, out=out, pool=self.pool)

    def pooling_backward(self, x, x_info, dy, out=None):
        return convolution.upscale_pool_2x2(x, x_info, dy, out=out, pool=self.pool)

    # ------------------------------------------------------------------
    # Batch normalization
    # ------------------------------------------------------------------

    def batch_normalization_statistics(self, x, x_info, mode):
        return normalization.batch_statistics(x, x_info, mode)

    def batch_normalization_forward(self, x, x_info, mode, mu, sigma2, gamma, beta, out=None):
        return normalization.batch_normalization_forward(x, x_info, mode, mu, sigma2, gamma, beta,
                                                         out=out, pool=self.pool)

    def batch_normalization_backward_data(self, x, x_info, mode, mu, sigma2, gamma, dy, out=None):
        return normalization.batch_normalization_backward_data(x, x_info, mode, mu, sigma2, gamma, dy,
                                                               out=out, pool=self.pool)

    def batch_normalization_backward_gamma(self, x, x_info, mode, mu, sigma2, dy, out=None):
        return normalization.batch_normalization_backward_gamma(x, x_info, mode, mu, sigma2, dy,
                                                                out=out, pool=self.pool)

    def batch_normalization_backward_beta(self, dy, x_info, mode, out=None):
        return normalization.batch_normalization_backward_beta(dy, x_info, mode, out=out, pool=self.pool)

    # ------------------------------------------------------------------
    # Activations and elementwise helpers
    # ------------------------------------------------------------------

    def activation_forward(self, z, activation, out=None):
        return blas.activation(z, activation, out=out, pool=self.pool)

    def activation_backward(self, z, dy, activation, out=None):
        return blas.activation_backward(z, dy, activation, out=out, pool=self.pool)

    def multiply_elementwise(self, a, b, out=None):
        return blas.multiply_elementwise(a, b, out=out, pool=self.pool)

    def add(self, a, b, out=None):
        return blas.sum(a, b, blas.SumMode.ELEMENTWISE, out=out, pool=self.pool)

    def dropout_mask(self, entities, length, dropout, rng):
        """
        Inverted dropout mask: each value is 0 with probability `dropout`,
        1 / (1 - dropout) otherwise, so the expected activation is unchanged.
        """
        keep = 1.0 - dropout
        mask = rng.random((entities, length)) < keep
        return Tensor(mask.astype(DTYPE) * np.float32(1.0 / keep))

    def map(self, function, items):
        """Run function(item) for every item, in parallel when a pool is available."""
        if self.pool is not None:
            return self.pool.map(function, items)
        items = list(items)
        results = [None] * len(items)

        def body(start, end):
            for i in range(start, end):
                results[i] = function(items[i])

        run_parallel(None, len(items), body)
        return results

    def close(self):
        if self.pool is not None:
            self.pool.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def __repr__(self):
        return f"CpuBackend(max_workers={self.max_workers})"
