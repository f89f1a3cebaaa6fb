"""
Batch Normalization Kernels
===========================

Normalize every value with the mean and variance of its group, then apply a
learned scale (gamma) and shift (beta):

    y = gamma * (x - mu) / sqrt(sigma2 + eps) + beta

Samples are flattened volumes stored channel by channel, so each group is a
contiguous run of columns. NormalizationMode picks the groups:
- SPATIAL: one group per channel, statistics over the samples and every position of the slice
- PER_ACTIVATION: one group per input value, statistics over the samples

Statistics use the biased variance. Work is split across the groups.
"""

from enum import IntEnum

import numpy as np

from .blas import prepare_output, values, vector
from .exceptions import ShapeError
from .parallel import run_parallel

EPSILON = 1e-5


class NormalizationMode(IntEnum):
    SPATIAL = 0
    PER_ACTIVATION = 1


def normalization_groups(x_info, mode):
    """Number of (mean, variance) pairs for inputs with the given shape."""
    if NormalizationMode(mode) == NormalizationMode.SPATIAL:
        return x_info.channels
    return x_info.size


def _grouped(x, x_info, mode):
    """View an (n, size) input as (n, groups, values per group)."""
    X = values(x)
    if X.shape[1] != x_info.size:
        raise ShapeError(f"Expected {x_info.size} values per sample, got {X.shape[1]}")
    return X.reshape(X.shape[0], normalization_groups(x_info, mode), -1)


def _per_group(v, groups, name):
    v = vector(v)
    if v.size != groups:
        raise ShapeError(f"The {name} must have {groups} values, got {v.size}")
    return v.astype(np.float64)


def batch_statistics(x, x_info, mode):
    """
    Mean and biased variance of each group over the batch.

    Returns:
        Tuple (mu, sigma2) of (groups,) float64 arrays
    """
    X = _grouped(x, x_info, mode).astype(np.float64)
    return X.mean(axis=(0, 2)), X.var(axis=(0, 2))


def batch_normalization_forward(x, x_info, mode, mu, sigma2, gamma, beta, out=None, pool=None):
    """
    Normalize, scale and shift every group.

    Args:
        x: (n, x_info.size) input
        mu, sigma2: (groups,) statistics to normalize with
        gamma, beta: (groups,) scale and shift

    Returns:
        (n, x_info.size) tensor
    """
    X = _grouped(x, x_info, mode)
    n, groups, k = X.shape
    mu = _per_group(mu, groups, 'mean')
    sigma2 = _per_group(sigma2, groups, 'variance')
    gamma = _per_group(gamma, groups, 'scale')
    beta = _per_group(beta, groups, 'shift')
    out = prepare_output(out, n, x_info.size)
    result = out.data

    def body(start, end):
        scale = (gamma[start:end] / np.sqrt(sigma2[start:end] + EPSILON))[:, None]
        normalized = scale * (X[:, start:end] - mu[start:end, None]) + beta[start:end, None]
        result[:, start * k:end * k] = normalized.reshape(n, -1)

    run_parallel(pool, groups, body)
    return out


def batch_normalization_backward_data(x, x_info, mode, mu, sigma2, gamma, dy, out=None, pool=None):
    """
    Input deltas of a training step, where mu and sigma2 are the statistics of x itself.

    With m values per group:
        dx = gamma / (m * sqrt(sigma2 + eps)) *
             (m * dy - sum(dy) - (x - mu) / (sigma2 + eps) * sum(dy * (x - mu)))
    """
    X = _grouped(x, x_info, mode)
    DY = _grouped(dy, x_info, mode)
    if DY.shape != X.shape:
        raise ShapeError(f"The deltas {DY.shape} don't match the inputs {X.shape}")
    n, groups, k = X.shape
    m = n * k
    mu = _per_group(mu, groups, 'mean')
    sigma2 = _per_group(sigma2, groups, 'variance')
    gamma = _per_group(gamma, groups, 'scale')
    out = prepare_output(out, n, x_info.size)
    result = out.data

    def body(start, end):
        centered = X[:, start:end] - mu[start:end, None]
        delta = DY[:, start:end].astype(np.float64)
        variance = sigma2[start:end] + EPSILON
        sum_dy = np.sum(delta, axis=(0, 2))[:, None]
        sum_dy_centered = np.sum(delta * centered, axis=(0, 2))
        scale = (gamma[start:end] / (m * np.sqrt(variance)))[:, None]
        dx = scale * (m * delta - sum_dy - centered * (sum_dy_centered / variance)[:, None])
        result[:, start * k:end * k] = dx.reshape(n, -1)

    run_parallel(pool, groups, body)
    return out


def batch_normalization_backward_gamma(x, x_info, mode, mu, sigma2, dy, out=None, pool=None):
    """Scale gradients: sum of dy * (x - mu) / sqrt(sigma2 + eps) in each group, as a (1, groups) tensor."""
    X = _grouped(x, x_info, mode)
    DY = _grouped(dy, x_info, mode)
    groups = X.shape[1]
    mu = _per_group(mu, groups, 'mean')
    sigma2 = _per_group(sigma2, groups, 'variance')
    out = prepare_output(out, 1, groups)
    result = out.data

    def body(start, end):
        normalized = (X[:, start:end] - mu[start:end, None]) / np.sqrt(sigma2[start:end] + EPSILON)[:, None]
        result[0, start:end] = np.sum(DY[:, start:end] * normalized, axis=(0, 2))

    run_parallel(pool, groups, body)
    return out


def batch_normalization_backward_beta(dy, x_info, mode, out=None, pool=None):
    """Shift gradients: sum of dy in each group, as a (1, groups) tensor."""
    DY = _grouped(dy, x_info, mode)
    groups = DY.shape[1]
    out = prepare_output(out, 1, groups)
    result = out.data

    def body(start, end):
        result[0, start:end] = np.sum(DY[:, start:end], axis=(0, 2), dtype=np.float64)

    run_parallel(pool, groups, body)
    return out
