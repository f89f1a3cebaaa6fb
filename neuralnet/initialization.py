"""
Weights Initialization
======================

Initial values for layer weights and biases.

Every function draws from an explicit numpy Generator so that networks can
be rebuilt identically from a seed.

Weight schemes (fan_in / fan_out are the number of inputs / outputs of a unit):
- LeCun uniform:  U(-sqrt(3 / fan_in), sqrt(3 / fan_in))
- Glorot normal:  N(0, sqrt(2 / (fan_in + fan_out)))
- Glorot uniform: U(-sqrt(6 / (fan_in + fan_out)), ...)
- He normal:      N(0, sqrt(2 / fan_in)), good for ReLU
- He uniform:     U(-sqrt(6 / fan_in), sqrt(6 / fan_in))
"""

from enum import IntEnum

import numpy as np

from .tensor import DTYPE


class WeightsInitializationMode(IntEnum):
    LECUN_UNIFORM = 0
    GLOROT_NORMAL = 1
    GLOROT_UNIFORM = 2
    HE_ET_AL_NORMAL = 3
    HE_ET_AL_UNIFORM = 4


class BiasInitializationMode(IntEnum):
    ZERO = 0
    GAUSSIAN = 1


def get_rng(seed=None):
    """Return a numpy Generator from a seed, an existing Generator, or fresh entropy."""
    if isinstance(seed, np.random.Generator):
        return seed
    return np.random.default_rng(seed)


def _fill(shape, mode, fan_in, fan_out, rng):
    mode = WeightsInitializationMode(mode)
    if mode == WeightsInitializationMode.LECUN_UNIFORM:
        scale = np.sqrt(3.0 / fan_in)
        values = rng.uniform(-scale, scale, shape)
    elif mode == WeightsInitializationMode.GLOROT_NORMAL:
        values = rng.normal(0.0, np.sqrt(2.0 / (fan_in + fan_out)), shape)
    elif mode == WeightsInitializationMode.GLOROT_UNIFORM:
        scale = np.sqrt(6.0 / (fan_in + fan_out))
        values = rng.uniform(-scale, scale, shape)
    elif mode == WeightsInitializationMode.HE_ET_AL_NORMAL:
        values = rng.normal(0.0, np.sqrt(2.0 / fan_in), shape)
    else:
        scale = np.sqrt(6.0 / fan_in)
        values = rng.uniform(-scale, scale, shape)
    return values.astype(DTYPE)


def fully_connected_weights(inputs, outputs, mode=WeightsInitializationMode.GLOROT_UNIFORM, rng=None):
    """(inputs, outputs) weight matrix for a fully connected layer."""
    if inputs <= 0 or outputs <= 0:
        raise ValueError("The inputs and outputs must be positive numbers")
    return _fill((inputs, outputs), mode, inputs, outputs, get_rng(rng))


def convolutional_kernels(input_info, kernel_height, kernel_width, kernels,
                          mode=WeightsInitializationMode.HE_ET_AL_UNIFORM, rng=None):
    """(kernels, channels * kh * kw) matrix, one 3D kernel per row."""
    if kernels <= 0:
        raise ValueError("The number of kernels must be positive")
    fan_in = input_info.channels * kernel_height * kernel_width
    fan_out = kernels * kernel_height * kernel_width
    return _fill((kernels, fan_in), mode, fan_in, fan_out, get_rng(rng))


def biases(length, mode=BiasInitializationMode.ZERO, rng=None):
    if length <= 0:
        raise ValueError("The biases vector must have a positive number of items")
    if BiasInitializationMode(mode) == BiasInitializationMode.ZERO:
        return np.zeros(length, dtype=DTYPE)
    return get_rng(rng).standard_normal(length).astype(DTYPE)
