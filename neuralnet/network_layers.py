"""
Layer Factories
===============

Deferred layer constructors. Each factory captures the layer hyperparameters
and returns a callable that builds the layer once the incoming TensorInfo is
known, so networks can be declared without repeating every input shape:

    >>> network = SequentialNetwork.build(
    ...     TensorInfo.image(28, 28),
    ...     network_layers.convolutional((5, 5), 20, 'identity'),
    ...     network_layers.pooling('relu'),
    ...     network_layers.fully_connected(100, 'leaky_relu'),
    ...     network_layers.softmax(10))
"""

from .convolution import ConvolutionMode
from .initialization import BiasInitializationMode, WeightsInitializationMode
from .layers import (BatchNormalizationLayer, ConvolutionalLayer, FullyConnectedLayer, OutputLayer,
                     PoolingLayer, SoftmaxLayer)
from .normalization import NormalizationMode


def fully_connected(neurons, activation='sigmoid',
                    weights_mode=WeightsInitializationMode.GLOROT_UNIFORM,
                    bias_mode=BiasInitializationMode.ZERO):
    def factory(input_info, rng=None):
        return FullyConnectedLayer(input_info, neurons, activation, weights_mode, bias_mode, rng=rng)
    return factory


def convolutional(kernel_size, kernels, activation='identity', mode=ConvolutionMode.CONVOLUTION,
                  weights_mode=WeightsInitializationMode.HE_ET_AL_UNIFORM,
                  bias_mode=BiasInitializationMode.ZERO):
    def factory(input_info, rng=None):
        return ConvolutionalLayer(input_info, kernel_size, kernels, activation, mode,
                                  weights_mode, bias_mode, rng=rng)
    return factory


def pooling(activation='identity'):
    def factory(input_info, rng=None):
        return PoolingLayer(input_info, activation)
    return factory


def output(neurons, activation='sigmoid', cost='cross_entropy',
           weights_mode=WeightsInitializationMode.GLOROT_UNIFORM,
           bias_mode=BiasInitializationMode.ZERO):
    def factory(input_info, rng=None):
        return OutputLayer(input_info, neurons, activation, cost, weights_mode, bias_mode, rng=rng)
    return factory


def softmax(neurons, weights_mode=WeightsInitializationMode.GLOROT_UNIFORM,
            bias_mode=BiasInitializationMode.ZERO):
    def factory(input_info, rng=None):
        return SoftmaxLayer(input_info, neurons, weights_mode, bias_mode, rng=rng)
    return factory


def batch_normalization(mode=NormalizationMode.SPATIAL, activation='identity'):
    def factory(input_info, rng=None):
        return BatchNormalizationLayer(input_info, mode, activation)
    return factory
