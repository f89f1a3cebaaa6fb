"""
Network Layers
==============

The building blocks of sequential and graph networks. Each layer exposes the
same contract:
- forward(x) -> (z, a): activity and activation, both owned by the caller
- forward_training(x): forward pass of a training step, may update running statistics
- backpropagate(x, dy, z, dx) -> (dJdw, dJdb) or None for constant layers

A layer is described by a LayerKind tag, its input/output TensorInfo and the
activation function it holds. Weighted layers keep their parameters as plain
float32 arrays, which the optimizers update in place.

Layers implemented:
- FullyConnectedLayer: y = f(x * W + b)
- ConvolutionalLayer: valid 2D convolution over 3D volumes
- PoolingLayer: 2x2 max pooling, the only constant layer
- OutputLayer: fully connected layer that owns the cost function
- SoftmaxLayer: softmax output layer paired with the log-likelihood cost
- BatchNormalizationLayer: normalization with batch statistics, learned scale and shift
"""

import hashlib
from enum import IntEnum

import numpy as np

from .activations import ActivationType, get_activation
from .backend import CpuBackend
from .convolution import ConvolutionMode, pooling_output_info
from .costs import get_cost
from .exceptions import ShapeError
from .initialization import (BiasInitializationMode, WeightsInitializationMode,
                             biases as new_biases, convolutional_kernels,
                             fully_connected_weights, get_rng)
from .normalization import NormalizationMode, normalization_groups
from .tensor import DTYPE, Tensor, TensorInfo

# Layers that were not bound to a network run their kernels inline
_INLINE_BACKEND = CpuBackend()


class LayerKind(IntEnum):
    FULLY_CONNECTED = 0
    CONVOLUTIONAL = 1
    POOLING = 2
    OUTPUT = 3
    SOFTMAX = 4
    BATCH_NORMALIZATION = 5

    @property
    def is_weighted(self):
        return self != LayerKind.POOLING

    @property
    def is_output(self):
        return self in (LayerKind.OUTPUT, LayerKind.SOFTMAX)


def _parameter(values, shape, name):
    """Copy user provided weights/biases into a float32 array of the given shape."""
    array = np.array(values, dtype=DTYPE, copy=True)
    if array.size != int(np.prod(shape)):
        raise ShapeError(f"The {name} must have {int(np.prod(shape))} values, got {array.size}")
    return array.reshape(shape)


class Layer:
    """Base class for all layers."""

    kind = None

    def __init__(self, input_info, output_info, activation, backend=None):
        self.input_info = input_info
        self.output_info = output_info
        self.activation = get_activation(activation)
        self.backend = backend if backend is not None else _INLINE_BACKEND
        self.weights = None
        self.biases = None

    @property
    def inputs(self):
        return self.input_info.size

    @property
    def outputs(self):
        return self.output_info.size

    @property
    def is_weighted(self):
        return self.kind.is_weighted

    @property
    def is_output(self):
        return self.kind.is_output

    @property
    def parameters(self):
        if not self.is_weighted:
            return 0
        return self.weights.size + self.biases.size

    def bind(self, backend):
        """Run the layer kernels on the given backend."""
        self.backend = backend if backend is not None else _INLINE_BACKEND

    def forward(self, x):
        """
        Forward pass.

        Args:
            x: (n, inputs) tensor

        Returns:
            Tuple (z, a) of (n, outputs) tensors owned by the caller
        """
        raise NotImplementedError

    def forward_training(self, x):
        """Forward pass of a training step, forward() unless the layer tracks batch statistics."""
        return self.forward(x)

    def backpropagate(self, x, dy, z, dx=None):
        """
        Backward pass.

        Args:
            x: Input of the layer in the forward pass
            dy: Delta w.r.t. the layer activation, overwritten with the delta w.r.t. z
            z: Activity computed in the forward pass
            dx: Optional (n, inputs) buffer for the delta w.r.t. the layer input

        Returns:
            Tuple (dJdw, dJdb) for weighted layers, None for constant layers
        """
        raise NotImplementedError

    def _check_input(self, x):
        if x.length != self.inputs:
            raise ShapeError(f"{self.__class__.__name__} expects {self.inputs} inputs per sample, got {x.length}")

    def __call__(self, x):
        return self.forward(x)

    def clone(self):
        raise NotImplementedError

    def equals(self, other, delta=1e-6):
        """Compare kind, shapes, activation and parameters (within `delta`)."""
        if not isinstance(other, Layer) or other.kind != self.kind:
            return False
        if other.input_info != self.input_info or other.output_info != self.output_info:
            return False
        if other.activation.type != self.activation.type:
            return False
        if self.is_weighted:
            if self.weights.shape != other.weights.shape or self.biases.shape != other.biases.shape:
                return False
            return bool(np.allclose(self.weights, other.weights, rtol=delta, atol=delta) and
                        np.allclose(self.biases, other.biases, rtol=delta, atol=delta))
        return True

    def hash(self):
        """SHA256 of the layer type, shapes, activation and parameters."""
        sha = hashlib.sha256()
        sha.update(bytes([int(self.kind), int(self.activation.type)]))
        sha.update(np.array(self.input_info + self.output_info, dtype=np.int32).tobytes())
        if self.is_weighted:
            sha.update(np.ascontiguousarray(self.weights).tobytes())
            sha.update(np.ascontiguousarray(self.biases).tobytes())
        return sha.hexdigest()

    def to_metadata(self):
        """Dictionary description used by the JSON export."""
        return {
            'LayerType': self.kind.name,
            'InputInfo': self.input_info.to_dict(),
            'OutputInfo': self.output_info.to_dict(),
            'ActivationType': self.activation.type.name,
            'Hash': self.hash(),
        }

    def __repr__(self):
        return (f"{self.__class__.__name__}({self.inputs} -> {self.outputs}, "
                f"activation={self.activation.type.name.lower()})")


class FullyConnectedLayer(Layer):
    """
    Fully connected layer: z = x * W + b, a = f(z).

    Args:
        input_info: Shape of each input sample (flattened)
        outputs: Number of neurons
        activation: Activation name, type or instance (default: 'sigmoid')
        weights_mode: WeightsInitializationMode for new weights
        bias_mode: BiasInitializationMode for new biases
        weights: Optional (inputs, outputs) initial weights
        biases: Optional (outputs,) initial biases
        rng: Seed or numpy Generator for the initialization

    Shapes:
        weights: (inputs, outputs), biases: (outputs,)

    The backward pass computes:
    1. delta = f'(z) * dy
    2. dx = delta * W^T (delta for the previous layer)
    3. dJdw = x^T * delta, dJdb = column sums of delta
    """

    kind = LayerKind.FULLY_CONNECTED

    def __init__(self, input_info, outputs, activation='sigmoid',
                 weights_mode=WeightsInitializationMode.GLOROT_UNIFORM,
                 bias_mode=BiasInitializationMode.ZERO,
                 weights=None, biases=None, rng=None, backend=None):
        if outputs <= 0:
            raise ValueError("The number of outputs must be positive")
        super().__init__(input_info, TensorInfo.linear(outputs), activation, backend)
        self._check_activation()

        rng = get_rng(rng)
        shape = (input_info.size, outputs)
        if weights is None:
            self.weights = fully_connected_weights(*shape, mode=weights_mode, rng=rng)
        else:
            self.weights = _parameter(weights, shape, 'weights')
        if biases is None:
            self.biases = new_biases(outputs, bias_mode, rng)
        else:
            self.biases = _parameter(biases, (outputs,), 'biases')

    def _check_activation(self):
        if self.activation.type == ActivationType.SOFTMAX:
            raise ValueError("The softmax activation is only supported by the softmax layer")

    def forward(self, x):
        self._check_input(x)
        z = self.backend.fully_connected_forward(x, self.weights, self.biases)
        a = self.backend.activation_forward(z, self.activation)
        return z, a

    def backpropagate(self, x, dy, z, dx=None):
        self.backend.activation_backward(z, dy, self.activation, out=dy)
        return self._gradients(x, dy, dx)

    def _gradients(self, x, delta, dx):
        if dx is not None:
            self.backend.fully_connected_backward_data(delta, self.weights, out=dx)
        dJdw = self.backend.fully_connected_backward_filter(x, delta)
        dJdb = self.backend.fully_connected_backward_bias(delta)
        return dJdw, dJdb

    def clone(self):
        return FullyConnectedLayer(self.input_info, self.outputs, self.activation,
                                   weights=self.weights, biases=self.biases, backend=self.backend)


class OutputLayer(FullyConnectedLayer):
    """
    Terminal fully connected layer owning the cost function.

    Valid pairs: any elementwise activation with the quadratic cost, or the
    sigmoid activation with the cross-entropy cost. Softmax outputs must use
    SoftmaxLayer.

    Args:
        cost: Cost name, CostFunctionType or CostFunction (default: 'cross_entropy')
        (other arguments as in FullyConnectedLayer)
    """

    kind = LayerKind.OUTPUT

    def __init__(self, input_info, outputs, activation='sigmoid', cost='cross_entropy',
                 weights_mode=WeightsInitializationMode.GLOROT_UNIFORM,
                 bias_mode=BiasInitializationMode.ZERO,
                 weights=None, biases=None, rng=None, backend=None):
        self.cost = get_cost(cost)
        super().__init__(input_info, outputs, activation, weights_mode, bias_mode,
                         weights, biases, rng, backend)

    def _check_activation(self):
        self.cost.validate(self.activation)

    def backpropagate_output(self, x, yhat, y, z, dx=None):
        """
        Start backpropagation from the expected outputs.

        Args:
            x: Input of the layer in the forward pass
            yhat: Layer activation (the network output)
            y: Expected outputs
            z: Layer activity
            dx: Optional buffer for the delta w.r.t. the layer input

        Returns:
            Tuple (dJdw, dJdb)
        """
        if not yhat.match_shape(y):
            raise ShapeError(f"The expected outputs {y.shape} don't match the network outputs {yhat.shape}")
        with Tensor(self.cost.backward(yhat.data, y.data, z.data, self.activation)) as delta:
            return self._gradients(x, delta, dx)

    def calculate_cost(self, yhat, y):
        return self.cost.forward(yhat.data, y.data)

    def equals(self, other, delta=1e-6):
        return super().equals(other, delta) and other.cost.type == self.cost.type

    def hash(self):
        sha = hashlib.sha256(super().hash().encode())
        sha.update(bytes([int(self.cost.type)]))
        return sha.hexdigest()

    def to_metadata(self):
        metadata = super().to_metadata()
        metadata['CostFunctionType'] = self.cost.type.name
        return metadata

    def clone(self):
        return OutputLayer(self.input_info, self.outputs, self.activation, self.cost,
                           weights=self.weights, biases=self.biases, backend=self.backend)


class SoftmaxLayer(OutputLayer):
    """Softmax output layer, always paired with the log-likelihood cost."""

    kind = LayerKind.SOFTMAX

    def __init__(self, input_info, outputs,
                 weights_mode=WeightsInitializationMode.GLOROT_UNIFORM,
                 bias_mode=BiasInitializationMode.ZERO,
                 weights=None, biases=None, rng=None, backend=None):
        super().__init__(input_info, outputs, 'softmax', 'log_likelihood', weights_mode,
                         bias_mode, weights, biases, rng, backend)

    def clone(self):
        return SoftmaxLayer(self.input_info, self.outputs, weights=self.weights,
                            biases=self.biases, backend=self.backend)


class ConvolutionalLayer(Layer):
    """
    2D convolutional layer over flattened 3D volumes.

    Args:
        input_info: Shape of each input volume
        kernel_size: (height, width) of each kernel, or an int for square kernels
        kernels: Number of kernels (output channels)
        activation: Activation (default: 'identity', required when followed by pooling)
        mode: ConvolutionMode (default: flipped kernels)
        weights: Optional (kernels, channels * kh * kw) initial kernels
        biases: Optional (kernels,) initial biases
        rng: Seed or numpy Generator for the initialization

    Output shape: (H - kh + 1, W - kw + 1, kernels)
    """

    kind = LayerKind.CONVOLUTIONAL

    def __init__(self, input_info, kernel_size, kernels, activation='identity',
                 mode=ConvolutionMode.CONVOLUTION,
                 weights_mode=WeightsInitializationMode.HE_ET_AL_UNIFORM,
                 bias_mode=BiasInitializationMode.ZERO,
                 weights=None, biases=None, rng=None, backend=None):
        kh, kw = kernel_size if isinstance(kernel_size, tuple) else (kernel_size, kernel_size)
        if kh < 2 or kw < 2:
            raise ShapeError("The kernel must be at least 2x2")
        if kh > input_info.height or kw > input_info.width:
            raise ShapeError("The kernel can't be larger than the input volume")
        if kernels <= 0:
            raise ValueError("The number of kernels must be positive")
        output_info = TensorInfo(input_info.height - kh + 1, input_info.width - kw + 1, kernels)
        super().__init__(input_info, output_info, activation, backend)
        if self.activation.type == ActivationType.SOFTMAX:
            raise ValueError("The softmax activation is only supported by the softmax layer")

        self.kernel_info = TensorInfo(kh, kw, input_info.channels)
        self.mode = ConvolutionMode(mode)
        rng = get_rng(rng)
        shape = (kernels, self.kernel_info.size)
        if weights is None:
            self.weights = convolutional_kernels(input_info, kh, kw, kernels, weights_mode, rng)
        else:
            self.weights = _parameter(weights, shape, 'kernels')
        if biases is None:
            self.biases = new_biases(kernels, bias_mode, rng)
        else:
            self.biases = _parameter(biases, (kernels,), 'biases')

    @property
    def kernels(self):
        return self.output_info.channels

    def forward(self, x):
        self._check_input(x)
        z = self.backend.convolution_forward(x, self.input_info, self.weights, self.kernel_info,
                                             self.biases, self.mode)
        a = self.backend.activation_forward(z, self.activation)
        return z, a

    def backpropagate(self, x, dy, z, dx=None):
        self.backend.activation_backward(z, dy, self.activation, out=dy)
        if dx is not None:
            self.backend.convolution_backward_data(dy, self.output_info, self.weights,
                                                   self.kernel_info, self.mode, out=dx)
        dJdw = self.backend.convolution_backward_filter(x, self.input_info, dy, self.output_info, self.mode)
        dJdb = self.backend.convolution_backward_bias(dy, self.output_info)
        return dJdw, dJdb

    def equals(self, other, delta=1e-6):
        return (super().equals(other, delta) and other.kernel_info == self.kernel_info
                and other.mode == self.mode)

    def to_metadata(self):
        metadata = super().to_metadata()
        metadata['ConvolutionInfo'] = {'Mode': self.mode.name}
        metadata['KernelInfo'] = self.kernel_info.to_dict()
        return metadata

    def clone(self):
        return ConvolutionalLayer(self.input_info, (self.kernel_info.height, self.kernel_info.width),
                                  self.kernels, self.activation, self.mode,
                                  weights=self.weights, biases=self.biases, backend=self.backend)

    def __repr__(self):
        return (f"ConvolutionalLayer({self.input_info} -> {self.output_info}, "
                f"kernel={self.kernel_info.height}x{self.kernel_info.width}, "
                f"activation={self.activation.type.name.lower()})")


class PoolingLayer(Layer):
    """
    2x2 max pooling with stride 2, followed by an activation.

    Odd input sides produce an extra output row/column pooled over a
    degenerate window. The input slices must be square.

    Backprop: the delta flows only to the maximum of each window.
    """

    kind = LayerKind.POOLING

    def __init__(self, input_info, activation='identity', backend=None):
        if input_info.height != input_info.width:
            raise ShapeError("The pooling layer requires square input slices")
        super().__init__(input_info, pooling_output_info(input_info), activation, backend)
        if self.activation.type == ActivationType.SOFTMAX:
            raise ValueError("The softmax activation is only supported by the softmax layer")

    def forward(self, x):
        self._check_input(x)
        z = self.backend.pooling_forward(x, self.input_info)
        a = self.backend.activation_forward(z, self.activation)
        return z, a

    def backpropagate(self, x, dy, z, dx=None):
        self.backend.activation_backward(z, dy, self.activation, out=dy)
        if dx is not None:
            self.backend.pooling_backward(x, self.input_info, dy, out=dx)
        return None

    def to_metadata(self):
        metadata = super().to_metadata()
        metadata['PoolingInfo'] = {'Mode': 'MAX', 'WindowHeight': 2, 'WindowWidth': 2,
                                   'VerticalStride': 2, 'HorizontalStride': 2}
        return metadata

    def clone(self):
        return PoolingLayer(self.input_info, self.activation, backend=self.backend)

    def __repr__(self):
        return f"PoolingLayer({self.input_info} -> {self.output_info})"


class BatchNormalizationLayer(Layer):
    """
    Batch normalization followed by an activation: a = f(gamma * x_hat + beta).

    Training steps normalize with the mean and variance of the current batch
    and fold them into the running statistics with a cumulative moving
    average. Inference normalizes with the running statistics.

    Args:
        input_info: Shape of each input sample, also the output shape
        mode: NormalizationMode (default: one mean/variance per channel)
        activation: Activation (default: 'identity')
        weights: Optional (groups,) initial gamma, ones by default
        biases: Optional (groups,) initial beta, zeros by default
        mu: Optional (groups,) running mean, zeros by default
        sigma2: Optional (groups,) running variance, ones by default
        iteration: Number of batches already averaged into mu and sigma2

    groups is input_info.channels in SPATIAL mode, input_info.size in
    PER_ACTIVATION mode.
    """

    kind = LayerKind.BATCH_NORMALIZATION

    def __init__(self, input_info, mode=NormalizationMode.SPATIAL, activation='identity',
                 weights=None, biases=None, mu=None, sigma2=None, iteration=0, backend=None):
        super().__init__(input_info, input_info, activation, backend)
        if self.activation.type == ActivationType.SOFTMAX:
            raise ValueError("The softmax activation is only supported by the softmax layer")
        if iteration < 0:
            raise ValueError("The iteration count can't be negative")
        self.mode = NormalizationMode(mode)
        groups = normalization_groups(input_info, self.mode)
        self.weights = np.ones(groups, dtype=DTYPE) if weights is None else _parameter(weights, (groups,), 'weights')
        self.biases = np.zeros(groups, dtype=DTYPE) if biases is None else _parameter(biases, (groups,), 'biases')
        self.mu = np.zeros(groups, dtype=DTYPE) if mu is None else _parameter(mu, (groups,), 'mean')
        self.sigma2 = np.ones(groups, dtype=DTYPE) if sigma2 is None else _parameter(sigma2, (groups,), 'variance')
        self.iteration = int(iteration)

    @property
    def cumulative_moving_average_factor(self):
        return 1.0 / (1 + self.iteration)

    def forward(self, x):
        self._check_input(x)
        return self._normalize(x, self.mu, self.sigma2)

    def forward_training(self, x):
        self._check_input(x)
        mu, sigma2 = self.backend.batch_normalization_statistics(x, self.input_info, self.mode)
        factor = self.cumulative_moving_average_factor
        self.mu[:] = mu * factor + self.mu * (1 - factor)
        self.sigma2[:] = sigma2 * factor + self.sigma2 * (1 - factor)
        self.iteration += 1
        return self._normalize(x, mu, sigma2)

    def _normalize(self, x, mu, sigma2):
        z = self.backend.batch_normalization_forward(x, self.input_info, self.mode, mu, sigma2,
                                                     self.weights, self.biases)
        a = self.backend.activation_forward(z, self.activation)
        return z, a

    def backpropagate(self, x, dy, z, dx=None):
        self.backend.activation_backward(z, dy, self.activation, out=dy)
        # Deltas of a training step, normalized with the statistics of x
        mu, sigma2 = self.backend.batch_normalization_statistics(x, self.input_info, self.mode)
        if dx is not None:
            self.backend.batch_normalization_backward_data(x, self.input_info, self.mode, mu, sigma2,
                                                           self.weights, dy, out=dx)
        dJdw = self.backend.batch_normalization_backward_gamma(x, self.input_info, self.mode, mu, sigma2, dy)
        dJdb = self.backend.batch_normalization_backward_beta(dy, self.input_info, self.mode)
        return dJdw, dJdb

    def equals(self, other, delta=1e-6):
        return (super().equals(other, delta) and other.mode == self.mode
                and other.iteration == self.iteration
                and bool(np.allclose(self.mu, other.mu, rtol=delta, atol=delta))
                and bool(np.allclose(self.sigma2, other.sigma2, rtol=delta, atol=delta)))

    def hash(self):
        sha = hashlib.sha256(super().hash().encode())
        sha.update(bytes([int(self.mode)]))
        sha.update(np.ascontiguousarray(self.mu, dtype=DTYPE).tobytes())
        sha.update(np.ascontiguousarray(self.sigma2, dtype=DTYPE).tobytes())
        return sha.hexdigest()

    def to_metadata(self):
        metadata = super().to_metadata()
        metadata['NormalizationMode'] = self.mode.name
        metadata['CumulativeMovingAverageFactor'] = self.cumulative_moving_average_factor
        return metadata

    def clone(self):
        return BatchNormalizationLayer(self.input_info, self.mode, self.activation,
                                       weights=self.weights, biases=self.biases, mu=self.mu,
                                       sigma2=self.sigma2, iteration=self.iteration, backend=self.backend)

    def __repr__(self):
        return (f"BatchNormalizationLayer({self.input_info}, mode={self.mode.name.lower()}, "
                f"activation={self.activation.type.name.lower()})")
