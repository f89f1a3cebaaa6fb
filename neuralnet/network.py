"""
Neural Networks
===============

Network containers tying layers, a backend and runtime settings together.

This module implements:
- NeuralNetworkBase: inference, cost, evaluation, inspection and persistence
  shared by every network type
- SequentialNetwork: a linear stack of layers trained with backpropagation

The graph based network lives in graph.py and shares the same base class.

Example:
    >>> network = SequentialNetwork.build(
    ...     TensorInfo.linear(784),
    ...     network_layers.fully_connected(100, 'sigmoid'),
    ...     network_layers.output(10, 'sigmoid', 'cross_entropy'),
    ...     seed=42)
    >>> cost, classified, accuracy = network.evaluate(X_test, y_test)
"""

from enum import IntEnum

import numpy as np

from .activations import ActivationType
from .backend import CpuBackend
from .exceptions import NetworkBuildError, ShapeError
from .initialization import get_rng
from .layers import LayerKind
from .settings import NetworkSettings
from .tensor import DTYPE, Tensor, TensorScope


class NetworkType(IntEnum):
    SEQUENTIAL = 0
    COMPUTATION_GRAPH = 1


def _as_samples(values, length=None):
    """Reshape an array of samples to (n, features), single samples become one row."""
    array = np.asarray(values, dtype=DTYPE)
    if array.ndim == 1 and (length is None or array.size == length):
        return array.reshape(1, -1)
    return array.reshape(array.shape[0], int(np.prod(array.shape[1:])))


class NeuralNetworkBase:
    """
    Shared behavior of sequential and graph networks.

    Args:
        layers: Layers in execution order
        backend: CpuBackend the layers run on (default: a new parallel backend)
        settings: NetworkSettings (default: NetworkSettings())
    """

    network_type = None

    def __init__(self, layers, backend=None, settings=None):
        self.settings = settings if settings is not None else NetworkSettings()
        if backend is None:
            backend = CpuBackend.parallel(self.settings.max_workers)
        self.backend = backend
        self.layers = tuple(layers)
        for layer in self.layers:
            layer.bind(backend)
        self._weighted_indexes = tuple(i for i, layer in enumerate(self.layers) if layer.is_weighted)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def input_info(self):
        return self.layers[0].input_info

    @property
    def output_info(self):
        return self.output_layer.output_info

    @property
    def output_layer(self):
        return self.layers[-1]

    @property
    def size(self):
        """Number of layers."""
        return len(self.layers)

    @property
    def parameters(self):
        """Total number of weights and biases."""
        return sum(layer.parameters for layer in self.layers)

    @property
    def weighted_layers_indexes(self):
        return self._weighted_indexes

    @property
    def is_in_numeric_overflow(self):
        """True if any weight or bias is NaN or infinite."""
        for i in self._weighted_indexes:
            layer = self.layers[i]
            if not (np.all(np.isfinite(layer.weights)) and np.all(np.isfinite(layer.biases))):
                return True
        return False

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def _forward(self, x):
        """Run the inference pass on a tensor, returning an owned output tensor."""
        raise NotImplementedError

    def forward(self, x):
        """
        Inference on a single sample or a batch.

        Args:
            x: Sample of shape (features,) or batch of shape (n, ...)

        Returns:
            Output array, (outputs,) for a single sample or (n, outputs)
        """
        array = np.asarray(x, dtype=DTYPE)
        single = array.ndim == 1
        samples = _as_samples(array, self.input_info.size)
        if samples.shape[1] != self.input_info.size:
            raise ShapeError(f"The network expects {self.input_info.size} inputs per sample, got {samples.shape[1]}")
        with Tensor.from_array(samples) as xt, self._forward(xt) as yhat:
            result = yhat.to_array()
        return result[0] if single else result

    def predict(self, x):
        return self.forward(x)

    def calculate_cost(self, x, y):
        """Cost of the network outputs for the given inputs and expected outputs."""
        x = _as_samples(x, self.input_info.size)
        y = _as_samples(y, self.output_info.size)
        with Tensor.from_array(x) as xt, Tensor.from_array(y) as yt, self._forward(xt) as yhat:
            return self.output_layer.calculate_cost(yhat, yt)

    def evaluate(self, x, y, tester=None):
        """
        Evaluate the network on a dataset, in batches of at most
        settings.maximum_batch_size samples.

        Args:
            x: Inputs, shape (n, ...)
            y: Expected outputs, shape (n, outputs)
            tester: Accuracy tester (default: settings.accuracy_tester)

        Returns:
            Tuple (cost, classified, accuracy) with accuracy in [0, 100]
        """
        x = _as_samples(x, self.input_info.size)
        y = _as_samples(y, self.output_info.size)
        if x.shape[0] != y.shape[0]:
            raise ShapeError(f"The number of samples ({x.shape[0]}) and labels ({y.shape[0]}) must match")
        if x.shape[0] == 0:
            raise ShapeError("Can't evaluate an empty dataset")
        tester = tester if tester is not None else self.settings.accuracy_tester
        cost_function = self.output_layer.cost
        n = x.shape[0]
        batch_size = self.settings.maximum_batch_size

        cost, classified = 0.0, 0
        for start in range(0, n, batch_size):
            end = min(start + batch_size, n)
            with Tensor.from_array(x[start:end]) as xt, Tensor.from_array(y[start:end]) as yt, \
                    self._forward(xt) as yhat:
                batch_cost = self.output_layer.calculate_cost(yhat, yt)
                cost += batch_cost * (end - start) / n if cost_function.averaged else batch_cost
                classified += int(np.count_nonzero(tester(yhat.data, yt.data)))
        return cost, classified, classified / n * 100.0

    def extract_deep_features(self, x):
        """
        Run a forward pass keeping every intermediate result.

        Returns:
            List of (z, a) array pairs, one per layer in execution order
        """
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def backpropagate(self, batch, dropout, updater, rng=None):
        """
        Run forward and backward passes on a batch and send the gradients of
        every weighted layer to updater(index, dJdw, dJdb, samples, layer).

        Args:
            batch: SamplesBatch with x and y tensors
            dropout: Probability of dropping a hidden fully connected activation
            updater: Optimizer callback
            rng: numpy Generator for the dropout masks
        """
        raise NotImplementedError

    def _dispatch_updates(self, gradients, samples, updater):
        def update(index):
            dJdw, dJdb = gradients[index]
            updater(index, dJdw, dJdb, samples, self.layers[index])

        self.backend.map(update, [i for i in self._weighted_indexes if gradients[i] is not None])

    # ------------------------------------------------------------------
    # Persistence and comparison
    # ------------------------------------------------------------------

    def save(self, target):
        """Save the network to a path or writable binary stream."""
        from .serialization import save_network
        save_network(self, target)
        if isinstance(target, (str, bytes)) or hasattr(target, '__fspath__'):
            print(f"Network saved to {target}")

    def serialize_metadata_as_json(self):
        from .serialization import serialize_metadata_as_json
        return serialize_metadata_as_json(self)

    def equals(self, other, delta=1e-6):
        if not isinstance(other, NeuralNetworkBase) or other.network_type != self.network_type:
            return False
        if other.size != self.size:
            return False
        return all(a.equals(b, delta) for a, b in zip(self.layers, other.layers))

    def clone(self):
        raise NotImplementedError

    def close(self):
        """Shut down the backend worker threads."""
        self.backend.close()

    def summary(self):
        """Print network summary."""
        print("\n" + "=" * 70)
        print(f"{self.__class__.__name__} Summary")
        print("=" * 70)
        print(f"Input: {self.input_info}")
        print(f"Output: {self.output_info}")
        print("-" * 70)

        for i, layer in enumerate(self.layers):
            print(f"{i:3d}. {str(layer):<45} Params: {layer.parameters:,}")

        print("-" * 70)
        print(f"Total trainable parameters: {self.parameters:,}")
        print("=" * 70 + "\n")

        return self.parameters

    def __repr__(self):
        return f"{self.__class__.__name__}(layers={self.size}, parameters={self.parameters})"


class SequentialNetwork(NeuralNetworkBase):
    """
    Linear stack of layers.

    Args:
        *layers: Layers in order, the last one must be the output layer
        backend: CpuBackend (default: a new parallel backend)
        settings: NetworkSettings

    Raises:
        NetworkBuildError: Fewer than 2 layers, misplaced output layer,
            mismatched neighbouring shapes, or a convolutional layer feeding
            a pooling layer without the identity activation
    """

    network_type = NetworkType.SEQUENTIAL

    def __init__(self, *layers, backend=None, settings=None):
        self._validate(layers)
        super().__init__(layers, backend, settings)

    @classmethod
    def build(cls, input_info, *factories, seed=None, backend=None, settings=None):
        """Build a network from layer factories, chaining the output shapes."""
        rng = get_rng(seed)
        layers = []
        info = input_info
        for factory in factories:
            layer = factory(info, rng=rng)
            layers.append(layer)
            info = layer.output_info
        return cls(*layers, backend=backend, settings=settings)

    @staticmethod
    def _validate(layers):
        if len(layers) < 2:
            raise NetworkBuildError("The network must have at least two layers")
        if not layers[-1].is_output:
            raise NetworkBuildError("The last layer must be an output layer")
        for i, layer in enumerate(layers[:-1]):
            following = layers[i + 1]
            if layer.is_output:
                raise NetworkBuildError(f"The output layer must be the last one, found one at index {i}")
            if layer.output_info.size != following.input_info.size:
                raise NetworkBuildError(
                    f"The output of layer {i} ({layer.output_info.size}) doesn't match "
                    f"the input of layer {i + 1} ({following.input_info.size})")
            if layer.kind == LayerKind.CONVOLUTIONAL and following.kind == LayerKind.POOLING \
                    and layer.activation.type != ActivationType.IDENTITY:
                raise NetworkBuildError("A convolutional layer followed by pooling must use the identity activation")

    def _forward(self, x):
        a = x
        for layer in self.layers:
            z, output = layer.forward(a)
            z.free()
            if a is not x:
                a.free()
            a = output
        return a

    def extract_deep_features(self, x):
        samples = _as_samples(x, self.input_info.size)
        features = []
        with Tensor.from_array(samples) as xt:
            a = xt
            for layer in self.layers:
                z, a = layer.forward(a)
                features.append((z.to_array(), a.to_array()))
                z.free()
            a.free()
        return features

    def backpropagate(self, batch, dropout, updater, rng=None):
        if not 0 <= dropout < 1:
            raise ValueError("The dropout probability must be in the [0, 1) range")
        rng = get_rng(rng)
        x, y = batch.x, batch.y
        n = x.entities
        last = len(self.layers) - 1

        with TensorScope() as scope:
            zs, activations, masks = [], [], {}
            a = x
            for i, layer in enumerate(self.layers):
                z, a = layer.forward_training(a)
                scope.track(z)
                scope.track(a)
                if dropout > 0 and layer.kind == LayerKind.FULLY_CONNECTED:
                    mask = scope.track(self.backend.dropout_mask(n, a.length, dropout, rng))
                    self.backend.multiply_elementwise(a, mask, out=a)
                    masks[i] = mask
                zs.append(z)
                activations.append(a)

            def layer_input(index):
                return x if index == 0 else activations[index - 1]

            gradients = [None] * len(self.layers)
            delta = scope.new(n, self.layers[last].inputs, clean=False)
            gradients[last] = self.layers[last].backpropagate_output(
                layer_input(last), activations[last], y, zs[last], delta)

            for i in range(last - 1, -1, -1):
                if i in masks:
                    self.backend.multiply_elementwise(delta, masks[i], out=delta)
                dx = scope.new(n, self.layers[i].inputs, clean=False) if i > 0 else None
                gradients[i] = self.layers[i].backpropagate(layer_input(i), delta, zs[i], dx)
                delta = dx

            for pair in gradients:
                if pair is not None:
                    scope.track(pair[0])
                    scope.track(pair[1])
            self._dispatch_updates(gradients, n, updater)

    def clone(self):
        return SequentialNetwork(*[layer.clone() for layer in self.layers], backend=self.backend,
                                 settings=self.settings)
