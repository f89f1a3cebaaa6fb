"""
Sequential Network Tests
========================

Construction rules, inference, evaluation, backpropagation and cloning.
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from neuralnet import network_layers
from neuralnet.backend import CpuBackend
from neuralnet.datasets import SamplesBatch, one_hot_encode
from neuralnet.exceptions import NetworkBuildError, ShapeError
from neuralnet.layers import ConvolutionalLayer, FullyConnectedLayer, OutputLayer, PoolingLayer
from neuralnet.network import NetworkType, SequentialNetwork
from neuralnet.normalization import NormalizationMode
from neuralnet.optimizers import StochasticGradientDescent
from neuralnet.settings import NetworkSettings, argmax_tester, threshold_tester
from neuralnet.tensor import TensorInfo


def small_network(seed=0, **kwargs):
    return SequentialNetwork.build(
        TensorInfo.linear(4),
        network_layers.fully_connected(8, 'tanh'),
        network_layers.output(3, 'sigmoid', 'cross_entropy'),
        seed=seed, backend=CpuBackend(), **kwargs)


def conv_network(seed=0):
    return SequentialNetwork.build(
        TensorInfo(8, 8, 1),
        network_layers.convolutional((3, 3), 4, 'identity'),
        network_layers.pooling('relu'),
        network_layers.fully_connected(10, 'leaky_relu'),
        network_layers.softmax(3),
        seed=seed, backend=CpuBackend())


class TestConstruction:
    """Tests for the sequential network rules."""

    def test_build_chains_shapes(self):
        """Factories receive the output shape of the previous layer."""
        network = conv_network()
        assert network.size == 4
        assert network.input_info == TensorInfo(8, 8, 1)
        assert network.output_info == TensorInfo.linear(3)
        assert network.layers[2].inputs == 3 * 3 * 4
        assert network.weighted_layers_indexes == (0, 2, 3)
        assert network.network_type == NetworkType.SEQUENTIAL

    def test_parameters(self):
        """Total number of weights and biases."""
        network = small_network()
        assert network.parameters == 4 * 8 + 8 + 8 * 3 + 3

    def test_requires_two_layers(self):
        """A single output layer isn't a network."""
        with pytest.raises(NetworkBuildError):
            SequentialNetwork(OutputLayer(TensorInfo.linear(4), 2, rng=0))

    def test_output_layer_last(self):
        """The last layer must be the only output layer."""
        hidden = FullyConnectedLayer(TensorInfo.linear(4), 4, rng=0)
        out = OutputLayer(TensorInfo.linear(4), 4, rng=0)
        with pytest.raises(NetworkBuildError):
            SequentialNetwork(out, hidden)
        with pytest.raises(NetworkBuildError):
            SequentialNetwork(out, OutputLayer(TensorInfo.linear(4), 4, rng=1))

    def test_mismatched_shapes(self):
        """Neighbouring layers must agree on the number of values."""
        with pytest.raises(NetworkBuildError):
            SequentialNetwork(FullyConnectedLayer(TensorInfo.linear(4), 5, rng=0),
                              OutputLayer(TensorInfo.linear(4), 2, rng=0))

    def test_convolution_before_pooling(self):
        """A convolution feeding a pooling layer must use the identity activation."""
        conv = ConvolutionalLayer(TensorInfo(6, 6, 1), 3, 2, 'relu', rng=0)
        pool = PoolingLayer(conv.output_info)
        out = OutputLayer(pool.output_info, 2, rng=0)
        with pytest.raises(NetworkBuildError):
            SequentialNetwork(conv, pool, out)

    def test_build_is_reproducible(self):
        """The same seed gives equal networks."""
        assert conv_network(3).equals(conv_network(3))
        assert not conv_network(3).equals(conv_network(4))

    def test_settings_validation(self):
        """The maximum batch size must be at least 10."""
        with pytest.raises(ValueError):
            NetworkSettings(maximum_batch_size=5)
        with pytest.raises(ValueError):
            threshold_tester(1.0)


class TestInference:
    """Tests for forward, evaluate and extract_deep_features."""

    def test_forward_shapes(self):
        """Single samples give vectors, batches give matrices."""
        network = conv_network()
        single = network.forward(np.random.randn(64))
        batch = network.forward(np.random.randn(5, 8, 8))
        assert single.shape == (3,)
        assert batch.shape == (5, 3)
        np.testing.assert_allclose(batch.sum(axis=1), np.ones(5), rtol=1e-5)
        np.testing.assert_allclose(network.predict(np.zeros(64)), network.forward(np.zeros(64)))

    def test_forward_wrong_size(self):
        """Inputs of the wrong size raise ShapeError."""
        with pytest.raises(ShapeError):
            small_network().forward(np.zeros((2, 5)))

    def test_evaluate_batches_agree(self):
        """Splitting the evaluation in batches doesn't change the result."""
        rng = np.random.default_rng(0)
        x = rng.standard_normal((37, 4))
        y = one_hot_encode(rng.integers(0, 3, 37), 3)

        full = small_network(settings=NetworkSettings(maximum_batch_size=100))
        split = small_network(settings=NetworkSettings(maximum_batch_size=10))
        cost_a, classified_a, accuracy_a = full.evaluate(x, y)
        cost_b, classified_b, accuracy_b = split.evaluate(x, y)

        assert cost_a == pytest.approx(cost_b, rel=1e-5)
        assert classified_a == classified_b
        assert accuracy_a == pytest.approx(classified_a / 37 * 100)
        assert cost_a == pytest.approx(full.calculate_cost(x, y), rel=1e-5)

    def test_evaluate_quadratic_sums_batches(self):
        """Summed costs are added up across the evaluation batches."""
        rng = np.random.default_rng(1)
        x = rng.standard_normal((25, 4))
        y = rng.uniform(0, 1, (25, 2))
        network = SequentialNetwork.build(
            TensorInfo.linear(4),
            network_layers.fully_connected(5, 'tanh'),
            network_layers.output(2, 'sigmoid', 'quadratic'),
            seed=0, backend=CpuBackend(), settings=NetworkSettings(maximum_batch_size=10))
        cost, _, _ = network.evaluate(x, y)
        assert cost == pytest.approx(network.calculate_cost(x, y), rel=1e-5)

    def test_custom_tester(self):
        """Threshold tester for multi-label outputs."""
        network = small_network()
        x = np.zeros((4, 4))
        yhat = network.forward(x)
        y = (yhat > 0.5).astype(np.float32)
        _, classified, accuracy = network.evaluate(x, y, tester=threshold_tester(0.5))
        assert classified == 4 and accuracy == 100.0

    def test_evaluate_errors(self):
        """Mismatched or empty datasets raise ShapeError."""
        network = small_network()
        with pytest.raises(ShapeError):
            network.evaluate(np.zeros((3, 4)), np.zeros((2, 3)))
        with pytest.raises(ShapeError):
            network.evaluate(np.zeros((0, 4)), np.zeros((0, 3)))

    def test_deep_features(self):
        """One (z, a) pair per layer, the last activation is the output."""
        network = conv_network()
        x = np.random.randn(2, 64)
        features = network.extract_deep_features(x)
        assert len(features) == 4
        assert features[0][0].shape == (2, 6 * 6 * 4)
        assert features[1][1].shape == (2, 3 * 3 * 4)
        np.testing.assert_allclose(features[-1][1], network.forward(x), rtol=1e-6)

    def test_argmax_tester(self):
        """argmax_tester compares the largest entries."""
        tester = argmax_tester()
        result = tester(np.array([[0.1, 0.9], [0.8, 0.2]]), np.array([[0, 1], [0, 1]]))
        assert result.tolist() == [True, False]


class TestTraining:
    """Tests for backpropagate and numeric overflow detection."""

    def test_sgd_step_reduces_cost(self):
        """A few SGD steps on the same batch reduce its cost."""
        rng = np.random.default_rng(2)
        x = rng.standard_normal((16, 4))
        y = one_hot_encode(rng.integers(0, 3, 16), 3)
        network = small_network()
        batch = SamplesBatch.from_arrays(x, y)
        before = network.calculate_cost(x, y)
        optimizer = StochasticGradientDescent(eta=0.5)
        for _ in range(20):
            network.backpropagate(batch, 0.0, optimizer)
        assert network.calculate_cost(x, y) < before

    def test_dropout_is_reproducible(self):
        """The same generator gives the same dropout masks."""
        rng = np.random.default_rng(3)
        x = rng.standard_normal((8, 4))
        y = one_hot_encode(rng.integers(0, 3, 8), 3)
        a, b = small_network(), small_network()
        batch = SamplesBatch.from_arrays(x, y)
        a.backpropagate(batch, 0.5, StochasticGradientDescent(), np.random.default_rng(9))
        b.backpropagate(batch, 0.5, StochasticGradientDescent(), np.random.default_rng(9))
        assert a.equals(b)
        with pytest.raises(ValueError):
            a.backpropagate(batch, 1.0, StochasticGradientDescent())

    def test_only_weighted_layers_are_updated(self):
        """The optimizer receives one call per weighted layer."""
        network = conv_network()
        x = np.random.randn(3, 64)
        y = one_hot_encode([0, 1, 2], 3)
        calls = []
        network.backpropagate(SamplesBatch.from_arrays(x, y), 0.0,
                              lambda index, dJdw, dJdb, samples, layer: calls.append((index, samples)))
        assert sorted(calls) == [(0, 3), (2, 3), (3, 3)]

    def test_batch_normalization_training(self):
        """Training steps fold the batch statistics into the running ones, inference leaves them alone."""
        rng = np.random.default_rng(4)
        x = rng.standard_normal((16, 4)) * 3 + 2
        y = one_hot_encode(rng.integers(0, 3, 16), 3)
        network = SequentialNetwork.build(
            TensorInfo.linear(4),
            network_layers.batch_normalization(NormalizationMode.PER_ACTIVATION),
            network_layers.fully_connected(8, 'tanh'),
            network_layers.output(3, 'sigmoid', 'cross_entropy'),
            seed=0, backend=CpuBackend())
        normalization = network.layers[0]
        network.forward(x)
        assert normalization.iteration == 0

        batch = SamplesBatch.from_arrays(x, y)
        optimizer = StochasticGradientDescent(eta=0.5)
        network.backpropagate(batch, 0.0, optimizer)
        before = network.calculate_cost(x, y)
        for _ in range(19):
            network.backpropagate(batch, 0.0, optimizer)

        assert normalization.iteration == 20
        np.testing.assert_allclose(normalization.mu, x.mean(axis=0), rtol=1e-5, atol=1e-5)
        np.testing.assert_allclose(normalization.sigma2, x.var(axis=0), rtol=1e-5)
        assert not np.allclose(normalization.weights, 1)
        assert network.calculate_cost(x, y) < before

    def test_numeric_overflow(self):
        """Non finite parameters are detected."""
        network = small_network()
        assert not network.is_in_numeric_overflow
        network.layers[0].weights[0, 0] = np.nan
        assert network.is_in_numeric_overflow


class TestUtilities:
    """Tests for clone, summary and the parallel backend."""

    def test_clone(self):
        """Clones are equal and independent."""
        network = conv_network()
        copy = network.clone()
        assert copy.equals(network)
        copy.layers[0].weights += 1
        assert not copy.equals(network)

    def test_clone_shares_backend(self):
        """Clones run on the backend of the source network."""
        network = SequentialNetwork(*[layer.clone() for layer in conv_network().layers],
                                    settings=NetworkSettings(max_workers=2))
        copies = [network.clone() for _ in range(3)]
        assert all(copy.backend is network.backend for copy in copies)
        assert all(layer.backend is network.backend for copy in copies for layer in copy.layers)
        x = np.random.randn(2, 64)
        np.testing.assert_array_equal(copies[-1].forward(x), network.forward(x))
        network.close()

    def test_parallel_backend(self):
        """A parallel backend gives the same outputs."""
        x = np.random.randn(6, 64)
        inline = conv_network(5)
        parallel = SequentialNetwork(*[layer.clone() for layer in inline.layers],
                                     settings=NetworkSettings(max_workers=3))
        np.testing.assert_allclose(parallel.forward(x), inline.forward(x), rtol=1e-5, atol=1e-6)
        parallel.close()

    def test_summary(self, capsys):
        """summary() prints every layer and returns the parameter count."""
        network = small_network()
        assert network.summary() == network.parameters
        out = capsys.readouterr().out
        assert "SequentialNetwork Summary" in out
        assert "Total trainable parameters" in out


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
