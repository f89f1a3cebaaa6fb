"""
Serialization Tests
===================

Binary save/load of sequential and graph networks, and the JSON metadata.
"""

import gzip
import io
import json

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from neuralnet import network_layers
from neuralnet.backend import CpuBackend
from neuralnet.convolution import ConvolutionMode
from neuralnet.graph import ComputationGraphNetwork, NodeBuilder
from neuralnet.network import NetworkType, SequentialNetwork
from neuralnet.normalization import NormalizationMode
from neuralnet.serialization import load_network, network_metadata, save_network, serialize_metadata_as_json
from neuralnet.tensor import Tensor, TensorInfo


def conv_network():
    return SequentialNetwork.build(
        TensorInfo(8, 8, 2),
        network_layers.convolutional((3, 3), 3, 'identity', mode=ConvolutionMode.CROSS_CORRELATION),
        network_layers.pooling('leaky_relu'),
        network_layers.fully_connected(7, 'tanh'),
        network_layers.softmax(4),
        seed=11, backend=CpuBackend())


def branch_graph():
    root = NodeBuilder.input()
    a = root.layer(network_layers.fully_connected(5, 'relu'))
    b = root.layer(network_layers.fully_connected(5, 'tanh'))
    total = NodeBuilder.sum(a, b)
    total.layer(network_layers.output(3, 'sigmoid', 'quadratic'))
    total.training_branch().layer(network_layers.fully_connected(4, 'sigmoid')) \
        .layer(network_layers.output(3, 'sigmoid', 'cross_entropy'))
    return ComputationGraphNetwork.build(TensorInfo.linear(6), root, seed=4, backend=CpuBackend())


def normalized_network():
    network = SequentialNetwork.build(
        TensorInfo(6, 6, 2),
        network_layers.convolutional((3, 3), 3, 'identity'),
        network_layers.batch_normalization(NormalizationMode.SPATIAL),
        network_layers.pooling('relu'),
        network_layers.fully_connected(6, 'identity'),
        network_layers.batch_normalization(NormalizationMode.PER_ACTIVATION, 'tanh'),
        network_layers.softmax(3),
        seed=2, backend=CpuBackend())
    # One training pass moves the running statistics away from their initial values
    x = np.random.default_rng(2).standard_normal((5, 72))
    for layer in network.layers:
        with Tensor.from_array(x) as xt:
            _, a = layer.forward_training(xt)
        x = a.to_array()
    return network


def roundtrip(network):
    buffer = io.BytesIO()
    save_network(network, buffer)
    buffer.seek(0)
    return load_network(buffer, backend=CpuBackend())


class TestBinaryFormat:
    """Tests for save_network and load_network."""

    def test_sequential_roundtrip(self):
        """Every layer is restored with its parameters and options."""
        network = conv_network()
        loaded = roundtrip(network)
        assert loaded is not None
        assert loaded.equals(network, delta=0)
        assert loaded.layers[0].mode == ConvolutionMode.CROSS_CORRELATION
        assert loaded.layers[0].kernel_info == network.layers[0].kernel_info
        x = np.random.randn(3, 128)
        np.testing.assert_array_equal(loaded.forward(x), network.forward(x))

    def test_graph_roundtrip(self):
        """Graphs keep their topology and training branches."""
        network = branch_graph()
        loaded = roundtrip(network)
        assert isinstance(loaded, ComputationGraphNetwork)
        assert loaded.equals(network, delta=0)
        assert [node.training for node in loaded.graph.nodes] == [node.training for node in network.graph.nodes]
        assert len(loaded.graph.training_outputs) == 1
        x = np.random.randn(4, 6)
        np.testing.assert_array_equal(loaded.forward(x), network.forward(x))

    def test_batch_normalization_roundtrip(self):
        """Scale, shift, running statistics and the iteration count are restored."""
        network = normalized_network()
        loaded = roundtrip(network)
        assert loaded is not None
        assert loaded.equals(network, delta=0)
        for index in (1, 4):
            layer, restored = network.layers[index], loaded.layers[index]
            assert restored.mode == layer.mode
            assert restored.iteration == layer.iteration
            np.testing.assert_array_equal(restored.mu, layer.mu)
            np.testing.assert_array_equal(restored.sigma2, layer.sigma2)
        assert loaded.layers[1].iteration == 1 and loaded.layers[4].iteration == 1
        x = np.random.randn(3, 72)
        np.testing.assert_array_equal(loaded.forward(x), network.forward(x))

    def test_stream_layout(self):
        """The payload is gzip compressed and starts with the network type."""
        buffer = io.BytesIO()
        save_network(branch_graph(), buffer)
        payload = gzip.decompress(buffer.getvalue())
        assert payload[0] == NetworkType.COMPUTATION_GRAPH
        assert payload[1:13] == np.array([1, 1, 6], dtype='<i4').tobytes()

    def test_path_and_bytes(self, tmp_path, capsys):
        """Paths and raw bytes are accepted, save() reports the path."""
        network = conv_network()
        path = tmp_path / "network.nnet"
        network.save(path)
        assert f"Network saved to {path}" in capsys.readouterr().out

        from_path = load_network(path, backend=CpuBackend())
        from_bytes = load_network(path.read_bytes(), backend=CpuBackend())
        assert from_path.equals(network) and from_bytes.equals(network)

    def test_stream_save_is_silent(self, capsys):
        """Saving to a stream doesn't print anything."""
        conv_network().save(io.BytesIO())
        assert capsys.readouterr().out == ""

    def test_invalid_input(self, tmp_path):
        """Missing, corrupt or truncated data gives None."""
        buffer = io.BytesIO()
        save_network(conv_network(), buffer)
        data = buffer.getvalue()
        payload = gzip.decompress(data)

        assert load_network(tmp_path / "missing.nnet") is None
        assert load_network(b"not a network") is None
        assert load_network(gzip.compress(b"")) is None
        assert load_network(data[:len(data) // 2]) is None
        assert load_network(gzip.compress(payload[:-10])) is None
        assert load_network(gzip.compress(bytes([7]) + payload[1:])) is None
        assert load_network(gzip.compress(payload + payload[1:20])) is None

    def test_inconsistent_sequence(self):
        """Streams that don't form a valid network give None."""
        buffer = io.BytesIO()
        save_network(conv_network(), buffer)
        payload = gzip.decompress(buffer.getvalue())
        # Type byte only, no layers
        assert load_network(gzip.compress(payload[:1])) is None
        # A sequential stream flagged as a graph
        assert load_network(gzip.compress(bytes([NetworkType.COMPUTATION_GRAPH]) + payload[1:])) is None


class TestMetadata:
    """Tests for the JSON description."""

    def test_sequential_metadata(self):
        """Network and layer entries describe the structure."""
        network = conv_network()
        metadata = json.loads(serialize_metadata_as_json(network))
        assert metadata['NetworkType'] == 'SEQUENTIAL'
        assert metadata['InputInfo'] == {'Height': 8, 'Width': 8, 'Channels': 2, 'Size': 128}
        assert metadata['Size'] == 4
        assert metadata['Parameters'] == network.parameters
        assert metadata['IsInNumericOverflow'] is False
        assert 'Nodes' not in metadata

        conv, pool, hidden, out = metadata['Layers']
        assert conv['LayerType'] == 'CONVOLUTIONAL'
        assert conv['ConvolutionInfo'] == {'Mode': 'CROSS_CORRELATION'}
        assert conv['KernelInfo']['Channels'] == 2
        assert pool['PoolingInfo']['WindowHeight'] == 2
        assert pool['ActivationType'] == 'LEAKY_RELU'
        assert hidden['OutputInfo']['Size'] == 7
        assert out['CostFunctionType'] == 'LOG_LIKELIHOOD'
        assert out['Hash'] == network.layers[3].hash()

    def test_graph_nodes(self):
        """Graph metadata lists every node with its parents."""
        network = branch_graph()
        metadata = network_metadata(network)
        nodes = metadata['Nodes']
        assert len(nodes) == len(network.graph)
        assert nodes[0] == {'Index': 0, 'NodeType': 'INPUT', 'Parents': [], 'Training': False}
        assert sum(node['NodeType'] == 'TRAINING_SPLIT' for node in nodes) == 1
        total = next(node for node in nodes if node['NodeType'] == 'SUM')
        assert len(total['Parents']) == 2
        assert network.serialize_metadata_as_json() == serialize_metadata_as_json(network)

    def test_batch_normalization_metadata(self):
        """Normalization layers describe their mode and moving average factor."""
        metadata = network_metadata(normalized_network())
        spatial, per_activation = metadata['Layers'][1], metadata['Layers'][4]
        assert spatial['LayerType'] == 'BATCH_NORMALIZATION'
        assert spatial['NormalizationMode'] == 'SPATIAL'
        assert per_activation['NormalizationMode'] == 'PER_ACTIVATION'
        assert per_activation['ActivationType'] == 'TANH'
        assert spatial['CumulativeMovingAverageFactor'] == 0.5

    def test_hash_survives_roundtrip(self):
        """Loaded layers hash like the saved ones."""
        network = conv_network()
        loaded = roundtrip(network)
        assert [layer.hash() for layer in loaded.layers] == [layer.hash() for layer in network.layers]


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
