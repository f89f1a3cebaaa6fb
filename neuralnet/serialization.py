"""
Network Serialization
=====================

Binary save/load of trained networks and a JSON description of their
structure.

The binary format is a gzip compressed, little-endian stream:

    uint8   NetworkType
    [graph networks only]
    int32 x3  input TensorInfo (height, width, channels)
    int32     node count, then for each node:
              uint8 NodeType, int32 parent count, int32 parent indexes
    [then for each layer, until the end of the stream]
    uint8     LayerKind
    int32 x3  input TensorInfo
    int32 x3  output TensorInfo
    uint8     ActivationType
    weighted layers:      int32 weights count, float32 weights,
                          int32 biases count, float32 biases
    output layers:        uint8 CostFunctionType
    convolutional layers: uint8 ConvolutionMode, int32 x3 kernel TensorInfo
    pooling layers:       int32 x4 window height/width, vertical/horizontal stride
    batch normalization:  uint8 NormalizationMode, int32 iteration,
                          int32 mean count, float32 running mean,
                          int32 variance count, float32 running variance

load_network() never raises: any malformed, truncated or inconsistent input
returns None.
"""

import gzip
import io
import json
import logging
import struct
import zlib

import numpy as np

from .activations import ActivationType
from .convolution import ConvolutionMode
from .costs import CostFunctionType
from .graph import ComputationGraphNetwork, NodeBuilder, NodeType
from .layers import (BatchNormalizationLayer, ConvolutionalLayer, FullyConnectedLayer, LayerKind, OutputLayer,
                     PoolingLayer, SoftmaxLayer)
from .network import NetworkType, SequentialNetwork
from .normalization import NormalizationMode, normalization_groups
from .tensor import DTYPE, TensorInfo

logger = logging.getLogger(__name__)

_POOLING_INFO = (2, 2, 2, 2)


# ============================================================================
# Writing
# ============================================================================

def _write_info(stream, info):
    stream.write(struct.pack('<3i', info.height, info.width, info.channels))


def _write_array(stream, array):
    flat = np.ascontiguousarray(array, dtype='<f4').ravel()
    stream.write(struct.pack('<i', flat.size))
    stream.write(flat.tobytes())


def _write_layer(stream, layer):
    stream.write(struct.pack('<B', int(layer.kind)))
    _write_info(stream, layer.input_info)
    _write_info(stream, layer.output_info)
    stream.write(struct.pack('<B', int(layer.activation.type)))
    if layer.is_weighted:
        _write_array(stream, layer.weights)
        _write_array(stream, layer.biases)
    if layer.is_output:
        stream.write(struct.pack('<B', int(layer.cost.type)))
    if layer.kind == LayerKind.CONVOLUTIONAL:
        stream.write(struct.pack('<B', int(layer.mode)))
        _write_info(stream, layer.kernel_info)
    elif layer.kind == LayerKind.POOLING:
        stream.write(struct.pack('<4i', *_POOLING_INFO))
    elif layer.kind == LayerKind.BATCH_NORMALIZATION:
        stream.write(struct.pack('<Bi', int(layer.mode), layer.iteration))
        _write_array(stream, layer.mu)
        _write_array(stream, layer.sigma2)


def _write_network(stream, network):
    stream.write(struct.pack('<B', int(network.network_type)))
    if network.network_type == NetworkType.COMPUTATION_GRAPH:
        nodes = network.graph.nodes
        _write_info(stream, network.input_info)
        stream.write(struct.pack('<i', len(nodes)))
        for node in nodes:
            stream.write(struct.pack('<Bi', int(node.node_type), len(node.parents)))
            for parent in node.parents:
                stream.write(struct.pack('<i', parent.index))
    for layer in network.layers:
        _write_layer(stream, layer)


def save_network(network, target):
    """
    Save a network.

    Args:
        network: SequentialNetwork or ComputationGraphNetwork
        target: File path or writable binary stream
    """
    if hasattr(target, 'write'):
        with gzip.GzipFile(fileobj=target, mode='wb') as stream:
            _write_network(stream, network)
    else:
        with open(target, 'wb') as f, gzip.GzipFile(fileobj=f, mode='wb') as stream:
            _write_network(stream, network)


# ============================================================================
# Reading
# ============================================================================

class _Reader:
    """Sequential reader over the decompressed payload."""

    def __init__(self, data):
        self.data = data
        self.offset = 0

    @property
    def at_end(self):
        return self.offset >= len(self.data)

    def read(self, fmt):
        values = struct.unpack_from(fmt, self.data, self.offset)
        self.offset += struct.calcsize(fmt)
        return values

    def read_info(self):
        return TensorInfo(*self.read('<3i'))

    def read_array(self, expected):
        (count,) = self.read('<i')
        if count != expected:
            raise ValueError(f"Expected {expected} values, found {count}")
        end = self.offset + 4 * count
        if end > len(self.data):
            raise EOFError("Truncated parameters")
        array = np.frombuffer(self.data, dtype='<f4', count=count, offset=self.offset).astype(DTYPE)
        self.offset = end
        return array


def _skip_parameters(reader):
    """Move past the weights and biases, returning the offset they start at."""
    start = reader.offset
    for _ in range(2):
        (count,) = reader.read('<i')
        reader.offset += 4 * count
    return start


def _read_layer(reader):
    kind = LayerKind(reader.read('<B')[0])
    input_info = reader.read_info()
    output_info = reader.read_info()
    activation = ActivationType(reader.read('<B')[0])

    if kind == LayerKind.POOLING:
        layer = PoolingLayer(input_info, activation)
        if reader.read('<4i') != _POOLING_INFO:
            raise ValueError("Unsupported pooling parameters")
    elif kind == LayerKind.CONVOLUTIONAL:
        # Kernel parameters follow the weights, read them first to size the layer
        start = _skip_parameters(reader)
        mode = ConvolutionMode(reader.read('<B')[0])
        kernel_info = reader.read_info()
        end = reader.offset
        reader.offset = start
        weights = reader.read_array(output_info.channels * kernel_info.size)
        biases = reader.read_array(output_info.channels)
        reader.offset = end
        layer = ConvolutionalLayer(input_info, (kernel_info.height, kernel_info.width), output_info.channels,
                                   activation, mode, weights=weights, biases=biases)
        if layer.kernel_info != kernel_info:
            raise ValueError("The kernel depth doesn't match the input volume")
    elif kind == LayerKind.BATCH_NORMALIZATION:
        # The number of scale/shift values depends on the mode stored after them
        start = _skip_parameters(reader)
        mode = NormalizationMode(reader.read('<B')[0])
        reader.offset = start
        groups = normalization_groups(input_info, mode)
        weights = reader.read_array(groups)
        biases = reader.read_array(groups)
        _, iteration = reader.read('<Bi')
        mu = reader.read_array(groups)
        sigma2 = reader.read_array(groups)
        layer = BatchNormalizationLayer(input_info, mode, activation, weights=weights, biases=biases,
                                        mu=mu, sigma2=sigma2, iteration=iteration)
    else:
        weights = reader.read_array(input_info.size * output_info.size)
        biases = reader.read_array(output_info.size)
        if kind == LayerKind.FULLY_CONNECTED:
            layer = FullyConnectedLayer(input_info, output_info.size, activation, weights=weights, biases=biases)
        else:
            cost = CostFunctionType(reader.read('<B')[0])
            if kind == LayerKind.SOFTMAX:
                if activation != ActivationType.SOFTMAX or cost != CostFunctionType.LOG_LIKELIHOOD:
                    raise ValueError("Invalid softmax layer")
                layer = SoftmaxLayer(input_info, output_info.size, weights=weights, biases=biases)
            else:
                layer = OutputLayer(input_info, output_info.size, activation, cost, weights=weights, biases=biases)

    if layer.output_info != output_info:
        raise ValueError(f"The layer output {layer.output_info} doesn't match the stored one {output_info}")
    return layer


def _read_graph(reader, backend):
    input_info = reader.read_info()
    (count,) = reader.read('<i')
    if count < 2:
        raise ValueError("The graph must have at least two nodes")
    topology = []
    for _ in range(count):
        node_type, parents = reader.read('<Bi')
        topology.append((NodeType(node_type), reader.read(f'<{parents}i')))
    layers = []
    while not reader.at_end:
        layers.append(_read_layer(reader))
    layers = iter(layers)

    builders = []
    for node_type, parents in topology:
        if any(not 0 <= p < len(builders) for p in parents):
            raise ValueError("Invalid parent index")
        if node_type == NodeType.PROCESSING:
            layer = next(layers)
            builders.append(NodeBuilder(node_type, [builders[p] for p in parents],
                                        lambda info, rng=None, layer=layer: layer))
        else:
            builders.append(NodeBuilder(node_type, [builders[p] for p in parents]))
    if next(layers, None) is not None:
        raise ValueError("The stream contains more layers than processing nodes")
    return ComputationGraphNetwork.build(input_info, builders[0], backend=backend)


def load_network(source, backend=None):
    """
    Load a network saved with save_network().

    Args:
        source: File path, readable binary stream or bytes
        backend: Optional CpuBackend for the loaded network

    Returns:
        The loaded network, or None if the data is invalid
    """
    try:
        if isinstance(source, (bytes, bytearray)):
            source = io.BytesIO(source)
        if hasattr(source, 'read'):
            with gzip.GzipFile(fileobj=source, mode='rb') as stream:
                data = stream.read()
        else:
            with gzip.open(source, 'rb') as stream:
                data = stream.read()

        reader = _Reader(data)
        network_type = NetworkType(reader.read('<B')[0])
        if network_type == NetworkType.COMPUTATION_GRAPH:
            return _read_graph(reader, backend)
        layers = []
        while not reader.at_end:
            layers.append(_read_layer(reader))
        return SequentialNetwork(*layers, backend=backend)
    except (OSError, EOFError, zlib.error, struct.error, ValueError, KeyError, IndexError, StopIteration) as e:
        logger.debug(f"Failed to load the network: {e!r}")
        return None


# ============================================================================
# JSON metadata
# ============================================================================

def network_metadata(network):
    """Dictionary describing the network structure."""
    metadata = {
        'NetworkType': network.network_type.name,
        'InputInfo': network.input_info.to_dict(),
        'OutputInfo': network.output_info.to_dict(),
        'Size': network.size,
        'Parameters': network.parameters,
        'IsInNumericOverflow': network.is_in_numeric_overflow,
        'Layers': [layer.to_metadata() for layer in network.layers],
    }
    if network.network_type == NetworkType.COMPUTATION_GRAPH:
        metadata['Nodes'] = [
            {'Index': node.index, 'NodeType': node.node_type.name,
             'Parents': [parent.index for parent in node.parents], 'Training': node.training}
            for node in network.graph.nodes
        ]
    return metadata


def serialize_metadata_as_json(network, indent=2):
    return json.dumps(network_metadata(network), indent=indent)
