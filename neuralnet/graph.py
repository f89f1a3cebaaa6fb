"""
Computation Graphs
==================

Networks shaped as directed acyclic graphs of layers.

A graph is declared with NodeBuilder objects, then validated and
instantiated by ComputationGraph.build():

    >>> x = NodeBuilder.input()
    >>> conv = x.layer(network_layers.convolutional((3, 3), 8))
    >>> left = conv.layer(network_layers.fully_connected(32, 'relu'))
    >>> right = conv.layer(network_layers.fully_connected(32, 'tanh'))
    >>> merged = NodeBuilder.sum(left, right)
    >>> out = merged.layer(network_layers.softmax(10))
    >>> network = ComputationGraphNetwork.build(TensorInfo.image(28, 28), x, seed=42)

Node types:
- INPUT: the graph root, receives the network input
- PROCESSING: applies a layer
- TRAINING_SPLIT: starts a branch that is only executed during training,
  ending with its own output layer
- DEPTH_CONCATENATION: stacks the channels of its parents
- SUM: elementwise sum of its parents

Execution uses an explicit worklist: a node is scheduled once every one of
its parents produced its output, and intermediate tensors live in a TensorMap
until their last consumer ran.
"""

import heapq
import itertools
from collections import deque
from enum import IntEnum

import numpy as np

from .activations import ActivationType
from .exceptions import NetworkBuildError
from .initialization import get_rng
from .layers import LayerKind
from .network import NetworkType, NeuralNetworkBase, _as_samples
from .tensor import Tensor, TensorInfo, TensorMap, TensorScope


class NodeType(IntEnum):
    INPUT = 0
    PROCESSING = 1
    TRAINING_SPLIT = 2
    DEPTH_CONCATENATION = 3
    SUM = 4


_serial = itertools.count()


class NodeBuilder:
    """
    Declarative graph node.

    Nodes keep their creation order, which makes the topological order of a
    built graph deterministic.
    """

    def __init__(self, node_type, parents=(), factory=None):
        self.node_type = NodeType(node_type)
        self.parents = tuple(parents)
        self.factory = factory
        self.children = []
        self.serial = next(_serial)
        for parent in self.parents:
            parent.children.append(self)

    @classmethod
    def input(cls):
        return cls(NodeType.INPUT)

    def layer(self, factory):
        """Append a processing node built from a layer factory."""
        return NodeBuilder(NodeType.PROCESSING, (self,), factory)

    def training_branch(self):
        """Start a training-only branch from this node."""
        return NodeBuilder(NodeType.TRAINING_SPLIT, (self,))

    @classmethod
    def sum(cls, *nodes):
        return cls(NodeType.SUM, nodes)

    @classmethod
    def depth_concatenation(cls, *nodes):
        return cls(NodeType.DEPTH_CONCATENATION, nodes)

    def __repr__(self):
        return f"NodeBuilder({self.node_type.name}, parents={len(self.parents)})"


class GraphNode:
    """Node of a built graph. Children are bound once every node exists."""

    def __init__(self, index, node_type, parents, info, layer=None, training=False):
        self.index = index
        self.node_type = node_type
        self.parents = tuple(parents)
        self.children = ()
        self.info = info
        self.layer = layer
        self.training = training

    @property
    def is_output(self):
        return self.layer is not None and self.layer.is_output

    def __repr__(self):
        label = self.layer if self.layer is not None else self.node_type.name
        return f"GraphNode({self.index}, {label})"


class ComputationGraph:
    """
    Validated and instantiated graph.

    Attributes:
        nodes: Nodes in topological order, nodes[0] is the input
        output_node: Inference output
        training_outputs: Outputs of the training branches
    """

    def __init__(self, nodes):
        self.nodes = tuple(nodes)
        self.input_node = self.nodes[0]
        outputs = [node for node in self.nodes if node.is_output]
        self.output_node = next(node for node in outputs if not node.training)
        self.training_outputs = tuple(node for node in outputs if node.training)

    @property
    def processing_nodes(self):
        return tuple(node for node in self.nodes if node.node_type == NodeType.PROCESSING)

    @staticmethod
    def _collect(root):
        """Find every node reachable from the root and sort them topologically."""
        seen = {root.serial: root}
        queue = deque([root])
        while queue:
            node = queue.popleft()
            for child in node.children:
                if child.serial not in seen:
                    seen[child.serial] = child
                    queue.append(child)
        for node in seen.values():
            for parent in node.parents:
                if parent.serial not in seen:
                    raise NetworkBuildError("Every node must be reachable from the input node")

        pending = {serial: len(node.parents) for serial, node in seen.items()}
        heap = [root.serial]
        order = []
        while heap:
            node = seen[heapq.heappop(heap)]
            order.append(node)
            for child in node.children:
                pending[child.serial] -= 1
                if pending[child.serial] == 0:
                    heapq.heappush(heap, child.serial)
        return order

    @classmethod
    def build(cls, input_info, root, seed=None):
        """
        Validate the declared graph and create its layers.

        Args:
            input_info: Shape of the network input
            root: The NodeBuilder returned by NodeBuilder.input()
            seed: Seed or numpy Generator for the layer initialization

        Raises:
            NetworkBuildError: If the topology is invalid
        """
        if root.node_type != NodeType.INPUT or root.parents:
            raise NetworkBuildError("The graph must start from an input node")
        if not root.children:
            raise NetworkBuildError("The input node must have at least one child")
        rng = get_rng(seed)
        builders = cls._collect(root)

        nodes = {}
        for index, builder in enumerate(builders):
            parents = [nodes[parent.serial] for parent in builder.parents]
            node_type = builder.node_type
            if node_type == NodeType.INPUT:
                if index != 0:
                    raise NetworkBuildError("The graph can only have a single input node")
                node = GraphNode(index, node_type, parents, input_info)
            else:
                training = any(parent.training for parent in parents)
                if node_type == NodeType.TRAINING_SPLIT:
                    if training:
                        raise NetworkBuildError("Training branches can't be nested")
                    node = GraphNode(index, node_type, parents, parents[0].info, training=True)
                elif node_type == NodeType.PROCESSING:
                    node = cls._processing_node(index, builder, parents[0], rng, training)
                else:
                    node = cls._merge_node(index, node_type, parents, training)
            nodes[builder.serial] = node

        for builder in builders:
            nodes[builder.serial].children = tuple(nodes[child.serial] for child in builder.children)
        graph_nodes = [nodes[builder.serial] for builder in builders]
        cls._validate(graph_nodes)
        return cls(graph_nodes)

    @staticmethod
    def _processing_node(index, builder, parent, rng, training):
        if parent.is_output:
            raise NetworkBuildError("An output layer can't have children")
        layer = builder.factory(parent.info, rng=rng)
        if layer.input_info.size != parent.info.size:
            raise NetworkBuildError(
                f"The layer at node {index} expects {layer.input_info.size} inputs, got {parent.info.size}")
        if parent.layer is not None and parent.layer.kind == LayerKind.CONVOLUTIONAL \
                and layer.kind == LayerKind.POOLING \
                and parent.layer.activation.type != ActivationType.IDENTITY:
            raise NetworkBuildError("A convolutional layer followed by pooling must use the identity activation")
        return GraphNode(index, NodeType.PROCESSING, (parent,), layer.output_info, layer, training)

    @staticmethod
    def _merge_node(index, node_type, parents, training):
        if len(parents) < 2:
            raise NetworkBuildError(f"A {node_type.name.lower()} node needs at least two parents")
        if len({parent.training for parent in parents}) > 1:
            raise NetworkBuildError("Training branches can't be merged with inference nodes")
        if any(parent.is_output for parent in parents):
            raise NetworkBuildError("An output layer can't have children")
        first = parents[0].info
        if node_type == NodeType.SUM:
            if any(parent.info != first for parent in parents):
                raise NetworkBuildError("The parents of a sum node must have the same shape")
            info = first
        else:
            if any(parent.info.height != first.height or parent.info.width != first.width for parent in parents):
                raise NetworkBuildError("The parents of a depth concatenation must have the same height and width")
            info = TensorInfo(first.height, first.width, sum(parent.info.channels for parent in parents))
        return GraphNode(index, node_type, parents, info, training=training)

    @staticmethod
    def _validate(nodes):
        outputs = [node for node in nodes if node.is_output]
        inference = [node for node in outputs if not node.training]
        if len(inference) != 1:
            raise NetworkBuildError(f"The graph must have exactly one inference output, found {len(inference)}")
        for node in nodes[1:]:
            if not node.is_output and not node.children:
                raise NetworkBuildError(f"The node {node.index} ({node.node_type.name}) must have children")

        # Each training branch must end in exactly one output
        for split in (node for node in nodes if node.node_type == NodeType.TRAINING_SPLIT):
            reached, queue = set(), deque([split])
            while queue:
                node = queue.popleft()
                for child in node.children:
                    if child.index not in reached:
                        reached.add(child.index)
                        queue.append(child)
            branch_outputs = [node for node in outputs if node.index in reached]
            if len(branch_outputs) != 1:
                raise NetworkBuildError(f"A training branch must have exactly one output, found {len(branch_outputs)}")
            if branch_outputs[0].info != inference[0].info:
                raise NetworkBuildError("A training branch output must match the network output shape")

    def __len__(self):
        return len(self.nodes)


class ComputationGraphNetwork(NeuralNetworkBase):
    """
    Network backed by a ComputationGraph.

    Args:
        graph: A built ComputationGraph
        backend: CpuBackend (default: a new parallel backend)
        settings: NetworkSettings

    The layers tuple lists the layers of the processing nodes in topological
    order, including the training branches.
    """

    network_type = NetworkType.COMPUTATION_GRAPH

    def __init__(self, graph, backend=None, settings=None):
        self.graph = graph
        processing = graph.processing_nodes
        self._layer_index = {node.index: i for i, node in enumerate(processing)}
        super().__init__([node.layer for node in processing], backend, settings)

    @classmethod
    def build(cls, input_info, root, seed=None, backend=None, settings=None):
        return cls(ComputationGraph.build(input_info, root, seed), backend, settings)

    @property
    def input_info(self):
        return self.graph.input_node.info

    @property
    def output_layer(self):
        return self.graph.output_node.layer

    # ------------------------------------------------------------------
    # Node operations
    # ------------------------------------------------------------------

    def _merge(self, node, inputs):
        if node.node_type == NodeType.SUM:
            out = self.backend.add(inputs[0], inputs[1])
            for tensor in inputs[2:]:
                self.backend.add(out, tensor, out=out)
            return out
        return Tensor(np.concatenate([tensor.data for tensor in inputs], axis=1))

    def _split_delta(self, node, delta):
        """Delta of every parent of a merge node."""
        if node.node_type == NodeType.SUM:
            return [delta.duplicate() for _ in node.parents]
        parts, offset = [], 0
        for parent in node.parents:
            length = parent.info.size
            parts.append(Tensor(delta.data[:, offset:offset + length].copy()))
            offset += length
        return parts

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def _run(self, x, features=None):
        """Inference pass over the non-training nodes, optionally recording (z, a)."""
        graph = self.graph
        consumers = {node.index: sum(1 for child in node.children if not child.training)
                     for node in graph.nodes}
        pending = {node.index: len(node.parents) for node in graph.nodes}

        with TensorMap() as outputs:
            outputs[graph.input_node] = x.view(x.entities, x.length)
            ready = deque([graph.input_node])
            while ready:
                node = ready.popleft()
                if node is not graph.input_node:
                    inputs = [outputs[parent] for parent in node.parents]
                    if node.node_type == NodeType.PROCESSING:
                        z, a = node.layer.forward(inputs[0])
                        if features is not None:
                            features.append((z.to_array(), a.to_array()))
                        z.free()
                    else:
                        a = self._merge(node, inputs)
                    outputs[node] = a
                    for parent in node.parents:
                        consumers[parent.index] -= 1
                        if consumers[parent.index] == 0:
                            outputs.release(parent)
                for child in node.children:
                    if child.training:
                        continue
                    pending[child.index] -= 1
                    if pending[child.index] == 0:
                        ready.append(child)
            return outputs.pop(graph.output_node)

    def _forward(self, x):
        return self._run(x)

    def extract_deep_features(self, x):
        samples = _as_samples(x, self.input_info.size)
        features = []
        with Tensor.from_array(samples) as xt:
            self._run(xt, features).free()
        return features

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def backpropagate(self, batch, dropout, updater, rng=None):
        if not 0 <= dropout < 1:
            raise ValueError("The dropout probability must be in the [0, 1) range")
        rng = get_rng(rng)
        graph = self.graph
        x, y = batch.x, batch.y
        n = x.entities

        with TensorScope() as scope, TensorMap() as deltas:
            zs, activations, masks = {}, {}, {}

            # Forward pass over every node, training branches included
            activations[graph.input_node.index] = x
            pending = {node.index: len(node.parents) for node in graph.nodes}
            for child in graph.input_node.children:
                pending[child.index] -= 1
            ready = deque(child for child in graph.input_node.children if pending[child.index] == 0)
            while ready:
                node = ready.popleft()
                inputs = [activations[parent.index] for parent in node.parents]
                if node.node_type == NodeType.PROCESSING:
                    z, a = node.layer.forward_training(inputs[0])
                    scope.track(z)
                    if dropout > 0 and node.layer.kind == LayerKind.FULLY_CONNECTED:
                        mask = scope.track(self.backend.dropout_mask(n, a.length, dropout, rng))
                        self.backend.multiply_elementwise(a, mask, out=a)
                        masks[node.index] = mask
                    zs[node.index] = z
                elif node.node_type == NodeType.TRAINING_SPLIT:
                    a = inputs[0].view(n, inputs[0].length)
                else:
                    a = self._merge(node, inputs)
                activations[node.index] = scope.track(a)
                for child in node.children:
                    pending[child.index] -= 1
                    if pending[child.index] == 0:
                        ready.append(child)

            # Backward pass, a node runs once all its children sent their delta
            gradients = [None] * len(self.layers)
            remaining = {node.index: len(node.children) for node in graph.nodes}

            def contribute(parent, delta):
                if parent is graph.input_node:
                    delta.free()
                elif parent in deltas:
                    self.backend.add(deltas[parent], delta, out=deltas[parent])
                    delta.free()
                else:
                    deltas[parent] = delta

            ready = deque(node for node in graph.nodes if node.is_output)
            while ready:
                node = ready.popleft()
                if node.node_type == NodeType.PROCESSING:
                    parent = node.parents[0]
                    dx = None if parent is graph.input_node else Tensor.new(n, node.layer.inputs, clean=False)
                    x_in, z, a = activations[parent.index], zs[node.index], activations[node.index]
                    if node.is_output:
                        pair = node.layer.backpropagate_output(x_in, a, y, z, dx)
                    else:
                        delta = deltas[node]
                        if node.index in masks:
                            self.backend.multiply_elementwise(delta, masks[node.index], out=delta)
                        pair = node.layer.backpropagate(x_in, delta, z, dx)
                        deltas.release(node)
                    if pair is not None:
                        gradients[self._layer_index[node.index]] = (scope.track(pair[0]), scope.track(pair[1]))
                    parts = [dx] if dx is not None else []
                elif node.node_type == NodeType.TRAINING_SPLIT:
                    parts = [deltas.pop(node)]
                else:
                    delta = deltas[node]
                    parts = self._split_delta(node, delta)
                    deltas.release(node)

                for parent, part in zip(node.parents, parts):
                    contribute(parent, part)
                for parent in node.parents:
                    remaining[parent.index] -= 1
                    if remaining[parent.index] == 0 and parent is not graph.input_node:
                        ready.append(parent)

            self._dispatch_updates(gradients, n, updater)

    def clone(self):
        layers = iter([layer.clone() for layer in self.layers])
        nodes = []
        for node in self.graph.nodes:
            layer = next(layers) if node.node_type == NodeType.PROCESSING else None
            nodes.append(GraphNode(node.index, node.node_type,
                                   [nodes[parent.index] for parent in node.parents],
                                   node.info, layer, node.training))
        for node, original in zip(nodes, self.graph.nodes):
            node.children = tuple(nodes[child.index] for child in original.children)
        return ComputationGraphNetwork(ComputationGraph(nodes), backend=self.backend, settings=self.settings)

    def equals(self, other, delta=1e-6):
        if not super().equals(other, delta) or len(other.graph) != len(self.graph):
            return False
        for a, b in zip(self.graph.nodes, other.graph.nodes):
            if a.node_type != b.node_type or [p.index for p in a.parents] != [p.index for p in b.parents]:
                return False
        return True
