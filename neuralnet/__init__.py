"""
Neural Networks from Scratch
============================

CPU neural network training and inference written on top of NumPy.
The library implements:
- Owned float32 tensor buffers with explicit release
- Matrix and convolution kernels running on a worker pool
- Fully connected, convolutional, pooling, batch normalization, output and softmax layers
- Sequential and computation graph networks with backpropagation
- SGD, Adadelta, Adam and related optimizers
- Early stopping, cancellation and overflow detection
- Binary and JSON serialization
"""

from .tensor import Tensor, TensorInfo, TensorMap, TensorScope
from .exceptions import ShapeError, NetworkBuildError, ComputationError, TensorReleasedError
from .parallel import WorkerPool
from .backend import CpuBackend
from .activations import ActivationType, get_activation
from .costs import CostFunctionType, get_cost
from .convolution import ConvolutionMode
from .normalization import NormalizationMode
from .initialization import WeightsInitializationMode, BiasInitializationMode
from .layers import (LayerKind, FullyConnectedLayer, ConvolutionalLayer, PoolingLayer, OutputLayer, SoftmaxLayer,
                     BatchNormalizationLayer)
from . import network_layers
from .settings import NetworkSettings, argmax_tester, threshold_tester
from .network import NetworkType, SequentialNetwork
from .graph import NodeBuilder, NodeType, ComputationGraph, ComputationGraphNetwork
from .optimizers import StochasticGradientDescent, Momentum, AdaGrad, RMSProp, Adadelta, Adam, AdaMax, get_optimizer
from .datasets import SamplesBatch, BatchesCollection, ValidationDataset, TestDataset, one_hot_encode
from .trainer import (TrainingStopReason, TrainingSessionResult, DatasetEvaluationResult,
                      CancellationToken, RelativeConvergence, train_network)
from .serialization import save_network, load_network, serialize_metadata_as_json
from . import visualizations

__version__ = "1.0.0"
__all__ = [
    # Tensors
    'Tensor', 'TensorInfo', 'TensorMap', 'TensorScope',
    # Errors
    'ShapeError', 'NetworkBuildError', 'ComputationError', 'TensorReleasedError',
    # Execution
    'WorkerPool', 'CpuBackend',
    # Functions
    'ActivationType', 'get_activation', 'CostFunctionType', 'get_cost', 'ConvolutionMode', 'NormalizationMode',
    'WeightsInitializationMode', 'BiasInitializationMode',
    # Layers
    'LayerKind', 'FullyConnectedLayer', 'ConvolutionalLayer', 'PoolingLayer',
    'OutputLayer', 'SoftmaxLayer', 'BatchNormalizationLayer', 'network_layers',
    # Networks
    'NetworkSettings', 'argmax_tester', 'threshold_tester',
    'NetworkType', 'SequentialNetwork',
    'NodeBuilder', 'NodeType', 'ComputationGraph', 'ComputationGraphNetwork',
    # Optimizers
    'StochasticGradientDescent', 'Momentum', 'AdaGrad', 'RMSProp', 'Adadelta', 'Adam', 'AdaMax',
    'get_optimizer',
    # Training
    'SamplesBatch', 'BatchesCollection', 'ValidationDataset', 'TestDataset', 'one_hot_encode',
    'TrainingStopReason', 'TrainingSessionResult', 'DatasetEvaluationResult',
    'CancellationToken', 'RelativeConvergence', 'train_network',
    # Serialization
    'save_network', 'load_network', 'serialize_metadata_as_json',
]
