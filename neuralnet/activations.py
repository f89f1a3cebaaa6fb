"""
Activation Functions
====================

Non-linear activation functions applied to layer activities (z) to produce
activations (a = f(z)). Each activation implements the forward function and
its derivative, used during backpropagation as f'(z).

Every activation carries a stable ActivationType tag, which is the value
written to serialized networks.

Available activations:
- Sigmoid, Tanh, LeCunTanh
- ReLU, LeakyReLU, AbsoluteReLU
- Softmax (row-normalizing, only valid in softmax output layers)
- Softplus, ELU, Identity
"""

from enum import IntEnum

import numpy as np


class ActivationType(IntEnum):
    SIGMOID = 0
    TANH = 1
    LECUN_TANH = 2
    RELU = 3
    LEAKY_RELU = 4
    ABSOLUTE_RELU = 5
    SOFTMAX = 6
    SOFTPLUS = 7
    ELU = 8
    IDENTITY = 9


class Activation:
    """Base class for all activation functions."""

    type = None

    def forward(self, x):
        """Apply activation function."""
        raise NotImplementedError

    def backward(self, x):
        """Compute derivative of activation w.r.t. input."""
        raise NotImplementedError

    def __call__(self, x):
        return self.forward(x)

    def __eq__(self, other):
        return isinstance(other, Activation) and self.type == other.type

    def __hash__(self):
        return hash(self.type)

    def __repr__(self):
        return f"{self.__class__.__name__}()"


class Sigmoid(Activation):
    """
    Sigmoid: f(x) = 1 / (1 + exp(-x))

    Squashes output to (0, 1). Pairs with the cross-entropy cost.

    Derivative:
        f'(x) = exp(x) / (1 + exp(x))^2 = f(x) * (1 - f(x))
    """

    type = ActivationType.SIGMOID

    def forward(self, x):
        # Clip for numerical stability
        x_clipped = np.clip(x, -88, 88)
        return 1.0 / (1.0 + np.exp(-x_clipped))

    def backward(self, x):
        s = self.forward(x)
        return s * (1 - s)


class Tanh(Activation):
    """
    Hyperbolic Tangent: f(x) = tanh(x)

    Derivative:
        f'(x) = 4 / (e^-x + e^x)^2 = 1 - tanh(x)^2
    """

    type = ActivationType.TANH

    def forward(self, x):
        return np.tanh(x)

    def backward(self, x):
        t = np.tanh(x)
        return 1 - t ** 2


class LeCunTanh(Activation):
    """
    Scaled tanh from LeCun's "Efficient BackProp": f(x) = 1.7159 * tanh(2x/3)

    Keeps unit variance for normalized inputs, f(1) ~= 1.
    """

    type = ActivationType.LECUN_TANH
    scale = 1.7159
    slope = 0.666667

    def forward(self, x):
        return self.scale * np.tanh(self.slope * x)

    def backward(self, x):
        t = np.tanh(self.slope * x)
        return self.scale * self.slope * (1 - t ** 2)


class ReLU(Activation):
    """
    Rectified Linear Unit: f(x) = max(0, x)

    Derivative:
        f'(x) = 1 if x > 0 else 0
    """

    type = ActivationType.RELU

    def forward(self, x):
        return np.maximum(0, x)

    def backward(self, x):
        return (x > 0).astype(x.dtype)


class LeakyReLU(Activation):
    """
    Leaky ReLU: f(x) = x if x > 0 else 0.01 * x

    Fixes dying ReLU by allowing small negative gradients.
    """

    type = ActivationType.LEAKY_RELU
    alpha = 0.01

    def forward(self, x):
        return np.where(x > 0, x, self.alpha * x).astype(x.dtype)

    def backward(self, x):
        return np.where(x > 0, 1.0, self.alpha).astype(x.dtype)


class AbsoluteReLU(Activation):
    """Absolute value rectification: f(x) = |x|, f'(x) = sign(x) with f'(0) = 1."""

    type = ActivationType.ABSOLUTE_RELU

    def forward(self, x):
        return np.abs(x)

    def backward(self, x):
        return np.where(x >= 0, 1.0, -1.0).astype(x.dtype)


class Softmax(Activation):
    """
    Softmax: f(x_i) = exp(x_i) / sum(exp(x_j)), computed per row.

    Numerical Stability:
        We subtract max(x) before exp to prevent overflow.

    There is no elementwise derivative: softmax is only used together with
    the log-likelihood cost, where the output delta simplifies to yhat - y.
    """

    type = ActivationType.SOFTMAX

    def forward(self, x):
        if x.ndim == 1:
            x_shifted = x - np.max(x)
            exp_x = np.exp(x_shifted)
            return exp_x / np.sum(exp_x)
        x_shifted = x - np.max(x, axis=1, keepdims=True)
        exp_x = np.exp(x_shifted)
        return exp_x / np.sum(exp_x, axis=1, keepdims=True)

    def backward(self, x):
        raise NotImplementedError("The softmax activation has no elementwise derivative")


class Softplus(Activation):
    """
    Softplus: f(x) = ln(1 + exp(x)), a smooth approximation of ReLU.

    Derivative:
        f'(x) = sigmoid(x)
    """

    type = ActivationType.SOFTPLUS

    def forward(self, x):
        return np.logaddexp(0, x).astype(x.dtype)

    def backward(self, x):
        x_clipped = np.clip(x, -88, 88)
        return 1.0 / (1.0 + np.exp(-x_clipped))


class ELU(Activation):
    """Exponential Linear Unit: f(x) = x if x > 0 else exp(x) - 1."""

    type = ActivationType.ELU

    def forward(self, x):
        return np.where(x > 0, x, np.expm1(np.minimum(x, 0))).astype(x.dtype)

    def backward(self, x):
        return np.where(x > 0, 1.0, np.exp(np.minimum(x, 0))).astype(x.dtype)


class Identity(Activation):
    """
    Identity activation: f(x) = x

    Required on convolutional layers that feed a pooling layer, the pooling
    layer applies its own activation after downsampling.
    """

    type = ActivationType.IDENTITY

    def forward(self, x):
        return x

    def backward(self, x):
        return np.ones_like(x)


# ====================================
# Activation Registry
# ====================================

ACTIVATIONS = {
    'sigmoid': Sigmoid,
    'tanh': Tanh,
    'lecun_tanh': LeCunTanh,
    'relu': ReLU,
    'leaky_relu': LeakyReLU,
    'leakyrelu': LeakyReLU,
    'absolute_relu': AbsoluteReLU,
    'softmax': Softmax,
    'softplus': Softplus,
    'elu': ELU,
    'identity': Identity,
    'linear': Identity,
    'none': Identity,
}

_BY_TYPE = {cls.type: cls for cls in set(ACTIVATIONS.values())}


def get_activation(name):
    """
    Get activation function by name or type tag.

    Args:
        name: String name ('relu', 'sigmoid', etc.), ActivationType, or Activation instance

    Returns:
        Activation instance

    Example:
        >>> act = get_activation('relu')
        >>> act(np.array([-1, 0, 1]))
        array([0, 0, 1])
    """
    if isinstance(name, Activation):
        return name

    if name is None:
        return Identity()

    if isinstance(name, (ActivationType, int)) and not isinstance(name, bool):
        try:
            return _BY_TYPE[ActivationType(name)]()
        except ValueError:
            raise ValueError(f"Unknown activation type {name}") from None

    name_lower = name.lower().replace('-', '_')
    if name_lower not in ACTIVATIONS:
        available = ', '.join(ACTIVATIONS.keys())
        raise ValueError(f"Unknown activation '{name}'. Available: {available}")

    return ACTIVATIONS[name_lower]()
