"""
Cost Functions
==============

Cost functions measure how wrong the network's predictions are, and provide
the terminal delta used to start backpropagation at the output layer.

Each cost implements:
- forward(yhat, y): Compute the cost value
- backward(yhat, y, z, activation): Delta of the cost w.r.t. the output activity z

Activation/cost pairing:
- Quadratic works with any elementwise activation, the delta uses the full
  chain rule (yhat - y) * f'(z)
- CrossEntropy is folded with Sigmoid: delta = yhat - y
- LogLikelihood is folded with Softmax: delta = yhat - y

Only these pairs are accepted, see validate().
"""

from enum import IntEnum

import numpy as np

from .activations import ActivationType
from .exceptions import ShapeError


class CostFunctionType(IntEnum):
    QUADRATIC = 0
    CROSS_ENTROPY = 1
    LOG_LIKELIHOOD = 2


def _check_shapes(yhat, y):
    if yhat.shape != y.shape:
        raise ShapeError(f"The two matrices must have the same size, got {yhat.shape} and {y.shape}")


class CostFunction:
    """Base class for cost functions."""

    type = None
    # True when the value is a mean over the samples, False for plain sums
    averaged = True

    def forward(self, yhat, y):
        """Compute cost value."""
        raise NotImplementedError

    def backward(self, yhat, y, z, activation):
        """Compute the output delta w.r.t. the activity z."""
        raise NotImplementedError

    def validate(self, activation):
        """Raise ValueError if the activation can't be paired with this cost."""
        if activation.type == ActivationType.SOFTMAX:
            raise ValueError("The softmax activation requires the log-likelihood cost in a softmax layer")

    def __call__(self, yhat, y):
        return self.forward(yhat, y)

    def __eq__(self, other):
        return isinstance(other, CostFunction) and self.type == other.type

    def __hash__(self):
        return hash(self.type)

    def __repr__(self):
        return f"{self.__class__.__name__}()"


class QuadraticCost(CostFunction):
    """
    Half squared error, summed over the whole batch.

    Formula: C = sum((yhat - y)^2) / 2

    Delta: (yhat - y) * f'(z)
    """

    type = CostFunctionType.QUADRATIC
    averaged = False

    def forward(self, yhat, y):
        _check_shapes(yhat, y)
        diff = yhat.astype(np.float64) - y
        return float(np.sum(diff * diff) / 2)

    def backward(self, yhat, y, z, activation):
        _check_shapes(yhat, y)
        return ((yhat - y) * activation.backward(z)).astype(yhat.dtype)


class CrossEntropyCost(CostFunction):
    """
    Binary cross-entropy averaged over the samples.

    Formula: C = -sum(y * ln(yhat) + (1 - y) * ln(1 - yhat)) / n

    Terms that evaluate to NaN (0 * ln 0) are skipped, -inf terms are
    clamped to the most negative float32 value.

    Delta (folded with sigmoid): yhat - y
    """

    type = CostFunctionType.CROSS_ENTROPY

    def forward(self, yhat, y):
        _check_shapes(yhat, y)
        with np.errstate(divide='ignore', invalid='ignore'):
            yhat = yhat.astype(np.float64)
            partial = y * np.log(yhat) + (1 - y) * np.log(1 - yhat)
        partial[np.isneginf(partial)] = -np.finfo(np.float32).max
        partial[np.isnan(partial)] = 0
        if np.any(np.isposinf(partial)):
            raise ArithmeticError("Error calculating the cross-entropy cost")
        return float(-np.sum(partial) / yhat.shape[0])

    def backward(self, yhat, y, z, activation):
        _check_shapes(yhat, y)
        return (yhat - y).astype(yhat.dtype)

    def validate(self, activation):
        if activation.type != ActivationType.SIGMOID:
            raise ValueError("The cross-entropy cost requires the sigmoid activation")


class LogLikelihoodCost(CostFunction):
    """
    Negative log-likelihood of the expected class, averaged over the samples.

    Formula: C = -sum(ln(yhat[argmax(y)])) / n

    Delta (folded with softmax): yhat - y
    """

    type = CostFunctionType.LOG_LIKELIHOOD

    def forward(self, yhat, y):
        _check_shapes(yhat, y)
        rows = np.arange(yhat.shape[0])
        expected = np.argmax(y, axis=1)
        with np.errstate(divide='ignore'):
            logs = np.log(yhat[rows, expected].astype(np.float64))
        logs[np.isneginf(logs)] = -np.finfo(np.float32).max
        return float(-np.sum(logs) / yhat.shape[0])

    def backward(self, yhat, y, z, activation):
        _check_shapes(yhat, y)
        return (yhat - y).astype(yhat.dtype)

    def validate(self, activation):
        if activation.type != ActivationType.SOFTMAX:
            raise ValueError("The log-likelihood cost requires the softmax activation")


# ============================================================================
# Cost Registry
# ============================================================================

COST_FUNCTIONS = {
    'quadratic': QuadraticCost,
    'mse': QuadraticCost,
    'cross_entropy': CrossEntropyCost,
    'crossentropy': CrossEntropyCost,
    'log_likelihood': LogLikelihoodCost,
    'loglikelihood': LogLikelihoodCost,
}

_BY_TYPE = {cls.type: cls for cls in set(COST_FUNCTIONS.values())}


def get_cost(name):
    """
    Get cost function by name or type tag.

    Args:
        name: String name, CostFunctionType, or CostFunction instance

    Returns:
        CostFunction instance
    """
    if isinstance(name, CostFunction):
        return name

    if isinstance(name, (CostFunctionType, int)) and not isinstance(name, bool):
        try:
            return _BY_TYPE[CostFunctionType(name)]()
        except ValueError:
            raise ValueError(f"Unknown cost function type {name}") from None

    name_lower = name.lower().replace('-', '_').replace(' ', '_')
    if name_lower not in COST_FUNCTIONS:
        available = ', '.join(sorted(set(COST_FUNCTIONS.keys())))
        raise ValueError(f"Unknown cost function '{name}'. Available: {available}")

    return COST_FUNCTIONS[name_lower]()
