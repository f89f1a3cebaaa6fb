"""
Optimizers
==========

Weight update rules, injected into backpropagation as a callback:

    optimizer(index, dJdw, dJdb, samples, layer)

The callback runs once per weighted layer and batch, possibly in parallel
for different layers, and updates layer.weights and layer.biases in place.
Stateful optimizers keep their accumulators per layer index, allocated on
the first update and released by reset().

This module implements:
- StochasticGradientDescent: plain SGD with L2 regularization
- Momentum: SGD with a velocity term
- AdaGrad: per-weight learning rates from the sum of squared gradients
- RMSProp: AdaGrad with a decaying average
- Adadelta: no learning rate, unit-corrected RMSProp
- Adam: adaptive moments with bias correction
- AdaMax: Adam with the infinity norm
"""

import numpy as np

from .blas import values


def _gradients(dJdw, dJdb, layer):
    """Gradients as arrays shaped like the layer parameters."""
    return values(dJdw).reshape(layer.weights.shape), values(dJdb).reshape(layer.biases.shape)


def _check_unit_range(value, name):
    if not 0 <= value < 1:
        raise ValueError(f"The {name} parameter must be in the [0, 1) range")


class Optimizer:
    """Base class for optimizers."""

    def __init__(self):
        self._cache = {}

    def update(self, index, dJdw, dJdb, samples, layer):
        """Update the weights and biases of one layer."""
        raise NotImplementedError

    def __call__(self, index, dJdw, dJdb, samples, layer):
        self.update(index, dJdw, dJdb, samples, layer)

    def _state(self, index, layer, *names):
        """Zero-initialized accumulators for a layer, one per name and parameter."""
        state = self._cache.get(index)
        if state is None:
            state = {}
            for name in names:
                state[f'{name}_w'] = np.zeros_like(layer.weights)
                state[f'{name}_b'] = np.zeros_like(layer.biases)
            self._cache[index] = state
        return state

    def get_lr(self):
        """Get current learning rate."""
        return getattr(self, 'eta', None)

    def reset(self):
        """Reset optimizer state."""
        self._cache = {}

    def __repr__(self):
        params = ', '.join(f'{k}={v}' for k, v in vars(self).items() if not k.startswith('_'))
        return f"{self.__class__.__name__}({params})"


class StochasticGradientDescent(Optimizer):
    """
    Mini-batch gradient descent.

    Update:
        w -= (eta * lambda / n) * w + (eta / n) * dJdw
        b -= (eta / n) * dJdb

    The gradients are sums over the n samples of the batch, hence the scaling.

    Args:
        eta: Learning rate (default: 0.1)
        lambda_: L2 regularization factor (default: 0)
    """

    def __init__(self, eta=0.1, lambda_=0.0):
        super().__init__()
        if eta <= 0:
            raise ValueError("The learning rate must be positive")
        if lambda_ < 0:
            raise ValueError("The lambda parameter can't be negative")
        self.eta = eta
        self.lambda_ = lambda_

    def update(self, index, dJdw, dJdb, samples, layer):
        gw, gb = _gradients(dJdw, dJdb, layer)
        alpha = self.eta / samples
        l2 = self.eta * self.lambda_ / samples
        layer.weights -= l2 * layer.weights + alpha * gw
        layer.biases -= alpha * gb


class Momentum(StochasticGradientDescent):
    """
    SGD with momentum.

    Update:
        v = momentum * v + (eta / n) * dJdw
        w -= (eta * lambda / n) * w + v

    Args:
        momentum: Velocity decay in [0, 1) (default: 0.9)
    """

    def __init__(self, eta=0.1, lambda_=0.0, momentum=0.9):
        super().__init__(eta, lambda_)
        _check_unit_range(momentum, 'momentum')
        self.momentum = momentum

    def update(self, index, dJdw, dJdb, samples, layer):
        gw, gb = _gradients(dJdw, dJdb, layer)
        state = self._state(index, layer, 'v')
        alpha = self.eta / samples
        l2 = self.eta * self.lambda_ / samples
        state['v_w'] *= self.momentum
        state['v_w'] += alpha * gw
        state['v_b'] *= self.momentum
        state['v_b'] += alpha * gb
        layer.weights -= l2 * layer.weights + state['v_w']
        layer.biases -= state['v_b']


class AdaGrad(Optimizer):
    """
    Adaptive gradient.

    Update:
        g2 += dJdw^2
        w -= (eta * lambda / n) * w + eta * dJdw / (sqrt(g2) + epsilon)
    """

    def __init__(self, eta=0.1, lambda_=0.0, epsilon=1e-8):
        super().__init__()
        if eta <= 0:
            raise ValueError("The learning rate must be positive")
        self.eta = eta
        self.lambda_ = lambda_
        self.epsilon = epsilon

    def update(self, index, dJdw, dJdb, samples, layer):
        gw, gb = _gradients(dJdw, dJdb, layer)
        state = self._state(index, layer, 'g2')
        l2 = self.eta * self.lambda_ / samples
        state['g2_w'] += gw * gw
        state['g2_b'] += gb * gb
        layer.weights -= l2 * layer.weights + self.eta * gw / (np.sqrt(state['g2_w']) + self.epsilon)
        layer.biases -= self.eta * gb / (np.sqrt(state['g2_b']) + self.epsilon)


class RMSProp(Optimizer):
    """
    RMSProp.

    Update:
        g2 = rho * g2 + (1 - rho) * dJdw^2
        w -= (eta * lambda / n) * w + eta * dJdw / (sqrt(g2) + epsilon)
    """

    def __init__(self, eta=0.001, rho=0.9, lambda_=0.0, epsilon=1e-8):
        super().__init__()
        if eta <= 0:
            raise ValueError("The learning rate must be positive")
        _check_unit_range(rho, 'rho')
        self.eta = eta
        self.rho = rho
        self.lambda_ = lambda_
        self.epsilon = epsilon

    def update(self, index, dJdw, dJdb, samples, layer):
        gw, gb = _gradients(dJdw, dJdb, layer)
        state = self._state(index, layer, 'g2')
        l2 = self.eta * self.lambda_ / samples
        state['g2_w'] = self.rho * state['g2_w'] + (1 - self.rho) * gw * gw
        state['g2_b'] = self.rho * state['g2_b'] + (1 - self.rho) * gb * gb
        layer.weights -= l2 * layer.weights + self.eta * gw / (np.sqrt(state['g2_w']) + self.epsilon)
        layer.biases -= self.eta * gb / (np.sqrt(state['g2_b']) + self.epsilon)


class Adadelta(Optimizer):
    """
    Adadelta, an extension of Adagrad without a global learning rate.

    For every weight:
        eg  = rho * eg + (1 - rho) * g^2
        dx  = -(sqrt(edx + epsilon) / sqrt(eg + epsilon)) * g
        edx = rho * edx + (1 - rho) * dx^2
        w  += dx - l2 * w

    Biases follow the same rule with their own accumulators.

    Args:
        rho: Decay rate in [0, 1) (default: 0.95)
        epsilon: Conditioning constant (default: 1e-8)
        l2: L2 regularization factor in [0, 1) (default: 0)
    """

    def __init__(self, rho=0.95, epsilon=1e-8, l2=0.0):
        super().__init__()
        _check_unit_range(rho, 'rho')
        _check_unit_range(l2, 'L2 regularization')
        self.rho = rho
        self.epsilon = epsilon
        self.l2 = l2

    def _step(self, param, g, eg, edx):
        eg *= self.rho
        eg += (1 - self.rho) * g * g
        dx = -(np.sqrt(edx + self.epsilon) / np.sqrt(eg + self.epsilon)) * g
        edx *= self.rho
        edx += (1 - self.rho) * dx * dx
        param += dx - self.l2 * param

    def update(self, index, dJdw, dJdb, samples, layer):
        gw, gb = _gradients(dJdw, dJdb, layer)
        state = self._state(index, layer, 'eg', 'edx')
        self._step(layer.weights, gw, state['eg_w'], state['edx_w'])
        self._step(layer.biases, gb, state['eg_b'], state['edx_b'])


class Adam(Optimizer):
    """
    Adam (Adaptive Moment Estimation) optimizer.

    Update, with t counted per layer:
        m = beta1 * m + (1 - beta1) * g
        v = beta2 * v + (1 - beta2) * g^2
        w -= eta * sqrt(1 - beta2^t) / (1 - beta1^t) * m / (sqrt(v) + epsilon)

    Args:
        eta: Step size (default: 0.001)
        beta1: Decay rate for first moment (default: 0.9)
        beta2: Decay rate for second moment (default: 0.999)
        epsilon: Small constant for numerical stability (default: 1e-8)
    """

    def __init__(self, eta=0.001, beta1=0.9, beta2=0.999, epsilon=1e-8):
        super().__init__()
        _check_unit_range(beta1, 'beta1')
        _check_unit_range(beta2, 'beta2')
        self.eta = eta
        self.beta1 = beta1
        self.beta2 = beta2
        self.epsilon = epsilon

    def update(self, index, dJdw, dJdb, samples, layer):
        gw, gb = _gradients(dJdw, dJdb, layer)
        state = self._state(index, layer, 'm', 'v')
        t = state['t'] = state.get('t', 0) + 1
        alpha = self.eta * np.sqrt(1 - self.beta2 ** t) / (1 - self.beta1 ** t)
        for key, param, g in (('w', layer.weights, gw), ('b', layer.biases, gb)):
            m, v = state[f'm_{key}'], state[f'v_{key}']
            m *= self.beta1
            m += (1 - self.beta1) * g
            v *= self.beta2
            v += (1 - self.beta2) * g * g
            param -= alpha * m / (np.sqrt(v) + self.epsilon)


class AdaMax(Adam):
    """
    AdaMax, Adam with the second moment replaced by an infinity norm:
        u = max(beta2 * u, |g|)
        w -= eta / (1 - beta1^t) * m / u
    """

    def __init__(self, eta=0.002, beta1=0.9, beta2=0.999):
        super().__init__(eta, beta1, beta2)

    def update(self, index, dJdw, dJdb, samples, layer):
        gw, gb = _gradients(dJdw, dJdb, layer)
        state = self._state(index, layer, 'm', 'u')
        t = state['t'] = state.get('t', 0) + 1
        alpha = self.eta / (1 - self.beta1 ** t)
        for key, param, g in (('w', layer.weights, gw), ('b', layer.biases, gb)):
            m, u = state[f'm_{key}'], state[f'u_{key}']
            m *= self.beta1
            m += (1 - self.beta1) * g
            np.maximum(self.beta2 * u, np.abs(g), out=u)
            # Zero gradients keep u at zero
            param -= alpha * np.divide(m, u, out=np.zeros_like(m), where=u > 0)


# Optimizer registry
OPTIMIZERS = {
    'sgd': StochasticGradientDescent,
    'stochastic_gradient_descent': StochasticGradientDescent,
    'momentum': Momentum,
    'adagrad': AdaGrad,
    'rmsprop': RMSProp,
    'adadelta': Adadelta,
    'adam': Adam,
    'adamax': AdaMax,
}


def get_optimizer(name, **kwargs):
    """
    Get optimizer by name.

    Args:
        name: Registry name, or an Optimizer instance returned as is
        **kwargs: Arguments to pass to optimizer

    Returns:
        Optimizer instance
    """
    if isinstance(name, Optimizer):
        return name

    name_lower = name.lower()
    if name_lower not in OPTIMIZERS:
        raise ValueError(f"Unknown optimizer '{name}'. Available: {list(OPTIMIZERS.keys())}")

    return OPTIMIZERS[name_lower](**kwargs)
