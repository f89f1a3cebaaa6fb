"""
Activation and Cost Tests
=========================

Registry lookups, forward values, derivatives and activation/cost pairing.
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from neuralnet.activations import ACTIVATIONS, ActivationType, get_activation
from neuralnet.costs import CostFunctionType, get_cost
from neuralnet.exceptions import ShapeError


SMOOTH = ['sigmoid', 'tanh', 'lecun_tanh', 'softplus', 'elu', 'identity']


class TestActivationRegistry:
    """Tests for get_activation."""

    def test_lookup_by_name_and_type(self):
        """Names and type tags resolve to the same activation."""
        for activation_type in ActivationType:
            activation = get_activation(activation_type)
            assert activation.type == activation_type
            assert get_activation(int(activation_type)) == activation

        assert get_activation('ReLU').type == ActivationType.RELU
        assert get_activation(None).type == ActivationType.IDENTITY

    def test_unknown(self):
        """Unknown names and tags raise ValueError."""
        with pytest.raises(ValueError, match="Unknown activation"):
            get_activation('swish')
        with pytest.raises(ValueError):
            get_activation(42)

    def test_tags_are_unique(self):
        """Every registered class has its own tag."""
        types = {cls.type for cls in ACTIVATIONS.values()}
        assert len(types) == len(ActivationType)


class TestActivations:
    """Tests for activation values and derivatives."""

    def test_known_values(self):
        """Test a few reference values."""
        x = np.array([-2.0, 0.0, 3.0], dtype=np.float32)
        np.testing.assert_allclose(get_activation('sigmoid')(x)[1], 0.5)
        np.testing.assert_allclose(get_activation('relu')(x), [0, 0, 3])
        np.testing.assert_allclose(get_activation('leaky_relu')(x), [-0.02, 0, 3], rtol=1e-6)
        np.testing.assert_allclose(get_activation('absolute_relu')(x), [2, 0, 3])
        np.testing.assert_allclose(get_activation('lecun_tanh')(np.array([1.0])), [1.0], atol=1e-3)
        np.testing.assert_allclose(get_activation('softplus')(np.array([0.0])), [np.log(2)], rtol=1e-6)

    def test_sigmoid_saturates(self):
        """Large inputs don't overflow."""
        with np.errstate(over='raise'):
            y = get_activation('sigmoid')(np.array([-1000.0, 1000.0]))
        assert y[0] >= 0 and y[1] <= 1

    @pytest.mark.parametrize("name", SMOOTH)
    def test_derivatives(self, name):
        """f'(x) against centered differences."""
        activation = get_activation(name)
        x = np.linspace(-2, 2, 17) + 0.05
        eps = 1e-5
        numerical = (activation(x + eps) - activation(x - eps)) / (2 * eps)
        np.testing.assert_allclose(activation.backward(x), numerical, rtol=1e-4, atol=1e-6)

    def test_softmax_rows(self):
        """Softmax normalizes each row independently."""
        softmax = get_activation('softmax')
        y = softmax(np.array([[1.0, 2.0, 3.0], [1000.0, 1000.0, 1000.0]]))
        np.testing.assert_allclose(y.sum(axis=1), [1, 1])
        np.testing.assert_allclose(y[1], [1 / 3] * 3)
        with pytest.raises(NotImplementedError):
            softmax.backward(np.zeros(3))


class TestCosts:
    """Tests for the cost functions."""

    def test_lookup(self):
        """Names and type tags resolve to the same cost."""
        for cost_type in CostFunctionType:
            assert get_cost(cost_type).type == cost_type
        assert get_cost('mse').type == CostFunctionType.QUADRATIC
        with pytest.raises(ValueError, match="Unknown cost function"):
            get_cost('hinge')

    def test_quadratic(self):
        """Half the summed squared error, not averaged."""
        yhat = np.array([[1.0, 0.0], [0.5, 0.5]], dtype=np.float32)
        y = np.array([[0.0, 0.0], [0.5, 1.5]], dtype=np.float32)
        assert get_cost('quadratic')(yhat, y) == pytest.approx(1.0)
        assert not get_cost('quadratic').averaged

    def test_cross_entropy(self):
        """Binary cross-entropy averaged over the samples."""
        yhat = np.array([[0.9, 0.2], [0.4, 0.6]])
        y = np.array([[1.0, 0.0], [0.0, 1.0]])
        expected = -(np.log(0.9) + np.log(0.8) + np.log(0.6) + np.log(0.6)) / 2
        assert get_cost('cross_entropy')(yhat, y) == pytest.approx(expected)

    def test_cross_entropy_saturated(self):
        """0 * ln(0) terms are skipped, ln(0) terms are clamped."""
        cost = get_cost('cross_entropy')
        assert cost(np.array([[1.0, 0.0]]), np.array([[1.0, 0.0]])) == pytest.approx(0.0)
        assert np.isfinite(cost(np.array([[0.0]]), np.array([[1.0]])))

    def test_log_likelihood(self):
        """Negative log of the expected class probability."""
        yhat = np.array([[0.7, 0.2, 0.1], [0.25, 0.25, 0.5]])
        y = np.array([[1.0, 0, 0], [0, 0, 1.0]])
        expected = -(np.log(0.7) + np.log(0.5)) / 2
        assert get_cost('log_likelihood')(yhat, y) == pytest.approx(expected)

    def test_shape_mismatch(self):
        """yhat and y must have the same shape."""
        with pytest.raises(ShapeError):
            get_cost('quadratic')(np.zeros((2, 3)), np.zeros((3, 2)))

    def test_deltas(self):
        """Folded costs return yhat - y, quadratic applies f'(z)."""
        z = np.array([[0.0, 1.0]], dtype=np.float32)
        sigmoid = get_activation('sigmoid')
        yhat = sigmoid(z)
        y = np.array([[1.0, 0.0]], dtype=np.float32)

        np.testing.assert_allclose(get_cost('cross_entropy').backward(yhat, y, z, sigmoid), yhat - y)
        np.testing.assert_allclose(get_cost('quadratic').backward(yhat, y, z, sigmoid),
                                   (yhat - y) * sigmoid.backward(z), rtol=1e-6)

    def test_pairing(self):
        """Only sigmoid/cross-entropy and softmax/log-likelihood are folded."""
        get_cost('cross_entropy').validate(get_activation('sigmoid'))
        get_cost('log_likelihood').validate(get_activation('softmax'))
        get_cost('quadratic').validate(get_activation('tanh'))

        with pytest.raises(ValueError):
            get_cost('cross_entropy').validate(get_activation('relu'))
        with pytest.raises(ValueError):
            get_cost('log_likelihood').validate(get_activation('sigmoid'))
        with pytest.raises(ValueError):
            get_cost('quadratic').validate(get_activation('softmax'))


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
