"""
Matrix Kernel Tests
===================

Products, elementwise operations and reductions against plain numpy.
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from neuralnet import blas
from neuralnet.activations import get_activation
from neuralnet.exceptions import ShapeError
from neuralnet.parallel import WorkerPool
from neuralnet.tensor import Tensor


@pytest.fixture(params=[None, 3], ids=['inline', 'pool'])
def pool(request):
    if request.param is None:
        yield None
    else:
        with WorkerPool(max_workers=request.param) as workers:
            yield workers


def random_tensor(rng, *shape):
    return Tensor.from_array(rng.standard_normal(shape))


class TestMultiplication:
    """Tests for the matrix products."""

    def test_multiply(self, pool):
        """Test C = A * B."""
        rng = np.random.default_rng(0)
        a, b = random_tensor(rng, 9, 5), random_tensor(rng, 5, 4)
        c = blas.multiply(a, b, pool=pool)
        np.testing.assert_allclose(c.data, a.data @ b.data, rtol=1e-5, atol=1e-6)

    def test_multiply_with_sum(self, pool):
        """The bias is added to every row."""
        a = Tensor.from_array([[1, 2], [3, 4]])
        w = np.array([[1, 0, 1], [0, 1, 1]], dtype=np.float32)
        c = blas.multiply_with_sum(a, w, [10, 20, 30], pool=pool)
        np.testing.assert_allclose(c.data, [[11, 22, 33], [13, 24, 37]])

    def test_multiply_with_sum_and_activation(self, pool):
        """The fused kernel matches the two step computation."""
        rng = np.random.default_rng(1)
        a, w = random_tensor(rng, 6, 4), rng.standard_normal((4, 3)).astype(np.float32)
        bias = np.ones(3, dtype=np.float32)
        sigmoid = get_activation('sigmoid')
        fused = blas.multiply_with_sum_and_activation(a, w, bias, sigmoid, pool=pool)
        expected = sigmoid(a.data @ w + bias)
        np.testing.assert_allclose(fused.data, expected, rtol=1e-5)

    def test_transposed_products(self, pool):
        """Test A * B^T and A^T * B."""
        rng = np.random.default_rng(2)
        a, b = random_tensor(rng, 7, 3), random_tensor(rng, 5, 3)
        right = blas.multiply_transposed_right(a, b, pool=pool)
        np.testing.assert_allclose(right.data, a.data @ b.data.T, rtol=1e-5, atol=1e-6)

        c = random_tensor(rng, 7, 4)
        left = blas.multiply_transposed_left(a, c, pool=pool)
        assert left.shape == (3, 4)
        np.testing.assert_allclose(left.data, a.data.T @ c.data, rtol=1e-5, atol=1e-6)

    def test_shape_mismatch(self):
        """Incompatible operands raise ShapeError."""
        with pytest.raises(ShapeError):
            blas.multiply(Tensor.new(2, 3), Tensor.new(2, 3))
        with pytest.raises(ShapeError):
            blas.multiply_with_sum(Tensor.new(2, 3), Tensor.new(3, 4), np.zeros(3))
        with pytest.raises(ShapeError):
            blas.multiply_transposed_left(Tensor.new(2, 3), Tensor.new(3, 3))

    def test_output_tensor_is_reused(self):
        """Results are written into the provided output tensor."""
        out = Tensor.new(2, 2)
        c = blas.multiply(Tensor.from_array([[1, 0], [0, 1]]), Tensor.from_array([[1, 2], [3, 4]]), out=out)
        assert c is out
        np.testing.assert_allclose(out.data, [[1, 2], [3, 4]])
        with pytest.raises(ShapeError):
            blas.multiply(Tensor.new(2, 2), Tensor.new(2, 2), out=Tensor.new(3, 2))


class TestElementwise:
    """Tests for the elementwise kernels."""

    def test_sum_modes(self, pool):
        """ELEMENTWISE adds matrices, COLUMN_BY_COLUMN adds a vector to each row."""
        a = Tensor.from_array([[1, 2], [3, 4]])
        b = Tensor.from_array([[10, 20], [30, 40]])
        np.testing.assert_allclose(blas.sum(a, b, blas.SumMode.ELEMENTWISE, pool=pool).data,
                                   [[11, 22], [33, 44]])
        np.testing.assert_allclose(blas.sum(a, [1, -1], blas.SumMode.COLUMN_BY_COLUMN, pool=pool).data,
                                   [[2, 1], [4, 3]])
        with pytest.raises(ShapeError):
            blas.sum(a, [1, 2, 3], blas.SumMode.COLUMN_BY_COLUMN)

    def test_subtract_and_hadamard(self, pool):
        """Test A - B and A (.) B."""
        a = Tensor.from_array([[1, 2], [3, 4]])
        b = Tensor.from_array([[2, 2], [2, 2]])
        np.testing.assert_allclose(blas.subtract(a, b, pool=pool).data, [[-1, 0], [1, 2]])
        np.testing.assert_allclose(blas.multiply_elementwise(a, b, pool=pool).data, [[2, 4], [6, 8]])
        with pytest.raises(ShapeError):
            blas.subtract(a, Tensor.new(1, 4))

    def test_transpose(self, pool):
        """Test M^T."""
        m = Tensor.from_array(np.arange(6).reshape(2, 3))
        np.testing.assert_allclose(blas.transpose(m, pool=pool).data, np.arange(6).reshape(2, 3).T)

    def test_transpose_twice(self, pool):
        """(M^T)^T == M."""
        m = Tensor.from_array(np.random.default_rng(0).standard_normal((5, 3)))
        twice = blas.transpose(blas.transpose(m, pool=pool), pool=pool)
        assert twice.shape == (5, 3)
        np.testing.assert_array_equal(twice.data, m.data)

    def test_activation_in_place(self):
        """Activations can overwrite their input."""
        m = Tensor.from_array([[-1, 0, 2]])
        blas.activation(m, get_activation('relu'), out=m)
        np.testing.assert_allclose(m.data, [[0, 0, 2]])

    def test_activation_backward(self):
        """f'(z) * dy."""
        z = Tensor.from_array([[-1, 1, 3]])
        dy = Tensor.from_array([[5, 5, 2]])
        result = blas.activation_backward(z, dy, get_activation('relu'))
        np.testing.assert_allclose(result.data, [[0, 5, 2]])


class TestReductions:
    """Tests for the reductions."""

    def test_compress_vertically(self, pool):
        """Column-wise sum as a single row."""
        m = Tensor.from_array([[1, 2, 3], [4, 5, 6], [7, 8, 9]])
        result = blas.compress_vertically(m, pool=pool)
        assert result.shape == (1, 3)
        np.testing.assert_allclose(result.data, [[12, 15, 18]])

    def test_argmax(self):
        """Ties resolve to the lowest index."""
        assert blas.argmax([0.1, 0.7, 0.2]) == 1
        assert blas.argmax([3, 3, 3]) == 0
        with pytest.raises(ShapeError):
            blas.argmax([])

    def test_argmax_at_the_edges(self):
        """The maximum is found in the first and in the last position."""
        assert blas.argmax([9.0, 1.0, 2.0, 8.5]) == 0
        assert blas.argmax([-3.0, -2.0, -1.5, -0.5]) == 3
        assert blas.argmax(Tensor.from_array([[0.2, 0.1, 0.7]])) == 2
        assert blas.argmax([4.0]) == 0

    def test_argmax_rows(self):
        """One index per row."""
        m = Tensor.from_array([[0, 1], [1, 0], [5, 5]])
        assert blas.argmax_rows(m).tolist() == [1, 0, 0]


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
