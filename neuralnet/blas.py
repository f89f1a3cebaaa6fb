"""
Matrix and Vector Kernels
=========================

Dense linear algebra primitives operating on Tensor buffers.

Every kernel:
- validates shapes at entry and raises ShapeError on mismatch
- writes into a pre-allocated `out` tensor, or allocates one the caller owns
- splits the work by output row across the optional WorkerPool

Rows are computed independently of each other, so the result doesn't depend
on the number of threads.

Weights and biases may be passed either as Tensor objects or as plain float32
arrays, since layers keep their parameters as numpy arrays.
"""

from enum import IntEnum

import numpy as np

from .exceptions import ShapeError
from .parallel import run_parallel
from .tensor import DTYPE, Tensor


class SumMode(IntEnum):
    """How the second operand of sum() is combined with the first one."""
    ELEMENTWISE = 0
    COLUMN_BY_COLUMN = 1


def values(x):
    """Return the 2D float32 array behind a Tensor or array-like parameter."""
    if isinstance(x, Tensor):
        return x.data
    array = np.asarray(x, dtype=DTYPE)
    return array.reshape(1, -1) if array.ndim == 1 else array


def vector(x):
    """Return a parameter as a flat 1D array."""
    if isinstance(x, Tensor):
        return x.data.reshape(-1)
    return np.asarray(x, dtype=DTYPE).reshape(-1)


def prepare_output(out, entities, length):
    """Validate a caller provided output tensor, or allocate a new one."""
    if out is None:
        return Tensor.new(entities, length, clean=False)
    if not out.match_shape(entities, length):
        raise ShapeError(f"The output tensor must have shape ({entities}, {length}), got {out.shape}")
    return out


# ============================================================================
# Multiplication
# ============================================================================

def multiply(a, b, out=None, pool=None):
    """
    Matrix product C = A * B.

    Args:
        a: (h, l) tensor
        b: (l, w) tensor or array
        out: Optional (h, w) output tensor
        pool: Optional WorkerPool

    Returns:
        The (h, w) output tensor
    """
    A, B = values(a), values(b)
    if A.shape[1] != B.shape[0]:
        raise ShapeError(f"Can't multiply a {A.shape} matrix by a {B.shape} matrix")
    out = prepare_output(out, A.shape[0], B.shape[1])
    C = out.data

    def body(start, end):
        C[start:end] = A[start:end] @ B

    run_parallel(pool, A.shape[0], body)
    return out


def multiply_with_sum(a, b, bias, out=None, pool=None):
    """Matrix product plus a bias vector added to every row: C = A * B + b."""
    A, B, v = values(a), values(b), vector(bias)
    if A.shape[1] != B.shape[0]:
        raise ShapeError(f"Can't multiply a {A.shape} matrix by a {B.shape} matrix")
    if v.size != B.shape[1]:
        raise ShapeError(f"The bias length ({v.size}) must be equal to the output width ({B.shape[1]})")
    out = prepare_output(out, A.shape[0], B.shape[1])
    C = out.data

    def body(start, end):
        C[start:end] = A[start:end] @ B + v

    run_parallel(pool, A.shape[0], body)
    return out


def multiply_with_sum_and_activation(a, b, bias, activation, out=None, pool=None):
    """
    Fused C = f(A * B + b).

    Each row is activated right after being computed, so no full size
    intermediate buffer is needed.
    """
    A, B, v = values(a), values(b), vector(bias)
    if A.shape[1] != B.shape[0]:
        raise ShapeError(f"Can't multiply a {A.shape} matrix by a {B.shape} matrix")
    if v.size != B.shape[1]:
        raise ShapeError(f"The bias length ({v.size}) must be equal to the output width ({B.shape[1]})")
    out = prepare_output(out, A.shape[0], B.shape[1])
    C = out.data

    def body(start, end):
        C[start:end] = activation.forward(A[start:end] @ B + v)

    run_parallel(pool, A.shape[0], body)
    return out


def multiply_transposed_right(a, b, out=None, pool=None):
    """C = A * B^T, without materializing the transposed matrix."""
    A, B = values(a), values(b)
    if A.shape[1] != B.shape[1]:
        raise ShapeError(f"Can't multiply a {A.shape} matrix by the transpose of a {B.shape} matrix")
    out = prepare_output(out, A.shape[0], B.shape[0])
    C = out.data

    def body(start, end):
        C[start:end] = A[start:end] @ B.T

    run_parallel(pool, A.shape[0], body)
    return out


def multiply_transposed_left(a, b, out=None, pool=None):
    """C = A^T * B, partitioned over the columns of A (the rows of C)."""
    A, B = values(a), values(b)
    if A.shape[0] != B.shape[0]:
        raise ShapeError(f"Can't multiply the transpose of a {A.shape} matrix by a {B.shape} matrix")
    out = prepare_output(out, A.shape[1], B.shape[1])
    C = out.data

    def body(start, end):
        C[start:end] = A[:, start:end].T @ B

    run_parallel(pool, A.shape[1], body)
    return out


# ============================================================================
# Elementwise operations
# ============================================================================

def activation(m, activation, out=None, pool=None):
    """Apply an activation function elementwise, in place when out is m."""
    M = m.data
    out = prepare_output(out, *M.shape)
    C = out.data

    def body(start, end):
        C[start:end] = activation.forward(M[start:end])

    run_parallel(pool, M.shape[0], body)
    return out


def activation_backward(z, dy, activation, out=None, pool=None):
    """Compute f'(z) * dy, the delta w.r.t. the activity z."""
    Z, DY = z.data, dy.data
    if Z.shape != DY.shape:
        raise ShapeError(f"The activity {Z.shape} and delta {DY.shape} must have the same shape")
    out = prepare_output(out, *Z.shape)
    C = out.data

    def body(start, end):
        C[start:end] = activation.backward(Z[start:end]) * DY[start:end]

    run_parallel(pool, Z.shape[0], body)
    return out


def transpose(m, out=None, pool=None):
    """Return M^T."""
    M = values(m)
    out = prepare_output(out, M.shape[1], M.shape[0])
    C = out.data

    def body(start, end):
        C[start:end] = M[:, start:end].T

    run_parallel(pool, M.shape[1], body)
    return out


def multiply_elementwise(a, b, out=None, pool=None):
    """Hadamard product A (.) B."""
    A, B = values(a), values(b)
    if A.shape != B.shape:
        raise ShapeError(f"The two matrices must have the same size, got {A.shape} and {B.shape}")
    out = prepare_output(out, *A.shape)
    C = out.data

    def body(start, end):
        np.multiply(A[start:end], B[start:end], out=C[start:end])

    run_parallel(pool, A.shape[0], body)
    return out


def subtract(a, b, out=None, pool=None):
    """Elementwise A - B."""
    A, B = values(a), values(b)
    if A.shape != B.shape:
        raise ShapeError(f"The two matrices must have the same size, got {A.shape} and {B.shape}")
    out = prepare_output(out, *A.shape)
    C = out.data

    def body(start, end):
        np.subtract(A[start:end], B[start:end], out=C[start:end])

    run_parallel(pool, A.shape[0], body)
    return out


def sum(a, b, mode, out=None, pool=None):
    """
    Add B to A.

    Args:
        a: (h, w) tensor
        b: (h, w) tensor when mode is ELEMENTWISE, or a w-long vector added
           to every row when mode is COLUMN_BY_COLUMN
        mode: SumMode, never inferred from the shapes
    """
    A = values(a)
    mode = SumMode(mode)
    if mode == SumMode.ELEMENTWISE:
        B = values(b)
        if A.shape != B.shape:
            raise ShapeError(f"The two matrices must have the same size, got {A.shape} and {B.shape}")
    else:
        B = vector(b)
        if B.size != A.shape[1]:
            raise ShapeError(f"The vector length ({B.size}) must be equal to the number of columns ({A.shape[1]})")
    out = prepare_output(out, *A.shape)
    C = out.data

    def body(start, end):
        if mode == SumMode.ELEMENTWISE:
            np.add(A[start:end], B[start:end], out=C[start:end])
        else:
            np.add(A[start:end], B, out=C[start:end])

    run_parallel(pool, A.shape[0], body)
    return out


# ============================================================================
# Reductions
# ============================================================================

def compress_vertically(m, out=None, pool=None):
    """
    Column-wise sum of a matrix, returned as a (1, w) tensor.

    Used to compute bias gradients from a batch of deltas. The loop is
    partitioned by column so that each task owns a disjoint output range.
    """
    M = values(m)
    out = prepare_output(out, 1, M.shape[1])
    C = out.data

    def body(start, end):
        C[0, start:end] = np.sum(M[:, start:end], axis=0, dtype=np.float64)

    run_parallel(pool, M.shape[1], body)
    return out


def argmax(v):
    """
    Index of the largest element in a vector.

    Ties resolve to the lowest index, so a constant vector returns 0.
    """
    array = vector(v)
    if array.size == 0:
        raise ShapeError("Can't compute the argmax of an empty vector")
    return int(np.argmax(array))


def argmax_rows(m):
    """Argmax of each row of a matrix, as an int array."""
    M = values(m)
    return np.argmax(M, axis=1)
