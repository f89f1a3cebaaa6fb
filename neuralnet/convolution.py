"""
Convolution Kernels
===================

Kernels over 3D volumes flattened as 2D tensors. Each row is one sample,
stored channel by channel: (samples, channels * height * width).

Kernels follow the same layout: a (kernels, channels * kh * kw) matrix where
every row is one 3D kernel, described by a TensorInfo(kh, kw, channels).

Operations:
- convolution_forward: valid convolution + bias, one output slice per kernel
- convolution_full: full convolution, output grows by kernel - 1
- convolution_backward_data: full convolution of the deltas with the rotated kernels
- convolution_backward_filter: kernel gradients from activations and deltas
- convolution_backward_bias: per-kernel bias gradients
- max_pool_2x2 / upscale_pool_2x2: 2x2 max pooling and its exact inverse routing
- rotate_180 / compress_vertically_by_depth: slice utilities

By default kernels are flipped before being applied (a true convolution),
ConvolutionMode.CROSS_CORRELATION applies them as they are.

Work is split across (sample, output channel) pairs.
"""

from enum import IntEnum

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from .blas import prepare_output, values, vector
from .exceptions import ShapeError
from .parallel import run_parallel
from .tensor import TensorInfo


class ConvolutionMode(IntEnum):
    CONVOLUTION = 0
    CROSS_CORRELATION = 1


def _pairs(start, end, channels):
    """Split a flattened (sample, channel) index range into per-sample runs."""
    i = start
    while i < end:
        sample, first = divmod(i, channels)
        last = min(channels, first + end - i)
        yield sample, first, last
        i += last - first


def _check_kernels(w, w_info):
    W = values(w)
    if w_info.height < 2 or w_info.width < 2:
        raise ShapeError("The kernel must be at least 2x2")
    if W.shape[1] != w_info.size:
        raise ShapeError(f"Each kernel must have {w_info.size} values, got {W.shape[1]}")
    return W


def _check_source(x, x_info):
    X = values(x)
    if X.shape[1] != x_info.size:
        raise ShapeError(f"Invalid depth parameter for the input matrix, expected {x_info.size} values per row")
    return X


def _valid(volumes, kernels, out, pool):
    """
    Valid cross-correlation of every volume with every kernel.

    Args:
        volumes: (n, c, H, W) array
        kernels: (k, c, kh, kw) array, already oriented
        out: (n, k, H - kh + 1, W - kw + 1) array to fill
    """
    kh, kw = kernels.shape[2:]
    windows = sliding_window_view(volumes, (kh, kw), axis=(2, 3))
    k = kernels.shape[0]

    def body(start, end):
        for sample, first, last in _pairs(start, end, k):
            out[sample, first:last] = np.tensordot(kernels[first:last], windows[sample],
                                                   axes=([1, 2, 3], [0, 3, 4]))

    run_parallel(pool, volumes.shape[0] * k, body)


def _orient(kernels, mode):
    if ConvolutionMode(mode) == ConvolutionMode.CONVOLUTION:
        return kernels[:, :, ::-1, ::-1]
    return kernels


# ============================================================================
# Convolution
# ============================================================================

def convolution_forward(x, x_info, w, w_info, b, mode=ConvolutionMode.CONVOLUTION, out=None, pool=None):
    """
    Valid convolution of each input volume with each 3D kernel, plus bias.

    Output slice k of a sample is the sum over the input channels of the
    2D convolution between that channel and the matching slice of kernel k.

    Args:
        x: (n, x_info.size) input tensor
        x_info: Shape of each input volume
        w: (k, w_info.size) kernels
        w_info: Shape of each kernel, its depth must match the input depth
        b: k biases, one per kernel
        mode: ConvolutionMode

    Returns:
        (n, k * (H - kh + 1) * (W - kw + 1)) tensor
    """
    W = _check_kernels(w, w_info)
    X = _check_source(x, x_info)
    B = vector(b)
    if x_info.height < w_info.height or x_info.width < w_info.width:
        raise ShapeError("Each subdivided matrix must at least have the size of the kernels")
    if x_info.channels != w_info.channels:
        raise ShapeError("The depth of each kernel must be equal to the depth of each input volume")
    k = W.shape[0]
    if B.size != k:
        raise ShapeError(f"The bias vector must have one value per kernel ({k}), got {B.size}")

    n = X.shape[0]
    oh = x_info.height - w_info.height + 1
    ow = x_info.width - w_info.width + 1
    out = prepare_output(out, n, k * oh * ow)
    result = out.data.reshape(n, k, oh, ow)

    volumes = X.reshape(n, x_info.channels, x_info.height, x_info.width)
    kernels = _orient(W.reshape(k, w_info.channels, w_info.height, w_info.width), mode)
    _valid(volumes, kernels, result, pool)
    result += B.reshape(1, k, 1, 1)
    return out


def convolution_full(x, x_info, w, w_info, mode=ConvolutionMode.CONVOLUTION, out=None, pool=None):
    """
    Full convolution: the input is implicitly zero padded by kernel - 1.

    Returns:
        (n, k * (H + kh - 1) * (W + kw - 1)) tensor
    """
    W = _check_kernels(w, w_info)
    X = _check_source(x, x_info)
    if x_info.channels != w_info.channels:
        raise ShapeError("The depth of each kernel must be equal to the depth of each input volume")
    k = W.shape[0]
    n = X.shape[0]
    kh, kw = w_info.height, w_info.width
    oh, ow = x_info.height + kh - 1, x_info.width + kw - 1
    out = prepare_output(out, n, k * oh * ow)

    volumes = X.reshape(n, x_info.channels, x_info.height, x_info.width)
    padded = np.pad(volumes, ((0, 0), (0, 0), (kh - 1, kh - 1), (kw - 1, kw - 1)))
    kernels = _orient(W.reshape(k, w_info.channels, kh, kw), mode)
    _valid(padded, kernels, out.data.reshape(n, k, oh, ow), pool)
    return out


def convolution_backward_data(dy, dy_info, w, w_info, mode=ConvolutionMode.CONVOLUTION, out=None, pool=None):
    """
    Propagate the output deltas back to the input volume.

    Each input channel c receives the sum over the kernels k of the full
    convolution between delta slice k and the 180 degrees rotation of
    kernel slice (k, c).

    Args:
        dy: (n, dy_info.size) deltas of the convolution output
        dy_info: Shape of the output volume, its depth is the number of kernels
        w: (k, w_info.size) kernels used in the forward pass
        w_info: Shape of each kernel

    Returns:
        (n, c * (oh + kh - 1) * (ow + kw - 1)) tensor
    """
    W = _check_kernels(w, w_info)
    DY = _check_source(dy, dy_info)
    k = W.shape[0]
    if dy_info.channels != k:
        raise ShapeError("The source depth must be equal to the number of kernels")

    c, kh, kw = w_info.channels, w_info.height, w_info.width
    rotated = rotate_180(W, c)
    # One kernel per input channel, with a slice per output delta channel
    kernels = rotated.data.reshape(k, c, kh, kw).transpose(1, 0, 2, 3)
    flat = np.ascontiguousarray(kernels).reshape(c, k * kh * kw)
    rotated.free()
    transposed_info = TensorInfo(kh, kw, k)
    return convolution_full(DY, dy_info, flat, transposed_info, mode, out, pool)


def convolution_backward_filter(x, x_info, dy, dy_info, mode=ConvolutionMode.CONVOLUTION, out=None, pool=None):
    """
    Gradient of the kernels given the layer inputs and the output deltas.

    Slice (k, c) of the gradient is the valid correlation of input channel c
    with delta slice k, summed over all the samples. With flipped kernels the
    result is rotated by 180 degrees to line up with the stored weights.

    Returns:
        (k, c * kh * kw) tensor, where kh = H - oh + 1 and kw = W - ow + 1
    """
    X = _check_source(x, x_info)
    DY = _check_source(dy, dy_info)
    if X.shape[0] != DY.shape[0]:
        raise ShapeError("There must be a delta volume for each activation sample")
    kh = x_info.height - dy_info.height + 1
    kw = x_info.width - dy_info.width + 1
    if kh < 2 or kw < 2:
        raise ShapeError("The kernel must be at least 2x2")

    n, c, k = X.shape[0], x_info.channels, dy_info.channels
    out = prepare_output(out, k, c * kh * kw)
    gradient = out.data.reshape(k, c, kh, kw)
    windows = sliding_window_view(X.reshape(n, c, x_info.height, x_info.width),
                                  (dy_info.height, dy_info.width), axis=(2, 3))
    deltas = DY.reshape(n, k, dy_info.height, dy_info.width)

    def body(start, end):
        gradient[start:end] = np.tensordot(deltas[:, start:end], windows, axes=([0, 2, 3], [0, 4, 5]))

    run_parallel(pool, k, body)
    if ConvolutionMode(mode) == ConvolutionMode.CONVOLUTION:
        rotate_180(out, c, out=out)
    return out


def convolution_backward_bias(dy, dy_info, out=None, pool=None):
    """Bias gradients: each delta channel summed over samples and positions."""
    _check_source(dy, dy_info)
    return compress_vertically_by_depth(dy, dy_info.channels, out, pool)


# ============================================================================
# Pooling
# ============================================================================

def _pooling_windows(X, x_info):
    """Reshape the input into (n, c, ph, pw, 4) 2x2 windows, padding odd edges with -inf."""
    if x_info.height != x_info.width:
        raise ShapeError("The pooling operation requires square slices")
    n, c, axis = X.shape[0], x_info.channels, x_info.height
    pooled_axis = (axis + 1) // 2
    volumes = X.reshape(n, c, axis, axis)
    if axis % 2:
        volumes = np.pad(volumes, ((0, 0), (0, 0), (0, 1), (0, 1)), constant_values=-np.inf)
    windows = volumes.reshape(n, c, pooled_axis, 2, pooled_axis, 2).transpose(0, 1, 2, 4, 3, 5)
    return windows.reshape(n, c, pooled_axis, pooled_axis, 4), pooled_axis


def pooling_output_info(x_info):
    """Output shape of a 2x2 max pooling, odd edges produce an extra row/column."""
    return TensorInfo((x_info.height + 1) // 2, (x_info.width + 1) // 2, x_info.channels)


def max_pool_2x2(x, x_info, out=None, pool=None):
    """
    2x2 max pooling with stride 2.

    When the slice side is odd the last row and column are pooled over a
    degenerate 1-wide window.

    Returns:
        (n, c * ceil(H / 2) * ceil(W / 2)) tensor
    """
    X = _check_source(x, x_info)
    windows, axis = _pooling_windows(X, x_info)
    n, c = X.shape[0], x_info.channels
    out = prepare_output(out, n, c * axis * axis)
    result = out.data.reshape(n, c, axis, axis)

    def body(start, end):
        for sample, first, last in _pairs(start, end, c):
            result[sample, first:last] = np.max(windows[sample, first:last], axis=-1)

    run_parallel(pool, n * c, body)
    return out


def upscale_pool_2x2(x, x_info, pooled, out=None, pool=None):
    """
    Inverse routing of max_pool_2x2.

    Each value of `pooled` is written at the position of the maximum of its
    2x2 window in `x`, every other position is zero. Ties go to the first
    position of the window in row-major order.

    Args:
        x: The original input of the pooling operation
        x_info: Shape of each input volume
        pooled: Values in the pooled shape (activations or deltas)

    Returns:
        Tensor with the same shape as x
    """
    X = _check_source(x, x_info)
    P = values(pooled)
    windows, axis = _pooling_windows(X, x_info)
    n, c = X.shape[0], x_info.channels
    if P.shape != (n, c * axis * axis):
        raise ShapeError(f"The pooled tensor must have shape {(n, c * axis * axis)}, got {P.shape}")
    out = prepare_output(out, n, X.shape[1])
    result = out.data.reshape(n, c, x_info.height, x_info.width)
    values_4d = P.reshape(n, c, axis, axis)
    side = x_info.height

    def body(start, end):
        for sample, first, last in _pairs(start, end, c):
            indexes = np.argmax(windows[sample, first:last], axis=-1)[..., np.newaxis]
            routed = np.zeros(indexes.shape[:-1] + (4,), dtype=P.dtype)
            np.put_along_axis(routed, indexes, values_4d[sample, first:last, ..., np.newaxis], axis=-1)
            routed = routed.reshape(last - first, axis, axis, 2, 2).transpose(0, 1, 3, 2, 4)
            result[sample, first:last] = routed.reshape(last - first, 2 * axis, 2 * axis)[:, :side, :side]

    run_parallel(pool, n * c, body)
    return out


# ============================================================================
# Slice utilities
# ============================================================================

def rotate_180(x, depth, out=None, pool=None):
    """
    Rotate every 2D slice by 180 degrees.

    A row-major slice rotated by 180 degrees is the slice read backwards,
    so each of the `depth` slices in a row is simply reversed.
    """
    X = values(x)
    if depth < 1:
        raise ShapeError("The depth must be at least equal to 1")
    if X.shape[1] % depth:
        raise ShapeError(f"The row length ({X.shape[1]}) isn't a multiple of the depth ({depth})")
    out = prepare_output(out, *X.shape)
    slices = X.reshape(X.shape[0], depth, -1)
    result = out.data.reshape(X.shape[0], depth, -1)

    def body(start, end):
        result[start:end] = slices[start:end, :, ::-1].copy()

    run_parallel(pool, X.shape[0], body)
    return out


def compress_vertically_by_depth(x, depth, out=None, pool=None):
    """
    Sum each slice of each sample, then sum over the samples.

    Returns:
        (1, depth) tensor
    """
    X = values(x)
    if depth < 1:
        raise ShapeError("The depth must be at least equal to 1")
    if X.shape[1] % depth:
        raise ShapeError(f"The row length ({X.shape[1]}) isn't a multiple of the depth ({depth})")
    out = prepare_output(out, 1, depth)
    slices = X.reshape(X.shape[0], depth, -1)
    result = out.data

    def body(start, end):
        result[0, start:end] = np.sum(slices[:, start:end], axis=(0, 2), dtype=np.float64)

    run_parallel(pool, depth, body)
    return out
