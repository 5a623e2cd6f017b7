"""
Matrix Algebra Extensions
=========================

Operations built on top of the Matrix primitive:

- Cross-correlation ("valid") and convolution ("full"), related through a
  180 degree rotation of the kernel
- Max pooling with an argmax index map for gradient routing
- Flatten / unflatten between channel lists and single-column matrices
- Padding and the geometric transforms (rotate, scale) used for image
  augmentation before samples enter the engine

Index maps store flattened row-major indices computed with the *input*
column count: index = row * columns + column.
"""

import numpy as np

from .exceptions import ShapeMismatchError
from .matrix import Matrix

#: Marks an argmax cell for which no maximum was found.
NO_MAX_INDEX = -1


def flat_index(row, column, columns):
    return row * columns + column


def row_and_column(index, columns):
    return index // columns, index % columns


# ============================================================================
# Shape helpers
# ============================================================================

def size_after_convolution(input_size, kernel_size, stride=1):
    """
    Output (rows, columns) of a valid cross-correlation.

    out = (in - kernel) // stride + 1 for each axis
    """
    rows, columns = input_size
    kernel_rows, kernel_columns = kernel_size
    return (rows - kernel_rows) // stride + 1, (columns - kernel_columns) // stride + 1


def size_after_pooling(input_size, pool_size, stride):
    return size_after_convolution(input_size, (pool_size, pool_size), stride)


# ============================================================================
# Convolution / cross-correlation
# ============================================================================

def rotate180(matrix):
    """Rotate the matrix by 180 degrees (flip both axes)."""
    return Matrix._wrap(matrix._values[::-1, ::-1].copy())


def cross_correlation_valid(input_matrix, kernel, stride=1):
    """
    Valid cross-correlation: slide the kernel over the input without padding.

    Each output cell is the inner product of the kernel with the aligned
    input window; positions outside the input contribute zero.

    Output shape: (in - kernel) // stride + 1 per axis.
    """
    x = input_matrix._values
    k = kernel._values
    out_rows, out_columns = size_after_convolution(x.shape, k.shape, stride)
    if out_rows <= 0 or out_columns <= 0:
        raise ShapeMismatchError(
            f"Kernel {k.shape[0]}x{k.shape[1]} does not fit input {x.shape[0]}x{x.shape[1]}"
        )

    # View of every kernel-sized window, then pick the strided ones
    windows = np.lib.stride_tricks.sliding_window_view(x, k.shape)
    windows = windows[::stride, ::stride][:out_rows, :out_columns]
    output = np.einsum('ijmn,mn->ij', windows, k)
    return Matrix._wrap(np.ascontiguousarray(output))


def convolution_full(input_matrix, kernel):
    """
    Full convolution: every kernel/input overlap contributes, including
    partial overlaps at the border.

    output[i, j] = sum_{m, n} input[i - m, j - n] * kernel[m, n]

    Output shape: in + kernel - 1 per axis.
    """
    x = input_matrix._values
    k = kernel._values
    in_rows, in_columns = x.shape
    k_rows, k_columns = k.shape
    output = np.zeros((in_rows + k_rows - 1, in_columns + k_columns - 1))

    # Accumulate one shifted copy of the input per kernel cell
    for m in range(k_rows):
        for n in range(k_columns):
            output[m:m + in_rows, n:n + in_columns] += k[m, n] * x

    return Matrix._wrap(output)


def convolution_valid(input_matrix, kernel, stride=1):
    """Valid convolution = valid cross-correlation with a rotated kernel."""
    return cross_correlation_valid(input_matrix, rotate180(kernel), stride)


def cross_correlation_full(input_matrix, kernel):
    """Full cross-correlation = full convolution with a rotated kernel."""
    return convolution_full(input_matrix, rotate180(kernel))


def add_padding(matrix, padding):
    """Surround the matrix with ``padding`` rows/columns of zeros."""
    return Matrix._wrap(np.pad(matrix._values, padding, mode='constant'))


# ============================================================================
# Pooling
# ============================================================================

def max_pooling(matrix, pool_size, stride):
    """
    Max pooling over (possibly overlapping) windows.

    Returns:
        (result, index_map): the window maxima and, for each output cell,
        the flattened index of the input cell that produced it. Cells where
        no maximum could be found hold NO_MAX_INDEX.
    """
    x = matrix._values
    in_rows, in_columns = x.shape
    out_rows, out_columns = size_after_pooling(x.shape, pool_size, stride)

    result = np.zeros((out_rows, out_columns))
    index_map = np.full((out_rows, out_columns), float(NO_MAX_INDEX))
    lowest = np.finfo(np.float64).min

    for i in range(out_rows):
        for j in range(out_columns):
            r0, c0 = i * stride, j * stride
            window = x[r0:min(r0 + pool_size, in_rows), c0:min(c0 + pool_size, in_columns)]

            # Only values strictly above the lowest float count as a maximum
            candidates = np.where(window > lowest, window, -np.inf)
            if not np.any(np.isfinite(candidates)):
                result[i, j] = lowest
                continue

            # argmax returns the first maximum in row-major order
            local = int(np.argmax(candidates))
            local_row, local_column = divmod(local, window.shape[1])
            result[i, j] = window[local_row, local_column]
            index_map[i, j] = flat_index(r0 + local_row, c0 + local_column, in_columns)

    return Matrix._wrap(result), Matrix._wrap(index_map)


def max_unpooling(gradient, index_map, rows, columns):
    """
    Scatter each gradient value to the input cell recorded in ``index_map``.

    Cells holding NO_MAX_INDEX are skipped; every other input cell that did
    not produce a maximum keeps a zero gradient.
    """
    if gradient.shape != index_map.shape:
        raise ShapeMismatchError(
            f"Gradient {gradient.shape} does not match index map {index_map.shape}"
        )
    result = np.zeros(rows * columns)
    indices = index_map._values.ravel().astype(np.int64)
    values = gradient._values.ravel()
    valid = indices != NO_MAX_INDEX

    np.add.at(result, indices[valid], values[valid])
    return Matrix._wrap(result.reshape(rows, columns))


# ============================================================================
# Reshaping
# ============================================================================

def flatten(matrices):
    """
    Concatenate matrices into one single-column matrix.

    Order is channel-major, then row-major within each channel.
    """
    if not matrices:
        return Matrix(0, 1)
    return Matrix._wrap(np.concatenate([m._values.ravel() for m in matrices]).reshape(-1, 1))


def unflatten(flat, rows, columns):
    """Exact inverse of ``flatten`` for channels of shape rows x columns."""
    if flat.columns != 1:
        raise ShapeMismatchError("Flattened matrix must have exactly one column")
    channel_size = rows * columns
    if channel_size == 0 or flat.rows % channel_size != 0:
        raise ShapeMismatchError(
            f"Cannot split {flat.rows} values into {rows}x{columns} channels"
        )
    values = flat._values.reshape(-1, rows, columns)
    return [Matrix._wrap(channel.copy()) for channel in values]


# ============================================================================
# Geometric transforms (image augmentation)
# ============================================================================

def _bilinear(values, src_rows, src_columns):
    """
    Sample ``values`` at fractional coordinates, clamping neighbours to the
    image border.
    """
    rows, columns = values.shape
    r1 = np.floor(src_rows).astype(np.int64)
    c1 = np.floor(src_columns).astype(np.int64)
    wr2 = src_rows - r1
    wc2 = src_columns - c1
    wr1 = 1.0 - wr2
    wc1 = 1.0 - wc2

    r1c = np.clip(r1, 0, rows - 1)
    r2c = np.clip(r1 + 1, 0, rows - 1)
    c1c = np.clip(c1, 0, columns - 1)
    c2c = np.clip(c1 + 1, 0, columns - 1)

    return (wc1 * (wr1 * values[r1c, c1c] + wr2 * values[r2c, c1c])
            + wc2 * (wr1 * values[r1c, c2c] + wr2 * values[r2c, c2c]))


def rotate(matrix, degrees):
    """
    Rotate the image about its centre by ``degrees`` (counter-clockwise),
    keeping the original shape and interpolating bilinearly.
    """
    rows, columns = matrix.shape
    angle = -np.deg2rad(degrees)
    cos, sin = np.cos(angle), np.sin(angle)
    center_r, center_c = rows / 2.0, columns / 2.0

    out_r, out_c = np.meshgrid(np.arange(rows), np.arange(columns), indexing='ij')
    dr = out_r - center_r
    dc = out_c - center_c
    src_c = dc * cos + dr * sin + center_c
    src_r = -dc * sin + dr * cos + center_r

    return Matrix._wrap(_bilinear(matrix._values, src_r, src_c))


def scale(matrix, factor, background=0.0):
    """
    Resize by ``factor`` around the centre with bilinear interpolation.

    The result has shape (int(rows * factor), int(columns * factor)); samples
    falling outside the source take the ``background`` value.
    """
    if factor <= 0:
        raise ValueError("Scale factor must be positive")
    rows, columns = matrix.shape
    new_rows, new_columns = int(rows * factor), int(columns * factor)
    inv = 1.0 / factor
    offset_r = (rows - 1) / 2.0 - (new_rows - 1) / (2.0 * factor)
    offset_c = (columns - 1) / 2.0 - (new_columns - 1) / (2.0 * factor)

    out_r, out_c = np.meshgrid(np.arange(new_rows), np.arange(new_columns), indexing='ij')
    src_r = out_r * inv + offset_r
    src_c = out_c * inv + offset_c

    inside = (src_r >= 0) & (src_c >= 0) & (np.floor(src_r) < rows) & (np.floor(src_c) < columns)
    values = _bilinear(matrix._values, src_r, src_c)
    return Matrix._wrap(np.where(inside, values, background))


def scale_up_preserving_shape(matrix, factor, background=0.0):
    """Zoom in by ``factor`` (>= 1) while keeping the original shape."""
    if factor < 1.0:
        raise ValueError("Scale factor must be greater than 1.0")
    rows, columns = matrix.shape
    scaled_rows, scaled_columns = int(rows * factor), int(columns * factor)
    inv = 1.0 / factor
    offset_r = (rows - scaled_rows) / 2.0
    offset_c = (columns - scaled_columns) / 2.0

    out_r, out_c = np.meshgrid(np.arange(rows), np.arange(columns), indexing='ij')
    src_r = (out_r - offset_r) * inv
    src_c = (out_c - offset_c) * inv

    inside = ((src_r >= 0) & (src_r < scaled_rows - 1)
              & (src_c >= 0) & (src_c < scaled_columns - 1))
    values = _bilinear(matrix._values, src_r, src_c)
    return Matrix._wrap(np.where(inside, values, background))


def pad_to(matrix, width, height, background=0.0):
    """Centre the matrix on a height x width canvas filled with ``background``."""
    rows, columns = matrix.shape
    canvas = np.full((height, width), background, dtype=np.float64)
    start_r = (height - rows) // 2
    start_c = (width - columns) // 2

    # Clip the source to the part that lands on the canvas
    src_r0, src_c0 = max(0, -start_r), max(0, -start_c)
    dst_r0, dst_c0 = max(0, start_r), max(0, start_c)
    n_rows = min(rows - src_r0, height - dst_r0)
    n_columns = min(columns - src_c0, width - dst_c0)
    if n_rows > 0 and n_columns > 0:
        canvas[dst_r0:dst_r0 + n_rows, dst_c0:dst_c0 + n_columns] = \
            matrix._values[src_r0:src_r0 + n_rows, src_c0:src_c0 + n_columns]
    return Matrix._wrap(canvas)


def random_shift(matrix, rng, min_scale=1.0, max_scale=1.0,
                 min_degrees=0.0, max_degrees=0.0, background=0.0):
    """
    Randomly rotate and scale an image, keeping its shape.

    Scale factors below 1 shrink the image and pad it back to size; factors
    above 1 zoom in.
    """
    factor = rng.uniform(min_scale, max_scale) if max_scale > min_scale else min_scale
    degrees = rng.uniform(min_degrees, max_degrees) if max_degrees > min_degrees else min_degrees

    result = rotate(matrix, degrees)
    if factor < 1.0:
        result = pad_to(scale(result, factor, background), matrix.columns, matrix.rows, background)
    elif factor > 1.0:
        result = scale_up_preserving_shape(result, factor, background)
    return result
