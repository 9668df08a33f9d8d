"""Host-side launchers for elementwise arithmetic and reductions.

All functions operate on the logical ``height x width`` region of
row-pitched device buffers and are ordered on the default stream.
"""

import numpy as np
from numba import cuda

from .constants import _ACC_DTYPE, _DTYPE
from .kernels import (
    _scale_2d_kernel,
    _add_scaled_2d_kernel,
    _scale_and_add_2d_kernel,
    _mul_2d_kernel,
    _add_mul_2d_kernel,
    _invert_2d_kernel,
    _clamp_min_2d_kernel,
    _clamp_max_2d_kernel,
    _row_sum_of_squares_kernel,
)
from .utils import _grid_1d, _grid_2d


def scale_2d(d_a, factor, width, height):
    """a *= factor"""
    grid, tpb = _grid_2d(height, width)
    _scale_2d_kernel[grid, tpb](d_a, width, height, _DTYPE(factor))


def add_scaled_2d(d_a, d_b, factor, width, height):
    """a += factor * b"""
    grid, tpb = _grid_2d(height, width)
    _add_scaled_2d_kernel[grid, tpb](d_a, d_b, width, height, _DTYPE(factor))


def scale_and_add_2d(d_a, d_b, factor, width, height):
    """a = b + factor * a"""
    grid, tpb = _grid_2d(height, width)
    _scale_and_add_2d_kernel[grid, tpb](d_a, d_b, width, height, _DTYPE(factor))


def multiply_2d(d_a, d_b, width, height):
    """a *= b"""
    grid, tpb = _grid_2d(height, width)
    _mul_2d_kernel[grid, tpb](d_a, d_b, width, height)


def add_multiplied_2d(d_a, d_b, d_c, factor, width, height):
    """a += factor * b * c"""
    grid, tpb = _grid_2d(height, width)
    _add_mul_2d_kernel[grid, tpb](d_a, d_b, d_c, width, height, _DTYPE(factor))


def invert_2d(d_a, width, height):
    """a = 1 / a, with entries not above the epsilon threshold set to 0"""
    grid, tpb = _grid_2d(height, width)
    _invert_2d_kernel[grid, tpb](d_a, width, height)


def clamp_min_2d(d_a, bound, width, height):
    grid, tpb = _grid_2d(height, width)
    _clamp_min_2d_kernel[grid, tpb](d_a, width, height, _DTYPE(bound))


def clamp_max_2d(d_a, bound, width, height):
    grid, tpb = _grid_2d(height, width)
    _clamp_max_2d_kernel[grid, tpb](d_a, width, height, _DTYPE(bound))


def sum_of_squares_2d(d_a, width, height):
    """Return the sum of squares over the logical region of `d_a` as a Python float.

    Padding columns past `width` are excluded. Rows are reduced on the
    device, the per-row partial sums are added on the host in float64.
    """
    d_rows = cuda.device_array(height, dtype=_ACC_DTYPE)
    grid, tpb = _grid_1d(height)
    _row_sum_of_squares_kernel[grid, tpb](d_a, width, height, d_rows)
    return float(np.sum(d_rows.copy_to_host(), dtype=_ACC_DTYPE))
