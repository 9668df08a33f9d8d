"""CUDA kernels for recoct.

This subpackage contains CUDA kernels for 2D forward projection and
backprojection and the elementwise arithmetic used by the solvers.
"""

from .parallel_beam import (
    _parallel_2d_forward_kernel,
    _parallel_2d_backward_kernel,
)

from .fan_beam import (
    _fan_2d_forward_kernel,
    _fan_2d_backward_kernel,
)

from .elementwise import (
    _fill_2d_kernel,
    _copy_2d_kernel,
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

__all__ = [
    '_parallel_2d_forward_kernel',
    '_parallel_2d_backward_kernel',
    '_fan_2d_forward_kernel',
    '_fan_2d_backward_kernel',
    '_fill_2d_kernel',
    '_copy_2d_kernel',
    '_scale_2d_kernel',
    '_add_scaled_2d_kernel',
    '_scale_and_add_2d_kernel',
    '_mul_2d_kernel',
    '_add_mul_2d_kernel',
    '_invert_2d_kernel',
    '_clamp_min_2d_kernel',
    '_clamp_max_2d_kernel',
    '_row_sum_of_squares_kernel',
]
