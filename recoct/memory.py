"""Stride-aware device memory primitives.

Device buffers are 2D float32 `numba.cuda` arrays of shape ``(rows, pitch)``
where `pitch` is the row stride in elements. Only the logical
``rows x width`` region of a buffer carries data; the remaining columns are
alignment padding.
"""

import numpy as np
from numba import cuda
from numba.cuda.cudadrv.devicearray import is_cuda_ndarray
from numba.cuda.cudadrv.driver import CudaAPIError

from recoct import logging
from .constants import _DTYPE, _PITCH_ALIGN
from .kernels import _fill_2d_kernel, _copy_2d_kernel
from .utils import _grid_2d

log = logging.getLogger(__name__)


def aligned_pitch(width):
    """Round `width` up to the allocation pitch alignment."""
    return -(-int(width) // _PITCH_ALIGN) * _PITCH_ALIGN


def pitch_of(d_arr):
    """Row stride of a device buffer in elements."""
    return d_arr.shape[1]


def check_buffer(d_arr, pitch, width, height):
    """Validate that `d_arr` can hold a ``height x width`` region with row stride `pitch`.

    Raises
    ------
    ValueError
        If the buffer is missing, not a float32 2D array, its row length does
        not match `pitch`, or it is too small.
    """
    if d_arr is None:
        raise ValueError("Device buffer is None")
    if not is_cuda_ndarray(d_arr):
        raise ValueError("Buffer is not a CUDA device array")
    if len(d_arr.shape) != 2:
        raise ValueError(f"Expected a 2D device buffer, got shape {tuple(d_arr.shape)}")
    if np.dtype(d_arr.dtype) != np.dtype(_DTYPE):
        raise ValueError(f"Expected a float32 device buffer, got {d_arr.dtype}")
    if pitch is not None and int(pitch) != d_arr.shape[1]:
        raise ValueError(f"Pitch {pitch} does not match buffer row length {d_arr.shape[1]}")
    if d_arr.shape[1] < width or d_arr.shape[0] < height:
        raise ValueError(
            f"Buffer of shape {tuple(d_arr.shape)} cannot hold {height} rows of {width} elements")


def allocate_2d(width, height):
    """Allocate a zero-filled ``height x aligned_pitch(width)`` device buffer.

    Returns
    -------
    numba.cuda.cudadrv.devicearray.DeviceNDArray or None
        The buffer, or None if the device is out of memory.
    """
    pitch = aligned_pitch(width)
    try:
        d_arr = cuda.device_array((height, pitch), dtype=_DTYPE)
    except (CudaAPIError, MemoryError) as err:
        log.error('Failed to allocate %dx%d device buffer: %s', height, pitch, err)
        return None
    fill_2d(d_arr, 0.0, pitch, height)
    return d_arr


def fill_2d(d_arr, value, width, height):
    grid, tpb = _grid_2d(height, width)
    _fill_2d_kernel[grid, tpb](d_arr, width, height, _DTYPE(value))


def zero_2d(d_arr, width, height):
    fill_2d(d_arr, 0.0, width, height)


def copy_device_to_device_2d(d_dst, d_src, width, height):
    """Copy the logical region of `d_src` into `d_dst`; pitches may differ."""
    grid, tpb = _grid_2d(height, width)
    _copy_2d_kernel[grid, tpb](d_dst, d_src, width, height)


def copy_host_to_device_2d(rows, d_dst):
    """Upload a dense (height, width) host block into the logical region of `d_dst`."""
    height, width = rows.shape
    d_rows = cuda.to_device(np.ascontiguousarray(rows, dtype=_DTYPE))
    copy_device_to_device_2d(d_dst, d_rows, width, height)


def copy_device_to_host_2d(d_src, width, height):
    """Download the logical region of `d_src` as a dense (height, width) array."""
    host = d_src.copy_to_host()
    return np.ascontiguousarray(host[:height, :width])
