"""Utility helpers for recoct.

This module provides device selection, CUDA grid computation,
trigonometric table generation and helpers that map row-strided host
arrays to and from the dense row blocks used by device copies.
"""

import math
import numpy as np
from numba import cuda
from numba.cuda.cudadrv.driver import CudaAPIError
from numba.cuda.cudadrv.error import CudaSupportError

from recoct import logging
from .constants import _DTYPE, _TPB_1D, _TPB_2D

log = logging.getLogger(__name__)


# ============================================================================
# Device Management Utilities
# ============================================================================

def get_gpu_count():
    """Return the number of visible CUDA devices, 0 when CUDA is unavailable."""
    try:
        return len(cuda.gpus)
    except CudaSupportError as err:
        log.warning('CUDA is not available: %s', err)
        return 0


def select_device(index):
    """Bind the calling thread to CUDA device `index`.

    Parameters
    ----------
    index : int
        Device ordinal. A negative value keeps whatever device is active.

    Returns
    -------
    bool
        True if `index` is (or already was) the active device.

    Notes
    -----
    A device already bound by a prior call is not an error. Any other
    driver failure, including an attempt to switch away from a device that
    already owns the thread's context, is reported as False.
    """
    if index < 0:
        return True
    try:
        count = len(cuda.gpus)
        if index >= count:
            log.error('GPU index %d out of range, %d device(s) visible', index, count)
            return False
        current = cuda.gpus.current
        if current is not None and current.id == index:
            log.debug('GPU %d already bound', index)
            return True
        cuda.select_device(index)
    except CudaSupportError as err:
        log.error('CUDA is not available: %s', err)
        return False
    except (CudaAPIError, RuntimeError) as err:
        log.error('Failed to select GPU %d: %s', index, err)
        return False
    log.info('Using GPU %d', index)
    return True


# ============================================================================
# GPU Trigonometric Table Generation
# ============================================================================

def _trig_tables(angles, dtype=_DTYPE):
    """Compute cosine and sine tables for projection angles on the device.

    Parameters
    ----------
    angles : numpy.ndarray
        Projection angles in radians.
    dtype : numpy.dtype, optional
        Data type of the tables. Default is `_DTYPE`.

    Returns
    -------
    d_cos, d_sin : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Device arrays holding cos(angles) and sin(angles).
    """
    angles = np.asarray(angles, dtype=np.float64)
    cos_host = np.ascontiguousarray(np.cos(angles).astype(dtype))
    sin_host = np.ascontiguousarray(np.sin(angles).astype(dtype))
    return cuda.to_device(cos_host), cuda.to_device(sin_host)


# ============================================================================
# Host Row Staging
# ============================================================================

def _row_indices(pitch, width, height):
    return np.arange(height)[:, None] * pitch + np.arange(width)[None, :]


def _resolve_pitch(arr, pitch, width):
    if pitch is None:
        pitch = arr.shape[1] if arr.ndim == 2 else width
    pitch = int(pitch)
    if pitch < width:
        raise ValueError(f"Row pitch {pitch} is smaller than row width {width}")
    return pitch


def _host_rows(host, pitch, width, height):
    """Gather a row-strided host array into a dense (height, width) block.

    Parameters
    ----------
    host : array_like
        Row-major host data. A 2D array uses its row length as default pitch,
        a 1D array is read as consecutive rows of `pitch` elements.
    pitch : int or None
        Distance in elements between the starts of consecutive rows.
    width, height : int
        Logical row width and row count.

    Returns
    -------
    numpy.ndarray
        C-contiguous float32 array of shape (height, width).

    Raises
    ------
    ValueError
        If `host` is None, the pitch is smaller than `width` or the array is
        too short to hold `height` rows.
    """
    if host is None:
        raise ValueError("Host array is None")
    arr = np.asarray(host)
    pitch = _resolve_pitch(arr, pitch, width)
    flat = arr.reshape(-1)
    needed = (height - 1) * pitch + width
    if flat.size < needed:
        raise ValueError(f"Host array holds {flat.size} elements, {needed} required")
    return np.ascontiguousarray(flat[_row_indices(pitch, width, height)], dtype=_DTYPE)


def _write_host_rows(host, pitch, rows):
    """Scatter a dense (height, width) block into a row-strided host array in place."""
    if not isinstance(host, np.ndarray):
        raise ValueError("Host output must be a numpy.ndarray")
    if not host.flags.c_contiguous or not host.flags.writeable:
        raise ValueError("Host output must be a writeable C-contiguous array")
    height, width = rows.shape
    pitch = _resolve_pitch(host, pitch, width)
    flat = host.reshape(-1)
    needed = (height - 1) * pitch + width
    if flat.size < needed:
        raise ValueError(f"Host array holds {flat.size} elements, {needed} required")
    flat[_row_indices(pitch, width, height)] = rows


# ============================================================================
# CUDA Grid Computation
# ============================================================================

def _grid_2d(n1, n2, tpb=_TPB_2D):
    """Compute 2D CUDA grid and block dimensions.

    The block is shrunk to the problem size along each axis so that small
    buffers do not launch mostly idle blocks.

    Parameters
    ----------
    n1 : int
        Number of elements along the first dimension (e.g., projection angles).
    n2 : int
        Number of elements along the second dimension (e.g., detector elements).
    tpb : tuple of int, optional
        Maximum threads per block (default is `_TPB_2D`).

    Returns
    -------
    grid : tuple of int
        Blocks count per axis.
    tpb : tuple of int
        Threads per block per axis.

    Examples
    --------
    >>> _grid_2d(180, 256)
    ((12, 16), (16, 16))
    >>> _grid_2d(8, 8)
    ((1, 1), (8, 8))
    """
    tpb = (max(1, min(tpb[0], n1)), max(1, min(tpb[1], n2)))
    return (math.ceil(n1 / tpb[0]), math.ceil(n2 / tpb[1])), tpb


def _grid_1d(n, tpb=_TPB_1D):
    """Compute 1D CUDA grid and block dimensions, shrinking the block to `n`."""
    tpb = max(1, min(tpb, n))
    return math.ceil(n / tpb), tpb
