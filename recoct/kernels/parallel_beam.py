"""CUDA kernels for 2D parallel beam projections.

This module contains CUDA kernels implementing the Siddon ray-tracing method
with bilinear interpolation for 2D parallel beam forward projection and its
exact adjoint. Both kernels accumulate into their output buffer, so callers
zero the output first when a plain projection is wanted.
"""

import math
from numba import cuda

from ..constants import _FASTMATH_DECORATOR, _INF, _EPSILON


# ============================================================================
# 2D Parallel Beam Forward Projection Kernel
# ============================================================================

@_FASTMATH_DECORATOR
def _parallel_2d_forward_kernel(
    d_image, Nx, Ny,
    d_sino, n_ang, n_det,
    det_scale, rays_per_det, d_cos, d_sin, d_offsets,
    cx, cy, out_scale
):
    """Accumulate the scaled 2D parallel beam forward projection.

    Parameters
    ----------
    d_image : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Input volume of shape (>= Ny, >= Nx); columns past Nx are padding.
    Nx : int
        Number of pixels along the x-axis (logical row width).
    Ny : int
        Number of pixels along the y-axis.
    d_sino : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Sinogram of shape (>= n_ang, >= n_det) receiving ``out_scale * A x``.
    n_ang : int
        Number of projection angles.
    n_det : int
        Number of detector elements.
    det_scale : float
        Detector element width in pixel units.
    rays_per_det : int
        Number of rays traced per detector element.
    d_cos, d_sin : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Precomputed cosine and sine of the projection angles.
    d_offsets : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Per-angle detector shift in detector elements.
    cx, cy : float
        Half of image width and height in pixels.
    out_scale : float
        Factor applied to the projection before it is added to `d_sino`.

    Notes
    -----
    Each thread traces the rays of one (angle, detector) bin. Rays that miss
    the volume contribute nothing, leaving the output bin untouched.
    """
    iang, idet = cuda.grid(2)
    if iang >= n_ang or idet >= n_det:
        return

    cos_a = d_cos[iang]
    sin_a = d_sin[iang]
    # Rays run along (cos_a, sin_a), the detector axis is perpendicular to it
    dir_x, dir_y = cos_a, sin_a
    offset = d_offsets[iang]

    accum = 0.0
    for iray in range(rays_per_det):
        u = (idet + (iray + 0.5) / rays_per_det - n_det * 0.5 + offset) * det_scale
        pnt_x, pnt_y = u * -sin_a, u * cos_a

        # === RAY-VOLUME INTERSECTION ===
        t_min, t_max = -_INF, _INF
        if abs(dir_x) > _EPSILON:
            tx1, tx2 = (-cx - pnt_x) / dir_x, (cx - pnt_x) / dir_x
            t_min, t_max = max(t_min, min(tx1, tx2)), min(t_max, max(tx1, tx2))
        elif pnt_x < -cx or pnt_x > cx:
            continue

        if abs(dir_y) > _EPSILON:
            ty1, ty2 = (-cy - pnt_y) / dir_y, (cy - pnt_y) / dir_y
            t_min, t_max = max(t_min, min(ty1, ty2)), min(t_max, max(ty1, ty2))
        elif pnt_y < -cy or pnt_y > cy:
            continue

        if t_min >= t_max:
            continue

        # === SIDDON TRAVERSAL INITIALIZATION ===
        t = t_min
        ix = int(math.floor(pnt_x + t * dir_x + cx))
        iy = int(math.floor(pnt_y + t * dir_y + cy))

        step_x, step_y = (1 if dir_x >= 0 else -1), (1 if dir_y >= 0 else -1)
        inv_dir_x = (1.0 / dir_x) if abs(dir_x) > _EPSILON else 0.0
        inv_dir_y = (1.0 / dir_y) if abs(dir_y) > _EPSILON else 0.0
        dt_x = abs(inv_dir_x) if abs(dir_x) > _EPSILON else _INF
        dt_y = abs(inv_dir_y) if abs(dir_y) > _EPSILON else _INF
        tx = ((ix + (step_x > 0)) - cx - pnt_x) * inv_dir_x if abs(dir_x) > _EPSILON else _INF
        ty = ((iy + (step_y > 0)) - cy - pnt_y) * inv_dir_y if abs(dir_y) > _EPSILON else _INF

        # === TRAVERSAL WITH BILINEAR SAMPLING AT SEGMENT MIDPOINTS ===
        while t < t_max:
            if 0 <= ix < Nx and 0 <= iy < Ny:
                t_next = min(tx, ty, t_max)
                seg_len = t_next - t
                if seg_len > _EPSILON:
                    t_mid = t + seg_len * 0.5
                    mid_x = pnt_x + t_mid * dir_x + cx
                    mid_y = pnt_y + t_mid * dir_y + cy
                    ix0, iy0 = int(math.floor(mid_x)), int(math.floor(mid_y))
                    # Clamp the 2x2 footprint into the image, weights follow the clamped cell
                    ix0 = max(0, min(ix0, Nx - 2))
                    iy0 = max(0, min(iy0, Ny - 2))
                    dx = min(max(mid_x - ix0, 0.0), 1.0)
                    dy = min(max(mid_y - iy0, 0.0), 1.0)

                    one_minus_dx = 1.0 - dx
                    one_minus_dy = 1.0 - dy
                    v00 = d_image[iy0, ix0]
                    v10 = d_image[iy0, ix0 + 1]
                    v01 = d_image[iy0 + 1, ix0]
                    v11 = d_image[iy0 + 1, ix0 + 1]
                    row0 = (v00 * one_minus_dx + v10 * dx) * one_minus_dy
                    row1 = (v01 * one_minus_dx + v11 * dx) * dy
                    accum += (row0 + row1) * seg_len

            if tx <= ty:
                t = tx
                ix += step_x
                tx += dt_x
            else:
                t = ty
                iy += step_y
                ty += dt_y

    d_sino[iang, idet] += out_scale * accum / rays_per_det


# ============================================================================
# 2D Parallel Beam Backprojection Kernel
# ============================================================================

@_FASTMATH_DECORATOR
def _parallel_2d_backward_kernel(
    d_sino, n_ang, n_det,
    d_image, Nx, Ny,
    det_scale, rays_per_det, d_cos, d_sin, d_offsets,
    cx, cy
):
    """Accumulate the 2D parallel beam backprojection.

    Parameters
    ----------
    d_sino : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Input sinogram of shape (>= n_ang, >= n_det).
    n_ang : int
        Number of projection angles.
    n_det : int
        Number of detector elements.
    d_image : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Volume of shape (>= Ny, >= Nx) receiving ``A' y``.
    Nx : int
        Number of pixels along the x-axis.
    Ny : int
        Number of pixels along the y-axis.
    det_scale : float
        Detector element width in pixel units.
    rays_per_det : int
        Number of rays traced per detector element.
    d_cos, d_sin : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Precomputed cosine and sine of the projection angles.
    d_offsets : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Per-angle detector shift in detector elements.
    cx, cy : float
        Half of image width and height in pixels.

    Notes
    -----
    Uses the same rays and interpolation weights as the forward kernel, so the
    two kernels form an exact adjoint pair. Scatter is done with atomic adds
    because rays of different threads share pixels.
    """
    iang, idet = cuda.grid(2)
    if iang >= n_ang or idet >= n_det:
        return

    val = d_sino[iang, idet] / rays_per_det
    cos_a = d_cos[iang]
    sin_a = d_sin[iang]
    dir_x, dir_y = cos_a, sin_a
    offset = d_offsets[iang]

    for iray in range(rays_per_det):
        u = (idet + (iray + 0.5) / rays_per_det - n_det * 0.5 + offset) * det_scale
        pnt_x, pnt_y = u * -sin_a, u * cos_a

        t_min, t_max = -_INF, _INF
        if abs(dir_x) > _EPSILON:
            tx1, tx2 = (-cx - pnt_x) / dir_x, (cx - pnt_x) / dir_x
            t_min, t_max = max(t_min, min(tx1, tx2)), min(t_max, max(tx1, tx2))
        elif pnt_x < -cx or pnt_x > cx:
            continue

        if abs(dir_y) > _EPSILON:
            ty1, ty2 = (-cy - pnt_y) / dir_y, (cy - pnt_y) / dir_y
            t_min, t_max = max(t_min, min(ty1, ty2)), min(t_max, max(ty1, ty2))
        elif pnt_y < -cy or pnt_y > cy:
            continue

        if t_min >= t_max:
            continue

        t = t_min
        ix = int(math.floor(pnt_x + t * dir_x + cx))
        iy = int(math.floor(pnt_y + t * dir_y + cy))

        step_x, step_y = (1 if dir_x >= 0 else -1), (1 if dir_y >= 0 else -1)
        inv_dir_x = (1.0 / dir_x) if abs(dir_x) > _EPSILON else 0.0
        inv_dir_y = (1.0 / dir_y) if abs(dir_y) > _EPSILON else 0.0
        dt_x = abs(inv_dir_x) if abs(dir_x) > _EPSILON else _INF
        dt_y = abs(inv_dir_y) if abs(dir_y) > _EPSILON else _INF
        tx = ((ix + (step_x > 0)) - cx - pnt_x) * inv_dir_x if abs(dir_x) > _EPSILON else _INF
        ty = ((iy + (step_y > 0)) - cy - pnt_y) * inv_dir_y if abs(dir_y) > _EPSILON else _INF

        while t < t_max:
            if 0 <= ix < Nx and 0 <= iy < Ny:
                t_next = min(tx, ty, t_max)
                seg_len = t_next - t
                if seg_len > _EPSILON:
                    t_mid = t + seg_len * 0.5
                    mid_x = pnt_x + t_mid * dir_x + cx
                    mid_y = pnt_y + t_mid * dir_y + cy
                    ix0, iy0 = int(math.floor(mid_x)), int(math.floor(mid_y))
                    # Clamp the 2x2 footprint into the image, weights follow the clamped cell
                    ix0 = max(0, min(ix0, Nx - 2))
                    iy0 = max(0, min(iy0, Ny - 2))
                    dx = min(max(mid_x - ix0, 0.0), 1.0)
                    dy = min(max(mid_y - iy0, 0.0), 1.0)

                    cval = val * seg_len
                    one_minus_dx = 1.0 - dx
                    one_minus_dy = 1.0 - dy
                    cuda.atomic.add(d_image, (iy0,     ix0),     cval * one_minus_dx * one_minus_dy)
                    cuda.atomic.add(d_image, (iy0,     ix0 + 1), cval * dx          * one_minus_dy)
                    cuda.atomic.add(d_image, (iy0 + 1, ix0),     cval * one_minus_dx * dy)
                    cuda.atomic.add(d_image, (iy0 + 1, ix0 + 1), cval * dx          * dy)

            if tx <= ty:
                t = tx
                ix += step_x
                tx += dt_x
            else:
                t = ty
                iy += step_y
                ty += dt_y
