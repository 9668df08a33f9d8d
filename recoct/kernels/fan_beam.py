"""CUDA kernels for 2D fan beam projections.

This module contains CUDA kernels implementing the Siddon ray-tracing method
for 2D fan beam forward projection and backprojection. Every view is given
explicitly by its source position, the start of its detector and the vector
spanning one detector element, so arbitrary source trajectories are handled.
"""

import math
from numba import cuda

from ..constants import _FASTMATH_DECORATOR, _INF, _EPSILON


# ============================================================================
# 2D Fan Beam Forward Projection Kernel
# ============================================================================

@_FASTMATH_DECORATOR
def _fan_2d_forward_kernel(
    d_image, Nx, Ny,
    d_sino, n_ang, n_det,
    rays_per_det, d_views,
    cx, cy, out_scale
):
    """Accumulate the scaled 2D fan beam forward projection.

    Parameters
    ----------
    d_image : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Input volume of shape (>= Ny, >= Nx).
    Nx : int
        Number of pixels along the x-axis.
    Ny : int
        Number of pixels along the y-axis.
    d_sino : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Sinogram of shape (>= n_ang, >= n_det) receiving ``out_scale * A x``.
    n_ang : int
        Number of views.
    n_det : int
        Number of detector elements.
    rays_per_det : int
        Number of rays traced per detector element.
    d_views : numba.cuda.cudadrv.devicearray.DeviceNDArray
        View descriptors of shape (n_ang, 6): source x/y, detector start x/y
        and detector element vector x/y, in pixel units.
    cx, cy : float
        Half of image width and height in pixels.
    out_scale : float
        Factor applied to the projection before it is added to `d_sino`.

    Notes
    -----
    Rays connect the source to sample points spread evenly over each detector
    element. The source position is used as ray origin.
    """
    iang, idet = cuda.grid(2)
    if iang >= n_ang or idet >= n_det:
        return

    src_x = d_views[iang, 0]
    src_y = d_views[iang, 1]
    det_sx = d_views[iang, 2]
    det_sy = d_views[iang, 3]
    det_ux = d_views[iang, 4]
    det_uy = d_views[iang, 5]

    accum = 0.0
    for iray in range(rays_per_det):
        s = idet + (iray + 0.5) / rays_per_det
        det_x = det_sx + s * det_ux
        det_y = det_sy + s * det_uy

        # === RAY DIRECTION ===
        dir_x, dir_y = det_x - src_x, det_y - src_y
        length = math.sqrt(dir_x * dir_x + dir_y * dir_y)
        if length < _EPSILON:
            continue
        inv_len = 1.0 / length
        dir_x, dir_y = dir_x * inv_len, dir_y * inv_len

        # === RAY-VOLUME INTERSECTION ===
        t_min, t_max = -_INF, _INF
        if abs(dir_x) > _EPSILON:
            tx1, tx2 = (-cx - src_x) / dir_x, (cx - src_x) / dir_x
            t_min, t_max = max(t_min, min(tx1, tx2)), min(t_max, max(tx1, tx2))
        elif src_x < -cx or src_x > cx:
            continue

        if abs(dir_y) > _EPSILON:
            ty1, ty2 = (-cy - src_y) / dir_y, (cy - src_y) / dir_y
            t_min, t_max = max(t_min, min(ty1, ty2)), min(t_max, max(ty1, ty2))
        elif src_y < -cy or src_y > cy:
            continue

        if t_min >= t_max:
            continue

        # === SIDDON TRAVERSAL (same scheme as parallel beam) ===
        t = t_min
        ix = int(math.floor(src_x + t * dir_x + cx))
        iy = int(math.floor(src_y + t * dir_y + cy))

        step_x, step_y = (1 if dir_x >= 0 else -1), (1 if dir_y >= 0 else -1)
        inv_dir_x = (1.0 / dir_x) if abs(dir_x) > _EPSILON else 0.0
        inv_dir_y = (1.0 / dir_y) if abs(dir_y) > _EPSILON else 0.0
        dt_x = abs(inv_dir_x) if abs(dir_x) > _EPSILON else _INF
        dt_y = abs(inv_dir_y) if abs(dir_y) > _EPSILON else _INF
        tx = ((ix + (step_x > 0)) - cx - src_x) * inv_dir_x if abs(dir_x) > _EPSILON else _INF
        ty = ((iy + (step_y > 0)) - cy - src_y) * inv_dir_y if abs(dir_y) > _EPSILON else _INF

        while t < t_max:
            if 0 <= ix < Nx and 0 <= iy < Ny:
                t_next = min(tx, ty, t_max)
                seg_len = t_next - t
                if seg_len > _EPSILON:
                    t_mid = t + seg_len * 0.5
                    mid_x = src_x + t_mid * dir_x + cx
                    mid_y = src_y + t_mid * dir_y + cy
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
# 2D Fan Beam Backprojection Kernel
# ============================================================================

@_FASTMATH_DECORATOR
def _fan_2d_backward_kernel(
    d_sino, n_ang, n_det,
    d_image, Nx, Ny,
    rays_per_det, d_views,
    cx, cy
):
    """Accumulate the 2D fan beam backprojection.

    Parameters
    ----------
    d_sino : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Input sinogram of shape (>= n_ang, >= n_det).
    n_ang : int
        Number of views.
    n_det : int
        Number of detector elements.
    d_image : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Volume of shape (>= Ny, >= Nx) receiving ``A' y``.
    Nx : int
        Number of pixels along the x-axis.
    Ny : int
        Number of pixels along the y-axis.
    rays_per_det : int
        Number of rays traced per detector element.
    d_views : numba.cuda.cudadrv.devicearray.DeviceNDArray
        View descriptors of shape (n_ang, 6).
    cx, cy : float
        Half of image width and height in pixels.

    Notes
    -----
    Fan rays converge at the source, so neighbouring threads often hit the
    same pixels; all writes go through atomic adds.
    """
    iang, idet = cuda.grid(2)
    if iang >= n_ang or idet >= n_det:
        return

    val = d_sino[iang, idet] / rays_per_det
    src_x = d_views[iang, 0]
    src_y = d_views[iang, 1]
    det_sx = d_views[iang, 2]
    det_sy = d_views[iang, 3]
    det_ux = d_views[iang, 4]
    det_uy = d_views[iang, 5]

    for iray in range(rays_per_det):
        s = idet + (iray + 0.5) / rays_per_det
        det_x = det_sx + s * det_ux
        det_y = det_sy + s * det_uy

        dir_x, dir_y = det_x - src_x, det_y - src_y
        length = math.sqrt(dir_x * dir_x + dir_y * dir_y)
        if length < _EPSILON:
            continue
        inv_len = 1.0 / length
        dir_x, dir_y = dir_x * inv_len, dir_y * inv_len

        t_min, t_max = -_INF, _INF
        if abs(dir_x) > _EPSILON:
            tx1, tx2 = (-cx - src_x) / dir_x, (cx - src_x) / dir_x
            t_min, t_max = max(t_min, min(tx1, tx2)), min(t_max, max(tx1, tx2))
        elif src_x < -cx or src_x > cx:
            continue

        if abs(dir_y) > _EPSILON:
            ty1, ty2 = (-cy - src_y) / dir_y, (cy - src_y) / dir_y
            t_min, t_max = max(t_min, min(ty1, ty2)), min(t_max, max(ty1, ty2))
        elif src_y < -cy or src_y > cy:
            continue

        if t_min >= t_max:
            continue

        t = t_min
        ix = int(math.floor(src_x + t * dir_x + cx))
        iy = int(math.floor(src_y + t * dir_y + cy))

        step_x, step_y = (1 if dir_x >= 0 else -1), (1 if dir_y >= 0 else -1)
        inv_dir_x = (1.0 / dir_x) if abs(dir_x) > _EPSILON else 0.0
        inv_dir_y = (1.0 / dir_y) if abs(dir_y) > _EPSILON else 0.0
        dt_x = abs(inv_dir_x) if abs(dir_x) > _EPSILON else _INF
        dt_y = abs(inv_dir_y) if abs(dir_y) > _EPSILON else _INF
        tx = ((ix + (step_x > 0)) - cx - src_x) * inv_dir_x if abs(dir_x) > _EPSILON else _INF
        ty = ((iy + (step_y > 0)) - cy - src_y) * inv_dir_y if abs(dir_y) > _EPSILON else _INF

        while t < t_max:
            if 0 <= ix < Nx and 0 <= iy < Ny:
                t_next = min(tx, ty, t_max)
                seg_len = t_next - t
                if seg_len > _EPSILON:
                    t_mid = t + seg_len * 0.5
                    mid_x = src_x + t_mid * dir_x + cx
                    mid_y = src_y + t_mid * dir_y + cy
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
