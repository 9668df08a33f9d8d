"""Projection operators bound to a reconstruction geometry.

A `ProjectionOperator` is resolved once from the active geometry variant and
exposes the forward projection ``A`` and its adjoint ``A'`` for that
geometry. Geometry tables are uploaded to the device on first use.
"""

import numpy as np
from numba import cuda

from .constants import _DTYPE
from .geometry import FanGeometry, ParallelGeometry
from .kernels import (
    _parallel_2d_forward_kernel,
    _parallel_2d_backward_kernel,
    _fan_2d_forward_kernel,
    _fan_2d_backward_kernel,
)
from .utils import _grid_2d, _trig_tables


class ProjectionOperator:
    """Forward/adjoint projector pair for one geometry.

    Both methods accumulate into their output buffer.
    """

    def __init__(self, dims, geometry):
        self.dims = dims
        self.geometry = geometry

    def _launch_config(self):
        dims = self.dims
        grid, tpb = _grid_2d(dims.proj_angles, dims.proj_dets)
        cx, cy = _DTYPE(dims.vol_width * 0.5), _DTYPE(dims.vol_height * 0.5)
        return grid, tpb, cx, cy

    def forward(self, d_volume, d_sinogram, output_scale=1.0):
        """Add ``output_scale * A d_volume`` to `d_sinogram`."""
        raise NotImplementedError

    def backward(self, d_volume, d_sinogram):
        """Add ``A' d_sinogram`` to `d_volume`."""
        raise NotImplementedError

    def release(self):
        """Drop device-resident geometry tables."""


class ParallelBeamOperator(ProjectionOperator):
    """Parallel-beam projector driven by an angle list and detector offsets."""

    def __init__(self, dims, geometry):
        super().__init__(dims, geometry)
        self._tables = None

    def _device_tables(self):
        if self._tables is None:
            d_cos, d_sin = _trig_tables(self.geometry.angles)
            offsets = self.geometry.offsets
            if offsets is None:
                offsets = np.zeros(self.geometry.n_views, dtype=_DTYPE)
            self._tables = (d_cos, d_sin, cuda.to_device(offsets))
        return self._tables

    def forward(self, d_volume, d_sinogram, output_scale=1.0):
        dims = self.dims
        d_cos, d_sin, d_offsets = self._device_tables()
        grid, tpb, cx, cy = self._launch_config()
        _parallel_2d_forward_kernel[grid, tpb](
            d_volume, dims.vol_width, dims.vol_height,
            d_sinogram, dims.proj_angles, dims.proj_dets,
            _DTYPE(dims.det_scale), dims.rays_per_det, d_cos, d_sin, d_offsets,
            cx, cy, _DTYPE(output_scale)
        )

    def backward(self, d_volume, d_sinogram):
        dims = self.dims
        d_cos, d_sin, d_offsets = self._device_tables()
        grid, tpb, cx, cy = self._launch_config()
        _parallel_2d_backward_kernel[grid, tpb](
            d_sinogram, dims.proj_angles, dims.proj_dets,
            d_volume, dims.vol_width, dims.vol_height,
            _DTYPE(dims.det_scale), dims.rays_per_det, d_cos, d_sin, d_offsets,
            cx, cy
        )

    def release(self):
        self._tables = None


class FanBeamOperator(ProjectionOperator):
    """Fan-beam projector driven by explicit per-view source/detector descriptors.

    The detector element width is part of each view's ``det_u`` vector, so
    ``Dimensions.det_scale`` does not apply.
    """

    def __init__(self, dims, geometry):
        super().__init__(dims, geometry)
        self._d_views = None

    def _device_views(self):
        if self._d_views is None:
            self._d_views = cuda.to_device(self.geometry.projections)
        return self._d_views

    def forward(self, d_volume, d_sinogram, output_scale=1.0):
        dims = self.dims
        grid, tpb, cx, cy = self._launch_config()
        _fan_2d_forward_kernel[grid, tpb](
            d_volume, dims.vol_width, dims.vol_height,
            d_sinogram, dims.proj_angles, dims.proj_dets,
            dims.rays_per_det, self._device_views(),
            cx, cy, _DTYPE(output_scale)
        )

    def backward(self, d_volume, d_sinogram):
        dims = self.dims
        grid, tpb, cx, cy = self._launch_config()
        _fan_2d_backward_kernel[grid, tpb](
            d_sinogram, dims.proj_angles, dims.proj_dets,
            d_volume, dims.vol_width, dims.vol_height,
            dims.rays_per_det, self._device_views(),
            cx, cy
        )

    def release(self):
        self._d_views = None


def operator_for(dims, geometry):
    """Resolve the projector matching a geometry variant.

    Raises
    ------
    TypeError
        If `geometry` is neither a `ParallelGeometry` nor a `FanGeometry`.
    """
    if isinstance(geometry, ParallelGeometry):
        return ParallelBeamOperator(dims, geometry)
    if isinstance(geometry, FanGeometry):
        return FanBeamOperator(dims, geometry)
    raise TypeError(f"Unsupported geometry type {type(geometry).__name__}")
