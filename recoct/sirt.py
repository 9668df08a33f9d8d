"""Simultaneous iterative reconstruction technique (SIRT).

Each step back projects the weighted residual::

    x += relaxation * C A' R (b - A x)

where ``R`` holds the inverse ray sums (row weights) and ``C`` the inverse
pixel sensitivities (column weights) of ``A``. Unlike CGLS, SIRT honours
the min/max value constraints and restricts the update to the sinogram
mask when one is enabled.
"""

import math

from recoct import logging
from . import arith, memory
from .algorithm import ReconAlgorithm

log = logging.getLogger(__name__)


class SIRT(ReconAlgorithm):
    """SIRT solver on top of the device buffer and geometry manager."""

    def __init__(self):
        super().__init__()
        self._relaxation = 1.0
        self._clear_work()

    def _clear_work(self):
        self._d_projection = None
        self._d_tmp = None
        self._d_line_weight = None
        self._d_pixel_weight = None
        self._work_dims = None
        self._weights_ready = False

    def set_relaxation(self, value):
        """Scale factor applied to every update, in (0, 2) for convergence."""
        value = float(value)
        if not math.isfinite(value) or value <= 0.0:
            log.error('Invalid relaxation factor %g', value)
            return False
        self._relaxation = value
        return True

    def reset(self):
        self._clear_work()
        self._relaxation = 1.0
        super().reset()

    def init(self):
        self._require_dims()
        dims = self._dims
        if self._work_dims == dims and self._d_projection is not None:
            return True

        shapes = (('projection', dims.proj_dets, dims.proj_angles),
                  ('line_weight', dims.proj_dets, dims.proj_angles),
                  ('tmp', dims.vol_width, dims.vol_height),
                  ('pixel_weight', dims.vol_width, dims.vol_height))
        work = {}
        for name, width, height in shapes:
            d_arr = memory.allocate_2d(width, height)
            if d_arr is None:
                log.error('Could not allocate SIRT work buffer %s', name)
                return False
            work[name] = d_arr

        self._d_projection = work['projection']
        self._d_line_weight = work['line_weight']
        self._d_tmp = work['tmp']
        self._d_pixel_weight = work['pixel_weight']
        self._work_dims = dims
        self._weights_ready = False
        return True

    def _set_geometry(self, dims, geometry):
        if not super()._set_geometry(dims, geometry):
            return False
        self._weights_ready = False
        return True

    def set_buffers(self, d_volume, volume_pitch, d_sinogram, sinogram_pitch):
        if not super().set_buffers(d_volume, volume_pitch, d_sinogram, sinogram_pitch):
            return False
        self._weights_ready = False
        return True

    def copy_input_to_device(self, *args, **kwargs):
        if not super().copy_input_to_device(*args, **kwargs):
            return False
        self._weights_ready = False
        return True

    def _precompute_weights(self):
        dims = self._dims
        vw, vh = dims.vol_width, dims.vol_height
        sw, sh = dims.proj_dets, dims.proj_angles

        # line weights: inverse ray sums of the (masked) unit volume
        if self._use_volume_mask:
            memory.copy_device_to_device_2d(self._d_tmp, self._d_volume_mask, vw, vh)
        else:
            memory.fill_2d(self._d_tmp, 1.0, vw, vh)
        memory.zero_2d(self._d_line_weight, sw, sh)
        self.forward_project(self._d_tmp, self._d_line_weight)
        arith.invert_2d(self._d_line_weight, sw, sh)
        if self._use_sinogram_mask:
            arith.multiply_2d(self._d_line_weight, self._d_sinogram_mask, sw, sh)

        # pixel weights: inverse back projection of the (masked) unit sinogram
        if self._use_sinogram_mask:
            memory.copy_device_to_device_2d(self._d_projection, self._d_sinogram_mask, sw, sh)
        else:
            memory.fill_2d(self._d_projection, 1.0, sw, sh)
        memory.zero_2d(self._d_pixel_weight, vw, vh)
        self.back_project(self._d_pixel_weight, self._d_projection)
        arith.invert_2d(self._d_pixel_weight, vw, vh)
        if self._use_volume_mask:
            arith.multiply_2d(self._d_pixel_weight, self._d_volume_mask, vw, vh)

        self._weights_ready = True
        log.debug('SIRT weights computed')

    def _residual_into(self, d_out):
        """d_out = b - A (mask * x), using tmp as the masked volume"""
        dims = self._dims
        memory.copy_device_to_device_2d(d_out, self._d_sinogram, dims.proj_dets, dims.proj_angles)
        if self._use_volume_mask:
            memory.copy_device_to_device_2d(self._d_tmp, self._d_volume,
                                            dims.vol_width, dims.vol_height)
            arith.multiply_2d(self._d_tmp, self._d_volume_mask, dims.vol_width, dims.vol_height)
            self.forward_project(self._d_tmp, d_out, -1.0)
        else:
            self.forward_project(self._d_volume, d_out, -1.0)

    def _step(self):
        dims = self._dims
        vw, vh = dims.vol_width, dims.vol_height

        self._residual_into(self._d_projection)
        arith.multiply_2d(self._d_projection, self._d_line_weight, dims.proj_dets, dims.proj_angles)

        memory.zero_2d(self._d_tmp, vw, vh)
        self.back_project(self._d_tmp, self._d_projection)
        arith.add_multiplied_2d(self._d_volume, self._d_pixel_weight, self._d_tmp,
                                self._relaxation, vw, vh)
        self._apply_constraints(self._d_volume)

    def iterate(self, iterations):
        """Run up to `iterations` SIRT steps.

        A pending `signal_abort` stops the loop before the next step and is
        consumed by that call.
        """
        self._require_dims()
        self._require_buffers()

        if self._d_projection is None or self._work_dims != self._dims:
            if not self.init():
                return False
        if not self._weights_ready:
            self._precompute_weights()

        for i in range(iterations):
            if self._should_abort:
                self._should_abort = False
                log.info('SIRT aborted after %d of %d iterations', i, iterations)
                break
            self._step()
        return True

    def compute_residual_norm(self):
        """Return ``||b - A (mask * x)||`` for the current volume."""
        self._require_dims()
        self._require_buffers()
        if (self._d_projection is None or self._work_dims != self._dims) and not self.init():
            return math.nan
        dims = self._dims
        self._residual_into(self._d_projection)
        return math.sqrt(arith.sum_of_squares_2d(self._d_projection,
                                                 dims.proj_dets, dims.proj_angles))
