"""Conjugate gradient least squares (CGLS) reconstruction.

Minimizes ``||A x - b||^2`` by running the conjugate gradient method on the
normal equations ``A'A x = A'b``. ``A`` is never formed explicitly: every
step issues one forward projection and one back projection through the
projector of the active geometry.

The solver state ``(x, p, r, gamma)`` lives on the device and is carried
across `CGLS.iterate` calls, so ``iterate(5); iterate(5)`` produces the same
volume as ``iterate(10)``.
"""

import math
from typing import NamedTuple

from recoct import logging
from . import arith, memory
from .algorithm import ReconAlgorithm

log = logging.getLogger(__name__)


class _Scratch(NamedTuple):
    """Transient buffers used by `CGLS.compute_residual_norm`.

    They alias the ``w`` and ``z`` work buffers, whose contents are
    regenerated at the start of each step before being read.
    """
    sinogram: object
    volume: object


def _usable_denominator(value):
    return value > 0.0 and math.isfinite(value)


class CGLS(ReconAlgorithm):
    """CGLS solver on top of the device buffer and geometry manager."""

    def __init__(self):
        super().__init__()
        self._clear_work()

    def _clear_work(self):
        self._d_r = None
        self._d_w = None
        self._d_p = None
        self._d_z = None
        self._work_dims = None
        self._invalidate()

    def _invalidate(self):
        self._slice_initialized = False
        self._converged = False
        self._gamma = 0.0

    @property
    def gamma(self):
        return self._gamma

    @property
    def converged(self):
        """True once a degenerate step denominator stopped the iteration."""
        return self._converged

    def _scratch(self):
        return _Scratch(sinogram=self._d_w, volume=self._d_z)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reset(self):
        self._clear_work()
        super().reset()

    def init(self):
        """Allocate the ``r``, ``w`` (sinogram) and ``p``, ``z`` (volume) work buffers.

        Nothing changes when any allocation fails.
        """
        self._require_dims()
        dims = self._dims
        if self._work_dims == dims and self._d_r is not None:
            return True

        shapes = (('r', dims.proj_dets, dims.proj_angles),
                  ('w', dims.proj_dets, dims.proj_angles),
                  ('p', dims.vol_width, dims.vol_height),
                  ('z', dims.vol_width, dims.vol_height))
        work = {}
        for name, width, height in shapes:
            d_arr = memory.allocate_2d(width, height)
            if d_arr is None:
                log.error('Could not allocate CGLS work buffer %s', name)
                return False
            work[name] = d_arr

        self._d_r, self._d_w = work['r'], work['w']
        self._d_p, self._d_z = work['p'], work['z']
        self._work_dims = dims
        self._invalidate()
        log.debug('CGLS work buffers allocated for %dx%d volume, %dx%d sinogram',
                  dims.vol_width, dims.vol_height, dims.proj_dets, dims.proj_angles)
        return True

    def _set_geometry(self, dims, geometry):
        if not super()._set_geometry(dims, geometry):
            return False
        self._invalidate()
        return True

    def set_buffers(self, d_volume, volume_pitch, d_sinogram, sinogram_pitch):
        if not super().set_buffers(d_volume, volume_pitch, d_sinogram, sinogram_pitch):
            return False
        self._invalidate()
        return True

    def copy_input_to_device(self, *args, **kwargs):
        if not super().copy_input_to_device(*args, **kwargs):
            return False
        self._invalidate()
        return True

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def _masked_volume(self, d_out):
        """Write ``mask * x`` (or ``x`` without a volume mask) into `d_out`."""
        dims = self._dims
        memory.copy_device_to_device_2d(d_out, self._d_volume, dims.vol_width, dims.vol_height)
        if self._use_volume_mask:
            arith.multiply_2d(d_out, self._d_volume_mask, dims.vol_width, dims.vol_height)

    def _residual_into(self, d_out, d_scratch_volume):
        """d_out = b - A (mask * x)"""
        dims = self._dims
        memory.copy_device_to_device_2d(d_out, self._d_sinogram, dims.proj_dets, dims.proj_angles)
        if self._use_volume_mask:
            self._masked_volume(d_scratch_volume)
            self.forward_project(d_scratch_volume, d_out, -1.0)
        else:
            self.forward_project(self._d_volume, d_out, -1.0)

    def _back_project_masked(self, d_out, d_sinogram):
        """d_out = mask * A' d_sinogram"""
        dims = self._dims
        memory.zero_2d(d_out, dims.vol_width, dims.vol_height)
        self.back_project(d_out, d_sinogram)
        if self._use_volume_mask:
            arith.multiply_2d(d_out, self._d_volume_mask, dims.vol_width, dims.vol_height)

    def _warm_start(self):
        dims = self._dims
        self._residual_into(self._d_r, self._d_z)
        self._back_project_masked(self._d_p, self._d_r)
        self._gamma = arith.sum_of_squares_2d(self._d_p, dims.vol_width, dims.vol_height)
        self._slice_initialized = True
        self._converged = False
        log.debug('CGLS warm start, gamma = %g', self._gamma)

    def _step(self):
        """Run one CG step. Returns False if the step was degenerate and nothing changed."""
        dims = self._dims
        vw, vh = dims.vol_width, dims.vol_height
        sw, sh = dims.proj_dets, dims.proj_angles

        if not _usable_denominator(self._gamma):
            log.info('CGLS stopped: gamma = %g', self._gamma)
            self._converged = True
            return False

        # w = A p
        memory.zero_2d(self._d_w, sw, sh)
        self.forward_project(self._d_p, self._d_w)
        ww = arith.sum_of_squares_2d(self._d_w, sw, sh)
        if not _usable_denominator(ww):
            log.info('CGLS stopped: |A p|^2 = %g', ww)
            self._converged = True
            return False
        alpha = self._gamma / ww
        if not math.isfinite(alpha):
            log.info('CGLS stopped: step length %g', alpha)
            self._converged = True
            return False

        arith.add_scaled_2d(self._d_volume, self._d_p, alpha, vw, vh)
        arith.add_scaled_2d(self._d_r, self._d_w, -alpha, sw, sh)

        # z = mask * A' r
        self._back_project_masked(self._d_z, self._d_r)
        new_gamma = arith.sum_of_squares_2d(self._d_z, vw, vh)

        beta = new_gamma / self._gamma
        arith.scale_and_add_2d(self._d_p, self._d_z, beta, vw, vh)
        self._gamma = new_gamma
        return True

    def iterate(self, iterations):
        """Run up to `iterations` CGLS steps.

        The first call after configuration, `set_buffers` or
        `copy_input_to_device` performs the warm start from the current
        volume. `signal_abort` stops the loop before the next step; the
        flag is consumed by the call that honours it, so an abort signalled
        between two calls makes the next call run no steps.

        Returns
        -------
        bool
            False only if the work buffers could not be allocated.
        """
        self._require_dims()
        self._require_buffers()

        if self._d_r is None or self._work_dims != self._dims:
            if not self.init():
                return False
        if not self._slice_initialized:
            self._warm_start()

        for i in range(iterations):
            if self._should_abort:
                self._should_abort = False
                log.info('CGLS aborted after %d of %d iterations', i, iterations)
                break
            if self._converged or not self._step():
                break
        return True

    def compute_residual_norm(self):
        """Return ``||b - A (mask * x)||`` for the current volume.

        Only scratch buffers are written; the iteration state is unchanged.
        """
        self._require_dims()
        self._require_buffers()
        if (self._d_w is None or self._work_dims != self._dims) and not self.init():
            return math.nan
        dims = self._dims
        scratch = self._scratch()
        self._residual_into(scratch.sinogram, scratch.volume)
        return math.sqrt(arith.sum_of_squares_2d(scratch.sinogram, dims.proj_dets, dims.proj_angles))
