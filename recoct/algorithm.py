"""Base class for GPU reconstruction algorithms.

`ReconAlgorithm` owns the device-resident volume, sinogram and mask buffers
of a reconstruction run together with its geometry, and dispatches forward
and back projections to the projector resolved from that geometry. Concrete
solvers (`recoct.cgls.CGLS`, `recoct.sirt.SIRT`) build their iterations on
top of it.

Typical use::

    algo = CGLS()
    algo.set_parallel_geometry(dims, angles)
    algo.allocate_buffers()
    algo.copy_input_to_device(sinogram, None, 1.0, initial_volume, None)
    algo.iterate(20)
    reco = algo.get_reconstruction()

Configuration calls return True/False. Calls that break the usage contract
(binding a mask that was never enabled, projecting without a geometry,
iterating without buffers) raise `AlgorithmContractError`.
"""

from recoct import logging
from . import arith, memory
from .geometry import FanGeometry, ParallelGeometry
from .operators import operator_for
from .utils import _host_rows, _write_host_rows, select_device

log = logging.getLogger(__name__)


class AlgorithmContractError(AssertionError):
    """Raised when an algorithm is driven in an order its contract forbids."""


class ReconAlgorithm:
    """Device buffer and geometry manager shared by all solvers."""

    def __init__(self):
        self._clear_state()

    def _clear_state(self):
        self._dims = None
        self._geometry = None
        self._operator = None

        self._use_volume_mask = False
        self._use_sinogram_mask = False
        self._use_min_constraint = False
        self._use_max_constraint = False
        self._min_constraint = 0.0
        self._max_constraint = 0.0

        # True when all four buffers below were allocated by allocate_buffers()
        self._owns_buffers = False
        self._d_volume = None
        self._volume_pitch = 0
        self._d_sinogram = None
        self._sinogram_pitch = 0
        self._d_volume_mask = None
        self._volume_mask_pitch = 0
        self._d_sinogram_mask = None
        self._sinogram_mask_pitch = 0

        self._should_abort = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reset(self):
        """Release owned device buffers and geometry, back to the default state.

        Buffers bound with `set_buffers` or the mask setters belong to the
        caller and are only unbound. Calling `reset` repeatedly is harmless.
        """
        self._release_buffers()
        if self._operator is not None:
            self._operator.release()
        self._clear_state()

    def _release_buffers(self):
        if self._owns_buffers:
            log.debug('Releasing algorithm-owned device buffers')
        self._owns_buffers = False
        self._d_volume = None
        self._volume_pitch = 0
        self._d_sinogram = None
        self._sinogram_pitch = 0
        self._d_volume_mask = None
        self._volume_mask_pitch = 0
        self._d_sinogram_mask = None
        self._sinogram_mask_pitch = 0

    def select_device(self, index):
        """Bind the accelerator with ordinal `index`; see `recoct.utils.select_device`."""
        return select_device(index)

    def signal_abort(self):
        """Ask a running `iterate` to stop after its current step."""
        self._should_abort = True

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------

    @property
    def dims(self):
        return self._dims

    @property
    def geometry(self):
        return self._geometry

    @property
    def owns_buffers(self):
        return self._owns_buffers

    def _set_geometry(self, dims, geometry):
        if geometry.n_views != dims.proj_angles:
            log.error('Geometry has %d views but dimensions specify %d angles',
                      geometry.n_views, dims.proj_angles)
            return False
        if not self._buffers_fit(dims):
            log.warning('Bound buffers do not fit %dx%d volume, %dx%d sinogram; unbinding them',
                        dims.vol_width, dims.vol_height, dims.proj_dets, dims.proj_angles)
            self._release_buffers()
        if self._operator is not None:
            self._operator.release()
        self._dims = dims
        self._geometry = geometry
        self._operator = operator_for(dims, geometry)
        return True

    def _buffers_fit(self, dims):
        bound = ((self._d_volume, dims.vol_width, dims.vol_height),
                 (self._d_sinogram, dims.proj_dets, dims.proj_angles),
                 (self._d_volume_mask, dims.vol_width, dims.vol_height),
                 (self._d_sinogram_mask, dims.proj_dets, dims.proj_angles))
        for d_arr, width, height in bound:
            if d_arr is None:
                continue
            try:
                memory.check_buffer(d_arr, None, width, height)
            except ValueError:
                return False
        return True

    def set_parallel_geometry(self, dims, angles):
        """Use a parallel-beam geometry with the given angles (radians).

        Replaces any fan-beam geometry. `angles` is copied.
        Bound buffers too small for `dims` are unbound, and owned ones
        released, so they must be allocated or set again before iterating.
        """
        try:
            dims.validate()
            geometry = ParallelGeometry(angles)
        except ValueError as err:
            log.error('Invalid parallel geometry: %s', err)
            return False
        return self._set_geometry(dims, geometry)

    def set_fan_geometry(self, dims, projections):
        """Use a fan-beam geometry given as a sequence of `FanProjection`.

        Replaces any parallel-beam geometry. `projections` is copied.
        Bound buffers too small for `dims` are unbound as in
        `set_parallel_geometry`.
        """
        try:
            dims.validate()
            geometry = FanGeometry(projections)
        except ValueError as err:
            log.error('Invalid fan geometry: %s', err)
            return False
        return self._set_geometry(dims, geometry)

    def set_detector_offsets(self, offsets):
        """Shift each parallel-beam projection along the detector, in detector elements."""
        if not isinstance(self._geometry, ParallelGeometry):
            log.error('Detector offsets require a parallel-beam geometry')
            return False
        try:
            geometry = self._geometry.with_offsets(offsets)
        except ValueError as err:
            log.error('Invalid detector offsets: %s', err)
            return False
        return self._set_geometry(self._dims, geometry)

    # ------------------------------------------------------------------
    # Masks and constraints
    # ------------------------------------------------------------------

    def enable_volume_mask(self):
        self._use_volume_mask = True
        return True

    def enable_sinogram_mask(self):
        self._use_sinogram_mask = True
        return True

    def _bind_mask(self, d_mask, pitch, width, height):
        if self._owns_buffers:
            log.error('Cannot bind an external mask while buffers are algorithm-owned')
            return False
        try:
            memory.check_buffer(d_mask, pitch, width, height)
        except ValueError as err:
            log.error('Invalid mask buffer: %s', err)
            return False
        return True

    def set_volume_mask(self, d_mask, pitch=None):
        """Bind a caller-owned volume mask; `enable_volume_mask` must come first."""
        if not self._use_volume_mask:
            raise AlgorithmContractError('set_volume_mask called before enable_volume_mask')
        self._require_dims()
        dims = self._dims
        if not self._bind_mask(d_mask, pitch, dims.vol_width, dims.vol_height):
            return False
        self._d_volume_mask = d_mask
        self._volume_mask_pitch = memory.pitch_of(d_mask)
        return True

    def set_sinogram_mask(self, d_mask, pitch=None):
        """Bind a caller-owned sinogram mask; `enable_sinogram_mask` must come first."""
        if not self._use_sinogram_mask:
            raise AlgorithmContractError('set_sinogram_mask called before enable_sinogram_mask')
        self._require_dims()
        dims = self._dims
        if not self._bind_mask(d_mask, pitch, dims.proj_dets, dims.proj_angles):
            return False
        self._d_sinogram_mask = d_mask
        self._sinogram_mask_pitch = memory.pitch_of(d_mask)
        return True

    def set_min_constraint(self, value):
        self._min_constraint = float(value)
        self._use_min_constraint = True
        return True

    def set_max_constraint(self, value):
        self._max_constraint = float(value)
        self._use_max_constraint = True
        return True

    def _apply_constraints(self, d_volume):
        dims = self._dims
        if self._use_min_constraint:
            arith.clamp_min_2d(d_volume, self._min_constraint, dims.vol_width, dims.vol_height)
        if self._use_max_constraint:
            arith.clamp_max_2d(d_volume, self._max_constraint, dims.vol_width, dims.vol_height)

    # ------------------------------------------------------------------
    # Buffers
    # ------------------------------------------------------------------

    def _require_dims(self):
        if self._dims is None:
            raise AlgorithmContractError('No geometry has been set')

    def _require_buffers(self):
        if self._d_volume is None or self._d_sinogram is None:
            raise AlgorithmContractError('Volume and sinogram buffers are not bound')
        if self._use_volume_mask and self._d_volume_mask is None:
            raise AlgorithmContractError('Volume mask enabled but not bound')
        if self._use_sinogram_mask and self._d_sinogram_mask is None:
            raise AlgorithmContractError('Sinogram mask enabled but not bound')

    def set_buffers(self, d_volume, volume_pitch, d_sinogram, sinogram_pitch):
        """Bind caller-owned volume and sinogram buffers.

        Algorithm-owned buffers from an earlier `allocate_buffers` are
        released first. Subclasses extend this to invalidate their derived
        state.
        """
        self._require_dims()
        dims = self._dims
        try:
            memory.check_buffer(d_volume, volume_pitch, dims.vol_width, dims.vol_height)
            memory.check_buffer(d_sinogram, sinogram_pitch, dims.proj_dets, dims.proj_angles)
        except ValueError as err:
            log.error('Invalid buffer: %s', err)
            return False
        if self._owns_buffers:
            self._release_buffers()
        self._d_volume = d_volume
        self._volume_pitch = memory.pitch_of(d_volume)
        self._d_sinogram = d_sinogram
        self._sinogram_pitch = memory.pitch_of(d_sinogram)
        return True

    def allocate_buffers(self):
        """Allocate volume, sinogram and enabled mask buffers on the device.

        On failure everything allocated by this call is dropped and the
        previously bound buffers stay in place.
        """
        self._require_dims()
        dims = self._dims
        shapes = [('volume', dims.vol_width, dims.vol_height),
                  ('sinogram', dims.proj_dets, dims.proj_angles)]
        if self._use_volume_mask:
            shapes.append(('volume_mask', dims.vol_width, dims.vol_height))
        if self._use_sinogram_mask:
            shapes.append(('sinogram_mask', dims.proj_dets, dims.proj_angles))

        allocated = {}
        for name, width, height in shapes:
            d_arr = memory.allocate_2d(width, height)
            if d_arr is None:
                log.error('Allocation of %s buffer failed, rolling back %d buffer(s)',
                          name, len(allocated))
                allocated.clear()
                return False
            allocated[name] = d_arr

        self._release_buffers()
        self._d_volume = allocated['volume']
        self._volume_pitch = memory.pitch_of(self._d_volume)
        self._d_sinogram = allocated['sinogram']
        self._sinogram_pitch = memory.pitch_of(self._d_sinogram)
        if 'volume_mask' in allocated:
            self._d_volume_mask = allocated['volume_mask']
            self._volume_mask_pitch = memory.pitch_of(self._d_volume_mask)
        if 'sinogram_mask' in allocated:
            self._d_sinogram_mask = allocated['sinogram_mask']
            self._sinogram_mask_pitch = memory.pitch_of(self._d_sinogram_mask)
        self._owns_buffers = True
        log.debug('Allocated %s', ', '.join(allocated))
        return True

    def copy_input_to_device(self, sinogram, sinogram_pitch, sinogram_scale,
                             volume, volume_pitch,
                             volume_mask=None, volume_mask_pitch=None,
                             sinogram_mask=None, sinogram_mask_pitch=None):
        """Upload host data into the bound device buffers.

        Parameters
        ----------
        sinogram : array_like
            Measured projections, `proj_angles` rows of `proj_dets` values.
        sinogram_pitch : int or None
            Host row stride of `sinogram` in elements (None: natural stride).
        sinogram_scale : float
            Factor applied to the sinogram on the device after upload.
        volume : array_like
            Initial volume, `vol_height` rows of `vol_width` values.
        volume_pitch : int or None
            Host row stride of `volume` in elements.
        volume_mask, sinogram_mask : array_like, optional
            Mask data, required when the corresponding mask is enabled and
            ignored otherwise.
        volume_mask_pitch, sinogram_mask_pitch : int, optional
            Host row strides of the masks.

        Returns
        -------
        bool
            False if a required array is missing or malformed; nothing is
            uploaded in that case.
        """
        self._require_dims()
        self._require_buffers()
        dims = self._dims
        if sinogram is None or volume is None:
            log.error('Sinogram and volume host arrays are required')
            return False
        if self._use_volume_mask and volume_mask is None:
            log.error('Volume mask is enabled but no host mask was given')
            return False
        if self._use_sinogram_mask and sinogram_mask is None:
            log.error('Sinogram mask is enabled but no host mask was given')
            return False

        try:
            sino_rows = _host_rows(sinogram, sinogram_pitch, dims.proj_dets, dims.proj_angles)
            vol_rows = _host_rows(volume, volume_pitch, dims.vol_width, dims.vol_height)
            vmask_rows = smask_rows = None
            if self._use_volume_mask:
                vmask_rows = _host_rows(volume_mask, volume_mask_pitch,
                                        dims.vol_width, dims.vol_height)
            if self._use_sinogram_mask:
                smask_rows = _host_rows(sinogram_mask, sinogram_mask_pitch,
                                        dims.proj_dets, dims.proj_angles)
        except ValueError as err:
            log.error('Invalid host array: %s', err)
            return False

        memory.copy_host_to_device_2d(sino_rows, self._d_sinogram)
        if sinogram_scale != 1.0:
            arith.scale_2d(self._d_sinogram, sinogram_scale, dims.proj_dets, dims.proj_angles)
        memory.copy_host_to_device_2d(vol_rows, self._d_volume)
        if vmask_rows is not None:
            memory.copy_host_to_device_2d(vmask_rows, self._d_volume_mask)
        if smask_rows is not None:
            memory.copy_host_to_device_2d(smask_rows, self._d_sinogram_mask)
        return True

    def read_volume_from_device(self, host, host_pitch=None):
        """Copy the current volume into the writeable host array `host`."""
        self._require_dims()
        if self._d_volume is None:
            raise AlgorithmContractError('Volume buffer is not bound')
        dims = self._dims
        rows = memory.copy_device_to_host_2d(self._d_volume, dims.vol_width, dims.vol_height)
        try:
            _write_host_rows(host, host_pitch, rows)
        except ValueError as err:
            log.error('Invalid host output array: %s', err)
            return False
        return True

    def get_reconstruction(self):
        """Return the current volume as a new (vol_height, vol_width) array."""
        self._require_dims()
        if self._d_volume is None:
            raise AlgorithmContractError('Volume buffer is not bound')
        dims = self._dims
        return memory.copy_device_to_host_2d(self._d_volume, dims.vol_width, dims.vol_height)

    # ------------------------------------------------------------------
    # Projection dispatch
    # ------------------------------------------------------------------

    def forward_project(self, d_volume, d_projections, output_scale=1.0):
        """Add ``output_scale * A d_volume`` to `d_projections`."""
        if self._operator is None:
            raise AlgorithmContractError('forward_project called without a geometry')
        self._operator.forward(d_volume, d_projections, output_scale)

    def back_project(self, d_volume, d_projections):
        """Add ``A' d_projections`` to `d_volume`."""
        if self._operator is None:
            raise AlgorithmContractError('back_project called without a geometry')
        self._operator.backward(d_volume, d_projections)

    # ------------------------------------------------------------------
    # Solver interface
    # ------------------------------------------------------------------

    def init(self):
        """Allocate solver work buffers. The base algorithm needs none."""
        return True

    def iterate(self, iterations):
        raise NotImplementedError

    def compute_residual_norm(self):
        raise NotImplementedError


