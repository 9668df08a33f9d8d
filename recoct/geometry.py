"""Dimensions and projection geometries for 2D reconstruction.

A reconstruction run is described by a `Dimensions` record and exactly one
geometry variant: `ParallelGeometry` (uniform angle list with optional
per-angle detector offsets) or `FanGeometry` (explicit per-angle source and
detector descriptors). All coordinates are in pixel units with the volume
centred on the origin.
"""

import math
from dataclasses import dataclass
from typing import NamedTuple, Optional, Union

import numpy as np

from .constants import _DTYPE


# ============================================================================
# Dimensions
# ============================================================================

@dataclass(frozen=True)
class Dimensions:
    """Immutable problem size of a reconstruction run.

    Parameters
    ----------
    vol_width, vol_height : int
        Volume size in pixels.
    proj_angles : int
        Number of projection angles (sinogram rows).
    proj_dets : int
        Number of detector elements (sinogram columns).
    det_scale : float, optional
        Detector element width in pixel units (default: 1.0).
    rays_per_det : int, optional
        Rays traced per detector element (default: 1).
    """
    vol_width: int
    vol_height: int
    proj_angles: int
    proj_dets: int
    det_scale: float = 1.0
    rays_per_det: int = 1

    def validate(self):
        """Raise ValueError if any size is not positive.

        The volume must be at least 2x2 pixels, the bilinear footprint of a
        ray sample.
        """
        for name in ('vol_width', 'vol_height', 'proj_angles', 'proj_dets', 'rays_per_det'):
            if int(getattr(self, name)) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.vol_width < 2 or self.vol_height < 2:
            raise ValueError(
                f"Volume must be at least 2x2 pixels, got {self.vol_width}x{self.vol_height}")
        if not self.det_scale > 0:
            raise ValueError(f"det_scale must be positive, got {self.det_scale}")

    @property
    def volume_shape(self):
        return (self.vol_height, self.vol_width)

    @property
    def sinogram_shape(self):
        return (self.proj_angles, self.proj_dets)


# ============================================================================
# Geometry Variants
# ============================================================================

class FanProjection(NamedTuple):
    """Source and detector placement for a single fan-beam view.

    `det_s` is the outer edge of detector element 0 and `det_u` the vector
    spanning one detector element, so element ``i`` covers
    ``det_s + [i, i + 1) * det_u``.
    """
    src_x: float
    src_y: float
    det_sx: float
    det_sy: float
    det_ux: float
    det_uy: float


@dataclass(frozen=True)
class ParallelGeometry:
    """Parallel-beam angles (radians) and optional detector offsets (detector units)."""
    angles: np.ndarray
    offsets: Optional[np.ndarray] = None

    def __post_init__(self):
        angles = np.array(self.angles, dtype=_DTYPE).reshape(-1)
        object.__setattr__(self, 'angles', angles)
        if self.offsets is not None:
            offsets = np.array(self.offsets, dtype=_DTYPE).reshape(-1)
            if offsets.shape != angles.shape:
                raise ValueError(
                    f"Expected {angles.size} detector offsets, got {offsets.size}")
            object.__setattr__(self, 'offsets', offsets)

    @property
    def n_views(self):
        return self.angles.size

    def with_offsets(self, offsets):
        return ParallelGeometry(self.angles, offsets)


@dataclass(frozen=True)
class FanGeometry:
    """Fan-beam views as an (n_views, 6) array of `FanProjection` fields."""
    projections: np.ndarray

    def __post_init__(self):
        projections = np.array(self.projections, dtype=_DTYPE)
        if projections.ndim != 2 or projections.shape[1] != len(FanProjection._fields):
            raise ValueError(
                f"Fan projections must have shape (n_views, 6), got {projections.shape}")
        object.__setattr__(self, 'projections', np.ascontiguousarray(projections))

    @property
    def n_views(self):
        return self.projections.shape[0]

    def __getitem__(self, view):
        return FanProjection(*(float(v) for v in self.projections[view]))


Geometry = Union[ParallelGeometry, FanGeometry]


# ============================================================================
# Trajectory Generation Functions
# ============================================================================

def parallel_angles(n_views, start_angle=0.0, end_angle=math.pi):
    """Return `n_views` equispaced angles in [start_angle, end_angle)."""
    return np.linspace(start_angle, end_angle, n_views, endpoint=False).astype(_DTYPE)


def circular_trajectory_2d_fan(n_views, n_det, sid, sdd, det_spacing=1.0,
                               start_angle=0.0, end_angle=None):
    """Generate fan-beam views for a circular source orbit.

    Parameters
    ----------
    n_views : int
        Number of projection views.
    n_det : int
        Number of detector elements.
    sid : float
        Source-to-Isocenter Distance (SID), in pixel units.
    sdd : float
        Source-to-Detector Distance (SDD), in pixel units.
    det_spacing : float, optional
        Detector element width in pixel units (default: 1.0).
    start_angle : float, optional
        Starting angle in radians (default: 0.0).
    end_angle : float, optional
        Ending angle in radians (default: 2*pi, full rotation).

    Returns
    -------
    list of FanProjection
        One descriptor per view; the detector is centred on the central ray.

    Examples
    --------
    >>> views = circular_trajectory_2d_fan(360, 256, sid=500.0, sdd=1000.0)
    >>> len(views)
    360
    """
    if end_angle is None:
        end_angle = 2 * math.pi
    idd = sdd - sid
    views = []
    for angle in np.linspace(start_angle, end_angle, n_views, endpoint=False):
        cos_a, sin_a = math.cos(angle), math.sin(angle)
        src_x, src_y = -sid * sin_a, sid * cos_a
        det_cx, det_cy = idd * sin_a, -idd * cos_a
        det_ux, det_uy = det_spacing * cos_a, det_spacing * sin_a
        views.append(FanProjection(
            src_x, src_y,
            det_cx - 0.5 * n_det * det_ux, det_cy - 0.5 * n_det * det_uy,
            det_ux, det_uy,
        ))
    return views
