# recoct/__init__.py
"""recoct - GPU iterative CT reconstruction.

Device-resident 2D reconstruction for parallel and fan beam geometries,
built on Numba CUDA projection kernels. Provides the CGLS and SIRT solvers
on top of a shared device buffer and geometry manager.
"""

from .geometry import (
    Dimensions,
    FanProjection,
    ParallelGeometry,
    FanGeometry,
    parallel_angles,
    circular_trajectory_2d_fan,
)

from .algorithm import ReconAlgorithm, AlgorithmContractError
from .cgls import CGLS
from .sirt import SIRT
from .memory import allocate_2d, aligned_pitch
from .utils import get_gpu_count, select_device

__version__ = '0.1.0'

__all__ = [
    'Dimensions',
    'FanProjection',
    'ParallelGeometry',
    'FanGeometry',
    'parallel_angles',
    'circular_trajectory_2d_fan',
    'ReconAlgorithm',
    'AlgorithmContractError',
    'CGLS',
    'SIRT',
    'allocate_2d',
    'aligned_pitch',
    'get_gpu_count',
    'select_device',
]
