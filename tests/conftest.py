"""Shared fixtures for the recoct test suite.

The suite runs on Numba's CUDA simulator unless NUMBA_ENABLE_CUDASIM is
set explicitly, so no GPU is needed.
"""

import os

os.environ.setdefault('NUMBA_ENABLE_CUDASIM', '1')

import numpy as np
import pytest

from recoct import CGLS, Dimensions, parallel_angles
from recoct.memory import allocate_2d, copy_device_to_host_2d, copy_host_to_device_2d


@pytest.fixture
def dims():
    """8x8 volume, 8 angles x 8 detectors."""
    return Dimensions(vol_width=8, vol_height=8, proj_angles=8, proj_dets=8)


@pytest.fixture
def angles(dims):
    return parallel_angles(dims.proj_angles)


@pytest.fixture
def phantom(dims):
    vol = np.zeros(dims.volume_shape, dtype=np.float32)
    vol[2:6, 3:6] = 1.0
    vol[4, 2] = 0.5
    return vol


@pytest.fixture
def to_device():
    """Upload a dense host block into a freshly allocated pitched buffer."""
    def upload(host):
        host = np.asarray(host, dtype=np.float32)
        d_arr = allocate_2d(host.shape[1], host.shape[0])
        copy_host_to_device_2d(host, d_arr)
        return d_arr
    return upload


@pytest.fixture
def project(to_device):
    """Forward project a host volume with the geometry of `algo`."""
    def forward(algo, volume):
        dims = algo.dims
        d_sino = allocate_2d(dims.proj_dets, dims.proj_angles)
        algo.forward_project(to_device(volume), d_sino)
        return copy_device_to_host_2d(d_sino, dims.proj_dets, dims.proj_angles)
    return forward


@pytest.fixture
def cgls_problem(dims, angles, phantom, project):
    """CGLS configured with a noise-free sinogram of `phantom` and a zero start."""
    algo = CGLS()
    assert algo.set_parallel_geometry(dims, angles)
    sinogram = project(algo, phantom)
    assert algo.allocate_buffers()
    assert algo.copy_input_to_device(sinogram, None, 1.0,
                                     np.zeros(dims.volume_shape, np.float32), None)
    return algo, sinogram
