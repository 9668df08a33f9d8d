"""Tests for the device buffer and geometry manager."""

import gc
import weakref

import numpy as np
import pytest

from recoct import (CGLS, AlgorithmContractError, Dimensions, FanGeometry, ParallelGeometry,
                    ReconAlgorithm, circular_trajectory_2d_fan, memory)
from recoct.operators import FanBeamOperator, ParallelBeamOperator


def _state(algo):
    return {key: value for key, value in vars(algo).items()}


def test_reset_is_idempotent(dims, angles):
    fresh = _state(ReconAlgorithm())

    algo = ReconAlgorithm()
    algo.reset()
    assert _state(algo) == fresh

    algo.set_parallel_geometry(dims, angles)
    algo.enable_volume_mask()
    algo.set_min_constraint(0.0)
    assert algo.allocate_buffers()
    algo.reset()
    assert _state(algo) == fresh
    algo.reset()
    assert _state(algo) == fresh


def test_cgls_reset_is_idempotent(cgls_problem):
    algo, _ = cgls_problem
    fresh = _state(CGLS())
    algo.iterate(2)
    algo.reset()
    algo.reset()
    assert _state(algo) == fresh


def test_geometry_variants_replace_each_other(dims, angles):
    algo = ReconAlgorithm()
    assert algo.set_parallel_geometry(dims, angles)
    assert isinstance(algo.geometry, ParallelGeometry)
    assert isinstance(algo._operator, ParallelBeamOperator)

    views = circular_trajectory_2d_fan(dims.proj_angles, dims.proj_dets, sid=20.0, sdd=40.0)
    assert algo.set_fan_geometry(dims, views)
    assert isinstance(algo.geometry, FanGeometry)
    assert isinstance(algo._operator, FanBeamOperator)


def test_geometry_rejects_mismatched_views(dims):
    algo = ReconAlgorithm()
    assert not algo.set_parallel_geometry(dims, [0.0, 1.0])
    assert algo.geometry is None
    assert not algo.set_parallel_geometry(Dimensions(0, 8, 8, 8), np.zeros(8))
    assert not algo.set_fan_geometry(dims, np.zeros((8, 5)))


def test_detector_offsets(dims, angles):
    algo = ReconAlgorithm()
    assert not algo.set_detector_offsets(np.zeros(dims.proj_angles))

    algo.set_fan_geometry(dims, circular_trajectory_2d_fan(dims.proj_angles, dims.proj_dets,
                                                           sid=20.0, sdd=40.0))
    assert not algo.set_detector_offsets(np.zeros(dims.proj_angles))

    algo.set_parallel_geometry(dims, angles)
    assert not algo.set_detector_offsets(np.zeros(dims.proj_angles - 1))
    assert algo.set_detector_offsets(np.full(dims.proj_angles, 0.5))
    assert np.allclose(algo.geometry.offsets, 0.5)
    assert np.allclose(algo.geometry.angles, angles)


def test_select_device():
    algo = ReconAlgorithm()
    assert algo.select_device(-1)
    assert algo.select_device(0)
    assert algo.select_device(0)
    assert not algo.select_device(10 ** 6)


def test_projection_without_geometry_is_contract_error(dims):
    algo = ReconAlgorithm()
    d_vol = memory.allocate_2d(dims.vol_width, dims.vol_height)
    d_sino = memory.allocate_2d(dims.proj_dets, dims.proj_angles)
    with pytest.raises(AlgorithmContractError):
        algo.forward_project(d_vol, d_sino, 1.0)
    with pytest.raises(AlgorithmContractError):
        algo.back_project(d_vol, d_sino)


def test_mask_before_enable_is_contract_error(dims, angles):
    algo = ReconAlgorithm()
    algo.set_parallel_geometry(dims, angles)
    d_mask = memory.allocate_2d(dims.vol_width, dims.vol_height)
    with pytest.raises(AlgorithmContractError):
        algo.set_volume_mask(d_mask)
    with pytest.raises(AlgorithmContractError):
        algo.set_sinogram_mask(memory.allocate_2d(dims.proj_dets, dims.proj_angles))

    algo.enable_volume_mask()
    assert algo.set_volume_mask(d_mask)


def test_enabled_mask_must_be_bound(dims, angles, to_device):
    algo = ReconAlgorithm()
    algo.set_parallel_geometry(dims, angles)
    algo.enable_volume_mask()
    assert algo.set_buffers(to_device(np.zeros(dims.volume_shape)), None,
                            to_device(np.zeros(dims.sinogram_shape)), None)
    with pytest.raises(AlgorithmContractError):
        algo._require_buffers()


def test_set_buffers_validates(dims, angles):
    algo = ReconAlgorithm()
    d_vol = memory.allocate_2d(dims.vol_width, dims.vol_height)
    d_sino = memory.allocate_2d(dims.proj_dets, dims.proj_angles)
    with pytest.raises(AlgorithmContractError):
        algo.set_buffers(d_vol, None, d_sino, None)

    algo.set_parallel_geometry(dims, angles)
    assert not algo.set_buffers(d_vol, 16, d_sino, None)
    assert not algo.set_buffers(d_sino[:4], None, d_sino, None)
    assert algo.set_buffers(d_vol, memory.pitch_of(d_vol), d_sino, None)
    assert not algo.owns_buffers


def test_allocate_buffers_owns_and_releases(dims, angles):
    algo = ReconAlgorithm()
    algo.set_parallel_geometry(dims, angles)
    algo.enable_volume_mask()
    algo.enable_sinogram_mask()
    assert algo.allocate_buffers()
    assert algo.owns_buffers
    assert memory.pitch_of(algo._d_volume) == memory.aligned_pitch(dims.vol_width)

    refs = [weakref.ref(d_arr) for d_arr in (algo._d_volume, algo._d_sinogram,
                                             algo._d_volume_mask, algo._d_sinogram_mask)]
    del algo
    gc.collect()
    assert all(ref() is None for ref in refs)


def test_external_buffers_survive_reset(dims, angles, phantom, to_device):
    d_vol = to_device(phantom)
    d_sino = to_device(np.ones(dims.sinogram_shape))

    algo = ReconAlgorithm()
    algo.set_parallel_geometry(dims, angles)
    assert algo.allocate_buffers()
    assert algo.set_buffers(d_vol, None, d_sino, None)
    assert not algo.owns_buffers
    algo.reset()
    del algo
    gc.collect()

    host = memory.copy_device_to_host_2d(d_vol, dims.vol_width, dims.vol_height)
    assert np.array_equal(host, phantom)


def test_geometry_change_unbinds_buffers_that_no_longer_fit(dims, angles, phantom, to_device):
    d_vol = to_device(phantom)
    d_sino = to_device(np.ones(dims.sinogram_shape))
    algo = ReconAlgorithm()
    algo.set_parallel_geometry(dims, angles)
    assert algo.set_buffers(d_vol, None, d_sino, None)

    # 12 columns still fit the 32-element pitch
    wider = Dimensions(vol_width=12, vol_height=8, proj_angles=8, proj_dets=16)
    assert algo.set_parallel_geometry(wider, angles)
    assert algo._d_volume is d_vol
    assert algo._d_sinogram is d_sino

    larger = Dimensions(vol_width=40, vol_height=40, proj_angles=8, proj_dets=40)
    assert algo.set_parallel_geometry(larger, angles)
    assert algo._d_volume is None
    assert algo._d_sinogram is None
    with pytest.raises(AlgorithmContractError):
        algo._require_buffers()

    host = memory.copy_device_to_host_2d(d_vol, dims.vol_width, dims.vol_height)
    assert np.array_equal(host, phantom)


def test_external_mask_rejected_while_owning(dims, angles):
    algo = ReconAlgorithm()
    algo.set_parallel_geometry(dims, angles)
    algo.enable_volume_mask()
    assert algo.allocate_buffers()
    owned_mask = algo._d_volume_mask
    assert not algo.set_volume_mask(memory.allocate_2d(dims.vol_width, dims.vol_height))
    assert algo._d_volume_mask is owned_mask


def test_allocate_buffers_rolls_back(dims, angles, monkeypatch):
    algo = ReconAlgorithm()
    algo.set_parallel_geometry(dims, angles)
    assert algo.allocate_buffers()
    before = (algo._d_volume, algo._d_sinogram)

    allocate = memory.allocate_2d
    calls = []

    def failing_allocate(width, height):
        calls.append((width, height))
        if len(calls) == 3:
            return None
        return allocate(width, height)

    monkeypatch.setattr(memory, 'allocate_2d', failing_allocate)
    algo.enable_volume_mask()
    assert not algo.allocate_buffers()
    assert len(calls) == 3
    assert (algo._d_volume, algo._d_sinogram) == before
    assert algo._d_volume_mask is None
    assert algo.owns_buffers


def test_round_trip(dims, angles, phantom):
    algo = ReconAlgorithm()
    algo.set_parallel_geometry(dims, angles)
    assert algo.allocate_buffers()
    assert algo.copy_input_to_device(np.ones(dims.sinogram_shape), None, 1.0, phantom, None)
    assert np.array_equal(algo.get_reconstruction(), phantom)

    # pitched host output keeps its padding
    out = np.full(dims.vol_height * 11, -1.0, np.float32)
    assert algo.read_volume_from_device(out, 11)
    out = out.reshape(dims.vol_height, 11)
    assert np.array_equal(out[:, :dims.vol_width], phantom)
    assert np.all(out[:, dims.vol_width:] == -1.0)


def test_copy_input_pitched_and_scaled(dims, angles, phantom):
    algo = ReconAlgorithm()
    algo.set_parallel_geometry(dims, angles)
    algo.allocate_buffers()

    sino = np.arange(dims.proj_angles * dims.proj_dets, dtype=np.float32)
    sino = sino.reshape(dims.sinogram_shape)
    pitched = np.zeros((dims.proj_angles, 10), np.float32)
    pitched[:, :dims.proj_dets] = sino
    volume = np.zeros((dims.vol_height, 12), np.float32)
    volume[:, :dims.vol_width] = phantom

    assert algo.copy_input_to_device(pitched.ravel(), 10, 0.5, volume, None)
    device_sino = memory.copy_device_to_host_2d(algo._d_sinogram, dims.proj_dets,
                                                dims.proj_angles)
    assert np.allclose(device_sino, 0.5 * sino)
    assert np.array_equal(algo.get_reconstruction(), phantom)


def test_copy_input_rejects_missing_arrays(dims, angles, phantom):
    algo = ReconAlgorithm()
    algo.set_parallel_geometry(dims, angles)
    algo.enable_volume_mask()
    algo.allocate_buffers()
    sino = np.ones(dims.sinogram_shape)
    assert not algo.copy_input_to_device(None, None, 1.0, phantom, None)
    assert not algo.copy_input_to_device(sino, None, 1.0, None, None)
    assert not algo.copy_input_to_device(sino, None, 1.0, phantom, None)
    assert not algo.copy_input_to_device(sino, None, 1.0, phantom, None,
                                         volume_mask=np.ones(5))
    assert algo.copy_input_to_device(sino, None, 1.0, phantom, None,
                                     volume_mask=np.ones(dims.volume_shape))


def test_constraints_clamp_logical_region(dims, angles, phantom):
    algo = ReconAlgorithm()
    algo.set_parallel_geometry(dims, angles)
    algo.allocate_buffers()
    algo.copy_input_to_device(np.ones(dims.sinogram_shape), None, 1.0, phantom - 0.25, None)
    algo.set_min_constraint(0.0)
    algo.set_max_constraint(0.5)
    algo._apply_constraints(algo._d_volume)
    assert np.allclose(algo.get_reconstruction(), np.clip(phantom - 0.25, 0.0, 0.5))


def test_solver_interface_is_abstract(dims, angles):
    algo = ReconAlgorithm()
    assert algo.init()
    with pytest.raises(NotImplementedError):
        algo.iterate(1)
    with pytest.raises(NotImplementedError):
        algo.compute_residual_norm()


if __name__ == '__main__':
    pytest.main([str(__file__.replace('\\', '/')), '-v'])
