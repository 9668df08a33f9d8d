"""Tests for the CGLS solver."""

import numpy as np
import pytest

from recoct import CGLS, AlgorithmContractError, Dimensions, circular_trajectory_2d_fan

RTOL, ATOL = 1e-4, 1e-5


def _zeros(dims):
    return np.zeros(dims.volume_shape, np.float32)


def test_iterate_requires_buffers(dims, angles):
    algo = CGLS()
    with pytest.raises(AlgorithmContractError):
        algo.iterate(1)
    algo.set_parallel_geometry(dims, angles)
    with pytest.raises(AlgorithmContractError):
        algo.iterate(1)


def test_warm_start_is_lazy(cgls_problem):
    algo, _ = cgls_problem
    assert not algo._slice_initialized
    assert algo.iterate(0)
    assert algo._slice_initialized
    assert algo.gamma > 0
    assert np.all(algo.get_reconstruction() == 0)


def test_resumable_iterations(dims, angles, phantom, project):
    results = []
    for batches in ([10], [5, 5]):
        algo = CGLS()
        algo.set_parallel_geometry(dims, angles)
        sinogram = project(algo, phantom)
        algo.allocate_buffers()
        algo.copy_input_to_device(sinogram, None, 1.0, _zeros(dims), None)
        for n in batches:
            assert algo.iterate(n)
        results.append(algo.get_reconstruction())
    assert np.allclose(results[0], results[1], rtol=RTOL, atol=ATOL)


def test_residual_is_monotonic(cgls_problem):
    algo, sinogram = cgls_problem
    residuals = [algo.compute_residual_norm()]
    assert np.isclose(residuals[0], np.linalg.norm(sinogram), rtol=RTOL)
    for _ in range(6):
        algo.iterate(1)
        residuals.append(algo.compute_residual_norm())

    for previous, current in zip(residuals, residuals[1:]):
        assert current <= previous * (1 + RTOL) + ATOL
    assert residuals[-1] < 0.5 * residuals[0]


def test_residual_norm_has_no_side_effects(cgls_problem):
    algo, _ = cgls_problem
    algo.iterate(3)
    volume = algo.get_reconstruction()
    gamma = algo.gamma
    p = algo._d_p.copy_to_host()
    r = algo._d_r.copy_to_host()
    algo.compute_residual_norm()
    assert algo.gamma == gamma
    assert np.array_equal(algo.get_reconstruction(), volume)
    assert np.array_equal(algo._d_p.copy_to_host(), p)
    assert np.array_equal(algo._d_r.copy_to_host(), r)


def test_residual_then_iterate_matches_plain_iterate(dims, angles, phantom, project):
    results = []
    for measure in (False, True):
        algo = CGLS()
        algo.set_parallel_geometry(dims, angles)
        sinogram = project(algo, phantom)
        algo.allocate_buffers()
        algo.copy_input_to_device(sinogram, None, 1.0, _zeros(dims), None)
        for _ in range(4):
            algo.iterate(1)
            if measure:
                algo.compute_residual_norm()
        results.append(algo.get_reconstruction())
    assert np.allclose(results[0], results[1], rtol=RTOL, atol=ATOL)


def test_volume_mask_containment(dims, angles, phantom, project):
    algo = CGLS()
    algo.set_parallel_geometry(dims, angles)
    sinogram = project(algo, phantom)
    algo.enable_volume_mask()
    algo.allocate_buffers()

    mask = np.zeros(dims.volume_shape, np.float32)
    mask[3, 4] = 1.0
    assert algo.copy_input_to_device(sinogram, None, 1.0, _zeros(dims), None,
                                     volume_mask=mask)
    algo.iterate(5)

    volume = algo.get_reconstruction()
    assert np.all(volume[mask == 0] == 0)
    assert volume[3, 4] > 0


def test_abort_stops_between_steps(cgls_problem, dims, angles, phantom, project):
    algo, _ = cgls_problem
    step = algo._step
    steps = []

    def counting_step():
        steps.append(1)
        result = step()
        if len(steps) == 3:
            algo.signal_abort()
        return result

    algo._step = counting_step
    assert algo.iterate(10)
    assert len(steps) == 3

    reference = CGLS()
    reference.set_parallel_geometry(dims, angles)
    sinogram = project(reference, phantom)
    reference.allocate_buffers()
    reference.copy_input_to_device(sinogram, None, 1.0, _zeros(dims), None)
    reference.iterate(3)
    assert np.allclose(algo.get_reconstruction(), reference.get_reconstruction(),
                       rtol=RTOL, atol=ATOL)

    # the flag was consumed by the aborted call
    algo.iterate(2)
    assert len(steps) == 5


def test_abort_between_calls_skips_next_call(cgls_problem):
    algo, _ = cgls_problem
    algo.iterate(2)
    before = algo.get_reconstruction()
    gamma = algo.gamma

    algo.signal_abort()
    assert algo.iterate(5)
    assert np.array_equal(algo.get_reconstruction(), before)
    assert algo.gamma == gamma

    algo.iterate(1)
    assert not np.array_equal(algo.get_reconstruction(), before)


def test_zero_denominator_stops(dims, angles):
    algo = CGLS()
    algo.set_parallel_geometry(dims, angles)
    algo.allocate_buffers()
    algo.copy_input_to_device(np.zeros(dims.sinogram_shape), None, 1.0, _zeros(dims), None)

    assert algo.iterate(5)
    assert algo.converged
    volume = algo.get_reconstruction()
    assert np.all(np.isfinite(volume))
    assert np.all(volume == 0)
    assert algo.compute_residual_norm() == 0.0

    # further calls are no-ops until the next warm start
    assert algo.iterate(3)
    assert np.all(algo.get_reconstruction() == 0)


def test_copy_input_forces_warm_start(cgls_problem, dims):
    algo, _ = cgls_problem
    algo.iterate(4)
    assert np.any(algo.get_reconstruction() != 0)

    algo.copy_input_to_device(np.zeros(dims.sinogram_shape), None, 1.0, _zeros(dims), None)
    assert not algo._slice_initialized
    algo.iterate(3)
    assert np.allclose(algo.get_reconstruction(), 0, atol=ATOL)


def test_set_buffers_forces_warm_start(cgls_problem, dims, phantom, to_device):
    algo, sinogram = cgls_problem
    algo.iterate(2)

    d_vol = to_device(_zeros(dims))
    d_sino = to_device(sinogram)
    assert algo.set_buffers(d_vol, None, d_sino, None)
    assert not algo._slice_initialized
    algo.iterate(6)

    reco = d_vol.copy_to_host()[:dims.vol_height, :dims.vol_width]
    assert np.allclose(reco, algo.get_reconstruction())
    assert algo.compute_residual_norm() < 0.5 * np.linalg.norm(sinogram)


def test_geometry_change_forces_warm_start(cgls_problem, dims, angles):
    algo, _ = cgls_problem
    algo.iterate(1)
    assert algo._slice_initialized
    algo.set_parallel_geometry(dims, angles[::-1])
    assert not algo._slice_initialized


def test_work_buffers_follow_dimensions(cgls_problem, angles):
    algo, _ = cgls_problem
    algo.iterate(1)
    d_r = algo._d_r
    assert algo.init()
    assert algo._d_r is d_r

    wider = Dimensions(vol_width=12, vol_height=8, proj_angles=8, proj_dets=16)
    algo.set_parallel_geometry(wider, angles)
    algo.allocate_buffers()
    algo.copy_input_to_device(np.ones(wider.sinogram_shape), None, 1.0,
                              np.zeros(wider.volume_shape), None)
    assert algo.iterate(1)
    assert algo._d_r is not d_r
    assert algo._work_dims == wider


def test_larger_geometry_unbinds_owned_buffers(cgls_problem, angles):
    algo, _ = cgls_problem
    algo.iterate(1)

    larger = Dimensions(vol_width=40, vol_height=40, proj_angles=8, proj_dets=40)
    assert algo.set_parallel_geometry(larger, angles)
    assert not algo.owns_buffers
    with pytest.raises(AlgorithmContractError):
        algo.iterate(1)

    assert algo.allocate_buffers()
    algo.copy_input_to_device(np.ones(larger.sinogram_shape), None, 1.0,
                              np.zeros(larger.volume_shape), None)
    assert algo.iterate(1)
    assert algo.get_reconstruction().shape == larger.volume_shape


def test_fan_beam_convergence(phantom, project):
    dims = Dimensions(vol_width=8, vol_height=8, proj_angles=16, proj_dets=16)
    views = circular_trajectory_2d_fan(dims.proj_angles, dims.proj_dets,
                                       sid=20.0, sdd=40.0, det_spacing=2.0)
    algo = CGLS()
    assert algo.set_fan_geometry(dims, views)
    sinogram = project(algo, phantom)
    algo.allocate_buffers()
    algo.copy_input_to_device(sinogram, None, 1.0, _zeros(dims), None)

    initial = algo.compute_residual_norm()
    algo.iterate(20)
    assert algo.compute_residual_norm() < 0.1 * initial


def test_sinogram_scale(dims, angles, phantom, project):
    algo = CGLS()
    algo.set_parallel_geometry(dims, angles)
    sinogram = project(algo, phantom)
    algo.allocate_buffers()
    algo.copy_input_to_device(2.0 * sinogram, None, 0.5, _zeros(dims), None)
    assert np.isclose(algo.compute_residual_norm(), np.linalg.norm(sinogram), rtol=RTOL)


if __name__ == '__main__':
    pytest.main([str(__file__.replace('\\', '/')), '-v'])
