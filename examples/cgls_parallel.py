import math
import numpy as np
import matplotlib.pyplot as plt
from recoct import CGLS, SIRT, Dimensions, allocate_2d, parallel_angles, circular_trajectory_2d_fan
from recoct import logging


def shepp_logan_2d(Nx, Ny):
    Nx = int(Nx)
    Ny = int(Ny)
    phantom = np.zeros((Ny, Nx), dtype=np.float32)
    ellipses = [
        (0.0, 0.0, 0.69, 0.92, 0, 1.0),
        (0.0, -0.0184, 0.6624, 0.8740, 0, -0.8),
        (0.22, 0.0, 0.11, 0.31, -18.0, -0.8),
        (-0.22, 0.0, 0.16, 0.41, 18.0, -0.8),
        (0.0, 0.35, 0.21, 0.25, 0, 0.7),
    ]
    cx = (Nx - 1)*0.5
    cy = (Ny - 1)*0.5
    for ix in range(Nx):
        for iy in range(Ny):
            xnorm = (ix - cx)/(Nx/2)
            ynorm = (iy - cy)/(Ny/2)
            val = 0.0
            for (x0, y0, a, b, angdeg, ampl) in ellipses:
                th = np.deg2rad(angdeg)
                xprime = (xnorm - x0)*np.cos(th) + (ynorm - y0)*np.sin(th)
                yprime = -(xnorm - x0)*np.sin(th) + (ynorm - y0)*np.cos(th)
                if xprime*xprime/(a*a) + yprime*yprime/(b*b) <= 1.0:
                    val += ampl
            phantom[iy, ix] = val
    phantom = np.clip(phantom, 0.0, 1.0)
    return phantom


def simulate(algo, phantom):
    """Forward project `phantom` with the geometry of `algo`."""
    dims = algo.dims
    d_volume = allocate_2d(dims.vol_width, dims.vol_height)
    d_sinogram = allocate_2d(dims.proj_dets, dims.proj_angles)
    algo.set_buffers(d_volume, None, d_sinogram, None)
    algo.copy_input_to_device(np.zeros(dims.sinogram_shape, np.float32), None, 1.0,
                              phantom, None)
    algo.forward_project(d_volume, d_sinogram)
    sinogram = d_sinogram.copy_to_host()[:dims.proj_angles, :dims.proj_dets].copy()
    algo.allocate_buffers()
    return sinogram


def main():
    logging.setup_custom_logger(level=logging.INFO)

    Nx, Ny = 128, 128
    phantom = shepp_logan_2d(Nx, Ny)

    # Parallel beam, CGLS
    dims = Dimensions(vol_width=Nx, vol_height=Ny, proj_angles=180, proj_dets=192)
    cgls = CGLS()
    cgls.select_device(0)
    cgls.set_parallel_geometry(dims, parallel_angles(dims.proj_angles))
    sinogram = simulate(cgls, phantom)
    cgls.copy_input_to_device(sinogram, None, 1.0, np.zeros_like(phantom), None)

    residuals = []
    for _ in range(10):
        cgls.iterate(5)
        residuals.append(cgls.compute_residual_norm())
    cgls_reco = cgls.get_reconstruction()

    # Fan beam, SIRT with non-negativity
    fan_dims = Dimensions(vol_width=Nx, vol_height=Ny, proj_angles=360, proj_dets=256)
    views = circular_trajectory_2d_fan(fan_dims.proj_angles, fan_dims.proj_dets,
                                       sid=500.0, sdd=1000.0, det_spacing=1.5,
                                       end_angle=2 * math.pi)
    sirt = SIRT()
    sirt.set_fan_geometry(fan_dims, views)
    fan_sinogram = simulate(sirt, phantom)
    sirt.copy_input_to_device(fan_sinogram, None, 1.0, np.zeros_like(phantom), None)
    sirt.set_min_constraint(0.0)
    sirt.set_relaxation(1.8)
    sirt.iterate(100)
    sirt_reco = sirt.get_reconstruction()

    plt.figure(figsize=(16, 4))
    plt.subplot(1, 4, 1)
    plt.imshow(phantom, cmap='gray')
    plt.title("Phantom")
    plt.subplot(1, 4, 2)
    plt.imshow(cgls_reco, cmap='gray')
    plt.title("CGLS (parallel)")
    plt.subplot(1, 4, 3)
    plt.imshow(sirt_reco, cmap='gray')
    plt.title("SIRT (fan)")
    plt.subplot(1, 4, 4)
    plt.semilogy(np.arange(1, 11) * 5, residuals)
    plt.xlabel("Iteration")
    plt.title("CGLS residual")
    plt.tight_layout()
    plt.show()


if __name__ == "__main__":
    main()
