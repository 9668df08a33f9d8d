"""Global constants and configuration for recoct.

This module defines core constants used throughout the package, including
data types, CUDA thread block configurations, buffer pitch alignment and
numerical precision parameters.
"""

import numpy as np
from numba import cuda

# ---------------------------------------------------------------------------
# Data Types and Numerical Constants
# ---------------------------------------------------------------------------

_DTYPE = np.float32
"""Default data type for device buffers (numpy.float32)."""

_ACC_DTYPE = np.float64
"""Accumulator type for reductions (sum of squares)."""

_INF = _DTYPE(np.inf)
"""Floating-point infinity in default data type."""

_EPSILON = _DTYPE(1e-6)
"""Small epsilon value for numerical comparisons to avoid division by zero."""

# ---------------------------------------------------------------------------
# Device Buffer Layout
# ---------------------------------------------------------------------------

# Rows of internally allocated buffers start on a 128-byte boundary
_PITCH_ALIGN = 32
"""Row pitch alignment (in float32 elements) for allocated 2D buffers."""

# ---------------------------------------------------------------------------
# CUDA Thread Block Configurations
# ---------------------------------------------------------------------------

# 2D blocks: 16x16 = 256 threads per block for ray-tracing and elementwise kernels
_TPB_2D = (16, 16)
"""CUDA threads-per-block for 2D kernels: (16, 16) = 256 threads."""

# 1D blocks for per-row reductions
_TPB_1D = 128
"""CUDA threads-per-block for 1D kernels."""

# ---------------------------------------------------------------------------
# CUDA JIT Decorators
# ---------------------------------------------------------------------------

# fastmath trades a little precision in the ray tracing for speed
_FASTMATH_DECORATOR = cuda.jit(cache=True, fastmath=True)
"""Numba CUDA JIT decorator with fastmath enabled for projection kernels."""

# Elementwise kernels and reductions feed the CG recurrences, keep IEEE semantics
_JIT_DECORATOR = cuda.jit(cache=True)
"""Numba CUDA JIT decorator for arithmetic kernels."""
