"""
EVM GPU filter kernels: spatial (blur, resample, Laplacian) and temporal
(mean subtraction, amplification).
"""

from .kernel_common import SHIFT_ZERO, GAUSSIAN_WEIGHTS
from .spatial_filters_gpu import SPATIAL_SOURCE
from .temporal_filters_gpu import TEMPORAL_SOURCE
from .filter_kernels import FilterKernels, INTERMEDIATE_USAGE, half_size

__all__ = [
    'SHIFT_ZERO',
    'GAUSSIAN_WEIGHTS',
    'SPATIAL_SOURCE',
    'TEMPORAL_SOURCE',
    'FilterKernels',
    'INTERMEDIATE_USAGE',
    'half_size',
]
