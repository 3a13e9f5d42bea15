"""
EVM GPU utilities: synthetic clips and environment checks
"""

from .synthetic import (
    generate_test_frames,
    measure_motion_amplitude,
    measure_centroid_amplitude,
    measure_magnified_amplitude,
    estimate_background,
)

__all__ = [
    'generate_test_frames',
    'measure_motion_amplitude',
    'measure_centroid_amplitude',
    'measure_magnified_amplitude',
    'estimate_background',
]
