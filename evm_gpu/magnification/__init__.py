"""
EVM GPU magnification: single-scale and Laplacian pyramid pipelines plus the
batch orchestrator.
"""

from .pipeline_gpu import (
    MagnificationParams,
    MagnificationConfig,
    MagnificationPipeline,
    PipelineState,
    FrameResources,
    compute_temporal_mean,
)
from .pyramid_gpu import (
    PyramidLevel,
    LaplacianPyramid,
    build_pyramid,
    amplify_pyramid,
    max_pyramid_levels,
    pyramid_level_sizes,
)
from .batch_gpu import magnify, as_frame, ProgressReporter

__all__ = [
    'MagnificationParams',
    'MagnificationConfig',
    'MagnificationPipeline',
    'PipelineState',
    'FrameResources',
    'compute_temporal_mean',
    'PyramidLevel',
    'LaplacianPyramid',
    'build_pyramid',
    'amplify_pyramid',
    'max_pyramid_levels',
    'pyramid_level_sizes',
    'magnify',
    'as_frame',
    'ProgressReporter',
]
