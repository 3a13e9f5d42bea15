"""
Laplacian pyramid decomposition and multi-scale magnification.
"""

import numpy as np
import pytest

from evm_gpu.core.gpu_kernels import CommandEncoder
from evm_gpu.filters import FilterKernels
from evm_gpu.magnification import (
    MagnificationParams, MagnificationPipeline, build_pyramid, max_pyramid_levels,
    pyramid_level_sizes
)
from evm_gpu.utils import measure_centroid_amplitude, measure_magnified_amplitude

from conftest import make_input


def run(ctx, frames, **kwargs):
    return MagnificationPipeline(ctx, MagnificationParams(**kwargs)).run(frames)


def mean_abs_error(a, b):
    x = np.stack([f.to_array() for f in a]).astype(np.float64)
    y = np.stack([f.to_array() for f in b]).astype(np.float64)
    return np.abs(x - y).mean()


@pytest.mark.parametrize('size, expected', [
    ((64, 64), 7),
    ((1, 1), 1),
    ((2, 1), 1),
    ((13, 9), 5),
    ((640, 480), 10),
])
def test_max_pyramid_levels(size, expected):
    assert max_pyramid_levels(*size) == expected


def test_level_sizes():
    assert pyramid_level_sizes(13, 9, 4) == [(13, 9), (7, 5), (4, 3), (2, 2)]
    assert pyramid_level_sizes(64, 64, 1) == [(64, 64)]


class TestBuildPyramid:

    def test_structure(self, host_ctx):
        kernels = FilterKernels(host_ctx)
        rng = np.random.default_rng(2)
        source = make_input(host_ctx, rng.integers(0, 256, size=(9, 13, 4), dtype=np.uint8))

        encoder = CommandEncoder(host_ctx)
        pyramid = build_pyramid(kernels, encoder, source, 3)
        host_ctx.queue.submit([encoder.finish()])

        assert len(pyramid) == 3
        assert pyramid.levels[0].gaussian is source
        assert [level.size for level in pyramid.levels] == [(13, 9), (7, 5), (4, 3)]
        assert not pyramid.levels[0].is_coarsest
        assert pyramid.levels[-1].is_coarsest

        live = host_ctx.live_resource_count
        pyramid.destroy()
        assert host_ctx.live_resource_count == live - 10
        assert not source.destroyed

    @pytest.mark.parametrize('levels', [0, 6])
    def test_level_count_checked(self, host_ctx, levels):
        kernels = FilterKernels(host_ctx)
        source = make_input(host_ctx, np.zeros((9, 13, 4), dtype=np.uint8))
        with pytest.raises(ValueError):
            build_pyramid(kernels, CommandEncoder(host_ctx), source, levels)


class TestPyramidMagnification:

    def test_gain_zero_round_trip(self, host_ctx, blob_clip):
        out = run(host_ctx, blob_clip, gain=0.0, pyramid_levels=4)
        assert mean_abs_error(out, blob_clip) < 5.0

    def test_single_level_matches_single_scale(self, host_ctx, circle_clip):
        single = run(host_ctx, circle_clip, gain=6.0)
        pyramid = run(host_ctx, circle_clip, gain=6.0, pyramid_levels=1)
        assert [f.data for f in pyramid] == [f.data for f in single]

    def test_amplifies_like_single_scale(self, host_ctx, blob_clip):
        gain = 5.0
        out = run(host_ctx, blob_clip, gain=gain, pyramid_levels=3)
        added = measure_magnified_amplitude(blob_clip, out)
        assert added == pytest.approx(gain * measure_centroid_amplitude(blob_clip), rel=0.4)

    def test_zero_level_gains_leave_clip(self, host_ctx, blob_clip):
        out = MagnificationPipeline(
            host_ctx, MagnificationParams(pyramid_levels=3, level_gains=[0.0, 0.0, 0.0])
        ).run(blob_clip)
        assert measure_magnified_amplitude(blob_clip, out) < 0.2

    def test_blur_on_levels(self, host_ctx, blob_clip):
        out = run(host_ctx, blob_clip, gain=5.0, blur=True, pyramid_levels=3)
        assert measure_magnified_amplitude(blob_clip, out) > measure_centroid_amplitude(blob_clip)
        assert host_ctx.live_resource_count == 0

    def test_too_many_levels(self, host_ctx, circle_clip):
        # 32x24 supports 6 levels
        pipeline = MagnificationPipeline(host_ctx, MagnificationParams(pyramid_levels=7))
        with pytest.raises(ValueError):
            pipeline.run(circle_clip)
