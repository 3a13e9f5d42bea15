"""
Single-scale magnification pipeline on the host backend.
"""

import numpy as np
import pytest

from evm_gpu.errors import BatchFailedError, DeviceLostError
from evm_gpu.magnification import (
    MagnificationConfig, MagnificationParams, MagnificationPipeline, PipelineState,
    compute_temporal_mean
)
from evm_gpu.types import Frame
from evm_gpu.utils import (
    generate_test_frames, measure_centroid_amplitude, measure_magnified_amplitude
)

from conftest import (
    FailingReadbackBackend, FaultyBackend, ReorderingBackend, StalledReadbackBackend
)


def run(ctx, frames, **kwargs):
    config = kwargs.pop('config', None)
    pipeline = MagnificationPipeline(ctx, MagnificationParams(**kwargs), config)
    return pipeline.run(frames)


def pixels_of(frames):
    return [frame.data for frame in frames]


class TestIdentity:

    @pytest.mark.parametrize('blur', [False, True])
    def test_gain_zero_returns_input(self, host_ctx, circle_clip, blur):
        out = run(host_ctx, circle_clip, gain=0.0, blur=blur)
        assert pixels_of(out) == pixels_of(circle_clip)

    def test_static_clip_unchanged_at_any_gain(self, host_ctx):
        rng = np.random.default_rng(5)
        still = Frame.from_array(rng.integers(0, 256, size=(16, 16, 4), dtype=np.uint8))
        frames = [still] * 5

        out = run(host_ctx, frames, gain=50.0)
        assert pixels_of(out) == pixels_of(frames)

    def test_output_keeps_size_and_timestamps(self, host_ctx, circle_clip):
        out = run(host_ctx, circle_clip, gain=3.0)
        assert len(out) == len(circle_clip)
        for before, after in zip(circle_clip, out):
            assert (after.width, after.height) == (before.width, before.height)
            assert after.timestamp == before.timestamp


class TestAmplification:

    def test_added_motion_scales_with_gain(self, host_ctx, blob_clip):
        amplitude = measure_centroid_amplitude(blob_clip)
        assert 1.5 < amplitude < 2.1

        for gain in (1.0, 10.0):
            out = run(host_ctx, blob_clip, gain=gain)
            added = measure_magnified_amplitude(blob_clip, out)
            assert added == pytest.approx(gain * amplitude, rel=0.1)

    def test_magnified_clip_moves_more(self, host_ctx, blob_clip):
        out = run(host_ctx, blob_clip, gain=5.0)
        assert measure_centroid_amplitude(out) > 2 * measure_centroid_amplitude(blob_clip)

    def test_blur_still_amplifies(self, host_ctx, blob_clip):
        out = run(host_ctx, blob_clip, gain=5.0, blur=True)
        assert measure_magnified_amplitude(blob_clip, out) > measure_centroid_amplitude(blob_clip)


class TestOrdering:

    def test_out_of_order_readbacks_keep_input_order(self, host_ctx, context_for, circle_clip):
        expected = run(host_ctx, circle_clip, gain=4.0)

        backend = ReorderingBackend(delay=0.05)
        ctx = context_for(backend)
        out = run(ctx, circle_clip, gain=4.0, config=MagnificationConfig(max_in_flight_frames=2))

        assert backend.completion_order != sorted(backend.completion_order)
        assert pixels_of(out) == pixels_of(expected)
        assert [f.timestamp for f in out] == [f.timestamp for f in circle_clip]


class TestResourceBound:

    def _peak_live(self, context_for, frame_count):
        ctx = context_for('cpu')
        frames = generate_test_frames(frame_count, 24, 16, radius=4.0)
        peaks = []
        pipeline = MagnificationPipeline(
            ctx, MagnificationParams(gain=2.0), MagnificationConfig(max_in_flight_frames=2),
            progress_callback=lambda _: peaks.append(ctx.live_resource_count)
        )
        pipeline.run(frames)
        assert ctx.live_resource_count == 0
        return max(peaks)

    def test_live_resources_independent_of_batch_length(self, context_for):
        short = self._peak_live(context_for, 4)
        long = self._peak_live(context_for, 16)
        assert short == long
        # mean + gain uniform + two frames of (source, motion, output)
        assert long <= 2 + 2 * 3


class TestFailures:

    def test_device_fault_fails_batch(self, context_for, circle_clip):
        # mean upload records no dispatch; each frame records two
        ctx = context_for(FaultyBackend(fail_on_dispatch=5))
        pipeline = MagnificationPipeline(ctx, MagnificationParams(gain=4.0))

        with pytest.raises(BatchFailedError) as excinfo:
            pipeline.run(circle_clip)

        failure = excinfo.value
        assert failure.stage == 'per-frame'
        assert failure.frame_index == 2
        assert failure.context['cause'] == 'gpu-device-lost'
        assert isinstance(failure.__cause__, DeviceLostError)
        assert pipeline.state is PipelineState.FAILED
        assert pipeline.failure is failure
        assert ctx.live_resource_count == 0

    def test_readback_failure_fails_batch(self, context_for, circle_clip):
        ctx = context_for(FailingReadbackBackend(fail_on_map=1))
        pipeline = MagnificationPipeline(ctx, MagnificationParams(gain=4.0))

        with pytest.raises(BatchFailedError) as excinfo:
            pipeline.run(circle_clip[:4])

        assert excinfo.value.stage == 'collect'
        assert excinfo.value.frame_index == 1
        assert excinfo.value.context['cause'] == 'gpu-readback'
        assert ctx.live_resource_count == 0

    def test_readback_timeout_fails_batch(self, context_for, circle_clip):
        ctx = context_for(StalledReadbackBackend())
        config = MagnificationConfig(readback_timeout_s=0.05)
        pipeline = MagnificationPipeline(ctx, MagnificationParams(gain=4.0), config)

        with pytest.raises(BatchFailedError) as excinfo:
            pipeline.run(circle_clip[:4])

        assert excinfo.value.stage == 'collect'
        assert excinfo.value.frame_index == 0
        assert excinfo.value.context['cause'] == 'gpu-readback'
        assert 'timed out' in str(excinfo.value)
        assert all(future.cancelled() for future in ctx.backend.pending)
        assert ctx.live_resource_count == 0

    def test_errored_context_fails_at_construction(self, context_for):
        ctx = context_for('cpu')
        ctx.backend.report_error(RuntimeError("gone"))
        with pytest.raises(DeviceLostError):
            MagnificationPipeline(ctx)


class TestStateMachine:

    def test_history_of_successful_run(self, host_ctx, circle_clip):
        pipeline = MagnificationPipeline(host_ctx, MagnificationParams(gain=2.0))
        assert pipeline.state is PipelineState.IDLE

        pipeline.run(circle_clip)
        states = [state for state, _ in pipeline.history]
        assert states == [
            PipelineState.IDLE,
            PipelineState.COMPUTE_MEAN,
            PipelineState.UPLOAD_MEAN,
            PipelineState.PER_FRAME,
            PipelineState.COLLECT,
            PipelineState.DONE,
        ]

    def test_one_shot(self, host_ctx, circle_clip):
        pipeline = MagnificationPipeline(host_ctx)
        pipeline.run(circle_clip)
        with pytest.raises(RuntimeError):
            pipeline.run(circle_clip)

    def test_start_returns_future(self, host_ctx, circle_clip):
        pipeline = MagnificationPipeline(host_ctx, MagnificationParams(gain=0.0))
        out = pipeline.start(circle_clip).result(timeout=30)
        assert pixels_of(out) == pixels_of(circle_clip)

    def test_frame_validation(self, host_ctx, circle_clip):
        pipeline = MagnificationPipeline(host_ctx)
        with pytest.raises(ValueError):
            pipeline.validate_frames([])
        with pytest.raises(TypeError):
            pipeline.validate_frames([circle_clip[0], b'\x00' * 16])

        other = generate_test_frames(1, 16, 16, radius=4.0)
        with pytest.raises(ValueError):
            pipeline.validate_frames([circle_clip[0], other[0]])
        # a rejected input leaves the pipeline usable
        assert pipeline.state is PipelineState.IDLE


class TestParams:

    @pytest.mark.parametrize('gain', [-1.0, float('nan'), float('inf')])
    def test_bad_gain(self, gain):
        with pytest.raises(ValueError):
            MagnificationParams(gain=gain)

    def test_non_numeric_gain(self):
        with pytest.raises(TypeError):
            MagnificationParams(gain='loud')

    @pytest.mark.parametrize('levels', [1.5, True, '2'])
    def test_levels_must_be_int(self, levels):
        with pytest.raises(TypeError):
            MagnificationParams(pyramid_levels=levels)

    def test_negative_levels(self):
        with pytest.raises(ValueError):
            MagnificationParams(pyramid_levels=-1)

    def test_level_gains(self):
        params = MagnificationParams(gain=3.0, pyramid_levels=2)
        assert params.multiscale
        assert params.gains_per_level() == (3.0, 3.0)

        params = MagnificationParams(pyramid_levels=2, level_gains=[1, 4])
        assert params.gains_per_level() == (1.0, 4.0)

        with pytest.raises(ValueError):
            MagnificationParams(pyramid_levels=2, level_gains=[1.0])
        with pytest.raises(ValueError):
            MagnificationParams(pyramid_levels=1, level_gains=[-2.0])


class TestConfig:

    def test_defaults(self):
        config = MagnificationConfig()
        assert config.max_in_flight_frames == 8
        assert config.allow_cpu_fallback is False
        assert config.device == 'auto'

    def test_invalid(self):
        with pytest.raises(ValueError):
            MagnificationConfig(max_in_flight_frames=0)
        with pytest.raises(ValueError):
            MagnificationConfig(readback_timeout_s=0)
        with pytest.raises(ValueError, match='vulkan'):
            MagnificationConfig(device='vulkan')

    @pytest.mark.parametrize('device', ['auto', 'cuda', 'gpu', 'cpu', 'host'])
    def test_known_devices(self, device):
        assert MagnificationConfig(device=device).device == device

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv('EVM_GPU_MAX_IN_FLIGHT', '3')
        monkeypatch.setenv('EVM_GPU_ALLOW_CPU_FALLBACK', 'true')
        monkeypatch.setenv('EVM_GPU_DEVICE', 'cpu')
        monkeypatch.setenv('EVM_GPU_MEMORY_LIMIT', '0.5')

        config = MagnificationConfig.from_env(readback_timeout_s=5.0)
        assert config.max_in_flight_frames == 3
        assert config.allow_cpu_fallback is True
        assert config.device == 'cpu'
        assert config.memory_limit_gb == 0.5
        assert config.readback_timeout_s == 5.0


def test_temporal_mean_rounds_to_nearest():
    a = Frame.from_array(np.full((2, 2, 4), 10, dtype=np.uint8))
    b = Frame.from_array(np.full((2, 2, 4), 13, dtype=np.uint8))
    c = Frame.from_array(np.full((2, 2, 4), 14, dtype=np.uint8))

    assert set(compute_temporal_mean([a, b])) == {12}
    assert set(compute_temporal_mean([a, b, c])) == {12}
    assert set(compute_temporal_mean([a, a, b])) == {11}

    with pytest.raises(ValueError):
        compute_temporal_mean([])
