"""
Filter kernels on the host backend: values, clamping and tile coverage.
"""

import numpy as np
import pytest

from evm_gpu.core.gpu_kernels import CommandEncoder, create_bind_group
from evm_gpu.filters import FilterKernels, half_size

from conftest import grey, make_input, make_output, read_pixels


@pytest.fixture
def kernels(host_ctx):
    k = FilterKernels(host_ctx)
    yield k
    k.release()


def run(ctx, record):
    encoder = CommandEncoder(ctx)
    record(encoder)
    ctx.queue.submit([encoder.finish()])


def channel(values):
    """RGB channels set from a 2-D array, alpha 255"""
    out = np.empty(values.shape + (4,), dtype=np.uint8)
    out[..., :3] = values[..., None]
    out[..., 3] = 255
    return out


class TestGaussianBlur:

    def test_constant_field_unchanged(self, host_ctx, kernels):
        src = make_input(host_ctx, grey(12, 10, 137))
        temp = kernels.create_intermediate(10, 12, 'temp')
        dst = make_output(host_ctx, 10, 12)
        run(host_ctx, lambda enc: kernels.encode_gaussian_blur(enc, src, temp, dst))

        assert np.all(read_pixels(host_ctx, dst)[..., :3] == 137)

    def test_impulse_response(self, host_ctx, kernels):
        pixels = grey(9, 9, 0)
        pixels[4, 4, :3] = 255
        src = make_input(host_ctx, pixels)
        temp = kernels.create_intermediate(9, 9, 'temp')
        dst = make_output(host_ctx, 9, 9)
        run(host_ctx, lambda enc: kernels.encode_gaussian_blur(enc, src, temp, dst))

        out = read_pixels(host_ctx, dst)[..., 0].astype(int)
        # 0.38774 quantized to 99 after the first pass, then 0.38774 * 99 / 255
        assert out[4, 4] == 38
        assert out[4, 3] == out[4, 5] == out[3, 4] == out[5, 4]
        assert out[0, 0] == 0


class TestTemporal:

    def test_subtract_equal_is_shift_zero(self, host_ctx, kernels):
        a = make_input(host_ctx, grey(6, 6, 77))
        b = make_input(host_ctx, grey(6, 6, 77))
        dst = make_output(host_ctx, 6, 6)
        run(host_ctx, lambda enc: kernels.encode_subtract_mean(enc, a, b, dst))

        assert np.all(read_pixels(host_ctx, dst) == 128)

    def test_subtract_sign(self, host_ctx, kernels):
        brighter = make_input(host_ctx, grey(4, 4, 120))
        mean = make_input(host_ctx, grey(4, 4, 100))
        dst = make_output(host_ctx, 4, 4)
        run(host_ctx, lambda enc: kernels.encode_subtract_mean(enc, brighter, mean, dst))

        # 20 / 2 above the shifted zero
        assert np.all(read_pixels(host_ctx, dst)[..., :3] == 138)

    def test_gain_zero_is_identity(self, host_ctx, kernels):
        rng = np.random.default_rng(3)
        pixels = rng.integers(0, 256, size=(7, 11, 4), dtype=np.uint8)
        original = make_input(host_ctx, pixels)
        motion = make_input(host_ctx, rng.integers(0, 256, size=(7, 11, 4), dtype=np.uint8))
        dst = make_output(host_ctx, 11, 7)
        run(host_ctx, lambda enc: kernels.encode_amplify(enc, original, motion, dst, 0.0))

        np.testing.assert_array_equal(read_pixels(host_ctx, dst), pixels)

    def test_amplify_clamps(self, host_ctx, kernels):
        original = make_input(host_ctx, channel(np.array([[250, 5]], dtype=np.uint8)))
        motion = make_input(host_ctx, channel(np.array([[160, 100]], dtype=np.uint8)))
        dst = make_output(host_ctx, 2, 1)
        run(host_ctx, lambda enc: kernels.encode_amplify(enc, original, motion, dst, 10.0))

        out = read_pixels(host_ctx, dst)
        assert np.all(out[0, 0, :3] == 255)
        assert np.all(out[0, 1, :3] == 0)

    def test_amplify_scales_motion(self, host_ctx, kernels):
        original = make_input(host_ctx, grey(4, 4, 100))
        # stored 132 is a delta of 8/255
        motion = make_input(host_ctx, grey(4, 4, 132))
        dst = make_output(host_ctx, 4, 4)
        run(host_ctx, lambda enc: kernels.encode_amplify(enc, original, motion, dst, 5.0))

        assert np.all(read_pixels(host_ctx, dst)[..., :3] == 140)

    def test_size_mismatch(self, host_ctx, kernels):
        a = make_input(host_ctx, grey(4, 4, 0))
        b = make_input(host_ctx, grey(5, 4, 0))
        dst = make_output(host_ctx, 4, 4)
        with pytest.raises(ValueError):
            kernels.encode_subtract_mean(CommandEncoder(host_ctx), a, b, dst)

    def test_gain_buffers_cached(self, host_ctx, kernels):
        first = kernels.gain_buffer(4.0)
        assert kernels.gain_buffer(4.0) is first
        assert kernels.gain_buffer(5.0) is not first

        kernels.release()
        assert first.destroyed


class TestResampling:

    def test_half_size(self):
        assert half_size(64, 64) == (32, 32)
        assert half_size(13, 9) == (7, 5)
        assert half_size(1, 1) == (1, 1)

    def test_downsample_odd_size(self, host_ctx, kernels):
        values = np.array([[0, 40, 80],
                           [120, 160, 200],
                           [240, 20, 60]], dtype=np.uint8)
        src = make_input(host_ctx, channel(values))
        dst = make_output(host_ctx, 2, 2)
        run(host_ctx, lambda enc: kernels.encode_downsample(enc, src, dst))

        out = read_pixels(host_ctx, dst)[..., 0]
        np.testing.assert_array_equal(out, [[80, 140], [130, 60]])

    def test_downsample_needs_half_size(self, host_ctx, kernels):
        src = make_input(host_ctx, grey(8, 8, 0))
        dst = make_output(host_ctx, 3, 4)
        with pytest.raises(ValueError):
            kernels.encode_downsample(CommandEncoder(host_ctx), src, dst)

    def test_upsample_nearest(self, host_ctx, kernels):
        values = np.array([[10, 20], [30, 40]], dtype=np.uint8)
        src = make_input(host_ctx, channel(values))
        dst = make_output(host_ctx, 3, 3)
        run(host_ctx, lambda enc: kernels.encode_upsample(enc, src, dst))

        out = read_pixels(host_ctx, dst)[..., 0]
        np.testing.assert_array_equal(out, [[10, 10, 20], [10, 10, 20], [30, 30, 40]])

    def test_laplacian_round_trip(self, host_ctx, kernels):
        rng = np.random.default_rng(11)
        fine_pixels = rng.integers(30, 220, size=(10, 10, 4), dtype=np.uint8)
        coarse_pixels = rng.integers(30, 220, size=(10, 10, 4), dtype=np.uint8)
        fine = make_input(host_ctx, fine_pixels)
        coarse = make_input(host_ctx, coarse_pixels)
        residual = kernels.create_intermediate(10, 10, 'residual')
        dst = make_output(host_ctx, 10, 10)

        def record(enc):
            kernels.encode_laplacian_diff(enc, fine, coarse, residual)
            kernels.encode_reconstruct(enc, residual, coarse, dst)

        run(host_ctx, record)
        error = np.abs(read_pixels(host_ctx, dst).astype(int) - fine_pixels.astype(int))
        assert error.max() <= 1


class TestTileCoverage:

    def test_partial_tiles_fully_written(self, host_ctx, kernels):
        src = make_input(host_ctx, grey(9, 13, 200))
        dst = make_output(host_ctx, 13, 9)
        run(host_ctx, lambda enc: kernels.encode_upsample(enc, src, dst))

        assert np.all(read_pixels(host_ctx, dst)[..., 0] == 200)

    def test_explicit_workgroups_limit_coverage(self, host_ctx, kernels):
        src = make_input(host_ctx, grey(9, 13, 200))
        dst = make_output(host_ctx, 13, 9)
        group = create_bind_group(host_ctx, kernels.unary_layout, {0: src, 1: dst})

        encoder = CommandEncoder(host_ctx)
        encoder.dispatch(kernels.pipelines['upsample_nearest'], group, workgroups=(1, 1))
        host_ctx.queue.submit([encoder.finish()])

        out = read_pixels(host_ctx, dst)[..., 0]
        assert np.all(out[:8, :8] == 200)
        assert np.all(out[8:, :] == 0)
        assert np.all(out[:, 8:] == 0)
