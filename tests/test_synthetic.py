"""
Synthetic clip generator and motion measurements.
"""

import numpy as np
import pytest

from evm_gpu.types import Frame
from evm_gpu.utils import (
    estimate_background, generate_test_frames, measure_centroid_amplitude,
    measure_magnified_amplitude, measure_motion_amplitude
)


def test_frames_are_opaque_grey():
    frames = generate_test_frames(3, 40, 30, radius=5.0, background=10, foreground=250)
    assert len(frames) == 3
    for frame in frames:
        pixels = frame.to_array()
        assert (frame.width, frame.height) == (40, 30)
        assert np.all(pixels[..., 3] == 255)
        assert np.array_equal(pixels[..., 0], pixels[..., 1])
        assert set(np.unique(pixels[..., 0])) == {10, 250}


def test_timestamps_follow_fps():
    frames = generate_test_frames(4, 8, 8, fps=10.0, radius=2.0)
    assert [f.timestamp for f in frames] == pytest.approx([0.0, 0.1, 0.2, 0.3])


def test_circle_oscillates():
    # quarter-period sampling puts the centre at +-3 px
    frames = generate_test_frames(8, 64, 32, amplitude=3.0, frequency=0.25, fps=1.0,
                                  radius=6.0)
    assert measure_motion_amplitude(frames) == pytest.approx(3.0, abs=0.5)
    assert measure_centroid_amplitude(frames) == pytest.approx(3.0, abs=0.3)


def test_gaussian_blob():
    frames = generate_test_frames(10, 64, 64, amplitude=2.0, frequency=0.5, fps=5.0,
                                  shape='gaussian', sigma=8.0, background=102, foreground=153)
    assert estimate_background(frames[0]) == 102
    assert 1.5 < measure_centroid_amplitude(frames) < 2.1


def test_invalid_arguments():
    with pytest.raises(ValueError):
        generate_test_frames(3, 8, 8, shape='square')
    with pytest.raises(ValueError):
        generate_test_frames(0, 8, 8)


def test_magnified_amplitude_of_identity_is_zero():
    frames = generate_test_frames(5, 32, 32, radius=5.0, background=20, foreground=200)
    assert measure_magnified_amplitude(frames, frames) == 0.0


def test_magnified_amplitude_of_shifted_copy():
    frames = generate_test_frames(2, 32, 32, amplitude=0.0, radius=4.0,
                                  background=0, foreground=200)
    shifted = Frame.from_array(np.roll(frames[1].to_array(), 2, axis=1))
    # one frame unchanged, the other moved 2 px right
    assert measure_magnified_amplitude(frames, [frames[0], shifted]) == pytest.approx(1.0)


def test_magnified_amplitude_length_mismatch():
    frames = generate_test_frames(3, 16, 16, radius=3.0)
    with pytest.raises(ValueError):
        measure_magnified_amplitude(frames, frames[:2])


def test_empty_signal():
    blank = Frame.from_array(np.zeros((8, 8, 4), dtype=np.uint8))
    with pytest.raises(ValueError):
        measure_centroid_amplitude([blank, blank], background=0)
