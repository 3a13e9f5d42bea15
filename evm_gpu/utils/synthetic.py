"""
Synthetic test clips
~~~~~~~~~~~~~~~~~~~~

Frames with a shape oscillating sinusoidally along x, and two ways of
measuring how far it moves: the brightest-pixel track and the intensity
centroid. The centroid method stays linear in the gain as long as nothing
clips, which makes it the one to use for checking amplification.
"""

import numpy as np
from typing import List, Optional, Sequence

from ..types import Frame

SHAPES = ('circle', 'gaussian')


def generate_test_frames(frame_count: int,
                         width: int,
                         height: int,
                         amplitude: float = 2.0,
                         frequency: float = 0.3,
                         fps: float = 15.0,
                         shape: str = 'circle',
                         radius: float = 20.0,
                         sigma: float = 8.0,
                         background: int = 0,
                         foreground: int = 255) -> List[Frame]:
    """
    Generate a clip with a shape oscillating along x.

    Parameters
    ----------
    frame_count : int
        Number of frames
    width, height : int
        Frame size
    amplitude : float, default=2.0
        Oscillation amplitude in pixels
    frequency : float, default=0.3
        Oscillation frequency in Hz (0.3 Hz ~ 18 breaths per minute)
    fps : float, default=15.0
        Frame rate; frame t has timestamp t / fps
    shape : {'circle', 'gaussian'}
        Hard-edged disc of ``radius`` or a Gaussian blob of ``sigma``
    background, foreground : int
        Grey levels of the background and of the shape's peak

    Returns
    -------
    list of Frame
        Opaque grey RGBA frames
    """
    if shape not in SHAPES:
        raise ValueError(f"Unknown shape '{shape}', expected one of {SHAPES}")
    if frame_count <= 0:
        raise ValueError(f"frame_count must be positive, got {frame_count}")

    ys, xs = np.mgrid[0:height, 0:width].astype(np.float64)
    cy = height / 2.0
    frames = []

    for t in range(frame_count):
        time_s = t / fps
        cx = width / 2.0 + amplitude * np.sin(2 * np.pi * frequency * time_s)
        dist_sq = (xs - cx) ** 2 + (ys - cy) ** 2

        if shape == 'circle':
            grey = np.where(dist_sq < radius ** 2, foreground, background)
        else:
            grey = background + (foreground - background) * np.exp(-dist_sq / (2 * sigma ** 2))

        pixels = np.empty((height, width, 4), dtype=np.uint8)
        pixels[..., :3] = np.clip(np.rint(grey), 0, 255).astype(np.uint8)[..., None]
        pixels[..., 3] = 255
        frames.append(Frame.from_array(pixels, timestamp=time_s))

    return frames


def _red(frame: Frame) -> np.ndarray:
    return frame.to_array()[..., 0].astype(np.float64)


def measure_motion_amplitude(frames: Sequence[Frame]) -> float:
    """Half the peak-to-peak x travel of the brightest pixel (first in raster order)"""
    xs = []
    for frame in frames:
        red = frame.to_array()[..., 0]
        xs.append(int(np.argmax(red)) % frame.width)
    return (max(xs) - min(xs)) / 2.0


def estimate_background(frame: Frame) -> int:
    """Most frequent red level"""
    return int(np.argmax(np.bincount(frame.to_array()[..., 0].ravel(), minlength=256)))


def _moments(frame: Frame, background: float):
    signal = _red(frame) - background
    xs = np.arange(frame.width, dtype=np.float64)
    return signal.sum(), (signal * xs[None, :]).sum()


def measure_centroid_amplitude(frames: Sequence[Frame], background: Optional[float] = None) -> float:
    """Half the peak-to-peak x travel of the background-subtracted intensity centroid"""
    if background is None:
        background = estimate_background(frames[0])
    centroids = []
    for frame in frames:
        mass, moment = _moments(frame, background)
        if mass == 0:
            raise ValueError("Frame has no signal above the background")
        centroids.append(moment / mass)
    return (max(centroids) - min(centroids)) / 2.0


def measure_magnified_amplitude(original: Sequence[Frame],
                                magnified: Sequence[Frame],
                                background: Optional[float] = None) -> float:
    """
    Displacement the magnification added, in pixels.

    For each frame the first moment of the magnified image minus that of
    the original is divided by the mean mass of the originals; the result
    is half the peak-to-peak of that series. For a linear (unclipped)
    magnification with gain g this is ``g`` times the centroid amplitude of
    the originals, and 0 for the identity.
    """
    if len(original) != len(magnified):
        raise ValueError(f"{len(original)} originals but {len(magnified)} magnified frames")
    if background is None:
        background = estimate_background(original[0])

    masses = []
    added = []
    for before, after in zip(original, magnified):
        mass_in, moment_in = _moments(before, background)
        _, moment_out = _moments(after, background)
        masses.append(mass_in)
        added.append(moment_out - moment_in)

    mean_mass = float(np.mean(masses))
    if mean_mass == 0:
        raise ValueError("Clip has no signal above the background")
    shifts = np.asarray(added) / mean_mass
    return float(shifts.max() - shifts.min()) / 2.0
