"""
EVM GPU shared type definitions
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
"""

import numpy as np
from dataclasses import dataclass
from typing import Union, Optional

# Raw pixel payloads accepted at the API boundary
PixelBuffer = Union[bytes, bytearray, memoryview, np.ndarray]


@dataclass(frozen=True)
class Frame:
    """One RGBA8 video frame (row-major, 4 bytes per pixel)"""

    width: int
    height: int
    data: bytes
    timestamp: Optional[float] = None

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Invalid frame size: {self.width}x{self.height}")
        expected = self.width * self.height * 4
        if len(self.data) != expected:
            raise ValueError(
                f"Frame data has {len(self.data)} bytes, expected {expected} "
                f"for {self.width}x{self.height} RGBA"
            )

    @classmethod
    def from_array(cls, pixels: np.ndarray, timestamp: Optional[float] = None) -> 'Frame':
        """Build from an (h, w, 4) uint8 array"""
        pixels = np.ascontiguousarray(pixels, dtype=np.uint8)
        if pixels.ndim != 3 or pixels.shape[2] != 4:
            raise ValueError(f"Expected (h, w, 4) array, got {pixels.shape}")
        height, width = pixels.shape[:2]
        return cls(width=width, height=height, data=pixels.tobytes(), timestamp=timestamp)

    def to_array(self) -> np.ndarray:
        """(h, w, 4) uint8 view of the pixels"""
        return np.frombuffer(self.data, dtype=np.uint8).reshape(self.height, self.width, 4)
