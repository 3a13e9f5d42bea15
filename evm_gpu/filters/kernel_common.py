"""
Shared kernel prelude and host storage helpers.

Textures are RGBA8 unorm: loads divide by 255, stores clamp to [0, 1] and
round to nearest (ties to even). Signed quantities are stored shifted as
``value * 0.5 + SHIFT_ZERO`` where SHIFT_ZERO is 0.5 as unorm8 represents it
(128/255), so a zero residual survives storage exactly.
"""

import numpy as np
from typing import Tuple

SHIFT_ZERO = 128.0 / 255.0

GAUSSIAN_WEIGHTS = np.array([0.06136, 0.24477, 0.38774, 0.24477, 0.06136], dtype=np.float32)

CUDA_PRELUDE = r'''
#define SHIFT_ZERO (128.0f / 255.0f)

__device__ __forceinline__ int clampi(int v, int lo, int hi) {
    return min(max(v, lo), hi);
}

__device__ __forceinline__ float4 load_unorm(const uchar4* tex, int x, int y, int w) {
    const uchar4 p = tex[y * w + x];
    return make_float4(p.x / 255.0f, p.y / 255.0f, p.z / 255.0f, p.w / 255.0f);
}

__device__ __forceinline__ unsigned char to_unorm8(float v) {
    return (unsigned char)__float2int_rn(__saturatef(v) * 255.0f);
}

__device__ __forceinline__ void store_unorm(uchar4* tex, int x, int y, int w, float4 c) {
    tex[y * w + x] = make_uchar4(to_unorm8(c.x), to_unorm8(c.y), to_unorm8(c.z), to_unorm8(c.w));
}

__device__ __forceinline__ float4 f4_add(float4 a, float4 b) {
    return make_float4(a.x + b.x, a.y + b.y, a.z + b.z, a.w + b.w);
}

__device__ __forceinline__ float4 f4_sub(float4 a, float4 b) {
    return make_float4(a.x - b.x, a.y - b.y, a.z - b.z, a.w - b.w);
}

__device__ __forceinline__ float4 f4_scale(float4 a, float s) {
    return make_float4(a.x * s, a.y * s, a.z * s, a.w * s);
}

__device__ __forceinline__ float4 f4_clamp(float4 a, float lo, float hi) {
    return make_float4(fminf(fmaxf(a.x, lo), hi), fminf(fmaxf(a.y, lo), hi),
                       fminf(fmaxf(a.z, lo), hi), fminf(fmaxf(a.w, lo), hi));
}

__device__ __forceinline__ float4 shift_signed(float4 v) {
    return make_float4(v.x * 0.5f + SHIFT_ZERO, v.y * 0.5f + SHIFT_ZERO,
                       v.z * 0.5f + SHIFT_ZERO, v.w * 0.5f + SHIFT_ZERO);
}

__device__ __forceinline__ float4 unshift_signed(float4 s) {
    return make_float4((s.x - SHIFT_ZERO) * 2.0f, (s.y - SHIFT_ZERO) * 2.0f,
                       (s.z - SHIFT_ZERO) * 2.0f, (s.w - SHIFT_ZERO) * 2.0f);
}

#define GLOBAL_COORDS                                           \
    const int x = blockIdx.x * blockDim.x + threadIdx.x;        \
    const int y = blockIdx.y * blockDim.y + threadIdx.y;
'''

# ===============================
# Host helpers
# ===============================


def load_unorm(texture: np.ndarray) -> np.ndarray:
    return texture.astype(np.float32) / np.float32(255.0)


def shift_signed(values: np.ndarray) -> np.ndarray:
    return values * np.float32(0.5) + np.float32(SHIFT_ZERO)


def unshift_signed(stored: np.ndarray) -> np.ndarray:
    return (stored - np.float32(SHIFT_ZERO)) * np.float32(2.0)


def covered_extent(shape: Tuple[int, ...], grid: Tuple[int, int]) -> Tuple[int, int]:
    """(rows, cols) of an output the 8x8 tile grid reaches"""
    height, width = shape[:2]
    return min(height, grid[1] * 8), min(width, grid[0] * 8)


def store_unorm(dst: np.ndarray, values: np.ndarray, grid: Tuple[int, int]) -> None:
    """Clamp, round and write the tiles the grid covers"""
    rows, cols = covered_extent(dst.shape, grid)
    quantized = np.rint(np.clip(values, 0.0, 1.0) * np.float32(255.0)).astype(np.uint8)
    dst[:rows, :cols] = quantized[:rows, :cols]


def clamped_indices(size: int, length: int, scale: int = 1, offset: int = 0) -> np.ndarray:
    """Source index ``i * scale + offset`` for each output index, clamped to the edge"""
    return np.clip(np.arange(length) * scale + offset, 0, size - 1)
