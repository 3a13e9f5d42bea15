"""
Spatial filter kernels
~~~~~~~~~~~~~~~~~~~~~~

Separable 5-tap Gaussian blur, 2x2 box downsample, nearest-neighbour
upsample, and the Laplacian difference / reconstruction pair. Each kernel
ships as CUDA C and as a NumPy reference with identical storage rules.
"""

import numpy as np
from typing import Tuple
from scipy import ndimage

from ..core.gpu_kernels import KernelSource
from .kernel_common import (
    CUDA_PRELUDE, GAUSSIAN_WEIGHTS, load_unorm, store_unorm,
    shift_signed, unshift_signed, clamped_indices
)

# ===============================
# CUDA Source
# ===============================

SPATIAL_KERNELS = CUDA_PRELUDE + r'''
__constant__ float GAUSS_WEIGHTS[5] = {0.06136f, 0.24477f, 0.38774f, 0.24477f, 0.06136f};

extern "C" __global__
void gaussian_blur_x(
    const uchar4* __restrict__ src, const int src_w, const int src_h,
    uchar4* __restrict__ dst, const int dst_w, const int dst_h
) {
    GLOBAL_COORDS
    if (x >= dst_w || y >= dst_h) return;

    float4 acc = make_float4(0.0f, 0.0f, 0.0f, 0.0f);
    for (int i = -2; i <= 2; ++i) {
        const int sx = clampi(x + i, 0, src_w - 1);
        acc = f4_add(acc, f4_scale(load_unorm(src, sx, y, src_w), GAUSS_WEIGHTS[i + 2]));
    }
    store_unorm(dst, x, y, dst_w, acc);
}

extern "C" __global__
void gaussian_blur_y(
    const uchar4* __restrict__ src, const int src_w, const int src_h,
    uchar4* __restrict__ dst, const int dst_w, const int dst_h
) {
    GLOBAL_COORDS
    if (x >= dst_w || y >= dst_h) return;

    float4 acc = make_float4(0.0f, 0.0f, 0.0f, 0.0f);
    for (int i = -2; i <= 2; ++i) {
        const int sy = clampi(y + i, 0, src_h - 1);
        acc = f4_add(acc, f4_scale(load_unorm(src, x, sy, src_w), GAUSS_WEIGHTS[i + 2]));
    }
    store_unorm(dst, x, y, dst_w, acc);
}

extern "C" __global__
void downsample_box(
    const uchar4* __restrict__ src, const int src_w, const int src_h,
    uchar4* __restrict__ dst, const int dst_w, const int dst_h
) {
    GLOBAL_COORDS
    if (x >= dst_w || y >= dst_h) return;

    const int x0 = clampi(2 * x, 0, src_w - 1);
    const int x1 = clampi(2 * x + 1, 0, src_w - 1);
    const int y0 = clampi(2 * y, 0, src_h - 1);
    const int y1 = clampi(2 * y + 1, 0, src_h - 1);

    float4 acc = f4_add(load_unorm(src, x0, y0, src_w), load_unorm(src, x1, y0, src_w));
    acc = f4_add(acc, load_unorm(src, x0, y1, src_w));
    acc = f4_add(acc, load_unorm(src, x1, y1, src_w));
    store_unorm(dst, x, y, dst_w, f4_scale(acc, 0.25f));
}

extern "C" __global__
void upsample_nearest(
    const uchar4* __restrict__ src, const int src_w, const int src_h,
    uchar4* __restrict__ dst, const int dst_w, const int dst_h
) {
    GLOBAL_COORDS
    if (x >= dst_w || y >= dst_h) return;

    const int sx = clampi(x / 2, 0, src_w - 1);
    const int sy = clampi(y / 2, 0, src_h - 1);
    dst[y * dst_w + x] = src[sy * src_w + sx];
}

extern "C" __global__
void laplacian_diff(
    const uchar4* __restrict__ fine, const int fine_w, const int fine_h,
    const uchar4* __restrict__ coarse_up, const int up_w, const int up_h,
    uchar4* __restrict__ dst, const int dst_w, const int dst_h
) {
    GLOBAL_COORDS
    if (x >= dst_w || y >= dst_h) return;

    const float4 diff = f4_sub(load_unorm(fine, x, y, fine_w), load_unorm(coarse_up, x, y, up_w));
    store_unorm(dst, x, y, dst_w, shift_signed(diff));
}

extern "C" __global__
void laplacian_reconstruct(
    const uchar4* __restrict__ residual, const int res_w, const int res_h,
    const uchar4* __restrict__ coarse_up, const int up_w, const int up_h,
    uchar4* __restrict__ dst, const int dst_w, const int dst_h
) {
    GLOBAL_COORDS
    if (x >= dst_w || y >= dst_h) return;

    const float4 value = f4_add(unshift_signed(load_unorm(residual, x, y, res_w)),
                                load_unorm(coarse_up, x, y, up_w));
    store_unorm(dst, x, y, dst_w, f4_clamp(value, 0.0f, 1.0f));
}
'''

# ===============================
# Host Reference
# ===============================


def _gaussian_blur(src: np.ndarray, dst: np.ndarray, grid: Tuple[int, int], axis: int) -> None:
    blurred = ndimage.correlate1d(load_unorm(src), GAUSSIAN_WEIGHTS, axis=axis, mode='nearest')
    store_unorm(dst, blurred, grid)


def gaussian_blur_x(src, dst, grid):
    _gaussian_blur(src, dst, grid, axis=1)


def gaussian_blur_y(src, dst, grid):
    _gaussian_blur(src, dst, grid, axis=0)


def downsample_box(src, dst, grid):
    src_h, src_w = src.shape[:2]
    dst_h, dst_w = dst.shape[:2]
    ys0 = clamped_indices(src_h, dst_h, scale=2)
    ys1 = clamped_indices(src_h, dst_h, scale=2, offset=1)
    xs0 = clamped_indices(src_w, dst_w, scale=2)
    xs1 = clamped_indices(src_w, dst_w, scale=2, offset=1)

    values = load_unorm(src)
    acc = (values[np.ix_(ys0, xs0)] + values[np.ix_(ys0, xs1)]
           + values[np.ix_(ys1, xs0)] + values[np.ix_(ys1, xs1)])
    store_unorm(dst, acc * np.float32(0.25), grid)


def upsample_nearest(src, dst, grid):
    src_h, src_w = src.shape[:2]
    dst_h, dst_w = dst.shape[:2]
    ys = np.minimum(np.arange(dst_h) // 2, src_h - 1)
    xs = np.minimum(np.arange(dst_w) // 2, src_w - 1)
    store_unorm(dst, load_unorm(src)[np.ix_(ys, xs)], grid)


def laplacian_diff(fine, coarse_up, dst, grid):
    store_unorm(dst, shift_signed(load_unorm(fine) - load_unorm(coarse_up)), grid)


def laplacian_reconstruct(residual, coarse_up, dst, grid):
    value = unshift_signed(load_unorm(residual)) + load_unorm(coarse_up)
    store_unorm(dst, value, grid)


SPATIAL_SOURCE = KernelSource(
    label='spatial_filters',
    code=SPATIAL_KERNELS,
    entry_points=(
        'gaussian_blur_x',
        'gaussian_blur_y',
        'downsample_box',
        'upsample_nearest',
        'laplacian_diff',
        'laplacian_reconstruct',
    ),
    host_kernels={
        'gaussian_blur_x': gaussian_blur_x,
        'gaussian_blur_y': gaussian_blur_y,
        'downsample_box': downsample_box,
        'upsample_nearest': upsample_nearest,
        'laplacian_diff': laplacian_diff,
        'laplacian_reconstruct': laplacian_reconstruct,
    },
)
