"""
Temporal filter kernels
~~~~~~~~~~~~~~~~~~~~~~~

Temporal-mean subtraction and motion amplification, plus their signed
variants used on Laplacian pyramid levels. The gain arrives through a
uniform buffer whose first float is the gain.
"""

import numpy as np

from ..core.gpu_kernels import KernelSource
from .kernel_common import (
    CUDA_PRELUDE, load_unorm, store_unorm, shift_signed, unshift_signed
)

TEMPORAL_KERNELS = CUDA_PRELUDE + r'''
extern "C" __global__
void subtract_mean(
    const uchar4* __restrict__ current, const int cur_w, const int cur_h,
    const uchar4* __restrict__ mean, const int mean_w, const int mean_h,
    uchar4* __restrict__ motion, const int dst_w, const int dst_h
) {
    GLOBAL_COORDS
    if (x >= dst_w || y >= dst_h) return;

    const float4 diff = f4_sub(load_unorm(current, x, y, cur_w), load_unorm(mean, x, y, mean_w));
    store_unorm(motion, x, y, dst_w, shift_signed(diff));
}

extern "C" __global__
void subtract_residual(
    const uchar4* __restrict__ current, const int cur_w, const int cur_h,
    const uchar4* __restrict__ mean, const int mean_w, const int mean_h,
    uchar4* __restrict__ motion, const int dst_w, const int dst_h
) {
    GLOBAL_COORDS
    if (x >= dst_w || y >= dst_h) return;

    const float4 diff = f4_sub(unshift_signed(load_unorm(current, x, y, cur_w)),
                               unshift_signed(load_unorm(mean, x, y, mean_w)));
    store_unorm(motion, x, y, dst_w, shift_signed(diff));
}

extern "C" __global__
void amplify(
    const uchar4* __restrict__ original, const int orig_w, const int orig_h,
    const uchar4* __restrict__ motion, const int motion_w, const int motion_h,
    uchar4* __restrict__ dst, const int dst_w, const int dst_h,
    const float* __restrict__ params
) {
    GLOBAL_COORDS
    if (x >= dst_w || y >= dst_h) return;

    const float gain = params[0];
    const float4 delta = unshift_signed(load_unorm(motion, x, y, motion_w));
    const float4 value = f4_add(load_unorm(original, x, y, orig_w), f4_scale(delta, gain));
    store_unorm(dst, x, y, dst_w, f4_clamp(value, 0.0f, 1.0f));
}

extern "C" __global__
void amplify_residual(
    const uchar4* __restrict__ residual, const int res_w, const int res_h,
    const uchar4* __restrict__ motion, const int motion_w, const int motion_h,
    uchar4* __restrict__ dst, const int dst_w, const int dst_h,
    const float* __restrict__ params
) {
    GLOBAL_COORDS
    if (x >= dst_w || y >= dst_h) return;

    const float gain = params[0];
    const float4 delta = unshift_signed(load_unorm(motion, x, y, motion_w));
    const float4 value = f4_add(unshift_signed(load_unorm(residual, x, y, res_w)),
                                f4_scale(delta, gain));
    store_unorm(dst, x, y, dst_w, shift_signed(value));
}
'''


def _gain(params: np.ndarray) -> np.float32:
    return params[:4].view(np.float32)[0]


def subtract_mean(current, mean, motion, grid):
    store_unorm(motion, shift_signed(load_unorm(current) - load_unorm(mean)), grid)


def subtract_residual(current, mean, motion, grid):
    diff = unshift_signed(load_unorm(current)) - unshift_signed(load_unorm(mean))
    store_unorm(motion, shift_signed(diff), grid)


def amplify(original, motion, dst, params, grid):
    value = load_unorm(original) + unshift_signed(load_unorm(motion)) * _gain(params)
    store_unorm(dst, value, grid)


def amplify_residual(residual, motion, dst, params, grid):
    value = unshift_signed(load_unorm(residual)) + unshift_signed(load_unorm(motion)) * _gain(params)
    store_unorm(dst, shift_signed(value), grid)


TEMPORAL_SOURCE = KernelSource(
    label='temporal_filters',
    code=TEMPORAL_KERNELS,
    entry_points=('subtract_mean', 'subtract_residual', 'amplify', 'amplify_residual'),
    host_kernels={
        'subtract_mean': subtract_mean,
        'subtract_residual': subtract_residual,
        'amplify': amplify,
        'amplify_residual': amplify_residual,
    },
)
