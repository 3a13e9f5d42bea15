"""
Filter kernel manager
~~~~~~~~~~~~~~~~~~~~~

Compiles the spatial and temporal modules once per device context, builds
their layouts and pipelines, and records dispatches onto a CommandEncoder.
"""

import numpy as np
import logging
from typing import Dict, Optional, TYPE_CHECKING

from ..core.gpu_kernels import (
    BindGroupLayoutEntry, BindingKind, CommandEncoder, ComputePipeline,
    compile_shader, create_bind_group, create_bind_group_layout, create_pipeline
)
from ..core.gpu_memory import (
    Buffer, Texture, BufferUsage, TextureFormat, TextureUsage,
    create_buffer, create_texture, upload_buffer
)
from .spatial_filters_gpu import SPATIAL_SOURCE
from .temporal_filters_gpu import TEMPORAL_SOURCE

if TYPE_CHECKING:
    from ..core.gpu_utils import DeviceContext

logger = logging.getLogger('evm_gpu.filters')

# Textures written by one kernel and read by the next
INTERMEDIATE_USAGE = TextureUsage.STORAGE | TextureUsage.SAMPLED

UNIFORM_SIZE = 16


class FilterKernels:
    """
    Kernel manager for one DeviceContext.

    Compilation happens in the constructor, so ShaderCompilationError
    surfaces before any frame is touched.
    """

    def __init__(self, ctx: 'DeviceContext'):
        self.context = ctx
        self.pipelines: Dict[str, ComputePipeline] = {}
        self._gain_buffers: Dict[float, Buffer] = {}

        spatial = compile_shader(ctx, SPATIAL_SOURCE)
        temporal = compile_shader(ctx, TEMPORAL_SOURCE)

        sampled = BindingKind.SAMPLED_TEXTURE
        storage = BindingKind.STORAGE_TEXTURE
        rgba8 = TextureFormat.RGBA8

        self.unary_layout = create_bind_group_layout(ctx, [
            BindGroupLayoutEntry(0, sampled),
            BindGroupLayoutEntry(1, storage, format=rgba8),
        ], label='unary')
        self.binary_layout = create_bind_group_layout(ctx, [
            BindGroupLayoutEntry(0, sampled),
            BindGroupLayoutEntry(1, sampled),
            BindGroupLayoutEntry(2, storage, format=rgba8),
        ], label='binary')
        self.gain_layout = create_bind_group_layout(ctx, [
            BindGroupLayoutEntry(0, sampled),
            BindGroupLayoutEntry(1, sampled),
            BindGroupLayoutEntry(2, storage, format=rgba8),
            BindGroupLayoutEntry(3, BindingKind.UNIFORM_BUFFER),
        ], label='gain')

        for name in ('gaussian_blur_x', 'gaussian_blur_y', 'downsample_box', 'upsample_nearest'):
            self.pipelines[name] = create_pipeline(ctx, spatial, name, self.unary_layout)
        for name in ('laplacian_diff', 'laplacian_reconstruct'):
            self.pipelines[name] = create_pipeline(ctx, spatial, name, self.binary_layout)
        for name in ('subtract_mean', 'subtract_residual'):
            self.pipelines[name] = create_pipeline(ctx, temporal, name, self.binary_layout)
        for name in ('amplify', 'amplify_residual'):
            self.pipelines[name] = create_pipeline(ctx, temporal, name, self.gain_layout)

        logger.debug(f"Filter pipelines ready: {sorted(self.pipelines)}")

    # ===============================
    # Resources
    # ===============================

    def create_intermediate(self, width: int, height: int, label: str,
                            extra_usage: Optional[TextureUsage] = None) -> Texture:
        usage = INTERMEDIATE_USAGE if extra_usage is None else INTERMEDIATE_USAGE | extra_usage
        return create_texture(self.context, width, height, TextureFormat.RGBA8, usage, label=label)

    def gain_buffer(self, gain: float) -> Buffer:
        """Uniform buffer holding ``gain``; one per distinct value"""
        key = float(gain)
        buffer = self._gain_buffers.get(key)
        if buffer is None or buffer.destroyed:
            buffer = create_buffer(self.context, UNIFORM_SIZE,
                                   BufferUsage.UNIFORM | BufferUsage.COPY_DST,
                                   label=f"gain-{key:g}")
            params = np.zeros(UNIFORM_SIZE // 4, dtype=np.float32)
            params[0] = key
            upload_buffer(self.context, buffer, params)
            self._gain_buffers[key] = buffer
        return buffer

    def release(self) -> None:
        for buffer in self._gain_buffers.values():
            buffer.destroy()
        self._gain_buffers.clear()

    # ===============================
    # Encoders
    # ===============================

    def _unary(self, encoder: CommandEncoder, name: str, src: Texture, dst: Texture) -> None:
        group = create_bind_group(self.context, self.unary_layout, {0: src, 1: dst})
        encoder.dispatch(self.pipelines[name], group)

    def _binary(self, encoder: CommandEncoder, name: str,
                a: Texture, b: Texture, dst: Texture) -> None:
        if (a.width, a.height) != (dst.width, dst.height) or (b.width, b.height) != (dst.width, dst.height):
            raise ValueError(f"{name} needs equally sized textures")
        group = create_bind_group(self.context, self.binary_layout, {0: a, 1: b, 2: dst})
        encoder.dispatch(self.pipelines[name], group)

    def _gained(self, encoder: CommandEncoder, name: str,
                base: Texture, motion: Texture, dst: Texture, gain: float) -> None:
        if (base.width, base.height) != (dst.width, dst.height) or (motion.width, motion.height) != (dst.width, dst.height):
            raise ValueError(f"{name} needs equally sized textures")
        group = create_bind_group(self.context, self.gain_layout,
                                  {0: base, 1: motion, 2: dst, 3: self.gain_buffer(gain)})
        encoder.dispatch(self.pipelines[name], group)

    def encode_gaussian_blur(self, encoder: CommandEncoder,
                             src: Texture, temp: Texture, dst: Texture) -> None:
        """Horizontal pass into ``temp``, vertical pass into ``dst``"""
        self._unary(encoder, 'gaussian_blur_x', src, temp)
        self._unary(encoder, 'gaussian_blur_y', temp, dst)

    def encode_downsample(self, encoder: CommandEncoder, src: Texture, dst: Texture) -> None:
        if (dst.width, dst.height) != half_size(src.width, src.height):
            raise ValueError(f"Downsample of {src!r} needs a half-size target, got {dst!r}")
        self._unary(encoder, 'downsample_box', src, dst)

    def encode_upsample(self, encoder: CommandEncoder, src: Texture, dst: Texture) -> None:
        self._unary(encoder, 'upsample_nearest', src, dst)

    def encode_laplacian_diff(self, encoder, fine, coarse_up, dst):
        self._binary(encoder, 'laplacian_diff', fine, coarse_up, dst)

    def encode_reconstruct(self, encoder, residual, coarse_up, dst):
        self._binary(encoder, 'laplacian_reconstruct', residual, coarse_up, dst)

    def encode_subtract_mean(self, encoder, current, mean, dst):
        self._binary(encoder, 'subtract_mean', current, mean, dst)

    def encode_subtract_residual(self, encoder, current, mean, dst):
        self._binary(encoder, 'subtract_residual', current, mean, dst)

    def encode_amplify(self, encoder, original, motion, dst, gain):
        self._gained(encoder, 'amplify', original, motion, dst, gain)

    def encode_amplify_residual(self, encoder, residual, motion, dst, gain):
        self._gained(encoder, 'amplify_residual', residual, motion, dst, gain)


def half_size(width: int, height: int):
    return (width + 1) // 2, (height + 1) // 2
