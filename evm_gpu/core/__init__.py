"""
EVM GPU Core Components
~~~~~~~~~~~~~~~~~~~~~~~

Device context, resource layer and shader/pipeline builder.

Components:
    - DeviceContext: per-batch device, queue and resource registry
    - Buffer / Texture: typed resources with validated usage sets
    - ShaderModule / ComputePipeline / BindGroup: kernel plumbing
"""

from .gpu_utils import (
    DeviceStatus,
    DeviceBackend,
    DeviceContext,
    Queue,
    probe_capability,
    acquire,
    release,
    resolve_backend,
    auto_select_device,
    get_gpu_info,
)

from .gpu_memory import (
    BufferUsage,
    TextureUsage,
    TextureFormat,
    Buffer,
    Texture,
    MemoryInfo,
    GPUMemoryManager,
    create_buffer,
    upload_buffer,
    download_buffer,
    create_texture,
    upload_texture,
    download_texture,
    get_memory_summary,
)

from .gpu_kernels import (
    WORKGROUP_SIZE,
    KernelSource,
    ShaderModule,
    ShaderStage,
    BindingKind,
    BindGroupLayoutEntry,
    BindGroupLayout,
    ComputePipeline,
    BindGroup,
    CommandEncoder,
    CommandBuffer,
    compile_shader,
    create_bind_group_layout,
    create_pipeline,
    create_bind_group,
    workgroup_count,
)

__all__ = [
    # Device
    'DeviceStatus',
    'DeviceBackend',
    'DeviceContext',
    'Queue',
    'probe_capability',
    'acquire',
    'release',
    'resolve_backend',
    'auto_select_device',
    'get_gpu_info',

    # Resources
    'BufferUsage',
    'TextureUsage',
    'TextureFormat',
    'Buffer',
    'Texture',
    'MemoryInfo',
    'GPUMemoryManager',
    'create_buffer',
    'upload_buffer',
    'download_buffer',
    'create_texture',
    'upload_texture',
    'download_texture',
    'get_memory_summary',

    # Kernels
    'WORKGROUP_SIZE',
    'KernelSource',
    'ShaderModule',
    'ShaderStage',
    'BindingKind',
    'BindGroupLayoutEntry',
    'BindGroupLayout',
    'ComputePipeline',
    'BindGroup',
    'CommandEncoder',
    'CommandBuffer',
    'compile_shader',
    'create_bind_group_layout',
    'create_pipeline',
    'create_bind_group',
    'workgroup_count',
]

import logging
logger = logging.getLogger('evm_gpu.core')
logger.debug("EVM GPU core initialized")
