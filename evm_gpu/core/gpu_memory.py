"""
GPU Resource Layer
~~~~~~~~~~~~~~~~~~

Typed buffers and textures with usage sets validated at construction, a
named allocation budget, and the upload / staged-readback paths.
"""

import numpy as np
import logging
import gc
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum, Flag, auto
from typing import Dict, Optional, Union, Any, TYPE_CHECKING
import psutil

from ..errors import AllocationError, ReadbackError, DeviceLostError
from ..types import PixelBuffer
from .gpu_utils import handle_gpu_errors

if TYPE_CHECKING:
    from .gpu_utils import DeviceBackend, DeviceContext

logger = logging.getLogger('evm_gpu.core.memory')

# ===============================
# Usage Sets and Formats
# ===============================


class BufferUsage(Flag):
    STORAGE = auto()
    COPY_SRC = auto()
    COPY_DST = auto()
    UNIFORM = auto()
    MAP_READ = auto()


class TextureUsage(Flag):
    STORAGE = auto()
    COPY_SRC = auto()
    COPY_DST = auto()
    SAMPLED = auto()
    RENDER_TARGET = auto()


class TextureFormat(Enum):
    """Pixel formats: (wire name, channels, numpy dtype)"""

    RGBA8 = ('rgba8unorm', 4, np.uint8)
    R32F = ('r32float', 1, np.float32)
    RG32F = ('rg32float', 2, np.float32)
    RGBA16F = ('rgba16float', 4, np.float16)

    def __init__(self, wire_name: str, channels: int, dtype: type):
        self.wire_name = wire_name
        self.channels = channels
        self.dtype = np.dtype(dtype)

    @property
    def bytes_per_pixel(self) -> int:
        return self.channels * self.dtype.itemsize


def validate_buffer_usage(usage: BufferUsage) -> BufferUsage:
    if not isinstance(usage, BufferUsage):
        raise TypeError(f"Buffer usage must be BufferUsage, got {type(usage).__name__}")
    if not usage:
        raise ValueError("Buffer usage set is empty")
    if BufferUsage.MAP_READ in usage and usage & ~(BufferUsage.MAP_READ | BufferUsage.COPY_DST):
        raise ValueError(f"MAP_READ can only be combined with COPY_DST, got {usage}")
    return usage


def validate_texture_usage(usage: TextureUsage) -> TextureUsage:
    if not isinstance(usage, TextureUsage):
        raise TypeError(f"Texture usage must be TextureUsage, got {type(usage).__name__}")
    if not usage:
        raise ValueError("Texture usage set is empty")
    return usage

# ===============================
# Data Classes
# ===============================


@dataclass
class MemoryInfo:
    """Memory figures in bytes"""
    total: int
    used: int
    free: int

    @property
    def used_gb(self) -> float:
        return self.used / 1024**3

    @property
    def free_gb(self) -> float:
        return self.free / 1024**3

    @property
    def total_gb(self) -> float:
        return self.total / 1024**3

    @property
    def usage_percent(self) -> float:
        return (self.used / self.total) * 100 if self.total > 0 else 0

# ===============================
# Resources
# ===============================


class _Resource:
    kind = 'resource'

    def __init__(self, ctx: 'DeviceContext', native: Any, nbytes: int, label: str):
        self.context = ctx
        self.native = native
        self.nbytes = nbytes
        self.label = label
        self.allocation_name = f"{label}#{id(self):x}"
        self._destroyed = False
        self._lock = threading.Lock()

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def destroy(self) -> None:
        """Free the native allocation. Safe to call twice."""
        with self._lock:
            if self._destroyed:
                return
            self._destroyed = True
        self.context.backend.free(self.native)
        self.native = None
        self.context.memory_manager.free(self.allocation_name)
        self.context.untrack(self)

    def ensure_alive(self) -> None:
        if self._destroyed:
            raise DeviceLostError(f"{self.kind} '{self.label}' has been destroyed")


class Buffer(_Resource):
    kind = 'buffer'

    def __init__(self, ctx, native, size: int, usage: BufferUsage, label: str):
        super().__init__(ctx, native, size, label)
        self.size = size
        self.usage = usage

    def __repr__(self) -> str:
        return f"Buffer({self.label!r}, size={self.size}, usage={self.usage})"


class Texture(_Resource):
    kind = 'texture'

    def __init__(self, ctx, native, width: int, height: int,
                 format: TextureFormat, usage: TextureUsage, label: str):
        super().__init__(ctx, native, width * height * format.bytes_per_pixel, label)
        self.width = width
        self.height = height
        self.format = format
        self.usage = usage

    def __repr__(self) -> str:
        return (f"Texture({self.label!r}, {self.width}x{self.height}, "
                f"{self.format.wire_name}, usage={self.usage})")

# ===============================
# GPU Memory Manager
# ===============================


class GPUMemoryManager:
    """
    Named allocation budget for one device context.

    Allocations are refused once the tracked total would exceed the budget,
    which is either ``max_memory_gb`` or the device memory minus a reserve.
    """

    def __init__(self,
                 backend: 'DeviceBackend',
                 max_memory_gb: Optional[float] = None,
                 reserve_percent: float = 10.0):
        """
        Parameters
        ----------
        backend : DeviceBackend
            Backend queried for memory figures
        max_memory_gb : float, optional
            Hard budget. None uses the device memory minus the reserve
        reserve_percent : float, default=10.0
            Share of device memory left untouched
        """
        self.backend = backend
        self.device_type = backend.name
        self.max_memory_gb = max_memory_gb
        self.reserve_percent = reserve_percent
        self._allocations: Dict[str, int] = {}
        self._lock = threading.Lock()

        free_mem, total_mem = backend.memory_info()
        self.total_memory = total_mem
        usable = int(total_mem * (1 - reserve_percent / 100))
        if max_memory_gb is None:
            self.max_memory = usable
        else:
            self.max_memory = int(min(max_memory_gb * 1024**3, usable))

        logger.debug(
            f"{self.device_type} memory budget: {self.max_memory/1024**3:.2f} GB "
            f"of {self.total_memory/1024**3:.1f} GB"
        )

    def get_memory_info(self) -> MemoryInfo:
        free_mem, total_mem = self.backend.memory_info()
        return MemoryInfo(total=total_mem, used=total_mem - free_mem, free=free_mem)

    @property
    def allocated_bytes(self) -> int:
        with self._lock:
            return sum(self._allocations.values())

    def allocate(self, size_bytes: int, name: str) -> bool:
        """
        Reserve budget for a named allocation

        Returns
        -------
        bool
            False when the budget would be exceeded
        """
        with self._lock:
            total_allocated = sum(self._allocations.values())
            available = self.max_memory - total_allocated
            if size_bytes > available:
                logger.warning(
                    f"Memory allocation failed: requested {size_bytes/1024**2:.2f} MB, "
                    f"available {available/1024**2:.2f} MB"
                )
                return False
            self._allocations[name] = size_bytes
        return True

    def free(self, name: str) -> None:
        with self._lock:
            self._allocations.pop(name, None)

    def estimate_frames_in_flight(self, bytes_per_frame: int, limit: int) -> int:
        """How many per-frame resource sets fit the remaining budget, capped at ``limit``"""
        available = self.max_memory - self.allocated_bytes
        return max(1, min(limit, int(available * 0.8) // max(1, bytes_per_frame)))

    def clear_cache(self) -> None:
        self.backend.clear_cache()
        gc.collect()

    def get_allocation_summary(self) -> str:
        mem_info = self.get_memory_info()
        with self._lock:
            allocations = dict(self._allocations)

        summary = [
            f"\n{'='*50}",
            f"Memory Status ({self.device_type.upper()})",
            f"{'='*50}",
            f"Total Memory: {mem_info.total_gb:.1f} GB",
            f"Used Memory: {mem_info.used_gb:.1f} GB ({mem_info.usage_percent:.1f}%)",
            f"Budget: {self.max_memory/1024**3:.2f} GB",
            f"Live allocations: {len(allocations)} "
            f"({sum(allocations.values())/1024**2:.2f} MB)",
        ]
        for name, size in sorted(allocations.items(), key=lambda x: x[1], reverse=True)[:10]:
            summary.append(f"  {name}: {size/1024**2:.2f} MB")
        summary.append(f"{'='*50}\n")
        return '\n'.join(summary)

# ===============================
# Buffer Operations
# ===============================


@handle_gpu_errors
def _allocate_native(ctx: 'DeviceContext', nbytes: int, name: str, allocator, *args) -> Any:
    if not ctx.memory_manager.allocate(nbytes, name):
        raise AllocationError(
            f"Allocation of {nbytes} bytes exceeds the memory budget", name=name
        )
    try:
        return allocator(*args)
    except BaseException:
        ctx.memory_manager.free(name)
        raise


def _as_bytes_array(data: PixelBuffer) -> np.ndarray:
    if isinstance(data, np.ndarray):
        return np.ascontiguousarray(data).view(np.uint8).reshape(-1)
    return np.frombuffer(data, dtype=np.uint8)


def create_buffer(ctx: 'DeviceContext',
                  size_bytes: int,
                  usage: BufferUsage,
                  label: Optional[str] = None) -> Buffer:
    """
    Allocate a device buffer

    Raises
    ------
    AllocationError
        Zero or negative size, budget exceeded, or device rejection
    """
    ctx.ensure_ready()
    usage = validate_buffer_usage(usage)
    if size_bytes <= 0:
        raise AllocationError(f"Invalid buffer size: {size_bytes}")

    label = label or 'buffer'
    buffer = Buffer(ctx, None, size_bytes, usage, label)
    buffer.native = _allocate_native(
        ctx, size_bytes, buffer.allocation_name,
        ctx.backend.allocate_buffer, size_bytes, BufferUsage.MAP_READ in usage
    )
    ctx.track(buffer)
    return buffer


def upload_buffer(ctx: 'DeviceContext', buffer: Buffer, data: PixelBuffer, offset: int = 0) -> None:
    """Enqueue a host-to-device copy; returns without waiting"""
    buffer.ensure_alive()
    if BufferUsage.COPY_DST not in buffer.usage:
        raise ValueError(f"{buffer!r} lacks COPY_DST usage")
    payload = _as_bytes_array(data)
    if offset < 0 or offset + payload.size > buffer.size:
        raise ValueError(
            f"Upload of {payload.size} bytes at offset {offset} overflows {buffer!r}"
        )
    ctx.queue.write_buffer(buffer.native, offset, payload)


def _finish_readback(ctx: 'DeviceContext', staging: Buffer, mapped: 'Future[bytes]',
                     label: str) -> 'Future[bytes]':
    result: 'Future[bytes]' = Future()

    def _on_mapped(mapped_future):
        staging.destroy()
        if result.done():
            return
        if mapped_future.cancelled():
            result.set_exception(ReadbackError(f"Readback of {label} was cancelled"))
            return
        error = mapped_future.exception()
        if error is not None:
            readback_error = ReadbackError(f"Readback of {label} failed: {error}")
            readback_error.__cause__ = error
            result.set_exception(readback_error)
        else:
            result.set_result(mapped_future.result())

    def _on_result(result_future):
        # a cancelled readback abandons the mapping and frees the staging buffer
        if result_future.cancelled():
            mapped.cancel()
            staging.destroy()

    mapped.add_done_callback(_on_mapped)
    result.add_done_callback(_on_result)
    return result


def _staged_readback(ctx: 'DeviceContext', source: Union[Buffer, 'Texture'],
                     size_bytes: int) -> 'Future[bytes]':
    from .gpu_kernels import CommandEncoder

    staging = create_buffer(ctx, size_bytes, BufferUsage.COPY_DST | BufferUsage.MAP_READ,
                            label=f"{source.label}-staging")
    try:
        encoder = CommandEncoder(ctx)
        if isinstance(source, Texture):
            encoder.copy_texture_to_buffer(source, staging)
        else:
            encoder.copy_buffer_to_buffer(source, staging, size_bytes)
        ctx.queue.submit([encoder.finish()])
        ctx.ensure_ready()
        mapped = ctx.backend.map_read(staging.native, size_bytes)
    except BaseException:
        staging.destroy()
        raise
    return _finish_readback(ctx, staging, mapped, source.label)


def download_buffer(ctx: 'DeviceContext', buffer: Buffer, size_bytes: int) -> 'Future[bytes]':
    """
    Read ``size_bytes`` from the start of ``buffer`` back to the host.

    A staging buffer (COPY_DST | MAP_READ) receives a device copy, is mapped
    asynchronously, copied out, unmapped and destroyed.
    """
    buffer.ensure_alive()
    if BufferUsage.COPY_SRC not in buffer.usage:
        raise ValueError(f"{buffer!r} lacks COPY_SRC usage")
    if size_bytes <= 0 or size_bytes > buffer.size:
        raise ValueError(f"Invalid readback size {size_bytes} for {buffer!r}")
    return _staged_readback(ctx, buffer, size_bytes)

# ===============================
# Texture Operations
# ===============================


def create_texture(ctx: 'DeviceContext',
                   width: int,
                   height: int,
                   format: TextureFormat,
                   usage: TextureUsage,
                   label: Optional[str] = None) -> Texture:
    """Allocate a 2D texture"""
    ctx.ensure_ready()
    usage = validate_texture_usage(usage)
    if not isinstance(format, TextureFormat):
        raise TypeError(f"Texture format must be TextureFormat, got {type(format).__name__}")
    if width <= 0 or height <= 0:
        raise AllocationError(f"Invalid texture size: {width}x{height}")

    label = label or 'texture'
    texture = Texture(ctx, None, width, height, format, usage, label)
    texture.native = _allocate_native(
        ctx, texture.nbytes, texture.allocation_name,
        ctx.backend.allocate_texture, width, height, format.channels, format.dtype
    )
    ctx.track(texture)
    return texture


def upload_texture(ctx: 'DeviceContext', texture: Texture, data: PixelBuffer) -> None:
    """Enqueue a full-texture upload; rows are tightly packed (width * bytes per pixel)"""
    texture.ensure_alive()
    if TextureUsage.COPY_DST not in texture.usage:
        raise ValueError(f"{texture!r} lacks COPY_DST usage")
    payload = _as_bytes_array(data)
    if payload.size != texture.nbytes:
        raise ValueError(
            f"Texture upload has {payload.size} bytes, {texture!r} needs {texture.nbytes}"
        )
    fmt = texture.format
    pixels = payload.view(fmt.dtype).reshape(texture.height, texture.width, fmt.channels)
    ctx.queue.write_texture(texture.native, pixels)


def download_texture(ctx: 'DeviceContext', texture: Texture) -> 'Future[bytes]':
    """Read a whole texture back through a staging buffer"""
    texture.ensure_alive()
    if TextureUsage.COPY_SRC not in texture.usage:
        raise ValueError(f"{texture!r} lacks COPY_SRC usage")
    return _staged_readback(ctx, texture, texture.nbytes)

# ===============================
# Utility Functions
# ===============================


def get_memory_summary(ctx: Optional['DeviceContext'] = None) -> str:
    """System memory plus, when given, the context's device memory"""
    lines = ["\n" + "="*60, "Memory Summary", "="*60]

    mem = psutil.virtual_memory()
    lines.extend([
        "\nSystem Memory:",
        f"  Total: {mem.total/1024**3:.1f} GB",
        f"  Used: {mem.used/1024**3:.1f} GB ({mem.percent:.1f}%)",
        f"  Available: {mem.available/1024**3:.1f} GB"
    ])

    if ctx is not None:
        info = ctx.memory_manager.get_memory_info()
        lines.extend([
            f"\nDevice Memory ({ctx.label}):",
            f"  Total: {info.total_gb:.1f} GB",
            f"  Used: {info.used_gb:.1f} GB ({info.usage_percent:.1f}%)",
            f"  Free: {info.free_gb:.1f} GB",
            f"  Live resources: {ctx.live_resource_count}"
        ])

    lines.append("="*60 + "\n")
    return '\n'.join(lines)
