"""
Host reference backend
~~~~~~~~~~~~~~~~~~~~~~

Runs every kernel module through its NumPy reference implementation. Used
as the CPU fallback and as the device the test suite drives; storage
semantics (unorm8 rounding, tile coverage, staged readback) match the CUDA
backend.
"""

import numpy as np
import logging
from concurrent.futures import Future
from typing import Dict, Tuple, Optional, Union, Any, Sequence
import psutil

from ..errors import AllocationError, ShaderCompilationError
from .gpu_utils import DeviceBackend
from .gpu_kernels import (
    DispatchCommand, CopyBufferToBufferCommand, CopyTextureToBufferCommand
)

logger = logging.getLogger('evm_gpu.core.host')


class HostBackend(DeviceBackend):
    """NumPy device: buffers are flat uint8 arrays, textures (h, w, c) arrays"""

    name = 'host'

    def __init__(self):
        super().__init__()
        self.device = None
        self.dispatch_count = 0

    # ===============================
    # Adapter / Device
    # ===============================

    def is_available(self) -> bool:
        return True

    def request_adapter(self, device_id: Union[str, int] = 'auto') -> Optional[Dict[str, Any]]:
        mem = psutil.virtual_memory()
        return {
            'id': 0,
            'name': 'host-reference',
            'total_memory': mem.total,
            'cpu_count': psutil.cpu_count(),
        }

    def request_device(self, adapter: Dict[str, Any]) -> Any:
        self.device = {'adapter': adapter['name']}
        logger.debug(f"Host device ready ({adapter['cpu_count']} CPUs)")
        return self.device

    def destroy_device(self) -> None:
        self.device = None

    def memory_info(self) -> Tuple[int, int]:
        mem = psutil.virtual_memory()
        return mem.available, mem.total

    # ===============================
    # Resources
    # ===============================

    def allocate_buffer(self, size: int, mappable: bool = False) -> np.ndarray:
        try:
            return np.zeros(size, dtype=np.uint8)
        except MemoryError as e:
            raise AllocationError(f"Host allocation of {size} bytes failed") from e

    def allocate_texture(self, width: int, height: int, channels: int, dtype: np.dtype) -> np.ndarray:
        try:
            return np.zeros((height, width, channels), dtype=dtype)
        except MemoryError as e:
            raise AllocationError(f"Host texture {width}x{height} allocation failed") from e

    def write_buffer(self, native: np.ndarray, offset: int, data: np.ndarray) -> None:
        native[offset:offset + data.size] = data

    def write_texture(self, native: np.ndarray, data: np.ndarray) -> None:
        native[...] = data

    def map_read(self, native: np.ndarray, size: int) -> 'Future[bytes]':
        future: 'Future[bytes]' = Future()
        future.set_result(native[:size].tobytes())
        return future

    # ===============================
    # Kernels
    # ===============================

    def compile_module(self, source: Any) -> Dict[str, Any]:
        missing = [name for name in source.entry_points if name not in source.host_kernels]
        if missing:
            raise ShaderCompilationError(
                f"Module '{source.label}' has no host implementation for: {', '.join(missing)}",
                source=source.code
            )
        return {name: source.host_kernels[name] for name in source.entry_points}

    def execute(self, commands: Sequence[Any]) -> None:
        for command in commands:
            if isinstance(command, DispatchCommand):
                self._dispatch(command)
            elif isinstance(command, CopyBufferToBufferCommand):
                size = command.size
                command.destination.native[:size] = command.source.native[:size]
            elif isinstance(command, CopyTextureToBufferCommand):
                raw = command.source.native.reshape(-1).view(np.uint8)
                command.destination.native[:raw.size] = raw
            else:
                raise TypeError(f"Unknown command: {command!r}")

    def _dispatch(self, command: DispatchCommand) -> None:
        args = [resource.native for resource in command.bind_group.ordered_resources()]
        command.pipeline.kernel(*args, grid=command.workgroups)
        self.dispatch_count += 1
