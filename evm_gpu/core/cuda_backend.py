"""
CUDA backend
~~~~~~~~~~~~

CuPy-driven device. Kernel modules compile through ``cp.RawModule``, work
is queued on one non-blocking stream per context, and readback goes through
pinned staging memory whose completion is awaited on a worker thread.
"""

import numpy as np
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, Tuple, Optional, Union, Any, Sequence

from ..errors import AllocationError, ShaderCompilationError
from .gpu_utils import DeviceBackend, HAS_GPU, probe_capability, auto_select_device
from .gpu_kernels import (
    WORKGROUP_SIZE, DispatchCommand, CopyBufferToBufferCommand, CopyTextureToBufferCommand
)
from .gpu_memory import Texture

if HAS_GPU:
    import cupy as cp
    import cupyx
    _DEVICE_FAULTS = (cp.cuda.runtime.CUDARuntimeError, cp.cuda.driver.CUDADriverError)
else:
    cp = None
    cupyx = None
    _DEVICE_FAULTS = ()

logger = logging.getLogger('evm_gpu.core.cuda')

NVRTC_OPTIONS = ('-std=c++11',)


class CudaBackend(DeviceBackend):
    """One CUDA device, one stream"""

    name = 'cuda'

    def __init__(self):
        super().__init__()
        self.device_id = -1
        self._device = None
        self._stream = None
        self._executor: Optional[ThreadPoolExecutor] = None

    # ===============================
    # Adapter / Device
    # ===============================

    def is_available(self) -> bool:
        return probe_capability()

    def request_adapter(self, device_id: Union[str, int] = 'auto') -> Optional[Dict[str, Any]]:
        if not probe_capability():
            return None

        n_devices = cp.cuda.runtime.getDeviceCount()
        if device_id == 'auto':
            device_id = auto_select_device()
        elif not isinstance(device_id, int) or not 0 <= device_id < n_devices:
            logger.warning(f"GPU {device_id} not found ({n_devices} visible)")
            return None

        props = cp.cuda.runtime.getDeviceProperties(device_id)
        name = props['name']
        return {
            'id': device_id,
            'name': name.decode() if isinstance(name, bytes) else name,
            'compute_capability': f"{props['major']}.{props['minor']}",
            'total_memory': props['totalGlobalMem'],
            'multiprocessor_count': props['multiProcessorCount'],
        }

    def request_device(self, adapter: Dict[str, Any]) -> Any:
        self.device_id = adapter['id']
        self._device = cp.cuda.Device(self.device_id)
        with self._device:
            self._stream = cp.cuda.Stream(non_blocking=True)
        self._executor = ThreadPoolExecutor(max_workers=2,
                                            thread_name_prefix=f'evm-gpu-readback-{self.device_id}')
        return self._device

    def destroy_device(self) -> None:
        if self._device is None:
            return
        try:
            with self._device:
                self._stream.synchronize()
        except _DEVICE_FAULTS as e:
            logger.warning(f"Stream synchronize failed during release: {e}")
        finally:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
            self.clear_cache()
            self._executor = None
            self._stream = None
            self._device = None

    def memory_info(self) -> Tuple[int, int]:
        with cp.cuda.Device(max(self.device_id, 0)):
            free_mem, total_mem = cp.cuda.runtime.memGetInfo()
        return free_mem, total_mem

    def clear_cache(self) -> None:
        cp.get_default_memory_pool().free_all_blocks()
        cp.get_default_pinned_memory_pool().free_all_blocks()

    def synchronize(self) -> None:
        with self._device:
            self._stream.synchronize()

    # ===============================
    # Resources
    # ===============================

    def allocate_buffer(self, size: int, mappable: bool = False) -> Any:
        # MAP_READ buffers live in pinned host memory
        if mappable:
            try:
                return cupyx.empty_pinned((size,), dtype=np.uint8)
            except cp.cuda.memory.OutOfMemoryError as e:
                raise AllocationError(f"Pinned allocation of {size} bytes failed: {e}") from e
        try:
            with self._device:
                return cp.empty(size, dtype=cp.uint8)
        except cp.cuda.memory.OutOfMemoryError as e:
            raise AllocationError(f"Device allocation of {size} bytes failed: {e}") from e

    def allocate_texture(self, width: int, height: int, channels: int, dtype: np.dtype) -> Any:
        try:
            with self._device:
                return cp.zeros((height, width, channels), dtype=dtype)
        except cp.cuda.memory.OutOfMemoryError as e:
            raise AllocationError(f"Texture {width}x{height} allocation failed: {e}") from e

    def write_buffer(self, native: Any, offset: int, data: np.ndarray) -> None:
        with self._device:
            native[offset:offset + data.size].set(data, stream=self._stream)

    def write_texture(self, native: Any, data: np.ndarray) -> None:
        with self._device:
            native.set(np.ascontiguousarray(data), stream=self._stream)

    def map_read(self, native: np.ndarray, size: int) -> 'Future[bytes]':
        with self._device:
            event = self._stream.record()

        def _wait_and_copy() -> bytes:
            try:
                event.synchronize()
            except _DEVICE_FAULTS as e:
                self.report_error(e)
                raise
            return native[:size].tobytes()

        return self._executor.submit(_wait_and_copy)

    # ===============================
    # Kernels
    # ===============================

    def compile_module(self, source: Any) -> Dict[str, Any]:
        try:
            with self._device:
                module = cp.RawModule(code=source.code, options=NVRTC_OPTIONS)
                # get_function forces compilation
                return {name: module.get_function(name) for name in source.entry_points}
        except cp.cuda.compiler.CompileException as e:
            raise ShaderCompilationError(
                f"Module '{source.label}' failed to compile: {e}", source=source.code
            ) from e

    def execute(self, commands: Sequence[Any]) -> None:
        try:
            with self._device, self._stream:
                for command in commands:
                    if isinstance(command, DispatchCommand):
                        self._dispatch(command)
                    elif isinstance(command, CopyBufferToBufferCommand):
                        self._copy(command.source.native, command.destination.native, command.size)
                    elif isinstance(command, CopyTextureToBufferCommand):
                        raw = command.source.native.reshape(-1).view(cp.uint8)
                        self._copy(raw, command.destination.native, raw.size)
                    else:
                        raise TypeError(f"Unknown command: {command!r}")
        except _DEVICE_FAULTS as e:
            self.report_error(e)

    def _dispatch(self, command: DispatchCommand) -> None:
        args = []
        for resource in command.bind_group.ordered_resources():
            args.append(resource.native)
            if isinstance(resource, Texture):
                args.extend((np.int32(resource.width), np.int32(resource.height)))
        command.pipeline.kernel(command.workgroups, WORKGROUP_SIZE, tuple(args))

    def _copy(self, source: Any, destination: Any, size: int) -> None:
        if isinstance(destination, np.ndarray):
            cp.cuda.runtime.memcpyAsync(
                destination.ctypes.data, source.data.ptr, size,
                cp.cuda.runtime.memcpyDeviceToHost, self._stream.ptr
            )
        else:
            destination[:size] = source[:size]
