"""
Device Context
~~~~~~~~~~~~~~

Explicit per-batch device contexts. A context owns one backend device, its
submission queue and every resource created on it; nothing here is a
process-wide singleton. Backends (CUDA via CuPy, or the host reference
device) plug in behind the ``DeviceBackend`` interface.
"""

import numpy as np
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from enum import Enum
from functools import wraps
from typing import Dict, List, Tuple, Optional, Union, Any, Callable, Sequence

from ..errors import (
    EVMGPUError, NoAdapterError, DeviceRequestFailedError, DeviceLostError,
    AllocationError
)

# ===============================
# GPU Availability Check
# ===============================

try:
    import cupy as cp
    HAS_GPU = True
except ImportError:
    HAS_GPU = False
    cp = None

logger = logging.getLogger('evm_gpu.core.device')

CUDA_BACKEND_NAMES = ('cuda', 'gpu')
HOST_BACKEND_NAMES = ('cpu', 'host')
BACKEND_NAMES = ('auto',) + CUDA_BACKEND_NAMES + HOST_BACKEND_NAMES

# ===============================
# Device Status
# ===============================


class DeviceStatus(Enum):
    UNINITIALIZED = 'uninitialized'
    READY = 'ready'
    ERROR = 'error'

# ===============================
# Backend Interface
# ===============================


class DeviceBackend:
    """
    Interface every compute backend implements.

    A backend instance drives exactly one device for the lifetime of one
    DeviceContext. Native handles it returns are opaque to the rest of the
    package; ``execute`` receives the command objects recorded by
    ``CommandEncoder``.
    """

    name = 'abstract'

    def __init__(self):
        self._error_callback: Optional[Callable[[BaseException], None]] = None

    # --- adapter / device ---
    def is_available(self) -> bool:
        raise NotImplementedError

    def request_adapter(self, device_id: Union[str, int] = 'auto') -> Optional[Dict[str, Any]]:
        """Adapter description, or None when no adapter exists"""
        raise NotImplementedError

    def request_device(self, adapter: Dict[str, Any]) -> Any:
        """Create the device; raise if the adapter refuses"""
        raise NotImplementedError

    def destroy_device(self) -> None:
        raise NotImplementedError

    def set_error_callback(self, callback: Callable[[BaseException], None]) -> None:
        self._error_callback = callback

    def report_error(self, error: BaseException) -> None:
        """Route an asynchronous device fault to the owning context"""
        if self._error_callback is not None:
            self._error_callback(error)
        else:
            logger.error(f"Uncaptured {self.name} device error: {error}")

    def memory_info(self) -> Tuple[int, int]:
        """(free_bytes, total_bytes)"""
        raise NotImplementedError

    def clear_cache(self) -> None:
        pass

    # --- resources ---
    def allocate_buffer(self, size: int, mappable: bool = False) -> Any:
        raise NotImplementedError

    def allocate_texture(self, width: int, height: int, channels: int, dtype: np.dtype) -> Any:
        raise NotImplementedError

    def free(self, native: Any) -> None:
        pass

    def write_buffer(self, native: Any, offset: int, data: np.ndarray) -> None:
        raise NotImplementedError

    def write_texture(self, native: Any, data: np.ndarray) -> None:
        raise NotImplementedError

    def map_read(self, native: Any, size: int) -> 'Future[bytes]':
        """Map a staging buffer, copy ``size`` bytes out and unmap"""
        raise NotImplementedError

    # --- kernels ---
    def compile_module(self, source: Any) -> Dict[str, Any]:
        """Compile a KernelSource; return entry point name -> native kernel"""
        raise NotImplementedError

    def execute(self, commands: Sequence[Any]) -> None:
        raise NotImplementedError

    def synchronize(self) -> None:
        pass

# ===============================
# Queue
# ===============================


class Queue:
    """Submission queue of a DeviceContext"""

    def __init__(self, context: 'DeviceContext'):
        self._context = context

    def submit(self, command_buffers: Sequence[Any]) -> None:
        """Execute recorded command buffers in order"""
        ctx = self._context
        ctx.ensure_ready()
        commands = [command for cb in command_buffers for command in cb.commands]
        if not commands:
            return
        ctx.backend.execute(commands)
        ctx.submissions += 1

    def write_buffer(self, native: Any, offset: int, data: np.ndarray) -> None:
        self._context.ensure_ready()
        self._context.backend.write_buffer(native, offset, data)

    def write_texture(self, native: Any, data: np.ndarray) -> None:
        self._context.ensure_ready()
        self._context.backend.write_texture(native, data)

# ===============================
# Device Context
# ===============================


class DeviceContext:
    """
    Per-batch device context.

    Holds the backend, adapter description, native device, queue, status
    and the registry of live resources. Use ``release`` (or a ``with``
    block) when the batch is finished.
    """

    def __init__(self,
                 backend: DeviceBackend,
                 adapter: Dict[str, Any],
                 device: Any,
                 memory_limit_gb: Optional[float] = None,
                 profile: bool = False,
                 label: Optional[str] = None):
        """
        Parameters
        ----------
        backend : DeviceBackend
            Backend that created ``device``
        adapter : dict
            Adapter description returned by ``request_adapter``
        device : object
            Native device handle
        memory_limit_gb : float, optional
            Allocation budget enforced by the memory manager
        profile : bool, default=False
            Record stage timings via ``timer``
        label : str, optional
            Name used in log messages
        """
        from .gpu_memory import GPUMemoryManager

        self.backend = backend
        self.adapter = adapter
        self.device = device
        self.queue = Queue(self)
        self.status = DeviceStatus.READY
        self.last_error: Optional[BaseException] = None
        self.released = False
        self.profile = profile
        self.label = label or f"{backend.name}:{adapter.get('id', 0)}"
        self.submissions = 0

        self._lock = threading.Lock()
        self._resources: Dict[int, Any] = {}
        self._timers: Dict[str, List[float]] = {}

        self.memory_manager = GPUMemoryManager(backend, max_memory_gb=memory_limit_gb)

    def __repr__(self) -> str:
        return f"DeviceContext({self.label!r}, status={self.status.value})"

    def __enter__(self) -> 'DeviceContext':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        release(self)

    # ===============================
    # Status
    # ===============================

    @property
    def is_ready(self) -> bool:
        return self.status is DeviceStatus.READY and not self.released

    def report_error(self, error: BaseException) -> None:
        """Uncaptured-error callback: log and mark the context unusable"""
        logger.error(f"Uncaptured GPU error on {self.label}: {error}")
        self.last_error = error
        self.status = DeviceStatus.ERROR

    def ensure_ready(self) -> None:
        if self.released:
            raise DeviceLostError(f"Device context {self.label} has been released")
        if self.status is DeviceStatus.ERROR:
            raise DeviceLostError(
                f"Device context {self.label} is in error state: {self.last_error}"
            ) from self.last_error

    # ===============================
    # Resource Registry
    # ===============================

    def track(self, resource: Any) -> None:
        with self._lock:
            self._resources[id(resource)] = resource

    def untrack(self, resource: Any) -> None:
        with self._lock:
            self._resources.pop(id(resource), None)

    def live_resources(self) -> List[Any]:
        with self._lock:
            return list(self._resources.values())

    @property
    def live_resource_count(self) -> int:
        with self._lock:
            return len(self._resources)

    # ===============================
    # Profiling
    # ===============================

    @contextmanager
    def timer(self, name: str):
        """Stage timer; synchronizes the device when profiling"""
        if not self.profile:
            yield
            return

        start = time.perf_counter()
        yield
        self.backend.synchronize()
        elapsed = time.perf_counter() - start
        self._timers.setdefault(name, []).append(elapsed)
        logger.debug(f"{name}: {elapsed:.4f}s")

    def get_profile_summary(self) -> Dict[str, Dict[str, float]]:
        summary = {}
        for name, times in self._timers.items():
            summary[name] = {
                'total': sum(times),
                'mean': float(np.mean(times)),
                'min': min(times),
                'max': max(times),
                'count': len(times)
            }
        return summary

    def get_device_info(self) -> Dict[str, Any]:
        info = {'backend': self.backend.name, 'status': self.status.value}
        info.update(self.adapter)
        mem_info = self.memory_manager.get_memory_info()
        info['memory'] = {
            'total_gb': mem_info.total_gb,
            'used_gb': mem_info.used_gb,
            'free_gb': mem_info.free_gb
        }
        return info

# ===============================
# Capability Probe / Acquire / Release
# ===============================


def probe_capability() -> bool:
    """True when CuPy is importable and a CUDA device is visible"""
    if not HAS_GPU:
        return False
    try:
        return cp.cuda.runtime.getDeviceCount() > 0
    except cp.cuda.runtime.CUDARuntimeError:
        return False


def resolve_backend(backend: Union[str, DeviceBackend] = 'auto',
                    allow_cpu_fallback: bool = False) -> DeviceBackend:
    """Turn a backend name into a fresh backend instance"""
    if isinstance(backend, DeviceBackend):
        return backend

    # imported here, backends depend on this module
    from .cuda_backend import CudaBackend
    from .host_backend import HostBackend

    if backend == 'auto':
        if probe_capability():
            return CudaBackend()
        if allow_cpu_fallback:
            logger.warning("No CUDA device found, using host backend (slower)")
            return HostBackend()
        return CudaBackend()
    elif backend in CUDA_BACKEND_NAMES:
        return CudaBackend()
    elif backend in HOST_BACKEND_NAMES:
        return HostBackend()
    raise ValueError(f"Invalid backend: {backend}")


def _request_context(backend: Union[str, DeviceBackend],
                     device_id: Union[str, int],
                     allow_cpu_fallback: bool,
                     memory_limit_gb: Optional[float],
                     profile: bool) -> DeviceContext:
    resolved = resolve_backend(backend, allow_cpu_fallback)

    adapter = resolved.request_adapter(device_id)
    if adapter is None:
        raise NoAdapterError(
            f"No {resolved.name} adapter available", backend=resolved.name
        )

    try:
        device = resolved.request_device(adapter)
    except EVMGPUError:
        raise
    except Exception as e:
        raise DeviceRequestFailedError(
            f"{resolved.name} device request failed: {e}", backend=resolved.name
        ) from e

    ctx = DeviceContext(resolved, adapter, device,
                        memory_limit_gb=memory_limit_gb, profile=profile)
    resolved.set_error_callback(ctx.report_error)
    logger.info(f"Acquired {ctx.label} ({adapter.get('name', 'unknown')})")
    return ctx


def acquire(backend: Union[str, DeviceBackend] = 'auto',
            *,
            device_id: Union[str, int] = 'auto',
            allow_cpu_fallback: bool = False,
            memory_limit_gb: Optional[float] = None,
            profile: bool = False) -> 'Future[DeviceContext]':
    """
    Request an adapter and device asynchronously.

    Parameters
    ----------
    backend : str or DeviceBackend, default='auto'
        'auto', 'cuda', 'cpu' or a backend instance
    device_id : str or int, default='auto'
        CUDA device ordinal, or 'auto' for the one with most free memory
    allow_cpu_fallback : bool, default=False
        With backend='auto', fall back to the host backend when no CUDA
        device exists
    memory_limit_gb : float, optional
        Allocation budget for the context
    profile : bool, default=False
        Record stage timings

    Returns
    -------
    Future[DeviceContext]
        Rejects with NoAdapterError or DeviceRequestFailedError
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='evm-gpu-acquire')
    try:
        return executor.submit(_request_context, backend, device_id,
                               allow_cpu_fallback, memory_limit_gb, profile)
    finally:
        executor.shutdown(wait=False)


def release(ctx: Optional[DeviceContext]) -> None:
    """Destroy every live resource and the device. Safe to call twice."""
    if ctx is None or ctx.released:
        return

    survivors = ctx.live_resources()
    if survivors:
        logger.debug(f"Releasing {len(survivors)} live resources on {ctx.label}")
    for resource in survivors:
        resource.destroy()

    try:
        ctx.backend.destroy_device()
    finally:
        ctx.released = True
        ctx.status = DeviceStatus.UNINITIALIZED
        logger.info(f"Released {ctx.label}")

# ===============================
# Utility Functions
# ===============================


def auto_select_device() -> int:
    """CUDA device with the most free memory"""
    if not probe_capability():
        return 0

    n_devices = cp.cuda.runtime.getDeviceCount()
    best_device = 0
    max_free_memory = 0

    for i in range(n_devices):
        with cp.cuda.Device(i):
            free_mem, total_mem = cp.cuda.runtime.memGetInfo()
            if free_mem > max_free_memory:
                max_free_memory = free_mem
                best_device = i

    logger.info(f"Auto-selected GPU {best_device} with {max_free_memory/1e9:.1f}GB free")
    return best_device


def handle_gpu_errors(func: Callable) -> Callable:
    """
    Retry once after clearing the allocator cache when the device runs out
    of memory. The wrapped function takes the DeviceContext first.
    """
    @wraps(func)
    def wrapper(ctx, *args, **kwargs):
        try:
            return func(ctx, *args, **kwargs)
        except AllocationError as e:
            logger.warning(f"GPU out of memory in {func.__name__}: {e}")
            ctx.memory_manager.clear_cache()
            logger.info("Cleared GPU memory, retrying...")
            try:
                return func(ctx, *args, **kwargs)
            except AllocationError as retry_error:
                logger.error(f"Retry failed: {retry_error}")
                logger.error(ctx.memory_manager.get_allocation_summary())
                raise

    return wrapper


def get_gpu_info() -> Dict[str, Any]:
    """Read-only inventory of visible CUDA devices"""
    available = probe_capability()
    info = {
        'gpu_available': available,
        'has_cupy': HAS_GPU,
        'devices': []
    }

    if available:
        n_devices = cp.cuda.runtime.getDeviceCount()
        info['device_count'] = n_devices
        version = cp.cuda.runtime.runtimeGetVersion()
        info['cuda_version'] = f"{version // 1000}.{(version % 1000) // 10}"

        for i in range(n_devices):
            try:
                with cp.cuda.Device(i):
                    props = cp.cuda.runtime.getDeviceProperties(i)
                    free_mem, total_mem = cp.cuda.runtime.memGetInfo()
                    name = props['name']
                    info['devices'].append({
                        'id': i,
                        'name': name.decode() if isinstance(name, bytes) else name,
                        'compute_capability': f"{props['major']}.{props['minor']}",
                        'total_memory_gb': total_mem / 1e9,
                        'free_memory_gb': free_mem / 1e9,
                        'multiprocessor_count': props['multiProcessorCount']
                    })
            except cp.cuda.runtime.CUDARuntimeError as e:
                logger.warning(f"Failed to get info for GPU {i}: {e}")

    return info
