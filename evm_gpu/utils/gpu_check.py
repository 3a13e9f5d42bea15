"""
GPU environment check (``evm-check-gpu``)
"""

import sys

from ..core.gpu_utils import probe_capability, get_gpu_info, acquire, release
from ..core.gpu_memory import get_memory_summary
from ..errors import EVMGPUError


def check_kernels(backend: str = 'auto', allow_cpu_fallback: bool = True) -> bool:
    """Acquire a context and compile every filter kernel once"""
    from ..filters.filter_kernels import FilterKernels

    try:
        ctx = acquire(backend, allow_cpu_fallback=allow_cpu_fallback).result()
    except EVMGPUError as e:
        print(f"   Device request failed: {e}")
        print(f"   Suggestion: {e.suggestion}")
        return False

    try:
        kernels = FilterKernels(ctx)
        print(f"   Compiled {len(kernels.pipelines)} kernels on {ctx.label}")
        print(get_memory_summary(ctx))
        return True
    except EVMGPUError as e:
        print(f"   Kernel check failed: {e}")
        print(f"   Suggestion: {e.suggestion}")
        return False
    finally:
        release(ctx)


def main() -> int:
    print("\n📊 EVM GPU environment check")
    capable = probe_capability()
    print(f"   CUDA capable: {capable}")

    info = get_gpu_info()
    print(f"   CuPy installed: {info['has_cupy']}")
    if capable:
        print(f"   CUDA Version: {info['cuda_version']}")
        for device in info['devices']:
            print(f"   GPU {device['id']}: {device['name']} "
                  f"(CC {device['compute_capability']}, "
                  f"{device['free_memory_gb']:.1f}/{device['total_memory_gb']:.1f} GB free)")
    else:
        print("   No CUDA device; magnification needs allow_cpu_fallback=True")

    ok = check_kernels('auto', allow_cpu_fallback=True)
    print("\n✅ Ready" if ok else "\n❌ Kernel check failed")
    return 0 if ok else 1


if __name__ == '__main__':
    sys.exit(main())
