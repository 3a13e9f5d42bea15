"""
EVM GPU - GPU-accelerated Eulerian Motion Magnification
========================================================

Amplifies small periodic motion (breathing, pulse) in short RGBA8 clips.
Kernels run on CUDA through CuPy, with a NumPy/SciPy host backend that
implements the same storage semantics for CPU fallback and testing.

Version: 0.3.0
"""

import os
import sys
import logging
from typing import Dict, Any

# ===============================
# Version Information
# ===============================

__version__ = '0.3.0'

# ===============================
# Logging Setup
# ===============================

logger = logging.getLogger('evm_gpu')
handler = logging.StreamHandler()
formatter = logging.Formatter(
    '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
handler.setFormatter(formatter)
logger.addHandler(handler)
logger.setLevel(logging.INFO)

# ===============================
# GPU Environment Detection
# ===============================

from .core.gpu_utils import HAS_GPU, probe_capability, get_gpu_info as _device_inventory

HAS_CUPY = HAS_GPU
GPU_AVAILABLE = probe_capability()


def get_gpu_info() -> Dict[str, Any]:
    """Visible CUDA devices and the CuPy / CUDA versions"""
    return _device_inventory()


def enable_gpu_logging(level: str = 'INFO') -> None:
    """Set the log level of the evm_gpu logger hierarchy (and CuPy's)"""
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f'Invalid log level: {level}')

    logger.setLevel(numeric_level)
    logging.getLogger('cupy').setLevel(numeric_level)

# ===============================
# CLI Command
# ===============================


def _run_magnify(args) -> int:
    import numpy as np
    from .magnification.batch_gpu import magnify
    from .magnification.pipeline_gpu import MagnificationConfig
    from .errors import EVMGPUError

    clip = np.load(args.input)
    if clip.ndim != 4 or clip.shape[3] != 4 or clip.dtype != np.uint8:
        print(f"❌ Expected an (n, h, w, 4) uint8 array, got {clip.shape} {clip.dtype}")
        return 2

    n_frames, height, width = clip.shape[:3]
    config = MagnificationConfig.from_env(device=args.device,
                                          allow_cpu_fallback=args.allow_cpu_fallback)
    print(f"\n🚀 Magnifying {n_frames} frames ({width}x{height}), gain {args.gain}")

    def show_progress(value):
        print(f"\r   Progress: {value * 100:5.1f}%", end='', flush=True)

    future = magnify(list(clip), width, height, args.gain, args.blur,
                     pyramid_levels=args.levels, progress_callback=show_progress,
                     config=config)
    try:
        frames = future.result()
    except EVMGPUError as e:
        print(f"\n❌ {e.user_message}: {e}")
        print(f"   Suggestion: {e.suggestion}")
        return 1

    np.save(args.output, np.stack([frame.to_array() for frame in frames]))
    print(f"\n✨ Saved {len(frames)} frames to {args.output}")
    return 0


def cli():
    """Main CLI entry point"""
    import argparse

    parser = argparse.ArgumentParser(
        prog='evm-gpu',
        description='EVM GPU - Eulerian motion magnification',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Magnify a clip stored as an (n, h, w, 4) uint8 array
  evm-gpu magnify clip.npy magnified.npy --gain 20 --blur

  # Three-level Laplacian pyramid, host backend allowed
  evm-gpu magnify clip.npy magnified.npy --levels 3 --allow-cpu-fallback

  # Benchmark GPU performance
  evm-gpu benchmark --quick

  # Show system info
  evm-gpu info
        """
    )

    parser.add_argument('--version', action='version',
                        version=f'EVM GPU v{__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    magnify_parser = subparsers.add_parser('magnify', help='Magnify motion in a clip')
    magnify_parser.add_argument('input', help='Input frames (.npy, n x h x w x 4 uint8)')
    magnify_parser.add_argument('output', help='Output file (.npy)')
    magnify_parser.add_argument('--gain', type=float, default=25.0,
                                help='Amplification factor')
    magnify_parser.add_argument('--blur', action='store_true',
                                help='Smooth the motion signal before amplifying')
    magnify_parser.add_argument('--levels', type=int, default=0,
                                help='Laplacian pyramid levels (0 = single-scale)')
    magnify_parser.add_argument('--device', default='auto', choices=['auto', 'cuda', 'cpu'],
                                help='Compute backend')
    magnify_parser.add_argument('--allow-cpu-fallback', action='store_true',
                                help='Use the host backend when no GPU is found')

    bench_parser = subparsers.add_parser('benchmark', help='Run GPU benchmark')
    bench_parser.add_argument('--quick', action='store_true',
                              help='Quick benchmark only')
    bench_parser.add_argument('--output', default='./benchmark_results',
                              help='Output directory')

    subparsers.add_parser('info', help='Show system information')

    args = parser.parse_args()

    if args.command == 'magnify':
        sys.exit(_run_magnify(args))

    elif args.command == 'benchmark':
        print("\n⚡ Running GPU benchmark...")
        from .benchmarks.performance_tests import EVMBenchmarkSuite, run_quick_benchmark
        if args.quick:
            results = run_quick_benchmark(args.output)
            print(f"\n✨ Benchmark complete!")
            print(f"   Throughput: {results['fps']:.1f} fps")
        else:
            EVMBenchmarkSuite(output_dir=args.output).run_all_benchmarks()

    elif args.command == 'info':
        print("\n📊 System Information:")
        info = get_gpu_info()
        print(f"   GPU Available: {info['gpu_available']}")
        print(f"   CuPy Installed: {info['has_cupy']}")
        if info['gpu_available']:
            print(f"   CUDA Version: {info['cuda_version']}")
            for device in info['devices']:
                print(f"   GPU {device['id']}: {device['name']} "
                      f"({device['total_memory_gb']:.1f} GB, CC {device['compute_capability']})")
        print(f"   EVM GPU Version: {__version__}")

    else:
        parser.print_help()

# ===============================
# Public API
# ===============================

__all__ = [
    # Version info
    '__version__',

    # CLI
    'cli',

    # GPU info
    'HAS_CUPY',
    'GPU_AVAILABLE',
    'get_gpu_info',
    'enable_gpu_logging',

    # Entry points (lazy import)
    'magnify',
    'MagnificationParams',
    'MagnificationConfig',
    'MagnificationPipeline',
    'Frame',
    'acquire',
    'release',
    'probe_capability',

    # Errors
    'EVMGPUError',
    'GPUNotAvailableError',
    'NoAdapterError',
    'DeviceRequestFailedError',
    'DeviceLostError',
    'ShaderCompilationError',
    'AllocationError',
    'ReadbackError',
    'BatchFailedError',
]

# ===============================
# Lazy Imports
# ===============================

_ERRORS = {
    'EVMGPUError', 'GPUNotAvailableError', 'NoAdapterError', 'DeviceRequestFailedError',
    'DeviceLostError', 'ShaderCompilationError', 'AllocationError', 'ReadbackError',
    'BatchFailedError',
}


def __getattr__(name):
    """Lazy imports keep ``import evm_gpu`` cheap"""

    if name == 'magnify':
        from .magnification.batch_gpu import magnify
        return magnify

    elif name in ('MagnificationParams', 'MagnificationConfig', 'MagnificationPipeline'):
        from .magnification import pipeline_gpu
        return getattr(pipeline_gpu, name)

    elif name == 'Frame':
        from .types import Frame
        return Frame

    elif name in ('acquire', 'release'):
        from .core import gpu_utils
        return getattr(gpu_utils, name)

    elif name in _ERRORS:
        from . import errors
        return getattr(errors, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

# ===============================
# Package Initialization
# ===============================

if 'EVM_GPU_LOG_LEVEL' in os.environ:
    try:
        enable_gpu_logging(os.environ['EVM_GPU_LOG_LEVEL'])
    except ValueError:
        logger.warning("Invalid EVM_GPU_LOG_LEVEL value")

if os.environ.get('EVM_GPU_DEBUG', '').lower() in ('1', 'true', 'yes'):
    enable_gpu_logging('DEBUG')
    logger.debug("Debug mode enabled")

logger.debug(f"EVM GPU v{__version__} initialized "
             f"({'CUDA available' if GPU_AVAILABLE else 'host backend only'})")
