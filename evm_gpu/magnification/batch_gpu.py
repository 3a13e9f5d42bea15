"""
Batch Orchestrator
~~~~~~~~~~~~~~~~~~

Entry point the application calls: normalises the incoming frames, acquires
a device context, runs one MagnificationPipeline and releases the context.

Progress is reported in two phases, ingest (0.0-0.5) and magnification
(0.5-1.0), and only ever moves forward.
"""

import logging
import threading
import numpy as np
from contextlib import contextmanager
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, Union, TYPE_CHECKING

from ..errors import BatchFailedError, EVMGPUError
from ..types import Frame, PixelBuffer
from ..core.gpu_utils import DeviceBackend, acquire, release
from .pipeline_gpu import MagnificationConfig, MagnificationParams, MagnificationPipeline

if TYPE_CHECKING:
    from ..core.gpu_utils import DeviceContext

logger = logging.getLogger('evm_gpu.magnification.batch')

FrameInput = Union[Frame, PixelBuffer]

INGEST_SHARE = 0.5


class ProgressReporter:
    """Monotonic progress in [0, 1]; silently drops backwards steps"""

    def __init__(self, callback: Optional[Callable[[float], None]]):
        self.callback = callback
        self.value = 0.0
        self._lock = threading.Lock()

    def report(self, value: float) -> None:
        value = min(1.0, max(0.0, value))
        with self._lock:
            if value < self.value:
                return
            self.value = value
        if self.callback is not None:
            self.callback(value)

    def ingest(self, done: int, total: int) -> None:
        self.report(INGEST_SHARE * done / total)

    def magnify(self, fraction: float) -> None:
        self.report(INGEST_SHARE + (1.0 - INGEST_SHARE) * fraction)


def as_frame(data: FrameInput, width: int, height: int, index: int = 0) -> Frame:
    """
    Normalise one input frame.

    Accepts a Frame, raw RGBA bytes (bytes, bytearray, memoryview) or a
    uint8 array, either (h, w, 4) or flat.
    """
    if isinstance(data, Frame):
        frame = data
    elif isinstance(data, np.ndarray):
        if data.dtype != np.uint8:
            raise ValueError(f"Frame {index} has dtype {data.dtype}, expected uint8")
        if data.ndim == 3:
            frame = Frame.from_array(data)
        else:
            frame = Frame(width, height, np.ascontiguousarray(data).tobytes())
    elif isinstance(data, (bytes, bytearray, memoryview)):
        frame = Frame(width, height, bytes(data))
    else:
        raise TypeError(f"Frame {index} has unsupported type {type(data).__name__}")

    if (frame.width, frame.height) != (width, height):
        raise ValueError(
            f"Frame {index} is {frame.width}x{frame.height}, expected {width}x{height}"
        )
    return frame


def _ingest(frames: Sequence[FrameInput], width: int, height: int,
            progress: ProgressReporter) -> List[Frame]:
    total = len(frames)
    if total == 0:
        raise BatchFailedError("No frames to magnify", stage='ingest')

    normalised = []
    for i, data in enumerate(frames):
        try:
            normalised.append(as_frame(data, width, height, i))
        except (TypeError, ValueError) as e:
            raise BatchFailedError(f"Invalid frame {i}: {e}", stage='ingest', frame_index=i) from e
        progress.ingest(i + 1, total)
    logger.debug(f"Ingested {total} frames ({width}x{height})")
    return normalised


def _run_batch(frames: Sequence[FrameInput],
               width: int,
               height: int,
               params: MagnificationParams,
               progress: ProgressReporter,
               context: Optional['DeviceContext'],
               backend: Union[str, DeviceBackend, None],
               config: MagnificationConfig) -> List[Frame]:
    with _typed_failure('ingest'):
        ingested = _ingest(frames, width, height, progress)

    owned = context is None
    if owned:
        with _typed_failure('acquire'):
            context = acquire(backend if backend is not None else config.device,
                              allow_cpu_fallback=config.allow_cpu_fallback,
                              memory_limit_gb=config.memory_limit_gb).result()
        logger.debug(f"Acquired {context.label} for a batch of {len(ingested)} frames")

    try:
        pipeline = MagnificationPipeline(context, params, config,
                                         progress_callback=progress.magnify)
        try:
            result = pipeline.run(ingested)
        except (TypeError, ValueError) as e:
            # frames rejected by the pipeline before any device work
            raise BatchFailedError(str(e), stage='validate') from e
    finally:
        if owned:
            release(context)

    with _typed_failure('collect'):
        progress.report(1.0)
    return result


@contextmanager
def _typed_failure(stage: str):
    """Re-raise anything that is not an EVMGPUError as BatchFailedError"""
    try:
        yield
    except EVMGPUError:
        raise
    except Exception as e:
        raise BatchFailedError(f"Magnification failed during {stage}: {e}",
                               stage=stage, cause=type(e).__name__) from e


def magnify(frames: Sequence[FrameInput],
            width: int,
            height: int,
            gain: float = 25.0,
            blur_enabled: bool = False,
            *,
            pyramid_levels: int = 0,
            level_gains: Optional[Sequence[float]] = None,
            progress_callback: Optional[Callable[[float], None]] = None,
            context: Optional['DeviceContext'] = None,
            backend: Union[str, DeviceBackend, None] = None,
            config: Optional[MagnificationConfig] = None) -> 'Future[List[Frame]]':
    """
    Magnify motion in a batch of RGBA8 frames.

    Parameters
    ----------
    frames : sequence
        Frames as Frame objects, raw RGBA bytes or (h, w, 4) uint8 arrays
    width, height : int
        Frame size in pixels
    gain : float, default=25.0
        Amplification factor, >= 0
    blur_enabled : bool, default=False
        Smooth the motion signal before amplifying
    pyramid_levels : int, default=0
        0 for single-scale, N >= 1 for an N-level Laplacian pyramid
    level_gains : sequence of float, optional
        Per-level gains for pyramid mode
    progress_callback : callable, optional
        Receives progress in [0, 1]; ingest covers the first half
    context : DeviceContext, optional
        Existing context; left open when given. Otherwise one is acquired
        and released around the batch
    backend : str or DeviceBackend, optional
        Backend for the acquired context; defaults to ``config.device``
    config : MagnificationConfig, optional
        Defaults to ``MagnificationConfig.from_env()``

    Returns
    -------
    Future[list of Frame]
        Magnified frames in input order. Rejects with GPUNotAvailableError,
        ShaderCompilationError or BatchFailedError
    """
    progress = ProgressReporter(progress_callback)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='evm-gpu-batch')
    try:
        config = config or MagnificationConfig.from_env()
        params = MagnificationParams(gain=gain, blur=blur_enabled,
                                     pyramid_levels=pyramid_levels, level_gains=level_gains)
    except (TypeError, ValueError) as e:
        executor.shutdown(wait=False)
        future: 'Future[List[Frame]]' = Future()
        failure = BatchFailedError(f"Invalid magnification parameters: {e}", stage='validate')
        failure.__cause__ = e
        future.set_exception(failure)
        return future

    try:
        return executor.submit(_run_batch, frames, width, height, params, progress,
                               context, backend, config)
    finally:
        executor.shutdown(wait=False)
