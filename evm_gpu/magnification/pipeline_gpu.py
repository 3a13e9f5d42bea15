"""
Magnification Pipeline
~~~~~~~~~~~~~~~~~~~~~~

Eulerian motion magnification over one batch of RGBA8 frames. The temporal
mean is computed once on the host and uploaded as a shared read-only
texture; every frame is then uploaded, optionally blurred, differenced
against the mean, amplified and read back. Frames are processed through a
bounded in-flight window and the results are re-associated by index.

State machine::

    IDLE -> COMPUTE_MEAN -> UPLOAD_MEAN -> PER_FRAME -> COLLECT -> DONE
                                                                 \\-> FAILED
"""

import os
import math
import time
import logging
import numpy as np
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING

from ..errors import BatchFailedError, ReadbackError
from ..types import Frame
from ..core.gpu_kernels import CommandEncoder
from ..core.gpu_utils import BACKEND_NAMES
from ..core.gpu_memory import (
    Texture, TextureFormat, TextureUsage,
    create_texture, upload_texture, download_texture
)
from ..filters.filter_kernels import FilterKernels
from .pyramid_gpu import (
    LaplacianPyramid, build_pyramid, amplify_pyramid,
    max_pyramid_levels, pyramid_level_sizes
)

if TYPE_CHECKING:
    from ..core.gpu_utils import DeviceContext

logger = logging.getLogger('evm_gpu.magnification.pipeline')

ProgressCallback = Callable[[float], None]

FRAME_USAGE = TextureUsage.SAMPLED | TextureUsage.COPY_DST
MEAN_USAGE = TextureUsage.SAMPLED | TextureUsage.COPY_DST
OUTPUT_USAGE = TextureUsage.STORAGE | TextureUsage.COPY_SRC

# ===============================
# Parameters and Configuration
# ===============================


@dataclass
class MagnificationParams:
    """
    Magnification parameters

    Parameters
    ----------
    gain : float, default=25.0
        Motion amplification factor; 15-30 is typical for breathing
    blur : bool, default=False
        Smooth the motion signal with the 5-tap Gaussian before amplifying
    pyramid_levels : int, default=0
        0 for single-scale, N >= 1 for an N-level Laplacian pyramid
    level_gains : sequence of float, optional
        Per-level gains (finest first); defaults to ``gain`` on every level
    """
    gain: float = 25.0
    blur: bool = False
    pyramid_levels: int = 0
    level_gains: Optional[Sequence[float]] = None

    def __post_init__(self):
        _check_gain(self.gain, 'gain')
        if isinstance(self.pyramid_levels, bool) or not isinstance(self.pyramid_levels, int):
            raise TypeError(f"pyramid_levels must be an int, got {self.pyramid_levels!r}")
        if self.pyramid_levels < 0:
            raise ValueError(f"pyramid_levels must be >= 0, got {self.pyramid_levels}")
        if self.level_gains is not None:
            self.level_gains = tuple(float(g) for g in self.level_gains)
            if len(self.level_gains) != self.pyramid_levels:
                raise ValueError(
                    f"level_gains has {len(self.level_gains)} entries, "
                    f"pyramid_levels is {self.pyramid_levels}"
                )
            for i, g in enumerate(self.level_gains):
                _check_gain(g, f"level_gains[{i}]")

    @property
    def multiscale(self) -> bool:
        return self.pyramid_levels > 0

    def gains_per_level(self) -> Tuple[float, ...]:
        if self.level_gains is not None:
            return tuple(self.level_gains)
        return (float(self.gain),) * self.pyramid_levels


def _check_gain(gain: float, name: str) -> None:
    try:
        value = float(gain)
    except (TypeError, ValueError):
        raise TypeError(f"{name} must be a number, got {gain!r}")
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"{name} must be finite and >= 0, got {gain}")


@dataclass
class MagnificationConfig:
    """Runtime configuration of a magnification run"""
    max_in_flight_frames: int = 8
    allow_cpu_fallback: bool = False
    device: str = 'auto'
    memory_limit_gb: Optional[float] = None
    readback_timeout_s: float = 60.0

    def __post_init__(self):
        if self.max_in_flight_frames < 1:
            raise ValueError(f"max_in_flight_frames must be >= 1, got {self.max_in_flight_frames}")
        if self.readback_timeout_s <= 0:
            raise ValueError(f"readback_timeout_s must be > 0, got {self.readback_timeout_s}")
        if self.device not in BACKEND_NAMES:
            raise ValueError(f"device must be one of {', '.join(BACKEND_NAMES)}, got {self.device!r}")

    @classmethod
    def from_env(cls, **overrides) -> 'MagnificationConfig':
        """Defaults, overridden by EVM_GPU_* environment variables, then by ``overrides``"""
        values = {}
        if 'EVM_GPU_MAX_IN_FLIGHT' in os.environ:
            values['max_in_flight_frames'] = int(os.environ['EVM_GPU_MAX_IN_FLIGHT'])
        if 'EVM_GPU_ALLOW_CPU_FALLBACK' in os.environ:
            values['allow_cpu_fallback'] = os.environ['EVM_GPU_ALLOW_CPU_FALLBACK'].lower() in ('1', 'true', 'yes')
        if 'EVM_GPU_DEVICE' in os.environ:
            values['device'] = os.environ['EVM_GPU_DEVICE']
        if 'EVM_GPU_MEMORY_LIMIT' in os.environ:
            values['memory_limit_gb'] = float(os.environ['EVM_GPU_MEMORY_LIMIT'])
        if 'EVM_GPU_READBACK_TIMEOUT' in os.environ:
            values['readback_timeout_s'] = float(os.environ['EVM_GPU_READBACK_TIMEOUT'])
        values.update(overrides)
        return cls(**values)

# ===============================
# Temporal Mean
# ===============================


def compute_temporal_mean(frames: Sequence[Frame]) -> bytes:
    """Per-channel average over all frames, rounded to uint8"""
    if not frames:
        raise ValueError("Cannot average an empty frame sequence")
    total = np.zeros((frames[0].height, frames[0].width, 4), dtype=np.float64)
    for frame in frames:
        total += frame.to_array()
    mean = np.rint(total / len(frames))
    return mean.astype(np.uint8).tobytes()

# ===============================
# Pipeline
# ===============================


class PipelineState(Enum):
    IDLE = 'idle'
    COMPUTE_MEAN = 'compute-mean'
    UPLOAD_MEAN = 'upload-mean'
    PER_FRAME = 'per-frame'
    COLLECT = 'collect'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class FrameResources:
    """Per-frame textures kept alive until the frame's readback completes"""
    index: int
    textures: List[Texture]
    readback: 'Future[bytes]'
    timestamp: Optional[float] = None

    def retire(self) -> None:
        self.readback.cancel()
        for texture in self.textures:
            texture.destroy()
        self.textures = []


@dataclass
class _SharedResources:
    mean: Optional[Texture] = None
    mean_motion_source: Optional[Texture] = None
    textures: List[Texture] = field(default_factory=list)
    mean_pyramid: Optional[LaplacianPyramid] = None

    def retire(self) -> None:
        if self.mean_pyramid is not None:
            self.mean_pyramid.destroy()
        for texture in self.textures:
            texture.destroy()
        self.textures = []


class MagnificationPipeline:
    """
    One-shot magnification pipeline bound to a DeviceContext.

    Kernels are compiled in the constructor, so ShaderCompilationError
    surfaces before any frame work starts. ``start`` may be called once.
    """

    def __init__(self,
                 ctx: 'DeviceContext',
                 params: Optional[MagnificationParams] = None,
                 config: Optional[MagnificationConfig] = None,
                 progress_callback: Optional[ProgressCallback] = None):
        """
        Parameters
        ----------
        ctx : DeviceContext
            Context every resource is created on; not released here
        params : MagnificationParams, optional
            Gain, blur and pyramid settings
        config : MagnificationConfig, optional
            In-flight window and readback timeout
        progress_callback : callable, optional
            Receives the fraction of frames collected, in [0, 1]
        """
        self.context = ctx
        self.params = params or MagnificationParams()
        self.config = config or MagnificationConfig()
        self.progress_callback = progress_callback

        self.state = PipelineState.IDLE
        self.history: List[Tuple[PipelineState, float]] = [(self.state, time.time())]
        self.failure: Optional[BatchFailedError] = None

        self.kernels = FilterKernels(ctx)
        self._current_index: Optional[int] = None

    def __repr__(self) -> str:
        return f"MagnificationPipeline(state={self.state.value}, params={self.params})"

    def _transition(self, state: PipelineState) -> None:
        logger.debug(f"Pipeline {self.state.value} -> {state.value}")
        self.state = state
        self.history.append((state, time.time()))

    # ===============================
    # Public API
    # ===============================

    def start(self, frames: Sequence[Frame]) -> 'Future[List[Frame]]':
        """
        Launch the batch on a worker thread.

        Returns
        -------
        Future[list of Frame]
            Magnified frames in input order; rejects with BatchFailedError
        """
        self._claim(frames)
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='evm-gpu-pipeline')
        try:
            return executor.submit(self._execute, list(frames))
        finally:
            executor.shutdown(wait=False)

    def run(self, frames: Sequence[Frame]) -> List[Frame]:
        """Blocking form of ``start``"""
        self._claim(frames)
        return self._execute(list(frames))

    def _claim(self, frames: Sequence[Frame]) -> None:
        if self.state is not PipelineState.IDLE:
            raise RuntimeError(f"Pipeline already used (state {self.state.value})")
        self.width, self.height = self.validate_frames(frames)
        self._transition(PipelineState.COMPUTE_MEAN)

    def validate_frames(self, frames: Sequence[Frame]) -> Tuple[int, int]:
        if not frames:
            raise ValueError("No frames to magnify")
        first = frames[0]
        for i, frame in enumerate(frames):
            if not isinstance(frame, Frame):
                raise TypeError(f"Frame {i} is {type(frame).__name__}, expected Frame")
            if (frame.width, frame.height) != (first.width, first.height):
                raise ValueError(
                    f"Frame {i} is {frame.width}x{frame.height}, "
                    f"expected {first.width}x{first.height}"
                )
        levels = self.params.pyramid_levels
        limit = max_pyramid_levels(first.width, first.height)
        if levels > limit:
            raise ValueError(
                f"{first.width}x{first.height} frames support at most {limit} "
                f"pyramid levels, got {levels}"
            )
        return first.width, first.height

    # ===============================
    # Execution
    # ===============================

    def _execute(self, frames: List[Frame]) -> List[Frame]:
        ctx = self.context
        n_frames = len(frames)
        shared = _SharedResources()
        in_flight: Deque[FrameResources] = deque()
        results: Dict[int, bytes] = {}

        logger.info(
            f"Magnifying {n_frames} frames {self.width}x{self.height} on {ctx.label} "
            f"(gain={self.params.gain}, blur={self.params.blur}, "
            f"levels={self.params.pyramid_levels})"
        )
        start_time = time.perf_counter()

        try:
            with ctx.timer('compute_mean'):
                mean_bytes = compute_temporal_mean(frames)

            self._transition(PipelineState.UPLOAD_MEAN)
            with ctx.timer('upload_mean'):
                self._upload_mean(mean_bytes, shared)

            self._transition(PipelineState.PER_FRAME)
            window = ctx.memory_manager.estimate_frames_in_flight(
                self._bytes_per_frame(), self.config.max_in_flight_frames
            )
            logger.debug(f"In-flight window: {window} frames")

            for index, frame in enumerate(frames):
                self._current_index = index
                while len(in_flight) >= window:
                    self._collect(in_flight.popleft(), results, n_frames)
                with ctx.timer('encode_frame'):
                    in_flight.append(self._process_frame(index, frame, shared))

            self._transition(PipelineState.COLLECT)
            while in_flight:
                self._collect(in_flight.popleft(), results, n_frames)
            self._current_index = None

        except Exception as e:
            self._abort(in_flight, shared)
            failure = self._batch_failure(e)
            if failure is e:
                raise
            raise failure from e
        except BaseException:
            self._abort(in_flight, shared)
            raise

        shared.retire()
        self.kernels.release()
        self._transition(PipelineState.DONE)

        elapsed = time.perf_counter() - start_time
        logger.info(f"Magnified {n_frames} frames in {elapsed:.2f}s ({n_frames / max(elapsed, 1e-9):.1f} fps)")

        return [
            Frame(self.width, self.height, results[i], timestamp=frames[i].timestamp)
            for i in range(n_frames)
        ]

    def _abort(self, in_flight: Deque[FrameResources], shared: _SharedResources) -> None:
        """Retire every resource of the batch; no partial output survives"""
        for resources in in_flight:
            resources.retire()
        in_flight.clear()
        shared.retire()
        self.kernels.release()

    def _batch_failure(self, error: Exception) -> BatchFailedError:
        stage = self.state.value
        frame_index = self._current_index
        self._transition(PipelineState.FAILED)
        if isinstance(error, BatchFailedError):
            self.failure = error
            return error

        where = f" at frame {frame_index}" if frame_index is not None else ''
        failure = BatchFailedError(
            f"Magnification failed during {stage}{where}: {error}",
            stage=stage, frame_index=frame_index,
            cause=getattr(error, 'error_type', type(error).__name__)
        )
        self.failure = failure
        logger.error(str(failure))
        return failure

    def _bytes_per_frame(self) -> int:
        frame_bytes = self.width * self.height * 4
        if self.params.multiscale:
            sizes = pyramid_level_sizes(self.width, self.height, self.params.pyramid_levels)
            pyramid_bytes = sum(w * h * 4 for w, h in sizes)
            # decomposition, motion and reconstruction textures per level
            per_level = 11 if self.params.blur else 9
            return pyramid_bytes * per_level + 2 * frame_bytes
        return frame_bytes * (6 if self.params.blur else 4)

    def _upload_mean(self, mean_bytes: bytes, shared: _SharedResources) -> None:
        ctx = self.context
        mean = create_texture(ctx, self.width, self.height, TextureFormat.RGBA8,
                              MEAN_USAGE, label='temporal-mean')
        shared.mean = mean
        shared.textures.append(mean)
        upload_texture(ctx, mean, mean_bytes)

        encoder = CommandEncoder(ctx)
        if self.params.multiscale:
            shared.mean_pyramid = build_pyramid(self.kernels, encoder, mean,
                                                self.params.pyramid_levels, label='mean')
        elif self.params.blur:
            temp = self.kernels.create_intermediate(self.width, self.height, 'mean-blur-tmp')
            blurred = self.kernels.create_intermediate(self.width, self.height, 'mean-blurred')
            shared.textures.extend([temp, blurred])
            self.kernels.encode_gaussian_blur(encoder, mean, temp, blurred)
            shared.mean_motion_source = blurred
        if shared.mean_motion_source is None:
            shared.mean_motion_source = mean
        ctx.queue.submit([encoder.finish()])
        ctx.ensure_ready()

    def _process_frame(self, index: int, frame: Frame, shared: _SharedResources) -> FrameResources:
        ctx = self.context
        kernels = self.kernels
        textures: List[Texture] = []

        try:
            source = create_texture(ctx, self.width, self.height, TextureFormat.RGBA8,
                                    FRAME_USAGE, label=f"frame{index}")
            textures.append(source)
            upload_texture(ctx, source, frame.data)

            output = create_texture(ctx, self.width, self.height, TextureFormat.RGBA8,
                                    OUTPUT_USAGE, label=f"output{index}")
            textures.append(output)

            encoder = CommandEncoder(ctx)
            if self.params.multiscale:
                pyramid = build_pyramid(kernels, encoder, source, self.params.pyramid_levels,
                                        label=f"frame{index}")
                textures.extend(pyramid.resources)
                textures.extend(amplify_pyramid(
                    kernels, encoder, pyramid, shared.mean_pyramid,
                    self.params.gains_per_level(), self.params.blur, output,
                    label=f"frame{index}"
                ))
            else:
                motion_source = source
                if self.params.blur:
                    temp = kernels.create_intermediate(self.width, self.height, f"frame{index}-blur-tmp")
                    blurred = kernels.create_intermediate(self.width, self.height, f"frame{index}-blurred")
                    textures.extend([temp, blurred])
                    kernels.encode_gaussian_blur(encoder, source, temp, blurred)
                    motion_source = blurred

                motion = kernels.create_intermediate(self.width, self.height, f"motion{index}")
                textures.append(motion)
                kernels.encode_subtract_mean(encoder, motion_source, shared.mean_motion_source, motion)
                kernels.encode_amplify(encoder, source, motion, output, self.params.gain)

            ctx.queue.submit([encoder.finish()])
            ctx.ensure_ready()
            readback = download_texture(ctx, output)
        except BaseException:
            for texture in textures:
                texture.destroy()
            raise

        return FrameResources(index=index, textures=textures, readback=readback,
                              timestamp=frame.timestamp)

    def _collect(self, resources: FrameResources, results: Dict[int, bytes], n_frames: int) -> None:
        self._current_index = resources.index
        try:
            data = resources.readback.result(timeout=self.config.readback_timeout_s)
        except FutureTimeoutError as e:
            raise ReadbackError(
                f"Readback of frame {resources.index} timed out after "
                f"{self.config.readback_timeout_s}s"
            ) from e
        finally:
            resources.retire()

        expected = self.width * self.height * 4
        if len(data) != expected:
            raise ReadbackError(
                f"Readback of frame {resources.index} returned {len(data)} bytes, expected {expected}"
            )
        self.context.ensure_ready()
        results[resources.index] = data

        if self.progress_callback is not None:
            self.progress_callback(len(results) / n_frames)
