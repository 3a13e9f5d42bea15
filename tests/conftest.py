"""
Shared fixtures: host device contexts, fake backends and texture helpers.
"""

import threading
from concurrent.futures import Future

import numpy as np
import pytest

from evm_gpu.core.gpu_utils import acquire, release
from evm_gpu.core.gpu_kernels import DispatchCommand
from evm_gpu.core.gpu_memory import (
    TextureFormat, TextureUsage, create_texture, upload_texture, download_texture
)
from evm_gpu.core.host_backend import HostBackend
from evm_gpu.utils.synthetic import generate_test_frames


# ===============================
# Fake Backends
# ===============================


class CountingBackend(HostBackend):
    """Host backend that counts allocations"""

    def __init__(self):
        super().__init__()
        self.allocations = 0

    def allocate_buffer(self, size, mappable=False):
        self.allocations += 1
        return super().allocate_buffer(size, mappable)

    def allocate_texture(self, width, height, channels, dtype):
        self.allocations += 1
        return super().allocate_texture(width, height, channels, dtype)


class NoAdapterBackend(CountingBackend):
    name = 'no-adapter'

    def request_adapter(self, device_id='auto'):
        return None


class RefusingDeviceBackend(CountingBackend):
    name = 'refusing'

    def request_device(self, adapter):
        raise RuntimeError("device limits not supported")


class ReorderingBackend(HostBackend):
    """Completes readbacks out of order: even-numbered ones arrive late"""

    name = 'reordering'

    def __init__(self, delay=0.05):
        super().__init__()
        self.delay = delay
        self.map_calls = 0
        self.completion_order = []
        self._lock = threading.Lock()

    def map_read(self, native, size):
        data = native[:size].tobytes()
        with self._lock:
            call = self.map_calls
            self.map_calls += 1
        future = Future()

        def complete():
            with self._lock:
                self.completion_order.append(call)
            future.set_result(data)

        timer = threading.Timer(self.delay if call % 2 == 0 else 0.0, complete)
        timer.daemon = True
        timer.start()
        return future


class FaultyBackend(HostBackend):
    """Reports an uncaptured device error on the n-th dispatch"""

    name = 'faulty'

    def __init__(self, fail_on_dispatch):
        super().__init__()
        self.fail_on_dispatch = fail_on_dispatch
        self.dispatches_seen = 0

    def execute(self, commands):
        for command in commands:
            if isinstance(command, DispatchCommand):
                self.dispatches_seen += 1
                if self.dispatches_seen == self.fail_on_dispatch:
                    self.report_error(RuntimeError("injected device fault"))
                    return
            super().execute([command])


class FailingReadbackBackend(HostBackend):
    """The n-th map_read (0-based) rejects"""

    name = 'failing-readback'

    def __init__(self, fail_on_map):
        super().__init__()
        self.fail_on_map = fail_on_map
        self.map_calls = 0

    def map_read(self, native, size):
        call = self.map_calls
        self.map_calls += 1
        if call == self.fail_on_map:
            future = Future()
            future.set_exception(OSError("mapping aborted"))
            return future
        return super().map_read(native, size)


class StalledReadbackBackend(HostBackend):
    """map_read never completes"""

    name = 'stalled-readback'

    def __init__(self):
        super().__init__()
        self.pending = []

    def map_read(self, native, size):
        future = Future()
        self.pending.append(future)
        return future


# ===============================
# Fixtures
# ===============================


@pytest.fixture
def host_ctx():
    ctx = acquire('cpu').result()
    yield ctx
    release(ctx)


@pytest.fixture
def context_for():
    """Factory for contexts on arbitrary backends; all released at teardown"""
    contexts = []

    def make(backend, **kwargs):
        ctx = acquire(backend, **kwargs).result()
        contexts.append(ctx)
        return ctx

    yield make
    for ctx in contexts:
        release(ctx)


@pytest.fixture
def blob_clip():
    """Soft blob oscillating +-2 px at 0.5 Hz, one full period over 10 frames"""
    return generate_test_frames(10, 64, 64, amplitude=2.0, frequency=0.5, fps=5.0,
                                shape='gaussian', sigma=8.0, background=102, foreground=153)


@pytest.fixture
def circle_clip():
    return generate_test_frames(6, 32, 24, amplitude=2.0, frequency=0.5, fps=5.0,
                                radius=6.0, background=40, foreground=200)


# ===============================
# Texture Helpers
# ===============================

INPUT_USAGE = TextureUsage.SAMPLED | TextureUsage.COPY_DST
OUTPUT_USAGE = TextureUsage.STORAGE | TextureUsage.SAMPLED | TextureUsage.COPY_SRC


def make_input(ctx, pixels, label='input'):
    """Upload an (h, w, 4) uint8 array into a sampled texture"""
    pixels = np.ascontiguousarray(pixels, dtype=np.uint8)
    height, width = pixels.shape[:2]
    texture = create_texture(ctx, width, height, TextureFormat.RGBA8, INPUT_USAGE, label=label)
    upload_texture(ctx, texture, pixels)
    return texture


def make_output(ctx, width, height, label='output'):
    return create_texture(ctx, width, height, TextureFormat.RGBA8, OUTPUT_USAGE, label=label)


def read_pixels(ctx, texture):
    data = download_texture(ctx, texture).result(timeout=5)
    return np.frombuffer(data, dtype=np.uint8).reshape(texture.height, texture.width, 4)


def grey(height, width, value):
    pixels = np.full((height, width, 4), value, dtype=np.uint8)
    pixels[..., 3] = 255
    return pixels
