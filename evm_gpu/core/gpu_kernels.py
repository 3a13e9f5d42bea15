"""
Shader & Pipeline Builder
~~~~~~~~~~~~~~~~~~~~~~~~~

Kernel modules, bind group layouts, compute pipelines, bind groups and the
command encoder that records dispatches and copies for ``Queue.submit``.
Kernels run on 8x8 tiles; every kernel bounds-checks its coordinate.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum, Flag, auto
from typing import Dict, List, Tuple, Optional, Union, Any, Callable, Sequence, TYPE_CHECKING

from ..errors import ShaderCompilationError
from .gpu_memory import Buffer, Texture, BufferUsage, TextureUsage, TextureFormat

if TYPE_CHECKING:
    from .gpu_utils import DeviceContext

logger = logging.getLogger('evm_gpu.core.kernels')

WORKGROUP_SIZE = (8, 8)

# ===============================
# Kernel Sources and Modules
# ===============================


@dataclass(frozen=True)
class KernelSource:
    """
    Source of one kernel module.

    ``code`` is CUDA C compiled by the CUDA backend; ``host_kernels`` maps
    each entry point to its NumPy reference implementation, used by the
    host backend.
    """

    label: str
    code: str
    entry_points: Tuple[str, ...]
    host_kernels: Dict[str, Callable] = field(default_factory=dict)


@dataclass
class ShaderModule:
    label: str
    source: KernelSource
    kernels: Dict[str, Any]

    def has_entry_point(self, name: str) -> bool:
        return name in self.kernels


def compile_shader(ctx: 'DeviceContext', source: KernelSource) -> ShaderModule:
    """
    Compile a kernel module. Fails fast.

    Raises
    ------
    ShaderCompilationError
        Carries the compiler message and the offending source
    """
    ctx.ensure_ready()
    if not source.entry_points:
        raise ShaderCompilationError(f"Module '{source.label}' has no entry points",
                                     source=source.code)
    kernels = ctx.backend.compile_module(source)
    missing = [name for name in source.entry_points if name not in kernels]
    if missing:
        raise ShaderCompilationError(
            f"Module '{source.label}' is missing entry points: {', '.join(missing)}",
            source=source.code
        )
    logger.debug(f"Compiled module '{source.label}' ({len(kernels)} entry points)")
    return ShaderModule(label=source.label, source=source, kernels=kernels)

# ===============================
# Bind Group Layouts
# ===============================


class ShaderStage(Flag):
    COMPUTE = auto()


class BindingKind(Enum):
    STORAGE_BUFFER = 'storage-buffer'
    READ_ONLY_STORAGE_BUFFER = 'read-only-storage-buffer'
    UNIFORM_BUFFER = 'uniform-buffer'
    STORAGE_TEXTURE = 'storage-texture'
    SAMPLED_TEXTURE = 'sampled-texture'

    @property
    def is_texture(self) -> bool:
        return self in (BindingKind.STORAGE_TEXTURE, BindingKind.SAMPLED_TEXTURE)

    @property
    def required_usage(self) -> Union[BufferUsage, TextureUsage]:
        return _REQUIRED_USAGE[self]


_REQUIRED_USAGE = {
    BindingKind.STORAGE_BUFFER: BufferUsage.STORAGE,
    BindingKind.READ_ONLY_STORAGE_BUFFER: BufferUsage.STORAGE,
    BindingKind.UNIFORM_BUFFER: BufferUsage.UNIFORM,
    BindingKind.STORAGE_TEXTURE: TextureUsage.STORAGE,
    BindingKind.SAMPLED_TEXTURE: TextureUsage.SAMPLED,
}


@dataclass(frozen=True)
class BindGroupLayoutEntry:
    binding: int
    kind: BindingKind
    visibility: ShaderStage = ShaderStage.COMPUTE
    format: Optional[TextureFormat] = None

    def __post_init__(self):
        if self.binding < 0:
            raise ValueError(f"Binding index must be non-negative, got {self.binding}")
        if not isinstance(self.kind, BindingKind):
            raise TypeError(f"Binding kind must be BindingKind, got {self.kind!r}")
        if ShaderStage.COMPUTE not in self.visibility:
            raise ValueError(f"Binding {self.binding} is not visible to compute")
        if self.kind is BindingKind.STORAGE_TEXTURE and self.format is None:
            raise ValueError(f"Storage texture binding {self.binding} needs a format")
        if not self.kind.is_texture and self.format is not None:
            raise ValueError(f"Buffer binding {self.binding} cannot have a texture format")


@dataclass(frozen=True)
class BindGroupLayout:
    entries: Tuple[BindGroupLayoutEntry, ...]
    label: str = 'layout'

    def entry(self, binding: int) -> BindGroupLayoutEntry:
        for entry in self.entries:
            if entry.binding == binding:
                return entry
        raise KeyError(f"Layout '{self.label}' has no binding {binding}")


def create_bind_group_layout(ctx: 'DeviceContext',
                             entries: Sequence[BindGroupLayoutEntry],
                             label: str = 'layout') -> BindGroupLayout:
    """Validate and sort layout entries by binding index"""
    ctx.ensure_ready()
    ordered = tuple(sorted(entries, key=lambda e: e.binding))
    bindings = [entry.binding for entry in ordered]
    if len(set(bindings)) != len(bindings):
        raise ValueError(f"Duplicate binding index in layout '{label}': {bindings}")
    if not ordered:
        raise ValueError(f"Layout '{label}' has no entries")
    return BindGroupLayout(entries=ordered, label=label)

# ===============================
# Pipelines and Bind Groups
# ===============================


@dataclass(frozen=True)
class ComputePipeline:
    module: ShaderModule
    entry_point: str
    layout: BindGroupLayout
    kernel: Any
    workgroup_size: Tuple[int, int] = WORKGROUP_SIZE

    @property
    def label(self) -> str:
        return f"{self.module.label}.{self.entry_point}"


def create_pipeline(ctx: 'DeviceContext',
                    module: ShaderModule,
                    entry_point: str,
                    layout: BindGroupLayout) -> ComputePipeline:
    ctx.ensure_ready()
    if not module.has_entry_point(entry_point):
        raise ValueError(f"Module '{module.label}' has no entry point '{entry_point}'")
    return ComputePipeline(module=module, entry_point=entry_point, layout=layout,
                           kernel=module.kernels[entry_point])


class BindGroup:
    """Resources bound to a layout, ordered by binding index"""

    def __init__(self, layout: BindGroupLayout, resources: Dict[int, Union[Buffer, Texture]]):
        self.layout = layout
        self.resources = dict(resources)

    def ordered_resources(self) -> List[Union[Buffer, Texture]]:
        return [self.resources[entry.binding] for entry in self.layout.entries]

    @property
    def output(self) -> Texture:
        """Last storage texture, which defines the dispatch domain"""
        for entry in reversed(self.layout.entries):
            if entry.kind is BindingKind.STORAGE_TEXTURE:
                return self.resources[entry.binding]
        raise ValueError(f"Layout '{self.layout.label}' has no storage texture")


def create_bind_group(ctx: 'DeviceContext',
                      layout: BindGroupLayout,
                      resources: Dict[int, Union[Buffer, Texture]]) -> BindGroup:
    """
    Bind resources to a layout.

    Every layout binding needs exactly one live resource of the matching
    kind, with the usage capability the binding requires; storage textures
    must also match the declared format.
    """
    ctx.ensure_ready()
    expected = {entry.binding for entry in layout.entries}
    given = set(resources)
    if expected != given:
        raise ValueError(
            f"Bind group for '{layout.label}' expects bindings {sorted(expected)}, "
            f"got {sorted(given)}"
        )

    for entry in layout.entries:
        resource = resources[entry.binding]
        resource.ensure_alive()
        if resource.context is not ctx:
            raise ValueError(f"Binding {entry.binding} belongs to another device context")
        if entry.kind.is_texture:
            if not isinstance(resource, Texture):
                raise TypeError(f"Binding {entry.binding} expects a texture, got {resource!r}")
            if entry.format is not None and resource.format is not entry.format:
                raise ValueError(
                    f"Binding {entry.binding} expects {entry.format.wire_name}, "
                    f"got {resource.format.wire_name}"
                )
        elif not isinstance(resource, Buffer):
            raise TypeError(f"Binding {entry.binding} expects a buffer, got {resource!r}")
        if entry.kind.required_usage not in resource.usage:
            raise ValueError(
                f"Binding {entry.binding} ({entry.kind.value}) needs "
                f"{entry.kind.required_usage} usage on {resource!r}"
            )

    return BindGroup(layout, resources)

# ===============================
# Commands
# ===============================


@dataclass(frozen=True)
class DispatchCommand:
    pipeline: ComputePipeline
    bind_group: BindGroup
    workgroups: Tuple[int, int]


@dataclass(frozen=True)
class CopyBufferToBufferCommand:
    source: Buffer
    destination: Buffer
    size: int


@dataclass(frozen=True)
class CopyTextureToBufferCommand:
    source: Texture
    destination: Buffer


@dataclass(frozen=True)
class CommandBuffer:
    commands: Tuple[Any, ...]


def workgroup_count(width: int, height: int) -> Tuple[int, int]:
    """Tiles needed to cover width x height, rounded up"""
    wx, wy = WORKGROUP_SIZE
    return ((width + wx - 1) // wx, (height + wy - 1) // wy)


class CommandEncoder:
    """Records dispatches and copies; ``finish`` seals them into a CommandBuffer"""

    def __init__(self, ctx: 'DeviceContext'):
        ctx.ensure_ready()
        self.context = ctx
        self._commands: List[Any] = []
        self._finished = False

    def _record(self, command: Any) -> None:
        if self._finished:
            raise RuntimeError("CommandEncoder already finished")
        self._commands.append(command)

    def dispatch(self,
                 pipeline: ComputePipeline,
                 bind_group: BindGroup,
                 workgroups: Optional[Tuple[int, int]] = None) -> None:
        """
        Record a compute dispatch.

        Parameters
        ----------
        workgroups : tuple of int, optional
            Tile counts; defaults to covering the bind group's output texture
        """
        if bind_group.layout is not pipeline.layout:
            raise ValueError(f"Bind group layout does not match pipeline {pipeline.label}")
        if workgroups is None:
            output = bind_group.output
            workgroups = workgroup_count(output.width, output.height)
        if workgroups[0] <= 0 or workgroups[1] <= 0:
            raise ValueError(f"Invalid workgroup count: {workgroups}")
        self._record(DispatchCommand(pipeline, bind_group, tuple(workgroups)))

    def copy_buffer_to_buffer(self, source: Buffer, destination: Buffer, size: int) -> None:
        source.ensure_alive()
        destination.ensure_alive()
        if BufferUsage.COPY_SRC not in source.usage:
            raise ValueError(f"{source!r} lacks COPY_SRC usage")
        if BufferUsage.COPY_DST not in destination.usage:
            raise ValueError(f"{destination!r} lacks COPY_DST usage")
        if size > source.size or size > destination.size:
            raise ValueError(f"Copy of {size} bytes exceeds buffer size")
        self._record(CopyBufferToBufferCommand(source, destination, size))

    def copy_texture_to_buffer(self, source: Texture, destination: Buffer) -> None:
        source.ensure_alive()
        destination.ensure_alive()
        if TextureUsage.COPY_SRC not in source.usage:
            raise ValueError(f"{source!r} lacks COPY_SRC usage")
        if BufferUsage.COPY_DST not in destination.usage:
            raise ValueError(f"{destination!r} lacks COPY_DST usage")
        if source.nbytes > destination.size:
            raise ValueError(f"{destination!r} is too small for {source!r}")
        self._record(CopyTextureToBufferCommand(source, destination))

    def finish(self) -> CommandBuffer:
        self._finished = True
        return CommandBuffer(tuple(self._commands))
