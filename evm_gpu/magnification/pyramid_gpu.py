"""
Laplacian pyramid mode
~~~~~~~~~~~~~~~~~~~~~~

Multi-scale magnification. Each level k holds a Gaussian image G[k] and,
except on the coarsest level, the signed residual
``L[k] = G[k] - upsample(G[k+1])`` where ``G[k+1] = downsample(blur(G[k]))``.
Motion is measured per level against the mean's pyramid, amplified with a
per-level gain and the result is reconstructed from the coarsest level up.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from ..core.gpu_kernels import CommandEncoder
from ..core.gpu_memory import Texture
from ..filters.filter_kernels import FilterKernels, half_size

logger = logging.getLogger('evm_gpu.magnification.pyramid')


@dataclass
class PyramidLevel:
    """One pyramid level; ``laplacian`` is None on the coarsest level"""
    index: int
    gaussian: Texture
    laplacian: Optional[Texture] = None

    @property
    def size(self) -> Tuple[int, int]:
        return self.gaussian.width, self.gaussian.height

    @property
    def is_coarsest(self) -> bool:
        return self.laplacian is None


@dataclass
class LaplacianPyramid:
    levels: List[PyramidLevel]
    resources: List[Texture] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.levels)

    def destroy(self) -> None:
        """Destroy every texture the pyramid created (not the source image)"""
        for texture in self.resources:
            texture.destroy()
        self.resources.clear()


def pyramid_level_sizes(width: int, height: int, levels: int) -> List[Tuple[int, int]]:
    sizes = [(width, height)]
    for _ in range(levels - 1):
        sizes.append(half_size(*sizes[-1]))
    return sizes


def max_pyramid_levels(width: int, height: int) -> int:
    """Deepest pyramid whose coarsest level is still at least one pixel wide"""
    levels = 1
    while min(width, height) > 1:
        width, height = half_size(width, height)
        levels += 1
    return levels


def build_pyramid(kernels: FilterKernels,
                  encoder: CommandEncoder,
                  source: Texture,
                  levels: int,
                  label: str = 'pyramid') -> LaplacianPyramid:
    """
    Record the dispatches that decompose ``source`` into ``levels`` levels.

    Parameters
    ----------
    kernels : FilterKernels
        Kernel manager of the context ``source`` lives on
    encoder : CommandEncoder
        Encoder the dispatches are recorded onto
    source : Texture
        Finest Gaussian level; must be SAMPLED
    levels : int
        Number of levels, at least 1
    label : str
        Prefix for the created textures

    Returns
    -------
    LaplacianPyramid
        Level 0 references ``source``; all other textures are owned by the
        pyramid and destroyed by ``LaplacianPyramid.destroy``
    """
    if levels < 1:
        raise ValueError(f"Pyramid needs at least one level, got {levels}")
    if levels > max_pyramid_levels(source.width, source.height):
        raise ValueError(
            f"{source.width}x{source.height} supports at most "
            f"{max_pyramid_levels(source.width, source.height)} pyramid levels, got {levels}"
        )

    pyramid = LaplacianPyramid(levels=[])
    owned = pyramid.resources
    gaussian = source

    try:
        for k in range(levels - 1):
            width, height = gaussian.width, gaussian.height
            coarse_w, coarse_h = half_size(width, height)

            temp = kernels.create_intermediate(width, height, f"{label}-blur-tmp{k}")
            blurred = kernels.create_intermediate(width, height, f"{label}-blur{k}")
            coarser = kernels.create_intermediate(coarse_w, coarse_h, f"{label}-gauss{k + 1}")
            upsampled = kernels.create_intermediate(width, height, f"{label}-up{k}")
            residual = kernels.create_intermediate(width, height, f"{label}-lap{k}")
            owned.extend([temp, blurred, coarser, upsampled, residual])

            kernels.encode_gaussian_blur(encoder, gaussian, temp, blurred)
            kernels.encode_downsample(encoder, blurred, coarser)
            kernels.encode_upsample(encoder, coarser, upsampled)
            kernels.encode_laplacian_diff(encoder, gaussian, upsampled, residual)

            pyramid.levels.append(PyramidLevel(k, gaussian, residual))
            gaussian = coarser

        pyramid.levels.append(PyramidLevel(levels - 1, gaussian))
        logger.debug(f"Recorded {levels}-level pyramid '{label}' ({len(owned)} textures)")
    except BaseException:
        pyramid.destroy()
        raise

    return pyramid


def amplify_pyramid(kernels: FilterKernels,
                    encoder: CommandEncoder,
                    frame: LaplacianPyramid,
                    mean: LaplacianPyramid,
                    gains: Sequence[float],
                    blur: bool,
                    output: Texture,
                    label: str = 'amplify') -> List[Texture]:
    """
    Record per-level motion extraction, amplification and reconstruction
    into ``output``.

    Returns the intermediate textures created; the caller retires them once
    the submission that uses them has completed.
    """
    n_levels = len(frame)
    if len(mean) != n_levels:
        raise ValueError(f"Frame pyramid has {n_levels} levels, mean pyramid {len(mean)}")
    if len(gains) != n_levels:
        raise ValueError(f"Expected {n_levels} level gains, got {len(gains)}")

    created: List[Texture] = []

    def intermediate(size, name):
        texture = kernels.create_intermediate(size[0], size[1], f"{label}-{name}")
        created.append(texture)
        return texture

    try:
        motions = []
        for frame_level, mean_level in zip(frame.levels, mean.levels):
            k = frame_level.index
            motion = intermediate(frame_level.size, f"motion{k}")
            if frame_level.is_coarsest:
                kernels.encode_subtract_mean(encoder, frame_level.gaussian, mean_level.gaussian, motion)
            else:
                kernels.encode_subtract_residual(encoder, frame_level.laplacian,
                                                 mean_level.laplacian, motion)
            if blur:
                temp = intermediate(frame_level.size, f"motion-tmp{k}")
                smoothed = intermediate(frame_level.size, f"motion-smooth{k}")
                kernels.encode_gaussian_blur(encoder, motion, temp, smoothed)
                motion = smoothed
            motions.append(motion)

        coarsest = frame.levels[-1]
        current = output if n_levels == 1 else intermediate(coarsest.size, f"recon{n_levels - 1}")
        kernels.encode_amplify(encoder, coarsest.gaussian, motions[-1], current, gains[-1])

        for k in range(n_levels - 2, -1, -1):
            level = frame.levels[k]
            amplified = intermediate(level.size, f"lap-amp{k}")
            kernels.encode_amplify_residual(encoder, level.laplacian, motions[k], amplified, gains[k])

            upsampled = intermediate(level.size, f"recon-up{k}")
            kernels.encode_upsample(encoder, current, upsampled)

            target = output if k == 0 else intermediate(level.size, f"recon{k}")
            kernels.encode_reconstruct(encoder, amplified, upsampled, target)
            current = target
    except BaseException:
        for texture in created:
            texture.destroy()
        raise

    return created
