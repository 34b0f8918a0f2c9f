"""
Multi-resolution composite image pyramid.

All fixed images are packed into one multi-channel composite and all moving
images into another, so a single interpolation call warps every channel at
once. The moving composite carries one extra channel of ones; after warping
with zero padding it tells which fixed voxels map inside the moving image.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import torch
import torch.nn.functional as F

from .errors import ConfigurationError
from .image import Image
from .processing import gaussian_blur, normalize_image, resample_image, shrink
from .transforms import compute_gradient, sample

logger = logging.getLogger(__name__)


@dataclass
class ImagePair:
    """A fixed/moving pair with its weight in the total metric."""

    fixed: Image
    moving: Image
    weight: float = 1.0


@dataclass
class WarpedMoving:
    """Moving composite sampled at a set of positions."""

    values: torch.Tensor  # [C, *shape]
    gradient: torch.Tensor  # [C, ndim, *shape]
    mask: torch.Tensor  # [*shape]
    mask_gradient: torch.Tensor  # [ndim, *shape]


@dataclass
class PyramidLevel:
    """
    Composite images at one resolution.

    Attributes:
        index: Level number, 0 being the coarsest
        factors: Shrink factor per index axis relative to the input images
        fixed: Fixed composite [C, *shape]
        moving: Moving composite [C + 1, *shape]; the last channel is the domain mask
        moving_gradient: Spatial gradient of ``moving`` [(C + 1) * ndim, *shape]
        weights: Weight of every channel [C]
        pair_channels: Channel range of each input pair
        gradient_mask: Optional mask on the fixed grid [1, *shape]
    """

    index: int
    factors: tuple[int, ...]
    fixed: Image
    moving: Image
    moving_gradient: torch.Tensor
    weights: torch.Tensor
    pair_channels: list[slice]
    gradient_mask: Image | None = None

    @property
    def ndim(self) -> int:
        return self.fixed.ndim

    @property
    def num_channels(self) -> int:
        return self.fixed.num_channels

    def sample_moving(self, positions: torch.Tensor) -> WarpedMoving:
        """
        Warp the moving composite and its gradient in one pass.

        Args:
            positions: Moving voxel positions [ndim, *fixed.shape]

        Returns:
            WarpedMoving with image values, gradients and domain mask
        """
        ndim = self.ndim
        channels = self.num_channels
        stacked = torch.cat([self.moving.data, self.moving_gradient], dim=0)
        warped = sample(stacked, positions, mode="bilinear", padding_mode="zeros")

        values = warped[:channels]
        mask = warped[channels]
        gradients = warped[channels + 1 :].reshape(channels + 1, ndim, *positions.shape[1:])
        return WarpedMoving(values, gradients[:channels], mask, gradients[channels])


class Pyramid:
    """Levels ordered from the coarsest (index 0) to the finest."""

    def __init__(self, levels: list[PyramidLevel]):
        self.levels = levels

    def __len__(self) -> int:
        return len(self.levels)

    def __getitem__(self, index: int) -> PyramidLevel:
        return self.levels[index]

    def __iter__(self):
        return iter(self.levels)

    @property
    def coarsest(self) -> PyramidLevel:
        return self.levels[0]

    @property
    def finest(self) -> PyramidLevel:
        return self.levels[-1]


def default_shrink_factors(num_levels: int) -> list[int]:
    """Factors 2^(n-1), ..., 2, 1 from the coarsest level to the finest."""
    return [2 ** (num_levels - 1 - i) for i in range(num_levels)]


def downsample(image: Image, factors: Sequence[int]) -> Image:
    """
    Smooth and shrink an image, updating its geometry.

    Args:
        image: Input image
        factors: Integer shrink factor per index axis (x, y, z)

    Returns:
        Downsampled image; voxel i covers input voxels f*i .. f*i + f - 1
    """
    if all(f == 1 for f in factors):
        return image
    sigma = [0.5 * f if f > 1 else 0.0 for f in factors]
    data = shrink(gaussian_blur(image.data, sigma), factors)

    spacing = np.asarray(image.spacing) * np.asarray(factors)
    shift = np.asarray(image.spacing) * (np.asarray(factors) - 1) / 2.0
    origin = np.asarray(image.origin) + image.direction @ shift
    return Image(data, tuple(spacing), tuple(origin), image.direction.copy())


def _mask_gradient(mask: torch.Tensor) -> torch.Tensor:
    """Gradient of a mask channel [1, *shape] with zeros assumed outside the domain."""
    ndim = mask.dim() - 1
    padded = F.pad(mask.unsqueeze(0), [1] * (2 * ndim)).squeeze(0)
    grad = compute_gradient(padded)
    crop = (slice(None),) + (slice(1, -1),) * ndim
    return grad[crop]


def _make_composites(
    pairs: Sequence[ImagePair], normalize: bool
) -> tuple[Image, Image, torch.Tensor, list[slice]]:
    """Stack all pairs into a fixed and a moving composite at full resolution."""
    if not pairs:
        raise ConfigurationError("No image pairs have been specified")

    reference = pairs[0].fixed
    moving_ref = pairs[0].moving
    fixed_channels, moving_channels, weights, pair_channels = [], [], [], []
    start = 0

    for i, pair in enumerate(pairs):
        if pair.fixed.ndim != reference.ndim or pair.moving.ndim != reference.ndim:
            raise ConfigurationError(f"Image pair {i} has a different dimension than pair 0")
        if pair.fixed.num_channels != pair.moving.num_channels:
            raise ConfigurationError(
                f"Image pair {i}: fixed has {pair.fixed.num_channels} components, "
                f"moving has {pair.moving.num_channels}"
            )
        fixed = pair.fixed if pair.fixed.same_grid(reference) else resample_image(pair.fixed, reference)
        moving = pair.moving if pair.moving.same_grid(moving_ref) else resample_image(pair.moving, moving_ref)

        fixed_data = fixed.data.to(torch.float64)
        moving_data = moving.data.to(torch.float64)
        if normalize:
            fixed_data = normalize_image(fixed_data)
            moving_data = normalize_image(moving_data)

        fixed_channels.append(fixed_data)
        moving_channels.append(moving_data)
        n = fixed_data.shape[0]
        weights.extend([pair.weight] * n)
        pair_channels.append(slice(start, start + n))
        start += n

    fixed_composite = reference.like(torch.cat(fixed_channels, dim=0))
    mask = torch.ones((1,) + moving_ref.shape, dtype=torch.float64)
    moving_composite = moving_ref.like(torch.cat(moving_channels + [mask], dim=0))
    return fixed_composite, moving_composite, torch.tensor(weights, dtype=torch.float64), pair_channels


def build_pyramid(
    pairs: Sequence[ImagePair],
    num_levels: int | None = None,
    shrink_factors: Sequence[int] | None = None,
    gradient_mask: Image | None = None,
    normalize: bool = False,
) -> Pyramid:
    """
    Build all pyramid levels eagerly.

    Args:
        pairs: Fixed/moving image pairs
        num_levels: Number of levels; used when shrink_factors is not given
        shrink_factors: Shrink factor per level, coarsest first (e.g. [4, 2, 1])
        gradient_mask: Optional mask on the fixed grid
        normalize: Rescale every channel to [0, 1] (used by mutual information)

    Returns:
        Pyramid with levels ordered coarsest first
    """
    if shrink_factors is None:
        if num_levels is None or num_levels < 1:
            raise ConfigurationError("Either num_levels or shrink_factors must be provided")
        shrink_factors = default_shrink_factors(num_levels)
    shrink_factors = [int(f) for f in shrink_factors]
    if any(f < 1 for f in shrink_factors):
        raise ConfigurationError(f"Shrink factors must be positive, got {shrink_factors}")
    if any(a % b for a, b in zip(shrink_factors[:-1], shrink_factors[1:], strict=False)):
        raise ConfigurationError(
            f"Each shrink factor must be a multiple of the next finer one, got {shrink_factors}"
        )

    fixed, moving, weights, pair_channels = _make_composites(pairs, normalize)
    mask = None
    if gradient_mask is not None:
        mask = gradient_mask
        if not mask.same_grid(fixed):
            mask = resample_image(mask, fixed, mode="nearest")
        mask = mask.like(mask.data[:1].to(torch.float64))

    ndim = fixed.ndim
    levels: list[PyramidLevel] = []
    current_factors = [1] * ndim

    # Walk from the finest level to the coarsest; each level is derived from the previous one
    for index in reversed(range(len(shrink_factors))):
        target = shrink_factors[index]
        step = []
        for k in range(ndim):
            relative = target // current_factors[k] if target >= current_factors[k] else 1
            # Axes too small to shrink further keep their resolution
            if fixed.size[k] < relative or moving.size[k] < relative:
                relative = 1
            step.append(relative)

        fixed = downsample(fixed, step)
        moving = downsample(moving, step)
        if mask is not None:
            mask = downsample(mask, step)
        current_factors = [c * s for c, s in zip(current_factors, step, strict=False)]

        values = moving.data[:-1]
        gradient = torch.cat(
            [compute_gradient(values), _mask_gradient(moving.data[-1:])], dim=0
        )
        levels.append(
            PyramidLevel(
                index=index,
                factors=tuple(current_factors),
                fixed=fixed,
                moving=moving,
                moving_gradient=gradient,
                weights=weights,
                pair_channels=pair_channels,
                gradient_mask=mask,
            )
        )
        logger.debug(
            "Pyramid level %d: factors %s, fixed size %s", index, tuple(current_factors), fixed.size
        )

    levels.reverse()
    return Pyramid(levels)
