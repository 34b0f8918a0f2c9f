"""
Image processing utilities for torchgreedy.

This module contains separable Gaussian and box filters, downsampling,
intensity normalization, and resampling between image grids.
"""

from collections.abc import Sequence

import numpy as np
import torch
import torch.nn.functional as F

from .coords import lps_grid, lps_to_index
from .image import Image
from .transforms import sample


def _separable_filter(
    data: torch.Tensor,
    kernels: Sequence[torch.Tensor | None],
    padding_mode: str,
) -> torch.Tensor:
    """
    Convolve every channel with one 1D kernel per index axis.

    Args:
        data: Tensor [C, *shape]
        kernels: 1D kernels of odd length in (x, y, z) order; None skips an axis
        padding_mode: "replicate" or "constant" (zeros)

    Returns:
        Filtered tensor [C, *shape]
    """
    ndim = data.dim() - 1
    num_channels = data.shape[0]
    conv = F.conv2d if ndim == 2 else F.conv3d
    current = data.unsqueeze(0)

    for k, kernel in enumerate(kernels):
        if kernel is None:
            continue
        # Index axis k is array axis ndim - 1 - k
        axis = ndim - 1 - k
        radius = kernel.numel() // 2
        view = [1] * ndim
        view[axis] = kernel.numel()
        weight = kernel.view(1, 1, *view).expand(num_channels, 1, *view)

        # F.pad takes (last_lo, last_hi, ..., first_lo, first_hi)
        pad = [0] * (2 * ndim)
        pad[2 * k] = radius
        pad[2 * k + 1] = radius
        current = F.pad(current, pad, mode=padding_mode)
        current = conv(current, weight, groups=num_channels)

    return current.squeeze(0)


def gaussian_kernel(
    sigma: float, truncate: float = 3.0, dtype: torch.dtype = torch.float64
) -> torch.Tensor:
    """Normalized 1D Gaussian kernel spanning ``truncate`` sigmas."""
    radius = max(1, int(np.ceil(truncate * sigma)))
    coords = torch.arange(-radius, radius + 1, dtype=dtype)
    kernel = torch.exp(-(coords**2) / (2 * sigma**2))
    return kernel / kernel.sum()


def gaussian_blur(
    data: torch.Tensor, sigma: Sequence[float], truncate: float = 3.0
) -> torch.Tensor:
    """
    Apply Gaussian blur to a [C, *shape] tensor using separable 1D filters.
    Works for both 2D [C, H, W] and 3D [C, D, H, W] tensors.

    Args:
        data: Input tensor
        sigma: Standard deviation in voxels per index axis (x, y, z); zero skips the axis
        truncate: Kernel half width in standard deviations

    Returns:
        Blurred tensor of the same shape
    """
    if len(sigma) != data.dim() - 1:
        raise ValueError(f"Expected {data.dim() - 1} sigmas, got {len(sigma)}")
    kernels = [
        gaussian_kernel(s, truncate, data.dtype).to(data.device) if s > 0 else None
        for s in sigma
    ]
    return _separable_filter(data, kernels, padding_mode="replicate")


def smooth_field(
    field: torch.Tensor, sigma: Sequence[float], zero_border: bool = True
) -> torch.Tensor:
    """
    Gaussian smoothing of a vector field.

    With ``zero_border`` the outermost layer of voxels is set to zero
    displacement after smoothing.
    """
    if all(s <= 0 for s in sigma):
        smoothed = field.clone()
    else:
        smoothed = gaussian_blur(field, sigma)
    if zero_border:
        for axis in range(1, field.dim()):
            smoothed.narrow(axis, 0, 1).zero_()
            smoothed.narrow(axis, field.shape[axis] - 1, 1).zero_()
    return smoothed


def box_sum(data: torch.Tensor, radius: Sequence[int]) -> torch.Tensor:
    """
    Sum over a (2r+1)-wide window around every voxel, treating the outside as zero.

    Args:
        data: Tensor [C, *shape]
        radius: Window radius per index axis (x, y, z)

    Returns:
        Window sums [C, *shape]
    """
    kernels = [
        torch.ones(2 * r + 1, dtype=data.dtype, device=data.device) if r > 0 else None
        for r in radius
    ]
    return _separable_filter(data, kernels, padding_mode="constant")


def shrink(data: torch.Tensor, factors: Sequence[int]) -> torch.Tensor:
    """
    Downsample by block averaging.

    Args:
        data: Tensor [C, *shape]
        factors: Integer factor per index axis (x, y, z)

    Returns:
        Tensor [C, *shape // factors]
    """
    kernel = tuple(reversed([int(f) for f in factors]))
    if all(k == 1 for k in kernel):
        return data
    pool = F.avg_pool2d if data.dim() == 3 else F.avg_pool3d
    return pool(data.unsqueeze(0), kernel_size=kernel, stride=kernel).squeeze(0)


def normalize_image(data: torch.Tensor) -> torch.Tensor:
    """
    Rescale intensities of every channel to [0, 1].

    Args:
        data: Image tensor [C, *shape]

    Returns:
        Normalized image
    """
    flat = data.reshape(data.shape[0], -1)
    view = (-1,) + (1,) * (data.dim() - 1)
    min_val = flat.min(dim=1).values.view(view)
    max_val = flat.max(dim=1).values.view(view)
    return (data - min_val) / (max_val - min_val + 1e-8)


def resample_image(
    image: Image,
    reference: Image,
    mode: str = "bilinear",
    padding_mode: str = "zeros",
) -> Image:
    """
    Resample an image onto the grid of ``reference`` through physical space.

    Args:
        image: Image to resample
        reference: Image defining the output grid
        mode: "bilinear" or "nearest"
        padding_mode: "zeros" or "border"

    Returns:
        Image on the reference grid
    """
    if image.same_grid(reference):
        return reference.like(image.data.clone())
    positions = lps_to_index(image, lps_grid(reference, dtype=image.data.dtype))
    return reference.like(sample(image.data, positions, mode=mode, padding_mode=padding_mode))
