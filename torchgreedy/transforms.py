"""
Voxel space grids, warping and displacement field primitives.

Positions and displacements are tensors [ndim, *array_shape] in voxel units
with components ordered (x, y, z), i.e. component 0 runs along the last
array axis. Sampling goes through ``grid_sample`` with ``align_corners=True``
so that normalized -1 and 1 fall on the first and last voxel centres.
"""

from collections.abc import Sequence

import numpy as np
import torch
import torch.nn.functional as F


def create_grid(
    shape: Sequence[int],
    dtype: torch.dtype = torch.float64,
    device: torch.device | None = None,
) -> torch.Tensor:
    """
    Create the identity grid of voxel indices.

    Args:
        shape: Array shape (H, W) for 2D or (D, H, W) for 3D
        dtype: Grid dtype
        device: PyTorch device

    Returns:
        Tensor [ndim, *shape] where component 0 is the x (column) index

    Note:
        The component order matches ``grid_sample``: x is the width
        dimension (last array axis), y the height, z the depth.
    """
    if len(shape) not in (2, 3):
        raise ValueError(f"Unsupported shape: {tuple(shape)}")

    axes = [torch.arange(n, dtype=dtype, device=device) for n in shape]
    mesh = torch.meshgrid(*axes, indexing="ij")

    # meshgrid yields (z, y, x); reverse to (x, y, z)
    return torch.stack(list(reversed(mesh)), dim=0)


def _normalized_grid(positions: torch.Tensor, shape: Sequence[int]) -> torch.Tensor:
    """Convert voxel positions [ndim, *out] to a grid_sample grid [1, *out, ndim]."""
    ndim = positions.shape[0]
    size = torch.tensor(
        list(reversed(shape)), dtype=positions.dtype, device=positions.device
    )
    scale = 2.0 / torch.clamp(size - 1, min=1)
    grid = positions * scale.view(ndim, *([1] * ndim)) - 1.0
    return grid.permute(*range(1, ndim + 1), 0).unsqueeze(0)


def sample(
    data: torch.Tensor,
    positions: torch.Tensor,
    mode: str = "bilinear",
    padding_mode: str = "zeros",
) -> torch.Tensor:
    """
    Interpolate a multi-channel image at continuous voxel positions.

    Args:
        data: Image tensor [C, *shape]
        positions: Voxel positions [ndim, *out_shape]
        mode: "bilinear" (linear in 3D as well) or "nearest"
        padding_mode: Value outside the domain, "zeros" or "border"

    Returns:
        Tensor [C, *out_shape]
    """
    ndim = data.dim() - 1
    if positions.shape[0] != ndim:
        raise ValueError(
            f"Positions should have {ndim} components for {ndim}D images, got {positions.shape[0]}"
        )
    grid = _normalized_grid(positions.to(data.dtype), data.shape[1:])
    warped = F.grid_sample(
        data.unsqueeze(0),
        grid,
        mode=mode,
        padding_mode=padding_mode,
        align_corners=True,
    )
    return warped.squeeze(0)


def warp(
    data: torch.Tensor,
    field: torch.Tensor,
    mode: str = "bilinear",
    padding_mode: str = "zeros",
) -> torch.Tensor:
    """Sample ``data`` at ``x + field(x)`` over the field's grid."""
    grid = create_grid(field.shape[1:], dtype=field.dtype, device=field.device)
    return sample(data, grid + field, mode=mode, padding_mode=padding_mode)


def affine_positions(
    matrix: np.ndarray | torch.Tensor,
    offset: np.ndarray | torch.Tensor,
    shape: Sequence[int],
    dtype: torch.dtype = torch.float64,
    device: torch.device | None = None,
) -> torch.Tensor:
    """Positions ``A x + b`` for every voxel x of an array of ``shape``."""
    grid = create_grid(shape, dtype=dtype, device=device)
    a = torch.as_tensor(np.asarray(matrix), dtype=dtype, device=grid.device)
    b = torch.as_tensor(np.asarray(offset), dtype=dtype, device=grid.device)
    return torch.einsum("ij,j...->i...", a, grid) + b.view(-1, *([1] * len(shape)))


def affine_to_field(
    matrix: np.ndarray | torch.Tensor,
    offset: np.ndarray | torch.Tensor,
    shape: Sequence[int],
    dtype: torch.dtype = torch.float64,
    device: torch.device | None = None,
) -> torch.Tensor:
    """Dense displacement field ``u(x) = A x + b - x`` of a voxel space affine."""
    positions = affine_positions(matrix, offset, shape, dtype, device)
    return positions - create_grid(shape, dtype=dtype, device=positions.device)


def compose_fields(outer: torch.Tensor, inner: torch.Tensor) -> torch.Tensor:
    """
    Displacement of ``(id + outer) o (id + inner)``.

    Args:
        outer: Field applied second [ndim, *shape]
        inner: Field applied first [ndim, *shape]

    Returns:
        ``inner(x) + outer(x + inner(x))``
    """
    return inner + warp(outer, inner, padding_mode="border")


def compute_gradient(data: torch.Tensor) -> torch.Tensor:
    """
    Central difference spatial gradient of every channel.

    Args:
        data: Image tensor [C, *shape]

    Returns:
        Tensor [C * ndim, *shape]; entry ``c * ndim + k`` is the derivative of
        channel c along index axis k (x, y, z order). One-sided differences are
        used at the border.
    """
    ndim = data.dim() - 1
    derivatives = []
    for k in range(ndim):
        dim = data.dim() - 1 - k
        if data.shape[dim] < 2:
            derivatives.append(torch.zeros_like(data))
        else:
            derivatives.append(torch.gradient(data, dim=dim)[0])
    stacked = torch.stack(derivatives, dim=1)
    return stacked.reshape(data.shape[0] * ndim, *data.shape[1:])


def jacobian_determinant(field: torch.Tensor) -> torch.Tensor:
    """
    Determinant of the Jacobian of ``x + field(x)``.

    Args:
        field: Displacement field [ndim, *shape] in voxel units

    Returns:
        Tensor [*shape]
    """
    ndim = field.shape[0]
    grad = compute_gradient(field).reshape(ndim, ndim, *field.shape[1:])

    # Move the matrix axes last: [*shape, ndim, ndim]
    jac = grad.permute(*range(2, ndim + 2), 0, 1)
    jac = jac + torch.eye(ndim, dtype=field.dtype, device=field.device)
    return torch.linalg.det(jac)


def max_vector_norm(field: torch.Tensor) -> float:
    """Largest Euclidean vector length in a field."""
    return float(torch.linalg.vector_norm(field, dim=0).max())


def normalize_to_max_length(
    field: torch.Tensor, length: float, only_shrink: bool = False
) -> torch.Tensor:
    """
    Rescale a field so its longest vector has ``length``.

    Args:
        field: Field [ndim, *shape]
        length: Target maximum vector length
        only_shrink: Leave fields whose maximum is already below ``length``

    Returns:
        Rescaled field (the input itself if it is all zeros)
    """
    current = max_vector_norm(field)
    if current == 0.0 or (only_shrink and current <= length):
        return field
    return field * (length / current)
