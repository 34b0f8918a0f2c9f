"""
Conversions between voxel and physical transform representations.

Affine matrices travel between SimpleITK transforms (LPS) and homogeneous
RAS matrices; displacement fields travel between voxel units of a grid and
physical LPS offsets.
"""

import numpy as np
import SimpleITK as sitk
import torch

from .coords import index_to_lps, ras_flip
from .image import Image


def sitk_transform_to_matrix(transform: sitk.Transform) -> np.ndarray:
    """
    Homogeneous matrix of a linear SimpleITK transform.

    Args:
        transform: Any SimpleITK transform that is affine (Euler, Similarity,
            Affine, ...); composite transforms use their first element

    Returns:
        Matrix [N+1, N+1] in the transform's own (LPS) space

    Note:
        The matrix is recovered by mapping the origin and the unit vectors, so
        centre and translation conventions of the transform type do not matter.
    """
    if transform.GetName() == "CompositeTransform":
        transform = sitk.CompositeTransform(transform).GetNthTransform(0)
    dimension = transform.GetDimension()

    origin = np.asarray(transform.TransformPoint((0.0,) * dimension))
    matrix = np.eye(dimension + 1)
    for j in range(dimension):
        unit = [0.0] * dimension
        unit[j] = 1.0
        matrix[:dimension, j] = np.asarray(transform.TransformPoint(tuple(unit))) - origin
    matrix[:dimension, dimension] = origin
    return matrix


def matrix_to_sitk_transform(matrix: np.ndarray) -> sitk.AffineTransform:
    """
    Convert a homogeneous LPS matrix to a SimpleITK AffineTransform.

    Args:
        matrix: Homogeneous matrix [N+1, N+1]

    Returns:
        SimpleITK AffineTransform with zero centre
    """
    dimension = matrix.shape[0] - 1
    transform = sitk.AffineTransform(dimension)
    transform.SetMatrix(matrix[:dimension, :dimension].flatten().astype(np.float64).tolist())
    transform.SetTranslation(matrix[:dimension, dimension].astype(np.float64).tolist())
    return transform


def flip_lps_ras(matrix: np.ndarray) -> np.ndarray:
    """
    Switch a homogeneous matrix between LPS and RAS conventions.

    The flip is its own inverse. In 3D it negates entries (2,0), (2,1),
    (0,2), (1,2), (0,3) and (1,3).
    """
    dimension = matrix.shape[0] - 1
    flip = np.ones(dimension + 1)
    flip[:dimension] = ras_flip(dimension)
    return flip[:, None] * matrix * flip[None, :]


def field_to_physical(field: torch.Tensor, reference: Image) -> torch.Tensor:
    """
    Convert a displacement field from voxel units to physical LPS offsets.

    Args:
        field: Displacement [ndim, *shape] in voxel units of ``reference``
        reference: Image defining the grid

    Returns:
        Displacement [ndim, *shape] in physical units
    """
    matrix, _ = index_to_lps(reference)
    m = torch.as_tensor(matrix, dtype=field.dtype, device=field.device)
    return torch.einsum("ij,j...->i...", m, field)


def field_to_voxel(field: torch.Tensor, reference: Image) -> torch.Tensor:
    """Inverse of :func:`field_to_physical`."""
    matrix, _ = index_to_lps(reference)
    inverse = np.linalg.solve(matrix, np.eye(reference.ndim))
    m = torch.as_tensor(inverse, dtype=field.dtype, device=field.device)
    return torch.einsum("ij,j...->i...", m, field)
