"""
Mapping between voxel index space and physical space.

Physical points come in two conventions. ITK/SimpleITK positions are LPS,
``physical = D * diag(spacing) * index + origin``. Persisted affine matrices
are RAS, which negates the first two axes of the LPS position. All matrix
algebra is done in float64 numpy; dense grids are produced as torch tensors.
"""

import numpy as np
import torch

from .image import Image
from .transforms import create_grid


def ras_flip(ndim: int) -> np.ndarray:
    """Diagonal LPS <-> RAS sign flip for ``ndim`` axes."""
    flip = np.ones(ndim)
    flip[:2] = -1.0
    return flip


def index_to_lps(image: Image) -> tuple[np.ndarray, np.ndarray]:
    """Return (M, o) with ``lps = M @ index + o``."""
    matrix = image.direction @ np.diag(image.spacing)
    return matrix, np.asarray(image.origin, dtype=np.float64)


def voxel_to_physical(image: Image) -> tuple[np.ndarray, np.ndarray]:
    """
    Voxel to physical (RAS) mapping of an image.

    Args:
        image: Image whose geometry defines the mapping

    Returns:
        Tuple (A, b) such that ``ras = A @ index + b``
    """
    matrix, origin = index_to_lps(image)
    flip = ras_flip(image.ndim)
    return flip[:, None] * matrix, flip * origin


def physical_to_voxel(image: Image, points: np.ndarray) -> np.ndarray:
    """
    Map RAS points to continuous voxel indices.

    Args:
        image: Image whose geometry defines the mapping
        points: Array [..., ndim] of RAS positions

    Returns:
        Array [..., ndim] of continuous indices (x, y, z order)
    """
    A, b = voxel_to_physical(image)
    points = np.asarray(points, dtype=np.float64)
    flat = points.reshape(-1, image.ndim) - b
    index = np.linalg.solve(A, flat.T).T
    return index.reshape(points.shape)


def affine_voxel_to_physical(
    matrix: np.ndarray, offset: np.ndarray, fixed: Image, moving: Image
) -> np.ndarray:
    """
    Express a voxel space affine transform in RAS physical space.

    The voxel transform maps fixed indices to moving indices. The result is
    the homogeneous (N+1)x(N+1) matrix mapping fixed RAS points to moving RAS
    points: ``Q = T_mov A T_fix^-1`` and ``p = T_mov b + s_mov - Q s_fix``.

    Args:
        matrix: Voxel space matrix [N, N]
        offset: Voxel space offset [N]
        fixed: Fixed (reference) image at the current level
        moving: Moving image at the current level

    Returns:
        Homogeneous matrix [N+1, N+1]
    """
    t_fix, s_fix = voxel_to_physical(fixed)
    t_mov, s_mov = voxel_to_physical(moving)

    # Q T_fix = T_mov A, solved for Q without forming T_fix^-1
    q = np.linalg.solve(t_fix.T, (t_mov @ matrix).T).T
    p = t_mov @ offset + s_mov - q @ s_fix

    ndim = fixed.ndim
    qp = np.eye(ndim + 1)
    qp[:ndim, :ndim] = q
    qp[:ndim, ndim] = p
    return qp


def affine_physical_to_voxel(
    qp: np.ndarray, fixed: Image, moving: Image
) -> tuple[np.ndarray, np.ndarray]:
    """
    Express a RAS homogeneous matrix as a voxel space affine transform.

    Inverse of :func:`affine_voxel_to_physical`; the linear systems in
    ``T_mov`` are solved directly.

    Returns:
        Tuple (matrix [N, N], offset [N])
    """
    ndim = fixed.ndim
    qp = np.asarray(qp, dtype=np.float64)
    q, p = qp[:ndim, :ndim], qp[:ndim, ndim]

    t_fix, s_fix = voxel_to_physical(fixed)
    t_mov, s_mov = voxel_to_physical(moving)

    matrix = np.linalg.solve(t_mov, q @ t_fix)
    offset = np.linalg.solve(t_mov, p - s_mov + q @ s_fix)
    return matrix, offset


def lps_grid(image: Image, dtype: torch.dtype = torch.float64) -> torch.Tensor:
    """
    LPS physical position of every voxel.

    Returns:
        Tensor [ndim, *image.shape], components in (x, y, z) order
    """
    matrix, origin = index_to_lps(image)
    grid = create_grid(image.shape, dtype=dtype, device=image.data.device)
    m = torch.as_tensor(matrix, dtype=dtype, device=grid.device)
    o = torch.as_tensor(origin, dtype=dtype, device=grid.device)
    points = torch.einsum("ij,j...->i...", m, grid)
    return points + o.view(-1, *([1] * image.ndim))


def lps_to_index(image: Image, points: torch.Tensor) -> torch.Tensor:
    """
    Continuous indices of LPS points in ``image``.

    Args:
        image: Image whose geometry defines the mapping
        points: Tensor [ndim, ...] of LPS positions

    Returns:
        Tensor [ndim, ...] of continuous indices
    """
    matrix, origin = index_to_lps(image)
    # index = M^-1 (p - o); M is at most 3x3
    inverse = np.linalg.solve(matrix, np.eye(image.ndim))
    m = torch.as_tensor(inverse, dtype=points.dtype, device=points.device)
    o = torch.as_tensor(origin, dtype=points.dtype, device=points.device)
    shifted = points - o.view(-1, *([1] * (points.dim() - 1)))
    return torch.einsum("ij,j...->i...", m, shifted)
