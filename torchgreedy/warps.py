"""
Transform chains and displacement field inversion.

A chain is an ordered list of affine matrices and dense warps. It is
composed into one displacement field over a reference grid, expressed as
physical (LPS) offsets: the first element is applied to the reference
points first. Fields produced by the optimizer are in voxel units; the
conversion helpers in :mod:`torchgreedy.conversion` move between the two.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import torch

from .config import TransformSpec
from .conversion import field_to_physical, field_to_voxel
from .coords import lps_grid, lps_to_index, ras_flip
from .errors import ConfigurationError
from .image import Image
from .io import load_vector_field, read_affine_matrix
from .transforms import compose_fields, sample, warp

logger = logging.getLogger(__name__)


def field_square_root(field: torch.Tensor, iterations: int = 20) -> torch.Tensor:
    """
    Field ``v`` whose self-composition is ``field``.

    Solves ``v(x) + v(x + v(x)) = u(x)`` by damped fixed-point iteration.

    Args:
        field: Displacement [ndim, *shape] in voxel units
        iterations: Number of fixed-point iterations

    Returns:
        Square root displacement [ndim, *shape]
    """
    root = 0.5 * field
    for _ in range(iterations):
        update = field - warp(root, root, padding_mode="border")
        root = 0.5 * (root + update)
    return root


def fixed_point_inverse(field: torch.Tensor, iterations: int = 20) -> torch.Tensor:
    """Iterate ``w(x) = -u(x + w(x))`` starting from ``w = -u``."""
    inverse = -field
    for _ in range(iterations):
        inverse = -warp(field, inverse, padding_mode="border")
    return inverse


def invert_field(field: torch.Tensor, exponent: int = 2, iterations: int = 20) -> torch.Tensor:
    """
    Invert a displacement field.

    The field is first reduced by ``exponent`` square roots, which makes it
    small enough for the fixed-point inverse to converge. The inverse of the
    root is then composed with itself ``exponent`` times.

    Args:
        field: Displacement [ndim, *shape] in voxel units
        exponent: Number of square root passes
        iterations: Fixed-point iterations per pass

    Returns:
        Displacement ``w`` with ``w(x) + u(x + w(x))`` close to zero
    """
    if exponent < 0:
        raise ConfigurationError(f"Inverse exponent must be non-negative, got {exponent}")
    root = field
    for _ in range(exponent):
        root = field_square_root(root, iterations)
    inverse = fixed_point_inverse(root, iterations)
    for _ in range(exponent):
        inverse = compose_fields(inverse, inverse)
    return inverse


@dataclass
class ChainElement:
    """
    One transform of a chain.

    Exactly one of the attributes is set: a homogeneous RAS matrix, or a
    warp image holding physical offsets.
    """

    matrix: np.ndarray | None = None
    warp: Image | None = None

    def __post_init__(self) -> None:
        if (self.matrix is None) == (self.warp is None):
            raise ValueError("A chain element needs either a matrix or a warp")


_WARP_SUFFIXES = (
    ".nii",
    ".nii.gz",
    ".mha",
    ".mhd",
    ".nrrd",
    ".nhdr",
    ".vtk",
    ".hdr",
    ".img",
    ".tif",
    ".tiff",
)


def is_warp_file(path: str | Path) -> bool:
    """Warps are image files; everything else is read as an affine matrix."""
    return str(path).lower().endswith(_WARP_SUFFIXES)


def load_chain_element(spec: TransformSpec, dimension: int, iterations: int = 20) -> ChainElement:
    """
    Read one transform of a chain.

    Args:
        spec: Transform file and exponent (+1 or -1)
        dimension: Image dimension
        iterations: Fixed-point iterations when a warp must be inverted

    Returns:
        ChainElement
    """
    spec.validate()
    path = Path(spec.path)
    if not is_warp_file(path):
        return ChainElement(matrix=read_affine_matrix(path, spec.exponent, dimension))

    warp_image = load_vector_field(path, dimension)
    if spec.exponent == -1:
        voxel = field_to_voxel(warp_image.data, warp_image)
        inverse = invert_field(voxel, iterations=iterations)
        warp_image = warp_image.like(field_to_physical(inverse, warp_image))
    return ChainElement(warp=warp_image)


def compose_transform_chain(elements: Sequence[ChainElement], reference: Image) -> torch.Tensor:
    """
    Compose a chain into a single field over the reference grid.

    Args:
        elements: Transforms, applied to reference points in order
        reference: Image defining the output grid

    Returns:
        Displacement [ndim, *reference.shape] in physical LPS offsets
    """
    points = lps_grid(reference)
    out = torch.zeros_like(points)
    flip = torch.tensor(ras_flip(reference.ndim), dtype=points.dtype).view(
        -1, *([1] * reference.ndim)
    )

    for element in elements:
        if element.warp is not None:
            positions = lps_to_index(element.warp, points + out)
            out = out + sample(
                element.warp.data.to(points.dtype), positions, padding_mode="border"
            )
        else:
            ndim = reference.ndim
            matrix = torch.as_tensor(element.matrix, dtype=points.dtype)  # type: ignore[arg-type]
            ras = flip * (points + out)
            mapped = torch.einsum("ij,j...->i...", matrix[:ndim, :ndim], ras)
            mapped = mapped + matrix[:ndim, ndim].view(-1, *([1] * ndim))
            out = flip * mapped - points
    return out


def read_transform_chain(
    specs: Sequence[TransformSpec], reference: Image, iterations: int = 20
) -> torch.Tensor:
    """Load and compose a chain of transform files over ``reference``."""
    elements = [load_chain_element(spec, reference.ndim, iterations) for spec in specs]
    logger.debug("Composing chain of %d transforms", len(elements))
    return compose_transform_chain(elements, reference)


def apply_physical_warp(
    image: Image, field: torch.Tensor, reference: Image, mode: str = "bilinear"
) -> Image:
    """
    Resample ``image`` at ``p + field(p)`` for every reference point ``p``.

    Args:
        image: Image to resample
        field: Physical LPS displacement [ndim, *reference.shape]
        reference: Output grid
        mode: "bilinear" or "nearest"

    Returns:
        Image on the reference grid
    """
    positions = lps_to_index(image, lps_grid(reference, dtype=field.dtype) + field)
    return reference.like(sample(image.data.to(field.dtype), positions, mode=mode))
