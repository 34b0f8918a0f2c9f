"""
Utility functions for image, warp and affine matrix I/O, and conversion
between SimpleITK images and :class:`~torchgreedy.image.Image`.
"""

import logging
from pathlib import Path

import numpy as np
import SimpleITK as sitk
import torch

from .conversion import (
    field_to_physical,
    flip_lps_ras,
    matrix_to_sitk_transform,
    sitk_transform_to_matrix,
)
from .errors import ConfigurationError, ResourceError
from .image import Image

logger = logging.getLogger(__name__)

ITK_TRANSFORM_HEADER = "#Insight Transform File"


def sitk_to_image(image: sitk.Image, dtype: torch.dtype = torch.float64) -> Image:
    """
    Convert SimpleITK image to an Image.

    Args:
        image: SimpleITK image, scalar or vector valued
        dtype: Tensor dtype of the result

    Returns:
        Image with data [C, *array_shape]

    Note:
        SimpleITK arrays use (z, y, x) ordering, which is kept for the data.
        Vector components move from the last array axis to the channel axis.
    """
    array = sitk.GetArrayFromImage(image)
    if image.GetNumberOfComponentsPerPixel() == 1:
        array = array[np.newaxis]
    else:
        array = np.moveaxis(array, -1, 0)

    dimension = image.GetDimension()
    direction = np.asarray(image.GetDirection(), dtype=np.float64).reshape(dimension, dimension)
    tensor = torch.from_numpy(np.ascontiguousarray(array)).to(dtype)
    return Image(tensor, image.GetSpacing(), image.GetOrigin(), direction)


def image_to_sitk(
    image: Image, pixel_id: int | None = None, vector: bool | None = None
) -> sitk.Image:
    """
    Convert an Image to a SimpleITK image.

    Args:
        image: Image to convert
        pixel_id: Optional SimpleITK pixel type to cast to
        vector: Write channels as vector components; defaults to True for
            multi-channel images

    Returns:
        SimpleITK image with the same geometry
    """
    array = image.data.detach().cpu().numpy()
    if vector is None:
        vector = image.num_channels > 1

    if vector:
        result = sitk.GetImageFromArray(np.moveaxis(array, 0, -1), isVector=True)
    else:
        if image.num_channels != 1:
            raise ValueError(
                f"Scalar output needs a single channel image, got {image.num_channels} channels"
            )
        result = sitk.GetImageFromArray(array[0])

    result.SetSpacing(image.spacing)
    result.SetOrigin(image.origin)
    result.SetDirection(image.direction.flatten().tolist())

    if pixel_id is not None:
        result = sitk.Cast(result, pixel_id)
    return result


def load_image(filepath: str | Path) -> Image:
    """
    Load image from file using SimpleITK.

    Args:
        filepath: Path to image file

    Returns:
        Image with float64 data
    """
    try:
        image = sitk.ReadImage(str(filepath))
    except Exception as e:
        raise ResourceError(f"Failed to load image from {filepath}: {str(e)}", filepath) from e
    return sitk_to_image(image)


def read_pixel_id(filepath: str | Path) -> int:
    """Pixel type of an image file, read from its header only."""
    reader = sitk.ImageFileReader()
    reader.SetFileName(str(filepath))
    try:
        reader.ReadImageInformation()
    except Exception as e:
        raise ResourceError(f"Failed to read header of {filepath}: {str(e)}", filepath) from e
    return int(reader.GetPixelID())


def save_image(
    image: Image | sitk.Image,
    filepath: str | Path,
    pixel_id: int | None = None,
) -> None:
    """
    Save image to file using SimpleITK.

    Args:
        image: Image to save
        filepath: Output file path
        pixel_id: Optional SimpleITK pixel type to cast to
    """
    if isinstance(image, Image):
        sitk_image = image_to_sitk(image, pixel_id)
    else:
        sitk_image = image

    try:
        sitk.WriteImage(sitk_image, str(filepath))
    except Exception as e:
        raise ResourceError(f"Failed to save image to {filepath}: {str(e)}", filepath) from e


def load_vector_field(filepath: str | Path, dimension: int | None = None) -> Image:
    """
    Load a displacement field stored in physical (LPS) offsets.

    Args:
        filepath: Path to a vector image
        dimension: Expected image dimension

    Returns:
        Image with one channel per vector component
    """
    field = load_image(filepath)
    if field.num_channels != field.ndim:
        raise ConfigurationError(
            f"Warp {filepath} has {field.num_channels} components, expected {field.ndim}"
        )
    if dimension is not None and field.ndim != dimension:
        raise ConfigurationError(f"Warp {filepath} is {field.ndim}D, expected {dimension}D")
    return field


def quantize_field(field: torch.Tensor, precision: float) -> torch.Tensor:
    """Round every component to a multiple of ``precision``; 0 leaves the field unchanged."""
    if precision <= 0:
        return field
    return torch.round(field / precision) * precision


def save_vector_field(
    field: torch.Tensor,
    reference: Image,
    filepath: str | Path,
    precision: float = 0.0,
) -> None:
    """
    Write a voxel-unit displacement field as physical offsets.

    Args:
        field: Displacement [ndim, *shape] in voxel units of ``reference``
        reference: Image defining the grid
        filepath: Output path
        precision: Quantization step in voxels before conversion; 0 disables
    """
    physical = field_to_physical(quantize_field(field, precision), reference)
    save_image(reference.like(physical), filepath, pixel_id=sitk.sitkVectorFloat32)


def read_affine_matrix(
    filepath: str | Path, exponent: float = 1.0, dimension: int | None = None
) -> np.ndarray:
    """
    Read an affine transform as a homogeneous RAS matrix.

    Two formats are accepted: ITK transform files (recognized by their header
    line; stored in LPS and converted for 3D) and plain text files holding an
    (N+1)x(N+1) matrix.

    Args:
        filepath: Transform file
        exponent: 1 for the transform itself, -1 for its inverse
        dimension: Expected dimension N

    Returns:
        Matrix [N+1, N+1]
    """
    try:
        with open(filepath) as f:
            header = f.readline()
    except OSError as e:
        raise ResourceError(f"Unable to read transform file {filepath}: {str(e)}", filepath) from e

    if header.startswith(ITK_TRANSFORM_HEADER):
        try:
            transform = sitk.ReadTransform(str(filepath))
        except Exception as e:
            raise ResourceError(f"Unable to read ITK transform {filepath}: {str(e)}", filepath) from e
        matrix = sitk_transform_to_matrix(transform)
        if matrix.shape[0] == 4:
            matrix = flip_lps_ras(matrix)
    else:
        try:
            matrix = np.loadtxt(filepath, ndmin=2)
        except ValueError as e:
            raise ResourceError(f"Unable to parse matrix in {filepath}: {str(e)}", filepath) from e
        if matrix.shape[0] != matrix.shape[1] or matrix.shape[0] not in (3, 4):
            raise ResourceError(
                f"Expected a 3x3 or 4x4 matrix in {filepath}, got shape {matrix.shape}", filepath
            )

    if dimension is not None and matrix.shape[0] != dimension + 1:
        raise ConfigurationError(
            f"Transform {filepath} is {matrix.shape[0] - 1}D, expected {dimension}D"
        )

    if exponent == 1:
        return matrix
    if exponent == -1:
        return np.linalg.inv(matrix)
    raise ConfigurationError(
        "Transform exponent values of +1 and -1 are the only ones currently supported"
    )


def write_affine_matrix(matrix: np.ndarray, filepath: str | Path) -> None:
    """
    Write a homogeneous RAS matrix.

    Files ending in ``.tfm`` are written as ITK transforms (LPS); anything
    else as a plain text matrix.
    """
    filepath = Path(filepath)
    try:
        if filepath.suffix == ".tfm":
            lps = flip_lps_ras(matrix) if matrix.shape[0] == 4 else matrix
            sitk.WriteTransform(matrix_to_sitk_transform(lps), str(filepath))
        else:
            np.savetxt(filepath, matrix, fmt="%.12g")
    except Exception as e:
        raise ResourceError(f"Failed to save transform to {filepath}: {str(e)}", filepath) from e
    logger.info("Wrote affine matrix to %s", filepath)
