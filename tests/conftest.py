"""
Test configuration and fixtures for torchgreedy tests.
"""

import numpy as np
import pytest
import SimpleITK as sitk
import torch

from torchgreedy.image import Image
from torchgreedy.parallel import WorkerPool


@pytest.fixture
def random_seed():
    """Set random seed for reproducible tests."""
    seed = 42
    torch.manual_seed(seed)
    np.random.seed(seed)
    return seed


@pytest.fixture
def image_2d_shape():
    """Standard 2D image shape for testing."""
    return (64, 64)


@pytest.fixture
def image_3d_shape():
    """Standard 3D image shape for testing."""
    return (16, 24, 24)


@pytest.fixture
def create_blob_image():
    """Create a smooth image made of Gaussian blobs."""

    def _create_image(shape, shift=None, spacing=None, origin=None, direction=None):
        ndim = len(shape)
        shift = np.zeros(ndim) if shift is None else np.asarray(shift, dtype=np.float64)

        # Index coordinates in (x, y, z) order
        axes = [torch.arange(n, dtype=torch.float64) for n in shape]
        mesh = list(reversed(torch.meshgrid(*axes, indexing="ij")))
        size = np.asarray(list(reversed(shape)), dtype=np.float64)

        data = torch.zeros(shape, dtype=torch.float64)
        for centre, width, amplitude in (((0.4, 0.45), 0.12, 1.0), ((0.62, 0.58), 0.08, 0.6)):
            centre = [c * s for c, s in zip(centre + (0.5,) * (ndim - 2), size, strict=False)]
            r2 = sum(
                (mesh[k] - centre[k] - shift[k]) ** 2 for k in range(ndim)
            ) / (width * size.mean()) ** 2
            data += amplitude * torch.exp(-r2)

        return Image(
            data.unsqueeze(0),
            spacing or (),
            origin or (),
            np.zeros((0, 0)) if direction is None else direction,
        )

    return _create_image


@pytest.fixture
def create_sitk_image():
    """Create SimpleITK test images."""

    def _create_sitk_image(array: np.ndarray, spacing=None, origin=None, is_vector=False):
        image = sitk.GetImageFromArray(array, isVector=is_vector)

        if spacing is not None:
            image.SetSpacing(spacing)
        if origin is not None:
            image.SetOrigin(origin)

        return image

    return _create_sitk_image


@pytest.fixture
def pool():
    """Single threaded worker pool."""
    with WorkerPool(1) as worker_pool:
        yield worker_pool


@pytest.fixture
def tolerance():
    """Default tolerance for numerical comparisons."""
    return {"rtol": 1e-4, "atol": 1e-6}
