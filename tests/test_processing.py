"""
Tests for image processing utilities.
"""

import pytest
import torch

from torchgreedy.image import Image
from torchgreedy.processing import (
    box_sum,
    gaussian_blur,
    gaussian_kernel,
    normalize_image,
    resample_image,
    shrink,
    smooth_field,
)


class TestGaussianBlur:
    """Test the Gaussian blur function."""

    def test_gaussian_blur_2d_shape_preservation(self):
        """Test that 2D Gaussian blur preserves tensor shape."""
        image = torch.randn(2, 32, 32, dtype=torch.float64)
        blurred = gaussian_blur(image, [1.0, 1.0])

        assert blurred.shape == image.shape
        assert blurred.dtype == image.dtype

    def test_gaussian_blur_3d_shape_preservation(self):
        """Test that 3D Gaussian blur preserves tensor shape."""
        image = torch.randn(2, 8, 16, 16, dtype=torch.float64)
        blurred = gaussian_blur(image, [1.0, 1.0, 0.5])

        assert blurred.shape == image.shape

    def test_gaussian_blur_smoothing_effect(self, random_seed):
        """Test that Gaussian blur actually smooths the image."""
        image = torch.randn(1, 64, 64, dtype=torch.float64)
        blurred = gaussian_blur(image, [2.0, 2.0])

        assert torch.var(blurred) < torch.var(image), "Blurred image should have lower variance"

    def test_gaussian_blur_preserves_constant(self):
        """Replicate padding keeps constant images constant, borders included."""
        image = torch.full((1, 10, 12), 3.0, dtype=torch.float64)
        assert torch.allclose(gaussian_blur(image, [1.5, 2.5]), image)

    def test_gaussian_blur_zero_sigma(self, random_seed):
        """Zero sigma on every axis leaves the image unchanged."""
        image = torch.randn(1, 8, 8, dtype=torch.float64)
        assert torch.equal(gaussian_blur(image, [0.0, 0.0]), image)

    def test_gaussian_blur_single_axis(self):
        """Smoothing only along x leaves rows independent."""
        image = torch.zeros(1, 5, 9, dtype=torch.float64)
        image[0, 2, 4] = 1.0
        blurred = gaussian_blur(image, [1.0, 0.0])

        assert torch.all(blurred[0, [0, 1, 3, 4]] == 0)
        assert blurred[0, 2].sum() == pytest.approx(1.0)

    def test_gaussian_kernel_normalized(self):
        """Kernels sum to one and are symmetric."""
        kernel = gaussian_kernel(1.7)
        assert kernel.sum().item() == pytest.approx(1.0)
        assert torch.allclose(kernel, kernel.flip(0))

    def test_sigma_count_mismatch(self):
        """One sigma per axis is required."""
        with pytest.raises(ValueError):
            gaussian_blur(torch.zeros(1, 4, 4, dtype=torch.float64), [1.0])


class TestSmoothField:
    """Test vector field smoothing."""

    def test_border_is_zeroed(self):
        """The outermost voxel layer has zero displacement."""
        field = torch.ones(2, 6, 7, dtype=torch.float64)
        smoothed = smooth_field(field, [1.0, 1.0])

        assert torch.all(smoothed[:, 0] == 0) and torch.all(smoothed[:, -1] == 0)
        assert torch.all(smoothed[:, :, 0] == 0) and torch.all(smoothed[:, :, -1] == 0)
        assert torch.allclose(smoothed[:, 1:-1, 1:-1], torch.ones(2, 4, 5, dtype=torch.float64))

    def test_zero_sigma_does_not_alias_input(self):
        """Zero sigma copies the field before zeroing the border."""
        field = torch.ones(2, 4, 4, dtype=torch.float64)
        smooth_field(field, [0.0, 0.0])
        assert torch.all(field == 1)

    def test_border_kept_when_requested(self):
        """zero_border=False leaves the border alone."""
        field = torch.ones(3, 4, 4, 4, dtype=torch.float64)
        smoothed = smooth_field(field, [0.5, 0.5, 0.5], zero_border=False)
        assert torch.allclose(smoothed, field)


class TestBoxSumAndShrink:
    """Test window sums and block averaging."""

    def test_box_sum_counts(self):
        """Window sums of ones count the voxels inside the image."""
        counts = box_sum(torch.ones(1, 5, 5, dtype=torch.float64), [1, 1])

        assert counts[0, 2, 2] == 9
        assert counts[0, 0, 0] == 4
        assert counts[0, 0, 2] == 6

    def test_box_sum_zero_radius(self, random_seed):
        """Zero radius is the identity."""
        data = torch.rand(2, 4, 4, dtype=torch.float64)
        assert torch.equal(box_sum(data, [0, 0]), data)

    def test_shrink_block_average(self):
        """Factor 2 averages 2x2 blocks."""
        data = torch.arange(16, dtype=torch.float64).view(1, 4, 4)
        shrunk = shrink(data, [2, 2])

        assert shrunk.shape == (1, 2, 2)
        assert shrunk[0, 0, 0] == pytest.approx((0 + 1 + 4 + 5) / 4)

    def test_shrink_anisotropic(self):
        """Factors apply per index axis in (x, y, z) order."""
        data = torch.zeros(1, 4, 8, 6, dtype=torch.float64)
        assert shrink(data, [3, 2, 1]).shape == (1, 4, 4, 2)


class TestNormalization:
    """Test intensity normalization."""

    def test_normalize_minmax(self, random_seed):
        """Min-max normalization maps every channel to [0, 1]."""
        data = torch.randn(2, 8, 8, dtype=torch.float64) * 5 + 3
        normalized = normalize_image(data)

        for c in range(2):
            assert normalized[c].min() == pytest.approx(0.0, abs=1e-7)
            assert normalized[c].max() == pytest.approx(1.0, abs=1e-7)


class TestResampleImage:
    """Test resampling between grids."""

    def test_same_grid_copies(self, create_blob_image):
        """Resampling onto the own grid returns a copy of the data."""
        image = create_blob_image((12, 10))
        resampled = resample_image(image, image)

        assert torch.equal(resampled.data, image.data)
        assert resampled.data is not image.data

    def test_coarser_reference(self):
        """A ramp stays a ramp on a coarser grid covering the same extent."""
        ramp = torch.arange(9, dtype=torch.float64).view(1, 1, 9).expand(1, 9, 9).contiguous()
        image = Image(ramp)
        reference = Image(torch.zeros(1, 5, 5, dtype=torch.float64), spacing=(2.0, 2.0))
        resampled = resample_image(image, reference)

        assert resampled.shape == (5, 5)
        assert resampled.spacing == (2.0, 2.0)
        assert torch.allclose(resampled.data[0, 2], torch.tensor([0.0, 2.0, 4.0, 6.0, 8.0], dtype=torch.float64))
