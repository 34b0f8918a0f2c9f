"""
Tests for affine registration module.
"""

import numpy as np
import pytest

from torchgreedy.affine import (
    AffineCostFunction,
    AffineRegistration,
    AffineTransform,
    parameter_scaling,
)
from torchgreedy.errors import ConfigurationError
from torchgreedy.io import image_to_sitk
from torchgreedy.metrics import NCC, SSD
from torchgreedy.pyramid import ImagePair, build_pyramid


class TestAffineTransform:
    """Test AffineTransform class."""

    def test_identity(self):
        """Identity has unit matrix and zero offset."""
        transform = AffineTransform.identity(3)

        assert transform.ndim == 3
        assert np.array_equal(transform.matrix, np.eye(3))
        assert np.array_equal(transform.offset, np.zeros(3))

    def test_flatten_layout(self):
        """Each row contributes its offset followed by the matrix row."""
        transform = AffineTransform(np.array([[1.0, 2.0], [3.0, 4.0]]), np.array([5.0, 6.0]))
        assert transform.flatten().tolist() == [5.0, 1.0, 2.0, 6.0, 3.0, 4.0]

    def test_unflatten_inverts_flatten(self):
        """Unflatten recovers matrix and offset."""
        transform = AffineTransform(np.arange(9.0).reshape(3, 3), np.array([-1.0, 0.5, 2.0]))
        restored = AffineTransform.unflatten(transform.flatten(), 3)

        assert np.array_equal(restored.matrix, transform.matrix)
        assert np.array_equal(restored.offset, transform.offset)

    def test_inconsistent_shapes(self):
        """Matrix and offset must agree in dimension."""
        with pytest.raises(ValueError):
            AffineTransform(np.eye(2), np.zeros(3))

    def test_to_field(self):
        """A translation becomes a constant field."""
        field = AffineTransform(np.eye(2), np.array([1.0, 2.0])).to_field((3, 4))
        assert field.shape == (2, 3, 4)
        assert float(field[1].mean()) == pytest.approx(2.0)


class TestCostFunction:
    """Test the scaled affine cost function."""

    def test_parameter_scaling(self):
        """Offsets have unit scale, matrix columns scale with the image size."""
        assert parameter_scaling((64, 32)).tolist() == [1.0, 64.0, 32.0, 1.0, 64.0, 32.0]

    def test_coefficient_round_trip(self, create_blob_image, pool):
        """Coefficients map back to the transform they came from."""
        image = create_blob_image((16, 20))
        level = build_pyramid([ImagePair(image, image)], shrink_factors=[1]).finest
        cost = AffineCostFunction(SSD(), level, pool)
        transform = AffineTransform(np.array([[1.1, 0.1], [0.0, 0.9]]), np.array([0.5, -1.0]))
        restored = cost.get_transform(cost.get_coefficients(transform))

        assert cost.num_unknowns == 6
        assert np.allclose(restored.matrix, transform.matrix)
        assert np.allclose(restored.offset, transform.offset)

    def test_similarity_metrics_are_negated_and_scaled(self, create_blob_image, pool):
        """NCC costs are negated and multiplied by the NCC scale."""
        image = create_blob_image((16, 16))
        level = build_pyramid([ImagePair(image, image)], shrink_factors=[1]).finest

        assert AffineCostFunction(SSD(), level, pool).factor == 1.0
        assert AffineCostFunction(NCC([2, 2]), level, pool, ncc_scale=500.0).factor == -500.0

    def test_gradient_matches_numerical(self, create_blob_image, pool):
        """Analytic coefficient gradients agree with finite differences at the identity."""
        fixed = create_blob_image((32, 32))
        moving = create_blob_image((32, 32), shift=(1.5, -1.0))
        level = build_pyramid([ImagePair(fixed, moving)], shrink_factors=[1]).finest
        cost = AffineCostFunction(SSD(), level, pool)
        x = cost.get_coefficients(AffineTransform.identity(2))

        _, analytic = cost.compute(x)
        numeric = cost.numerical_gradient(x, 1e-4)
        scale = np.abs(analytic).max()

        assert scale > 0
        assert np.allclose(analytic, numeric, rtol=2e-2, atol=1e-3 * scale)

    def test_check_gradient_logs_both(self, create_blob_image, pool, caplog):
        """The derivative check reports analytic and numerical gradients."""
        fixed = create_blob_image((16, 16))
        level = build_pyramid([ImagePair(fixed, fixed)], shrink_factors=[1]).finest
        cost = AffineCostFunction(SSD(), level, pool)
        registration = AffineRegistration(SSD(), [0], [1], pool=pool)

        with caplog.at_level("INFO", logger="torchgreedy"):
            analytic, numeric = registration.check_gradient(cost, cost.get_coefficients(AffineTransform.identity(2)))

        assert analytic.shape == numeric.shape == (6,)
        assert "ANL gradient" in caplog.text
        assert "NUM gradient" in caplog.text


class TestAffineRegistration:
    """Test AffineRegistration class."""

    def test_initialization(self, pool):
        """Default levels and invalid arguments."""
        registration = AffineRegistration(SSD(), pool=pool)
        assert registration.num_levels == 2
        assert registration.shrink_factors == [2, 1]

        with pytest.raises(TypeError):
            AffineRegistration("SSD", pool=pool)
        with pytest.raises(ConfigurationError):
            AffineRegistration(SSD(), num_iterations=[10, 10], shrink_factors=[1], pool=pool)

    def test_zero_iterations_without_jitter(self, create_blob_image, pool):
        """No iterations and no perturbation returns the identity."""
        image = create_blob_image((16, 16))
        registration = AffineRegistration(SSD(), [0], [1], pool=pool, jitter=0.0)
        result = registration.register(image, image)

        assert np.allclose(result.matrix, np.eye(3))
        assert result.value == pytest.approx(0.0, abs=1e-12)

    def test_initial_matrix_is_kept(self, create_blob_image, pool):
        """With no iterations the initial RAS matrix passes through unchanged."""
        fixed = create_blob_image((16, 16), spacing=(1.5, 1.5), origin=(3.0, -2.0))
        moving = create_blob_image((20, 20))
        initial = np.array([[1.02, 0.01, 1.5], [-0.02, 0.98, -0.5], [0.0, 0.0, 1.0]])

        registration = AffineRegistration(SSD(), [0, 0], [2, 1], pool=pool)
        result = registration.register(fixed, moving, initial_matrix=initial)

        assert np.allclose(result.matrix, initial)

    def test_recovers_translation(self, create_blob_image, pool):
        """A single full resolution L-BFGS level recovers a (3, -2) translation."""
        fixed = create_blob_image((64, 64))
        moving = create_blob_image((64, 64), shift=(3.0, -2.0))

        registration = AffineRegistration(SSD(), [100], [1], pool=pool)
        result = registration.register(fixed, moving)

        assert np.allclose(result.transform.offset, [3.0, -2.0], atol=0.1)
        assert np.allclose(result.transform.matrix, np.eye(2), atol=0.02)
        # RAS negates x and y
        assert np.allclose(result.matrix[:2, 2], [-3.0, 2.0], atol=0.1)

    def test_powell_recovers_translation(self, create_blob_image, pool):
        """Powell reaches the same solution without gradients."""
        fixed = create_blob_image((48, 48))
        moving = create_blob_image((48, 48), shift=(2.0, 1.0))

        registration = AffineRegistration(SSD(), [400], [1], optimizer="powell", pool=pool)
        result = registration.register(fixed, moving)

        assert np.allclose(result.transform.offset, [2.0, 1.0], atol=0.25)

    def test_accepts_sitk_images(self, create_blob_image, pool):
        """SimpleITK images are accepted as inputs."""
        image = image_to_sitk(create_blob_image((16, 16)))
        result = AffineRegistration(SSD(), [0], [1], pool=pool, jitter=0.0).register(image, image)
        assert result.matrix.shape == (3, 3)
