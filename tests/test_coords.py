"""
Tests for voxel/physical coordinate mapping.
"""

import numpy as np
import pytest
import torch

from torchgreedy.coords import (
    affine_physical_to_voxel,
    affine_voxel_to_physical,
    lps_grid,
    lps_to_index,
    physical_to_voxel,
    voxel_to_physical,
)
from torchgreedy.image import Image


def _rotation(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


@pytest.fixture
def oblique_3d():
    return Image(
        torch.zeros(1, 6, 7, 8, dtype=torch.float64),
        spacing=(0.8, 1.2, 2.0),
        origin=(10.0, -5.0, 3.0),
        direction=_rotation(0.3),
    )


class TestVoxelToPhysical:
    """Test the voxel to RAS mapping."""

    def test_identity_geometry_flips_first_two_axes(self):
        """With unit spacing and zero origin RAS is index with x and y negated."""
        image = Image(torch.zeros(1, 4, 5, dtype=torch.float64))
        A, b = voxel_to_physical(image)

        assert np.allclose(A, np.diag([-1.0, -1.0]))
        assert np.allclose(b, 0.0)

    def test_round_trip(self, oblique_3d):
        """Mapping indices to RAS and back recovers them."""
        A, b = voxel_to_physical(oblique_3d)
        index = np.array([[0.0, 0.0, 0.0], [1.5, 2.0, 3.25], [7.0, 6.0, 5.0]])
        ras = index @ A.T + b

        assert np.allclose(physical_to_voxel(oblique_3d, ras), index)

    def test_lps_grid_matches_matrix(self, oblique_3d):
        """The dense LPS grid agrees with direction * spacing * index + origin."""
        grid = lps_grid(oblique_3d)
        index = np.array([3.0, 2.0, 1.0])  # x, y, z
        expected = oblique_3d.direction @ (np.asarray(oblique_3d.spacing) * index) + oblique_3d.origin

        assert grid.shape == (3, 6, 7, 8)
        assert np.allclose(grid[:, 1, 2, 3].numpy(), expected)

    def test_lps_to_index_inverts_grid(self, oblique_3d):
        """Continuous indices of the LPS grid are the identity grid."""
        index = lps_to_index(oblique_3d, lps_grid(oblique_3d))

        assert torch.allclose(index[0, 2, 3, :], torch.arange(8, dtype=torch.float64), atol=1e-10)
        assert torch.allclose(index[2, :, 0, 0], torch.arange(6, dtype=torch.float64), atol=1e-10)


class TestAffineVoxelPhysical:
    """Test conversion of affine transforms between voxel and RAS space."""

    def test_identity_on_identical_grids(self, oblique_3d):
        """Identity in voxel space is identity in physical space for equal grids."""
        qp = affine_voxel_to_physical(np.eye(3), np.zeros(3), oblique_3d, oblique_3d)
        assert np.allclose(qp, np.eye(4))

    def test_round_trip_between_grids(self, oblique_3d):
        """Voxel -> physical -> voxel recovers matrix and offset."""
        moving = Image(
            torch.zeros(1, 5, 5, 5, dtype=torch.float64),
            spacing=(1.0, 1.0, 1.5),
            origin=(-2.0, 4.0, 0.0),
        )
        matrix = np.array([[1.05, 0.02, 0.0], [-0.03, 0.97, 0.01], [0.0, 0.04, 1.1]])
        offset = np.array([0.5, -1.25, 2.0])

        qp = affine_voxel_to_physical(matrix, offset, oblique_3d, moving)
        recovered_matrix, recovered_offset = affine_physical_to_voxel(qp, oblique_3d, moving)

        assert np.allclose(recovered_matrix, matrix)
        assert np.allclose(recovered_offset, offset)

    def test_physical_matrix_maps_points(self, oblique_3d):
        """The physical matrix sends fixed RAS points to the matching moving RAS points."""
        moving = Image(torch.zeros(1, 4, 4, 4, dtype=torch.float64), spacing=(2.0, 2.0, 2.0))
        matrix = np.diag([0.5, 0.5, 0.5])
        offset = np.array([1.0, 0.0, -1.0])
        qp = affine_voxel_to_physical(matrix, offset, oblique_3d, moving)

        A_fix, b_fix = voxel_to_physical(oblique_3d)
        A_mov, b_mov = voxel_to_physical(moving)
        index = np.array([2.0, 3.0, 4.0])
        fixed_point = A_fix @ index + b_fix
        moving_point = A_mov @ (matrix @ index + offset) + b_mov

        assert np.allclose(qp[:3, :3] @ fixed_point + qp[:3, 3], moving_point)
