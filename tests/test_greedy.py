"""
Tests for greedy deformable registration.
"""

import numpy as np
import pytest
import torch

from torchgreedy import base
from torchgreedy.config import SmoothingSpec, TimeStepMode
from torchgreedy.greedy import (
    ITERATION,
    LEVEL_DONE,
    LEVEL_INIT,
    GreedyRegistration,
    upsample_field,
)
from torchgreedy.image import Image
from torchgreedy.metrics import NCC, SSD, evaluate_field
from torchgreedy.parallel import WorkerPool
from torchgreedy.pyramid import ImagePair, build_pyramid


def _ssd_at(fixed, moving, field, pool):
    level = build_pyramid([ImagePair(fixed, moving)], shrink_factors=[1]).finest
    return evaluate_field(SSD(), level, field, pool).value


class TestUpsampleField:
    """Test carrying fields to a finer level."""

    def test_constant_field_doubles(self):
        """A constant voxel field doubles when the voxel size halves."""
        coarse = Image(torch.zeros(1, 8, 8, dtype=torch.float64), spacing=(2.0, 2.0), origin=(0.5, 0.5))
        fine = Image(torch.zeros(1, 16, 16, dtype=torch.float64))
        field = torch.zeros(2, 8, 8, dtype=torch.float64)
        field[0] = 1.0
        field[1] = -0.5

        up = upsample_field(field, coarse, fine)

        assert up.shape == (2, 16, 16)
        assert torch.allclose(up[0], torch.full((16, 16), 2.0, dtype=torch.float64))
        assert torch.allclose(up[1], torch.full((16, 16), -1.0, dtype=torch.float64))


class TestGreedyRegistration:
    """Test GreedyRegistration class."""

    def test_invalid_epsilon(self, pool):
        """Negative step sizes are rejected."""
        with pytest.raises(ValueError):
            GreedyRegistration(SSD(), epsilon=-1.0, pool=pool)

    def test_zero_epsilon_keeps_field(self, create_blob_image, pool):
        """With epsilon 0 the field never changes."""
        fixed = create_blob_image((24, 24))
        moving = create_blob_image((24, 24), shift=(2.0, 0.0))
        registration = GreedyRegistration(SSD(), [5], [1], epsilon=0.0, pool=pool)
        result = registration.register(fixed, moving)

        assert torch.all(result.field == 0)
        assert len(result.metric_values) == 1

    def test_zero_iterations_keep_initial_affine(self, create_blob_image, pool):
        """Without iterations the result is the initial affine as a field."""
        fixed = create_blob_image((16, 16))
        initial = np.array([[1.0, 0.0, -1.0], [0.0, 1.0, 2.0], [0.0, 0.0, 1.0]])
        result = GreedyRegistration(SSD(), [0], [1], pool=pool).register(
            fixed, fixed, initial_matrix=initial
        )

        # RAS (-1, 2) is index (1, -2) for identity geometry
        assert torch.allclose(result.field[0], torch.full((16, 16), 1.0, dtype=torch.float64))
        assert torch.allclose(result.field[1], torch.full((16, 16), -2.0, dtype=torch.float64))

    def test_field_doubles_between_levels(self, create_blob_image, pool):
        """The field entering a finer level is twice the coarse field."""
        fixed = create_blob_image((32, 32))
        initial = np.array([[1.0, 0.0, -2.0], [0.0, 1.0, 4.0], [0.0, 0.0, 1.0]])
        seen = {}

        def callback(stage, level, field):
            seen[(stage, level)] = field.clone()

        registration = GreedyRegistration(SSD(), [0, 0], [2, 1], pool=pool, callback=callback)
        registration.register(fixed, fixed, initial_matrix=initial)

        coarse = seen[(LEVEL_INIT, 0)]
        fine = seen[(LEVEL_INIT, 1)]
        assert torch.allclose(coarse[0], torch.full((16, 16), 1.0, dtype=torch.float64))
        assert torch.allclose(fine[0], torch.full((32, 32), 2.0, dtype=torch.float64))
        assert torch.allclose(fine[1], torch.full((32, 32), -4.0, dtype=torch.float64))
        assert (LEVEL_DONE, 1) in seen

    def test_field_doubles_across_three_levels(self, create_blob_image, pool):
        """Both level transitions of a 4-2-1 pyramid double the field."""
        fixed = create_blob_image((32, 32))
        initial = np.array([[1.0, 0.0, -2.0], [0.0, 1.0, 4.0], [0.0, 0.0, 1.0]])
        seen = {}

        def callback(stage, level, field):
            seen[(stage, level)] = field.clone()

        registration = GreedyRegistration(SSD(), [0, 0, 0], [4, 2, 1], pool=pool, callback=callback)
        registration.register(fixed, fixed, initial_matrix=initial)

        for level, (x, y, size) in enumerate([(0.5, -1.0, 8), (1.0, -2.0, 16), (2.0, -4.0, 32)]):
            field = seen[(LEVEL_INIT, level)]
            assert torch.allclose(field[0], torch.full((size, size), x, dtype=torch.float64))
            assert torch.allclose(field[1], torch.full((size, size), y, dtype=torch.float64))

    def test_upsampled_field_seeds_next_level(self, create_blob_image, pool):
        """Each finer level starts from the previous result carried by upsample_field."""
        fixed = create_blob_image((32, 32))
        moving = create_blob_image((32, 32), shift=(1.5, -1.0))
        seen = {}

        def callback(stage, level, field):
            seen[(stage, level)] = field.clone()

        GreedyRegistration(SSD(), [3, 3, 0], [4, 2, 1], pool=pool, callback=callback).register(fixed, moving)
        pyramid = build_pyramid([ImagePair(fixed, moving)], shrink_factors=[4, 2, 1])

        for level in (0, 1):
            coarse = seen[(LEVEL_DONE, level)]
            assert float(coarse.abs().max()) > 0
            expected = upsample_field(coarse, pyramid[level].fixed, pyramid[level + 1].fixed)
            assert torch.equal(seen[(LEVEL_INIT, level + 1)], expected)

    def test_owned_pool_is_closed(self, create_blob_image, monkeypatch):
        """A pool started by register is shut down when it returns."""
        created = []

        class RecordingPool(WorkerPool):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, **kwargs)
                created.append(self)

        monkeypatch.setattr(base, "WorkerPool", RecordingPool)
        fixed = create_blob_image((16, 16))
        GreedyRegistration(SSD(), [1], [1], num_threads=2).register(fixed, fixed)

        assert len(created) == 1
        assert created[0]._executor is None

    def test_shared_pool_stays_open(self, create_blob_image):
        """A pool passed in by the caller is not closed."""
        fixed = create_blob_image((16, 16))
        with WorkerPool(2) as shared:
            GreedyRegistration(SSD(), [1], [1], pool=shared).register(fixed, fixed)
            assert shared._executor is not None

    def test_ssd_improves(self, create_blob_image, pool):
        """Registration lowers SSD and keeps the map invertible."""
        fixed = create_blob_image((48, 48))
        moving = create_blob_image((48, 48), shift=(2.0, 1.5))
        iterations = []

        registration = GreedyRegistration(
            SSD(),
            [40, 20],
            [2, 1],
            epsilon=0.5,
            pool=pool,
            callback=lambda stage, level, field: iterations.append(level) if stage == ITERATION else None,
        )
        result = registration.register(fixed, moving)

        before = _ssd_at(fixed, moving, torch.zeros(2, 48, 48, dtype=torch.float64), pool)
        after = _ssd_at(fixed, moving, result.field, pool)
        assert after < 0.5 * before
        assert min(lo for lo, _ in result.jacobian_range) > 0
        assert len(iterations) == 60

    def test_ncc_improves(self, create_blob_image, pool):
        """NCC is maximized."""
        fixed = create_blob_image((32, 32))
        moving = create_blob_image((32, 32), shift=(1.5, 0.0))
        metric = NCC([2, 2])

        result = GreedyRegistration(metric, [30], [1], epsilon=0.5, pool=pool).register(fixed, moving)

        level = build_pyramid([ImagePair(fixed, moving)], shrink_factors=[1]).finest
        before = evaluate_field(metric, level, torch.zeros(2, 32, 32, dtype=torch.float64), pool).value
        after = evaluate_field(metric, level, result.field, pool).value
        assert after > before

    def test_gradient_mask_blocks_updates(self, create_blob_image, pool):
        """A zero gradient mask leaves the field at zero."""
        fixed = create_blob_image((16, 16))
        moving = create_blob_image((16, 16), shift=(1.0, 1.0))
        mask = Image(torch.zeros(1, 16, 16, dtype=torch.float64))

        result = GreedyRegistration(SSD(), [3], [1], pool=pool).register(fixed, moving, gradient_mask=mask)
        assert torch.all(result.field == 0)

    def test_border_stays_fixed(self, create_blob_image, pool):
        """Post-smoothing zeroes the displacement on the image border."""
        fixed = create_blob_image((24, 24))
        moving = create_blob_image((24, 24), shift=(1.0, 1.0))
        result = GreedyRegistration(SSD(), [5], [1], pool=pool).register(fixed, moving)

        assert torch.all(result.field[:, 0] == 0)
        assert torch.all(result.field[:, :, -1] == 0)
        assert torch.any(result.field != 0)

    def test_scaledown_and_physical_sigmas(self, create_blob_image, pool):
        """SCALEDOWN steps never exceed epsilon; sigmas may be given in mm."""
        fixed = create_blob_image((20, 20), spacing=(2.0, 2.0))
        moving = create_blob_image((20, 20), shift=(1.0, 0.0), spacing=(2.0, 2.0))
        fields = []

        registration = GreedyRegistration(
            SSD(),
            [1],
            [1],
            epsilon=0.25,
            sigma_pre=SmoothingSpec(2.0, physical_units=True),
            sigma_post=SmoothingSpec(0.0),
            time_step_mode=TimeStepMode.SCALEDOWN,
            pool=pool,
            callback=lambda stage, level, field: fields.append(field.clone()) if stage == ITERATION else None,
        )
        registration.register(fixed, moving)

        assert len(fields) <= 1
        if fields:
            assert float(torch.linalg.vector_norm(fields[0], dim=0).max()) <= 0.25 + 1e-12

    def test_3d_runs(self, create_blob_image, pool):
        """3D registration produces a field over the fixed grid."""
        fixed = create_blob_image((8, 12, 12))
        moving = create_blob_image((8, 12, 12), shift=(1.0, 0.0, 0.0))
        result = GreedyRegistration(SSD(), [2, 2], [2, 1], pool=pool).register(fixed, moving)

        assert result.field.shape == (3, 8, 12, 12)
        assert result.reference.shape == (8, 12, 12)
