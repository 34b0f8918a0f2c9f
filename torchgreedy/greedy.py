"""
Greedy diffeomorphic registration.

Every iteration turns the metric gradient into a small smooth step and
composes it into the running displacement field. Levels run from the
coarsest to the finest; each level starts from the previous result,
upsampled and rescaled to the finer voxel size.
"""

import dataclasses
import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import numpy as np
import SimpleITK as sitk
import torch

from .base import BaseRegistration
from .config import SmoothingSpec, TimeStepMode
from .coords import affine_physical_to_voxel, lps_grid, lps_to_index
from .errors import ConfigurationError
from .image import Image
from .metrics import SimilarityMetric, evaluate_field
from .parallel import WorkerPool
from .processing import smooth_field
from .pyramid import ImagePair
from .transforms import (
    affine_to_field,
    compose_fields,
    jacobian_determinant,
    max_vector_norm,
    normalize_to_max_length,
    sample,
)

logger = logging.getLogger(__name__)

LEVEL_INIT = "level_init"
ITERATION = "iteration"
LEVEL_DONE = "level_done"

Callback = Callable[[str, int, torch.Tensor], None]


def upsample_field(field: torch.Tensor, source: Image, target: Image) -> torch.Tensor:
    """
    Carry a voxel-unit field to a finer grid.

    The field is interpolated through physical space and every component is
    multiplied by the ratio of voxel sizes, which is 2 for a halving pyramid.

    Args:
        field: Displacement [ndim, *source.shape] in voxel units of ``source``
        source: Grid the field lives on
        target: Grid to resample onto

    Returns:
        Displacement [ndim, *target.shape] in voxel units of ``target``
    """
    positions = lps_to_index(source, lps_grid(target, dtype=field.dtype))
    resampled = sample(field, positions, padding_mode="border")
    ratio = torch.tensor(
        np.asarray(source.spacing) / np.asarray(target.spacing), dtype=field.dtype
    )
    return resampled * ratio.view(-1, *([1] * target.ndim))


@dataclass
class DeformableResult:
    """
    Outcome of a deformable registration.

    Attributes:
        field: Displacement [ndim, *shape] in voxel units of ``reference``
        reference: Fixed image grid of the finest level
        jacobian_range: (min, max) Jacobian determinant at the end of each level
        metric_values: Last metric value of each level
    """

    field: torch.Tensor
    reference: Image
    jacobian_range: list[tuple[float, float]] = dataclasses.field(default_factory=list)
    metric_values: list[float] = dataclasses.field(default_factory=list)


class GreedyRegistration(BaseRegistration):
    """
    Multi-scale greedy diffeomorphic registration.

    Args:
        similarity_metric: SSD, NCC or MI instance
        num_iterations: Iterations per level, coarsest first
        shrink_factors: Downsample factor per level
        epsilon: Maximum step length in voxels
        sigma_pre: Smoothing of the gradient before the step is taken
        sigma_post: Smoothing of the field after composition
        time_step_mode: How the smoothed gradient is rescaled to ``epsilon``
        num_threads: Worker threads
        pool: Shared worker pool
        callback: Called as ``callback(stage, level, field)`` at level start,
            after every iteration and at level end
    """

    def __init__(
        self,
        similarity_metric: SimilarityMetric,
        num_iterations: Sequence[int] | None = None,
        shrink_factors: Sequence[int] | None = None,
        epsilon: float = 1.0,
        sigma_pre: SmoothingSpec | None = None,
        sigma_post: SmoothingSpec | None = None,
        time_step_mode: TimeStepMode | str = TimeStepMode.SCALE,
        num_threads: int | None = None,
        pool: WorkerPool | None = None,
        callback: Callback | None = None,
    ):
        super().__init__(similarity_metric, num_iterations, shrink_factors, num_threads, pool)
        if epsilon < 0:
            raise ConfigurationError(f"epsilon must be non-negative, got {epsilon}")
        self.epsilon = epsilon
        self.sigma_pre = sigma_pre or SmoothingSpec(math.sqrt(3.0))
        self.sigma_post = sigma_post or SmoothingSpec(math.sqrt(0.5))
        self.time_step_mode = TimeStepMode(time_step_mode)
        self.callback = callback

    def _notify(self, stage: str, level: int, field: torch.Tensor) -> None:
        if self.callback is not None:
            self.callback(stage, level, field)

    def _step(self, gradient: torch.Tensor, sigma: Sequence[float]) -> torch.Tensor:
        """Turn a metric gradient into an update field."""
        step = gradient * (-self.metric.sign * self.epsilon)
        step = smooth_field(step, sigma)
        if self.time_step_mode == TimeStepMode.SCALE:
            step = normalize_to_max_length(step, self.epsilon)
        elif self.time_step_mode == TimeStepMode.SCALEDOWN:
            step = normalize_to_max_length(step, self.epsilon, only_shrink=True)
        return step

    def register(
        self,
        fixed_image: Image | sitk.Image | Sequence[ImagePair],
        moving_image: Image | sitk.Image | None = None,
        initial_matrix: np.ndarray | None = None,
        gradient_mask: Image | sitk.Image | None = None,
    ) -> DeformableResult:
        """
        Register the moving image(s) to the fixed image(s).

        Args:
            fixed_image: Fixed image, or a list of ImagePair
            moving_image: Moving image
            initial_matrix: Optional RAS matrix used to seed the coarsest level
            gradient_mask: Optional mask on the fixed grid restricting updates

        Returns:
            DeformableResult with the field on the finest fixed grid
        """
        pairs = self._prepare_pairs(fixed_image, moving_image)
        pyramid = self._build_pyramid(pairs, gradient_mask)

        u: torch.Tensor | None = None
        previous: Image | None = None
        result = DeformableResult(torch.empty(0), pyramid.finest.fixed)

        with self._worker_pool() as pool:
            for level in pyramid:
                reference = level.fixed
                sigma_pre = self.sigma_pre.to_voxels(reference.spacing)
                sigma_post = self.sigma_post.to_voxels(reference.spacing)
                logger.info("LEVEL %d of %d", level.index + 1, len(pyramid))
                logger.info("  Smoothing sigmas: %s, %s", sigma_pre, sigma_post)

                if u is not None and previous is not None:
                    u = upsample_field(u, previous, reference)
                elif initial_matrix is not None:
                    matrix, offset = affine_physical_to_voxel(initial_matrix, reference, level.moving)
                    u = affine_to_field(matrix, offset, reference.shape)
                else:
                    u = torch.zeros((level.ndim,) + reference.shape, dtype=torch.float64)
                self._notify(LEVEL_INIT, level.index, u)

                mask = None if level.gradient_mask is None else level.gradient_mask.data
                value = float("nan")

                for iteration in range(self.num_iterations[level.index]):
                    metric = evaluate_field(self.metric, level, u, pool, mask)
                    value = metric.value
                    logger.info(
                        "Lev:%2d  Itr:%5d  Met:[%s]  Tot: %8.6f",
                        level.index,
                        iteration,
                        "  ".join(f"{c:8.6f}" for c in metric.components),
                        metric.value,
                    )

                    step = self._step(metric.gradient, sigma_pre)  # type: ignore[arg-type]
                    if max_vector_norm(step) == 0.0:
                        continue

                    u = compose_fields(u, step)
                    u = smooth_field(u, sigma_post)
                    self._notify(ITERATION, level.index, u)

                det = jacobian_determinant(u)
                det_range = (float(det.min()), float(det.max()))
                logger.info("  Jacobian determinant range: [%.6f, %.6f]", *det_range)
                result.jacobian_range.append(det_range)
                result.metric_values.append(value)
                self._notify(LEVEL_DONE, level.index, u)
                previous = reference

        result.field = u  # type: ignore[assignment]
        return result
