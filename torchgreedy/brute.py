"""
Exhaustive search for the best local shift.

Every integer offset within a search radius is tried as a constant
displacement; each voxel keeps the offset with the highest local NCC.
"""

import itertools
import logging
from collections.abc import Sequence

import torch

from .errors import ConfigurationError
from .metrics import NCC, evaluate_field
from .parallel import WorkerPool
from .pyramid import PyramidLevel

logger = logging.getLogger(__name__)


def brute_force_search(
    metric: NCC,
    level: PyramidLevel,
    search_radius: Sequence[int],
    pool: WorkerPool,
) -> tuple[torch.Tensor, torch.Tensor]:
    """
    Find, per voxel, the integer offset maximizing local NCC.

    Args:
        metric: NCC metric defining the patch radius
        level: Pyramid level to search on
        search_radius: Largest offset per index axis (x, y, z)
        pool: Worker pool

    Returns:
        Tuple (field [ndim, *shape] of best offsets, best metric [*shape])
    """
    if not isinstance(metric, NCC):
        raise ConfigurationError("Brute force search requires NCC metric only")
    if len(search_radius) != level.ndim:
        raise ConfigurationError("Brute force search radius must be same dimension as the images")

    shape = level.fixed.shape
    best_field = torch.zeros((level.ndim,) + shape, dtype=torch.float64)
    best_metric = torch.full(shape, float("-inf"), dtype=torch.float64)

    offsets = list(itertools.product(*[range(-r, r + 1) for r in search_radius]))
    for count, offset in enumerate(offsets):
        u = torch.tensor(offset, dtype=torch.float64).view(-1, *([1] * level.ndim))
        u = u.expand((level.ndim,) + shape).contiguous()
        result = evaluate_field(metric, level, u, pool)

        better = result.metric_image > best_metric  # type: ignore[operator]
        best_metric = torch.where(better, result.metric_image, best_metric)  # type: ignore[arg-type]
        best_field = torch.where(better.unsqueeze(0), u, best_field)
        logger.debug("Offset %d of %d %s: mean metric %.6f", count + 1, len(offsets), offset, result.value)

    logger.info("Searched %d offsets", len(offsets))
    return best_field, best_metric
