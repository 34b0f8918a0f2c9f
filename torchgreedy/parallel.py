"""
Worker pool for voxel-wise work.

The image domain is cut into slabs along the first array axis. The cut
depends only on the array shape, never on the number of threads, and partial
results are always combined in slab order, so results are identical for any
thread count.
"""

import logging
import os
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TypeVar

import numpy as np
import torch

logger = logging.getLogger(__name__)

T = TypeVar("T")

Region = tuple[slice, ...]


class WorkerPool:
    """
    Fixed size thread pool shared by a whole registration run.

    Args:
        num_threads: Number of worker threads; 0 or None uses the CPU count
        num_regions: Maximum number of slabs a domain is split into
    """

    def __init__(self, num_threads: int | None = None, num_regions: int = 16):
        self.num_threads = num_threads if num_threads else (os.cpu_count() or 1)
        if num_regions < 1:
            raise ValueError(f"num_regions must be positive, got {num_regions}")
        self.num_regions = num_regions
        self._executor: ThreadPoolExecutor | None = None
        if self.num_threads > 1:
            self._executor = ThreadPoolExecutor(
                max_workers=self.num_threads, thread_name_prefix="torchgreedy"
            )
        logger.debug("Worker pool with %d threads", self.num_threads)

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def regions(self, shape: Sequence[int]) -> list[Region]:
        """Disjoint slabs covering an array of ``shape``, in a fixed order."""
        count = max(1, min(int(shape[0]), self.num_regions))
        bounds = np.linspace(0, int(shape[0]), count + 1).round().astype(int)
        return [(slice(int(lo), int(hi)),) for lo, hi in zip(bounds[:-1], bounds[1:], strict=False)]

    def map(self, fn: Callable[[Region], T], shape: Sequence[int]) -> list[T]:
        """
        Run ``fn`` once per region and wait for all of them.

        Args:
            fn: Callable taking a region (tuple of slices over the spatial axes)
            shape: Spatial array shape to partition

        Returns:
            Results in region order
        """
        regions = self.regions(shape)
        if self._executor is None or len(regions) == 1:
            return [fn(r) for r in regions]
        return list(self._executor.map(fn, regions))

    def reduce(self, fn: Callable[[Region], T], shape: Sequence[int]) -> T:
        """Run ``fn`` per region and add the results in region order."""
        results = self.map(fn, shape)
        total = results[0]
        for partial in results[1:]:
            total = total + partial  # type: ignore[operator]
        return total


def channel_region(region: Region) -> Region:
    """Extend a spatial region with a leading full channel slice."""
    return (slice(None),) + region
