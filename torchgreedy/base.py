"""
Base registration class for both affine and deformable registration.

This module provides a base class with common functionality for multi-scale
registration methods: input conversion, pyramid construction and the worker
pool.
"""

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

import SimpleITK as sitk

from .errors import ConfigurationError
from .image import Image
from .io import sitk_to_image
from .metrics import MI, SimilarityMetric
from .parallel import WorkerPool
from .pyramid import ImagePair, Pyramid, build_pyramid, default_shrink_factors


class BaseRegistration:
    """
    Base class for multi-scale image registration.

    Provides common functionality for both affine and deformable registration
    methods, including image pyramid creation, input handling, and metric setup.
    """

    def __init__(
        self,
        similarity_metric: SimilarityMetric,
        num_iterations: Sequence[int] | None = None,
        shrink_factors: Sequence[int] | None = None,
        num_threads: int | None = None,
        pool: WorkerPool | None = None,
    ):
        """
        Initialize base registration parameters.

        Args:
            similarity_metric: SimilarityMetric instance (SSD, NCC or MI)
            num_iterations: Iterations per level, coarsest first (e.g., [100, 100])
            shrink_factors: Downsample factor per level, coarsest first; defaults
                to powers of two ending at 1
            num_threads: Worker threads; ignored when ``pool`` is given
            pool: Shared worker pool; without one, every register call starts
                and closes its own
        """
        if not isinstance(similarity_metric, SimilarityMetric):
            raise TypeError(
                f"similarity_metric must be an instance of SimilarityMetric, "
                f"got {type(similarity_metric).__name__}. "
                f"Use SSD(), NCC(radius), or MI() instead."
            )
        self.metric = similarity_metric

        self.num_iterations = list(num_iterations) if num_iterations is not None else [100, 100]
        if not self.num_iterations or any(n < 0 for n in self.num_iterations):
            raise ConfigurationError(
                f"num_iterations must be a non-empty list of non-negative counts, got {self.num_iterations}"
            )
        self.shrink_factors = (
            list(shrink_factors)
            if shrink_factors is not None
            else default_shrink_factors(len(self.num_iterations))
        )

        # Validate that shrink_factors and num_iterations have the same length
        if len(self.shrink_factors) != len(self.num_iterations):
            raise ConfigurationError(
                f"shrink_factors and num_iterations must have the same length. "
                f"Got {len(self.shrink_factors)} and {len(self.num_iterations)} respectively."
            )

        self.pool = pool
        self.num_threads = num_threads

    @contextmanager
    def _worker_pool(self) -> Iterator[WorkerPool]:
        """The shared pool, or a pool owned and closed by one register call."""
        if self.pool is not None:
            yield self.pool
            return
        with WorkerPool(self.num_threads) as pool:
            yield pool

    @property
    def num_levels(self) -> int:
        return len(self.num_iterations)

    @staticmethod
    def _as_image(image: Image | sitk.Image) -> Image:
        if isinstance(image, sitk.Image):
            return sitk_to_image(image)
        if isinstance(image, Image):
            return image
        raise TypeError(f"Expected Image or SimpleITK image, got {type(image).__name__}")

    def _prepare_pairs(
        self,
        fixed_image: Image | sitk.Image | Sequence[ImagePair],
        moving_image: Image | sitk.Image | None = None,
    ) -> list[ImagePair]:
        """
        Normalize the inputs to a list of image pairs.

        Args:
            fixed_image: Fixed image, or a list of ImagePair
            moving_image: Moving image (omitted when pairs are given)

        Returns:
            List of ImagePair
        """
        if moving_image is None:
            pairs = list(fixed_image)  # type: ignore[arg-type]
            if not pairs or not all(isinstance(p, ImagePair) for p in pairs):
                raise ConfigurationError("Expected a non-empty list of ImagePair")
            return pairs
        return [ImagePair(self._as_image(fixed_image), self._as_image(moving_image))]  # type: ignore[arg-type]

    def _build_pyramid(
        self, pairs: Sequence[ImagePair], gradient_mask: Image | sitk.Image | None = None
    ) -> Pyramid:
        mask = None if gradient_mask is None else self._as_image(gradient_mask)
        return build_pyramid(
            pairs,
            shrink_factors=self.shrink_factors,
            gradient_mask=mask,
            normalize=isinstance(self.metric, MI),
        )

    def register(self, *args: Any, **kwargs: Any) -> Any:
        """
        Perform registration.

        To be implemented by subclasses.
        """
        raise NotImplementedError("Subclasses must implement the register method")
