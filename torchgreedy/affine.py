"""
Affine registration module.

The optimizer works on voxel space transforms (fixed index to moving index)
expressed as a flat, scaled parameter vector. Results are exchanged as RAS
homogeneous matrices, which stay valid across pyramid levels.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import SimpleITK as sitk
import torch
from scipy.optimize import minimize

from .base import BaseRegistration
from .config import AffineOptimizer
from .coords import affine_physical_to_voxel, affine_voxel_to_physical
from .image import Image
from .metrics import SSD, SimilarityMetric, evaluate_affine
from .parallel import WorkerPool
from .pyramid import ImagePair, PyramidLevel
from .transforms import affine_to_field

logger = logging.getLogger(__name__)


class AffineTransform:
    """
    Matrix and offset of a voxel space affine map ``x -> A x + b``.

    Args:
        matrix: Matrix [ndim, ndim]
        offset: Offset [ndim]
    """

    def __init__(self, matrix: np.ndarray, offset: np.ndarray):
        self.matrix = np.array(matrix, dtype=np.float64)
        self.offset = np.array(offset, dtype=np.float64)
        ndim = self.matrix.shape[0]
        if self.matrix.shape != (ndim, ndim) or self.offset.shape != (ndim,):
            raise ValueError(
                f"Inconsistent affine shapes: matrix {self.matrix.shape}, offset {self.offset.shape}"
            )

    @classmethod
    def identity(cls, ndim: int) -> "AffineTransform":
        return cls(np.eye(ndim), np.zeros(ndim))

    @property
    def ndim(self) -> int:
        return int(self.matrix.shape[0])

    def flatten(self) -> np.ndarray:
        """
        Pack into a vector of size ndim * (ndim + 1).

        Row i contributes ``offset[i]`` followed by ``matrix[i, :]``.
        """
        return np.concatenate([self.offset[:, None], self.matrix], axis=1).reshape(-1)

    @classmethod
    def unflatten(cls, vector: np.ndarray, ndim: int) -> "AffineTransform":
        """Inverse of :meth:`flatten`."""
        rows = np.asarray(vector, dtype=np.float64).reshape(ndim, ndim + 1)
        return cls(rows[:, 1:], rows[:, 0])

    def to_field(self, shape: Sequence[int]) -> torch.Tensor:
        """Dense displacement field over an array of ``shape``."""
        return affine_to_field(self.matrix, self.offset, shape)

    def __repr__(self) -> str:
        return f"AffineTransform(matrix={self.matrix.tolist()}, offset={self.offset.tolist()})"


def parameter_scaling(size: Sequence[int]) -> np.ndarray:
    """
    Per-parameter scale so a unit step moves the image boundary by about one voxel.

    Offsets get scale 1; matrix entry (i, j) gets the image size along axis j.

    Args:
        size: Image size in index order (x, y, z)
    """
    ndim = len(size)
    matrix = np.tile(np.asarray(size, dtype=np.float64), (ndim, 1))
    return AffineTransform(matrix, np.ones(ndim)).flatten()


class AffineCostFunction:
    """
    Metric as a function of scaled affine coefficients.

    Similarity metrics (NCC, MI) are negated and multiplied by ``ncc_scale``
    so that all metrics are minimized on a comparable scale.

    Args:
        metric: Similarity metric
        level: Pyramid level the metric is evaluated on
        pool: Worker pool
        ncc_scale: Factor applied to NCC and MI values and gradients
    """

    def __init__(
        self,
        metric: SimilarityMetric,
        level: PyramidLevel,
        pool: WorkerPool,
        ncc_scale: float = 10000.0,
    ):
        self.metric = metric
        self.level = level
        self.pool = pool
        self.ndim = level.ndim
        self.scaling = parameter_scaling(level.fixed.size)
        self.factor = metric.sign * (1.0 if isinstance(metric, SSD) else ncc_scale)
        self.evaluations = 0
        self.last_value = float("nan")

    @property
    def num_unknowns(self) -> int:
        return self.ndim * (self.ndim + 1)

    def get_coefficients(self, transform: AffineTransform) -> np.ndarray:
        return transform.flatten() * self.scaling

    def get_transform(self, coefficients: np.ndarray) -> AffineTransform:
        return AffineTransform.unflatten(np.asarray(coefficients) / self.scaling, self.ndim)

    def compute(
        self, coefficients: np.ndarray, with_gradient: bool = True
    ) -> tuple[float, np.ndarray | None]:
        """
        Evaluate the cost and its gradient with respect to the coefficients.

        Returns:
            Tuple (value, gradient or None)
        """
        transform = self.get_transform(coefficients)
        result = evaluate_affine(
            self.metric,
            self.level,
            transform.matrix,
            transform.offset,
            self.pool,
            with_gradient=with_gradient,
        )
        self.evaluations += 1
        value = self.factor * result.value
        self.last_value = result.value
        logger.info(
            "Lev:%2d  Eval:%5d  Met:[%s]  Cost: %.9g",
            self.level.index,
            self.evaluations,
            "  ".join(f"{c:8.6f}" for c in result.components),
            value,
        )

        if not with_gradient:
            return value, None
        grad = np.asarray(result.gradient)
        flat = AffineTransform(grad[:, : self.ndim], grad[:, self.ndim]).flatten()
        return value, self.factor * flat / self.scaling

    def __call__(self, coefficients: np.ndarray) -> tuple[float, np.ndarray]:
        value, gradient = self.compute(coefficients)
        return value, gradient  # type: ignore[return-value]

    def value(self, coefficients: np.ndarray) -> float:
        return self.compute(coefficients, with_gradient=False)[0]

    def numerical_gradient(self, coefficients: np.ndarray, epsilon: float = 1e-4) -> np.ndarray:
        """Fourth-order central difference of the cost, one coefficient at a time."""
        x = np.asarray(coefficients, dtype=np.float64)
        gradient = np.zeros_like(x)
        for i in range(x.size):
            step = np.zeros_like(x)
            step[i] = epsilon
            f1 = self.value(x - 2 * step)
            f2 = self.value(x - step)
            f3 = self.value(x + step)
            f4 = self.value(x + 2 * step)
            gradient[i] = (f1 - 8 * f2 + 8 * f3 - f4) / (12 * epsilon)
        return gradient


@dataclass
class AffineResult:
    """
    Outcome of an affine registration.

    Attributes:
        matrix: Homogeneous RAS matrix mapping fixed to moving physical points
        transform: Voxel space transform at the finest level
        value: Final metric value
    """

    matrix: np.ndarray
    transform: AffineTransform
    value: float


class AffineRegistration(BaseRegistration):
    """
    Multi-scale affine registration driven by scipy minimizers.

    Args:
        similarity_metric: SSD, NCC or MI instance
        num_iterations: Maximum function evaluations per level, coarsest first
        shrink_factors: Downsample factor per level
        optimizer: "lbfgs" (uses gradients) or "powell" (derivative free)
        num_threads: Worker threads
        pool: Shared worker pool
        ncc_scale: Scale of NCC and MI costs
        seed: Seed of the initial perturbation
        jitter: Half width of the uniform initial perturbation, in scaled units
        debug_deriv: Compare analytic and numerical gradients at every level start
        deriv_epsilon: Step of the numerical gradient
    """

    def __init__(
        self,
        similarity_metric: SimilarityMetric,
        num_iterations: Sequence[int] | None = None,
        shrink_factors: Sequence[int] | None = None,
        optimizer: AffineOptimizer | str = AffineOptimizer.LBFGS,
        num_threads: int | None = None,
        pool: WorkerPool | None = None,
        ncc_scale: float = 10000.0,
        seed: int = 12345,
        jitter: float = 0.4,
        debug_deriv: bool = False,
        deriv_epsilon: float = 1e-4,
    ):
        super().__init__(similarity_metric, num_iterations, shrink_factors, num_threads, pool)
        self.optimizer = AffineOptimizer(optimizer)
        self.ncc_scale = ncc_scale
        self.seed = seed
        self.jitter = jitter
        self.debug_deriv = debug_deriv
        self.deriv_epsilon = deriv_epsilon

    def _initial_coefficients(
        self, cost: AffineCostFunction, level: PyramidLevel, matrix: np.ndarray | None
    ) -> np.ndarray:
        if matrix is not None:
            voxel_matrix, voxel_offset = affine_physical_to_voxel(matrix, level.fixed, level.moving)
            return cost.get_coefficients(AffineTransform(voxel_matrix, voxel_offset))

        # Perturb the identity so the optimizer does not start on a symmetric point
        x = cost.get_coefficients(AffineTransform.identity(level.ndim))
        rng = np.random.default_rng(self.seed)
        return x + rng.uniform(-self.jitter, self.jitter, size=x.size)

    def check_gradient(self, cost: AffineCostFunction, x: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Analytic and numerical gradient at ``x``."""
        _, analytic = cost.compute(x)
        numeric = cost.numerical_gradient(x, self.deriv_epsilon)
        logger.info("ANL gradient: %s", np.array2string(analytic, precision=6))
        logger.info("NUM gradient: %s", np.array2string(numeric, precision=6))
        return analytic, numeric  # type: ignore[return-value]

    def _minimize(self, cost: AffineCostFunction, x: np.ndarray, iterations: int) -> np.ndarray:
        if self.optimizer == AffineOptimizer.POWELL:
            result = minimize(
                cost.value,
                x,
                method="Powell",
                options={"maxfev": iterations, "xtol": 1e-4, "ftol": 1e-9},
            )
        else:
            result = minimize(
                cost,
                x,
                method="L-BFGS-B",
                jac=True,
                options={"maxfun": iterations, "ftol": 1e-9, "gtol": 1e-6},
            )
        logger.info("Level %d optimizer finished: %s", cost.level.index, result.message)
        return np.asarray(result.x)

    def register(
        self,
        fixed_image: Image | sitk.Image | Sequence[ImagePair],
        moving_image: Image | sitk.Image | None = None,
        initial_matrix: np.ndarray | None = None,
        gradient_mask: Image | sitk.Image | None = None,
    ) -> AffineResult:
        """
        Register the moving image(s) to the fixed image(s).

        Args:
            fixed_image: Fixed image, or a list of ImagePair
            moving_image: Moving image
            initial_matrix: Optional RAS matrix to start from
            gradient_mask: Accepted for symmetry with the deformable method;
                the affine cost does not use it

        Returns:
            AffineResult with the RAS matrix
        """
        pairs = self._prepare_pairs(fixed_image, moving_image)
        pyramid = self._build_pyramid(pairs, gradient_mask)

        matrix = None if initial_matrix is None else np.asarray(initial_matrix, dtype=np.float64)
        transform = AffineTransform.identity(pyramid.finest.ndim)
        value = float("nan")

        with self._worker_pool() as pool:
            for level in pyramid:
                cost = AffineCostFunction(self.metric, level, pool, self.ncc_scale)
                x = self._initial_coefficients(cost, level, matrix)

                if self.debug_deriv:
                    self.check_gradient(cost, x)

                iterations = self.num_iterations[level.index]
                if iterations > 0:
                    x = self._minimize(cost, x, iterations)

                transform = cost.get_transform(x)
                matrix = affine_voxel_to_physical(
                    transform.matrix, transform.offset, level.fixed, level.moving
                )
                cost.value(x)
                value = cost.last_value
                logger.info("Level %d final metric: %.9g", level.index, value)

        return AffineResult(matrix, transform, value)  # type: ignore[arg-type]
