"""
Similarity metrics with analytic gradients.

Each metric turns a fixed composite and a warped moving composite into a
scalar value and the derivative of that value with respect to the sampling
position of every voxel. Two entry points build on this:

- :func:`evaluate_field` returns a gradient field over the fixed grid, used
  by the greedy deformable optimizer.
- :func:`evaluate_affine` reduces the per-voxel gradient against the affine
  Jacobian, giving the derivative with respect to matrix and offset.

Values keep their natural orientation: SSD is minimized, NCC and MI are
maximized. Callers that feed a minimizer multiply by :attr:`SimilarityMetric.sign`.
"""

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import torch

from .config import MetricKind
from .errors import ConfigurationError, NumericDivergenceError
from .parallel import WorkerPool, channel_region
from .processing import box_sum
from .pyramid import PyramidLevel, WarpedMoving
from .transforms import affine_positions, create_grid

logger = logging.getLogger(__name__)

# Local variances below this are treated as flat patches with zero correlation
_NCC_EPS = 1e-10
_MI_EPS = 1e-10


@dataclass(frozen=True)
class MetricResult:
    """
    Outcome of one metric evaluation.

    Attributes:
        value: Scalar metric value
        gradient: Gradient field [ndim, *shape] (field mode) or array
            [ndim, ndim + 1] of matrix and offset derivatives (affine mode)
        components: Value of every input pair
        mask_value: Sum of the moving domain mask, when the metric uses it
        metric_image: Per-voxel metric, for metrics that have one
    """

    value: float
    gradient: torch.Tensor | np.ndarray | None
    components: tuple[float, ...] = ()
    mask_value: float | None = None
    metric_image: torch.Tensor | None = None


@dataclass
class MetricTerms:
    """Raw metric output: value and its derivative w.r.t. each voxel's position."""

    value: float
    gradient: torch.Tensor
    components: tuple[float, ...]
    mask_value: float | None = None
    metric_image: torch.Tensor | None = None


class SimilarityMetric:
    """Base class for similarity metrics."""

    name = "base"
    maximize = False

    @property
    def sign(self) -> float:
        """Factor turning the value into a quantity to minimize."""
        return -1.0 if self.maximize else 1.0

    def compute(
        self,
        fixed: torch.Tensor,
        warped: WarpedMoving,
        level: PyramidLevel,
        pool: WorkerPool,
        masked: bool = False,
    ) -> MetricTerms:
        """
        Compute value and per-voxel derivative.

        Args:
            fixed: Fixed composite [C, *shape]
            warped: Moving composite sampled over the fixed grid
            level: Pyramid level providing weights and pair layout
            pool: Worker pool for the voxel-wise work
            masked: Normalize by the moving domain mask (affine mode)
        """
        raise NotImplementedError("Subclasses must implement the compute method")


def _channel_view(weights: torch.Tensor, ndim: int) -> torch.Tensor:
    return weights.view(-1, *([1] * ndim))


class SSD(SimilarityMetric):
    """Mean squared intensity difference, weighted per channel."""

    name = "SSD"

    def compute(self, fixed, warped, level, pool, masked=False):
        ndim = fixed.dim() - 1
        shape = fixed.shape[1:]
        weights = _channel_view(level.weights.to(fixed.dtype), ndim)
        metric_image = torch.empty(shape, dtype=fixed.dtype)
        gradient = torch.empty((ndim,) + tuple(shape), dtype=fixed.dtype)

        def work(region):
            cr = channel_region(region)
            diff = fixed[cr] - warped.values[cr]
            weighted = weights * diff**2
            energy = weighted.sum(0)
            # d/dphi of sum_c w_c (f_c - m_c(phi))^2
            g = -2.0 * (weights * diff).unsqueeze(1) * warped.gradient[(slice(None),) + cr]
            g = g.sum(0)
            pairs = [float(weighted[ch].sum()) for ch in level.pair_channels]
            if masked:
                k = warped.mask[region]
                energy_k = k * energy
                metric_image[region] = energy_k
                gradient[cr] = warped.mask_gradient[cr] * energy + k * g
                pairs = [float((k * weighted[ch].sum(0)).sum()) for ch in level.pair_channels]
                return np.array([float(energy_k.sum()), float(k.sum())] + pairs)
            metric_image[region] = energy
            gradient[cr] = g
            return np.array([float(energy.sum()), 0.0] + pairs)

        sums = pool.reduce(work, shape)
        total, mask_sum, pairs = sums[0], sums[1], sums[2:]

        if not masked:
            n = float(np.prod(shape))
            return MetricTerms(
                total / n, gradient / n, tuple(p / n for p in pairs), None, metric_image
            )

        if mask_sum <= 0:
            raise NumericDivergenceError("Moving image does not overlap the fixed image", metric=self.name)
        # Quotient rule for sum(k e) / sum(k)
        gradient = (gradient * mask_sum - total * warped.mask_gradient) / mask_sum**2
        return MetricTerms(
            total / mask_sum,
            gradient,
            tuple(p / mask_sum for p in pairs),
            mask_sum,
            metric_image,
        )


class NCC(SimilarityMetric):
    """
    Local normalized cross-correlation over a box window.

    Args:
        radius: Window radius per index axis (x, y, z)
    """

    name = "NCC"
    maximize = True

    def __init__(self, radius: Sequence[int]):
        if not radius or any(int(r) < 0 for r in radius):
            raise ConfigurationError(f"NCC requires a non-negative radius per axis, got {radius}")
        self.radius = [int(r) for r in radius]

    def compute(self, fixed, warped, level, pool, masked=False):
        ndim = fixed.dim() - 1
        if len(self.radius) != ndim:
            raise ConfigurationError(
                f"NCC radius {self.radius} does not match image dimension {ndim}"
            )
        shape = fixed.shape[1:]
        channels = fixed.shape[0]
        weights = _channel_view(level.weights.to(fixed.dtype), ndim)
        f, m = fixed, warped.values

        count = box_sum(torch.ones((1,) + tuple(shape), dtype=f.dtype), self.radius)
        sums = box_sum(torch.cat([f, m, f * f, m * m, f * m], dim=0), self.radius)
        sf, sm, sff, smm, sfm = torch.split(sums, channels, dim=0)

        # Per-window terms of d(sum ncc)/dm, filtered again below
        terms = torch.empty((4 * channels,) + tuple(shape), dtype=f.dtype)
        metric_image = torch.empty(shape, dtype=f.dtype)

        def window_terms(region):
            cr = channel_region(region)
            n = count[cr]
            mean_f, mean_m = sf[cr] / n, sm[cr] / n
            cov = sfm[cr] - sf[cr] * mean_m
            var_f = sff[cr] - sf[cr] * mean_f
            var_m = smm[cr] - sm[cr] * mean_m
            valid = (var_f > _NCC_EPS) & (var_m > _NCC_EPS)
            inv = torch.where(valid, 1.0 / torch.sqrt(var_f * var_m).clamp(min=_NCC_EPS), 0.0)
            ncc = cov * inv
            ncc_over_var = torch.where(valid, ncc / var_m.clamp(min=_NCC_EPS), 0.0)
            terms[(slice(0, channels),) + region] = inv
            terms[(slice(channels, 2 * channels),) + region] = mean_f * inv
            terms[(slice(2 * channels, 3 * channels),) + region] = ncc_over_var
            terms[(slice(3 * channels, 4 * channels),) + region] = ncc_over_var * mean_m
            metric_image[region] = (weights * ncc).sum(0)
            return np.array([float((weights[ch] * ncc[ch]).sum()) for ch in range(channels)])

        channel_sums = pool.reduce(window_terms, shape)
        filtered = box_sum(terms, self.radius)
        t1, t2, t3, t4 = torch.split(filtered, channels, dim=0)
        gradient = torch.empty((ndim,) + tuple(shape), dtype=f.dtype)

        def chain_rule(region):
            cr = channel_region(region)
            dm = f[cr] * t1[cr] - t2[cr] - m[cr] * t3[cr] + t4[cr]
            g = (weights * dm).unsqueeze(1) * warped.gradient[(slice(None),) + cr]
            gradient[cr] = g.sum(0)
            return None

        pool.map(chain_rule, shape)

        n = float(np.prod(shape))
        components = tuple(float(channel_sums[ch].sum()) / n for ch in level.pair_channels)
        return MetricTerms(math.fsum(channel_sums) / n, gradient / n, components, None, metric_image)


class MI(SimilarityMetric):
    """
    Mutual information from a joint histogram.

    Fixed intensities are assigned to the nearest bin; moving intensities are
    spread over the two neighbouring bins with linear (Parzen) weights, which
    makes the estimate differentiable in the moving intensity. Both composites
    must be normalized to [0, 1].

    Args:
        bins: Number of histogram bins per image
    """

    name = "MI"
    maximize = True

    def __init__(self, bins: int = 32):
        if bins < 2:
            raise ConfigurationError(f"MI needs at least 2 bins, got {bins}")
        self.bins = int(bins)

    def compute(self, fixed, warped, level, pool, masked=False):
        ndim = fixed.dim() - 1
        shape = fixed.shape[1:]
        channels = fixed.shape[0]
        bins = self.bins
        n = float(np.prod(shape))

        fixed_bin = torch.round(fixed.clamp(0.0, 1.0) * (bins - 1)).long()
        t = warped.values.clamp(0.0, 1.0) * (bins - 1)
        lower = torch.floor(t).clamp(max=bins - 2)
        frac = t - lower
        lower = lower.long()
        inside = ((warped.values >= 0.0) & (warped.values <= 1.0)).to(fixed.dtype)

        def histogram(region):
            cr = channel_region(region)
            index = fixed_bin[cr] * bins + lower[cr]
            hist = []
            for c in range(channels):
                idx, a = index[c].reshape(-1), frac[cr][c].reshape(-1)
                joint = torch.bincount(idx, weights=1.0 - a, minlength=bins * bins)
                joint += torch.bincount(idx + 1, weights=a, minlength=bins * bins)
                hist.append(joint)
            return torch.stack(hist)

        joint = pool.reduce(histogram, shape).reshape(channels, bins, bins) / n
        p_fixed = joint.sum(dim=2, keepdim=True)
        p_moving = joint.sum(dim=1, keepdim=True)
        outer = p_fixed * p_moving

        nonzero = joint > 0
        ratio = torch.where(nonzero, joint / outer.clamp(min=_MI_EPS), 1.0)
        mi = (joint * torch.log(ratio)).sum(dim=(1, 2))
        log_ratio = torch.log(joint.clamp(min=_MI_EPS)) - torch.log(outer.clamp(min=_MI_EPS))
        log_ratio = log_ratio.reshape(channels, bins * bins)

        weights = _channel_view(level.weights.to(fixed.dtype), ndim)
        gradient = torch.empty((ndim,) + tuple(shape), dtype=fixed.dtype)

        def chain_rule(region):
            cr = channel_region(region)
            index = (fixed_bin[cr] * bins + lower[cr]).reshape(channels, -1)
            low = torch.gather(log_ratio, 1, index)
            high = torch.gather(log_ratio, 1, index + 1)
            dm = ((high - low) * (bins - 1) / n).reshape(fixed_bin[cr].shape) * inside[cr]
            g = (weights * dm).unsqueeze(1) * warped.gradient[(slice(None),) + cr]
            gradient[cr] = g.sum(0)
            return None

        pool.map(chain_rule, shape)

        weighted = level.weights.to(fixed.dtype) * mi
        components = tuple(float(weighted[ch].sum()) for ch in level.pair_channels)
        return MetricTerms(float(weighted.sum()), gradient, components)


def make_metric(
    kind: MetricKind | str, radius: Sequence[int] | None = None, bins: int = 32
) -> SimilarityMetric:
    """Create the metric selected by ``kind``."""
    kind = MetricKind(kind)
    if kind == MetricKind.SSD:
        return SSD()
    if kind == MetricKind.NCC:
        if not radius:
            raise ConfigurationError("NCC metric requires a radius")
        return NCC(radius)
    return MI(bins)


def _check_finite(
    metric: SimilarityMetric, value: float, gradient: torch.Tensor | None, level: int
) -> None:
    if not math.isfinite(value):
        raise NumericDivergenceError(f"Metric value is not finite ({value})", level, metric.name)
    if gradient is not None and not bool(torch.isfinite(torch.as_tensor(gradient)).all()):
        raise NumericDivergenceError("Metric gradient has non-finite entries", level, metric.name)


def evaluate_field(
    metric: SimilarityMetric,
    level: PyramidLevel,
    field: torch.Tensor,
    pool: WorkerPool,
    gradient_mask: torch.Tensor | None = None,
) -> MetricResult:
    """
    Evaluate a metric for a displacement field.

    Args:
        metric: Similarity metric
        level: Pyramid level; the field lives on its fixed grid
        field: Displacement [ndim, *shape] in voxel units
        pool: Worker pool
        gradient_mask: Optional mask multiplied into the gradient [1 or ndim, *shape]

    Returns:
        MetricResult whose gradient is the per-voxel derivative of the summed
        metric (the value times the number of voxels)
    """
    grid = create_grid(level.fixed.shape, dtype=field.dtype, device=field.device)
    warped = level.sample_moving(grid + field)
    terms = metric.compute(level.fixed.data, warped, level, pool, masked=False)
    _check_finite(metric, terms.value, terms.gradient, level.index)

    gradient = terms.gradient * level.fixed.num_voxels
    if gradient_mask is not None:
        gradient = gradient * gradient_mask
    return MetricResult(
        terms.value, gradient, terms.components, terms.mask_value, terms.metric_image
    )


def evaluate_affine(
    metric: SimilarityMetric,
    level: PyramidLevel,
    matrix: np.ndarray,
    offset: np.ndarray,
    pool: WorkerPool,
    with_gradient: bool = True,
) -> MetricResult:
    """
    Evaluate a metric for a voxel space affine transform.

    Args:
        metric: Similarity metric
        level: Pyramid level
        matrix: Matrix [ndim, ndim] mapping fixed to moving voxel indices
        offset: Offset [ndim]
        pool: Worker pool
        with_gradient: Also reduce the parameter gradient

    Returns:
        MetricResult whose gradient is an array [ndim, ndim + 1]: the
        derivatives with respect to the matrix, then the offset column
    """
    shape = level.fixed.shape
    positions = affine_positions(matrix, offset, shape)
    warped = level.sample_moving(positions)
    terms = metric.compute(level.fixed.data, warped, level, pool, masked=True)
    _check_finite(metric, terms.value, terms.gradient, level.index)

    gradient = None
    if with_gradient:
        ndim = level.ndim
        grid = create_grid(shape)

        def jacobian_reduce(region):
            cr = channel_region(region)
            g = terms.gradient[cr].reshape(ndim, -1)
            x = grid[cr].reshape(ndim, -1)
            return torch.cat([g @ x.T, g.sum(dim=1, keepdim=True)], dim=1)

        gradient = pool.reduce(jacobian_reduce, shape).numpy()

    return MetricResult(terms.value, gradient, terms.components, terms.mask_value, terms.metric_image)
