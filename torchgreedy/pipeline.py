"""
File based registration runs.

Reads the inputs named in :class:`~torchgreedy.config.GreedyParameters`,
runs the selected mode and writes the outputs. Outputs are written under
temporary names and only renamed into place once all of them succeeded, so a
failed run leaves no output files behind.
"""

import logging
import os
from pathlib import Path

import numpy as np
import torch

from .affine import AffineRegistration
from .brute import brute_force_search
from .config import GreedyParameters, Interpolation, MetricKind, Mode
from .errors import ConfigurationError, ResourceError
from .greedy import GreedyRegistration
from .image import Image
from .io import (
    load_image,
    read_affine_matrix,
    read_pixel_id,
    save_image,
    save_vector_field,
    write_affine_matrix,
)
from .metrics import make_metric
from .parallel import WorkerPool
from .pyramid import ImagePair, build_pyramid
from .warps import apply_physical_warp, invert_field, read_transform_chain

logger = logging.getLogger(__name__)


class StagedOutputs:
    """
    Output paths that only appear once every write of a run has succeeded.

    Writers are handed a hidden temporary name next to each target; leaving
    the ``with`` block renames them into place, or removes them on error.
    """

    def __init__(self) -> None:
        self._staged: list[tuple[Path, Path]] = []

    def __enter__(self) -> "StagedOutputs":
        return self

    def path(self, target: str | Path) -> Path:
        target = Path(target)
        temporary = target.with_name(f".partial-{target.name}")
        self._staged.append((temporary, target))
        return temporary

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            for temporary, _ in self._staged:
                temporary.unlink(missing_ok=True)
            return
        for temporary, target in self._staged:
            try:
                os.replace(temporary, target)
            except OSError as e:
                raise ResourceError(f"Failed to move output into place at {target}: {str(e)}", target) from e
            logger.debug("Wrote %s", target)


def read_image_pairs(params: GreedyParameters) -> list[ImagePair]:
    """
    Load the fixed/moving pairs and apply the moving pre-transforms.

    With pre-transforms, every moving image is resampled onto the grid of the
    first fixed image through the composed chain.
    """
    pairs = []
    for spec in params.inputs:
        fixed, moving = load_image(spec.fixed), load_image(spec.moving)
        for path, image in ((spec.fixed, fixed), (spec.moving, moving)):
            if image.ndim != params.dim:
                raise ConfigurationError(f"Image {path} is {image.ndim}D, expected {params.dim}D")
        pairs.append(ImagePair(fixed, moving, spec.weight))

    if params.moving_pre_transforms:
        reference = pairs[0].fixed
        chain = read_transform_chain(
            params.moving_pre_transforms, reference, params.inverse_iterations
        )
        pairs = [
            ImagePair(p.fixed, apply_physical_warp(p.moving, chain, reference), p.weight)
            for p in pairs
        ]
    return pairs


def _initial_matrix(params: GreedyParameters) -> np.ndarray | None:
    if params.initial_affine is None:
        return None
    spec = params.initial_affine
    return read_affine_matrix(spec.path, spec.exponent, params.dim)


def _gradient_mask(params: GreedyParameters) -> Image | None:
    return None if params.gradient_mask is None else load_image(params.gradient_mask)


def _metric(params: GreedyParameters):
    return make_metric(params.metric, params.metric_radius, params.mi_bins)


def run_affine(params: GreedyParameters, pool: WorkerPool) -> np.ndarray:
    """Affine registration; writes the RAS matrix to ``params.output``."""
    registration = AffineRegistration(
        _metric(params),
        num_iterations=params.iterations,
        shrink_factors=params.shrink_factors,
        optimizer=params.optimizer,
        pool=pool,
        ncc_scale=params.ncc_scale,
        seed=params.seed,
        jitter=params.affine_jitter,
        debug_deriv=params.debug_deriv,
        deriv_epsilon=params.deriv_epsilon,
    )
    result = registration.register(
        read_image_pairs(params), initial_matrix=_initial_matrix(params)
    )
    with StagedOutputs() as outputs:
        write_affine_matrix(result.matrix, outputs.path(params.output))  # type: ignore[arg-type]
    return result.matrix


def run_deformable(params: GreedyParameters, pool: WorkerPool) -> torch.Tensor:
    """Greedy deformable registration; writes the warp and optionally its inverse."""
    registration = GreedyRegistration(
        _metric(params),
        num_iterations=params.iterations,
        shrink_factors=params.shrink_factors,
        epsilon=params.epsilon,
        sigma_pre=params.sigma_pre,
        sigma_post=params.sigma_post,
        time_step_mode=params.time_step_mode,
        pool=pool,
    )
    result = registration.register(
        read_image_pairs(params),
        initial_matrix=_initial_matrix(params),
        gradient_mask=_gradient_mask(params),
    )

    inverse = None
    if params.inverse_warp:
        inverse = invert_field(result.field, params.inverse_exponent, params.inverse_iterations)

    with StagedOutputs() as outputs:
        save_vector_field(
            result.field, result.reference, outputs.path(params.output), params.warp_precision  # type: ignore[arg-type]
        )
        if inverse is not None:
            save_vector_field(
                inverse, result.reference, outputs.path(params.inverse_warp), params.warp_precision  # type: ignore[arg-type]
            )
    return result.field


def run_brute(params: GreedyParameters, pool: WorkerPool) -> torch.Tensor:
    """Brute force offset search at full resolution; writes the offset field."""
    metric = make_metric(MetricKind.NCC, params.metric_radius)
    pyramid = build_pyramid(read_image_pairs(params), shrink_factors=[1])
    level = pyramid.finest
    field, best = brute_force_search(metric, level, params.brute_search_radius, pool)  # type: ignore[arg-type]

    with StagedOutputs() as outputs:
        save_vector_field(field, level.fixed, outputs.path(params.output), 0.0)  # type: ignore[arg-type]
        if params.brute_metric_output:
            save_image(level.fixed.like(best.unsqueeze(0)), outputs.path(params.brute_metric_output))
    return field


def run_reslice(params: GreedyParameters, pool: WorkerPool) -> list[Image]:
    """Apply a transform chain to images on a reference grid."""
    reference = load_image(params.reslice_reference)  # type: ignore[arg-type]
    if reference.ndim != params.dim:
        raise ConfigurationError(
            f"Reference image is {reference.ndim}D, expected {params.dim}D"
        )
    chain = read_transform_chain(params.reslice_transforms, reference, params.inverse_iterations)

    outputs = []
    for spec in params.reslice_images:
        moving = load_image(spec.moving)
        mode = "nearest" if spec.interpolation == Interpolation.NEAREST else "bilinear"
        outputs.append(apply_physical_warp(moving, chain, reference, mode))

    with StagedOutputs() as staged:
        for spec, image in zip(params.reslice_images, outputs, strict=False):
            save_image(image, staged.path(spec.output), pixel_id=read_pixel_id(spec.moving))
    return outputs


def run(params: GreedyParameters) -> None:
    """
    Validate the parameters and run the selected mode.

    Args:
        params: Complete parameter set
    """
    params.validate()
    logger.info("Running %s mode with %d threads", params.mode.value, params.num_threads)
    with WorkerPool(params.num_threads) as pool:
        if params.mode == Mode.AFFINE:
            run_affine(params, pool)
        elif params.mode == Mode.BRUTE:
            run_brute(params, pool)
        elif params.mode == Mode.RESLICE:
            run_reslice(params, pool)
        else:
            run_deformable(params, pool)
