"""
Command line interface.

Options follow the short, single dash style of the greedy tool, e.g.::

    torchgreedy -d 2 -i fixed.nii.gz moving.nii.gz -o warp.nii.gz -n 100x50 -m NCC 2x2
    torchgreedy -d 3 -a -i fixed.nii.gz moving.nii.gz -o affine.mat -m SSD
    torchgreedy -d 3 -rf fixed.nii.gz -rm moving.nii.gz out.nii.gz -r warp.nii.gz affine.mat
"""

import argparse
import logging
from collections.abc import Sequence
from pathlib import Path

from .config import (
    AffineOptimizer,
    GreedyParameters,
    ImagePairSpec,
    Interpolation,
    MetricKind,
    Mode,
    ResliceSpec,
    SmoothingSpec,
    TimeStepMode,
    TransformSpec,
    load_config,
    parse_iterations,
    parse_vector,
)
from .errors import ConfigurationError, GreedyError
from .log import configure_logging
from .pipeline import run

logger = logging.getLogger(__name__)


class _WeightAction(argparse.Action):
    """``-w W`` sets the weight of every ``-i`` pair that follows it."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)


class _InputPairAction(argparse.Action):
    """``-i FIXED MOVING`` records the pair with the weight in force."""

    def __call__(self, parser, namespace, values, option_string=None):
        pairs = list(getattr(namespace, self.dest, None) or [])
        fixed, moving = values
        pairs.append(ImagePairSpec(fixed, moving, getattr(namespace, "current_weight", 1.0)))
        setattr(namespace, self.dest, pairs)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="torchgreedy",
        description="Greedy diffeomorphic and affine image registration",
        allow_abbrev=False,
    )
    parser.add_argument("--config", type=Path, help="YAML parameter file; other options override it")
    parser.add_argument("-d", dest="dim", type=int, help="Image dimension (2 or 3)")
    parser.add_argument(
        "-i",
        dest="inputs",
        nargs=2,
        action=_InputPairAction,
        metavar=("FIXED", "MOVING"),
        help="Fixed and moving image pair; may be repeated",
    )
    parser.add_argument(
        "-w",
        dest="current_weight",
        type=float,
        action=_WeightAction,
        default=1.0,
        help="Weight of the -i pairs that follow (default 1)",
    )
    parser.add_argument("-o", dest="output", help="Output warp or affine matrix")

    # Mode selection
    parser.add_argument("-a", dest="affine", action="store_true", help="Affine registration")
    parser.add_argument(
        "-brute", dest="brute", metavar="RADIUS", help="Brute force search radius, e.g. 4x4"
    )
    parser.add_argument("-rf", dest="reslice_reference", help="Reslice: reference image")
    parser.add_argument(
        "-rm",
        dest="reslice_images",
        nargs=2,
        action="append",
        metavar=("MOVING", "OUTPUT"),
        help="Reslice: image to resample and its output; may be repeated",
    )
    parser.add_argument(
        "-ri",
        dest="reslice_interpolation",
        choices=[i.value for i in Interpolation],
        type=str.upper,
        help="Reslice: interpolation for all images",
    )
    parser.add_argument(
        "-r", dest="reslice_transforms", nargs="+", metavar="TRANSFORM", help="Reslice: transform chain"
    )

    # Optimization
    parser.add_argument("-m", dest="metric", nargs="+", metavar="METRIC", help="SSD, MI or NCC RADIUS")
    parser.add_argument("-mi-bins", dest="mi_bins", type=int, help="Histogram bins of MI")
    parser.add_argument("-n", dest="iterations", help="Iterations per level, coarsest first, e.g. 100x50")
    parser.add_argument("-shrink", dest="shrink_factors", help="Shrink factor per level, e.g. 4x2x1")
    parser.add_argument("-e", dest="epsilon", type=float, help="Step size in voxels")
    parser.add_argument(
        "-s",
        dest="sigmas",
        nargs=2,
        metavar=("PRE", "POST"),
        help="Gradient and field smoothing, e.g. 1.732vox 0.707vox or 2mm 1mm",
    )
    parser.add_argument(
        "-tscale",
        dest="time_step_mode",
        choices=[m.value for m in TimeStepMode],
        type=str.upper,
        help="Step length normalization",
    )
    parser.add_argument("-gm", dest="gradient_mask", help="Mask restricting the deformation")

    # Transforms
    parser.add_argument("-ia", dest="initial_affine", help="Initial affine matrix, optionally FILE,-1")
    parser.add_argument(
        "-it", dest="moving_pre_transforms", nargs="+", metavar="TRANSFORM", help="Moving image pre-transforms"
    )
    parser.add_argument("-oinv", dest="inverse_warp", help="Also write the inverse warp")
    parser.add_argument("-invexp", dest="inverse_exponent", type=int, help="Square roots taken before inverting")
    parser.add_argument("-wp", dest="warp_precision", type=float, help="Warp quantization in voxels; 0 disables")

    # Affine
    parser.add_argument("-powell", dest="powell", action="store_true", help="Use Powell instead of L-BFGS")
    parser.add_argument("-debug-deriv", dest="debug_deriv", action="store_true", help="Check affine gradients")
    parser.add_argument("-seed", dest="seed", type=int, help="Seed of the initial affine perturbation")

    parser.add_argument("-threads", dest="threads", type=int, help="Worker threads; 0 uses all CPUs")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("--log-file", type=Path, help="Also write the log to this file")
    return parser


def _parse_metric(values: Sequence[str]) -> tuple[MetricKind, list[int]]:
    name = values[0].upper()
    if name not in MetricKind.__members__:
        raise ConfigurationError(f"Unknown metric {values[0]}; choose SSD, NCC or MI")
    kind = MetricKind(name)
    if kind == MetricKind.NCC:
        if len(values) != 2:
            raise ConfigurationError("NCC metric requires a radius, e.g. -m NCC 2x2")
        return kind, parse_vector(values[1], int)
    if len(values) > 1:
        raise ConfigurationError(f"Metric {name} takes no arguments")
    return kind, []


def build_parameters(args: argparse.Namespace) -> GreedyParameters:
    """Turn parsed arguments into a parameter set, on top of ``--config`` when given."""
    params = load_config(args.config, validate=False) if args.config else GreedyParameters()

    if args.dim is not None:
        params.dim = args.dim
    if args.inputs:
        params.inputs = list(args.inputs)
    if args.output is not None:
        params.output = args.output

    if args.affine:
        params.mode = Mode.AFFINE
    if args.brute is not None:
        params.mode = Mode.BRUTE
        params.brute_search_radius = parse_vector(args.brute, int)
    if args.reslice_reference is not None:
        params.mode = Mode.RESLICE
        params.reslice_reference = args.reslice_reference
        interpolation = Interpolation(args.reslice_interpolation or Interpolation.LINEAR.value)
        params.reslice_images = [
            ResliceSpec(moving, output, interpolation) for moving, output in args.reslice_images or []
        ]
        params.reslice_transforms = [TransformSpec.parse(t) for t in args.reslice_transforms or []]

    if args.metric:
        params.metric, params.metric_radius = _parse_metric(args.metric)
    if args.mi_bins is not None:
        params.mi_bins = args.mi_bins
    if args.iterations is not None:
        params.iterations = parse_iterations(args.iterations)
    if args.shrink_factors is not None:
        params.shrink_factors = parse_vector(args.shrink_factors, int)
    if args.epsilon is not None:
        params.epsilon = args.epsilon
    if args.sigmas:
        params.sigma_pre = SmoothingSpec.parse(args.sigmas[0])
        params.sigma_post = SmoothingSpec.parse(args.sigmas[1])
    if args.time_step_mode is not None:
        params.time_step_mode = TimeStepMode(args.time_step_mode)
    if args.gradient_mask is not None:
        params.gradient_mask = args.gradient_mask

    if args.initial_affine is not None:
        params.initial_affine = TransformSpec.parse(args.initial_affine)
    if args.moving_pre_transforms:
        params.moving_pre_transforms = [TransformSpec.parse(t) for t in args.moving_pre_transforms]
    if args.inverse_warp is not None:
        params.inverse_warp = args.inverse_warp
    if args.inverse_exponent is not None:
        params.inverse_exponent = args.inverse_exponent
    if args.warp_precision is not None:
        params.warp_precision = args.warp_precision

    if args.powell:
        params.optimizer = AffineOptimizer.POWELL
    if args.debug_deriv:
        params.debug_deriv = True
    if args.seed is not None:
        params.seed = args.seed
    if args.threads is not None:
        params.threads = args.threads
    return params


def main(argv: Sequence[str] | None = None) -> int:
    """
    Entry point of the ``torchgreedy`` command.

    Returns:
        Process exit code: 0 on success, 1 when the run fails
    """
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_file)
    try:
        run(build_parameters(args))
    except GreedyError as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
