"""
Registration parameters.

The parameter set is a tree of dataclasses. It can be built in code, by the
command line parser, or from a YAML file with :func:`load_config`.
"""

import math
import os
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError, ResourceError


class Mode(str, Enum):
    GREEDY = "greedy"
    AFFINE = "affine"
    BRUTE = "brute"
    RESLICE = "reslice"


class MetricKind(str, Enum):
    SSD = "SSD"
    NCC = "NCC"
    MI = "MI"


class TimeStepMode(str, Enum):
    CONST = "CONST"
    SCALE = "SCALE"
    SCALEDOWN = "SCALEDOWN"


class Interpolation(str, Enum):
    LINEAR = "LINEAR"
    NEAREST = "NEAREST"


class AffineOptimizer(str, Enum):
    LBFGS = "lbfgs"
    POWELL = "powell"


def parse_vector(text: str, cast: type = float) -> list[Any]:
    """Parse a vector written as ``"2x3x4"``."""
    try:
        return [cast(v) for v in str(text).lower().split("x")]
    except ValueError as e:
        raise ConfigurationError(f"Cannot parse vector '{text}': {str(e)}") from e


def parse_iterations(text: str) -> list[int]:
    """Parse per-level iteration counts such as ``"100x50x10"``."""
    iterations = parse_vector(text, int)
    if any(n < 0 for n in iterations):
        raise ConfigurationError(f"Iteration counts must be non-negative, got {text}")
    return iterations


@dataclass
class SmoothingSpec:
    """Gaussian sigma, either in voxels or in physical units."""

    sigma: float
    physical_units: bool = False

    @classmethod
    def parse(cls, text: str | float) -> "SmoothingSpec":
        """Parse ``"1.732vox"``, ``"2mm"`` or a bare number (voxels)."""
        if isinstance(text, (int, float)):
            return cls(float(text))
        value = str(text).strip().lower()
        physical = False
        if value.endswith("vox"):
            value = value[:-3]
        elif value.endswith("mm"):
            value = value[:-2]
            physical = True
        try:
            sigma = float(value)
        except ValueError as e:
            raise ConfigurationError(f"Cannot parse sigma '{text}'") from e
        if sigma < 0:
            raise ConfigurationError(f"Sigma must be non-negative, got {text}")
        return cls(sigma, physical)

    def to_voxels(self, spacing: tuple[float, ...]) -> list[float]:
        """Per-axis sigma in voxel units of an image with ``spacing``."""
        if self.physical_units:
            return [self.sigma / s for s in spacing]
        return [self.sigma] * len(spacing)


@dataclass
class TransformSpec:
    """A transform file plus the power it is applied with."""

    path: str
    exponent: float = 1.0

    @classmethod
    def parse(cls, text: str) -> "TransformSpec":
        """Parse ``"file"`` or ``"file,-1"``."""
        path, _, exponent = str(text).partition(",")
        spec = cls(path)
        if exponent:
            try:
                spec.exponent = float(exponent)
            except ValueError as e:
                raise ConfigurationError(f"Bad transform exponent in '{text}'") from e
        spec.validate()
        return spec

    def validate(self) -> None:
        if self.exponent not in (1.0, -1.0):
            raise ConfigurationError(
                "Transform exponent values of +1 and -1 are the only ones currently "
                f"supported, got {self.exponent} for {self.path}"
            )


@dataclass
class ImagePairSpec:
    fixed: str
    moving: str
    weight: float = 1.0


@dataclass
class ResliceSpec:
    moving: str
    output: str
    interpolation: Interpolation = Interpolation.LINEAR


@dataclass
class GreedyParameters:
    """
    Complete parameter set for one run.

    Field defaults mirror the command line defaults. Call :meth:`validate`
    before running; the runner does so itself.
    """

    inputs: list[ImagePairSpec] = field(default_factory=list)
    output: str | None = None
    dim: int = 2
    mode: Mode = Mode.GREEDY

    # Optimization
    iterations: list[int] = field(default_factory=lambda: [100, 100])
    shrink_factors: list[int] | None = None
    metric: MetricKind = MetricKind.SSD
    metric_radius: list[int] = field(default_factory=list)
    mi_bins: int = 32
    epsilon: float = 1.0
    sigma_pre: SmoothingSpec = field(default_factory=lambda: SmoothingSpec(math.sqrt(3.0)))
    sigma_post: SmoothingSpec = field(default_factory=lambda: SmoothingSpec(math.sqrt(0.5)))
    time_step_mode: TimeStepMode = TimeStepMode.SCALE
    gradient_mask: str | None = None

    # Transforms
    initial_affine: TransformSpec | None = None
    moving_pre_transforms: list[TransformSpec] = field(default_factory=list)
    inverse_warp: str | None = None
    inverse_exponent: int = 2
    inverse_iterations: int = 20
    warp_precision: float = 0.1

    # Affine mode
    optimizer: AffineOptimizer = AffineOptimizer.LBFGS
    ncc_scale: float = 10000.0
    seed: int = 12345
    affine_jitter: float = 0.4
    debug_deriv: bool = False
    deriv_epsilon: float = 1e-4

    # Brute force mode
    brute_search_radius: list[int] = field(default_factory=list)
    brute_metric_output: str | None = None

    # Reslice mode
    reslice_reference: str | None = None
    reslice_images: list[ResliceSpec] = field(default_factory=list)
    reslice_transforms: list[TransformSpec] = field(default_factory=list)

    threads: int = 0

    @property
    def num_threads(self) -> int:
        """Worker thread count, resolving 0 to the number of CPUs."""
        return self.threads if self.threads > 0 else (os.cpu_count() or 1)

    def validate(self) -> None:
        """Check the parameter set, raising ConfigurationError on the first problem."""
        if self.dim not in (2, 3):
            raise ConfigurationError(f"Only 2D and 3D images are supported, got dim={self.dim}")

        if self.mode == Mode.RESLICE:
            if not self.reslice_reference:
                raise ConfigurationError("Reslice mode requires a reference image")
            if not self.reslice_images:
                raise ConfigurationError("Reslice mode requires at least one image to reslice")
            for spec in self.reslice_transforms:
                spec.validate()
            return

        if not self.inputs:
            raise ConfigurationError("No image inputs have been specified")
        if not self.output:
            raise ConfigurationError("An output file has not been specified")
        if self.epsilon < 0:
            raise ConfigurationError(f"Step size epsilon must be non-negative, got {self.epsilon}")
        if not self.iterations:
            raise ConfigurationError("At least one resolution level is required")
        if any(n < 0 for n in self.iterations):
            raise ConfigurationError(f"Iteration counts must be non-negative, got {self.iterations}")
        if self.shrink_factors is not None and len(self.shrink_factors) != len(self.iterations):
            raise ConfigurationError(
                f"shrink_factors and iterations must have the same length. "
                f"Got {len(self.shrink_factors)} and {len(self.iterations)} respectively."
            )

        if self.metric == MetricKind.NCC and len(self.metric_radius) != self.dim:
            raise ConfigurationError(
                f"NCC metric radius must have {self.dim} components, got {self.metric_radius}"
            )

        if self.mode == Mode.BRUTE:
            if self.metric != MetricKind.NCC:
                raise ConfigurationError("Brute force search requires NCC metric only")
            if len(self.brute_search_radius) != self.dim:
                raise ConfigurationError(
                    "Brute force search radius must be same dimension as the images"
                )

        for spec in self.moving_pre_transforms:
            spec.validate()
        if self.initial_affine is not None:
            self.initial_affine.validate()
        if self.warp_precision < 0:
            raise ConfigurationError("Warp precision must be non-negative")
        if self.inverse_exponent < 0:
            raise ConfigurationError("Inverse exponent must be non-negative")


_ENUM_FIELDS = {
    "mode": Mode,
    "metric": MetricKind,
    "time_step_mode": TimeStepMode,
    "optimizer": AffineOptimizer,
}


def _coerce(name: str, value: Any) -> Any:
    """Convert a plain YAML value into the type of field ``name``."""
    if name in _ENUM_FIELDS:
        choices = {member.value.lower(): member for member in _ENUM_FIELDS[name]}
        if str(value).lower() not in choices:
            raise ConfigurationError(
                f"Invalid value for {name}: {value}. Choose one of {sorted(choices)}"
            )
        return choices[str(value).lower()]
    if name == "inputs":
        return [ImagePairSpec(**pair) for pair in value]
    if name in ("sigma_pre", "sigma_post"):
        return SmoothingSpec.parse(value)
    if name == "initial_affine":
        return None if value is None else TransformSpec.parse(value)
    if name in ("moving_pre_transforms", "reslice_transforms"):
        return [TransformSpec.parse(v) for v in value]
    if name == "reslice_images":
        return [
            ResliceSpec(
                r["moving"],
                r["output"],
                Interpolation(str(r.get("interpolation", "LINEAR")).upper()),
            )
            for r in value
        ]
    if name == "iterations" and isinstance(value, str):
        return parse_iterations(value)
    if name in ("metric_radius", "brute_search_radius", "shrink_factors") and isinstance(value, str):
        return parse_vector(value, int)
    return value


def load_config(filepath: str | Path, validate: bool = True) -> GreedyParameters:
    """
    Load a parameter set from a YAML file.

    Args:
        filepath: Path to a YAML mapping whose keys are GreedyParameters fields
        validate: Validate the result; off when more options are applied later

    Returns:
        GreedyParameters
    """
    try:
        with open(filepath) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ResourceError(f"Failed to read config from {filepath}: {str(e)}", filepath) from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {filepath}: {str(e)}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {filepath} must contain a mapping")

    known = {f.name for f in fields(GreedyParameters)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"Unknown config keys in {filepath}: {sorted(unknown)}")

    params = GreedyParameters(**{k: _coerce(k, v) for k, v in data.items()})
    if validate:
        params.validate()
    return params
