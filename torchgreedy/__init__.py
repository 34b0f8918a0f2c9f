"""
TorchGreedy: Multi-resolution greedy diffeomorphic and affine registration

Image registration with analytic metric gradients, evaluated with PyTorch
resampling and filtering on the CPU.

Key Features:
- Greedy deformable registration with Gaussian regularization
- Affine registration with L-BFGS or Powell
- SSD, local NCC and mutual information metrics
- Multiple weighted image pairs, transform chains and field inversion
- SimpleITK image and ITK transform I/O

Quick Example:
    >>> import SimpleITK as sitk
    >>> import torchgreedy
    >>> from torchgreedy.metrics import NCC
    >>>
    >>> fixed = sitk.ReadImage("fixed.nii.gz")
    >>> moving = sitk.ReadImage("moving.nii.gz")
    >>>
    >>> affine = torchgreedy.AffineRegistration(NCC([2, 2, 2]), num_iterations=[100, 50])
    >>> matrix = affine.register(fixed, moving).matrix
    >>>
    >>> greedy = torchgreedy.GreedyRegistration(NCC([2, 2, 2]), num_iterations=[100, 50, 20])
    >>> result = greedy.register(fixed, moving, initial_matrix=matrix)
"""

__version__ = "0.1.0"

# Import submodules to make them available as torchgreedy.submodule
from . import (
    affine,
    base,
    brute,
    config,
    conversion,
    coords,
    errors,
    greedy,
    image,
    io,
    log,
    metrics,
    parallel,
    pipeline,
    processing,
    pyramid,
    transforms,
    warps,
)

# Only expose the most essential classes/functions at the top level
from .affine import AffineRegistration
from .config import GreedyParameters, load_config
from .errors import GreedyError
from .greedy import GreedyRegistration
from .image import Image

__all__ = [
    # Essential classes (top-level access)
    "AffineRegistration",
    "GreedyRegistration",
    "GreedyParameters",
    "GreedyError",
    "Image",
    "load_config",
    # Submodules (for organized access: torchgreedy.metrics.NCC, etc.)
    "affine",
    "base",
    "brute",
    "config",
    "conversion",
    "coords",
    "errors",
    "greedy",
    "image",
    "io",
    "log",
    "metrics",
    "parallel",
    "pipeline",
    "processing",
    "pyramid",
    "transforms",
    "warps",
]
