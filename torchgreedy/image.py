"""
In-memory image with physical space metadata.

Pixel data is a tensor of shape [C, *array_shape]. The array shape follows
the SimpleITK/numpy (z, y, x) ordering, while spacing, origin and direction
follow ITK index ordering (x, y, z). Vector valued images such as
displacement fields store their components (x, y, z) along the channel axis.
"""

from dataclasses import dataclass, field

import numpy as np
import torch

from .errors import ConfigurationError


@dataclass
class Image:
    """
    An N-dimensional multi-channel image.

    Attributes:
        data: Tensor [C, *array_shape]
        spacing: Voxel size per index axis (x, y, z)
        origin: Physical position of voxel 0
        direction: Direction cosine matrix [ndim, ndim], row major
    """

    data: torch.Tensor
    spacing: tuple[float, ...] = ()
    origin: tuple[float, ...] = ()
    direction: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))

    def __post_init__(self) -> None:
        ndim = self.data.dim() - 1
        if ndim not in (2, 3):
            raise ConfigurationError(
                f"Only 2D and 3D images are supported, got data of shape {tuple(self.data.shape)}"
            )
        if not self.spacing:
            self.spacing = (1.0,) * ndim
        if not self.origin:
            self.origin = (0.0,) * ndim
        if self.direction.size == 0:
            self.direction = np.eye(ndim)
        self.spacing = tuple(float(s) for s in self.spacing)
        self.origin = tuple(float(o) for o in self.origin)
        self.direction = np.asarray(self.direction, dtype=np.float64).reshape(ndim, ndim)
        if len(self.spacing) != ndim or len(self.origin) != ndim:
            raise ConfigurationError(
                f"Geometry does not match a {ndim}D image: spacing={self.spacing}, origin={self.origin}"
            )

    @property
    def ndim(self) -> int:
        return self.data.dim() - 1

    @property
    def num_channels(self) -> int:
        return int(self.data.shape[0])

    @property
    def shape(self) -> tuple[int, ...]:
        """Array shape in (z, y, x) order."""
        return tuple(self.data.shape[1:])

    @property
    def size(self) -> tuple[int, ...]:
        """Image size in index order (x, y, z)."""
        return tuple(reversed(self.shape))

    @property
    def num_voxels(self) -> int:
        return int(np.prod(self.shape))

    def like(self, data: torch.Tensor) -> "Image":
        """New image with the same geometry and different data."""
        if tuple(data.shape[1:]) != self.shape:
            raise ValueError(
                f"Data shape {tuple(data.shape[1:])} does not match image shape {self.shape}"
            )
        return Image(data, self.spacing, self.origin, self.direction.copy())

    def same_grid(self, other: "Image", tol: float = 1e-6) -> bool:
        """True when both images sample the same physical grid."""
        return (
            self.shape == other.shape
            and np.allclose(self.spacing, other.spacing, atol=tol)
            and np.allclose(self.origin, other.origin, atol=tol)
            and np.allclose(self.direction, other.direction, atol=tol)
        )
