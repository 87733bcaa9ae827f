# -*- coding: utf-8 -*-
"""
Quadrature filter sets and the filter bank.

A quadrature filter is a complex 3D kernel whose frequency response lives
in one half-space, selected by its direction vector. Its response to a
volume has a local magnitude (structure strength) and a local phase
(position of the structure within the filter), which is what both
registration solvers compare between volumes.

Filter sets are plain immutable values: they are built (or loaded) by the
caller once and passed into the engine. Nothing in this package keeps a
process-wide filter cache.

Functions
---------
1. FilterSet / FilterSets: Immutable kernels + directions + constraints
2. quadrature_filter: Lognormal quadrature filter design
3. create_filter_set: Filter set for a list of directions
4. default_linear_filters / default_nonlinear_filters / default_filter_sets
5. FilterBank: A filter set uploaded to a device, applied by conv3d
6. apply_filter_bank: One-shot filtering of a volume

Boundary Policy
---------------
The volume is zero-extended outside its grid for every filter and every
call (``CONVOLUTION_BOUNDARY``), so responses are comparable across
iterations.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import torch
import torch.nn.functional as F
from numpy.typing import NDArray

from .errors import ConfigurationError


CONVOLUTION_BOUNDARY = "zeros"

# Three axis-aligned filters for the affine solver
LINEAR_DIRECTIONS = np.eye(3, dtype=np.float64)

# Six directions through the vertices of an icosahedron (one per
# antipodal pair) for the non-linear solver
_A = 2.0 / math.sqrt(10.0 + 2.0 * math.sqrt(5.0))
_B = (1.0 + math.sqrt(5.0)) / math.sqrt(10.0 + 2.0 * math.sqrt(5.0))
NONLINEAR_DIRECTIONS = np.array([
    [_A, 0.0, _B],
    [-_A, 0.0, _B],
    [_B, _A, 0.0],
    [_B, -_A, 0.0],
    [0.0, _B, _A],
    [0.0, _B, -_A],
], dtype=np.float64)


# =============================================================================
# Filter Sets
# =============================================================================

def _readonly(array: NDArray) -> NDArray:
    array = np.array(array, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class FilterSet:
    """
    An ordered set of directional quadrature filters.

    Attributes
    ----------
    kernels : ndarray
        Complex kernels of shape (K, s, s, s), s odd.
    directions : ndarray
        Unit direction vectors of shape (K, 3), (x, y, z) order.
    constraints : ndarray
        Symmetric 3x3 constraint matrices of shape (K, 3, 3), used as the
        per-filter weight of the displacement in the least-squares normal
        equations. Defaults to n n^T for each direction n.
    """
    kernels: NDArray[np.complex64]
    directions: NDArray[np.float64]
    constraints: Optional[NDArray[np.float64]] = None

    def __post_init__(self):
        kernels = np.asarray(self.kernels)
        if kernels.ndim != 4 or len(set(kernels.shape[1:])) != 1:
            raise ConfigurationError(
                f"Filter kernels must have shape (K, s, s, s), got {kernels.shape}"
            )
        if kernels.shape[1] % 2 != 1:
            raise ConfigurationError(f"Filter size must be odd, got {kernels.shape[1]}")
        K = kernels.shape[0]
        if K < 1:
            raise ConfigurationError("A filter set needs at least one filter")

        directions = np.asarray(self.directions, dtype=np.float64)
        if directions.shape != (K, 3):
            raise ConfigurationError(
                f"Expected {K} direction vectors of shape (K, 3), got {directions.shape}"
            )
        norms = np.linalg.norm(directions, axis=1)
        if np.any(norms < 1e-8):
            raise ConfigurationError("Filter direction vectors must be non-zero")
        directions = directions / norms[:, None]

        if self.constraints is None:
            constraints = np.einsum('ki,kj->kij', directions, directions)
        else:
            constraints = np.asarray(self.constraints, dtype=np.float64)
            if constraints.shape != (K, 3, 3):
                raise ConfigurationError(
                    f"Expected constraint matrices of shape ({K}, 3, 3), "
                    f"got {constraints.shape}"
                )
            if not np.allclose(constraints, constraints.transpose(0, 2, 1), atol=1e-6):
                raise ConfigurationError("Constraint matrices must be symmetric")

        object.__setattr__(self, "kernels", _readonly(kernels.astype(np.complex64)))
        object.__setattr__(self, "directions", _readonly(directions))
        object.__setattr__(self, "constraints", _readonly(constraints))

    @property
    def num_filters(self) -> int:
        return int(self.kernels.shape[0])

    @property
    def size(self) -> int:
        return int(self.kernels.shape[1])

    @property
    def half_size(self) -> int:
        return self.size // 2


@dataclass(frozen=True)
class FilterSets:
    """The two filter sets of a registration run."""
    linear: FilterSet
    nonlinear: FilterSet


# =============================================================================
# Filter Design
# =============================================================================

def quadrature_filter(
    direction: Sequence[float],
    size: int = 7,
    center_frequency: float = math.pi / 4,
    bandwidth: float = 2.0,
    design_size: int = 31,
) -> NDArray[np.complex64]:
    """
    Design a lognormal quadrature filter.

    The frequency response is R(rho) * D(u), with a lognormal radial
    function R centred on ``center_frequency`` and an angular function
    D(u) = (u.n / |u|)^2 for u.n > 0 and 0 otherwise. The response is
    designed on a ``design_size``^3 grid, brought to the spatial domain and
    cropped to ``size``^3. The real part is made DC-free after cropping.

    Parameters
    ----------
    direction : sequence of float
        Filter direction (x, y, z); normalized internally.
    size : int
        Spatial kernel size (odd). Default 7.
    center_frequency : float
        Radial centre frequency in radians/voxel. Default pi/4.
    bandwidth : float
        Relative bandwidth in octaves. Default 2.0.
    design_size : int
        Fourier design grid size (odd, > size). Default 31.

    Returns
    -------
    kernel : ndarray
        Complex kernel of shape (size, size, size), indexed [x, y, z].
    """
    if size % 2 != 1 or design_size % 2 != 1 or design_size <= size:
        raise ConfigurationError(
            f"Filter size ({size}) and design size ({design_size}) must be odd, "
            f"with design size > size"
        )
    n = np.asarray(direction, dtype=np.float64)
    n = n / np.linalg.norm(n)

    freqs = 2.0 * np.pi * np.fft.fftfreq(design_size)
    ux, uy, uz = np.meshgrid(freqs, freqs, freqs, indexing='ij')
    rho = np.sqrt(ux ** 2 + uy ** 2 + uz ** 2)

    radial = np.zeros_like(rho)
    nonzero = rho > 0
    radial[nonzero] = np.exp(
        -4.0 / np.log(2.0) * np.log(rho[nonzero] / center_frequency) ** 2 / bandwidth ** 2
    )

    projection = np.zeros_like(rho)
    projection[nonzero] = (ux[nonzero] * n[0] + uy[nonzero] * n[1] + uz[nonzero] * n[2]) / rho[nonzero]
    angular = np.where(projection > 0, projection ** 2, 0.0)

    spatial = np.fft.fftshift(np.fft.ifftn(radial * angular))
    c, r = design_size // 2, size // 2
    kernel = spatial[c - r:c + r + 1, c - r:c + r + 1, c - r:c + r + 1]

    kernel = kernel.real - kernel.real.mean() + 1j * kernel.imag
    kernel = kernel / np.abs(kernel).sum()
    return kernel.astype(np.complex64)


def create_filter_set(
    directions: NDArray[np.floating],
    size: int = 7,
    center_frequency: float = math.pi / 4,
    bandwidth: float = 2.0,
) -> FilterSet:
    """Build a FilterSet with one lognormal quadrature filter per direction."""
    directions = np.asarray(directions, dtype=np.float64)
    kernels = np.stack([
        quadrature_filter(d, size, center_frequency, bandwidth) for d in directions
    ])
    return FilterSet(kernels, directions)


def default_linear_filters() -> FilterSet:
    """Three axis-aligned filters for the affine solver (centre freq. pi/4)."""
    return create_filter_set(LINEAR_DIRECTIONS, size=7, center_frequency=math.pi / 4)


def default_nonlinear_filters() -> FilterSet:
    """Six icosahedral filters for the non-linear solver (centre freq. pi/3)."""
    return create_filter_set(NONLINEAR_DIRECTIONS, size=7, center_frequency=math.pi / 3)


def default_filter_sets() -> FilterSets:
    """Both default filter sets."""
    return FilterSets(default_linear_filters(), default_nonlinear_filters())


# =============================================================================
# Filter Bank
# =============================================================================

class FilterBank:
    """
    A FilterSet uploaded once to a device.

    The real and imaginary parts of all K kernels become the 2K output
    channels of a single real conv3d, so one call filters the volume with
    the whole set. The kernels are flipped so that conv3d (a correlation)
    computes a true convolution.
    """

    def __init__(self, filter_set: FilterSet, device: torch.device):
        self.filter_set = filter_set
        self.device = device
        kernels = torch.from_numpy(np.array(filter_set.kernels))
        weight = torch.cat([kernels.real, kernels.imag], dim=0).unsqueeze(1)
        self.weight = torch.flip(weight, dims=(2, 3, 4)).to(device=device, dtype=torch.float32)
        self.padding = filter_set.half_size

    def __call__(self, volume: torch.Tensor) -> torch.Tensor:
        """
        Filter a volume with every kernel of the set.

        Parameters
        ----------
        volume : torch.Tensor
            Volume of shape (1, 1, X, Y, Z).

        Returns
        -------
        torch.Tensor
            Complex responses of shape (K, X, Y, Z).
        """
        out = F.conv3d(volume, self.weight, padding=self.padding)[0]
        K = self.filter_set.num_filters
        return torch.complex(out[:K], out[K:])


def apply_filter_bank(
    volume: torch.Tensor,
    filter_set: FilterSet,
) -> torch.Tensor:
    """
    Filter a (1, 1, X, Y, Z) volume with a filter set.

    Pure function of (volume, filter set); the kernels are uploaded to the
    volume's device for this call only.
    """
    return FilterBank(filter_set, volume.device)(volume)
