# -*- coding: utf-8 -*-
"""
Phase-based affine (linear) registration.

Estimates the 12 affine parameters that align a source volume to a
reference volume. At every iteration the source is warped with the
current affine, filtered with the linear filter set, and the phase
differences to the reference responses are turned into an affine
increment by certainty-weighted least squares. The increment is composed
with the running estimate.

Least-squares system
--------------------
The displacement model is d(x) = Theta beta(x) with beta = [1, x, y, z]
in centred voxel coordinates and Theta a 3x4 matrix (translation column
followed by the linear perturbation). For filter k with direction n_k,
constraint matrix C_k, local frequency f_k, phase difference dphi_k and
certainty c_k:

    A = sum_k kron( sum_x c_k f_k^2 beta beta^T , C_k )        (12 x 12)
    h = sum_k kron( sum_x c_k f_k dphi_k beta   , n_k )        (12)

and vec(Theta) = A^-1 h. Voxels within half a filter of the border get
zero weight.

Multi-resolution
----------------
With ``coarsest_scale`` > 1 the solver runs first on downsampled volumes
(scales coarsest, ..., 2, 1), each level for the full iteration count;
translations are rescaled between levels.

Functions
---------
1. AffineSolver: Single-resolution iteration state
2. AffineRegistration: Multi-resolution driver, one iteration per step()
3. register_affine: Run a complete affine registration
4. solve_affine_system: Assemble and solve the 12x12 system
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import torch
from numpy.typing import NDArray

from .backend import Backend
from .errors import ConfigurationError, NumericError, ShapeError
from .filters import FilterBank, FilterSet
from .phase import (
    directional_frequencies,
    interior_mask,
    phase_differences_and_certainties,
)
from .resample import downsample_volume, volume_tensor
from .volume import Volume
from .warp import (
    centered_coordinates,
    matrix_to_parameters,
    parameters_to_matrix,
    scale_translation,
    warp_affine,
)


MAX_CONDITION_NUMBER = 1e12

VALID_SCALES = (1, 2, 4, 8)


@dataclass
class AffineResult:
    """Result of an affine registration."""
    parameters: NDArray[np.float64]
    matrix: NDArray[np.float64]
    aligned: NDArray[np.float32]
    history: List[NDArray[np.float64]] = field(default_factory=list)


def solve_affine_system(
    phase_differences: torch.Tensor,
    certainties: torch.Tensor,
    frequencies: torch.Tensor,
    mask: torch.Tensor,
    filter_set: FilterSet,
    dtype: torch.dtype = torch.float64,
) -> NDArray[np.float64]:
    """
    Assemble and solve the affine least-squares system.

    Parameters
    ----------
    phase_differences, certainties, frequencies : torch.Tensor
        Per-filter fields of shape (K, X, Y, Z).
    mask : torch.Tensor
        Voxel mask of shape (X, Y, Z).
    filter_set : FilterSet
        Provides directions and constraint matrices.
    dtype : torch.dtype
        Accumulation dtype. Default float64.

    Returns
    -------
    ndarray
        12-parameter increment.

    Raises
    ------
    NumericError
        If the system is not finite or its condition number exceeds
        MAX_CONDITION_NUMBER.
    """
    device = phase_differences.device
    shape = tuple(phase_differences.shape[1:])
    xx, yy, zz = centered_coordinates(shape, device, dtype)
    beta = torch.stack([torch.ones_like(xx), xx, yy, zz]).reshape(4, -1)

    A = torch.zeros(12, 12, dtype=dtype, device=device)
    h = torch.zeros(12, dtype=dtype, device=device)

    for k in range(filter_set.num_filters):
        weight = (certainties[k] * mask).to(dtype)
        f = frequencies[k].to(dtype)
        w_ff = (weight * f * f).reshape(-1)
        w_fd = (weight * f * phase_differences[k].to(dtype)).reshape(-1)

        S = (beta * w_ff) @ beta.T
        b = beta @ w_fd

        C = torch.tensor(np.array(filter_set.constraints[k]), dtype=dtype, device=device)
        n = torch.tensor(np.array(filter_set.directions[k]), dtype=dtype, device=device)
        A = A + torch.kron(S, C)
        h = h + torch.kron(b, n)

    A_np = A.cpu().numpy().astype(np.float64)
    h_np = h.cpu().numpy().astype(np.float64)

    if not (np.all(np.isfinite(A_np)) and np.all(np.isfinite(h_np))):
        raise NumericError(
            "Affine least-squares system contains non-finite values", stage="affine",
        )
    if not np.any(A_np):
        raise NumericError("No voxel carries usable phase information", stage="affine")
    condition = np.linalg.cond(A_np)
    if not np.isfinite(condition) or condition > MAX_CONDITION_NUMBER:
        raise NumericError(
            f"Affine least-squares system is singular or ill-conditioned "
            f"(condition number {condition:.3g})",
            stage="affine",
        )

    theta = np.linalg.solve(A_np, h_np)
    Theta = theta.reshape(4, 3).T  # (3, 4): column 0 translation

    update = np.zeros(12, dtype=np.float64)
    update[0:3] = Theta[:, 0]
    update[3:12] = Theta[:, 1:4].ravel()
    if not np.all(np.isfinite(update)):
        raise NumericError("Affine parameter update is not finite", stage="affine")
    return update


class AffineSolver:
    """
    Affine registration on a single resolution level.

    The reference responses are computed once; every ``step`` warps the
    source with the current estimate, filters it and composes the
    estimated increment into ``matrix``.
    """

    def __init__(
        self,
        source: Volume,
        reference: Volume,
        filter_set: FilterSet,
        backend: Backend,
        matrix: Optional[NDArray[np.floating]] = None,
    ):
        if source.shape != reference.shape:
            raise ShapeError(
                f"Source {source.shape} and reference {reference.shape} must share a grid"
            )
        self.filter_set = filter_set
        self.backend = backend
        self.bank = FilterBank(filter_set, backend.device)
        self.source = volume_tensor(source.data, backend)
        self.reference_responses = self.bank(volume_tensor(reference.data, backend))
        self.mask = interior_mask(source.shape, filter_set.half_size, backend.device)
        self.matrix = np.eye(4) if matrix is None else np.array(matrix, dtype=np.float64)
        self.iteration = 0

    @property
    def parameters(self) -> NDArray[np.float64]:
        return matrix_to_parameters(self.matrix)

    def step(self) -> NDArray[np.float64]:
        """Run one iteration and return the updated parameter vector."""
        warped = warp_affine(self.source, self.matrix)
        q_src = self.bank(warped)

        phase_differences, certainties = phase_differences_and_certainties(
            self.reference_responses, q_src,
        )
        frequencies = directional_frequencies(
            self.reference_responses, q_src, self.filter_set.directions,
        )
        update = solve_affine_system(
            phase_differences, certainties, frequencies, self.mask,
            self.filter_set, self.backend.reduction_dtype,
        )

        self.matrix = self.matrix @ parameters_to_matrix(update)
        self.iteration += 1
        return self.parameters

    def aligned(self) -> NDArray[np.float32]:
        """The source warped with the current estimate."""
        warped = warp_affine(self.source, self.matrix)
        return self.backend.numpy(warped[0, 0])


class AffineRegistration:
    """
    Multi-resolution affine registration, advanced one iteration per step.

    Levels run from ``coarsest_scale`` down to 1, each for ``iterations``
    iterations. ``matrix`` is always expressed in voxels of the full
    resolution grid.

    Parameters
    ----------
    source : Volume
        Source volume, already on the reference grid.
    reference : Volume
        Reference volume.
    filter_set : FilterSet
        Linear-registration filters.
    backend : Backend
        Opened compute backend.
    iterations : int
        Iterations per level. Default 10.
    coarsest_scale : int
        1, 2, 4 or 8. Default 1 (full resolution only).
    verbose : bool
        Print progress information. Default False.
    """

    def __init__(
        self,
        source: Volume,
        reference: Volume,
        filter_set: FilterSet,
        backend: Backend,
        iterations: int = 10,
        coarsest_scale: int = 1,
        verbose: bool = False,
    ):
        if coarsest_scale not in VALID_SCALES:
            raise ConfigurationError(
                f"coarsest_scale must be one of {VALID_SCALES}, got {coarsest_scale}"
            )
        self.source = source
        self.reference = reference
        self.filter_set = filter_set
        self.backend = backend
        self.iterations = iterations
        self.verbose = verbose

        self.scales = [s for s in VALID_SCALES[::-1] if s <= coarsest_scale]
        coarse_shape = tuple(max(1, int(round(n / coarsest_scale))) for n in reference.shape)
        if min(coarse_shape) <= 2 * filter_set.half_size:
            raise ShapeError(
                f"Volume {reference.shape} at scale {coarsest_scale} is {coarse_shape}, "
                f"too small for {filter_set.size}^3 filters"
            )

        self.matrix = np.eye(4)
        self.history: List[NDArray[np.float64]] = []
        self.level = 0
        self._solver: Optional[AffineSolver] = None

    @property
    def done(self) -> bool:
        return self.level >= len(self.scales)

    @property
    def total_iterations(self) -> int:
        return self.iterations * len(self.scales)

    @property
    def parameters(self) -> NDArray[np.float64]:
        return matrix_to_parameters(self.matrix)

    def _start_level(self) -> AffineSolver:
        scale = self.scales[self.level]
        if self.verbose:
            print(f"    Affine level {self.level + 1}/{len(self.scales)} (scale={scale}x)")
        source = downsample_volume(self.source, scale, self.backend)
        reference = downsample_volume(self.reference, scale, self.backend)
        return AffineSolver(
            source, reference, self.filter_set, self.backend,
            matrix=scale_translation(self.matrix, 1.0 / scale),
        )

    def step(self) -> NDArray[np.float64]:
        """Run one iteration (starting the next level when needed)."""
        if self.done:
            raise RuntimeError("Affine registration already finished")
        if self._solver is None:
            self._solver = self._start_level()

        scale = self.scales[self.level]
        self._solver.step()
        self.matrix = scale_translation(self._solver.matrix, float(scale))
        self.history.append(self.parameters)

        if self.verbose:
            t = self.matrix[:3, 3]
            print(f"      Iter {self._solver.iteration}: "
                  f"t=({t[0]:.3f}, {t[1]:.3f}, {t[2]:.3f}) vox")

        if self._solver.iteration >= self.iterations:
            self.level += 1
            self._solver = None
        return self.parameters

    def aligned(self) -> NDArray[np.float32]:
        """Full-resolution source warped with the current estimate."""
        source = volume_tensor(self.source.data, self.backend)
        return self.backend.numpy(warp_affine(source, self.matrix)[0, 0])

    def result(self) -> AffineResult:
        return AffineResult(
            parameters=self.parameters,
            matrix=self.matrix.copy(),
            aligned=self.aligned(),
            history=list(self.history),
        )


def register_affine(
    source: Volume,
    reference: Volume,
    filter_set: FilterSet,
    backend: Backend,
    iterations: int = 10,
    coarsest_scale: int = 1,
    verbose: bool = False,
) -> AffineResult:
    """
    Run a complete phase-based affine registration.

    Parameters
    ----------
    source : Volume
        Source volume on the reference grid.
    reference : Volume
        Reference volume.
    filter_set : FilterSet
        Linear-registration filters.
    backend : Backend
        Opened compute backend.
    iterations : int
        Iterations per resolution level. Default 10.
    coarsest_scale : int
        Coarsest pyramid scale (1, 2, 4 or 8). Default 1.
    verbose : bool
        Print progress information. Default False.

    Returns
    -------
    AffineResult
        Parameters, 4x4 matrix (voxel units), affine-warped source and the
        per-iteration parameter history.

    Examples
    --------
    >>> with open_backend() as backend:
    ...     result = register_affine(source, reference, default_linear_filters(), backend)
    >>> result.matrix[:3, 3]  # translation in voxels
    """
    registration = AffineRegistration(
        source, reference, filter_set, backend,
        iterations=iterations, coarsest_scale=coarsest_scale, verbose=verbose,
    )
    while not registration.done:
        registration.step()
    return registration.result()
