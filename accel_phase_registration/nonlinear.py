# -*- coding: utf-8 -*-
"""
Phase-based non-linear (deformable) registration.

Estimates a dense displacement field d(x) on top of an affine transform.
Every iteration warps the source through A (x + d(x)) + t, filters it with
the non-linear filter set, and solves a small direction-weighted
least-squares problem at every voxel:

    A(x) = sum_k c_k f_k^2 C_k          (3 x 3)
    h(x) = sum_k c_k f_k dphi_k n_k     (3)

A and h are smoothed with a small Gaussian (``tensor_sigma``) before the
solve, so voxels without structure borrow the estimate of their
neighbours (normalized averaging). The increment (A + eps I)^-1 h is added
to the accumulated field, which is then smoothed with ``sigma``; this
smoothing is the only regularizer of the deformation.

Functions
---------
1. NonlinearSolver: Iteration state, one iteration per step()
2. register_nonlinear: Run a complete non-linear registration
3. solve_displacement_update: Per-voxel 3x3 solve
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np
import torch
from numpy.typing import NDArray

from .backend import Backend
from .errors import NumericError, ShapeError
from .filters import FilterBank, FilterSet
from .phase import (
    directional_frequencies,
    interior_mask,
    phase_differences_and_certainties,
)
from .resample import volume_tensor
from .volume import Volume
from .warp import smooth_field, warp_displacement


# Tikhonov term relative to the mean trace of the smoothed system
REGULARIZATION = 1e-3

# Upper-triangle entries of a symmetric 3x3 matrix
_TRIU: Tuple[Tuple[int, int], ...] = ((0, 0), (0, 1), (0, 2), (1, 1), (1, 2), (2, 2))


@dataclass
class NonlinearResult:
    """Result of a non-linear registration."""
    displacement: NDArray[np.float32]  # (3, X, Y, Z) in voxels
    aligned: NDArray[np.float32]
    history: List[float] = field(default_factory=list)  # max |update| per iteration


def solve_displacement_update(
    system: torch.Tensor,
    rhs: torch.Tensor,
    regularization: float = REGULARIZATION,
) -> torch.Tensor:
    """
    Solve (A + eps I) d = h at every voxel by cofactor expansion.

    Parameters
    ----------
    system : torch.Tensor
        Upper triangle of A, shape (6, X, Y, Z), order a00 a01 a02 a11 a12 a22.
    rhs : torch.Tensor
        h, shape (3, X, Y, Z).
    regularization : float
        eps relative to the mean trace of A.

    Returns
    -------
    torch.Tensor
        Displacement update of shape (3, X, Y, Z).
    """
    a00, a01, a02, a11, a12, a22 = system
    trace = a00 + a11 + a22
    eps = regularization * trace.mean().clamp(min=0.0) + 1e-12
    a00 = a00 + eps
    a11 = a11 + eps
    a22 = a22 + eps

    c00 = a11 * a22 - a12 * a12
    c01 = a02 * a12 - a01 * a22
    c02 = a01 * a12 - a02 * a11
    c11 = a00 * a22 - a02 * a02
    c12 = a01 * a02 - a00 * a12
    c22 = a00 * a11 - a01 * a01
    det = a00 * c00 + a01 * c01 + a02 * c02

    # Smoothed systems are positive semi-definite; eps keeps det > 0
    det = torch.where(det.abs() > 1e-30, det, torch.full_like(det, 1e-30))
    h0, h1, h2 = rhs
    dx = (c00 * h0 + c01 * h1 + c02 * h2) / det
    dy = (c01 * h0 + c11 * h1 + c12 * h2) / det
    dz = (c02 * h0 + c12 * h1 + c22 * h2) / det
    return torch.stack([dx, dy, dz])


class NonlinearSolver:
    """
    Non-linear registration state.

    Parameters
    ----------
    source : Volume
        Source volume on the reference grid (before the affine).
    reference : Volume
        Reference volume.
    filter_set : FilterSet
        Non-linear registration filters.
    backend : Backend
        Opened compute backend.
    matrix : ndarray, optional
        4x4 voxel-space affine used as the base transform. Default identity.
    sigma : float
        Gaussian smoothing of the accumulated field, in voxels. Default 5.
    tensor_sigma : float
        Gaussian smoothing of the per-voxel systems, in voxels. Default 1.5.
    """

    def __init__(
        self,
        source: Volume,
        reference: Volume,
        filter_set: FilterSet,
        backend: Backend,
        matrix: Optional[NDArray[np.floating]] = None,
        sigma: float = 5.0,
        tensor_sigma: float = 1.5,
    ):
        if source.shape != reference.shape:
            raise ShapeError(
                f"Source {source.shape} and reference {reference.shape} must share a grid"
            )
        self.filter_set = filter_set
        self.backend = backend
        self.sigma = sigma
        self.tensor_sigma = tensor_sigma
        self.matrix = None if matrix is None else np.array(matrix, dtype=np.float64)

        self.bank = FilterBank(filter_set, backend.device)
        self.source = volume_tensor(source.data, backend)
        self.reference_responses = self.bank(volume_tensor(reference.data, backend))
        self.mask = interior_mask(source.shape, filter_set.half_size, backend.device)
        self.displacement = torch.zeros((3,) + source.shape, device=backend.device)

        dtype = backend.reduction_dtype
        self._directions = torch.tensor(
            np.array(filter_set.directions), dtype=dtype, device=backend.device,
        )
        self._constraints = torch.tensor(
            np.array([[C[i, j] for i, j in _TRIU] for C in filter_set.constraints]),
            dtype=dtype, device=backend.device,
        )
        self.iteration = 0

    def warped(self) -> torch.Tensor:
        return warp_displacement(self.source, self.displacement, self.matrix)

    def step(self) -> float:
        """
        Run one iteration.

        Returns
        -------
        float
            Maximum magnitude of the displacement increment, in voxels.
        """
        dtype = self.backend.reduction_dtype
        q_src = self.bank(self.warped())

        phase_differences, certainties = phase_differences_and_certainties(
            self.reference_responses, q_src,
        )
        frequencies = directional_frequencies(
            self.reference_responses, q_src, self.filter_set.directions,
        )

        weight = (certainties * self.mask).to(dtype)
        f = frequencies.to(dtype)
        w_ff = weight * f * f
        w_fd = weight * f * phase_differences.to(dtype)

        system = torch.einsum('kxyz,kc->cxyz', w_ff, self._constraints)
        rhs = torch.einsum('kxyz,ki->ixyz', w_fd, self._directions)
        smoothed = smooth_field(torch.cat([system, rhs]), self.tensor_sigma)

        update = solve_displacement_update(smoothed[:6], smoothed[6:])
        if not bool(torch.isfinite(update).all()):
            raise NumericError(
                f"Non-finite displacement update at iteration {self.iteration + 1}",
                stage="nonlinear",
            )
        update = update.to(self.displacement.dtype)

        self.displacement = smooth_field(self.displacement + update, self.sigma)
        self.iteration += 1
        return float(update.norm(dim=0).max().item())

    def aligned(self) -> NDArray[np.float32]:
        """The source warped with the affine and the current field."""
        return self.backend.numpy(self.warped()[0, 0])

    def displacement_numpy(self) -> NDArray[np.float32]:
        return self.backend.numpy(self.displacement)


def register_nonlinear(
    source: Volume,
    reference: Volume,
    filter_set: FilterSet,
    backend: Backend,
    matrix: Optional[NDArray[np.floating]] = None,
    iterations: int = 10,
    sigma: float = 5.0,
    tensor_sigma: float = 1.5,
    verbose: bool = False,
) -> NonlinearResult:
    """
    Run a complete phase-based non-linear registration.

    Parameters
    ----------
    source : Volume
        Source volume on the reference grid.
    reference : Volume
        Reference volume.
    filter_set : FilterSet
        Non-linear registration filters.
    backend : Backend
        Opened compute backend.
    matrix : ndarray, optional
        Affine base transform (4x4, voxel units). Default identity.
    iterations : int
        Number of iterations. Default 10.
    sigma : float
        Smoothing of the accumulated displacement field, in voxels. Default 5.
    tensor_sigma : float
        Smoothing of the per-voxel systems, in voxels. Default 1.5.
    verbose : bool
        Print progress information. Default False.

    Returns
    -------
    NonlinearResult
        Displacement field (3, X, Y, Z) in voxels, warped source and the
        per-iteration maximum update.
    """
    solver = NonlinearSolver(
        source, reference, filter_set, backend,
        matrix=matrix, sigma=sigma, tensor_sigma=tensor_sigma,
    )
    history = []
    for i in range(iterations):
        max_update = solver.step()
        history.append(max_update)
        if verbose:
            print(f"      Iter {i + 1}: max update={max_update:.3f} vox")

    return NonlinearResult(
        displacement=solver.displacement_numpy(),
        aligned=solver.aligned(),
        history=history,
    )
