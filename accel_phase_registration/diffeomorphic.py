# -*- coding: utf-8 -*-
"""
Deformation quality diagnostics.

The non-linear solver regularises its field only by Gaussian smoothing,
which does not guarantee an invertible transform. These helpers measure
how far a displacement field is from a diffeomorphism.

Theory
------
For a displacement field d(x), the Jacobian of x -> x + d(x) is:
    J = I + grad(d)

and its determinant indicates:
    - det(J) > 0: locally invertible (no folding)
    - det(J) = 0: singular (degenerate)
    - det(J) < 0: folding (topology violation)

Functions
---------
1. compute_jacobian_determinant: det(J) of a (3, X, Y, Z) field
2. detect_folds: Statistics and a warning when folds exist
3. get_jacobian_determinant_map: det(J) as a numpy array
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, asdict
from typing import Any, Dict, Tuple, Union

import numpy as np
import torch
import torch.nn.functional as F
from numpy.typing import NDArray


# =============================================================================
# Jacobian Determinant Computation
# =============================================================================

def _central_difference(u: torch.Tensor, dim: int, spacing: float) -> torch.Tensor:
    # u: (N, 1, X, Y, Z); dim in (2, 3, 4); replicate boundary
    pad = [0, 0, 0, 0, 0, 0]
    # F.pad lists the last dimension first
    slot = 2 * (4 - dim)
    pad[slot] = 1
    pad[slot + 1] = 1
    padded = F.pad(u, tuple(pad), mode='replicate')
    n = u.shape[dim]
    return (padded.narrow(dim, 2, n) - padded.narrow(dim, 0, n)) / (2.0 * spacing)


def compute_jacobian_determinant(
    displacement: torch.Tensor,
    voxel_spacing: Tuple[float, float, float] = (1.0, 1.0, 1.0),
) -> torch.Tensor:
    """
    Compute the Jacobian determinant of a 3D displacement field.

    Parameters
    ----------
    displacement : torch.Tensor
        Displacement field of shape (3, X, Y, Z) or (N, 3, X, Y, Z).
        Channels: 0=dx, 1=dy, 2=dz, in the same unit as ``voxel_spacing``.
    voxel_spacing : tuple of float
        Spacing (sx, sy, sz) of the grid. Default (1, 1, 1), i.e. a field
        in voxels.

    Returns
    -------
    det_J : torch.Tensor
        Jacobian determinant of shape (X, Y, Z) or (N, X, Y, Z).
    """
    squeeze_batch = False
    if displacement.dim() == 4:
        displacement = displacement.unsqueeze(0)
        squeeze_batch = True

    if displacement.dim() != 5 or displacement.shape[1] != 3:
        raise ValueError(
            f"Expected a (3, X, Y, Z) displacement field, got {tuple(displacement.shape)}"
        )

    # J[i][j] = delta_ij + d u_i / d x_j
    J = [[None] * 3 for _ in range(3)]
    for i in range(3):
        u = displacement[:, i:i + 1]
        for j in range(3):
            grad = _central_difference(u, 2 + j, voxel_spacing[j])
            J[i][j] = grad + 1.0 if i == j else grad

    det_J = (
        J[0][0] * (J[1][1] * J[2][2] - J[1][2] * J[2][1]) -
        J[0][1] * (J[1][0] * J[2][2] - J[1][2] * J[2][0]) +
        J[0][2] * (J[1][0] * J[2][1] - J[1][1] * J[2][0])
    )[:, 0]

    if squeeze_batch:
        det_J = det_J.squeeze(0)
    return det_J


# =============================================================================
# Fold Detection & Statistics
# =============================================================================

@dataclass
class JacobianStats:
    """Statistics about the Jacobian determinant of a displacement field."""
    min_det: float
    max_det: float
    mean_det: float
    std_det: float
    num_folds: int
    fold_fraction: float
    num_near_singular: int  # det < 0.1
    near_singular_fraction: float
    total_voxels: int
    has_folds: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _as_tensor(displacement: Union[torch.Tensor, NDArray]) -> torch.Tensor:
    if isinstance(displacement, np.ndarray):
        return torch.from_numpy(np.array(displacement, dtype=np.float32))
    return displacement.detach().float()


def detect_folds(
    displacement: Union[torch.Tensor, NDArray],
    voxel_spacing: Tuple[float, float, float] = (1.0, 1.0, 1.0),
    fold_threshold: float = 0.0,
    warn: bool = True,
) -> JacobianStats:
    """
    Detect folding (negative Jacobian determinant) in a displacement field.

    Parameters
    ----------
    displacement : torch.Tensor or ndarray
        Displacement field of shape (3, X, Y, Z).
    voxel_spacing : tuple of float
        Grid spacing in the unit of the field. Default (1, 1, 1).
    fold_threshold : float
        det(J) < threshold is considered folded. Default 0.0 (only true
        folds).
    warn : bool
        If True and folds are detected, emit a UserWarning. Default True.

    Returns
    -------
    stats : JacobianStats
        Statistics about the Jacobian determinant.
    """
    det_J = compute_jacobian_determinant(_as_tensor(displacement), voxel_spacing)
    det_np = det_J.cpu().numpy().ravel()

    total_voxels = det_np.size
    num_folds = int((det_np < fold_threshold).sum())
    num_near_singular = int((det_np < 0.1).sum())

    stats = JacobianStats(
        min_det=float(det_np.min()),
        max_det=float(det_np.max()),
        mean_det=float(det_np.mean()),
        std_det=float(det_np.std()),
        num_folds=num_folds,
        fold_fraction=num_folds / total_voxels,
        num_near_singular=num_near_singular,
        near_singular_fraction=num_near_singular / total_voxels,
        total_voxels=total_voxels,
        has_folds=num_folds > 0,
    )

    if warn and stats.has_folds:
        warnings.warn(
            f"Detected {num_folds} voxels ({stats.fold_fraction*100:.2f}%) with "
            f"det(J) < {fold_threshold}. Min det(J) = {stats.min_det:.4f}. "
            f"The displacement field contains folding; consider a larger "
            f"smoothing_sigma.",
            UserWarning,
        )

    return stats


def get_jacobian_determinant_map(
    displacement: Union[torch.Tensor, NDArray],
    voxel_spacing: Tuple[float, float, float] = (1.0, 1.0, 1.0),
) -> NDArray[np.float32]:
    """Jacobian determinant of a (3, X, Y, Z) field as an (X, Y, Z) array."""
    det_J = compute_jacobian_determinant(_as_tensor(displacement), voxel_spacing)
    return det_J.cpu().numpy()
