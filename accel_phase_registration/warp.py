# -*- coding: utf-8 -*-
"""
Warping, affine parameter algebra and field smoothing.

Coordinates are voxel coordinates centred on the volume centre,
c = i - (n - 1) / 2 along each axis. Volumes are tensors of shape
(1, 1, X, Y, Z) and displacement fields tensors of shape (3, X, Y, Z)
holding (dx, dy, dz) in voxels. A warped volume samples its source at
the transformed position of every output voxel:

    affine:         w(x) = s(A x + t)
    displacement:   w(x) = s(A (x + d(x)) + t)

Affine parameter vector (12 values)
-----------------------------------
    p = [tx, ty, tz, a11, a12, a13, a21, a22, a23, a31, a32, a33]

The 4x4 homogeneous matrix holds identity + (a_ij) in the upper-left
3x3 block and (tx, ty, tz) in the fourth column.

Functions
---------
1. parameters_to_matrix / matrix_to_parameters: Convert representations
2. matrix_to_mm: Express a voxel-space affine in millimetres
3. warp_affine / warp_displacement: Trilinear warping on the backend
4. smooth_field: Separable Gaussian smoothing of a multi-channel field
5. apply_affine / apply_displacement: Numpy convenience wrappers
"""

from __future__ import annotations

import math
from typing import Optional, Sequence, Tuple

import numpy as np
import torch
import torch.nn.functional as F
from numpy.typing import NDArray

from .backend import get_default_device


# =============================================================================
# Affine Parameter Algebra
# =============================================================================

def parameters_to_matrix(parameters: Sequence[float]) -> NDArray[np.float64]:
    """
    Convert a 12-parameter affine vector to a 4x4 homogeneous matrix.

    Parameters
    ----------
    parameters : sequence of float
        [tx, ty, tz, a11, a12, a13, a21, a22, a23, a31, a32, a33].

    Returns
    -------
    matrix : ndarray
        4x4 matrix, upper-left block identity + perturbation, translation
        in the fourth column.
    """
    p = np.asarray(parameters, dtype=np.float64).ravel()
    if p.size != 12:
        raise ValueError(f"Expected 12 affine parameters, got {p.size}")
    matrix = np.eye(4, dtype=np.float64)
    matrix[:3, 3] = p[0:3]
    matrix[:3, :3] += p[3:12].reshape(3, 3)
    return matrix


def matrix_to_parameters(matrix: NDArray[np.floating]) -> NDArray[np.float64]:
    """Inverse of ``parameters_to_matrix``."""
    m = np.asarray(matrix, dtype=np.float64)
    if m.shape != (4, 4):
        raise ValueError(f"Expected a 4x4 matrix, got shape {m.shape}")
    p = np.zeros(12, dtype=np.float64)
    p[0:3] = m[:3, 3]
    p[3:12] = (m[:3, :3] - np.eye(3)).ravel()
    return p


def scale_translation(
    matrix: NDArray[np.floating],
    factor: float,
) -> NDArray[np.float64]:
    """
    Carry an affine between pyramid levels.

    With grids aligned on their centres only the translation changes when
    the voxel size changes by ``factor``; the linear block is unitless.
    """
    m = np.array(matrix, dtype=np.float64, copy=True)
    m[:3, 3] *= factor
    return m


def matrix_to_mm(
    matrix: NDArray[np.floating],
    voxel_size: Sequence[float],
) -> NDArray[np.float64]:
    """
    Express a voxel-space affine in millimetres.

    With S = diag(voxel_size), the millimetre matrix is S M S^-1: the
    translation becomes S t and the linear block is rescaled per axis.
    """
    s = np.diag(list(np.asarray(voxel_size, dtype=np.float64)) + [1.0])
    s_inv = np.diag(1.0 / np.diag(s))
    return s @ np.asarray(matrix, dtype=np.float64) @ s_inv


# =============================================================================
# Sampling
# =============================================================================

def centered_coordinates(
    shape: Tuple[int, int, int],
    device: torch.device,
    dtype: torch.dtype = torch.float32,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Centred voxel coordinate grids (x, y, z), each of shape (X, Y, Z)."""
    axes = [
        torch.arange(n, device=device, dtype=dtype) - (n - 1) / 2.0
        for n in shape
    ]
    xx, yy, zz = torch.meshgrid(*axes, indexing='ij')
    return xx, yy, zz


def _normalize(coord: torch.Tensor, n: int) -> torch.Tensor:
    # align_corners=True maps index 0 -> -1 and n-1 -> +1
    if n == 1:
        return torch.zeros_like(coord)
    return coord * (2.0 / (n - 1))


def sample_volume(
    volume: torch.Tensor,
    cx: torch.Tensor,
    cy: torch.Tensor,
    cz: torch.Tensor,
    padding_mode: str = 'border',
) -> torch.Tensor:
    """
    Trilinearly sample a volume at centred voxel coordinates.

    Parameters
    ----------
    volume : torch.Tensor
        Source volume of shape (1, C, X, Y, Z).
    cx, cy, cz : torch.Tensor
        Centred source coordinates, each of shape (X', Y', Z').
    padding_mode : str
        'border' (clamp-to-edge) or 'zeros'.

    Returns
    -------
    torch.Tensor
        Sampled volume of shape (1, C, X', Y', Z').
    """
    X, Y, Z = volume.shape[2:]
    # grid_sample reads the last grid axis as (W, H, D) = (z, y, x)
    grid = torch.stack([
        _normalize(cz, Z),
        _normalize(cy, Y),
        _normalize(cx, X),
    ], dim=-1).unsqueeze(0)
    return F.grid_sample(
        volume, grid.to(volume.dtype), mode='bilinear',
        padding_mode=padding_mode, align_corners=True,
    )


def _affine_tensor(matrix: NDArray[np.floating], device: torch.device) -> torch.Tensor:
    return torch.as_tensor(np.asarray(matrix, dtype=np.float32), device=device)


def warp_affine(
    volume: torch.Tensor,
    matrix: NDArray[np.floating],
    padding_mode: str = 'border',
) -> torch.Tensor:
    """
    Warp a (1, 1, X, Y, Z) volume with a 4x4 voxel-space affine.

    The output lives on the input grid: w(x) = s(A x + t).
    """
    m = _affine_tensor(matrix, volume.device)
    xx, yy, zz = centered_coordinates(tuple(volume.shape[2:]), volume.device)
    cx = m[0, 0] * xx + m[0, 1] * yy + m[0, 2] * zz + m[0, 3]
    cy = m[1, 0] * xx + m[1, 1] * yy + m[1, 2] * zz + m[1, 3]
    cz = m[2, 0] * xx + m[2, 1] * yy + m[2, 2] * zz + m[2, 3]
    return sample_volume(volume, cx, cy, cz, padding_mode)


def warp_displacement(
    volume: torch.Tensor,
    displacement: torch.Tensor,
    matrix: Optional[NDArray[np.floating]] = None,
    padding_mode: str = 'border',
) -> torch.Tensor:
    """
    Warp a (1, 1, X, Y, Z) volume with a displacement field on top of an
    optional affine: w(x) = s(A (x + d(x)) + t).

    Composing both in one sampling step interpolates the source once.
    """
    xx, yy, zz = centered_coordinates(tuple(volume.shape[2:]), volume.device)
    px = xx + displacement[0]
    py = yy + displacement[1]
    pz = zz + displacement[2]
    if matrix is None:
        return sample_volume(volume, px, py, pz, padding_mode)
    m = _affine_tensor(matrix, volume.device)
    cx = m[0, 0] * px + m[0, 1] * py + m[0, 2] * pz + m[0, 3]
    cy = m[1, 0] * px + m[1, 1] * py + m[1, 2] * pz + m[1, 3]
    cz = m[2, 0] * px + m[2, 1] * py + m[2, 2] * pz + m[2, 3]
    return sample_volume(volume, cx, cy, cz, padding_mode)


# =============================================================================
# Gaussian Smoothing
# =============================================================================

def gaussian_kernel_1d(
    sigma: float,
    device: torch.device,
    dtype: torch.dtype = torch.float32,
    truncate: float = 3.0,
) -> torch.Tensor:
    """Normalised 1D Gaussian kernel with radius ceil(truncate * sigma)."""
    radius = max(1, int(math.ceil(truncate * sigma)))
    x = torch.arange(-radius, radius + 1, device=device, dtype=torch.float64)
    kernel = torch.exp(-0.5 * (x / sigma) ** 2)
    kernel = kernel / kernel.sum()
    return kernel.to(dtype)


def _replicate_pad(field: torch.Tensor, radius: int, dim: int) -> torch.Tensor:
    # Index clamping works for any radius, including radius >= axis length
    n = field.shape[dim]
    index = torch.arange(-radius, n + radius, device=field.device).clamp(0, n - 1)
    return field.index_select(dim, index)


def smooth_field(field: torch.Tensor, sigma: float) -> torch.Tensor:
    """
    Separable 3D Gaussian smoothing of every channel of a field.

    Parameters
    ----------
    field : torch.Tensor
        Field of shape (C, X, Y, Z).
    sigma : float
        Standard deviation in voxels. sigma <= 0 returns the field unchanged.

    Returns
    -------
    torch.Tensor
        Smoothed field of the same shape. Boundaries are extended by
        replicating edge values.
    """
    if sigma <= 0:
        return field
    C = field.shape[0]
    kernel = gaussian_kernel_1d(sigma, field.device, field.dtype)
    radius = (kernel.numel() - 1) // 2
    out = field.unsqueeze(0)  # (1, C, X, Y, Z)

    for axis in range(3):
        shape = [1, 1, 1]
        shape[axis] = kernel.numel()
        weight = kernel.reshape(1, 1, *shape).repeat(C, 1, 1, 1, 1)
        out = F.conv3d(_replicate_pad(out, radius, axis + 2), weight, groups=C)

    return out.squeeze(0)


# =============================================================================
# Numpy Wrappers
# =============================================================================

def apply_affine(
    volume: NDArray[np.floating],
    matrix: NDArray[np.floating],
    padding_mode: str = 'border',
    device: Optional[torch.device] = None,
) -> NDArray[np.float32]:
    """
    Apply a voxel-space affine (as returned in a RegistrationResult) to a
    volume on the same grid.

    Parameters
    ----------
    volume : ndarray
        Volume of shape (X, Y, Z).
    matrix : ndarray
        4x4 homogeneous matrix in voxel units.
    padding_mode : str
        'border' (default) or 'zeros'.
    device : torch.device, optional
        PyTorch device. If None, auto-detect.

    Returns
    -------
    warped : ndarray
        Warped volume of shape (X, Y, Z), float32.
    """
    device = get_default_device(device)
    vol_t = torch.from_numpy(np.array(volume, dtype=np.float32))
    vol_t = vol_t.unsqueeze(0).unsqueeze(0).to(device)
    warped = warp_affine(vol_t, matrix, padding_mode)
    return warped.squeeze(0).squeeze(0).cpu().numpy()


def apply_displacement(
    volume: NDArray[np.floating],
    displacement: Sequence[NDArray[np.floating]],
    matrix: Optional[NDArray[np.floating]] = None,
    padding_mode: str = 'border',
    device: Optional[torch.device] = None,
) -> NDArray[np.float32]:
    """
    Apply a displacement field (optionally on top of an affine) to a volume.

    Preserves quantitative values including negative numbers; no
    normalization is applied to the input data.

    Parameters
    ----------
    volume : ndarray
        Volume of shape (X, Y, Z).
    displacement : sequence of ndarray or ndarray
        (dx, dy, dz) in voxels, each of shape (X, Y, Z), or one array of
        shape (3, X, Y, Z).
    matrix : ndarray, optional
        4x4 voxel-space affine applied after the displacement.
    padding_mode : str
        'border' (default) or 'zeros'.
    device : torch.device, optional
        PyTorch device. If None, auto-detect.

    Returns
    -------
    warped : ndarray
        Warped volume of shape (X, Y, Z), float32.
    """
    device = get_default_device(device)
    disp = np.stack([np.asarray(d, dtype=np.float32) for d in displacement])
    if disp.shape[1:] != volume.shape:
        raise ValueError(
            f"Displacement shape {disp.shape[1:]} does not match volume {volume.shape}"
        )
    vol_t = torch.from_numpy(np.array(volume, dtype=np.float32))
    vol_t = vol_t.unsqueeze(0).unsqueeze(0).to(device)
    disp_t = torch.from_numpy(disp).to(device)
    warped = warp_displacement(vol_t, disp_t, matrix, padding_mode)
    return warped.squeeze(0).squeeze(0).cpu().numpy()
