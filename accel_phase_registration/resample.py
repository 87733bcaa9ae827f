# -*- coding: utf-8 -*-
"""
Resampling and intensity normalization of input volumes.

Brings the source volume onto the reference grid before registration:
an optional z-crop (to drop known non-brain slices), trilinear resampling
onto the reference shape and voxel size with the two grids aligned on
their centres, and an intensity rescale onto the reference range.

Functions
---------
1. crop_z: Remove millimetres from the low-z end of a volume
2. resample_volume: Trilinear resampling onto a target grid
3. rescale_intensity: Map the source intensity range onto the reference
4. downsample_volume: Gaussian-smoothed downsampling for pyramid levels
5. prepare_source: crop -> resample -> rescale
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

import numpy as np
import torch
from numpy.typing import NDArray

from .backend import Backend
from .errors import ConfigurationError, ShapeError
from .volume import Volume
from .warp import centered_coordinates, sample_volume, smooth_field


def crop_z(volume: Volume, mm: float) -> Volume:
    """
    Remove ``mm`` millimetres from the low-z end of a volume.

    The number of removed slices is round(mm / voxel_size_z).

    Raises
    ------
    ConfigurationError
        If mm is negative or not finite.
    ShapeError
        If the crop removes the entire volume.
    """
    if not np.isfinite(mm) or mm < 0:
        raise ConfigurationError(f"z_crop_mm must be >= 0, got {mm}")
    if mm == 0:
        return volume

    n_slices = int(round(mm / volume.voxel_size[2]))
    nz = volume.shape[2]
    if n_slices >= nz:
        raise ShapeError(
            f"z crop of {mm} mm ({n_slices} slices) removes the entire volume "
            f"({nz} slices, {volume.extent_mm[2]:.1f} mm)"
        )
    return volume.with_data(volume.data[:, :, n_slices:])


def _validate_grid(
    shape: Sequence[int],
    voxel_size: Sequence[float],
) -> Tuple[Tuple[int, int, int], Tuple[float, float, float]]:
    shape = tuple(int(s) for s in shape)
    voxel_size = tuple(float(v) for v in voxel_size)
    if len(shape) != 3 or min(shape) < 1:
        raise ShapeError(f"Target grid must have 3 dimensions >= 1, got {shape}")
    if len(voxel_size) != 3 or min(voxel_size) <= 0:
        raise ShapeError(f"Target voxel size must be positive, got {voxel_size}")
    return shape, voxel_size


def resample_volume(
    volume: Volume,
    shape: Sequence[int],
    voxel_size: Sequence[float],
    backend: Optional[Backend] = None,
) -> Volume:
    """
    Resample a volume onto a target grid by trilinear interpolation.

    The source and target grids share their centre in physical space.
    Target voxels falling outside the source field of view are set to 0.
    Resampling onto the volume's own grid returns an exact copy.

    Parameters
    ----------
    volume : Volume
        Volume to resample.
    shape : sequence of int
        Target grid shape (X, Y, Z).
    voxel_size : sequence of float
        Target voxel size (x, y, z) in mm.
    backend : Backend, optional
        Compute backend. If None, runs on the CPU.

    Returns
    -------
    Volume
        Resampled volume with the target shape and voxel size.
    """
    shape, voxel_size = _validate_grid(shape, voxel_size)

    if shape == volume.shape and np.allclose(voxel_size, volume.voxel_size):
        return Volume(volume.data, voxel_size)

    device = backend.device if backend is not None else torch.device('cpu')
    vol_t = torch.from_numpy(np.array(volume.data)).to(device)
    vol_t = vol_t.unsqueeze(0).unsqueeze(0)

    # Target voxel centres in physical mm, then in centred source voxels
    xx, yy, zz = centered_coordinates(shape, device)
    cx = xx * (voxel_size[0] / volume.voxel_size[0])
    cy = yy * (voxel_size[1] / volume.voxel_size[1])
    cz = zz * (voxel_size[2] / volume.voxel_size[2])

    resampled = sample_volume(vol_t, cx, cy, cz, padding_mode='zeros')
    return Volume(resampled.squeeze(0).squeeze(0).cpu().numpy(), voxel_size)


def rescale_intensity(
    volume: Volume,
    reference: Volume,
    eps: float = 1e-8,
) -> Volume:
    """
    Linearly map the volume's intensity range onto the reference range.

    Parameters
    ----------
    volume : Volume
        Volume to rescale.
    reference : Volume
        Volume providing the target [min, max] range.
    eps : float
        Small value to prevent division by zero.

    Returns
    -------
    Volume
        Rescaled volume, float32. A constant volume maps to the
        reference minimum.
    """
    data = volume.data.astype(np.float64)
    src_min, src_max = float(data.min()), float(data.max())
    ref_min, ref_max = float(reference.data.min()), float(reference.data.max())

    if src_max - src_min <= eps:
        return volume.with_data(np.full(volume.shape, ref_min, dtype=np.float32))

    normalized = (data - src_min) / (src_max - src_min)
    return volume.with_data((normalized * (ref_max - ref_min) + ref_min).astype(np.float32))


def downsample_volume(
    volume: Volume,
    factor: int,
    backend: Optional[Backend] = None,
) -> Volume:
    """
    Downsample a volume by an integer factor for a pyramid level.

    Applies Gaussian smoothing (sigma = factor / 2 voxels) to avoid
    aliasing, then resamples onto a grid with voxel size multiplied by the
    factor, centred on the same physical point.
    """
    if factor == 1:
        return volume

    device = backend.device if backend is not None else torch.device('cpu')
    vol_t = torch.from_numpy(np.array(volume.data)).to(device).unsqueeze(0)
    smoothed = smooth_field(vol_t, factor / 2.0).squeeze(0).cpu().numpy()

    shape = tuple(max(1, int(round(n / factor))) for n in volume.shape)
    voxel_size = tuple(v * factor for v in volume.voxel_size)
    return resample_volume(volume.with_data(smoothed), shape, voxel_size, backend)


def prepare_source(
    source: Volume,
    reference: Volume,
    z_crop_mm: float = 0.0,
    backend: Optional[Backend] = None,
) -> Volume:
    """
    Crop, resample and rescale the source onto the reference grid.

    Returns
    -------
    Volume
        Source volume with the reference shape, voxel size and intensity
        range. Deterministic for identical inputs.
    """
    cropped = crop_z(source, z_crop_mm)
    resampled = resample_volume(cropped, reference.shape, reference.voxel_size, backend)
    return rescale_intensity(resampled, reference)


def volume_tensor(
    data: NDArray[np.floating],
    backend: Backend,
) -> torch.Tensor:
    """Copy an (X, Y, Z) array to the backend as a (1, 1, X, Y, Z) tensor."""
    return backend.tensor(data).unsqueeze(0).unsqueeze(0)
