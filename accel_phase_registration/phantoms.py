# -*- coding: utf-8 -*-
"""
Phantom generators for testing registration algorithms.

All volumes are indexed [x, y, z] and displacement fields have shape
(3, X, Y, Z) in voxels, with the same sampling convention as the solvers:
a volume deformed by d satisfies deformed(x) = volume(x + d(x)).

Functions
---------
- shepp_logan_3d: Generate 3D Shepp-Logan phantom
- textured_phantom: Band-limited random texture that fades out at the border
- shift_volume: Translate a volume by whole voxels
- apply_random_deformation: Apply a random smooth deformation to a volume
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
from scipy import ndimage
from scipy.signal import windows


def _ellipsoid_3d(
    shape: Tuple[int, int, int],
    center: Tuple[float, float, float],
    axes: Tuple[float, float, float],
    intensity: float,
) -> NDArray[np.float32]:
    """
    Generate an axis-aligned ellipsoid.

    Parameters
    ----------
    shape : tuple
        Volume shape (X, Y, Z).
    center : tuple
        Ellipsoid center (cx, cy, cz) as fractions of volume size [0, 1].
    axes : tuple
        Semi-axes (ax, ay, az) as fractions of volume size.
    intensity : float
        Intensity value of the ellipsoid.
    """
    X, Y, Z = shape
    cx, cy, cz = center[0] * X, center[1] * Y, center[2] * Z
    ax, ay, az = max(axes[0] * X, 0.5), max(axes[1] * Y, 0.5), max(axes[2] * Z, 0.5)

    xx, yy, zz = np.ogrid[:X, :Y, :Z]
    ellipsoid = (
        ((xx - cx) / ax) ** 2 +
        ((yy - cy) / ay) ** 2 +
        ((zz - cz) / az) ** 2
    ) <= 1.0

    return (ellipsoid * intensity).astype(np.float32)


# (center_x, center_y, center_z), (axis_x, axis_y, axis_z), intensity
_SHEPP_LOGAN_3D = [
    ((0.5, 0.5, 0.5), (0.46, 0.345, 0.35), 1.0),        # Outer skull
    ((0.5, 0.5, 0.5), (0.4375, 0.3225, 0.32), -0.8),    # Brain matter
    ((0.5, 0.44, 0.5), (0.11, 0.125, 0.15), -0.2),      # Right ventricle
    ((0.5, 0.56, 0.5), (0.11, 0.125, 0.15), -0.2),      # Left ventricle
    ((0.5, 0.5, 0.5), (0.1875, 0.125, 0.2), 0.15),      # Central structure
    ((0.5, 0.5, 0.5), (0.023, 0.025, 0.05), 0.15),      # Central nucleus
    ((0.5, 0.4, 0.5), (0.023, 0.023, 0.04), 0.1),
    ((0.5, 0.6, 0.5), (0.023, 0.023, 0.04), 0.1),
    ((0.6, 0.35, 0.5), (0.023, 0.012, 0.03), 0.1),
    ((0.6, 0.65, 0.5), (0.023, 0.012, 0.03), 0.1),
]


def shepp_logan_3d(
    shape: Sequence[int] = (64, 64, 64),
) -> NDArray[np.float32]:
    """
    Generate a 3D Shepp-Logan phantom.

    Parameters
    ----------
    shape : sequence of int
        Volume shape (X, Y, Z). Default (64, 64, 64).

    Returns
    -------
    phantom : ndarray
        Phantom volume with values in [0, 1].

    Examples
    --------
    >>> phantom = shepp_logan_3d((64, 64, 48))
    >>> phantom.shape
    (64, 64, 48)
    """
    shape = tuple(int(n) for n in shape)
    phantom = np.zeros(shape, dtype=np.float32)

    for center, axes, intensity in _SHEPP_LOGAN_3D:
        phantom += _ellipsoid_3d(shape, center, axes, intensity)

    phantom = np.clip(phantom, 0, None)
    if phantom.max() > 0:
        phantom = phantom / phantom.max()
    return phantom


def _border_window(shape: Tuple[int, ...], margin: int) -> NDArray[np.float64]:
    # Separable Tukey window, exactly zero within ``margin`` voxels of the border
    window = np.ones(shape)
    for axis, n in enumerate(shape):
        inner = n - 2 * margin
        if inner < 3:
            raise ValueError(f"Dimension {n} is too small for a border margin of {margin}")
        profile = np.zeros(n)
        profile[margin:n - margin] = windows.tukey(inner, alpha=0.5)
        view = [1] * len(shape)
        view[axis] = n
        window = window * profile.reshape(view)
    return window


def textured_phantom(
    shape: Sequence[int] = (64, 64, 64),
    sigma: float = 2.0,
    margin: int = 8,
    seed: Optional[int] = 0,
) -> NDArray[np.float32]:
    """
    Generate a band-limited random texture that is zero near the border.

    Phase-based registration needs structure at the filters' centre
    frequencies in every direction; smoothed white noise provides that.
    The texture is combined with a Shepp-Logan background and multiplied
    by a Tukey window, so shifts of up to ``margin`` voxels (e.g. via
    ``shift_volume``) do not move content across the border.

    Parameters
    ----------
    shape : sequence of int
        Volume shape (X, Y, Z). Default (64, 64, 64).
    sigma : float
        Gaussian smoothing of the noise, in voxels. Default 2.0.
    margin : int
        Width of the zero border, in voxels. Default 8.
    seed : int, optional
        Random seed for reproducibility. Default 0.

    Returns
    -------
    volume : ndarray
        Texture volume with values in [0, 1].
    """
    shape = tuple(int(n) for n in shape)
    rng = np.random.RandomState(seed)

    noise = ndimage.gaussian_filter(rng.standard_normal(shape), sigma=sigma)
    noise = noise / (np.abs(noise).max() + 1e-8)

    volume = (0.5 + 0.5 * noise + 0.5 * shepp_logan_3d(shape)) * _border_window(shape, margin)
    volume = volume - volume.min()
    if volume.max() > 0:
        volume = volume / volume.max()
    return volume.astype(np.float32)


def shift_volume(
    volume: NDArray[np.floating],
    shift: Sequence[int],
) -> NDArray[np.float32]:
    """
    Translate a volume by whole voxels (circularly).

    The result satisfies shifted(x) = volume(x - shift), so registering
    ``volume`` onto ``shift_volume(volume, s)`` yields a translation of
    -s voxels. Intended for volumes whose content is zero near the
    border, such as ``textured_phantom``.
    """
    shifted = np.roll(volume, tuple(int(s) for s in shift), axis=(0, 1, 2))
    return shifted.astype(np.float32)


def apply_random_deformation(
    volume: NDArray[np.floating],
    max_displacement: float = 2.0,
    n_control_points: int = 5,
    seed: Optional[int] = None,
    smooth_sigma: Optional[float] = None,
) -> Tuple[NDArray[np.float32], NDArray[np.float32]]:
    """
    Apply a random smooth deformation to a volume.

    Parameters
    ----------
    volume : ndarray
        Input volume (X, Y, Z).
    max_displacement : float
        Maximum displacement per component in voxels. Default 2.0.
    n_control_points : int
        Number of control points along each axis for generating
        the random displacement field. Default 5.
    seed : int, optional
        Random seed for reproducibility.
    smooth_sigma : float, optional
        Gaussian smoothing sigma for the displacement field.
        If None, computed automatically from the volume size.

    Returns
    -------
    deformed : ndarray
        Deformed volume, deformed(x) = volume(x + d(x)).
    displacement : ndarray
        Displacement field d of shape (3, X, Y, Z).
    """
    rng = np.random.RandomState(seed)
    shape = volume.shape

    if smooth_sigma is None:
        smooth_sigma = min(shape) / (n_control_points * 2)

    ctrl_shape = (n_control_points,) * 3
    zoom_factors = tuple(s / n for s, n in zip(shape, ctrl_shape))
    displacement = np.zeros((3,) + shape, dtype=np.float32)

    for dim in range(3):
        ctrl = rng.uniform(-1, 1, ctrl_shape)
        component = ndimage.zoom(ctrl, zoom_factors, order=3)
        component = component[tuple(slice(0, s) for s in shape)]
        component = ndimage.gaussian_filter(component, sigma=smooth_sigma)
        component = component / (np.abs(component).max() + 1e-8) * max_displacement
        displacement[dim] = component

    grid = np.meshgrid(*(np.arange(n) for n in shape), indexing='ij')
    coordinates = [g + d for g, d in zip(grid, displacement)]
    deformed = ndimage.map_coordinates(
        np.asarray(volume, dtype=np.float32), coordinates, order=1, mode='nearest',
    )
    return deformed.astype(np.float32), displacement
