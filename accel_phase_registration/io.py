# -*- coding: utf-8 -*-
"""
Volume and filter-asset collaborators.

The registration engine never touches the file system; these helpers load
its inputs beforehand and save its outputs afterwards. Every load failure
is reported as a LoadError.

Volumes are read and written with nibabel (NIfTI-1 and any other format
nibabel understands). Filter sets are read from MATLAB ``.mat`` files
using the asset names of the original filter distribution, or from the
package's own ``.npz`` format.

MATLAB asset names
------------------
    f1_parametric_registration ... f3_parametric_registration
        Linear filters, along x, y and z.
    f1_nonparametric_registration ... f6_nonparametric_registration
        Non-linear filters.
    filter_directions_x, filter_directions_y, filter_directions_z
        Direction components of the non-linear filters.
    m1 ... m6 (optional)
        Constraint (projection) matrices of the non-linear filters.

Functions
---------
1. load_volume: (data, vx, vy, vz) from a volume file
2. load_volume_as: Volume from a volume file
3. save_volume: Write a volume as NIfTI
4. load_filter_sets: FilterSets from a .mat or .npz file
5. save_filter_sets: Write FilterSets as .npz
"""

from __future__ import annotations

import os
from typing import Optional, Sequence, Tuple, Union

import nibabel as nib
import numpy as np
import scipy.io
from nibabel.filebasedimages import ImageFileError
from numpy.typing import NDArray

from .errors import ConfigurationError, LoadError
from .filters import LINEAR_DIRECTIONS, FilterSet, FilterSets
from .volume import Volume, validate_voxel_size


PathLike = Union[str, os.PathLike]

N_LINEAR_FILTERS = 3
N_NONLINEAR_FILTERS = 6


# =============================================================================
# Volumes
# =============================================================================

def load_volume(path: PathLike) -> Tuple[NDArray[np.float32], float, float, float]:
    """
    Load a 3D volume and its voxel size.

    Parameters
    ----------
    path : str or PathLike
        Volume file (e.g. .nii, .nii.gz).

    Returns
    -------
    data : ndarray
        float32 samples indexed [x, y, z].
    vx, vy, vz : float
        Voxel size in mm.

    Raises
    ------
    LoadError
        If the file is missing or unreadable, is not 3D, or carries an
        invalid voxel size.
    """
    try:
        img = nib.load(os.fspath(path))
        data = np.asarray(img.dataobj, dtype=np.float32)
        zooms = img.header.get_zooms()
    except (OSError, ImageFileError, ValueError) as e:
        raise LoadError(f"Failed to load volume {path}: {e}") from e

    # A trailing singleton time axis is common in NIfTI files
    while data.ndim > 3 and data.shape[-1] == 1:
        data = data[..., 0]
    if data.ndim != 3:
        raise LoadError(f"Volume {path} must be 3D, got shape {data.shape}")

    try:
        vx, vy, vz = validate_voxel_size(zooms[:3], os.fspath(path))
    except ConfigurationError as e:
        raise LoadError(f"Volume {path} has an invalid voxel size: {e}") from e
    return data, vx, vy, vz


def load_volume_as(path: PathLike) -> Volume:
    """Load a volume file as a Volume."""
    data, vx, vy, vz = load_volume(path)
    return Volume(data, (vx, vy, vz))


def save_volume(
    path: PathLike,
    data: Union[Volume, NDArray[np.floating]],
    voxel_size: Optional[Sequence[float]] = None,
) -> None:
    """
    Write a volume as NIfTI.

    Parameters
    ----------
    path : str or PathLike
        Output file (.nii or .nii.gz).
    data : Volume or ndarray
        Volume indexed [x, y, z].
    voxel_size : sequence of float, optional
        Voxel size in mm; required for arrays.
    """
    if isinstance(data, Volume):
        voxel_size = data.voxel_size if voxel_size is None else voxel_size
        data = data.data
    vx, vy, vz = validate_voxel_size(voxel_size, os.fspath(path))

    affine = np.diag([vx, vy, vz, 1.0])
    img = nib.Nifti1Image(np.asarray(data, dtype=np.float32), affine)
    img.header.set_zooms((vx, vy, vz))
    nib.save(img, os.fspath(path))


# =============================================================================
# Filter Sets
# =============================================================================

def _load_mat_filter_sets(path: str) -> FilterSets:
    contents = scipy.io.loadmat(path)

    def get(name: str) -> NDArray:
        if name not in contents:
            raise LoadError(f"Filter file {path} has no variable '{name}'")
        return np.asarray(contents[name])

    linear_kernels = np.stack([
        get(f"f{k}_parametric_registration") for k in range(1, N_LINEAR_FILTERS + 1)
    ])
    nonlinear_kernels = np.stack([
        get(f"f{k}_nonparametric_registration") for k in range(1, N_NONLINEAR_FILTERS + 1)
    ])
    directions = np.stack([
        get(f"filter_directions_{axis}").ravel() for axis in ('x', 'y', 'z')
    ], axis=1)

    constraints = None
    if all(f"m{k}" in contents for k in range(1, N_NONLINEAR_FILTERS + 1)):
        constraints = np.stack([
            get(f"m{k}").reshape(3, 3) for k in range(1, N_NONLINEAR_FILTERS + 1)
        ])

    return FilterSets(
        linear=FilterSet(linear_kernels, LINEAR_DIRECTIONS),
        nonlinear=FilterSet(nonlinear_kernels, directions, constraints),
    )


def _load_npz_filter_sets(path: str) -> FilterSets:
    with np.load(path) as contents:
        names = set(contents.files)

        def make(prefix: str) -> FilterSet:
            for key in (f"{prefix}_kernels", f"{prefix}_directions"):
                if key not in names:
                    raise LoadError(f"Filter file {path} has no array '{key}'")
            constraints_key = f"{prefix}_constraints"
            return FilterSet(
                contents[f"{prefix}_kernels"],
                contents[f"{prefix}_directions"],
                contents[constraints_key] if constraints_key in names else None,
            )

        return FilterSets(linear=make('linear'), nonlinear=make('nonlinear'))


def load_filter_sets(path: PathLike) -> FilterSets:
    """
    Load the linear and non-linear filter sets.

    Parameters
    ----------
    path : str or PathLike
        A MATLAB ``.mat`` file with the original asset names or an
        ``.npz`` written by ``save_filter_sets``.

    Returns
    -------
    FilterSets
        Immutable filter sets.

    Raises
    ------
    LoadError
        If the file is missing, unreadable, lacks a required array or holds
        invalid filters.
    """
    path = os.fspath(path)
    suffix = os.path.splitext(path)[1].lower()
    if suffix not in ('.mat', '.npz'):
        raise LoadError(f"Unsupported filter file type '{suffix}' ({path})")

    try:
        if suffix == '.mat':
            return _load_mat_filter_sets(path)
        return _load_npz_filter_sets(path)
    except LoadError:
        raise
    except ConfigurationError as e:
        raise LoadError(f"Invalid filters in {path}: {e}") from e
    except (OSError, ValueError, KeyError) as e:
        raise LoadError(f"Failed to load filters from {path}: {e}") from e


def save_filter_sets(path: PathLike, filters: FilterSets) -> None:
    """Write filter sets to an ``.npz`` file readable by ``load_filter_sets``."""
    arrays = {}
    for prefix, filter_set in (('linear', filters.linear), ('nonlinear', filters.nonlinear)):
        arrays[f"{prefix}_kernels"] = filter_set.kernels
        arrays[f"{prefix}_directions"] = filter_set.directions
        arrays[f"{prefix}_constraints"] = filter_set.constraints
    np.savez(os.fspath(path), **arrays)
