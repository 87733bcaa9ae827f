# -*- coding: utf-8 -*-
"""
Volume value type.

A Volume couples a 3D array of samples, indexed [x, y, z], with its
physical voxel size (x, y, z) in millimetres. The voxel size is always
explicit: a missing or non-positive size is a configuration error and is
never silently replaced by a default.

Functions
---------
1. Volume: Immutable volume with voxel size
2. as_volume: Build a Volume from an array and an explicit voxel size
3. validate_voxel_size: Check a voxel size triple
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from .errors import ConfigurationError, ShapeError


def validate_voxel_size(
    voxel_size: Optional[Sequence[float]],
    name: str = "volume",
) -> Tuple[float, float, float]:
    """
    Validate a voxel size and return it as a tuple of floats.

    Raises
    ------
    ConfigurationError
        If the voxel size is missing, does not have three components, or
        any component is not strictly positive and finite.
    """
    if voxel_size is None:
        raise ConfigurationError(f"Voxel size of {name} is not defined")
    values = np.asarray(voxel_size, dtype=np.float64).ravel()
    if values.size != 3:
        raise ConfigurationError(
            f"Voxel size of {name} must have 3 elements, got {values.size}"
        )
    if not np.all(np.isfinite(values)) or np.any(values <= 0):
        raise ConfigurationError(
            f"Voxel size of {name} must be strictly positive, got {tuple(values)}"
        )
    return (float(values[0]), float(values[1]), float(values[2]))


@dataclass(frozen=True)
class Volume:
    """3D scalar volume with an explicit voxel size in millimetres."""
    data: NDArray[np.float32]
    voxel_size: Tuple[float, float, float]

    def __post_init__(self):
        data = np.array(self.data, dtype=np.float32, copy=True)
        if data.ndim != 3:
            raise ShapeError(f"Volume must be 3D, got {data.ndim}D")
        if min(data.shape) < 1:
            raise ShapeError(f"Volume has a degenerate shape {data.shape}")
        data.setflags(write=False)
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "voxel_size", validate_voxel_size(self.voxel_size))

    @property
    def shape(self) -> Tuple[int, int, int]:
        return tuple(int(s) for s in self.data.shape)

    @property
    def extent_mm(self) -> Tuple[float, float, float]:
        """Physical extent (x, y, z) covered by the voxel grid."""
        return tuple(n * v for n, v in zip(self.shape, self.voxel_size))

    def with_data(self, data: NDArray[np.floating]) -> "Volume":
        """Return a new Volume on the same voxel size with other samples."""
        return Volume(data, self.voxel_size)


def as_volume(
    volume: Union[Volume, NDArray[np.floating]],
    voxel_size: Optional[Sequence[float]] = None,
    name: str = "volume",
) -> Volume:
    """
    Coerce an array (plus explicit voxel size) or a Volume into a Volume.

    Parameters
    ----------
    volume : Volume or ndarray
        The volume. Arrays must be 3D and indexed [x, y, z].
    voxel_size : sequence of float, optional
        Voxel size (x, y, z) in mm. Required for arrays. If given together
        with a Volume it must agree with the Volume's voxel size.
    name : str
        Name used in error messages ("source", "reference").
    """
    if isinstance(volume, Volume):
        if voxel_size is not None:
            size = validate_voxel_size(voxel_size, name)
            if not np.allclose(size, volume.voxel_size):
                raise ConfigurationError(
                    f"Voxel size {size} of {name} disagrees with the volume's "
                    f"own voxel size {volume.voxel_size}"
                )
        return volume
    return Volume(np.asarray(volume), validate_voxel_size(voxel_size, name))
