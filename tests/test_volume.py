# -*- coding: utf-8 -*-
"""
Tests for the error taxonomy and the Volume value type.
"""

import numpy as np
import pytest

from accel_phase_registration.errors import (
    RegistrationError,
    ConfigurationError,
    LoadError,
    ShapeError,
    DeviceError,
    NumericError,
)
from accel_phase_registration.volume import Volume, as_volume, validate_voxel_size


# =============================================================================
# Errors
# =============================================================================

class TestErrors:
    """Error hierarchy and stage tagging."""

    def test_default_stages(self):
        assert ConfigurationError("x").stage == "configuration"
        assert LoadError("x").stage == "load"
        assert ShapeError("x").stage == "resample"
        assert DeviceError("x").stage == "device"

    def test_builtin_bases(self):
        """Errors can be caught as the matching builtin exception."""
        assert isinstance(ConfigurationError("x"), ValueError)
        assert isinstance(LoadError("x"), OSError)
        assert isinstance(ShapeError("x"), ValueError)
        assert isinstance(DeviceError("x"), RuntimeError)
        assert isinstance(NumericError("x"), ArithmeticError)
        for cls in (ConfigurationError, LoadError, ShapeError, DeviceError, NumericError):
            assert issubclass(cls, RegistrationError)

    def test_with_stage(self):
        error = NumericError("singular system").with_stage("affine")
        assert error.stage == "affine"
        assert str(error) == "[affine] singular system"

    def test_explicit_stage(self):
        error = DeviceError("lost device", stage="nonlinear")
        assert error.stage == "nonlinear"
        assert "lost device" in str(error)


# =============================================================================
# Volume
# =============================================================================

class TestVoxelSize:

    def test_valid(self):
        assert validate_voxel_size([1, 2, 3.5]) == (1.0, 2.0, 3.5)

    @pytest.mark.parametrize("voxel_size", [
        None,
        (1.0, 1.0),
        (1.0, 0.0, 1.0),
        (1.0, -2.0, 1.0),
        (1.0, np.nan, 1.0),
    ])
    def test_invalid(self, voxel_size):
        with pytest.raises(ConfigurationError):
            validate_voxel_size(voxel_size, "source")


class TestVolume:
    """Tests for the Volume dataclass."""

    def test_properties(self):
        volume = Volume(np.zeros((4, 5, 6)), (1.0, 2.0, 0.5))
        assert volume.shape == (4, 5, 6)
        assert volume.extent_mm == (4.0, 10.0, 3.0)
        assert volume.data.dtype == np.float32

    def test_data_is_copied_and_read_only(self):
        data = np.ones((4, 4, 4))
        volume = Volume(data, (1.0, 1.0, 1.0))
        data[0, 0, 0] = 5.0
        assert volume.data[0, 0, 0] == 1.0
        assert not volume.data.flags.writeable
        with pytest.raises(ValueError):
            volume.data[0, 0, 0] = 2.0

    def test_missing_voxel_size(self):
        with pytest.raises(ConfigurationError):
            Volume(np.zeros((4, 4, 4)), None)

    def test_not_3d(self):
        with pytest.raises(ShapeError):
            Volume(np.zeros((4, 4)), (1.0, 1.0, 1.0))

    def test_empty(self):
        with pytest.raises(ShapeError):
            Volume(np.zeros((4, 0, 4)), (1.0, 1.0, 1.0))

    def test_with_data(self):
        volume = Volume(np.zeros((4, 4, 4)), (2.0, 2.0, 2.0))
        other = volume.with_data(np.ones((2, 2, 2)))
        assert other.shape == (2, 2, 2)
        assert other.voxel_size == (2.0, 2.0, 2.0)


class TestAsVolume:

    def test_array_requires_voxel_size(self):
        with pytest.raises(ConfigurationError, match="source"):
            as_volume(np.zeros((4, 4, 4)), None, "source")

    def test_array_with_voxel_size(self):
        volume = as_volume(np.zeros((4, 4, 4)), (1, 1, 2))
        assert volume.voxel_size == (1.0, 1.0, 2.0)

    def test_volume_passthrough(self):
        volume = Volume(np.zeros((4, 4, 4)), (1.0, 1.0, 1.0))
        assert as_volume(volume) is volume
        assert as_volume(volume, (1.0, 1.0, 1.0)) is volume

    def test_conflicting_voxel_size(self):
        volume = Volume(np.zeros((4, 4, 4)), (1.0, 1.0, 1.0))
        with pytest.raises(ConfigurationError):
            as_volume(volume, (2.0, 2.0, 2.0))
