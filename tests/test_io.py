# -*- coding: utf-8 -*-
"""
Tests for volume and filter-set loading and saving.
"""

import nibabel as nib
import numpy as np
import pytest
import scipy.io

from accel_phase_registration.errors import LoadError
from accel_phase_registration.filters import LINEAR_DIRECTIONS
from accel_phase_registration.io import (
    load_filter_sets,
    load_volume,
    load_volume_as,
    save_filter_sets,
    save_volume,
)
from accel_phase_registration.volume import Volume


class TestVolumeFiles:

    def test_nifti_round_trip(self, tmp_path):
        data = np.random.RandomState(0).rand(10, 12, 14).astype(np.float32)
        path = tmp_path / "volume.nii.gz"
        save_volume(path, data, (1.5, 2.0, 2.5))

        loaded, vx, vy, vz = load_volume(path)
        np.testing.assert_allclose(loaded, data, atol=1e-6)
        assert (vx, vy, vz) == pytest.approx((1.5, 2.0, 2.5))

    def test_save_volume_object(self, tmp_path):
        volume = Volume(np.ones((6, 6, 6)), (1.0, 1.0, 3.0))
        path = tmp_path / "volume.nii"
        save_volume(path, volume)

        loaded = load_volume_as(path)
        assert isinstance(loaded, Volume)
        assert loaded.voxel_size == pytest.approx((1.0, 1.0, 3.0))
        assert loaded.shape == (6, 6, 6)

    def test_trailing_singleton_axis(self, tmp_path):
        data = np.ones((5, 6, 7, 1), dtype=np.float32)
        path = tmp_path / "volume4d.nii"
        nib.save(nib.Nifti1Image(data, np.eye(4)), str(path))

        loaded, *_ = load_volume(path)
        assert loaded.shape == (5, 6, 7)

    def test_missing_file(self, tmp_path):
        with pytest.raises(LoadError) as excinfo:
            load_volume(tmp_path / "missing.nii")
        assert excinfo.value.stage == "load"
        # LoadError is also an OSError
        assert isinstance(excinfo.value, OSError)

    def test_not_3d(self, tmp_path):
        path = tmp_path / "slice.nii"
        nib.save(nib.Nifti1Image(np.ones((8, 8), dtype=np.float32), np.eye(4)), str(path))
        with pytest.raises(LoadError):
            load_volume(path)


class TestFilterFiles:

    def test_npz_round_trip(self, tmp_path, filter_sets):
        path = tmp_path / "filters.npz"
        save_filter_sets(path, filter_sets)
        loaded = load_filter_sets(path)

        np.testing.assert_allclose(loaded.linear.kernels, filter_sets.linear.kernels)
        np.testing.assert_allclose(loaded.nonlinear.kernels, filter_sets.nonlinear.kernels)
        np.testing.assert_allclose(loaded.nonlinear.directions, filter_sets.nonlinear.directions)
        np.testing.assert_allclose(loaded.nonlinear.constraints, filter_sets.nonlinear.constraints)

    def test_mat_file(self, tmp_path, filter_sets):
        contents = {}
        for k in range(3):
            contents[f"f{k + 1}_parametric_registration"] = filter_sets.linear.kernels[k]
        for k in range(6):
            contents[f"f{k + 1}_nonparametric_registration"] = filter_sets.nonlinear.kernels[k]
        for axis, name in enumerate(('x', 'y', 'z')):
            contents[f"filter_directions_{name}"] = filter_sets.nonlinear.directions[:, axis]
        path = tmp_path / "filters.mat"
        scipy.io.savemat(str(path), contents)

        loaded = load_filter_sets(path)
        assert loaded.linear.num_filters == 3
        assert loaded.nonlinear.num_filters == 6
        np.testing.assert_allclose(loaded.linear.directions, LINEAR_DIRECTIONS)
        np.testing.assert_allclose(
            loaded.nonlinear.directions, filter_sets.nonlinear.directions, atol=1e-6,
        )
        np.testing.assert_allclose(loaded.nonlinear.kernels, filter_sets.nonlinear.kernels, atol=1e-6)

    def test_mat_missing_variable(self, tmp_path, filter_sets):
        path = tmp_path / "filters.mat"
        scipy.io.savemat(str(path), {"f1_parametric_registration": filter_sets.linear.kernels[0]})
        with pytest.raises(LoadError, match="f2_parametric_registration"):
            load_filter_sets(path)

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "filters.txt"
        path.write_text("not a filter file")
        with pytest.raises(LoadError):
            load_filter_sets(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(LoadError):
            load_filter_sets(tmp_path / "missing.npz")

    def test_corrupt_npz(self, tmp_path):
        path = tmp_path / "filters.npz"
        path.write_bytes(b"this is not a zip archive")
        with pytest.raises(LoadError):
            load_filter_sets(path)

    def test_invalid_filters(self, tmp_path, filter_sets):
        """Direction count disagreeing with the kernel count is rejected."""
        path = tmp_path / "filters.npz"
        np.savez(
            str(path),
            linear_kernels=filter_sets.linear.kernels,
            linear_directions=filter_sets.linear.directions,
            nonlinear_kernels=filter_sets.nonlinear.kernels,
            nonlinear_directions=filter_sets.nonlinear.directions[:4],
        )
        with pytest.raises(LoadError, match="Invalid filters"):
            load_filter_sets(path)
