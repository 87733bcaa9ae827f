# -*- coding: utf-8 -*-
"""
Tests for the affine parameter algebra, warping and field smoothing.
"""

import numpy as np
import pytest
import torch

from accel_phase_registration.warp import (
    apply_affine,
    apply_displacement,
    gaussian_kernel_1d,
    matrix_to_mm,
    matrix_to_parameters,
    parameters_to_matrix,
    scale_translation,
    smooth_field,
    warp_affine,
)

CPU = torch.device('cpu')


@pytest.fixture
def volume():
    return np.random.RandomState(0).rand(16, 18, 20).astype(np.float32)


class TestParameterAlgebra:

    def test_zero_parameters_give_identity(self):
        np.testing.assert_array_equal(parameters_to_matrix(np.zeros(12)), np.eye(4))

    def test_layout(self):
        p = np.arange(1, 13, dtype=np.float64)
        m = parameters_to_matrix(p)
        np.testing.assert_array_equal(m[:3, 3], [1, 2, 3])
        np.testing.assert_array_equal(m[0, :3], [5, 5, 6])  # 1 + a11, a12, a13
        np.testing.assert_array_equal(m[3], [0, 0, 0, 1])
        np.testing.assert_allclose(matrix_to_parameters(m), p)

    def test_wrong_size(self):
        with pytest.raises(ValueError):
            parameters_to_matrix(np.zeros(6))
        with pytest.raises(ValueError):
            matrix_to_parameters(np.eye(3))

    def test_matrix_to_mm(self):
        m = parameters_to_matrix([1, 2, 3] + [0.0] * 9)
        mm = matrix_to_mm(m, (2.0, 2.0, 4.0))
        np.testing.assert_allclose(mm[:3, 3], [2, 4, 12])
        np.testing.assert_allclose(mm[:3, :3], np.eye(3))

    def test_scale_translation(self):
        m = parameters_to_matrix([1, -2, 3, 0.1] + [0.0] * 8)
        scaled = scale_translation(m, 2.0)
        np.testing.assert_allclose(scaled[:3, 3], [2, -4, 6])
        np.testing.assert_allclose(scaled[:3, :3], m[:3, :3])


class TestWarping:
    """Trilinear warping with clamp-to-edge boundaries."""

    def test_identity(self, volume):
        warped = apply_affine(volume, np.eye(4), device=CPU)
        np.testing.assert_allclose(warped, volume, atol=1e-5)

    def test_integer_translation(self, volume):
        """w(x) = s(x + t)."""
        m = parameters_to_matrix([2, 0, 0] + [0.0] * 9)
        warped = apply_affine(volume, m, device=CPU)
        np.testing.assert_allclose(warped[:-2], volume[2:], atol=1e-5)
        # Clamp-to-edge beyond the last slice
        np.testing.assert_allclose(warped[-1], volume[-1], atol=1e-5)

    def test_zeros_padding(self, volume):
        m = parameters_to_matrix([0, 3, 0] + [0.0] * 9)
        warped = apply_affine(volume, m, padding_mode='zeros', device=CPU)
        np.testing.assert_allclose(warped[:, -3:], 0.0, atol=1e-6)

    def test_constant_displacement(self, volume):
        displacement = np.zeros((3,) + volume.shape, dtype=np.float32)
        displacement[1] = 1.0
        warped = apply_displacement(volume, displacement, device=CPU)
        np.testing.assert_allclose(warped[:, :-1], volume[:, 1:], atol=1e-5)

    def test_displacement_composes_with_affine(self, volume):
        """Affine translation of 1 plus a displacement of 1 moves 2 voxels."""
        displacement = np.zeros((3,) + volume.shape, dtype=np.float32)
        displacement[2] = 1.0
        m = parameters_to_matrix([0, 0, 1] + [0.0] * 9)
        warped = apply_displacement(volume, displacement, m, device=CPU)
        np.testing.assert_allclose(warped[:, :, :-2], volume[:, :, 2:], atol=1e-5)

    def test_displacement_shape_mismatch(self, volume):
        with pytest.raises(ValueError):
            apply_displacement(volume, np.zeros((3, 4, 4, 4)), device=CPU)

    def test_scaling_about_centre(self):
        """The centre voxel is a fixed point of a linear transform."""
        volume = np.random.RandomState(3).rand(9, 9, 9).astype(np.float32)
        m = parameters_to_matrix([0, 0, 0, 0.2, 0, 0, 0, 0.2, 0, 0, 0, 0.2])
        vol_t = torch.from_numpy(volume)[None, None]
        warped = warp_affine(vol_t, m)[0, 0].numpy()
        assert warped[4, 4, 4] == pytest.approx(volume[4, 4, 4], abs=1e-5)


class TestSmoothing:

    def test_kernel_normalized(self):
        kernel = gaussian_kernel_1d(2.0, CPU)
        assert float(kernel.sum()) == pytest.approx(1.0, abs=1e-6)
        assert kernel.numel() == 2 * 6 + 1

    def test_constant_field_unchanged(self):
        field = torch.full((3, 10, 12, 14), 1.5)
        smoothed = smooth_field(field, 5.0)
        assert smoothed.shape == field.shape
        assert torch.allclose(smoothed, field, atol=1e-5)

    def test_reduces_variation(self):
        field = torch.from_numpy(np.random.RandomState(0).randn(3, 16, 16, 16).astype(np.float32))
        smoothed = smooth_field(field, 2.0)
        assert float(smoothed.std()) < 0.5 * float(field.std())

    def test_zero_sigma_is_noop(self):
        field = torch.randn(2, 4, 4, 4)
        assert smooth_field(field, 0.0) is field

    def test_channels_are_independent(self):
        field = torch.zeros(2, 9, 9, 9)
        field[0, 4, 4, 4] = 1.0
        smoothed = smooth_field(field, 1.0)
        assert float(smoothed[1].abs().max()) == 0.0
        assert float(smoothed[0].sum()) == pytest.approx(1.0, abs=1e-5)
