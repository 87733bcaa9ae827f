# -*- coding: utf-8 -*-
"""
Tests for deformation quality diagnostics.

Tests Jacobian determinant computation and fold detection on
displacement fields of shape (3, X, Y, Z).
"""

import warnings

import numpy as np
import pytest
import torch

from accel_phase_registration.diffeomorphic import (
    JacobianStats,
    compute_jacobian_determinant,
    detect_folds,
    get_jacobian_determinant_map,
)


def _folded_field(n=32, amplitude=5.0):
    """Sinusoidal x-displacement whose gradient drops below -1."""
    x = np.linspace(-1, 1, n)
    disp = np.zeros((3, n, n, n), dtype=np.float32)
    disp[0] = (amplitude * np.sin(4 * np.pi * x))[:, None, None]
    return disp


# =============================================================================
# Test Jacobian Determinant Computation
# =============================================================================

class TestJacobianDeterminant:
    """Tests for 3D Jacobian determinant computation."""

    def test_identity_displacement(self):
        """Zero displacement should give det(J) = 1 everywhere."""
        disp = torch.zeros(3, 16, 16, 16)
        det_J = compute_jacobian_determinant(disp)
        assert det_J.shape == (16, 16, 16)
        assert torch.allclose(det_J, torch.ones_like(det_J), atol=1e-6)

    def test_batched_input(self):
        det_J = compute_jacobian_determinant(torch.zeros(2, 3, 8, 8, 8))
        assert det_J.shape == (2, 8, 8, 8)

    def test_uniform_expansion(self):
        """d(x) = s x gives det(J) = (1 + s)^3 away from the border."""
        scale = 0.1
        n = 16
        grid = torch.meshgrid(*(torch.arange(n, dtype=torch.float32),) * 3, indexing='ij')
        disp = torch.stack([scale * g for g in grid])

        det_J = compute_jacobian_determinant(disp)
        interior = det_J[2:-2, 2:-2, 2:-2]
        assert torch.allclose(interior, torch.full_like(interior, (1 + scale) ** 3), atol=1e-4)
        print(f"✓ Uniform expansion gives det(J) ≈ {interior.mean().item():.3f}")

    def test_voxel_spacing(self):
        """The same field in mm on a 2 mm grid has half the gradient."""
        n = 16
        x = torch.arange(n, dtype=torch.float32)
        disp = torch.zeros(3, n, n, n)
        disp[0] = (0.2 * x)[:, None, None]

        det_vox = compute_jacobian_determinant(disp)[4, 4, 4]
        det_mm = compute_jacobian_determinant(disp, voxel_spacing=(2.0, 2.0, 2.0))[4, 4, 4]
        assert float(det_vox) == pytest.approx(1.2, abs=1e-5)
        assert float(det_mm) == pytest.approx(1.1, abs=1e-5)

    def test_folding(self):
        """Strong compression should give det(J) < 0 (folding)."""
        det_J = compute_jacobian_determinant(torch.from_numpy(_folded_field()))
        assert (det_J < 0).any()

    def test_wrong_shape(self):
        with pytest.raises(ValueError):
            compute_jacobian_determinant(torch.zeros(2, 8, 8, 8))


# =============================================================================
# Test Fold Detection
# =============================================================================

class TestFoldDetection:
    """Tests for fold detection utility."""

    def test_detect_no_folds_in_identity(self):
        disp = np.zeros((3, 32, 32, 32), dtype=np.float32)

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            stats = detect_folds(disp)

        assert isinstance(stats, JacobianStats)
        assert not stats.has_folds
        assert stats.num_folds == 0
        assert stats.total_voxels == 32 ** 3
        assert abs(stats.mean_det - 1.0) < 0.01

    def test_detect_folds_in_folded_field(self):
        with pytest.warns(UserWarning, match="folding"):
            stats = detect_folds(_folded_field())

        assert stats.has_folds
        assert stats.num_folds > 0
        assert stats.min_det < 0
        assert 0 < stats.fold_fraction < 1
        print(f"✓ Folds detected: {stats.num_folds} voxels ({stats.fold_fraction*100:.1f}%)")

    def test_warning_can_be_disabled(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            stats = detect_folds(_folded_field(), warn=False)
        assert stats.has_folds

    def test_to_dict(self):
        stats = detect_folds(np.zeros((3, 8, 8, 8), dtype=np.float32))
        as_dict = stats.to_dict()
        assert as_dict['num_folds'] == 0
        assert as_dict['total_voxels'] == 512

    def test_jacobian_map_output(self):
        det_map = get_jacobian_determinant_map(np.zeros((3, 12, 14, 16), dtype=np.float32))
        assert det_map.shape == (12, 14, 16)
        np.testing.assert_allclose(det_map, 1.0)
