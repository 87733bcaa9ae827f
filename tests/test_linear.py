# -*- coding: utf-8 -*-
"""
Tests for the phase-based affine solver.

Translations are checked on a windowed texture phantom, where whole-voxel
shifts move no content across the border.
"""

import numpy as np
import pytest

from accel_phase_registration.errors import ConfigurationError, NumericError, ShapeError
from accel_phase_registration.linear import (
    AffineRegistration,
    AffineSolver,
    register_affine,
)
from accel_phase_registration.phantoms import shift_volume
from accel_phase_registration.volume import Volume


class TestAffineIdentity:

    def test_identical_volumes(self, phantom_volume, filter_sets, backend):
        """Registering a volume to itself yields the identity."""
        result = register_affine(
            phantom_volume, phantom_volume, filter_sets.linear, backend, iterations=3,
        )
        assert np.abs(result.parameters).max() < 1e-3
        np.testing.assert_allclose(result.matrix, np.eye(4), atol=1e-3)
        np.testing.assert_allclose(result.aligned, phantom_volume.data, atol=1e-3)
        assert len(result.history) == 3


class TestAffineTranslation:
    """Recovery of a known whole-voxel translation."""

    def test_recovers_x_translation(self, phantom, filter_sets, backend):
        source = Volume(phantom, (1.0, 1.0, 1.0))
        # reference(x) = source(x + 2) along x
        reference = Volume(shift_volume(phantom, (-2, 0, 0)), (1.0, 1.0, 1.0))

        result = register_affine(source, reference, filter_sets.linear, backend, iterations=10)

        t = result.matrix[:3, 3]
        print(f"✓ Estimated translation: ({t[0]:.3f}, {t[1]:.3f}, {t[2]:.3f}) voxels")
        assert t[0] == pytest.approx(2.0, abs=0.2)
        assert abs(t[1]) < 0.1
        assert abs(t[2]) < 0.1
        np.testing.assert_allclose(result.matrix[:3, :3], np.eye(3), atol=0.03)

        initial_error = np.abs(source.data - reference.data).mean()
        final_error = np.abs(result.aligned - reference.data).mean()
        assert final_error < 0.25 * initial_error

    def test_recovers_oblique_translation(self, phantom, filter_sets, backend):
        source = Volume(phantom, (1.0, 1.0, 1.0))
        reference = Volume(shift_volume(phantom, (1, -2, 1)), (1.0, 1.0, 1.0))

        result = register_affine(source, reference, filter_sets.linear, backend, iterations=10)
        np.testing.assert_allclose(result.matrix[:3, 3], [-1.0, 2.0, -1.0], atol=0.2)

    def test_converges_with_iterations(self, phantom, filter_sets, backend):
        """The translation error after 10 iterations is no worse than after 1."""
        source = Volume(phantom, (1.0, 1.0, 1.0))
        reference = Volume(shift_volume(phantom, (-2, 0, 0)), (1.0, 1.0, 1.0))

        result = register_affine(source, reference, filter_sets.linear, backend, iterations=10)
        errors = [abs(p[0] - 2.0) for p in result.history]

        assert len(errors) == 10
        assert errors[-1] <= errors[0] + 1e-6
        assert errors[-1] < 0.2
        # The first iteration already moves toward the answer
        assert errors[0] < 2.0

    def test_multiscale(self, phantom, filter_sets, backend):
        source = Volume(phantom, (1.0, 1.0, 1.0))
        reference = Volume(shift_volume(phantom, (-2, 0, 0)), (1.0, 1.0, 1.0))

        result = register_affine(
            source, reference, filter_sets.linear, backend,
            iterations=5, coarsest_scale=2,
        )
        assert len(result.history) == 10
        assert result.matrix[0, 3] == pytest.approx(2.0, abs=0.25)


class TestAffineStepping:

    def test_solver_step(self, phantom, filter_sets, backend):
        source = Volume(phantom, (1.0, 1.0, 1.0))
        reference = Volume(shift_volume(phantom, (-1, 0, 0)), (1.0, 1.0, 1.0))
        solver = AffineSolver(source, reference, filter_sets.linear, backend)

        assert solver.iteration == 0
        np.testing.assert_array_equal(solver.parameters, np.zeros(12))
        parameters = solver.step()
        assert solver.iteration == 1
        assert parameters.shape == (12,)
        assert parameters[0] > 0.0

    def test_registration_levels(self, phantom_volume, filter_sets, backend):
        registration = AffineRegistration(
            phantom_volume, phantom_volume, filter_sets.linear, backend,
            iterations=2, coarsest_scale=4,
        )
        assert registration.scales == [4, 2, 1]
        assert registration.total_iterations == 6

        steps = 0
        while not registration.done:
            registration.step()
            steps += 1
        assert steps == 6
        with pytest.raises(RuntimeError):
            registration.step()


class TestAffineFailures:

    def test_too_small_for_scale(self, filter_sets, backend):
        volume = Volume(np.random.RandomState(0).rand(8, 8, 8), (1.0, 1.0, 1.0))
        with pytest.raises(ShapeError):
            AffineRegistration(volume, volume, filter_sets.linear, backend, coarsest_scale=2)

    def test_invalid_scale(self, phantom_volume, filter_sets, backend):
        with pytest.raises(ConfigurationError) as excinfo:
            AffineRegistration(
                phantom_volume, phantom_volume, filter_sets.linear, backend, coarsest_scale=3,
            )
        assert excinfo.value.stage == "configuration"

    def test_grid_mismatch(self, phantom_volume, filter_sets, backend):
        other = Volume(np.zeros((20, 20, 20)), (1.0, 1.0, 1.0))
        with pytest.raises(ShapeError):
            AffineSolver(phantom_volume, other, filter_sets.linear, backend)

    def test_featureless_volumes(self, filter_sets, backend):
        """Constant volumes carry no phase: the system is singular."""
        volume = Volume(np.ones((20, 20, 20)), (1.0, 1.0, 1.0))
        with pytest.raises(NumericError) as excinfo:
            register_affine(volume, volume, filter_sets.linear, backend, iterations=1)
        assert excinfo.value.stage == "affine"
