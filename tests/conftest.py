# -*- coding: utf-8 -*-
"""Shared fixtures: CPU backend, default filters and a textured phantom."""

import pytest

from accel_phase_registration import (
    Volume,
    default_filter_sets,
    open_backend,
    textured_phantom,
)


@pytest.fixture(scope="session")
def filter_sets():
    return default_filter_sets()


@pytest.fixture
def backend():
    with open_backend(0, 0) as b:
        yield b


@pytest.fixture(scope="session")
def phantom():
    """40^3 texture, zero within 8 voxels of the border."""
    return textured_phantom((40, 40, 40), sigma=2.0, margin=8, seed=0)


@pytest.fixture
def phantom_volume(phantom):
    return Volume(phantom, (1.0, 1.0, 1.0))

