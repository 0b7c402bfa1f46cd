"""Shared test fixtures."""

import numpy as np
import pytest

import circuit_core


@pytest.fixture
def full_bitmap():
    """800x600 bitmap that is entirely inside (all black)."""
    return np.zeros((600, 800), dtype=np.uint8)


@pytest.fixture
def empty_bitmap():
    """800x600 bitmap with no inside pixels (all white)."""
    return np.full((600, 800), 255, dtype=np.uint8)


@pytest.fixture
def square_polygon():
    return [(0, 0), (200, 0), (200, 200), (0, 200)]


@pytest.fixture
def scenario_a_options():
    return {
        'density': 20,
        'line_length_min': 20,
        'line_length_max': 150,
        'line_thickness': 2,
        'circle_radius': 4,
        'style': 'organic',
        'seed': 1234,
    }


@pytest.fixture
def spacing_and_clearance():
    spacing = circuit_core.path_spacing(20, 2, 4)
    clearance = circuit_core.pad_clearance(2, 4)
    return spacing, clearance
