"""Tests for candidate generation and the containment filter."""

import math
import random

import pytest

import circuit_core
from circuit_core import PolygonMask, Segment


def _leg_headings(segment):
    headings = []
    for (x0, y0), (x1, y1) in zip(segment.points, segment.points[1:]):
        headings.append(round(math.degrees(math.atan2(y1 - y0, x1 - x0))) % 360)
    return headings


def test_create_segment_geometry():
    seg = circuit_core.create_segment(10, 10, 90, 50)
    assert seg.start == (10, 10)
    assert seg.end[0] == pytest.approx(10)
    assert seg.end[1] == pytest.approx(60)
    assert seg.length == 50
    assert not seg.is_bent


def test_grid_style_steps_the_bounding_box():
    rng = random.Random(7)
    segments = circuit_core.create_candidate_segments(
        (0, 0, 100, 60), 20, 'grid', rng, length_min=20, length_max=150)
    assert len(segments) == 15
    starts = {seg.start for seg in segments}
    assert starts == {(x, y) for x in (0, 20, 40, 60, 80) for y in (0, 20, 40)}
    for seg in segments:
        assert len(seg.points) == 2
        assert seg.angle in circuit_core.HEADINGS
        assert 20 <= seg.length <= 150
        assert seg.path_length == pytest.approx(seg.length)


def test_organic_count_scales_with_area():
    rng = random.Random(7)
    segments = circuit_core.create_candidate_segments(
        (0, 0, 100, 100), 20, 'organic', rng, length_min=20, length_max=150)
    assert len(segments) == 50
    for seg in segments:
        assert 0 <= seg.start[0] <= 100
        assert 0 <= seg.start[1] <= 100


def test_organic_turns_are_45_degrees():
    rng = random.Random(99)
    segments = circuit_core.create_candidate_segments(
        (0, 0, 400, 400), 20, 'organic', rng, length_min=20, length_max=150)
    turn_counts = set()
    for seg in segments:
        headings = _leg_headings(seg)
        assert 1 <= len(headings) <= 3
        turn_counts.add(len(headings) - 1)
        assert headings[0] == seg.angle % 360
        for a, b in zip(headings, headings[1:]):
            assert (b - a) % 360 in (45, 315)
    assert turn_counts == {0, 1, 2}


def test_bent_legs_stay_within_twenty_percent():
    rng = random.Random(3)
    seg = circuit_core.create_bent_segment(0, 0, 0, 90, 2, rng)
    assert len(seg.points) == 4
    assert seg.length == 90
    for a, b in zip(seg.points, seg.points[1:]):
        leg = math.hypot(b[0] - a[0], b[1] - a[1])
        assert 30 * 0.8 - 1e-9 <= leg <= 30 * 1.2 + 1e-9


def test_average_length_mode():
    rng = random.Random(5)
    segments = circuit_core.create_candidate_segments(
        (0, 0, 200, 200), 20, 'grid', rng, avg_length=80)
    assert all(56 - 1e-9 <= seg.length <= 104 + 1e-9 for seg in segments)


def test_same_seed_same_candidates():
    a = circuit_core.create_candidate_segments(
        (0, 0, 300, 200), 15, 'organic', random.Random(11), length_min=20, length_max=150)
    b = circuit_core.create_candidate_segments(
        (0, 0, 300, 200), 15, 'organic', random.Random(11), length_min=20, length_max=150)
    c = circuit_core.create_candidate_segments(
        (0, 0, 300, 200), 15, 'organic', random.Random(12), length_min=20, length_max=150)
    assert [s.points for s in a] == [s.points for s in b]
    assert [s.points for s in a] != [s.points for s in c]


def test_filter_rejects_straight_segment_across_a_gap():
    # U shape: two arms joined at the bottom
    u_shape = PolygonMask([(0, 0), (20, 0), (20, 80), (80, 80), (80, 0), (100, 0),
                           (100, 100), (0, 100)])
    across = circuit_core.create_segment(10, 10, 0, 80)
    inside_arm = circuit_core.create_segment(10, 10, 90, 60)
    kept = circuit_core.filter_candidates([across, inside_arm], u_shape)
    assert kept == [inside_arm]


def test_filter_checks_interior_vertices_of_bent_segments():
    mask = PolygonMask([(0, 0), (100, 0), (100, 100), (0, 100)])
    outside_corner = Segment(points=[(10, 50), (50, 50), (50, 150), (60, 90)], angle=0, length=150)
    assert not circuit_core.candidate_inside(outside_corner, mask)
    inner = Segment(points=[(10, 50), (50, 50), (60, 60), (60, 90)], angle=0, length=90)
    assert circuit_core.candidate_inside(inner, mask)


def test_filter_maps_generation_space_through_scale():
    mask = PolygonMask([(0, 0), (200, 0), (200, 200), (0, 200)])
    seg = circuit_core.create_segment(10, 10, 0, 80)
    assert circuit_core.filter_candidates([seg], mask, scale=2) == [seg]
    assert circuit_core.filter_candidates([seg], mask, scale=3) == []
