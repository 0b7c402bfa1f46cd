"""Tests for the greedy placement rules."""

import random

import circuit_core
from circuit_core import Segment, check_pair, create_segment


def _seg(*points):
    return Segment(points=list(points), angle=0, length=len(points))


PLACED = _seg((0, 0), (100, 0))


def test_clearance_values():
    assert circuit_core.pad_clearance(2, 4) == 13
    assert circuit_core.path_spacing(20, 2, 4) == 7
    assert circuit_core.path_spacing(100, 2, 4) == 31


def test_distant_segments_are_compatible(spacing_and_clearance):
    spacing, clearance = spacing_and_clearance
    far = _seg((0, 100), (100, 100))
    assert check_pair(far, PLACED, spacing, clearance) is None


def test_pad_clearance_between_endpoints(spacing_and_clearance):
    spacing, clearance = spacing_and_clearance
    near_pad = _seg((100, 8), (100, 108))
    assert check_pair(near_pad, PLACED, spacing, clearance) == 'pad-clearance'


def test_endpoint_to_path_clearance(spacing_and_clearance):
    spacing, clearance = spacing_and_clearance
    poking = _seg((50, 10), (50, 110))
    assert check_pair(poking, PLACED, spacing, clearance) == 'endpoint-clearance'
    # Symmetric: the placed segment's endpoint against the candidate path
    over_end = _seg((-50, 10), (150, 10))
    assert check_pair(over_end, PLACED, spacing, clearance) == 'endpoint-clearance'


def test_mid_path_crossing_is_rejected(spacing_and_clearance):
    spacing, clearance = spacing_and_clearance
    crossing = _seg((50, -50), (50, 50))
    assert check_pair(crossing, PLACED, spacing, clearance) == 'crossing'


def test_path_spacing_catches_interior_vertices(spacing_and_clearance):
    spacing, clearance = spacing_and_clearance
    dip = _seg((30, 30), (50, 5), (70, 30))
    assert check_pair(dip, PLACED, spacing, clearance) == 'spacing'
    shallow_dip = _seg((30, 30), (50, 8), (70, 30))
    assert check_pair(shallow_dip, PLACED, spacing, clearance) is None


def test_shared_endpoint_still_needs_path_spacing(spacing_and_clearance):
    spacing, clearance = spacing_and_clearance
    joined = _seg((100, 0), (100, 100))
    assert check_pair(joined, PLACED, spacing, clearance) == 'spacing'


def test_longest_candidate_wins(spacing_and_clearance):
    spacing, clearance = spacing_and_clearance
    short = create_segment(50, -40, 90, 80)
    long_ = create_segment(0, 0, 0, 120)
    state = circuit_core.place_segments([short, long_], spacing, clearance)
    assert state.segments == [long_]
    assert state.rejections['crossing'] == 1


def test_ties_keep_input_order(spacing_and_clearance):
    spacing, clearance = spacing_and_clearance
    first = create_segment(0, 0, 0, 100)
    second = create_segment(0, 3, 0, 100)
    state = circuit_core.place_segments([first, second], spacing, clearance)
    assert state.segments == [first]


def test_length_window_skips_candidates(spacing_and_clearance):
    spacing, clearance = spacing_and_clearance
    too_long = create_segment(0, 0, 0, 200)
    ok = create_segment(0, 100, 0, 100)
    state = circuit_core.place_segments([too_long, ok], spacing, clearance,
                                        length_window=(20, 150))
    assert state.segments == [ok]
    assert state.rejections['length'] == 1


def test_progress_callback_reports_every_candidate(spacing_and_clearance):
    spacing, clearance = spacing_and_clearance
    calls = []
    candidates = [create_segment(0, y, 0, 50) for y in range(0, 200, 40)]
    circuit_core.place_segments(candidates, spacing, clearance,
                                progress_callback=lambda cur, total: calls.append((cur, total)))
    assert calls == [(n, 5) for n in range(1, 6)]


def test_grid_index_matches_brute_force(spacing_and_clearance):
    spacing, clearance = spacing_and_clearance
    rng = random.Random(2024)
    candidates = circuit_core.create_candidate_segments(
        (0, 0, 300, 300), 20, 'organic', rng, length_min=20, length_max=150)
    state = circuit_core.place_segments(candidates, spacing, clearance)

    brute = []
    for cand in sorted(candidates, key=lambda s: s.length, reverse=True):
        if circuit_core.can_place_segment(cand, brute, spacing, clearance):
            brute.append(cand)
    assert [s.points for s in state.segments] == [s.points for s in brute]


def test_placed_segments_keep_clearance(spacing_and_clearance):
    spacing, clearance = spacing_and_clearance
    rng = random.Random(31)
    candidates = circuit_core.create_candidate_segments(
        (0, 0, 400, 300), 20, 'organic', rng, length_min=20, length_max=150)
    placed = circuit_core.place_segments(candidates, spacing, clearance).segments
    assert placed
    for i, a in enumerate(placed):
        for b in placed[i + 1:]:
            assert a.line.distance(b.line) >= spacing
            assert check_pair(b, a, spacing, clearance) is None


def test_placement_state_is_not_shared_between_calls(spacing_and_clearance):
    spacing, clearance = spacing_and_clearance
    seg = create_segment(0, 0, 0, 100)
    first = circuit_core.place_segments([seg], spacing, clearance)
    second = circuit_core.place_segments([seg], spacing, clearance)
    assert first is not second
    assert first.segments == [seg]
    assert second.segments == [seg]
