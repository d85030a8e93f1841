import pytest

from cliprr.segments import (
    clamp_segments,
    filter_duration,
    merge_segments,
    windows_to_segments,
)

# ============================================================================
# Window -> segment conversion
# ============================================================================


def test_windows_to_segments_keeps_matched_windows():
    segs = windows_to_segments([False, True, True, False], [0.1, 0.9, 0.8, 0.2], window_s=2.0)
    assert segs == [
        {"start": 2.0, "end": 4.0, "score": 0.9},
        {"start": 4.0, "end": 6.0, "score": 0.8},
    ]


def test_windows_to_segments_offset():
    segs = windows_to_segments([True], [0.95], window_s=2.0, offset=1800.0)
    assert segs[0]["start"] == 1800.0
    assert segs[0]["end"] == 1802.0


def test_windows_to_segments_no_matches():
    assert windows_to_segments([False, False], [0.1, 0.2], window_s=2.0) == []


# ============================================================================
# Gap-tolerant merging
# ============================================================================


def test_merge_gap_boundary_cases():
    """Test merging behavior exactly at and around merge_gap boundary."""
    # Gap exactly at merge_gap
    segs = [{"start": 0, "end": 1}, {"start": 3, "end": 4}]  # gap=2.0
    merged = merge_segments(segs, merge_gap=2.0)
    assert len(merged) == 1  # gap <= merge_gap, should merge

    # Gap just over merge_gap
    segs = [{"start": 0, "end": 1}, {"start": 3.1, "end": 4}]  # gap=2.1
    merged = merge_segments(segs, merge_gap=2.0)
    assert len(merged) == 2  # gap > merge_gap, should NOT merge


def test_merge_three_consecutive_segments():
    """Test merging 3+ consecutive windows within merge_gap."""
    segs = [
        {"start": 0, "end": 2, "score": 0.9},
        {"start": 2, "end": 4, "score": 0.9},
        {"start": 6, "end": 8, "score": 0.9},  # gap=2
    ]
    merged = merge_segments(segs, merge_gap=4.0)
    assert len(merged) == 1
    assert merged[0]["start"] == 0
    assert merged[0]["end"] == 8


def test_merge_score_is_duration_weighted():
    segs = [
        {"start": 0, "end": 6, "score": 0.9},  # 6s
        {"start": 6, "end": 8, "score": 0.5},  # 2s
    ]
    merged = merge_segments(segs, merge_gap=0.0)
    assert merged[0]["score"] == pytest.approx((0.9 * 6 + 0.5 * 2) / 8)


def test_merge_unsorted_and_overlapping():
    segs = [
        {"start": 10, "end": 14, "score": 0.8},
        {"start": 0, "end": 4, "score": 0.8},
        {"start": 3, "end": 5, "score": 0.8},
    ]
    merged = merge_segments(segs, merge_gap=1.0)
    assert [(s["start"], s["end"]) for s in merged] == [(0, 5), (10, 14)]


def test_merge_does_not_mutate_input():
    segs = [{"start": 0, "end": 2, "score": 0.9}, {"start": 2, "end": 4, "score": 0.7}]
    merge_segments(segs, merge_gap=1.0)
    assert segs[0] == {"start": 0, "end": 2, "score": 0.9}


def test_merge_empty():
    assert merge_segments([], merge_gap=4.0) == []


# ============================================================================
# Clamping and duration filtering
# ============================================================================


def test_clamp_segments():
    segs = [{"start": -1.0, "end": 5.0}, {"start": 58.0, "end": 65.0}, {"start": 70.0, "end": 80.0}]
    clamped = clamp_segments(segs, 0.0, 60.0)
    assert clamped == [{"start": 0.0, "end": 5.0}, {"start": 58.0, "end": 60.0}]


def test_filter_duration_bounds():
    segs = [
        {"start": 0, "end": 10},  # too short
        {"start": 20, "end": 50},  # ok
        {"start": 100, "end": 400},  # too long
    ]
    assert filter_duration(segs, 15.0, 240.0) == [{"start": 20, "end": 50}]


def test_filter_duration_inclusive():
    segs = [{"start": 0, "end": 15}, {"start": 20, "end": 260}]
    assert len(filter_duration(segs, 15.0, 240.0)) == 2


def test_filter_duration_without_max():
    segs = [{"start": 0, "end": 1000}]
    assert filter_duration(segs, 15.0) == segs
