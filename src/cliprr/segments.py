from typing import Any, Dict, List, Optional

Segment = Dict[str, Any]  # Dictionary containing at least 'start', 'end' (and optional 'score')


def windows_to_segments(
    flags: List[bool], scores: List[float], window_s: float, offset: float = 0.0
) -> List[Segment]:
    """
    Turn per-window match flags into raw segments, one per matched window.

    Args:
        flags: Whether each fixed-size window matched.
        scores: Per-window similarity (same length as flags).
        window_s: Window length in seconds.
        offset: Media time of window 0 (region start).
    """
    return [
        {
            "start": offset + i * window_s,
            "end": offset + (i + 1) * window_s,
            "score": scores[i],
        }
        for i, matched in enumerate(flags)
        if matched
    ]


def merge_segments(segments: List[Segment], merge_gap: float) -> List[Segment]:
    """
    Gap-tolerant merging of matched windows into contiguous runs.

    1. Sort by start time (input may be unsorted or overlapping)
    2. Merge segments if the gap between them is <= merge_gap
    3. The merged score is the duration-weighted mean of the parts, so a
       long strong run is not diluted by a short weak neighbour

    Args:
        segments: List of dicts with 'start' and 'end' keys (and optional 'score').
        merge_gap: Max gap in seconds between segments to trigger a merge.

    Returns:
        New list of merged segments (sorted).
    """
    if not segments:
        return []

    sorted_segs = sorted(segments, key=lambda x: (x["start"], x["end"]))

    merged = []
    current = sorted_segs[0].copy()
    current_weight = current["end"] - current["start"]
    current_total = current.get("score", 0.0) * current_weight

    for next_seg in sorted_segs[1:]:
        gap = next_seg["start"] - current["end"]

        if gap <= merge_gap:
            weight = next_seg["end"] - next_seg["start"]
            current["end"] = max(current["end"], next_seg["end"])
            current_total += next_seg.get("score", 0.0) * weight
            current_weight += weight
        else:
            if current_weight > 0:
                current["score"] = current_total / current_weight
            merged.append(current)
            current = next_seg.copy()
            current_weight = current["end"] - current["start"]
            current_total = current.get("score", 0.0) * current_weight

    # Don't forget the last segment
    if current_weight > 0:
        current["score"] = current_total / current_weight
    merged.append(current)
    return merged


def clamp_segments(
    segments: List[Segment], min_time: float, max_time: float
) -> List[Segment]:
    """
    Clamp segment start/end times to valid range [min_time, max_time].
    Removes segments that become invalid (start >= end) after clamping.
    """
    clamped = []
    for seg in segments:
        new_seg = seg.copy()
        new_seg["start"] = max(min_time, new_seg["start"])
        new_seg["end"] = min(max_time, new_seg["end"])

        if new_seg["end"] > new_seg["start"]:
            clamped.append(new_seg)

    return clamped


def filter_duration(
    segments: List[Segment], min_duration: float, max_duration: Optional[float] = None
) -> List[Segment]:
    """
    Keep segments with min_duration <= duration (<= max_duration when given).
    """
    return [
        s
        for s in segments
        if (s["end"] - s["start"]) >= min_duration
        and (max_duration is None or (s["end"] - s["start"]) <= max_duration)
    ]
