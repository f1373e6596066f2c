from __future__ import annotations

from typing import Iterable, List, Optional

from .model import Clip

# Float slack for interval comparisons; clips that merely touch do not overlap.
EPS = 1e-9


def find_clip(clips: Iterable[Clip], clip_id: Optional[str]) -> Optional[Clip]:
    if clip_id is None:
        return None
    for c in clips:
        if c.id == clip_id:
            return c
    return None


def clips_on_track(clips: Iterable[Clip], track: int) -> List[Clip]:
    return sorted((c for c in clips if c.track == int(track)), key=lambda c: c.timeline_start)


def intervals_overlap(a_start: float, a_end: float, b_start: float, b_end: float) -> bool:
    """Half-open [start, end) intersection test."""
    return a_start < b_end - EPS and b_start < a_end - EPS


def overlapping_clip(
    clips: Iterable[Clip],
    track: int,
    start: float,
    end: float,
    ignore_id: Optional[str] = None,
) -> Optional[Clip]:
    """First clip on `track` whose interval intersects [start, end), skipping `ignore_id`."""
    for c in clips:
        if c.id == ignore_id or c.track != int(track):
            continue
        if intervals_overlap(start, end, c.timeline_start, c.timeline_end):
            return c
    return None


def timeline_order(clips: Iterable[Clip]) -> List[Clip]:
    """Clips in playback order: by start time, then by track."""
    return sorted(clips, key=lambda c: (c.timeline_start, c.track))


def clip_at(clips: Iterable[Clip], time_sec: float) -> Optional[Clip]:
    """
    Clip whose [timeline_start, timeline_end) contains `time_sec`.

    When several tracks have a clip at that time the lowest track wins.
    """
    t = float(time_sec)
    hits = [c for c in clips if c.timeline_start <= t < c.timeline_end]
    if not hits:
        return None
    return min(hits, key=lambda c: (c.track, c.timeline_start))


def total_duration(clips: Iterable[Clip]) -> float:
    """End of the last clip on any track."""
    return max((c.timeline_end for c in clips), default=0.0)


def snap_to_grid(value: float, grid_sec: float) -> float:
    """Round to the nearest multiple of `grid_sec` (no-op for a non-positive grid)."""
    g = float(grid_sec or 0.0)
    if g <= 0.0:
        return float(value)
    return round(float(value) / g) * g


def nearest_track(y_px: float, track_top: float, track_height: float, track_count: int) -> int:
    """Track whose vertical center is closest to `y_px`, clamped to [0, track_count)."""
    if track_count <= 1 or track_height <= 0:
        return 0
    # Centers sit at track_top + (i + 0.5) * track_height, so rounding recovers i.
    idx = int(round((float(y_px) - float(track_top)) / float(track_height) - 0.5))
    return max(0, min(int(track_count) - 1, idx))
