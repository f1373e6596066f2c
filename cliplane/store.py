from __future__ import annotations

import copy
import math
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from .errors import ValidationError
from .model import MIN_CLIP_SEC, Clip, Workspace, clamp_volume
from .timeline import EPS, find_clip, overlapping_clip


Listener = Callable[[int], None]


def _finite(value: Any, what: str) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{what} must be a number") from None
    if not math.isfinite(v):
        raise ValidationError(f"{what} must be finite")
    return v


def _check_clip(clip: Clip, track_count: int) -> None:
    """Per-clip invariants (everything except overlap with other clips)."""
    start = _finite(clip.timeline_start, "Timeline start")
    end = _finite(clip.timeline_end, "Timeline end")
    ts = _finite(clip.trim_start, "Trim start")
    te = _finite(clip.trim_end, "Trim end")
    if start < 0:
        raise ValidationError("Clip cannot start before 0")
    if end <= start:
        raise ValidationError("Clip must end after it starts")
    if ts < 0 or te <= ts:
        raise ValidationError("Invalid trim range")
    if clip.source_duration is not None and te > clip.source_duration + EPS:
        raise ValidationError("Trim end is past the end of the source")
    if clip.track < 0 or clip.track >= track_count:
        raise ValidationError(f"Track {clip.track} is out of range (0..{track_count - 1})")


class WorkspaceStore:
    """
    Sole writer of the Workspace.

    Every operation validates the complete new state first and either commits it
    (bumping `version` and notifying listeners) or raises ValidationError with the
    workspace left untouched.
    """

    def __init__(self, workspace: Optional[Workspace] = None) -> None:
        self._ws = workspace.copy() if workspace is not None else Workspace()
        self._version = 0
        self._listeners: List[Listener] = []

    # ---------- read side ----------
    @property
    def version(self) -> int:
        return self._version

    @property
    def workspace(self) -> Workspace:
        """Live view for read-only use (rendering, hit tests). Do not mutate."""
        return self._ws

    def snapshot(self) -> Workspace:
        return self._ws.copy()

    def clips(self) -> List[Clip]:
        return list(self._ws.clips)

    def get(self, clip_id: Optional[str]) -> Optional[Clip]:
        return find_clip(self._ws.clips, clip_id)

    def to_dict(self) -> Dict[str, Any]:
        return self._ws.to_dict()

    # ---------- listeners ----------
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def _commit(self, ws: Workspace) -> None:
        self._ws = ws
        self._version += 1
        for listener in list(self._listeners):
            listener(self._version)

    def _require(self, clip_id: str) -> Clip:
        c = find_clip(self._ws.clips, clip_id)
        if c is None:
            raise ValidationError(f"Clip not found: {clip_id}")
        return c

    def _check_track(self, track: int) -> int:
        t = int(track)
        if t < 0 or t >= self._ws.track_count:
            raise ValidationError(f"Track {t} is out of range (0..{self._ws.track_count - 1})")
        return t

    def _check_free(self, track: int, start: float, end: float, ignore_id: Optional[str]) -> None:
        other = overlapping_clip(self._ws.clips, track, start, end, ignore_id=ignore_id)
        if other is not None:
            raise ValidationError(
                f"Overlaps {other.name} on track {track} "
                f"[{other.timeline_start:.2f}, {other.timeline_end:.2f})"
            )

    def _with_clip(self, updated: Clip) -> Workspace:
        ws = copy.copy(self._ws)
        ws.clips = [updated if c.id == updated.id else c for c in self._ws.clips]
        return ws

    # ---------- clip operations ----------
    def add_clip(self, clip: Clip) -> Clip:
        """Hand-off point for import/record/drop collaborators."""
        if find_clip(self._ws.clips, clip.id) is not None:
            raise ValidationError(f"Duplicate clip id: {clip.id}")
        _check_clip(clip, self._ws.track_count)
        self._check_free(clip.track, clip.timeline_start, clip.timeline_end, ignore_id=None)

        added = replace(clip, volume=clamp_volume(clip.volume))
        ws = copy.copy(self._ws)
        ws.clips = [*self._ws.clips, added]
        self._commit(ws)
        return added

    def move_clip(self, clip_id: str, new_start: float, new_track: int) -> Clip:
        c = self._require(clip_id)
        start = _finite(new_start, "Clip start")
        if start < 0:
            raise ValidationError("Clip cannot start before 0")
        track = self._check_track(new_track)
        end = start + c.duration
        self._check_free(track, start, end, ignore_id=c.id)

        moved = replace(c, timeline_start=start, timeline_end=end, track=track)
        self._commit(self._with_clip(moved))
        return moved

    def trim_clip(
        self,
        clip_id: str,
        new_trim_start: float,
        new_trim_end: float,
        anchor_end: bool = False,
    ) -> Clip:
        """
        Set a clip's in/out points; the timeline length follows the trimmed duration.

        By default the clip stays anchored at timeline_start. With anchor_end=True
        the right edge stays put and the left edge moves instead, which is how a
        trim-start handle drag behaves.
        """
        c = self._require(clip_id)
        ts = _finite(new_trim_start, "Trim start")
        te = _finite(new_trim_end, "Trim end")
        if ts < 0:
            raise ValidationError("Trim start must be >= 0")
        if te <= ts:
            raise ValidationError("Trim handles cannot cross")
        if te - ts < MIN_CLIP_SEC - EPS:
            raise ValidationError(f"Clip must be at least {MIN_CLIP_SEC:.1f}s long")
        if c.source_duration is not None and te > c.source_duration + EPS:
            raise ValidationError("Trim end is past the end of the source")
        if anchor_end:
            end = c.timeline_end
            start = end - (te - ts)
            if start < -EPS:
                raise ValidationError("Clip cannot start before 0")
            start = max(0.0, start)
        else:
            start = c.timeline_start
            end = start + (te - ts)
        self._check_free(c.track, start, end, ignore_id=c.id)

        trimmed = replace(c, trim_start=ts, trim_end=te, timeline_start=start, timeline_end=end)
        self._commit(self._with_clip(trimmed))
        return trimmed

    def delete_clip(self, clip_id: str) -> None:
        self._require(clip_id)
        ws = copy.copy(self._ws)
        ws.clips = [c for c in self._ws.clips if c.id != clip_id]
        if ws.selected_clip_id == clip_id:
            ws.selected_clip_id = None
        self._commit(ws)

    def set_volume(self, clip_id: str, volume: float) -> Clip:
        c = self._require(clip_id)
        updated = replace(c, volume=clamp_volume(volume))
        self._commit(self._with_clip(updated))
        return updated

    def set_muted(self, clip_id: str, muted: bool) -> Clip:
        c = self._require(clip_id)
        updated = replace(c, muted=bool(muted))
        self._commit(self._with_clip(updated))
        return updated

    # ---------- workspace operations ----------
    def set_playhead(self, time_sec: float) -> float:
        t = max(0.0, _finite(time_sec, "Playhead"))
        ws = copy.copy(self._ws)
        ws.playhead = t
        self._commit(ws)
        return t

    def select(self, clip_id: Optional[str]) -> None:
        if clip_id is not None:
            self._require(clip_id)
        ws = copy.copy(self._ws)
        ws.selected_clip_id = clip_id
        self._commit(ws)

    def set_zoom(self, zoom: float) -> None:
        z = _finite(zoom, "Zoom")
        if not z > 0:
            raise ValidationError("Zoom must be > 0")
        ws = copy.copy(self._ws)
        ws.zoom = z
        self._commit(ws)

    def set_scroll(self, offset: float) -> None:
        ws = copy.copy(self._ws)
        ws.scroll_offset = max(0.0, _finite(offset, "Scroll offset"))
        self._commit(ws)

    def set_track_count(self, count: int) -> None:
        n = int(count)
        used = max((c.track for c in self._ws.clips), default=-1) + 1
        if n < 1 or n < used:
            raise ValidationError(f"Track count {n} would drop clips (tracks in use: {used})")
        ws = copy.copy(self._ws)
        ws.track_count = n
        self._commit(ws)

    def restore(self, d: Dict[str, Any]) -> None:
        """
        Replace the whole workspace from its serialized shape.

        The loaded state goes through the same per-clip checks as add_clip plus a
        global overlap pass; anything malformed raises ValidationError and the
        current workspace stays as it was.
        """
        if not isinstance(d, dict):
            raise ValidationError("Workspace data must be a mapping")
        try:
            ws = Workspace.from_dict(d)
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed workspace data: {e!r}") from e

        seen = set()
        for c in ws.clips:
            if c.id in seen:
                raise ValidationError(f"Duplicate clip id: {c.id}")
            seen.add(c.id)
            _check_clip(c, ws.track_count)
        for what, value in (("Playhead", ws.playhead), ("Zoom", ws.zoom), ("Scroll offset", ws.scroll_offset)):
            _finite(value, what)

        for t in sorted({c.track for c in ws.clips}):
            on_track = sorted((c for c in ws.clips if c.track == t), key=lambda c: c.timeline_start)
            for a, b in zip(on_track, on_track[1:]):
                if b.timeline_start < a.timeline_end - EPS:
                    raise ValidationError(f"Clips {a.id} and {b.id} overlap on track {t}")
        self._commit(ws)
