"""
Pointer-driven editing for the timeline surface.

The controller turns pointer-down / move / up into exactly one store commit per
gesture. Between down and up it only keeps a local DragPreview the renderer can
draw; the workspace is never touched mid-drag.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

from .coords import Viewport
from .errors import ValidationError
from .model import MIN_CLIP_SEC, Clip
from .store import WorkspaceStore
from .timeline import nearest_track, snap_to_grid

log = logging.getLogger("cliplane.drag")


class DragKind(Enum):
    NONE = "none"
    CLIP_BODY = "clip_body"
    TRIM_START = "trim_start"
    TRIM_END = "trim_end"
    PLAYHEAD = "playhead"


@dataclass(frozen=True)
class DragTarget:
    kind: DragKind
    clip_id: Optional[str] = None

    @staticmethod
    def none() -> "DragTarget":
        return DragTarget(DragKind.NONE)

    @staticmethod
    def playhead() -> "DragTarget":
        return DragTarget(DragKind.PLAYHEAD)


@dataclass(frozen=True)
class TimelineLayout:
    """Pixel metrics of the timeline surface (everything left of label_width is lane labels)."""

    label_width: float = 78.0
    ruler_height: float = 40.0
    track_height: float = 80.0
    trim_handle_px: float = 12.0
    playhead_handle_px: float = 14.0

    def track_top(self, track: int) -> float:
        return self.ruler_height + int(track) * self.track_height

    def track_center(self, track: int) -> float:
        return self.track_top(track) + self.track_height / 2.0


@dataclass(frozen=True)
class DragPreview:
    """Uncommitted visual state of the current gesture."""

    target: DragTarget
    timeline_start: float = 0.0
    timeline_end: float = 0.0
    trim_start: float = 0.0
    trim_end: float = 0.0
    track: int = 0
    playhead: float = 0.0


@dataclass
class DragSession:
    target: DragTarget
    pointer_origin: Tuple[float, float]
    origin_clip: Optional[Clip] = None
    origin_playhead: float = 0.0
    candidate_track: Optional[int] = None


def _unhandled(kind: DragKind) -> AssertionError:
    return AssertionError(f"unhandled drag kind: {kind!r}")


class DragController:
    """
    Idle -> Dragging{ClipBody,TrimStart,TrimEnd,Playhead} -> Idle.

    Args:
        store: the only place edits are committed to
        layout: pixel metrics used for hit testing and track resolution
        snap_grid_sec: grid applied on release (0 disables snapping)
        on_warning: receives a message when a release is rejected
        frame_interval: minimum seconds between redraw requests while dragging
        clock: monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        store: WorkspaceStore,
        layout: Optional[TimelineLayout] = None,
        snap_grid_sec: float = 0.0,
        on_warning: Optional[Callable[[str], None]] = None,
        frame_interval: float = 1.0 / 60.0,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.store = store
        self.layout = layout or TimelineLayout()
        self.snap_grid_sec = max(0.0, float(snap_grid_sec or 0.0))
        self.on_warning = on_warning
        self.frame_interval = max(0.0, float(frame_interval))
        self._clock = clock
        self._session: Optional[DragSession] = None
        self._preview: Optional[DragPreview] = None
        self._last_frame: Optional[float] = None

    # ---------- state ----------
    @property
    def state(self) -> DragKind:
        return self._session.target.kind if self._session else DragKind.NONE

    @property
    def session(self) -> Optional[DragSession]:
        return self._session

    def preview(self) -> Optional[DragPreview]:
        return self._preview

    def viewport(self) -> Viewport:
        ws = self.store.workspace
        return Viewport(zoom=ws.zoom, scroll_offset=ws.scroll_offset, label_width=self.layout.label_width)

    # ---------- hit testing ----------
    def hit_test(self, x: float, y: float) -> DragTarget:
        """Priority: trim handle > playhead handle > clip body > nothing (direct seek)."""
        ws = self.store.workspace
        vp = self.viewport()
        lay = self.layout

        body_hit: Optional[Clip] = None
        for c in sorted(ws.clips, key=lambda c: (c.track, c.timeline_start)):
            top = lay.track_top(c.track)
            if not (top <= y < top + lay.track_height):
                continue
            left = vp.to_pixel(c.timeline_start)
            right = vp.to_pixel(c.timeline_end)
            if left <= x <= left + lay.trim_handle_px:
                return DragTarget(DragKind.TRIM_START, c.id)
            if right - lay.trim_handle_px <= x <= right:
                return DragTarget(DragKind.TRIM_END, c.id)
            if body_hit is None and left <= x < right:
                body_hit = c

        if abs(x - vp.to_pixel(ws.playhead)) <= lay.playhead_handle_px / 2.0:
            return DragTarget.playhead()
        if body_hit is not None:
            return DragTarget(DragKind.CLIP_BODY, body_hit.id)
        return DragTarget.none()

    # ---------- pointer events ----------
    def pointer_down(self, x: float, y: float) -> DragTarget:
        if self._session is not None:
            self.cancel()
        target = self.hit_test(x, y)
        kind = target.kind

        if kind is DragKind.NONE:
            self._seek_to(x)
            return target

        clip = self.store.get(target.clip_id) if target.clip_id else None
        if kind in (DragKind.CLIP_BODY, DragKind.TRIM_START, DragKind.TRIM_END):
            if clip is None:
                return DragTarget.none()
            if self.store.workspace.selected_clip_id != clip.id:
                self.store.select(clip.id)
        elif kind is not DragKind.PLAYHEAD:
            raise _unhandled(kind)

        self._session = DragSession(
            target=target,
            pointer_origin=(float(x), float(y)),
            origin_clip=clip,
            origin_playhead=self.store.workspace.playhead,
            candidate_track=clip.track if clip else None,
        )
        self._preview = self._compute_preview(x, y)
        self._last_frame = None
        return target

    def pointer_move(self, x: float, y: float) -> bool:
        """
        Update the uncommitted preview. Returns True when a redraw is due; callers
        may drop intermediate events, the latest pointer position always wins.
        """
        if self._session is None:
            return False
        self._preview = self._compute_preview(x, y)
        now = self._clock()
        if self._last_frame is not None and now - self._last_frame < self.frame_interval:
            return False
        self._last_frame = now
        return True

    def pointer_up(self, x: float, y: float) -> bool:
        """Commit the gesture. Returns False when nothing was committed."""
        session = self._session
        if session is None:
            return False
        preview = self._compute_preview(x, y)
        self._session = None
        self._preview = None
        self._last_frame = None

        try:
            self._commit(session, preview)
        except ValidationError as ex:
            log.warning("edit rejected: %s", ex)
            self._warn(str(ex))
            return False
        return True

    def cancel(self) -> None:
        self._session = None
        self._preview = None
        self._last_frame = None

    # ---------- internals ----------
    def _warn(self, msg: str) -> None:
        if self.on_warning is not None:
            self.on_warning(msg)

    def _snap(self, value: float) -> float:
        if self.snap_grid_sec <= 0:
            return value
        return max(0.0, snap_to_grid(value, self.snap_grid_sec))

    @staticmethod
    def _clamp_trim_start(c: Clip, value: float) -> float:
        lo = max(0.0, c.trim_start - c.timeline_start)
        return max(lo, min(c.trim_end - MIN_CLIP_SEC, value))

    @staticmethod
    def _clamp_trim_end(c: Clip, value: float) -> float:
        upper = c.source_duration if c.source_duration is not None else float("inf")
        return max(c.trim_start + MIN_CLIP_SEC, min(upper, value))

    def _seek_to(self, x: float) -> None:
        t = max(0.0, self.viewport().to_time(x))
        self.store.set_playhead(self._snap(t))

    def _compute_preview(self, x: float, y: float) -> DragPreview:
        session = self._session
        assert session is not None
        target = session.target
        kind = target.kind
        zoom = self.store.workspace.zoom
        dt = (float(x) - session.pointer_origin[0]) / zoom

        if kind is DragKind.PLAYHEAD:
            t = max(0.0, self.viewport().to_time(x))
            return DragPreview(target=target, playhead=t)

        c = session.origin_clip
        if c is None:
            raise _unhandled(kind)

        if kind is DragKind.CLIP_BODY:
            start = max(0.0, c.timeline_start + dt)
            track = nearest_track(
                y,
                self.layout.ruler_height,
                self.layout.track_height,
                self.store.workspace.track_count,
            )
            session.candidate_track = track
            return DragPreview(
                target=target,
                timeline_start=start,
                timeline_end=start + c.duration,
                trim_start=c.trim_start,
                trim_end=c.trim_end,
                track=track,
            )
        if kind is DragKind.TRIM_START:
            # Right edge stays put; the left edge follows the pointer.
            trim_start = self._clamp_trim_start(c, c.trim_start + dt)
            return DragPreview(
                target=target,
                timeline_start=c.timeline_start + (trim_start - c.trim_start),
                timeline_end=c.timeline_end,
                trim_start=trim_start,
                trim_end=c.trim_end,
                track=c.track,
            )
        if kind is DragKind.TRIM_END:
            trim_end = self._clamp_trim_end(c, c.trim_end + dt)
            return DragPreview(
                target=target,
                timeline_start=c.timeline_start,
                timeline_end=c.timeline_start + (trim_end - c.trim_start),
                trim_start=c.trim_start,
                trim_end=trim_end,
                track=c.track,
            )
        raise _unhandled(kind)

    def _commit(self, session: DragSession, preview: DragPreview) -> None:
        kind = session.target.kind
        clip_id = session.target.clip_id

        if kind is DragKind.PLAYHEAD:
            self.store.set_playhead(self._snap(preview.playhead))
        elif kind is DragKind.CLIP_BODY:
            assert clip_id is not None
            self.store.move_clip(clip_id, self._snap(preview.timeline_start), preview.track)
        elif kind is DragKind.TRIM_START:
            c = session.origin_clip
            assert clip_id is not None and c is not None
            # Snap the visible edge, then pull the result back inside the legal range.
            edge = self._snap(preview.timeline_start)
            trim_start = self._clamp_trim_start(c, c.trim_start + (edge - c.timeline_start))
            self.store.trim_clip(clip_id, trim_start, c.trim_end, anchor_end=True)
        elif kind is DragKind.TRIM_END:
            c = session.origin_clip
            assert clip_id is not None and c is not None
            edge = self._snap(preview.timeline_end)
            trim_end = self._clamp_trim_end(c, c.trim_end + (edge - c.timeline_end))
            self.store.trim_clip(clip_id, c.trim_start, trim_end)
        elif kind is DragKind.NONE:
            return
        else:
            raise _unhandled(kind)
