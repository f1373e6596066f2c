"""
Keeps a live preview surface positioned on the workspace playhead.

Two directions feed each other: store commits push a seek to the surface, and
the surface reports its own time while playing, which moves the playhead. Each
update carries an Origin; an update is dropped while it would only echo the
opposite direction's last change (cooldown window).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from .model import Clip, Workspace
from .store import WorkspaceStore
from .timeline import clip_at, find_clip

log = logging.getLogger("cliplane.playback")


class Origin(Enum):
    STORE = "store"
    PREVIEW = "preview"


class PreviewSurface(Protocol):
    """What the synchronizer needs from a video player widget."""

    def load(self, source_ref: str, token: int) -> None: ...

    def seek(self, local_time: float) -> None: ...

    def set_audio(self, volume: float, muted: bool) -> None: ...

    def unload(self) -> None: ...


def resolve_active_clip(ws: Workspace) -> Optional[Clip]:
    """Selected clip first; otherwise the clip under the playhead (lowest track wins)."""
    selected = find_clip(ws.clips, ws.selected_clip_id)
    if selected is not None:
        return selected
    return clip_at(ws.clips, ws.playhead)


def local_time_for(clip: Clip, playhead: float) -> float:
    """Source-media time to show for `playhead`; freezes on the first/last trimmed frame."""
    t = clip.trim_start + (float(playhead) - clip.timeline_start)
    return max(clip.trim_start, min(clip.trim_end, t))


def playhead_for(clip: Clip, local_time: float) -> float:
    t = max(clip.trim_start, min(clip.trim_end, float(local_time)))
    return clip.timeline_start + (t - clip.trim_start)


@dataclass(frozen=True)
class PlaybackState:
    clip_id: Optional[str]
    local_time: Optional[float]
    token: int
    ready: bool


class PlaybackSynchronizer:
    def __init__(
        self,
        store: WorkspaceStore,
        surface: PreviewSurface,
        cooldown_sec: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.surface = surface
        self.cooldown_sec = max(0.0, float(cooldown_sec))
        self._clock = clock

        self._token = 0
        self._clip_id: Optional[str] = None
        self._source_ref: Optional[str] = None
        self._ready = False
        self._pending_seek: Optional[float] = None
        self._local_time: Optional[float] = None
        self._audio: Optional[tuple] = None
        self._last_store_push: Optional[float] = None
        self._last_preview_update: Optional[float] = None

        self._unsubscribe: Optional[Callable[[], None]] = store.subscribe(self._on_store_commit)
        self.sync()

    # ---------- read side ----------
    @property
    def token(self) -> int:
        return self._token

    @property
    def state(self) -> PlaybackState:
        return PlaybackState(
            clip_id=self._clip_id,
            local_time=self._local_time,
            token=self._token,
            ready=self._ready,
        )

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # ---------- store -> preview ----------
    def _on_store_commit(self, _version: int) -> None:
        self.sync(Origin.STORE)

    def _within(self, since: Optional[float]) -> bool:
        return since is not None and (self._clock() - since) < self.cooldown_sec

    def sync(self, origin: Origin = Origin.STORE) -> Optional[float]:
        """Re-derive the active clip and local time from the workspace and apply them."""
        ws = self.store.workspace
        clip = resolve_active_clip(ws)

        if clip is None:
            if self._clip_id is not None:
                self._unbind()
            return None

        if clip.id != self._clip_id or clip.source_ref != self._source_ref:
            self._bind(clip)

        self._apply_audio(clip)
        local = local_time_for(clip, ws.playhead)
        self._local_time = local

        if origin is Origin.STORE and self._within(self._last_preview_update):
            # The playhead moved because the preview reported time; don't seek it back.
            return local
        self._push_seek(local)
        return local

    def _bind(self, clip: Clip) -> None:
        self._token += 1
        self._clip_id = clip.id
        self._source_ref = clip.source_ref
        self._ready = False
        self._pending_seek = None
        self._audio = None
        log.debug("preview load %s (token=%d)", clip.source_ref, self._token)
        self.surface.load(clip.source_ref, self._token)

    def _unbind(self) -> None:
        self._token += 1
        self._clip_id = None
        self._source_ref = None
        self._ready = False
        self._pending_seek = None
        self._local_time = None
        self._audio = None
        self.surface.unload()

    def _apply_audio(self, clip: Clip) -> None:
        audio = (clip.volume, clip.muted)
        if audio == self._audio:
            return
        self._audio = audio
        self.surface.set_audio(clip.volume, clip.muted)

    def _push_seek(self, local: float) -> None:
        if not self._ready:
            self._pending_seek = local
            return
        self._last_store_push = self._clock()
        self.surface.seek(local)

    # ---------- preview -> store ----------
    def on_preview_ready(self, token: int) -> bool:
        if token != self._token or self._clip_id is None:
            log.debug("stale preview ready (token=%s, current=%s)", token, self._token)
            return False
        self._ready = True
        pending = self._pending_seek
        self._pending_seek = None
        if pending is not None:
            self._last_store_push = self._clock()
            self.surface.seek(pending)
        return True

    def on_preview_error(self, token: int, reason: str = "") -> bool:
        if token != self._token:
            log.debug("stale preview error (token=%s, current=%s)", token, self._token)
            return False
        log.warning("preview failed for %s: %s", self._source_ref, reason)
        self._ready = False
        self._pending_seek = None
        return True

    def on_preview_time(self, local_time: float, token: Optional[int] = None) -> bool:
        """
        Time reported by the playing surface. Moves the playhead unless it is the
        echo of a seek we just pushed. Returns True when the playhead was updated.
        """
        if token is not None and token != self._token:
            return False
        clip = self.store.get(self._clip_id)
        if clip is None or not self._ready:
            return False
        if self._within(self._last_store_push):
            return False

        self._last_preview_update = self._clock()
        self._local_time = max(clip.trim_start, min(clip.trim_end, float(local_time)))
        self.store.set_playhead(playhead_for(clip, local_time))
        return True
