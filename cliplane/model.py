from __future__ import annotations

import copy
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

# Shortest clip the timeline accepts after a trim (seconds).
MIN_CLIP_SEC = 0.1

RESOLUTION_PRESETS: Dict[str, Tuple[int, int]] = {
    "480p": (854, 480),
    "720p": (1280, 720),
    "1080p": (1920, 1080),
    "4K": (3840, 2160),
}
# "source" would need a probe of the first clip; keep the export deterministic instead.
SOURCE_FALLBACK_RESOLUTION = (1280, 720)


def new_id() -> str:
    """Generate a stable unique id for UI/timeline operations."""
    return uuid.uuid4().hex


def clamp_volume(v: Any) -> float:
    try:
        vol = float(v)
    except Exception:
        return 1.0
    if vol != vol:  # NaN
        return 1.0
    return max(0.0, min(1.0, vol))


@dataclass
class Clip:
    """
    Timeline placement of a trimmed source segment.

    Attributes:
        source_ref: opaque handle owned by the import collaborator (a file path for local media)
        timeline_start/timeline_end: placement on the timeline (seconds)
        trim_start/trim_end: in/out points within the source media (seconds)
        source_duration: probed length of the source, None when unknown
    """

    id: str
    source_ref: str
    timeline_start: float
    timeline_end: float
    trim_start: float
    trim_end: float
    track: int = 0
    volume: float = 1.0
    muted: bool = False
    source_duration: Optional[float] = None

    @property
    def duration(self) -> float:
        return max(0.0, self.timeline_end - self.timeline_start)

    @property
    def trim_duration(self) -> float:
        return max(0.0, self.trim_end - self.trim_start)

    @property
    def name(self) -> str:
        return Path(str(self.source_ref)).name

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Clip":
        raw_src_dur = d.get("source_duration", None)
        try:
            source_duration = None if raw_src_dur is None else float(raw_src_dur)
        except Exception:
            source_duration = None
        return Clip(
            id=str(d["id"]),
            source_ref=str(d["source_ref"]),
            timeline_start=float(d["timeline_start"]),
            timeline_end=float(d["timeline_end"]),
            trim_start=float(d["trim_start"]),
            trim_end=float(d["trim_end"]),
            track=int(d.get("track", 0) or 0),
            volume=clamp_volume(d.get("volume", 1.0)),
            muted=bool(d.get("muted", False)),
            source_duration=source_duration,
        )

    @staticmethod
    def from_source(
        source_ref: str,
        duration: float,
        timeline_start: float = 0.0,
        track: int = 0,
    ) -> "Clip":
        """Full-length clip for freshly imported media."""
        dur = float(duration)
        start = max(0.0, float(timeline_start))
        return Clip(
            id=new_id(),
            source_ref=str(source_ref),
            timeline_start=start,
            timeline_end=start + dur,
            trim_start=0.0,
            trim_end=dur,
            track=int(track),
            source_duration=dur,
        )


@dataclass
class Workspace:
    """The single editor aggregate. Mutate only through WorkspaceStore."""

    clips: List[Clip] = field(default_factory=list)
    playhead: float = 0.0
    zoom: float = 10.0  # px per second
    scroll_offset: float = 0.0
    selected_clip_id: Optional[str] = None
    track_count: int = 2

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clips": [c.to_dict() for c in self.clips],
            "playhead": self.playhead,
            "zoom": self.zoom,
            "scroll_offset": self.scroll_offset,
            "selected_clip_id": self.selected_clip_id,
            "track_count": self.track_count,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Workspace":
        if not isinstance(d, dict):
            return Workspace()
        raw = d.get("clips", [])
        clips = [Clip.from_dict(x) for x in raw if isinstance(x, dict)] if isinstance(raw, list) else []
        try:
            zoom = float(d.get("zoom", 10.0))
        except Exception:
            zoom = 10.0
        if zoom <= 0:
            zoom = 10.0
        selected = d.get("selected_clip_id", None)
        if selected is not None and not any(c.id == str(selected) for c in clips):
            # Weak reference: a dangling selection is dropped.
            selected = None
        used_tracks = max((c.track for c in clips), default=-1) + 1
        try:
            track_count = int(d.get("track_count", 2))
        except Exception:
            track_count = 2
        return Workspace(
            clips=clips,
            playhead=max(0.0, float(d.get("playhead", 0.0) or 0.0)),
            zoom=zoom,
            scroll_offset=max(0.0, float(d.get("scroll_offset", 0.0) or 0.0)),
            selected_clip_id=None if selected is None else str(selected),
            track_count=max(1, track_count, used_tracks),
        )

    def copy(self) -> "Workspace":
        return copy.deepcopy(self)


@dataclass
class ExportSettings:
    """
    Output encoding settings used by the export pipeline.

    Notes:
    - resolution is a preset name; "source" falls back to 720p (no probe at export time)
    - clips are letterboxed into the target size (scale + pad)
    """

    resolution: str = "720p"
    video_codec: str = "libx264"
    preset: str = "medium"
    crf: int = 23
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    pixel_format: str = "yuv420p"

    @property
    def size(self) -> Tuple[int, int]:
        return RESOLUTION_PRESETS.get(self.resolution, SOURCE_FALLBACK_RESOLUTION)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ExportSettings":
        if not isinstance(d, dict):
            return ExportSettings()
        out = ExportSettings()
        res = str(d.get("resolution", out.resolution) or out.resolution)
        out.resolution = res if (res in RESOLUTION_PRESETS or res == "source") else out.resolution
        out.video_codec = str(d.get("video_codec", out.video_codec) or out.video_codec)
        out.preset = str(d.get("preset", out.preset) or out.preset)
        try:
            out.crf = max(0, min(51, int(d.get("crf", out.crf))))
        except Exception:
            out.crf = 23
        out.audio_codec = str(d.get("audio_codec", out.audio_codec) or out.audio_codec)
        out.audio_bitrate = str(d.get("audio_bitrate", out.audio_bitrate) or out.audio_bitrate)
        out.pixel_format = str(d.get("pixel_format", out.pixel_format) or out.pixel_format)
        return out


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass(frozen=True)
class SegmentSpec:
    source_path: str
    trim_start: float
    trim_end: float
    track: int = 0
    volume: float = 1.0
    muted: bool = False

    @property
    def duration(self) -> float:
        return max(0.0, self.trim_end - self.trim_start)


@dataclass
class TranscodeJob:
    segments: List[SegmentSpec]
    output_path: str
    width: int
    height: int
    settings: ExportSettings = field(default_factory=ExportSettings)
    id: str = field(default_factory=new_id)
    status: JobStatus = JobStatus.QUEUED
    progress_percent: float = 0.0
    error: str = ""
    temp_dir: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def expected_duration(self) -> float:
        return sum(s.duration for s in self.segments)

    @property
    def is_multi(self) -> bool:
        return len(self.segments) > 1
