from __future__ import annotations

import json
import logging
import os
import platform
import re
import shutil
import stat
import subprocess
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import ExecutionError, ExportCancelled, TranscoderNotFound

log = logging.getLogger("cliplane.ffmpeg")

# Lines of stderr kept for error reports.
DIAGNOSTIC_TAIL_LINES = 40


@dataclass(frozen=True)
class MediaInfo:
    """What the import collaborator hands over for a media file."""

    duration: float
    has_video: bool
    has_audio: bool
    width: int = 0
    height: int = 0
    codec: str = ""
    fps: float = 0.0
    bit_rate: int = 0


@dataclass(frozen=True)
class TranscodeCommand:
    """
    Pure description of one ffmpeg invocation.

    Setters return a new command, so a partially configured command can be reused
    as a template. build_args() produces the argument list without the binary and
    performs no I/O.
    """

    input_path: Optional[str] = None
    output_path: Optional[str] = None
    trim_start: Optional[float] = None
    trim_duration: Optional[float] = None
    scale_width: Optional[int] = None
    scale_height: Optional[int] = None
    scale_pad: bool = False
    video_codec: Optional[str] = None
    preset: Optional[str] = None
    crf: Optional[int] = None
    pixel_format: Optional[str] = None
    audio_codec: Optional[str] = None
    audio_bitrate: Optional[str] = None
    copy_streams: bool = False
    concat_manifest: Optional[str] = None
    concat_paths: Tuple[str, ...] = field(default_factory=tuple)
    gain: Optional[float] = None
    muted: bool = False
    thumbnail_time: Optional[float] = None
    progress: bool = False

    # ---------- fluent setters ----------
    def input(self, path: str) -> "TranscodeCommand":
        return replace(self, input_path=str(path))

    def output(self, path: str) -> "TranscodeCommand":
        return replace(self, output_path=str(path))

    def trim(self, start: float, duration: float) -> "TranscodeCommand":
        if float(start) < 0 or float(duration) <= 0:
            raise ValueError(f"Invalid trim: start={start} duration={duration}")
        return replace(self, trim_start=float(start), trim_duration=float(duration))

    def scale(self, width: int, height: Optional[int] = None, pad: bool = True) -> "TranscodeCommand":
        """Fit into width x height; with pad=True the frame is letterboxed to keep aspect ratio."""
        return replace(
            self,
            scale_width=int(width),
            scale_height=None if height is None else int(height),
            scale_pad=bool(pad and height is not None),
        )

    def video_encode(
        self,
        codec: str = "libx264",
        preset: str = "medium",
        crf: int = 23,
        pixel_format: Optional[str] = "yuv420p",
    ) -> "TranscodeCommand":
        if self.copy_streams:
            raise ValueError("stream_copy() and video_encode() are mutually exclusive")
        return replace(self, video_codec=codec, preset=preset, crf=int(crf), pixel_format=pixel_format)

    def audio_encode(self, codec: str = "aac", bitrate: str = "128k") -> "TranscodeCommand":
        if self.copy_streams:
            raise ValueError("stream_copy() and audio_encode() are mutually exclusive")
        return replace(self, audio_codec=codec, audio_bitrate=bitrate)

    def stream_copy(self) -> "TranscodeCommand":
        """Lossless fast path: no re-encode."""
        if self.video_codec or self.audio_codec:
            raise ValueError("stream_copy() is mutually exclusive with encoding")
        return replace(self, copy_streams=True)

    def concat_list(self, manifest_path: str, paths: Sequence[str]) -> "TranscodeCommand":
        """Read inputs through the concat demuxer; the caller writes manifest_text() to manifest_path."""
        return replace(self, concat_manifest=str(manifest_path), concat_paths=tuple(str(p) for p in paths))

    def volume(self, vol: float) -> "TranscodeCommand":
        return replace(self, gain=max(0.0, min(1.0, float(vol))))

    def mute(self) -> "TranscodeCommand":
        return replace(self, muted=True)

    def thumbnail(self, time_sec: float) -> "TranscodeCommand":
        return replace(self, thumbnail_time=max(0.0, float(time_sec)))

    def enable_progress(self, enabled: bool = True) -> "TranscodeCommand":
        return replace(self, progress=bool(enabled))

    # ---------- output ----------
    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["concat_paths"] = list(self.concat_paths)
        return d

    def manifest_text(self) -> str:
        lines = []
        for p in self.concat_paths:
            # concat demuxer quoting: ' -> '\''
            escaped = str(p).replace("'", "'\\''")
            lines.append(f"file '{escaped}'")
        return "\n".join(lines) + ("\n" if lines else "")

    def _video_filters(self) -> List[str]:
        w = self.scale_width
        if w is None:
            return []
        h = self.scale_height
        if h is None:
            return [f"scale={w}:-2"]
        if self.scale_pad:
            return [
                f"scale={w}:{h}:force_original_aspect_ratio=decrease,"
                f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:black"
            ]
        return [f"scale={w}:{h}"]

    def _audio_filters(self) -> List[str]:
        if self.muted:
            return ["volume=0"]
        if self.gain is not None and abs(self.gain - 1.0) > 1e-9:
            return [f"volume={self.gain:.3f}"]
        return []

    def build_args(self) -> List[str]:
        if self.output_path is None:
            raise ValueError("TranscodeCommand has no output")
        if self.concat_manifest is None and self.input_path is None:
            raise ValueError("TranscodeCommand has no input")

        args: List[str] = ["-hide_banner", "-nostdin"]

        if self.concat_manifest is not None:
            args += ["-f", "concat", "-safe", "0", "-i", self.concat_manifest]
        else:
            # Seek before -i: fast input seeking.
            seek = self.thumbnail_time if self.thumbnail_time is not None else self.trim_start
            if seek is not None:
                args += ["-ss", f"{seek:.6f}"]
            if self.trim_duration is not None and self.thumbnail_time is None:
                args += ["-t", f"{self.trim_duration:.6f}"]
            args += ["-i", str(self.input_path)]

            vf = self._video_filters()
            if vf:
                args += ["-vf", ",".join(vf)]

        af = self._audio_filters()
        if af:
            args += ["-af", ",".join(af)]

        if self.copy_streams:
            if af:
                # Filtered audio cannot be copied; copy video only.
                args += ["-c:v", "copy", "-c:a", "aac"]
            else:
                args += ["-c", "copy"]
            args += ["-avoid_negative_ts", "make_zero"]
        elif self.thumbnail_time is None:
            if self.video_codec:
                args += ["-c:v", self.video_codec]
            if self.preset:
                args += ["-preset", self.preset]
            if self.crf is not None:
                args += ["-crf", str(self.crf)]
            if self.pixel_format:
                args += ["-pix_fmt", self.pixel_format]
            if self.audio_codec:
                args += ["-c:a", self.audio_codec]
            if self.audio_bitrate:
                args += ["-b:a", self.audio_bitrate]
            if self.video_codec:
                args += ["-movflags", "+faststart"]

        if self.thumbnail_time is not None:
            args += ["-frames:v", "1"]

        if self.progress:
            args += ["-progress", "pipe:2", "-nostats"]

        args += ["-y", str(self.output_path)]
        return args

    def command(self, binary: str) -> List[str]:
        return [str(binary), *self.build_args()]


def probe_args(src: str) -> List[str]:
    return ["-v", "error", "-print_format", "json", "-show_format", "-show_streams", str(src)]


# ---------- binary resolution ----------


@dataclass(frozen=True)
class ResolvedBinary:
    path: str
    bundled: bool
    warning: str = ""


def platform_binary_name(name: str) -> str:
    """Bundled sidecar naming: <name>-<target triple>[.exe]."""
    system = platform.system().lower()
    machine = platform.machine().lower()
    if machine in ("amd64", "x64"):
        machine = "x86_64"
    if machine == "arm64":
        machine = "aarch64"
    if system == "windows":
        return f"{name}-x86_64-pc-windows-msvc.exe"
    if system == "darwin" and machine in ("aarch64", "x86_64"):
        return f"{name}-{machine}-apple-darwin"
    if system == "linux" and machine == "x86_64":
        return f"{name}-x86_64-unknown-linux-gnu"
    return name


def _ensure_executable(path: Path) -> None:
    if os.name == "nt":
        return
    try:
        mode = path.stat().st_mode
        path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    except OSError:
        pass


def resolve_binary(name: str, bundled_dir: Optional[Path]) -> ResolvedBinary:
    """
    Locate `name` (ffmpeg/ffprobe). Prefer the bundled copy in `bundled_dir`,
    fall back to PATH with a warning, raise TranscoderNotFound otherwise.
    """
    candidates: List[str] = [platform_binary_name(name)]
    if os.name == "nt":
        candidates += [f"{name}.exe", name]
    else:
        candidates.append(name)

    if bundled_dir is not None:
        root = Path(bundled_dir)
        for cand in candidates:
            p = root / cand
            if p.is_file():
                _ensure_executable(p)
                return ResolvedBinary(path=str(p), bundled=True)

    system = shutil.which(name)
    if system:
        msg = f"Bundled {name} not found in {bundled_dir}; using system binary {system}"
        return ResolvedBinary(path=system, bundled=False, warning=msg)

    raise TranscoderNotFound(f"{name} not found\nBundled dir: {bundled_dir}\nand not on PATH")


# ---------- progress ----------

_TIME_RE = re.compile(r"time=(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_PROGRESS_KV_RE = re.compile(r"^\w+=\S*$")


def parse_progress_seconds(line: str) -> Optional[float]:
    """
    Seconds of output written so far, from one line of `-progress` or stats output.

    ffmpeg writes microseconds under both out_time_us and out_time_ms.
    """
    s = str(line or "").strip()
    if not s:
        return None
    for key in ("out_time_us=", "out_time_ms="):
        if s.startswith(key):
            raw = s[len(key):].strip()
            try:
                return max(0.0, int(raw) / 1_000_000.0)
            except ValueError:
                return None
    m = _TIME_RE.search(s)
    if m:
        h, mi, sec = m.groups()
        return int(h) * 3600 + int(mi) * 60 + float(sec)
    return None


# ---------- runners ----------


def run_sync(binary: str, command: TranscodeCommand, timeout: Optional[float] = None) -> str:
    """Short operations (probe, thumbnail, stream-copy trim): run to completion, return stdout."""
    return _run_args([binary, *command.build_args()], timeout=timeout)


def _run_args(cmd: List[str], timeout: Optional[float] = None) -> str:
    log.debug("run: %s", " ".join(cmd))
    try:
        p = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as ex:
        raise ExecutionError(f"{Path(cmd[0]).name} timed out after {timeout}s") from ex
    except OSError as ex:
        raise ExecutionError(f"Failed to start {cmd[0]}: {ex}") from ex
    if p.returncode != 0:
        raise ExecutionError(
            f"{Path(cmd[0]).name} exited with code {p.returncode}",
            returncode=p.returncode,
            output=p.stderr or "",
        )
    return p.stdout or ""


def run_with_progress(
    binary: str,
    command: TranscodeCommand,
    duration: float,
    on_progress: Optional[Callable[[float, float], None]] = None,
    should_cancel: Optional[Callable[[], bool]] = None,
    on_spawn: Optional[Callable[[Any], None]] = None,
) -> None:
    """
    Long operations (encode passes): stream `-progress` lines from stderr.

    on_progress(current_sec, total_sec) is called for every parsed line, clamped
    to [0, duration]; throttling is the caller's job. should_cancel is checked on
    every line; when it fires the process is terminated and ExportCancelled raised.
    """
    cmd = command.enable_progress(True).command(binary)
    total = max(0.0, float(duration))
    log.debug("run (progress): %s", " ".join(cmd))

    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as ex:
        raise ExecutionError(f"Failed to start {binary}: {ex}") from ex
    if on_spawn is not None:
        on_spawn(proc)

    tail: deque = deque(maxlen=DIAGNOSTIC_TAIL_LINES)
    cancelled = False
    if on_progress is not None:
        on_progress(0.0, total)

    for line in proc.stderr or []:
        if should_cancel is not None and should_cancel():
            cancelled = True
            _terminate(proc)
            break
        sec = parse_progress_seconds(line)
        if not _PROGRESS_KV_RE.match(line.strip()):
            tail.append(line.rstrip("\n"))
        if sec is not None and on_progress is not None:
            on_progress(max(0.0, min(total, sec)), total)

    rc = proc.wait()
    if cancelled or (should_cancel is not None and should_cancel()):
        raise ExportCancelled()
    if rc != 0:
        raise ExecutionError(
            f"ffmpeg exited with code {rc}",
            returncode=rc,
            output="\n".join(tail),
        )
    if on_progress is not None:
        on_progress(total, total)


def _terminate(proc: Any) -> None:
    try:
        proc.terminate()
    except Exception:
        log.debug("terminate failed", exc_info=True)


# ---------- short helpers ----------


def probe_media(ffprobe_path: str, src: str) -> MediaInfo:
    """Use ffprobe to get duration, stream presence and the first video stream's geometry."""
    out = _run_args([ffprobe_path, *probe_args(src)], timeout=60)
    data = json.loads(out or "{}")

    fmt = data.get("format", {}) or {}
    dur = float(fmt.get("duration", 0.0) or 0.0)
    streams = data.get("streams", []) or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    has_a = any(s.get("codec_type") == "audio" for s in streams)

    width = height = 0
    codec = ""
    fps = 0.0
    if video is not None:
        width = int(video.get("width", 0) or 0)
        height = int(video.get("height", 0) or 0)
        codec = str(video.get("codec_name", "") or "")
        fps = _parse_rate(video.get("avg_frame_rate") or video.get("r_frame_rate"))
    try:
        bit_rate = int(fmt.get("bit_rate", 0) or 0)
    except (TypeError, ValueError):
        bit_rate = 0

    return MediaInfo(
        duration=dur,
        has_video=video is not None,
        has_audio=has_a,
        width=width,
        height=height,
        codec=codec,
        fps=fps,
        bit_rate=bit_rate,
    )


def _parse_rate(raw: Any) -> float:
    s = str(raw or "")
    if "/" in s:
        num, _, den = s.partition("/")
        try:
            d = float(den)
            return float(num) / d if d else 0.0
        except ValueError:
            return 0.0
    try:
        return float(s)
    except ValueError:
        return 0.0


def trim_copy(ffmpeg_path: str, src: str, start: float, end: float, out_path: str) -> str:
    """Lossless trim of [start, end) into out_path (no re-encode)."""
    if start < 0 or end <= start:
        raise ValueError("Start time must be >= 0 and less than end time")
    Path(out_path).parent.mkdir(parents=True, exist_ok=True)
    cmd = TranscodeCommand().input(src).trim(start, end - start).stream_copy().output(out_path)
    run_sync(ffmpeg_path, cmd, timeout=300)
    return out_path


def extract_frame(ffmpeg_path: str, src: str, time_sec: float, out_path: str, width: int = 320) -> str:
    """Single frame at time_sec, scaled to `width` (even height)."""
    cmd = TranscodeCommand().input(src).thumbnail(time_sec).scale(max(16, int(width))).output(out_path)
    run_sync(ffmpeg_path, cmd, timeout=60)
    return out_path
