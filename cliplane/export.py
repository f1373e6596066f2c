"""
Export pipeline: turns a workspace snapshot into a TranscodeJob and runs the
ffmpeg passes for it.

Single clip:  trim + scale + encode -> output
Multi clip:   one trim + scale + encode pass per clip into the job's temp dir,
              a concat manifest, then one concat + encode pass -> output

Every job owns a private temp directory that is removed before the job leaves
RUNNING, whatever the outcome. The final file is written inside the temp dir
and moved into place only on success, so a failed or cancelled export never
leaves a partial output behind.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .errors import (
    ExecutionError,
    ExportCancelled,
    ResolutionWarning,
    TranscoderNotFound,
    ValidationError,
)
from .ffmpeg import TranscodeCommand, resolve_binary, run_with_progress
from .model import ExportSettings, JobStatus, SegmentSpec, TranscodeJob, Workspace
from .timeline import timeline_order

log = logging.getLogger("cliplane.export")

# Share of the progress bar given to the per-clip passes of a multi-clip job;
# the concat pass covers the rest.
SEGMENT_PASSES_SHARE = 90.0

# Finished jobs kept for `ExportPipeline.job()` lookups.
DEFAULT_JOB_HISTORY = 50


def build_job(
    workspace: Workspace,
    output_path: str,
    settings: Optional[ExportSettings] = None,
    resolve_source: Callable[[str], str] = str,
) -> TranscodeJob:
    """Snapshot the workspace clips, in timeline order, into a job."""
    clips = timeline_order(workspace.clips)
    if not clips:
        raise ValidationError("Timeline is empty")
    settings = settings or ExportSettings()
    width, height = settings.size
    segments = [
        SegmentSpec(
            source_path=resolve_source(c.source_ref),
            trim_start=c.trim_start,
            trim_end=c.trim_end,
            track=c.track,
            volume=c.volume,
            muted=c.muted,
        )
        for c in clips
    ]
    return TranscodeJob(
        segments=segments,
        output_path=str(output_path),
        width=width,
        height=height,
        settings=ExportSettings.from_dict(settings.to_dict()),
    )


def segment_command(job: TranscodeJob, seg: SegmentSpec, out_path: str) -> TranscodeCommand:
    s = job.settings
    cmd = (
        TranscodeCommand()
        .input(seg.source_path)
        .trim(seg.trim_start, seg.duration)
        .scale(job.width, job.height, pad=True)
        .video_encode(s.video_codec, s.preset, s.crf, s.pixel_format)
        .audio_encode(s.audio_codec, s.audio_bitrate)
    )
    if seg.muted:
        cmd = cmd.mute()
    elif seg.volume < 1.0:
        cmd = cmd.volume(seg.volume)
    return cmd.output(out_path)


def concat_command(job: TranscodeJob, manifest_path: str, parts: List[str], out_path: str) -> TranscodeCommand:
    s = job.settings
    return (
        TranscodeCommand()
        .concat_list(manifest_path, parts)
        .video_encode(s.video_codec, s.preset, s.crf, s.pixel_format)
        .audio_encode(s.audio_codec, s.audio_bitrate)
        .output(out_path)
    )


class ProgressReporter:
    """
    Per-job progress: clamps to [0, 100], never goes backwards, and emits at most
    one event per `interval` seconds (100 is always emitted).
    """

    def __init__(
        self,
        job: TranscodeJob,
        emit: Callable[[str, float], None],
        interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.job = job
        self._emit = emit
        self.interval = max(0.1, float(interval))
        self._clock = clock
        self._last_emit: Optional[float] = None
        self._last_value = -1.0

    def report(self, percent: float, force: bool = False) -> bool:
        pct = max(0.0, min(100.0, float(percent)))
        pct = max(pct, self.job.progress_percent)
        self.job.progress_percent = pct

        now = self._clock()
        if not force and pct < 100.0:
            if self._last_emit is not None and now - self._last_emit < self.interval:
                return False
        if pct <= self._last_value and (not force or pct >= 100.0):
            return False
        self._last_emit = now
        self._last_value = pct
        self._emit(self.job.id, pct)
        return True


class ExportPipeline:
    """
    Runs TranscodeJobs, one worker thread per submitted job.

    Events (all optional callables, invoked from the worker thread):
        on_progress(job_id, percent)
        on_warning(message)
        on_complete(job_id, output_path)
        on_failed(job_id, reason)
        on_cancelled(job_id)
    Exceptions raised by callbacks are logged and ignored.
    """

    def __init__(
        self,
        bundled_dir: Optional[Path] = None,
        temp_root: Optional[str] = None,
        progress_interval: float = 0.1,
        on_progress: Optional[Callable[[str, float], None]] = None,
        on_warning: Optional[Callable[[str], None]] = None,
        on_complete: Optional[Callable[[str, str], None]] = None,
        on_failed: Optional[Callable[[str, str], None]] = None,
        on_cancelled: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.bundled_dir = bundled_dir
        self.temp_root = temp_root or None
        self.progress_interval = progress_interval
        self.on_progress = on_progress
        self.on_warning = on_warning
        self.on_complete = on_complete
        self.on_failed = on_failed
        self.on_cancelled = on_cancelled
        self._clock = clock

        self._lock = threading.Lock()
        self._active_outputs: Dict[str, str] = {}
        self._jobs: Dict[str, TranscodeJob] = {}
        self._cancel_flags: Dict[str, threading.Event] = {}
        self._procs: Dict[str, Any] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self.job_history_limit = DEFAULT_JOB_HISTORY

    # ---------- public API ----------
    def submit(self, job: TranscodeJob) -> TranscodeJob:
        """Start `job` on a worker thread. Returns immediately."""
        if not self._reserve(job):
            return job
        t = threading.Thread(target=self._execute, args=(job,), name=f"export-{job.id[:8]}", daemon=True)
        with self._lock:
            self._threads[job.id] = t
        t.start()
        return job

    def run(self, job: TranscodeJob) -> TranscodeJob:
        """Run `job` on the calling thread until it reaches a terminal status."""
        if self._reserve(job):
            self._execute(job)
        return job

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        with self._lock:
            t = self._threads.get(job_id)
        if t is None:
            return True
        t.join(timeout)
        return not t.is_alive()

    def cancel(self, job_id: str) -> bool:
        """Request cancellation; the running ffmpeg process (if any) is terminated."""
        with self._lock:
            flag = self._cancel_flags.get(job_id)
            proc = self._procs.get(job_id)
        if flag is None:
            return False
        flag.set()
        if proc is not None:
            try:
                proc.terminate()
            except Exception:
                log.debug("terminate failed for job %s", job_id, exc_info=True)
        return True

    def job(self, job_id: str) -> Optional[TranscodeJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def is_busy(self, output_path: str) -> bool:
        with self._lock:
            return _output_key(output_path) in self._active_outputs

    # ---------- internals ----------
    def _reserve(self, job: TranscodeJob) -> bool:
        key = _output_key(job.output_path)
        with self._lock:
            if job.id in self._cancel_flags:
                # Same job object already running; leave its state alone.
                log.warning("export %s is already running; ignoring re-submit", job.id)
                return False
            busy = key in self._active_outputs
            if not busy:
                self._active_outputs[key] = job.id
                self._cancel_flags[job.id] = threading.Event()
                # A re-run starts from a clean slate.
                job.status = JobStatus.QUEUED
                job.progress_percent = 0.0
                job.error = ""
                job.temp_dir = None
                job.warnings = []
            self._jobs.pop(job.id, None)
            self._jobs[job.id] = job
            self._forget_old_jobs()
        if busy:
            reason = f"Another export is already writing {job.output_path}"
            log.warning("export %s rejected: %s", job.id, reason)
            job.status = JobStatus.FAILED
            job.error = reason
            self._emit(self.on_failed, job.id, reason)
            return False
        return True

    def _forget_old_jobs(self) -> None:
        # Caller holds self._lock. Only finished jobs are dropped, oldest first.
        excess = len(self._jobs) - self.job_history_limit
        if excess <= 0:
            return
        for job_id in [j.id for j in self._jobs.values() if j.status.terminal][:excess]:
            del self._jobs[job_id]
            self._threads.pop(job_id, None)

    def _release(self, job: TranscodeJob) -> None:
        key = _output_key(job.output_path)
        with self._lock:
            if self._active_outputs.get(key) == job.id:
                del self._active_outputs[key]
            self._cancel_flags.pop(job.id, None)
            self._procs.pop(job.id, None)

    def _emit(self, cb: Optional[Callable[..., Any]], *args: Any) -> None:
        if cb is None:
            return
        try:
            cb(*args)
        except Exception:
            log.exception("export event callback failed")

    def _cancelled(self, job: TranscodeJob) -> bool:
        with self._lock:
            flag = self._cancel_flags.get(job.id)
        return bool(flag and flag.is_set())

    def _check_cancel(self, job: TranscodeJob) -> None:
        if self._cancelled(job):
            raise ExportCancelled()

    def _track_proc(self, job: TranscodeJob, proc: Any) -> None:
        with self._lock:
            self._procs[job.id] = proc
        # cancel() may have run between the last check and the spawn.
        if self._cancelled(job):
            try:
                proc.terminate()
            except Exception:
                log.debug("terminate failed for job %s", job.id, exc_info=True)

    def _resolve_ffmpeg(self, job: TranscodeJob) -> str:
        resolved = resolve_binary("ffmpeg", self.bundled_dir)
        if not resolved.bundled:
            warning = ResolutionWarning(resolved.warning)
            job.warnings.append(str(warning))
            log.warning("%s", warning)
            self._emit(self.on_warning, str(warning))
        return resolved.path

    def _execute(self, job: TranscodeJob) -> None:
        reporter = ProgressReporter(
            job,
            emit=lambda job_id, pct: self._emit(self.on_progress, job_id, pct),
            interval=self.progress_interval,
            clock=self._clock,
        )
        status = JobStatus.FAILED
        reason = ""
        job.status = JobStatus.RUNNING
        log.info("export %s started: %d segment(s) -> %s", job.id, len(job.segments), job.output_path)
        try:
            self._check_cancel(job)
            ffmpeg = self._resolve_ffmpeg(job)
            job.temp_dir = tempfile.mkdtemp(prefix=f"cliplane-{job.id[:8]}-", dir=self.temp_root)
            reporter.report(0.0, force=True)
            staged = self._render(job, ffmpeg, reporter)
            self._check_cancel(job)
            Path(job.output_path).parent.mkdir(parents=True, exist_ok=True)
            shutil.move(staged, job.output_path)
            status = JobStatus.SUCCEEDED
        except ExportCancelled:
            status = JobStatus.CANCELLED
        except ExecutionError as ex:
            reason = f"{ex}\n{ex.output}".strip()
            log.error("export %s failed: %s", job.id, reason)
        except (TranscoderNotFound, ValidationError, ValueError) as ex:
            reason = str(ex)
            log.error("export %s failed: %s", job.id, reason)
        except OSError as ex:
            reason = f"I/O error: {ex}"
            log.exception("export %s failed: %s", job.id, ex)
        except Exception as ex:
            reason = str(ex) or ex.__class__.__name__
            log.exception("export %s failed: %s", job.id, ex)
        finally:
            cleanup_error = self._cleanup(job)

        if cleanup_error and status is JobStatus.SUCCEEDED:
            status = JobStatus.FAILED
            reason = cleanup_error

        if status is JobStatus.SUCCEEDED:
            reporter.report(100.0, force=True)
        job.error = reason
        job.status = status
        self._release(job)

        if status is JobStatus.SUCCEEDED:
            log.info("export %s done: %s", job.id, job.output_path)
            self._emit(self.on_complete, job.id, job.output_path)
        elif status is JobStatus.CANCELLED:
            log.info("export %s cancelled", job.id)
            self._emit(self.on_cancelled, job.id)
        else:
            self._emit(self.on_failed, job.id, reason)

        with self._lock:
            self._threads.pop(job.id, None)

    def _render(self, job: TranscodeJob, ffmpeg: str, reporter: ProgressReporter) -> str:
        """Run all passes inside job.temp_dir; return the path of the finished file."""
        assert job.temp_dir is not None
        tmp = Path(job.temp_dir)
        suffix = Path(job.output_path).suffix or ".mp4"
        final = str(tmp / f"output{suffix}")

        if not job.is_multi:
            seg = job.segments[0]
            self._pass(job, ffmpeg, segment_command(job, seg, final), seg.duration, reporter, 0.0, 100.0)
            return final

        total = max(job.expected_duration, 1e-6)
        done = 0.0
        parts: List[str] = []
        for i, seg in enumerate(job.segments):
            self._check_cancel(job)
            part = str(tmp / f"clip_{i:03d}.mp4")
            offset = done / total * SEGMENT_PASSES_SHARE
            span = seg.duration / total * SEGMENT_PASSES_SHARE
            try:
                self._pass(job, ffmpeg, segment_command(job, seg, part), seg.duration, reporter, offset, span)
            except ExecutionError as ex:
                raise ExecutionError(
                    f"Failed to process clip {i + 1} ({Path(seg.source_path).name}): {ex}",
                    returncode=ex.returncode,
                    output=ex.output,
                ) from ex
            parts.append(part)
            done += seg.duration

        self._check_cancel(job)
        manifest = tmp / "concat.txt"
        cmd = concat_command(job, str(manifest), parts, final)
        manifest.write_text(cmd.manifest_text(), encoding="utf-8")
        self._pass(job, ffmpeg, cmd, job.expected_duration, reporter, SEGMENT_PASSES_SHARE, 100.0 - SEGMENT_PASSES_SHARE)
        return final

    def _pass(
        self,
        job: TranscodeJob,
        ffmpeg: str,
        cmd: TranscodeCommand,
        duration: float,
        reporter: ProgressReporter,
        offset: float,
        span: float,
    ) -> None:
        def _on_progress(current: float, total: float) -> None:
            ratio = (current / total) if total > 0 else 0.0
            reporter.report(offset + max(0.0, min(1.0, ratio)) * span)

        try:
            run_with_progress(
                ffmpeg,
                cmd,
                duration,
                on_progress=_on_progress,
                should_cancel=lambda: self._cancelled(job),
                on_spawn=lambda proc: self._track_proc(job, proc),
            )
        finally:
            with self._lock:
                self._procs.pop(job.id, None)
        _require_output(str(cmd.output_path))

    def _cleanup(self, job: TranscodeJob) -> str:
        """Remove the job's temp dir (one retry). Returns an error message if it survives."""
        path = job.temp_dir
        if not path:
            return ""
        for attempt in (1, 2):
            try:
                shutil.rmtree(path)
            except FileNotFoundError:
                pass
            except OSError as ex:
                log.warning("temp cleanup attempt %d failed for %s: %s", attempt, path, ex)
            if not os.path.exists(path):
                job.temp_dir = None
                return ""
        log.error("could not remove temp dir %s", path)
        return f"Could not remove temp dir {path}"


def _output_key(path: str) -> str:
    p = os.path.abspath(str(path))
    # Case-insensitive compare on Windows.
    return p.lower() if os.name == "nt" else p


def _require_output(path: str) -> None:
    try:
        ok = os.path.getsize(path) > 0
    except OSError:
        ok = False
    if not ok:
        raise ExecutionError(f"Output file was not created: {path}")
