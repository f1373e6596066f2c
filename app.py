from __future__ import annotations

import asyncio
import logging
import math
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import flet as ft
import flet_video as ftv

from cliplane.config import ConfigStore
from cliplane.drag import DragController, DragKind, TimelineLayout
from cliplane.errors import TranscoderNotFound, ValidationError
from cliplane.export import ExportPipeline, build_job
from cliplane.ffmpeg import probe_media, resolve_binary
from cliplane.model import Clip, ExportSettings
from cliplane.playback import PlaybackSynchronizer
from cliplane.store import WorkspaceStore
from cliplane.timeline import clips_on_track, total_duration

logging.basicConfig(level=logging.INFO)
log = logging.getLogger("cliplane")

MEDIA_EXTENSIONS = ["mp4", "mov", "mkv", "avi", "webm", "m4v"]
PLAYBACK_POLL_SEC = 0.1


def _fmt_time(sec: float) -> str:
    sec = max(0.0, float(sec))
    m = int(sec // 60)
    s = sec - m * 60
    return f"{m:02d}:{s:05.2f}"


def _event_local_xy(e) -> tuple[float, float]:
    try:
        return float(e.local_position.x), float(e.local_position.y)
    except Exception:
        pass
    try:
        return float(getattr(e, "local_x", 0.0) or 0.0), float(getattr(e, "local_y", 0.0) or 0.0)
    except Exception:
        return 0.0, 0.0


def _position_seconds(pos_raw: Any) -> Optional[float]:
    if pos_raw is None:
        return None
    if hasattr(pos_raw, "in_milliseconds"):
        return max(0.0, float(pos_raw.in_milliseconds) / 1000.0)
    if isinstance(pos_raw, (int, float)):
        return max(0.0, float(pos_raw) / 1000.0)
    return None


class FletVideoSurface:
    """PreviewSurface backed by a flet_video player. Calls into the player go through page.run_task."""

    def __init__(self, page: ft.Page, slot: ft.Container, hint: ft.Text) -> None:
        self.page = page
        self.slot = slot
        self.hint = hint
        self.token = 0
        self.on_ready: Optional[Callable[[int], None]] = None
        self.on_error: Optional[Callable[[int, str], None]] = None
        self.video: Optional[ftv.Video] = None

    def _loaded(self, token: int) -> None:
        if self.on_ready is not None:
            self.on_ready(token)

    def _failed(self, token: int, reason: str) -> None:
        if self.on_error is not None:
            self.on_error(token, reason)

    def load(self, source_ref: str, token: int) -> None:
        self.token = token
        self.video = ftv.Video(
            expand=True,
            playlist=[ftv.VideoMedia(source_ref)],
            autoplay=False,
            muted=True,
            show_controls=False,
            on_loaded=lambda _e, t=token: self._loaded(t),
            on_error=lambda e, t=token: self._failed(t, str(getattr(e, "data", "") or "")),
        )
        self.slot.content = self.video
        self.hint.visible = False
        self.page.update()

    def seek(self, local_time: float) -> None:
        video = self.video
        if video is None:
            return

        async def _do() -> None:
            try:
                await video.seek(int(round(local_time * 1000)))
            except Exception as ex:
                log.debug("preview seek failed: %s", ex)

        self.page.run_task(_do)

    def set_audio(self, volume: float, muted: bool) -> None:
        if self.video is None:
            return
        self.video.volume = float(volume) * 100.0
        self.video.muted = bool(muted)
        self.page.update()

    def unload(self) -> None:
        self.video = None
        self.slot.content = None
        self.hint.visible = True
        self.page.update()

    async def position(self) -> Optional[float]:
        if self.video is None:
            return None
        try:
            return _position_seconds(await self.video.get_current_position())
        except Exception:
            return None

    async def play(self) -> None:
        if self.video is not None:
            await self.video.play()

    async def pause(self) -> None:
        if self.video is not None:
            await self.video.pause()


def main(page: ft.Page):
    page.title = "ClipLane"
    page.theme_mode = ft.ThemeMode.DARK
    page.padding = 12

    cfg = ConfigStore.default()
    store = WorkspaceStore()
    layout = TimelineLayout()
    bin_dir = cfg.bundled_bin_dir()
    file_picker = ft.FilePicker()

    is_playing = False
    playback_loop_id = 0
    export_ui: Dict[str, Dict[str, Any]] = {}

    # ---------- helpers ----------
    def snack(msg: str) -> None:
        # SnackBar is a DialogControl in newer Flet versions.
        page.show_dialog(ft.SnackBar(ft.Text(msg)))

    def snack_from_thread(msg: str) -> None:
        async def _show() -> None:
            snack(msg)

        page.run_task(_show)

    # ---------- preview ----------
    preview_hint = ft.Text("Import media to start", color=ft.Colors.WHITE54)
    preview_slot = ft.Container(expand=True)
    surface = FletVideoSurface(page, preview_slot, preview_hint)
    sync = PlaybackSynchronizer(store, surface, cooldown_sec=cfg.preview_cooldown_sec())
    surface.on_ready = sync.on_preview_ready

    def _preview_error(token: int, reason: str) -> None:
        if sync.on_preview_error(token, reason):
            snack(f"Preview load failed: {reason}" if reason else "Preview load failed")

    surface.on_error = _preview_error

    time_label = ft.Text(_fmt_time(0.0), size=12)

    # ---------- timeline ----------
    drag = DragController(
        store,
        layout=layout,
        snap_grid_sec=cfg.snap_grid_sec() if cfg.snap_enabled() else 0.0,
        on_warning=snack,
    )
    timeline_stack = ft.Stack(height=layout.track_top(store.workspace.track_count) + 8, expand=True)
    last_pointer = [0.0, 0.0]

    def _clip_box(clip: Clip, selected: bool) -> ft.Container:
        vp = drag.viewport()
        start, end, track = clip.timeline_start, clip.timeline_end, clip.track
        preview = drag.preview()
        if preview is not None and preview.target.clip_id == clip.id:
            start, end, track = preview.timeline_start, preview.timeline_end, preview.track
        return ft.Container(
            left=vp.to_pixel(start),
            top=layout.track_top(track) + 3,
            width=max(2.0, vp.seconds_to_width(end - start)),
            height=layout.track_height - 6,
            border_radius=6,
            bgcolor=ft.Colors.AMBER_700 if selected else (ft.Colors.BLUE_GREY_700 if clip.muted else ft.Colors.BLUE_700),
            padding=int(layout.trim_handle_px),
            content=ft.Text(clip.name, size=11, no_wrap=True),
        )

    def refresh_timeline() -> None:
        ws = store.workspace
        vp = drag.viewport()
        controls = []

        # Ruler: one label per visible second step.
        step = max(1, int(math.ceil(60.0 / max(1e-6, ws.zoom))))
        end_sec = max(total_duration(ws.clips), ws.playhead) + 10.0
        t = 0
        while t <= end_sec:
            x = vp.to_pixel(t)
            if x >= layout.label_width:
                controls.append(ft.Container(left=x, top=4, content=ft.Text(_fmt_time(t), size=10)))
            t += step

        for c in ws.clips:
            controls.append(_clip_box(c, c.id == ws.selected_clip_id))

        # Lane labels cover clips scrolled under them.
        for track in range(ws.track_count):
            controls.append(
                ft.Container(
                    left=0,
                    top=layout.track_top(track),
                    width=layout.label_width,
                    height=layout.track_height,
                    bgcolor=ft.Colors.BLUE_GREY_800,
                    alignment=ft.Alignment(0, 0),
                    content=ft.Text(f"V{track + 1}", size=12),
                )
            )

        playhead = ws.playhead
        preview = drag.preview()
        if preview is not None and preview.target.kind is DragKind.PLAYHEAD:
            playhead = preview.playhead
        controls.append(
            ft.Container(
                left=vp.to_pixel(playhead) - 1,
                top=0,
                width=2,
                height=layout.track_top(ws.track_count),
                bgcolor=ft.Colors.RED_400,
            )
        )
        timeline_stack.controls = controls
        timeline_stack.height = layout.track_top(ws.track_count) + 8
        time_label.value = f"{_fmt_time(playhead)} / {_fmt_time(total_duration(ws.clips))}"

    def on_pan_down(e: ft.DragDownEvent) -> None:
        x, y = _event_local_xy(e)
        last_pointer[0], last_pointer[1] = x, y
        if is_playing:
            stop_playback()
        drag.pointer_down(x, y)
        refresh_timeline()
        page.update()

    def on_pan_update(e: ft.DragUpdateEvent) -> None:
        x, y = _event_local_xy(e)
        last_pointer[0], last_pointer[1] = x, y
        if drag.pointer_move(x, y):
            refresh_timeline()
            page.update()

    def on_pan_end(_e) -> None:
        if drag.session is None:
            return
        drag.pointer_up(last_pointer[0], last_pointer[1])
        refresh_timeline()
        page.update()

    timeline_surface = ft.GestureDetector(
        mouse_cursor=ft.MouseCursor.MOVE,
        drag_interval=0,
        on_pan_down=on_pan_down,
        on_pan_update=on_pan_update,
        on_pan_end=on_pan_end,
        on_tap_up=on_pan_end,
        content=ft.Container(content=timeline_stack, bgcolor=ft.Colors.BLUE_GREY_900),
    )

    # ---------- inspector ----------
    volume_slider = ft.Slider(min=0, max=1, divisions=20, value=1.0, width=200, disabled=True)
    mute_check = ft.Checkbox(label="Mute", value=False, disabled=True)

    def update_inspector() -> None:
        clip = store.get(store.workspace.selected_clip_id)
        volume_slider.disabled = clip is None
        mute_check.disabled = clip is None
        if clip is not None:
            volume_slider.value = clip.volume
            mute_check.value = clip.muted

    def on_volume_change(e: ft.ControlEvent) -> None:
        clip_id = store.workspace.selected_clip_id
        if clip_id:
            store.set_volume(clip_id, float(e.control.value))

    def on_mute_change(e: ft.ControlEvent) -> None:
        clip_id = store.workspace.selected_clip_id
        if clip_id:
            store.set_muted(clip_id, bool(e.control.value))

    volume_slider.on_change_end = on_volume_change
    mute_check.on_change = on_mute_change

    def _on_commit(_version: int) -> None:
        if drag.session is None:
            refresh_timeline()
            update_inspector()
            page.update()

    store.subscribe(_on_commit)

    # ---------- playback ----------
    def stop_playback() -> None:
        nonlocal is_playing, playback_loop_id
        is_playing = False
        playback_loop_id += 1
        page.run_task(surface.pause)

    async def _playback_loop(loop_id: int) -> None:
        nonlocal is_playing
        await surface.play()
        while is_playing and loop_id == playback_loop_id:
            await asyncio.sleep(PLAYBACK_POLL_SEC)
            pos = await surface.position()
            if pos is None or loop_id != playback_loop_id:
                continue
            sync.on_preview_time(pos, surface.token)
            clip = store.get(sync.state.clip_id)
            if clip is None or pos >= clip.trim_end:
                is_playing = False
                await surface.pause()

    def play_click(_e) -> None:
        nonlocal is_playing, playback_loop_id
        if is_playing:
            stop_playback()
            return
        if sync.state.clip_id is None:
            snack("Nothing under the playhead")
            return
        is_playing = True
        playback_loop_id += 1
        page.run_task(_playback_loop, playback_loop_id)

    # ---------- actions ----------
    def _resolve(name: str) -> Optional[str]:
        try:
            resolved = resolve_binary(name, bin_dir)
        except TranscoderNotFound as ex:
            snack(str(ex))
            return None
        if not resolved.bundled:
            log.warning("%s", resolved.warning)
        return resolved.path

    def import_click(_e) -> None:
        async def _pick() -> None:
            picked = await file_picker.pick_files(
                allow_multiple=True,
                file_type=ft.FilePickerFileType.CUSTOM,
                allowed_extensions=MEDIA_EXTENSIONS,
            )
            if not picked:
                return
            ffprobe = _resolve("ffprobe")
            if not ffprobe:
                return
            for f in picked:
                if not f.path:
                    continue
                try:
                    info = probe_media(ffprobe, f.path)
                except Exception as ex:
                    log.exception("probe failed: %s", ex)
                    snack(f"Could not read {Path(f.path).name}")
                    continue
                if not info.has_video or info.duration <= 0.01:
                    snack(f"No video in {Path(f.path).name}")
                    continue
                start = total_duration(clips_on_track(store.workspace.clips, 0))
                try:
                    store.add_clip(Clip.from_source(f.path, info.duration, timeline_start=start, track=0))
                except ValidationError as ex:
                    snack(str(ex))

        page.run_task(_pick)

    def delete_click(_e) -> None:
        clip_id = store.workspace.selected_clip_id
        if not clip_id:
            snack("Select a clip first")
            return
        store.delete_clip(clip_id)

    def zoom_click(factor: float) -> None:
        store.set_zoom(max(1.0, min(400.0, store.workspace.zoom * factor)))

    def on_scroll_change(e: ft.ControlEvent) -> None:
        store.set_scroll(float(e.control.value) * store.workspace.zoom)

    # ---------- export ----------
    def _with_ui(job_id: str, fn: Callable[[Dict[str, Any]], None]) -> None:
        async def _apply() -> None:
            ui = export_ui.get(job_id)
            if ui is None:
                return
            fn(ui)
            try:
                page.update()
            except Exception:
                pass

        page.run_task(_apply)

    def _on_progress(job_id: str, pct: float) -> None:
        def _apply(ui: Dict[str, Any]) -> None:
            ui["bar"].value = pct / 100.0
            ui["label"].value = f"Encoding... {int(round(pct))}%"

        _with_ui(job_id, _apply)

    def _finish(job_id: str, msg: str) -> None:
        def _apply(_ui: Dict[str, Any]) -> None:
            export_ui.pop(job_id, None)
            try:
                page.pop_dialog()
            except Exception:
                pass
            snack(msg)

        _with_ui(job_id, _apply)

    pipeline = ExportPipeline(
        bundled_dir=bin_dir,
        temp_root=cfg.temp_root(),
        progress_interval=cfg.progress_interval_sec(),
        on_progress=_on_progress,
        on_warning=snack_from_thread,
        on_complete=lambda job_id, out: _finish(job_id, f"Export done: {Path(out).name}"),
        on_failed=lambda job_id, reason: _finish(job_id, f"Export failed: {reason}"),
        on_cancelled=lambda job_id: _finish(job_id, "Export cancelled"),
    )

    def export_click(_e) -> None:
        if not store.workspace.clips:
            snack("Timeline is empty")
            return

        async def _save_and_export() -> None:
            out_path = await file_picker.save_file(
                file_name="output.mp4",
                initial_directory=cfg.last_export_dir(),
                file_type=ft.FilePickerFileType.CUSTOM,
                allowed_extensions=["mp4"],
            )
            if not out_path:
                return
            out_path = str(Path(out_path).with_suffix(".mp4"))
            if pipeline.is_busy(out_path):
                snack("An export to that file is already running")
                return
            cfg.set_last_export_dir(out_path)

            # Snapshot keeps the export deterministic if the user keeps editing.
            try:
                job = build_job(store.snapshot(), out_path, ExportSettings(resolution=cfg.export_resolution()))
            except ValidationError as ex:
                snack(str(ex))
                return

            label = ft.Text("Preparing export...", size=12)
            bar = ft.ProgressBar(value=0.0, width=420)
            cancel_btn = ft.TextButton("Cancel Export")

            def _request_cancel(_e=None) -> None:
                cancel_btn.disabled = True
                label.value = "Cancelling export..."
                pipeline.cancel(job.id)
                page.update()

            cancel_btn.on_click = _request_cancel
            export_ui[job.id] = {"label": label, "bar": bar}
            page.show_dialog(
                ft.AlertDialog(
                    modal=True,
                    title=ft.Text("Exporting"),
                    content=ft.Column([label, bar], tight=True, spacing=8, width=460),
                    actions=[cancel_btn],
                )
            )
            page.update()
            pipeline.submit(job)

        page.run_task(_save_and_export)

    # ---------- layout ----------
    toolbar = ft.Row(
        [
            ft.FilledButton("Import", icon=ft.Icons.FILE_OPEN, on_click=import_click),
            ft.OutlinedButton("Delete", icon=ft.Icons.DELETE, on_click=delete_click),
            ft.IconButton(ft.Icons.PLAY_ARROW, tooltip="Play / Pause", on_click=play_click),
            ft.IconButton(ft.Icons.ZOOM_IN, tooltip="Zoom in", on_click=lambda _e: zoom_click(1.25)),
            ft.IconButton(ft.Icons.ZOOM_OUT, tooltip="Zoom out", on_click=lambda _e: zoom_click(0.8)),
            time_label,
            ft.Container(expand=True),
            ft.FilledButton("Export", icon=ft.Icons.OUTPUT, on_click=export_click),
        ],
        spacing=8,
    )
    scroll_slider = ft.Slider(min=0, max=600, value=0, on_change_end=on_scroll_change, expand=True)
    preview = ft.Container(
        expand=True,
        border_radius=12,
        bgcolor=ft.Colors.BLACK,
        content=ft.Stack([preview_slot, ft.Container(content=preview_hint, alignment=ft.Alignment(0, 0))]),
    )
    inspector = ft.Column([ft.Text("Clip", weight=ft.FontWeight.BOLD), ft.Text("Volume"), volume_slider, mute_check], width=240)

    page.add(
        ft.Column(
            [
                toolbar,
                ft.Row([preview, inspector], expand=True),
                ft.Container(padding=10, height=300, border_radius=12, content=timeline_surface),
                scroll_slider,
            ],
            expand=True,
            spacing=10,
        )
    )

    refresh_timeline()
    update_inspector()
    page.update()


if __name__ == "__main__":
    ft.app(target=main)
