import unittest

from cliplane.errors import ValidationError
from cliplane.model import Clip, Workspace
from cliplane.store import WorkspaceStore


def _clip(cid: str, start: float, end: float, track: int = 0, source_duration: float = 30.0) -> Clip:
    return Clip(
        id=cid,
        source_ref=f"/media/{cid}.mp4",
        timeline_start=start,
        timeline_end=end,
        trim_start=0.0,
        trim_end=end - start,
        track=track,
        source_duration=source_duration,
    )


class TestWorkspaceStore(unittest.TestCase):
    def setUp(self):
        self.store = WorkspaceStore(Workspace(clips=[_clip("x", 0.0, 10.0), _clip("y", 12.0, 15.0)]))

    def test_move_onto_occupied_range_is_rejected(self):
        store = WorkspaceStore(Workspace(clips=[_clip("x", 0.0, 10.0), _clip("y", 5.0, 15.0)]))
        with self.assertRaises(ValidationError):
            store.move_clip("x", 5.0, 0)
        x = store.get("x")
        self.assertEqual((x.timeline_start, x.timeline_end), (0.0, 10.0))

    def test_rejected_edit_leaves_workspace_byte_identical(self):
        before = self.store.to_dict()
        version = self.store.version
        for op in (
            lambda: self.store.move_clip("x", 8.0, 0),
            lambda: self.store.move_clip("x", -1.0, 0),
            lambda: self.store.move_clip("x", 20.0, 5),
            lambda: self.store.trim_clip("x", 5.0, 4.0),
            lambda: self.store.trim_clip("x", 0.0, 0.05),
            lambda: self.store.trim_clip("x", 0.0, 31.0),
            lambda: self.store.trim_clip("x", -0.5, 4.0),
            lambda: self.store.trim_clip("x", 0.0, 13.0),
            lambda: self.store.delete_clip("nope"),
            lambda: self.store.select("nope"),
            lambda: self.store.set_zoom(0),
        ):
            with self.assertRaises(ValidationError):
                op()
        self.assertEqual(self.store.to_dict(), before)
        self.assertEqual(self.store.version, version)

    def test_successful_edits_bump_version_and_notify(self):
        seen = []
        unsubscribe = self.store.subscribe(seen.append)
        self.store.move_clip("y", 20.0, 1)
        self.store.set_playhead(3.0)
        self.assertEqual(seen, [1, 2])
        unsubscribe()
        self.store.set_playhead(4.0)
        self.assertEqual(seen, [1, 2])
        self.assertEqual(self.store.version, 3)

    def test_touching_clips_are_allowed(self):
        moved = self.store.move_clip("y", 10.0, 0)
        self.assertEqual((moved.timeline_start, moved.timeline_end), (10.0, 13.0))

    def test_trim_keeps_start_anchored(self):
        trimmed = self.store.trim_clip("x", 2.0, 7.0)
        self.assertEqual(trimmed.timeline_start, 0.0)
        self.assertAlmostEqual(trimmed.timeline_end, 5.0)
        self.assertEqual((trimmed.trim_start, trimmed.trim_end), (2.0, 7.0))

    def test_trim_minimum_duration(self):
        trimmed = self.store.trim_clip("x", 0.0, 0.1)
        self.assertAlmostEqual(trimmed.duration, 0.1)

    def test_delete_clears_selection(self):
        self.store.select("x")
        self.store.delete_clip("x")
        self.assertIsNone(self.store.workspace.selected_clip_id)
        self.assertIsNone(self.store.get("x"))

    def test_playhead_clamped_at_zero(self):
        self.assertEqual(self.store.set_playhead(-3.0), 0.0)
        self.assertEqual(self.store.set_playhead(100.0), 100.0)

    def test_add_clip_validation(self):
        with self.assertRaises(ValidationError):
            self.store.add_clip(_clip("x", 30.0, 31.0))
        with self.assertRaises(ValidationError):
            self.store.add_clip(_clip("z", 9.0, 11.0))
        added = self.store.add_clip(_clip("z", 0.0, 2.0, track=1))
        self.assertEqual(self.store.get("z"), added)

    def test_snapshot_is_detached(self):
        snap = self.store.snapshot()
        self.store.move_clip("y", 20.0, 0)
        self.assertEqual(snap.clips[1].timeline_start, 12.0)

    def test_volume_and_mute(self):
        self.assertEqual(self.store.set_volume("x", 2.0).volume, 1.0)
        self.assertTrue(self.store.set_muted("x", True).muted)

    def test_track_count_cannot_drop_used_tracks(self):
        self.store.move_clip("y", 0.0, 1)
        with self.assertRaises(ValidationError):
            self.store.set_track_count(1)
        self.store.set_track_count(4)
        self.assertEqual(self.store.workspace.track_count, 4)

    def test_restore_rejects_overlap(self):
        with self.assertRaises(ValidationError):
            self.store.restore({"clips": [_clip("a", 0.0, 5.0).to_dict(), _clip("b", 4.0, 6.0).to_dict()]})
        self.assertIsNotNone(self.store.get("x"))

    def test_restore_rejects_broken_clips(self):
        def _with(**overrides):
            d = _clip("a", 0.0, 5.0).to_dict()
            d.update(overrides)
            return d

        missing_key = _clip("a", 0.0, 5.0).to_dict()
        del missing_key["timeline_end"]

        before = self.store.to_dict()
        version = self.store.version
        for clips in (
            [_with(track=-1)],
            [_clip("a", 0.0, 5.0).to_dict(), _clip("a", 6.0, 8.0).to_dict()],
            [_with(timeline_start=9.0, timeline_end=3.0)],
            [_with(trim_start=4.0, trim_end=1.0)],
            [_with(trim_start=-1.0)],
            [_with(trim_end=40.0)],
            [_with(timeline_start=-2.0)],
            [_with(timeline_start="soon")],
            [_with(timeline_end=float("nan"))],
            [missing_key],
        ):
            with self.assertRaises(ValidationError):
                self.store.restore({"clips": clips})
        with self.assertRaises(ValidationError):
            self.store.restore({"clips": [], "playhead": float("inf")})
        with self.assertRaises(ValidationError):
            self.store.restore(["not", "a", "workspace"])
        self.assertEqual(self.store.to_dict(), before)
        self.assertEqual(self.store.version, version)

    def test_restore_accepts_valid_workspace(self):
        saved = WorkspaceStore(Workspace(clips=[_clip("a", 0.0, 5.0), _clip("b", 2.0, 4.0, track=3)], track_count=4))
        self.store.restore(saved.to_dict())
        self.assertEqual(self.store.to_dict(), saved.to_dict())
        self.assertEqual(self.store.version, 1)

    def test_non_finite_values_are_rejected(self):
        before = self.store.to_dict()
        for bad in (float("nan"), float("inf"), float("-inf")):
            for op in (
                lambda: self.store.move_clip("x", bad, 0),
                lambda: self.store.trim_clip("x", bad, 5.0),
                lambda: self.store.trim_clip("x", 0.0, bad),
                lambda: self.store.set_playhead(bad),
                lambda: self.store.set_zoom(bad),
                lambda: self.store.set_scroll(bad),
            ):
                with self.assertRaises(ValidationError):
                    op()
        nan_clip = _clip("z", 20.0, 25.0)
        nan_clip.timeline_start = float("nan")
        with self.assertRaises(ValidationError):
            self.store.add_clip(nan_clip)
        self.assertEqual(self.store.to_dict(), before)

    def test_trim_with_end_anchor_moves_start(self):
        trimmed = self.store.trim_clip("y", 1.0, 3.0, anchor_end=True)
        self.assertAlmostEqual(trimmed.timeline_start, 13.0)
        self.assertAlmostEqual(trimmed.timeline_end, 15.0)

        # Pulling the front out past timeline 0 is rejected.
        with self.assertRaises(ValidationError):
            self.store.trim_clip("x", 0.0, 11.0, anchor_end=True)

        # So is pulling it into the clip on the left.
        self.store.trim_clip("y", 5.0, 8.0)
        with self.assertRaises(ValidationError):
            self.store.trim_clip("y", 1.0, 8.0, anchor_end=True)
        extended = self.store.trim_clip("y", 3.0, 8.0, anchor_end=True)
        self.assertAlmostEqual(extended.timeline_start, 11.0)
        self.assertAlmostEqual(extended.timeline_end, 16.0)


if __name__ == "__main__":
    unittest.main()
