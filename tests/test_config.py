import json
import tempfile
import unittest
from pathlib import Path

from cliplane.config import ConfigStore


class TestConfigStore(unittest.TestCase):
    def test_load_default_when_missing(self):
        with tempfile.TemporaryDirectory() as td:
            store = ConfigStore(Path(td) / "cfg")
            cfg = store.load()
            self.assertIn("snap_grid_sec", cfg)
            self.assertIn("progress_interval_ms", cfg)
            self.assertTrue(store.snap_enabled())
            self.assertAlmostEqual(store.snap_grid_sec(), 0.5)
            self.assertEqual(store.export_resolution(), "720p")
            self.assertIsNone(store.temp_root())
            self.assertIsNone(store.last_export_dir())
            self.assertEqual(store.bundled_bin_dir().name, "bin")

    def test_corrupted_file_falls_back(self):
        with tempfile.TemporaryDirectory() as td:
            store = ConfigStore(Path(td))
            store.path.write_text("{not json", encoding="utf-8")
            self.assertEqual(store.load(), store.default_config())
            store.path.write_text("[1, 2]", encoding="utf-8")
            self.assertEqual(store.load(), store.default_config())

    def test_values_are_clamped(self):
        with tempfile.TemporaryDirectory() as td:
            store = ConfigStore(Path(td))
            store.save(
                {
                    "snap_grid_sec": 0.0001,
                    "preview_cooldown_ms": 99999,
                    "progress_interval_ms": 5,
                    "export_resolution": "8K",
                }
            )
            self.assertAlmostEqual(store.snap_grid_sec(), 0.01)
            self.assertAlmostEqual(store.preview_cooldown_sec(), 1.0)
            self.assertAlmostEqual(store.progress_interval_sec(), 0.1)
            self.assertEqual(store.export_resolution(), "720p")

            store.save({"snap_grid_sec": "abc", "preview_cooldown_ms": None, "export_resolution": "1080p"})
            self.assertAlmostEqual(store.snap_grid_sec(), 0.5)
            self.assertAlmostEqual(store.preview_cooldown_sec(), 0.05)
            self.assertEqual(store.export_resolution(), "1080p")

    def test_set_last_export_dir_stores_parent(self):
        with tempfile.TemporaryDirectory() as td:
            store = ConfigStore(Path(td) / "cfg")
            out = Path(td) / "renders" / "final.mp4"
            out.parent.mkdir()
            store.set_last_export_dir(str(out))
            self.assertEqual(store.last_export_dir(), str(out.parent.resolve()))
            data = json.loads(store.path.read_text(encoding="utf-8"))
            self.assertEqual(data["last_export_dir"], str(out.parent.resolve()))

    def test_paths_from_config(self):
        with tempfile.TemporaryDirectory() as td:
            store = ConfigStore(Path(td))
            store.set("temp_root", td)
            store.set("bundled_bin_dir", str(Path(td) / "tools"))
            store.set("snap_enabled", False)
            self.assertEqual(store.temp_root(), str(Path(td)))
            self.assertEqual(store.bundled_bin_dir(), Path(td) / "tools")
            self.assertFalse(store.snap_enabled())

            store.set("temp_root", str(Path(td) / "missing"))
            self.assertIsNone(store.temp_root())


if __name__ == "__main__":
    unittest.main()
