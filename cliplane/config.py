from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

from .model import RESOLUTION_PRESETS

DEFAULT_EXPORT_RESOLUTION = "720p"


def _app_root() -> Path:
    return Path(__file__).resolve().parent.parent


def _clamped_float(raw: Any, default: float, lo: float, hi: float) -> float:
    try:
        v = float(raw)
    except Exception:
        v = default
    if v != v:  # NaN
        v = default
    return max(lo, min(hi, v))


class ConfigStore:
    """
    Simple JSON config store.

    Default location: ~/.cliplane/config.json
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = Path(root_dir)
        self.path = self.root_dir / "config.json"

    @staticmethod
    def default() -> "ConfigStore":
        return ConfigStore(Path.home() / ".cliplane")

    def load(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return data
        except FileNotFoundError:
            return self.default_config()
        except Exception:
            # Corrupted file; don't crash the app.
            return self.default_config()
        return self.default_config()

    def save(self, data: Dict[str, Any]) -> None:
        self.root_dir.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")

    def default_config(self) -> Dict[str, Any]:
        return {
            "snap_enabled": True,
            "snap_grid_sec": 0.5,
            "bundled_bin_dir": "",
            "export_resolution": DEFAULT_EXPORT_RESOLUTION,
            "temp_root": "",
            "last_export_dir": "",
            "preview_cooldown_ms": 50,
            "progress_interval_ms": 100,
        }

    def _get(self, key: str) -> Any:
        cfg = self.load()
        if key in cfg:
            return cfg[key]
        return self.default_config().get(key)

    def snap_enabled(self) -> bool:
        return bool(self._get("snap_enabled"))

    def snap_grid_sec(self) -> float:
        return _clamped_float(self._get("snap_grid_sec"), 0.5, 0.01, 60.0)

    def bundled_bin_dir(self) -> Path:
        raw = str(self._get("bundled_bin_dir") or "").strip()
        return Path(raw).expanduser() if raw else _app_root() / "bin"

    def export_resolution(self) -> str:
        raw = str(self._get("export_resolution") or "").strip()
        if raw == "source" or raw in RESOLUTION_PRESETS:
            return raw
        return DEFAULT_EXPORT_RESOLUTION

    def temp_root(self) -> Optional[str]:
        raw = str(self._get("temp_root") or "").strip()
        if not raw:
            return None
        p = Path(raw).expanduser()
        return str(p) if p.is_dir() else None

    def preview_cooldown_sec(self) -> float:
        return _clamped_float(self._get("preview_cooldown_ms"), 50.0, 10.0, 1000.0) / 1000.0

    def progress_interval_sec(self) -> float:
        # Floor of 100 ms keeps progress at <= 10 events per second.
        return _clamped_float(self._get("progress_interval_ms"), 100.0, 100.0, 2000.0) / 1000.0

    def last_export_dir(self) -> Optional[str]:
        raw = str(self._get("last_export_dir") or "").strip()
        if raw and Path(raw).is_dir():
            return raw
        return None

    def set_last_export_dir(self, output_path: str) -> None:
        p = str(output_path).strip()
        if not p:
            return
        cfg = self.load()
        cfg["last_export_dir"] = str(Path(p).expanduser().resolve().parent)
        self.save(cfg)

    def set(self, key: str, value: Any) -> None:
        cfg = self.load()
        cfg[key] = value
        self.save(cfg)
