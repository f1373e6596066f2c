from __future__ import annotations

from dataclasses import dataclass


def to_pixel(time_sec: float, zoom: float, scroll_offset: float = 0.0, label_width: float = 0.0) -> float:
    """Timeline seconds -> x pixel inside the timeline surface."""
    return float(time_sec) * float(zoom) - float(scroll_offset) + float(label_width)


def to_time(x_px: float, zoom: float, scroll_offset: float = 0.0, label_width: float = 0.0) -> float:
    """Inverse of to_pixel. zoom must be > 0 (the store never accepts anything else)."""
    return (float(x_px) - float(label_width) + float(scroll_offset)) / float(zoom)


@dataclass(frozen=True)
class Viewport:
    zoom: float  # px per second
    scroll_offset: float = 0.0
    label_width: float = 0.0

    def to_pixel(self, time_sec: float) -> float:
        return to_pixel(time_sec, self.zoom, self.scroll_offset, self.label_width)

    def to_time(self, x_px: float) -> float:
        return to_time(x_px, self.zoom, self.scroll_offset, self.label_width)

    def seconds_to_width(self, seconds: float) -> float:
        return max(0.0, float(seconds)) * float(self.zoom)
