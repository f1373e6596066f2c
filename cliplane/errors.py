from __future__ import annotations

from typing import Optional


class ValidationError(ValueError):
    """Raised when an edit would break a workspace invariant (overlap, bad trim, bad range)."""
    pass


class ResolutionWarning(UserWarning):
    """Preferred (bundled) transcoder missing; a system binary is used instead."""
    pass


class TranscoderNotFound(RuntimeError):
    """Raised when ffmpeg/ffprobe cannot be located."""
    pass


class ExecutionError(RuntimeError):
    """ffmpeg exited non-zero or did not produce the expected output."""

    def __init__(self, message: str, returncode: Optional[int] = None, output: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class ExportCancelled(Exception):
    """Raised inside a running export when cancellation was requested."""
    pass
