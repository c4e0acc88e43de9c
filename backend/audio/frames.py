"""
Audio frame primitives.

Pure data containers only.
No behavior, no buffering, no timing logic.
"""

from __future__ import annotations
from dataclasses import dataclass

from constants import (
    AUDIO_FRAME_MS_DEFAULT,
    AUDIO_SAMPLE_RATE_HZ_DEFAULT,
    frame_bytes_for,
)


@dataclass(frozen=True)
class FrameFormat:
    """
    Per-session PCM frame format, fixed at session start.
    """
    sample_rate_hz: int = AUDIO_SAMPLE_RATE_HZ_DEFAULT
    frame_ms: int = AUDIO_FRAME_MS_DEFAULT

    @property
    def frame_bytes(self) -> int:
        """Byte size of one frame (16-bit mono)."""
        return frame_bytes_for(self.sample_rate_hz, self.frame_ms)
