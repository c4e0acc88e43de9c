"""
Voice session container.

- Owned and mutated only by SessionCoordinator
- Holds the reassembly buffer, capture sink and 0..1 bridge per service
- NOT a state machine beyond ACTIVE / STOPPED
- Contains no lifecycle logic
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from adapters.asr.base import ASRBridge
from adapters.tts.base import TTSBridge
from audio.capture import WavCaptureSink
from audio.frames import FrameFormat
from audio.reorder import FrameReassemblyBuffer
from constants import REORDER_WINDOW_DEFAULT

OutboundSink = Callable[[dict[str, Any]], None]


class SessionState(str, Enum):
    ACTIVE = "ACTIVE"
    STOPPED = "STOPPED"


@dataclass(frozen=True)
class AsrOptions:
    """
    Client-requested ASR options from session.start.

    None means "use the server default".
    """
    model: Optional[str] = None
    translation_enabled: Optional[bool] = None
    translation_target_languages: Optional[tuple[str, ...]] = None


# ---------------------------------------------------------------------
# VoiceSession
# ---------------------------------------------------------------------


@dataclass
class VoiceSession:
    """Mutable runtime container for a single streaming session."""

    # ------------------------------------------------------------------
    # Identity / ownership
    # ------------------------------------------------------------------

    session_id: str
    owner: str
    outbound: OutboundSink
    created_at: float = field(default_factory=time.time)
    state: SessionState = SessionState.ACTIVE

    # Bumped on start and on every resume; the newest one wins when a
    # tts.* message omits session_id
    activation: int = 0

    # ------------------------------------------------------------------
    # Audio path
    # ------------------------------------------------------------------

    frame_format: FrameFormat = field(default_factory=FrameFormat)
    reorder_window: int = REORDER_WINDOW_DEFAULT
    buffer: FrameReassemblyBuffer = field(init=False)
    sink: WavCaptureSink | None = None
    frames_received: int = 0

    # ------------------------------------------------------------------
    # Upstream bridges
    # ------------------------------------------------------------------

    asr: ASRBridge | None = None
    tts: TTSBridge | None = None

    # ------------------------------------------------------------------
    # Concurrency
    # ------------------------------------------------------------------

    lock: asyncio.Lock = field(init=False)
    tasks: set[asyncio.Task[Any]] = field(init=False)

    def __post_init__(self) -> None:
        self.buffer = FrameReassemblyBuffer(
            on_deliver=self._deliver,
            frame_bytes=self.frame_format.frame_bytes,
            window=self.reorder_window,
        )
        self.lock = asyncio.Lock()
        self.tasks = set()

    # ------------------------------------------------------------------
    # Delivery (called by the reassembly buffer, in order)
    # ------------------------------------------------------------------

    def _deliver(self, chunk: bytes) -> None:
        # Capture first, then ASR: both see the same order
        if self.sink is not None:
            self.sink.append(chunk)
        if self.asr is not None:
            self.asr.send_audio(chunk)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def send(self, msg: dict[str, Any]) -> None:
        """Deliver a message to whichever connection currently owns the session."""
        self.outbound(msg)

    def track(self, task: asyncio.Task[Any]) -> asyncio.Task[Any]:
        """Keep a reference to a session-scoped background task."""
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    def log_context(self) -> dict[str, Any]:
        """Standard logging context for this session."""
        return {
            "session_id": self.session_id,
            "owner": self.owner,
            "state": self.state.value,
            "sample_rate": self.frame_format.sample_rate_hz,
            "frame_ms": self.frame_format.frame_ms,
        }
