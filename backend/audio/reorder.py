"""
Bounded frame reassembly (jitter) buffer.

Accepts sequence-tagged audio frames in any order and delivers their
payloads strictly in sequence order through a delivery callback.

Rules:
- Wrong-size payloads are rejected with no state change
- Frames behind expected_seq are stale: reported, never buffered or delivered
- The holding set is bounded by the reorder window; on overflow the smallest
  held sequence either becomes the new expected_seq (gap accepted) or, if it
  is not ahead of expected_seq, is discarded
- Deterministic, synchronous behavior
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from constants import REORDER_WINDOW_DEFAULT, SEQ_NUM_START


class PushOutcome(str, Enum):
    """
    Result classification for a single push().
    """
    ACCEPTED = "accepted"
    DROPPED_STALE = "dropped_stale"
    REJECTED_BAD_SIZE = "rejected_bad_size"


@dataclass(frozen=True)
class PushResult:
    """
    Outcome of push().

    delivered:
        Number of frames released to the delivery callback by this push.
    """
    outcome: PushOutcome
    expected_seq: int
    frame_count: int
    delivered: int = 0
    expected_bytes: int | None = None
    got_bytes: int | None = None

    @property
    def ok(self) -> bool:
        """True unless the frame was rejected."""
        return self.outcome is not PushOutcome.REJECTED_BAD_SIZE


@dataclass
class ReorderCounters:
    """
    Counters for observability.
    """
    stale: int = 0
    bad_size: int = 0
    gap_advances: int = 0
    frames_skipped: int = 0
    evicted: int = 0


class FrameReassemblyBuffer:
    """
    Per-session reorder buffer keyed by sequence number.

    The holding set never exceeds window + 1 entries.
    """

    def __init__(
        self,
        *,
        on_deliver: Callable[[bytes], None],
        frame_bytes: Optional[int] = None,
        window: int = REORDER_WINDOW_DEFAULT,
        start_seq: int = SEQ_NUM_START,
    ) -> None:
        if window <= 0:
            raise ValueError("window must be > 0")

        self._on_deliver = on_deliver
        self._frame_bytes = frame_bytes
        self._window = window
        self._expected_seq = start_seq
        self._held: dict[int, bytes] = {}
        self._frame_count = 0
        self.counters: ReorderCounters = ReorderCounters()

    # -------------------------
    # Core operation
    # -------------------------

    def push(self, seq: int, payload: bytes) -> PushResult:
        """
        Offer one frame to the buffer.

        Delivers every payload that becomes contiguous from expected_seq,
        in order, before returning.
        """
        if self._frame_bytes is not None and len(payload) != self._frame_bytes:
            self.counters.bad_size += 1
            return PushResult(
                outcome=PushOutcome.REJECTED_BAD_SIZE,
                expected_seq=self._expected_seq,
                frame_count=self._frame_count,
                expected_bytes=self._frame_bytes,
                got_bytes=len(payload),
            )

        if seq < self._expected_seq:
            self.counters.stale += 1
            return PushResult(
                outcome=PushOutcome.DROPPED_STALE,
                expected_seq=self._expected_seq,
                frame_count=self._frame_count,
            )

        self._held[seq] = payload

        if len(self._held) > self._window:
            self._evict_smallest()

        delivered = 0
        while self._expected_seq in self._held:
            chunk = self._held.pop(self._expected_seq)
            self._expected_seq += 1
            self._frame_count += 1
            delivered += 1
            self._on_deliver(chunk)

        return PushResult(
            outcome=PushOutcome.ACCEPTED,
            expected_seq=self._expected_seq,
            frame_count=self._frame_count,
            delivered=delivered,
        )

    def _evict_smallest(self) -> None:
        smallest = min(self._held)
        if smallest > self._expected_seq:
            # Gap is unrecoverable: skip ahead, keep the data
            self.counters.gap_advances += 1
            self.counters.frames_skipped += smallest - self._expected_seq
            self._expected_seq = smallest
        else:
            del self._held[smallest]
            self.counters.evicted += 1

    # -------------------------
    # Introspection helpers
    # -------------------------

    @property
    def expected_seq(self) -> int:
        """Next sequence number that will be delivered."""
        return self._expected_seq

    @property
    def frame_count(self) -> int:
        """Total frames delivered so far."""
        return self._frame_count

    @property
    def window(self) -> int:
        """Reorder window size."""
        return self._window

    def __len__(self) -> int:
        return len(self._held)

    def held_sequences(self) -> tuple[int, ...]:
        """Currently held sequence numbers, ascending."""
        return tuple(sorted(self._held))

    def snapshot(self) -> dict[str, int]:
        """
        Lightweight snapshot for logging.
        """
        return {
            "expected_seq": self._expected_seq,
            "held": len(self._held),
            "frame_count": self._frame_count,
            "stale": self.counters.stale,
            "bad_size": self.counters.bad_size,
            "gap_advances": self.counters.gap_advances,
            "frames_skipped": self.counters.frames_skipped,
            "evicted": self.counters.evicted,
        }
