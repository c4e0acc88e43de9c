"""
Normalized bridge event definitions.

Rules:
- Events describe facts reported by an upstream bridge.
- Events carry data only (no behavior).
- Both ASR wire protocols and the TTS protocol map onto these types; the
  coordinator never sees vendor message shapes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from adapters.state import Service


class BridgeEventType(str, Enum):
    """
    Canonical bridge event types.
    """

    # ------------------------------------------------------------------
    # ASR
    # ------------------------------------------------------------------
    ASR_PARTIAL = "ASR_PARTIAL"
    ASR_FINAL = "ASR_FINAL"
    ASR_TRANSLATION_PARTIAL = "ASR_TRANSLATION_PARTIAL"
    ASR_TRANSLATION_FINAL = "ASR_TRANSLATION_FINAL"

    # ------------------------------------------------------------------
    # TTS
    # ------------------------------------------------------------------
    TTS_SESSION = "TTS_SESSION"
    TTS_AUDIO = "TTS_AUDIO"

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------
    BRIDGE_ERROR = "BRIDGE_ERROR"


# =============================================================================
# Base Event
# =============================================================================

@dataclass(frozen=True)
class BridgeEvent:
    """
    Base event type.

    All events specify:
    - event_type: discriminant
    - ts_ms: wall-clock time the bridge produced the event
    - service: which bridge produced it
    """

    event_type: BridgeEventType
    ts_ms: int
    service: Service


# =============================================================================
# ASR Events
# =============================================================================

@dataclass(frozen=True)
class ASRPartial(BridgeEvent):
    """Unstable transcript for the current sentence."""
    text: str


@dataclass(frozen=True)
class ASRFinal(BridgeEvent):
    """Sentence-final transcript."""
    text: str


@dataclass(frozen=True)
class ASRTranslationPartial(BridgeEvent):
    """Unstable translation of the current sentence."""
    text: str
    lang: str | None = None


@dataclass(frozen=True)
class ASRTranslationFinal(BridgeEvent):
    """Sentence-final translation."""
    text: str
    lang: str | None = None


# =============================================================================
# TTS Events
# =============================================================================

@dataclass(frozen=True)
class TTSSessionInfo(BridgeEvent):
    """Upstream acknowledged the session configuration."""
    sample_rate: int
    session: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TTSAudioChunk(BridgeEvent):
    """
    One synthesized audio delta, passed through verbatim.

    audio_b64 is exactly what the upstream sent; it is not decoded here.
    """
    audio_b64: str
    sample_rate: int
    audio_format: str


# =============================================================================
# Errors
# =============================================================================

@dataclass(frozen=True)
class BridgeError(BridgeEvent):
    """
    Upstream failure (transport error or upstream-reported failure).

    fatal:
        True when the bridge moved to ERRORED and will send nothing further.
    """
    reason: str
    fatal: bool = False
