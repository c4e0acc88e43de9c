"""
CONSTANTS
---------
Single source of truth for behavioral invariants of the gateway.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Deployment-specific values (keys, URLs, defaults an operator may tune)
  live in config.py instead.
"""

from __future__ import annotations

from typing import Final, Tuple

# =============================================================================
# Audio Format (PCM16 mono, fixed-duration frames)
# =============================================================================

AUDIO_SAMPLE_RATE_HZ_DEFAULT: Final[int] = 16_000
AUDIO_FRAME_MS_DEFAULT: Final[int] = 20
# Upper bounds accepted from session.start
AUDIO_SAMPLE_RATE_HZ_MAX: Final[int] = 384_000
AUDIO_FRAME_MS_MAX: Final[int] = 1_000
AUDIO_CHANNELS: Final[int] = 1
AUDIO_SAMPLE_WIDTH_BYTES: Final[int] = 2  # PCM16 (signed 16-bit)
AUDIO_BITS_PER_SAMPLE: Final[int] = AUDIO_SAMPLE_WIDTH_BYTES * 8

# Upstream input format tag for raw PCM
ASR_INPUT_FORMAT: Final[str] = "pcm"

# =============================================================================
# Frame Reassembly
# =============================================================================

REORDER_WINDOW_DEFAULT: Final[int] = 50
SEQ_NUM_START: Final[int] = 0

# Trace one audio frame out of every N when debug tracing is enabled
FRAME_TRACE_EVERY: Final[int] = 50

# =============================================================================
# Capture container (RIFF/WAVE, PCM)
# =============================================================================

WAV_HEADER_BYTES: Final[int] = 44
WAV_FMT_CHUNK_BYTES: Final[int] = 16
WAV_FORMAT_PCM: Final[int] = 1
WAV_RIFF_SIZE_OFFSET: Final[int] = 4
WAV_DATA_SIZE_OFFSET: Final[int] = 40
# RIFF size = header bytes after the 8-byte RIFF preamble + data bytes
WAV_RIFF_SIZE_BASE: Final[int] = WAV_HEADER_BYTES - 8

# =============================================================================
# Session lifecycle
# =============================================================================

STOP_GRACE_MS_DEFAULT: Final[int] = 500
SESSION_ID_PATTERN: Final[str] = r"^[A-Za-z0-9_.\-]{1,128}$"

# =============================================================================
# Upstream protocols
# =============================================================================

DUPLEX_URL_MARKER: Final[str] = "/api-ws/v1/inference"
DUPLEX_MODEL_PREFIXES: Final[Tuple[str, ...]] = ("fun-asr-", "gummy-")
TRANSLATION_MODEL_PREFIX: Final[str] = "gummy-"
TRANSLATION_MAX_TARGET_LANGUAGES: Final[int] = 1

REALTIME_BETA_HEADER: Final[Tuple[str, str]] = ("OpenAI-Beta", "realtime=v1")
UPSTREAM_MAX_MESSAGE_BYTES: Final[int] = 2**22

TTS_SAMPLE_RATE_HZ_DEFAULT: Final[int] = 24_000
TTS_RESPONSE_FORMAT_DEFAULT: Final[str] = "pcm"
TTS_MODE_DEFAULT: Final[str] = "server_commit"

# =============================================================================
# Client-facing error codes
# =============================================================================

ERR_AUTH_FAILED: Final[str] = "AUTH_FAILED"
ERR_BAD_JSON: Final[str] = "BAD_JSON"
ERR_BAD_MESSAGE: Final[str] = "BAD_MESSAGE"
ERR_BAD_SESSION: Final[str] = "BAD_SESSION"
ERR_BAD_FRAME: Final[str] = "BAD_FRAME"
ERR_ASR_ERROR: Final[str] = "ASR_ERROR"
ERR_ASR_CONNECT_FAILED: Final[str] = "ASR_CONNECT_FAILED"
ERR_CAPTURE_FAILED: Final[str] = "CAPTURE_FAILED"

# =============================================================================
# Auth
# =============================================================================

TOKEN_MIN_LENGTH: Final[int] = 10


# =============================================================================
# Helper Functions
# =============================================================================

def frame_bytes_for(sample_rate_hz: int, frame_ms: int) -> int:
    """
    Byte size of one PCM16 mono frame of `frame_ms` at `sample_rate_hz`.

    Samples are rounded to the nearest integer, then doubled for 16-bit width.
    """
    samples = round(sample_rate_hz * frame_ms / 1000)
    return samples * AUDIO_SAMPLE_WIDTH_BYTES
