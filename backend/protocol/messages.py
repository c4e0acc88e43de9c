# backend/protocol/messages.py
"""
JSON message codec for the client WebSocket.

Client → Server (text frames, one JSON object each):

    {"type": "session.start", "session_id": "s1", "sample_rate": 16000, "frame_ms": 20,
     "model": "gummy-realtime-v1", "translation_enabled": true,
     "translation_target_languages": ["en"]}
    {"type": "audio.frame", "session_id": "s1", "seq": 0, "audio_b64": "..."}
    {"type": "session.stop", "session_id": "s1"}
    {"type": "tts.start", "session_id": "s1", "voice": "Cherry"}
    {"type": "tts.append", "text": "hello"}
    {"type": "tts.commit"} / {"type": "tts.finish"}

Server → Client messages are plain dicts built here and always tagged
with the originating session_id where one exists.

Usage example:

    try:
        msg = decode_client_message(text)
    except ProtocolError as e:
        send(server_error(e.code, str(e), session_id=e.session_id))
"""

from __future__ import annotations

import base64
import binascii
import json
import math
import re
from dataclasses import dataclass
from typing import Any, Optional, Union

from adapters.events import (
    ASRFinal,
    ASRPartial,
    ASRTranslationFinal,
    ASRTranslationPartial,
    BridgeError,
    BridgeEvent,
    TTSAudioChunk,
    TTSSessionInfo,
)
from adapters.state import Service
from constants import (
    AUDIO_FRAME_MS_DEFAULT,
    AUDIO_FRAME_MS_MAX,
    AUDIO_SAMPLE_RATE_HZ_DEFAULT,
    AUDIO_SAMPLE_RATE_HZ_MAX,
    ERR_ASR_ERROR,
    ERR_BAD_FRAME,
    ERR_BAD_JSON,
    ERR_BAD_MESSAGE,
    ERR_BAD_SESSION,
    SESSION_ID_PATTERN,
)

_SESSION_ID_RE = re.compile(SESSION_ID_PATTERN)


# -------------------------
# Exceptions
# -------------------------

class ProtocolError(Exception):
    """
    Base class for client protocol errors.

    Every subclass carries the client-facing error code; session_id is set
    when the offending message named a (valid) session.
    """

    code: str = ERR_BAD_MESSAGE

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id


class BadJson(ProtocolError):
    """
    Raised when a text frame is not valid JSON or not a JSON object.
    """

    code = ERR_BAD_JSON


class UnknownMessageType(ProtocolError):
    """
    Raised when `type` is missing or not one the gateway understands.
    """

    code = ERR_BAD_MESSAGE


class InvalidField(ProtocolError):
    """
    Raised when a known message carries a field of the wrong shape
    (e.g. a non-positive sample_rate).
    """

    code = ERR_BAD_MESSAGE


class InvalidSession(ProtocolError):
    """
    Raised when session_id is missing or not a safe identifier.

    Session ids name capture files, so only [A-Za-z0-9_.-]{1,128} is allowed.
    """

    code = ERR_BAD_SESSION


class InvalidFrame(ProtocolError):
    """
    Raised when an audio.frame has a bad seq or undecodable audio_b64.
    """

    code = ERR_BAD_FRAME


# -------------------------
# Client messages
# -------------------------

@dataclass(frozen=True)
class SessionStart:
    session_id: str
    sample_rate: int = AUDIO_SAMPLE_RATE_HZ_DEFAULT
    frame_ms: int = AUDIO_FRAME_MS_DEFAULT
    model: Optional[str] = None
    translation_enabled: Optional[bool] = None
    translation_target_languages: Optional[tuple[str, ...]] = None


@dataclass(frozen=True)
class AudioFrameMessage:
    session_id: str
    seq: int
    pcm_bytes: bytes


@dataclass(frozen=True)
class SessionStop:
    session_id: str


@dataclass(frozen=True)
class TtsStart:
    session_id: Optional[str] = None
    voice: Optional[str] = None
    instructions: Optional[str] = None


@dataclass(frozen=True)
class TtsAppend:
    text: str
    session_id: Optional[str] = None


@dataclass(frozen=True)
class TtsCommit:
    session_id: Optional[str] = None


@dataclass(frozen=True)
class TtsFinish:
    session_id: Optional[str] = None


ClientMessage = Union[
    SessionStart,
    AudioFrameMessage,
    SessionStop,
    TtsStart,
    TtsAppend,
    TtsCommit,
    TtsFinish,
]


# -------------------------
# Field helpers
# -------------------------

def is_valid_session_id(value: Any) -> bool:
    return isinstance(value, str) and _SESSION_ID_RE.fullmatch(value) is not None


def _session_id(data: dict[str, Any], *, required: bool = True) -> str | None:
    value = data.get("session_id")
    if value is None and not required:
        return None
    if not is_valid_session_id(value):
        raise InvalidSession("missing or invalid session_id")
    return value


def _bounded_int(
    data: dict[str, Any],
    key: str,
    default: int,
    maximum: int,
    session_id: str,
) -> int:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidField(f"{key} must be a number", session_id=session_id)
    # json.loads accepts Infinity / NaN literals
    if isinstance(value, float) and not math.isfinite(value):
        raise InvalidField(f"{key} must be a finite number", session_id=session_id)
    if not 0 < value <= maximum:
        raise InvalidField(f"{key} must be in 1..{maximum}", session_id=session_id)
    if int(value) != value:
        raise InvalidField(f"{key} must be an integer", session_id=session_id)
    return int(value)


def _optional_str(data: dict[str, Any], key: str, session_id: str | None) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidField(f"{key} must be a string", session_id=session_id)
    return value or None


def _optional_bool(data: dict[str, Any], key: str, session_id: str) -> bool | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise InvalidField(f"{key} must be a boolean", session_id=session_id)
    return value


def _language_list(data: dict[str, Any], key: str, session_id: str) -> tuple[str, ...] | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise InvalidField(f"{key} must be a list of strings", session_id=session_id)
    return tuple(v.strip() for v in value if v.strip())


# -------------------------
# Client → Server decoding
# -------------------------

def _decode_session_start(data: dict[str, Any]) -> SessionStart:
    session_id = _session_id(data)
    return SessionStart(
        session_id=session_id,
        sample_rate=_bounded_int(
            data, "sample_rate", AUDIO_SAMPLE_RATE_HZ_DEFAULT, AUDIO_SAMPLE_RATE_HZ_MAX, session_id
        ),
        frame_ms=_bounded_int(data, "frame_ms", AUDIO_FRAME_MS_DEFAULT, AUDIO_FRAME_MS_MAX, session_id),
        model=_optional_str(data, "model", session_id),
        translation_enabled=_optional_bool(data, "translation_enabled", session_id),
        translation_target_languages=_language_list(
            data, "translation_target_languages", session_id
        ),
    )


def _decode_audio_frame(data: dict[str, Any]) -> AudioFrameMessage:
    session_id = _session_id(data)

    seq = data.get("seq")
    if isinstance(seq, bool) or not isinstance(seq, int) or seq < 0:
        raise InvalidFrame("seq must be a non-negative integer", session_id=session_id)

    audio_b64 = data.get("audio_b64")
    if not isinstance(audio_b64, str):
        raise InvalidFrame("audio_b64 must be a base64 string", session_id=session_id)
    try:
        pcm_bytes = base64.b64decode(audio_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidFrame(f"audio_b64 is not valid base64: {e}", session_id=session_id) from e

    return AudioFrameMessage(session_id=session_id, seq=seq, pcm_bytes=pcm_bytes)


def _decode_tts_append(data: dict[str, Any]) -> TtsAppend:
    session_id = _session_id(data, required=False)
    text = data.get("text", "")
    if not isinstance(text, str):
        raise InvalidField("text must be a string", session_id=session_id)
    return TtsAppend(text=text, session_id=session_id)


def _decode_tts_start(data: dict[str, Any]) -> TtsStart:
    session_id = _session_id(data, required=False)
    return TtsStart(
        session_id=session_id,
        voice=_optional_str(data, "voice", session_id),
        instructions=_optional_str(data, "instructions", session_id),
    )


_DECODERS = {
    "session.start": _decode_session_start,
    "audio.frame": _decode_audio_frame,
    "session.stop": lambda data: SessionStop(session_id=_session_id(data)),
    "tts.start": _decode_tts_start,
    "tts.append": _decode_tts_append,
    "tts.commit": lambda data: TtsCommit(session_id=_session_id(data, required=False)),
    "tts.finish": lambda data: TtsFinish(session_id=_session_id(data, required=False)),
}


def decode_client_message(raw: str | bytes) -> ClientMessage:
    """
    Decode one client text frame.

    Raises:
        BadJson, UnknownMessageType, InvalidField, InvalidSession, InvalidFrame
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise BadJson(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise BadJson("message must be a JSON object")

    msg_type = data.get("type")
    decoder = _DECODERS.get(msg_type) if isinstance(msg_type, str) else None
    if decoder is None:
        raise UnknownMessageType(f"unknown message type: {msg_type!r}")

    return decoder(data)


# -------------------------
# Server → Client encoding
# -------------------------

def server_info(message: str, *, session_id: str | None = None) -> dict[str, Any]:
    out: dict[str, Any] = {"type": "server.info", "message": message}
    if session_id is not None:
        out["session_id"] = session_id
    return out


def server_error(
    code: str,
    message: str,
    *,
    session_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    out: dict[str, Any] = {"type": "server.error", "code": code, "message": message}
    if session_id is not None:
        out["session_id"] = session_id
    if details:
        out["details"] = details
    return out


def encode_bridge_event(session_id: str, event: BridgeEvent) -> dict[str, Any] | None:
    """
    Translate a normalized bridge event into a client message.

    Every message carries session_id. Returns None for event types that
    have no client representation.
    """
    if isinstance(event, ASRPartial):
        return {"type": "asr.partial", "session_id": session_id, "text": event.text}

    if isinstance(event, ASRFinal):
        return {"type": "asr.final", "session_id": session_id, "text": event.text}

    if isinstance(event, ASRTranslationPartial):
        return {
            "type": "asr.translation.partial",
            "session_id": session_id,
            "text": event.text,
            "lang": event.lang,
        }

    if isinstance(event, ASRTranslationFinal):
        return {
            "type": "asr.translation.final",
            "session_id": session_id,
            "text": event.text,
            "lang": event.lang,
        }

    if isinstance(event, TTSSessionInfo):
        return {"type": "tts.session", "session_id": session_id, "sample_rate": event.sample_rate}

    if isinstance(event, TTSAudioChunk):
        return {
            "type": "tts.audio.delta",
            "session_id": session_id,
            "sample_rate": event.sample_rate,
            "format": event.audio_format,
            "audio_b64": event.audio_b64,
        }

    if isinstance(event, BridgeError):
        if event.service is Service.TTS:
            return {"type": "tts.error", "session_id": session_id, "message": event.reason}
        return server_error(ERR_ASR_ERROR, event.reason, session_id=session_id)

    return None
