"""
Qwen realtime TTS bridge.

Single protocol (event-stream style):

    open  -> session.update {voice, mode, response_format, sample_rate, ...}
    session.created / session.updated -> acknowledged sample rate wins, READY
    response.audio.delta              -> TTSAudioChunk (base64, verbatim)
    error                             -> BridgeError (non-fatal)

Text commands (input_text_buffer.append / .commit) are gated on READY the
same way ASR audio is. close() drops anything still held.
"""

from __future__ import annotations

import urllib.parse
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from adapters.base import BridgeConnectError, ConnectFn, StreamingBridge
from adapters.channel import BridgeEventChannel
from adapters.events import BridgeEventType, TTSAudioChunk, TTSSessionInfo
from adapters.state import Service
from adapters.tts.base import TTSBridge
from constants import (
    REALTIME_BETA_HEADER,
    TTS_MODE_DEFAULT,
    TTS_RESPONSE_FORMAT_DEFAULT,
    TTS_SAMPLE_RATE_HZ_DEFAULT,
)
from observability.logger import log_debug_event, log_event, now_ms


@dataclass(frozen=True)
class TtsSettings:
    """Upstream TTS session configuration."""

    model: str = "qwen-tts-realtime"
    voice: str = "Cherry"
    response_format: str = TTS_RESPONSE_FORMAT_DEFAULT
    sample_rate: int = TTS_SAMPLE_RATE_HZ_DEFAULT
    mode: str = TTS_MODE_DEFAULT
    instructions: str | None = None
    optimize_instructions: bool | None = None


def _event_id() -> str:
    return f"event_{uuid4().hex}"


def _with_model(base_url: str, model: str) -> str:
    if not model:
        return base_url
    parts = urllib.parse.urlsplit(base_url)
    query = dict(urllib.parse.parse_qsl(parts.query))
    query["model"] = model
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))


class QwenTTSBridge(StreamingBridge, TTSBridge):
    """
    Streaming TTS bridge for the Qwen realtime endpoint.
    """

    service = Service.TTS

    def __init__(
        self,
        *,
        session_id: str,
        settings: TtsSettings,
        api_key: str | None,
        base_url: str,
        connect_fn: ConnectFn | None = None,
        events: BridgeEventChannel | None = None,
    ) -> None:
        name, value = REALTIME_BETA_HEADER
        super().__init__(
            session_id=session_id,
            url=_with_model(base_url, settings.model),
            headers={"Authorization": f"Bearer {api_key or ''}", name: value},
            connect_fn=connect_fn,
            events=events,
        )
        self._settings = settings
        self._api_key = api_key
        self._sample_rate = settings.sample_rate
        self._audio_chunks = 0

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def audio_format(self) -> str:
        return self._settings.response_format

    # -------------------------------------------------------------------------
    # TTSBridge API
    # -------------------------------------------------------------------------

    def _preflight(self) -> None:
        if not self._api_key:
            log_event({
                "event_type": "TTS_MISSING_API_KEY",
                "session_id": self._session_id,
            })
            raise BridgeConnectError("missing DashScope API key")

    def session_update(self) -> dict[str, Any]:
        s = self._settings
        session: dict[str, Any] = {
            "voice": s.voice,
            "mode": s.mode,
            "response_format": s.response_format,
            "sample_rate": s.sample_rate,
        }
        if s.instructions:
            session["instructions"] = s.instructions
        if s.optimize_instructions is not None:
            session["optimize_instructions"] = s.optimize_instructions
        return {"event_id": _event_id(), "type": "session.update", "session": session}

    def append_text(self, text: str) -> None:
        if not text:
            return
        self._send_json({"event_id": _event_id(), "type": "input_text_buffer.append", "text": text})

    def commit(self) -> None:
        self._send_json({"event_id": _event_id(), "type": "input_text_buffer.commit"})

    def finish(self) -> None:
        self._send_json({"event_id": _event_id(), "type": "session.finish"})

    # -------------------------------------------------------------------------
    # Protocol hooks
    # -------------------------------------------------------------------------

    def _on_open(self) -> None:
        self._send_json(self.session_update(), gated=False)

    def _handle_message(self, data: dict[str, Any]) -> None:
        msg_type = data.get("type")

        if msg_type in ("session.created", "session.updated"):
            session = data.get("session")
            session = session if isinstance(session, dict) else {}
            acked_rate = session.get("sample_rate")
            if isinstance(acked_rate, int) and acked_rate > 0:
                self._sample_rate = acked_rate
            self.events.emit(TTSSessionInfo(
                event_type=BridgeEventType.TTS_SESSION,
                ts_ms=now_ms(),
                service=self.service,
                sample_rate=self._sample_rate,
                session=session,
            ))
            self._become_ready()
            return

        if msg_type == "response.audio.delta":
            delta = data.get("delta")
            if not isinstance(delta, str) or not delta:
                return
            self._audio_chunks += 1
            self.events.emit(TTSAudioChunk(
                event_type=BridgeEventType.TTS_AUDIO,
                ts_ms=now_ms(),
                service=self.service,
                audio_b64=delta,
                sample_rate=self._sample_rate,
                audio_format=self._settings.response_format,
            ))
            return

        if msg_type == "error":
            error = data.get("error")
            message = error.get("message") if isinstance(error, dict) else None
            reason = str(message or "tts upstream error")
            log_event({
                "event_type": "TTS_UPSTREAM_ERROR",
                "session_id": self._session_id,
                "reason": reason,
            })
            self._emit_error(reason)
            return

        log_debug_event({
            "event_type": "TTS_EVENT_IGNORED",
            "session_id": self._session_id,
            "type": msg_type,
        })
