"""
DashScope streaming ASR bridge.

One bridge == one upstream WebSocket == one session's audio stream.

Protocol handling is delegated to a WireProtocol strategy picked once at
construction (see protocols.py):
- EVENT_STREAM: READY right after the session.update is sent
- DUPLEX_TASK: READY only on task-started

Everything the strategy classifies is mapped onto normalized bridge events:
    PARTIAL             -> ASRPartial
    FINAL               -> ASRFinal
    TRANSLATION_PARTIAL -> ASRTranslationPartial
    TRANSLATION_FINAL   -> ASRTranslationFinal
    FAILED              -> BridgeError(fatal=True), bridge ERRORED
"""

from __future__ import annotations

from typing import Any

from adapters.asr.base import ASRBridge
from adapters.asr.protocols import (
    AsrProtocol,
    AsrSettings,
    AsrUpdate,
    UpdateKind,
    WireProtocol,
    build_wire_protocol,
    select_protocol,
)
from adapters.base import BridgeConnectError, ConnectFn, StreamingBridge
from adapters.channel import BridgeEventChannel
from adapters.events import (
    ASRFinal,
    ASRPartial,
    ASRTranslationFinal,
    ASRTranslationPartial,
    BridgeEventType,
)
from adapters.state import Service
from constants import FRAME_TRACE_EVERY
from observability.logger import log_debug_event, log_event, now_ms


class DashScopeASRBridge(StreamingBridge, ASRBridge):
    """
    ASR bridge speaking either DashScope wire protocol.
    """

    service = Service.ASR

    def __init__(
        self,
        *,
        session_id: str,
        settings: AsrSettings,
        api_key: str | None,
        base_url: str,
        protocol: AsrProtocol | None = None,
        connect_fn: ConnectFn | None = None,
        events: BridgeEventChannel | None = None,
    ) -> None:
        self._settings = settings
        self._api_key = api_key
        self._protocol_kind = select_protocol(model=settings.model, url=base_url, explicit=protocol)
        self._wire: WireProtocol = build_wire_protocol(self._protocol_kind, settings)

        headers = {"Authorization": f"Bearer {api_key or ''}"}
        headers.update(self._wire.extra_headers())

        super().__init__(
            session_id=session_id,
            url=self._wire.build_url(base_url),
            headers=headers,
            connect_fn=connect_fn,
            events=events,
        )

        self._audio_chunks = 0
        self._audio_bytes = 0
        self._finish_requested = False

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def protocol(self) -> AsrProtocol:
        """Wire protocol selected at construction."""
        return self._protocol_kind

    @property
    def wire(self) -> WireProtocol:
        """Protocol strategy (exposes task ids and effective parameters)."""
        return self._wire

    @property
    def settings(self) -> AsrSettings:
        return self._settings

    # -------------------------------------------------------------------------
    # ASRBridge API
    # -------------------------------------------------------------------------

    def _preflight(self) -> None:
        if not self._api_key:
            log_event({
                "event_type": "ASR_MISSING_API_KEY",
                "session_id": self._session_id,
            })
            raise BridgeConnectError("missing DashScope API key")

    def send_audio(self, pcm_bytes: bytes) -> None:
        if not pcm_bytes:
            return
        if not self._submit(self._wire.encode_audio(pcm_bytes)):
            return

        self._audio_chunks += 1
        self._audio_bytes += len(pcm_bytes)
        if self._audio_chunks % FRAME_TRACE_EVERY == 0:
            log_debug_event({
                "event_type": "ASR_AUDIO_TRACE",
                "session_id": self._session_id,
                "protocol": self._protocol_kind.value,
                "chunks": self._audio_chunks,
                "bytes": self._audio_bytes,
                "state": self.state.value,
                "pending": self.pending_count(),
            })

    def finish(self) -> None:
        if self._finish_requested:
            return
        messages = self._wire.finish_messages()
        if not messages:
            # Duplex task never confirmed: nothing to finish
            log_debug_event({
                "event_type": "ASR_FINISH_SKIPPED",
                "session_id": self._session_id,
                "protocol": self._protocol_kind.value,
            })
            return
        self._finish_requested = True
        for message in messages:
            self._submit(message)
        log_event({
            "event_type": "ASR_FINISH_SENT",
            "session_id": self._session_id,
            "protocol": self._protocol_kind.value,
            "audio_chunks": self._audio_chunks,
        })

    async def stop(self) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Protocol hooks
    # -------------------------------------------------------------------------

    def _on_open(self) -> None:
        for message in self._wire.opening_messages():
            self._send_now(message)
        log_event({
            "event_type": "ASR_SESSION_OPENED",
            "session_id": self._session_id,
            "protocol": self._protocol_kind.value,
            "model": self._settings.model,
        })
        if self._wire.ready_on_open:
            self._become_ready()

    def _handle_message(self, data: dict[str, Any]) -> None:
        classified = self._wire.classify(data)

        if classified.ready:
            self._become_ready()

        header = data.get("header")
        if isinstance(header, dict) and header.get("event") == "task-finished":
            log_event({
                "event_type": "ASR_TASK_FINISHED",
                "session_id": self._session_id,
                "task_id": header.get("task_id"),
            })

        for update in classified.updates:
            self._dispatch(update)

    def _dispatch(self, update: AsrUpdate) -> None:
        ts = now_ms()

        if update.kind is UpdateKind.FAILED:
            log_event({
                "event_type": "ASR_TASK_FAILED",
                "session_id": self._session_id,
                "reason": update.text,
            })
            self._fail(update.text)
            return

        if update.kind is UpdateKind.PARTIAL:
            self.events.emit(ASRPartial(
                event_type=BridgeEventType.ASR_PARTIAL, ts_ms=ts, service=self.service,
                text=update.text,
            ))
        elif update.kind is UpdateKind.FINAL:
            self.events.emit(ASRFinal(
                event_type=BridgeEventType.ASR_FINAL, ts_ms=ts, service=self.service,
                text=update.text,
            ))
        elif update.kind is UpdateKind.TRANSLATION_PARTIAL:
            self.events.emit(ASRTranslationPartial(
                event_type=BridgeEventType.ASR_TRANSLATION_PARTIAL, ts_ms=ts, service=self.service,
                text=update.text, lang=update.lang,
            ))
        elif update.kind is UpdateKind.TRANSLATION_FINAL:
            self.events.emit(ASRTranslationFinal(
                event_type=BridgeEventType.ASR_TRANSLATION_FINAL, ts_ms=ts, service=self.service,
                text=update.text, lang=update.lang,
            ))

        log_debug_event({
            "event_type": "ASR_UPDATE",
            "session_id": self._session_id,
            "kind": update.kind.value,
            "chars": len(update.text),
        })
