"""
Client gateway (one per WebSocket connection).

Responsibilities:
- Checks the connection token
- Decodes inbound JSON messages and routes them to the coordinator
- Turns protocol / session errors into server.error replies
- Owns the connection's outbound sink; bridge events for sessions this
  connection owns arrive through it
- Tears down this connection's sessions on disconnect

Still NOT responsible for:
- Session lifecycle rules (SessionCoordinator)
- Upstream protocols
- Socket I/O (server.routes)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable
from uuid import uuid4

from audio.frames import FrameFormat
from auth import verify_token
from constants import ERR_AUTH_FAILED
from observability.logger import log_debug_event, log_event
from protocol.messages import (
    AudioFrameMessage,
    ClientMessage,
    ProtocolError,
    SessionStart,
    SessionStop,
    TtsAppend,
    TtsCommit,
    TtsFinish,
    TtsStart,
    decode_client_message,
    server_error,
    server_info,
)
from session.coordinator import SessionCoordinator
from session.errors import SessionError, TtsNotStarted
from session.voice_session import AsrOptions


def _new_connection_id() -> str:
    return f"conn_{uuid4().hex[:12]}"


# ------------------------------------------------------------------
# Gateway result
# ------------------------------------------------------------------

@dataclass(frozen=True)
class GatewayResult:
    """
    Return value for gateway boundary methods.

    outbound_json:
        JSON messages to send to the client, in order

    close:
        True if the connection must be closed after sending them
    """
    outbound_json: tuple[dict[str, Any], ...] = ()
    close: bool = False


# ------------------------------------------------------------------
# ClientGateway
# ------------------------------------------------------------------

class ClientGateway:
    """
    One gateway == one client connection (may drive several sessions).
    """

    def __init__(
        self,
        *,
        coordinator: SessionCoordinator,
        send: Callable[[dict[str, Any]], None],
        connection_id: str | None = None,
    ) -> None:
        self._coordinator = coordinator
        self._send_fn = send
        self.connection_id = connection_id or _new_connection_id()
        self.user_id: str | None = None
        self._connected = False

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def on_ws_connect(self, token: str | None) -> GatewayResult:
        """Called once the WebSocket is accepted."""
        auth = verify_token(token)
        if not auth.ok:
            log_event({
                "event_type": "WS_AUTH_FAILED",
                "connection_id": self.connection_id,
                "reason": auth.reason,
            })
            return GatewayResult(
                outbound_json=(server_error(ERR_AUTH_FAILED, auth.reason or "auth failed"),),
                close=True,
            )

        self._connected = True
        self.user_id = auth.user_id
        log_event({
            "event_type": "WS_CONNECTED",
            "connection_id": self.connection_id,
            "user_id": self.user_id,
        })
        return GatewayResult(outbound_json=(server_info("connected"),))

    async def on_ws_disconnect(self, reason: str | None = None) -> GatewayResult:
        """Stop every session this connection still owns. Idempotent."""
        was_connected = self._connected
        self._connected = False

        stopped = await self._coordinator.teardown_owner(self.connection_id)
        if was_connected:
            log_event({
                "event_type": "WS_DISCONNECTED",
                "connection_id": self.connection_id,
                "reason": reason,
                "sessions_stopped": stopped,
            })
        return GatewayResult()

    def send(self, msg: dict[str, Any]) -> None:
        """Outbound sink handed to sessions; drops messages once disconnected."""
        if not self._connected:
            log_debug_event({
                "event_type": "WS_SEND_DROPPED",
                "connection_id": self.connection_id,
                "type": msg.get("type"),
            })
            return
        self._send_fn(msg)

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    async def on_json_message(self, raw: str | bytes) -> GatewayResult:
        """Route one client text frame."""
        try:
            msg = decode_client_message(raw)
        except ProtocolError as e:
            log_debug_event({
                "event_type": "CLIENT_PROTOCOL_ERROR",
                "connection_id": self.connection_id,
                "code": e.code,
                "message": str(e),
            })
            return _error_result(e.code, str(e), session_id=e.session_id)

        try:
            return await self._route(msg)
        except TtsNotStarted as e:
            return GatewayResult(outbound_json=(
                {"type": "tts.error", "session_id": e.session_id, "message": str(e)},
            ))
        except SessionError as e:
            return _error_result(e.code, str(e), session_id=e.session_id, details=e.details)

    async def _route(self, msg: ClientMessage) -> GatewayResult:
        if isinstance(msg, AudioFrameMessage):
            await self._coordinator.push_frame(msg.session_id, msg.seq, msg.pcm_bytes)
            return GatewayResult()

        if isinstance(msg, SessionStart):
            result = await self._coordinator.start(
                msg.session_id,
                owner=self.connection_id,
                outbound=self.send,
                frame_format=FrameFormat(sample_rate_hz=msg.sample_rate, frame_ms=msg.frame_ms),
                asr_options=AsrOptions(
                    model=msg.model,
                    translation_enabled=msg.translation_enabled,
                    translation_target_languages=msg.translation_target_languages,
                ),
            )
            message = "session resumed" if result.resumed else "session started"
            return GatewayResult(outbound_json=(server_info(message, session_id=msg.session_id),))

        if isinstance(msg, SessionStop):
            await self._coordinator.stop(msg.session_id)
            # Idempotent from the client's point of view
            return GatewayResult(outbound_json=(
                server_info("session stopped", session_id=msg.session_id),
            ))

        session = self._coordinator.resolve_tts_session(self.connection_id, msg.session_id)

        if isinstance(msg, TtsStart):
            await self._coordinator.tts_start(
                session, voice=msg.voice, instructions=msg.instructions
            )
        elif isinstance(msg, TtsAppend):
            await self._coordinator.tts_append(session, msg.text)
        elif isinstance(msg, TtsCommit):
            await self._coordinator.tts_commit(session)
        elif isinstance(msg, TtsFinish):
            await self._coordinator.tts_finish(session)
        return GatewayResult()


def _error_result(
    code: str,
    message: str,
    *,
    session_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> GatewayResult:
    return GatewayResult(outbound_json=(
        server_error(code, message, session_id=session_id, details=details),
    ))
