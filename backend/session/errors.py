"""
Session-level errors raised by the coordinator.

Each carries the client-facing error code. The gateway turns them into
server.error messages; no session state is mutated when one is raised
(except SessionCaptureFailed, which has already stopped the session).
"""

from __future__ import annotations

from typing import Any

from constants import ERR_BAD_FRAME, ERR_BAD_SESSION, ERR_CAPTURE_FAILED


class SessionError(Exception):
    """Base class for coordinator errors."""

    code: str = ERR_BAD_SESSION

    def __init__(
        self,
        message: str,
        *,
        session_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.details = details


class UnknownSession(SessionError):
    """No active session with that id (or none owned by this connection)."""

    code = ERR_BAD_SESSION


class FrameRejected(SessionError):
    """Frame payload size does not match the session's frame format."""

    code = ERR_BAD_FRAME


class SessionCaptureFailed(SessionError):
    """
    Capture file could not be opened or written.

    On open the session was never created; on write it has been stopped.
    """

    code = ERR_CAPTURE_FAILED


class TtsNotStarted(SessionError):
    """A tts.* command arrived before tts.start for that session."""
