"""
TTS bridge contract.

This module defines the *interface only*. The concrete bridge owns the
upstream transport and the session handshake.

Key invariants:
- append_text() and commit() follow the same pre-ready queueing discipline
  as the ASR bridge: held in order, flushed exactly once on READY.
- Audio deltas are surfaced verbatim; the bridge never decodes or resamples.
- close() drops queued-but-unflushed commands instead of sending them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from adapters.channel import BridgeEventChannel


class TTSBridge(ABC):
    """
    Abstract interface for a streaming text-to-speech bridge.

    Implementations are responsible for:
    - Configuring the upstream session (voice, format, sample rate, mode)
    - Forwarding text and commit commands
    - Emitting session/audio/error events on `events`
    """

    events: BridgeEventChannel

    @property
    @abstractmethod
    def sample_rate(self) -> int:
        """Active output sample rate (acknowledged value once READY)."""
        raise NotImplementedError

    @abstractmethod
    async def connect(self) -> None:
        """
        Open the upstream transport and send the session configuration.

        Raises:
            BridgeConnectError if the transport cannot be opened.
        """
        raise NotImplementedError

    @abstractmethod
    def append_text(self, text: str) -> None:
        """Queue text for synthesis. Empty text is ignored."""
        raise NotImplementedError

    @abstractmethod
    def commit(self) -> None:
        """Mark the appended text as ready for synthesis."""
        raise NotImplementedError

    @abstractmethod
    def finish(self) -> None:
        """Send the terminal session event."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Tear down the transport, dropping queued commands. Idempotent."""
        raise NotImplementedError
