"""
ASR bridge contract.

This module defines the *interface only*. Wire protocols, readiness
buffering and event normalization live in the concrete bridge.

Key invariants:
- The protocol is chosen once at construction and never renegotiated.
- Audio sent before READY is queued in order and flushed exactly once.
- The bridge emits normalized events on its event channel; it never calls
  back into the coordinator.
- Failures surface as events (or BridgeConnectError from connect()); the
  bridge never reconnects on its own.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from adapters.channel import BridgeEventChannel


class ASRBridge(ABC):
    """
    Abstract interface for a streaming ASR bridge.

    Implementations are responsible for:
    - Opening and owning exactly one upstream transport
    - Accepting ordered PCM16 chunks via send_audio()
    - Producing partial/final/translation/error events on `events`

    Non-responsibilities:
    - No frame reordering (the session's reassembly buffer already did it)
    - No capture
    - No knowledge of client connections
    """

    events: BridgeEventChannel

    @abstractmethod
    async def connect(self) -> None:
        """
        Open the upstream transport and begin the protocol handshake.

        Raises:
            BridgeConnectError if the transport cannot be opened.
        """
        raise NotImplementedError

    @abstractmethod
    def send_audio(self, pcm_bytes: bytes) -> None:
        """
        Submit one ordered chunk of PCM16 audio.

        Contract:
        - Before READY the chunk is queued, never dropped or sent early.
        - After close/error the chunk is dropped.
        """
        raise NotImplementedError

    @abstractmethod
    def finish(self) -> None:
        """
        Ask the upstream to end the stream gracefully.

        Terminal results may still arrive after this call.
        """
        raise NotImplementedError

    @abstractmethod
    async def stop(self) -> None:
        """
        Tear down the transport. Idempotent.
        """
        raise NotImplementedError
