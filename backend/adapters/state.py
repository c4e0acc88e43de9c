"""
Upstream bridge enumerations.

Bridge connection state is tracked by each bridge independently of the
session lifecycle. This module defines structure, not behavior.
"""

from __future__ import annotations

from enum import Enum


class Service(str, Enum):
    """
    Upstream services a session may own a bridge to.
    """

    ASR = "ASR"
    TTS = "TTS"


class BridgeState(str, Enum):
    """
    Upstream connection lifecycle.

    DISCONNECTED -> CONNECTING -> HANDSHAKING -> READY -> CLOSING -> CLOSED

    ERRORED is terminal and reachable from any state except CLOSED.
    Outbound commands are queued in every state before READY.
    """

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"    # Transport open in flight
    HANDSHAKING = "HANDSHAKING"  # Transport open, waiting for upstream ack
    READY = "READY"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"
    ERRORED = "ERRORED"


# States in which new outbound commands are dropped instead of queued
TERMINAL_STATES: frozenset[BridgeState] = frozenset({
    BridgeState.CLOSING,
    BridgeState.CLOSED,
    BridgeState.ERRORED,
})
