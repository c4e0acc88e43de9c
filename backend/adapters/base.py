"""
Upstream bridge base (shared by the ASR and TTS bridges).

Core model:
- One bridge owns exactly one upstream WebSocket for its whole life.
- connect() opens the transport and sends the protocol's opening message;
  the concrete bridge decides when the upstream is READY.
- Outbound commands pass through a PendingCommandQueue: held until READY,
  flushed once in order, then sent directly.
- A single writer task performs every send, so wire order == submit order.
- A single reader task parses upstream messages and hands them to the
  concrete bridge, which emits normalized events on self.events.

Design constraints:
- No automatic reconnects or retries. Failures surface as BridgeError
  events (or BridgeConnectError from connect()) and the owner decides.
- No knowledge of client connections or sessions beyond a session_id used
  for log correlation.
"""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Protocol, Union

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosedOK

from adapters.channel import BridgeEventChannel
from adapters.events import BridgeError, BridgeEventType
from adapters.pending import PendingCommandQueue
from adapters.state import TERMINAL_STATES, BridgeState, Service
from constants import UPSTREAM_MAX_MESSAGE_BYTES
from observability.logger import log_debug_event, log_event, now_ms

WireMessage = Union[str, bytes]


class UpstreamSocket(Protocol):
    """
    The slice of a websockets ClientConnection a bridge relies on.

    Tests substitute an in-memory fake with the same shape.
    """

    async def send(self, message: WireMessage) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[WireMessage]: ...


ConnectFn = Callable[[str, Mapping[str, str]], Awaitable[UpstreamSocket]]


async def default_connect(url: str, headers: Mapping[str, str]) -> UpstreamSocket:
    """Open a real upstream WebSocket."""
    return await ws_connect(
        url,
        additional_headers=dict(headers),
        max_size=UPSTREAM_MAX_MESSAGE_BYTES,
    )


class BridgeConnectError(Exception):
    """
    Raised by connect() when the upstream transport cannot be opened.

    The bridge is ERRORED afterwards; it is never retried internally.
    """


class StreamingBridge(ABC):
    """
    Connection state machine + reader/writer loops for one upstream socket.

    Subclasses implement:
    - _on_open(): send the opening message(s), maybe call _become_ready()
    - _handle_message(data): interpret one parsed JSON message
    """

    service: Service

    def __init__(
        self,
        *,
        session_id: str,
        url: str,
        headers: Mapping[str, str],
        connect_fn: ConnectFn | None = None,
        events: BridgeEventChannel | None = None,
    ) -> None:
        self._session_id = session_id
        self._url = url
        self._headers = dict(headers)
        self._connect_fn: ConnectFn = connect_fn or default_connect

        self.events: BridgeEventChannel = events or BridgeEventChannel()

        self._state = BridgeState.DISCONNECTED
        self._ready_evt = asyncio.Event()
        self._closed = False

        self._ws: UpstreamSocket | None = None
        self._outbox: asyncio.Queue[WireMessage | None] = asyncio.Queue()
        self._pending: PendingCommandQueue[WireMessage] = PendingCommandQueue(
            send=self._outbox.put_nowait,
        )

        self._reader_task: asyncio.Task[None] | None = None
        self._writer_task: asyncio.Task[None] | None = None

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def state(self) -> BridgeState:
        """Current connection state."""
        return self._state

    @property
    def url(self) -> str:
        """Upstream URL actually dialed."""
        return self._url

    @property
    def headers(self) -> dict[str, str]:
        """Upstream handshake headers."""
        return dict(self._headers)

    def pending_count(self) -> int:
        """Commands held while waiting for READY."""
        return len(self._pending)

    async def wait_ready(self, timeout: float | None = None) -> bool:
        """
        Wait until READY.

        Returns False on timeout or if the bridge can no longer become ready.
        """
        if self._state in TERMINAL_STATES:
            return False
        try:
            await asyncio.wait_for(self._ready_evt.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return self._state is BridgeState.READY

    # -------------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------------

    def _preflight(self) -> None:
        """Hook: raise BridgeConnectError if the bridge cannot connect at all."""

    async def connect(self) -> None:
        """
        Open the upstream transport and start the handshake.

        Returns once the transport is open (READY may come later).
        Idempotent: a second call on a connecting/connected bridge is a no-op.

        Raises:
            BridgeConnectError if the transport cannot be opened.
        """
        if self._state is not BridgeState.DISCONNECTED:
            return

        try:
            self._preflight()
        except BridgeConnectError:
            self._state = BridgeState.ERRORED
            raise

        self._state = BridgeState.CONNECTING
        t0 = time.monotonic()
        try:
            ws = await self._connect_fn(self._url, self._headers)
        except Exception as e:  # pylint: disable=broad-exception-caught
            if self._state is BridgeState.CONNECTING:
                self._state = BridgeState.ERRORED
                self._pending.reset()
            log_event({
                "event_type": "BRIDGE_CONNECT_FAILED",
                "session_id": self._session_id,
                "service": self.service.value,
                "error": repr(e),
            })
            raise BridgeConnectError(f"{self.service.value.lower()} connect failed: {e}") from e

        if self._state is not BridgeState.CONNECTING:
            # close() won the race while we were dialing
            await _close_quietly(ws)
            return

        self._ws = ws
        self._state = BridgeState.HANDSHAKING
        self._writer_task = asyncio.create_task(self._writer_loop(ws))
        self._reader_task = asyncio.create_task(self._reader_loop(ws))

        log_event({
            "event_type": "BRIDGE_CONNECTED",
            "session_id": self._session_id,
            "service": self.service.value,
            "connect_ms": int((time.monotonic() - t0) * 1000),
        })

        self._on_open()

    async def close(self) -> None:
        """
        Tear down the transport.

        Commands still held (or queued for the writer) are dropped, never
        sent. Ends the event channel. Idempotent.
        """
        if self._closed:
            return
        self._closed = True

        was_errored = self._state is BridgeState.ERRORED
        self._state = BridgeState.CLOSING

        dropped = self._pending.reset()
        while not self._outbox.empty():
            self._outbox.get_nowait()
            dropped += 1

        for task in (self._writer_task, self._reader_task):
            if task is not None and not task.done():
                task.cancel()
        for task in (self._writer_task, self._reader_task):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._writer_task = None
        self._reader_task = None

        ws = self._ws
        self._ws = None
        if ws is not None:
            await _close_quietly(ws)

        self._state = BridgeState.ERRORED if was_errored else BridgeState.CLOSED
        self.events.close()

        log_event({
            "event_type": "BRIDGE_CLOSED",
            "session_id": self._session_id,
            "service": self.service.value,
            "dropped_commands": dropped,
        })

    # -------------------------------------------------------------------------
    # Outbound helpers (for subclasses)
    # -------------------------------------------------------------------------

    def _send_now(self, message: WireMessage) -> None:
        """Bypass the ready gate (handshake messages only)."""
        if self._state in TERMINAL_STATES:
            return
        self._outbox.put_nowait(message)

    def _submit(self, message: WireMessage) -> bool:
        """
        Gate a command on READY.

        Returns False if the bridge is closing/closed/errored and the
        command was dropped.
        """
        if self._state in TERMINAL_STATES:
            log_debug_event({
                "event_type": "BRIDGE_COMMAND_DROPPED",
                "session_id": self._session_id,
                "service": self.service.value,
                "state": self._state.value,
            })
            return False
        self._pending.submit(message)
        return True

    def _send_json(self, event: dict[str, Any], *, gated: bool = True) -> bool:
        text = json.dumps(event, ensure_ascii=False)
        if gated:
            return self._submit(text)
        self._send_now(text)
        return True

    def _become_ready(self) -> None:
        """HANDSHAKING -> READY, flushing held commands exactly once."""
        if self._state is not BridgeState.HANDSHAKING:
            return
        self._state = BridgeState.READY
        flushed = self._pending.mark_ready()
        self._ready_evt.set()
        log_event({
            "event_type": "BRIDGE_READY",
            "session_id": self._session_id,
            "service": self.service.value,
            "flushed_commands": flushed,
        })

    # -------------------------------------------------------------------------
    # Event helpers (for subclasses)
    # -------------------------------------------------------------------------

    def _emit_error(self, reason: str, *, fatal: bool = False) -> None:
        self.events.emit(
            BridgeError(
                event_type=BridgeEventType.BRIDGE_ERROR,
                ts_ms=now_ms(),
                service=self.service,
                reason=reason,
                fatal=fatal,
            )
        )

    def _fail(self, reason: str) -> None:
        """Move to ERRORED, drop held commands, surface the error once."""
        if self._state in (BridgeState.CLOSING, BridgeState.CLOSED, BridgeState.ERRORED):
            return
        self._state = BridgeState.ERRORED
        dropped = self._pending.reset()
        self._ready_evt.set()
        log_event({
            "event_type": "BRIDGE_ERRORED",
            "session_id": self._session_id,
            "service": self.service.value,
            "reason": reason,
            "dropped_commands": dropped,
        })
        self._emit_error(reason, fatal=True)

    # -------------------------------------------------------------------------
    # Background loops
    # -------------------------------------------------------------------------

    async def _writer_loop(self, ws: UpstreamSocket) -> None:
        while True:
            message = await self._outbox.get()
            if message is None:
                return
            try:
                await ws.send(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:  # pylint: disable=broad-exception-caught
                self._fail(f"{self.service.value.lower()}_send_failed: {e!r}")
                return

    async def _reader_loop(self, ws: UpstreamSocket) -> None:
        try:
            async for raw in ws:
                if isinstance(raw, bytes):
                    self._handle_binary(raw)
                    continue
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    log_debug_event({
                        "event_type": "BRIDGE_BAD_UPSTREAM_JSON",
                        "session_id": self._session_id,
                        "service": self.service.value,
                        "preview": raw[:100],
                    })
                    continue
                if isinstance(data, dict):
                    self._handle_message(data)
        except asyncio.CancelledError:
            raise
        except ConnectionClosedOK:
            pass
        except Exception as e:  # pylint: disable=broad-exception-caught
            self._fail(f"{self.service.value.lower()}_recv_failed: {e!r}")
            return

        # Upstream ended the stream on its own
        if self._state not in TERMINAL_STATES:
            self._state = BridgeState.CLOSED
            self._pending.reset()
            self._ready_evt.set()
            self._ws = None
            if self._writer_task is not None:
                self._writer_task.cancel()
            self.events.close()
            log_event({
                "event_type": "BRIDGE_UPSTREAM_CLOSED",
                "session_id": self._session_id,
                "service": self.service.value,
            })

    # -------------------------------------------------------------------------
    # Protocol hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    def _on_open(self) -> None:
        """Called once, right after the transport opens."""
        raise NotImplementedError

    @abstractmethod
    def _handle_message(self, data: dict[str, Any]) -> None:
        """Interpret one JSON object received from the upstream."""
        raise NotImplementedError

    def _handle_binary(self, data: bytes) -> None:
        """Binary upstream frames are not part of either protocol; ignored."""
        log_debug_event({
            "event_type": "BRIDGE_BINARY_IGNORED",
            "session_id": self._session_id,
            "service": self.service.value,
            "bytes": len(data),
        })


async def _close_quietly(ws: UpstreamSocket) -> None:
    try:
        await ws.close()
    except Exception:  # pylint: disable=broad-exception-caught
        pass
