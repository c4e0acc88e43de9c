"""
Route registration for the speech gateway.

Responsibilities:
- Define HTTP and WebSocket endpoints
- Wire a ClientGateway to each WebSocket lifecycle
- Serialize all outbound messages through one writer task per connection
- Pull dependencies from app.state
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from observability.logger import log_event
from session.coordinator import SessionCoordinator
from session.gateway import ClientGateway, GatewayResult

# Policy violation close code for rejected tokens
WS_CLOSE_AUTH_FAILED = 1008


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""
    @app.get("/health")
    async def health() -> dict[str, str]: # pyright: ignore[reportUnusedFunction]
        return {"status": "ok"}

    @app.websocket("/ws/audio")
    async def audio_endpoint(ws: WebSocket) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()

        coordinator: SessionCoordinator = app.state.coordinator

        # Bridge pumps and replies share one FIFO so the client sees one order
        outbox: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        gateway = ClientGateway(coordinator=coordinator, send=outbox.put_nowait)
        writer = asyncio.create_task(_writer_loop(ws, outbox, gateway.connection_id))

        try:
            result = await gateway.on_ws_connect(ws.query_params.get("token"))
            _enqueue(outbox, result)
            if result.close:
                outbox.put_nowait(None)
                await writer
                await ws.close(code=WS_CLOSE_AUTH_FAILED)
                return

            while True:
                msg = await ws.receive()

                if msg["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(code=msg.get("code", 1000))

                if msg.get("text") is not None:
                    result = await gateway.on_json_message(msg["text"])
                    _enqueue(outbox, result)

                elif msg.get("bytes") is not None:
                    # Binary frames carry the same JSON messages
                    result = await gateway.on_json_message(msg["bytes"])
                    _enqueue(outbox, result)

        except WebSocketDisconnect:
            await gateway.on_ws_disconnect(reason="client_disconnect")

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "WS_FATAL_ERROR",
                "connection_id": gateway.connection_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            await gateway.on_ws_disconnect(reason="server_error")

        finally:
            if not writer.done():
                writer.cancel()
                try:
                    await writer
                except asyncio.CancelledError:
                    pass


def _enqueue(outbox: asyncio.Queue[dict[str, Any] | None], result: GatewayResult) -> None:
    for msg in result.outbound_json:
        outbox.put_nowait(msg)


async def _writer_loop(
    ws: WebSocket,
    outbox: asyncio.Queue[dict[str, Any] | None],
    connection_id: str,
) -> None:
    """
    Send queued messages until the None sentinel (or a send failure).
    """
    while True:
        msg = await outbox.get()
        if msg is None:
            return
        try:
            await ws.send_text(json.dumps(msg, ensure_ascii=False))
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "WS_SEND_FAILED",
                "connection_id": connection_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            return
