# tools/stream_wav_client.py
"""
Stream a 16-bit mono WAV file through a running gateway.

    python tools/stream_wav_client.py hello.wav --token demo-token-123 \
        --url ws://localhost:8080/ws/audio --model gummy-realtime-v1

Frames are paced in real time; every server message is printed as it
arrives. --shuffle reorders frames within small windows to exercise the
server's reassembly buffer.
"""
from __future__ import annotations

import argparse
import asyncio
import base64
import json
import random
import sys
import wave
from urllib.parse import urlencode

from websockets.asyncio.client import connect


def read_frames(path: str, frame_ms: int) -> tuple[int, list[bytes]]:
    with wave.open(path, "rb") as wf:
        if wf.getnchannels() != 1 or wf.getsampwidth() != 2:
            raise SystemExit(f"{path}: expected 16-bit mono PCM")
        rate = wf.getframerate()
        pcm = wf.readframes(wf.getnframes())

    frame_bytes = round(rate * frame_ms / 1000) * 2
    frames = [pcm[i:i + frame_bytes] for i in range(0, len(pcm), frame_bytes)]
    # Server rejects short frames; pad the tail with silence
    if frames and len(frames[-1]) < frame_bytes:
        frames[-1] = frames[-1].ljust(frame_bytes, b"\x00")
    return rate, frames


def shuffled_order(n: int, window: int) -> list[int]:
    order: list[int] = []
    for start in range(0, n, window):
        chunk = list(range(start, min(start + window, n)))
        random.shuffle(chunk)
        order.extend(chunk)
    return order


async def _print_incoming(ws) -> None:
    async for raw in ws:
        print(raw, flush=True)


async def run(args: argparse.Namespace) -> None:
    rate, frames = read_frames(args.wav, args.frame_ms)
    order = shuffled_order(len(frames), args.shuffle) if args.shuffle > 1 else list(range(len(frames)))

    url = f"{args.url}?{urlencode({'token': args.token})}"
    async with connect(url) as ws:
        reader = asyncio.create_task(_print_incoming(ws))

        start: dict[str, object] = {
            "type": "session.start",
            "session_id": args.session_id,
            "sample_rate": rate,
            "frame_ms": args.frame_ms,
        }
        if args.model:
            start["model"] = args.model
        await ws.send(json.dumps(start))

        for seq in order:
            await ws.send(json.dumps({
                "type": "audio.frame",
                "session_id": args.session_id,
                "seq": seq,
                "audio_b64": base64.b64encode(frames[seq]).decode("ascii"),
            }))
            await asyncio.sleep(args.frame_ms / 1000)

        await ws.send(json.dumps({"type": "session.stop", "session_id": args.session_id}))

        # Let trailing finals arrive
        await asyncio.sleep(args.linger)
        reader.cancel()


def main() -> int:
    parser = argparse.ArgumentParser(description="Stream a WAV file through the gateway")
    parser.add_argument("wav")
    parser.add_argument("--url", default="ws://localhost:8080/ws/audio")
    parser.add_argument("--token", default="demo-token-123")
    parser.add_argument("--session-id", default="wav-client")
    parser.add_argument("--model", default=None)
    parser.add_argument("--frame-ms", type=int, default=20)
    parser.add_argument("--shuffle", type=int, default=0, help="reorder frames within windows of N")
    parser.add_argument("--linger", type=float, default=2.0)
    args = parser.parse_args()

    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
