# tools/wav_info.py
"""
Inspect a capture file.

    python tools/wav_info.py recordings/s1.wav

Prints the format fields, the two header length fields and the audio
level, and flags a file whose header was never finalized (declared data
size 0 but audio bytes present).
"""
from __future__ import annotations

import argparse
import struct
import sys
import wave
from pathlib import Path

from audio.pcm import pcm16_levels

HEADER_BYTES = 44


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("path", type=Path)
    args = parser.parse_args()

    raw = args.path.read_bytes()
    if len(raw) < HEADER_BYTES:
        print(f"{args.path}: too short for a WAV header ({len(raw)} bytes)", file=sys.stderr)
        return 1

    riff_size = struct.unpack_from("<I", raw, 4)[0]
    data_size = struct.unpack_from("<I", raw, 40)[0]
    actual = len(raw) - HEADER_BYTES

    with wave.open(str(args.path), "rb") as wf:
        rate = wf.getframerate()
        print("sample_rate:", rate)
        print("channels:", wf.getnchannels())
        print("sample_width_bytes:", wf.getsampwidth())

    print("riff_size:", riff_size)
    print("data_size:", data_size)
    print("data_bytes_on_disk:", actual)
    if rate:
        print(f"duration_s: {actual / (rate * 2):.3f}")

    levels = pcm16_levels(raw[HEADER_BYTES:])
    print("peak_dbfs:", levels.peak_dbfs)
    print("rms_dbfs:", levels.rms_dbfs)

    if data_size == 0 and actual > 0:
        print("WARNING: header not finalized", file=sys.stderr)
        return 2
    if data_size != actual:
        print("WARNING: header data size does not match file length", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
