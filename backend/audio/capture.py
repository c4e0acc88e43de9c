"""
Durable capture sink for ordered session audio.

Writes a fixed 44-byte RIFF/WAVE header at open, appends raw PCM16 bytes
unbuffered, and patches the two length fields on finalize().

A sink that is never finalized leaves a file whose header declares zero
data bytes. Every session teardown path must call finalize().
"""

from __future__ import annotations

import struct
from pathlib import Path
from typing import BinaryIO

from constants import (
    AUDIO_BITS_PER_SAMPLE,
    AUDIO_CHANNELS,
    AUDIO_SAMPLE_WIDTH_BYTES,
    WAV_DATA_SIZE_OFFSET,
    WAV_FMT_CHUNK_BYTES,
    WAV_FORMAT_PCM,
    WAV_RIFF_SIZE_BASE,
    WAV_RIFF_SIZE_OFFSET,
)


class CaptureError(Exception):
    """
    Raised when the capture file cannot be opened, written or finalized.

    Fatal to the owning session.
    """


def build_wav_header(*, sample_rate: int, channels: int, data_bytes: int = 0) -> bytes:
    """
    Build the 44-byte PCM16 WAV header.
    """
    block_align = channels * AUDIO_SAMPLE_WIDTH_BYTES
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        WAV_RIFF_SIZE_BASE + data_bytes,
        b"WAVE",
        b"fmt ",
        WAV_FMT_CHUNK_BYTES,
        WAV_FORMAT_PCM,
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        AUDIO_BITS_PER_SAMPLE,
        b"data",
        data_bytes,
    )


class WavCaptureSink:
    """
    Append-only WAV writer owned by exactly one session.

    Use WavCaptureSink.open(); the constructor expects an already-open file.
    """

    def __init__(self, *, path: Path, fh: BinaryIO) -> None:
        self._path = path
        self._fh = fh
        self._data_bytes = 0
        self._finalized = False

    @classmethod
    def open(
        cls,
        path: str | Path,
        sample_rate: int,
        channels: int = AUDIO_CHANNELS,
    ) -> WavCaptureSink:
        """
        Create the file (truncating any existing one) and write the header.

        Raises:
            CaptureError if the file cannot be created or written.
        """
        p = Path(path)
        try:
            header = build_wav_header(sample_rate=sample_rate, channels=channels)
        except struct.error as e:
            raise CaptureError(f"unsupported capture format for {p}: {e}") from e

        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            fh = p.open("wb", buffering=0)
        except OSError as e:
            raise CaptureError(f"cannot open capture file {p}: {e}") from e

        try:
            fh.write(header)
        except OSError as e:
            fh.close()
            raise CaptureError(f"cannot write capture header {p}: {e}") from e

        return cls(path=p, fh=fh)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def append(self, pcm_bytes: bytes) -> None:
        """
        Append ordered PCM bytes.

        Raises:
            CaptureError on write failure or after finalize().
        """
        if self._finalized:
            raise CaptureError(f"capture sink already finalized: {self._path}")
        try:
            self._fh.write(pcm_bytes)
        except OSError as e:
            raise CaptureError(f"capture write failed {self._path}: {e}") from e
        self._data_bytes += len(pcm_bytes)

    def finalize(self) -> bool:
        """
        Patch the RIFF and data sizes, then close the file.

        Returns True if this call finalized the sink, False if it was
        already finalized. The file is closed even if patching fails.
        """
        if self._finalized:
            return False
        self._finalized = True

        try:
            self._fh.seek(WAV_RIFF_SIZE_OFFSET)
            self._fh.write(struct.pack("<I", WAV_RIFF_SIZE_BASE + self._data_bytes))
            self._fh.seek(WAV_DATA_SIZE_OFFSET)
            self._fh.write(struct.pack("<I", self._data_bytes))
        except OSError as e:
            raise CaptureError(f"capture finalize failed {self._path}: {e}") from e
        finally:
            self._fh.close()

        return True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def path(self) -> Path:
        """Capture file path."""
        return self._path

    @property
    def data_bytes(self) -> int:
        """PCM bytes written so far."""
        return self._data_bytes

    @property
    def finalized(self) -> bool:
        """True once finalize() has run."""
        return self._finalized
