"""PCM level utilities."""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

# Reported for digital silence instead of -inf
SILENCE_DBFS = -120.0


@dataclass(frozen=True)
class PcmLevels:
    peak_dbfs: float
    rms_dbfs: float


def pcm16le_to_float32(pcm_bytes: bytes) -> np.ndarray:
    """
    Convert PCM16 little-endian mono bytes to float32 in [-1.0, 1.0).

    No resampling. No channel mixing.
    """
    if len(pcm_bytes) % 2 != 0:
        # Truncated sample; drop the odd byte
        pcm_bytes = pcm_bytes[: len(pcm_bytes) - 1]

    audio_i16 = np.frombuffer(pcm_bytes, dtype="<i2")
    return audio_i16.astype(np.float32) / 32768.0


def _to_dbfs(value: float) -> float:
    if value <= 0.0:
        return SILENCE_DBFS
    return max(SILENCE_DBFS, round(20.0 * float(np.log10(value)), 1))


def pcm16_levels(pcm_bytes: bytes) -> PcmLevels:
    """Peak and RMS level of a PCM16 chunk, in dBFS."""
    samples = pcm16le_to_float32(pcm_bytes)
    if samples.size == 0:
        return PcmLevels(peak_dbfs=SILENCE_DBFS, rms_dbfs=SILENCE_DBFS)
    peak = float(np.max(np.abs(samples)))
    rms = float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))
    return PcmLevels(peak_dbfs=_to_dbfs(peak), rms_dbfs=_to_dbfs(rms))
