"""
Conversion between device samples and the model service's audio wire format.

The wire format in both directions is 16-bit little-endian mono PCM: capture
frames go out at the input rate (16 kHz) and server audio arrives at the output
rate (24 kHz). Everything here is a pure numpy transform so it can run inside a
capture callback without blocking it.
"""

from __future__ import annotations

import base64
import logging
from typing import Sequence, Union

import numpy as np

from support_agent.models.realtime import AudioClip, PcmBlob

logger = logging.getLogger(__name__)

_PCM16 = np.dtype("<i2")
_MIN_DECIBELS = -100.0
_MAX_DECIBELS = -30.0


def pcm_mime_type(sample_rate: int) -> str:
    return f"audio/pcm;rate={sample_rate}"


def encode(samples: Union[np.ndarray, Sequence[float]], sample_rate: int = 16000) -> PcmBlob:
    """Convert float samples in [-1, 1] into a PCM16 blob. Out-of-range input is clipped."""
    floats = np.asarray(samples, dtype=np.float32).reshape(-1)
    scaled = np.clip(floats * 32768.0, -32768.0, 32767.0)
    pcm = scaled.astype(_PCM16)
    return PcmBlob(data=pcm.tobytes(), mime_type=pcm_mime_type(sample_rate))


def decode(payload: Union[bytes, str], sample_rate: int = 24000, channels: int = 1) -> AudioClip:
    """Turn one inbound PCM16 fragment (raw bytes or base64 text) into a clip."""
    raw = base64.b64decode(payload) if isinstance(payload, str) else bytes(payload)
    frame_bytes = _PCM16.itemsize * channels
    usable = len(raw) - (len(raw) % frame_bytes)
    if usable != len(raw):
        logger.warning("audio_codec.partial_frame bytes=%d dropped=%d", len(raw), len(raw) - usable)
    pcm = np.frombuffer(raw[:usable], dtype=_PCM16)
    samples = pcm.astype(np.float32) / 32768.0
    if channels > 1:
        samples = samples.reshape(-1, channels)
    return AudioClip(samples=samples, sample_rate=sample_rate)


def frequency_bins(samples: np.ndarray, fft_size: int = 64) -> np.ndarray:
    """Byte-scaled magnitude spectrum of the most recent ``fft_size`` samples.

    Mirrors a browser AnalyserNode: Blackman window, magnitudes in decibels
    mapped from [-100, -30] dB onto 0..255, ``fft_size // 2`` bins.
    """
    window = np.zeros(fft_size, dtype=np.float32)
    tail = np.asarray(samples, dtype=np.float32).reshape(-1)[-fft_size:]
    if tail.size:
        window[-tail.size:] = tail
    spectrum = np.abs(np.fft.rfft(window * np.blackman(fft_size)))[: fft_size // 2] / fft_size
    with np.errstate(divide="ignore"):
        decibels = 20.0 * np.log10(spectrum)
    scaled = (decibels - _MIN_DECIBELS) * (255.0 / (_MAX_DECIBELS - _MIN_DECIBELS))
    return np.clip(np.nan_to_num(scaled, neginf=0.0), 0, 255).astype(np.uint8)


def energy(bins: np.ndarray) -> float:
    """Average bin level normalised so that half-scale reads as 1.0, capped at 1.0."""
    if len(bins) == 0:
        return 0.0
    return min(float(np.mean(bins)) / 128.0, 1.0)
