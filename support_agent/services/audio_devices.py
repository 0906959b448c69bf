"""
Local microphone capture and speaker output through sounddevice.

sounddevice loads PortAudio when imported, so it is imported only when a
device is actually opened; servers that only bridge browser audio never need
it.
"""

from __future__ import annotations

import threading
from typing import Callable, List, Optional, Protocol

import logging

import numpy as np

from support_agent.errors import DeviceError
from support_agent.models.realtime import AudioClip
from support_agent.services.playback import PlaybackHandle

logger = logging.getLogger(__name__)

FrameCallback = Callable[[np.ndarray], None]


class AudioCapture(Protocol):
    def open(self) -> None: ...

    def start(self, on_frame: FrameCallback) -> None: ...

    def close(self) -> None: ...


def _import_sounddevice():
    try:
        import sounddevice
    except OSError as exc:
        raise DeviceError(f"PortAudio library not available: {exc}") from exc
    return sounddevice


class SoundDeviceCapture:
    """Mono float32 microphone stream delivering fixed-size blocks."""

    def __init__(self, sample_rate: int = 16000, block_size: int = 4096, device: Optional[str] = None) -> None:
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.device = device
        self._stream = None
        self._on_frame: Optional[FrameCallback] = None

    def open(self) -> None:
        sd = _import_sounddevice()
        try:
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                blocksize=self.block_size,
                channels=1,
                dtype="float32",
                device=self.device,
                callback=self._callback,
            )
        except (sd.PortAudioError, ValueError) as exc:
            raise DeviceError(f"Microphone unavailable: {exc}") from exc

    def start(self, on_frame: FrameCallback) -> None:
        if self._stream is None:
            raise DeviceError("Microphone was not opened")
        self._on_frame = on_frame
        self._stream.start()

    def close(self) -> None:
        stream, self._stream = self._stream, None
        self._on_frame = None
        if stream is not None:
            stream.stop()
            stream.close()

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug("audio_devices.capture_status status=%s", status)
        on_frame = self._on_frame
        if on_frame is not None:
            # sounddevice reuses indata after the callback returns
            on_frame(indata[:, 0].copy())


class _ScheduledClip:
    def __init__(self, output: "SoundDeviceOutput", samples: np.ndarray, start_frame: int, on_ended) -> None:
        self.output = output
        self.samples = samples
        self.start_frame = start_frame
        self.end_frame = start_frame + samples.shape[0]
        self.on_ended = on_ended
        self.stopped = False

    def stop(self) -> None:
        self.output._stop(self)


class SoundDeviceOutput:
    """Speaker output mixing scheduled clips on a frame-counted clock.

    ``current_time`` is the number of frames handed to the device divided by
    the sample rate, so clip start times are sample-accurate relative to what
    has already been played.
    """

    def __init__(
        self,
        sample_rate: int = 24000,
        block_size: int = 1024,
        analyser_size: int = 64,
        device: Optional[str] = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.device = device
        self._analyser_size = analyser_size
        self._lock = threading.Lock()
        self._clips: List[_ScheduledClip] = []
        self._frames_rendered = 0
        self._recent = np.zeros(analyser_size, dtype=np.float32)
        self._stream = None

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / self.sample_rate

    def open(self) -> None:
        sd = _import_sounddevice()
        try:
            self._stream = sd.OutputStream(
                samplerate=self.sample_rate,
                blocksize=self.block_size,
                channels=1,
                dtype="float32",
                device=self.device,
                callback=self._callback,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            self._stream = None
            raise DeviceError(f"Speaker unavailable: {exc}") from exc

    def start(self, clip: AudioClip, at: float, on_ended: Callable[[PlaybackHandle], None]) -> PlaybackHandle:
        samples = clip.samples if clip.samples.ndim == 1 else clip.samples.mean(axis=1)
        if clip.sample_rate != self.sample_rate:
            logger.warning(
                "audio_devices.rate_mismatch clip_rate=%d output_rate=%d", clip.sample_rate, self.sample_rate
            )
        scheduled = _ScheduledClip(self, samples.astype(np.float32), round(at * self.sample_rate), on_ended)
        with self._lock:
            self._clips.append(scheduled)
        return scheduled

    def recent_samples(self) -> np.ndarray:
        with self._lock:
            return self._recent.copy()

    def close(self) -> None:
        stream, self._stream = self._stream, None
        with self._lock:
            self._clips.clear()
        if stream is not None:
            stream.stop()
            stream.close()

    def _stop(self, clip: _ScheduledClip) -> None:
        with self._lock:
            clip.stopped = True
            if clip in self._clips:
                self._clips.remove(clip)

    def _callback(self, outdata, frames, time_info, status) -> None:
        if status:
            logger.debug("audio_devices.output_status status=%s", status)
        outdata[:, 0] = self.render(frames)

    def render(self, frames: int) -> np.ndarray:
        """Mix the next ``frames`` frames and advance the clock."""
        mix = np.zeros(frames, dtype=np.float32)
        with self._lock:
            window_start = self._frames_rendered
            window_end = window_start + frames
            finished = []
            for clip in self._clips:
                lo = max(clip.start_frame, window_start)
                hi = min(clip.end_frame, window_end)
                if lo < hi:
                    mix[lo - window_start:hi - window_start] += clip.samples[lo - clip.start_frame:hi - clip.start_frame]
                if clip.end_frame <= window_end:
                    finished.append(clip)
            if finished:
                self._clips = [clip for clip in self._clips if clip not in finished]
            self._frames_rendered = window_end
            self._recent = mix[-self._analyser_size:].copy()
        # Natural ends are reported without holding the output lock
        for clip in finished:
            clip.on_ended(clip)
        return np.clip(mix, -1.0, 1.0)
