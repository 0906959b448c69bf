"""
Audio devices bridged over the browser websocket.

The browser captures microphone audio and sends float32 frames as binary
messages; playback happens in the browser too, so the output here only keeps
the timeline and tells the page when each clip starts or must stop.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Callable, Dict, Optional

import numpy as np

from support_agent.models.realtime import AudioClip
from support_agent.services import audio_codec
from support_agent.services.audio_devices import FrameCallback
from support_agent.services.playback import PlaybackHandle

logger = logging.getLogger(__name__)

EventSink = Callable[[dict], None]


class WebSocketCapture:
    def __init__(self) -> None:
        self._on_frame: Optional[FrameCallback] = None

    def open(self) -> None:
        pass

    def start(self, on_frame: FrameCallback) -> None:
        self._on_frame = on_frame

    def close(self) -> None:
        self._on_frame = None

    def feed(self, payload: bytes) -> None:
        """Deliver one binary websocket frame of little-endian float32 samples."""
        on_frame = self._on_frame
        if on_frame is None:
            return
        usable = len(payload) - len(payload) % 4
        if usable == 0:
            return
        on_frame(np.frombuffer(payload[:usable], dtype="<f4").astype(np.float32))


class _RemoteClip:
    def __init__(self, output: "WebSocketAudioOutput", clip_id: int, clip: AudioClip, start_at: float) -> None:
        self.output = output
        self.id = clip_id
        self.clip = clip
        self.start_at = start_at
        self.timer: Optional[asyncio.TimerHandle] = None

    def stop(self) -> None:
        self.output._stop(self)


class WebSocketAudioOutput:
    """Output timeline whose clock is the event loop's monotonic time since ``open``."""

    def __init__(self, send: EventSink, sample_rate: int = 24000, analyser_size: int = 64) -> None:
        self.send = send
        self.sample_rate = sample_rate
        self._analyser_size = analyser_size
        self._ids = itertools.count(1)
        self._clips: Dict[int, _RemoteClip] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._origin = 0.0

    @property
    def current_time(self) -> float:
        if self._loop is None:
            return 0.0
        return self._loop.time() - self._origin

    def open(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._origin = self._loop.time()

    def start(self, clip: AudioClip, at: float, on_ended: Callable[[PlaybackHandle], None]) -> PlaybackHandle:
        remote = _RemoteClip(self, next(self._ids), clip, at)
        self._clips[remote.id] = remote
        self.send(
            {
                "type": "audio",
                "id": remote.id,
                "start_at": round(at, 6),
                "sample_rate": clip.sample_rate,
                "data": audio_codec.encode(clip.samples, clip.sample_rate).to_base64(),
            }
        )
        if self._loop is not None:
            delay = max(0.0, at + clip.duration_seconds - self.current_time)
            remote.timer = self._loop.call_later(delay, self._ended, remote, on_ended)
        return remote

    def recent_samples(self) -> np.ndarray:
        """Samples around the playback position of whichever clip is audible now."""
        now = self.current_time
        for remote in self._clips.values():
            offset = int((now - remote.start_at) * remote.clip.sample_rate)
            if 0 <= offset < remote.clip.frames:
                lo = max(0, offset - self._analyser_size)
                return remote.clip.samples[lo:offset + 1].reshape(-1)
        return np.zeros(self._analyser_size, dtype=np.float32)

    def close(self) -> None:
        for remote in self._clips.values():
            if remote.timer is not None:
                remote.timer.cancel()
        self._clips.clear()

    def _ended(self, remote: _RemoteClip, on_ended: Callable[[PlaybackHandle], None]) -> None:
        if self._clips.pop(remote.id, None) is not None:
            on_ended(remote)

    def _stop(self, remote: _RemoteClip) -> None:
        if self._clips.pop(remote.id, None) is None:
            return
        if remote.timer is not None:
            remote.timer.cancel()
        self.send({"type": "stop", "id": remote.id})
