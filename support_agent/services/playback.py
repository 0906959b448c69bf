from __future__ import annotations

import threading
from typing import Callable, Protocol, Set

import logging

import numpy as np

from support_agent.models.realtime import AudioClip

logger = logging.getLogger(__name__)


class PlaybackHandle(Protocol):
    def stop(self) -> None: ...


class AudioOutput(Protocol):
    """An output device with its own clock, able to start clips at a given time."""

    @property
    def current_time(self) -> float: ...

    def open(self) -> None: ...

    def start(
        self,
        clip: AudioClip,
        at: float,
        on_ended: Callable[[PlaybackHandle], None],
    ) -> PlaybackHandle: ...

    def recent_samples(self) -> np.ndarray: ...

    def close(self) -> None: ...


class PlaybackScheduler:
    """Plays clips back to back on one output timeline.

    ``schedule`` and ``interrupt`` share a lock, so an interrupt either sees a
    clip already in the active set (and stops it) or runs before it and moves
    the cursor to now; no clip started before an interrupt survives it.
    """

    def __init__(self, output: AudioOutput) -> None:
        self.output = output
        self._lock = threading.Lock()
        self._active: Set[PlaybackHandle] = set()
        self._next_start_time = 0.0

    @property
    def next_start_time(self) -> float:
        with self._lock:
            return self._next_start_time

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def schedule(self, clip: AudioClip) -> float:
        with self._lock:
            start_at = max(self._next_start_time, self.output.current_time)
            handle = self.output.start(clip, start_at, self._on_ended)
            self._active.add(handle)
            self._next_start_time = start_at + clip.duration_seconds
        return start_at

    def interrupt(self) -> int:
        with self._lock:
            handles = list(self._active)
            self._active.clear()
            self._next_start_time = self.output.current_time
        for handle in handles:
            try:
                handle.stop()
            except Exception as exc:  # noqa: BLE001
                logger.warning("playback.stop_failed err=%s", exc)
        return len(handles)

    def _on_ended(self, handle: PlaybackHandle) -> None:
        with self._lock:
            self._active.discard(handle)
