"""In-memory stand-ins for the model service and the audio devices."""

import asyncio
from typing import Callable, List, Optional

import numpy as np
import pytest

from support_agent.config import Settings
from support_agent.errors import TransportError
from support_agent.models.realtime import AudioClip, LiveConfig, LiveMessage, ResponseFragment
from support_agent.models.tooling import ToolResult
from support_agent.services.transport import LiveCallbacks


class FakeChatSession:
    def __init__(self, fragments=None, continuations=None, fail_after: Optional[int] = None):
        self.fragments: List[ResponseFragment] = list(fragments or [])
        self.continuations: List[ResponseFragment] = list(continuations or [])
        self.fail_after = fail_after
        self.sent: List[str] = []
        self.tool_results: List[List[ToolResult]] = []

    async def send_and_stream(self, text):
        self.sent.append(text)
        for index, fragment in enumerate(self.fragments):
            if self.fail_after is not None and index >= self.fail_after:
                raise TransportError("socket reset")
            yield fragment
        if self.fail_after is not None and self.fail_after >= len(self.fragments):
            raise TransportError("socket reset")

    async def send_tool_results(self, results):
        self.tool_results.append(list(results))
        if self.continuations:
            return self.continuations.pop(0)
        return ResponseFragment()


class FakeChatService:
    def __init__(self, session: Optional[FakeChatSession] = None, error: Optional[Exception] = None):
        self.session = session or FakeChatSession()
        self.error = error
        self.created = []

    def create_session(self, history, tools, system_instruction):
        if self.error is not None:
            raise self.error
        self.created.append({"history": list(history), "tools": tools, "system_instruction": system_instruction})
        return self.session


class FakeLiveConnection:
    def __init__(self, callbacks: LiveCallbacks):
        self.callbacks = callbacks
        self.frames = []
        self.tool_results: List[List[ToolResult]] = []
        self.texts: List[str] = []
        self.closed = False
        self.fail_sends = False

    async def send_audio_frame(self, blob):
        if self.fail_sends:
            raise TransportError("connection lost")
        self.frames.append(blob)

    async def send_tool_result(self, results):
        self.tool_results.append(list(results))

    async def send_text(self, text):
        self.texts.append(text)

    async def close(self):
        self.closed = True

    def deliver(self, **fields):
        self.callbacks.on_message(LiveMessage(**fields))


class FakeLiveService:
    def __init__(self, error: Optional[Exception] = None, gate: Optional[asyncio.Event] = None):
        self.error = error
        self.gate = gate
        self.connections: List[FakeLiveConnection] = []
        self.configs: List[LiveConfig] = []

    async def connect(self, config, callbacks):
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        self.configs.append(config)
        connection = FakeLiveConnection(callbacks)
        self.connections.append(connection)
        callbacks.on_open()
        return connection

    @property
    def connection(self) -> FakeLiveConnection:
        return self.connections[-1]


class FakeHandle:
    def __init__(self, clip: AudioClip, at: float, on_ended: Callable):
        self.clip = clip
        self.at = at
        self.on_ended = on_ended
        self.stopped = False

    def stop(self):
        self.stopped = True

    def finish(self):
        self.on_ended(self)


class FakeOutput:
    """Output whose clock only moves when a test sets ``now``."""

    def __init__(self):
        self.now = 0.0
        self.handles: List[FakeHandle] = []
        self.opened = False
        self.closed = False

    @property
    def current_time(self):
        return self.now

    def open(self):
        self.opened = True

    def start(self, clip, at, on_ended):
        handle = FakeHandle(clip, at, on_ended)
        self.handles.append(handle)
        return handle

    def recent_samples(self):
        return np.zeros(64, dtype=np.float32)

    def close(self):
        self.closed = True


class FakeCapture:
    def __init__(self, open_error: Optional[Exception] = None):
        self.open_error = open_error
        self.on_frame = None
        self.opened = False
        self.closed = False

    def open(self):
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    def start(self, on_frame):
        self.on_frame = on_frame

    def close(self):
        self.closed = True
        self.on_frame = None

    def emit(self, samples):
        if self.on_frame is not None:
            self.on_frame(np.asarray(samples, dtype=np.float32))


def make_clip(seconds: float, sample_rate: int = 24000) -> AudioClip:
    return AudioClip(samples=np.zeros(int(seconds * sample_rate), dtype=np.float32), sample_rate=sample_rate)


def pcm_bytes(frames: int) -> bytes:
    return np.full(frames, 1000, dtype="<i2").tobytes()


@pytest.fixture
def settings(tmp_path):
    return Settings(api_key="test-key", history_dir=tmp_path / "history")
