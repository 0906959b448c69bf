"""
Duplex voice session against the live model service.

All session state is owned by one actor task draining one queue. The capture
callback (which may run on an audio thread) and the transport callbacks only
post work items; sends, tool dispatch, playback scheduling and teardown happen
on the actor in arrival order, so an interruption is always applied before any
later audio is scheduled.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Tuple

import numpy as np

from support_agent.config import Settings
from support_agent.errors import ConfigurationError, DeviceError, TransportError
from support_agent.logging.flight_recorder import FlightRecorder
from support_agent.models.conversation import SessionStatus
from support_agent.models.realtime import LiveConfig, LiveMessage
from support_agent.prompts import VOICE_GREETING_PROMPT, VOICE_SYSTEM_INSTRUCTION
from support_agent.services import audio_codec
from support_agent.services.audio_devices import AudioCapture
from support_agent.services.playback import AudioOutput, PlaybackScheduler
from support_agent.services.tool_dispatcher import ToolDispatcher
from support_agent.services.transport import LiveCallbacks, LiveConnection, LiveService

logger = logging.getLogger(__name__)

_FRAME = "frame"
_TEXT = "text"
_MESSAGE = "message"
_CLOSED = "closed"
_ERROR = "error"

WorkItem = Tuple[str, Any]


class VoiceSessionEngine:
    def __init__(
        self,
        live_service: LiveService,
        capture: AudioCapture,
        output: AudioOutput,
        dispatcher: ToolDispatcher,
        settings: Settings,
        recorder: Optional[FlightRecorder] = None,
        on_status: Optional[Callable[[SessionStatus, Optional[str]], None]] = None,
        on_level: Optional[Callable[[float], None]] = None,
        level_interval: float = 0.05,
        system_instruction: str = VOICE_SYSTEM_INSTRUCTION,
    ) -> None:
        self.live_service = live_service
        self.capture = capture
        self.output = output
        self.dispatcher = dispatcher
        self.settings = settings
        self.recorder = recorder
        self.on_status = on_status
        self.on_level = on_level
        self.level_interval = level_interval
        self.system_instruction = system_instruction
        self.scheduler = PlaybackScheduler(output)
        self.status = SessionStatus.DISCONNECTED
        self.error: Optional[str] = None
        self.muted = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._actor: Optional[asyncio.Task] = None
        self._level_task: Optional[asyncio.Task] = None
        self._connection: Optional[LiveConnection] = None

    async def connect(self) -> None:
        if self.status in (SessionStatus.CONNECTING, SessionStatus.CONNECTED):
            return
        self.error = None
        self._set_status(SessionStatus.CONNECTING)
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()

        try:
            self.capture.open()
            self.output.open()
        except DeviceError as exc:
            logger.error("voice_session.device_failed err=%s", exc)
            await self._teardown()
            self._fail(str(exc))
            return

        config = LiveConfig(
            model=self.settings.live_model,
            voice_name=self.settings.live_voice,
            system_instruction=self.system_instruction,
            tools=self.dispatcher.get_tool_schemas(),
        )
        callbacks = LiveCallbacks(
            on_open=self._on_open,
            on_message=lambda message: self._post((_MESSAGE, message)),
            on_close=lambda reason: self._post((_CLOSED, reason)),
            on_error=lambda exc: self._post((_ERROR, exc)),
        )
        try:
            connection = await self.live_service.connect(config, callbacks)
        except (ConfigurationError, TransportError) as exc:
            logger.error("voice_session.connect_failed err=%s", exc)
            await self._teardown()
            self._fail(str(exc))
            return

        if self.status != SessionStatus.CONNECTING:
            # disconnect() ran while the service was still connecting
            logger.info("voice_session.connect_abandoned status=%s", self.status.value)
            try:
                await connection.close()
            except Exception as exc:  # noqa: BLE001
                logger.warning("voice_session.teardown_failed step=connection err=%s", exc)
            return

        self._connection = connection
        self._actor = asyncio.create_task(self._run(), name="voice_session_actor")
        self._set_status(SessionStatus.CONNECTED)
        self.capture.start(self._on_capture_frame)
        self._level_task = asyncio.create_task(self._level_loop(), name="voice_session_level")
        self._post((_TEXT, VOICE_GREETING_PROMPT))

    async def disconnect(self) -> None:
        """Tear the session down. Calling it when already disconnected does nothing."""
        if self.status == SessionStatus.DISCONNECTED and self._actor is None:
            return
        await self._stop_actor()
        await self._teardown()
        self._set_status(SessionStatus.DISCONNECTED)

    def set_muted(self, muted: bool) -> None:
        self.muted = muted
        logger.info("voice_session.mute muted=%s", muted)

    def toggle_mute(self) -> bool:
        self.set_muted(not self.muted)
        return self.muted

    async def wait_idle(self) -> None:
        """Wait until every posted work item has been handled."""
        queue = self._queue
        if queue is not None and self._actor is not None:
            await queue.join()

    def _on_open(self) -> None:
        logger.info("voice_session.transport_open")
        if self.recorder:
            self.recorder.log("SESSION", "voice_transport_open")

    def _on_capture_frame(self, samples: np.ndarray) -> None:
        # Muted buffers never reach the encoder
        if self.muted:
            return
        self._post((_FRAME, samples))

    def _post(self, item: WorkItem) -> None:
        queue, loop = self._queue, self._loop
        if queue is None or loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            queue.put_nowait(item)
        else:
            loop.call_soon_threadsafe(queue.put_nowait, item)

    async def _run(self) -> None:
        queue = self._queue
        while True:
            kind, payload = await queue.get()
            try:
                if kind == _CLOSED:
                    logger.info("voice_session.closed reason=%s", payload)
                    await self._finish(SessionStatus.DISCONNECTED, None)
                    return
                if kind == _ERROR:
                    logger.warning("voice_session.transport_error err=%s", payload)
                    await self._finish(SessionStatus.ERROR, str(payload))
                    return
                await self._handle(kind, payload)
            except TransportError as exc:
                logger.warning("voice_session.send_failed kind=%s err=%s", kind, exc)
                await self._finish(SessionStatus.ERROR, str(exc))
                return
            except Exception as exc:  # noqa: BLE001
                logger.exception("voice_session.handler_failed kind=%s", kind)
                await self._finish(SessionStatus.ERROR, str(exc))
                return
            finally:
                queue.task_done()

    async def _handle(self, kind: str, payload: Any) -> None:
        connection = self._connection
        if connection is None:
            return
        if kind == _FRAME:
            if self.muted:
                return
            blob = audio_codec.encode(payload, self.settings.input_sample_rate)
            await connection.send_audio_frame(blob)
        elif kind == _TEXT:
            await connection.send_text(payload)
        elif kind == _MESSAGE:
            await self._handle_message(connection, payload)

    async def _handle_message(self, connection: LiveConnection, message: LiveMessage) -> None:
        if message.interrupted:
            stopped = self.scheduler.interrupt()
            logger.info("voice_session.interrupted stopped=%d", stopped)
            if self.recorder:
                self.recorder.log("INTERRUPT", "barge_in", stopped=stopped)

        if message.tool_calls:
            results = [self.dispatcher.dispatch(call) for call in message.tool_calls]
            await connection.send_tool_result(results)

        # Audio bundled with an interruption is stale
        if message.audio and not message.interrupted:
            clip = audio_codec.decode(message.audio, sample_rate=self.settings.output_sample_rate)
            if clip.frames:
                start_at = self.scheduler.schedule(clip)
                logger.debug("voice_session.scheduled start_at=%.3f duration=%.3f", start_at, clip.duration_seconds)
                if self.recorder:
                    self.recorder.log("AUDIO_OUT", "clip_scheduled", start_at=start_at, duration=clip.duration_seconds)

    async def _finish(self, status: SessionStatus, error: Optional[str]) -> None:
        """Teardown initiated from inside the actor; the actor exits afterwards."""
        self._actor = None
        self._drain()
        await self._teardown()
        if error is not None:
            self._fail(error)
        else:
            self._set_status(status)

    def _drain(self) -> None:
        queue = self._queue
        if queue is None:
            return
        while not queue.empty():
            queue.get_nowait()
            queue.task_done()

    async def _stop_actor(self) -> None:
        actor, self._actor = self._actor, None
        if actor is None or actor is asyncio.current_task():
            return
        actor.cancel()
        try:
            await actor
        except asyncio.CancelledError:
            pass
        self._drain()

    async def _teardown(self) -> None:
        """Release every resource; each step is attempted even if an earlier one fails."""
        level_task, self._level_task = self._level_task, None
        if level_task is not None:
            level_task.cancel()
        for name, step in (
            ("capture", self.capture.close),
            ("playback", self.scheduler.interrupt),
            ("output", self.output.close),
        ):
            try:
                step()
            except Exception as exc:  # noqa: BLE001
                logger.warning("voice_session.teardown_failed step=%s err=%s", name, exc)
        connection, self._connection = self._connection, None
        if connection is not None:
            try:
                await connection.close()
            except Exception as exc:  # noqa: BLE001
                logger.warning("voice_session.teardown_failed step=connection err=%s", exc)
        if self.recorder:
            self.recorder.log("SESSION", "voice_teardown")

    async def _level_loop(self) -> None:
        fft_size = self.settings.analyser_fft_size
        while True:
            bins = audio_codec.frequency_bins(self.output.recent_samples(), fft_size)
            if self.on_level:
                self.on_level(audio_codec.energy(bins))
            await asyncio.sleep(self.level_interval)

    def _fail(self, error: str) -> None:
        self.error = error
        self._set_status(SessionStatus.ERROR)

    def _set_status(self, status: SessionStatus) -> None:
        if status == self.status:
            return
        self.status = status
        logger.info("voice_session.status status=%s", status.value)
        if self.recorder:
            self.recorder.log("SESSION", "status", status=status.value)
        if self.on_status:
            self.on_status(status, self.error)
