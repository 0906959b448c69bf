from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from support_agent.logging.flight_recorder import FlightRecorder
from support_agent.models.conversation import SessionStatus
from support_agent.models.tooling import BookingDraft
from support_agent.services.tool_dispatcher import ContactLink, ToolDispatcher
from support_agent.services.voice_session import VoiceSessionEngine
from support_agent.services.ws_audio import WebSocketAudioOutput, WebSocketCapture
from support_agent.utils.outbox import Outbox

logger = logging.getLogger(__name__)

router = APIRouter()

# Level events are only sent when the value moves at least this much
_LEVEL_STEP = 0.02


@router.websocket("/voice")
async def voice_socket(websocket: WebSocket) -> None:
    await websocket.accept()
    settings = websocket.app.state.settings
    recorder = FlightRecorder()
    outbox = Outbox(websocket)
    outbox.start()
    last_level: Optional[float] = None

    def present_booking_form(draft: BookingDraft) -> None:
        outbox.put({"type": "booking_form", "draft": draft.model_dump(mode="json", exclude_none=True)})

    def on_status(status: SessionStatus, error: Optional[str]) -> None:
        outbox.put({"type": "status", "status": status.value, "error": error})

    def on_level(level: float) -> None:
        nonlocal last_level
        if last_level is None or abs(level - last_level) >= _LEVEL_STEP:
            last_level = level
            outbox.put({"type": "level", "level": round(level, 3)})

    contact_link = ContactLink(
        settings.contact_link_base,
        on_change=lambda url: outbox.put({"type": "contact_link", "url": url}),
    )
    capture = WebSocketCapture()
    engine = VoiceSessionEngine(
        websocket.app.state.live_service,
        capture,
        WebSocketAudioOutput(outbox.put, settings.output_sample_rate, settings.analyser_fft_size),
        ToolDispatcher(booking_form=present_booking_form, contact_link=contact_link, recorder=recorder),
        settings,
        recorder=recorder,
        on_status=on_status,
        on_level=on_level,
    )
    recorder.log("WS", "voice_connected", remote_addr=str(websocket.client))
    outbox.put({"type": "contact_link", "url": contact_link.url})

    try:
        await engine.connect()
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                recorder.log("WS", "voice_disconnected", code=message.get("code"))
                break
            if message.get("bytes") is not None:
                capture.feed(message["bytes"])
                continue
            try:
                data = json.loads(message.get("text") or "")
            except json.JSONDecodeError:
                logger.warning("voice.bad_frame")
                continue
            kind = data.get("type") if isinstance(data, dict) else None
            if kind == "mute":
                engine.set_muted(bool(data.get("muted", not engine.muted)))
            elif kind == "hangup":
                await engine.disconnect()
                await outbox.flush()
                break
            else:
                logger.warning("voice.unknown_frame type=%s", kind)
    except WebSocketDisconnect:
        recorder.log("WS", "voice_disconnected")
    finally:
        await engine.disconnect()
        await outbox.close()
        recorder.summary()
