from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect

from support_agent.config import Settings
from support_agent.logging.flight_recorder import FlightRecorder
from support_agent.models.conversation import Turn
from support_agent.models.tooling import BookingDraft
from support_agent.services.history import HistoryStore
from support_agent.services.text_session import TextSessionEngine
from support_agent.services.tool_dispatcher import ToolDispatcher
from support_agent.utils.outbox import Outbox

logger = logging.getLogger(__name__)

router = APIRouter()

_CLIENT_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def _history_store(settings: Settings, client: str, recorder: Optional[FlightRecorder] = None) -> Optional[HistoryStore]:
    if not _CLIENT_ID.match(client):
        return None
    return HistoryStore(settings.history_dir / f"{client}.json", recorder)


def _turns_payload(turns: List[Turn]) -> List[Dict[str, Any]]:
    return [turn.model_dump(mode="json") for turn in turns]


@router.get("/chat/history")
def chat_history(request: Request, client: str = "default") -> List[Dict[str, Any]]:
    store = _history_store(request.app.state.settings, client)
    if store is None:
        raise HTTPException(status_code=400, detail="Invalid client id")
    return _turns_payload(store.load())


@router.websocket("/chat")
async def chat_socket(websocket: WebSocket, client: str = "default", initial: Optional[str] = None) -> None:
    await websocket.accept()
    recorder = FlightRecorder()
    store = _history_store(websocket.app.state.settings, client, recorder)
    if store is None:
        await websocket.close(code=1008, reason="Invalid client id")
        return

    outbox = Outbox(websocket)
    outbox.start()

    def present_booking_form(draft: BookingDraft) -> None:
        outbox.put({"type": "booking_form", "draft": draft.model_dump(mode="json", exclude_none=True)})

    dispatcher = ToolDispatcher(booking_form=present_booking_form, recorder=recorder)
    engine = TextSessionEngine(
        websocket.app.state.chat_service,
        dispatcher,
        store,
        recorder=recorder,
        on_update=lambda turn: outbox.put({"type": "turn", "turn": turn.model_dump(mode="json")}),
    )
    recorder.log("WS", "chat_connected", client=client)
    outbox.put({"type": "history", "turns": _turns_payload(engine.turns)})

    async def submit(text: str) -> None:
        if engine.open():
            await engine.submit(text)
        outbox.put({"type": "done", "error": engine.error})

    try:
        if not engine.open():
            outbox.put({"type": "done", "error": engine.error})
        elif initial:
            await submit(initial)

        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("chat.bad_frame bytes=%d", len(raw))
                continue
            kind = data.get("type") if isinstance(data, dict) else None
            if kind == "message":
                await submit(str(data.get("text") or ""))
            elif kind == "clear":
                engine.reset()
                outbox.put({"type": "history", "turns": _turns_payload(engine.turns)})
            else:
                logger.warning("chat.unknown_frame type=%s", kind)
    except WebSocketDisconnect:
        recorder.log("WS", "chat_disconnected", client=client)
    finally:
        await outbox.close()
        recorder.summary()
