import base64

import numpy as np
from fastapi.testclient import TestClient

from conftest import FakeChatService, FakeChatSession, FakeLiveService, pcm_bytes
from support_agent.errors import ConfigurationError
from support_agent.main import create_app
from support_agent.models.realtime import ResponseFragment
from support_agent.models.tooling import ToolInvocation
from support_agent.services.tool_dispatcher import BOOKING_FORM_RESULT


def _client(settings, chat_service=None, live_service=None):
    app = create_app(settings, chat_service=chat_service or FakeChatService(), live_service=live_service or FakeLiveService())
    return TestClient(app)


def _receive_until(ws, event_type, **match):
    events = []
    while True:
        event = ws.receive_json()
        events.append(event)
        if event["type"] == event_type and all(event.get(key) == value for key, value in match.items()):
            return events


def test_healthcheck(settings):
    response = _client(settings).get("/health/")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_history_endpoint_returns_seed_then_saved_turns(settings):
    session = FakeChatSession([ResponseFragment(text="Hello Sam.")])
    client = _client(settings, chat_service=FakeChatService(session))

    assert [turn["id"] for turn in client.get("/chat/history", params={"client": "sam"}).json()] == ["greeting"]

    with client.websocket_connect("/chat?client=sam") as ws:
        ws.receive_json()
        ws.send_json({"type": "message", "text": "I'm Sam"})
        _receive_until(ws, "done")

    turns = client.get("/chat/history", params={"client": "sam"}).json()
    assert [(turn["role"], turn["text"]) for turn in turns[1:]] == [("user", "I'm Sam"), ("agent", "Hello Sam.")]


def test_history_rejects_bad_client_id(settings):
    response = _client(settings).get("/chat/history", params={"client": "../etc"})

    assert response.status_code == 400


def test_chat_socket_streams_turns_and_booking_form(settings):
    session = FakeChatSession(
        fragments=[
            ResponseFragment(text="Sure. "),
            ResponseFragment(
                text="Check it.",
                tool_calls=[ToolInvocation(id="c1", name="open_booking_form", arguments={"name": "Sam", "issue": "Dead battery"})],
            ),
        ],
        continuations=[ResponseFragment(text="Form is up. ")],
    )
    client = _client(settings, chat_service=FakeChatService(session))

    with client.websocket_connect("/chat?client=web") as ws:
        history = ws.receive_json()
        assert history["type"] == "history"
        assert history["turns"][0]["id"] == "greeting"

        ws.send_json({"type": "message", "text": "book a repair"})
        events = _receive_until(ws, "done")

    forms = [event for event in events if event["type"] == "booking_form"]
    assert forms == [{"type": "booking_form", "draft": {"name": "Sam", "description": "Dead battery"}}]
    turns = [event["turn"] for event in events if event["type"] == "turn"]
    assert turns[0]["role"] == "user"
    assert turns[-1]["text"] == "Sure. Form is up. Check it."
    assert events[-1] == {"type": "done", "error": None}
    assert session.tool_results[0][0].result == BOOKING_FORM_RESULT


def test_chat_socket_initial_message_and_clear(settings):
    session = FakeChatSession([ResponseFragment(text="Hi!")])
    service = FakeChatService(session)
    client = _client(settings, chat_service=service)

    with client.websocket_connect("/chat?client=init&initial=hello") as ws:
        ws.receive_json()
        events = _receive_until(ws, "done")
        assert session.sent == ["hello"]
        assert events[-2]["turn"]["text"] == "Hi!"

        ws.send_json({"type": "clear"})
        cleared = ws.receive_json()

    assert cleared["type"] == "history"
    assert [turn["id"] for turn in cleared["turns"]] == ["greeting"]


def test_chat_socket_reports_missing_credentials(settings):
    service = FakeChatService(error=ConfigurationError("API Key missing. System offline."))
    client = _client(settings, chat_service=service)

    with client.websocket_connect("/chat") as ws:
        ws.receive_json()
        done = ws.receive_json()

    assert done == {"type": "done", "error": "API Key missing. System offline."}


def test_voice_socket_session_flow(settings):
    live = FakeLiveService()
    client = _client(settings, live_service=live)

    with client.websocket_connect("/voice") as ws:
        events = _receive_until(ws, "status", status="connected")
        assert events[0] == {"type": "contact_link", "url": "https://wa.me/27817463629"}
        connection = live.connection

        connection.deliver(tool_calls=[ToolInvocation(id="v1", name="open_booking_form", arguments={"phone": "0821234567"})])
        form = _receive_until(ws, "booking_form")[-1]
        assert form["draft"] == {"phone": "0821234567"}

        connection.deliver(audio=pcm_bytes(240000))
        audio = _receive_until(ws, "audio")[-1]
        assert audio["id"] == 1
        assert audio["sample_rate"] == 24000
        assert len(base64.b64decode(audio["data"])) == 240000 * 2

        connection.deliver(interrupted=True)
        stop = _receive_until(ws, "stop")[-1]
        assert stop == {"type": "stop", "id": 1}

        ws.send_bytes(np.zeros(256, dtype="<f4").tobytes())
        ws.send_json({"type": "mute", "muted": True})
        ws.send_json({"type": "hangup"})
        _receive_until(ws, "status", status="disconnected")

    assert connection.closed
    assert len(connection.tool_results) == 1


def test_voice_socket_reports_connect_failure(settings):
    live = FakeLiveService(error=ConfigurationError("API Key missing. System offline."))
    client = _client(settings, live_service=live)

    with client.websocket_connect("/voice") as ws:
        events = _receive_until(ws, "status", status="error")
        ws.send_json({"type": "hangup"})

    assert events[-1]["error"] == "API Key missing. System offline."
