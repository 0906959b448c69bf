import logging

import numpy as np
import pytest

from conftest import make_clip
from support_agent.config import Settings
from support_agent.errors import ConfigurationError
from support_agent.logging.setup import setup_logging
from support_agent.services.ws_audio import WebSocketAudioOutput, WebSocketCapture

_ENV_VARS = [
    "GEMINI_API_KEY",
    "GOOGLE_API_KEY",
    "API_KEY",
    "CHAT_PROVIDER",
    "INPUT_SAMPLE_RATE",
    "ANALYSER_FFT_SIZE",
    "HISTORY_DIR",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    settings = Settings.from_env()

    assert settings.api_key is None
    assert settings.chat_provider == "gemini"
    assert settings.input_sample_rate == 16000
    assert settings.output_sample_rate == 24000
    assert settings.live_voice == "Zephyr"


def test_api_key_lookup_order(clean_env):
    clean_env.setenv("API_KEY", "generic")
    clean_env.setenv("GOOGLE_API_KEY", "google")

    assert Settings.from_env().api_key == "google"


def test_missing_key_is_a_configuration_error(clean_env):
    with pytest.raises(ConfigurationError, match="API Key missing"):
        Settings.from_env().require_api_key()


def test_bad_integer_is_reported(clean_env):
    clean_env.setenv("INPUT_SAMPLE_RATE", "fast")

    with pytest.raises(ValueError, match="INPUT_SAMPLE_RATE"):
        Settings.from_env()


def test_fft_size_must_be_power_of_two(clean_env):
    clean_env.setenv("ANALYSER_FFT_SIZE", "48")

    with pytest.raises(ValueError, match="ANALYSER_FFT_SIZE"):
        Settings.from_env()


def test_unknown_chat_provider(clean_env):
    clean_env.setenv("CHAT_PROVIDER", "carrier-pigeon")

    with pytest.raises(ValueError, match="CHAT_PROVIDER"):
        Settings.from_env()


def test_setup_logging_quiets_libraries():
    setup_logging("DEBUG")

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("websockets").level == logging.WARNING
    assert logging.getLogger("google_genai").level == logging.WARNING


def test_websocket_capture_decodes_float_frames():
    frames = []
    capture = WebSocketCapture()
    capture.feed(np.ones(4, dtype="<f4").tobytes())
    capture.start(frames.append)

    capture.feed(np.array([0.5, -0.5], dtype="<f4").tobytes() + b"\x00")
    capture.close()
    capture.feed(np.ones(4, dtype="<f4").tobytes())

    assert len(frames) == 1
    assert frames[0].tolist() == [0.5, -0.5]


@pytest.mark.asyncio
async def test_websocket_output_announces_and_stops_clips():
    events = []
    ended = []
    output = WebSocketAudioOutput(events.append, sample_rate=24000)
    output.open()

    handle = output.start(make_clip(5.0), at=0.0, on_ended=ended.append)
    assert output.recent_samples().shape[0] > 0
    handle.stop()
    handle.stop()

    assert [event["type"] for event in events] == ["audio", "stop"]
    assert events[0]["id"] == events[1]["id"] == 1
    assert ended == []
    output.close()
