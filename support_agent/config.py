"""
Runtime configuration loaded from environment variables.

Every value has a default except the model service credentials; a missing key
is only reported when a session actually needs it, so the HTTP surface can
still start and report the problem as a session status.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from support_agent.errors import ConfigurationError

_CHAT_PROVIDERS = ("gemini", "openai")


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid integer for {env_var}: {raw!r}") from None


def _first_env(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


@dataclass(frozen=True)
class Settings:
    api_key: Optional[str] = None
    chat_provider: str = "gemini"
    chat_model: str = "gemini-2.5-flash"
    live_model: str = "gemini-2.5-flash-native-audio-preview-09-2025"
    live_voice: str = "Zephyr"
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    input_sample_rate: int = 16000
    output_sample_rate: int = 24000
    capture_block_size: int = 4096
    analyser_fft_size: int = 64
    history_dir: Path = Path(".support_agent/history")
    contact_link_base: str = "https://wa.me/27817463629"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        settings = cls(
            api_key=_first_env("GEMINI_API_KEY", "GOOGLE_API_KEY", "API_KEY"),
            chat_provider=os.getenv("CHAT_PROVIDER", "gemini").lower(),
            chat_model=os.getenv("CHAT_MODEL", "gemini-2.5-flash"),
            live_model=os.getenv("LIVE_MODEL", "gemini-2.5-flash-native-audio-preview-09-2025"),
            live_voice=os.getenv("LIVE_VOICE", "Zephyr"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_base_url=os.getenv("OPENAI_BASE_URL"),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            input_sample_rate=_safe_int("INPUT_SAMPLE_RATE", "16000"),
            output_sample_rate=_safe_int("OUTPUT_SAMPLE_RATE", "24000"),
            capture_block_size=_safe_int("CAPTURE_BLOCK_SIZE", "4096"),
            analyser_fft_size=_safe_int("ANALYSER_FFT_SIZE", "64"),
            history_dir=Path(os.getenv("HISTORY_DIR", ".support_agent/history")),
            contact_link_base=os.getenv("CONTACT_LINK_BASE", "https://wa.me/27817463629"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.chat_provider not in _CHAT_PROVIDERS:
            raise ValueError(f"CHAT_PROVIDER must be one of {_CHAT_PROVIDERS}, got {self.chat_provider!r}")
        for name in ("input_sample_rate", "output_sample_rate", "capture_block_size"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be > 0, got {getattr(self, name)}")
        fft_size = self.analyser_fft_size
        if fft_size < 32 or fft_size & (fft_size - 1):
            raise ValueError(f"ANALYSER_FFT_SIZE must be a power of two >= 32, got {fft_size}")

    def require_api_key(self) -> str:
        if not self.api_key:
            raise ConfigurationError("API Key missing. System offline.")
        return self.api_key

    def require_openai_key(self) -> str:
        if not self.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY not configured")
        return self.openai_api_key
