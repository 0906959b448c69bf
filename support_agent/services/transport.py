"""
Contracts for the remote conversational model service.

The engines only talk to these protocols; concrete adapters live in
``gemini.py`` and ``openai_chat.py`` and tests substitute in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol

from support_agent.config import Settings
from support_agent.models.conversation import Turn
from support_agent.models.realtime import LiveConfig, LiveMessage, PcmBlob, ResponseFragment
from support_agent.models.tooling import ToolResult


class ChatSession(Protocol):
    def send_and_stream(self, text: str) -> AsyncIterator[ResponseFragment]:
        """Send one user message and yield the response fragments as they arrive."""
        ...

    async def send_tool_results(self, results: List[ToolResult]) -> ResponseFragment:
        """Return tool results on the same session and collect the continuation."""
        ...


class ChatService(Protocol):
    def create_session(
        self,
        history: List[Turn],
        tools: List[Dict[str, Any]],
        system_instruction: str,
    ) -> ChatSession: ...


@dataclass
class LiveCallbacks:
    on_open: Callable[[], None]
    on_message: Callable[[LiveMessage], None]
    on_close: Callable[[Optional[str]], None]
    on_error: Callable[[BaseException], None]


class LiveConnection(Protocol):
    async def send_audio_frame(self, blob: PcmBlob) -> None: ...

    async def send_tool_result(self, results: List[ToolResult]) -> None: ...

    async def send_text(self, text: str) -> None: ...

    async def close(self) -> None: ...


class LiveService(Protocol):
    async def connect(self, config: LiveConfig, callbacks: LiveCallbacks) -> LiveConnection: ...


def create_chat_service(settings: Settings) -> ChatService:
    if settings.chat_provider == "openai":
        from support_agent.services.openai_chat import OpenAIChatService

        return OpenAIChatService(settings)
    from support_agent.services.gemini import GeminiChatService

    return GeminiChatService(settings)


def create_live_service(settings: Settings) -> LiveService:
    from support_agent.services.gemini import GeminiLiveService

    return GeminiLiveService(settings)
