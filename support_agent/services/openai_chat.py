"""
OpenAI-compatible chat completions as an alternative text provider.

The service keeps the conversation as a plain ``messages`` list, so any endpoint
speaking the chat completions protocol (OpenAI, Groq, local gateways) works via
``OPENAI_BASE_URL``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import APIError, AsyncOpenAI

from support_agent.config import Settings
from support_agent.errors import TransportError
from support_agent.models.conversation import Role, Turn
from support_agent.models.realtime import ResponseFragment
from support_agent.models.tooling import ToolInvocation, ToolResult

logger = logging.getLogger(__name__)


def _parse_arguments(raw: str, tool_name: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("openai_chat.bad_arguments tool=%s", tool_name)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _tool_message(calls: List[Dict[str, str]]) -> List[Dict[str, Any]]:
    return [
        {
            "id": call["id"],
            "type": "function",
            "function": {"name": call["name"], "arguments": call["arguments"]},
        }
        for call in calls
    ]


class OpenAIChatSession:
    def __init__(self, client: AsyncOpenAI, model: str, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> None:
        self._client = client
        self._model = model
        self.messages = messages
        self._tools = [{"type": "function", "function": schema} for schema in tools]

    def _request(self) -> Dict[str, Any]:
        request: Dict[str, Any] = {"model": self._model, "messages": self.messages}
        if self._tools:
            request["tools"] = self._tools
        return request

    async def send_and_stream(self, text: str) -> AsyncIterator[ResponseFragment]:
        self.messages.append({"role": "user", "content": text})
        chunks: List[str] = []
        # Tool call deltas arrive split across chunks, keyed by index
        pending: Dict[int, Dict[str, str]] = {}
        try:
            stream = await self._client.chat.completions.create(stream=True, **self._request())
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    chunks.append(delta.content)
                    yield ResponseFragment(text=delta.content)
                for call_delta in delta.tool_calls or []:
                    call = pending.setdefault(call_delta.index, {"id": "", "name": "", "arguments": ""})
                    if call_delta.id:
                        call["id"] = call_delta.id
                    if call_delta.function is not None:
                        call["name"] += call_delta.function.name or ""
                        call["arguments"] += call_delta.function.arguments or ""
        except APIError as exc:
            logger.warning("openai_chat.stream_failed err=%s", exc)
            raise TransportError(str(exc)) from exc

        calls = [pending[index] for index in sorted(pending)]
        self._record_assistant("".join(chunks), calls)
        if calls:
            yield ResponseFragment(tool_calls=self._invocations(calls))

    async def send_tool_results(self, results: List[ToolResult]) -> ResponseFragment:
        for result in results:
            self.messages.append({"role": "tool", "tool_call_id": result.id, "content": result.result})
        try:
            response = await self._client.chat.completions.create(**self._request())
        except APIError as exc:
            logger.warning("openai_chat.tool_response_failed err=%s", exc)
            raise TransportError(str(exc)) from exc
        if not response.choices:
            return ResponseFragment()
        message = response.choices[0].message
        calls = [
            {"id": call.id, "name": call.function.name, "arguments": call.function.arguments or ""}
            for call in message.tool_calls or []
        ]
        self._record_assistant(message.content or "", calls)
        return ResponseFragment(text=message.content or None, tool_calls=self._invocations(calls))

    def _record_assistant(self, text: str, calls: List[Dict[str, str]]) -> None:
        message: Dict[str, Any] = {"role": "assistant", "content": text or None}
        if calls:
            message["tool_calls"] = _tool_message(calls)
        self.messages.append(message)

    @staticmethod
    def _invocations(calls: List[Dict[str, str]]) -> List[ToolInvocation]:
        return [
            ToolInvocation(id=call["id"], name=call["name"], arguments=_parse_arguments(call["arguments"], call["name"]))
            for call in calls
        ]


class OpenAIChatService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._client: Optional[AsyncOpenAI] = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.settings.require_openai_key(),
                base_url=self.settings.openai_base_url,
            )
        return self._client

    def create_session(
        self,
        history: List[Turn],
        tools: List[Dict[str, Any]],
        system_instruction: str,
    ) -> OpenAIChatSession:
        messages: List[Dict[str, Any]] = [{"role": "system", "content": system_instruction}]
        messages.extend(
            {"role": "user" if turn.role == Role.USER else "assistant", "content": turn.text}
            for turn in history
        )
        logger.info("openai_chat.session_created model=%s history=%d", self.settings.openai_model, len(history))
        return OpenAIChatSession(self._get_client(), self.settings.openai_model, messages, tools)
