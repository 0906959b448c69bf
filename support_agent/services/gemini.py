"""
google-genai adapters for the text chat and the duplex live modality.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from websockets.exceptions import ConnectionClosedOK, WebSocketException

from support_agent.config import Settings
from support_agent.errors import TransportError
from support_agent.models.conversation import Role, Turn
from support_agent.models.realtime import LiveConfig, LiveMessage, PcmBlob, ResponseFragment
from support_agent.models.tooling import ToolInvocation, ToolResult
from support_agent.services.transport import LiveCallbacks

logger = logging.getLogger(__name__)

_SDK_ERRORS = (genai_errors.APIError, httpx.HTTPError)
_LIVE_ERRORS = (genai_errors.APIError, WebSocketException, OSError)


def _tools(schemas: List[Dict[str, Any]]) -> List[types.Tool]:
    if not schemas:
        return []
    declarations = [
        types.FunctionDeclaration(
            name=schema["name"],
            description=schema.get("description"),
            parameters_json_schema=schema.get("parameters"),
        )
        for schema in schemas
    ]
    return [types.Tool(function_declarations=declarations)]


def _history_contents(history: List[Turn]) -> List[types.Content]:
    return [
        types.Content(
            role="user" if turn.role == Role.USER else "model",
            parts=[types.Part(text=turn.text)],
        )
        for turn in history
    ]


def _invocations(function_calls) -> List[ToolInvocation]:
    return [
        ToolInvocation(id=call.id, name=call.name or "", arguments=dict(call.args or {}))
        for call in function_calls or []
    ]


def _fragment(response: types.GenerateContentResponse) -> ResponseFragment:
    texts: List[str] = []
    calls = []
    for candidate in response.candidates or []:
        if candidate.content is None:
            continue
        for part in candidate.content.parts or []:
            if part.function_call is not None:
                calls.append(part.function_call)
            elif part.text and not part.thought:
                texts.append(part.text)
        # Only the first candidate is used
        break
    return ResponseFragment(text="".join(texts) or None, tool_calls=_invocations(calls))


class GeminiChatSession:
    def __init__(self, chat) -> None:
        self._chat = chat

    async def send_and_stream(self, text: str) -> AsyncIterator[ResponseFragment]:
        try:
            async for chunk in await self._chat.send_message_stream(text):
                yield _fragment(chunk)
        except _SDK_ERRORS as exc:
            logger.warning("gemini.stream_failed err=%s", exc)
            raise TransportError(str(exc)) from exc

    async def send_tool_results(self, results: List[ToolResult]) -> ResponseFragment:
        parts = [
            types.Part.from_function_response(name=result.name, response={"result": result.result})
            for result in results
        ]
        try:
            response = await self._chat.send_message(parts)
        except _SDK_ERRORS as exc:
            logger.warning("gemini.tool_response_failed err=%s", exc)
            raise TransportError(str(exc)) from exc
        return _fragment(response)


class GeminiChatService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._client: Optional[genai.Client] = None

    def _get_client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(api_key=self.settings.require_api_key())
        return self._client

    def create_session(
        self,
        history: List[Turn],
        tools: List[Dict[str, Any]],
        system_instruction: str,
    ) -> GeminiChatSession:
        chat = self._get_client().aio.chats.create(
            model=self.settings.chat_model,
            history=_history_contents(history),
            config=types.GenerateContentConfig(
                system_instruction=system_instruction,
                tools=_tools(tools),
            ),
        )
        logger.info("gemini.chat_created model=%s history=%d", self.settings.chat_model, len(history))
        return GeminiChatSession(chat)


def live_message(response: types.LiveServerMessage) -> LiveMessage:
    """Normalise one live server message into the fields the voice engine acts on."""
    interrupted = False
    turn_complete = False
    audio = bytearray()
    content = response.server_content
    if content is not None:
        interrupted = bool(content.interrupted)
        turn_complete = bool(content.turn_complete)
        if content.model_turn is not None:
            for part in content.model_turn.parts or []:
                if part.inline_data is not None and part.inline_data.data:
                    audio.extend(part.inline_data.data)
    calls = response.tool_call.function_calls if response.tool_call is not None else None
    return LiveMessage(
        interrupted=interrupted,
        turn_complete=turn_complete,
        tool_calls=_invocations(calls),
        audio=bytes(audio) or None,
    )


def _live_connect_config(config: LiveConfig) -> types.LiveConnectConfig:
    return types.LiveConnectConfig(
        response_modalities=config.response_modalities,
        speech_config=types.SpeechConfig(
            voice_config=types.VoiceConfig(
                prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=config.voice_name)
            )
        ),
        system_instruction=types.Content(parts=[types.Part(text=config.system_instruction)]),
        tools=_tools(config.tools),
    )


class GeminiLiveConnection:
    def __init__(self, session, exit_stack: AsyncExitStack, callbacks: LiveCallbacks) -> None:
        self._session = session
        self._exit_stack = exit_stack
        self._callbacks = callbacks
        self._receive_task: Optional[asyncio.Task] = None
        self._closed = False

    def start(self) -> None:
        self._receive_task = asyncio.create_task(self._receive_loop(), name="gemini_live_rx")

    async def _receive_loop(self) -> None:
        try:
            while not self._closed:
                received = 0
                # receive() ends after each completed model turn
                async for response in self._session.receive():
                    received += 1
                    self._callbacks.on_message(live_message(response))
                if received == 0:
                    logger.info("gemini.live_stream_ended")
                    self._callbacks.on_close(None)
                    return
        except ConnectionClosedOK as exc:
            logger.info("gemini.live_closed code=%s", exc.code)
            self._callbacks.on_close(exc.reason or None)
        except _LIVE_ERRORS as exc:
            logger.warning("gemini.live_receive_failed err=%s", exc)
            self._callbacks.on_error(TransportError(str(exc)))
        except Exception as exc:  # noqa: BLE001
            logger.exception("gemini.live_message_failed")
            self._callbacks.on_error(TransportError(str(exc)))

    async def send_audio_frame(self, blob: PcmBlob) -> None:
        await self._send(self._session.send_realtime_input(audio=types.Blob(data=blob.data, mime_type=blob.mime_type)))

    async def send_tool_result(self, results: List[ToolResult]) -> None:
        responses = [
            types.FunctionResponse(id=result.id, name=result.name, response={"result": result.result})
            for result in results
        ]
        await self._send(self._session.send_tool_response(function_responses=responses))

    async def send_text(self, text: str) -> None:
        await self._send(
            self._session.send_client_content(
                turns=types.Content(role="user", parts=[types.Part(text=text)]),
                turn_complete=True,
            )
        )

    async def _send(self, send) -> None:
        try:
            await send
        except _LIVE_ERRORS as exc:
            raise TransportError(str(exc)) from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        task = self._receive_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        try:
            await self._exit_stack.aclose()
        except _LIVE_ERRORS as exc:
            logger.warning("gemini.live_close_failed err=%s", exc)


class GeminiLiveService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    async def connect(self, config: LiveConfig, callbacks: LiveCallbacks) -> GeminiLiveConnection:
        client = genai.Client(api_key=self.settings.require_api_key())
        exit_stack = AsyncExitStack()
        try:
            session = await exit_stack.enter_async_context(
                client.aio.live.connect(model=config.model, config=_live_connect_config(config))
            )
        except _LIVE_ERRORS as exc:
            await exit_stack.aclose()
            logger.warning("gemini.live_connect_failed model=%s err=%s", config.model, exc)
            raise TransportError(str(exc)) from exc
        logger.info("gemini.live_connected model=%s voice=%s", config.model, config.voice_name)
        connection = GeminiLiveConnection(session, exit_stack, callbacks)
        connection.start()
        callbacks.on_open()
        return connection
