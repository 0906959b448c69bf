from __future__ import annotations

import logging
from contextlib import nullcontext
from typing import Callable, List, Optional

from support_agent.errors import ConfigurationError, TransportError
from support_agent.logging.flight_recorder import FlightRecorder
from support_agent.models.conversation import Role, TextState, Turn
from support_agent.models.realtime import ResponseFragment
from support_agent.prompts import TEXT_SYSTEM_INSTRUCTION
from support_agent.services.history import HistoryStore, sanitize_history
from support_agent.services.tool_dispatcher import ToolDispatcher
from support_agent.services.transport import ChatService, ChatSession

logger = logging.getLogger(__name__)

STREAM_ERROR = "Data Stream Interrupted."


class TextSessionEngine:
    """Turn-based chat against the model service.

    One message is in flight at a time. The agent's answer grows in a
    placeholder turn as fragments arrive; tool calls in a fragment are
    dispatched and acknowledged on the same session, and the continuation text
    they produce lands before the fragment's own text.
    """

    def __init__(
        self,
        service: ChatService,
        dispatcher: ToolDispatcher,
        store: HistoryStore,
        recorder: Optional[FlightRecorder] = None,
        on_update: Optional[Callable[[Turn], None]] = None,
        system_instruction: str = TEXT_SYSTEM_INSTRUCTION,
    ) -> None:
        self.service = service
        self.dispatcher = dispatcher
        self.store = store
        self.recorder = recorder
        self.on_update = on_update
        self.system_instruction = system_instruction
        self.turns: List[Turn] = store.load()
        self.state = TextState.IDLE
        self.error: Optional[str] = None
        self._session: Optional[ChatSession] = None

    @property
    def has_session(self) -> bool:
        return self._session is not None

    def open(self) -> bool:
        """Create the model session if none exists. Returns whether one is available."""
        if self._session is not None:
            return True
        history = sanitize_history(self.turns)
        try:
            self._session = self.service.create_session(
                history, self.dispatcher.get_tool_schemas(), self.system_instruction
            )
        except ConfigurationError as exc:
            logger.error("text_session.open_failed err=%s", exc)
            self.error = str(exc)
            return False
        self.error = None
        if self.recorder:
            self.recorder.log("SESSION", "text_session_opened", history=len(history))
        return True

    async def submit(self, text: str) -> bool:
        """Send one user message and consume the response. Returns False when ignored."""
        if not text.strip() or self._session is None:
            return False
        if self.state in (TextState.SENDING, TextState.STREAMING):
            logger.info("text_session.busy state=%s", self.state.value)
            return False

        self.error = None
        self._append(Turn(role=Role.USER, text=text))
        reply = Turn(role=Role.AGENT)
        self._append(reply)
        self.state = TextState.SENDING

        stage = self.recorder.stage("STREAM") if self.recorder else nullcontext()
        try:
            with stage:
                async for fragment in self._session.send_and_stream(text):
                    self.state = TextState.STREAMING
                    await self._apply(fragment, reply)
        except TransportError as exc:
            # Partial text already appended to the reply is kept
            logger.warning("text_session.stream_failed err=%s chars=%d", exc, len(reply.text))
            self.state = TextState.ERROR
            self.error = STREAM_ERROR
        except Exception:  # noqa: BLE001
            logger.exception("text_session.turn_failed chars=%d", len(reply.text))
            self.state = TextState.ERROR
            self.error = STREAM_ERROR
        finally:
            self.state = TextState.IDLE
            self.store.save(self.turns)
            self._notify(reply)
        return True

    def reset(self) -> None:
        """Forget the whole conversation; the next ``open`` starts a fresh session."""
        self.turns = self.store.clear()
        self._session = None
        self.error = None
        self.state = TextState.IDLE
        logger.info("text_session.reset")

    async def _apply(self, fragment: ResponseFragment, reply: Turn) -> None:
        if fragment.tool_calls:
            results = [self.dispatcher.dispatch(call) for call in fragment.tool_calls]
            continuation = await self._session.send_tool_results(results)
            await self._apply(continuation, reply)
        if fragment.text:
            reply.text += fragment.text
            self._notify(reply)

    def _append(self, turn: Turn) -> None:
        self.turns.append(turn)
        self.store.save(self.turns)
        self._notify(turn)

    def _notify(self, turn: Turn) -> None:
        if self.on_update:
            self.on_update(turn)
