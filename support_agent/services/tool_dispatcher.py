from __future__ import annotations

from contextlib import nullcontext
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import logging

from pydantic import ValidationError

from support_agent.logging.flight_recorder import FlightRecorder
from support_agent.models.tooling import (
    BookingDraft,
    OpenBookingForm,
    ToolInvocation,
    ToolResult,
    UpdateWhatsAppContext,
    parse_tool_call,
)

logger = logging.getLogger(__name__)

BOOKING_FORM_RESULT = "Form Opened with prefilled data."
CONTACT_LINK_RESULT = "WhatsApp Link Updated successfully."
UNKNOWN_TOOL_RESULT = "Unknown tool"

# encodeURIComponent leaves these unescaped in addition to quote()'s defaults
_URI_COMPONENT_SAFE = "!*'()"


class ContactLink:
    """The human-handoff link shown next to the voice session."""

    def __init__(self, base_url: str, on_change: Optional[Callable[[str], None]] = None) -> None:
        self.base_url = base_url
        self.url = base_url
        self._on_change = on_change

    def update(self, summary: str) -> str:
        self.url = f"{self.base_url}?text={quote(summary, safe=_URI_COMPONENT_SAFE)}"
        if self._on_change:
            self._on_change(self.url)
        return self.url


class ToolDispatcher:
    def __init__(
        self,
        booking_form: Callable[[BookingDraft], None],
        contact_link: Optional[ContactLink] = None,
        recorder: Optional[FlightRecorder] = None,
    ) -> None:
        self.recorder = recorder
        self.booking_form = booking_form
        self.contact_link = contact_link
        self.registry: Dict[str, Callable[[Any], str]] = {
            "open_booking_form": self._open_booking_form,
        }
        if contact_link is not None:
            self.registry["update_whatsapp_context"] = self._update_whatsapp_context
        self._completed: Dict[str, ToolResult] = {}
        self._tool_schemas: Dict[str, Dict[str, Any]] = self._build_tool_schemas()

    def dispatch(self, invocation: ToolInvocation) -> ToolResult:
        """Run the invocation's side effect once and return its acknowledgment.

        A replayed invocation id returns the first result without repeating the
        side effect. Unknown tools, invalid arguments and failing handlers produce a
        result instead of an exception so the stream keeps going.
        """
        cached = self._completed.get(invocation.id)
        if cached is not None:
            logger.info("tool.replay name=%s id=%s", invocation.name, invocation.id)
            return cached

        handler = self.registry.get(invocation.name)
        if handler is None:
            logger.warning("tool.unknown name=%s id=%s", invocation.name, invocation.id)
            result = UNKNOWN_TOOL_RESULT
        else:
            try:
                call = parse_tool_call(invocation)
            except ValidationError as exc:
                logger.warning("tool.invalid_arguments name=%s err=%s", invocation.name, exc)
                result = f"Invalid arguments for {invocation.name}: {exc.error_count()} error(s)."
            else:
                logger.info("tool.call name=%s id=%s", invocation.name, invocation.id)
                with self._stage(invocation.name):
                    try:
                        result = handler(call)
                    except Exception as exc:  # noqa: BLE001
                        logger.exception("tool.failed name=%s id=%s", invocation.name, invocation.id)
                        result = f"Tool {invocation.name} failed: {exc}"

        tool_result = ToolResult(id=invocation.id, name=invocation.name, result=result)
        self._completed[invocation.id] = tool_result
        return tool_result

    def get_tool_schemas(self) -> List[Dict[str, Any]]:
        return [self._tool_schemas[name] for name in self.registry]

    def _stage(self, tool_name: str):
        if self.recorder:
            return self.recorder.stage("TOOL", tool=tool_name)
        return nullcontext()

    def _open_booking_form(self, call: OpenBookingForm) -> str:
        draft = call.arguments.to_draft()
        self.booking_form(draft)
        return BOOKING_FORM_RESULT

    def _update_whatsapp_context(self, call: UpdateWhatsAppContext) -> str:
        self.contact_link.update(call.arguments.summary)
        return CONTACT_LINK_RESULT

    def _build_tool_schemas(self) -> Dict[str, Dict[str, Any]]:
        return {
            "open_booking_form": {
                "name": "open_booking_form",
                "description": (
                    "Opens or updates the Smart Booking Form overlay on the user's screen, "
                    "prefilled with the data collected so far. Call it again whenever details "
                    "are added or corrected."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string", "description": "Customer name"},
                        "phone": {"type": "string", "description": "Customer phone number"},
                        "email": {"type": "string", "description": "Customer email address"},
                        "address": {"type": "string", "description": "Physical address"},
                        "deviceType": {
                            "type": "string",
                            "description": "Device type (iPhone, MacBook, PC, Server)",
                        },
                        "serviceType": {
                            "type": "string",
                            "description": "The specific operation/service type required based on the issue.",
                            "enum": ["Repair", "Diagnostic", "Software", "Network"],
                        },
                        "issue": {
                            "type": "string",
                            "description": "Description of the issue or service required",
                        },
                    },
                },
            },
            "update_whatsapp_context": {
                "name": "update_whatsapp_context",
                "description": (
                    "Updates the WhatsApp contact button on the user's screen with a summary "
                    "of the current request or conversation context."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "summary": {
                            "type": "string",
                            "description": (
                                "A concise summary of the user's issue, device details, or service "
                                "request to be sent to the human agent."
                            ),
                        },
                    },
                    "required": ["summary"],
                },
            },
        }

