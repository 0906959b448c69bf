from __future__ import annotations

import logging
import uuid
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)


class ServiceType(str, Enum):
    REPAIR = "Repair"
    DIAGNOSTIC = "Diagnostic"
    SOFTWARE = "Software"
    NETWORK = "Network"


class BookingDraft(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    deviceType: Optional[str] = None
    serviceType: Optional[ServiceType] = None
    description: Optional[str] = None


class ToolInvocation(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _fill_missing_id(cls, value: Any) -> Any:
        # Non-live chat responses often carry function calls without an id.
        return value or uuid.uuid4().hex


class ToolResult(BaseModel):
    id: str
    name: str
    result: str


class OpenBookingFormArgs(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    deviceType: Optional[str] = None
    serviceType: Optional[ServiceType] = None
    issue: Optional[str] = None

    @field_validator("serviceType", mode="before")
    @classmethod
    def _drop_unknown_service_type(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and value in {item.value for item in ServiceType}):
            return value
        logger.warning("tooling.unknown_service_type value=%r", value)
        return None

    def to_draft(self) -> BookingDraft:
        return BookingDraft(
            name=self.name,
            phone=self.phone,
            email=self.email,
            address=self.address,
            deviceType=self.deviceType,
            serviceType=self.serviceType,
            description=self.issue,
        )


class UpdateWhatsAppContextArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    summary: str


class OpenBookingForm(BaseModel):
    kind: Literal["open_booking_form"] = "open_booking_form"
    arguments: OpenBookingFormArgs


class UpdateWhatsAppContext(BaseModel):
    kind: Literal["update_whatsapp_context"] = "update_whatsapp_context"
    arguments: UpdateWhatsAppContextArgs


class UnknownTool(BaseModel):
    kind: Literal["unknown"] = "unknown"
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


ToolCall = Union[OpenBookingForm, UpdateWhatsAppContext, UnknownTool]

_TOOL_CALL_TYPES = {
    "open_booking_form": OpenBookingForm,
    "update_whatsapp_context": UpdateWhatsAppContext,
}


def parse_tool_call(invocation: ToolInvocation) -> ToolCall:
    """Map a raw invocation onto its typed variant.

    Raises pydantic.ValidationError when a known tool receives arguments that
    do not fit its record.
    """
    call_type = _TOOL_CALL_TYPES.get(invocation.name)
    if call_type is None:
        return UnknownTool(name=invocation.name, arguments=invocation.arguments)
    return call_type(arguments=invocation.arguments)
