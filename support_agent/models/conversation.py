from __future__ import annotations

import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

SEED_TURN_ID = "greeting"
SEED_GREETING = (
    "Apple911 Neural Link Active. I am Tumelo, your digital diagnostic unit. "
    "Please state your name so I may address you properly."
)


class Role(str, Enum):
    USER = "user"
    AGENT = "agent"


class Turn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: Role
    text: str = ""

    @field_validator("role", mode="before")
    @classmethod
    def _accept_model_role(cls, value: Any) -> Any:
        # Older stores recorded agent turns with the wire name "model".
        if value == "model":
            return Role.AGENT
        return value


class TextState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    ERROR = "error"


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


def seed_turn() -> Turn:
    return Turn(id=SEED_TURN_ID, role=Role.AGENT, text=SEED_GREETING)
