from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
from pydantic import BaseModel, Field

from support_agent.models.tooling import ToolInvocation


@dataclass
class AudioClip:
    samples: np.ndarray
    sample_rate: int

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration_seconds(self) -> float:
        return self.frames / self.sample_rate


@dataclass(frozen=True)
class PcmBlob:
    data: bytes
    mime_type: str

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


class ResponseFragment(BaseModel):
    text: Optional[str] = None
    tool_calls: List[ToolInvocation] = Field(default_factory=list)


class LiveMessage(BaseModel):
    interrupted: bool = False
    turn_complete: bool = False
    tool_calls: List[ToolInvocation] = Field(default_factory=list)
    audio: Optional[bytes] = None


@dataclass
class LiveConfig:
    model: str
    voice_name: str
    system_instruction: str
    tools: List[Dict[str, Any]] = field(default_factory=list)
    response_modalities: List[str] = field(default_factory=lambda: ["AUDIO"])
