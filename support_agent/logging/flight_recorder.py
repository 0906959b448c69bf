from __future__ import annotations

import time
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import logging

logger = logging.getLogger(__name__)

_STAGE_ORDER = [
    "CONFIG",
    "HISTORY",
    "SESSION",
    "STREAM",
    "TOOL",
    "AUDIO_IN",
    "AUDIO_OUT",
    "INTERRUPT",
    "WS",
]

# Contact details the customer dictates never reach the log
_REDACTED_KEYS = {"name", "phone", "email", "address", "summary"}


@dataclass
class StageEvent:
    stage: str
    message: str
    elapsed_ms: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionSummary:
    duration_ms: float
    turns: int
    tool_calls: int
    tool_ms: float
    clips_scheduled: int
    audio_seconds: float
    interruptions: int
    clips_stopped: int


class FlightRecorder:
    """Timeline of one chat or voice session.

    Each event is kept with its offset from the session start. Counters per
    ``(stage, message)`` feed ``summary()``, which the routes log when a socket
    closes: how many turns and tool calls ran, how much agent audio was
    scheduled and how often the caller barged in.
    """

    def __init__(self) -> None:
        self.events: List[StageEvent] = []
        self.start_time = time.perf_counter()
        self._counts: Counter = Counter()
        self._totals: Counter = Counter()

    @contextmanager
    def stage(self, stage: str, **metadata: Any):
        _check_stage(stage)
        stage_start = time.perf_counter()
        try:
            yield
        finally:
            elapsed_ms = (time.perf_counter() - stage_start) * 1000
            self._record(stage, f"{stage} completed", elapsed_ms, metadata)
            self._totals[(stage, "elapsed_ms")] += elapsed_ms

    def log(self, stage: str, message: str, **metadata: Any) -> None:
        _check_stage(stage)
        self._record(stage, message, 0, metadata)
        for key, value in metadata.items():
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                self._totals[(stage, key)] += value

    def count(self, stage: str, message: Optional[str] = None) -> int:
        if message is not None:
            return self._counts[(stage, message)]
        return sum(total for (name, _), total in self._counts.items() if name == stage)

    def total(self, stage: str, key: str) -> float:
        return self._totals[(stage, key)]

    def messages(self, stage: str) -> List[str]:
        return [event.message for event in self.events if event.stage == stage]

    def summary(self) -> SessionSummary:
        summary = SessionSummary(
            duration_ms=round((time.perf_counter() - self.start_time) * 1000, 2),
            turns=self.count("STREAM"),
            tool_calls=self.count("TOOL"),
            tool_ms=round(self.total("TOOL", "elapsed_ms"), 2),
            clips_scheduled=self.count("AUDIO_OUT", "clip_scheduled"),
            audio_seconds=round(self.total("AUDIO_OUT", "duration"), 3),
            interruptions=self.count("INTERRUPT", "barge_in"),
            clips_stopped=int(self.total("INTERRUPT", "stopped")),
        )
        logger.info(
            "flight_recorder.summary duration_ms=%.2f turns=%d tool_calls=%d tool_ms=%.2f "
            "clips=%d audio_s=%.3f interruptions=%d clips_stopped=%d",
            summary.duration_ms,
            summary.turns,
            summary.tool_calls,
            summary.tool_ms,
            summary.clips_scheduled,
            summary.audio_seconds,
            summary.interruptions,
            summary.clips_stopped,
        )
        return summary

    def _record(self, stage: str, message: str, elapsed_ms: float, metadata: Dict[str, Any]) -> None:
        total_ms = round((time.perf_counter() - self.start_time) * 1000, 2)
        redacted = _redact(metadata)
        self.events.append(StageEvent(stage, message, elapsed_ms, {"total_ms": total_ms, **redacted}))
        self._counts[(stage, message)] += 1
        logger.info(
            "flight_recorder.event stage=%s message=%s elapsed_ms=%.2f total_ms=%.2f metadata=%s",
            stage,
            message,
            elapsed_ms,
            total_ms,
            redacted,
        )


def _check_stage(stage: str) -> None:
    if stage not in _STAGE_ORDER:
        logger.warning("flight_recorder.unknown_stage stage=%s", stage)


def _redact(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: "***" if key in _REDACTED_KEYS and value else value for key, value in payload.items()}
