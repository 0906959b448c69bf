from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, List, Optional

from pydantic import ValidationError

from support_agent.logging.flight_recorder import FlightRecorder
from support_agent.models.conversation import SEED_TURN_ID, Role, Turn, seed_turn

logger = logging.getLogger(__name__)


def sanitize_history(turns: Iterable[Turn]) -> List[Turn]:
    """Reduce a persisted turn log to a history the model service accepts.

    The result alternates user/agent starting with a user turn and never ends
    on a user turn. The seed greeting and blank turns are skipped; a turn whose
    role breaks the alternation is dropped rather than repaired, and a trailing
    unanswered user turn is removed.
    """
    history: List[Turn] = []
    expected_role = Role.USER
    for turn in turns:
        if turn.id == SEED_TURN_ID or not turn.text.strip():
            continue
        if turn.role != expected_role:
            logger.warning(
                "history.drop_turn id=%s role=%s expected=%s",
                turn.id,
                turn.role.value,
                expected_role.value,
            )
            continue
        history.append(turn)
        expected_role = Role.AGENT if expected_role == Role.USER else Role.USER

    if history and history[-1].role == Role.USER:
        dropped = history.pop()
        logger.info("history.drop_unanswered id=%s", dropped.id)
    return history


class HistoryStore:
    """JSON file holding one client's chat turns as ``{id, role, text}`` records."""

    def __init__(self, path: Path, recorder: Optional[FlightRecorder] = None) -> None:
        self.path = Path(path)
        self.recorder = recorder

    def load(self) -> List[Turn]:
        if not self.path.exists():
            return [seed_turn()]
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            turns = [Turn.model_validate(record) for record in raw]
        except (OSError, ValueError, TypeError, ValidationError) as exc:
            logger.warning("history.load_failed path=%s err=%s", self.path, exc)
            if self.recorder:
                self.recorder.log("HISTORY", "load_failed", error=str(exc))
            return [seed_turn()]
        if not turns:
            return [seed_turn()]
        if self.recorder:
            self.recorder.log("HISTORY", "loaded", turns=len(turns))
        return turns

    def save(self, turns: Iterable[Turn]) -> None:
        records = [turn.model_dump(mode="json") for turn in turns]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(records, ensure_ascii=False), encoding="utf-8")
        tmp_path.replace(self.path)

    def clear(self) -> List[Turn]:
        self.path.unlink(missing_ok=True)
        if self.recorder:
            self.recorder.log("HISTORY", "cleared")
        return [seed_turn()]
