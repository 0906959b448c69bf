import json
import random

from support_agent.models.conversation import SEED_TURN_ID, Role, Turn, seed_turn
from support_agent.services.history import HistoryStore, sanitize_history


def _turn(role, text):
    return Turn(role=role, text=text)


def _pairs(turns):
    return [(turn.role, turn.text) for turn in turns]


def test_trailing_user_turn_is_removed():
    turns = [_turn("user", "A"), _turn("model", "B"), _turn("user", "C")]

    assert _pairs(sanitize_history(turns)) == [(Role.USER, "A"), (Role.AGENT, "B")]


def test_consecutive_agent_turns_keep_the_first():
    turns = [_turn("user", "hi"), _turn("agent", ""), _turn("agent", "hello"), _turn("agent", "again")]

    assert _pairs(sanitize_history(turns)) == [(Role.USER, "hi"), (Role.AGENT, "hello")]


def test_seed_greeting_and_blank_turns_are_skipped():
    turns = [seed_turn(), _turn("user", "   "), _turn("user", "help"), _turn("agent", "sure")]

    result = sanitize_history(turns)

    assert all(turn.id != SEED_TURN_ID for turn in result)
    assert _pairs(result) == [(Role.USER, "help"), (Role.AGENT, "sure")]


def test_history_starting_with_agent_drops_until_user():
    turns = [_turn("agent", "stray"), _turn("user", "q"), _turn("agent", "a")]

    assert _pairs(sanitize_history(turns)) == [(Role.USER, "q"), (Role.AGENT, "a")]


def test_random_logs_always_alternate_and_end_on_agent():
    rng = random.Random(7)
    for _ in range(200):
        turns = [
            _turn(rng.choice(["user", "agent"]), rng.choice(["", "x", "y z"]))
            for _ in range(rng.randint(0, 12))
        ]
        result = sanitize_history(turns)
        for index, turn in enumerate(result):
            assert turn.role == (Role.USER if index % 2 == 0 else Role.AGENT)
        assert not result or result[-1].role == Role.AGENT


def test_store_round_trip_and_model_role_alias(tmp_path):
    path = tmp_path / "client.json"
    path.write_text(json.dumps([{"id": "1", "role": "user", "text": "hi"}, {"id": "2", "role": "model", "text": "yo"}]))
    store = HistoryStore(path)

    turns = store.load()
    assert [turn.role for turn in turns] == [Role.USER, Role.AGENT]

    turns.append(Turn(role=Role.USER, text="next"))
    store.save(turns)
    saved = json.loads(path.read_text())
    assert saved[-1]["role"] == "user"
    assert saved[1]["role"] == "agent"


def test_missing_or_corrupt_store_falls_back_to_greeting(tmp_path):
    missing = HistoryStore(tmp_path / "missing.json")
    assert [turn.id for turn in missing.load()] == [SEED_TURN_ID]

    corrupt_path = tmp_path / "corrupt.json"
    corrupt_path.write_text("{not json")
    assert [turn.id for turn in HistoryStore(corrupt_path).load()] == [SEED_TURN_ID]

    wrong_shape = tmp_path / "wrong.json"
    wrong_shape.write_text(json.dumps([{"role": "robot", "text": "?"}]))
    assert [turn.id for turn in HistoryStore(wrong_shape).load()] == [SEED_TURN_ID]


def test_clear_removes_file(tmp_path):
    store = HistoryStore(tmp_path / "c.json")
    store.save([_turn("user", "x")])

    turns = store.clear()

    assert not store.path.exists()
    assert [turn.id for turn in turns] == [SEED_TURN_ID]
