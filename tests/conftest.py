from __future__ import annotations

import json
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import pytest

from roundtable.schemas import Persona, PromptSegment
from roundtable.storage import SQLiteMemoryStore


class FakeLLMClient:
    """Completion fake keyed by the ``purpose`` option of each call.

    A purpose maps either to a list of replies consumed in order or to a
    single callable invoked for every call (handy for parallel persona calls).
    A reply is a string, an exception instance to raise, or a callable taking
    the prompt segments.
    """

    def __init__(self, responses: Optional[Mapping[str, Any]] = None) -> None:
        self.responses: Dict[str, Any] = {}
        for key, value in (responses or {}).items():
            self.responses[key] = value if callable(value) else list(value)
        self.calls: List[Mapping[str, Any]] = []
        self._lock = threading.Lock()

    def complete(
        self, segments: Sequence[PromptSegment], options: Optional[Mapping[str, Any]] = None
    ) -> str:
        purpose = (options or {}).get("purpose", "completion")
        with self._lock:
            self.calls.append({"purpose": purpose, "segments": list(segments), "options": dict(options or {})})
            entry = self.responses.get(purpose)
            if entry is None or (isinstance(entry, list) and not entry):
                raise AssertionError(f"No response queued for purpose: {purpose!r}")
            reply = entry if callable(entry) else entry.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(segments)
        return reply

    def count(self, purpose: str) -> int:
        return sum(1 for call in self.calls if call["purpose"] == purpose)

    def segments_for(self, purpose: str) -> List[List[PromptSegment]]:
        return [call["segments"] for call in self.calls if call["purpose"] == purpose]


def queue_json(data: Mapping[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False)


def display_name_in(segments: Sequence[PromptSegment]) -> str:
    """Name of the persona a composed request was built for."""

    archetype = next(segment for segment in segments if segment.block == "archetype")
    first_line = archetype.content.splitlines()[0]
    return first_line[len("You are ") : -1]


@pytest.fixture
def store() -> SQLiteMemoryStore:
    db = SQLiteMemoryStore(":memory:")
    yield db
    db.close()


@pytest.fixture
def fake_llm() -> Callable[..., FakeLLMClient]:
    return FakeLLMClient


@pytest.fixture
def json_reply() -> Callable[[Mapping[str, Any]], str]:
    return queue_json


@pytest.fixture
def persona_name() -> Callable[[Sequence[PromptSegment]], str]:
    return display_name_in


@pytest.fixture
def add_persona(store: SQLiteMemoryStore) -> Callable[..., Persona]:
    def _add(
        display_name: str,
        *,
        project_id: str = "proj-1",
        archetype: str = "advisor",
        specialization: str = "financial",
        **fields: Any,
    ) -> Persona:
        persona = Persona(
            project_id=project_id,
            user_id="user-1",
            archetype=archetype,
            specialization=specialization,
            display_name=display_name,
            **fields,
        )
        return store.save_persona(persona)

    return _add
