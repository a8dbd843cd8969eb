"""Medium-term memory: bounded, importance-ranked project facts and decisions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import NotFound
from .schemas import MemoryType, ProjectMemory, estimate_tokens, to_utc_iso, utc_now
from .storage import MemoryStore

logger = logging.getLogger(__name__)

MEMORY_HEADER = "## Project Memory (Important Facts & Decisions)"

SECTION_LABELS: Mapping[MemoryType, str] = {
    MemoryType.FACT: "Facts",
    MemoryType.DECISION: "Decisions Made",
    MemoryType.BLOCKER: "Current Blockers",
    MemoryType.PREFERENCE: "User Preferences",
    MemoryType.INSIGHT: "Key Insights",
}

DEFAULT_IMPORTANCE: Mapping[MemoryType, int] = {
    MemoryType.FACT: 7,
    MemoryType.DECISION: 8,
    MemoryType.BLOCKER: 9,
    MemoryType.PREFERENCE: 6,
    MemoryType.INSIGHT: 7,
}


def clamp_importance(value: Any) -> int:
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        raise ValueError(f"Importance must be a number, got {value!r}") from None
    return max(1, min(10, score))


def by_priority(memories: Iterable[ProjectMemory]) -> List[ProjectMemory]:
    """Highest importance first; newer first among equals."""

    ordered = sorted(memories, key=lambda m: m.created_at, reverse=True)
    return sorted(ordered, key=lambda m: m.importance, reverse=True)


@dataclass
class MediumTermMemoryManager:
    """Per-project durable memory capped at ``max_memories`` live records."""

    store: MemoryStore
    max_memories: int = 30
    token_budget: int = 500
    importance_floor: int = 8

    def __post_init__(self) -> None:
        if self.max_memories < 1:
            raise ValueError("max_memories must be at least 1")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_memories(self, project_id: str) -> List[ProjectMemory]:
        return self.store.list_memories(project_id, now=utc_now())

    def get_memories_by_type(self, project_id: str, memory_type: MemoryType | str) -> List[ProjectMemory]:
        wanted = MemoryType.parse(memory_type)
        return [memory for memory in self.get_memories(project_id) if memory.memory_type is wanted]

    def get_stats(self, project_id: str) -> Dict[str, Any]:
        memories = self.get_memories(project_id)
        counts = {member.value: 0 for member in MemoryType}
        for memory in memories:
            counts[memory.memory_type.value] += 1
        total = len(memories)
        average = round(sum(m.importance for m in memories) / total, 2) if total else 0.0
        return {"total_memories": total, "counts_by_type": counts, "avg_importance": average}

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def set_memory(
        self,
        project_id: str,
        memory_type: MemoryType | str,
        key: str,
        value: str,
        importance: int = 5,
        *,
        expires_at: Optional[str] = None,
    ) -> ProjectMemory:
        key = (key or "").strip()
        value = (value or "").strip()
        if not key:
            raise ValueError("Memory key must not be empty")
        if not value:
            raise ValueError("Memory value must not be empty")
        if expires_at is not None:
            # stored expiries compare lexically against UTC "now"
            expires_at = to_utc_iso(expires_at)

        now = utc_now()
        record = ProjectMemory(
            project_id=project_id,
            memory_type=MemoryType.parse(memory_type),
            key=key,
            value=value,
            importance=clamp_importance(importance),
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        stored, evicted = self.store.upsert_memory_capped(record, cap=self.max_memories, now=now)
        if evicted is not None:
            logger.info(
                "Memory cap %s reached for project %s; evicted %r",
                self.max_memories,
                project_id,
                evicted.key,
            )
        return stored

    def remove_memory(self, project_id: str, key: str) -> bool:
        removed = self.store.delete_memory(project_id, key)
        if not removed:
            logger.debug("No memory %r to remove in project %s", key, project_id)
        return removed

    def resolve_blocker(self, project_id: str, key: str) -> bool:
        return self.remove_memory(project_id, key)

    def update_importance(self, project_id: str, key: str, importance: int) -> ProjectMemory:
        now = utc_now()
        if not self.store.update_memory_importance(project_id, key, clamp_importance(importance), now=now):
            raise NotFound("Memory", key)
        memory = self.store.get_memory(project_id, key, now=now)
        if memory is None:
            raise NotFound("Memory", key)
        return memory

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_memories(now=utc_now())
        if removed:
            logger.info("Removed %s expired memories", removed)
        return removed

    # convenience wrappers; caller importance always wins over the type default
    def add_fact(self, project_id: str, key: str, value: str, importance: Optional[int] = None) -> ProjectMemory:
        return self.add_memory(project_id, MemoryType.FACT, key, value, importance)

    def add_decision(self, project_id: str, key: str, value: str, importance: Optional[int] = None) -> ProjectMemory:
        return self.add_memory(project_id, MemoryType.DECISION, key, value, importance)

    def add_blocker(self, project_id: str, key: str, value: str, importance: Optional[int] = None) -> ProjectMemory:
        return self.add_memory(project_id, MemoryType.BLOCKER, key, value, importance)

    def add_preference(self, project_id: str, key: str, value: str, importance: Optional[int] = None) -> ProjectMemory:
        return self.add_memory(project_id, MemoryType.PREFERENCE, key, value, importance)

    def add_insight(self, project_id: str, key: str, value: str, importance: Optional[int] = None) -> ProjectMemory:
        return self.add_memory(project_id, MemoryType.INSIGHT, key, value, importance)

    def add_memory(
        self,
        project_id: str,
        memory_type: MemoryType | str,
        key: str,
        value: str,
        importance: Optional[int] = None,
    ) -> ProjectMemory:
        """Upsert with the per-type default importance unless one is given."""

        resolved = MemoryType.parse(memory_type)
        score = DEFAULT_IMPORTANCE[resolved] if importance is None else importance
        return self.set_memory(project_id, resolved, key, value, score)

    # ------------------------------------------------------------------
    # Prompt rendering
    # ------------------------------------------------------------------
    def format_for_prompt(self, memories: Iterable[ProjectMemory]) -> str:
        """Render memories grouped by type within ``token_budget``.

        Entries below ``importance_floor`` are dropped lowest-first until the
        text fits.  If the protected entries alone still overflow, the text is
        cut at the last whole line that fits.
        """

        selected = by_priority(memories)
        text = render_memories(selected)
        while estimate_tokens(text) > self.token_budget and selected:
            if selected[-1].importance >= self.importance_floor:
                break
            dropped = selected.pop()
            logger.debug("Dropping memory %r from prompt to fit budget", dropped.key)
            text = render_memories(selected)

        if estimate_tokens(text) > self.token_budget:
            logger.warning(
                "Protected memories exceed the %s-token budget; truncating", self.token_budget
            )
            text = _truncate_lines(text, self.token_budget * 4)
        return text

    def estimate_tokens(self, memories: Iterable[ProjectMemory]) -> int:
        return estimate_tokens(render_memories(by_priority(memories)))


def render_memories(memories: List[ProjectMemory]) -> str:
    if not memories:
        return ""
    grouped: Dict[MemoryType, List[ProjectMemory]] = {member: [] for member in MemoryType}
    for memory in memories:
        grouped[memory.memory_type].append(memory)

    sections = [MEMORY_HEADER]
    for memory_type, label in SECTION_LABELS.items():
        items = grouped[memory_type]
        if not items:
            continue
        lines = [f"**{label}:**"]
        lines.extend(f"- {item.key}: {item.value}" for item in items)
        sections.append("\n".join(lines))
    return "\n\n".join(sections)


def _truncate_lines(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    newline = cut.rfind("\n")
    return cut[:newline].rstrip() if newline > 0 else cut


__all__ = [
    "DEFAULT_IMPORTANCE",
    "MediumTermMemoryManager",
    "SECTION_LABELS",
    "by_priority",
    "clamp_importance",
    "render_memories",
]
