"""Short-term memory: recent-message window plus a rolling summary of older turns."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Set

from .errors import ModelMalformedOutput
from .prompts import SUMMARY_PROMPT
from .schemas import (
    ConversationMessage,
    PromptSegment,
    ShortTermContext,
    estimate_tokens,
    utc_now,
)
from .storage import MemoryStore

logger = logging.getLogger(__name__)

SUMMARY_HEADER = "## Previous Conversation Summary"
RECENT_HEADER = "## Recent Messages"


def format_message(message: ConversationMessage) -> str:
    return f"[{message.created_at}] {message.label}: {message.content}"


@dataclass
class ShortTermMemoryManager:
    """Keep the last ``recent_window`` messages verbatim and summarise the rest.

    The stored summary always covers messages strictly older than the window
    that was retained when it was written.  It is regenerated once at least
    ``summary_threshold`` messages have arrived since the previous summary.
    """

    store: MemoryStore
    llm_client: Any
    recent_window: int = 10
    summary_threshold: int = 20
    summary_token_budget: int = 500
    message_token_budget: int = 1500
    _in_flight: Set[str] = field(default_factory=set, init=False, repr=False)
    _guard: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.recent_window < 1:
            raise ValueError("recent_window must be at least 1")
        if self.summary_threshold < 1:
            raise ValueError("summary_threshold must be at least 1")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_context(self, conversation_id: str) -> ShortTermContext:
        state = self.store.get_summary(conversation_id)
        recent = self.store.list_recent_messages(conversation_id, self.recent_window)
        context = ShortTermContext(
            conversation_id=conversation_id,
            summary=state.summary,
            recent_messages=recent,
        )
        context.token_estimate = estimate_tokens(self.format_for_prompt(context))
        return context

    def format_for_prompt(self, context: ShortTermContext) -> str:
        sections: List[str] = []
        if context.summary:
            sections.append(f"{SUMMARY_HEADER}\n{context.summary}")

        lines = [format_message(message) for message in context.recent_messages]
        # drop oldest first; the summary is never cut
        while lines and sum(estimate_tokens(line) for line in lines) > self.message_token_budget:
            lines.pop(0)
        if lines:
            sections.append(RECENT_HEADER + "\n" + "\n".join(lines))
        return "\n\n".join(sections)

    # ------------------------------------------------------------------
    # Summarisation
    # ------------------------------------------------------------------
    def needs_summary(self, conversation_id: str) -> bool:
        state = self.store.get_summary(conversation_id)
        total = self.store.count_messages(conversation_id)
        return total - state.message_count_at_summary >= self.summary_threshold

    def update_summary_if_needed(self, conversation_id: str) -> Optional[str]:
        """Regenerate the rolling summary when the backlog crossed the threshold.

        Returns the new summary, or ``None`` when nothing was written (below
        threshold, another caller already summarising, or a lost
        compare-and-set).  Model failures propagate and leave the stored
        summary untouched.
        """

        state = self.store.get_summary(conversation_id)
        total = self.store.count_messages(conversation_id)
        if total - state.message_count_at_summary < self.summary_threshold:
            return None

        with self._guard:
            if conversation_id in self._in_flight:
                logger.debug("Summary already in progress for %s", conversation_id)
                return None
            self._in_flight.add(conversation_id)

        try:
            start = max(state.message_count_at_summary - self.recent_window, 0)
            end = total - self.recent_window
            if end <= start:
                return None
            backlog = self.store.list_messages(conversation_id, offset=start, limit=end - start)
            summary = self._summarize(state.summary, backlog)

            written = self.store.compare_and_set_summary(
                conversation_id,
                expected_count=state.message_count_at_summary,
                summary=summary,
                message_count=total,
                summarized_at=utc_now(),
            )
            if not written:
                logger.info("Summary for %s was updated concurrently; discarding", conversation_id)
                return None
            logger.info(
                "Summarised %s messages for conversation %s (count now %s)",
                len(backlog),
                conversation_id,
                total,
            )
            return summary
        finally:
            with self._guard:
                self._in_flight.discard(conversation_id)

    def _summarize(
        self, previous: Optional[str], messages: Sequence[ConversationMessage]
    ) -> str:
        transcript = "\n".join(format_message(message) for message in messages)
        content = (
            f"Existing summary:\n{previous or '(none)'}\n\n"
            f"New messages to fold in:\n{transcript}"
        )
        segments = [
            PromptSegment("system", SUMMARY_PROMPT, block="summary_instructions"),
            PromptSegment("user", content, block="summary_input"),
        ]
        raw = self.llm_client.complete(
            segments,
            {"purpose": "summary", "temperature": 0.3, "max_tokens": self.summary_token_budget},
        )
        summary = (raw or "").strip()
        if not summary:
            raise ModelMalformedOutput("Empty conversation summary", raw=raw)
        return summary


__all__ = ["ShortTermMemoryManager", "format_message"]
