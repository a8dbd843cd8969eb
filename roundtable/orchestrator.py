"""Route user messages to personas and arbitrate disagreement between them."""

from __future__ import annotations

import itertools
import logging
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Set, Tuple

from .composer import PromptComposer, neutral_request
from .errors import ModelMalformedOutput, RoundtableError, TurnCancelled
from .fanout import gather_settled
from .medium_term import MediumTermMemoryManager
from .prompts import (
    CLASSIFICATION_PROMPT,
    FALLBACK_REPLY_TEXT,
    NO_PERSONA_TEXT,
    PERSPECTIVE_TASK,
    REBUTTAL_TASK,
    ROUTING_PROMPT,
    SYNTHESIS_PROMPT,
)
from .schemas import (
    Compatibility,
    Conversation,
    ConversationMessage,
    DebateResponse,
    MessageIntent,
    MultiPerspectiveResponse,
    NoPersonaResponse,
    Persona,
    Perspective,
    Project,
    Rebuttal,
    ResponsePayload,
    SenderType,
    SingleResponse,
    Synthesis,
    TranscriptEntry,
    extract_json,
    string_list,
)
from .short_term import ShortTermMemoryManager
from .storage import MemoryStore

logger = logging.getLogger(__name__)

NoMatchPolicy = Callable[[str, str], ResponsePayload]
Pair = FrozenSet[str]

_WORD = re.compile(r"[a-z0-9']+")


@dataclass
class OrchestratorPolicy:
    """Tunable limits for a single turn."""

    call_timeout: float = 45.0
    max_parallel_calls: int = 4
    debate_rounds: int = 2
    similarity_threshold: float = 0.35
    summarize_in_background: bool = True

    def __post_init__(self) -> None:
        if self.debate_rounds < 1:
            raise ValueError("debate_rounds must be at least 1")
        if self.max_parallel_calls < 1:
            raise ValueError("max_parallel_calls must be at least 1")


@dataclass
class Turn:
    """Everything loaded once per inbound message and shared by every call."""

    project_id: str
    user_id: str
    text: str
    conversation: Conversation
    project: Optional[Project]
    personas: List[Persona]
    medium_term: str = ""
    short_term: str = ""


def word_overlap(left: str, right: str) -> float:
    """Jaccard similarity of the word sets of two texts."""

    a = set(_WORD.findall(left.lower()))
    b = set(_WORD.findall(right.lower()))
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


class PersonaOrchestrator:
    """Per-message state machine: Routing, Single/Multi, ConflictCheck, Direct/Debate.

    Holds no conversational state between calls; everything durable goes
    through the store and the two memory managers.
    """

    def __init__(
        self,
        store: MemoryStore,
        llm_client: Any,
        *,
        short_term: Optional[ShortTermMemoryManager] = None,
        medium_term: Optional[MediumTermMemoryManager] = None,
        composer: Optional[PromptComposer] = None,
        policy: Optional[OrchestratorPolicy] = None,
        no_match_policy: Optional[NoMatchPolicy] = None,
    ) -> None:
        self.store = store
        self.llm_client = llm_client
        self.short_term = short_term or ShortTermMemoryManager(store=store, llm_client=llm_client)
        self.medium_term = medium_term or MediumTermMemoryManager(store=store)
        self.composer = composer or PromptComposer()
        self.policy = policy or OrchestratorPolicy()
        self.no_match_policy = no_match_policy
        self._summary_pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def handle_user_message(
        self,
        project_id: str,
        user_id: str,
        text: str,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> ResponsePayload:
        text = (text or "").strip()
        if not text:
            raise ValueError("Message text must not be empty")

        personas = self.store.list_personas(project_id)
        if not personas:
            logger.info("Project %s has no active personas", project_id)
            return self._no_match(project_id, text, "This project has no active personas")

        turn = self._load_turn(project_id, user_id, text, personas)
        self._check_cancel(cancel)

        selected = self.route(turn)
        self._check_cancel(cancel)
        if not selected:
            return self._no_match(project_id, text, "No persona matched this message")
        if len(selected) == 1:
            return self.respond_direct(turn, selected[0])
        return self._multi(turn, selected, cancel)

    def conversation_for(self, project_id: str, user_id: str) -> Conversation:
        return self.store.get_or_create_conversation(project_id, user_id)

    def _load_turn(self, project_id: str, user_id: str, text: str, personas: List[Persona]) -> Turn:
        conversation = self.store.get_or_create_conversation(project_id, user_id)
        memories = self.medium_term.get_memories(project_id)
        context = self.short_term.get_context(conversation.id)
        return Turn(
            project_id=project_id,
            user_id=user_id,
            text=text,
            conversation=conversation,
            project=self.store.get_project(project_id),
            personas=personas,
            medium_term=self.medium_term.format_for_prompt(memories),
            short_term=self.short_term.format_for_prompt(context),
        )

    def _no_match(self, project_id: str, text: str, reason: str) -> ResponsePayload:
        if self.no_match_policy is not None:
            return self.no_match_policy(project_id, text)
        return NoPersonaResponse(reason=reason, text=NO_PERSONA_TEXT)

    @staticmethod
    def _check_cancel(cancel: Optional[threading.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise TurnCancelled()

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------
    def route(self, turn: Turn) -> List[Persona]:
        """Relevant personas for the turn, in the order the model listed them."""

        if len(turn.personas) == 1:
            return list(turn.personas)

        payload = {
            "message": turn.text,
            "personas": [
                {
                    "id": persona.id,
                    "display_name": persona.display_name,
                    "archetype": persona.archetype.value,
                    "specialization": persona.specialization,
                    "focus_area": persona.focus_area,
                    "primary_focus": persona.primary_focus,
                    "defer_to": persona.defer_to,
                }
                for persona in turn.personas
            ],
        }
        try:
            raw = self.llm_client.complete(
                neutral_request(ROUTING_PROMPT, payload),
                {"purpose": "route", "temperature": 0.0},
            )
        except RoundtableError as exc:
            logger.warning("Routing failed for project %s: %s", turn.project_id, exc)
            return []

        parsed = extract_json(raw)
        if not isinstance(parsed, Mapping):
            logger.warning("Routing returned malformed output for project %s: %s", turn.project_id, raw)
            return []

        by_id = {persona.id: persona for persona in turn.personas}
        selected: List[Persona] = []
        for persona_id in string_list(parsed.get("persona_ids")):
            persona = by_id.get(persona_id)
            if persona is None:
                logger.debug("Routing named unknown persona %s", persona_id)
            elif persona not in selected:
                selected.append(persona)
        return selected

    # ------------------------------------------------------------------
    # Direct reply
    # ------------------------------------------------------------------
    def respond_direct(self, turn: Turn, persona: Persona) -> SingleResponse:
        segments = self.composer.compose(
            persona,
            turn.text,
            project=turn.project,
            medium_term=turn.medium_term,
            short_term=turn.short_term,
        )
        try:
            text = self.llm_client.complete(segments, {"purpose": "reply"}).strip()
            if not text:
                raise ModelMalformedOutput("Empty reply")
        except RoundtableError as exc:
            logger.warning("Reply from persona %s failed: %s", persona.id, exc)
            return SingleResponse(
                text=FALLBACK_REPLY_TEXT,
                persona_id=persona.id,
                display_name=persona.display_name,
                degraded=True,
            )
        return SingleResponse(text=text, persona_id=persona.id, display_name=persona.display_name)

    # ------------------------------------------------------------------
    # Conflict check
    # ------------------------------------------------------------------
    def _multi(
        self, turn: Turn, selected: List[Persona], cancel: Optional[threading.Event]
    ) -> ResponsePayload:
        perspectives = self.gather_perspectives(turn, selected, cancel)
        if not perspectives:
            logger.warning("No perspectives survived for project %s", turn.project_id)
            return SingleResponse(text=FALLBACK_REPLY_TEXT, degraded=True)
        if len(perspectives) == 1:
            return MultiPerspectiveResponse(
                perspectives=perspectives,
                degraded=True,
                reason="Only one advisor was able to respond",
            )

        self._check_cancel(cancel)
        verdict, oppositions = self.classify(turn, perspectives)
        if verdict is Compatibility.COMPATIBLE:
            return MultiPerspectiveResponse(perspectives=perspectives)

        self._check_cancel(cancel)
        return self.debate(turn, selected, perspectives, oppositions, cancel)

    def gather_perspectives(
        self,
        turn: Turn,
        selected: Sequence[Persona],
        cancel: Optional[threading.Event] = None,
    ) -> List[Perspective]:
        calls = {persona.id: partial(self._perspective, turn, persona) for persona in selected}
        settled = gather_settled(
            calls,
            timeout=self.policy.call_timeout,
            max_workers=self.policy.max_parallel_calls,
            cancel=cancel,
        )
        self._check_cancel(cancel)

        perspectives: List[Perspective] = []
        for persona in selected:
            outcome = settled[persona.id]
            if outcome.ok:
                perspectives.append(outcome.value)
            else:
                logger.warning("Dropping perspective from %s: %s", persona.id, outcome.error)
        return perspectives

    def _perspective(self, turn: Turn, persona: Persona) -> Perspective:
        segments = self.composer.compose(
            persona,
            turn.text,
            project=turn.project,
            medium_term=turn.medium_term,
            short_term=turn.short_term,
            task=PERSPECTIVE_TASK,
        )
        raw = self.llm_client.complete(segments, {"purpose": "perspective"})
        parsed = extract_json(raw)
        if not isinstance(parsed, Mapping) or not str(parsed.get("position") or "").strip():
            raise ModelMalformedOutput("Perspective missing a position", raw=raw)
        return Perspective(
            persona_id=persona.id,
            display_name=persona.display_name,
            position=str(parsed["position"]).strip(),
            rationale=str(parsed.get("rationale") or "").strip(),
            confidence=_confidence(parsed.get("confidence")),
        )

    def classify(
        self, turn: Turn, perspectives: Sequence[Perspective]
    ) -> Tuple[Compatibility, Set[Pair]]:
        """Compatible or Conflicting, plus the opposing persona pairs.

        A failed call falls back to word overlap between positions; an
        unreadable verdict counts as Conflicting.
        """

        ids = {item.persona_id for item in perspectives}
        payload = {
            "message": turn.text,
            "perspectives": [
                {
                    "persona_id": item.persona_id,
                    "display_name": item.display_name,
                    "position": item.position,
                    "rationale": item.rationale,
                }
                for item in perspectives
            ],
        }
        try:
            raw = self.llm_client.complete(
                neutral_request(CLASSIFICATION_PROMPT, payload),
                {"purpose": "classify", "temperature": 0.0},
            )
        except RoundtableError as exc:
            logger.warning("Classification failed (%s); using word-overlap heuristic", exc)
            return self._classify_by_overlap(perspectives)

        parsed = extract_json(raw)
        verdict = str(parsed.get("verdict") or "").strip().lower() if isinstance(parsed, Mapping) else ""
        if verdict == Compatibility.COMPATIBLE.value:
            return Compatibility.COMPATIBLE, set()
        if verdict != Compatibility.CONFLICTING.value:
            logger.warning("Unreadable classification verdict, treating as conflicting: %s", raw)
            return Compatibility.CONFLICTING, _all_pairs(ids)

        raw_pairs = parsed.get("oppositions")
        pairs: Set[Pair] = set()
        for item in raw_pairs if isinstance(raw_pairs, list) else []:
            names = string_list(item)
            if len(names) == 2 and names[0] != names[1] and set(names) <= ids:
                pairs.add(frozenset(names))
        return Compatibility.CONFLICTING, pairs or _all_pairs(ids)

    def _classify_by_overlap(self, perspectives: Sequence[Perspective]) -> Tuple[Compatibility, Set[Pair]]:
        pairs: Set[Pair] = set()
        for left, right in itertools.combinations(perspectives, 2):
            if word_overlap(left.position, right.position) < self.policy.similarity_threshold:
                pairs.add(frozenset((left.persona_id, right.persona_id)))
        if pairs:
            return Compatibility.CONFLICTING, pairs
        return Compatibility.COMPATIBLE, set()

    # ------------------------------------------------------------------
    # Debate
    # ------------------------------------------------------------------
    def debate(
        self,
        turn: Turn,
        selected: Sequence[Persona],
        perspectives: List[Perspective],
        oppositions: Set[Pair],
        cancel: Optional[threading.Event] = None,
    ) -> ResponsePayload:
        transcript = [
            TranscriptEntry(
                round=1,
                persona_id=item.persona_id,
                display_name=item.display_name,
                intent=MessageIntent.SUGGESTION,
                content=_statement(item),
            )
            for item in perspectives
        ]
        speaking = {item.persona_id for item in perspectives}
        opponents: Dict[str, List[str]] = {
            persona.id: [
                other.id
                for other in selected
                if other.id != persona.id
                and other.id in speaking
                and frozenset((persona.id, other.id)) in oppositions
            ]
            for persona in selected
            if persona.id in speaking
        }
        debaters = [persona for persona in selected if opponents.get(persona.id)]
        names = {persona.id: persona.display_name for persona in selected}

        rebuttals: List[Rebuttal] = []
        for round_no in range(2, self.policy.debate_rounds + 1):
            self._check_cancel(cancel)
            snapshot = list(transcript)
            calls = {
                persona.id: partial(
                    self._rebuttal,
                    turn,
                    persona,
                    round_no,
                    snapshot,
                    [names[other] for other in opponents[persona.id]],
                    opponents[persona.id],
                )
                for persona in debaters
            }
            settled = gather_settled(
                calls,
                timeout=self.policy.call_timeout,
                max_workers=self.policy.max_parallel_calls,
                cancel=cancel,
            )
            self._check_cancel(cancel)
            failed = [key for key, outcome in settled.items() if not outcome.ok]
            if failed:
                logger.warning(
                    "Debate round %s aborted for project %s; failed: %s",
                    round_no,
                    turn.project_id,
                    ", ".join(failed),
                )
                return MultiPerspectiveResponse(
                    perspectives=perspectives,
                    degraded=True,
                    reason="The advisors could not finish debating; here is what each of them thinks",
                )
            for persona in debaters:
                rebuttal: Rebuttal = settled[persona.id].value
                rebuttals.append(rebuttal)
                transcript.append(
                    TranscriptEntry(
                        round=round_no,
                        persona_id=rebuttal.persona_id,
                        display_name=rebuttal.display_name,
                        intent=MessageIntent.OBJECTION,
                        content=rebuttal.content,
                    )
                )

        self._check_cancel(cancel)
        try:
            synthesis: Optional[Synthesis] = self.synthesize(turn, transcript)
        except RoundtableError as exc:
            logger.warning("Synthesis failed for project %s: %s", turn.project_id, exc)
            synthesis = None
        return DebateResponse(
            perspectives=perspectives,
            rebuttals=rebuttals,
            transcript=transcript,
            synthesis=synthesis,
        )

    def _rebuttal(
        self,
        turn: Turn,
        persona: Persona,
        round_no: int,
        transcript: Sequence[TranscriptEntry],
        opponent_names: Sequence[str],
        opponent_ids: Sequence[str],
    ) -> Rebuttal:
        task = "\n\n".join(
            [
                REBUTTAL_TASK.format(round=round_no),
                "You disagree with: " + ", ".join(opponent_names),
                "DEBATE SO FAR:\n" + render_transcript(transcript),
            ]
        )
        segments = self.composer.compose(
            persona,
            turn.text,
            project=turn.project,
            medium_term=turn.medium_term,
            short_term=turn.short_term,
            task=task,
        )
        text = self.llm_client.complete(segments, {"purpose": "rebuttal"}).strip()
        if not text:
            raise ModelMalformedOutput("Empty rebuttal")
        return Rebuttal(
            persona_id=persona.id,
            display_name=persona.display_name,
            content=text,
            round=round_no,
            addressed_to=list(opponent_ids),
        )

    def synthesize(self, turn: Turn, transcript: Sequence[TranscriptEntry]) -> Synthesis:
        payload = {
            "message": turn.text,
            "transcript": [entry.to_payload() for entry in transcript],
        }
        raw = self.llm_client.complete(
            neutral_request(SYNTHESIS_PROMPT, payload),
            {"purpose": "synthesis", "temperature": 0.2},
        )
        parsed = extract_json(raw)
        if not isinstance(parsed, Mapping):
            raise ModelMalformedOutput("Synthesis was not JSON", raw=raw)
        summary = str(parsed.get("summary") or "").strip()
        recommendation = str(parsed.get("recommendation") or "").strip()
        if not summary or not recommendation:
            raise ModelMalformedOutput("Synthesis missing summary or recommendation", raw=raw)
        return Synthesis(
            summary=summary,
            recommendation=recommendation,
            rationale=str(parsed.get("rationale") or "").strip(),
            tradeoffs=string_list(parsed.get("tradeoffs")),
        )

    # ------------------------------------------------------------------
    # Persistence of finished turns
    # ------------------------------------------------------------------
    def record_turn(
        self,
        conversation_id: str,
        user_id: str,
        text: str,
        payload: ResponsePayload,
    ) -> List[ConversationMessage]:
        """Append the user message and the rendered payload, then refresh the summary."""

        user_message = self.store.append_message(
            ConversationMessage(
                conversation_id=conversation_id,
                sender_id=user_id,
                sender_type=SenderType.USER,
                content=text,
                intent=MessageIntent.QUESTION if "?" in text else None,
            )
        )
        stored = [user_message]
        for message in _payload_messages(conversation_id, user_message.id, payload):
            stored.append(self.store.append_message(message))
        self.schedule_summary(conversation_id)
        return stored

    def schedule_summary(self, conversation_id: str) -> Optional[Future]:
        if not self.policy.summarize_in_background:
            self.refresh_summary(conversation_id)
            return None
        with self._pool_lock:
            if self._summary_pool is None:
                self._summary_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="summary")
            return self._summary_pool.submit(self.refresh_summary, conversation_id)

    def refresh_summary(self, conversation_id: str) -> Optional[str]:
        try:
            return self.short_term.update_summary_if_needed(conversation_id)
        except RoundtableError as exc:
            logger.warning("Summary refresh failed for conversation %s: %s", conversation_id, exc)
            return None

    def close(self) -> None:
        with self._pool_lock:
            if self._summary_pool is not None:
                self._summary_pool.shutdown(wait=True)
                self._summary_pool = None


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _confidence(value: object) -> float:
    try:
        score = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.5
    return max(0.0, min(1.0, score))


def _all_pairs(ids: Set[str]) -> Set[Pair]:
    return {frozenset(pair) for pair in itertools.combinations(sorted(ids), 2)}


def _statement(perspective: Perspective) -> str:
    if perspective.rationale:
        return f"{perspective.position}\nRationale: {perspective.rationale}"
    return perspective.position


def render_transcript(transcript: Sequence[TranscriptEntry]) -> str:
    return "\n\n".join(
        f"[Round {entry.round}] {entry.display_name} ({entry.intent.value}): {entry.content}"
        for entry in transcript
    )


def _payload_messages(
    conversation_id: str, reply_to: str, payload: ResponsePayload
) -> List[ConversationMessage]:
    def persona_message(persona_id: Optional[str], name: Optional[str], content: str, **extra: Any) -> ConversationMessage:
        return ConversationMessage(
            conversation_id=conversation_id,
            sender_id=persona_id or "system",
            sender_type=SenderType.PERSONA if persona_id else SenderType.SYSTEM,
            sender_name=name,
            content=content,
            reply_to=reply_to,
            **extra,
        )

    if isinstance(payload, SingleResponse):
        return [persona_message(payload.persona_id, payload.display_name, payload.text)]

    if isinstance(payload, NoPersonaResponse):
        return [persona_message(None, None, payload.text or payload.reason)]

    messages = [
        persona_message(
            item.persona_id,
            item.display_name,
            _statement(item),
            intent=MessageIntent.SUGGESTION,
            confidence=item.confidence,
        )
        for item in payload.perspectives
    ]
    if isinstance(payload, DebateResponse):
        messages.extend(
            persona_message(item.persona_id, item.display_name, item.content, intent=MessageIntent.OBJECTION)
            for item in payload.rebuttals
        )
        if payload.synthesis is not None:
            synthesis = payload.synthesis
            lines = [synthesis.summary, f"Recommendation: {synthesis.recommendation}"]
            if synthesis.tradeoffs:
                lines.append("Tradeoffs: " + "; ".join(synthesis.tradeoffs))
            messages.append(persona_message(None, "Synthesis", "\n".join(lines), intent=MessageIntent.SYNTHESIS))
    return messages


__all__ = [
    "NoMatchPolicy",
    "OrchestratorPolicy",
    "PersonaOrchestrator",
    "Turn",
    "render_transcript",
    "word_overlap",
]
