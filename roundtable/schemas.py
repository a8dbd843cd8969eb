"""Typed data structures used by the persona orchestration core."""

from __future__ import annotations

import json
import math
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .archetypes import (
    FOCUS_AREAS,
    INTERVENTION_STYLES,
    TONES,
    VERBOSITY_LEVELS,
    VOICES,
    Archetype,
    get_profile,
    pick,
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_utc_iso(value: str) -> str:
    """Normalise an ISO-8601 timestamp to UTC; naive values are taken as UTC."""

    text = (value or "").strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(f"Invalid ISO-8601 timestamp: {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


_TRUE = {"true", "yes", "1"}
_FALSE = {"false", "no", "0"}


def parse_flag(value: object) -> Optional[bool]:
    """Booleans pass through; yes/no style strings are mapped; anything else is unset."""

    if isinstance(value, bool):
        return value
    text = str(value).strip().lower() if isinstance(value, (str, int)) else ""
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    return None


def _new_id() -> str:
    return str(uuid.uuid4())


class MemoryType(str, Enum):
    FACT = "fact"
    DECISION = "decision"
    BLOCKER = "blocker"
    PREFERENCE = "preference"
    INSIGHT = "insight"

    @classmethod
    def parse(cls, value: object) -> "MemoryType":
        if isinstance(value, MemoryType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(member.value for member in cls)
            raise ValueError(f"Invalid memory type: {value!r}. Must be one of: {valid}") from None


class SenderType(str, Enum):
    USER = "user"
    PERSONA = "persona"
    SYSTEM = "system"


class MessageIntent(str, Enum):
    QUESTION = "question"
    SUGGESTION = "suggestion"
    OBJECTION = "objection"
    AGREEMENT = "agreement"
    DECISION = "decision"
    SYNTHESIS = "synthesis"


class Compatibility(str, Enum):
    COMPATIBLE = "compatible"
    CONFLICTING = "conflicting"


# ----------------------------------------------------------------------
# Personas and projects
# ----------------------------------------------------------------------
@dataclass
class CommunicationPreferences:
    """How a persona should phrase its replies."""

    tone: Optional[str] = None
    verbosity: Optional[str] = None
    emoji: Optional[bool] = None
    platitudes: Optional[bool] = None

    @classmethod
    def from_payload(cls, data: Optional[Mapping[str, Any]]) -> Optional["CommunicationPreferences"]:
        if not data:
            return None
        tone = str(data.get("tone") or "").strip().lower() or None
        verbosity = str(data.get("verbosity") or "").strip().lower() or None
        emoji = data.get("emoji", data.get("emoji_allowed"))
        platitudes = data.get("platitudes", data.get("platitudes_allowed"))
        return cls(
            tone=tone if tone in TONES else None,
            verbosity=verbosity if verbosity in VERBOSITY_LEVELS else None,
            emoji=parse_flag(emoji),
            platitudes=parse_flag(platitudes),
        )

    def to_payload(self) -> Mapping[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass
class Persona:
    """A named behavioural configuration bound to exactly one project."""

    project_id: str
    user_id: str
    archetype: Archetype
    specialization: str
    display_name: str
    voice: Optional[str] = None
    intervention_style: Optional[str] = None
    focus_area: Optional[str] = None
    domain_knowledge: List[str] = field(default_factory=list)
    domain_metrics: List[str] = field(default_factory=list)
    custom_instructions: Optional[str] = None
    communication_preferences: Optional[CommunicationPreferences] = None
    collaborators: List[str] = field(default_factory=list)
    primary_focus: Optional[str] = None
    defer_to: Dict[str, str] = field(default_factory=dict)
    active: bool = True
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.archetype = Archetype.parse(self.archetype)
        profile = get_profile(self.archetype)
        # explicit overrides win; anything unset or unknown takes the archetype default
        self.voice = pick(self.voice, VOICES, profile.voice)
        self.intervention_style = pick(
            self.intervention_style, INTERVENTION_STYLES, profile.intervention_style
        )
        self.focus_area = pick(self.focus_area, FOCUS_AREAS, profile.focus_area)
        self.collaborators = list(dict.fromkeys(c for c in self.collaborators if c and c != self.id))

    def to_payload(self) -> Mapping[str, Any]:
        data = asdict(self)
        data["archetype"] = self.archetype.value
        data["communication_preferences"] = (
            self.communication_preferences.to_payload() if self.communication_preferences else None
        )
        return data


@dataclass
class Project:
    """Project state rendered into persona prompts."""

    id: str
    title: str
    description: Optional[str] = None
    outcome: Optional[str] = None
    status: str = "active"
    completion_type: Optional[str] = None
    health_score: Optional[float] = None

    def to_payload(self) -> Mapping[str, Any]:
        return asdict(self)


# ----------------------------------------------------------------------
# Conversations and memory records
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class Conversation:
    id: str
    project_id: str
    user_id: str
    created_at: str = field(default_factory=utc_now)


@dataclass(frozen=True)
class ConversationMessage:
    """A single immutable entry in a conversation log."""

    conversation_id: str
    sender_id: str
    sender_type: SenderType
    content: str
    sender_name: Optional[str] = None
    intent: Optional[MessageIntent] = None
    confidence: Optional[float] = None
    reply_to: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=utc_now)
    seq: int = 0

    @property
    def label(self) -> str:
        return self.sender_name or self.sender_id

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "sender_type": self.sender_type.value,
            "sender_name": self.sender_name,
            "content": self.content,
            "intent": self.intent.value if self.intent else None,
            "confidence": self.confidence,
            "reply_to": self.reply_to,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class ConversationSummary:
    """Short-term memory state: rolling summary of everything older than the window."""

    conversation_id: str
    summary: Optional[str] = None
    last_summary_at: Optional[str] = None
    message_count_at_summary: int = 0


@dataclass
class ProjectMemory:
    """A durable, importance-ranked medium-term memory record."""

    project_id: str
    memory_type: MemoryType
    key: str
    value: str
    importance: int = 5
    expires_at: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_payload(self) -> Mapping[str, Any]:
        data = asdict(self)
        data["memory_type"] = self.memory_type.value
        return data


@dataclass
class ShortTermContext:
    conversation_id: str
    summary: Optional[str] = None
    recent_messages: List[ConversationMessage] = field(default_factory=list)
    token_estimate: int = 0


# ----------------------------------------------------------------------
# Prompt segments
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class PromptSegment:
    """One ordered instruction block submitted to the language model."""

    role: str
    content: str
    block: str = ""

    def to_message(self) -> Mapping[str, str]:
        return {"role": self.role, "content": self.content}


# ----------------------------------------------------------------------
# Debate artifacts
# ----------------------------------------------------------------------
@dataclass
class Perspective:
    persona_id: str
    display_name: str
    position: str
    rationale: str = ""
    confidence: float = 0.5

    def to_payload(self) -> Mapping[str, Any]:
        return asdict(self)


@dataclass
class Rebuttal:
    persona_id: str
    display_name: str
    content: str
    round: int = 2
    addressed_to: List[str] = field(default_factory=list)

    def to_payload(self) -> Mapping[str, Any]:
        return asdict(self)


@dataclass
class Synthesis:
    summary: str
    recommendation: str
    rationale: str = ""
    tradeoffs: List[str] = field(default_factory=list)

    def to_payload(self) -> Mapping[str, Any]:
        return asdict(self)


@dataclass
class TranscriptEntry:
    round: int
    persona_id: str
    display_name: str
    intent: MessageIntent
    content: str

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "round": self.round,
            "persona_id": self.persona_id,
            "display_name": self.display_name,
            "intent": self.intent.value,
            "content": self.content,
        }


# ----------------------------------------------------------------------
# Response payloads
# ----------------------------------------------------------------------
@dataclass
class SingleResponse:
    kind: ClassVar[str] = "single"

    text: str
    persona_id: Optional[str] = None
    display_name: Optional[str] = None
    degraded: bool = False

    def to_payload(self) -> Mapping[str, Any]:
        return {"kind": self.kind, **asdict(self)}


@dataclass
class MultiPerspectiveResponse:
    kind: ClassVar[str] = "multi_perspective"

    perspectives: List[Perspective] = field(default_factory=list)
    degraded: bool = False
    reason: Optional[str] = None

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "kind": self.kind,
            "perspectives": [item.to_payload() for item in self.perspectives],
            "degraded": self.degraded,
            "reason": self.reason,
        }


@dataclass
class DebateResponse:
    kind: ClassVar[str] = "debate"

    perspectives: List[Perspective] = field(default_factory=list)
    rebuttals: List[Rebuttal] = field(default_factory=list)
    transcript: List[TranscriptEntry] = field(default_factory=list)
    synthesis: Optional[Synthesis] = None
    decision_required: bool = True

    @property
    def recommended_action(self) -> Optional[str]:
        return self.synthesis.recommendation if self.synthesis else None

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "kind": self.kind,
            "perspectives": [item.to_payload() for item in self.perspectives],
            "rebuttals": [item.to_payload() for item in self.rebuttals],
            "transcript": [item.to_payload() for item in self.transcript],
            "synthesis": self.synthesis.to_payload() if self.synthesis else None,
            "decision_required": self.decision_required,
            "recommended_action": self.recommended_action,
        }


@dataclass
class NoPersonaResponse:
    kind: ClassVar[str] = "no_persona"

    reason: str = "No persona matched this message"
    text: Optional[str] = None

    def to_payload(self) -> Mapping[str, Any]:
        return {"kind": self.kind, "reason": self.reason, "text": self.text}


ResponsePayload = Union[SingleResponse, MultiPerspectiveResponse, DebateResponse, NoPersonaResponse]


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def estimate_tokens(text: str | None) -> int:
    """Rough token count: one token per four characters."""

    if not text:
        return 0
    return math.ceil(len(text) / 4)


def extract_json(message: str) -> Optional[Any]:
    """Pull the first JSON object out of a model reply.

    Tolerates fenced code blocks, a leading ``json`` label and chatter around
    the object.  Returns ``None`` when nothing parseable is found.
    """

    sanitized = (message or "").strip()
    if sanitized.startswith("```"):
        sanitized = sanitized[3:]
        if sanitized.lower().startswith("json"):
            sanitized = sanitized[4:]
        sanitized = sanitized.lstrip("\n")
        if sanitized.endswith("```"):
            sanitized = sanitized[:-3]
    elif sanitized.lower().startswith("json"):
        sanitized = sanitized[4:].lstrip(": ")

    try:
        return json.loads(sanitized)
    except json.JSONDecodeError:
        pass

    start = None
    depth = 0
    in_string = False
    escape = False
    for idx, char in enumerate(sanitized):
        if start is None:
            if char == "{":
                start = idx
                depth = 1
        else:
            if in_string:
                if escape:
                    escape = False
                elif char == "\\":
                    escape = True
                elif char == '"':
                    in_string = False
            else:
                if char == '"':
                    in_string = True
                elif char == "{":
                    depth += 1
                elif char == "}":
                    depth -= 1
                    if depth == 0 and start is not None:
                        try:
                            return json.loads(sanitized[start : idx + 1])
                        except json.JSONDecodeError:
                            return None
    return None


def string_list(value: object) -> List[str]:
    """Coerce a model-provided list (or comma separated string) into clean strings."""

    if value is None:
        return []
    if isinstance(value, str):
        items: Iterable[object] = value.split(",")
    elif isinstance(value, Sequence):
        items = value
    else:
        return []
    return [str(item).strip() for item in items if str(item).strip()]


__all__ = [
    "CommunicationPreferences",
    "Compatibility",
    "Conversation",
    "ConversationMessage",
    "ConversationSummary",
    "DebateResponse",
    "MemoryType",
    "MessageIntent",
    "MultiPerspectiveResponse",
    "NoPersonaResponse",
    "Perspective",
    "Persona",
    "Project",
    "ProjectMemory",
    "PromptSegment",
    "Rebuttal",
    "ResponsePayload",
    "SenderType",
    "ShortTermContext",
    "SingleResponse",
    "Synthesis",
    "TranscriptEntry",
    "estimate_tokens",
    "extract_json",
    "parse_flag",
    "string_list",
    "to_utc_iso",
    "utc_now",
]
