"""Assemble a persona's full instruction context as ordered prompt segments."""

from __future__ import annotations

import json
import logging
from typing import List, Mapping, Optional

from .archetypes import get_profile
from .prompts import PLATITUDES_PROHIBITION, PREAMBLE_PROMPT
from .schemas import CommunicationPreferences, Persona, Project, PromptSegment

logger = logging.getLogger(__name__)

# fixed block order; memory and the user message sit closest to generation
BLOCK_ORDER = (
    "preamble",
    "archetype",
    "specialization",
    "communication",
    "project",
    "medium_term_memory",
    "short_term_memory",
    "task",
    "user_message",
)

TONE_DIRECTIVES: Mapping[str, str] = {
    "formal": "Use a formal, professional tone.",
    "casual": "Keep the tone casual and conversational.",
    "direct": "Be direct and get to the point; skip pleasantries.",
    "empathetic": "Be warm and empathetic; acknowledge how the user is feeling before advising.",
}

VERBOSITY_DIRECTIVES: Mapping[str, str] = {
    "concise": "Keep responses concise: a few sentences or a short list.",
    "detailed": "Give detailed, thorough explanations when they help.",
}


def default_preferences(persona: Persona) -> CommunicationPreferences:
    return CommunicationPreferences(
        tone=get_profile(persona.archetype).default_tone,
        verbosity="concise",
        emoji=False,
        platitudes=True,
    )


class PromptComposer:
    """Build the request for one persona and one turn.

    ``compose`` is pure: everything it renders is passed in, and the output
    is a list of :class:`PromptSegment` in :data:`BLOCK_ORDER`.  Empty blocks
    are skipped rather than rendered as headings with no content.
    """

    def __init__(self, preamble: str = PREAMBLE_PROMPT) -> None:
        self.preamble = preamble

    def compose(
        self,
        persona: Persona,
        user_message: str,
        *,
        project: Optional[Project] = None,
        medium_term: str = "",
        short_term: str = "",
        task: Optional[str] = None,
    ) -> List[PromptSegment]:
        blocks = {
            "preamble": ("system", self.preamble),
            "archetype": ("system", self.archetype_block(persona)),
            "specialization": ("system", self.specialization_block(persona)),
            "communication": ("system", self.communication_block(persona)),
            "project": ("system", self.project_block(project)),
            "medium_term_memory": ("user", _context("Project Memory", medium_term)),
            "short_term_memory": ("user", _context("Conversation History", short_term)),
            "task": ("system", (task or "").strip()),
            "user_message": ("user", user_message),
        }
        segments: List[PromptSegment] = []
        for name in BLOCK_ORDER:
            role, content = blocks[name]
            if content:
                segments.append(PromptSegment(role, content, block=name))
        logger.debug("Composed %s segments for persona %s", len(segments), persona.id)
        return segments

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------
    @staticmethod
    def archetype_block(persona: Persona) -> str:
        profile = get_profile(persona.archetype)
        return "\n".join(
            [
                f"You are {persona.display_name}.",
                profile.behavior,
                f"Voice: {persona.voice}",
                f"Intervention style: {persona.intervention_style}",
                f"Focus area: {persona.focus_area}",
            ]
        )

    @staticmethod
    def specialization_block(persona: Persona) -> str:
        lines = [f"SPECIALIZATION: {persona.specialization}"]
        if persona.domain_knowledge:
            lines.append("Domain knowledge: " + ", ".join(persona.domain_knowledge))
        if persona.domain_metrics:
            lines.append("Metrics you track: " + ", ".join(persona.domain_metrics))
        if persona.primary_focus:
            lines.append(f"Primary focus: {persona.primary_focus}")
        if persona.custom_instructions:
            lines.append("")
            lines.append("CUSTOM INSTRUCTIONS FROM THE USER:")
            lines.append(persona.custom_instructions)
        return "\n".join(lines)

    @staticmethod
    def communication_block(persona: Persona) -> str:
        defaults = default_preferences(persona)
        prefs = persona.communication_preferences or defaults
        tone = prefs.tone or defaults.tone
        verbosity = prefs.verbosity or defaults.verbosity
        emoji = defaults.emoji if prefs.emoji is None else prefs.emoji
        platitudes = defaults.platitudes if prefs.platitudes is None else prefs.platitudes

        lines = ["COMMUNICATION STYLE:"]
        lines.append(TONE_DIRECTIVES.get(tone or "", TONE_DIRECTIVES["formal"]))
        lines.append(VERBOSITY_DIRECTIVES.get(verbosity or "", VERBOSITY_DIRECTIVES["concise"]))
        lines.append("Emoji are fine where they add clarity." if emoji else "Do not use emoji.")
        if not platitudes:
            lines.append(PLATITUDES_PROHIBITION)
        return "\n".join(lines)

    @staticmethod
    def project_block(project: Optional[Project]) -> str:
        if project is None:
            return ""
        lines = ["PROJECT CONTEXT:", f"Title: {project.title}"]
        if project.description:
            lines.append(f"Description: {project.description}")
        if project.outcome:
            lines.append(f"Goal: {project.outcome}")
        lines.append(f"Status: {project.status}")
        if project.completion_type:
            lines.append(f"Completion Type: {project.completion_type}")
        if project.health_score is not None:
            lines.append(f"Health Score: {round(project.health_score)}/100")
        return "\n".join(lines)


def _context(label: str, text: str) -> str:
    text = (text or "").strip()
    return f"[CONTEXT - {label}]\n{text}" if text else ""


def neutral_request(instruction: str, payload: Mapping[str, object]) -> List[PromptSegment]:
    """Segments for a call made under the neutral system voice, not a persona."""

    return [
        PromptSegment("system", instruction, block="instruction"),
        PromptSegment("user", json.dumps(payload, ensure_ascii=False), block="payload"),
    ]


__all__ = ["BLOCK_ORDER", "PromptComposer", "default_preferences", "neutral_request"]
