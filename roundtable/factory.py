"""Persona creation, explicit edits and lifecycle."""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import Any, List, Mapping, Optional, Tuple

from .archetypes import Archetype, get_specialization
from .composer import neutral_request
from .errors import ModelMalformedOutput, NotFound
from .prompts import PERSONA_EXTRACTION_PROMPT
from .schemas import CommunicationPreferences, Persona, extract_json, string_list
from .storage import MemoryStore

logger = logging.getLogger(__name__)

# checked in order; the first match wins
KEYWORD_RULES: Tuple[Tuple[re.Pattern, Archetype, str], ...] = (
    (
        re.compile(r"\b(lose weight|get fit|exercise|workout|health|diet|nutrition)\b"),
        Archetype.COACH,
        "health",
    ),
    (
        re.compile(r"\b(college|university|school|study|test|exam|sat|gpa|application)\b"),
        Archetype.ADVISOR,
        "academic",
    ),
    (re.compile(r"\b(launch|startup|business|product|mvp|market)\b"), Archetype.STRATEGIST, "launch"),
    (re.compile(r"\b(write|novel|book|creative|art|music|compose)\b"), Archetype.PARTNER, "creative"),
    (re.compile(r"\b(software|app|code|develop|agile|sprint|scrum)\b"), Archetype.MANAGER, "scrum"),
    (re.compile(r"\b(event|wedding|party|conference|celebration)\b"), Archetype.COORDINATOR, "event"),
)
DEFAULT_SUGGESTION: Tuple[Archetype, str] = (Archetype.COACH, "skill")

EDITABLE_FIELDS = frozenset(
    {
        "display_name",
        "voice",
        "intervention_style",
        "focus_area",
        "domain_knowledge",
        "domain_metrics",
        "custom_instructions",
        "communication_preferences",
        "collaborators",
        "primary_focus",
        "defer_to",
    }
)


def suggest_from_keywords(description: str) -> Tuple[Archetype, str]:
    """Rule-based archetype/specialization guess for a free-text goal."""

    text = (description or "").lower()
    for pattern, archetype, specialization in KEYWORD_RULES:
        if pattern.search(text):
            return archetype, specialization
    return DEFAULT_SUGGESTION


def _strict_archetype(value: object) -> Archetype:
    text = str(value or "").strip().lower()
    for member in Archetype:
        if member.value == text:
            return member
    raise ValueError(f"Unknown archetype: {value!r}")


class PersonaFactory:
    """Create personas from presets or free text and apply explicit user edits."""

    def __init__(self, store: MemoryStore, llm_client: Any) -> None:
        self.store = store
        self.llm_client = llm_client

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_preset_persona(
        self,
        project_id: str,
        user_id: str,
        archetype: Archetype | str,
        specialization: str,
        *,
        display_name: Optional[str] = None,
        custom_instructions: Optional[str] = None,
        communication_preferences: Optional[Mapping[str, Any]] = None,
    ) -> Persona:
        resolved = _strict_archetype(archetype)
        preset = get_specialization(resolved, specialization)
        if preset is None:
            raise ValueError(f"Unknown specialization {specialization!r} for archetype {resolved.value}")
        persona = Persona(
            project_id=project_id,
            user_id=user_id,
            archetype=resolved,
            specialization=preset.name,
            display_name=display_name or preset.display_name,
            domain_knowledge=list(preset.domain_knowledge),
            domain_metrics=list(preset.domain_metrics),
            custom_instructions=custom_instructions,
            communication_preferences=CommunicationPreferences.from_payload(communication_preferences),
        )
        self.store.save_persona(persona)
        logger.info("Created %s persona %s for project %s", resolved.value, persona.id, project_id)
        return persona

    def create_custom_persona(self, project_id: str, user_id: str, description: str) -> Persona:
        """Synthesize a persona from the user's description with one model call.

        The description is always kept verbatim as ``custom_instructions``.
        Unparseable extraction falls back to a keyword guess; an unreachable
        model propagates as :class:`ModelUnavailable`.
        """

        description = (description or "").strip()
        if not description:
            raise ValueError("Persona description must not be empty")

        extracted: Optional[Mapping[str, Any]] = None
        try:
            raw = self.llm_client.complete(
                neutral_request(PERSONA_EXTRACTION_PROMPT, {"description": description}),
                {"purpose": "persona_extract", "temperature": 0.7},
            )
            parsed = extract_json(raw)
            if isinstance(parsed, Mapping):
                extracted = parsed
            else:
                logger.warning("Persona extraction returned malformed output: %s", raw)
        except ModelMalformedOutput as exc:
            logger.warning("Persona extraction failed: %s", exc)

        if extracted is None:
            persona = self._from_keywords(project_id, user_id, description)
        else:
            persona = self._from_extraction(project_id, user_id, description, extracted)
        self.store.save_persona(persona)
        logger.info(
            "Created custom persona %s (%s/%s) for project %s",
            persona.id,
            persona.archetype.value,
            persona.specialization,
            project_id,
        )
        return persona

    def _from_keywords(self, project_id: str, user_id: str, description: str) -> Persona:
        archetype, specialization = suggest_from_keywords(description)
        preset = get_specialization(archetype, specialization)
        if preset is None:
            raise ValueError(f"No preset for suggested {archetype.value}/{specialization}")
        return Persona(
            project_id=project_id,
            user_id=user_id,
            archetype=archetype,
            specialization=preset.name,
            display_name=preset.display_name,
            domain_knowledge=list(preset.domain_knowledge),
            domain_metrics=list(preset.domain_metrics),
            custom_instructions=description,
        )

    def _from_extraction(
        self,
        project_id: str,
        user_id: str,
        description: str,
        data: Mapping[str, Any],
    ) -> Persona:
        archetype = Archetype.parse(data.get("archetype"))
        specialization = str(data.get("specialization") or "").strip() or "general"
        preset = get_specialization(archetype, specialization)

        knowledge = string_list(data.get("domain_knowledge"))
        metrics = string_list(data.get("domain_metrics"))
        display_name = str(data.get("display_name") or "").strip()
        if preset is not None:
            knowledge = knowledge or list(preset.domain_knowledge)
            metrics = metrics or list(preset.domain_metrics)
            display_name = display_name or preset.display_name
        if not display_name:
            display_name = f"{specialization.title()} {archetype.value.title()}"

        prefs = data.get("communication_preferences")
        return Persona(
            project_id=project_id,
            user_id=user_id,
            archetype=archetype,
            specialization=specialization,
            display_name=display_name,
            voice=data.get("voice"),
            intervention_style=data.get("intervention_style"),
            focus_area=data.get("focus_area"),
            domain_knowledge=knowledge,
            domain_metrics=metrics,
            custom_instructions=description,
            communication_preferences=CommunicationPreferences.from_payload(
                prefs if isinstance(prefs, Mapping) else None
            ),
        )

    # ------------------------------------------------------------------
    # Edits and lifecycle
    # ------------------------------------------------------------------
    def get_persona(self, persona_id: str) -> Persona:
        persona = self.store.get_persona(persona_id)
        if persona is None:
            raise NotFound("Persona", persona_id)
        return persona

    def update_persona(self, persona_id: str, **changes: Any) -> Persona:
        """Apply explicit user edits to behaviour, preferences or knowledge."""

        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        persona = self.get_persona(persona_id)

        if "communication_preferences" in changes:
            prefs = changes["communication_preferences"]
            if prefs is None or isinstance(prefs, Mapping):
                changes["communication_preferences"] = CommunicationPreferences.from_payload(prefs)
        for key in ("domain_knowledge", "domain_metrics", "collaborators"):
            if key in changes:
                changes[key] = string_list(changes[key])
        if "display_name" in changes and not str(changes["display_name"] or "").strip():
            raise ValueError("display_name must not be empty")

        updated = replace(persona, **changes)
        self.store.save_persona(updated)
        logger.info("Updated persona %s: %s", persona_id, ", ".join(sorted(changes)))
        return updated

    def deactivate_persona(self, persona_id: str) -> Persona:
        return self._set_active(persona_id, False)

    def reactivate_persona(self, persona_id: str) -> Persona:
        return self._set_active(persona_id, True)

    def _set_active(self, persona_id: str, active: bool) -> Persona:
        persona = self.get_persona(persona_id)
        if persona.active == active:
            return persona
        updated = replace(persona, active=active)
        self.store.save_persona(updated)
        logger.info("Persona %s %s", persona_id, "reactivated" if active else "deactivated")
        return updated

    def list_personas(self, project_id: str, *, include_inactive: bool = False) -> List[Persona]:
        return self.store.list_personas(project_id, include_inactive=include_inactive)


__all__ = ["EDITABLE_FIELDS", "KEYWORD_RULES", "PersonaFactory", "suggest_from_keywords"]
