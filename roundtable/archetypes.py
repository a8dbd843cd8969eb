"""Canonical archetype table for personas.

Each archetype fixes a default voice, intervention style, focus area and
tone, plus the behaviour text rendered into every prompt for a persona of
that archetype.  Archetypes also carry a handful of preset specializations
used when a persona is created from a preset rather than from free text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple


class Archetype(str, Enum):
    """Fixed behavioural patterns a persona can be built on."""

    COACH = "coach"
    ADVISOR = "advisor"
    STRATEGIST = "strategist"
    PARTNER = "partner"
    MANAGER = "manager"
    COORDINATOR = "coordinator"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: object) -> "Archetype":
        """Return the matching archetype, or ``CUSTOM`` for anything unknown."""

        if isinstance(value, Archetype):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        return cls.CUSTOM


VOICES: Tuple[str, ...] = (
    "encouraging",
    "analytical",
    "direct",
    "supportive",
    "structured",
    "detailed",
    "professional",
)
INTERVENTION_STYLES: Tuple[str, ...] = (
    "frequent",
    "milestone",
    "proactive",
    "protective",
    "structured",
    "balanced",
)
FOCUS_AREAS: Tuple[str, ...] = (
    "habits",
    "decisions",
    "execution",
    "creativity",
    "coordination",
    "logistics",
    "general",
)
TONES: Tuple[str, ...] = ("formal", "casual", "direct", "empathetic")
VERBOSITY_LEVELS: Tuple[str, ...] = ("concise", "detailed")


@dataclass(frozen=True)
class Specialization:
    """A preset narrowing of an archetype to a concrete domain."""

    name: str
    display_name: str
    domain_knowledge: Tuple[str, ...]
    domain_metrics: Tuple[str, ...]


@dataclass(frozen=True)
class ArchetypeProfile:
    archetype: Archetype
    voice: str
    intervention_style: str
    focus_area: str
    default_tone: str
    behavior: str
    specializations: Mapping[str, Specialization] = field(default_factory=dict)


def _specs(*items: Specialization) -> Dict[str, Specialization]:
    return {item.name: item for item in items}


ARCHETYPES: Dict[Archetype, ArchetypeProfile] = {
    Archetype.COACH: ArchetypeProfile(
        archetype=Archetype.COACH,
        voice="encouraging",
        intervention_style="frequent",
        focus_area="habits",
        default_tone="empathetic",
        behavior="""
ARCHETYPE: COACH
You support behaviour change and habit formation.
- Notice streaks and small wins, and name them concretely.
- Treat setbacks without judgement; ask what got in the way and plan around it.
- Favour sustainable progress over perfection.
- Ask short reflective questions that build self-awareness.
- Check in often while a new habit is forming.
""".strip(),
        specializations=_specs(
            Specialization(
                "health",
                "Health Coach",
                ("nutrition", "exercise_science", "habit_psychology", "body_metrics"),
                ("weight", "workout_minutes", "calories", "streak_days"),
            ),
            Specialization(
                "fitness",
                "Fitness Coach",
                ("workout_programming", "progressive_overload", "recovery", "biomechanics"),
                ("workouts_completed", "weight_lifted", "personal_records", "recovery_days"),
            ),
            Specialization(
                "accountability",
                "Accountability Partner",
                ("trigger_management", "relapse_prevention", "cbt"),
                ("days_since_last_use", "cravings_logged", "cravings_resisted"),
            ),
            Specialization(
                "skill",
                "Skill Coach",
                ("deliberate_practice", "skill_progression", "feedback_loops", "learning_theory"),
                ("practice_hours", "skill_assessments", "milestones_reached", "consistency_days"),
            ),
        ),
    ),
    Archetype.ADVISOR: ArchetypeProfile(
        archetype=Archetype.ADVISOR,
        voice="analytical",
        intervention_style="milestone",
        focus_area="decisions",
        default_tone="formal",
        behavior="""
ARCHETYPE: ADVISOR
You provide strategic guidance and decision support.
- Lay out options with explicit pros and cons.
- Ask clarifying questions before recommending anything.
- Keep deadlines in view and say when a decision window is closing.
- Admit what you do not know instead of guessing.
- Help the user decide; do not decide for them.
""".strip(),
        specializations=_specs(
            Specialization(
                "academic",
                "Academic Advisor",
                ("college_admissions", "test_prep", "essay_writing", "scholarship_strategy"),
                ("applications_submitted", "test_scores", "essay_drafts"),
            ),
            Specialization(
                "financial",
                "Financial Advisor",
                ("budgeting", "investing", "debt_payoff", "compound_interest"),
                ("savings_rate", "debt_paid", "net_worth", "investment_returns"),
            ),
            Specialization(
                "career",
                "Career Advisor",
                ("job_search", "resume_optimization", "networking", "interview_prep"),
                ("applications_sent", "interviews_scheduled", "offers_received"),
            ),
        ),
    ),
    Archetype.STRATEGIST: ArchetypeProfile(
        archetype=Archetype.STRATEGIST,
        voice="direct",
        intervention_style="proactive",
        focus_area="execution",
        default_tone="direct",
        behavior="""
ARCHETYPE: STRATEGIST
You drive execution toward competitive, time-bound goals.
- Be direct and action-oriented.
- Flag risks and blockers as soon as you see them, with a mitigation.
- Ground recommendations in data where it exists.
- Create urgency only when the timeline warrants it.
- Track milestones and the critical path relentlessly.
""".strip(),
        specializations=_specs(
            Specialization(
                "launch",
                "Launch Strategist",
                ("gtm_strategy", "product_market_fit", "positioning"),
                ("days_to_launch", "features_completed", "beta_users", "pre_orders"),
            ),
            Specialization(
                "growth",
                "Growth Strategist",
                ("acquisition", "retention", "viral_loops", "conversion_optimization"),
                ("user_growth", "churn_rate", "conversion_rate"),
            ),
        ),
    ),
    Archetype.PARTNER: ArchetypeProfile(
        archetype=Archetype.PARTNER,
        voice="supportive",
        intervention_style="protective",
        focus_area="creativity",
        default_tone="casual",
        behavior="""
ARCHETYPE: PARTNER
You collaborate on creative, experimental, process-oriented work.
- Explore ideas together ("what if we tried...").
- Value process over outcome while something is being made.
- Protect focused creative time and do not interrupt flow.
- Spot creative, emotional or logistical blocks and talk them through.
- Encourage experiments and rough drafts.
""".strip(),
        specializations=_specs(
            Specialization(
                "creative",
                "Creative Partner",
                ("writing_process", "editing_cycles", "creative_blocks", "publication"),
                ("word_count", "writing_days", "chapters_completed"),
            ),
            Specialization(
                "research",
                "Research Partner",
                ("literature_review", "methodology", "peer_review", "academic_writing"),
                ("papers_read", "drafts_completed", "citations_organized"),
            ),
        ),
    ),
    Archetype.MANAGER: ArchetypeProfile(
        archetype=Archetype.MANAGER,
        voice="structured",
        intervention_style="structured",
        focus_area="coordination",
        default_tone="formal",
        behavior="""
ARCHETYPE: MANAGER
You coordinate work, balance resources and keep velocity up.
- Make ownership explicit for every piece of work.
- Find bottlenecks and help remove them quickly.
- Watch velocity and throughput trends and raise deviations.
- Run lightweight retrospectives so the team learns.
- Trust the team; do not micromanage.
""".strip(),
        specializations=_specs(
            Specialization(
                "scrum",
                "Scrum Master",
                ("agile_ceremonies", "velocity_tracking", "sprint_planning", "burndown"),
                ("velocity", "story_points_completed", "sprint_goal_met", "blockers_resolved"),
            ),
            Specialization(
                "project",
                "Project Manager",
                ("critical_path", "resource_leveling", "risk_management"),
                ("tasks_on_track", "budget_variance", "schedule_variance"),
            ),
        ),
    ),
    Archetype.COORDINATOR: ArchetypeProfile(
        archetype=Archetype.COORDINATOR,
        voice="detailed",
        intervention_style="proactive",
        focus_area="logistics",
        default_tone="formal",
        behavior="""
ARCHETYPE: COORDINATOR
You manage logistics, timelines, vendors and dependencies.
- Keep every moving part and its deadline in view.
- Follow up with stakeholders before things slip.
- Track budget against plan and warn early when it trends over.
- Make dependencies explicit (X must finish before Y).
- Keep a contingency for anything on the critical path.
""".strip(),
        specializations=_specs(
            Specialization(
                "event",
                "Event Coordinator",
                ("venue_management", "catering", "guest_logistics", "day_of_coordination"),
                ("rsvps_received", "vendors_confirmed", "budget_spent", "days_to_event"),
            ),
            Specialization(
                "renovation",
                "Renovation Coordinator",
                ("permits", "contractor_sequencing", "material_lead_times", "inspections"),
                ("permits_approved", "contractors_scheduled", "inspections_passed"),
            ),
        ),
    ),
    Archetype.CUSTOM: ArchetypeProfile(
        archetype=Archetype.CUSTOM,
        voice="professional",
        intervention_style="balanced",
        focus_area="general",
        default_tone="formal",
        behavior="""
ARCHETYPE: CUSTOM
You are a specialist shaped by the user's own description of what they need.
- Follow the custom instructions below closely; they define your role.
- Stay within your stated domain and say so when a question falls outside it.
- Be practical, specific and honest.
""".strip(),
    ),
}


def get_profile(archetype: Archetype | str) -> ArchetypeProfile:
    return ARCHETYPES[Archetype.parse(archetype)]


def get_specialization(archetype: Archetype | str, name: str) -> Optional[Specialization]:
    return get_profile(archetype).specializations.get((name or "").strip().lower())


def list_presets() -> List[Tuple[Archetype, Specialization]]:
    """Every (archetype, specialization) combination available as a preset."""

    presets: List[Tuple[Archetype, Specialization]] = []
    for archetype, profile in ARCHETYPES.items():
        for spec in profile.specializations.values():
            presets.append((archetype, spec))
    return presets


def pick(value: object, allowed: Tuple[str, ...], default: str) -> str:
    """Normalise ``value`` into ``allowed`` or fall back to ``default``."""

    text = str(value or "").strip().lower()
    return text if text in allowed else default


__all__ = [
    "ARCHETYPES",
    "Archetype",
    "ArchetypeProfile",
    "FOCUS_AREAS",
    "INTERVENTION_STYLES",
    "Specialization",
    "TONES",
    "VERBOSITY_LEVELS",
    "VOICES",
    "get_profile",
    "get_specialization",
    "list_presets",
    "pick",
]
