from __future__ import annotations

import threading
from typing import Any, Callable, Mapping

import pytest

from roundtable.errors import ModelMalformedOutput, ModelRateLimited, ModelTimeout, TurnCancelled
from roundtable.medium_term import MediumTermMemoryManager
from roundtable.orchestrator import OrchestratorPolicy, PersonaOrchestrator, word_overlap
from roundtable.prompts import FALLBACK_REPLY_TEXT
from roundtable.schemas import (
    DebateResponse,
    MessageIntent,
    MultiPerspectiveResponse,
    NoPersonaResponse,
    SenderType,
    SingleResponse,
)

POSITIONS = {
    "Debt Hawk": "Pay off the credit card debt before investing anything.",
    "Growth Bull": "Invest in the index fund now to capture market growth.",
    "Tax Owl": "Max out the retirement account for the tax deduction.",
}


def _orchestrator(store, llm, **policy: Any) -> PersonaOrchestrator:
    policy.setdefault("summarize_in_background", False)
    return PersonaOrchestrator(store, llm, policy=OrchestratorPolicy(**policy))


def _perspectives(persona_name, json_reply, overrides: Mapping[str, Any] | None = None) -> Callable:
    def reply(segments):
        name = persona_name(segments)
        override = (overrides or {}).get(name)
        if isinstance(override, BaseException):
            raise override
        if override is not None:
            return override
        return json_reply({"position": POSITIONS[name], "rationale": f"{name} reasoning", "confidence": 0.8})

    return reply


def _rebuttals(persona_name, overrides: Mapping[str, Any] | None = None) -> Callable:
    def reply(segments):
        name = persona_name(segments)
        override = (overrides or {}).get(name)
        if isinstance(override, BaseException):
            raise override
        return f"{name} objects to the others."

    return reply


def _synthesis(json_reply) -> str:
    return json_reply(
        {
            "summary": "Debt versus growth.",
            "tradeoffs": ["interest saved", "market upside"],
            "recommendation": "Clear the card, then invest monthly.",
            "rationale": "Card interest exceeds expected returns.",
        }
    )


def test_single_active_persona_skips_routing(store, fake_llm, add_persona) -> None:
    hawk = add_persona("Debt Hawk")
    llm = fake_llm({"reply": ["Pay the card first."]})

    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "What should I do?")

    assert isinstance(result, SingleResponse)
    assert result.text == "Pay the card first."
    assert result.persona_id == hawk.id
    assert llm.count("route") == 0
    assert llm.count("classify") == 0


def test_one_routed_persona_yields_single_without_conflict_check(store, fake_llm, add_persona, json_reply) -> None:
    hawk = add_persona("Debt Hawk")
    add_persona("Growth Bull")
    llm = fake_llm({"route": [json_reply({"persona_ids": [hawk.id]})], "reply": ["Pay the card."]})

    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Card or fund?")

    assert isinstance(result, SingleResponse)
    assert result.display_name == "Debt Hawk"
    assert llm.count("perspective") == 0
    assert llm.count("classify") == 0


@pytest.mark.parametrize("route_reply", [ModelTimeout("slow"), "I think the hawk", '{"persona_ids": ["nobody"]}'])
def test_routing_failure_or_no_match_returns_no_persona(store, fake_llm, add_persona, route_reply) -> None:
    add_persona("Debt Hawk")
    add_persona("Growth Bull")
    llm = fake_llm({"route": [route_reply]})

    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Hello?")

    assert isinstance(result, NoPersonaResponse)
    assert result.text
    assert llm.count("reply") == 0


def test_no_match_policy_is_delegated_to_caller(store, fake_llm, add_persona, json_reply) -> None:
    add_persona("Debt Hawk")
    add_persona("Growth Bull")
    llm = fake_llm({"route": [json_reply({"persona_ids": []})]})
    seen = []

    def policy(project_id: str, text: str) -> SingleResponse:
        seen.append((project_id, text))
        return SingleResponse(text="Could you clarify?")

    orchestrator = PersonaOrchestrator(
        store, llm, policy=OrchestratorPolicy(summarize_in_background=False), no_match_policy=policy
    )
    result = orchestrator.handle_user_message("proj-1", "user-1", "Weather?")

    assert result.text == "Could you clarify?"
    assert seen == [("proj-1", "Weather?")]


def test_project_without_personas_returns_no_persona(store, fake_llm) -> None:
    llm = fake_llm()
    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Anyone?")

    assert isinstance(result, NoPersonaResponse)
    assert llm.calls == []


def test_inactive_personas_are_never_routed(store, fake_llm, add_persona) -> None:
    hawk = add_persona("Debt Hawk")
    add_persona("Growth Bull", active=False)
    llm = fake_llm({"reply": ["Pay the card."]})

    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Card or fund?")

    assert result.persona_id == hawk.id
    assert llm.count("route") == 0


def test_direct_reply_failure_falls_back_to_apology(store, fake_llm, add_persona) -> None:
    add_persona("Debt Hawk")
    llm = fake_llm({"reply": [ModelRateLimited("busy")]})

    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Help")

    assert isinstance(result, SingleResponse)
    assert result.degraded
    assert result.text == FALLBACK_REPLY_TEXT


def test_compatible_perspectives_return_listing_without_rebuttals(
    store, fake_llm, add_persona, json_reply, persona_name
) -> None:
    hawk = add_persona("Debt Hawk")
    bull = add_persona("Growth Bull")
    llm = fake_llm(
        {
            "route": [json_reply({"persona_ids": [hawk.id, bull.id]})],
            "perspective": _perspectives(persona_name, json_reply),
            "classify": [json_reply({"verdict": "compatible"})],
        }
    )

    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Card or fund?")

    assert isinstance(result, MultiPerspectiveResponse)
    assert not result.degraded
    assert [p.persona_id for p in result.perspectives] == [hawk.id, bull.id]
    assert result.perspectives[0].confidence == pytest.approx(0.8)
    assert llm.count("rebuttal") == 0
    assert llm.count("synthesis") == 0


def test_conflicting_perspectives_run_two_round_debate(
    store, fake_llm, add_persona, json_reply, persona_name
) -> None:
    hawk = add_persona("Debt Hawk")
    bull = add_persona("Growth Bull")
    llm = fake_llm(
        {
            "route": [json_reply({"persona_ids": [hawk.id, bull.id]})],
            "perspective": _perspectives(persona_name, json_reply),
            "classify": [json_reply({"verdict": "conflicting", "oppositions": [[hawk.id, bull.id]]})],
            "rebuttal": _rebuttals(persona_name),
            "synthesis": [_synthesis(json_reply)],
        }
    )

    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Card or fund?")

    assert isinstance(result, DebateResponse)
    assert {p.persona_id for p in result.perspectives} == {hawk.id, bull.id}
    assert len(result.rebuttals) == 2
    assert {r.persona_id for r in result.rebuttals} == {hawk.id, bull.id}
    hawk_rebuttal = next(r for r in result.rebuttals if r.persona_id == hawk.id)
    assert hawk_rebuttal.addressed_to == [bull.id]
    assert [entry.round for entry in result.transcript] == [1, 1, 2, 2]
    assert result.synthesis.recommendation == "Clear the card, then invest monthly."
    assert result.recommended_action == result.synthesis.recommendation
    assert result.decision_required is True

    rebuttal_prompt = llm.segments_for("rebuttal")[0]
    task = next(s for s in rebuttal_prompt if s.block == "task")
    assert POSITIONS["Debt Hawk"] in task.content
    assert POSITIONS["Growth Bull"] in task.content

    (synthesis_prompt,) = llm.segments_for("synthesis")
    assert all(segment.block != "archetype" for segment in synthesis_prompt)


def test_only_opposed_personas_rebut(store, fake_llm, add_persona, json_reply, persona_name) -> None:
    hawk = add_persona("Debt Hawk")
    bull = add_persona("Growth Bull")
    owl = add_persona("Tax Owl")
    llm = fake_llm(
        {
            "route": [json_reply({"persona_ids": [hawk.id, bull.id, owl.id]})],
            "perspective": _perspectives(persona_name, json_reply),
            "classify": [json_reply({"verdict": "conflicting", "oppositions": [[hawk.id, bull.id]]})],
            "rebuttal": _rebuttals(persona_name),
            "synthesis": [_synthesis(json_reply)],
        }
    )

    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Where should money go?")

    assert len(result.perspectives) == 3
    assert {r.persona_id for r in result.rebuttals} == {hawk.id, bull.id}
    assert llm.count("rebuttal") == 2


def test_synthesis_failure_keeps_transcript(store, fake_llm, add_persona, json_reply, persona_name) -> None:
    hawk = add_persona("Debt Hawk")
    bull = add_persona("Growth Bull")
    llm = fake_llm(
        {
            "route": [json_reply({"persona_ids": [hawk.id, bull.id]})],
            "perspective": _perspectives(persona_name, json_reply),
            "classify": [json_reply({"verdict": "conflicting"})],
            "rebuttal": _rebuttals(persona_name),
            "synthesis": [ModelTimeout("slow")],
        }
    )

    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Card or fund?")

    assert isinstance(result, DebateResponse)
    assert result.synthesis is None
    assert result.recommended_action is None
    assert len(result.transcript) == 4
    assert result.to_payload()["synthesis"] is None


def test_malformed_synthesis_is_omitted(store, fake_llm, add_persona, json_reply, persona_name) -> None:
    hawk = add_persona("Debt Hawk")
    bull = add_persona("Growth Bull")
    llm = fake_llm(
        {
            "route": [json_reply({"persona_ids": [hawk.id, bull.id]})],
            "perspective": _perspectives(persona_name, json_reply),
            "classify": [json_reply({"verdict": "conflicting"})],
            "rebuttal": _rebuttals(persona_name),
            "synthesis": [json_reply({"summary": "No recommendation here"})],
        }
    )

    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Card or fund?")

    assert isinstance(result, DebateResponse)
    assert result.synthesis is None


def test_rebuttal_failure_degrades_to_listing(store, fake_llm, add_persona, json_reply, persona_name) -> None:
    hawk = add_persona("Debt Hawk")
    bull = add_persona("Growth Bull")
    llm = fake_llm(
        {
            "route": [json_reply({"persona_ids": [hawk.id, bull.id]})],
            "perspective": _perspectives(persona_name, json_reply),
            "classify": [json_reply({"verdict": "conflicting"})],
            "rebuttal": _rebuttals(persona_name, {"Growth Bull": ModelTimeout("slow")}),
        }
    )

    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Card or fund?")

    assert isinstance(result, MultiPerspectiveResponse)
    assert result.degraded
    assert len(result.perspectives) == 2
    assert llm.count("synthesis") == 0


def test_failed_perspective_is_dropped(store, fake_llm, add_persona, json_reply, persona_name) -> None:
    hawk = add_persona("Debt Hawk")
    bull = add_persona("Growth Bull")
    llm = fake_llm(
        {
            "route": [json_reply({"persona_ids": [hawk.id, bull.id]})],
            "perspective": _perspectives(persona_name, json_reply, {"Growth Bull": "not json at all"}),
        }
    )

    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Card or fund?")

    assert isinstance(result, MultiPerspectiveResponse)
    assert result.degraded
    assert [p.persona_id for p in result.perspectives] == [hawk.id]
    assert llm.count("classify") == 0


def test_all_perspectives_failing_returns_fallback(store, fake_llm, add_persona, json_reply, persona_name) -> None:
    hawk = add_persona("Debt Hawk")
    bull = add_persona("Growth Bull")
    llm = fake_llm(
        {
            "route": [json_reply({"persona_ids": [hawk.id, bull.id]})],
            "perspective": _perspectives(
                persona_name,
                json_reply,
                {"Debt Hawk": ModelTimeout("slow"), "Growth Bull": ModelMalformedOutput("bad")},
            ),
        }
    )

    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Card or fund?")

    assert isinstance(result, SingleResponse)
    assert result.degraded
    assert result.text == FALLBACK_REPLY_TEXT


def test_hanging_perspective_does_not_stall_turn(store, fake_llm, add_persona, json_reply, persona_name) -> None:
    hawk = add_persona("Debt Hawk")
    bull = add_persona("Growth Bull")
    release = threading.Event()
    normal = _perspectives(persona_name, json_reply)

    def perspective(segments):
        if persona_name(segments) == "Growth Bull":
            release.wait(10)
        return normal(segments)

    llm = fake_llm({"route": [json_reply({"persona_ids": [hawk.id, bull.id]})], "perspective": perspective})
    try:
        result = _orchestrator(store, llm, call_timeout=0.2).handle_user_message(
            "proj-1", "user-1", "Card or fund?"
        )
    finally:
        release.set()

    assert isinstance(result, MultiPerspectiveResponse)
    assert [p.persona_id for p in result.perspectives] == [hawk.id]


def test_classification_failure_uses_word_overlap(store, fake_llm, add_persona, json_reply, persona_name) -> None:
    hawk = add_persona("Debt Hawk")
    bull = add_persona("Growth Bull")
    same = json_reply({"position": "Pay off the credit card debt first.", "confidence": 0.7})
    llm = fake_llm(
        {
            "route": [json_reply({"persona_ids": [hawk.id, bull.id]})],
            "perspective": lambda segments: same,
            "classify": [ModelTimeout("slow")],
        }
    )

    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Card or fund?")

    assert isinstance(result, MultiPerspectiveResponse)
    assert llm.count("rebuttal") == 0


def test_classification_failure_with_divergent_positions_debates(
    store, fake_llm, add_persona, json_reply, persona_name
) -> None:
    hawk = add_persona("Debt Hawk")
    bull = add_persona("Growth Bull")
    llm = fake_llm(
        {
            "route": [json_reply({"persona_ids": [hawk.id, bull.id]})],
            "perspective": _perspectives(persona_name, json_reply),
            "classify": [ModelRateLimited("busy")],
            "rebuttal": _rebuttals(persona_name),
            "synthesis": [_synthesis(json_reply)],
        }
    )

    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Card or fund?")

    assert isinstance(result, DebateResponse)


def test_unreadable_verdict_defaults_to_debate(store, fake_llm, add_persona, json_reply, persona_name) -> None:
    hawk = add_persona("Debt Hawk")
    bull = add_persona("Growth Bull")
    llm = fake_llm(
        {
            "route": [json_reply({"persona_ids": [hawk.id, bull.id]})],
            "perspective": _perspectives(persona_name, json_reply),
            "classify": ["They mostly agree, I suppose."],
            "rebuttal": _rebuttals(persona_name),
            "synthesis": [_synthesis(json_reply)],
        }
    )

    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Card or fund?")

    assert isinstance(result, DebateResponse)
    assert len(result.rebuttals) == 2


def test_non_list_oppositions_default_to_all_pairs(store, fake_llm, add_persona, json_reply, persona_name) -> None:
    hawk = add_persona("Debt Hawk")
    bull = add_persona("Growth Bull")
    llm = fake_llm(
        {
            "route": [json_reply({"persona_ids": [hawk.id, bull.id]})],
            "perspective": _perspectives(persona_name, json_reply),
            "classify": [json_reply({"verdict": "conflicting", "oppositions": 1})],
            "rebuttal": _rebuttals(persona_name),
            "synthesis": [_synthesis(json_reply)],
        }
    )

    result = _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Card or fund?")

    assert isinstance(result, DebateResponse)
    assert {r.persona_id for r in result.rebuttals} == {hawk.id, bull.id}


def test_extra_debate_round_is_configurable(store, fake_llm, add_persona, json_reply, persona_name) -> None:
    hawk = add_persona("Debt Hawk")
    bull = add_persona("Growth Bull")
    llm = fake_llm(
        {
            "route": [json_reply({"persona_ids": [hawk.id, bull.id]})],
            "perspective": _perspectives(persona_name, json_reply),
            "classify": [json_reply({"verdict": "conflicting"})],
            "rebuttal": _rebuttals(persona_name),
            "synthesis": [_synthesis(json_reply)],
        }
    )

    result = _orchestrator(store, llm, debate_rounds=3).handle_user_message("proj-1", "user-1", "Card or fund?")

    assert [entry.round for entry in result.transcript] == [1, 1, 2, 2, 3, 3]
    assert llm.count("rebuttal") == 4


def test_cancelled_turn_issues_no_model_calls(store, fake_llm, add_persona) -> None:
    add_persona("Debt Hawk")
    add_persona("Growth Bull")
    llm = fake_llm()
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(TurnCancelled):
        _orchestrator(store, llm).handle_user_message("proj-1", "user-1", "Card or fund?", cancel=cancel)
    assert llm.calls == []


def test_empty_message_is_rejected(store, fake_llm) -> None:
    with pytest.raises(ValueError):
        _orchestrator(store, fake_llm()).handle_user_message("proj-1", "user-1", "   ")


def test_record_turn_persists_debate_in_order(store, fake_llm, add_persona, json_reply, persona_name) -> None:
    hawk = add_persona("Debt Hawk")
    bull = add_persona("Growth Bull")
    llm = fake_llm(
        {
            "route": [json_reply({"persona_ids": [hawk.id, bull.id]})],
            "perspective": _perspectives(persona_name, json_reply),
            "classify": [json_reply({"verdict": "conflicting"})],
            "rebuttal": _rebuttals(persona_name),
            "synthesis": [_synthesis(json_reply)],
        }
    )
    orchestrator = _orchestrator(store, llm)
    payload = orchestrator.handle_user_message("proj-1", "user-1", "Card or fund?")
    conversation = orchestrator.conversation_for("proj-1", "user-1")

    stored = orchestrator.record_turn(conversation.id, "user-1", "Card or fund?", payload)

    messages = store.list_messages(conversation.id)
    assert [m.id for m in messages] == [m.id for m in stored]
    assert messages[0].sender_type is SenderType.USER
    assert messages[0].intent is MessageIntent.QUESTION
    assert [m.intent for m in messages[1:]] == [
        MessageIntent.SUGGESTION,
        MessageIntent.SUGGESTION,
        MessageIntent.OBJECTION,
        MessageIntent.OBJECTION,
        MessageIntent.SYNTHESIS,
    ]
    assert messages[-1].sender_type is SenderType.SYSTEM
    assert all(m.reply_to == messages[0].id for m in messages[1:])


def test_record_turn_triggers_summary_and_swallows_failure(store, fake_llm, add_persona) -> None:
    add_persona("Debt Hawk")
    llm = fake_llm({"reply": ["ok"] * 10, "summary": [ModelTimeout("slow")]})
    orchestrator = _orchestrator(store, llm)
    conversation = orchestrator.conversation_for("proj-1", "user-1")

    for idx in range(10):
        payload = orchestrator.handle_user_message("proj-1", "user-1", f"turn {idx}")
        orchestrator.record_turn(conversation.id, "user-1", f"turn {idx}", payload)

    assert store.count_messages(conversation.id) == 20
    assert llm.count("summary") == 1
    assert store.get_summary(conversation.id).summary is None


def test_background_summary_runs_off_the_turn(store, fake_llm, add_persona) -> None:
    add_persona("Debt Hawk")
    llm = fake_llm({"reply": ["ok"] * 10, "summary": ["They chatted."]})
    orchestrator = _orchestrator(store, llm, summarize_in_background=True)
    conversation = orchestrator.conversation_for("proj-1", "user-1")

    for idx in range(10):
        payload = orchestrator.handle_user_message("proj-1", "user-1", f"turn {idx}")
        orchestrator.record_turn(conversation.id, "user-1", f"turn {idx}", payload)
    orchestrator.close()

    assert store.get_summary(conversation.id).summary == "They chatted."
    assert llm.count("summary") == 1


def test_prompt_embeds_both_memory_tiers(store, fake_llm, add_persona) -> None:
    add_persona("Debt Hawk")
    MediumTermMemoryManager(store=store).add_decision("proj-1", "budget", "500 per month")
    llm = fake_llm({"reply": ["ok", "ok"]})
    orchestrator = _orchestrator(store, llm)
    conversation = orchestrator.conversation_for("proj-1", "user-1")
    first = orchestrator.handle_user_message("proj-1", "user-1", "Earlier question")
    orchestrator.record_turn(conversation.id, "user-1", "Earlier question", first)

    orchestrator.handle_user_message("proj-1", "user-1", "Follow-up")

    blocks = {segment.block: segment.content for segment in llm.segments_for("reply")[1]}
    assert "- budget: 500 per month" in blocks["medium_term_memory"]
    assert "Earlier question" in blocks["short_term_memory"]


def test_word_overlap_bounds() -> None:
    assert word_overlap("pay the card", "pay the card") == 1.0
    assert word_overlap("pay the card", "buy index funds") == 0.0
    assert word_overlap("", "") == 1.0
