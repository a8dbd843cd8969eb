from __future__ import annotations

import json

import pytest

from roundtable.orchestrator import OrchestratorPolicy
from roundtable.runtime import RoundtableRuntime, _dispatch, build_parser, main


@pytest.fixture
def runtime(fake_llm):
    llm = fake_llm({"reply": ["Start with a weekly budget.", "Track every purchase."]})
    rt = RoundtableRuntime(
        db_path=":memory:",
        llm_client=llm,
        policy=OrchestratorPolicy(summarize_in_background=False),
    )
    yield rt
    rt.close()


def test_chat_persists_the_turn(runtime) -> None:
    runtime.upsert_project({"id": "proj-1", "title": "Savings", "health_score": 64})
    runtime.create_persona("proj-1", "user-1", preset="advisor/financial")

    payload = runtime.chat("proj-1", "user-1", "  How do I start saving?  ")

    assert payload.text == "Start with a weekly budget."
    conversation = runtime.orchestrator.conversation_for("proj-1", "user-1")
    contents = [m.content for m in runtime.store.list_messages(conversation.id)]
    assert contents == ["How do I start saving?", "Start with a weekly budget."]
    project_block = runtime.llm_client.segments_for("reply")[0][4]
    assert "Health Score: 64/100" in project_block.content


def test_chat_command_reads_jsonl(runtime, tmp_path, capsys) -> None:
    runtime.create_persona("proj-1", "user-1", preset="advisor/financial")
    turns = tmp_path / "turns.jsonl"
    turns.write_text(
        "\n".join(
            [
                "# comment lines are skipped",
                json.dumps({"project_id": "proj-1", "user_id": "user-1", "text": "First?"}),
                json.dumps({"project_id": "proj-1", "user_id": "user-1", "text": "Second?"}),
            ]
        ),
        encoding="utf-8",
    )

    args = build_parser().parse_args(["chat", "--input", str(turns)])
    assert _dispatch(runtime, args) == 0

    out = capsys.readouterr().out
    assert '"kind": "single"' in out
    assert "Track every purchase." in out


def test_malformed_jsonl_line_exits(runtime, tmp_path) -> None:
    turns = tmp_path / "turns.jsonl"
    turns.write_text('{"text": "no project"}\n', encoding="utf-8")

    args = build_parser().parse_args(["chat", "--input", str(turns)])
    with pytest.raises(SystemExit):
        _dispatch(runtime, args)


def test_memory_commands_round_trip_through_sqlite(tmp_path, capsys) -> None:
    db = str(tmp_path / "state" / "roundtable.sqlite")

    assert main(["--db", db, "memory", "set", "--project", "p", "--type", "blocker", "--key", "api", "--value", "Waiting on keys"]) == 0
    assert main(["--db", db, "memory", "set", "--project", "p", "--type", "fact", "--key", "tz", "--value", "PT", "--importance", "4"]) == 0
    capsys.readouterr()

    assert main(["--db", db, "memory", "stats", "--project", "p"]) == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["total_memories"] == 2
    assert stats["counts_by_type"]["blocker"] == 1
    assert stats["avg_importance"] == 6.5

    assert main(["--db", db, "memory", "list", "--project", "p"]) == 0
    listed = json.loads(capsys.readouterr().out)
    assert [item["key"] for item in listed] == ["api", "tz"]


def test_persona_create_requires_input(tmp_path) -> None:
    db = str(tmp_path / "roundtable.sqlite")
    assert main(["--db", db, "persona", "create", "--project", "p", "--user", "u"]) == 2


def test_persona_preset_and_listing(tmp_path, capsys) -> None:
    db = str(tmp_path / "roundtable.sqlite")

    assert main(["--db", db, "persona", "create", "--project", "p", "--user", "u", "--preset", "coordinator/event"]) == 0
    created = json.loads(capsys.readouterr().out)
    assert created["display_name"] == "Event Coordinator"

    assert main(["--db", db, "persona", "list", "--project", "p"]) == 0
    assert [item["id"] for item in json.loads(capsys.readouterr().out)] == [created["id"]]


def test_persona_presets_listing(tmp_path, capsys) -> None:
    db = str(tmp_path / "roundtable.sqlite")

    assert main(["--db", db, "persona", "presets"]) == 0
    presets = {item["preset"]: item for item in json.loads(capsys.readouterr().out)}

    assert presets["advisor/financial"]["display_name"] == "Financial Advisor"
    assert "coordinator/event" in presets
