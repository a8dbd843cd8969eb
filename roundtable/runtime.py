"""Runtime wiring and command-line entry point for the persona orchestration core."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .archetypes import list_presets
from .clients import LLMClient
from .composer import PromptComposer
from .factory import PersonaFactory
from .medium_term import MediumTermMemoryManager
from .orchestrator import OrchestratorPolicy, PersonaOrchestrator
from .schemas import Persona, Project, ProjectMemory, ResponsePayload
from .short_term import ShortTermMemoryManager
from .storage import SQLiteMemoryStore

logger = logging.getLogger(__name__)


@dataclass
class RoundtableRuntime:
    """All components wired against one SQLite file and one model endpoint."""

    db_path: str = "roundtable.sqlite"
    llm_url: str = "http://localhost:1109"
    llm_model: str = "Qwen3-8B"
    llm_provider: str = "vllm"
    api_key_env: str | None = None
    timeout: float = 45.0
    policy: OrchestratorPolicy = field(default_factory=OrchestratorPolicy)
    llm_client: Any = None

    def __post_init__(self) -> None:
        if self.db_path != ":memory:":
            db_parent = Path(self.db_path).expanduser().resolve().parent
            db_parent.mkdir(parents=True, exist_ok=True)
            self.store = SQLiteMemoryStore(str(Path(self.db_path).expanduser()))
        else:
            self.store = SQLiteMemoryStore(":memory:")

        if self.llm_client is None:
            self.llm_client = LLMClient(
                base_url=self.llm_url,
                model=self.llm_model,
                provider=self.llm_provider,
                api_key_env=self.api_key_env,
                timeout=self.timeout,
            )

        self.short_term = ShortTermMemoryManager(store=self.store, llm_client=self.llm_client)
        self.medium_term = MediumTermMemoryManager(store=self.store)
        self.orchestrator = PersonaOrchestrator(
            self.store,
            self.llm_client,
            short_term=self.short_term,
            medium_term=self.medium_term,
            composer=PromptComposer(),
            policy=self.policy,
        )
        self.factory = PersonaFactory(self.store, self.llm_client)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def chat(self, project_id: str, user_id: str, text: str) -> ResponsePayload:
        """Handle one turn and persist it to the conversation log."""

        payload = self.orchestrator.handle_user_message(project_id, user_id, text)
        conversation = self.orchestrator.conversation_for(project_id, user_id)
        self.orchestrator.record_turn(conversation.id, user_id, text.strip(), payload)
        return payload

    def upsert_project(self, data: Mapping[str, Any]) -> Project:
        project = Project(
            id=str(data["id"]),
            title=str(data.get("title") or data["id"]),
            description=data.get("description"),
            outcome=data.get("outcome"),
            status=str(data.get("status") or "active"),
            completion_type=data.get("completion_type"),
            health_score=data.get("health_score"),
        )
        return self.store.upsert_project(project)

    def create_persona(
        self,
        project_id: str,
        user_id: str,
        *,
        description: str | None = None,
        preset: str | None = None,
    ) -> Persona:
        if preset:
            archetype, _, specialization = preset.partition("/")
            return self.factory.create_preset_persona(
                project_id,
                user_id,
                archetype,
                specialization,
                custom_instructions=description,
            )
        return self.factory.create_custom_persona(project_id, user_id, description or "")

    def set_memory(
        self,
        project_id: str,
        memory_type: str,
        key: str,
        value: str,
        importance: int | None = None,
    ) -> ProjectMemory:
        return self.medium_term.add_memory(project_id, memory_type, key, value, importance)

    def close(self) -> None:
        self.orchestrator.close()
        self.store.close()


def _iter_turns(stream: Iterable[str]) -> Iterable[Mapping[str, Any]]:
    for raw_line in stream:
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            turn = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.error("Skipping malformed JSON line: %s", line)
            raise SystemExit(1) from exc
        if not isinstance(turn, Mapping) or "project_id" not in turn or "text" not in turn:
            logger.error("Each line must include 'project_id' and 'text' fields: %s", line)
            raise SystemExit(1)
        yield turn


def _print(data: Any) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the multi-persona assistant core")
    parser.add_argument("--db", default="roundtable.sqlite", help="SQLite file for personas, conversations and memory")
    parser.add_argument("--llm-url", default="http://localhost:1109", help="Base URL of the LLM server")
    parser.add_argument("--llm-model", default="Qwen3-8B", help="LLM model name exposed by the server")
    parser.add_argument(
        "--llm-provider",
        choices=["vllm", "deepseek", "openai"],
        default="vllm",
        help="LLM provider type",
    )
    parser.add_argument("--timeout", type=float, default=45.0, help="Per-call model timeout in seconds")
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging to trace prompt/response payloads.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    chat = commands.add_parser("chat", help="Process JSONL turns ({project_id, user_id, text})")
    chat.add_argument(
        "--input",
        type=Path,
        help="Optional path to a JSONL file. Defaults to reading from standard input.",
    )

    persona = commands.add_parser("persona", help="Create or list personas")
    persona_commands = persona.add_subparsers(dest="persona_command", required=True)
    create = persona_commands.add_parser("create", help="Create a persona")
    create.add_argument("--project", required=True)
    create.add_argument("--user", required=True)
    create.add_argument("--description", help="Free-text description of the help wanted")
    create.add_argument("--preset", help="archetype/specialization, e.g. coach/health")
    listing = persona_commands.add_parser("list", help="List personas of a project")
    listing.add_argument("--project", required=True)
    listing.add_argument("--all", action="store_true", help="Include deactivated personas")
    persona_commands.add_parser("presets", help="List archetype/specialization presets")

    memory = commands.add_parser("memory", help="Inspect or edit project memory")
    memory_commands = memory.add_subparsers(dest="memory_command", required=True)
    setter = memory_commands.add_parser("set", help="Upsert one memory record")
    setter.add_argument("--project", required=True)
    setter.add_argument("--type", required=True, dest="memory_type")
    setter.add_argument("--key", required=True)
    setter.add_argument("--value", required=True)
    setter.add_argument("--importance", type=int)
    for name in ("list", "stats"):
        sub = memory_commands.add_parser(name)
        sub.add_argument("--project", required=True)
    return parser


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    runtime = RoundtableRuntime(
        db_path=str(args.db),
        llm_url=args.llm_url,
        llm_model=args.llm_model,
        llm_provider=args.llm_provider,
        timeout=args.timeout,
    )
    try:
        return _dispatch(runtime, args)
    finally:
        runtime.close()


def _dispatch(runtime: RoundtableRuntime, args: argparse.Namespace) -> int:
    if args.command == "chat":

        def _run_stream(stream: Iterable[str]) -> List[Dict[str, Any]]:
            results: List[Dict[str, Any]] = []
            for turn in _iter_turns(stream):
                if isinstance(turn.get("project"), Mapping):
                    runtime.upsert_project(turn["project"])
                payload = runtime.chat(
                    str(turn["project_id"]),
                    str(turn.get("user_id") or "user-1"),
                    str(turn["text"]),
                )
                results.append(dict(payload.to_payload()))
            return results

        if args.input:
            with args.input.open("r", encoding="utf-8") as fh:
                results = _run_stream(fh)
        else:
            results = _run_stream(sys.stdin)
        for result in results:
            _print(result)
        return 0

    if args.command == "persona":
        if args.persona_command == "create":
            if not args.description and not args.preset:
                logger.error("persona create needs --description or --preset")
                return 2
            persona = runtime.create_persona(
                args.project, args.user, description=args.description, preset=args.preset
            )
            _print(persona.to_payload())
        elif args.persona_command == "presets":
            _print(
                [
                    {
                        "preset": f"{archetype.value}/{spec.name}",
                        "display_name": spec.display_name,
                        "domain_knowledge": list(spec.domain_knowledge),
                    }
                    for archetype, spec in list_presets()
                ]
            )
        else:
            personas = runtime.factory.list_personas(args.project, include_inactive=args.all)
            _print([persona.to_payload() for persona in personas])
        return 0

    if args.memory_command == "set":
        memory = runtime.set_memory(
            args.project, args.memory_type, args.key, args.value, args.importance
        )
        _print(memory.to_payload())
    elif args.memory_command == "list":
        _print([memory.to_payload() for memory in runtime.medium_term.get_memories(args.project)])
    else:
        _print(runtime.medium_term.get_stats(args.project))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
