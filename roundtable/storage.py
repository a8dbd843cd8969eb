"""Persistence for personas, conversations and both memory tiers."""

from __future__ import annotations

import abc
import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import replace
from typing import Any, List, Optional, Tuple

from .errors import NotFound
from .schemas import (
    CommunicationPreferences,
    Conversation,
    ConversationMessage,
    ConversationSummary,
    MemoryType,
    MessageIntent,
    Persona,
    Project,
    ProjectMemory,
    SenderType,
)

logger = logging.getLogger(__name__)


class MemoryStore(abc.ABC):
    """Record-level persistence contract consumed by the managers and orchestrator.

    Implementations must make :meth:`compare_and_set_summary` and
    :meth:`upsert_memory_capped` atomic per conversation / project; nothing
    else needs transactional guarantees.
    """

    # personas ---------------------------------------------------------
    @abc.abstractmethod
    def save_persona(self, persona: Persona) -> Persona: ...

    @abc.abstractmethod
    def get_persona(self, persona_id: str) -> Optional[Persona]: ...

    @abc.abstractmethod
    def list_personas(self, project_id: str, *, include_inactive: bool = False) -> List[Persona]: ...

    # projects ---------------------------------------------------------
    @abc.abstractmethod
    def upsert_project(self, project: Project) -> Project: ...

    @abc.abstractmethod
    def get_project(self, project_id: str) -> Optional[Project]: ...

    # conversations ----------------------------------------------------
    @abc.abstractmethod
    def get_or_create_conversation(self, project_id: str, user_id: str) -> Conversation: ...

    @abc.abstractmethod
    def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    @abc.abstractmethod
    def append_message(self, message: ConversationMessage) -> ConversationMessage: ...

    @abc.abstractmethod
    def list_messages(
        self, conversation_id: str, *, offset: int = 0, limit: Optional[int] = None
    ) -> List[ConversationMessage]: ...

    @abc.abstractmethod
    def list_recent_messages(self, conversation_id: str, limit: int) -> List[ConversationMessage]: ...

    @abc.abstractmethod
    def count_messages(self, conversation_id: str) -> int: ...

    # short-term memory ------------------------------------------------
    @abc.abstractmethod
    def get_summary(self, conversation_id: str) -> ConversationSummary: ...

    @abc.abstractmethod
    def compare_and_set_summary(
        self,
        conversation_id: str,
        *,
        expected_count: int,
        summary: str,
        message_count: int,
        summarized_at: str,
    ) -> bool: ...

    # medium-term memory -----------------------------------------------
    @abc.abstractmethod
    def list_memories(self, project_id: str, *, now: str) -> List[ProjectMemory]: ...

    @abc.abstractmethod
    def get_memory(self, project_id: str, key: str, *, now: str) -> Optional[ProjectMemory]: ...

    @abc.abstractmethod
    def upsert_memory_capped(
        self, memory: ProjectMemory, *, cap: int, now: str
    ) -> Tuple[ProjectMemory, Optional[ProjectMemory]]: ...

    @abc.abstractmethod
    def delete_memory(self, project_id: str, key: str) -> bool: ...

    @abc.abstractmethod
    def update_memory_importance(self, project_id: str, key: str, importance: int, *, now: str) -> bool: ...

    @abc.abstractmethod
    def delete_expired_memories(self, *, now: str) -> int: ...


class SQLiteMemoryStore(MemoryStore):
    """Small SQLite wrapper implementing :class:`MemoryStore`."""

    def __init__(self, db_path: str = ":memory:") -> None:
        self.connection = sqlite3.connect(db_path, check_same_thread=False)
        self.connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._create_schema()

    def _create_schema(self) -> None:
        with self._lock:
            cur = self.connection.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT,
                    outcome TEXT,
                    status TEXT NOT NULL,
                    completion_type TEXT,
                    health_score REAL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS personas (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    archetype TEXT NOT NULL,
                    specialization TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    voice TEXT,
                    intervention_style TEXT,
                    focus_area TEXT,
                    domain_knowledge TEXT,
                    domain_metrics TEXT,
                    custom_instructions TEXT,
                    communication_preferences TEXT,
                    collaborators TEXT,
                    primary_focus TEXT,
                    defer_to TEXT,
                    active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_personas_project ON personas(project_id)"
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    summary TEXT,
                    last_summary_at TEXT,
                    message_count_at_summary INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_conversation_participants
                ON conversations(project_id, user_id)
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    conversation_id TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    sender_type TEXT NOT NULL,
                    sender_name TEXT,
                    content TEXT NOT NULL,
                    intent TEXT,
                    confidence REAL,
                    reply_to TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(conversation_id) REFERENCES conversations(id)
                )
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_messages_conversation
                ON messages(conversation_id, created_at, seq)
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS project_memory (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    project_id TEXT NOT NULL,
                    memory_type TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    importance INTEGER NOT NULL,
                    expires_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_project_memory_key
                ON project_memory(project_id, key)
                """
            )
            self.connection.commit()

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------
    @staticmethod
    def _dump(value: Any) -> str:
        return json.dumps(value, ensure_ascii=False)

    @staticmethod
    def _load(blob: Optional[str], default: Any) -> Any:
        if not blob:
            return default
        return json.loads(blob)

    def _row_to_persona(self, row: sqlite3.Row) -> Persona:
        return Persona(
            id=row["id"],
            project_id=row["project_id"],
            user_id=row["user_id"],
            archetype=row["archetype"],
            specialization=row["specialization"],
            display_name=row["display_name"],
            voice=row["voice"],
            intervention_style=row["intervention_style"],
            focus_area=row["focus_area"],
            domain_knowledge=self._load(row["domain_knowledge"], []),
            domain_metrics=self._load(row["domain_metrics"], []),
            custom_instructions=row["custom_instructions"],
            communication_preferences=CommunicationPreferences.from_payload(
                self._load(row["communication_preferences"], None)
            ),
            collaborators=self._load(row["collaborators"], []),
            primary_focus=row["primary_focus"],
            defer_to=self._load(row["defer_to"], {}),
            active=bool(row["active"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> ConversationMessage:
        return ConversationMessage(
            id=row["id"],
            conversation_id=row["conversation_id"],
            sender_id=row["sender_id"],
            sender_type=SenderType(row["sender_type"]),
            sender_name=row["sender_name"],
            content=row["content"],
            intent=MessageIntent(row["intent"]) if row["intent"] else None,
            confidence=row["confidence"],
            reply_to=row["reply_to"],
            created_at=row["created_at"],
            seq=row["seq"],
        )

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> ProjectMemory:
        return ProjectMemory(
            id=row["id"],
            project_id=row["project_id"],
            memory_type=MemoryType(row["memory_type"]),
            key=row["key"],
            value=row["value"],
            importance=int(row["importance"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    # Personas
    # ------------------------------------------------------------------
    def save_persona(self, persona: Persona) -> Persona:
        prefs = persona.communication_preferences
        with self._lock:
            self.connection.execute(
                """
                INSERT INTO personas(
                    id, project_id, user_id, archetype, specialization, display_name,
                    voice, intervention_style, focus_area, domain_knowledge, domain_metrics,
                    custom_instructions, communication_preferences, collaborators,
                    primary_focus, defer_to, active, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    archetype = excluded.archetype,
                    specialization = excluded.specialization,
                    display_name = excluded.display_name,
                    voice = excluded.voice,
                    intervention_style = excluded.intervention_style,
                    focus_area = excluded.focus_area,
                    domain_knowledge = excluded.domain_knowledge,
                    domain_metrics = excluded.domain_metrics,
                    custom_instructions = excluded.custom_instructions,
                    communication_preferences = excluded.communication_preferences,
                    collaborators = excluded.collaborators,
                    primary_focus = excluded.primary_focus,
                    defer_to = excluded.defer_to,
                    active = excluded.active
                """,
                (
                    persona.id,
                    persona.project_id,
                    persona.user_id,
                    persona.archetype.value,
                    persona.specialization,
                    persona.display_name,
                    persona.voice,
                    persona.intervention_style,
                    persona.focus_area,
                    self._dump(list(persona.domain_knowledge)),
                    self._dump(list(persona.domain_metrics)),
                    persona.custom_instructions,
                    self._dump(prefs.to_payload()) if prefs else None,
                    self._dump(list(persona.collaborators)),
                    persona.primary_focus,
                    self._dump(dict(persona.defer_to)),
                    1 if persona.active else 0,
                    persona.created_at,
                ),
            )
            self.connection.commit()
        return persona

    def get_persona(self, persona_id: str) -> Optional[Persona]:
        cur = self.connection.execute("SELECT * FROM personas WHERE id = ?", (persona_id,))
        row = cur.fetchone()
        return self._row_to_persona(row) if row else None

    def list_personas(self, project_id: str, *, include_inactive: bool = False) -> List[Persona]:
        query = "SELECT * FROM personas WHERE project_id = ?"
        if not include_inactive:
            query += " AND active = 1"
        query += " ORDER BY created_at ASC, rowid ASC"
        cur = self.connection.execute(query, (project_id,))
        return [self._row_to_persona(row) for row in cur.fetchall()]

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------
    def upsert_project(self, project: Project) -> Project:
        with self._lock:
            self.connection.execute(
                """
                INSERT INTO projects(id, title, description, outcome, status, completion_type, health_score)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    description = excluded.description,
                    outcome = excluded.outcome,
                    status = excluded.status,
                    completion_type = excluded.completion_type,
                    health_score = excluded.health_score
                """,
                (
                    project.id,
                    project.title,
                    project.description,
                    project.outcome,
                    project.status,
                    project.completion_type,
                    project.health_score,
                ),
            )
            self.connection.commit()
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        cur = self.connection.execute("SELECT * FROM projects WHERE id = ?", (project_id,))
        row = cur.fetchone()
        if not row:
            return None
        return Project(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            outcome=row["outcome"],
            status=row["status"],
            completion_type=row["completion_type"],
            health_score=row["health_score"],
        )

    # ------------------------------------------------------------------
    # Conversations and messages
    # ------------------------------------------------------------------
    def get_or_create_conversation(self, project_id: str, user_id: str) -> Conversation:
        with self._lock:
            cur = self.connection.execute(
                "SELECT * FROM conversations WHERE project_id = ? AND user_id = ?",
                (project_id, user_id),
            )
            row = cur.fetchone()
            if row:
                return Conversation(
                    id=row["id"],
                    project_id=row["project_id"],
                    user_id=row["user_id"],
                    created_at=row["created_at"],
                )
            conversation = Conversation(id=str(uuid.uuid4()), project_id=project_id, user_id=user_id)
            self.connection.execute(
                """
                INSERT INTO conversations(id, project_id, user_id, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (conversation.id, project_id, user_id, conversation.created_at),
            )
            self.connection.commit()
            return conversation

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        cur = self.connection.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        row = cur.fetchone()
        if not row:
            return None
        return Conversation(
            id=row["id"],
            project_id=row["project_id"],
            user_id=row["user_id"],
            created_at=row["created_at"],
        )

    def append_message(self, message: ConversationMessage) -> ConversationMessage:
        with self._lock:
            if self.get_conversation(message.conversation_id) is None:
                raise NotFound("Conversation", message.conversation_id)
            cur = self.connection.execute(
                """
                INSERT INTO messages(
                    id, conversation_id, sender_id, sender_type, sender_name, content,
                    intent, confidence, reply_to, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    message.conversation_id,
                    message.sender_id,
                    message.sender_type.value,
                    message.sender_name,
                    message.content,
                    message.intent.value if message.intent else None,
                    message.confidence,
                    message.reply_to,
                    message.created_at,
                ),
            )
            self.connection.commit()
            return replace(message, seq=int(cur.lastrowid))

    def list_messages(
        self, conversation_id: str, *, offset: int = 0, limit: Optional[int] = None
    ) -> List[ConversationMessage]:
        cur = self.connection.execute(
            """
            SELECT * FROM messages WHERE conversation_id = ?
            ORDER BY created_at ASC, seq ASC
            LIMIT ? OFFSET ?
            """,
            (conversation_id, -1 if limit is None else limit, max(offset, 0)),
        )
        return [self._row_to_message(row) for row in cur.fetchall()]

    def list_recent_messages(self, conversation_id: str, limit: int) -> List[ConversationMessage]:
        cur = self.connection.execute(
            """
            SELECT * FROM messages WHERE conversation_id = ?
            ORDER BY created_at DESC, seq DESC
            LIMIT ?
            """,
            (conversation_id, limit),
        )
        rows = [self._row_to_message(row) for row in cur.fetchall()]
        rows.reverse()
        return rows

    def count_messages(self, conversation_id: str) -> int:
        cur = self.connection.execute(
            "SELECT COUNT(*) FROM messages WHERE conversation_id = ?", (conversation_id,)
        )
        return int(cur.fetchone()[0])

    # ------------------------------------------------------------------
    # Short-term memory
    # ------------------------------------------------------------------
    def get_summary(self, conversation_id: str) -> ConversationSummary:
        cur = self.connection.execute(
            """
            SELECT summary, last_summary_at, message_count_at_summary
            FROM conversations WHERE id = ?
            """,
            (conversation_id,),
        )
        row = cur.fetchone()
        if not row:
            raise NotFound("Conversation", conversation_id)
        return ConversationSummary(
            conversation_id=conversation_id,
            summary=row["summary"],
            last_summary_at=row["last_summary_at"],
            message_count_at_summary=int(row["message_count_at_summary"] or 0),
        )

    def compare_and_set_summary(
        self,
        conversation_id: str,
        *,
        expected_count: int,
        summary: str,
        message_count: int,
        summarized_at: str,
    ) -> bool:
        with self._lock:
            cur = self.connection.execute(
                """
                UPDATE conversations
                SET summary = ?, last_summary_at = ?, message_count_at_summary = ?
                WHERE id = ? AND message_count_at_summary = ?
                """,
                (summary, summarized_at, message_count, conversation_id, expected_count),
            )
            self.connection.commit()
            return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Medium-term memory
    # ------------------------------------------------------------------
    _LIVE = "(expires_at IS NULL OR expires_at > ?)"

    def list_memories(self, project_id: str, *, now: str) -> List[ProjectMemory]:
        cur = self.connection.execute(
            f"""
            SELECT * FROM project_memory
            WHERE project_id = ? AND {self._LIVE}
            ORDER BY importance DESC, created_at DESC, seq DESC
            """,
            (project_id, now),
        )
        return [self._row_to_memory(row) for row in cur.fetchall()]

    def get_memory(self, project_id: str, key: str, *, now: str) -> Optional[ProjectMemory]:
        cur = self.connection.execute(
            f"SELECT * FROM project_memory WHERE project_id = ? AND key = ? AND {self._LIVE}",
            (project_id, key, now),
        )
        row = cur.fetchone()
        return self._row_to_memory(row) if row else None

    def upsert_memory_capped(
        self, memory: ProjectMemory, *, cap: int, now: str
    ) -> Tuple[ProjectMemory, Optional[ProjectMemory]]:
        """Upsert by (project, key); on a fresh insert keep at most ``cap`` live records.

        Returns the stored record and the evicted one, if any.  Both steps
        run under the store lock in one transaction, so concurrent inserts
        can never evict twice for the same overflow.
        """

        evicted: Optional[ProjectMemory] = None
        with self._lock:
            cur = self.connection.execute(
                "SELECT * FROM project_memory WHERE project_id = ? AND key = ?",
                (memory.project_id, memory.key),
            )
            existing = cur.fetchone()
            live_existing = existing is not None and (
                existing["expires_at"] is None or existing["expires_at"] > now
            )
            if existing is not None and live_existing:
                self.connection.execute(
                    """
                    UPDATE project_memory
                    SET memory_type = ?, value = ?, importance = ?, expires_at = ?, updated_at = ?
                    WHERE seq = ?
                    """,
                    (
                        memory.memory_type.value,
                        memory.value,
                        memory.importance,
                        memory.expires_at,
                        now,
                        existing["seq"],
                    ),
                )
                self.connection.commit()
                stored = replace(memory, id=existing["id"], created_at=existing["created_at"], updated_at=now)
                return stored, None

            if existing is not None:
                # an expired record still holds the unique key
                self.connection.execute("DELETE FROM project_memory WHERE seq = ?", (existing["seq"],))

            count_cur = self.connection.execute(
                f"SELECT COUNT(*) FROM project_memory WHERE project_id = ? AND {self._LIVE}",
                (memory.project_id, now),
            )
            live_count = int(count_cur.fetchone()[0])
            if live_count >= cap:
                victim_cur = self.connection.execute(
                    f"""
                    SELECT * FROM project_memory
                    WHERE project_id = ? AND {self._LIVE}
                    ORDER BY importance ASC, created_at ASC, seq ASC
                    LIMIT 1
                    """,
                    (memory.project_id, now),
                )
                victim = victim_cur.fetchone()
                if victim is not None:
                    evicted = self._row_to_memory(victim)
                    self.connection.execute("DELETE FROM project_memory WHERE seq = ?", (victim["seq"],))

            self.connection.execute(
                """
                INSERT INTO project_memory(
                    id, project_id, memory_type, key, value, importance,
                    expires_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    memory.id,
                    memory.project_id,
                    memory.memory_type.value,
                    memory.key,
                    memory.value,
                    memory.importance,
                    memory.expires_at,
                    memory.created_at,
                    memory.updated_at,
                ),
            )
            self.connection.commit()
        if evicted is not None:
            logger.info(
                "Evicted memory %r (importance %s) from project %s",
                evicted.key,
                evicted.importance,
                evicted.project_id,
            )
        return memory, evicted

    def delete_memory(self, project_id: str, key: str) -> bool:
        with self._lock:
            cur = self.connection.execute(
                "DELETE FROM project_memory WHERE project_id = ? AND key = ?",
                (project_id, key),
            )
            self.connection.commit()
            return cur.rowcount > 0

    def update_memory_importance(self, project_id: str, key: str, importance: int, *, now: str) -> bool:
        with self._lock:
            cur = self.connection.execute(
                f"""
                UPDATE project_memory SET importance = ?, updated_at = ?
                WHERE project_id = ? AND key = ? AND {self._LIVE}
                """,
                (importance, now, project_id, key, now),
            )
            self.connection.commit()
            return cur.rowcount == 1

    def delete_expired_memories(self, *, now: str) -> int:
        with self._lock:
            cur = self.connection.execute(
                "DELETE FROM project_memory WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now,),
            )
            self.connection.commit()
            return cur.rowcount

    def close(self) -> None:
        with self._lock:
            self.connection.close()


__all__ = ["MemoryStore", "SQLiteMemoryStore"]
