"""Multi-persona conversational assistant core.

This package decides which simulated expert personas answer a user's message,
reconciles disagreement between them through a two-round debate, and keeps
bounded conversational memory.  It wires together

* a store interface with a SQLite implementation for personas, conversations and memory,
* short-term memory (recent window plus rolling summary) and medium-term project memory,
* a prompt composer that builds each persona's ordered instruction context, and
* an orchestrator that routes, checks for conflict, debates and synthesises.
"""

from .archetypes import Archetype
from .clients import LLMClient
from .composer import PromptComposer
from .errors import (
    ModelMalformedOutput,
    ModelRateLimited,
    ModelTimeout,
    ModelUnavailable,
    NotFound,
    RoundtableError,
    TurnCancelled,
)
from .factory import PersonaFactory
from .medium_term import MediumTermMemoryManager
from .orchestrator import OrchestratorPolicy, PersonaOrchestrator
from .runtime import RoundtableRuntime, main as runtime_main
from .schemas import (
    CommunicationPreferences,
    DebateResponse,
    MemoryType,
    MultiPerspectiveResponse,
    NoPersonaResponse,
    Persona,
    Project,
    ProjectMemory,
    PromptSegment,
    SingleResponse,
)
from .short_term import ShortTermMemoryManager
from .storage import MemoryStore, SQLiteMemoryStore

__all__ = [
    "Archetype",
    "CommunicationPreferences",
    "DebateResponse",
    "LLMClient",
    "MediumTermMemoryManager",
    "MemoryStore",
    "MemoryType",
    "ModelMalformedOutput",
    "ModelRateLimited",
    "ModelTimeout",
    "ModelUnavailable",
    "MultiPerspectiveResponse",
    "NoPersonaResponse",
    "NotFound",
    "OrchestratorPolicy",
    "Persona",
    "PersonaFactory",
    "PersonaOrchestrator",
    "Project",
    "ProjectMemory",
    "PromptComposer",
    "PromptSegment",
    "RoundtableError",
    "RoundtableRuntime",
    "SQLiteMemoryStore",
    "ShortTermMemoryManager",
    "SingleResponse",
    "TurnCancelled",
    "runtime_main",
]
