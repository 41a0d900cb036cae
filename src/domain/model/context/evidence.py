"""Evidence pack value objects.

An ``EvidencePack`` is built once per request from the project summary,
the working set of files being edited, and ranked evidence snippets
collected by external providers (diff, code navigation, search).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EvidenceProviderType(str, Enum):
    """Sources of evidence, in descending trust order."""

    DIFF = "diff"
    LSP = "lsp"
    SEARCH = "search"


class SignalType(str, Enum):
    SYMBOL = "symbol"
    PATH = "path"
    ERROR_TOKEN = "error_token"
    STACK_FRAME = "stack_frame"


class SignalSource(str, Enum):
    USER_MESSAGE = "user_message"
    ERROR_OUTPUT = "error_output"
    GIT_DIFF = "git_diff"
    LSP_DIAGNOSTIC = "lsp_diagnostic"


@dataclass(frozen=True)
class Signal:
    """A typed hint about what the agent is working on.

    Attributes:
        type: Kind of signal.
        value: Symbol name, file path, error token or ``path:line`` frame.
        source: Where the signal was found.
        confidence: 0.0-1.0 extraction confidence.
        metadata: Extra data such as line numbers.
    """

    type: SignalType
    value: str
    source: SignalSource
    confidence: float = 1.0
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class Evidence:
    """A snippet of supporting material considered for the pack.

    ``score`` is assigned by the reranker; ``base_score`` comes from the
    provider that produced the item.
    """

    id: str
    provider: EvidenceProviderType
    path: str
    range: tuple[int, int]
    content: str
    tokens: int
    base_score: float = 0.0
    score: float = 0.0
    matched_signals: tuple[Signal, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def start_line(self) -> int:
        return self.range[0]


@dataclass(frozen=True)
class WorkingSetEntry:
    """A file the agent is actively editing."""

    path: str
    content: str
    tokens: int
    last_modified: float = 0.0


@dataclass(frozen=True)
class ProjectSummary:
    """Condensed description of the project state."""

    goal: str | None = None
    constraints: tuple[str, ...] = ()
    facts: tuple[str, ...] = ()
    decisions: tuple[str, ...] = ()
    questions: tuple[str, ...] = ()
    next_actions: tuple[str, ...] = ()
    tokens: int = 0


@dataclass(frozen=True)
class BudgetAllocation:
    """Token caps computed per pack build.

    Attributes:
        total: Total budget available to the pack.
        summary: Cap for the project summary.
        working_set: Cap for working-set files.
        evidence: Aggregate cap for all evidence.
        per_provider: Cap for each evidence provider.
    """

    total: int
    summary: int
    working_set: int
    evidence: int
    per_provider: dict[EvidenceProviderType, int] = field(default_factory=dict)


@dataclass(frozen=True)
class PackTelemetry:
    """Timing and selection statistics for one build."""

    allocate_ms: float = 0.0
    rank_ms: float = 0.0
    fit_ms: float = 0.0
    total_ms: float = 0.0
    candidate_count: int = 0
    accepted_count: int = 0
    tokens_saved: int = 0
    fallback_used: bool = False
    provider_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allocate_ms": self.allocate_ms,
            "rank_ms": self.rank_ms,
            "fit_ms": self.fit_ms,
            "total_ms": self.total_ms,
            "candidate_count": self.candidate_count,
            "accepted_count": self.accepted_count,
            "tokens_saved": self.tokens_saved,
            "fallback_used": self.fallback_used,
            "provider_counts": dict(self.provider_counts),
        }


@dataclass(frozen=True)
class EvidencePack:
    """Assembled context returned to the caller. Immutable."""

    summary: ProjectSummary
    working_set: tuple[WorkingSetEntry, ...]
    evidence: tuple[Evidence, ...]
    total_tokens: int
    budget_used: float
    telemetry: PackTelemetry
