"""Context engine domain models."""

from src.domain.model.context.evidence import (
    BudgetAllocation,
    Evidence,
    EvidencePack,
    EvidenceProviderType,
    PackTelemetry,
    ProjectSummary,
    Signal,
    SignalSource,
    SignalType,
    WorkingSetEntry,
)
from src.domain.model.context.message import (
    ContentPart,
    ContextMessage,
    MessagePriority,
    MessageRole,
    TextPart,
    ToolResultPart,
    ToolUsePart,
    part_from_dict,
)

__all__ = [
    "BudgetAllocation",
    "ContentPart",
    "ContextMessage",
    "Evidence",
    "EvidencePack",
    "EvidenceProviderType",
    "MessagePriority",
    "MessageRole",
    "PackTelemetry",
    "ProjectSummary",
    "Signal",
    "SignalSource",
    "SignalType",
    "TextPart",
    "ToolResultPart",
    "ToolUsePart",
    "WorkingSetEntry",
    "part_from_dict",
]
