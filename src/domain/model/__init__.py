"""Domain models for the context engine."""

from src.domain.model.context import (
    ContextMessage,
    Evidence,
    EvidencePack,
    MessagePriority,
    MessageRole,
    Signal,
)

__all__ = [
    "ContextMessage",
    "MessagePriority",
    "MessageRole",
    "Evidence",
    "EvidencePack",
    "Signal",
]
