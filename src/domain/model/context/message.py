"""Conversation message model used by the context budgeting pipeline.

Message content is either plain text or an ordered list of typed parts.
Parts form a closed tagged union (``TextPart``, ``ToolUsePart``,
``ToolResultPart``); code that inspects content matches on the part class
rather than probing dictionary shapes.

Summaries and the messages they supersede reference each other only by
identifier (``condense_id`` / ``condense_parent``), so messages stay plain
values that can be copied, compared and serialized.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, ClassVar, Union


class MessageRole(str, Enum):
    """Conversation roles."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class MessagePriority(IntEnum):
    """Eviction priority, higher values are more protected.

    Lower-priority messages are evicted first when reclaiming budget.
    """

    DISPOSABLE = 0
    NORMAL = 1
    TOOL_PAIR = 2
    ANCHOR = 3


@dataclass(frozen=True)
class TextPart:
    """Plain text content part."""

    text: str

    type: ClassVar[str] = "text"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class ToolUsePart:
    """Tool invocation issued by the assistant."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    type: ClassVar[str] = "tool_use"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "id": self.id, "name": self.name, "input": self.input}


@dataclass(frozen=True)
class ToolResultPart:
    """Result payload answering a ``ToolUsePart`` with the same id."""

    tool_use_id: str
    content: str | list[TextPart] = ""
    is_error: bool = False
    compacted_at: float | None = None

    type: ClassVar[str] = "tool_result"

    @property
    def text(self) -> str:
        """Flattened textual payload."""
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.content)

    def to_dict(self) -> dict[str, Any]:
        content: Any = self.content
        if not isinstance(content, str):
            content = [part.to_dict() for part in content]
        data: dict[str, Any] = {
            "type": self.type,
            "tool_use_id": self.tool_use_id,
            "content": content,
            "is_error": self.is_error,
        }
        if self.compacted_at is not None:
            data["compacted_at"] = self.compacted_at
        return data


ContentPart = Union[TextPart, ToolUsePart, ToolResultPart]


def part_from_dict(data: dict[str, Any]) -> ContentPart:
    """Rebuild a content part from its serialized form."""
    part_type = data.get("type")
    if part_type == TextPart.type:
        return TextPart(text=data.get("text", ""))
    if part_type == ToolUsePart.type:
        return ToolUsePart(id=data["id"], name=data.get("name", ""), input=data.get("input") or {})
    if part_type == ToolResultPart.type:
        raw = data.get("content", "")
        content: str | list[TextPart]
        if isinstance(raw, str):
            content = raw
        else:
            content = [TextPart(text=item.get("text", "")) for item in raw]
        return ToolResultPart(
            tool_use_id=data["tool_use_id"],
            content=content,
            is_error=bool(data.get("is_error", False)),
            compacted_at=data.get("compacted_at"),
        )
    raise ValueError(f"Unknown content part type: {part_type!r}")


@dataclass
class ContextMessage:
    """One turn of conversation state.

    Attributes:
        id: Unique identifier.
        role: Conversation role.
        content: Plain text or an ordered list of typed parts.
        priority: Eviction priority, recomputed on each assignment pass.
        tokens: Precomputed token cost, if known.
        reasoning_content: Chain-of-thought text kept apart from displayed content.
        is_summary: Marks the message as a compaction artifact.
        condense_id: Compaction group this summary represents.
        condense_parent: Compaction group whose summary supersedes this message.
        created_at: Epoch seconds when the message was created.
        metadata: Free-form caller data.
    """

    id: str
    role: MessageRole | str
    content: str | list[ContentPart]
    priority: MessagePriority = MessagePriority.NORMAL
    tokens: int | None = None
    reasoning_content: str | None = None
    is_summary: bool = False
    condense_id: str | None = None
    condense_parent: str | None = None
    created_at: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.role, str) and not isinstance(self.role, MessageRole):
            self.role = MessageRole(self.role)

    @property
    def parts(self) -> list[ContentPart]:
        """Content as a part list (plain text becomes one ``TextPart``)."""
        if isinstance(self.content, str):
            return [TextPart(text=self.content)]
        return list(self.content)

    @property
    def text(self) -> str:
        """Concatenated text parts, ignoring tool parts."""
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.content if isinstance(part, TextPart))

    def copy(self) -> ContextMessage:
        """Deep copy, safe to hand to another pipeline stage."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        content: Any = self.content
        if not isinstance(content, str):
            content = [part.to_dict() for part in content]
        return {
            "id": self.id,
            "role": self.role.value,
            "content": content,
            "priority": int(self.priority),
            "tokens": self.tokens,
            "reasoning_content": self.reasoning_content,
            "is_summary": self.is_summary,
            "condense_id": self.condense_id,
            "condense_parent": self.condense_parent,
            "created_at": self.created_at,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContextMessage:
        """Deserialize from dictionary."""
        raw = data.get("content", "")
        content: str | list[ContentPart]
        if isinstance(raw, str):
            content = raw
        else:
            content = [part_from_dict(item) for item in raw]
        return cls(
            id=data["id"],
            role=MessageRole(data.get("role", "user")),
            content=content,
            priority=MessagePriority(data.get("priority", MessagePriority.NORMAL)),
            tokens=data.get("tokens"),
            reasoning_content=data.get("reasoning_content"),
            is_summary=bool(data.get("is_summary", False)),
            condense_id=data.get("condense_id"),
            condense_parent=data.get("condense_parent"),
            created_at=data.get("created_at"),
            metadata=dict(data.get("metadata") or {}),
        )
