"""Chain-of-thought block handling for reasoning models.

Some reasoning models (the DeepSeek family) expect every assistant turn in
the history to carry reasoning content. After compaction the summary
message has none, so a templated block is injected. The reverse direction,
``extract_reasoning_content``, mines earlier reasoning for conclusions that
should survive into a summary.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Literal, Optional, Sequence

from src.domain.model.context.message import ContextMessage, MessageRole

ReasoningModelFamily = Literal["deepseek", "deepseek-r1"]

DEEPSEEK_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in ("deepseek", "deep-seek", "deepseek-r1", "deepseek-v3", "deepseek-coder")
)

DEFAULT_THINKING_PREFIX = "Let me analyze the context and summarize the key points..."

REASONING_BLOCK_TEMPLATE = (
    "<thinking>\n"
    "{prefix}\n"
    "\n"
    "Context Analysis:\n"
    "- Reviewing conversation history and key decisions\n"
    "- Identifying important technical details\n"
    "- Preserving critical information for continuation\n"
    "</thinking>"
)

THINKING_BLOCK_PATTERN = re.compile(r"<thinking>(.*?)</thinking>", re.IGNORECASE | re.DOTALL)

# Ordered: explicit markers first, then first-person intent.
CONCLUSION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"(?:^|\n)\s*[-*]\s*(?:conclusion|decision|result|therefore|hence|thus|finally|in summary)"
        r"[:\s]+(.*?)(?=\n|\Z)",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:^|\n)\s*(?:therefore|hence|thus|finally|in summary)[,:]?\s*(.*?)(?=\n|\Z)",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:^|\n)\s*(?:the answer is|i will|i should|we need to)[:\s]*(.*?)(?=\n|\Z)",
        re.IGNORECASE,
    ),
)

KEY_SENTENCE_WORDS = ("need", "should", "will", "must", "important")
MIN_CONCLUSION_LENGTH = 10
MAX_CONCLUSION_LENGTH = 200
SUMMARY_HEADING = "## Key Reasoning Conclusions"


@dataclass(frozen=True)
class ReasoningBlockOptions:
    thinking_prefix: str = DEFAULT_THINKING_PREFIX
    include_timestamp: bool = False


@dataclass(frozen=True)
class ReasoningBlockResult:
    message: ContextMessage
    was_added: bool
    reasoning_content: Optional[str] = None


@dataclass(frozen=True)
class ExtractedReasoning:
    conclusions: list[str]
    messages_with_reasoning: int
    summary_text: str


def requires_reasoning_block(model_name: Optional[str]) -> bool:
    """True for models that need reasoning content on assistant turns."""
    if not model_name:
        return False
    return any(pattern.search(model_name) for pattern in DEEPSEEK_PATTERNS)


def detect_model_family(model_name: Optional[str]) -> Optional[ReasoningModelFamily]:
    if not model_name:
        return None
    if "deepseek-r1" in model_name.lower():
        return "deepseek-r1"
    if requires_reasoning_block(model_name):
        return "deepseek"
    return None


def create_reasoning_block(options: Optional[ReasoningBlockOptions] = None) -> str:
    """Render the synthetic thinking block."""
    options = options or ReasoningBlockOptions()
    content = REASONING_BLOCK_TEMPLATE.replace("{prefix}", options.thinking_prefix)
    if options.include_timestamp:
        timestamp = datetime.now(UTC).isoformat()
        content = content.replace("</thinking>", f"\nGenerated at: {timestamp}\n</thinking>")
    return content


def add_reasoning_block(
    message: ContextMessage, options: Optional[ReasoningBlockOptions] = None
) -> ReasoningBlockResult:
    """Prepend a thinking block to an assistant message's reasoning content.

    Existing reasoning is kept after the new block. Non-assistant messages
    are returned unchanged. The input message is not modified.
    """
    if message.role != MessageRole.ASSISTANT:
        return ReasoningBlockResult(message=message, was_added=False)

    block = create_reasoning_block(options)
    combined = f"{block}\n\n{message.reasoning_content}" if message.reasoning_content else block
    return ReasoningBlockResult(
        message=replace(message, reasoning_content=combined),
        was_added=True,
        reasoning_content=block,
    )


def process_for_model(
    message: ContextMessage,
    model_name: str,
    options: Optional[ReasoningBlockOptions] = None,
) -> ReasoningBlockResult:
    """Add a reasoning block only when the model requires one."""
    if not requires_reasoning_block(model_name):
        return ReasoningBlockResult(message=message, was_added=False)
    return add_reasoning_block(message, options)


def _extract_key_sentences(text: str) -> list[str]:
    sentences = [sentence.strip() for sentence in re.split(r"[.!?]+", text)]
    key = [
        sentence
        for sentence in sentences
        if 20 < len(sentence) < 150
        and any(word in sentence.lower() for word in KEY_SENTENCE_WORDS)
    ]
    return key[:3]


def extract_conclusions(text: str) -> list[str]:
    """Conclusions found in one block of reasoning text."""
    conclusions: list[str] = []
    for pattern in CONCLUSION_PATTERNS:
        for match in pattern.finditer(text):
            conclusion = match.group(1).strip()
            if MIN_CONCLUSION_LENGTH < len(conclusion) < MAX_CONCLUSION_LENGTH:
                conclusions.append(conclusion)
    if not conclusions:
        conclusions.extend(_extract_key_sentences(text))
    return conclusions


def format_reasoning_for_summary(conclusions: Sequence[str]) -> str:
    if not conclusions:
        return ""
    lines = "\n".join(f"- {conclusion}" for conclusion in conclusions)
    return f"{SUMMARY_HEADING}\n{lines}"


def extract_reasoning_content(messages: Sequence[ContextMessage]) -> ExtractedReasoning:
    """Collect conclusions from assistant reasoning.

    Looks at ``reasoning_content`` and at ``<thinking>`` blocks inline in
    text content. Duplicates are removed keeping first occurrence.
    """
    conclusions: list[str] = []
    messages_with_reasoning = 0

    for message in messages:
        if message.role != MessageRole.ASSISTANT:
            continue

        if message.reasoning_content:
            messages_with_reasoning += 1
            conclusions.extend(extract_conclusions(message.reasoning_content))

        for match in THINKING_BLOCK_PATTERN.finditer(message.text):
            thinking = match.group(1)
            if not thinking:
                continue
            found = extract_conclusions(thinking)
            conclusions.extend(found)
            if found:
                messages_with_reasoning += 1

    unique = list(dict.fromkeys(conclusions))
    return ExtractedReasoning(
        conclusions=unique,
        messages_with_reasoning=messages_with_reasoning,
        summary_text=format_reasoning_for_summary(unique),
    )
