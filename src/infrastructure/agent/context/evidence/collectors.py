"""Conversion of provider results into ``Evidence`` values.

Providers (git diff, language servers, code search) run outside the
engine. These helpers turn what they return into scored evidence and
merge duplicates. No I/O happens here.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Iterable, Literal, Optional, Sequence

from src.domain.model.context.evidence import Evidence, EvidenceProviderType, Signal
from src.infrastructure.agent.context.evidence.reranker import (
    LSP_REFERENCE_WEIGHT,
    PROVIDER_BASE_WEIGHTS,
)

TOKENS_PER_CHAR = 0.25
DEFAULT_CONTEXT_LINES = 3


def estimate_text_tokens(text: str) -> int:
    return math.ceil(len(text) * TOKENS_PER_CHAR)


def _evidence_id(provider: EvidenceProviderType, path: str, start: int, end: int) -> str:
    return f"{provider.value}:{path}:{start}-{end}"


@dataclass(frozen=True)
class DiffHunk:
    path: str
    start_line: int
    end_line: int
    content: str
    change_type: Literal["added", "modified", "deleted", "renamed"] = "modified"
    modified_at: Optional[float] = None


@dataclass(frozen=True)
class LspLocation:
    """A definition or reference location; lines are 0-based as in LSP."""

    path: str
    start_line: int
    end_line: int
    kind: Literal["definition", "reference"] = "definition"
    content: Optional[str] = None


@dataclass(frozen=True)
class SearchMatch:
    """A single search hit; ``line`` is 1-based."""

    path: str
    line: int
    content: str
    context_before: tuple[str, ...] = ()
    context_after: tuple[str, ...] = ()


@dataclass
class _Range:
    start: int
    end: int
    matches: list[SearchMatch] = field(default_factory=list)


def diff_to_evidence(hunks: Iterable[DiffHunk], signals: Sequence[Signal] = ()) -> list[Evidence]:
    """Every changed hunk becomes top-trust evidence."""
    weight = PROVIDER_BASE_WEIGHTS[EvidenceProviderType.DIFF]
    evidence = []
    for hunk in hunks:
        if hunk.change_type == "deleted":
            continue
        matched = tuple(s for s in signals if s.value in hunk.path or s.value in hunk.content)
        metadata: dict = {"change_type": hunk.change_type}
        if hunk.modified_at is not None:
            metadata["modified_at"] = hunk.modified_at
        evidence.append(
            Evidence(
                id=_evidence_id(EvidenceProviderType.DIFF, hunk.path, hunk.start_line, hunk.end_line),
                provider=EvidenceProviderType.DIFF,
                path=hunk.path,
                range=(hunk.start_line, hunk.end_line),
                content=hunk.content,
                tokens=estimate_text_tokens(hunk.content),
                base_score=float(weight),
                matched_signals=matched,
                metadata=metadata,
            )
        )
    return evidence


def lsp_to_evidence(
    locations: Iterable[LspLocation],
    signal: Signal,
    context_lines: int = DEFAULT_CONTEXT_LINES,
) -> list[Evidence]:
    """Definitions weigh 60 and references 30, scaled by signal confidence."""
    evidence = []
    for location in locations:
        weight = (
            PROVIDER_BASE_WEIGHTS[EvidenceProviderType.LSP]
            if location.kind == "definition"
            else LSP_REFERENCE_WEIGHT
        )
        start = max(1, location.start_line + 1 - context_lines)
        end = location.end_line + 1 + context_lines
        content = location.content or f"[LSP {location.kind}: {signal.value}]"
        evidence.append(
            Evidence(
                id=_evidence_id(EvidenceProviderType.LSP, location.path, start, end),
                provider=EvidenceProviderType.LSP,
                path=location.path,
                range=(start, end),
                content=content,
                tokens=estimate_text_tokens(content),
                base_score=weight * signal.confidence,
                matched_signals=(signal,),
                metadata={"symbol_kind": location.kind},
            )
        )
    return evidence


def _merge_ranges(matches: Sequence[SearchMatch], context_lines: int) -> list[_Range]:
    ranges: list[_Range] = []
    for match in sorted(matches, key=lambda m: m.line):
        start = max(1, match.line - context_lines)
        end = match.line + context_lines
        if ranges and start <= ranges[-1].end + 1:
            ranges[-1].end = max(ranges[-1].end, end)
            ranges[-1].matches.append(match)
        else:
            ranges.append(_Range(start=start, end=end, matches=[match]))
    return ranges


def _range_content(matches: Sequence[SearchMatch]) -> str:
    lines: list[str] = list(matches[0].context_before)
    for match in matches:
        if match.content not in lines:
            lines.append(match.content)
        for after in match.context_after:
            if after not in lines:
                lines.append(after)
    return "\n".join(lines)


def search_to_evidence(
    matches: Iterable[SearchMatch],
    signal: Signal,
    context_lines: int = DEFAULT_CONTEXT_LINES,
) -> list[Evidence]:
    """Group hits per file, merge nearby lines, score by log2(hits + 1)."""
    by_file: dict[str, list[SearchMatch]] = {}
    for match in matches:
        by_file.setdefault(match.path, []).append(match)

    weight = PROVIDER_BASE_WEIGHTS[EvidenceProviderType.SEARCH]
    evidence = []
    for path, file_matches in by_file.items():
        for merged in _merge_ranges(file_matches, context_lines):
            content = _range_content(merged.matches)
            evidence.append(
                Evidence(
                    id=_evidence_id(EvidenceProviderType.SEARCH, path, merged.start, merged.end),
                    provider=EvidenceProviderType.SEARCH,
                    path=path,
                    range=(merged.start, merged.end),
                    content=content,
                    tokens=estimate_text_tokens(content),
                    base_score=weight * math.log2(len(merged.matches) + 1),
                    matched_signals=(signal,),
                    metadata={"match_count": len(merged.matches)},
                )
            )
    return evidence


def merge_evidence(items: Iterable[Evidence]) -> list[Evidence]:
    """Collapse items sharing provider, path and range.

    Keeps the higher base score, unions matched signals and sums match
    counts. First-seen order is preserved.
    """
    merged: dict[tuple[EvidenceProviderType, str, tuple[int, int]], Evidence] = {}
    for item in items:
        key = (item.provider, item.path, item.range)
        existing = merged.get(key)
        if existing is None:
            merged[key] = item
            continue
        signals = list(existing.matched_signals)
        for signal in item.matched_signals:
            if not any(s.type == signal.type and s.value == signal.value for s in signals):
                signals.append(signal)
        metadata = {**existing.metadata}
        metadata["match_count"] = existing.metadata.get("match_count", 1) + item.metadata.get(
            "match_count", 1
        )
        merged[key] = replace(
            existing,
            base_score=max(existing.base_score, item.base_score),
            matched_signals=tuple(signals),
            metadata=metadata,
        )
    return list(merged.values())
