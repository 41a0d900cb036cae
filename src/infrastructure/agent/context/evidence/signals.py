"""Signal extraction from raw agent input.

Turns the user message, captured error output and the working-tree diff
into typed ``Signal`` values that the reranker matches evidence against.
Pure and stateless.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from src.domain.model.context.evidence import Signal, SignalSource, SignalType

_PATH_RE = re.compile(
    r"(?<![\w/.-])((?:\.{0,2}/)?(?:[\w.-]+/)*[\w-]+\.[A-Za-z][\w]{0,7})(?::(\d+))?"
)
_BACKTICK_RE = re.compile(r"`([A-Za-z_][\w.]*)(?:\(\))?`")
_CALL_RE = re.compile(r"\b([A-Za-z_][\w]*(?:\.[A-Za-z_]\w*)*)\(")
_CAMEL_RE = re.compile(r"\b([A-Z][a-z0-9]+(?:[A-Z][a-z0-9]+)+)\b")
_SNAKE_RE = re.compile(r"\b([a-z][a-z0-9]*(?:_[a-z0-9]+)+)\b")
_ERROR_NAME_RE = re.compile(r"\b([A-Z]\w*(?:Error|Exception|Warning))\b")
_ERROR_CODE_RE = re.compile(r"\b(E[A-Z]{3,}|TS\d{4}|E\d{4})\b")
_PY_FRAME_RE = re.compile(r'File "([^"]+)", line (\d+)(?:, in (\w+))?')
_JS_FRAME_RE = re.compile(
    r"at (?:([\w.<>$]+) )?\(?((?:[\w.-]*/)*[\w.-]+\.\w+):(\d+)(?::\d+)?\)?"
)
_DIFF_FILE_RE = re.compile(r"^\+\+\+ b/(.+)$", re.MULTILINE)
_HUNK_CONTEXT_RE = re.compile(
    r"^@@[^@]*@@\s*(?:.*?\b(?:def|class|function|fn|func)\s+)?([A-Za-z_]\w*)",
    re.MULTILINE,
)
_SOURCE_EXT_RE = re.compile(r"\.(py|ts|tsx|js|jsx|go|rs|java|rb|md|json|toml|ya?ml)$")

# Words that look like identifiers but carry no signal.
_STOP_SYMBOLS = frozenset(
    {"print", "if", "for", "while", "return", "self", "this", "len", "str", "int"}
)


@dataclass(frozen=True)
class SignalInput:
    """Raw material for signal extraction."""

    user_message: Optional[str] = None
    error_output: Optional[str] = None
    git_diff: Optional[str] = None


class SignalExtractor:
    """Derive typed signals from user text, errors and diffs."""

    def __init__(self, max_signals: int = 50) -> None:
        self._max_signals = max_signals

    def extract(self, source: SignalInput) -> list[Signal]:
        signals: list[Signal] = []
        if source.user_message:
            signals.extend(self.from_user_message(source.user_message))
        if source.error_output:
            signals.extend(self.from_error_output(source.error_output))
        if source.git_diff:
            signals.extend(self.from_git_diff(source.git_diff))
        return dedupe_signals(signals)[: self._max_signals]

    def from_user_message(self, text: str) -> list[Signal]:
        user = SignalSource.USER_MESSAGE
        signals: list[Signal] = []
        for match in _BACKTICK_RE.finditer(text):
            signals.append(_signal(SignalType.SYMBOL, match.group(1), user, 0.9))
        for match in _CALL_RE.finditer(text):
            signals.append(_signal(SignalType.SYMBOL, match.group(1), user, 0.8))
        for pattern in (_CAMEL_RE, _SNAKE_RE):
            for match in pattern.finditer(text):
                signals.append(_signal(SignalType.SYMBOL, match.group(1), user, 0.6))
        signals.extend(_paths(text, user, 0.9))
        return signals

    def from_error_output(self, text: str) -> list[Signal]:
        error = SignalSource.ERROR_OUTPUT
        signals: list[Signal] = []
        for match in _PY_FRAME_RE.finditer(text):
            path, line, function = match.group(1), int(match.group(2)), match.group(3)
            signals.append(
                _signal(SignalType.STACK_FRAME, f"{path}:{line}", error, 0.95, path=path, line=line)
            )
            if function and function != "<module>":
                signals.append(_signal(SignalType.SYMBOL, function, error, 0.8))
        for match in _JS_FRAME_RE.finditer(text):
            function, path, line = match.group(1), match.group(2), int(match.group(3))
            signals.append(
                _signal(SignalType.STACK_FRAME, f"{path}:{line}", error, 0.9, path=path, line=line)
            )
            if function and function not in ("new", "async"):
                signals.append(_signal(SignalType.SYMBOL, function.split(".")[-1], error, 0.7))
        for pattern in (_ERROR_NAME_RE, _ERROR_CODE_RE):
            for match in pattern.finditer(text):
                signals.append(_signal(SignalType.ERROR_TOKEN, match.group(1), error, 0.85))
        signals.extend(_paths(text, error, 0.8))
        return signals

    def from_git_diff(self, diff: str) -> list[Signal]:
        diff_source = SignalSource.GIT_DIFF
        signals: list[Signal] = []
        for match in _DIFF_FILE_RE.finditer(diff):
            signals.append(_signal(SignalType.PATH, match.group(1).strip(), diff_source, 1.0))
        for match in _HUNK_CONTEXT_RE.finditer(diff):
            signals.append(_signal(SignalType.SYMBOL, match.group(1), diff_source, 0.7))
        return signals


def _signal(
    signal_type: SignalType,
    value: str,
    source: SignalSource,
    confidence: float,
    **metadata: object,
) -> Signal:
    return Signal(
        type=signal_type,
        value=value,
        source=source,
        confidence=confidence,
        metadata=dict(metadata),
    )


def _paths(text: str, source: SignalSource, confidence: float) -> list[Signal]:
    signals = []
    for match in _PATH_RE.finditer(text):
        path = match.group(1)
        # Bare version numbers and domains are not files.
        if "/" not in path and not _SOURCE_EXT_RE.search(path):
            continue
        metadata: dict[str, object] = {}
        if match.group(2):
            metadata["line"] = int(match.group(2))
        signals.append(_signal(SignalType.PATH, path, source, confidence, **metadata))
    return signals


def dedupe_signals(signals: Iterable[Signal]) -> list[Signal]:
    """Keep one signal per (type, value), preferring the highest confidence.

    Order of first appearance is preserved.
    """
    best: dict[tuple[SignalType, str], Signal] = {}
    for signal in signals:
        if signal.type == SignalType.SYMBOL and (
            len(signal.value) < 2 or signal.value in _STOP_SYMBOLS
        ):
            continue
        key = (signal.type, signal.value)
        current = best.get(key)
        if current is None or signal.confidence > current.confidence:
            best[key] = signal
    return list(best.values())
