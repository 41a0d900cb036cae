"""
Summary quality validation.

Checks that a compaction summary kept the details an agent needs to carry on:
identifiers, code references, file paths and error messages. Two modes:

- Rule-based: regex extraction on both texts and retention ratios (fast, local)
- LLM-based: an evaluator model scores completeness, accuracy and actionability

Validation never raises on a poor summary; it reports ``passed=False`` with
human-readable warnings and leaves the decision to the caller.
"""

import logging
import math
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence, Union

import orjson

from src.domain.model.context.message import ContextMessage
from src.infrastructure.agent.context.improvements.types import (
    LLMValidationResult,
    LostItem,
    RuleValidationResult,
    SummaryQualityConfig,
    SummaryQualityReport,
)

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
MIN_LLM_SCORE = 6
DEFAULT_LLM_SCORE = 5.0
MIN_PATH_RETENTION = 0.5
MAX_LOST_CODE_REFS = 10

_FUNCTION_NAME = re.compile(r"(?:async\s+)?(?:function|def)\s+(\w+)|(\w+)\s*\(")
_CLASS_NAME = re.compile(r"(?:class|interface|type|enum)\s+(\w+)")
_FILE_PATH = re.compile(
    r"(?:/[\w.-]+)+\.\w+"
    r"|(?:\.{0,2}/)?(?:[\w.-]+/)+[\w.-]+\.\w+"
    r"|[\w-]+/[\w.-]+\.\w+"
)
_CODE_REF = re.compile(r"`{1,3}[^`]+`{1,3}")
_ERROR_MESSAGE = re.compile(
    r"(?:Error|TypeError|ReferenceError|SyntaxError|RangeError|ValueError|KeyError):\s*[^\n]+"
    r"|at\s+[\w./]+:\d+"
)
_IMPORT_EXPORT = re.compile(
    r"(?:import|export)\s+(?:(?:type\s+)?\{[^}]+\}|\w+|\*)\s*(?:from\s+['\"][^'\"]+['\"])?"
)
_PACKAGE_NAME = re.compile(r"@[\w-]+/[\w-]+|[\w-]{2,}(?:-[\w-]+)+")
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

COMMON_WORDS = frozenset(
    {
        "if", "for", "while", "switch", "return", "new", "this", "that", "then",
        "else", "case", "break", "continue", "throw", "catch", "try", "the", "a",
        "an", "is", "are", "was", "be", "to", "of", "and", "or", "not", "in", "on",
        "at", "by", "with", "from", "as", "it", "its", "use", "get", "set", "has",
        "have", "do", "does", "did", "will", "would", "could", "should", "may",
        "might", "must", "can",
    }
)

LLM_EVALUATION_PROMPT = """You are evaluating the quality of a summary. Rate the following aspects on a scale of 0-10:

1. **Completeness**: Does the summary capture all key information from the original?
2. **Accuracy**: Is the summary technically accurate and free of misrepresentations?
3. **Actionability**: Can someone continue the task based solely on the summary?

Respond in JSON format:
{{
  "completeness_score": <0-10>,
  "accuracy_score": <0-10>,
  "actionability_score": <0-10>,
  "suggestions": ["suggestion1", "suggestion2"]
}}

Original content:
---
{original}
---

Summary:
---
{summary}
---

Evaluation:"""


class QualityValidationLLMClient(Protocol):
    """Evaluator used for deep validation."""

    async def evaluate(self, original: str, summary: str, prompt: str) -> str: ...


@dataclass
class ExtractedTerms:
    """Technical terms found in a text, grouped by kind."""

    function_names: set[str] = field(default_factory=set)
    class_names: set[str] = field(default_factory=set)
    file_paths: set[str] = field(default_factory=set)
    code_refs: set[str] = field(default_factory=set)
    error_messages: set[str] = field(default_factory=set)
    imports: set[str] = field(default_factory=set)
    package_names: set[str] = field(default_factory=set)


def is_common_word(word: str) -> bool:
    return word.lower() in COMMON_WORDS


def extract_technical_terms(content: str) -> ExtractedTerms:
    terms = ExtractedTerms()
    for match in _FUNCTION_NAME.finditer(content):
        name = match.group(1) or match.group(2)
        if name and len(name) > 1 and not is_common_word(name):
            terms.function_names.add(name)
    terms.class_names.update(m.group(1) for m in _CLASS_NAME.finditer(content))
    terms.file_paths.update(m.group(0) for m in _FILE_PATH.finditer(content))
    terms.code_refs.update(m.group(0) for m in _CODE_REF.finditer(content))
    terms.error_messages.update(m.group(0) for m in _ERROR_MESSAGE.finditer(content))
    terms.imports.update(m.group(0) for m in _IMPORT_EXPORT.finditer(content))
    terms.package_names.update(m.group(0) for m in _PACKAGE_NAME.finditer(content))
    return terms


def messages_to_text(messages: Sequence[ContextMessage]) -> str:
    return "\n\n".join(message.text for message in messages)


def _basename(path: str) -> str:
    return path.rsplit("/", 1)[-1]


def _clamp_score(value: object) -> float:
    try:
        score = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_LLM_SCORE
    return max(0.0, min(10.0, score))


class SummaryQualityValidator:
    """
    Validate compaction summaries against their source messages.

    Example:
        validator = SummaryQualityValidator(SummaryQualityConfig())
        report = await validator.validate(messages, summary_text)
        if not report.passed:
            logger.warning(f"Summary quality issues: {report.warnings}")
    """

    def __init__(
        self,
        config: Optional[SummaryQualityConfig] = None,
        llm_client: Optional[QualityValidationLLMClient] = None,
    ):
        self.config = config or SummaryQualityConfig()
        self._llm_client = llm_client

    def set_llm_client(self, client: QualityValidationLLMClient) -> None:
        self._llm_client = client

    async def validate(
        self,
        original: Union[str, Sequence[ContextMessage]],
        summary: str,
    ) -> SummaryQualityReport:
        original_text = original if isinstance(original, str) else messages_to_text(original)
        original_tokens = math.ceil(len(original_text) / CHARS_PER_TOKEN)
        summary_tokens = math.ceil(len(summary) / CHARS_PER_TOKEN)
        if original_tokens == 0:
            compression_ratio = 0.0
        elif summary_tokens == 0:
            compression_ratio = math.inf
        else:
            compression_ratio = original_tokens / summary_tokens

        warnings: list[str] = []
        passed = True

        rule_results: Optional[RuleValidationResult] = None
        if self.config.enable_rule_validation:
            rule_results = self.validate_with_rules(original_text, summary)
            if rule_results.tech_term_retention < self.config.min_tech_term_retention:
                warnings.append(
                    f"Technical term retention ({rule_results.tech_term_retention:.1%}) "
                    f"below threshold ({self.config.min_tech_term_retention:.1%})"
                )
                passed = False
            if rule_results.code_ref_retention < self.config.min_code_ref_retention:
                warnings.append(
                    f"Code reference retention ({rule_results.code_ref_retention:.1%}) "
                    f"below threshold ({self.config.min_code_ref_retention:.1%})"
                )
                passed = False
            if not rule_results.critical_paths_preserved:
                warnings.append("Critical file paths were not preserved in summary")
                passed = False

            lost_by_type: dict[str, int] = defaultdict(int)
            for item in rule_results.lost_items:
                lost_by_type[item.type] += 1
            for item_type, count in lost_by_type.items():
                warnings.append(f"Lost {count} {item_type.replace('_', ' ')}(s)")

        if compression_ratio > self.config.max_compression_ratio:
            warnings.append(
                f"Compression ratio ({compression_ratio:.1f}x) exceeds maximum "
                f"({self.config.max_compression_ratio:g}x) - summary may be over-compressed"
            )
            passed = False

        llm_results: Optional[LLMValidationResult] = None
        if self.config.enable_llm_validation and self._llm_client is not None:
            try:
                llm_results = await self.validate_with_llm(original_text, summary)
            except Exception as e:
                logger.warning(
                    f"[SummaryQuality] LLM validation failed, using rule results only: {e}"
                )
                warnings.append("LLM validation was skipped due to error")
            else:
                for label, score in (
                    ("completeness", llm_results.completeness_score),
                    ("accuracy", llm_results.accuracy_score),
                    ("actionability", llm_results.actionability_score),
                ):
                    if score < MIN_LLM_SCORE:
                        warnings.append(f"LLM {label} score ({score:g}/10) below minimum")
                        passed = False

        logger.debug(
            f"[SummaryQuality] passed={passed} ratio={compression_ratio:.2f} "
            f"warnings={len(warnings)}"
        )
        return SummaryQualityReport(
            passed=passed,
            original_tokens=original_tokens,
            summary_tokens=summary_tokens,
            compression_ratio=compression_ratio,
            rule_results=rule_results,
            llm_results=llm_results,
            warnings=tuple(warnings),
        )

    def validate_with_rules(self, original: str, summary: str) -> RuleValidationResult:
        """Retention of identifiers, code references and paths, without model calls."""
        original_terms = extract_technical_terms(original)
        summary_terms = extract_technical_terms(summary)
        summary_lower = summary.lower()

        tech_term_retention = self._retention(
            original_terms.function_names | original_terms.class_names,
            summary_terms.function_names | summary_terms.class_names,
            summary_lower,
        )
        code_ref_retention = self._retention(
            original_terms.code_refs, summary_terms.code_refs, summary_lower
        )
        paths_preserved = self._paths_preserved(
            original_terms.file_paths, summary_terms.file_paths, summary
        )
        return RuleValidationResult(
            tech_term_retention=tech_term_retention,
            code_ref_retention=code_ref_retention,
            critical_paths_preserved=paths_preserved,
            lost_items=tuple(self._lost_items(original_terms, summary_terms, summary)),
        )

    async def validate_with_llm(self, original: str, summary: str) -> LLMValidationResult:
        """Score the summary with the configured evaluator.

        Raises:
            RuntimeError: If no evaluator is configured.
        """
        if self._llm_client is None:
            raise RuntimeError("LLM client not configured for deep validation")

        prompt = LLM_EVALUATION_PROMPT.format(original=original, summary=summary)
        response = await self._llm_client.evaluate(original, summary, prompt)

        match = _JSON_OBJECT.search(response)
        try:
            if match is None:
                raise ValueError("No JSON found in LLM response")
            data = orjson.loads(match.group(0))
            if not isinstance(data, dict):
                raise ValueError("LLM response is not a JSON object")
        except (orjson.JSONDecodeError, ValueError) as e:
            logger.warning(f"[SummaryQuality] Failed to parse LLM evaluation response: {e}")
            return LLMValidationResult(
                completeness_score=DEFAULT_LLM_SCORE,
                accuracy_score=DEFAULT_LLM_SCORE,
                actionability_score=DEFAULT_LLM_SCORE,
                suggestions=("Unable to parse LLM evaluation response",),
            )

        suggestions = data.get("suggestions")
        return LLMValidationResult(
            completeness_score=_clamp_score(data.get("completeness_score", DEFAULT_LLM_SCORE)),
            accuracy_score=_clamp_score(data.get("accuracy_score", DEFAULT_LLM_SCORE)),
            actionability_score=_clamp_score(data.get("actionability_score", DEFAULT_LLM_SCORE)),
            suggestions=tuple(str(s) for s in suggestions) if isinstance(suggestions, list) else (),
        )

    @staticmethod
    def _retention(original: set[str], summary: set[str], summary_lower: str) -> float:
        if not original:
            return 1.0
        summary_set = {term.lower() for term in summary}
        retained = sum(
            1
            for term in original
            if term.lower() in summary_set or term.lower() in summary_lower
        )
        return retained / len(original)

    @staticmethod
    def _paths_preserved(original: set[str], summary: set[str], summary_text: str) -> bool:
        if not original:
            return True
        preserved = sum(
            1 for path in original if path in summary or _basename(path) in summary_text
        )
        return preserved >= len(original) * MIN_PATH_RETENTION

    @staticmethod
    def _lost_items(
        original: ExtractedTerms, summary: ExtractedTerms, summary_text: str
    ) -> list[LostItem]:
        summary_lower = summary_text.lower()
        lost: list[LostItem] = []

        for name in sorted(original.function_names):
            if name not in summary.function_names and name.lower() not in summary_lower:
                lost.append(LostItem(type="tech_term", original=name, context=f"function {name}"))
        for name in sorted(original.class_names):
            if name not in summary.class_names and name.lower() not in summary_lower:
                lost.append(
                    LostItem(type="tech_term", original=name, context=f"class/interface {name}")
                )
        for path in sorted(original.file_paths):
            if path not in summary.file_paths and _basename(path) not in summary_text:
                lost.append(LostItem(type="file_path", original=path, context=path))
        for error in sorted(original.error_messages):
            if error not in summary.error_messages and error.lower() not in summary_lower:
                lost.append(LostItem(type="error_message", original=error, context=error))

        code_refs_lost = 0
        for ref in sorted(original.code_refs):
            if code_refs_lost >= MAX_LOST_CODE_REFS:
                break
            if ref in summary.code_refs:
                continue
            inner = ref.strip("`")
            if len(inner) > 3 and inner.lower() not in summary_lower:
                lost.append(LostItem(type="code_ref", original=ref, context=ref))
                code_refs_lost += 1
        return lost


def create_summary_quality_validator(**overrides) -> SummaryQualityValidator:
    """Validator with default thresholds, overridden by keyword."""
    return SummaryQualityValidator(SummaryQualityConfig(**overrides))
