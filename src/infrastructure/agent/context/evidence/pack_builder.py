"""Evidence pack assembly.

``PackBuilder.build`` runs allocate -> rank -> fit and assembles an
immutable ``EvidencePack``. When too few evidence items survive budget
fitting it degrades to fallback mode: full evidence content is replaced by
fixed-cost ``// See path:line`` references, the project summary is kept in
full and the working set is dropped.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Sequence

from src.domain.model.context.evidence import (
    BudgetAllocation,
    Evidence,
    EvidencePack,
    PackTelemetry,
    ProjectSummary,
    Signal,
    WorkingSetEntry,
)
from src.infrastructure.agent.context.evidence.budget_allocator import (
    DEFAULT_RATIOS,
    BudgetAllocator,
    BudgetRatios,
    fit_to_budget,
)
from src.infrastructure.agent.context.evidence.reranker import (
    DEFAULT_WEIGHTS,
    Reranker,
    RerankWeights,
)
from src.infrastructure.agent.context.evidence.signals import SignalExtractor, SignalInput

logger = logging.getLogger(__name__)

DEFAULT_TOTAL_BUDGET = 8_000
DEFAULT_MIN_EVIDENCE_ITEMS = 3
FALLBACK_MAX_REFERENCES = 10
FALLBACK_REFERENCE_TOKENS = 10


@dataclass(frozen=True)
class PackBuilderConfig:
    """Pack builder settings.

    Attributes:
        total_budget: Tokens available to the whole pack.
        min_evidence_items: Below this many accepted items, fall back.
        enable_fallback: Allow fallback mode.
        ratios: Section and provider budget split.
        weights: Reranker feature weights.
    """

    total_budget: int = DEFAULT_TOTAL_BUDGET
    min_evidence_items: int = DEFAULT_MIN_EVIDENCE_ITEMS
    enable_fallback: bool = True
    ratios: BudgetRatios = DEFAULT_RATIOS
    weights: RerankWeights = DEFAULT_WEIGHTS


@dataclass(frozen=True)
class PackInput:
    """Already-collected material for one build.

    Signals are extracted from ``signal_input`` when ``signals`` is empty.
    """

    summary: ProjectSummary = field(default_factory=ProjectSummary)
    working_set: Sequence[WorkingSetEntry] = ()
    evidence: Sequence[Evidence] = ()
    signals: Sequence[Signal] = ()
    signal_input: Optional[SignalInput] = None


def format_reference(evidence: Evidence) -> str:
    return f"// See {evidence.path}:{evidence.start_line}"


def fit_working_set(entries: Sequence[WorkingSetEntry], budget: int) -> list[WorkingSetEntry]:
    """Most recently modified first, skipping entries that do not fit."""
    selected: list[WorkingSetEntry] = []
    used = 0
    for entry in sorted(entries, key=lambda e: e.last_modified, reverse=True):
        if entry.tokens <= 0:
            continue
        if used + entry.tokens > budget:
            continue
        selected.append(entry)
        used += entry.tokens
    return selected


class PackBuilder:
    """Build evidence packs under a token budget.

    Example:
        builder = PackBuilder(PackBuilderConfig(total_budget=8000))
        pack = builder.build(PackInput(summary=summary, evidence=candidates))
        if pack.telemetry.fallback_used:
            logger.info("Evidence pack degraded to references")
    """

    def __init__(
        self,
        config: Optional[PackBuilderConfig] = None,
        *,
        reranker: Optional[Reranker] = None,
        extractor: Optional[SignalExtractor] = None,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.config = config or PackBuilderConfig()
        self.allocator = BudgetAllocator(self.config.total_budget, self.config.ratios)
        self.reranker = reranker or Reranker(self.config.weights)
        self.extractor = extractor or SignalExtractor()
        self._timer = timer

    def build(self, pack_input: PackInput) -> EvidencePack:
        started = self._timer()

        allocation = self.allocator.allocate()
        allocated = self._timer()

        signals = list(pack_input.signals)
        if not signals and pack_input.signal_input is not None:
            signals = self.extractor.extract(pack_input.signal_input)
        ranked = self.reranker.rank(pack_input.evidence, signals)
        ranked_at = self._timer()

        fit = fit_to_budget(ranked, allocation)
        fitted = self._timer()

        raw_evidence_tokens = sum(item.tokens for item in ranked)
        use_fallback = (
            self.config.enable_fallback
            and len(fit.accepted) < self.config.min_evidence_items
        )

        if use_fallback:
            evidence = self._references(ranked)
            working_set: list[WorkingSetEntry] = []
            logger.info(
                f"[PackBuilder] Fallback mode: {len(fit.accepted)} items fit, "
                f"minimum is {self.config.min_evidence_items}; emitting {len(evidence)} references"
            )
        else:
            evidence = list(fit.accepted)
            working_set = fit_working_set(pack_input.working_set, allocation.working_set)

        evidence_tokens = sum(item.tokens for item in evidence)
        total_tokens = (
            pack_input.summary.tokens
            + sum(entry.tokens for entry in working_set)
            + evidence_tokens
        )
        finished = self._timer()

        provider_counts: dict[str, int] = {}
        for item in evidence:
            provider_counts[item.provider.value] = provider_counts.get(item.provider.value, 0) + 1

        telemetry = PackTelemetry(
            allocate_ms=(allocated - started) * 1000,
            rank_ms=(ranked_at - allocated) * 1000,
            fit_ms=(fitted - ranked_at) * 1000,
            total_ms=(finished - started) * 1000,
            candidate_count=len(ranked),
            accepted_count=len(evidence),
            tokens_saved=max(0, raw_evidence_tokens - evidence_tokens),
            fallback_used=use_fallback,
            provider_counts=provider_counts,
        )
        return EvidencePack(
            summary=pack_input.summary,
            working_set=tuple(working_set),
            evidence=tuple(evidence),
            total_tokens=total_tokens,
            budget_used=self._budget_used(total_tokens, allocation),
            telemetry=telemetry,
        )

    @staticmethod
    def _references(ranked: Sequence[Evidence]) -> list[Evidence]:
        return [
            replace(item, content=format_reference(item), tokens=FALLBACK_REFERENCE_TOKENS)
            for item in ranked[:FALLBACK_MAX_REFERENCES]
        ]

    @staticmethod
    def _budget_used(total_tokens: int, allocation: BudgetAllocation) -> float:
        if allocation.total <= 0:
            return 0.0
        return total_tokens / allocation.total
