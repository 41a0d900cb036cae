"""Multi-feature evidence reranking.

Each candidate gets a score in [0, 1]:

    score = w_provider * provider_trust
          + w_signal   * signal_match
          + w_recency  * recency
          + w_relevance * relevance

``provider_trust`` comes from fixed provider base weights (diff 100,
lsp 60, search 10, scaled to [0, 1]). ``signal_match`` is the strongest
confidence among signals the item matched, explicitly or by appearing in
its path or content. ``recency`` decays exponentially from the item's
modification time. ``relevance`` is the provider's own score normalized
across the batch.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional, Sequence

from src.domain.model.context.evidence import (
    Evidence,
    EvidenceProviderType,
    Signal,
    SignalType,
)

logger = logging.getLogger(__name__)

PROVIDER_BASE_WEIGHTS: dict[EvidenceProviderType, int] = {
    EvidenceProviderType.DIFF: 100,
    EvidenceProviderType.LSP: 60,
    EvidenceProviderType.SEARCH: 10,
}
LSP_REFERENCE_WEIGHT = 30

RECENCY_HALF_LIFE_SECONDS = 24 * 3600.0
MIN_RECENCY_SCORE = 0.1
# Used when an item carries no modification time.
UNKNOWN_RECENCY_SCORE = 0.5

_PROVIDER_ORDER = {provider: i for i, provider in enumerate(PROVIDER_BASE_WEIGHTS)}


@dataclass(frozen=True)
class RerankWeights:
    """Feature weights. Defaults sum to 1.0."""

    provider: float = 0.40
    signal_match: float = 0.30
    recency: float = 0.15
    relevance: float = 0.15

    def __post_init__(self) -> None:
        for name in ("provider", "signal_match", "recency", "relevance"):
            if getattr(self, name) < 0:
                raise ValueError(f"Rerank weight {name} must be non-negative")

    @property
    def total(self) -> float:
        return self.provider + self.signal_match + self.recency + self.relevance


DEFAULT_WEIGHTS = RerankWeights()


def provider_trust(provider: EvidenceProviderType) -> float:
    return PROVIDER_BASE_WEIGHTS[provider] / max(PROVIDER_BASE_WEIGHTS.values())


def recency_score(modified_at: Optional[float], now: float) -> float:
    """Exponential decay by age, floored at ``MIN_RECENCY_SCORE``."""
    if modified_at is None:
        return UNKNOWN_RECENCY_SCORE
    age = now - modified_at
    if age <= 0:
        return 1.0
    return max(MIN_RECENCY_SCORE, 0.5 ** (age / RECENCY_HALF_LIFE_SECONDS))


def _signal_matches(signal: Signal, evidence: Evidence) -> bool:
    if signal.type in (SignalType.PATH, SignalType.STACK_FRAME):
        target = str(signal.metadata.get("path", signal.value))
        return evidence.path.endswith(target) or target.endswith(evidence.path)
    if signal.type == SignalType.SYMBOL:
        return signal.value in evidence.content
    return signal.value.lower() in evidence.content.lower()


def signal_match_score(evidence: Evidence, signals: Sequence[Signal]) -> float:
    best = max((signal.confidence for signal in evidence.matched_signals), default=0.0)
    for signal in signals:
        if signal.confidence > best and _signal_matches(signal, evidence):
            best = signal.confidence
    return min(1.0, best)


class Reranker:
    """Rank evidence by weighted multi-feature score.

    Ties are broken by provider trust, then path and start line, so the
    order is deterministic for identical input.
    """

    def __init__(
        self,
        weights: RerankWeights = DEFAULT_WEIGHTS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if weights.total <= 0:
            raise ValueError("At least one rerank weight must be positive")
        self.weights = weights
        self._clock = clock

    def score(
        self,
        evidence: Evidence,
        signals: Sequence[Signal] = (),
        max_base_score: float = 0.0,
        now: Optional[float] = None,
    ) -> float:
        now = self._clock() if now is None else now
        modified_at = evidence.metadata.get("modified_at")
        relevance = evidence.base_score / max_base_score if max_base_score > 0 else 0.0
        weights = self.weights
        raw = (
            weights.provider * provider_trust(evidence.provider)
            + weights.signal_match * signal_match_score(evidence, signals)
            + weights.recency * recency_score(modified_at, now)
            + weights.relevance * max(0.0, min(1.0, relevance))
        )
        return raw / weights.total

    def rank(self, evidence: Sequence[Evidence], signals: Sequence[Signal] = ()) -> list[Evidence]:
        """Return new evidence values with ``score`` set, best first."""
        if not evidence:
            return []
        now = self._clock()
        max_base = max(item.base_score for item in evidence)
        scored = [
            replace(item, score=self.score(item, signals, max_base, now)) for item in evidence
        ]
        scored.sort(
            key=lambda item: (
                -item.score,
                _PROVIDER_ORDER[item.provider],
                item.path,
                item.range[0],
            )
        )
        logger.debug(
            f"[Reranker] Ranked {len(scored)} candidates, top score {scored[0].score:.3f}"
        )
        return scored
