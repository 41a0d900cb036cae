"""Token budget allocation for evidence packs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from src.domain.model.context.evidence import (
    BudgetAllocation,
    Evidence,
    EvidenceProviderType,
)

logger = logging.getLogger(__name__)


def _default_provider_shares() -> dict[EvidenceProviderType, float]:
    return {
        EvidenceProviderType.DIFF: 0.40,
        EvidenceProviderType.LSP: 0.35,
        EvidenceProviderType.SEARCH: 0.25,
    }


@dataclass(frozen=True)
class BudgetRatios:
    """Proportional split of the total budget.

    ``summary``, ``working_set`` and ``evidence`` are shares of the total;
    ``provider_shares`` split the evidence share between providers.
    """

    summary: float = 0.10
    working_set: float = 0.30
    evidence: float = 0.60
    provider_shares: dict[EvidenceProviderType, float] = field(
        default_factory=_default_provider_shares
    )

    def __post_init__(self) -> None:
        top = self.summary + self.working_set + self.evidence
        if any(value < 0 for value in (self.summary, self.working_set, self.evidence)):
            raise ValueError("Budget ratios must be non-negative")
        if top > 1.0 + 1e-9:
            raise ValueError(f"Budget ratios sum to {top:.2f}, must not exceed 1.0")
        if any(value < 0 for value in self.provider_shares.values()):
            raise ValueError("Provider shares must be non-negative")


DEFAULT_RATIOS = BudgetRatios()


@dataclass
class FitResult:
    """Evidence accepted by ``fit_to_budget``."""

    accepted: list[Evidence]
    tokens_used: int
    tokens_by_provider: dict[EvidenceProviderType, int]
    skipped_by_provider_cap: int = 0
    stopped_early: bool = False


class BudgetAllocator:
    """Split a total token budget between pack sections."""

    def __init__(self, total_budget: int, ratios: BudgetRatios = DEFAULT_RATIOS) -> None:
        if total_budget < 0:
            raise ValueError("total_budget must be non-negative")
        self.total_budget = total_budget
        self.ratios = ratios

    def allocate(self) -> BudgetAllocation:
        """Compute fresh caps from the configured total."""
        total = self.total_budget
        evidence = int(total * self.ratios.evidence)
        return BudgetAllocation(
            total=total,
            summary=int(total * self.ratios.summary),
            working_set=int(total * self.ratios.working_set),
            evidence=evidence,
            per_provider={
                provider: int(evidence * share)
                for provider, share in self.ratios.provider_shares.items()
            },
        )


def fit_to_budget(ranked: Sequence[Evidence], allocation: BudgetAllocation) -> FitResult:
    """Greedily accept ranked evidence.

    An item that would exceed its provider's cap is skipped and later items
    of other providers are still considered. The first item that would
    exceed the aggregate evidence cap ends the pass. Items are never split.
    """
    result = FitResult(accepted=[], tokens_used=0, tokens_by_provider={})
    for item in ranked:
        if result.tokens_used + item.tokens > allocation.evidence:
            result.stopped_early = True
            break
        provider_used = result.tokens_by_provider.get(item.provider, 0)
        provider_cap = allocation.per_provider.get(item.provider, 0)
        if provider_used + item.tokens > provider_cap:
            result.skipped_by_provider_cap += 1
            continue
        result.accepted.append(item)
        result.tokens_used += item.tokens
        result.tokens_by_provider[item.provider] = provider_used + item.tokens

    logger.debug(
        f"[BudgetAllocator] Accepted {len(result.accepted)}/{len(ranked)} items, "
        f"{result.tokens_used}/{allocation.evidence} tokens"
    )
    return result
