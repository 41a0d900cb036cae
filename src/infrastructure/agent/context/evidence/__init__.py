"""Evidence pack system: signals, reranking, budgeting and assembly."""

from src.infrastructure.agent.context.evidence.budget_allocator import (
    BudgetAllocator,
    BudgetRatios,
    FitResult,
    fit_to_budget,
)
from src.infrastructure.agent.context.evidence.collectors import (
    DiffHunk,
    LspLocation,
    SearchMatch,
    diff_to_evidence,
    lsp_to_evidence,
    merge_evidence,
    search_to_evidence,
)
from src.infrastructure.agent.context.evidence.pack_builder import (
    FALLBACK_MAX_REFERENCES,
    FALLBACK_REFERENCE_TOKENS,
    PackBuilder,
    PackBuilderConfig,
    PackInput,
)
from src.infrastructure.agent.context.evidence.reranker import (
    PROVIDER_BASE_WEIGHTS,
    Reranker,
    RerankWeights,
)
from src.infrastructure.agent.context.evidence.signals import (
    SignalExtractor,
    SignalInput,
    dedupe_signals,
)

__all__ = [
    "BudgetAllocator",
    "BudgetRatios",
    "DiffHunk",
    "FALLBACK_MAX_REFERENCES",
    "FALLBACK_REFERENCE_TOKENS",
    "FitResult",
    "LspLocation",
    "PROVIDER_BASE_WEIGHTS",
    "PackBuilder",
    "PackBuilderConfig",
    "PackInput",
    "RerankWeights",
    "Reranker",
    "SearchMatch",
    "SignalExtractor",
    "SignalInput",
    "dedupe_signals",
    "diff_to_evidence",
    "fit_to_budget",
    "lsp_to_evidence",
    "merge_evidence",
    "search_to_evidence",
]
