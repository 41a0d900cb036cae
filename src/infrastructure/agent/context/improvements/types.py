"""Configuration and result types shared by the context improvement components."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any, Literal, Mapping, Optional

TruncationReason = Literal["token_overflow", "sliding_window", "emergency_recovery", "manual"]
InheritanceSource = Literal["last_session", "project_context", "manual"]
InheritanceContentType = Literal["summary", "decisions", "code_state", "pending_tasks"]
InheritedSummaryType = Literal["full", "task", "decisions", "code_changes"]
ProtectionStrategy = Literal["all", "recent", "weighted"]
PersistStrategy = Literal["immediate", "lazy"]
LostItemType = Literal["tech_term", "file_path", "error_message", "code_ref"]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SummaryQualityConfig:
    enable_rule_validation: bool = True
    enable_llm_validation: bool = False
    min_tech_term_retention: float = 0.8
    min_code_ref_retention: float = 0.9
    max_compression_ratio: float = 10.0


@dataclass(frozen=True)
class TruncationRecoveryConfig:
    max_snapshots: int = 3
    max_snapshot_size: int = 1024 * 1024
    enable_compression: bool = True
    expiration_seconds: float = 30 * 60


@dataclass(frozen=True)
class SessionInheritanceConfig:
    enabled: bool = True
    source: InheritanceSource = "last_session"
    max_inherited_summaries: int = 3
    inherit_types: tuple[InheritanceContentType, ...] = ("summary", "decisions")


@dataclass(frozen=True)
class SummaryProtectionConfig:
    enabled: bool = True
    max_protected_summaries: int = 5
    strategy: ProtectionStrategy = "recent"


@dataclass(frozen=True)
class DiskCheckpointConfig:
    enabled: bool = True
    max_disk_usage: int = 100 * 1024 * 1024
    strategy: PersistStrategy = "lazy"
    enable_compression: bool = True


@dataclass(frozen=True)
class CompactionStatsConfig:
    enabled: bool = True
    persist: bool = True
    max_history_entries: int = 100


@dataclass(frozen=True)
class ContextImprovementsConfig:
    """Aggregate configuration for every improvement component."""

    summary_quality: SummaryQualityConfig = field(default_factory=SummaryQualityConfig)
    truncation_recovery: TruncationRecoveryConfig = field(default_factory=TruncationRecoveryConfig)
    session_inheritance: SessionInheritanceConfig = field(default_factory=SessionInheritanceConfig)
    summary_protection: SummaryProtectionConfig = field(default_factory=SummaryProtectionConfig)
    disk_checkpoint: DiskCheckpointConfig = field(default_factory=DiskCheckpointConfig)
    compaction_stats: CompactionStatsConfig = field(default_factory=CompactionStatsConfig)

    @classmethod
    def merge(cls, overrides: Optional[Mapping[str, Any]] = None) -> ContextImprovementsConfig:
        """Build a config from per-section partial overrides.

        Each section may be given as a dataclass instance (used as is) or a
        mapping of field overrides applied on top of that section's defaults.
        Unknown sections raise ``ValueError``.
        """
        base = cls()
        if not overrides:
            return base
        known = {f.name for f in fields(cls)}
        changes: dict[str, Any] = {}
        for section, value in overrides.items():
            if section not in known:
                raise ValueError(f"Unknown improvements section: {section}")
            if value is None:
                continue
            if isinstance(value, Mapping):
                current = getattr(base, section)
                value = dict(value)
                for key, item in value.items():
                    if isinstance(item, list):
                        value[key] = tuple(item)
                changes[section] = replace(current, **value)
            else:
                changes[section] = value
        return replace(base, **changes)


DEFAULT_IMPROVEMENTS_CONFIG = ContextImprovementsConfig()


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LostItem:
    type: LostItemType
    original: str
    context: str


@dataclass(frozen=True)
class RuleValidationResult:
    tech_term_retention: float
    code_ref_retention: float
    critical_paths_preserved: bool
    lost_items: tuple[LostItem, ...] = ()


@dataclass(frozen=True)
class LLMValidationResult:
    completeness_score: float
    accuracy_score: float
    actionability_score: float
    suggestions: tuple[str, ...] = ()


@dataclass(frozen=True)
class SummaryQualityReport:
    passed: bool
    original_tokens: int
    summary_tokens: int
    compression_ratio: float
    rule_results: Optional[RuleValidationResult] = None
    llm_results: Optional[LLMValidationResult] = None
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "passed": self.passed,
            "original_tokens": self.original_tokens,
            "summary_tokens": self.summary_tokens,
            "compression_ratio": self.compression_ratio,
            "warnings": list(self.warnings),
        }
        if self.rule_results is not None:
            data["rule_results"] = {
                "tech_term_retention": self.rule_results.tech_term_retention,
                "code_ref_retention": self.rule_results.code_ref_retention,
                "critical_paths_preserved": self.rule_results.critical_paths_preserved,
                "lost_items": [
                    {"type": item.type, "original": item.original, "context": item.context}
                    for item in self.rule_results.lost_items
                ],
            }
        if self.llm_results is not None:
            data["llm_results"] = {
                "completeness_score": self.llm_results.completeness_score,
                "accuracy_score": self.llm_results.accuracy_score,
                "actionability_score": self.llm_results.actionability_score,
                "suggestions": list(self.llm_results.suggestions),
            }
        return data


@dataclass(frozen=True)
class SnapshotInfo:
    snapshot_id: str
    compressed: bool
    size_bytes: int


@dataclass(frozen=True)
class TruncationState:
    truncation_id: str
    truncated_message_ids: tuple[str, ...]
    truncated_at: float
    reason: TruncationReason
    snapshot: Optional[SnapshotInfo] = None


@dataclass(frozen=True)
class InheritedSummary:
    id: str
    content: str
    original_session: str
    created_at: float
    type: InheritedSummaryType

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "original_session": self.original_session,
            "created_at": self.created_at,
            "type": self.type,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> InheritedSummary:
        return cls(
            id=data["id"],
            content=data["content"],
            original_session=data["original_session"],
            created_at=data["created_at"],
            type=data["type"],
        )


@dataclass(frozen=True)
class InheritedContext:
    source_session_id: str
    inherited_at: float
    summaries: tuple[InheritedSummary, ...]
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class PersistedCheckpoint:
    """Manifest record for a checkpoint on disk.

    ``file_path`` is empty while the checkpoint is staged or when
    persistence is disabled.
    """

    checkpoint_id: str
    file_path: str
    created_at: float
    size_bytes: int
    message_count: int
    compressed: bool
    pending: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "file_path": self.file_path,
            "created_at": self.created_at,
            "size_bytes": self.size_bytes,
            "message_count": self.message_count,
            "compressed": self.compressed,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PersistedCheckpoint:
        return cls(
            checkpoint_id=data["checkpoint_id"],
            file_path=data["file_path"],
            created_at=data["created_at"],
            size_bytes=data["size_bytes"],
            message_count=data.get("message_count", 0),
            compressed=data.get("compressed", False),
        )


@dataclass(frozen=True)
class CompactionHistoryEntry:
    compaction_id: str
    timestamp: float
    original_tokens: int
    compressed_tokens: int
    message_count: int
    is_cascade: bool
    quality_report: Optional[dict[str, Any]] = field(default=None, compare=False, hash=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "compaction_id": self.compaction_id,
            "timestamp": self.timestamp,
            "original_tokens": self.original_tokens,
            "compressed_tokens": self.compressed_tokens,
            "message_count": self.message_count,
            "is_cascade": self.is_cascade,
            "quality_report": self.quality_report,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CompactionHistoryEntry:
        return cls(
            compaction_id=data["compaction_id"],
            timestamp=data["timestamp"],
            original_tokens=data["original_tokens"],
            compressed_tokens=data["compressed_tokens"],
            message_count=data["message_count"],
            is_cascade=data.get("is_cascade", False),
            quality_report=data.get("quality_report"),
        )


@dataclass(frozen=True)
class CompactionStats:
    session_id: str
    total_compactions: int
    session_compactions: int
    cascade_compactions: int
    total_original_tokens: int
    total_compressed_tokens: int
    history: tuple[CompactionHistoryEntry, ...] = ()
