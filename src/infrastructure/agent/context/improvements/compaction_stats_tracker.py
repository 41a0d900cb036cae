"""Compaction statistics: totals, cascade detection and a bounded history."""

import asyncio
import itertools
import logging
import time
from typing import Any, Callable, Iterable, Optional

from src.domain.exceptions.context import CorruptEntryError
from src.domain.model.context.message import ContextMessage
from src.domain.ports.context.storage_port import ContextStoragePort
from src.infrastructure.agent.context.improvements.storage_io import read_json, write_json
from src.infrastructure.agent.context.improvements.types import (
    CompactionHistoryEntry,
    CompactionStats,
    CompactionStatsConfig,
)

logger = logging.getLogger(__name__)

STATS_KEY = "compaction-stats.json"
STATS_VERSION = 1


class CompactionStatsTracker:
    """
    Track compactions across a session and across restarts.

    A compaction is a cascade when any message it compacts is itself a
    summary, carries a ``condense_id``, or was produced by an earlier
    compaction this tracker saw. Totals survive restarts through
    ``persist``/``load``; the per-session counter does not.
    """

    def __init__(
        self,
        config: Optional[CompactionStatsConfig] = None,
        storage: Optional[ContextStoragePort] = None,
        session_id: str = "",
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or CompactionStatsConfig()
        self._storage = storage
        self._clock = clock
        self._counter = itertools.count(1)
        self._session_id = session_id
        self._compacted_ids: set[str] = set()
        self._reset_counts()

    def _reset_counts(self) -> None:
        self._total = 0
        self._session = 0
        self._cascade = 0
        self._original_tokens = 0
        self._compressed_tokens = 0
        self._history: list[CompactionHistoryEntry] = []

    @property
    def session_id(self) -> str:
        return self._session_id

    def record(
        self,
        original_tokens: int,
        compressed_tokens: int,
        message_count: int,
        is_cascade: bool = False,
        timestamp: Optional[float] = None,
        quality_report: Optional[dict[str, Any]] = None,
    ) -> Optional[CompactionHistoryEntry]:
        """Record one compaction. Returns None when tracking is disabled."""
        if not self.config.enabled:
            return None
        ts = timestamp if timestamp is not None else self._clock()
        entry = CompactionHistoryEntry(
            compaction_id=f"cmp_{int(ts * 1000)}_{next(self._counter)}",
            timestamp=ts,
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
            message_count=message_count,
            is_cascade=is_cascade,
            quality_report=quality_report,
        )
        self._total += 1
        self._session += 1
        if is_cascade:
            self._cascade += 1
        self._original_tokens += original_tokens
        self._compressed_tokens += compressed_tokens
        self._history.append(entry)
        overflow = len(self._history) - self.config.max_history_entries
        if overflow > 0:
            del self._history[:overflow]
        return entry

    def get_stats(self) -> CompactionStats:
        return CompactionStats(
            session_id=self._session_id,
            total_compactions=self._total,
            session_compactions=self._session,
            cascade_compactions=self._cascade,
            total_original_tokens=self._original_tokens,
            total_compressed_tokens=self._compressed_tokens,
            history=tuple(self._history),
        )

    def get_history(self, limit: Optional[int] = None) -> list[CompactionHistoryEntry]:
        """History entries, newest first."""
        history = list(reversed(self._history))
        return history[:limit] if limit is not None else history

    def is_cascade_compaction(self, messages: Iterable[ContextMessage]) -> bool:
        return any(
            message.is_summary or bool(message.condense_id) or message.id in self._compacted_ids
            for message in messages
        )

    def track_compacted_messages(
        self, original_ids: Iterable[str], summary_id: Optional[str] = None
    ) -> None:
        self._compacted_ids.update(original_ids)
        if summary_id:
            self._compacted_ids.add(summary_id)

    def get_compression_efficiency(self) -> float:
        """Fraction of tokens removed across all compactions (0 when none)."""
        if self._original_tokens <= 0:
            return 0.0
        return 1 - self._compressed_tokens / self._original_tokens

    def set_session_id(self, session_id: str) -> None:
        self._session_id = session_id
        self._session = 0

    def reset(self) -> None:
        self._reset_counts()
        self._compacted_ids.clear()

    async def persist(self, abort_signal: Optional[asyncio.Event] = None) -> bool:
        """Write totals and history. Returns False when persistence is off."""
        if not self.config.persist or self._storage is None:
            return False
        payload = {
            "version": STATS_VERSION,
            "session_id": self._session_id,
            "total_compactions": self._total,
            "cascade_compactions": self._cascade,
            "total_original_tokens": self._original_tokens,
            "total_compressed_tokens": self._compressed_tokens,
            "history": [entry.to_dict() for entry in self._history],
            "saved_at": self._clock(),
        }
        await write_json(self._storage, STATS_KEY, payload, abort_signal)
        return True

    async def load(self, abort_signal: Optional[asyncio.Event] = None) -> bool:
        """Restore persisted totals. A corrupt entry resets to empty stats.

        Returns True if stats were loaded.
        """
        if not self.config.persist or self._storage is None:
            return False
        try:
            data = await read_json(self._storage, STATS_KEY, abort_signal)
            if data is None:
                return False
            history = [CompactionHistoryEntry.from_dict(item) for item in data.get("history", [])]
            total = int(data["total_compactions"])
            cascade = int(data.get("cascade_compactions", 0))
            original = int(data.get("total_original_tokens", 0))
            compressed = int(data.get("total_compressed_tokens", 0))
        except (CorruptEntryError, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"[CompactionStats] Discarding unreadable stats: {e}")
            self._reset_counts()
            return False

        self._total = total
        self._cascade = cascade
        self._original_tokens = original
        self._compressed_tokens = compressed
        self._history = history[max(0, len(history) - self.config.max_history_entries) :]
        self._session = 0
        logger.debug(f"[CompactionStats] Loaded {total} compactions")
        return True


def create_compaction_stats_tracker(
    storage: Optional[ContextStoragePort] = None, **overrides
) -> CompactionStatsTracker:
    return CompactionStatsTracker(CompactionStatsConfig(**overrides), storage=storage)
