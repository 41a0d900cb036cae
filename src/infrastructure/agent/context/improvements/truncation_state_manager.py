"""Recoverable snapshots of messages removed by truncation.

Snapshots are serialized with orjson and optionally zlib-compressed. The
store keeps at most ``max_snapshots`` entries in LRU order and forgets
entries older than ``expiration_seconds``.
"""

import logging
import time
import zlib
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional, Sequence

import orjson

from src.domain.exceptions.context import SnapshotTooLargeError
from src.domain.model.context.message import ContextMessage
from src.infrastructure.agent.context.improvements.types import (
    SnapshotInfo,
    TruncationReason,
    TruncationRecoveryConfig,
    TruncationState,
)

logger = logging.getLogger(__name__)

COMPRESSION_LEVEL = 6
MIN_COMPRESS_BYTES = 1024


@dataclass
class _StoredSnapshot:
    state: TruncationState
    data: bytes
    compressed: bool


class TruncationStateManager:
    """Keeps truncated messages around long enough to undo a truncation."""

    def __init__(
        self,
        config: Optional[TruncationRecoveryConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or TruncationRecoveryConfig()
        self._clock = clock
        self._snapshots: OrderedDict[str, _StoredSnapshot] = OrderedDict()
        self._lock = Lock()

    @property
    def size(self) -> int:
        return len(self._snapshots)

    def save_snapshot(
        self,
        truncation_id: str,
        messages: Sequence[ContextMessage],
        reason: TruncationReason,
    ) -> TruncationState:
        """Serialize messages under truncation_id, replacing any previous snapshot.

        Raises:
            SnapshotTooLargeError: If the stored form exceeds ``max_snapshot_size``.
        """
        raw = orjson.dumps([message.to_dict() for message in messages])
        data, compressed = raw, False
        if self.config.enable_compression and len(raw) >= MIN_COMPRESS_BYTES:
            packed = zlib.compress(raw, COMPRESSION_LEVEL)
            if len(packed) < len(raw):
                data, compressed = packed, True

        if len(data) > self.config.max_snapshot_size:
            raise SnapshotTooLargeError(len(data), self.config.max_snapshot_size)

        state = TruncationState(
            truncation_id=truncation_id,
            truncated_message_ids=tuple(message.id for message in messages),
            truncated_at=self._clock(),
            reason=reason,
            snapshot=SnapshotInfo(
                snapshot_id=f"snap-{truncation_id}",
                compressed=compressed,
                size_bytes=len(data),
            ),
        )

        with self._lock:
            self._snapshots.pop(truncation_id, None)
            while self._snapshots and len(self._snapshots) >= self.config.max_snapshots:
                evicted, _ = self._snapshots.popitem(last=False)
                logger.debug(f"[TruncationState] Evicted snapshot {evicted}")
            self._snapshots[truncation_id] = _StoredSnapshot(state, data, compressed)

        logger.debug(
            f"[TruncationState] Saved {len(messages)} messages as {truncation_id} "
            f"({len(data)} bytes, compressed={compressed})"
        )
        return state

    def recover(self, truncation_id: str) -> Optional[list[ContextMessage]]:
        """Return the truncated messages, or None if unknown or expired."""
        with self._lock:
            stored = self._get_live(truncation_id)
            if stored is None:
                return None
            self._snapshots.move_to_end(truncation_id)
        raw = zlib.decompress(stored.data) if stored.compressed else stored.data
        return [ContextMessage.from_dict(item) for item in orjson.loads(raw)]

    def get_state(self, truncation_id: str) -> Optional[TruncationState]:
        with self._lock:
            stored = self._get_live(truncation_id)
            return stored.state if stored else None

    def list_recoverable(self) -> list[TruncationState]:
        now = self._clock()
        with self._lock:
            return [
                stored.state
                for stored in self._snapshots.values()
                if not self._is_expired(stored, now)
            ]

    def cleanup(self) -> int:
        """Drop expired snapshots and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [
                key for key, stored in self._snapshots.items() if self._is_expired(stored, now)
            ]
            for key in expired:
                del self._snapshots[key]
        if expired:
            logger.debug(f"[TruncationState] Cleaned up {len(expired)} expired snapshots")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._snapshots.clear()

    def _get_live(self, truncation_id: str) -> Optional[_StoredSnapshot]:
        stored = self._snapshots.get(truncation_id)
        if stored is None:
            return None
        if self._is_expired(stored, self._clock()):
            del self._snapshots[truncation_id]
            return None
        return stored

    def _is_expired(self, stored: _StoredSnapshot, now: float) -> bool:
        return now - stored.state.truncated_at > self.config.expiration_seconds


def create_truncation_state_manager(**overrides) -> TruncationStateManager:
    return TruncationStateManager(TruncationRecoveryConfig(**overrides))
