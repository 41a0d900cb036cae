"""In-memory checkpoints for rolling back destructive context operations.

A checkpoint is a deep copy of the message list taken before truncation or
compaction. The store is bounded by ``max_checkpoints`` and evicts the
least recently used checkpoint on overflow. Owned by one conversation.
"""

from __future__ import annotations

import itertools
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional, Sequence

from src.domain.exceptions.context import CheckpointNotFoundError
from src.domain.model.context.message import ContextMessage

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHECKPOINTS = 5
DEFAULT_MIN_CHECKPOINT_INTERVAL = 5 * 60.0
PRE_COMPRESSION_REASON = "pre-compression"


@dataclass(frozen=True)
class Checkpoint:
    """Named, timestamped snapshot of a message list."""

    id: str
    messages: tuple[ContextMessage, ...]
    created_at: float
    token_count: int = 0
    label: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "messages": [message.to_dict() for message in self.messages],
            "created_at": self.created_at,
            "token_count": self.token_count,
            "label": self.label,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Checkpoint:
        return cls(
            id=data["id"],
            messages=tuple(ContextMessage.from_dict(item) for item in data.get("messages", [])),
            created_at=float(data.get("created_at", 0.0)),
            token_count=int(data.get("token_count", 0)),
            label=data.get("label"),
            reason=data.get("reason"),
        )


@dataclass(frozen=True)
class RollbackResult:
    messages: list[ContextMessage]
    checkpoint: Checkpoint
    removed_checkpoints: int
    discarded_messages: int


class CheckpointManager:
    """LRU-bounded checkpoint store.

    Example:
        manager = CheckpointManager(max_checkpoints=5)
        checkpoint = manager.create(messages, label="before truncate")
        restored = manager.rollback(checkpoint.id, current_messages).messages
    """

    def __init__(
        self,
        max_checkpoints: int = DEFAULT_MAX_CHECKPOINTS,
        min_checkpoint_interval: float = DEFAULT_MIN_CHECKPOINT_INTERVAL,
        auto_checkpoint: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_checkpoints = max(1, int(max_checkpoints))
        self.min_checkpoint_interval = min_checkpoint_interval
        self.auto_checkpoint = auto_checkpoint
        self._clock = clock
        # Creation order; rollback truncates by position in this order.
        self._checkpoints: OrderedDict[str, Checkpoint] = OrderedDict()
        # Least recently used first.
        self._usage: OrderedDict[str, None] = OrderedDict()
        self._counter = itertools.count(1)
        self._last_checkpoint_time = 0.0
        self._lock = Lock()

    def _generate_id(self, now: float) -> str:
        return f"chk_{int(now * 1000)}_{next(self._counter)}"

    def create(
        self,
        messages: Sequence[ContextMessage],
        label: Optional[str] = None,
        reason: Optional[str] = None,
        token_count: int = 0,
    ) -> Checkpoint:
        """Snapshot messages, evicting the least recently used checkpoint if full."""
        now = self._clock()
        checkpoint = Checkpoint(
            id=self._generate_id(now),
            messages=tuple(message.copy() for message in messages),
            created_at=now,
            token_count=token_count,
            label=label,
            reason=reason,
        )
        with self._lock:
            while len(self._checkpoints) >= self.max_checkpoints:
                evicted_id, _ = self._usage.popitem(last=False)
                self._checkpoints.pop(evicted_id, None)
                logger.debug(f"[CheckpointManager] Evicted checkpoint {evicted_id}")
            self._checkpoints[checkpoint.id] = checkpoint
            self._usage[checkpoint.id] = None
            self._last_checkpoint_time = now
        return checkpoint

    def rollback(
        self, checkpoint_id: str, current_messages: Sequence[ContextMessage]
    ) -> RollbackResult:
        """Restore a checkpoint and drop every checkpoint created after it.

        Raises:
            CheckpointNotFoundError: If checkpoint_id is unknown.
        """
        with self._lock:
            checkpoint = self._checkpoints.get(checkpoint_id)
            if checkpoint is None:
                raise CheckpointNotFoundError(checkpoint_id)
            ids = list(self._checkpoints)
            later = ids[ids.index(checkpoint_id) + 1 :]
            for later_id in later:
                del self._checkpoints[later_id]
                self._usage.pop(later_id, None)
            self._usage.move_to_end(checkpoint_id)

        logger.info(
            f"[CheckpointManager] Rolled back to {checkpoint_id}, "
            f"removed {len(later)} later checkpoints"
        )
        return RollbackResult(
            messages=[message.copy() for message in checkpoint.messages],
            checkpoint=checkpoint,
            removed_checkpoints=len(later),
            discarded_messages=len(current_messages) - len(checkpoint.messages),
        )

    def get(self, checkpoint_id: str) -> Optional[Checkpoint]:
        with self._lock:
            checkpoint = self._checkpoints.get(checkpoint_id)
            if checkpoint is not None:
                self._usage.move_to_end(checkpoint_id)
            return checkpoint

    def list(self) -> list[Checkpoint]:
        """All checkpoints, newest first."""
        with self._lock:
            return list(reversed(self._checkpoints.values()))

    def latest(self) -> Optional[Checkpoint]:
        with self._lock:
            if not self._checkpoints:
                return None
            return next(reversed(self._checkpoints.values()))

    def should_auto_checkpoint(self) -> bool:
        if not self.auto_checkpoint:
            return False
        return self._clock() - self._last_checkpoint_time >= self.min_checkpoint_interval

    def clear(self) -> None:
        with self._lock:
            self._checkpoints.clear()
            self._usage.clear()

    def __len__(self) -> int:
        return len(self._checkpoints)


def create_pre_compression_checkpoint(
    manager: CheckpointManager,
    messages: Sequence[ContextMessage],
    token_count: int,
) -> Checkpoint:
    return manager.create(
        messages,
        label="Pre-compression backup",
        reason=PRE_COMPRESSION_REASON,
        token_count=token_count,
    )
