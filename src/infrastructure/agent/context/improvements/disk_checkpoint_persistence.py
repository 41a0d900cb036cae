"""
Disk checkpoint persistence.

Mirrors in-memory checkpoints to a ContextStoragePort so they survive a
restart. Each checkpoint is one entry (``{id}.checkpoint``, or
``{id}.checkpoint.gz`` when zlib output is smaller) plus a record in
``manifest.json``. A missing or unreadable manifest is rebuilt from the
stored keys.

Strategies:
    immediate  write on ``persist``
    lazy       stage in memory until ``flush`` (called at shutdown)

Every I/O step checks ``abort_signal`` and raises ``OperationCancelledError``.
The manifest write is the commit point: entries are written before the
manifest lists them and removed only after it stops listing them, so a
cancellation never leaves the manifest pointing at a missing entry.
"""

from __future__ import annotations

import asyncio
import logging
import time
import zlib
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

import orjson

from src.domain.exceptions.context import (
    CorruptEntryError,
    OperationCancelledError,
    StorageUnavailableError,
)
from src.domain.model.context.message import ContextMessage
from src.domain.ports.context.storage_port import ContextStoragePort
from src.infrastructure.agent.context.checkpoint import Checkpoint
from src.infrastructure.agent.context.improvements.storage_io import (
    check_abort,
    read_json,
)
from src.infrastructure.agent.context.improvements.types import (
    DiskCheckpointConfig,
    PersistedCheckpoint,
)

logger = logging.getLogger(__name__)

COMPRESSION_LEVEL = 6
CHECKPOINT_EXTENSION = ".checkpoint"
COMPRESSED_EXTENSION = ".checkpoint.gz"
MANIFEST_KEY = "manifest.json"
FORMAT_VERSION = 1
CLEANUP_TRIGGER_RATIO = 0.9
CLEANUP_TARGET_RATIO = 0.8


@dataclass
class _PendingCheckpoint:
    checkpoint_id: str
    messages: list[ContextMessage]
    metadata: Optional[dict[str, Any]]
    staged_at: float


@dataclass
class LoadedCheckpoint:
    messages: list[ContextMessage]
    metadata: dict[str, Any] = field(default_factory=dict)


def checkpoint_id_from_key(key: str) -> Optional[str]:
    if key.endswith(COMPRESSED_EXTENSION):
        return key[: -len(COMPRESSED_EXTENSION)]
    if key.endswith(CHECKPOINT_EXTENSION):
        return key[: -len(CHECKPOINT_EXTENSION)]
    return None


def _copy_manifest(manifest: dict[str, Any]) -> dict[str, Any]:
    return dict(manifest, checkpoints=dict(manifest["checkpoints"]))


def _decode_entry(data: bytes, compressed: bool) -> dict[str, Any]:
    try:
        raw = zlib.decompress(data) if compressed else data
        content = orjson.loads(raw)
    except (zlib.error, orjson.JSONDecodeError) as e:
        raise CorruptEntryError(f"Unreadable checkpoint data: {e}") from e
    if not isinstance(content, dict) or "messages_data" not in content:
        raise CorruptEntryError("Checkpoint entry has no messages")
    return content


class DiskCheckpointPersistence:
    """Persist, load and evict checkpoints on a storage port."""

    def __init__(
        self,
        config: Optional[DiskCheckpointConfig] = None,
        storage: Optional[ContextStoragePort] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize checkpoint persistence.

        Args:
            config: Persistence settings (strategy, compression, disk limit)
            storage: Backing store; without one persistence is disabled
            clock: Time source for created_at stamps
        """
        self.config = config or DiskCheckpointConfig()
        self._storage = storage
        self._clock = clock
        self._manifest: Optional[dict[str, Any]] = None
        self._pending: dict[str, _PendingCheckpoint] = {}
        self._disabled = storage is None
        self._available = True

    @property
    def is_enabled(self) -> bool:
        return self.config.enabled and not self._disabled

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def is_available(self) -> bool:
        """False from a failed storage check until the next successful manifest I/O."""
        return self._available

    def mark_unavailable(self) -> None:
        self._available = False
        self._manifest = None

    async def persist(
        self,
        checkpoint_id: str,
        messages: Sequence[ContextMessage],
        metadata: Optional[dict[str, Any]] = None,
        abort_signal: Optional[asyncio.Event] = None,
    ) -> PersistedCheckpoint:
        """Persist messages under checkpoint_id according to the strategy."""
        now = self._clock()
        if not self.is_enabled:
            return PersistedCheckpoint(
                checkpoint_id=checkpoint_id,
                file_path="",
                created_at=now,
                size_bytes=0,
                message_count=len(messages),
                compressed=False,
            )

        pending = _PendingCheckpoint(checkpoint_id, [m.copy() for m in messages], metadata, now)
        if self.config.strategy == "lazy":
            self._pending[checkpoint_id] = pending
            return PersistedCheckpoint(
                checkpoint_id=checkpoint_id,
                file_path="",
                created_at=now,
                size_bytes=0,
                message_count=len(messages),
                compressed=False,
                pending=True,
            )
        return await self._write_checkpoint(pending, abort_signal)

    async def persist_checkpoint(
        self, checkpoint: Checkpoint, abort_signal: Optional[asyncio.Event] = None
    ) -> PersistedCheckpoint:
        """Persist an in-memory checkpoint together with its label and reason."""
        metadata = {
            "label": checkpoint.label,
            "reason": checkpoint.reason,
            "token_count": checkpoint.token_count,
            "created_at": checkpoint.created_at,
        }
        return await self.persist(checkpoint.id, checkpoint.messages, metadata, abort_signal)

    async def load(
        self, checkpoint_id: str, abort_signal: Optional[asyncio.Event] = None
    ) -> Optional[LoadedCheckpoint]:
        """Load a checkpoint. Missing or corrupt entries return None."""
        if not self.is_enabled:
            return None
        pending = self._pending.get(checkpoint_id)
        if pending is not None:
            return LoadedCheckpoint(
                messages=[m.copy() for m in pending.messages],
                metadata=dict(pending.metadata or {}),
            )

        manifest = await self._load_manifest(abort_signal)
        record = manifest["checkpoints"].get(checkpoint_id)
        if record is None:
            return None

        check_abort(abort_signal, f"load {checkpoint_id}")
        data = await self._storage.read(record["file_path"])
        check_abort(abort_signal, f"load {checkpoint_id}")
        if data is None:
            logger.warning(f"[DiskCheckpoint] Entry for {checkpoint_id} is missing, dropping record")
            await self._drop_record(manifest, checkpoint_id, abort_signal)
            return None

        try:
            content = _decode_entry(data, record.get("compressed", False))
            items = orjson.loads(content["messages_data"])
            messages = [ContextMessage.from_dict(item) for item in items]
        except (CorruptEntryError, orjson.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"[DiskCheckpoint] Discarding corrupt checkpoint {checkpoint_id}: {e}")
            await self._drop_record(manifest, checkpoint_id, abort_signal)
            await self._storage.remove(record["file_path"])
            return None
        return LoadedCheckpoint(messages=messages, metadata=dict(content.get("metadata") or {}))

    async def list(self, abort_signal: Optional[asyncio.Event] = None) -> list[PersistedCheckpoint]:
        """Persisted checkpoints, newest first. Staged checkpoints are not listed."""
        if not self.is_enabled:
            return []
        manifest = await self._load_manifest(abort_signal)
        records = [PersistedCheckpoint.from_dict(r) for r in manifest["checkpoints"].values()]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def delete(
        self, checkpoint_id: str, abort_signal: Optional[asyncio.Event] = None
    ) -> bool:
        if not self.is_enabled:
            return False
        was_pending = self._pending.pop(checkpoint_id, None) is not None
        manifest = await self._load_manifest(abort_signal)
        record = manifest["checkpoints"].get(checkpoint_id)
        if record is None:
            return was_pending
        await self._drop_record(manifest, checkpoint_id, abort_signal)
        await self._storage.remove(record["file_path"])
        return True

    async def cleanup(self, abort_signal: Optional[asyncio.Event] = None) -> int:
        """Evict oldest checkpoints once usage exceeds the limit.

        Frees space down to 80% of ``max_disk_usage`` and returns the
        number of checkpoints removed.
        """
        if not self.is_enabled:
            return 0
        usage = await self.get_disk_usage(abort_signal)
        if usage <= self.config.max_disk_usage:
            return 0

        manifest = await self._load_manifest(abort_signal)
        target_free = usage - self.config.max_disk_usage * CLEANUP_TARGET_RATIO
        oldest_first = sorted(manifest["checkpoints"].values(), key=lambda r: r["created_at"])
        freed = 0
        evicted = []
        for record in oldest_first:
            if freed >= target_free:
                break
            evicted.append(record)
            freed += record["size_bytes"]
        if not evicted:
            return 0

        updated = _copy_manifest(manifest)
        for record in evicted:
            del updated["checkpoints"][record["checkpoint_id"]]
        await self._save_manifest(updated, abort_signal)
        for record in evicted:
            await self._storage.remove(record["file_path"])
        logger.info(f"[DiskCheckpoint] Cleaned up {len(evicted)} checkpoints ({freed} bytes)")
        return len(evicted)

    async def get_disk_usage(self, abort_signal: Optional[asyncio.Event] = None) -> int:
        """Total stored size of persisted checkpoint entries, in bytes."""
        if not self.is_enabled:
            return 0
        manifest = await self._load_manifest(abort_signal)
        return sum(record["size_bytes"] for record in manifest["checkpoints"].values())

    async def flush(self, abort_signal: Optional[asyncio.Event] = None) -> int:
        """Write every staged checkpoint. Returns how many were written.

        A checkpoint that fails with StorageUnavailableError stays staged.
        """
        if not self.is_enabled or not self._pending:
            return 0
        flushed = 0
        for checkpoint_id, pending in list(self._pending.items()):
            try:
                await self._write_checkpoint(pending, abort_signal)
            except StorageUnavailableError as e:
                logger.warning(f"[DiskCheckpoint] Failed to flush {checkpoint_id}: {e}")
                continue
            self._pending.pop(checkpoint_id, None)
            flushed += 1
        logger.debug(f"[DiskCheckpoint] Flushed {flushed} staged checkpoints")
        return flushed

    async def clear(self, abort_signal: Optional[asyncio.Event] = None) -> int:
        """Remove every stored entry including the manifest. Returns the count."""
        if not self.config.enabled or self._storage is None:
            return 0
        self._pending.clear()
        check_abort(abort_signal, "clear")
        keys = await self._storage.list()
        cleared = 0
        for key in keys:
            check_abort(abort_signal, "clear")
            if await self._storage.remove(key):
                cleared += 1
        self._manifest = None
        return cleared

    async def _write_checkpoint(
        self, pending: _PendingCheckpoint, abort_signal: Optional[asyncio.Event]
    ) -> PersistedCheckpoint:
        usage = await self.get_disk_usage(abort_signal)
        if usage > self.config.max_disk_usage * CLEANUP_TRIGGER_RATIO:
            await self.cleanup(abort_signal)

        content = {
            "checkpoint_id": pending.checkpoint_id,
            "messages_data": orjson.dumps([m.to_dict() for m in pending.messages]).decode(),
            "metadata": pending.metadata,
            "created_at": pending.staged_at,
            "message_count": len(pending.messages),
            "version": FORMAT_VERSION,
        }
        raw = orjson.dumps(content)
        data, compressed = raw, False
        if self.config.enable_compression:
            packed = zlib.compress(raw, COMPRESSION_LEVEL)
            if len(packed) < len(raw):
                data, compressed = packed, True
        extension = COMPRESSED_EXTENSION if compressed else CHECKPOINT_EXTENSION
        key = f"{pending.checkpoint_id}{extension}"

        check_abort(abort_signal, f"persist {pending.checkpoint_id}")
        await self._storage.write(key, data)
        record = PersistedCheckpoint(
            checkpoint_id=pending.checkpoint_id,
            file_path=key,
            created_at=pending.staged_at,
            size_bytes=len(data),
            message_count=len(pending.messages),
            compressed=compressed,
        )
        try:
            manifest = await self._load_manifest(abort_signal)
            updated = _copy_manifest(manifest)
            stale = updated["checkpoints"].get(pending.checkpoint_id)
            updated["checkpoints"][pending.checkpoint_id] = record.to_dict()
            await self._save_manifest(updated, abort_signal)
        except OperationCancelledError:
            # The manifest was not written, so the entry is unreferenced.
            await self._storage.remove(key)
            raise
        if stale is not None and stale["file_path"] != key:
            await self._storage.remove(stale["file_path"])
        return record

    async def _load_manifest(self, abort_signal: Optional[asyncio.Event]) -> dict[str, Any]:
        if self._manifest is not None:
            return self._manifest
        try:
            manifest = await read_json(self._storage, MANIFEST_KEY, abort_signal)
            self._available = True
            if manifest is not None and not isinstance(manifest.get("checkpoints"), dict):
                raise CorruptEntryError("Manifest has no checkpoint table", key=MANIFEST_KEY)
        except (CorruptEntryError, AttributeError) as e:
            logger.warning(f"[DiskCheckpoint] Rebuilding unreadable manifest: {e}")
            manifest = None
        if manifest is None:
            await self._save_manifest(await self._rebuild_manifest(abort_signal), abort_signal)
            return self._manifest
        self._manifest = manifest
        return manifest

    async def _rebuild_manifest(self, abort_signal: Optional[asyncio.Event]) -> dict[str, Any]:
        check_abort(abort_signal, "rebuild manifest")
        keys = await self._storage.list()
        checkpoints: dict[str, Any] = {}
        for key in keys:
            checkpoint_id = checkpoint_id_from_key(key)
            if checkpoint_id is None:
                continue
            check_abort(abort_signal, "rebuild manifest")
            data = await self._storage.read(key)
            if data is None:
                continue
            compressed = key.endswith(COMPRESSED_EXTENSION)
            try:
                content = _decode_entry(data, compressed)
                created_at = float(content.get("created_at", 0.0))
                message_count = int(content.get("message_count", 0))
            except (CorruptEntryError, TypeError, ValueError):
                created_at, message_count = 0.0, 0
            checkpoints[checkpoint_id] = PersistedCheckpoint(
                checkpoint_id=checkpoint_id,
                file_path=key,
                created_at=created_at,
                size_bytes=len(data),
                message_count=message_count,
                compressed=compressed,
            ).to_dict()
        if checkpoints:
            logger.info(f"[DiskCheckpoint] Rebuilt manifest with {len(checkpoints)} checkpoints")
        return {"checkpoints": checkpoints, "last_updated": self._clock(), "version": FORMAT_VERSION}

    async def _save_manifest(
        self, manifest: dict[str, Any], abort_signal: Optional[asyncio.Event]
    ) -> None:
        """Write the manifest. It becomes the cached copy once the write returns."""
        updated = dict(manifest, last_updated=self._clock())
        check_abort(abort_signal, f"write {MANIFEST_KEY}")
        await self._storage.write(MANIFEST_KEY, orjson.dumps(updated, option=orjson.OPT_INDENT_2))
        self._manifest = updated
        self._available = True

    async def _drop_record(
        self,
        manifest: dict[str, Any],
        checkpoint_id: str,
        abort_signal: Optional[asyncio.Event],
    ) -> None:
        updated = _copy_manifest(manifest)
        updated["checkpoints"].pop(checkpoint_id, None)
        await self._save_manifest(updated, abort_signal)
