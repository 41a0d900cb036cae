"""Local File Storage Adapter - Implementation of ContextStoragePort on a directory tree."""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from src.domain.exceptions.context import StorageUnavailableError
from src.domain.ports.context.storage_port import ContextStoragePort

logger = logging.getLogger(__name__)

_TMP_SUFFIX = ".tmp"


class LocalFileStorage(ContextStoragePort):
    """
    Directory-backed key/value storage.

    Keys are relative paths below ``root``. Writes go to a temporary file
    that is renamed into place, so readers never see a partial value.
    Blocking file calls run in a worker thread.
    """

    def __init__(self, root: str | os.PathLike[str]):
        """
        Initialize local storage.

        Args:
            root: Directory holding all entries, created on first write
        """
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        root = self._root.resolve()
        if root != path and root not in path.parents:
            raise ValueError(f"Storage key escapes root: {key!r}")
        return path

    async def read(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageUnavailableError(f"Failed to read {key}: {e}", key=key) from e

    async def write(self, key: str, value: bytes) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(self._write_atomic, path, value)
        except OSError as e:
            raise StorageUnavailableError(f"Failed to write {key}: {e}", key=key) from e

    @staticmethod
    def _write_atomic(path: Path, value: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=_TMP_SUFFIX)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(value)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def list(self) -> list[str]:
        try:
            return await asyncio.to_thread(self._list_keys)
        except OSError as e:
            raise StorageUnavailableError(f"Failed to list {self._root}: {e}") from e

    def _list_keys(self) -> list[str]:
        if not self._root.exists():
            return []
        keys = []
        for path in self._root.rglob("*"):
            if path.is_file() and not path.name.endswith(_TMP_SUFFIX):
                keys.append(path.relative_to(self._root).as_posix())
        return sorted(keys)

    async def remove(self, key: str) -> bool:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageUnavailableError(f"Failed to remove {key}: {e}", key=key) from e

    async def ensure_root(self) -> None:
        """Create the root directory if needed."""
        try:
            await asyncio.to_thread(self._root.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailableError(f"Cannot create {self._root}: {e}") from e
