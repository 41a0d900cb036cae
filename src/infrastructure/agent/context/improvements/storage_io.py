"""JSON entries over a ContextStoragePort with cancellation checks."""

import asyncio
import logging
from typing import Any, Optional

import orjson

from src.domain.exceptions.context import CorruptEntryError, OperationCancelledError
from src.domain.ports.context.storage_port import ContextStoragePort

logger = logging.getLogger(__name__)


def check_abort(abort_signal: Optional[asyncio.Event], operation: str) -> None:
    """Raise OperationCancelledError if abort_signal is set."""
    if abort_signal is not None and abort_signal.is_set():
        raise OperationCancelledError(operation)


async def read_json(
    storage: ContextStoragePort,
    key: str,
    abort_signal: Optional[asyncio.Event] = None,
) -> Optional[Any]:
    """Read and decode a JSON entry.

    Returns None if the key is missing.

    Raises:
        CorruptEntryError: If the entry exists but is not valid JSON.
        OperationCancelledError: If abort_signal is set around the read.
    """
    check_abort(abort_signal, f"read {key}")
    raw = await storage.read(key)
    check_abort(abort_signal, f"read {key}")
    if raw is None:
        return None
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise CorruptEntryError(f"Invalid JSON in {key}: {e}", key=key) from e


async def write_json(
    storage: ContextStoragePort,
    key: str,
    value: Any,
    abort_signal: Optional[asyncio.Event] = None,
) -> None:
    """Encode and write a JSON entry atomically."""
    data = orjson.dumps(value, option=orjson.OPT_INDENT_2)
    check_abort(abort_signal, f"write {key}")
    await storage.write(key, data)
    check_abort(abort_signal, f"write {key}")
