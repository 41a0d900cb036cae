"""
Domain exceptions for the context engine.

This module provides the exception hierarchy raised by context components
for failed lookups, oversized snapshots, storage failures and cancellation.
"""

from src.domain.exceptions.context import (
    CheckpointNotFoundError,
    ContextError,
    CorruptEntryError,
    OperationCancelledError,
    SnapshotTooLargeError,
    StorageError,
    StorageUnavailableError,
)

__all__ = [
    "ContextError",
    "CheckpointNotFoundError",
    "SnapshotTooLargeError",
    "StorageError",
    "StorageUnavailableError",
    "CorruptEntryError",
    "OperationCancelledError",
]
