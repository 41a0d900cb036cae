"""
Context engine exceptions.

Exception hierarchy for the context budgeting and compaction engine.
Configuration problems are reported as validation results and are never
raised; these exceptions cover lookups the caller expects to succeed,
oversized snapshots, storage failures and cancelled I/O.

Example:
    try:
        await persistence.persist(checkpoint, abort_signal=signal)
    except OperationCancelledError:
        logger.info("Checkpoint persistence cancelled")
    except StorageUnavailableError as e:
        logger.warning(f"Checkpoint storage unavailable: {e}")
"""

from typing import Any


class ContextError(Exception):
    """
    Base exception for all context engine errors.
    """

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = kwargs

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            **self.details,
        }


class CheckpointNotFoundError(ContextError):
    """Raised when rolling back to a checkpoint that does not exist."""

    def __init__(self, checkpoint_id: str, **kwargs: Any) -> None:
        super().__init__(f"Checkpoint not found: {checkpoint_id}", **kwargs)
        self.checkpoint_id = checkpoint_id

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["checkpoint_id"] = self.checkpoint_id
        return data


class SnapshotTooLargeError(ContextError):
    """Raised when a truncation snapshot exceeds the configured size limit."""

    def __init__(self, size_bytes: int, limit_bytes: int, **kwargs: Any) -> None:
        super().__init__(
            f"Snapshot size {size_bytes} bytes exceeds limit of {limit_bytes} bytes",
            **kwargs,
        )
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class StorageError(ContextError):
    """
    Base exception for persistence failures.

    A missing key is not an error: storage ports return None for it.
    """

    def __init__(self, message: str, key: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.key = key

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["key"] = self.key
        return data


class StorageUnavailableError(StorageError):
    """
    Storage backend cannot be reached or written.

    Components that hit this are marked failed and the process continues.
    """


class CorruptEntryError(StorageError):
    """
    A stored entry exists but cannot be decoded.

    Recoverable by discarding the entry.
    """


class OperationCancelledError(ContextError):
    """Raised when an abort signal is set during an async I/O operation."""

    def __init__(self, operation: str, **kwargs: Any) -> None:
        super().__init__(f"Operation cancelled: {operation}", **kwargs)
        self.operation = operation
