"""
Context Storage Port - Domain layer interface for checkpoint and stats persistence.

Defines a key/value surface over a directory tree. Implementations must:
1. Return None from ``read`` for a missing key (a cache miss, not an error)
2. Raise ``StorageUnavailableError`` when the backend cannot be used
3. Make ``write`` atomic so an interrupted write never leaves a partial entry

Following hexagonal architecture: the context engine depends only on this port.
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class ContextStoragePort(Protocol):
    """Byte-oriented storage for serialized snapshots."""

    async def read(self, key: str) -> bytes | None:
        """Read the value stored under key, or None if absent."""
        ...

    async def write(self, key: str, value: bytes) -> None:
        """Store value under key, replacing any previous value."""
        ...

    async def list(self) -> list[str]:
        """List all stored keys."""
        ...

    async def remove(self, key: str) -> bool:
        """Remove key. Returns False if it did not exist."""
        ...
