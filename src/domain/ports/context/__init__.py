"""Context engine ports."""

from src.domain.ports.context.storage_port import ContextStoragePort

__all__ = ["ContextStoragePort"]
