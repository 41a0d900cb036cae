"""
Domain Ports - Hexagonal architecture interfaces.

Ports define contracts that infrastructure adapters implement.
Domain layer depends on these interfaces, not concrete implementations.
"""

from src.domain.ports.context import ContextStoragePort

__all__ = [
    "ContextStoragePort",
]
