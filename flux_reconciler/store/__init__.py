"""
The store module provides a central, type-safe repository for the objects the
controller reconciles, their persisted status, and the source artifacts they
consume.

- Uses NamedResource as the key for all objects.
- Stores values as dataclass instances from manifest.py for type safety.
- Status is the only surface the controller writes; specs are owned by users.

This abstract interface allows for various implementations (in-memory, persistent, etc.).
"""

from .store import Store, StoreEvent
from .in_memory import InMemoryStore
from .artifact import Artifact

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
    "Artifact",
]
