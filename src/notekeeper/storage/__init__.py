"""Local storage layer for Notekeeper."""

from notekeeper.storage.entity_store import EntityStore
from notekeeper.storage.id_allocator import IdentityAllocator

__all__ = [
    "EntityStore",
    "IdentityAllocator",
]
