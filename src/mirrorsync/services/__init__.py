"""
Services for MirrorSync.
"""

from .store import SynchronizationStore, InMemoryStore, create_store

__all__ = [
    "SynchronizationStore",
    "InMemoryStore",
    "create_store",
]
