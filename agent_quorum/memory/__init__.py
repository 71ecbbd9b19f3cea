"""
Persistence and caching collaborators for Agent Quorum.
"""

from .persistence import PersistenceBackend, InMemoryPersistence, JsonFilePersistence
from .result_cache import ResultCache

__all__ = [
    'PersistenceBackend',
    'InMemoryPersistence',
    'JsonFilePersistence',
    'ResultCache',
]
