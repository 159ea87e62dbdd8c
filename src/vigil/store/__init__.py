"""
Storage adapters: the key-value cache and the audit document store.
"""

from vigil.store.cache import CacheStore, MemoryCache, RedisCache
from vigil.store.documents import DocumentStore, MemoryDocumentStore

__all__ = [
    "CacheStore",
    "DocumentStore",
    "MemoryCache",
    "MemoryDocumentStore",
    "RedisCache",
]
