"""Service layer for MindSieve.

This module provides the storage and infrastructure services:
- Enhancer caching
- Document persistence
- Secret access
"""

from mindsieve.services.cache import RedisCache, MemoryCache, create_cache
from mindsieve.services.document_store import (
    DocumentStore,
    FirestoreDocumentStore,
    InMemoryDocumentStore,
    Increment,
    SERVER_TIMESTAMP,
    Write,
    create_document_store,
)
from mindsieve.services.secrets import SecretStore

__all__ = [
    # Cache
    "RedisCache",
    "MemoryCache",
    "create_cache",
    # Documents
    "DocumentStore",
    "FirestoreDocumentStore",
    "InMemoryDocumentStore",
    "Increment",
    "SERVER_TIMESTAMP",
    "Write",
    "create_document_store",
    # Secrets
    "SecretStore",
]
