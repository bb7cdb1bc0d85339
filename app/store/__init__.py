"""
Mio Backend — Document store package.

``get_store()`` returns the process-wide store selected by
``STORE_BACKEND`` (``sql`` for PostgreSQL, ``memory`` for local runs).
"""

from __future__ import annotations

from functools import lru_cache

from app.config import get_settings
from app.store.base import (
    DELETE_FIELD,
    ArrayRemove,
    ArrayUnion,
    BatchLimitExceededError,
    ConflictError,
    DocumentNotFoundError,
    DocumentSnapshot,
    DocumentStore,
    Filter,
    Increment,
    StoreError,
    WriteBatch,
)

# Collection names
USERS = "users"
SHOW_USERS = "show_users"
MATCHES = "matches"
CONVERSATIONS = "conversations"


def message_batches(conversation_id: str) -> str:
    return f"{CONVERSATIONS}/{conversation_id}/message_batches"


@lru_cache(maxsize=1)
def get_store() -> DocumentStore:
    backend = get_settings().STORE_BACKEND
    if backend == "memory":
        from app.store.memory import MemoryDocumentStore

        return MemoryDocumentStore()
    if backend == "sql":
        from app.store.sql import SqlDocumentStore

        return SqlDocumentStore()
    raise ValueError(f"Unknown STORE_BACKEND {backend!r}")


__all__ = [
    "DELETE_FIELD",
    "ArrayRemove",
    "ArrayUnion",
    "BatchLimitExceededError",
    "ConflictError",
    "DocumentNotFoundError",
    "DocumentSnapshot",
    "DocumentStore",
    "Filter",
    "Increment",
    "StoreError",
    "WriteBatch",
    "USERS",
    "SHOW_USERS",
    "MATCHES",
    "CONVERSATIONS",
    "message_batches",
    "get_store",
]
