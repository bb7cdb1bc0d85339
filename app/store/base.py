"""
Mio Backend — Document store contract

A small transactional document database interface: single-document reads
and writes, filtered collection queries, server-side counts and atomic
multi-document batch commits bounded by an operation count.  Collections are
plain strings and may be nested paths such as
``conversations/{id}/message_batches``.

Field-level mutators (:class:`Increment`, :class:`ArrayUnion`,
:class:`ArrayRemove`, :data:`DELETE_FIELD`) are resolved against the stored
document at commit time by :func:`apply_update`, which both backends share.
Update keys may be dotted paths (``"notification_settings.match"``).
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from pydantic_core import to_jsonable_python

from app.config import STORE_MAX_BATCH_OPS


# ──────────────────────────────────────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────────────────────────────────────

class StoreError(Exception):
    """Base class for document store failures."""


class ConflictError(StoreError):
    """A commit precondition failed (version mismatch or document exists)."""


class DocumentNotFoundError(StoreError):
    """An update or precondition referenced a missing document."""


class BatchLimitExceededError(StoreError):
    """More operations were added to a batch than one commit allows."""


# ──────────────────────────────────────────────────────────────────────────────
# Field transforms
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Increment:
    amount: int | float = 1


class ArrayUnion:
    def __init__(self, *values: Any) -> None:
        self.values = list(values)

    def __repr__(self) -> str:
        return f"ArrayUnion({self.values!r})"


class ArrayRemove:
    def __init__(self, *values: Any) -> None:
        self.values = list(values)

    def __repr__(self) -> str:
        return f"ArrayRemove({self.values!r})"


class _DeleteField:
    def __repr__(self) -> str:
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()


def jsonable(value: Any) -> Any:
    return to_jsonable_python(value)


def _resolve(current: Any, value: Any) -> Any:
    if isinstance(value, Increment):
        base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
        return base + value.amount
    if isinstance(value, ArrayUnion):
        result = list(current) if isinstance(current, list) else []
        for item in jsonable(value.values):
            if item not in result:
                result.append(item)
        return result
    if isinstance(value, ArrayRemove):
        removed = jsonable(value.values)
        existing = current if isinstance(current, list) else []
        return [item for item in existing if item not in removed]
    return jsonable(value)


def apply_update(data: dict, fields: dict[str, Any]) -> dict:
    """Return a copy of ``data`` with ``fields`` (dotted keys allowed) applied."""
    result = copy.deepcopy(data)
    for key, value in fields.items():
        parts = key.split(".")
        target = result
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        leaf = parts[-1]
        if value is DELETE_FIELD:
            target.pop(leaf, None)
            continue
        target[leaf] = _resolve(target.get(leaf), value)
    return result


def prepare_data(data: dict) -> dict:
    """Resolve transforms in a fresh document body and make it JSON-safe."""
    return apply_update({}, data)


def get_field(data: dict, path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


# ──────────────────────────────────────────────────────────────────────────────
# Snapshots, filters, operations
# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class DocumentSnapshot:
    collection: str
    id: str
    data: dict
    version: int

    def get(self, path: str, default: Any = None) -> Any:
        value = get_field(self.data, path)
        return default if value is None else value


FILTER_OPS = ("==", "!=", "<", "<=", ">", ">=", "array-contains", "in")


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter operator {self.op!r}")


@dataclass
class WriteOp:
    kind: str  # create | set | update | delete
    collection: str
    doc_id: str
    data: dict = field(default_factory=dict)
    merge: bool = False
    expected_version: int | None = None


class WriteBatch:
    """Accumulates write operations for a single atomic commit."""

    def __init__(self, store: "DocumentStore", max_ops: int = STORE_MAX_BATCH_OPS) -> None:
        self._store = store
        self._max_ops = max_ops
        self.ops: list[WriteOp] = []

    def __len__(self) -> int:
        return len(self.ops)

    @property
    def remaining(self) -> int:
        return self._max_ops - len(self.ops)

    def _add(self, op: WriteOp) -> "WriteBatch":
        if len(self.ops) >= self._max_ops:
            raise BatchLimitExceededError(
                f"batch already holds {len(self.ops)} operations (limit {self._max_ops})"
            )
        self.ops.append(op)
        return self

    def create(self, collection: str, doc_id: str, data: dict) -> "WriteBatch":
        """Write a new document; the commit fails if it already exists."""
        return self._add(WriteOp("create", collection, doc_id, dict(data)))

    def set(self, collection: str, doc_id: str, data: dict, *, merge: bool = False) -> "WriteBatch":
        return self._add(WriteOp("set", collection, doc_id, dict(data), merge=merge))

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict,
        *,
        expected_version: int | None = None,
    ) -> "WriteBatch":
        """Patch an existing document; missing documents fail the commit."""
        return self._add(
            WriteOp("update", collection, doc_id, dict(fields), expected_version=expected_version)
        )

    def delete(
        self,
        collection: str,
        doc_id: str,
        *,
        expected_version: int | None = None,
    ) -> "WriteBatch":
        return self._add(WriteOp("delete", collection, doc_id, expected_version=expected_version))

    async def commit(self) -> None:
        if not self.ops:
            return
        await self._store.commit(self.ops)
        self.ops = []


class DocumentStore(ABC):
    """Abstract document store; see the module docstring for semantics."""

    max_batch_ops: int = STORE_MAX_BATCH_OPS

    def batch(self, max_ops: int | None = None) -> WriteBatch:
        limit = self.max_batch_ops if max_ops is None else min(max_ops, self.max_batch_ops)
        return WriteBatch(self, max_ops=limit)

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot | None: ...

    @abstractmethod
    async def get_many(
        self, collection: str, doc_ids: Sequence[str]
    ) -> dict[str, DocumentSnapshot]: ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[DocumentSnapshot]: ...

    @abstractmethod
    async def count(self, collection: str, filters: Iterable[Filter] = ()) -> int: ...

    @abstractmethod
    async def commit(self, ops: Sequence[WriteOp]) -> None:
        """Apply ``ops`` atomically: all succeed or none are visible."""

    # Single-document conveniences, each one atomic commit.

    async def set(self, collection: str, doc_id: str, data: dict, *, merge: bool = False) -> None:
        await self.batch().set(collection, doc_id, data, merge=merge).commit()

    async def update(self, collection: str, doc_id: str, fields: dict, **kwargs: Any) -> None:
        await self.batch().update(collection, doc_id, fields, **kwargs).commit()

    async def delete(self, collection: str, doc_id: str) -> None:
        await self.batch().delete(collection, doc_id).commit()

    def check_batch_size(self, ops: Sequence[WriteOp]) -> None:
        if len(ops) > self.max_batch_ops:
            raise BatchLimitExceededError(
                f"commit of {len(ops)} operations exceeds the limit of {self.max_batch_ops}"
            )

    async def close(self) -> None:
        return None
