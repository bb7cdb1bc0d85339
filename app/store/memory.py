"""
Mio Backend — In-process document store

Same contract as the SQL backend, kept in a dictionary.  Used for local
development (``STORE_BACKEND=memory``) and by the test-suite.  Commits are
applied to a working copy under a lock and swapped in only when every
operation succeeded, so a failing commit leaves no trace.
"""

from __future__ import annotations

import asyncio
import copy
from typing import Any, Iterable, Sequence

from app.store.base import (
    ConflictError,
    DocumentNotFoundError,
    DocumentSnapshot,
    DocumentStore,
    Filter,
    WriteOp,
    jsonable,
    apply_update,
    get_field,
    prepare_data,
)

_Key = tuple[str, str]


def _matches(data: dict, flt: Filter) -> bool:
    actual = get_field(data, flt.field)
    expected = jsonable(flt.value)
    if flt.op == "==":
        return actual == expected
    if flt.op == "!=":
        return actual is not None and actual != expected
    if flt.op == "array-contains":
        return isinstance(actual, list) and expected in actual
    if flt.op == "in":
        return actual in (expected or [])
    if actual is None:
        return False
    try:
        if flt.op == "<":
            return actual < expected
        if flt.op == "<=":
            return actual <= expected
        if flt.op == ">":
            return actual > expected
        if flt.op == ">=":
            return actual >= expected
    except TypeError:
        return False
    return False


class MemoryDocumentStore(DocumentStore):
    def __init__(self) -> None:
        self._docs: dict[_Key, tuple[dict, int]] = {}
        self._lock = asyncio.Lock()

    def _snapshot(self, key: _Key) -> DocumentSnapshot | None:
        entry = self._docs.get(key)
        if entry is None:
            return None
        data, version = entry
        return DocumentSnapshot(key[0], key[1], copy.deepcopy(data), version)

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot | None:
        return self._snapshot((collection, doc_id))

    async def get_many(
        self, collection: str, doc_ids: Sequence[str]
    ) -> dict[str, DocumentSnapshot]:
        found: dict[str, DocumentSnapshot] = {}
        for doc_id in doc_ids:
            snap = self._snapshot((collection, doc_id))
            if snap is not None:
                found[doc_id] = snap
        return found

    def _select(self, collection: str, filters: Iterable[Filter]) -> list[DocumentSnapshot]:
        filters = list(filters)
        selected = []
        for key in self._docs:
            if key[0] != collection:
                continue
            snap = self._snapshot(key)
            if all(_matches(snap.data, f) for f in filters):
                selected.append(snap)
        return selected

    async def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[DocumentSnapshot]:
        results = self._select(collection, filters)
        if order_by is not None:
            present = [s for s in results if get_field(s.data, order_by) is not None]
            missing = [s for s in results if get_field(s.data, order_by) is None]
            present.sort(key=lambda s: get_field(s.data, order_by), reverse=descending)
            results = present + missing
        else:
            results.sort(key=lambda s: s.id)
        if limit is not None:
            results = results[:limit]
        return results

    async def count(self, collection: str, filters: Iterable[Filter] = ()) -> int:
        return len(self._select(collection, filters))

    async def commit(self, ops: Sequence[WriteOp]) -> None:
        self.check_batch_size(ops)
        async with self._lock:
            working = dict(self._docs)
            for op in ops:
                self._apply(working, op)
            self._docs = working

    @staticmethod
    def _apply(working: dict[_Key, tuple[dict, int]], op: WriteOp) -> None:
        key = (op.collection, op.doc_id)
        existing = working.get(key)

        if op.expected_version is not None:
            if existing is None:
                raise DocumentNotFoundError(f"{op.collection}/{op.doc_id} does not exist")
            if existing[1] != op.expected_version:
                raise ConflictError(
                    f"{op.collection}/{op.doc_id} is at version {existing[1]}, "
                    f"expected {op.expected_version}"
                )

        version = existing[1] if existing is not None else 0

        if op.kind == "create":
            if existing is not None:
                raise ConflictError(f"{op.collection}/{op.doc_id} already exists")
            working[key] = (prepare_data(op.data), 1)
        elif op.kind == "set":
            base: dict[str, Any] = existing[0] if (existing is not None and op.merge) else {}
            working[key] = (apply_update(base, op.data), version + 1)
        elif op.kind == "update":
            if existing is None:
                raise DocumentNotFoundError(f"{op.collection}/{op.doc_id} does not exist")
            working[key] = (apply_update(existing[0], op.data), version + 1)
        elif op.kind == "delete":
            working.pop(key, None)
        else:
            raise ValueError(f"Unknown write operation {op.kind!r}")
