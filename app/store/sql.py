"""
Mio Backend — PostgreSQL document store

Implements :class:`~app.store.base.DocumentStore` on a single ``documents``
table (collection, id, JSONB data, version) through SQLAlchemy's async ORM.

Every commit runs in one database transaction.  Rows touched by a commit are
locked with ``SELECT ... FOR UPDATE`` before preconditions are checked, so
two commits guarded by the same ``expected_version`` can never both succeed;
the loser observes the bumped version and fails with :class:`ConflictError`.
"""

from __future__ import annotations

from typing import Any, Iterable, Sequence

import structlog
from sqlalchemy import and_, false, func, or_, select, type_coerce
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import get_engine, get_session_factory
from app.models.document import Document
from app.store.base import (
    ConflictError,
    DocumentNotFoundError,
    DocumentSnapshot,
    DocumentStore,
    Filter,
    StoreError,
    WriteOp,
    apply_update,
    jsonable,
    prepare_data,
)

logger = structlog.get_logger("mio.store.sql")


def _field_expr(path: str):
    parts = path.split(".")
    if len(parts) == 1:
        return Document.data[parts[0]]
    return Document.data[tuple(parts)]


def _condition(flt: Filter):
    expr = _field_expr(flt.field)
    value = jsonable(flt.value)

    if flt.op == "array-contains":
        return expr.contains(type_coerce([value], JSONB))
    if flt.op == "in":
        if not value:
            return false()
        return or_(*[expr == type_coerce(v, JSONB) for v in value])
    if value is None:
        if flt.op == "==":
            return expr.astext.is_(None)
        if flt.op == "!=":
            return expr.astext.isnot(None)
        return false()

    bound = type_coerce(value, JSONB)
    if flt.op == "==":
        return expr == bound
    if flt.op == "!=":
        return and_(expr.astext.isnot(None), expr != bound)
    if flt.op == "<":
        return expr < bound
    if flt.op == "<=":
        return expr <= bound
    if flt.op == ">":
        return expr > bound
    return expr >= bound


def _snapshot(row: Document) -> DocumentSnapshot:
    return DocumentSnapshot(row.collection, row.id, dict(row.data or {}), row.version)


class SqlDocumentStore(DocumentStore):
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._session_factory = session_factory or get_session_factory()
        self._owns_engine = session_factory is None

    # ── Reads ────────────────────────────────────────────────────────────

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot | None:
        async with self._session_factory() as session:
            stmt = select(Document).where(
                Document.collection == collection, Document.id == doc_id
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
        return _snapshot(row) if row is not None else None

    async def get_many(
        self, collection: str, doc_ids: Sequence[str]
    ) -> dict[str, DocumentSnapshot]:
        if not doc_ids:
            return {}
        async with self._session_factory() as session:
            stmt = select(Document).where(
                Document.collection == collection, Document.id.in_(list(doc_ids))
            )
            rows = (await session.execute(stmt)).scalars().all()
        return {row.id: _snapshot(row) for row in rows}

    async def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[DocumentSnapshot]:
        stmt = select(Document).where(
            Document.collection == collection,
            *[_condition(f) for f in filters],
        )
        if order_by is not None:
            expr = _field_expr(order_by)
            stmt = stmt.order_by(
                expr.desc().nulls_last() if descending else expr.asc().nulls_last()
            )
        stmt = stmt.order_by(Document.id)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_snapshot(row) for row in rows]

    async def count(self, collection: str, filters: Iterable[Filter] = ()) -> int:
        stmt = (
            select(func.count())
            .select_from(Document)
            .where(Document.collection == collection, *[_condition(f) for f in filters])
        )
        async with self._session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())

    # ── Writes ───────────────────────────────────────────────────────────

    async def commit(self, ops: Sequence[WriteOp]) -> None:
        self.check_batch_size(ops)
        log = logger.bind(op_count=len(ops))
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    for op in ops:
                        await self._apply(session, op)
        except IntegrityError as exc:
            log.warning("commit_conflict", error=str(exc.orig))
            raise ConflictError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            log.error("commit_failed", error=str(exc))
            raise StoreError(f"commit failed: {exc}") from exc

    @staticmethod
    async def _apply(session: AsyncSession, op: WriteOp) -> None:
        existing = await session.get(
            Document, (op.collection, op.doc_id), with_for_update=True
        )

        if op.expected_version is not None:
            if existing is None:
                raise DocumentNotFoundError(f"{op.collection}/{op.doc_id} does not exist")
            if existing.version != op.expected_version:
                raise ConflictError(
                    f"{op.collection}/{op.doc_id} is at version {existing.version}, "
                    f"expected {op.expected_version}"
                )

        if op.kind == "create":
            if existing is not None:
                raise ConflictError(f"{op.collection}/{op.doc_id} already exists")
            session.add(
                Document(
                    collection=op.collection,
                    id=op.doc_id,
                    data=prepare_data(op.data),
                    version=1,
                )
            )
        elif op.kind == "set":
            if existing is None:
                session.add(
                    Document(
                        collection=op.collection,
                        id=op.doc_id,
                        data=prepare_data(op.data),
                        version=1,
                    )
                )
            else:
                base: dict[str, Any] = existing.data if op.merge else {}
                existing.data = apply_update(base, op.data)
                existing.version += 1
        elif op.kind == "update":
            if existing is None:
                raise DocumentNotFoundError(f"{op.collection}/{op.doc_id} does not exist")
            existing.data = apply_update(existing.data, op.data)
            existing.version += 1
        elif op.kind == "delete":
            if existing is not None:
                await session.delete(existing)
        else:
            raise ValueError(f"Unknown write operation {op.kind!r}")

        await session.flush()

    async def close(self) -> None:
        if self._owns_engine:
            await get_engine().dispose()
            logger.info("database_pool_closed")
