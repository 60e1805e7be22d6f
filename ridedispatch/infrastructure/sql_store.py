"""
SQL-backed record store.

Documents live in the ``records`` table.  ``atomic_batch`` runs inside one
transaction and takes ``SELECT ... FOR UPDATE`` row locks on every record
it touches before resolving any op.  Locks are always taken in
``(collection, id)`` order, so two batches touching overlapping records
queue behind each other instead of deadlocking, and the loser sees the
winner's write when it checks its preconditions.  A deadlock or
serialization failure reported by PostgreSQL is surfaced as a
``CommitConflict``.

Queries push ``==`` / ``in`` filters on string values into SQL (JSONB
containment on PostgreSQL, served by the GIN index on ``data``; JSON path
extraction elsewhere).  Every filter is then re-applied in Python with the
same matcher as the in-memory store, so both adapters agree on semantics.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from sqlalchemy import false, or_, type_coerce
from sqlalchemy import select as sql_select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridedispatch.domain.exceptions import StoreError

from .change_feed import ChangeFeed
from .models import RecordModel
from .store import (
    BatchOp,
    CommitConflict,
    Filter,
    OrderBy,
    Record,
    RecordStore,
    create_op,
    new_id,
    resolve_op,
    select,
    update_op,
)

logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})


def sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def sql_predicates(filters: Sequence[Filter], dialect: str) -> list:
    """SQL pre-filters for the string ``==`` / ``in`` filters in *filters*."""
    clauses = []
    for f in filters:
        if f.op == "==":
            values = (f.value,)
        elif f.op == "in":
            values = f.value
        else:
            continue
        if not all(isinstance(v, str) for v in values):
            continue
        if not values:
            clauses.append(false())
        elif dialect == "postgresql":
            data = type_coerce(RecordModel.data, JSONB)
            clauses.append(or_(*(data.contains({f.field: v}) for v in values)))
        else:
            clauses.append(RecordModel.data[f.field].as_string().in_(values))
    return clauses


class SqlRecordStore(RecordStore):
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: Optional[ChangeFeed] = None,
    ):
        super().__init__(feed)
        self.session_factory = session_factory

    async def create(
        self, collection: str, record: Record, record_id: Optional[str] = None
    ) -> str:
        record_id = record_id or record.get("id") or new_id()
        await self.atomic_batch([create_op(collection, record_id, record)])
        return record_id

    async def get(self, collection: str, record_id: str) -> Optional[Record]:
        try:
            async with self.session_factory() as session:
                row = await session.get(RecordModel, (collection, record_id))
                return dict(row.data) if row is not None else None
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read {collection}/{record_id}: {exc}") from exc

    async def update(self, collection: str, record_id: str, patch: Record) -> None:
        await self.atomic_batch([update_op(collection, record_id, patch)])

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> list[Record]:
        try:
            async with self.session_factory() as session:
                dialect = session.get_bind().dialect.name
                result = await session.execute(
                    sql_select(RecordModel.data).where(
                        RecordModel.collection == collection,
                        *sql_predicates(filters, dialect),
                    )
                )
                rows = [dict(data) for data in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to query {collection}: {exc}") from exc
        return select(rows, filters, order, limit)

    async def atomic_batch(self, ops: Sequence[BatchOp]) -> None:
        if not ops:
            return
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await self._apply(session, ops)
        except IntegrityError as exc:
            # Two batches created the same key concurrently
            first_create = next((op for op in ops if op.create), ops[0])
            raise CommitConflict(first_create.collection, first_create.id) from exc
        except DBAPIError as exc:
            if sqlstate(exc) in RETRYABLE_SQLSTATES:
                logger.warning("Batch on %s/%s aborted: %s", ops[0].collection, ops[0].id, exc)
                raise CommitConflict(
                    ops[0].collection, ops[0].id, reason="aborted by a concurrent commit"
                ) from exc
            raise StoreError(f"Batch commit failed: {exc}") from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"Batch commit failed: {exc}") from exc
        await self._publish(ops)

    @staticmethod
    async def _lock(
        session: AsyncSession, ops: Sequence[BatchOp]
    ) -> dict[tuple[str, str], Optional[RecordModel]]:
        rows: dict[tuple[str, str], Optional[RecordModel]] = {}
        for collection, record_id in sorted({(op.collection, op.id) for op in ops}):
            result = await session.execute(
                sql_select(RecordModel)
                .where(
                    RecordModel.collection == collection,
                    RecordModel.id == record_id,
                )
                .with_for_update()
            )
            rows[(collection, record_id)] = result.scalar_one_or_none()
        return rows

    async def _apply(self, session: AsyncSession, ops: Sequence[BatchOp]) -> None:
        rows = await self._lock(session, ops)
        original = {
            key: dict(row.data) for key, row in rows.items() if row is not None
        }
        staged: dict[tuple[str, str], Record] = {}

        for op in ops:
            key = (op.collection, op.id)
            current = staged.get(key, original.get(key))
            staged[key] = resolve_op(op, current)

        for (collection, record_id), record in staged.items():
            row = rows[(collection, record_id)]
            if row is None:
                session.add(
                    RecordModel(collection=collection, id=record_id, data=record, version=1)
                )
            elif record != original[(collection, record_id)]:
                row.data = record
                row.version = row.version + 1
