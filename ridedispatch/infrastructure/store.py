"""
Record Store contract
=====================

The engine talks to persistence only through ``RecordStore``: a
collection-of-JSON-documents API with

* single-record ``create`` / ``get`` / ``update``,
* filtered one-shot ``query``,
* ``atomic_batch``: an all-or-nothing multi-record commit whose ops may
  carry field preconditions (``expect``) checked at commit time,
* ``subscribe``: push callbacks whenever the matching result set changes.

Patches are shallow (top-level keys).  Two server-side transforms are
resolved inside the commit so concurrent writers cannot lose updates:
``Increment`` and ``ArrayAppend``.

An update op may instead carry ``only_if``: when those fields no longer
match at commit time the op is skipped and the rest of the batch still
commits.

``InMemoryRecordStore`` is the single-process implementation used by tests
and local runs; ``SqlRecordStore`` lives in ``sql_store``.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence, Union

from ridedispatch.domain.exceptions import RecordMissing

from .change_feed import ChangeFeed, LocalChangeFeed

logger = logging.getLogger(__name__)

Record = dict[str, Any]
SnapshotCallback = Callable[[list[Record]], Union[None, Awaitable[None]]]


# ── Query primitives ──────────────────────────────────────────────────


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "in": lambda a, b: a in b,
    "<": lambda a, b: a is not None and a < b,
    "<=": lambda a, b: a is not None and a <= b,
    ">": lambda a, b: a is not None and a > b,
    ">=": lambda a, b: a is not None and a >= b,
}


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in _OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def matches(self, record: Record) -> bool:
        return _OPERATORS[self.op](record.get(self.field), self.value)


def where(field_name: str, op: str, value: Any) -> Filter:
    if op == "in":
        value = tuple(value)
    return Filter(field_name, op, value)


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


def matches_all(record: Record, filters: Iterable[Filter]) -> bool:
    return all(f.matches(record) for f in filters)


def sort_records(records: list[Record], order: Optional[OrderBy]) -> list[Record]:
    """Sort by *order*; records missing the field always go last."""
    if order is None:
        return records
    present = [r for r in records if r.get(order.field) is not None]
    missing = [r for r in records if r.get(order.field) is None]
    present.sort(key=lambda r: r[order.field], reverse=order.descending)
    return present + missing


def select(
    records: Iterable[Record],
    filters: Sequence[Filter] = (),
    order: Optional[OrderBy] = None,
    limit: Optional[int] = None,
) -> list[Record]:
    result = sort_records([r for r in records if matches_all(r, filters)], order)
    if limit is not None:
        result = result[:limit]
    return result


# ── Write primitives ──────────────────────────────────────────────────


@dataclass(frozen=True)
class Increment:
    amount: Union[int, float] = 1


@dataclass(frozen=True)
class ArrayAppend:
    items: tuple

    def __init__(self, *items: Any):
        object.__setattr__(self, "items", tuple(items))


@dataclass
class BatchOp:
    collection: str
    id: str
    patch: Record
    create: bool = False
    expect: Record = field(default_factory=dict)
    only_if: Record = field(default_factory=dict)


def create_op(collection: str, record_id: str, record: Record) -> BatchOp:
    return BatchOp(collection, record_id, record, create=True)


def update_op(
    collection: str,
    record_id: str,
    patch: Record,
    expect: Optional[Record] = None,
    only_if: Optional[Record] = None,
) -> BatchOp:
    return BatchOp(
        collection, record_id, patch, expect=dict(expect or {}), only_if=dict(only_if or {})
    )


class CommitConflict(Exception):
    """A batch precondition failed; nothing was written."""

    def __init__(
        self,
        collection: str,
        record_id: str,
        field_name: Optional[str] = None,
        expected: Any = None,
        actual: Any = None,
        reason: Optional[str] = None,
    ):
        self.collection = collection
        self.record_id = record_id
        self.field = field_name
        self.expected = expected
        self.actual = actual
        if reason is not None:
            detail = reason
        elif field_name is None:
            detail = "record already exists"
        else:
            detail = f"{field_name}={actual!r}, expected {expected!r}"
        super().__init__(f"Commit conflict on {collection}/{record_id}: {detail}")


def apply_patch(current: Record, patch: Record) -> Record:
    result = dict(current)
    for key, value in patch.items():
        if isinstance(value, Increment):
            result[key] = (result.get(key) or 0) + value.amount
        elif isinstance(value, ArrayAppend):
            result[key] = list(result.get(key) or []) + copy.deepcopy(list(value.items))
        else:
            result[key] = copy.deepcopy(value)
    return result


def check_expect(op: BatchOp, current: Record) -> None:
    for key, expected in op.expect.items():
        actual = current.get(key)
        if actual != expected:
            raise CommitConflict(op.collection, op.id, key, expected, actual)


def resolve_op(op: BatchOp, current: Optional[Record]) -> Record:
    """Validate *op* against *current* and return the resulting record."""
    if op.create:
        if current is not None:
            raise CommitConflict(op.collection, op.id)
        new = apply_patch({}, op.patch)
    else:
        if current is None:
            raise RecordMissing(f"{op.collection}/{op.id} does not exist")
        check_expect(op, current)
        if any(current.get(k) != v for k, v in op.only_if.items()):
            return current
        new = apply_patch(current, op.patch)
    new["id"] = op.id
    return new


def new_id() -> str:
    return uuid.uuid4().hex


# ── Subscriptions ─────────────────────────────────────────────────────


class Subscription:
    """Live filtered query.

    Fires *callback* with the initial snapshot, then again each time a
    change in *collection* alters the matching result.  Callback errors are
    logged and do not stop the subscription.
    """

    def __init__(
        self,
        store: RecordStore,
        collection: str,
        filters: Sequence[Filter],
        callback: SnapshotCallback,
        order: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ):
        self.store = store
        self.collection = collection
        self.filters = list(filters)
        self.callback = callback
        self.order = order
        self.limit = limit
        self.active = False
        self._last: Optional[list[Record]] = None
        self._stop: Optional[Callable[[], Awaitable[None]]] = None

    async def start(self) -> None:
        # Listen first so no change between snapshot and listen is missed
        self._stop = await self.store.feed.listen(self.collection, self._on_change)
        self.active = True
        await self._refresh(force=True)

    async def cancel(self) -> None:
        self.active = False
        if self._stop is not None:
            await self._stop()
            self._stop = None

    async def _on_change(self, record_ids: list[str]) -> None:
        if not self.active:
            return
        try:
            await self._refresh()
        except Exception:
            logger.exception("Subscription refresh failed for %s", self.collection)

    async def _refresh(self, force: bool = False) -> None:
        records = await self.store.query(
            self.collection, self.filters, order=self.order, limit=self.limit
        )
        if not force and records == self._last:
            return
        self._last = records
        try:
            result = self.callback(copy.deepcopy(records))
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Subscription callback failed for %s", self.collection)


# ── Store contract ────────────────────────────────────────────────────


class RecordStore(ABC):
    def __init__(self, feed: Optional[ChangeFeed] = None):
        self.feed = feed or LocalChangeFeed()

    @abstractmethod
    async def create(
        self, collection: str, record: Record, record_id: Optional[str] = None
    ) -> str: ...

    @abstractmethod
    async def get(self, collection: str, record_id: str) -> Optional[Record]: ...

    @abstractmethod
    async def update(self, collection: str, record_id: str, patch: Record) -> None: ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> list[Record]: ...

    @abstractmethod
    async def atomic_batch(self, ops: Sequence[BatchOp]) -> None: ...

    async def subscribe(
        self,
        collection: str,
        filters: Sequence[Filter],
        callback: SnapshotCallback,
        order: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> Subscription:
        sub = Subscription(self, collection, filters, callback, order, limit)
        await sub.start()
        return sub

    async def _publish(self, ops: Sequence[BatchOp]) -> None:
        changed: dict[str, list[str]] = defaultdict(list)
        for op in ops:
            if op.id not in changed[op.collection]:
                changed[op.collection].append(op.id)
        for collection, ids in changed.items():
            await self.feed.publish(collection, ids)


# ── In-memory implementation ──────────────────────────────────────────


class InMemoryRecordStore(RecordStore):
    """Dict-backed store with staged, lock-protected batch commits.

    Every operation yields to the event loop once (``latency`` seconds,
    default 0) so concurrent callers interleave the way remote clients do.
    """

    def __init__(self, feed: Optional[ChangeFeed] = None, latency: float = 0.0):
        super().__init__(feed)
        self.latency = latency
        self._data: dict[str, dict[str, Record]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    async def _io(self) -> None:
        await asyncio.sleep(self.latency)

    async def create(
        self, collection: str, record: Record, record_id: Optional[str] = None
    ) -> str:
        record_id = record_id or record.get("id") or new_id()
        await self.atomic_batch([create_op(collection, record_id, record)])
        return record_id

    async def get(self, collection: str, record_id: str) -> Optional[Record]:
        await self._io()
        record = self._data[collection].get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def update(self, collection: str, record_id: str, patch: Record) -> None:
        await self.atomic_batch([update_op(collection, record_id, patch)])

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> list[Record]:
        await self._io()
        rows = select(self._data[collection].values(), filters, order, limit)
        return copy.deepcopy(rows)

    async def atomic_batch(self, ops: Sequence[BatchOp]) -> None:
        if not ops:
            return
        await self._io()
        async with self._lock:
            staged: dict[tuple[str, str], Record] = {}
            for op in ops:
                key = (op.collection, op.id)
                current = staged.get(key, self._data[op.collection].get(op.id))
                staged[key] = resolve_op(op, current)
            for (collection, record_id), record in staged.items():
                self._data[collection][record_id] = record
        await self._publish(ops)


def map_snapshot(
    convert: Callable[[list[Record]], Any],
    callback: Callable[[Any], Union[None, Awaitable[None]]],
) -> SnapshotCallback:
    """Wrap *callback* so it receives ``convert(records)`` instead of raw records."""

    async def deliver(records: list[Record]) -> None:
        result = callback(convert(records))
        if inspect.isawaitable(result):
            await result

    return deliver
