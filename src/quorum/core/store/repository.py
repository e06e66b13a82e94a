# src/quorum/core/store/repository.py
"""Typed record store over the SQLAlchemy tables.

Handles the seam between database rows (strings, JSON text, naive
timestamps) and record dataclasses (strict enums, aware datetimes).
This is NOT a trust boundary: the store is our data, so a row that
fails to convert crashes rather than being coerced.

Writes are compare-and-set on the ``version`` column. ``update`` wraps a
read-mutate-write cycle in a retry loop so concurrent writers never
lose each other's changes.
"""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

import structlog
from sqlalchemy import Table, and_, func, insert, select, update
from sqlalchemy.exc import IntegrityError

from quorum.contracts.enums import (
    AnswerKind,
    BatchStatus,
    BudgetWindow,
    FailurePolicy,
    PipelineStatus,
    RunStatus,
)
from quorum.contracts.errors import RecordNotFound, StaleRecord
from quorum.contracts.records import (
    Answer,
    Batch,
    BudgetScope,
    PipelineRun,
    Question,
    Run,
)
from quorum.core.store.database import StoreDB
from quorum.core.store.schema import (
    answers_table,
    batches_table,
    budget_scopes_table,
    pipeline_runs_table,
    questions_table,
    runs_table,
)

logger = structlog.get_logger(__name__)

R = TypeVar("R")

# Page size when streaming query results
_FETCH_CHUNK = 200


def _json_default(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Cannot store {type(value).__name__} as JSON")


def _to_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    # SQLite drops tzinfo; everything is written in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class RecordMapper:
    """Conversion between one record dataclass and its table."""

    record_cls: type[Any]
    table: Table
    enums: Mapping[str, type[Enum]]
    json_fields: frozenset[str]

    def to_row(self, record: Any) -> dict[str, Any]:
        row: dict[str, Any] = {}
        for f in dataclasses.fields(record):
            value = getattr(record, f.name)
            if f.name in self.json_fields:
                value = None if value is None else json.dumps(value, default=_json_default)
            elif isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = _to_utc(value)
            row[f.name] = value
        return row

    def from_row(self, row: Any) -> Any:
        data = dict(row._mapping)
        for name, value in data.items():
            if value is None:
                continue
            if name in self.json_fields:
                data[name] = json.loads(value)
            elif name in self.enums:
                data[name] = self.enums[name](value)  # Convert HERE
            elif isinstance(value, datetime):
                data[name] = _to_utc(value)
        return self.record_cls(**data)

    def column_value(self, name: str, value: Any) -> Any:
        """Convert a filter value to its stored representation."""
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, datetime):
            return _to_utc(value)
        return value


_MAPPERS: dict[type[Any], RecordMapper] = {
    Question: RecordMapper(
        Question, questions_table, {}, frozenset({"tags", "extra"})
    ),
    Answer: RecordMapper(
        Answer, answers_table, {"kind": AnswerKind}, frozenset({"extra"})
    ),
    Run: RecordMapper(
        Run,
        runs_table,
        {"status": RunStatus},
        frozenset(
            {"request", "response", "error", "budget_scopes", "retry_delays", "extra"}
        ),
    ),
    Batch: RecordMapper(
        Batch,
        batches_table,
        {"status": BatchStatus},
        frozenset(
            {"run_ids", "settled_run_ids", "meta_steps", "meta_run_ids", "error", "extra"}
        ),
    ),
    PipelineRun: RecordMapper(
        PipelineRun,
        pipeline_runs_table,
        {"status": PipelineStatus, "failure_policy": FailurePolicy},
        frozenset({"definition", "steps", "lineage", "params", "extra"}),
    ),
    BudgetScope: RecordMapper(
        BudgetScope, budget_scopes_table, {"window": BudgetWindow}, frozenset({"extra"})
    ),
}


def mapper_for(record_cls: type[Any]) -> RecordMapper:
    try:
        return _MAPPERS[record_cls]
    except KeyError:
        raise TypeError(f"{record_cls.__name__} is not a stored record type") from None


class RecordStore:
    """Durable keyed storage of typed records.

    The engine reads and writes records only through this class; it holds
    no run, batch or pipeline state in memory between operations.
    """

    def __init__(self, db: StoreDB, *, max_update_attempts: int = 50) -> None:
        self._db = db
        self._max_update_attempts = max_update_attempts

    @property
    def db(self) -> StoreDB:
        return self._db

    def find(self, record_cls: type[R], record_id: str) -> R | None:
        """Fetch a record by id, or None if it does not exist."""
        mapper = mapper_for(record_cls)
        with self._db.connection() as conn:
            row = conn.execute(
                select(mapper.table).where(mapper.table.c.id == record_id)
            ).fetchone()
        if row is None:
            return None
        return mapper.from_row(row)  # type: ignore[no-any-return]

    def get(self, record_cls: type[R], record_id: str) -> R:
        """Fetch a record by id.

        Raises:
            RecordNotFound: If no such record exists
        """
        record = self.find(record_cls, record_id)
        if record is None:
            raise RecordNotFound(mapper_for(record_cls).record_cls.TYPE, record_id)
        return record

    def put(self, record: R) -> R:
        """Insert or compare-and-set a record.

        A record with ``version == 0`` is inserted; otherwise the stored row
        is replaced only if its version still matches. The record's version
        is advanced in place on success.

        Raises:
            StaleRecord: If another writer got there first
        """
        mapper = mapper_for(type(record))
        expected = record.version  # type: ignore[attr-defined]
        row = mapper.to_row(record)
        row["version"] = expected + 1
        table = mapper.table
        with self._db.connection() as conn:
            if expected == 0:
                try:
                    conn.execute(insert(table).values(**row))
                except IntegrityError:
                    raise StaleRecord(mapper.record_cls.TYPE, row["id"], expected) from None
            else:
                result = conn.execute(
                    update(table)
                    .where(and_(table.c.id == row["id"], table.c.version == expected))
                    .values(**row)
                )
                if result.rowcount != 1:
                    raise StaleRecord(mapper.record_cls.TYPE, row["id"], expected)
        record.version = expected + 1  # type: ignore[attr-defined]
        return record

    def update(
        self,
        record_cls: type[R],
        record_id: str,
        mutate: Callable[[R], bool | None],
    ) -> R:
        """Read-mutate-write with compare-and-set, retried on conflict.

        ``mutate`` receives a fresh copy each attempt and edits it in place.
        Returning ``False`` means "nothing to change": the record is returned
        without a write.

        Raises:
            RecordNotFound: If the record does not exist
            StaleRecord: If every attempt lost to a concurrent writer
        """
        for _ in range(self._max_update_attempts):
            record = self.get(record_cls, record_id)
            if mutate(record) is False:
                return record
            try:
                return self.put(record)
            except StaleRecord:
                logger.debug(
                    "cas_conflict", record_type=record_cls.__name__, record_id=record_id
                )
                continue
        raise StaleRecord(
            mapper_for(record_cls).record_cls.TYPE, record_id, -1
        )

    def query(
        self,
        record_cls: type[R],
        predicate: Callable[[R], bool] | None = None,
        *,
        order_by: Sequence[str] = (),
        limit: int | None = None,
        **filters: Any,
    ) -> Iterator[R]:
        """Lazily iterate records of one type.

        Keyword filters are equality tests evaluated by the database; a
        list/tuple/set value means "one of", ``None`` means "is null".
        ``predicate`` is applied to each loaded record. ``order_by`` names
        columns, prefixed with ``-`` for descending order.

        Matching ids are snapshotted up front and records are loaded in
        chunks, so a caller updating records mid-iteration does not shift
        the result set.
        """
        mapper = mapper_for(record_cls)
        table = mapper.table
        stmt = select(table.c.id).where(*self._conditions(mapper, filters))
        for key in order_by:
            column = table.c[key.lstrip("-")]
            stmt = stmt.order_by(column.desc() if key.startswith("-") else column.asc())
        stmt = stmt.order_by(table.c.id.asc())
        if limit is not None and predicate is None:
            stmt = stmt.limit(limit)
        with self._db.connection() as conn:
            ids = [row.id for row in conn.execute(stmt)]
        return self._iter_chunks(mapper, ids, predicate, limit)

    def count(self, record_cls: type[Any], **filters: Any) -> int:
        """Count records matching equality filters."""
        mapper = mapper_for(record_cls)
        stmt = (
            select(func.count())
            .select_from(mapper.table)
            .where(*self._conditions(mapper, filters))
        )
        with self._db.connection() as conn:
            return int(conn.execute(stmt).scalar_one())

    def _iter_chunks(
        self,
        mapper: RecordMapper,
        ids: list[str],
        predicate: Callable[[Any], bool] | None,
        limit: int | None,
    ) -> Iterator[Any]:
        yielded = 0
        for start in range(0, len(ids), _FETCH_CHUNK):
            chunk = ids[start : start + _FETCH_CHUNK]
            with self._db.connection() as conn:
                rows = conn.execute(
                    select(mapper.table).where(mapper.table.c.id.in_(chunk))
                ).fetchall()
            by_id = {row.id: row for row in rows}
            for record_id in chunk:
                row = by_id.get(record_id)
                if row is None:
                    continue
                record = mapper.from_row(row)
                if predicate is not None and not predicate(record):
                    continue
                yield record
                yielded += 1
                if limit is not None and yielded >= limit:
                    return

    @staticmethod
    def _conditions(mapper: RecordMapper, filters: Mapping[str, Any]) -> list[Any]:
        conditions = []
        for name, value in filters.items():
            if name not in mapper.table.c:
                raise ValueError(f"{mapper.record_cls.__name__} has no field '{name}'")
            column = mapper.table.c[name]
            if value is None:
                conditions.append(column.is_(None))
            elif isinstance(value, (list, tuple, set, frozenset)):
                conditions.append(
                    column.in_([mapper.column_value(name, v) for v in value])
                )
            else:
                conditions.append(column == mapper.column_value(name, value))
        return conditions

    def put_all(self, records: Iterable[Any]) -> None:
        """Insert several new records."""
        for record in records:
            self.put(record)
