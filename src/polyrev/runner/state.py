"""Per-job daily idempotency records backed by SQLModel + SQLite."""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from datetime import UTC, date, datetime
from pathlib import Path

from sqlalchemy import Column, DateTime, event
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import Field, Session, SQLModel, col, create_engine, select

from polyrev.runner.models import IdempotencyRecord

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


class IdempotencyRecordRow(SQLModel, table=True):
    __tablename__ = "idempotency_records"  # type: ignore[bad-override]

    job_id: str = Field(primary_key=True)
    run_date: date = Field(primary_key=True)
    completed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    findings_count: int = Field(default=0)


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Build SQLAlchemy engine with consistent SQLite policy."""

    db_url = f"sqlite:///{db_path}"
    engine = create_engine(
        db_url,
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    return engine


class IdempotencyStore:
    """Records which jobs completed on which calendar date.

    Writes are per-key upserts, so concurrent jobs never contend on a shared
    lock; a forced re-run overwrites the record for the same date.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        clock: Clock = utc_now,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create the database file and table if missing."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        SQLModel.metadata.create_all(self.engine, tables=[IdempotencyRecordRow.__table__])

    def today(self) -> date:
        return self.clock().date()

    def has_run_today(self, job_id: str) -> bool:
        return self.get_record(job_id, self.today()) is not None

    def mark_run(
        self,
        job_id: str,
        *,
        run_date: date | None = None,
        findings_count: int = 0,
    ) -> IdempotencyRecord:
        """Insert or overwrite the record for ``(job_id, run_date)``."""

        now = self.clock()
        record = IdempotencyRecord(
            job_id=job_id,
            run_date=run_date or now.date(),
            completed_at=now,
            findings_count=findings_count,
        )
        statement = sqlite_insert(IdempotencyRecordRow).values(
            job_id=record.job_id,
            run_date=record.run_date,
            completed_at=_to_db_datetime(record.completed_at),
            findings_count=record.findings_count,
        )
        statement = statement.on_conflict_do_update(
            index_elements=["job_id", "run_date"],
            set_={
                "completed_at": statement.excluded.completed_at,
                "findings_count": statement.excluded.findings_count,
            },
        )
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()
        return record

    def get_record(self, job_id: str, run_date: date) -> IdempotencyRecord | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(IdempotencyRecordRow).where(
                    col(IdempotencyRecordRow.job_id) == job_id,
                    col(IdempotencyRecordRow.run_date) == run_date,
                ),
            ).one_or_none()
            return _to_record(row) if row is not None else None

    def list_records(
        self,
        *,
        run_date: date | None = None,
        job_id: str | None = None,
    ) -> list[IdempotencyRecord]:
        """Records newest date first, optionally filtered."""

        query = select(IdempotencyRecordRow)
        if run_date is not None:
            query = query.where(col(IdempotencyRecordRow.run_date) == run_date)
        if job_id is not None:
            query = query.where(col(IdempotencyRecordRow.job_id) == job_id)
        query = query.order_by(
            col(IdempotencyRecordRow.run_date).desc(),
            col(IdempotencyRecordRow.job_id),
        )
        with Session(self.engine) as session:
            return [_to_record(row) for row in session.exec(query).all()]


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.close()


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _to_record(row: IdempotencyRecordRow) -> IdempotencyRecord:
    return IdempotencyRecord(
        job_id=row.job_id,
        run_date=row.run_date,
        completed_at=_to_utc_aware_datetime(row.completed_at),
        findings_count=row.findings_count,
    )
