"""SQLAlchemy-backed :class:`~tenancy_engine.quota.store.QuotaStore`.

Uses a synchronous SQLAlchemy 2.0 engine and the ORM tables from
:mod:`tenancy_engine.quota.tables`.  A record update and its usage log
entry are written in the same transaction, under a row lock taken before
the current usage is read, so the log can never lag the record it
describes and concurrent writers cannot lose updates.

INVARIANT: ``usage_log.sequence`` is assigned by the database and is the
only ordering callers may rely on.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager, nullcontext
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from alembic import command
from alembic.config import Config
from sqlalchemy import Engine, create_engine, event, select, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from tenancy_engine.quota.models import QuotaRecord, UsageAction, UsageLogEntry
from tenancy_engine.quota.store import MutationResult, mutation_log_context
from tenancy_engine.quota.tables import Base, QuotaRecordTable, UsageLogTable

logger = logging.getLogger(__name__)

_MIGRATIONS_DIR = Path(__file__).parent / "migrations"

T = TypeVar("T")


def create_ledger_engine(url: str) -> Engine:
    """Create a sync engine for the ledger database.

    In-memory SQLite URLs get a ``StaticPool`` so every session sees the
    same database; file-backed SQLite gets WAL journalling.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_engine(url, pool_pre_ping=True)

    if not parsed.database or parsed.database == ":memory:":
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_conn: object, _: object) -> None:
            cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    logger.info("Created ledger SQLite engine: %s", url)
    return engine


def upgrade_ledger_schema(url: str, revision: str = "head") -> None:
    """Run the ledger Alembic migrations against *url* up to *revision*."""
    config = Config()
    config.set_main_option("script_location", str(_MIGRATIONS_DIR))
    # ConfigParser interpolation treats "%" specially.
    config.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    command.upgrade(config, revision)
    logger.info("Ledger schema upgraded to %s", revision)


def _to_record(row: QuotaRecordTable) -> QuotaRecord:
    return QuotaRecord(
        tenant_id=row.tenant_id,
        resource_type=row.resource_type,
        limit=row.limit,
        current_usage=row.current_usage,
        warning_threshold=row.warning_threshold,
        enforcement_enabled=row.enforcement_enabled,
        last_checked_at=row.last_checked_at,
        last_warning_at=row.last_warning_at,
        metadata=dict(row.metadata_json or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_entry(row: UsageLogTable) -> UsageLogEntry:
    return UsageLogEntry(
        sequence=row.sequence,
        tenant_id=row.tenant_id,
        resource_type=row.resource_type,
        amount=row.amount,
        action=UsageAction(row.action),
        source=row.source,
        context=dict(row.context or {}),
        usage_before=row.usage_before,
        usage_after=row.usage_after,
        recorded_at=row.recorded_at,
    )


def _copy_into(row: QuotaRecordTable, record: QuotaRecord) -> None:
    row.limit = record.limit
    row.current_usage = record.current_usage
    row.warning_threshold = record.warning_threshold
    row.enforcement_enabled = record.enforcement_enabled
    row.last_checked_at = record.last_checked_at
    row.last_warning_at = record.last_warning_at
    row.metadata_json = dict(record.metadata)
    row.updated_at = record.updated_at


class SQLQuotaStore:
    """Quota store persisted through SQLAlchemy.

    Mutations select the record row ``FOR UPDATE`` and write the record and
    its log entry in the same transaction.  SQLite ignores ``FOR UPDATE``,
    so write transactions there start with ``BEGIN IMMEDIATE`` and hold the
    database write lock from the first read.

    Parameters
    ----------
    engine:
        A sync :class:`~sqlalchemy.Engine`.  Use :meth:`from_url` to build
        one with sensible SQLite defaults.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(engine, expire_on_commit=False)
        self._sqlite = engine.url.get_backend_name() == "sqlite"
        # A StaticPool hands the same DBAPI connection to every thread.
        self._connection_lock: AbstractContextManager[Any] = (
            threading.RLock() if isinstance(engine.pool, StaticPool) else nullcontext()
        )

    @classmethod
    def from_url(cls, url: str, *, create_tables: bool = True) -> SQLQuotaStore:
        store = cls(create_ledger_engine(url))
        if create_tables:
            store.create_tables()
        return store

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_tables(self) -> None:
        """Create the ledger tables.  Idempotent."""
        with self._connection_lock:
            Base.metadata.create_all(self._engine)
        logger.info("Quota ledger tables created/verified")

    def dispose(self) -> None:
        self._engine.dispose()

    @contextmanager
    def _session(self, *, write: bool = False) -> Iterator[Session]:
        """Yield a session with commit/rollback semantics.

        ``write=True`` takes the SQLite write lock before the first read.
        """
        with self._connection_lock:
            session = self._session_factory()
            try:
                if write and self._sqlite:
                    session.execute(text("BEGIN IMMEDIATE"))
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def get_record(self, tenant_id: str, resource_type: str) -> QuotaRecord | None:
        with self._session() as session:
            row = session.execute(
                select(QuotaRecordTable).where(
                    QuotaRecordTable.tenant_id == tenant_id,
                    QuotaRecordTable.resource_type == resource_type,
                )
            ).scalar_one_or_none()
            return _to_record(row) if row is not None else None

    def save_record(self, record: QuotaRecord) -> QuotaRecord:
        with self._session(write=True) as session:
            row = self._locked_row(session, record.tenant_id, record.resource_type)
            if row is None:
                row = self._new_row(session, record)
            _copy_into(row, record)
            session.flush()
            return _to_record(row)

    def list_records(self, tenant_id: str) -> list[QuotaRecord]:
        with self._session() as session:
            rows = session.execute(
                select(QuotaRecordTable)
                .where(QuotaRecordTable.tenant_id == tenant_id)
                .order_by(QuotaRecordTable.resource_type)
            ).scalars()
            return [_to_record(row) for row in rows]

    def configure_record(self, default: QuotaRecord, changes: dict[str, Any]) -> tuple[QuotaRecord, bool]:
        def configure(session: Session) -> tuple[QuotaRecord, bool]:
            row = self._locked_row(session, default.tenant_id, default.resource_type)
            if row is None:
                row = self._new_row(session, default)
                _copy_into(row, default)
                session.flush()
                return _to_record(row), True

            record = _to_record(row)
            for field, value in changes.items():
                setattr(record, field, value)
            _copy_into(row, record)
            session.flush()
            return _to_record(row), False

        return self._write(configure, default)

    def apply_mutation(
        self,
        default: QuotaRecord,
        *,
        action: UsageAction,
        amount: int,
        source: str,
        context: dict[str, Any],
        now: datetime,
    ) -> MutationResult:
        def mutate(session: Session) -> MutationResult:
            row = self._locked_row(session, default.tenant_id, default.resource_type)
            record = _to_record(row) if row is not None else default.model_copy(deep=True)
            usage_before = record.current_usage
            previous_status = record.apply(action, amount, now)
            if row is None:
                row = self._new_row(session, record)
            _copy_into(row, record)

            log_row = UsageLogTable(
                tenant_id=record.tenant_id,
                resource_type=record.resource_type,
                amount=amount,
                action=action.value,
                source=source,
                context=mutation_log_context(action, context, usage_before),
                usage_before=usage_before,
                usage_after=record.current_usage,
                recorded_at=now,
            )
            session.add(log_row)
            session.flush()
            return MutationResult(_to_record(row), _to_entry(log_row), previous_status)

        return self._write(mutate, default)

    def _write(self, fn: Callable[[Session], T], record: QuotaRecord) -> T:
        """Run *fn* in a write transaction, retrying once on a lost insert race.

        Two writers creating the same missing record collide on the unique
        key; the loser retries and then sees the winner's row.
        """
        try:
            with self._session(write=True) as session:
                return fn(session)
        except IntegrityError:
            logger.debug(
                "Concurrent insert of quota %s for tenant %s; retrying",
                record.resource_type,
                record.tenant_id,
            )
        with self._session(write=True) as session:
            return fn(session)

    @staticmethod
    def _locked_row(session: Session, tenant_id: str, resource_type: str) -> QuotaRecordTable | None:
        return session.execute(
            select(QuotaRecordTable)
            .where(
                QuotaRecordTable.tenant_id == tenant_id,
                QuotaRecordTable.resource_type == resource_type,
            )
            .with_for_update()
        ).scalar_one_or_none()

    @staticmethod
    def _new_row(session: Session, record: QuotaRecord) -> QuotaRecordTable:
        row = QuotaRecordTable(
            tenant_id=record.tenant_id,
            resource_type=record.resource_type,
            created_at=record.created_at,
        )
        session.add(row)
        return row

    # ------------------------------------------------------------------
    # Usage log
    # ------------------------------------------------------------------

    def append_log(
        self,
        *,
        tenant_id: str,
        resource_type: str,
        amount: int,
        action: UsageAction,
        source: str,
        context: dict[str, Any],
        usage_before: int,
        usage_after: int,
        recorded_at: datetime,
    ) -> UsageLogEntry:
        with self._session(write=True) as session:
            row = UsageLogTable(
                tenant_id=tenant_id,
                resource_type=resource_type,
                amount=amount,
                action=action.value,
                source=source,
                context=dict(context),
                usage_before=usage_before,
                usage_after=usage_after,
                recorded_at=recorded_at,
            )
            session.add(row)
            session.flush()
            return _to_entry(row)

    def iter_log(
        self,
        tenant_id: str,
        resource_type: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[UsageLogEntry]:
        stmt = select(UsageLogTable).where(UsageLogTable.tenant_id == tenant_id)
        if resource_type is not None:
            stmt = stmt.where(UsageLogTable.resource_type == resource_type)
        if start is not None:
            stmt = stmt.where(UsageLogTable.recorded_at >= start)
        if end is not None:
            stmt = stmt.where(UsageLogTable.recorded_at <= end)
        stmt = stmt.order_by(UsageLogTable.sequence)

        with self._session() as session:
            return [_to_entry(row) for row in session.execute(stmt).scalars()]
