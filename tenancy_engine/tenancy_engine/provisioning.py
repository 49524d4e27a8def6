"""Creation of tenant databases.

The provisioner always asks the server whether the database exists before
creating it, so "already exists" is a distinct outcome rather than a driver
error to be recognised by message text.

Supported backends:

* SQLite: one file per tenant inside the template directory.
* PostgreSQL: ``pg_database`` lookup, then ``CREATE DATABASE``.
* MySQL / MariaDB: ``information_schema.SCHEMATA`` lookup, then
  ``CREATE DATABASE ... CHARACTER SET utf8mb4``.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

from pydantic import BaseModel
from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from tenancy_engine.errors import ConfigurationError, require_identifier
from tenancy_engine.pool.factory import ConnectionTemplate, SQLAlchemyConnectionFactory

logger = logging.getLogger(__name__)

_MYSQL_BACKENDS = frozenset({"mysql", "mariadb"})


class ProvisionOutcome(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    FAILED = "failed"


class ProvisionResult(BaseModel):
    """Outcome of :meth:`DatabaseProvisioner.create`."""

    tenant_id: str
    database: str
    outcome: ProvisionOutcome
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is not ProvisionOutcome.FAILED


class DatabaseProvisioner:
    """Checks for and creates per-tenant databases derived from *template*.

    Parameters
    ----------
    template:
        The same template the connection pool uses, so the provisioned
        database is exactly the one the pool will connect to.
    """

    def __init__(self, template: ConnectionTemplate | None) -> None:
        if template is None:
            raise ConfigurationError(
                "No tenant connection template configured; set TENANCY_DATABASE_URL_TEMPLATE",
            )
        self._template = template
        self._urls = SQLAlchemyConnectionFactory(template)

    def database_url(self, tenant_id: str) -> URL:
        return self._urls.tenant_url(tenant_id)

    def exists(self, tenant_id: str) -> bool:
        """Return ``True`` if *tenant_id*'s database already exists.

        Raises
        ------
        ConfigurationError
            The template's backend is not supported.
        sqlalchemy.exc.SQLAlchemyError
            The server could not be queried.
        """
        url = self.database_url(tenant_id)
        backend = url.get_backend_name()

        if backend == "sqlite":
            if url.database in (None, "", ":memory:"):
                return True
            return Path(url.database).exists()

        if backend == "postgresql":
            query = text("SELECT 1 FROM pg_database WHERE datname = :name")
        elif backend in _MYSQL_BACKENDS:
            query = text("SELECT SCHEMA_NAME FROM INFORMATION_SCHEMA.SCHEMATA WHERE SCHEMA_NAME = :name")
        else:
            raise ConfigurationError(
                f"Database provisioning is not supported for backend {backend!r}",
                context={"tenant_id": tenant_id, "backend": backend},
            )

        engine = self._server_engine()
        try:
            with engine.connect() as conn:
                return conn.execute(query, {"name": url.database}).first() is not None
        finally:
            engine.dispose()

    def create(self, tenant_id: str) -> ProvisionResult:
        """Create *tenant_id*'s database unless it already exists."""
        tenant_id = require_identifier(tenant_id, "tenant_id")
        url = self.database_url(tenant_id)
        database = url.database or ""

        try:
            if self.exists(tenant_id):
                logger.info("Database %s for tenant %s already exists", database, tenant_id)
                return ProvisionResult(
                    tenant_id=tenant_id,
                    database=database,
                    outcome=ProvisionOutcome.ALREADY_EXISTS,
                )
            self._create(url)
        except SQLAlchemyError as exc:
            logger.warning(
                "Failed to create database %s for tenant %s: %s",
                database,
                tenant_id,
                exc,
                extra={"tenant_id": tenant_id},
            )
            return ProvisionResult(
                tenant_id=tenant_id,
                database=database,
                outcome=ProvisionOutcome.FAILED,
                reason=str(exc),
            )
        except OSError as exc:
            logger.warning("Failed to create database file %s for tenant %s: %s", database, tenant_id, exc)
            return ProvisionResult(
                tenant_id=tenant_id,
                database=database,
                outcome=ProvisionOutcome.FAILED,
                reason=str(exc),
            )

        logger.info("Created database %s for tenant %s", database, tenant_id, extra={"tenant_id": tenant_id})
        return ProvisionResult(tenant_id=tenant_id, database=database, outcome=ProvisionOutcome.CREATED)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _server_engine(self) -> Engine:
        """Engine on the template's own (maintenance) database, autocommit."""
        base = make_url(self._template.url)
        if base.get_backend_name() == "postgresql" and not base.database:
            base = base.set(database="postgres")
        return create_engine(
            base,
            poolclass=NullPool,
            isolation_level="AUTOCOMMIT",
            connect_args=dict(self._template.connect_args),
        )

    def _create(self, url: URL) -> None:
        backend = url.get_backend_name()
        if backend == "sqlite":
            path = Path(url.database)
            path.parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(url, poolclass=NullPool)
            try:
                # Connecting creates the file.
                with engine.connect() as conn:
                    conn.exec_driver_sql("SELECT 1")
            finally:
                engine.dispose()
            return

        engine = self._server_engine()
        try:
            quoted = engine.dialect.identifier_preparer.quote(url.database)
            if backend in _MYSQL_BACKENDS:
                statement = f"CREATE DATABASE {quoted} CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
            else:
                statement = f"CREATE DATABASE {quoted}"
            with engine.connect() as conn:
                conn.exec_driver_sql(statement)
        finally:
            engine.dispose()
