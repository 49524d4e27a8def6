"""Per-tenant connection construction.

The pool never talks to a database driver directly.  It depends on the
:class:`ConnectionFactory` protocol (open / close / probe) so that hosts can
plug in any client library; :class:`SQLAlchemyConnectionFactory` is the
default implementation.

Tenant databases are derived from a single template URL: the template
supplies host, credentials and driver, and the database component is
replaced by ``<prefix><tenant_id><suffix>``.  For SQLite the template's
database is treated as a *directory* and each tenant gets its own file in
it (``sqlite:////var/lib/tenants`` + ``acme`` -> ``/var/lib/tenants/tenantacme``).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field
from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, URL, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.pool import NullPool

from tenancy_engine.errors import ConfigurationError, TenantConnectionError, ValidationError, require_identifier

logger = logging.getLogger(__name__)


@runtime_checkable
class ConnectionFactory(Protocol):
    """Builds, closes and probes tenant connections."""

    def open(self, tenant_id: str) -> Any:
        """Open a new connection to *tenant_id*'s database.

        Raises:
            ConfigurationError: No template is available.
            TenantConnectionError: The driver failed to connect.
        """
        ...

    def close(self, connection: Any) -> None:
        """Close *connection*.  May raise; the pool logs and carries on."""
        ...

    def probe(self, connection: Any) -> bool:
        """Return ``True`` if *connection* answers a trivial round-trip."""
        ...


class ConnectionTemplate(BaseModel):
    """Template from which every tenant's connection settings are derived."""

    url: str = Field(..., min_length=1, description="SQLAlchemy URL of the template connection.")
    database_prefix: str = Field(default="tenant", description="Prepended to the tenant id.")
    database_suffix: str = Field(default="", description="Appended to the tenant id.")
    connect_args: dict[str, Any] = Field(
        default_factory=dict,
        description="Extra DBAPI connect() arguments passed through to the driver.",
    )

    def database_name(self, tenant_id: str) -> str:
        """Return the deterministic database name for *tenant_id*."""
        return f"{self.database_prefix}{tenant_id}{self.database_suffix}"


def _is_sqlite(url: URL) -> bool:
    return url.get_backend_name() == "sqlite"


class SQLAlchemyConnectionFactory:
    """Opens one SQLAlchemy :class:`~sqlalchemy.engine.Connection` per tenant.

    Each connection gets its own ``NullPool`` engine: pooling is the job of
    :class:`~tenancy_engine.pool.manager.TenantConnectionPool`, so the
    engine must not keep sockets of its own.

    Parameters
    ----------
    template:
        The per-tenant template.  ``None`` is accepted so that a factory can
        be wired up before configuration is complete; every :meth:`open`
        then fails with :class:`ConfigurationError`.
    """

    def __init__(self, template: ConnectionTemplate | None) -> None:
        self._template = template

    @property
    def template(self) -> ConnectionTemplate | None:
        return self._template

    def tenant_url(self, tenant_id: str) -> URL:
        """Resolve the SQLAlchemy URL for *tenant_id* from the template."""
        tenant_id = require_identifier(tenant_id, "tenant_id")
        if self._template is None:
            raise ConfigurationError(
                "No tenant connection template configured; set TENANCY_DATABASE_URL_TEMPLATE",
                context={"tenant_id": tenant_id},
            )

        try:
            base = make_url(self._template.url)
        except ArgumentError as exc:
            raise ConfigurationError(
                f"Invalid tenant connection template URL: {exc}",
                context={"tenant_id": tenant_id},
            ) from exc

        database = self._template.database_name(tenant_id)
        if _is_sqlite(base):
            if not base.database or base.database == ":memory:":
                return base.set(database=":memory:")
            if "/" in database or "\\" in database or database in (".", ".."):
                raise ValidationError(
                    f"tenant_id {tenant_id!r} does not map to a file inside the template directory",
                    context={"tenant_id": tenant_id, "field": "tenant_id"},
                )
            return base.set(database=str(Path(base.database) / database))
        return base.set(database=database)

    def open(self, tenant_id: str) -> Connection:
        url = self.tenant_url(tenant_id)
        connect_args = dict(self._template.connect_args) if self._template else {}
        if _is_sqlite(url):
            # The pool opens connections on a worker thread and hands them
            # to the calling thread.
            connect_args.setdefault("check_same_thread", False)

        try:
            engine = create_engine(url, poolclass=NullPool, connect_args=connect_args)
        except (ArgumentError, ImportError) as exc:
            raise ConfigurationError(
                f"Cannot build engine for tenant {tenant_id}: {exc}",
                context={"tenant_id": tenant_id, "backend": url.get_backend_name()},
            ) from exc

        try:
            connection = engine.connect()
        except SQLAlchemyError as exc:
            engine.dispose()
            raise TenantConnectionError(
                f"Failed to connect to database {url.database!r} for tenant {tenant_id}",
                context={"tenant_id": tenant_id, "database": url.database},
            ) from exc

        logger.debug("Opened connection for tenant %s (database=%s)", tenant_id, url.database)
        return connection

    def close(self, connection: Connection) -> None:
        engine = connection.engine
        try:
            connection.close()
        finally:
            engine.dispose()

    def probe(self, connection: Connection) -> bool:
        if connection.closed or connection.invalidated:
            return False
        # Leave no autobegun transaction behind, or the caller's own
        # ``connection.begin()`` would fail.
        started_here = not connection.in_transaction()
        try:
            connection.exec_driver_sql("SELECT 1").scalar()
            if started_here:
                connection.rollback()
        except SQLAlchemyError:
            logger.debug("Liveness probe failed", exc_info=True)
            return False
        return True
