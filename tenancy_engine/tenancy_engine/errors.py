"""Error types raised by the connection pool and the quota ledger.

Every error carries a short ``kind`` string and can be rendered as a
structured failure object via :meth:`TenancyError.to_dict`, so admin and
reporting layers can display failures without parsing messages.

Exceeding a quota is deliberately *not* an error: the ledger records the
usage and reports ``status == "exceeded"`` instead.
"""

from __future__ import annotations

from typing import Any


class TenancyError(Exception):
    """Base class for all tenancy engine failures."""

    kind: str = "tenancy"

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Return ``{"kind", "message", "context"}`` for display layers."""
        return {
            "kind": self.kind,
            "message": self.message,
            "context": dict(self.context),
        }


class ConfigurationError(TenancyError):
    """No usable per-tenant connection template is configured."""

    kind = "configuration"


class TenantConnectionError(TenancyError):
    """Opening a tenant connection failed (network, auth, driver)."""

    kind = "connection"


class ConnectionTimeoutError(TenantConnectionError):
    """Opening a tenant connection exceeded ``connection_timeout``."""

    kind = "timeout"


class ValidationError(TenancyError, ValueError):
    """Invalid tenant id, resource type, or amount.

    Raised before any state is touched.
    """

    kind = "validation"


class CapacityError(TenancyError):
    """The pool could not make room for a new entry.

    Reserved: eviction force-removes entries even when closing them fails,
    so this is not raised by the current pool implementation.
    """

    kind = "capacity"


def require_identifier(value: str, field: str) -> str:
    """Return *value* stripped, or raise :class:`ValidationError` if blank."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(
            f"{field} must be a non-empty string, got {value!r}",
            context={"field": field},
        )
    return value.strip()
