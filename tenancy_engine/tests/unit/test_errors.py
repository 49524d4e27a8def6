"""Tests for the error hierarchy."""

from __future__ import annotations

import pytest

from tenancy_engine.errors import (
    CapacityError,
    ConfigurationError,
    ConnectionTimeoutError,
    TenancyError,
    TenantConnectionError,
    ValidationError,
    require_identifier,
)


class TestErrorKinds:
    @pytest.mark.parametrize(
        ("error_cls", "kind"),
        [
            (TenancyError, "tenancy"),
            (ConfigurationError, "configuration"),
            (TenantConnectionError, "connection"),
            (ConnectionTimeoutError, "timeout"),
            (ValidationError, "validation"),
            (CapacityError, "capacity"),
        ],
    )
    def test_kind(self, error_cls: type[TenancyError], kind: str) -> None:
        assert error_cls("boom").kind == kind

    def test_to_dict(self) -> None:
        err = TenantConnectionError("refused", context={"tenant_id": "acme"})
        assert err.to_dict() == {
            "kind": "connection",
            "message": "refused",
            "context": {"tenant_id": "acme"},
        }

    def test_context_defaults_to_empty(self) -> None:
        assert ConfigurationError("missing").context == {}

    def test_validation_error_is_value_error(self) -> None:
        assert isinstance(ValidationError("bad"), ValueError)

    def test_str_is_message(self) -> None:
        assert str(CapacityError("full")) == "full"


class TestRequireIdentifier:
    def test_returns_stripped_value(self) -> None:
        assert require_identifier("  acme ", "tenant_id") == "acme"

    @pytest.mark.parametrize("value", ["", "   ", None, 42])
    def test_rejects_blank_or_non_string(self, value) -> None:
        with pytest.raises(ValidationError) as exc_info:
            require_identifier(value, "tenant_id")
        assert exc_info.value.context == {"field": "tenant_id"}
