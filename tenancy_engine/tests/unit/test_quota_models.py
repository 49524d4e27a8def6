"""Tests for quota models and the pure classification helpers."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError as PydanticValidationError

from tenancy_engine.quota.models import (
    QuotaRecord,
    QuotaStatus,
    UsageAction,
    UsageLogEntry,
    UsageSummary,
    apply_action,
    classify_usage,
    replay_usage,
    usage_percentage,
)

# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassifyUsage:
    """Verify status is a pure function of usage, limit and threshold."""

    @pytest.mark.parametrize(
        ("usage", "expected"),
        [
            (0, QuotaStatus.OK),
            (79, QuotaStatus.OK),
            (80, QuotaStatus.WARNING),
            (99, QuotaStatus.WARNING),
            (100, QuotaStatus.EXCEEDED),
            (150, QuotaStatus.EXCEEDED),
        ],
    )
    def test_thresholds(self, usage: int, expected: QuotaStatus) -> None:
        assert classify_usage(usage, 100, 80.0) is expected

    def test_zero_limit_is_unlimited(self) -> None:
        assert classify_usage(1_000_000, 0, 80.0) is QuotaStatus.OK

    def test_percentage_rounded_to_two_places(self) -> None:
        assert usage_percentage(1, 3) == 33.33

    def test_percentage_zero_when_unlimited(self) -> None:
        assert usage_percentage(50, 0) == 0.0

    def test_severity_order(self) -> None:
        assert QuotaStatus.OK.severity < QuotaStatus.WARNING.severity < QuotaStatus.EXCEEDED.severity


# ---------------------------------------------------------------------------
# QuotaRecord
# ---------------------------------------------------------------------------


class TestQuotaRecord:
    def test_derived_fields(self) -> None:
        record = QuotaRecord(tenant_id="acme", resource_type="storage_mb", limit=1000, current_usage=850)
        assert record.usage_percentage == 85.0
        assert record.remaining == 150
        assert record.status is QuotaStatus.WARNING
        assert record.key == ("acme", "storage_mb")

    def test_remaining_never_negative(self) -> None:
        record = QuotaRecord(tenant_id="acme", resource_type="users", limit=10, current_usage=12)
        assert record.remaining == 0
        assert record.is_exceeded()

    def test_status_follows_usage_changes(self) -> None:
        record = QuotaRecord(tenant_id="acme", resource_type="users", limit=100, current_usage=150)
        assert record.status is QuotaStatus.EXCEEDED
        record.current_usage = 50
        assert record.status is QuotaStatus.OK

    def test_rejects_negative_usage(self) -> None:
        with pytest.raises(PydanticValidationError):
            QuotaRecord(tenant_id="acme", resource_type="users", current_usage=-1)

    def test_rejects_threshold_above_100(self) -> None:
        with pytest.raises(PydanticValidationError):
            QuotaRecord(tenant_id="acme", resource_type="users", warning_threshold=101)

    def test_assignment_is_validated(self) -> None:
        record = QuotaRecord(tenant_id="acme", resource_type="users")
        with pytest.raises(PydanticValidationError):
            record.limit = -5

    def test_defaults(self) -> None:
        record = QuotaRecord(tenant_id="acme", resource_type="users")
        assert record.limit == 0
        assert record.warning_threshold == 80.0
        assert record.enforcement_enabled is True
        assert record.created_at.tzinfo is not None


# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------


def _entry(seq: int, action: UsageAction, amount: int, before: int = 0, after: int = 0) -> UsageLogEntry:
    return UsageLogEntry(
        sequence=seq,
        tenant_id="acme",
        resource_type="users",
        amount=amount,
        action=action,
        usage_before=before,
        usage_after=after,
    )


class TestReplay:
    """Verify replaying the log reproduces usage, including clamping."""

    def test_apply_action(self) -> None:
        assert apply_action(5, UsageAction.INCREMENT, 3) == 8
        assert apply_action(5, UsageAction.DECREMENT, 8) == 0
        assert apply_action(5, UsageAction.SET, 2) == 2
        assert apply_action(5, UsageAction.SET, -4) == 0

    def test_replay_sequence(self) -> None:
        entries = [
            _entry(1, UsageAction.INCREMENT, 10),
            _entry(2, UsageAction.DECREMENT, 25),
            _entry(3, UsageAction.INCREMENT, 7),
            _entry(4, UsageAction.SET, 40),
            _entry(5, UsageAction.DECREMENT, 5),
        ]
        assert replay_usage(entries) == 35

    def test_replay_empty_log(self) -> None:
        assert replay_usage([]) == 0

    def test_log_entry_is_frozen(self) -> None:
        entry = _entry(1, UsageAction.INCREMENT, 1)
        with pytest.raises(PydanticValidationError):
            entry.amount = 2


class TestUsageSummaryModel:
    def test_action_counts_has_every_action(self) -> None:
        now = datetime.now(UTC)
        summary = UsageSummary(tenant_id="acme", resource_type="users", start=now, end=now)
        assert summary.action_counts == {"increment": 0, "decrement": 0, "set": 0}
