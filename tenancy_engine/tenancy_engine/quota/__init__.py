"""Per-tenant resource quotas with an append-only usage log."""

from tenancy_engine.quota.events import QuotaEvent, QuotaEventBus, QuotaEventType
from tenancy_engine.quota.ledger import QuotaLedger
from tenancy_engine.quota.models import (
    QuotaCheck,
    QuotaRecommendation,
    QuotaRecord,
    QuotaStatus,
    QuotaSummary,
    RecommendationPriority,
    UsageAction,
    UsageLogEntry,
    UsageSummary,
    classify_usage,
    replay_usage,
    usage_percentage,
)
from tenancy_engine.quota.store import InMemoryQuotaStore, QuotaStore

__all__ = [
    "InMemoryQuotaStore",
    "QuotaCheck",
    "QuotaEvent",
    "QuotaEventBus",
    "QuotaEventType",
    "QuotaLedger",
    "QuotaRecommendation",
    "QuotaRecord",
    "QuotaStatus",
    "QuotaStore",
    "QuotaSummary",
    "RecommendationPriority",
    "UsageAction",
    "UsageLogEntry",
    "UsageSummary",
    "classify_usage",
    "replay_usage",
    "usage_percentage",
]
