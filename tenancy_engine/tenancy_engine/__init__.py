"""Per-tenant connection pooling and resource quota accounting.

Two cooperating subsystems:

* :mod:`tenancy_engine.pool` keeps a bounded set of live tenant database
  connections with LRU eviction, idle expiry and health reporting.
* :mod:`tenancy_engine.quota` tracks resource usage per tenant against
  limits, with an append-only usage log for audit and trend analysis.
"""

__version__ = "0.1.0"
