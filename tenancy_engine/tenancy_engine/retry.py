"""Caller-side retry with exponential backoff and optional jitter.

The pool never retries on its own: a failed or timed-out ``acquire()``
surfaces immediately.  Callers that want to ride out transient connection
failures wrap the call with :func:`retry_with_backoff` or use
:func:`acquire_with_retry`.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, Field

from tenancy_engine.errors import TenantConnectionError

if TYPE_CHECKING:
    from tenancy_engine.pool.manager import TenantConnectionPool

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_retries: int = Field(
        default=3,
        ge=0,
        description="Maximum number of retry attempts before re-raising.",
    )
    base_delay: float = Field(
        default=0.5,
        gt=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_delay: float = Field(
        default=10.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=True,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )


def compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay for *attempt* (zero-based) given *config*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


def retry_with_backoff(
    fn: Callable[[], T],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...] = (TenantConnectionError,),
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Execute *fn* with retry and exponential backoff.

    Parameters
    ----------
    fn:
        A zero-argument callable, invoked from scratch on each attempt.
    config:
        Retry parameters (see :class:`RetryConfig`).
    retryable_exceptions:
        Only exceptions whose type appears in this tuple trigger a retry.
        All other exceptions propagate immediately.  The default covers
        connection failures and timeouts but not configuration errors.
    sleep:
        Blocking sleep function.  Injected by tests.

    Raises
    ------
    Exception
        The last exception raised by *fn* once attempts are exhausted.
    """
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return fn()
        except retryable_exceptions as exc:
            last_exception = exc
            if attempt >= config.max_retries:
                break
            delay = compute_delay(attempt, config)
            logger.warning(
                "Retry %d/%d after %.1fs: %s",
                attempt + 1,
                config.max_retries,
                delay,
                exc,
            )
            sleep(delay)

    assert last_exception is not None  # noqa: S101
    raise last_exception


def acquire_with_retry(
    pool: TenantConnectionPool,
    tenant_id: str,
    config: RetryConfig | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """``pool.acquire(tenant_id)`` retried on connection failures and timeouts."""
    return retry_with_backoff(
        lambda: pool.acquire(tenant_id),
        config or RetryConfig(),
        sleep=sleep,
    )
