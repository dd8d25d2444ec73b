# ABOUTME: Bounded exponential retry for cluster writes and for whole sync attempts
# ABOUTME: Wraps tenacity with the Application's retry policy and the controller's transient policy

"""
Retry and backoff.

=============================================================================
TWO LEVELS OF RETRY
=============================================================================

1. PER OPERATION (inside one cycle)
   Every apply/delete goes through RetryController.call():

   - TransientAPIUnavailable (429, 5xx, connection failures) is retried
     with the controller's default_retry settings.
   - ApplyError (422 invalid, 409 conflict, 403 forbidden) is never retried
     here. The Application's retry.limit counts whole sync attempts only.

   Once the limit is exhausted the last error is raised; the caller records a
   per-resource failure and moves on to the next resource.

2. PER REVISION (across cycles)
   When a whole automated sync fails, the controller asks next_attempt_delay()
   how long to wait before trying the same revision again, and
   attempts_exhausted() whether to stop. Manual sync or a new revision
   resets the count.

Delays follow duration * factor ** (attempt - 1), capped at maxDuration:

    duration=5s factor=2 maxDuration=3m  ->  5s, 10s, 20s, 40s, 80s, 160s, 180s
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from appsync.errors import TransientAPIUnavailable
from appsync.models import Backoff

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from appsync.config import RetrySettings
    from appsync.models import RetryPolicy

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryController:
    """Applies retry policies to cluster operations."""

    def __init__(
        self,
        default: RetrySettings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Args:
            default: Transient-error policy for single cluster operations
            sleep: Injectable sleep (tests pass a fake)
        """
        self._default = default
        self._sleep = sleep

    async def call(self, operation: Callable[[], Awaitable[T]], description: str = "") -> T:
        """
        Run operation, retrying transient API unavailability with backoff.

        Args:
            operation: Zero-argument coroutine factory
            description: Used in log lines ("apply apps/Deployment/web/api")

        Raises:
            TransientAPIUnavailable: the last error once default_retry.limit
                                     retries are spent
            ApplyError: at once, for errors the API server will keep returning
        """
        default = self._default

        def log_retry(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            logger.warning(
                "Retrying cluster operation",
                operation=description,
                attempt=state.attempt_number,
                wait=round(state.next_action.sleep, 3) if state.next_action else None,
                error=str(error),
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientAPIUnavailable),
            stop=stop_after_attempt(default.limit + 1),
            wait=wait_exponential(multiplier=default.duration, exp_base=default.factor, max=default.max_duration),
            sleep=self._sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        return await retrying(operation)

    # -------------------------------------------------------------------------
    # PER-REVISION RETRY
    # -------------------------------------------------------------------------

    @staticmethod
    def revision_limit(policy: RetryPolicy | None) -> int:
        """Automated re-attempts allowed for a failed revision (0 without a policy)."""
        return policy.limit if policy is not None else 0

    def attempts_exhausted(self, policy: RetryPolicy | None, failures: int) -> bool:
        return failures > self.revision_limit(policy)

    @staticmethod
    def next_attempt_delay(policy: RetryPolicy | None, failures: int) -> float:
        backoff = policy.backoff if policy is not None else Backoff()
        return backoff.delay(failures)
