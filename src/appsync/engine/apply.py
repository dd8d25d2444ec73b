# ABOUTME: The single write path from the engine to a cluster
# ABOUTME: Every apply/delete/patch is safety-checked, retried, classified and audited

"""
Resource applier.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Every cluster write the engine makes goes through ResourceApplier:

    guard.check_mutation()        read-only / destructive / cluster / rate limit
         |
    retry.call(cluster.apply)     bounded retry of transient errors
         |
    classify_api_error()          ClusterAPIError -> ApplyError / Transient...
         |
    audit.log_write()             one audit entry per outcome

A rate-limited write is reported as TransientAPIUnavailable, so it is retried
with backoff like any other temporary unavailability. Every other refusal by
the guard is a MutationBlocked error and is never retried.

The applier returns what the API server answered but never touches the live
cache; the observer learns about the write from the watch stream.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from appsync.errors import (
    ApplyError,
    ClusterAPIError,
    MutationBlocked,
    TransientAPIUnavailable,
    classify_api_error,
)
from appsync.models import ResourceKey

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from appsync.cluster.base import ClusterAPI
    from appsync.engine.retry import RetryController
    from appsync.utils.logging import AuditLogger
    from appsync.utils.safety import SafetyGuard

logger = structlog.get_logger(__name__)


class ResourceApplier:
    """Guarded, retried and audited cluster writes."""

    def __init__(
        self,
        guard: SafetyGuard,
        retry: RetryController,
        audit: AuditLogger | None = None,
        field_manager: str = "appsync",
    ) -> None:
        self._guard = guard
        self._retry = retry
        self._audit = audit
        self.field_manager = field_manager

    async def _mutate(
        self,
        action: str,
        cluster: ClusterAPI,
        key: ResourceKey,
        call: Callable[[], Awaitable[Any]],
        destructive: bool = False,
    ) -> Any:
        target = str(key)

        async def attempt() -> Any:
            blocked = self._guard.check_mutation(action, cluster.name, destructive=destructive)
            if blocked is not None:
                if blocked.rate_limited:
                    raise TransientAPIUnavailable(blocked.reason, resource=key, status_code=429)
                raise MutationBlocked(blocked.reason, details=blocked.setting, resource=key)
            try:
                return await call()
            except ClusterAPIError as e:
                raise classify_api_error(e, key) from e

        try:
            result = await self._retry.call(attempt, description=f"{action} {target}")
        except MutationBlocked as e:
            if self._audit:
                self._audit.log_blocked(action, target, e.message)
            raise
        except ApplyError as e:
            if self._audit:
                self._audit.log_error(action, target, str(e))
            raise
        if self._audit:
            self._audit.log_write(action, target, "success", {"cluster": cluster.name})
        return result

    async def apply(
        self,
        cluster: ClusterAPI,
        manifest: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Server-side apply a manifest.

        Raises:
            MutationBlocked: refused by the safety guard
            ApplyError: rejected by the API server after retries
        """
        key = ResourceKey.from_manifest(manifest)
        logger.debug("Applying resource", resource=str(key), cluster=cluster.name)
        return await self._mutate(
            "apply",
            cluster,
            key,
            lambda: cluster.apply(manifest, field_manager=self.field_manager),
        )

    async def delete(
        self,
        cluster: ClusterAPI,
        key: ResourceKey,
        propagation_policy: str = "foreground",
    ) -> bool:
        """
        Delete a resource. Returns False when it was already gone.

        Raises:
            MutationBlocked: refused by the safety guard (e.g. destructive ops disabled)
            ApplyError: rejected by the API server after retries
        """
        logger.debug("Deleting resource", resource=str(key), propagation=propagation_policy)
        return await self._mutate(
            "delete",
            cluster,
            key,
            lambda: cluster.delete(key, propagation_policy=propagation_policy),
            destructive=True,
        )

    async def patch(
        self,
        cluster: ClusterAPI,
        key: ResourceKey,
        body: dict[str, Any],
        subresource: str | None = None,
        action: str = "patch",
    ) -> dict[str, Any]:
        """JSON merge patch (finalizer removal, orphaning, status write-back)."""
        return await self._mutate(
            action,
            cluster,
            key,
            lambda: cluster.patch(key, body, subresource=subresource),
        )
