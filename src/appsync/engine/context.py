# ABOUTME: Per-cycle state shared by the sync pipeline stages
# ABOUTME: Carries the target cluster, the operation request, collected results and cancellation

"""
Cycle context.

One CycleContext is created per reconciliation cycle of one Application and
handed to every stage (waves, hooks, prune). It holds:

- WHERE: the destination cluster and its live-state observer
- WHAT: the Application and the resolved revision
- HOW: the operation request (manual/automated, prune, dry run, self-heal)
- OUTCOME: per-resource results collected by the stages
- CANCELLATION: checked at every wave boundary and before hooks and prune
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from appsync.errors import CycleCancelled
from appsync.models import ResultCode, SyncResultResource

if TYPE_CHECKING:
    from appsync.cluster.base import ClusterAPI
    from appsync.engine.observer import LiveStateObserver
    from appsync.errors import ReconcileError
    from appsync.models import Application, ResourceKey

logger = structlog.get_logger(__name__)


@dataclass
class SyncRequest:
    """
    How a sync was asked for.

    Attributes:
        manual: Requested through the status surface (ignores automated policy)
        prune: Prune requested explicitly (manual sync with prune=true)
        dry_run: Plan only, no cluster writes
        self_heal: Automated sync triggered by drift at an already-synced revision
    """

    manual: bool = False
    prune: bool = False
    dry_run: bool = False
    self_heal: bool = False


@dataclass
class CycleContext:
    """State of one reconciliation cycle."""

    app: Application
    revision: str
    cluster: ClusterAPI
    observer: LiveStateObserver
    request: SyncRequest = field(default_factory=SyncRequest)
    completed_hooks: set[str] = field(default_factory=set)
    results: list[SyncResultResource] = field(default_factory=list)
    desired_count: int = 0
    error: ReconcileError | None = None
    _cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    _cancel_reason: str = ""

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    def cancel(self, reason: str) -> None:
        if not self._cancelled.is_set():
            logger.info("Cancelling cycle", app=self.app.name, reason=reason)
            self._cancel_reason = reason
            self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def cancel_reason(self) -> str:
        return self._cancel_reason

    def check_cancelled(self) -> None:
        """Raise CycleCancelled if cancel() was called."""
        if self._cancelled.is_set():
            raise CycleCancelled(f"sync cancelled: {self._cancel_reason}")

    # =========================================================================
    # POLICY
    # =========================================================================

    @property
    def prune_allowed(self) -> bool:
        """Manual sync prunes only on request; automated sync only with automated.prune."""
        if self.request.manual:
            return self.request.prune
        automated = self.app.automated
        return bool(automated and automated.prune) or self.request.prune

    @property
    def allow_empty(self) -> bool:
        automated = self.app.automated
        return bool(automated and automated.allow_empty)

    @property
    def propagation_policy(self) -> str:
        return (self.app.spec.sync_policy.option("PrunePropagationPolicy") or "foreground").lower()

    @property
    def rerun_hooks(self) -> bool:
        """Whether hooks already completed at this revision run again."""
        if self.request.manual:
            return True
        return self.request.self_heal and self.app.spec.sync_policy.enabled("RerunHooksOnSelfHeal")

    # =========================================================================
    # RESULTS
    # =========================================================================

    def record(self, result: SyncResultResource) -> None:
        self.results = [
            r for r in self.results if not (r.key == result.key and r.sync_phase == result.sync_phase)
        ]
        self.results.append(result)

    def record_key(self, key: ResourceKey, status: ResultCode, message: str = "", **kwargs: object) -> None:
        self.record(SyncResultResource.for_key(key, status, message=message, **kwargs))

    @property
    def failed(self) -> list[SyncResultResource]:
        return [r for r in self.results if r.status == ResultCode.SYNC_FAILED]
