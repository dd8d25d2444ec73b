# ABOUTME: Deletes tracked resources that are no longer desired, in reverse dependency order
# ABOUTME: Honors prune protection, the automated.prune switch and the allowEmpty guard

"""Pruner."""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from appsync.engine.resources import CLUSTER_SCOPED_KINDS
from appsync.errors import ApplyError, MutationBlocked
from appsync.models import ResultCode

if TYPE_CHECKING:
    from collections.abc import Iterable

    from appsync.cluster.base import ClusterAPI
    from appsync.engine.apply import ResourceApplier
    from appsync.engine.context import CycleContext
    from appsync.engine.diff import ResourceDiff
    from appsync.models import ResourceKey

logger = structlog.get_logger(__name__)

# Removed last: everything else may live inside them or be defined by them.
LAST_KINDS = frozenset({("", "Namespace"), ("apiextensions.k8s.io", "CustomResourceDefinition")})


def deletion_tier(key: ResourceKey) -> int:
    """0 namespaced, 1 cluster-scoped, 2 Namespace/CRD."""
    if key.group_kind in LAST_KINDS:
        return 2
    if not key.namespace or key.group_kind in CLUSTER_SCOPED_KINDS:
        return 1
    return 0


def prune_order(items: Iterable[ResourceDiff]) -> list[list[ResourceDiff]]:
    """
    Group deletion candidates into batches.

    Batches are ordered by reverse wave, then namespaced before cluster-scoped,
    then Namespaces and CRDs. Members of one batch may be deleted concurrently.
    """

    def order(d: ResourceDiff) -> tuple[int, int]:
        return (-d.wave, deletion_tier(d.key))

    ordered = sorted(items, key=lambda d: (*order(d), d.key))
    return [list(group) for _, group in itertools.groupby(ordered, key=order)]


@dataclass
class PruneOutcome:
    pruned: list[ResourceKey] = field(default_factory=list)
    skipped: list[ResourceKey] = field(default_factory=list)
    protected: list[ResourceKey] = field(default_factory=list)
    failed: list[ResourceKey] = field(default_factory=list)
    refused_empty: bool = False

    @property
    def pending(self) -> bool:
        """Whether tracked resources remain that should eventually go."""
        return bool(self.skipped or self.failed or self.refused_empty)


class Pruner:
    """Deletes prune candidates in a safe order."""

    def __init__(self, applier: ResourceApplier) -> None:
        self._applier = applier

    async def prune(
        self,
        candidates: list[ResourceDiff],
        protected: list[ResourceDiff],
        ctx: CycleContext,
    ) -> PruneOutcome:
        """
        Delete every candidate the cycle is allowed to delete.

        Args:
            candidates: PRUNE items from the diff
            protected: PRUNE_SKIPPED items (Prune=false), reported only
            ctx: The running cycle (prune permission, propagation policy)
        """
        outcome = PruneOutcome()
        for item in protected:
            outcome.protected.append(item.key)
            ctx.record_key(item.key, ResultCode.PRUNE_SKIPPED, "ignored (Prune=false)", wave=item.wave)
        if not candidates:
            return outcome

        if ctx.desired_count == 0 and not ctx.allow_empty:
            outcome.refused_empty = True
            for item in candidates:
                ctx.record_key(
                    item.key, ResultCode.PRUNE_SKIPPED, "refusing to prune every resource (allowEmpty is false)"
                )
            logger.warning("Refusing to prune all resources", app=ctx.app.name, count=len(candidates))
            return outcome

        if not ctx.prune_allowed:
            for item in candidates:
                outcome.skipped.append(item.key)
                ctx.record_key(item.key, ResultCode.PRUNE_SKIPPED, "ignored (requires pruning)", wave=item.wave)
            return outcome

        ctx.check_cancelled()
        policy = ctx.propagation_policy
        for batch in prune_order(candidates):
            ctx.check_cancelled()
            results = await asyncio.gather(
                *(self._delete(ctx.cluster, item.key, policy) for item in batch)
            )
            for item, error in zip(batch, results, strict=True):
                if error is None:
                    outcome.pruned.append(item.key)
                    ctx.record_key(item.key, ResultCode.PRUNED, "pruned", wave=item.wave)
                else:
                    outcome.failed.append(item.key)
                    ctx.record_key(item.key, ResultCode.SYNC_FAILED, error, wave=item.wave)
        logger.info("Pruned resources", app=ctx.app.name, pruned=len(outcome.pruned), failed=len(outcome.failed))
        return outcome

    async def _delete(
        self,
        cluster: ClusterAPI,
        key: ResourceKey,
        propagation: str,
    ) -> str | None:
        """Delete one resource; returns an error message or None."""
        try:
            await self._applier.delete(cluster, key, propagation_policy=propagation)
        except (ApplyError, MutationBlocked) as e:
            return e.message
        return None
