# ABOUTME: Cascade deletion of an Application's managed resources before its finalizer is removed
# ABOUTME: Child Applications go first and are awaited; Delete=false resources are orphaned

"""
Cascade deletion.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

When an Application gets a deletionTimestamp the controller stops syncing it
and hands it to CascadeDeleter:

    finalizer present?
      no  -> release: nothing in the destination is touched
      yes -> 1. child Applications: delete, wait until they are gone
                (each child's own finalizer cascades through its resources)
             2. everything else the Application tracks, in prune order
             3. wait until every deleted resource has disappeared
             4. remove the finalizer so the API server can drop the object

Resources with `Delete=false` in their sync options are orphaned instead:
their tracking label is removed and they are left running.

A deletion that cannot finish raises DeletionError; the finalizer stays and
the next cycle tries again.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from appsync.engine.diff import DiffAction, ResourceDiff
from appsync.engine.pruner import prune_order
from appsync.engine.resources import LABEL_TRACKING, live_options
from appsync.errors import ApplyError, DeletionError, MutationBlocked
from appsync.models import APPLICATION_GROUP, APPLICATION_KIND, RESOURCES_FINALIZER

if TYPE_CHECKING:
    from appsync.cluster.base import ClusterAPI
    from appsync.config import ControllerSettings
    from appsync.engine.apply import ResourceApplier
    from appsync.engine.observer import LiveStateObserver
    from appsync.models import Application, ResourceKey

logger = structlog.get_logger(__name__)


@dataclass
class CascadeOutcome:
    deleted: list[ResourceKey] = field(default_factory=list)
    orphaned: list[ResourceKey] = field(default_factory=list)
    released: bool = False


def _is_application(key: ResourceKey) -> bool:
    return key.group_kind == (APPLICATION_GROUP, APPLICATION_KIND)


class CascadeDeleter:
    """Deletes an Application's resources and then releases the Application."""

    def __init__(self, applier: ResourceApplier, settings: ControllerSettings) -> None:
        self._applier = applier
        self._settings = settings

    async def delete(
        self,
        app: Application,
        home: ClusterAPI,
        cluster: ClusterAPI,
        observer: LiveStateObserver,
    ) -> CascadeOutcome:
        """
        Run cascade deletion for an Application being deleted.

        Args:
            app: Application with a deletionTimestamp
            home: Cluster holding the Application object
            cluster: Destination cluster
            observer: Live state of the destination cluster

        Raises:
            DeletionError: a resource could not be deleted or did not go away
                           in time; the finalizer is kept.
        """
        log = logger.bind(app=app.name)
        outcome = CascadeOutcome()
        if not app.cascades:
            log.info("Releasing application without deleting resources")
            outcome.released = True
            return outcome

        for resource in app.status.resources:
            await observer.ensure_watched(resource.group, resource.kind)

        tracked = observer.tracked_by(app.name)
        children = {k: v for k, v in tracked.items() if _is_application(k)}
        others = {k: v for k, v in tracked.items() if not _is_application(k)}

        log.info("Cascade deleting", children=len(children), resources=len(others))
        await self._remove(children, cluster, outcome)
        if children:
            await self._wait_gone([k for k in children if k not in outcome.orphaned], observer)

        batches = prune_order(ResourceDiff(k, DiffAction.PRUNE, live=v) for k, v in others.items())
        for batch in batches:
            await self._remove({d.key: d.live or {} for d in batch}, cluster, outcome)
        await self._wait_gone([k for k in others if k not in outcome.orphaned], observer)

        await self._release(app, home)
        outcome.released = True
        log.info("Cascade deletion finished", deleted=len(outcome.deleted), orphaned=len(outcome.orphaned))
        return outcome

    async def _remove(
        self,
        objects: dict[ResourceKey, dict[str, Any]],
        cluster: ClusterAPI,
        outcome: CascadeOutcome,
    ) -> None:
        async def remove_one(key: ResourceKey, live: dict[str, Any]) -> None:
            try:
                if live_options(live).get("Delete", "").lower() == "false":
                    body = {"metadata": {"labels": {LABEL_TRACKING: None}}}
                    await self._applier.patch(cluster, key, body, action="orphan")
                    outcome.orphaned.append(key)
                    return
                await self._applier.delete(cluster, key, propagation_policy="foreground")
                outcome.deleted.append(key)
            except (ApplyError, MutationBlocked) as e:
                raise DeletionError("failed to delete managed resource", details=e.message, resource=key) from e

        await asyncio.gather(*(remove_one(k, v) for k, v in objects.items()))

    async def _wait_gone(self, keys: list[ResourceKey], observer: LiveStateObserver) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.deletion_timeout_seconds
        while True:
            remaining_keys = [k for k in keys if observer.get(k) is not None]
            if not remaining_keys:
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise DeletionError(
                    f"{len(remaining_keys)} resource(s) still present after "
                    f"{self._settings.deletion_timeout_seconds:g}s",
                    resource=remaining_keys[0],
                )
            await observer.wait_for_change(min(remaining, self._settings.health_poll_seconds))

    async def _release(self, app: Application, home: ClusterAPI) -> None:
        finalizers = [f for f in app.metadata.finalizers if f != RESOURCES_FINALIZER]
        try:
            await self._applier.patch(
                home,
                app.key,
                {"metadata": {"finalizers": finalizers or None}},
                action="remove_finalizer",
            )
        except (ApplyError, MutationBlocked) as e:
            if isinstance(e, ApplyError) and e.status_code == 404:
                return
            raise DeletionError("failed to remove finalizer", details=e.message, resource=app.key) from e
