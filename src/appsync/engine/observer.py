# ABOUTME: Live state observer keeping a per-cluster cache current via list and watch
# ABOUTME: The cache is written only from watch events; readers get snapshots and change signals

"""
Live state observer.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

One LiveStateObserver exists per destination cluster. For every resource kind
any Application needs, it runs the list-then-watch loop:

    items, rv = await cluster.list(group, kind)       # fill the cache
    async for event in cluster.watch(group, kind, rv):
        apply event to cache                           # ADDED/MODIFIED/DELETED
        wake up everyone waiting for a change

The apply path NEVER writes into this cache. It writes to the cluster and
learns the result when the watch event arrives, so the cache always reflects
what the API server has actually accepted.

=============================================================================
EXPIRED WATCHES
=============================================================================

If the watch's resourceVersion is too old the API server answers 410 Gone.
The observer lists again, replaces every cached object of that kind, and
resumes watching from the new resourceVersion. Objects that vanished in
between are reported to listeners as DELETED.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog

from appsync.cluster.base import DELETED, WatchEvent
from appsync.engine.resources import tracking_of
from appsync.errors import ClusterAPIError
from appsync.models import ResourceKey

if TYPE_CHECKING:
    from collections.abc import Callable

    from appsync.cluster.base import ClusterAPI

logger = structlog.get_logger(__name__)

GroupKind = tuple[str, str]

# Backoff between failed watch attempts, in seconds.
WATCH_RETRY_MIN = 0.5
WATCH_RETRY_MAX = 30.0


class LiveStateObserver:
    """Read-through cache of one cluster's live objects."""

    def __init__(self, cluster: ClusterAPI, namespace: str | None = None) -> None:
        """
        Args:
            cluster: Cluster to observe
            namespace: Restrict list/watch to one namespace (None = all)
        """
        self.cluster = cluster
        self._namespace = namespace
        self._cache: dict[ResourceKey, dict[str, Any]] = {}
        self._tasks: dict[GroupKind, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()
        self._changed = asyncio.Event()
        self._listeners: list[Callable[[WatchEvent], None]] = []
        self._log = logger.bind(cluster=cluster.name)

    # =========================================================================
    # WATCH MANAGEMENT
    # =========================================================================

    def is_watched(self, group: str, kind: str) -> bool:
        return (group, kind) in self._tasks

    async def ensure_watched(self, group: str, kind: str) -> bool:
        """
        Start observing a kind if not already observed.

        Performs the initial list inline, so on return the cache holds every
        object of that kind.

        Returns:
            True when the kind is observed, False when the cluster does not
            serve it (yet); a CRD may be installed by an earlier wave.

        Raises:
            ClusterAPIError: listing failed for any reason other than 404.
        """
        async with self._lock:
            if (group, kind) in self._tasks:
                return True
            try:
                items, rv = await self.cluster.list(group, kind, namespace=self._namespace)
            except ClusterAPIError as e:
                if e.code == 404:
                    return False
                raise
            self._replace(group, kind, items)
            self._tasks[(group, kind)] = asyncio.create_task(
                self._watch_loop(group, kind, rv), name=f"watch-{self.cluster.name}-{group}/{kind}"
            )
            self._log.debug("Watching kind", group=group, kind=kind, count=len(items))
            return True

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _watch_loop(self, group: str, kind: str, rv: str) -> None:
        delay = WATCH_RETRY_MIN
        while True:
            try:
                async for event in self.cluster.watch(group, kind, rv, namespace=self._namespace):
                    rv = (event.object.get("metadata") or {}).get("resourceVersion", rv)
                    self._apply(event)
                    delay = WATCH_RETRY_MIN
                # Server closed the stream; resume from the last seen version.
                continue
            except ClusterAPIError as e:
                if e.code != 410:
                    self._log.warning("Watch failed", group=group, kind=kind, error=str(e))
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, WATCH_RETRY_MAX)
                else:
                    self._log.info("Watch expired, relisting", group=group, kind=kind)
            try:
                items, rv = await self.cluster.list(group, kind, namespace=self._namespace)
            except ClusterAPIError as e:
                self._log.warning("Relist failed", group=group, kind=kind, error=str(e))
                await asyncio.sleep(delay)
                delay = min(delay * 2, WATCH_RETRY_MAX)
                continue
            self._replace(group, kind, items)

    # =========================================================================
    # CACHE WRITES (observer only)
    # =========================================================================

    def _apply(self, event: WatchEvent) -> None:
        key = ResourceKey.from_manifest(event.object)
        if event.type == DELETED:
            self._cache.pop(key, None)
        else:
            self._cache[key] = event.object
        self._notify(event)

    def _replace(self, group: str, kind: str, items: list[dict[str, Any]]) -> None:
        fresh = {ResourceKey.from_manifest(obj): obj for obj in items}
        stale = [k for k in self._cache if k.group == group and k.kind == kind and k not in fresh]
        for key in stale:
            self._apply(WatchEvent(DELETED, self._cache[key]))
        for key, obj in fresh.items():
            if self._cache.get(key) != obj:
                self._apply(WatchEvent("MODIFIED" if key in self._cache else "ADDED", obj))

    def _notify(self, event: WatchEvent) -> None:
        self._changed.set()
        self._changed = asyncio.Event()
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                self._log.exception("Watch listener failed")

    # =========================================================================
    # READERS
    # =========================================================================

    def add_listener(self, listener: Callable[[WatchEvent], None]) -> None:
        """Call listener(event) for every cache change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[WatchEvent], None]) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def get(self, key: ResourceKey) -> dict[str, Any] | None:
        return self._cache.get(key)

    def snapshot(self) -> dict[ResourceKey, dict[str, Any]]:
        """Point-in-time copy of the cache index. Objects must not be mutated."""
        return dict(self._cache)

    def tracked_by(self, app_name: str) -> dict[ResourceKey, dict[str, Any]]:
        """Live objects carrying app_name's tracking label."""
        return {k: v for k, v in self._cache.items() if tracking_of(v) == app_name}

    async def wait_for_change(self, timeout: float) -> bool:
        """
        Block until the next cache change or timeout.

        Returns:
            True if something changed, False on timeout.
        """
        event = self._changed
        try:
            await asyncio.wait_for(event.wait(), timeout)
        except TimeoutError:
            return False
        return True
