# ABOUTME: Process-local cluster implementing the ClusterAPI contract
# ABOUTME: Resource versions, watch replay, finalizers, failure injection and simulated controllers

"""
In-memory cluster.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

InMemoryCluster behaves like a small Kubernetes API server:

- every write bumps a cluster-wide resourceVersion and emits a watch event
- watches replay the event log from a resourceVersion, then stream live
- objects with finalizers get a deletionTimestamp instead of disappearing,
  and vanish once their last finalizer is removed
- deleting a Namespace deletes everything in it

It is used by the test suite and by dry runs. Because there are no real
controllers, REACTORS simulate them: callables invoked after every write that
may update the object's status (mark a Deployment ready, complete a Job).

FAILURE INJECTION:
------------------
    cluster.fail_next("apply", ClusterAPIError(503, "unavailable"), times=2)

makes the next two apply calls raise before touching state.

WRITE LOG:
----------
`cluster.writes` records every mutating call as (operation, key). The
idempotence tests assert it stays empty when nothing differs.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from collections import defaultdict
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from appsync.cluster.base import ADDED, DELETED, MODIFIED, ClusterAPI, WatchEvent
from appsync.engine.resources import CLUSTER_SCOPED_KINDS
from appsync.errors import ClusterAPIError
from appsync.models import ResourceKey, group_of

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

logger = structlog.get_logger(__name__)


def merge_patch(target: Any, patch: Any) -> Any:
    """Apply an RFC 7386 JSON merge patch, returning a new value."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


def matches_selector(obj: dict[str, Any], selector: str | None) -> bool:
    """Equality (`k=v`, `k!=v`) and existence (`k`, `!k`) label selectors."""
    if not selector:
        return True
    labels = (obj.get("metadata") or {}).get("labels") or {}
    for term in (t.strip() for t in selector.split(",")):
        if not term:
            continue
        if "!=" in term:
            k, v = term.split("!=", 1)
            if labels.get(k.strip()) == v.strip():
                return False
        elif "=" in term:
            k, v = term.split("=", 1)
            if labels.get(k.strip()) != v.lstrip("=").strip():
                return False
        elif term.startswith("!"):
            if term[1:] in labels:
                return False
        elif term not in labels:
            return False
    return True


def _now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class InMemoryCluster(ClusterAPI):
    """ClusterAPI backed by a dictionary."""

    def __init__(
        self,
        name: str = "in-cluster",
        cluster_scoped: set[tuple[str, str]] | None = None,
        strict_namespaces: bool = False,
    ) -> None:
        """
        Args:
            name: Cluster name, matched against Application destinations.
            cluster_scoped: Extra (group, kind) pairs that are not namespaced.
            strict_namespaces: Reject namespaced writes into a namespace that
                               does not exist (404), as a real API server does.
        """
        self.name = name
        self._cluster_scoped = set(CLUSTER_SCOPED_KINDS) | (cluster_scoped or set())
        self._strict_namespaces = strict_namespaces
        self._objects: dict[ResourceKey, dict[str, Any]] = {}
        self._rv = 0
        self._compacted_rv = 0
        self._log: list[tuple[int, WatchEvent]] = []
        self._watchers: list[tuple[tuple[str, str], str | None, asyncio.Queue[WatchEvent]]] = []
        self._failures: dict[str, list[tuple[ResourceKey | None, Exception]]] = defaultdict(list)
        self._reactors: list[Callable[[InMemoryCluster, WatchEvent], None]] = []
        self.writes: list[tuple[str, ResourceKey]] = []

    # =========================================================================
    # TEST HELPERS
    # =========================================================================

    def add_reactor(self, reactor: Callable[[InMemoryCluster, WatchEvent], None]) -> None:
        """Run reactor(cluster, event) after every ADDED/MODIFIED event."""
        self._reactors.append(reactor)

    def fail_next(
        self,
        operation: str,
        error: Exception,
        key: ResourceKey | None = None,
        times: int = 1,
    ) -> None:
        """Make the next `times` calls of operation (optionally for one key) raise error."""
        self._failures[operation].extend([(key, error)] * times)

    def pending_failures(self, operation: str) -> int:
        """Injected failures of operation not yet raised."""
        return len(self._failures.get(operation, []))

    def put(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create or replace an object out of band (no write record, no reactors)."""
        key = self._key(obj)
        existing = self._objects.get(key)
        stored = copy.deepcopy(obj)
        self._stamp(stored, existing)
        self._store(key, stored, MODIFIED if existing else ADDED, react=False)
        return copy.deepcopy(stored)

    def edit(self, key: ResourceKey, mutate: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        """Mutate a live object out of band, simulating manual drift."""
        obj = self._require(key)
        mutate(obj)
        self._bump(obj)
        self._store(key, obj, MODIFIED, react=False)
        return copy.deepcopy(obj)

    def set_status(self, key: ResourceKey, status: dict[str, Any]) -> None:
        """Replace an object's status, as its controller would."""
        obj = self._require(key)
        if obj.get("status") == status:
            return
        obj["status"] = copy.deepcopy(status)
        self._bump(obj)
        self._store(key, obj, MODIFIED, react=False)

    def objects(self, group: str | None = None, kind: str | None = None) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(obj)
            for key, obj in sorted(self._objects.items())
            if (group is None or key.group == group) and (kind is None or key.kind == kind)
        ]

    def exists(self, key: ResourceKey) -> bool:
        return key in self._objects

    def compact(self) -> None:
        """Drop the event log; older watches then fail with 410 Gone."""
        self._compacted_rv = self._rv
        self._log.clear()

    @property
    def resource_version(self) -> str:
        return str(self._rv)

    # =========================================================================
    # CLUSTER API
    # =========================================================================

    async def list(
        self,
        group: str,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> tuple[list[dict[str, Any]], str]:
        self._maybe_fail("list", None)
        items = [
            copy.deepcopy(obj)
            for key, obj in sorted(self._objects.items())
            if key.group == group
            and key.kind == kind
            and (namespace is None or key.namespace == namespace)
            and matches_selector(obj, label_selector)
        ]
        return items, str(self._rv)

    async def watch(
        self,
        group: str,
        kind: str,
        resource_version: str,
        namespace: str | None = None,
    ) -> AsyncIterator[WatchEvent]:
        self._maybe_fail("watch", None)
        since = int(resource_version or 0)
        if since < self._compacted_rv:
            raise ClusterAPIError(410, "too old resource version", f"{since} < {self._compacted_rv}")
        queue: asyncio.Queue[WatchEvent] = asyncio.Queue()
        for rv, event in self._log:
            if rv > since and self._wants(event, (group, kind), namespace):
                queue.put_nowait(event)
        entry = ((group, kind), namespace, queue)
        self._watchers.append(entry)
        try:
            while True:
                yield await queue.get()
        finally:
            self._watchers.remove(entry)

    async def get(self, key: ResourceKey) -> dict[str, Any] | None:
        self._maybe_fail("get", key)
        obj = self._objects.get(key)
        return copy.deepcopy(obj) if obj is not None else None

    async def apply(self, manifest: dict[str, Any], field_manager: str) -> dict[str, Any]:
        key = self._key(manifest)
        self._maybe_fail("apply", key)
        self.writes.append(("apply", key))
        if not key.name:
            raise ClusterAPIError(422, f"{key.kind}: metadata.name is required")
        if key.namespace and self._strict_namespaces:
            ns_key = ResourceKey("", "Namespace", "", key.namespace)
            ns = self._objects.get(ns_key)
            if ns is None or (ns.get("metadata") or {}).get("deletionTimestamp"):
                raise ClusterAPIError(404, f'namespaces "{key.namespace}" not found')

        existing = self._objects.get(key)
        desired = copy.deepcopy(manifest)
        desired.setdefault("metadata", {})
        if not key.namespace:
            desired["metadata"].pop("namespace", None)
        if existing is None:
            self._stamp(desired, None)
            self._store(key, desired, ADDED)
            return copy.deepcopy(desired)

        merged = merge_patch(existing, {k: v for k, v in desired.items() if k != "status"})
        merged["metadata"] = merge_patch(existing.get("metadata") or {}, desired["metadata"])
        if merged == existing:
            return copy.deepcopy(existing)
        if merged.get("spec") != existing.get("spec"):
            merged["metadata"]["generation"] = existing["metadata"].get("generation", 1) + 1
        self._bump(merged)
        self._store(key, merged, MODIFIED)
        return copy.deepcopy(merged)

    async def delete(self, key: ResourceKey, propagation_policy: str = "foreground") -> bool:
        self._maybe_fail("delete", key)
        self.writes.append(("delete", key))
        return self._delete(key, propagation_policy)

    async def patch(
        self,
        key: ResourceKey,
        body: dict[str, Any],
        subresource: str | None = None,
    ) -> dict[str, Any]:
        self._maybe_fail("patch", key)
        self.writes.append(("patch", key))
        obj = self._require(key)
        if subresource == "status":
            body = {"status": body.get("status")}
        else:
            body = {k: v for k, v in body.items() if k != "status"}
        patched = merge_patch(obj, body)
        if patched == obj:
            return copy.deepcopy(obj)
        self._bump(patched)
        metadata = patched["metadata"]
        if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
            self._remove(key)
            return copy.deepcopy(patched)
        self._store(key, patched, MODIFIED)
        return copy.deepcopy(patched)

    async def is_namespaced(self, group: str, kind: str) -> bool:
        return (group, kind) not in self._cluster_scoped

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _key(self, obj: dict[str, Any]) -> ResourceKey:
        group = group_of(obj.get("apiVersion", ""))
        key = ResourceKey.from_manifest(obj)
        if (group, key.kind) in self._cluster_scoped and key.namespace:
            key = key._replace(namespace="")
        return key

    def _require(self, key: ResourceKey) -> dict[str, Any]:
        obj = self._objects.get(key)
        if obj is None:
            raise ClusterAPIError(404, f"{key} not found")
        return copy.deepcopy(obj)

    def _maybe_fail(self, operation: str, key: ResourceKey | None) -> None:
        pending = self._failures.get(operation)
        if not pending:
            return
        for i, (target, error) in enumerate(pending):
            if target is None or target == key:
                del pending[i]
                raise error

    def _stamp(self, obj: dict[str, Any], existing: dict[str, Any] | None) -> None:
        metadata = obj.setdefault("metadata", {})
        old = (existing or {}).get("metadata") or {}
        metadata["uid"] = old.get("uid") or str(uuid.uuid4())
        metadata["creationTimestamp"] = old.get("creationTimestamp") or _now()
        metadata.setdefault("generation", old.get("generation", 1))
        self._bump(obj)

    def _bump(self, obj: dict[str, Any]) -> None:
        self._rv += 1
        obj.setdefault("metadata", {})["resourceVersion"] = str(self._rv)

    def _store(self, key: ResourceKey, obj: dict[str, Any], event_type: str, react: bool = True) -> None:
        self._objects[key] = obj
        event = WatchEvent(event_type, copy.deepcopy(obj))
        self._emit(event)
        if react:
            for reactor in list(self._reactors):
                reactor(self, event)

    def _remove(self, key: ResourceKey) -> None:
        obj = self._objects.pop(key, None)
        if obj is None:
            return
        self._rv += 1
        obj["metadata"]["resourceVersion"] = str(self._rv)
        self._emit(WatchEvent(DELETED, copy.deepcopy(obj)))
        if key.kind == "Namespace" and key.group == "":
            for child in [k for k in self._objects if k.namespace == key.name]:
                self._delete(child, "background")

    def _delete(self, key: ResourceKey, propagation_policy: str) -> bool:
        obj = self._objects.get(key)
        if obj is None:
            return False
        metadata = obj["metadata"]
        if metadata.get("finalizers"):
            if not metadata.get("deletionTimestamp"):
                obj = copy.deepcopy(obj)
                obj["metadata"]["deletionTimestamp"] = _now()
                self._bump(obj)
                self._store(key, obj, MODIFIED, react=False)
            return True
        self._remove(key)
        logger.debug("Deleted object", key=str(key), propagation=propagation_policy)
        return True

    def _emit(self, event: WatchEvent) -> None:
        rv = int(event.object["metadata"]["resourceVersion"])
        self._log.append((rv, event))
        for group_kind, namespace, queue in self._watchers:
            if self._wants(event, group_kind, namespace):
                queue.put_nowait(event)

    @staticmethod
    def _wants(event: WatchEvent, group_kind: tuple[str, str], namespace: str | None) -> bool:
        key = ResourceKey.from_manifest(event.object)
        if key.group_kind != group_kind:
            return False
        return namespace is None or key.namespace == namespace


# =============================================================================
# SIMULATED CONTROLLERS
# =============================================================================


def mark_ready(cluster: InMemoryCluster, event: WatchEvent) -> None:
    """
    Reactor that makes workloads and hooks succeed immediately.

    Deployments/StatefulSets/ReplicaSets report every replica ready, DaemonSets
    report every pod scheduled and ready, Jobs complete, Pods succeed, PVCs bind.
    """
    if event.type == DELETED:
        return
    obj = event.object
    key = ResourceKey.from_manifest(obj)
    spec = obj.get("spec") or {}
    generation = (obj.get("metadata") or {}).get("generation", 1)
    status: dict[str, Any] | None = None
    if key.kind in ("Deployment", "StatefulSet", "ReplicaSet"):
        replicas = spec.get("replicas", 1)
        status = {
            "observedGeneration": generation,
            "replicas": replicas,
            "updatedReplicas": replicas,
            "readyReplicas": replicas,
            "availableReplicas": replicas,
            "currentReplicas": replicas,
        }
        if key.kind == "StatefulSet":
            status["updateRevision"] = status["currentRevision"] = f"rev-{generation}"
    elif key.kind == "DaemonSet":
        status = {
            "observedGeneration": generation,
            "desiredNumberScheduled": 1,
            "updatedNumberScheduled": 1,
            "numberAvailable": 1,
            "numberReady": 1,
        }
    elif key.kind == "Job":
        status = {"succeeded": 1, "conditions": [{"type": "Complete", "status": "True"}]}
    elif key.kind == "Pod":
        status = {"phase": "Succeeded"}
    elif key.kind == "PersistentVolumeClaim":
        status = {"phase": "Bound"}
    if status is not None and obj.get("status") != status:
        cluster.set_status(key, status)
