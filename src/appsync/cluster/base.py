# ABOUTME: Abstract cluster API used by the reconciliation engine
# ABOUTME: List/watch/get/apply/delete/patch against one destination cluster

"""
Cluster API abstraction.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The engine never talks HTTP directly. It talks to a ClusterAPI, which has two
implementations:

1. KubernetesClient (appsync.utils.client): the Kubernetes REST API over httpx
2. InMemoryCluster (appsync.cluster.memory): a process-local cluster used by
   tests and dry runs

Both raise ClusterAPIError for every API failure, with the HTTP status code
the real API server would have returned (404 missing, 409 conflict, 410 watch
expired, 429/5xx transient).

=============================================================================
LIST + WATCH
=============================================================================

The observer keeps its cache current with the standard pattern:

    items, rv = await cluster.list("apps", "Deployment")
    async for event in cluster.watch("apps", "Deployment", rv):
        ...

A watch raises ClusterAPIError(410) when `rv` is too old; the observer then
lists again.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from appsync.models import ResourceKey

# Watch event types, as sent by the API server.
ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    """One change notification from a watch stream."""

    type: str
    object: dict[str, Any]


class ClusterAPI(ABC):
    """Operations the engine needs from a destination cluster."""

    name: str = "in-cluster"

    @abstractmethod
    async def list(
        self,
        group: str,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> tuple[list[dict[str, Any]], str]:
        """Return (items, resourceVersion) for a kind, optionally filtered."""

    @abstractmethod
    def watch(
        self,
        group: str,
        kind: str,
        resource_version: str,
        namespace: str | None = None,
    ) -> AsyncIterator[WatchEvent]:
        """Stream changes after resource_version until cancelled."""

    @abstractmethod
    async def get(self, key: ResourceKey) -> dict[str, Any] | None:
        """Return the live object, or None when it does not exist."""

    @abstractmethod
    async def apply(self, manifest: dict[str, Any], field_manager: str) -> dict[str, Any]:
        """Create or update the object (server-side apply semantics)."""

    @abstractmethod
    async def delete(self, key: ResourceKey, propagation_policy: str = "foreground") -> bool:
        """Request deletion. Returns False when the object did not exist."""

    @abstractmethod
    async def patch(
        self,
        key: ResourceKey,
        body: dict[str, Any],
        subresource: str | None = None,
    ) -> dict[str, Any]:
        """JSON merge patch (RFC 7386) of the object or one of its subresources."""

    @abstractmethod
    async def is_namespaced(self, group: str, kind: str) -> bool:
        """Whether objects of this kind live in a namespace."""

    async def close(self) -> None:  # noqa: B027 - optional hook
        """Release connections."""
