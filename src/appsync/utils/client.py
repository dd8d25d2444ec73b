# ABOUTME: Kubernetes REST API client with retry logic and structured error handling
# ABOUTME: Implements ClusterAPI with discovery, server-side apply, merge patch and streaming watches

"""
Kubernetes API client.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

KubernetesClient is the ClusterAPI implementation that talks to a real API
server over HTTPS. It handles:

1. DISCOVERY: mapping (group, kind) to a REST path and plural resource name
2. AUTHENTICATION: Bearer token from settings or a service account file
3. ERROR HANDLING: converting HTTP error responses to ClusterAPIError
4. RETRY LOGIC: retrying timed-out requests with exponential backoff
5. WATCHES: streaming newline-delimited JSON watch events

=============================================================================
KUBERNETES REST API OVERVIEW
=============================================================================

    GET    /api/v1                                  core discovery
    GET    /apis                                    API groups
    GET    /apis/apps/v1                            resources in apps/v1
    GET    /apis/apps/v1/namespaces/web/deployments list
    GET    ...?watch=1&resourceVersion=123          watch stream
    PATCH  .../deployments/frontend                 apply or merge patch
    DELETE .../deployments/frontend                 delete

Server-side apply is a PATCH with content type
`application/apply-patch+yaml` plus `fieldManager` and `force=true`. JSON is
valid YAML, so the manifest is sent as JSON.

Errors are Status objects:
    {"kind": "Status", "code": 409, "reason": "Conflict", "message": "..."}

=============================================================================
CONTEXT MANAGER
=============================================================================

    async with KubernetesClient(cluster) as client:
        items, rv = await client.list("apps", "Deployment")

__aenter__ creates the connection pool and __aexit__ releases it, even when
the body raises.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from appsync.cluster.base import ClusterAPI, WatchEvent
from appsync.errors import ClusterAPIError
from appsync.models import ResourceKey

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from appsync.config import ClusterSettings

logger = structlog.get_logger(__name__)

APPLY_PATCH = "application/apply-patch+yaml"
MERGE_PATCH = "application/merge-patch+json"


@dataclass(frozen=True)
class APIResource:
    """Discovery information for one kind."""

    group_version: str
    plural: str
    namespaced: bool

    @property
    def prefix(self) -> str:
        if "/" in self.group_version:
            return f"/apis/{self.group_version}"
        return f"/api/{self.group_version}"

    def path(
        self,
        namespace: str | None = None,
        name: str | None = None,
        subresource: str | None = None,
    ) -> str:
        """Build the REST path for a collection, an object or a subresource."""
        path = self.prefix
        if self.namespaced and namespace:
            path += f"/namespaces/{namespace}"
        path += f"/{self.plural}"
        if name:
            path += f"/{name}"
            if subresource:
                path += f"/{subresource}"
        return path


class KubernetesClient(ClusterAPI):
    """
    Async Kubernetes API client with retry logic.

    LIFECYCLE:
    ----------
    1. Create client: client = KubernetesClient(cluster)
    2. Enter context: async with client: ...
    3. Use client: await client.apply(manifest, field_manager="appsync")
    4. Exit context: HTTP connections cleaned up

    RETRY LOGIC:
    ------------
    Timed-out requests are retried up to three times with exponential backoff
    (1s, 2s, capped at 10s). Every other failure surfaces immediately as
    ClusterAPIError; the engine decides whether a status code is worth
    retrying.
    """

    def __init__(self, cluster: ClusterSettings, timeout: float = 30.0) -> None:
        """
        Args:
            cluster: Connection settings (URL, token, CA bundle)
            timeout: HTTP request timeout in seconds
        """
        self._cluster = cluster
        self.name = cluster.name
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None
        self._core: dict[str, APIResource] | None = None
        self._groups: dict[str, str] | None = None
        self._group_resources: dict[str, dict[str, APIResource]] = {}

    async def __aenter__(self) -> KubernetesClient:
        self._client = self._make_client()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _make_client(self) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        token = self._cluster.bearer_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        verify: bool | str = not self._cluster.insecure
        if verify and self._cluster.ca_file is not None:
            verify = str(self._cluster.ca_file)
        return httpx.AsyncClient(
            base_url=self._cluster.server,
            headers=headers,
            timeout=self._timeout,
            verify=verify,
        )

    def _http(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return self._client

    # =========================================================================
    # REQUESTS
    # =========================================================================

    @staticmethod
    def _raise_for_status(response: httpx.Response, body: str) -> None:
        if response.status_code < 400:
            return
        message = f"HTTP {response.status_code}"
        details = None
        try:
            error_json = json.loads(body)
            message = error_json.get("message", message)
            details = error_json.get("reason")
        except ValueError:
            details = body[:200] if body else None
        raise ClusterAPIError(code=response.status_code, message=message, details=details)

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
    )
    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        content_type: str | None = None,
    ) -> dict[str, Any]:
        """
        Make HTTP request to the Kubernetes API.

        Raises:
            ClusterAPIError: On API error (4xx, 5xx)
            httpx.TimeoutException: On request timeout (after retries)
            RuntimeError: If client not initialized
        """
        client = self._http()
        log = logger.bind(method=method, path=path, cluster=self.name)
        log.debug("Making Kubernetes API request")

        headers = {"Content-Type": content_type} if content_type else None
        content = json.dumps(json_data) if json_data is not None else None
        response = await client.request(
            method, path, params=params, content=content, headers=headers
        )

        if response.status_code >= 400:
            log.warning("Kubernetes API error", status=response.status_code, body=response.text[:200])
            self._raise_for_status(response, response.text)

        return response.json() if response.content else {}

    async def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """_request with connection failures mapped to ClusterAPIError(0)."""
        try:
            return await self._request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise ClusterAPIError(0, "Kubernetes API unreachable", str(e) or type(e).__name__) from e

    # =========================================================================
    # DISCOVERY
    # =========================================================================

    @staticmethod
    def _index(group_version: str, resources: list[dict[str, Any]]) -> dict[str, APIResource]:
        index: dict[str, APIResource] = {}
        for res in resources:
            if "/" in res.get("name", ""):
                continue
            index[res["kind"]] = APIResource(
                group_version=group_version,
                plural=res["name"],
                namespaced=bool(res.get("namespaced")),
            )
        return index

    async def resource_info(self, group: str, kind: str) -> APIResource:
        """
        Resolve (group, kind) to its REST path information.

        Results are cached for the lifetime of the client; an unknown kind in a
        known group triggers one rediscovery (the CRD may have just been
        installed).

        Raises:
            ClusterAPIError: 404 when the kind is not served by the cluster.
        """
        if group == "":
            if self._core is None:
                data = await self._call("GET", "/api/v1")
                self._core = self._index("v1", data.get("resources", []))
            info = self._core.get(kind)
        else:
            info = self._group_resources.get(group, {}).get(kind)
            if info is None:
                await self._discover_group(group)
                info = self._group_resources.get(group, {}).get(kind)
        if info is None:
            raise ClusterAPIError(404, f"the server could not find the requested resource {group}/{kind}")
        return info

    async def _discover_group(self, group: str) -> None:
        data = await self._call("GET", "/apis")
        self._groups = {
            g["name"]: g["preferredVersion"]["groupVersion"] for g in data.get("groups", [])
        }
        group_version = self._groups.get(group)
        if group_version is None:
            return
        resources = await self._call("GET", f"/apis/{group_version}")
        self._group_resources[group] = self._index(group_version, resources.get("resources", []))

    async def is_namespaced(self, group: str, kind: str) -> bool:
        return (await self.resource_info(group, kind)).namespaced

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
        info = await self.resource_info(group, kind)
        params = {"labelSelector": label_selector} if label_selector else None
        data = await self._call("GET", info.path(namespace), params=params)
        items = data.get("items") or []
        for item in items:
            # List responses omit apiVersion/kind on items.
            item.setdefault("apiVersion", info.group_version)
            item.setdefault("kind", kind)
        return items, (data.get("metadata") or {}).get("resourceVersion", "")

    async def watch(
        self,
        group: str,
        kind: str,
        resource_version: str,
        namespace: str | None = None,
    ) -> AsyncIterator[WatchEvent]:
        info = await self.resource_info(group, kind)
        params = {
            "watch": "1",
            "resourceVersion": resource_version,
            "allowWatchBookmarks": "true",
        }
        client = self._http()
        try:
            async with client.stream(
                "GET", info.path(namespace), params=params, timeout=None
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode(errors="replace")
                    self._raise_for_status(response, body)
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    event = json.loads(line)
                    event_type = event.get("type", "")
                    obj = event.get("object") or {}
                    if event_type == "ERROR":
                        raise ClusterAPIError(
                            obj.get("code", 500), obj.get("message", "watch error"), obj.get("reason")
                        )
                    if event_type == "BOOKMARK":
                        continue
                    yield WatchEvent(event_type, obj)
        except httpx.TransportError as e:
            raise ClusterAPIError(0, "watch stream interrupted", str(e) or type(e).__name__) from e

    async def get(self, key: ResourceKey) -> dict[str, Any] | None:
        info = await self.resource_info(key.group, key.kind)
        try:
            return await self._call("GET", info.path(key.namespace, key.name))
        except ClusterAPIError as e:
            if e.code == 404:
                return None
            raise

    async def apply(self, manifest: dict[str, Any], field_manager: str) -> dict[str, Any]:
        key = ResourceKey.from_manifest(manifest)
        info = await self.resource_info(key.group, key.kind)
        return await self._call(
            "PATCH",
            info.path(key.namespace, key.name),
            params={"fieldManager": field_manager, "force": "true"},
            json_data=manifest,
            content_type=APPLY_PATCH,
        )

    async def delete(self, key: ResourceKey, propagation_policy: str = "foreground") -> bool:
        info = await self.resource_info(key.group, key.kind)
        body = {
            "apiVersion": "v1",
            "kind": "DeleteOptions",
            "propagationPolicy": propagation_policy.capitalize(),
        }
        try:
            await self._call(
                "DELETE",
                info.path(key.namespace, key.name),
                json_data=body,
                content_type="application/json",
            )
        except ClusterAPIError as e:
            if e.code == 404:
                return False
            raise
        return True

    async def patch(
        self,
        key: ResourceKey,
        body: dict[str, Any],
        subresource: str | None = None,
    ) -> dict[str, Any]:
        info = await self.resource_info(key.group, key.kind)
        return await self._call(
            "PATCH",
            info.path(key.namespace, key.name, subresource),
            json_data=body,
            content_type=MERGE_PATCH,
        )
