# ABOUTME: Data model for Applications, AppProjects and their status
# ABOUTME: Pydantic models parsing the argoproj.io/v1alpha1 manifest shape with camelCase aliases

"""
Application and AppProject data model.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The controller consumes two custom resources:

1. Application: a source locator + a destination + a sync policy. The unit of
   reconciliation.
2. AppProject: the RBAC boundary that says which sources and destinations an
   Application may use.

Both arrive as raw dictionaries (from the cluster or from a rendered parent
Application). This module parses them into typed pydantic models, and defines
the status structure the reconciler writes back.

=============================================================================
WHY ALIASES?
=============================================================================

Kubernetes manifests use camelCase (`targetRevision`, `syncPolicy`). Python code
uses snake_case. Every model uses an alias generator so:

    Application.from_manifest({"spec": {"syncPolicy": {...}}})
    app.spec.sync_policy            # snake_case access
    app.to_manifest()               # camelCase again for the API server

A few fields do not follow the generator (`repoURL`, `jsonPointers` are fine,
`repoURL` is not) and carry an explicit alias.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# =============================================================================
# API COORDINATES
# =============================================================================

APPLICATION_GROUP = "argoproj.io"
APPLICATION_API_VERSION = "argoproj.io/v1alpha1"
APPLICATION_KIND = "Application"
PROJECT_KIND = "AppProject"

# Finalizer whose presence makes deletion cascade to managed resources.
RESOURCES_FINALIZER = "resources-finalizer.argocd.argoproj.io"

# Number of successful syncs kept in status.history.
HISTORY_LIMIT = 10


# =============================================================================
# RESOURCE IDENTITY
# =============================================================================


def group_of(api_version: str) -> str:
    """Return the API group of an apiVersion ('apps/v1' -> 'apps', 'v1' -> '')."""
    if "/" in api_version:
        return api_version.split("/", 1)[0]
    return ""


class ResourceKey(NamedTuple):
    """(group, kind, namespace, name) identity of a cluster resource."""

    group: str
    kind: str
    namespace: str
    name: str

    @classmethod
    def from_manifest(cls, obj: dict[str, Any], default_namespace: str = "") -> ResourceKey:
        metadata = obj.get("metadata") or {}
        return cls(
            group=group_of(obj.get("apiVersion", "")),
            kind=obj.get("kind", ""),
            namespace=metadata.get("namespace") or default_namespace,
            name=metadata.get("name", ""),
        )

    @property
    def group_kind(self) -> tuple[str, str]:
        return (self.group, self.kind)

    def __str__(self) -> str:
        kind = f"{self.group}/{self.kind}" if self.group else self.kind
        if self.namespace:
            return f"{kind}/{self.namespace}/{self.name}"
        return f"{kind}/{self.name}"


# =============================================================================
# ENUMS
# =============================================================================


class SyncStatus(str, Enum):
    """Comparison result between desired and live state."""

    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    UNKNOWN = "Unknown"


class HealthStatus(str, Enum):
    """Health of a resource or of a whole Application."""

    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    SUSPENDED = "Suspended"
    MISSING = "Missing"
    UNKNOWN = "Unknown"


class OperationPhase(str, Enum):
    """Phase of a sync operation (one reconciliation cycle that mutates)."""

    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ERROR = "Error"
    TERMINATED = "Terminated"


class HookType(str, Enum):
    """Lifecycle phase a hook runs in. SKIP means 'never apply'."""

    PRE_SYNC = "PreSync"
    SYNC = "Sync"
    POST_SYNC = "PostSync"
    SYNC_FAIL = "SyncFail"
    SKIP = "Skip"


class HookDeletePolicy(str, Enum):
    """When a hook resource is deleted."""

    HOOK_SUCCEEDED = "HookSucceeded"
    HOOK_FAILED = "HookFailed"
    BEFORE_HOOK_CREATION = "BeforeHookCreation"


class ResultCode(str, Enum):
    """Outcome for one resource within a sync operation."""

    SYNCED = "Synced"
    SYNC_FAILED = "SyncFailed"
    PRUNED = "Pruned"
    PRUNE_SKIPPED = "PruneSkipped"
    ORPHANED = "Orphaned"
    SKIPPED = "Skipped"


# =============================================================================
# DURATIONS
# =============================================================================

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str | float | int) -> float:
    """
    Parse a duration into seconds.

    Accepts numbers (already seconds) and Go-style strings: "5s", "2m",
    "1h30m", "250ms".

    Raises:
        ValueError: if the string is not a valid duration.
    """
    if isinstance(value, int | float):
        return float(value)
    text = value.strip()
    if not text:
        raise ValueError("empty duration")
    try:
        return float(text)
    except ValueError:
        pass
    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return total


# =============================================================================
# BASE MODEL
# =============================================================================


class CamelModel(BaseModel):
    """Base for every manifest model: camelCase aliases, unknown keys ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def dump(self) -> dict[str, Any]:
        """Serialize with camelCase keys, dropping unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ObjectMeta(CamelModel):
    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: str | None = None
    resource_version: str | None = None

    @field_validator("labels", "annotations", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return v or {}


# =============================================================================
# APPLICATION SPEC
# =============================================================================


def _split_top_level(text: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    current = ""
    for ch in text:
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append(current)
            current = ""
        else:
            current += ch
    parts.append(current)
    return [p.strip() for p in parts if p.strip()]


def _split_patterns(value: Any) -> list[str]:
    """Accept a list, a comma separated string, or a {a,b} brace string."""
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("{") and text.endswith("}") and len(_split_top_level(text)) == 1:
            inner = text[1:-1]
            if inner.count("{") == inner.count("}"):
                text = inner
        return _split_top_level(text)
    return [str(p) for p in value]


class DirectorySource(CamelModel):
    """Plain YAML/JSON directory options."""

    recurse: bool = False
    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)

    @field_validator("include", "exclude", mode="before")
    @classmethod
    def _patterns(cls, v: Any) -> list[str]:
        return _split_patterns(v)


class HelmParameter(CamelModel):
    name: str
    value: str = ""


class HelmSource(CamelModel):
    release_name: str | None = None
    value_files: list[str] = Field(default_factory=list)
    values: str | dict[str, Any] | None = None
    parameters: list[HelmParameter] = Field(default_factory=list)


class KustomizeSource(CamelModel):
    common_labels: dict[str, str] = Field(default_factory=dict)
    common_annotations: dict[str, str] = Field(default_factory=dict)
    namespace: str | None = None


class ApplicationSource(CamelModel):
    repo_url: str = Field(default="", alias="repoURL")
    target_revision: str = "HEAD"
    path: str = "."
    chart: str | None = None
    directory: DirectorySource | None = None
    helm: HelmSource | None = None
    kustomize: KustomizeSource | None = None

    @field_validator("target_revision", mode="before")
    @classmethod
    def _default_revision(cls, v: Any) -> Any:
        return v or "HEAD"

    def render_params(self) -> dict[str, Any]:
        """Renderer parameters, used as part of the render cache key."""
        return {
            "chart": self.chart,
            "directory": self.directory.dump() if self.directory else None,
            "helm": self.helm.dump() if self.helm else None,
            "kustomize": self.kustomize.dump() if self.kustomize else None,
        }


class ApplicationDestination(CamelModel):
    server: str = ""
    name: str = ""
    namespace: str = ""


class Automated(CamelModel):
    prune: bool = False
    self_heal: bool = False
    allow_empty: bool = False


class Backoff(CamelModel):
    duration: float = 5.0
    factor: float = 2.0
    max_duration: float = 180.0

    @field_validator("duration", "max_duration", mode="before")
    @classmethod
    def _parse(cls, v: Any) -> float:
        return parse_duration(v)

    def delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based), capped at max_duration."""
        return min(self.duration * self.factor ** max(attempt - 1, 0), self.max_duration)


class RetryPolicy(CamelModel):
    limit: int = 5
    backoff: Backoff = Field(default_factory=Backoff)


class SyncPolicy(CamelModel):
    automated: Automated | None = None
    sync_options: list[str] = Field(default_factory=list)
    retry: RetryPolicy | None = None

    def option(self, name: str) -> str | None:
        """Value of a `Name=value` sync option, or None when unset."""
        for entry in self.sync_options:
            key, _, value = entry.partition("=")
            if key.strip() == name:
                return value.strip()
        return None

    def enabled(self, name: str) -> bool:
        return (self.option(name) or "").lower() == "true"


class IgnoreDifference(CamelModel):
    group: str = ""
    kind: str
    name: str = ""
    namespace: str = ""
    json_pointers: list[str] = Field(default_factory=list)

    def matches(self, key: ResourceKey) -> bool:
        if self.group != key.group or self.kind != key.kind:
            return False
        if self.name and self.name != key.name:
            return False
        return not (self.namespace and self.namespace != key.namespace)


class ApplicationSpec(CamelModel):
    project: str = "default"
    source: ApplicationSource = Field(default_factory=ApplicationSource)
    destination: ApplicationDestination = Field(default_factory=ApplicationDestination)
    sync_policy: SyncPolicy = Field(default_factory=SyncPolicy)
    ignore_differences: list[IgnoreDifference] = Field(default_factory=list)

    @field_validator("sync_policy", mode="before")
    @classmethod
    def _none_policy(cls, v: Any) -> Any:
        return v if v is not None else {}


# =============================================================================
# APPLICATION STATUS
# =============================================================================


class Condition(CamelModel):
    type: str
    message: str
    last_transition_time: str | None = None


class ResourceStatus(CamelModel):
    """Per-resource comparison and health detail."""

    group: str = ""
    kind: str
    namespace: str = ""
    name: str
    status: SyncStatus = SyncStatus.UNKNOWN
    health: HealthStatus | None = None
    health_message: str | None = None
    hook: bool = False
    requires_pruning: bool = False
    wave: int = 0
    diff: list[str] = Field(default_factory=list)

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.group, self.kind, self.namespace, self.name)


class SyncResultResource(CamelModel):
    """Outcome of one resource (or hook) within a sync operation."""

    group: str = ""
    kind: str
    namespace: str = ""
    name: str
    status: ResultCode
    message: str = ""
    sync_phase: HookType = HookType.SYNC
    hook_phase: str | None = None
    wave: int = 0

    @classmethod
    def for_key(cls, key: ResourceKey, status: ResultCode, **kwargs: Any) -> SyncResultResource:
        return cls(
            group=key.group,
            kind=key.kind,
            namespace=key.namespace,
            name=key.name,
            status=status,
            **kwargs,
        )

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.group, self.kind, self.namespace, self.name)


class SyncResult(CamelModel):
    revision: str = ""
    resources: list[SyncResultResource] = Field(default_factory=list)


class OperationState(CamelModel):
    phase: OperationPhase = OperationPhase.RUNNING
    message: str = ""
    revision: str = ""
    started_at: str | None = None
    finished_at: str | None = None
    retry_count: int = 0
    self_heal: bool = False
    sync_result: SyncResult = Field(default_factory=SyncResult)
    completed_hooks: list[str] = Field(default_factory=list)


class SyncInfo(CamelModel):
    status: SyncStatus = SyncStatus.UNKNOWN
    revision: str = ""


class HealthInfo(CamelModel):
    status: HealthStatus = HealthStatus.UNKNOWN
    message: str = ""


class RevisionHistory(CamelModel):
    id: int
    revision: str
    deployed_at: str
    source: ApplicationSource | None = None


class ApplicationStatus(CamelModel):
    sync: SyncInfo = Field(default_factory=SyncInfo)
    health: HealthInfo = Field(default_factory=HealthInfo)
    resources: list[ResourceStatus] = Field(default_factory=list)
    conditions: list[Condition] = Field(default_factory=list)
    operation_state: OperationState | None = None
    history: list[RevisionHistory] = Field(default_factory=list)
    reconciled_at: str | None = None

    def condition(self, type_: str) -> Condition | None:
        for cond in self.conditions:
            if cond.type == type_:
                return cond
        return None


# =============================================================================
# APPLICATION
# =============================================================================


class Application(CamelModel):
    """
    Application custom resource.

    FACTORY METHOD:
    ---------------
    Application.from_manifest(data) accepts the raw dictionary as returned by
    the API server (or as rendered from a parent's source tree).
    """

    api_version: str = APPLICATION_API_VERSION
    kind: str = APPLICATION_KIND
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: ApplicationSpec = Field(default_factory=ApplicationSpec)
    status: ApplicationStatus = Field(default_factory=ApplicationStatus)

    @field_validator("status", mode="before")
    @classmethod
    def _none_status(cls, v: Any) -> Any:
        return v if v is not None else {}

    @classmethod
    def from_manifest(cls, data: dict[str, Any]) -> Application:
        return cls.model_validate(data)

    def to_manifest(self) -> dict[str, Any]:
        return self.dump()

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(APPLICATION_GROUP, APPLICATION_KIND, self.namespace, self.name)

    @property
    def being_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def cascades(self) -> bool:
        """True when deletion must first remove every managed resource."""
        return RESOURCES_FINALIZER in self.metadata.finalizers

    @property
    def automated(self) -> Automated | None:
        return self.spec.sync_policy.automated


# =============================================================================
# APPPROJECT
# =============================================================================


class GroupKind(CamelModel):
    group: str = ""
    kind: str = "*"


class ProjectDestination(CamelModel):
    server: str = ""
    name: str = ""
    namespace: str = "*"


class ProjectSpec(CamelModel):
    source_repos: list[str] = Field(default_factory=list)
    destinations: list[ProjectDestination] = Field(default_factory=list)
    cluster_resource_whitelist: list[GroupKind] = Field(default_factory=list)
    namespace_resource_blacklist: list[GroupKind] = Field(default_factory=list)


class AppProject(CamelModel):
    api_version: str = APPLICATION_API_VERSION
    kind: str = PROJECT_KIND
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: ProjectSpec = Field(default_factory=ProjectSpec)

    @classmethod
    def from_manifest(cls, data: dict[str, Any]) -> AppProject:
        return cls.model_validate(data)

    @classmethod
    def permissive(cls, name: str = "default", namespace: str = "") -> AppProject:
        """The built-in project that allows every source, destination and kind."""
        return cls(
            metadata=ObjectMeta(name=name, namespace=namespace),
            spec=ProjectSpec(
                source_repos=["*"],
                destinations=[ProjectDestination(server="*", namespace="*")],
                cluster_resource_whitelist=[GroupKind(group="*", kind="*")],
            ),
        )

    @property
    def name(self) -> str:
        return self.metadata.name
