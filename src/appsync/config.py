# ABOUTME: Configuration management for the appsync controller
# ABOUTME: Handles environment variables, destination clusters, controller timing and security modes

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module handles all configuration for the controller and its status
server. It:

1. READS environment variables (like KUBE_API_URL, APPSYNC_SECURITY_READ_ONLY)
2. VALIDATES them (URLs normalized, durations positive, log level known)
3. PROVIDES typed access to settings throughout the engine

=============================================================================
ARCHITECTURE: FOUR CONFIGURATION CLASSES
=============================================================================

1. ClusterSettings: Connection details for ONE destination cluster
   - API server URL, bearer token (inline or file), CA bundle, TLS settings

2. ControllerSettings: Reconciliation behavior (APPSYNC_CONTROLLER_* prefix)
   - Poll interval, self-heal debounce, wave/hook timeouts
   - Transient retry policy, health rules, watched kinds

3. SecuritySettings: What the controller may do (APPSYNC_SECURITY_* prefix)
   - Read-only observation, destructive-operation blocking, rate limiting

4. ServerSettings: Main configuration container
   - Primary cluster from environment, additional clusters
   - Nested ControllerSettings and SecuritySettings

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Primary cluster (named "in-cluster"):
    KUBE_API_URL        -> API server URL (default https://kubernetes.default.svc)
    KUBE_TOKEN          -> Bearer token
    KUBE_TOKEN_FILE     -> File holding the bearer token (service account)
    KUBE_CA_FILE        -> CA bundle used to verify the API server
    KUBE_INSECURE       -> Skip TLS certificate verification

Controller settings (APPSYNC_CONTROLLER_ prefix):
    APPSYNC_CONTROLLER_NAMESPACE              -> Namespace holding Applications
    APPSYNC_CONTROLLER_POLL_INTERVAL_SECONDS  -> Refresh interval (default: 180)
    APPSYNC_CONTROLLER_WAVE_TIMEOUT_SECONDS   -> Health wait per wave (default: 300)
    ...

Security settings (APPSYNC_SECURITY_ prefix):
    APPSYNC_SECURITY_READ_ONLY           -> Observe only, never write
    APPSYNC_SECURITY_DISABLE_DESTRUCTIVE -> Block prune and cascade deletes
    APPSYNC_SECURITY_AUDIT_LOG           -> Path to audit log file
    APPSYNC_SECURITY_RATE_LIMIT_CALLS    -> Max cluster writes per window
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from appsync.models import HealthStatus

# Service account paths mounted into every pod.
SERVICE_ACCOUNT_TOKEN = "/var/run/secrets/kubernetes.io/serviceaccount/token"
SERVICE_ACCOUNT_CA = "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"

IN_CLUSTER_NAME = "in-cluster"
IN_CLUSTER_SERVER = "https://kubernetes.default.svc"

# Resource kinds watched on every destination cluster before any Application
# asks for more. (group, kind) pairs.
DEFAULT_WATCHED_KINDS = [
    ("", "Namespace"),
    ("", "ConfigMap"),
    ("", "Secret"),
    ("", "Service"),
    ("", "ServiceAccount"),
    ("", "PersistentVolumeClaim"),
    ("", "Pod"),
    ("apps", "Deployment"),
    ("apps", "StatefulSet"),
    ("apps", "DaemonSet"),
    ("batch", "Job"),
    ("batch", "CronJob"),
    ("networking.k8s.io", "Ingress"),
]


# =============================================================================
# CLUSTER CONFIGURATION
# =============================================================================


class ClusterSettings(BaseModel):
    """
    Configuration for a single destination cluster.

    An Application names its destination either by `server` (API URL) or by
    `name`. Both are matched against the configured clusters.

    USAGE EXAMPLE:
    --------------
        cluster = ClusterSettings(
            name="staging",
            server="https://10.0.0.1:6443",
            token=SecretStr("sa-token"),
            ca_file=Path("/etc/appsync/staging-ca.crt"),
        )
    """

    model_config = {"extra": "ignore"}

    name: str = Field(default=IN_CLUSTER_NAME, description="Cluster identifier")
    server: str = Field(default=IN_CLUSTER_SERVER, description="Kubernetes API server URL")
    token: SecretStr = Field(default=SecretStr(""), description="Bearer token")
    token_file: Path | None = Field(default=None, description="File holding the bearer token")
    ca_file: Path | None = Field(default=None, description="CA bundle for TLS verification")
    insecure: bool = Field(default=False, description="Skip TLS verification")

    @field_validator("server")
    @classmethod
    def validate_server(cls, v: str) -> str:
        """
        Ensure URL has proper scheme and no trailing slash.

        "10.0.0.1:6443" becomes "https://10.0.0.1:6443", and
        "https://api.example.com/" becomes "https://api.example.com" so API paths
        can be appended without producing a double slash.
        """
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        return v.rstrip("/")

    def bearer_token(self) -> str:
        """Inline token if set, otherwise the contents of token_file (or "")."""
        token = self.token.get_secret_value()
        if token:
            return token
        if self.token_file is not None and self.token_file.exists():
            return self.token_file.read_text().strip()
        return ""


# =============================================================================
# HEALTH RULES
# =============================================================================


class HealthRuleSpec(BaseModel):
    """
    Declarative health rule for a custom resource kind.

    Two forms are supported:

    1. CONDITION FORM: set `condition_type`. The resource is Healthy when
       status.conditions[type=condition_type].status == "True", Degraded when it
       is "False" and `condition_false_degraded` is set, Progressing otherwise.

    2. FIELD FORM: set `status_field` (dotted path under status). Its value is
       looked up in `healthy_values`, `degraded_values`, `progressing_values`.
       With `progressing_values` set, a value in none of the lists is Unknown.

    Anything else that matches nothing is Progressing.
    """

    model_config = {"extra": "ignore"}

    group: str = ""
    kind: str
    condition_type: str | None = None
    condition_false_degraded: bool = False
    status_field: str | None = None
    healthy_values: list[str] = Field(default_factory=list)
    degraded_values: list[str] = Field(default_factory=list)
    progressing_values: list[str] = Field(default_factory=list)


# =============================================================================
# RETRY SETTINGS
# =============================================================================


class RetrySettings(BaseModel):
    """Backoff for transient API errors, independent of an Application's own retry policy."""

    model_config = {"extra": "ignore"}

    limit: int = Field(default=5, ge=0, description="Maximum retries per operation")
    duration: float = Field(default=1.0, gt=0, description="Initial backoff in seconds")
    factor: float = Field(default=2.0, ge=1, description="Backoff multiplier")
    max_duration: float = Field(default=30.0, gt=0, description="Backoff cap in seconds")


# =============================================================================
# CONTROLLER SETTINGS
# =============================================================================


class ControllerSettings(BaseSettings):
    """
    Reconciliation behavior.

    TIMING MODEL:
    -------------
    Each Application is refreshed every `poll_interval_seconds`, or sooner
    when a watch event touches one of its tracked resources (coalesced over
    `self_heal_debounce_seconds`). Inside a sync, each wave waits at most
    `wave_timeout_seconds` for health, checking every `health_poll_seconds`
    when no watch event arrives.
    """

    model_config = SettingsConfigDict(env_prefix="APPSYNC_CONTROLLER_", extra="ignore")

    namespace: str = Field(default="argocd", description="Namespace holding Applications")
    poll_interval_seconds: float = Field(default=180.0, gt=0)
    self_heal_debounce_seconds: float = Field(default=5.0, ge=0)
    wave_timeout_seconds: float = Field(default=300.0, gt=0)
    hook_timeout_seconds: float = Field(default=600.0, gt=0)
    health_poll_seconds: float = Field(default=2.0, gt=0)
    progressing_requeue_seconds: float = Field(default=15.0, gt=0)
    deletion_timeout_seconds: float = Field(default=600.0, gt=0)

    acceptable_wave_health: list[HealthStatus] = Field(
        default_factory=lambda: [HealthStatus.HEALTHY],
        description="Health states that let the next wave start",
    )
    # Degraded resources never block later waves unless this is true (or a
    # resource of the wave carries RequireHealthy=true).
    strict_wave_health: bool = False

    default_retry: RetrySettings = Field(default_factory=RetrySettings)

    field_manager: str = "appsync"
    repo_cache_dir: Path | None = None
    kustomize_binary: str = "kustomize"
    helm_binary: str = "helm"
    git_binary: str = "git"
    render_timeout_seconds: float = Field(default=90.0, gt=0)

    allow_default_project: bool = True
    health_rules: list[HealthRuleSpec] = Field(default_factory=list)
    watched_kinds: list[tuple[str, str]] = Field(
        default_factory=lambda: list(DEFAULT_WATCHED_KINDS)
    )


# =============================================================================
# SECURITY SETTINGS
# =============================================================================


class SecuritySettings(BaseSettings):
    """
    Security-related configuration.

    LAYERS:
    -------
    1. read_only: the controller still renders, diffs and computes health but
       never writes to any cluster (not even Application status).
    2. disable_destructive: applies are allowed; prune and cascade deletes are
       blocked and reported.
    3. Rate limiting: caps cluster writes per window; an exceeded limit is a
       transient failure and is retried with backoff.
    4. Confirmation: destructive status-surface tools require confirm=true and
       confirm_name matching the target.
    """

    model_config = SettingsConfigDict(env_prefix="APPSYNC_SECURITY_")

    read_only: bool = Field(default=False, description="Never write to any cluster")
    disable_destructive: bool = Field(
        default=False, description="Block prune and cascade delete operations"
    )
    single_cluster: bool = Field(
        default=False, description="Restrict writes to the in-cluster destination"
    )
    audit_log: Path | None = Field(default=None, description="Path to audit log file")
    mask_secrets: bool = Field(default=True, description="Mask sensitive values in output")
    rate_limit_calls: int = Field(default=1000, description="Maximum writes per window")
    rate_limit_window: int = Field(default=60, description="Rate limit window in seconds")


# =============================================================================
# MAIN SERVER SETTINGS
# =============================================================================


class ServerSettings(BaseSettings):
    """
    Main configuration container.

    USAGE:
    ------
        settings = load_settings()
        settings.primary_cluster.server   # https://kubernetes.default.svc
        settings.controller.namespace     # argocd
        settings.security.read_only       # False
    """

    model_config = SettingsConfigDict(
        env_prefix="APPSYNC_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    kube_api_url: str = Field(
        default=IN_CLUSTER_SERVER,
        validation_alias="KUBE_API_URL",
        description="Primary cluster API server URL",
    )
    kube_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="KUBE_TOKEN",
        description="Primary cluster bearer token",
    )
    kube_token_file: Path | None = Field(
        default=Path(SERVICE_ACCOUNT_TOKEN),
        validation_alias="KUBE_TOKEN_FILE",
    )
    kube_ca_file: Path | None = Field(default=None, validation_alias="KUBE_CA_FILE")
    kube_insecure: bool = Field(default=False, validation_alias="KUBE_INSECURE")

    additional_clusters: list[ClusterSettings] = Field(
        default_factory=list,
        description="Additional destination clusters",
    )

    server_name: str = Field(default="appsync", description="MCP server name")
    server_version: str = Field(default="0.1.0", description="MCP server version")

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )
    log_json: bool = Field(default=True, description="Emit JSON log lines")

    controller: ControllerSettings = Field(default_factory=ControllerSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)

    @property
    def primary_cluster(self) -> ClusterSettings:
        """The cluster the controller runs against, named "in-cluster"."""
        ca_file = self.kube_ca_file
        if ca_file is None and Path(SERVICE_ACCOUNT_CA).exists():
            ca_file = Path(SERVICE_ACCOUNT_CA)
        return ClusterSettings(
            name=IN_CLUSTER_NAME,
            server=self.kube_api_url,
            token=self.kube_token,
            token_file=self.kube_token_file,
            ca_file=ca_file,
            insecure=self.kube_insecure,
        )

    @property
    def all_clusters(self) -> list[ClusterSettings]:
        return [self.primary_cluster, *self.additional_clusters]

    def get_cluster(self, name: str = IN_CLUSTER_NAME) -> ClusterSettings | None:
        for cluster in self.all_clusters:
            if cluster.name == name:
                return cluster
        return None

    def resolve_destination(self, server: str = "", name: str = "") -> ClusterSettings | None:
        """
        Find the cluster an Application destination refers to.

        `server` wins over `name` when both are set. The well-known in-cluster
        URL always resolves to the primary cluster.

        Returns:
            ClusterSettings if found, None otherwise.
        """
        if server:
            normalized = server.rstrip("/")
            if normalized == IN_CLUSTER_SERVER:
                return self.primary_cluster
            for cluster in self.all_clusters:
                if cluster.server == normalized:
                    return cluster
            return None
        if name:
            return self.get_cluster(name)
        return None


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings() -> ServerSettings:
    """
    Load settings from environment with validation.

    If APPSYNC_ENV_FILE is set, additional variables are read from that file.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return ServerSettings(_env_file=os.environ.get("APPSYNC_ENV_FILE"))
