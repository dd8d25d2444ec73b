# ABOUTME: Pytest fixtures and configuration for appsync tests
# ABOUTME: Provides settings, an in-memory cluster, source directories and manifest builders

import asyncio
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import yaml
from pydantic import SecretStr

from appsync.cluster.memory import InMemoryCluster, mark_ready
from appsync.config import ClusterSettings, ControllerSettings, RetrySettings, SecuritySettings, ServerSettings
from appsync.engine.apply import ResourceApplier
from appsync.engine.context import CycleContext, SyncRequest
from appsync.engine.controller import ApplicationController
from appsync.engine.health import HealthEvaluator
from appsync.engine.hooks import HookExecutor
from appsync.engine.observer import LiveStateObserver
from appsync.engine.resources import (
    ANNOTATION_HOOK,
    ANNOTATION_HOOK_DELETE_POLICY,
    ANNOTATION_SYNC_OPTIONS,
    ANNOTATION_SYNC_WAVE,
)
from appsync.engine.retry import RetryController
from appsync.engine.waves import WaveScheduler
from appsync.models import APPLICATION_API_VERSION, APPLICATION_KIND, RESOURCES_FINALIZER, Application
from appsync.utils.safety import SafetyGuard

CONTROLLER_NAMESPACE = "argocd"
IN_CLUSTER = "https://kubernetes.default.svc"


# =============================================================================
# SETTINGS
# =============================================================================


@pytest.fixture
def mock_security_settings() -> SecuritySettings:
    """Create security settings for testing."""
    return SecuritySettings(
        read_only=False,
        disable_destructive=False,
        single_cluster=False,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=10_000,
        rate_limit_window=60,
    )


@pytest.fixture
def read_only_security_settings() -> SecuritySettings:
    """Create read-only security settings for testing."""
    return SecuritySettings(
        read_only=True,
        disable_destructive=True,
        single_cluster=False,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def controller_settings(tmp_path: Path) -> ControllerSettings:
    """Controller settings with timings small enough for unit tests."""
    return ControllerSettings(
        namespace=CONTROLLER_NAMESPACE,
        poll_interval_seconds=30.0,
        self_heal_debounce_seconds=0.0,
        wave_timeout_seconds=1.0,
        hook_timeout_seconds=1.0,
        health_poll_seconds=0.01,
        progressing_requeue_seconds=0.05,
        deletion_timeout_seconds=1.0,
        default_retry=RetrySettings(limit=2, duration=0.01, factor=2.0, max_duration=0.05),
        repo_cache_dir=tmp_path / "repo-cache",
        watched_kinds=[],
    )


@pytest.fixture
def mock_server_settings(
    controller_settings: ControllerSettings,
    mock_security_settings: SecuritySettings,
) -> ServerSettings:
    """Create server settings with one in-cluster destination and no service account."""
    return ServerSettings(
        kube_api_url=IN_CLUSTER,
        kube_token=SecretStr("test-token"),
        kube_token_file=None,
        controller=controller_settings,
        security=mock_security_settings,
    )


@pytest.fixture
def safety_guard(mock_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a safety guard for testing."""
    return SafetyGuard(mock_security_settings)


@pytest.fixture
def read_only_safety_guard(read_only_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a read-only safety guard for testing."""
    return SafetyGuard(read_only_security_settings)


# =============================================================================
# CLUSTER AND ENGINE BUILDING BLOCKS
# =============================================================================


@pytest.fixture
def cluster() -> InMemoryCluster:
    """In-memory cluster whose workloads and hooks become ready immediately."""
    c = InMemoryCluster()
    c.add_reactor(mark_ready)
    return c


@pytest.fixture
def bare_cluster() -> InMemoryCluster:
    """In-memory cluster without simulated controllers (nothing becomes ready)."""
    return InMemoryCluster()


@pytest.fixture
async def observer(cluster: InMemoryCluster) -> AsyncIterator[LiveStateObserver]:
    obs = LiveStateObserver(cluster)
    yield obs
    await obs.close()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]) -> Callable[[float], Awaitable[None]]:
    """Sleep replacement that records delays and only yields to the loop."""

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)
        await asyncio.sleep(0)

    return _sleep


@pytest.fixture
def retry(controller_settings: ControllerSettings, fake_sleep: Callable[[float], Awaitable[None]]) -> RetryController:
    return RetryController(controller_settings.default_retry, sleep=fake_sleep)


@pytest.fixture
def applier(safety_guard: SafetyGuard, retry: RetryController) -> ResourceApplier:
    return ResourceApplier(safety_guard, retry)


# =============================================================================
# SOURCES AND MANIFESTS
# =============================================================================


class SourceDir:
    """A plain directory used as an Application source (no git, content-hash revisions)."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    @property
    def url(self) -> str:
        return str(self.root)

    def write(self, relpath: str, *docs: dict[str, Any]) -> Path:
        path = self.root / relpath
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump_all(list(docs), sort_keys=False))
        return path

    def remove(self, relpath: str) -> None:
        (self.root / relpath).unlink()


@pytest.fixture
def source(tmp_path: Path) -> SourceDir:
    return SourceDir(tmp_path / "repo")


class Manifests:
    """Builders for the Kubernetes objects used across tests."""

    @staticmethod
    def _meta(
        name: str,
        namespace: str | None,
        wave: int | None,
        annotations: dict[str, str] | None,
        options: str | None = None,
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": name}
        if namespace:
            metadata["namespace"] = namespace
        ann = dict(annotations or {})
        if wave is not None:
            ann[ANNOTATION_SYNC_WAVE] = str(wave)
        if options:
            ann[ANNOTATION_SYNC_OPTIONS] = options
        if ann:
            metadata["annotations"] = ann
        return metadata

    def config_map(
        self,
        name: str,
        data: dict[str, str] | None = None,
        namespace: str | None = None,
        wave: int | None = None,
        options: str | None = None,
        annotations: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": self._meta(name, namespace, wave, annotations, options),
            "data": data or {"key": "value"},
        }

    def deployment(
        self,
        name: str,
        image: str = "nginx:1.25",
        replicas: int = 1,
        namespace: str | None = None,
        wave: int | None = None,
        options: str | None = None,
    ) -> dict[str, Any]:
        return {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": self._meta(name, namespace, wave, None, options),
            "spec": {
                "replicas": replicas,
                "selector": {"matchLabels": {"app": name}},
                "template": {
                    "metadata": {"labels": {"app": name}},
                    "spec": {"containers": [{"name": name, "image": image}]},
                },
            },
        }

    def namespace(self, name: str, wave: int | None = None) -> dict[str, Any]:
        return {"apiVersion": "v1", "kind": "Namespace", "metadata": self._meta(name, None, wave, None)}

    def hook_job(
        self,
        name: str,
        phase: str = "PreSync",
        delete_policy: str | None = None,
        namespace: str | None = None,
        wave: int | None = None,
    ) -> dict[str, Any]:
        annotations = {ANNOTATION_HOOK: phase}
        if delete_policy:
            annotations[ANNOTATION_HOOK_DELETE_POLICY] = delete_policy
        return {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": self._meta(name, namespace, wave, annotations),
            "spec": {
                "template": {
                    "spec": {
                        "restartPolicy": "Never",
                        "containers": [{"name": name, "image": "busybox", "command": ["true"]}],
                    }
                }
            },
        }

    def application(
        self,
        name: str,
        repo: str,
        path: str,
        dest_namespace: str = "default",
        project: str = "default",
        automated: dict[str, Any] | None = None,
        sync_options: list[str] | None = None,
        retry: dict[str, Any] | None = None,
        finalizers: list[str] | None = None,
        namespace: str = CONTROLLER_NAMESPACE,
        wave: int | None = None,
        directory: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        source: dict[str, Any] = {"repoURL": repo, "path": path, "targetRevision": "HEAD"}
        if directory:
            source["directory"] = directory
        sync_policy: dict[str, Any] = {}
        if automated is not None:
            sync_policy["automated"] = automated
        if sync_options:
            sync_policy["syncOptions"] = sync_options
        if retry:
            sync_policy["retry"] = retry
        metadata = self._meta(name, namespace, wave, None)
        if finalizers:
            metadata["finalizers"] = finalizers
        return {
            "apiVersion": APPLICATION_API_VERSION,
            "kind": APPLICATION_KIND,
            "metadata": metadata,
            "spec": {
                "project": project,
                "source": source,
                "destination": {"server": IN_CLUSTER, "namespace": dest_namespace},
                "syncPolicy": sync_policy,
            },
        }


@pytest.fixture
def k8s() -> Manifests:
    return Manifests()


@pytest.fixture
def cascade_finalizers() -> list[str]:
    return [RESOURCES_FINALIZER]


# =============================================================================
# PIPELINE STAGES
# =============================================================================


@pytest.fixture
async def bare_observer(bare_cluster: InMemoryCluster) -> AsyncIterator[LiveStateObserver]:
    obs = LiveStateObserver(bare_cluster)
    yield obs
    await obs.close()


@pytest.fixture
def evaluator() -> HealthEvaluator:
    return HealthEvaluator()


@pytest.fixture
def hook_executor(
    applier: ResourceApplier, evaluator: HealthEvaluator, controller_settings: ControllerSettings
) -> HookExecutor:
    return HookExecutor(applier, evaluator, controller_settings)


@pytest.fixture
def wave_scheduler(
    applier: ResourceApplier,
    evaluator: HealthEvaluator,
    hook_executor: HookExecutor,
    controller_settings: ControllerSettings,
) -> WaveScheduler:
    return WaveScheduler(applier, evaluator, hook_executor, controller_settings)


@pytest.fixture
def make_cycle(observer: LiveStateObserver, k8s: Manifests) -> Callable[..., CycleContext]:
    """Build a CycleContext for the "guestbook" Application (destination namespace "web")."""

    def _make(
        app: Application | None = None,
        request: SyncRequest | None = None,
        revision: str = "rev-1",
        live: LiveStateObserver | None = None,
        **app_kwargs: Any,
    ) -> CycleContext:
        if app is None:
            app = Application.from_manifest(
                k8s.application("guestbook", "/repo", "guestbook", dest_namespace="web", **app_kwargs)
            )
        obs = live or observer
        return CycleContext(
            app=app,
            revision=revision,
            cluster=obs.cluster,
            observer=obs,
            request=request or SyncRequest(),
        )

    return _make


# =============================================================================
# CONTROLLER
# =============================================================================


@pytest.fixture
async def controller(
    mock_server_settings: ServerSettings,
    safety_guard: SafetyGuard,
    cluster: InMemoryCluster,
    fake_sleep: Callable[[float], Awaitable[None]],
) -> AsyncIterator[ApplicationController]:
    """Controller bound to the in-memory cluster; tests call start() themselves."""
    ctrl = ApplicationController(
        mock_server_settings,
        safety_guard,
        clusters={"in-cluster": cluster},
        sleep=fake_sleep,
    )
    yield ctrl
    await ctrl.stop()


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Wait until predicate() is true, failing after timeout seconds."""

    async def _eventually(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)

    return _eventually


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx


# =============================================================================
# INTEGRATION
# =============================================================================


@pytest.fixture
def live_cluster_settings() -> ClusterSettings | None:
    """Cluster from KUBE_API_URL/KUBE_TOKEN, or None when not configured."""
    url = os.environ.get("KUBE_API_URL")
    token = os.environ.get("KUBE_TOKEN")
    if not url or not token:
        return None
    return ClusterSettings(
        name="integration-test",
        server=url,
        token=SecretStr(token),
        insecure=os.environ.get("KUBE_INSECURE", "false").lower() == "true",
    )
