# ABOUTME: Application controller running one reconciliation loop per Application
# ABOUTME: Decides auto-sync, self-heal and retries, cancels stale cycles and hands deletions to cascade

"""
Application controller.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The controller watches Application objects in its namespace and keeps one
asyncio task per Application. Each task loops:

    wait for: poll interval | live-state event (debounced) | spec change |
              manual request | retry timer
    async with the Application's lock:
        reconcile()

Applications reconcile in parallel; there is no global lock.

=============================================================================
ONE CYCLE (reconcile)
=============================================================================

    deletionTimestamp set?  -> CascadeDeleter, done
    compare (gate, render, diff)
    decide:
        manual request                          -> sync
        no automated policy                     -> report only
        nothing to change                       -> report only
        new revision                            -> sync
        same revision, last attempt failed      -> retry with backoff until
                                                   retry.limit, then stop
                                                   (RetryLimitExhausted)
        same revision, drift, selfHeal=true     -> sync (self-heal)
        same revision, drift, selfHeal=false    -> report OutOfSync
    write status (skipped when nothing but timestamps changed)

=============================================================================
CANCELLATION
=============================================================================

While a sync runs, a probe task re-resolves the source revision on every
refresh request and poll interval. A newer revision, a spec change or a
deletion cancels the in-flight cycle at its next wave boundary; the next
cycle then starts from the new state.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from appsync.cluster.base import DELETED
from appsync.engine.apply import ResourceApplier
from appsync.engine.cascade import CascadeDeleter
from appsync.engine.context import CycleContext, SyncRequest
from appsync.engine.health import HealthEvaluator, HealthRegistry
from appsync.engine.hooks import HookExecutor
from appsync.engine.observer import LiveStateObserver
from appsync.engine.pruner import Pruner
from appsync.engine.rbac import ProjectGate
from appsync.engine.render import (
    DirectoryRenderer,
    HelmRenderer,
    KustomizeRenderer,
    RenderService,
    SourceRepository,
    default_cache_dir,
)
from appsync.engine.retry import RetryController
from appsync.engine.resources import tracking_of
from appsync.engine.status import (
    StatusWriter,
    append_history,
    condition_for,
    merge_conditions,
    utc_now,
)
from appsync.engine.sync import SyncPipeline
from appsync.engine.waves import WaveScheduler
from appsync.errors import (
    DeletionError,
    HealthTimeout,
    InvalidSpecError,
    PruneProtectionViolation,
    ReconcileError,
)
from appsync.models import (
    APPLICATION_GROUP,
    APPLICATION_KIND,
    PROJECT_KIND,
    RESOURCES_FINALIZER,
    AppProject,
    Application,
    ApplicationStatus,
    Condition,
    HealthInfo,
    HealthStatus,
    OperationPhase,
    ResourceKey,
    SyncInfo,
    SyncStatus,
)
from appsync.utils.client import KubernetesClient
from appsync.utils.logging import start_cycle

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from appsync.cluster.base import ClusterAPI, WatchEvent
    from appsync.config import ServerSettings
    from appsync.engine.sync import Comparison
    from appsync.models import OperationState
    from appsync.utils.logging import AuditLogger
    from appsync.utils.safety import SafetyGuard

logger = structlog.get_logger(__name__)


@dataclass
class Target:
    """Destination cluster of an Application and its live state."""

    cluster: ClusterAPI
    observer: LiveStateObserver


@dataclass
class AppRuntime:
    """In-process state of one Application's loop."""

    name: str
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    refresh: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None
    cycle: CycleContext | None = None
    request: SyncRequest | None = None
    debounce: bool = False
    generation: int | None = None
    retry_at: float | None = None
    timed_out: bool = False
    exhausted: bool = False
    error_type: str = "SyncError"
    operation: OperationState | None = None
    status: ApplicationStatus | None = None
    written: ApplicationStatus | None = None


class ApplicationController:
    """
    Reconciles every Application in the controller namespace.

    USAGE:
    ------
        controller = ApplicationController(settings, SafetyGuard(settings.security))
        await controller.start()
        ...
        op = await controller.sync("guestbook", prune=True)
        await controller.stop()

    Tests inject clusters (e.g. InMemoryCluster) keyed by cluster name; in
    production a KubernetesClient is created per configured cluster.
    """

    def __init__(
        self,
        settings: ServerSettings,
        guard: SafetyGuard,
        audit: AuditLogger | None = None,
        clusters: dict[str, ClusterAPI] | None = None,
        renderer: RenderService | None = None,
        registry: HealthRegistry | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.guard = guard
        cs = settings.controller
        self._owns_clusters = clusters is None
        self.clusters: dict[str, ClusterAPI] = clusters if clusters is not None else {}
        self.home_name = settings.primary_cluster.name

        self.retry = RetryController(cs.default_retry, sleep=sleep)
        self.applier = ResourceApplier(guard, self.retry, audit, cs.field_manager)
        self.evaluator = HealthEvaluator(registry or HealthRegistry(cs.health_rules))
        hooks = HookExecutor(self.applier, self.evaluator, cs)
        waves = WaveScheduler(self.applier, self.evaluator, hooks, cs)
        self.pipeline = SyncPipeline(
            renderer or self._default_renderer(),
            ProjectGate(),
            self.evaluator,
            hooks,
            waves,
            Pruner(self.applier),
        )
        self.cascade = CascadeDeleter(self.applier, cs)
        self.status_writer = StatusWriter(self.applier)

        self._observers: dict[str, LiveStateObserver] = {}
        self._observer_lock = asyncio.Lock()
        self._apps: dict[str, AppRuntime] = {}
        self._started = False
        self._loops = True

    def _default_renderer(self) -> RenderService:
        cs = self.settings.controller
        timeout = cs.render_timeout_seconds
        return RenderService(
            SourceRepository(cs.repo_cache_dir or default_cache_dir(), cs.git_binary, timeout),
            kustomize=KustomizeRenderer(cs.kustomize_binary, timeout),
            helm=HelmRenderer(cs.helm_binary, timeout),
            directory=DirectoryRenderer(),
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self, loops: bool = True) -> None:
        """
        Connect to clusters and start observing Applications.

        Args:
            loops: Start one reconciliation loop per Application. Without
                   loops, cycles run only when reconcile() is called.
        """
        if self._started:
            return
        self._loops = loops
        if self._owns_clusters:
            for cluster_settings in self.settings.all_clusters:
                client = KubernetesClient(cluster_settings)
                await client.__aenter__()
                self.clusters[cluster_settings.name] = client
        self._started = True
        home = await self.observer(self.home_name)
        home.add_listener(self._on_home_event)
        await home.ensure_watched(APPLICATION_GROUP, PROJECT_KIND)
        await home.ensure_watched(APPLICATION_GROUP, APPLICATION_KIND)
        logger.info(
            "Controller started",
            namespace=self.settings.controller.namespace,
            applications=len(self._apps),
        )

    async def stop(self) -> None:
        tasks = [rt.task for rt in self._apps.values() if rt.task is not None]
        for rt in self._apps.values():
            if rt.cycle is not None:
                rt.cycle.cancel("controller stopping")
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._apps.clear()
        for observer in self._observers.values():
            await observer.close()
        self._observers.clear()
        if self._owns_clusters:
            for cluster in self.clusters.values():
                await cluster.close()
            self.clusters.clear()
        self._started = False
        logger.info("Controller stopped")

    # =========================================================================
    # CLUSTERS AND OBSERVERS
    # =========================================================================

    @property
    def home(self) -> ClusterAPI:
        return self.clusters[self.home_name]

    async def observer(self, cluster_name: str) -> LiveStateObserver:
        """Observer for a cluster, created (and pre-watching default kinds) on first use."""
        async with self._observer_lock:
            observer = self._observers.get(cluster_name)
            if observer is not None:
                return observer
            observer = LiveStateObserver(self.clusters[cluster_name])
            observer.add_listener(self._on_live_event)
            self._observers[cluster_name] = observer
        for group, kind in self.settings.controller.watched_kinds:
            await observer.ensure_watched(group, kind)
        return observer

    async def target(self, app: Application) -> Target:
        """
        Resolve the Application's destination cluster.

        Raises:
            InvalidSpecError: the destination is not a configured cluster
        """
        dest = app.spec.destination
        cluster_settings = self.settings.resolve_destination(dest.server, dest.name)
        if cluster_settings is None or cluster_settings.name not in self.clusters:
            target = dest.server or dest.name or "<empty>"
            raise InvalidSpecError(f"destination cluster {target} is not configured")
        return Target(self.clusters[cluster_settings.name], await self.observer(cluster_settings.name))

    # =========================================================================
    # EVENTS
    # =========================================================================

    def _app_key(self, name: str) -> ResourceKey:
        return ResourceKey(APPLICATION_GROUP, APPLICATION_KIND, self.settings.controller.namespace, name)

    def _on_home_event(self, event: WatchEvent) -> None:
        key = ResourceKey.from_manifest(event.object)
        if key.namespace != self.settings.controller.namespace:
            return
        if key.group_kind == (APPLICATION_GROUP, PROJECT_KIND):
            for rt in self._apps.values():
                app = self.application(rt.name)
                if app is not None and app.spec.project == key.name:
                    rt.wake.set()
            return
        if key.group_kind != (APPLICATION_GROUP, APPLICATION_KIND):
            return
        if event.type == DELETED:
            self._forget(key.name)
            return
        rt = self._runtime(key.name)
        metadata = event.object.get("metadata") or {}
        if metadata.get("deletionTimestamp"):
            if rt.cycle is not None:
                rt.cycle.cancel("application is being deleted")
            rt.wake.set()
            return
        generation = metadata.get("generation")
        if generation != rt.generation:
            rt.generation = generation
            rt.refresh.set()
            rt.wake.set()

    def _on_live_event(self, event: WatchEvent) -> None:
        owner = tracking_of(event.object)
        rt = self._apps.get(owner) if owner else None
        if rt is not None:
            rt.debounce = True
            rt.wake.set()

    def _runtime(self, name: str) -> AppRuntime:
        rt = self._apps.get(name)
        if rt is None:
            rt = AppRuntime(name=name)
            self._apps[name] = rt
            if self._loops:
                rt.task = asyncio.create_task(self._run(rt), name=f"app-{name}")
            rt.wake.set()
            logger.info("Tracking application", app=name)
        return rt

    def _forget(self, name: str) -> None:
        rt = self._apps.pop(name, None)
        if rt is None:
            return
        if rt.cycle is not None:
            rt.cycle.cancel("application deleted")
        if rt.task is not None:
            rt.task.cancel()
        logger.info("Application removed", app=name)

    # =========================================================================
    # PER-APPLICATION LOOP
    # =========================================================================

    def _next_wakeup(self, rt: AppRuntime) -> float:
        cs = self.settings.controller
        timeout = cs.poll_interval_seconds
        status = rt.status
        if status is not None and status.health.status in (HealthStatus.PROGRESSING, HealthStatus.MISSING):
            timeout = min(timeout, cs.progressing_requeue_seconds)
        if rt.retry_at is not None:
            timeout = min(timeout, max(rt.retry_at - asyncio.get_running_loop().time(), 0.0))
        return timeout

    async def _run(self, rt: AppRuntime) -> None:
        while True:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(rt.wake.wait(), self._next_wakeup(rt))
            rt.wake.clear()
            if rt.debounce:
                await asyncio.sleep(self.settings.controller.self_heal_debounce_seconds)
                rt.debounce = False
            try:
                await self.reconcile(rt.name)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Reconcile failed", app=rt.name)

    # =========================================================================
    # RECONCILE
    # =========================================================================

    def application(self, name: str) -> Application | None:
        if self.home_name not in self._observers:
            return None
        live = self._observers[self.home_name].get(self._app_key(name))
        return Application.from_manifest(live) if live is not None else None

    def applications(self) -> list[Application]:
        if self.home_name not in self._observers:
            return []
        namespace = self.settings.controller.namespace
        return [
            Application.from_manifest(obj)
            for key, obj in sorted(self._observers[self.home_name].snapshot().items())
            if key.group_kind == (APPLICATION_GROUP, APPLICATION_KIND) and key.namespace == namespace
        ]

    def project(self, app: Application) -> AppProject | None:
        namespace = self.settings.controller.namespace
        key = ResourceKey(APPLICATION_GROUP, PROJECT_KIND, namespace, app.spec.project)
        live = self._observers[self.home_name].get(key)
        if live is not None:
            return AppProject.from_manifest(live)
        if app.spec.project == "default" and self.settings.controller.allow_default_project:
            return AppProject.permissive(namespace=namespace)
        return None

    async def reconcile(self, name: str, request: SyncRequest | None = None) -> OperationState | None:
        """
        Run one cycle for an Application, serialized with its other cycles.

        Args:
            name: Application name
            request: Manual sync request; None for a refresh with automated policy

        Returns:
            The operation state of the sync that ran in this cycle, if any.
        """
        if self.application(name) is None:
            return None
        rt = self._runtime(name)
        async with rt.lock:
            if request is None and rt.request is not None:
                request, rt.request = rt.request, None
            return await self._reconcile(rt, request)

    async def _reconcile(self, rt: AppRuntime, request: SyncRequest | None) -> OperationState | None:
        app = self.application(rt.name)
        if app is None:
            return None
        start_cycle(rt.name)
        previous = rt.written or app.status
        try:
            target = await self.target(app)
        except InvalidSpecError as e:
            await self._write(rt, app, self._error_status(app, previous, e))
            return None

        if app.being_deleted:
            await self._finalize(rt, app, target)
            return None

        project = self.project(app)
        ctx = CycleContext(app=app, revision=app.status.sync.revision, cluster=target.cluster, observer=target.observer)
        rt.cycle = ctx
        op: OperationState | None = None
        try:
            comparison = await self.pipeline.compare(ctx, project)
            decision = self._decide(rt, app, comparison, request)
            if decision is not None:
                op = await self._sync(rt, ctx, comparison, decision)
                if decision.dry_run:
                    return op
                comparison = await self.pipeline.compare(ctx, project)
            status = self._status(rt, app, previous, comparison, op)
        except ReconcileError as e:
            logger.warning("Comparison failed", app=rt.name, error=str(e))
            status = self._error_status(app, previous, e)
        finally:
            rt.cycle = None
        await self._write(rt, app, status)
        return op

    def _decide(
        self,
        rt: AppRuntime,
        app: Application,
        comparison: Comparison,
        request: SyncRequest | None,
    ) -> SyncRequest | None:
        if request is not None and request.manual:
            rt.exhausted = False
            return request
        automated = app.automated
        if automated is None or self.guard.read_only:
            return None
        if not comparison.needs_sync(prune=automated.prune):
            rt.exhausted = False
            return None

        prev = rt.operation or app.status.operation_state
        if prev is None or prev.revision != comparison.revision:
            rt.exhausted = False
            rt.retry_at = None
            return SyncRequest()
        if prev.phase in (OperationPhase.FAILED, OperationPhase.ERROR):
            loop_time = asyncio.get_running_loop().time()
            if rt.retry_at is not None and loop_time < rt.retry_at:
                return None
            if rt.timed_out:
                return SyncRequest()
            if self.retry.attempts_exhausted(app.spec.sync_policy.retry, prev.retry_count):
                if not rt.exhausted:
                    logger.warning("Retry limit exhausted", app=app.name, revision=prev.revision)
                rt.exhausted = True
                return None
            return SyncRequest()
        if prev.phase == OperationPhase.TERMINATED:
            return SyncRequest()
        if automated.self_heal:
            return SyncRequest(self_heal=True)
        return None

    async def _sync(
        self,
        rt: AppRuntime,
        ctx: CycleContext,
        comparison: Comparison,
        request: SyncRequest,
    ) -> OperationState:
        ctx.request = request
        prev = rt.operation or ctx.app.status.operation_state
        same_revision = prev is not None and prev.revision == comparison.revision
        if same_revision and prev is not None:
            ctx.completed_hooks = set(prev.completed_hooks)
        if request.dry_run:
            return await self.pipeline.sync(comparison, ctx, utc_now())

        logger.info(
            "Syncing application",
            app=ctx.app.name,
            revision=comparison.revision,
            manual=request.manual,
            self_heal=request.self_heal,
        )
        done = asyncio.Event()
        probe = asyncio.create_task(self._probe(rt, ctx, done))
        try:
            op = await self.pipeline.sync(comparison, ctx, utc_now())
        finally:
            done.set()
            probe.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await probe
        op.finished_at = utc_now()

        rt.timed_out = isinstance(ctx.error, HealthTimeout)
        rt.error_type = ctx.error.condition_type if ctx.error else "SyncError"
        prior_failures = (
            prev.retry_count
            if same_revision and prev is not None and not request.manual and prev.phase == OperationPhase.FAILED
            else 0
        )
        loop_time = asyncio.get_running_loop().time()
        if op.phase == OperationPhase.FAILED:
            op.retry_count = prior_failures if rt.timed_out else prior_failures + 1
            policy = ctx.app.spec.sync_policy.retry
            delay = (
                self.settings.controller.progressing_requeue_seconds
                if rt.timed_out
                else self.retry.next_attempt_delay(policy, op.retry_count)
            )
            rt.retry_at = loop_time + delay
        else:
            op.retry_count = prior_failures
            rt.retry_at = None
            if op.phase == OperationPhase.TERMINATED:
                rt.wake.set()
        rt.operation = op
        return op

    async def _probe(self, rt: AppRuntime, ctx: CycleContext, done: asyncio.Event) -> None:
        """
        Cancel ctx when a refresh finds a newer revision or a changed spec.

        Runs until ctx is cancelled or done is set. The done check does not
        rely on task cancellation, which wait_for can swallow when the refresh
        event fires at the same moment.
        """
        while not ctx.cancelled and not done.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(rt.refresh.wait(), self.settings.controller.poll_interval_seconds)
            if done.is_set():
                return
            rt.refresh.clear()
            latest = self.application(rt.name)
            if latest is None or latest.being_deleted:
                ctx.cancel("application is being deleted")
                return
            if latest.spec != ctx.app.spec:
                ctx.cancel("application spec changed")
                return
            try:
                checkout = await self.pipeline.renderer.resolve(latest)
            except ReconcileError as e:
                logger.debug("Revision probe failed", app=rt.name, error=str(e))
                continue
            if checkout.revision != ctx.revision:
                ctx.cancel(f"newer revision {checkout.revision}")
                return

    # =========================================================================
    # STATUS
    # =========================================================================

    def _status(
        self,
        rt: AppRuntime,
        app: Application,
        previous: ApplicationStatus,
        comparison: Comparison,
        op: OperationState | None,
    ) -> ApplicationStatus:
        current: list[Condition] = list(comparison.warnings)
        if comparison.diff.protected:
            violation = PruneProtectionViolation(
                f"{len(comparison.diff.protected)} resource(s) require pruning but carry Prune=false"
            )
            current.append(condition_for(violation))
        operation = op or rt.operation or previous.operation_state
        if operation is not None and operation.phase == OperationPhase.FAILED:
            current.append(Condition(type=rt.error_type, message=operation.message))
        if rt.exhausted and operation is not None:
            current.append(
                Condition(
                    type="RetryLimitExhausted",
                    message=(
                        f"automated sync of revision {operation.revision} failed "
                        f"{operation.retry_count} time(s); waiting for a manual sync or a new revision"
                    ),
                )
            )

        history = previous.history
        if op is not None and op.phase == OperationPhase.SUCCEEDED:
            history = append_history(history, op.revision, app.spec.source)

        return ApplicationStatus(
            sync=SyncInfo(status=comparison.sync_status, revision=comparison.revision),
            health=comparison.health,
            resources=comparison.resources,
            conditions=merge_conditions(previous.conditions, current),
            operation_state=operation,
            history=history,
            reconciled_at=utc_now(),
        )

    def _error_status(self, app: Application, previous: ApplicationStatus, error: ReconcileError) -> ApplicationStatus:
        status = previous.model_copy(deep=True)
        status.sync = SyncInfo(status=SyncStatus.UNKNOWN, revision=previous.sync.revision)
        if isinstance(error, InvalidSpecError):
            status.health = HealthInfo(status=HealthStatus.UNKNOWN, message=error.message)
        status.conditions = merge_conditions(previous.conditions, [condition_for(error)])
        status.reconciled_at = utc_now()
        return status

    async def _write(self, rt: AppRuntime, app: Application, status: ApplicationStatus) -> None:
        rt.status = status
        written = await self.status_writer.write(self.home, app, status, previous=rt.written)
        if written or rt.written is None:
            rt.written = status

    # =========================================================================
    # DELETION
    # =========================================================================

    async def _finalize(self, rt: AppRuntime, app: Application, target: Target) -> None:
        try:
            await self.cascade.delete(app, self.home, target.cluster, target.observer)
        except DeletionError as e:
            logger.warning("Cascade deletion incomplete", app=app.name, error=str(e))
            previous = rt.written or app.status
            status = previous.model_copy(deep=True)
            status.conditions = merge_conditions(previous.conditions, [condition_for(e)])
            status.reconciled_at = utc_now()
            await self._write(rt, app, status)
            rt.retry_at = asyncio.get_running_loop().time() + self.settings.controller.progressing_requeue_seconds

    # =========================================================================
    # OPERATOR ACTIONS
    # =========================================================================

    async def sync(self, name: str, prune: bool = False, dry_run: bool = False) -> OperationState | None:
        """Run a manual sync now and wait for it to finish."""
        return await self.reconcile(name, SyncRequest(manual=True, prune=prune, dry_run=dry_run))

    def request_sync(self, name: str, prune: bool = False) -> bool:
        """Queue a manual sync for the Application's loop. False if unknown."""
        if self.application(name) is None:
            return False
        rt = self._runtime(name)
        rt.request = SyncRequest(manual=True, prune=prune)
        rt.wake.set()
        return True

    def refresh(self, name: str) -> bool:
        """Re-resolve the revision and re-diff as soon as possible."""
        rt = self._apps.get(name)
        if rt is None:
            return False
        rt.refresh.set()
        rt.wake.set()
        return True

    def terminate(self, name: str) -> bool:
        """Cancel the in-flight sync, if any."""
        rt = self._apps.get(name)
        if rt is None or rt.cycle is None:
            return False
        rt.cycle.cancel("terminated by operator")
        return True

    def running(self, name: str) -> CycleContext | None:
        rt = self._apps.get(name)
        return rt.cycle if rt is not None else None

    def status_of(self, name: str) -> ApplicationStatus | None:
        """Latest computed status (also available in read-only mode)."""
        rt = self._apps.get(name)
        if rt is not None and rt.status is not None:
            return rt.status
        app = self.application(name)
        return app.status if app is not None else None

    async def diff(self, name: str) -> Comparison:
        """
        Compare an Application without syncing or writing anything.

        Raises:
            KeyError: unknown Application
            ReconcileError: gate, destination or render failure
        """
        app = self.application(name)
        if app is None:
            raise KeyError(name)
        target = await self.target(app)
        ctx = CycleContext(app=app, revision=app.status.sync.revision, cluster=target.cluster, observer=target.observer)
        return await self.pipeline.compare(ctx, self.project(app))

    async def delete(self, name: str, cascade: bool = True) -> bool:
        """
        Delete an Application object.

        With cascade the resources finalizer is added first so every managed
        resource is removed before the Application disappears; without it
        the finalizer is removed and the resources are left in place.
        """
        app = self.application(name)
        if app is None:
            return False
        finalizers = [f for f in app.metadata.finalizers if f != RESOURCES_FINALIZER]
        if cascade:
            finalizers.append(RESOURCES_FINALIZER)
        if finalizers != app.metadata.finalizers:
            await self.applier.patch(self.home, app.key, {"metadata": {"finalizers": finalizers or None}})
        logger.info("Deleting application", app=name, cascade=cascade)
        return await self.applier.delete(self.home, app.key, propagation_policy="foreground")
