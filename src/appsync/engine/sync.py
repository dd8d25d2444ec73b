# ABOUTME: One reconciliation cycle: gate, render, diff, then hooks, waves and prune
# ABOUTME: Produces the comparison (sync/health per resource) and the operation state of a sync

"""
Sync pipeline.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

SyncPipeline runs the stages of one cycle for one Application:

    compare()                               sync()
    ---------                               ------
    1. project gate (source, destination)   5. PreSync hooks
    2. render the source                    6. waves (apply, Sync hooks, health)
    3. project gate (resource kinds)        7. PostSync hooks
    4. diff against the live cache          8. prune
                                            on failure: SyncFail hooks

compare() never writes; sync() is the only stage that mutates the destination.
The controller decides between the two (automated policy, self-heal, manual
request) and writes the resulting status.

=============================================================================
FAILURE HANDLING
=============================================================================

    RBACDenied / RenderError     raised from compare(), nothing was written
    HookFailure / apply failure  operation Failed, SyncFail hooks run
    HealthTimeout                operation Failed, later waves not started,
                                 Application health Progressing
    CycleCancelled               operation Terminated
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from appsync.engine.diff import DiffAction, DiffEngine, DiffResult
from appsync.engine.health import aggregate
from appsync.engine.resources import (
    CLUSTER_SCOPED_KINDS,
    Resource,
    namespace_manifest,
    with_tracking,
)
from appsync.engine.waves import WavePlan
from appsync.errors import (
    ApplyError,
    ClusterAPIError,
    CycleCancelled,
    HealthTimeout,
    ReconcileError,
)
from appsync.models import (
    Condition,
    HealthInfo,
    HealthStatus,
    HookType,
    OperationPhase,
    OperationState,
    ResourceStatus,
    ResultCode,
    SyncResult,
    SyncResultResource,
    SyncStatus,
    group_of,
)

if TYPE_CHECKING:
    from appsync.engine.context import CycleContext
    from appsync.engine.health import HealthEvaluator
    from appsync.engine.hooks import HookExecutor
    from appsync.engine.pruner import Pruner
    from appsync.engine.rbac import ProjectGate
    from appsync.engine.render import Checkout, RenderService
    from appsync.engine.waves import WaveScheduler
    from appsync.models import AppProject

logger = structlog.get_logger(__name__)


@dataclass
class Comparison:
    """Desired versus live for one Application at one revision."""

    revision: str
    desired: list[Resource] = field(default_factory=list)
    diff: DiffResult = field(default_factory=DiffResult)
    resources: list[ResourceStatus] = field(default_factory=list)
    health: HealthInfo = field(default_factory=HealthInfo)
    warnings: list[Condition] = field(default_factory=list)

    @property
    def hooks(self) -> list[Resource]:
        return [r for r in self.desired if r.is_hook]

    @property
    def sync_status(self) -> SyncStatus:
        return SyncStatus.SYNCED if self.diff.in_sync else SyncStatus.OUT_OF_SYNC

    def needs_sync(self, prune: bool) -> bool:
        """Whether a sync would change anything (prune only counts when allowed)."""
        return bool(self.diff.changes) or (prune and bool(self.diff.prunable))


class SyncPipeline:
    """Compares and syncs one Application."""

    def __init__(
        self,
        renderer: RenderService,
        gate: ProjectGate,
        evaluator: HealthEvaluator,
        hooks: HookExecutor,
        waves: WaveScheduler,
        pruner: Pruner,
    ) -> None:
        self.renderer = renderer
        self._gate = gate
        self._evaluator = evaluator
        self._hooks = hooks
        self._waves = waves
        self._pruner = pruner

    # =========================================================================
    # COMPARE
    # =========================================================================

    async def _namespaced(self, ctx: CycleContext, group: str, kind: str) -> bool:
        try:
            return await ctx.cluster.is_namespaced(group, kind)
        except ClusterAPIError:
            # Not served yet (CRD in the same source): fall back to the known list.
            return (group, kind) not in CLUSTER_SCOPED_KINDS

    async def desired_resources(
        self,
        ctx: CycleContext,
        manifests: list[dict[str, Any]],
    ) -> list[Resource]:
        """Wrap rendered manifests, inject tracking, add the CreateNamespace resource."""
        app = ctx.app
        dest_ns = app.spec.destination.namespace
        desired: list[Resource] = []
        for manifest in manifests:
            group, kind = group_of(manifest.get("apiVersion", "")), manifest.get("kind", "")
            namespaced = await self._namespaced(ctx, group, kind)
            desired.append(
                Resource.from_manifest(with_tracking(manifest, app.name), dest_ns, namespaced=namespaced)
            )

        if app.spec.sync_policy.enabled("CreateNamespace") and dest_ns:
            if not any(r.key.group_kind == ("", "Namespace") and r.key.name == dest_ns for r in desired):
                first = min((r.wave for r in desired), default=0)
                ns = Resource.from_manifest(namespace_manifest(dest_ns), namespaced=False)
                desired.append(
                    Resource(key=ns.key, manifest=ns.manifest, wave=first - 1, options={"Prune": "false"})
                )
        return desired

    def resource_statuses(self, comparison: Comparison) -> list[ResourceStatus]:
        statuses: list[ResourceStatus] = []
        for item in comparison.diff.items:
            if item.action in (DiffAction.PRUNE, DiffAction.PRUNE_SKIPPED):
                statuses.append(
                    ResourceStatus(
                        **item.key._asdict(),
                        status=SyncStatus.OUT_OF_SYNC,
                        requires_pruning=True,
                        wave=item.wave,
                    )
                )
                continue
            desired = item.desired
            health = self._evaluator.evaluate(
                item.key, item.live, desired.require_health_rule if desired else False
            )
            statuses.append(
                ResourceStatus(
                    **item.key._asdict(),
                    status=SyncStatus.SYNCED if item.action == DiffAction.UNCHANGED else SyncStatus.OUT_OF_SYNC,
                    health=health.status,
                    health_message=health.message or None,
                    wave=item.wave,
                    diff=item.paths,
                )
            )
        return statuses

    @staticmethod
    def application_health(resources: list[ResourceStatus]) -> HealthInfo:
        relevant = [r for r in resources if r.health is not None and not r.requires_pruning]
        status = aggregate(r.health for r in relevant if r.health is not None)
        worst = next((r for r in relevant if r.health == status and status != HealthStatus.HEALTHY), None)
        message = f"{worst.key}: {worst.health_message or status.value}" if worst else ""
        return HealthInfo(status=status, message=message)

    async def compare(
        self,
        ctx: CycleContext,
        project: AppProject | None,
        checkout: Checkout | None = None,
    ) -> Comparison:
        """
        Gate, render and diff. Makes no cluster writes.

        Raises:
            RBACDenied: the project does not permit the Application
            RenderError: the source could not be rendered
        """
        app = ctx.app
        self._gate.check(app, project)
        rendered = await self.renderer.render(app, checkout)
        ctx.revision = rendered.revision
        desired = await self.desired_resources(ctx, rendered.manifests)
        self._gate.check(app, project, desired)

        kinds = {r.key.group_kind for r in desired} | {(r.group, r.kind) for r in app.status.resources}
        for group, kind in sorted(kinds):
            await ctx.observer.ensure_watched(group, kind)

        engine = DiffEngine(app.spec.ignore_differences)
        diff = engine.compare(desired, ctx.observer.snapshot(), app.name)
        comparison = Comparison(revision=rendered.revision, desired=desired, diff=diff)
        comparison.resources = self.resource_statuses(comparison)
        comparison.health = self.application_health(comparison.resources)
        for item in diff.shared:
            comparison.warnings.append(
                Condition(
                    type="SharedResourceWarning",
                    message=f"{item.key} is also tracked by application '{item.shared_with}'",
                )
            )
        ctx.desired_count = len([r for r in desired if not r.is_hook and not r.skipped])
        return comparison

    # =========================================================================
    # SYNC
    # =========================================================================

    def plan(self, comparison: Comparison) -> WavePlan:
        gated = [r for r in comparison.desired if not r.is_hook and not r.skipped]
        return WavePlan(changes=comparison.diff.changes, resources=gated, hooks=comparison.hooks)

    def dry_run(self, comparison: Comparison, ctx: CycleContext) -> OperationState:
        """Operation state describing what a sync would do, without doing it."""
        results = [
            SyncResultResource.for_key(
                d.key, ResultCode.SYNCED, message=f"would {d.action.value.lower()}", wave=d.wave
            )
            for d in comparison.diff.changes
        ]
        if ctx.prune_allowed:
            code, message = ResultCode.PRUNED, "would prune"
        else:
            code, message = ResultCode.PRUNE_SKIPPED, "ignored (requires pruning)"
        for d in comparison.diff.prunable:
            results.append(SyncResultResource.for_key(d.key, code, message=message, wave=d.wave))
        for d in comparison.diff.protected:
            results.append(
                SyncResultResource.for_key(
                    d.key, ResultCode.PRUNE_SKIPPED, message="ignored (Prune=false)", wave=d.wave
                )
            )
        for hook in comparison.hooks:
            for phase in hook.hook_types:
                results.append(
                    SyncResultResource.for_key(
                        hook.key, ResultCode.SYNCED, message="would run hook", sync_phase=phase, wave=hook.wave
                    )
                )
        return OperationState(
            phase=OperationPhase.SUCCEEDED,
            message="dry run",
            revision=comparison.revision,
            sync_result=SyncResult(revision=comparison.revision, resources=results),
        )

    async def sync(self, comparison: Comparison, ctx: CycleContext, started_at: str) -> OperationState:
        """
        Apply a comparison: hooks, waves, prune.

        Never raises for engine errors; the outcome (including failures and
        cancellation) is reported in the returned OperationState.
        """
        if ctx.request.dry_run:
            return self.dry_run(comparison, ctx)

        log = logger.bind(app=ctx.app.name, revision=comparison.revision)
        op = OperationState(
            phase=OperationPhase.RUNNING,
            revision=comparison.revision,
            started_at=started_at,
            self_heal=ctx.request.self_heal,
        )
        start = time.monotonic()
        hooks = comparison.hooks
        error: ReconcileError | None = None
        try:
            self._check_shared(comparison, ctx)
            ctx.check_cancelled()
            await self._hooks.run_phase(HookType.PRE_SYNC, hooks, ctx)
            outcome = await self._waves.run(self.plan(comparison), ctx)
            if outcome.failed_wave is not None:
                raise ApplyError(
                    f"one or more resources failed to sync in wave {outcome.failed_wave}",
                    details="; ".join(r.message for r in ctx.failed),
                )
            ctx.check_cancelled()
            await self._hooks.run_phase(HookType.POST_SYNC, hooks, ctx)
            ctx.check_cancelled()
            pruned = await self._pruner.prune(comparison.diff.prunable, comparison.diff.protected, ctx)
            if pruned.failed:
                raise ApplyError(f"failed to prune {len(pruned.failed)} resource(s)")
        except CycleCancelled as e:
            op.phase = OperationPhase.TERMINATED
            op.message = e.message
            error = e
        except HealthTimeout as e:
            op.phase = OperationPhase.FAILED
            op.message = str(e)
            error = e
        except ReconcileError as e:
            op.phase = OperationPhase.FAILED
            op.message = str(e)
            error = e
            await self._run_sync_fail(hooks, ctx)
        else:
            op.phase = OperationPhase.SUCCEEDED
            op.message = "successfully synced"
            if any(r.status == ResultCode.PRUNE_SKIPPED for r in ctx.results):
                op.message += " (some resources require pruning)"

        ctx.error = error
        op.sync_result = SyncResult(revision=comparison.revision, resources=list(ctx.results))
        op.completed_hooks = sorted(ctx.completed_hooks)
        log.info(
            "Sync finished",
            phase=op.phase.value,
            duration=round(time.monotonic() - start, 3),
            error=str(error) if error else None,
        )
        return op

    def _check_shared(self, comparison: Comparison, ctx: CycleContext) -> None:
        if not ctx.app.spec.sync_policy.enabled("FailOnSharedResource"):
            return
        for item in comparison.diff.shared:
            ctx.record_key(item.key, ResultCode.SYNC_FAILED, f"shared with application '{item.shared_with}'")
        if comparison.diff.shared:
            first = comparison.diff.shared[0]
            raise ApplyError(
                f"resource is already managed by application '{first.shared_with}'",
                resource=first.key,
            )

    async def _run_sync_fail(self, hooks: list[Resource], ctx: CycleContext) -> None:
        if not any(h.hook_in(HookType.SYNC_FAIL) for h in hooks) or ctx.cancelled:
            return
        try:
            await self._hooks.run_phase(HookType.SYNC_FAIL, hooks, ctx)
        except ReconcileError as e:
            logger.warning("SyncFail hook failed", app=ctx.app.name, error=str(e))
