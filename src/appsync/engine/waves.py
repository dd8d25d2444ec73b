# ABOUTME: Sync-wave scheduling: apply each wave, run its Sync hooks, then gate on health
# ABOUTME: Later waves start only when every gated resource of earlier waves is acceptable

"""
Wave scheduler.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Resources are grouped by their `argocd.argoproj.io/sync-wave` annotation and
processed in ascending order:

    for wave in waves:
        check cancellation
        apply the wave's Create/Update resources concurrently
        run the wave's Sync hooks
        wait until every gated resource of the wave is acceptable

The health gate covers every desired resource of the wave, including ones that
were already in sync, so a re-sync after a timeout cannot skip past a wave that
never became healthy. Resources with SkipHealthGate=true are not gated.

=============================================================================
ACCEPTABLE HEALTH
=============================================================================

A gated resource is acceptable when its health is in
`acceptable_wave_health` (Healthy by default). Degraded resources are
reported but do not hold back later waves, unless the wave requires full
health (RequireHealthy=true on one of its resources, or strict_wave_health).

If a wave is not acceptable within wave_timeout_seconds, HealthTimeout is
raised and no later wave starts. Order within one wave is not defined.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from appsync.engine.diff import DiffAction
from appsync.errors import ApplyError, HealthTimeout, MutationBlocked
from appsync.models import HealthStatus, HookType, ResultCode

if TYPE_CHECKING:
    from appsync.config import ControllerSettings
    from appsync.engine.apply import ResourceApplier
    from appsync.engine.context import CycleContext
    from appsync.engine.diff import ResourceDiff
    from appsync.engine.health import HealthEvaluator, HealthResult
    from appsync.engine.hooks import HookExecutor
    from appsync.engine.resources import Resource
    from appsync.models import ResourceKey

logger = structlog.get_logger(__name__)


@dataclass
class WavePlan:
    """What to do in each wave."""

    changes: list[ResourceDiff] = field(default_factory=list)
    resources: list[Resource] = field(default_factory=list)
    hooks: list[Resource] = field(default_factory=list)

    def waves(self) -> list[int]:
        """Waves from the first resource up to the last one with work to do."""
        active = {d.wave for d in self.changes} | {h.wave for h in self.hooks if h.hook_in(HookType.SYNC)}
        if not active:
            return []
        last = max(active)
        gated = {r.wave for r in self.resources if r.wave <= last}
        return sorted(active | gated)


@dataclass
class WaveOutcome:
    completed: list[int] = field(default_factory=list)
    health: dict[ResourceKey, HealthResult] = field(default_factory=dict)
    failed_wave: int | None = None

    @property
    def degraded(self) -> list[ResourceKey]:
        return [k for k, h in self.health.items() if h.status == HealthStatus.DEGRADED]


class WaveScheduler:
    """Applies a WavePlan wave by wave."""

    def __init__(
        self,
        applier: ResourceApplier,
        evaluator: HealthEvaluator,
        hooks: HookExecutor,
        settings: ControllerSettings,
    ) -> None:
        self._applier = applier
        self._evaluator = evaluator
        self._hooks = hooks
        self._settings = settings

    async def run(self, plan: WavePlan, ctx: CycleContext) -> WaveOutcome:
        """
        Execute the plan.

        A resource whose apply fails is recorded as SyncFailed and its wave
        stops the run (it can never become healthy); the caller treats that as
        a failed sync.

        Raises:
            HealthTimeout: a wave did not become acceptable in time
            HookFailure: a Sync hook failed
            CycleCancelled: cancelled at a wave boundary
        """
        outcome = WaveOutcome()
        for wave in plan.waves():
            ctx.check_cancelled()
            log = logger.bind(app=ctx.app.name, wave=wave)
            changes = [d for d in plan.changes if d.wave == wave]
            log.info("Starting wave", changes=len(changes))

            applied = await asyncio.gather(*(self._apply(d, ctx) for d in changes))
            if not all(applied):
                outcome.failed_wave = wave
                log.warning("Wave failed", failed=applied.count(False))
                return outcome

            await self._hooks.run_wave(
                HookType.SYNC, [h for h in plan.hooks if h.hook_in(HookType.SYNC) and h.wave == wave], ctx
            )

            gated = [r for r in plan.resources if r.wave == wave and not r.skip_health_gate]
            outcome.health.update(await self.wait_healthy(wave, gated, ctx))
            outcome.completed.append(wave)
        return outcome

    async def _apply(self, item: ResourceDiff, ctx: CycleContext) -> bool:
        if item.desired is None:
            raise ValueError(f"{item.key}: only desired resources can be applied")
        try:
            await self._applier.apply(ctx.cluster, item.desired.copy_manifest())
        except (ApplyError, MutationBlocked) as e:
            ctx.record_key(item.key, ResultCode.SYNC_FAILED, e.message, wave=item.wave)
            return False
        message = "created" if item.action == DiffAction.CREATE else "configured"
        ctx.record_key(item.key, ResultCode.SYNCED, message, wave=item.wave)
        return True

    # =========================================================================
    # HEALTH GATE
    # =========================================================================

    def _acceptable(self, result: HealthResult, strict: bool) -> bool:
        if result.status in self._settings.acceptable_wave_health:
            return True
        return result.status == HealthStatus.DEGRADED and not strict

    def evaluate(self, resources: list[Resource], ctx: CycleContext) -> dict[ResourceKey, HealthResult]:
        return {
            r.key: self._evaluator.evaluate(r.key, ctx.observer.get(r.key), r.require_health_rule)
            for r in resources
        }

    async def wait_healthy(
        self,
        wave: int,
        resources: list[Resource],
        ctx: CycleContext,
    ) -> dict[ResourceKey, HealthResult]:
        """
        Block until every resource is acceptable, polling the live cache.

        Raises:
            HealthTimeout: wave_timeout_seconds elapsed
        """
        strict = self._settings.strict_wave_health or any(r.require_healthy for r in resources)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.wave_timeout_seconds
        while True:
            ctx.check_cancelled()
            for group, kind in {r.key.group_kind for r in resources}:
                # Kinds served only after an earlier wave installed their CRD.
                await ctx.observer.ensure_watched(group, kind)
            health = self.evaluate(resources, ctx)
            pending = {k: h for k, h in health.items() if not self._acceptable(h, strict)}
            if not pending:
                for key, result in health.items():
                    if result.status == HealthStatus.DEGRADED:
                        logger.warning("Resource degraded", resource=str(key), message=result.message)
                return health
            remaining = deadline - loop.time()
            if remaining <= 0:
                first_key, first = next(iter(pending.items()))
                raise HealthTimeout(
                    f"wave {wave} not healthy after {self._settings.wave_timeout_seconds:g}s",
                    details=f"{first_key} is {first.status.value}: {first.message}".rstrip(": "),
                    wave=wave,
                )
            await ctx.observer.wait_for_change(min(remaining, self._settings.health_poll_seconds))
