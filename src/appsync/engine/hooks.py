# ABOUTME: Lifecycle hook execution for the PreSync, Sync, PostSync and SyncFail phases
# ABOUTME: Creates hook resources, waits for completion and applies their deletion policies

"""
Hook executor.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

A hook is a resource carrying `argocd.argoproj.io/hook`. It is not part of the
desired state: it is created when its phase runs, waited for, and deleted
according to its `hook-delete-policy`. Hooks are never diffed and never pruned.

    PreSync   before the first wave
    Sync      interleaved with the waves, in their own wave
    PostSync  after every wave is healthy
    SyncFail  after the sync failed

Within a phase hooks run in wave order; hooks of the same wave run concurrently.

=============================================================================
COMPLETION
=============================================================================

    Job   Complete condition -> succeeded      Failed condition -> failed
    Pod   phase Succeeded    -> succeeded      phase Failed     -> failed
    other Healthy            -> succeeded      Degraded         -> failed

A hook that does not finish within hook_timeout_seconds raises HealthTimeout
(non-fatal). A failed hook raises HookFailure (fatal: SyncFail hooks run).

=============================================================================
ONCE PER REVISION
=============================================================================

Every succeeded hook is recorded as "<phase>:<resource>" together with the
revision in the operation state. Automated cycles at the same revision skip
recorded hooks; manual syncs and RerunHooksOnSelfHeal=true run them again.
A hook still running from an earlier cycle at the same revision is waited for
instead of being recreated.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import structlog

from appsync.engine.resources import with_tracking
from appsync.errors import ApplyError, HealthTimeout, HookFailure, MutationBlocked
from appsync.models import HealthStatus, HookDeletePolicy, HookType, ResultCode

if TYPE_CHECKING:
    from collections.abc import Iterable

    from appsync.config import ControllerSettings
    from appsync.engine.apply import ResourceApplier
    from appsync.engine.context import CycleContext
    from appsync.engine.health import HealthEvaluator
    from appsync.engine.resources import Resource
    from appsync.models import ResourceKey

logger = structlog.get_logger(__name__)

ANNOTATION_HOOK_REVISION = "appsync.io/hook-revision"

SUCCEEDED = "Succeeded"
FAILED = "Failed"
RUNNING = "Running"


def hook_id(phase: HookType, key: ResourceKey) -> str:
    return f"{phase.value}:{key}"


def _condition_true(obj: dict[str, Any], type_: str) -> dict[str, Any] | None:
    for cond in (obj.get("status") or {}).get("conditions") or []:
        if cond.get("type") == type_ and cond.get("status") == "True":
            return cond
    return None


class HookExecutor:
    """Runs the hooks of one lifecycle phase."""

    def __init__(
        self,
        applier: ResourceApplier,
        evaluator: HealthEvaluator,
        settings: ControllerSettings,
    ) -> None:
        self._applier = applier
        self._evaluator = evaluator
        self._settings = settings

    # =========================================================================
    # COMPLETION STATE
    # =========================================================================

    def hook_state(self, key: ResourceKey, live: dict[str, Any] | None) -> tuple[str, str]:
        """(Running|Succeeded|Failed, message) for a live hook object."""
        if live is None:
            return RUNNING, "waiting for hook to be created"
        if key.kind == "Job" and key.group == "batch":
            if _condition_true(live, "Complete"):
                return SUCCEEDED, "job completed"
            failed = _condition_true(live, "Failed")
            if failed:
                return FAILED, failed.get("message") or failed.get("reason") or "job failed"
            return RUNNING, "job running"
        if key.kind == "Pod" and key.group == "":
            status = live.get("status") or {}
            phase = status.get("phase")
            if phase == "Succeeded":
                return SUCCEEDED, "pod succeeded"
            if phase == "Failed":
                return FAILED, status.get("message") or status.get("reason") or "pod failed"
            return RUNNING, f"pod {phase or 'Pending'}"
        health = self._evaluator.evaluate(key, live)
        if health.status == HealthStatus.HEALTHY:
            return SUCCEEDED, health.message
        if health.status == HealthStatus.DEGRADED:
            return FAILED, health.message
        return RUNNING, health.message

    # =========================================================================
    # PHASES
    # =========================================================================

    async def run_phase(self, phase: HookType, hooks: Iterable[Resource], ctx: CycleContext) -> None:
        """
        Run every hook of `phase`, wave by wave.

        Raises:
            HookFailure: a hook failed (remaining hooks of the phase are skipped)
            HealthTimeout: a hook did not finish in time
            CycleCancelled: the cycle was cancelled between waves
        """
        selected = [h for h in hooks if h.hook_in(phase)]
        for wave in sorted({h.wave for h in selected}):
            ctx.check_cancelled()
            await self.run_wave(phase, [h for h in selected if h.wave == wave], ctx)

    async def run_wave(self, phase: HookType, hooks: list[Resource], ctx: CycleContext) -> None:
        """Run hooks of one wave concurrently and wait for all of them."""
        if not hooks:
            return
        outcomes = await asyncio.gather(
            *(self._run_one(phase, hook, ctx) for hook in hooks), return_exceptions=True
        )
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        # HookFailure outranks timeouts: a failed hook makes the sync fail.
        for error in errors:
            if isinstance(error, HookFailure):
                raise error
        for error in errors:
            raise error

    async def _run_one(self, phase: HookType, hook: Resource, ctx: CycleContext) -> None:
        ident = hook_id(phase, hook.key)
        log = logger.bind(hook=str(hook.key), phase=phase.value)
        if ident in ctx.completed_hooks and not ctx.rerun_hooks:
            log.debug("Hook already completed at this revision")
            ctx.record_key(hook.key, ResultCode.SKIPPED, "already completed", sync_phase=phase, wave=hook.wave)
            return

        await ctx.observer.ensure_watched(hook.key.group, hook.key.kind)
        live = ctx.observer.get(hook.key)
        if live is not None and not self._resume(hook, live, ctx):
            await self._delete(hook, ctx, "recreating hook", strict=True)
            await self._wait_gone(hook, ctx)
            live = None
        if live is None:
            manifest = with_tracking(hook.manifest, ctx.app.name)
            manifest["metadata"].setdefault("annotations", {})[ANNOTATION_HOOK_REVISION] = ctx.revision
            try:
                await self._applier.apply(ctx.cluster, manifest)
            except (ApplyError, MutationBlocked) as e:
                ctx.record_key(hook.key, ResultCode.SYNC_FAILED, str(e), sync_phase=phase, hook_phase=FAILED)
                raise HookFailure(
                    f"{phase.value} hook could not be created", details=e.message, resource=hook.key
                ) from e
            log.info("Hook created")

        state, message = await self._wait(phase, hook, ctx)
        if state == SUCCEEDED:
            ctx.completed_hooks.add(ident)
            ctx.record_key(hook.key, ResultCode.SYNCED, message, sync_phase=phase, hook_phase=SUCCEEDED, wave=hook.wave)
            log.info("Hook succeeded")
            if HookDeletePolicy.HOOK_SUCCEEDED in hook.delete_policies:
                await self._delete(hook, ctx, "hook succeeded")
            return

        ctx.record_key(hook.key, ResultCode.SYNC_FAILED, message, sync_phase=phase, hook_phase=FAILED, wave=hook.wave)
        log.warning("Hook failed", message=message)
        if HookDeletePolicy.HOOK_FAILED in hook.delete_policies:
            await self._delete(hook, ctx, "hook failed")
        raise HookFailure(f"{phase.value} hook failed", details=message, resource=hook.key)

    def _resume(self, hook: Resource, live: dict[str, Any], ctx: CycleContext) -> bool:
        """A hook from an earlier cycle at this revision that is still running is reused."""
        annotations = (live.get("metadata") or {}).get("annotations") or {}
        if annotations.get(ANNOTATION_HOOK_REVISION) != ctx.revision:
            return False
        if (live.get("metadata") or {}).get("deletionTimestamp"):
            return False
        state, _ = self.hook_state(hook.key, live)
        return state == RUNNING

    async def _wait(self, phase: HookType, hook: Resource, ctx: CycleContext) -> tuple[str, str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.hook_timeout_seconds
        while True:
            ctx.check_cancelled()
            state, message = self.hook_state(hook.key, ctx.observer.get(hook.key))
            if state != RUNNING:
                return state, message
            remaining = deadline - loop.time()
            if remaining <= 0:
                ctx.record_key(hook.key, ResultCode.SYNC_FAILED, "timed out", sync_phase=phase, hook_phase=RUNNING)
                raise HealthTimeout(
                    f"hook did not finish within {self._settings.hook_timeout_seconds:g}s",
                    details=message,
                    resource=hook.key,
                    wave=hook.wave,
                )
            await ctx.observer.wait_for_change(min(remaining, self._settings.health_poll_seconds))

    async def _wait_gone(self, hook: Resource, ctx: CycleContext) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.hook_timeout_seconds
        while ctx.observer.get(hook.key) is not None:
            ctx.check_cancelled()
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise HealthTimeout("previous hook instance was not deleted in time", resource=hook.key)
            await ctx.observer.wait_for_change(min(remaining, self._settings.health_poll_seconds))

    async def _delete(self, hook: Resource, ctx: CycleContext, reason: str, strict: bool = False) -> None:
        try:
            await self._applier.delete(ctx.cluster, hook.key, propagation_policy="background")
        except (ApplyError, MutationBlocked) as e:
            if strict:
                raise HookFailure(
                    "previous hook instance could not be deleted", details=e.message, resource=hook.key
                ) from e
            logger.warning("Hook deletion failed", hook=str(hook.key), reason=reason, error=str(e))
