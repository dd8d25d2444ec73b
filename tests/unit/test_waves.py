# ABOUTME: Unit tests for sync-wave scheduling
# ABOUTME: Tests wave ordering, health gating, SkipHealthGate, Degraded handling and apply failures

import pytest

from appsync.engine.diff import DiffEngine
from appsync.engine.resources import Resource
from appsync.engine.waves import WavePlan, WaveScheduler
from appsync.errors import ClusterAPIError, CycleCancelled, HealthTimeout
from appsync.models import HealthStatus, ResourceKey, ResultCode


def plan_for(manifests, snapshot=None):
    resources = [Resource.from_manifest(m, "web", namespaced=m["kind"] != "Namespace") for m in manifests]
    diff = DiffEngine().compare(resources, snapshot or {}, "guestbook")
    return WavePlan(
        changes=diff.changes,
        resources=[r for r in resources if not r.is_hook and not r.skipped],
        hooks=[r for r in resources if r.is_hook],
    )


def deploy_key(name):
    return ResourceKey("apps", "Deployment", "web", name)


def degrade(cluster, event):
    """Reactor: Deployments report an exceeded progress deadline."""
    if event.object["kind"] == "Deployment" and not event.object.get("status"):
        cluster.set_status(
            ResourceKey.from_manifest(event.object),
            {
                "observedGeneration": 1,
                "conditions": [{"type": "Progressing", "reason": "ProgressDeadlineExceeded", "message": "stuck"}],
            },
        )


@pytest.fixture
def fast_scheduler(applier, evaluator, hook_executor, controller_settings):
    settings = controller_settings.model_copy(update={"wave_timeout_seconds": 0.1})
    return WaveScheduler(applier, evaluator, hook_executor, settings)


@pytest.mark.unit
class TestWavePlan:
    """Tests for WavePlan.waves."""

    def test_sorted_active_waves(self, k8s):
        plan = plan_for([k8s.config_map("b", wave=2), k8s.config_map("a", wave=-1), k8s.config_map("c")])

        assert plan.waves() == [-1, 0, 2]

    def test_nothing_to_do(self):
        assert WavePlan().waves() == []

    def test_in_sync_earlier_waves_still_gated(self, k8s):
        """Test that waves before the last change are included even without changes."""
        synced = Resource.from_manifest(k8s.config_map("early", wave=-1), "web")
        plan = plan_for(
            [k8s.config_map("early", wave=-1), k8s.config_map("late", wave=1)],
            snapshot={synced.key: synced.copy_manifest()},
        )

        assert [d.key.name for d in plan.changes] == ["late"]
        assert plan.waves() == [-1, 1]


@pytest.mark.unit
class TestWaveScheduler:
    """Tests for WaveScheduler.run."""

    async def test_applies_in_wave_order(self, wave_scheduler, make_cycle, cluster, k8s):
        plan = plan_for(
            [k8s.config_map("late", wave=3), k8s.deployment("api", wave=1), k8s.namespace("web", wave=-5)]
        )
        ctx = make_cycle()

        outcome = await wave_scheduler.run(plan, ctx)

        assert outcome.completed == [-5, 1, 3]
        assert [key.name for op, key in cluster.writes] == ["web", "api", "late"]
        assert outcome.health[deploy_key("api")].status == HealthStatus.HEALTHY
        assert {r.message for r in ctx.results} == {"created"}

    async def test_update_reports_configured(self, wave_scheduler, make_cycle, cluster, k8s):
        key = ResourceKey("", "ConfigMap", "web", "cfg")
        cluster.put(k8s.config_map("cfg", namespace="web", data={"key": "old"}))
        snapshot = {key: await cluster.get(key)}
        ctx = make_cycle()

        await wave_scheduler.run(plan_for([k8s.config_map("cfg")], snapshot), ctx)

        assert ctx.results[0].message == "configured"

    async def test_unhealthy_wave_blocks_later_waves(
        self, fast_scheduler, make_cycle, bare_cluster, bare_observer, k8s
    ):
        """Test that a wave that never becomes healthy stops the run with HealthTimeout."""
        plan = plan_for([k8s.deployment("api", wave=0), k8s.config_map("after", wave=1)])
        ctx = make_cycle(live=bare_observer)

        with pytest.raises(HealthTimeout, match="wave 0 not healthy") as exc_info:
            await fast_scheduler.run(plan, ctx)

        assert exc_info.value.wave == 0
        assert "apps/Deployment/web/api is Progressing" in exc_info.value.details
        assert not bare_cluster.exists(ResourceKey("", "ConfigMap", "web", "after"))

    async def test_skip_health_gate(self, fast_scheduler, make_cycle, bare_cluster, bare_observer, k8s):
        plan = plan_for([k8s.deployment("api", wave=0, options="SkipHealthGate=true"), k8s.config_map("after", wave=1)])
        ctx = make_cycle(live=bare_observer)

        outcome = await fast_scheduler.run(plan, ctx)

        assert outcome.completed == [0, 1]
        assert bare_cluster.exists(ResourceKey("", "ConfigMap", "web", "after"))

    async def test_degraded_does_not_block(self, fast_scheduler, make_cycle, bare_cluster, bare_observer, k8s):
        bare_cluster.add_reactor(degrade)
        plan = plan_for([k8s.deployment("api", wave=0), k8s.config_map("after", wave=1)])
        ctx = make_cycle(live=bare_observer)

        outcome = await fast_scheduler.run(plan, ctx)

        assert outcome.degraded == [deploy_key("api")]
        assert outcome.completed == [0, 1]

    async def test_require_healthy_blocks_on_degraded(
        self, fast_scheduler, make_cycle, bare_cluster, bare_observer, k8s
    ):
        bare_cluster.add_reactor(degrade)
        plan = plan_for([k8s.deployment("api", wave=0, options="RequireHealthy=true"), k8s.config_map("after", wave=1)])
        ctx = make_cycle(live=bare_observer)

        with pytest.raises(HealthTimeout):
            await fast_scheduler.run(plan, ctx)

    async def test_apply_failure_stops_run(self, wave_scheduler, make_cycle, cluster, k8s):
        bad = ResourceKey("", "ConfigMap", "web", "bad")
        cluster.fail_next("apply", ClusterAPIError(422, "invalid"), key=bad)
        plan = plan_for(
            [k8s.config_map("bad", wave=0), k8s.config_map("good", wave=0), k8s.config_map("later", wave=1)]
        )
        ctx = make_cycle()

        outcome = await wave_scheduler.run(plan, ctx)

        assert outcome.failed_wave == 0
        assert [r.key.name for r in ctx.failed] == ["bad"]
        assert cluster.exists(ResourceKey("", "ConfigMap", "web", "good"))
        assert not cluster.exists(ResourceKey("", "ConfigMap", "web", "later"))

    async def test_sync_hooks_run_in_their_wave(self, wave_scheduler, make_cycle, cluster, k8s):
        plan = plan_for(
            [k8s.config_map("first", wave=0), k8s.hook_job("job", "Sync", wave=1), k8s.config_map("last", wave=2)]
        )
        ctx = make_cycle()

        await wave_scheduler.run(plan, ctx)

        assert [key.name for op, key in cluster.writes if op == "apply"] == ["first", "job", "last"]

    async def test_cancelled_at_wave_boundary(self, wave_scheduler, make_cycle, cluster, k8s):
        ctx = make_cycle()
        ctx.cancel("newer revision")

        with pytest.raises(CycleCancelled, match="newer revision"):
            await wave_scheduler.run(plan_for([k8s.config_map("a")]), ctx)
        assert cluster.writes == []

    async def test_result_codes(self, wave_scheduler, make_cycle, k8s):
        ctx = make_cycle()

        await wave_scheduler.run(plan_for([k8s.config_map("a")]), ctx)

        assert ctx.results[0].status == ResultCode.SYNCED
