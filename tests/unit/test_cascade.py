# ABOUTME: Unit tests for cascade deletion of an Application's resources
# ABOUTME: Tests child-first ordering, Delete=false orphaning, finalizer release and timeouts

import pytest

from appsync.engine.cascade import CascadeDeleter
from appsync.engine.resources import LABEL_TRACKING, with_tracking
from appsync.errors import ClusterAPIError, DeletionError
from appsync.models import RESOURCES_FINALIZER, Application, ResourceKey, ResourceStatus


@pytest.fixture
def deleter(applier, controller_settings):
    return CascadeDeleter(applier, controller_settings)


def app_being_deleted(cluster, k8s, finalizers=None, resources=()):
    """Store a guestbook Application with a deletionTimestamp and return its model."""
    manifest = k8s.application("guestbook", "/repo", "guestbook", dest_namespace="web", finalizers=finalizers)
    manifest["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"
    manifest["status"] = {"resources": [r.dump() for r in resources]}
    return Application.from_manifest(cluster.put(manifest))


def status_of(key):
    return ResourceStatus(group=key.group, kind=key.kind, namespace=key.namespace, name=key.name)


def tracked(cluster, manifest, app="guestbook"):
    live = cluster.put(with_tracking(manifest, app))
    return ResourceKey.from_manifest(live)


@pytest.mark.unit
class TestCascadeDeleter:
    """Tests for CascadeDeleter.delete."""

    async def test_without_finalizer_nothing_deleted(self, deleter, cluster, observer, k8s):
        key = tracked(cluster, k8s.config_map("cfg", namespace="web"))
        app = app_being_deleted(cluster, k8s, resources=[status_of(key)])

        outcome = await deleter.delete(app, cluster, cluster, observer)

        assert outcome.released
        assert outcome.deleted == []
        assert cluster.exists(key)
        assert cluster.writes == []

    async def test_deletes_tracked_resources_and_releases(
        self, deleter, cluster, observer, k8s, cascade_finalizers
    ):
        cm = tracked(cluster, k8s.config_map("cfg", namespace="web"))
        deploy = tracked(cluster, k8s.deployment("api", namespace="web"))
        foreign = tracked(cluster, k8s.config_map("other", namespace="web"), app="someone-else")
        app = app_being_deleted(
            cluster, k8s, finalizers=cascade_finalizers, resources=[status_of(cm), status_of(deploy)]
        )

        outcome = await deleter.delete(app, cluster, cluster, observer)

        assert sorted(k.name for k in outcome.deleted) == ["api", "cfg"]
        assert not cluster.exists(cm)
        assert not cluster.exists(deploy)
        assert cluster.exists(foreign)
        assert not cluster.exists(app.key)
        assert ("patch", app.key) in cluster.writes

    async def test_keeps_other_finalizers(self, deleter, cluster, observer, k8s):
        app = app_being_deleted(cluster, k8s, finalizers=[RESOURCES_FINALIZER, "example.com/keep"])

        await deleter.delete(app, cluster, cluster, observer)

        live = await cluster.get(app.key)
        assert live["metadata"]["finalizers"] == ["example.com/keep"]

    async def test_delete_false_orphans(self, deleter, cluster, observer, k8s, cascade_finalizers):
        """Test that Delete=false resources lose their tracking label and stay."""
        key = tracked(cluster, k8s.config_map("keep", namespace="web", options="Delete=false"))
        app = app_being_deleted(cluster, k8s, finalizers=cascade_finalizers, resources=[status_of(key)])

        outcome = await deleter.delete(app, cluster, cluster, observer)

        assert outcome.orphaned == [key]
        live = await cluster.get(key)
        assert LABEL_TRACKING not in live["metadata"].get("labels", {})

    async def test_child_applications_first(self, deleter, cluster, observer, k8s, cascade_finalizers):
        child = tracked(cluster, k8s.application("child", "/repo", "child"))
        cm = tracked(cluster, k8s.config_map("cfg", namespace="web"))
        app = app_being_deleted(
            cluster, k8s, finalizers=cascade_finalizers, resources=[status_of(child), status_of(cm)]
        )

        await deleter.delete(app, cluster, cluster, observer)

        deletes = [key.name for op, key in cluster.writes if op == "delete"]
        assert deletes == ["child", "cfg"]

    async def test_resource_that_never_goes_away(self, deleter, cluster, observer, k8s, cascade_finalizers):
        """Test that a resource stuck on its own finalizer keeps the Application's finalizer."""
        manifest = k8s.config_map("stuck", namespace="web")
        manifest["metadata"]["finalizers"] = ["example.com/never"]
        key = tracked(cluster, manifest)
        app = app_being_deleted(cluster, k8s, finalizers=cascade_finalizers, resources=[status_of(key)])

        with pytest.raises(DeletionError, match="still present") as exc_info:
            await deleter.delete(app, cluster, cluster, observer)

        assert exc_info.value.resource == key
        live_app = await cluster.get(app.key)
        assert live_app["metadata"]["finalizers"] == cascade_finalizers

    async def test_delete_rejected(self, deleter, cluster, observer, k8s, cascade_finalizers):
        key = tracked(cluster, k8s.config_map("cfg", namespace="web"))
        cluster.fail_next("delete", ClusterAPIError(403, "forbidden"), key=key)
        app = app_being_deleted(cluster, k8s, finalizers=cascade_finalizers, resources=[status_of(key)])

        with pytest.raises(DeletionError, match="failed to delete managed resource"):
            await deleter.delete(app, cluster, cluster, observer)

    async def test_application_already_gone(self, deleter, cluster, observer, k8s, cascade_finalizers):
        app = app_being_deleted(cluster, k8s, finalizers=cascade_finalizers)
        cluster.fail_next("patch", ClusterAPIError(404, "not found"), key=app.key)

        outcome = await deleter.delete(app, cluster, cluster, observer)

        assert outcome.released
