# ABOUTME: Unit tests for the appsync MCP server module
# ABOUTME: Tests MCP tools against a real controller on an in-memory cluster, plus safety integration

"""Unit tests for server.py covering all MCP tools and safety integration."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from appsync import server
from appsync.cluster.memory import InMemoryCluster
from appsync.config import SecuritySettings, ServerSettings
from appsync.engine.controller import ApplicationController
from appsync.models import APPLICATION_GROUP, APPLICATION_KIND, RESOURCES_FINALIZER, ResourceKey
from appsync.utils.logging import AuditLogger
from appsync.utils.safety import MASK, SafetyGuard

CONFIG_KEY = ResourceKey("", "ConfigMap", "default", "web-config")
APP_KEY = ResourceKey(APPLICATION_GROUP, APPLICATION_KIND, "argocd", "guestbook")


@pytest.fixture
async def guestbook(
    controller: ApplicationController,
    cluster: InMemoryCluster,
    source: Any,
    k8s: Any,
    mock_server_settings: ServerSettings,
    safety_guard: SafetyGuard,
) -> AsyncIterator[ApplicationController]:
    """Controller tracking one manual-sync Application, wired into the server globals."""
    source.write("guestbook/config.yaml", k8s.config_map("web-config"))
    cluster.put(k8s.application("guestbook", source.url, "guestbook"))
    await controller.start(loops=False)
    with patch.multiple(
        server,
        _controller=controller,
        _settings=mock_server_settings,
        _safety_guard=safety_guard,
        _audit_logger=AuditLogger(),
    ):
        yield controller


@pytest.fixture
def read_only(read_only_safety_guard: SafetyGuard) -> Any:
    return patch.object(server, "_safety_guard", read_only_safety_guard)


async def synced(controller: ApplicationController) -> None:
    op = await controller.sync("guestbook")
    assert op is not None
    assert op.phase.value == "Succeeded"


@pytest.mark.unit
class TestServerHelpers:
    """Tests for the global accessors."""

    def test_get_controller_uninitialized_raises(self):
        """Test that tools fail loudly before the lifespan ran."""
        with patch.object(server, "_controller", None), pytest.raises(RuntimeError, match="not initialized"):
            server.get_controller()

    def test_get_settings_uninitialized_raises(self):
        """Test get_settings before initialization."""
        with patch.object(server, "_settings", None), pytest.raises(RuntimeError):
            server.get_settings()

    def test_get_safety_guard_returns_guard(self, safety_guard: SafetyGuard):
        """Test get_safety_guard returns the configured guard."""
        with patch.object(server, "_safety_guard", safety_guard):
            assert server.get_safety_guard() is safety_guard

    def test_get_audit_logger_uninitialized_raises(self):
        """Test get_audit_logger before initialization."""
        with patch.object(server, "_audit_logger", None), pytest.raises(RuntimeError):
            server.get_audit_logger()

    def test_value_at(self):
        """Test JSON pointer lookup used for diff values."""
        obj = {"spec": {"containers": [{"image": "nginx"}]}, "data": {"a/b": "x"}}

        assert server._value_at(obj, "/spec/containers/0/image") == "nginx"
        assert server._value_at(obj, "/data/a~1b") == "x"
        assert server._value_at(obj, "/spec/missing") is None
        assert server._value_at(obj, "/spec/containers/5") is None


@pytest.mark.unit
class TestListApplicationsTool:
    """Tests for list_applications tool."""

    async def test_lists_tracked_applications(self, guestbook, mock_context: MagicMock):
        """Test that every Application in the controller namespace is listed."""
        result = await server.list_applications(server.ListApplicationsParams(), mock_context)

        assert "Found 1 application(s):" in result
        assert "guestbook [default]" in result
        assert "dest=default@https://kubernetes.default.svc" in result

    async def test_filters_by_project(self, guestbook, mock_context: MagicMock):
        """Test filtering by project name."""
        result = await server.list_applications(server.ListApplicationsParams(project="other"), mock_context)

        assert result == "No applications found matching the specified filters."

    async def test_filters_by_health_after_sync(self, guestbook, mock_context: MagicMock):
        """Test that health filters use the status computed by the controller."""
        before = await server.list_applications(
            server.ListApplicationsParams(health_status="Healthy"), mock_context
        )
        await synced(guestbook)
        after = await server.list_applications(
            server.ListApplicationsParams(health_status="Healthy", sync_status="Synced"), mock_context
        )

        assert "No applications found" in before
        assert "Found 1 application(s):" in after
        assert "health=Healthy [OK]" in after

    async def test_read_rate_limit(self, guestbook, mock_context: MagicMock):
        """Test that status queries are rate limited."""
        guard = SafetyGuard(SecuritySettings(rate_limit_calls=1, rate_limit_window=60))
        with patch.object(server, "_safety_guard", guard):
            await server.list_applications(server.ListApplicationsParams(), mock_context)
            result = await server.list_applications(server.ListApplicationsParams(), mock_context)

        assert "OPERATION BLOCKED" in result


@pytest.mark.unit
class TestGetApplicationTool:
    """Tests for get_application tool."""

    async def test_shows_source_destination_and_policy(self, guestbook, source, mock_context: MagicMock):
        """Test the detail view of an Application."""
        result = await server.get_application(server.GetApplicationParams(name="guestbook"), mock_context)

        assert "Application: guestbook" in result
        assert f"Repository: {source.url}" in result
        assert "Path: guestbook" in result
        assert "Target Revision: HEAD" in result
        assert "Automated: False" in result

    async def test_shows_last_operation(self, guestbook, mock_context: MagicMock):
        """Test that the last sync and its resources are shown."""
        await synced(guestbook)

        result = await server.get_application(server.GetApplicationParams(name="guestbook"), mock_context)

        assert "Last Operation:" in result
        assert "Phase: Succeeded" in result
        assert "ConfigMap/default/web-config wave=0 Synced: created" in result

    async def test_not_found(self, guestbook, mock_context: MagicMock):
        """Test unknown Application name."""
        result = await server.get_application(server.GetApplicationParams(name="missing"), mock_context)

        assert result == "Application 'missing' not found in namespace 'argocd'"


@pytest.mark.unit
class TestGetApplicationStatusTool:
    """Tests for get_application_status tool."""

    async def test_status_before_first_cycle(self, guestbook, mock_context: MagicMock):
        """Test that an unreconciled Application reports Unknown."""
        result = await server.get_application_status(
            server.GetApplicationStatusParams(name="guestbook"), mock_context
        )

        assert "Health: Unknown [!]" in result
        assert "Sync: Unknown [!]" in result

    async def test_status_after_sync(self, guestbook, mock_context: MagicMock):
        """Test healthy and synced status after a successful sync."""
        await synced(guestbook)

        result = await server.get_application_status(
            server.GetApplicationStatusParams(name="guestbook"), mock_context
        )

        assert "Health: Healthy [OK]" in result
        assert "Sync: Synced [OK]" in result
        assert "Operation: Succeeded" in result

    async def test_not_found(self, guestbook, mock_context: MagicMock):
        """Test unknown Application name."""
        result = await server.get_application_status(
            server.GetApplicationStatusParams(name="missing"), mock_context
        )

        assert "not found" in result


@pytest.mark.unit
class TestGetApplicationDiffTool:
    """Tests for get_application_diff tool."""

    async def test_diff_lists_creations(self, guestbook, cluster: InMemoryCluster, mock_context: MagicMock):
        """Test that resources missing from the cluster are listed for creation."""
        result = await server.get_application_diff(
            server.GetApplicationDiffParams(name="guestbook"), mock_context
        )

        assert "Diff for application 'guestbook'" in result
        assert "Resources to CREATE (1):" in result
        assert "+ ConfigMap/default/web-config (wave 0)" in result
        assert "Resources in sync: 0" in result
        assert cluster.writes == []
        assert mock_context.report_progress.await_count == 3

    async def test_diff_in_sync(self, guestbook, mock_context: MagicMock):
        """Test diff output for a fully synced Application."""
        await synced(guestbook)

        result = await server.get_application_diff(
            server.GetApplicationDiffParams(name="guestbook"), mock_context
        )

        assert "Resources in sync: 1" in result
        assert "Application is fully synced. No changes needed." in result

    async def test_diff_shows_drifted_values(
        self,
        guestbook,
        cluster: InMemoryCluster,
        eventually: Callable[..., Awaitable[None]],
        mock_context: MagicMock,
    ):
        """Test that show_values prints live and desired values of changed fields."""
        await synced(guestbook)
        cluster.edit(CONFIG_KEY, lambda obj: obj["data"].update(key="drifted"))
        observer = await guestbook.observer("in-cluster")
        await eventually(lambda: observer.get(CONFIG_KEY)["data"]["key"] == "drifted")

        result = await server.get_application_diff(
            server.GetApplicationDiffParams(name="guestbook", show_values=True), mock_context
        )

        assert "Resources to UPDATE (1):" in result
        assert "/data/key: 'drifted' -> 'value'" in result

    async def test_diff_masks_secret_values(
        self,
        guestbook,
        cluster: InMemoryCluster,
        source,
        eventually: Callable[..., Awaitable[None]],
        mock_context: MagicMock,
    ):
        """Test that Secret values never appear in diff output."""
        secret_key = ResourceKey("", "Secret", "default", "db")
        source.write(
            "guestbook/secret.yaml",
            {"apiVersion": "v1", "kind": "Secret", "metadata": {"name": "db"}, "data": {"password": "c2VjcmV0"}},
        )
        await synced(guestbook)
        cluster.edit(secret_key, lambda obj: obj["data"].update(password="b2xk"))
        observer = await guestbook.observer("in-cluster")
        await eventually(lambda: observer.get(secret_key)["data"]["password"] == "b2xk")

        result = await server.get_application_diff(
            server.GetApplicationDiffParams(name="guestbook", show_values=True), mock_context
        )

        assert f"/data/password: {MASK!r} -> {MASK!r}" in result
        assert "c2VjcmV0" not in result
        assert "b2xk" not in result

    async def test_diff_render_error(self, guestbook, source, mock_context: MagicMock):
        """Test that render failures are reported instead of raised."""
        (source.root / "guestbook" / "broken.yaml").write_text("kind: [unclosed\n")

        result = await server.get_application_diff(
            server.GetApplicationDiffParams(name="guestbook"), mock_context
        )

        assert "failed to parse broken.yaml" in result

    async def test_diff_not_found(self, guestbook, mock_context: MagicMock):
        """Test unknown Application name."""
        result = await server.get_application_diff(
            server.GetApplicationDiffParams(name="missing"), mock_context
        )

        assert "not found" in result


@pytest.mark.unit
class TestGetResourceHealthTool:
    """Tests for get_resource_health tool."""

    async def test_lists_resources(self, guestbook, mock_context: MagicMock):
        """Test per-resource sync and health after a sync."""
        await synced(guestbook)

        result = await server.get_resource_health(server.GetResourceHealthParams(name="guestbook"), mock_context)

        assert "Resources of 'guestbook' (health Healthy):" in result
        assert "ConfigMap/default/web-config sync=Synced health=Healthy" in result

    async def test_unhealthy_only(self, guestbook, mock_context: MagicMock):
        """Test that healthy resources are filtered out."""
        await synced(guestbook)

        result = await server.get_resource_health(
            server.GetResourceHealthParams(name="guestbook", unhealthy_only=True), mock_context
        )

        assert result == "No matching resources for application 'guestbook'"


@pytest.mark.unit
class TestGetApplicationHistoryTool:
    """Tests for get_application_history tool."""

    async def test_empty_history(self, guestbook, mock_context: MagicMock):
        """Test an Application that was never synced."""
        result = await server.get_application_history(
            server.GetApplicationHistoryParams(name="guestbook"), mock_context
        )

        assert result == "No deployment history found for application 'guestbook'"

    async def test_history_after_sync(self, guestbook, mock_context: MagicMock):
        """Test that a successful sync is recorded."""
        await synced(guestbook)
        revision = guestbook.status_of("guestbook").sync.revision

        result = await server.get_application_history(
            server.GetApplicationHistoryParams(name="guestbook"), mock_context
        )

        assert "(last 1 entries)" in result
        assert f"0. [{revision[:12]}]" in result


@pytest.mark.unit
class TestSyncApplicationTool:
    """Tests for sync_application tool."""

    async def test_dry_run_by_default(self, guestbook, cluster: InMemoryCluster, mock_context: MagicMock):
        """Test that the default sync is a dry run with no writes."""
        result = await server.sync_application(server.SyncApplicationParams(name="guestbook"), mock_context)

        assert "Dry-run sync for 'guestbook'" in result
        assert "would create" in result
        assert "sync_application(name='guestbook', dry_run=false)" in result
        assert cluster.writes == []

    async def test_sync_applies_and_waits(self, guestbook, cluster: InMemoryCluster, mock_context: MagicMock):
        """Test a real sync reports its final phase."""
        result = await server.sync_application(
            server.SyncApplicationParams(name="guestbook", dry_run=False), mock_context
        )

        assert "Sync of 'guestbook' finished: Succeeded" in result
        assert cluster.exists(CONFIG_KEY)

    async def test_sync_without_wait_queues_request(self, guestbook, mock_context: MagicMock):
        """Test that wait=false only queues the sync."""
        result = await server.sync_application(
            server.SyncApplicationParams(name="guestbook", dry_run=False, wait=False), mock_context
        )

        assert "Sync initiated for 'guestbook'" in result
        assert guestbook._apps["guestbook"].request is not None

    async def test_prune_requires_confirmation(self, guestbook, cluster: InMemoryCluster, mock_context: MagicMock):
        """Test that a pruning sync needs confirm and confirm_name."""
        result = await server.sync_application(
            server.SyncApplicationParams(name="guestbook", dry_run=False, prune=True), mock_context
        )

        assert "CONFIRMATION REQUIRED" in result
        assert "Preview deletions first" in result
        assert cluster.writes == []

    async def test_prune_with_confirmation(self, guestbook, mock_context: MagicMock):
        """Test that a confirmed pruning sync runs."""
        result = await server.sync_application(
            server.SyncApplicationParams(
                name="guestbook", dry_run=False, prune=True, confirm=True, confirm_name="guestbook"
            ),
            mock_context,
        )

        assert "finished: Succeeded" in result

    async def test_blocked_in_read_only(self, guestbook, read_only, mock_context: MagicMock):
        """Test that read-only mode blocks real syncs but not dry runs."""
        with read_only:
            blocked = await server.sync_application(
                server.SyncApplicationParams(name="guestbook", dry_run=False), mock_context
            )
            preview = await server.sync_application(server.SyncApplicationParams(name="guestbook"), mock_context)

        assert "OPERATION BLOCKED" in blocked
        assert "Dry-run sync for 'guestbook'" in preview

    async def test_not_found(self, guestbook, mock_context: MagicMock):
        """Test unknown Application name."""
        result = await server.sync_application(server.SyncApplicationParams(name="missing"), mock_context)

        assert "not found" in result


@pytest.mark.unit
class TestRefreshApplicationTool:
    """Tests for refresh_application tool."""

    async def test_refresh_requested(self, guestbook, mock_context: MagicMock):
        """Test that a refresh wakes the Application's loop."""
        result = await server.refresh_application(server.RefreshApplicationParams(name="guestbook"), mock_context)

        assert result == "Refresh requested for 'guestbook'"
        assert guestbook._apps["guestbook"].refresh.is_set()

    async def test_refresh_unknown(self, guestbook, mock_context: MagicMock):
        """Test refreshing an unknown Application."""
        result = await server.refresh_application(server.RefreshApplicationParams(name="missing"), mock_context)

        assert "not found" in result

    async def test_blocked_in_read_only(self, guestbook, read_only, mock_context: MagicMock):
        """Test that refresh counts as a write operation."""
        with read_only:
            result = await server.refresh_application(
                server.RefreshApplicationParams(name="guestbook"), mock_context
            )

        assert "OPERATION BLOCKED" in result


@pytest.mark.unit
class TestTerminateSyncTool:
    """Tests for terminate_sync tool."""

    async def test_no_running_sync(self, guestbook, mock_context: MagicMock):
        """Test terminating when nothing runs."""
        result = await server.terminate_sync(server.TerminateSyncParams(name="guestbook"), mock_context)

        assert result == "No sync operation is running for 'guestbook'"

    async def test_terminates_running_cycle(self, guestbook, mock_context: MagicMock):
        """Test that a running cycle is cancelled."""
        rt = guestbook._apps["guestbook"]
        cycle = MagicMock()
        rt.cycle = cycle

        result = await server.terminate_sync(server.TerminateSyncParams(name="guestbook"), mock_context)

        assert "Sync operation terminated for 'guestbook'" in result
        cycle.cancel.assert_called_once_with("terminated by operator")
        rt.cycle = None


@pytest.mark.unit
class TestDeleteApplicationTool:
    """Tests for delete_application tool."""

    async def test_requires_confirmation(self, guestbook, cluster: InMemoryCluster, mock_context: MagicMock):
        """Test that deletion without confirmation describes the impact."""
        result = await server.delete_application(server.DeleteApplicationParams(name="guestbook"), mock_context)

        assert "CONFIRMATION REQUIRED" in result
        assert "cascade: True" in result
        assert "DELETE cluster resources" in result
        assert cluster.exists(APP_KEY)

    async def test_wrong_confirm_name(self, guestbook, cluster: InMemoryCluster, mock_context: MagicMock):
        """Test that a mismatched name does not delete."""
        result = await server.delete_application(
            server.DeleteApplicationParams(name="guestbook", confirm=True, confirm_name="other"), mock_context
        )

        assert "CONFIRMATION REQUIRED" in result
        assert cluster.exists(APP_KEY)

    async def test_delete_without_cascade(self, guestbook, cluster: InMemoryCluster, mock_context: MagicMock):
        """Test that a non-cascading delete removes only the Application."""
        await synced(guestbook)

        result = await server.delete_application(
            server.DeleteApplicationParams(name="guestbook", cascade=False, confirm=True, confirm_name="guestbook"),
            mock_context,
        )

        assert result == "Application 'guestbook' deleted. Managed resources were left in place."
        assert not cluster.exists(APP_KEY)
        assert cluster.exists(CONFIG_KEY)

    async def test_delete_with_cascade_adds_finalizer(
        self, guestbook, cluster: InMemoryCluster, mock_context: MagicMock
    ):
        """Test that a cascading delete leaves the Application to the finalizer."""
        result = await server.delete_application(
            server.DeleteApplicationParams(name="guestbook", confirm=True, confirm_name="guestbook"), mock_context
        )

        assert "marked for deletion" in result
        live = cluster.objects(APPLICATION_GROUP, APPLICATION_KIND)[0]
        assert live["metadata"]["finalizers"] == [RESOURCES_FINALIZER]
        assert live["metadata"]["deletionTimestamp"]

    async def test_blocked_in_read_only(self, guestbook, read_only, cluster: InMemoryCluster, mock_context: MagicMock):
        """Test that read-only wins over confirmation."""
        with read_only:
            result = await server.delete_application(
                server.DeleteApplicationParams(name="guestbook", confirm=True, confirm_name="guestbook"),
                mock_context,
            )

        assert "OPERATION BLOCKED" in result
        assert cluster.exists(APP_KEY)


@pytest.mark.unit
class TestMCPResources:
    """Tests for MCP resource endpoints."""

    async def test_clusters_resource(self, mock_server_settings: ServerSettings):
        """Test the configured cluster listing."""
        with patch.object(server, "_settings", mock_server_settings):
            result = await server.get_clusters_resource()

        assert "Configured Clusters:" in result
        assert "- in-cluster: https://kubernetes.default.svc" in result

    async def test_security_resource(self, mock_server_settings: ServerSettings):
        """Test the security settings summary."""
        with patch.object(server, "_settings", mock_server_settings):
            result = await server.get_security_resource()

        assert "Read-only mode: False" in result
        assert "Secret masking: True" in result
        assert "10000 writes per 60s" in result


@pytest.mark.unit
class TestLifespanAndMain:
    """Tests for lifespan context manager and main entry point."""

    async def test_lifespan_starts_and_stops_controller(self, mock_server_settings: ServerSettings):
        """Test lifespan wires settings, guard and controller."""
        with (
            patch.object(server, "load_settings", return_value=mock_server_settings),
            patch.object(server, "configure_logging"),
            patch.object(server, "ApplicationController") as mock_controller_class,
        ):
            mock_controller = MagicMock()
            mock_controller.start = AsyncMock()
            mock_controller.stop = AsyncMock()
            mock_controller_class.return_value = mock_controller

            async with server.lifespan(server.mcp) as ctx:
                assert ctx["settings"] is mock_server_settings
                assert ctx["controller"] is mock_controller
                mock_controller.start.assert_awaited_once()

            mock_controller.stop.assert_awaited_once()
            assert server._controller is None

    def test_main_runs_server(self):
        """Test main entry point runs the server."""
        with patch("appsync.server.mcp") as mock_mcp, patch("appsync.server.configure_logging"):
            server.main()
            mock_mcp.run.assert_called_once()

    def test_main_handles_keyboard_interrupt(self):
        """Test main handles keyboard interrupt gracefully."""
        with patch("appsync.server.mcp") as mock_mcp, patch("appsync.server.configure_logging"):
            mock_mcp.run.side_effect = KeyboardInterrupt()

            with pytest.raises(SystemExit) as exc_info:
                server.main()

            assert exc_info.value.code == 0

    def test_main_handles_exception(self):
        """Test main handles exceptions with proper exit code."""
        with patch("appsync.server.mcp") as mock_mcp, patch("appsync.server.configure_logging"):
            mock_mcp.run.side_effect = Exception("Test error")

            with pytest.raises(SystemExit) as exc_info:
                server.main()

            assert exc_info.value.code == 1
