# ABOUTME: FastMCP server initialization and main entry point
# ABOUTME: Runs the application controller and exposes its status and operator actions as MCP tools

"""appsync MCP Server - GitOps reconciliation controller with a safety-first status surface."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from appsync.config import ServerSettings, load_settings
from appsync.engine.controller import ApplicationController
from appsync.engine.diff import DiffAction
from appsync.errors import ReconcileError
from appsync.models import HealthStatus, OperationPhase, ResultCode, SyncStatus
from appsync.utils.logging import AuditLogger, configure_logging, set_correlation_id
from appsync.utils.safety import ConfirmationRequired, SafetyGuard, mask_sensitive

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from appsync.models import OperationState

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: ServerSettings | None = None
_controller: ApplicationController | None = None
_safety_guard: SafetyGuard | None = None
_audit_logger: AuditLogger | None = None


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Manage server lifecycle: load config, start the controller, stop it on shutdown."""
    global _settings, _controller, _safety_guard, _audit_logger

    logger.info("Starting appsync")

    _settings = load_settings()
    configure_logging(level=_settings.log_level, json_output=_settings.log_json)
    _safety_guard = SafetyGuard(_settings.security)
    _audit_logger = AuditLogger(_settings.security.audit_log)

    _controller = ApplicationController(_settings, _safety_guard, _audit_logger)
    await _controller.start()
    for cluster in _settings.all_clusters:
        logger.info("Connected to cluster", cluster=cluster.name, server=cluster.server)

    yield {"settings": _settings, "controller": _controller}

    await _controller.stop()
    _controller = None
    logger.info("appsync stopped")


mcp = FastMCP("appsync", lifespan=lifespan)


def get_controller() -> ApplicationController:
    """Get the running application controller."""
    if not _controller:
        raise RuntimeError("Server not initialized")
    return _controller


def get_settings() -> ServerSettings:
    """Get server settings."""
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_safety_guard() -> SafetyGuard:
    """Get safety guard for permission checking."""
    if not _safety_guard:
        raise RuntimeError("Server not initialized")
    return _safety_guard


def get_audit_logger() -> AuditLogger:
    """Get audit logger for recording operations."""
    if not _audit_logger:
        raise RuntimeError("Server not initialized")
    return _audit_logger


def _not_found(name: str) -> str:
    namespace = get_settings().controller.namespace
    return f"Application '{name}' not found in namespace '{namespace}'"


def _marker(ok: bool) -> str:
    return "[OK]" if ok else "[!]"


def _value_at(obj: Any, pointer: str) -> Any:
    """Value at a JSON pointer, or None when the path does not exist."""
    for token in pointer.lstrip("/").split("/"):
        if not token:
            continue
        token = token.replace("~1", "/").replace("~0", "~")
        if isinstance(obj, dict):
            obj = obj.get(token)
        elif isinstance(obj, list) and token.isdigit() and int(token) < len(obj):
            obj = obj[int(token)]
        else:
            return None
    return obj


def _format_operation(op: OperationState) -> list[str]:
    lines = [
        f"  Phase: {op.phase.value}",
        f"  Revision: {op.revision[:12] or 'unknown'}",
        f"  Message: {op.message or 'N/A'}",
    ]
    if op.retry_count:
        lines.append(f"  Failed attempts: {op.retry_count}")
    if op.sync_result and op.sync_result.resources:
        lines.append("  Resources:")
        for r in op.sync_result.resources:
            phase = f" [{r.sync_phase.value}]" if r.sync_phase.value != "Sync" else ""
            lines.append(f"    - {r.key}{phase} wave={r.wave} {r.status.value}: {r.message}")
    return lines


# =============================================================================
# TIER 1: Essential Read Operations (Always Available)
# =============================================================================


class ListApplicationsParams(BaseModel):
    """Parameters for list_applications tool."""

    project: str | None = Field(default=None, description="Filter by project name")
    health_status: str | None = Field(
        default=None,
        description="Filter by health status (Healthy, Degraded, Progressing, Missing, Suspended, Unknown)",
    )
    sync_status: str | None = Field(
        default=None, description="Filter by sync status (Synced, OutOfSync, Unknown)"
    )


@mcp.tool()
async def list_applications(params: ListApplicationsParams, ctx: MCPContext) -> str:
    """
    List Applications with optional filtering.

    Returns applications matching the specified filters. Use this to get
    an overview of applications in a project or find unhealthy/out-of-sync apps.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("list_applications")
    if blocked:
        get_audit_logger().log_blocked("list_applications", "all", blocked.reason)
        return blocked.format_message()

    controller = get_controller()
    rows = []
    for app in controller.applications():
        if params.project and app.spec.project != params.project:
            continue
        status = controller.status_of(app.name) or app.status
        if params.health_status and status.health.status.value != params.health_status:
            continue
        if params.sync_status and status.sync.status.value != params.sync_status:
            continue
        rows.append((app, status))

    get_audit_logger().log_read("list_applications", f"project={params.project}")

    if not rows:
        return "No applications found matching the specified filters."

    lines = [f"Found {len(rows)} application(s):", ""]
    for app, status in rows:
        dest = app.spec.destination
        lines.append(
            f"- {app.name} [{app.spec.project}] "
            f"health={status.health.status.value} {_marker(status.health.status == HealthStatus.HEALTHY)} "
            f"sync={status.sync.status.value} {_marker(status.sync.status == SyncStatus.SYNCED)} "
            f"dest={dest.namespace or '-'}@{dest.name or dest.server}"
        )
    return "\n".join(lines)


class GetApplicationParams(BaseModel):
    """Parameters for get_application tool."""

    name: str = Field(description="Application name")


@mcp.tool()
async def get_application(params: GetApplicationParams, ctx: MCPContext) -> str:
    """
    Get detailed information about a specific Application.

    Returns source, destination, sync policy, sync and health status, the
    last operation and any conditions (errors and warnings).
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("get_application")
    if blocked:
        get_audit_logger().log_blocked("get_application", params.name, blocked.reason)
        return blocked.format_message()

    controller = get_controller()
    app = controller.application(params.name)
    if app is None:
        return _not_found(params.name)
    status = controller.status_of(params.name) or app.status
    get_audit_logger().log_read("get_application", params.name)

    source = app.spec.source
    automated = app.automated
    lines = [
        f"Application: {app.name}",
        f"Project: {app.spec.project}",
        f"Namespace: {app.namespace}",
        "",
        "Source:",
        f"  Repository: {source.repo_url}",
        f"  {'Chart' if source.chart else 'Path'}: {source.chart or source.path}",
        f"  Target Revision: {source.target_revision}",
        "",
        "Destination:",
        f"  Cluster: {app.spec.destination.name or app.spec.destination.server}",
        f"  Namespace: {app.spec.destination.namespace or '-'}",
        "",
        "Sync Policy:",
        f"  Automated: {automated is not None}",
    ]
    if automated is not None:
        lines.append(f"  Prune: {automated.prune}  Self-heal: {automated.self_heal}")
    if app.spec.sync_policy.sync_options:
        lines.append(f"  Options: {', '.join(app.spec.sync_policy.sync_options)}")
    lines.extend(
        [
            "",
            "Status:",
            f"  Sync: {status.sync.status.value} (revision {status.sync.revision[:12] or 'unknown'})",
            f"  Health: {status.health.status.value}",
        ]
    )
    if status.health.message:
        lines.append(f"  Health message: {status.health.message}")
    if app.being_deleted:
        lines.append("  Deletion: in progress")

    if status.operation_state:
        lines.extend(["", "Last Operation:", *_format_operation(status.operation_state)])

    if status.conditions:
        lines.extend(["", "Conditions:"])
        for cond in status.conditions:
            lines.append(f"  - [{cond.type}] {cond.message}")

    return "\n".join(lines)


class GetApplicationStatusParams(BaseModel):
    """Parameters for get_application_status tool."""

    name: str = Field(description="Application name")


@mcp.tool()
async def get_application_status(params: GetApplicationStatusParams, ctx: MCPContext) -> str:
    """
    Get condensed health and sync status for quick checks.

    Use this for a quick status check when you don't need full application details.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("get_application_status")
    if blocked:
        get_audit_logger().log_blocked("get_application_status", params.name, blocked.reason)
        return blocked.format_message()

    controller = get_controller()
    status = controller.status_of(params.name)
    if status is None:
        return _not_found(params.name)
    get_audit_logger().log_read("get_application_status", params.name)

    text = (
        f"Application: {params.name}\n"
        f"Health: {status.health.status.value} {_marker(status.health.status == HealthStatus.HEALTHY)}\n"
        f"Sync: {status.sync.status.value} {_marker(status.sync.status == SyncStatus.SYNCED)}"
    )
    running = controller.running(params.name)
    if running is not None:
        text += f"\nOperation: Running (revision {running.revision[:12]})"
    elif status.operation_state:
        text += f"\nOperation: {status.operation_state.phase.value}"
    return text


class GetApplicationDiffParams(BaseModel):
    """Parameters for get_application_diff tool."""

    name: str = Field(description="Application name")
    show_values: bool = Field(
        default=False, description="Show desired and live values of changed fields (secrets masked)"
    )


@mcp.tool()
async def get_application_diff(params: GetApplicationDiffParams, ctx: MCPContext) -> str:
    """
    Preview what would change on sync (dry-run diff).

    Renders the source, compares it with live state and shows resources that
    would be created, updated, or pruned. Makes no cluster writes.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("get_application_diff")
    if blocked:
        get_audit_logger().log_blocked("get_application_diff", params.name, blocked.reason)
        return blocked.format_message()

    await ctx.report_progress(0, 2, "Rendering source")

    try:
        comparison = await get_controller().diff(params.name)
    except KeyError:
        return _not_found(params.name)
    except ReconcileError as e:
        get_audit_logger().log_error("get_application_diff", params.name, str(e))
        return str(e)

    get_audit_logger().log_read("get_application_diff", params.name)
    await ctx.report_progress(1, 2, "Analyzing differences")

    diff = comparison.diff
    mask = get_safety_guard().mask_secrets
    lines = [f"Diff for application '{params.name}' at revision {comparison.revision[:12]}:", ""]
    sections = (
        ("Resources to CREATE", "+", [d for d in diff.changes if d.action == DiffAction.CREATE]),
        ("Resources to UPDATE", "~", [d for d in diff.changes if d.action == DiffAction.UPDATE]),
        ("Resources to DELETE (with prune)", "-", diff.prunable),
        ("Resources requiring pruning but protected (Prune=false)", "!", diff.protected),
    )
    for title, sign, items in sections:
        if not items:
            continue
        lines.append(f"{title} ({len(items)}):")
        for d in items:
            lines.append(f"  {sign} {d.key} (wave {d.wave})")
            desired = d.desired.copy_manifest() if d.desired is not None else {}
            live = d.live or {}
            if mask:
                desired, live = mask_sensitive(desired), mask_sensitive(live)
            for path in d.paths[:10]:
                if params.show_values:
                    lines.append(
                        f"      {path}: {_value_at(live, path)!r} -> {_value_at(desired, path)!r}"
                    )
                else:
                    lines.append(f"      {path}")
        lines.append("")

    synced = [d for d in diff.items if d.action == DiffAction.UNCHANGED]
    lines.append(f"Resources in sync: {len(synced)}")
    for warning in comparison.warnings:
        lines.append(f"Warning: {warning.message}")
    if diff.in_sync:
        lines.append("\nApplication is fully synced. No changes needed.")

    await ctx.report_progress(2, 2, "Complete")
    return "\n".join(lines)


class GetResourceHealthParams(BaseModel):
    """Parameters for get_resource_health tool."""

    name: str = Field(description="Application name")
    unhealthy_only: bool = Field(default=False, description="Only list resources that are not Healthy")


@mcp.tool()
async def get_resource_health(params: GetResourceHealthParams, ctx: MCPContext) -> str:
    """
    Show per-resource sync and health of an Application.

    Lists every managed resource with its wave, sync status and health so
    you can see which resource holds an Application in Progressing or Degraded.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("get_resource_health")
    if blocked:
        get_audit_logger().log_blocked("get_resource_health", params.name, blocked.reason)
        return blocked.format_message()

    status = get_controller().status_of(params.name)
    if status is None:
        return _not_found(params.name)
    get_audit_logger().log_read("get_resource_health", params.name)

    resources = status.resources
    if params.unhealthy_only:
        resources = [r for r in resources if r.health not in (None, HealthStatus.HEALTHY)]
    if not resources:
        return f"No matching resources for application '{params.name}'"

    lines = [f"Resources of '{params.name}' (health {status.health.status.value}):", ""]
    for r in sorted(resources, key=lambda r: (r.wave, str(r.key))):
        health = r.health.value if r.health else "-"
        line = f"- wave {r.wave:>3} {r.key} sync={r.status.value} health={health}"
        if r.health_message:
            line += f" ({r.health_message})"
        if r.requires_pruning:
            line += " [requires pruning]"
        lines.append(line)
    return "\n".join(lines)


class GetApplicationHistoryParams(BaseModel):
    """Parameters for get_application_history tool."""

    name: str = Field(description="Application name")
    limit: int = Field(default=10, description="Maximum number of history entries", ge=1, le=10)


@mcp.tool()
async def get_application_history(params: GetApplicationHistoryParams, ctx: MCPContext) -> str:
    """
    View recent successful syncs with revision and timestamp.

    Useful for understanding recent changes and finding the revision that
    was running before a regression.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("get_application_history")
    if blocked:
        get_audit_logger().log_blocked("get_application_history", params.name, blocked.reason)
        return blocked.format_message()

    status = get_controller().status_of(params.name)
    if status is None:
        return _not_found(params.name)
    get_audit_logger().log_read("get_application_history", params.name)

    history = status.history[-params.limit :]
    if not history:
        return f"No deployment history found for application '{params.name}'"

    lines = [f"Deployment history for '{params.name}' (last {len(history)} entries):", ""]
    for entry in reversed(history):
        lines.append(f"{entry.id}. [{entry.revision[:12]}] at {entry.deployed_at}")
    return "\n".join(lines)


# =============================================================================
# TIER 2: Write Operations (Blocked in read-only mode)
# =============================================================================


class SyncApplicationParams(BaseModel):
    """Parameters for sync_application tool."""

    name: str = Field(description="Application name")
    dry_run: bool = Field(
        default=True, description="Preview changes without applying (default: true)"
    )
    prune: bool = Field(default=False, description="Delete resources no longer in the source (destructive)")
    wait: bool = Field(default=True, description="Wait for the sync to finish and report its result")
    confirm: bool = Field(default=False, description="Must be true to sync with prune")
    confirm_name: str | None = Field(
        default=None, description="Type application name to confirm a pruning sync"
    )


@mcp.tool()
async def sync_application(params: SyncApplicationParams, ctx: MCPContext) -> str:
    """
    Synchronize an Application with its source.

    By default runs in dry-run mode showing what would change.
    Set dry_run=false to apply changes. Use prune=true to remove
    resources deleted from the source (destructive, requires confirmation).
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    guard = get_safety_guard()
    if params.prune and not params.dry_run:
        blocked = guard.check_destructive_operation(
            "sync_with_prune", params.name, confirmed=params.confirm, confirm_name=params.confirm_name
        )
        if blocked:
            if isinstance(blocked, ConfirmationRequired):
                get_audit_logger().log_blocked(
                    "sync_application", params.name, "prune requires confirmation"
                )
                return (
                    f"{blocked.format_message()}\n\n"
                    f"Preview deletions first:\n"
                    f"  sync_application(name='{params.name}', dry_run=true, prune=true)"
                )
            get_audit_logger().log_blocked("sync_application", params.name, blocked.reason)
            return blocked.format_message()
    elif not params.dry_run:
        blocked = guard.check_write_operation("sync_application")
        if blocked:
            get_audit_logger().log_blocked("sync_application", params.name, blocked.reason)
            return blocked.format_message()

    controller = get_controller()
    if controller.application(params.name) is None:
        return _not_found(params.name)

    if not params.dry_run and not params.wait:
        controller.request_sync(params.name, prune=params.prune)
        get_audit_logger().log_write(
            "sync_application", params.name, "initiated", {"prune": params.prune}
        )
        return (
            f"Sync initiated for '{params.name}'\n"
            f"Prune: {params.prune}\n\n"
            f"Use get_application_status to monitor progress."
        )

    mode = "[DRY-RUN] " if params.dry_run else ""
    await ctx.report_progress(0, 1, f"{mode}Syncing {params.name}")
    op = await controller.sync(params.name, prune=params.prune, dry_run=params.dry_run)
    await ctx.report_progress(1, 1, "Sync finished")

    if op is None:
        return _not_found(params.name)

    result = "dry_run" if params.dry_run else op.phase.value.lower()
    get_audit_logger().log_write("sync_application", params.name, result, {"prune": params.prune})

    header = (
        f"Dry-run sync for '{params.name}'"
        if params.dry_run
        else f"Sync of '{params.name}' finished: {op.phase.value}"
    )
    lines = [header, "", *_format_operation(op)]
    if params.dry_run:
        would_prune = op.sync_result and any(r.status == ResultCode.PRUNED for r in op.sync_result.resources)
        lines.extend(["", "To apply:", f"  sync_application(name='{params.name}', dry_run=false)"])
        if would_prune or params.prune:
            lines.append("Pruning requires prune=true, confirm=true and confirm_name.")
    elif op.phase != OperationPhase.SUCCEEDED:
        lines.extend(["", "Use get_application for conditions and get_resource_health for details."])
    return "\n".join(lines)


class RefreshApplicationParams(BaseModel):
    """Parameters for refresh_application tool."""

    name: str = Field(description="Application name")


@mcp.tool()
async def refresh_application(params: RefreshApplicationParams, ctx: MCPContext) -> str:
    """
    Re-resolve the source revision and re-compare now.

    Normally this happens on every poll interval. A refresh that finds a
    newer revision while a sync is running cancels that sync at its next
    wave boundary.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_write_operation("refresh_application")
    if blocked:
        get_audit_logger().log_blocked("refresh_application", params.name, blocked.reason)
        return blocked.format_message()

    if not get_controller().refresh(params.name):
        return _not_found(params.name)

    get_audit_logger().log_write("refresh_application", params.name, "requested")
    return f"Refresh requested for '{params.name}'"


class TerminateSyncParams(BaseModel):
    """Parameters for terminate_sync tool."""

    name: str = Field(description="Application name")


@mcp.tool()
async def terminate_sync(params: TerminateSyncParams, ctx: MCPContext) -> str:
    """
    Terminate an ongoing sync operation.

    The sync stops at its next wave boundary and is reported as Terminated.
    Resources already applied stay applied.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_write_operation("terminate_sync")
    if blocked:
        get_audit_logger().log_blocked("terminate_sync", params.name, blocked.reason)
        return blocked.format_message()

    if not get_controller().terminate(params.name):
        return f"No sync operation is running for '{params.name}'"

    get_audit_logger().log_write("terminate_sync", params.name, "terminated")
    return (
        f"Sync operation terminated for '{params.name}'\n\n"
        f"Use get_application_status to check current state."
    )


# =============================================================================
# TIER 3: Destructive Operations (Require explicit confirmation)
# =============================================================================


class DeleteApplicationParams(BaseModel):
    """Parameters for delete_application tool."""

    name: str = Field(description="Application name to delete")
    cascade: bool = Field(
        default=True, description="Delete application resources from cluster (default: true)"
    )
    confirm: bool = Field(default=False, description="Must be true to execute deletion")
    confirm_name: str | None = Field(
        default=None, description="Type application name to confirm deletion"
    )


@mcp.tool()
async def delete_application(params: DeleteApplicationParams, ctx: MCPContext) -> str:
    """
    Delete an Application (DESTRUCTIVE).

    Requires explicit confirmation. Set confirm=true AND confirm_name
    matching the application name to proceed. With cascade=true (default),
    every resource the Application manages is deleted first.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_destructive_operation(
        "delete_application",
        params.name,
        confirmed=params.confirm,
        confirm_name=params.confirm_name,
    )
    controller = get_controller()

    if blocked:
        if isinstance(blocked, ConfirmationRequired):
            app = controller.application(params.name)
            if app is not None:
                tracked = len(app.status.resources)
                blocked.details = {
                    "namespace": app.spec.destination.namespace or "-",
                    "cluster": app.spec.destination.name or app.spec.destination.server,
                    "managed resources": str(tracked),
                    "cascade": str(params.cascade),
                    "effect": "DELETE cluster resources" if params.cascade else "ORPHAN cluster resources",
                }
            get_audit_logger().log_blocked(
                "delete_application", params.name, "confirmation required"
            )
            return blocked.format_message()
        get_audit_logger().log_blocked("delete_application", params.name, blocked.reason)
        return blocked.format_message()

    await ctx.report_progress(0, 1, f"Deleting application {params.name}")
    try:
        deleted = await controller.delete(params.name, params.cascade)
    except ReconcileError as e:
        get_audit_logger().log_error("delete_application", params.name, str(e))
        return str(e)

    if not deleted:
        return _not_found(params.name)

    get_audit_logger().log_write(
        "delete_application", params.name, "deleted", {"cascade": params.cascade}
    )
    if not params.cascade:
        return f"Application '{params.name}' deleted. Managed resources were left in place."
    return (
        f"Application '{params.name}' marked for deletion.\n"
        f"Cascade: {params.cascade}\n\n"
        f"Managed resources are removed before the Application disappears."
    )


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("appsync://clusters")
async def get_clusters_resource() -> str:
    """Get information about configured destination clusters."""
    settings = get_settings()
    clusters = settings.all_clusters

    lines = ["Configured Clusters:", ""]
    for cluster in clusters:
        lines.append(f"- {cluster.name}: {cluster.server}")

    return "\n".join(lines)


@mcp.resource("appsync://security")
async def get_security_resource() -> str:
    """Get current security settings."""
    settings = get_settings()
    sec = settings.security

    return (
        "Security Settings:\n"
        f"  Read-only mode: {sec.read_only}\n"
        f"  Destructive operations disabled: {sec.disable_destructive}\n"
        f"  Single cluster mode: {sec.single_cluster}\n"
        f"  Secret masking: {sec.mask_secrets}\n"
        f"  Rate limit: {sec.rate_limit_calls} writes per {sec.rate_limit_window}s"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the appsync controller and MCP server."""
    configure_logging(level="INFO")
    logger.info("appsync starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
