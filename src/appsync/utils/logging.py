# ABOUTME: Structured logging with correlation IDs for the appsync controller
# ABOUTME: Binds one correlation ID per reconciliation cycle and audits every cluster mutation

"""
Structured logging with correlation IDs and audit trails.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

1. STRUCTURED LOGGING: every log line is an event name plus key/value pairs,
   rendered as JSON in production and as colored text in development.

2. CORRELATION IDs: one ID per reconciliation cycle (or per status-surface
   request). Every line emitted while the cycle runs carries it, so all the
   applies, health waits and hook runs of one sync can be pulled out with

       jq 'select(.correlation_id == "a1b2c3d4")'

3. AUDIT LOGGING: every cluster mutation (apply, delete, finalizer removal,
   status write) is recorded with its outcome: success, blocked or error.

=============================================================================
WHY contextvars?
=============================================================================

Applications reconcile concurrently as separate asyncio tasks. A module-level
variable would be overwritten by whichever task ran last. A ContextVar is
copied into each task when it is created, so

    async def cycle(app):
        start_cycle(app.name)      # only this task sees the new ID
        await pipeline.run(...)

keeps IDs from leaking between Applications.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path

# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate new one.

    Code running outside a cycle (startup, watch loops) still gets an ID so its
    lines stay correlatable.

    Returns:
        8-character correlation ID string.
    """
    cid = correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """
    Set correlation ID for current context.

    Args:
        cid: The correlation ID. An empty string makes the next
             get_correlation_id() call generate a fresh one.
    """
    correlation_id.set(cid)


def start_cycle(app_name: str) -> str:
    """
    Begin a reconciliation cycle in the current task.

    Generates a fresh correlation ID and binds the Application name into the
    structlog context so every subsequent line carries `app=<name>`.

    Returns:
        The new correlation ID.
    """
    set_correlation_id("")
    cid = get_correlation_id()
    structlog.contextvars.bind_contextvars(app=app_name)
    return cid


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """
    Structlog processor adding the correlation ID to every event.

    Args:
        logger: The structlog wrapped logger (unused but required by API)
        method_name: The logging method name (unused but required by API)
        event_dict: Dictionary containing log event data to enrich

    Returns:
        The event_dict with "correlation_id" field added.
    """
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging. Call once at startup.

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: Adds bound context (app name)
    2. add_log_level: Adds "level" field
    3. TimeStamper: Adds ISO-format timestamp
    4. add_correlation_id: Adds the cycle's correlation ID
    5. Renderer: JSON (production) or colored console (development)

    Args:
        level: "DEBUG", "INFO", "WARNING", "ERROR" or "CRITICAL"
        json_output: If True, output JSON; otherwise colored text.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Audit logger for cluster mutations and status-surface operations.

    WHAT WE LOG:
    ------------
    - timestamp: When it happened (UTC ISO 8601)
    - correlation_id: Cycle or request identifier
    - action: "apply", "delete", "remove_finalizer", "write_status", or a tool name
    - target: Resource identity ("apps/Deployment/web/frontend") or app name
    - result: "success", "blocked", "error", "dry_run"
    - details: Additional context

    TWO OUTPUT MODES:
    -----------------
    1. FILE: Append JSON lines to log_path
    2. STDOUT: Emit an "audit" event through structlog

    EXAMPLE ENTRY:
    --------------
    {"timestamp": "2024-01-15T10:30:05Z", "correlation_id": "def456",
     "action": "delete", "target": "v1/ConfigMap/web/old-config",
     "result": "blocked", "details": {"reason": "Destructive operations are disabled"}}
    """

    def __init__(self, log_path: Path | None = None) -> None:
        """
        Initialize audit logger.

        Args:
            log_path: Path to audit log file (appended, never truncated), or
                      None to log through structlog.
        """
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Log an auditable action. Every specialized method delegates here.

        Args:
            action: Operation performed
            target: Resource or Application identifier
            result: "success", "blocked", "error", "dry_run", ...
            details: Additional context. Optional.
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }

        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_read(self, action: str, target: str) -> None:
        """Log a read (status-surface query)."""
        self.log(action, target, "success")

    def log_write(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Log a write.

        Args:
            action: "apply", "delete", "sync_application", ...
            target: What was modified
            result: "success", "dry_run", "initiated", "orphaned", ...
            details: Operation parameters
        """
        self.log(action, target, result, details)

    def log_blocked(
        self,
        action: str,
        target: str,
        reason: str,
    ) -> None:
        """Log a write refused by the safety guard."""
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(
        self,
        action: str,
        target: str,
        error: str,
    ) -> None:
        """Log a failed operation (API rejection, timeout, render failure)."""
        self.log(action, target, "error", {"error": error})
