# ABOUTME: Application status assembly and write-back to the status subresource
# ABOUTME: Condition bookkeeping, deployment history and skipping writes that change only timestamps

"""
Status write-back.

The reconciler is the only writer of an Application's `status`. Each cycle
computes a complete ApplicationStatus and hands it to StatusWriter, which
patches the status subresource only when something other than a timestamp
changed. A cycle that changes nothing therefore makes zero writes.
"""

from __future__ import annotations

import copy
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from appsync.errors import ApplyError, MutationBlocked
from appsync.models import HISTORY_LIMIT, Condition, RevisionHistory

if TYPE_CHECKING:
    from appsync.cluster.base import ClusterAPI
    from appsync.engine.apply import ResourceApplier
    from appsync.errors import ReconcileError
    from appsync.models import Application, ApplicationSource, ApplicationStatus

logger = structlog.get_logger(__name__)

# Status fields that change on every cycle without carrying information.
VOLATILE_FIELDS = ("reconciledAt", "lastTransitionTime")


def utc_now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


# =============================================================================
# CONDITIONS
# =============================================================================


def condition_for(error: ReconcileError) -> Condition:
    """Status condition reporting an engine error under its condition type."""
    return Condition(type=error.condition_type, message=str(error))


def merge_conditions(previous: list[Condition], current: list[Condition], now: str | None = None) -> list[Condition]:
    """
    Replace previous conditions with current ones.

    A condition whose type and message are unchanged keeps its
    lastTransitionTime; every other condition is stamped with now.
    """
    out: list[Condition] = []
    for cond in current:
        prior = next((p for p in previous if p.type == cond.type and p.message == cond.message), None)
        if prior is None:
            prior = Condition(type=cond.type, message=cond.message, last_transition_time=now or utc_now())
        if all(c.type != prior.type for c in out):
            out.append(prior)
    return out


def append_history(
    history: list[RevisionHistory],
    revision: str,
    source: ApplicationSource,
    now: str | None = None,
) -> list[RevisionHistory]:
    """Add a successful deployment, keeping the last HISTORY_LIMIT entries."""
    next_id = history[-1].id + 1 if history else 0
    entry = RevisionHistory(id=next_id, revision=revision, deployed_at=now or utc_now(), source=source)
    return [*history, entry][-HISTORY_LIMIT:]


# =============================================================================
# WRITER
# =============================================================================


def _strip_volatile(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_volatile(v) for k, v in value.items() if k not in VOLATILE_FIELDS}
    if isinstance(value, list):
        return [_strip_volatile(v) for v in value]
    return value


def status_changed(old: ApplicationStatus, new: ApplicationStatus) -> bool:
    """Whether new differs from old in anything but timestamps."""
    return _strip_volatile(old.dump()) != _strip_volatile(new.dump())


class StatusWriter:
    """Writes ApplicationStatus through the guarded applier."""

    def __init__(self, applier: ResourceApplier) -> None:
        self._applier = applier

    async def write(
        self,
        home: ClusterAPI,
        app: Application,
        status: ApplicationStatus,
        previous: ApplicationStatus | None = None,
    ) -> bool:
        """
        Patch the Application's status subresource if it changed.

        Args:
            home: Cluster holding the Application
            app: The Application as last observed
            status: Newly computed status
            previous: Last status written by this process, when newer than app.status

        Returns:
            True if a write was made. Refused or failed writes are logged and
            return False; the next cycle recomputes and retries.
        """
        if not status_changed(previous or app.status, status):
            return False
        body = {"status": copy.deepcopy(status.dump())}
        try:
            await self._applier.patch(home, app.key, body, subresource="status", action="write_status")
        except MutationBlocked as e:
            logger.debug("Status write blocked", app=app.name, reason=e.message)
            return False
        except ApplyError as e:
            logger.warning("Status write failed", app=app.name, error=str(e))
            return False
        return True
