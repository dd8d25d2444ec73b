# ABOUTME: Error taxonomy for the reconciliation engine
# ABOUTME: Maps cluster API failures onto cycle-level and per-resource reconcile errors

"""
Reconciliation errors.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Every failure the engine can hit is expressed as a subclass of ReconcileError.
Each subclass knows:

1. CONDITION TYPE: which status condition it surfaces as on the Application
   (ComparisonError, PermissionDenied, SyncError, ...)
2. FATALITY: whether it aborts the whole cycle or only affects one resource

=============================================================================
TAXONOMY
=============================================================================

    RenderError              bad template/path         fatal for the cycle
    RBACDenied               project forbids it        fatal, no mutation
    ApplyError               API rejected/conflict     retried, then per-resource
    HealthTimeout            wave did not settle       non-fatal, Progressing
    HookFailure              hook reported failure     fatal, SyncFail hooks run
    PruneProtectionViolation protected from prune      non-fatal, reported
    TransientAPIUnavailable  429 / 5xx / timeouts      retried with backoff
    MutationBlocked          safety guard said no      fatal for the write
    DeletionError            cascade did not finish    retried next cycle
    CycleCancelled           deletion / new revision   cycle abandoned

ClusterAPIError is the raw error raised by cluster clients. The engine converts
it with classify_api_error() so the rest of the code only reasons about the
taxonomy above.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from appsync.models import ResourceKey

# HTTP status codes that indicate the API server is temporarily unable to serve.
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class ClusterAPIError(Exception):
    """
    Structured Kubernetes API error.

    Raised by every ClusterAPI implementation. Carries the HTTP status code, the
    message from the API server's Status object, and its reason.

    USAGE:
    ------
    try:
        await cluster.apply(manifest, field_manager="appsync")
    except ClusterAPIError as e:
        print(f"Error {e.code}: {e.message}")
    """

    def __init__(self, code: int, message: str, details: str | None = None) -> None:
        self.code = code
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"Kubernetes API error ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base

    @property
    def transient(self) -> bool:
        """Whether retrying the same request later can succeed."""
        return self.code in TRANSIENT_STATUS_CODES or self.code == 0


class ReconcileError(Exception):
    """Base class for all engine errors surfaced as Application conditions."""

    condition_type = "SyncError"
    fatal = True

    def __init__(
        self,
        message: str,
        details: str | None = None,
        resource: ResourceKey | None = None,
    ) -> None:
        self.message = message
        self.details = details
        self.resource = resource
        super().__init__(str(self))

    def __str__(self) -> str:
        base = self.message
        if self.resource is not None:
            base = f"{self.resource}: {base}"
        if self.details:
            base += f" - {self.details}"
        return base


class RenderError(ReconcileError):
    """The source could not be fetched or rendered into manifests."""

    condition_type = "ComparisonError"


class InvalidSpecError(ReconcileError):
    """The Application refers to something that does not exist (e.g. an unknown cluster)."""

    condition_type = "InvalidSpecError"


class RBACDenied(ReconcileError):
    """The Application's project does not permit its source or destination."""

    condition_type = "PermissionDenied"


class ApplyError(ReconcileError):
    """The API server rejected a create/update/delete."""

    def __init__(
        self,
        message: str,
        details: str | None = None,
        resource: ResourceKey | None = None,
        status_code: int | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message, details, resource)


class TransientAPIUnavailable(ApplyError):
    """The API server is temporarily unavailable; always retried."""

    fatal = False


class HealthTimeout(ReconcileError):
    """A wave (or hook) did not become healthy before its deadline."""

    condition_type = "HealthTimeout"
    fatal = False

    def __init__(
        self,
        message: str,
        details: str | None = None,
        resource: ResourceKey | None = None,
        wave: int | None = None,
    ) -> None:
        self.wave = wave
        super().__init__(message, details, resource)


class HookFailure(ReconcileError):
    """A lifecycle hook reported failure."""

    condition_type = "SyncError"


class PruneProtectionViolation(ReconcileError):
    """A prune candidate carries the protection marker and was kept."""

    condition_type = "PruneSkipped"
    fatal = False


class MutationBlocked(ReconcileError):
    """A cluster write was refused by the safety guard."""

    condition_type = "SyncError"


class DeletionError(ReconcileError):
    """Cascade deletion could not finish (a resource would not go away)."""

    condition_type = "DeletionError"


class CycleCancelled(ReconcileError):
    """The in-flight cycle was abandoned (deletion or newer revision)."""

    condition_type = "SyncError"
    fatal = False


def classify_api_error(err: ClusterAPIError, resource: ResourceKey | None = None) -> ApplyError:
    """
    Convert a raw ClusterAPIError into the engine taxonomy.

    429, 5xx and connection-level failures (code 0) become
    TransientAPIUnavailable; everything else is an ApplyError carrying the HTTP
    status code.
    """
    if err.transient:
        return TransientAPIUnavailable(
            err.message, details=err.details, resource=resource, status_code=err.code
        )
    return ApplyError(err.message, details=err.details, resource=resource, status_code=err.code)
