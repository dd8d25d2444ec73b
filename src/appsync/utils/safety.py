# ABOUTME: Safety utilities for the appsync controller
# ABOUTME: Guards cluster writes, rate limits mutations, requires confirmation and masks secrets

"""Safety utilities implementing defense-in-depth patterns."""

from __future__ import annotations

import re
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from appsync.config import SecuritySettings

logger = structlog.get_logger(__name__)

MASK = "***MASKED***"

SECRET_PATTERNS = [
    (re.compile(r"(token[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), rf"\1{MASK}"),
    (re.compile(r"(password[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), rf"\1{MASK}"),
    (re.compile(r"(secret[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), rf"\1{MASK}"),
    (re.compile(r"(api[_-]?key[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), rf"\1{MASK}"),
    (re.compile(r"(bearer\s+)[^\s\"']+", re.I), rf"\1{MASK}"),
]

SENSITIVE_KEYS = frozenset(
    [
        "token",
        "password",
        "secret",
        "api_key",
        "apikey",
        "api-key",
        "authorization",
        "credential",
        "credentials",
    ]
)


def mask_sensitive(data: Any) -> Any:
    """Return a copy of data with sensitive keys and token-like strings masked.

    The `data`/`stringData` maps of a Secret manifest are masked wholesale.

    Args:
        data: Any JSON-like value
    """
    if isinstance(data, str):
        for pattern, replacement in SECRET_PATTERNS:
            data = pattern.sub(replacement, data)
        return data
    if isinstance(data, dict):
        is_secret = data.get("kind") == "Secret"
        masked: dict[str, Any] = {}
        for k, v in data.items():
            if k.lower() in SENSITIVE_KEYS or (is_secret and k in ("data", "stringData")):
                masked[k] = {sk: MASK for sk in v} if isinstance(v, dict) else MASK
            else:
                masked[k] = mask_sensitive(v)
        return masked
    if isinstance(data, list):
        return [mask_sensitive(item) for item in data]
    return data


@dataclass
class ConfirmationRequired:
    """Response indicating confirmation is required for destructive operation."""

    operation: str
    target: str
    impact: str
    confirmation_instructions: str
    details: dict[str, Any] = field(default_factory=dict)

    def format_message(self) -> str:
        """Format confirmation request for agent consumption."""
        lines = [
            f"CONFIRMATION REQUIRED: {self.operation}",
            "",
            f"Target: {self.target}",
            f"Impact: {self.impact}",
        ]

        if self.details:
            lines.append("")
            lines.append("Details:")
            for key, value in self.details.items():
                lines.append(f"  {key}: {value}")

        lines.extend(["", self.confirmation_instructions])
        return "\n".join(lines)


@dataclass
class OperationBlocked:
    """Response indicating operation is blocked by security settings."""

    operation: str
    reason: str
    setting: str
    rate_limited: bool = False

    def format_message(self) -> str:
        """Format blocked message for agent consumption."""
        return (
            f"OPERATION BLOCKED: {self.operation}\n"
            f"Reason: {self.reason}\n"
            f"Setting: {self.setting}"
        )


class RateLimiter:
    """Sliding-window rate limiter keyed by operation class."""

    def __init__(self, max_calls: int = 100, window_seconds: int = 60) -> None:
        """Initialize rate limiter.

        Args:
            max_calls: Maximum calls allowed in window
            window_seconds: Window size in seconds
        """
        self._max_calls = max_calls
        self._window = window_seconds
        self._calls: dict[str, list[float]] = defaultdict(list)

    def check(self, key: str) -> bool:
        """Record a call and report whether it is allowed.

        Args:
            key: Rate limit key (e.g., "write:in-cluster")

        Returns:
            True if allowed, False if rate limited
        """
        now = time.monotonic()
        self._calls[key] = [t for t in self._calls[key] if now - t < self._window]

        if len(self._calls[key]) >= self._max_calls:
            logger.warning("Rate limit exceeded", key=key, calls=len(self._calls[key]))
            return False

        self._calls[key].append(now)
        return True

    def reset(self, key: str | None = None) -> None:
        """Reset rate limit counters.

        Args:
            key: Specific key to reset, or None for all
        """
        if key:
            self._calls.pop(key, None)
        else:
            self._calls.clear()


class SafetyGuard:
    """Gate for every cluster write and every status-surface mutation."""

    def __init__(self, settings: SecuritySettings) -> None:
        self._settings = settings
        self._rate_limiter = RateLimiter(
            max_calls=settings.rate_limit_calls,
            window_seconds=settings.rate_limit_window,
        )

    @property
    def read_only(self) -> bool:
        return self._settings.read_only

    @property
    def mask_secrets(self) -> bool:
        return self._settings.mask_secrets

    def check_mutation(
        self,
        operation: str,
        cluster: str,
        destructive: bool = False,
    ) -> OperationBlocked | None:
        """Check whether the engine may perform a cluster write.

        Args:
            operation: "apply", "delete", "patch", ...
            cluster: Destination cluster name
            destructive: True for deletes (prune, cascade, hook cleanup)

        Returns:
            OperationBlocked if blocked, None if allowed
        """
        if self._settings.read_only:
            return OperationBlocked(
                operation=operation,
                reason="Controller is running in read-only mode",
                setting="APPSYNC_SECURITY_READ_ONLY",
            )
        if destructive and self._settings.disable_destructive:
            return OperationBlocked(
                operation=operation,
                reason="Destructive operations are disabled",
                setting="APPSYNC_SECURITY_DISABLE_DESTRUCTIVE",
            )
        cluster_check = self.check_cluster_operation(operation, cluster)
        if cluster_check:
            return cluster_check
        if not self._rate_limiter.check(f"write:{cluster}"):
            return OperationBlocked(
                operation=operation,
                reason="Rate limit exceeded",
                setting="APPSYNC_SECURITY_RATE_LIMIT_CALLS",
                rate_limited=True,
            )
        return None

    def check_read_operation(self, operation: str) -> OperationBlocked | None:
        """Check if a status-surface query is allowed (rate limit only)."""
        if not self._rate_limiter.check(f"read:{operation}"):
            return OperationBlocked(
                operation=operation,
                reason="Rate limit exceeded",
                setting="APPSYNC_SECURITY_RATE_LIMIT_CALLS",
                rate_limited=True,
            )
        return None

    def check_write_operation(self, operation: str) -> OperationBlocked | None:
        """Check if a status-surface write (sync, refresh, terminate) is allowed."""
        if self._settings.read_only:
            return OperationBlocked(
                operation=operation,
                reason="Controller is running in read-only mode",
                setting="APPSYNC_SECURITY_READ_ONLY",
            )
        return None

    def check_destructive_operation(
        self,
        operation: str,
        target: str,
        confirmed: bool = False,
        confirm_name: str | None = None,
    ) -> OperationBlocked | ConfirmationRequired | None:
        """Check if destructive operation is allowed.

        Args:
            operation: Operation name
            target: Target resource name
            confirmed: Whether user has confirmed
            confirm_name: Name confirmation (must match target)

        Returns:
            OperationBlocked if blocked, ConfirmationRequired if needs confirmation,
            None if allowed
        """
        write_check = self.check_write_operation(operation)
        if write_check:
            return write_check

        if self._settings.disable_destructive:
            return OperationBlocked(
                operation=operation,
                reason="Destructive operations are disabled",
                setting="APPSYNC_SECURITY_DISABLE_DESTRUCTIVE",
            )

        if not confirmed or confirm_name != target:
            return ConfirmationRequired(
                operation=operation,
                target=target,
                impact=self._get_impact_description(operation),
                confirmation_instructions=(
                    f"To proceed, set confirm=true AND confirm_name='{target}'"
                ),
            )

        return None

    def check_cluster_operation(
        self,
        operation: str,
        cluster: str,
    ) -> OperationBlocked | None:
        """Check if operation on specific cluster is allowed.

        Args:
            operation: Operation name
            cluster: Target cluster

        Returns:
            OperationBlocked if blocked, None if allowed
        """
        if self._settings.single_cluster and cluster != "in-cluster":
            return OperationBlocked(
                operation=operation,
                reason=f"Operation on cluster '{cluster}' blocked in single-cluster mode",
                setting="APPSYNC_SECURITY_SINGLE_CLUSTER",
            )
        return None

    @staticmethod
    def _get_impact_description(operation: str) -> str:
        """Get human-readable impact description for operation."""
        impacts = {
            "delete_application": (
                "Application will be deleted; with the resources finalizer every "
                "managed resource is PERMANENTLY DELETED"
            ),
            "sync_with_prune": "Resources no longer in the source will be DELETED from the cluster",
        }
        return impacts.get(operation, "This operation may have significant impact")
