# ABOUTME: Health evaluation for live resources with a registry of per-kind rules
# ABOUTME: Built-in workload rules, declarative custom rules and worst-of aggregation

"""
Health evaluation.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Given a live object, decide whether it is Healthy, Progressing, Degraded,
Suspended, Missing or Unknown. Rules are looked up by (group, kind):

    registry = HealthRegistry()                   # built-in rules
    registry.register("example.com", "Widget", widget_health)
    evaluator = HealthEvaluator(registry)
    evaluator.evaluate(key, live_object).status   # HealthStatus.HEALTHY

User rules override built-ins. A kind with no rule is Healthy, unless the
resource asks for a rule (RequireHealthRule=true), in which case it is
Unknown.

=============================================================================
AGGREGATION
=============================================================================

Application health is the worst resource health in this order:

    Healthy < Suspended < Progressing < Missing < Degraded < Unknown
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from appsync.models import APPLICATION_GROUP, APPLICATION_KIND, HealthStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from appsync.config import HealthRuleSpec
    from appsync.models import ResourceKey

HEALTH_ORDER = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.SUSPENDED: 1,
    HealthStatus.PROGRESSING: 2,
    HealthStatus.MISSING: 3,
    HealthStatus.DEGRADED: 4,
    HealthStatus.UNKNOWN: 5,
}


@dataclass(frozen=True)
class HealthResult:
    status: HealthStatus
    message: str = ""


def is_worse(a: HealthStatus, b: HealthStatus) -> bool:
    """True when a ranks worse than b."""
    return HEALTH_ORDER[a] > HEALTH_ORDER[b]


def aggregate(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """Worst status of the iterable; Healthy when empty."""
    worst = HealthStatus.HEALTHY
    for status in statuses:
        if is_worse(status, worst):
            worst = status
    return worst


# =============================================================================
# HELPERS
# =============================================================================


def _status(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("status") or {}


def _condition(obj: dict[str, Any], type_: str) -> dict[str, Any] | None:
    for cond in _status(obj).get("conditions") or []:
        if cond.get("type") == type_:
            return cond
    return None


def _generation_observed(obj: dict[str, Any]) -> bool:
    generation = (obj.get("metadata") or {}).get("generation")
    observed = _status(obj).get("observedGeneration")
    return generation is None or observed is None or observed >= generation


def _lookup(obj: dict[str, Any], dotted: str) -> Any:
    value: Any = obj
    for part in dotted.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


# =============================================================================
# BUILT-IN RULES
# =============================================================================


def deployment_health(obj: dict[str, Any]) -> HealthResult:
    spec = obj.get("spec") or {}
    status = _status(obj)
    if spec.get("paused"):
        return HealthResult(HealthStatus.SUSPENDED, "Deployment is paused")
    if not _generation_observed(obj):
        return HealthResult(HealthStatus.PROGRESSING, "Waiting for rollout to finish: observed generation is stale")
    progressing = _condition(obj, "Progressing")
    if progressing and progressing.get("reason") == "ProgressDeadlineExceeded":
        message = progressing.get("message", "exceeded its progress deadline")
        return HealthResult(HealthStatus.DEGRADED, f"Deployment {message}")
    replicas = spec.get("replicas", 1)
    updated = status.get("updatedReplicas", 0)
    if updated < replicas:
        return HealthResult(
            HealthStatus.PROGRESSING,
            f"Waiting for rollout to finish: {updated} out of {replicas} new replicas have been updated",
        )
    if status.get("replicas", 0) > updated:
        return HealthResult(
            HealthStatus.PROGRESSING, "Waiting for rollout to finish: old replicas are pending termination"
        )
    available = status.get("availableReplicas", 0)
    if available < updated:
        return HealthResult(
            HealthStatus.PROGRESSING,
            f"Waiting for rollout to finish: {available} of {updated} updated replicas are available",
        )
    return HealthResult(HealthStatus.HEALTHY)


def statefulset_health(obj: dict[str, Any]) -> HealthResult:
    spec = obj.get("spec") or {}
    status = _status(obj)
    if not _generation_observed(obj):
        return HealthResult(HealthStatus.PROGRESSING, "Waiting for statefulset spec update to be observed")
    replicas = spec.get("replicas", 1)
    ready = status.get("readyReplicas", 0)
    if ready < replicas:
        return HealthResult(HealthStatus.PROGRESSING, f"Waiting for {replicas - ready} pods to be ready")
    if (spec.get("updateStrategy") or {}).get("type") == "OnDelete":
        return HealthResult(HealthStatus.HEALTHY)
    if status.get("updateRevision") and status.get("updateRevision") != status.get("currentRevision"):
        return HealthResult(HealthStatus.PROGRESSING, "Waiting for rolling update to complete")
    return HealthResult(HealthStatus.HEALTHY)


def daemonset_health(obj: dict[str, Any]) -> HealthResult:
    status = _status(obj)
    if not _generation_observed(obj):
        return HealthResult(HealthStatus.PROGRESSING, "Waiting for daemon set spec update to be observed")
    desired = status.get("desiredNumberScheduled", 0)
    if status.get("updatedNumberScheduled", 0) < desired:
        return HealthResult(HealthStatus.PROGRESSING, "Waiting for daemon set rollout to finish")
    if status.get("numberAvailable", 0) < desired:
        return HealthResult(HealthStatus.PROGRESSING, "Waiting for daemon set pods to be available")
    return HealthResult(HealthStatus.HEALTHY)


def replicaset_health(obj: dict[str, Any]) -> HealthResult:
    failure = _condition(obj, "ReplicaFailure")
    if failure and failure.get("status") == "True":
        return HealthResult(HealthStatus.DEGRADED, failure.get("message", "replica failure"))
    if not _generation_observed(obj):
        return HealthResult(HealthStatus.PROGRESSING, "Waiting for replica set spec update to be observed")
    replicas = (obj.get("spec") or {}).get("replicas", 1)
    available = _status(obj).get("availableReplicas", 0)
    if available < replicas:
        return HealthResult(HealthStatus.PROGRESSING, f"Waiting for {replicas - available} replicas")
    return HealthResult(HealthStatus.HEALTHY)


_BAD_WAITING_REASONS = frozenset(
    {"CrashLoopBackOff", "ImagePullBackOff", "ErrImagePull", "CreateContainerConfigError", "InvalidImageName"}
)


def pod_health(obj: dict[str, Any]) -> HealthResult:
    status = _status(obj)
    phase = status.get("phase", "Pending")
    if phase == "Succeeded":
        return HealthResult(HealthStatus.HEALTHY, status.get("message", ""))
    if phase == "Failed":
        return HealthResult(HealthStatus.DEGRADED, status.get("message", "pod failed"))
    for container in status.get("containerStatuses") or []:
        waiting = (container.get("state") or {}).get("waiting") or {}
        if waiting.get("reason") in _BAD_WAITING_REASONS:
            return HealthResult(HealthStatus.DEGRADED, waiting.get("message", waiting["reason"]))
    if phase == "Running":
        containers = status.get("containerStatuses") or []
        if containers and all(c.get("ready") for c in containers):
            return HealthResult(HealthStatus.HEALTHY)
        if not containers:
            return HealthResult(HealthStatus.HEALTHY)
    return HealthResult(HealthStatus.PROGRESSING, status.get("message", ""))


def job_health(obj: dict[str, Any]) -> HealthResult:
    failed = _condition(obj, "Failed")
    if failed and failed.get("status") == "True":
        return HealthResult(HealthStatus.DEGRADED, failed.get("message", "job failed"))
    complete = _condition(obj, "Complete")
    if complete and complete.get("status") == "True":
        return HealthResult(HealthStatus.HEALTHY, complete.get("message", ""))
    if (obj.get("spec") or {}).get("suspend"):
        return HealthResult(HealthStatus.SUSPENDED, "Job is suspended")
    return HealthResult(HealthStatus.PROGRESSING, "Job is running")


def cronjob_health(obj: dict[str, Any]) -> HealthResult:
    if (obj.get("spec") or {}).get("suspend"):
        return HealthResult(HealthStatus.SUSPENDED, "CronJob is suspended")
    return HealthResult(HealthStatus.HEALTHY)


def pvc_health(obj: dict[str, Any]) -> HealthResult:
    phase = _status(obj).get("phase")
    if phase == "Bound":
        return HealthResult(HealthStatus.HEALTHY)
    if phase == "Lost":
        return HealthResult(HealthStatus.DEGRADED, "claim lost its volume")
    return HealthResult(HealthStatus.PROGRESSING, "Waiting for volume to be bound")


def pv_health(obj: dict[str, Any]) -> HealthResult:
    phase = _status(obj).get("phase")
    if phase in ("Bound", "Available"):
        return HealthResult(HealthStatus.HEALTHY)
    if phase in ("Released", "Failed"):
        return HealthResult(HealthStatus.DEGRADED, f"volume is {phase}")
    return HealthResult(HealthStatus.PROGRESSING, "Waiting for volume")


def _load_balancer_health(obj: dict[str, Any]) -> HealthResult:
    if (_status(obj).get("loadBalancer") or {}).get("ingress"):
        return HealthResult(HealthStatus.HEALTHY)
    return HealthResult(HealthStatus.PROGRESSING, "Waiting for load balancer address")


def service_health(obj: dict[str, Any]) -> HealthResult:
    if (obj.get("spec") or {}).get("type") == "LoadBalancer":
        return _load_balancer_health(obj)
    return HealthResult(HealthStatus.HEALTHY)


def ingress_health(obj: dict[str, Any]) -> HealthResult:
    return _load_balancer_health(obj)


def hpa_health(obj: dict[str, Any]) -> HealthResult:
    conditions = _status(obj).get("conditions") or []
    if not conditions:
        return HealthResult(HealthStatus.PROGRESSING, "Waiting to autoscale")
    for cond in conditions:
        if cond.get("status") == "False" and str(cond.get("reason", "")).startswith("Failed"):
            return HealthResult(HealthStatus.DEGRADED, cond.get("message", cond["reason"]))
    return HealthResult(HealthStatus.HEALTHY)


def apiservice_health(obj: dict[str, Any]) -> HealthResult:
    available = _condition(obj, "Available")
    if available is None:
        return HealthResult(HealthStatus.PROGRESSING, "Waiting for APIService availability")
    if available.get("status") == "True":
        return HealthResult(HealthStatus.HEALTHY)
    return HealthResult(HealthStatus.PROGRESSING, available.get("message", "APIService unavailable"))


def namespace_health(obj: dict[str, Any]) -> HealthResult:
    if _status(obj).get("phase") == "Terminating":
        return HealthResult(HealthStatus.PROGRESSING, "Namespace is terminating")
    return HealthResult(HealthStatus.HEALTHY)


def application_health(obj: dict[str, Any]) -> HealthResult:
    """A child Application is as healthy as it reports itself."""
    health = _status(obj).get("health") or {}
    raw = health.get("status")
    if not raw:
        return HealthResult(HealthStatus.PROGRESSING, "Waiting for Application to report health")
    try:
        return HealthResult(HealthStatus(raw), health.get("message", ""))
    except ValueError:
        return HealthResult(HealthStatus.UNKNOWN, f"unknown health {raw!r}")


def sealed_secret_health(obj: dict[str, Any]) -> HealthResult:
    """Healthy once the decrypting controller reports Synced=True."""
    synced = _condition(obj, "Synced")
    if synced is None:
        return HealthResult(HealthStatus.PROGRESSING, "Waiting for secret to be unsealed")
    if synced.get("status") == "True":
        return HealthResult(HealthStatus.HEALTHY)
    return HealthResult(HealthStatus.DEGRADED, synced.get("message", "secret could not be unsealed"))


BUILTIN_RULES: dict[tuple[str, str], Callable[[dict[str, Any]], HealthResult]] = {
    ("apps", "Deployment"): deployment_health,
    ("apps", "StatefulSet"): statefulset_health,
    ("apps", "DaemonSet"): daemonset_health,
    ("apps", "ReplicaSet"): replicaset_health,
    ("", "Pod"): pod_health,
    ("batch", "Job"): job_health,
    ("batch", "CronJob"): cronjob_health,
    ("", "PersistentVolumeClaim"): pvc_health,
    ("", "PersistentVolume"): pv_health,
    ("", "Service"): service_health,
    ("networking.k8s.io", "Ingress"): ingress_health,
    ("autoscaling", "HorizontalPodAutoscaler"): hpa_health,
    ("apiregistration.k8s.io", "APIService"): apiservice_health,
    ("", "Namespace"): namespace_health,
    (APPLICATION_GROUP, APPLICATION_KIND): application_health,
    ("bitnami.com", "SealedSecret"): sealed_secret_health,
}


# =============================================================================
# DECLARATIVE RULES
# =============================================================================


def rule_from_spec(spec: HealthRuleSpec) -> Callable[[dict[str, Any]], HealthResult]:
    """Build an evaluator from a HealthRuleSpec (see appsync.config)."""

    def evaluate(obj: dict[str, Any]) -> HealthResult:
        if spec.condition_type:
            cond = _condition(obj, spec.condition_type)
            if cond is not None and cond.get("status") == "True":
                return HealthResult(HealthStatus.HEALTHY, cond.get("message", ""))
            if cond is not None and cond.get("status") == "False" and spec.condition_false_degraded:
                return HealthResult(HealthStatus.DEGRADED, cond.get("message", ""))
            return HealthResult(HealthStatus.PROGRESSING, f"Waiting for condition {spec.condition_type}")
        if spec.status_field:
            value = _lookup(_status(obj), spec.status_field)
            text = "" if value is None else str(value)
            if text in spec.healthy_values:
                return HealthResult(HealthStatus.HEALTHY)
            if text in spec.degraded_values:
                return HealthResult(HealthStatus.DEGRADED, f"{spec.status_field}={text}")
            if not spec.progressing_values or text in spec.progressing_values:
                return HealthResult(HealthStatus.PROGRESSING, f"{spec.status_field}={text}")
            return HealthResult(HealthStatus.UNKNOWN, f"unexpected {spec.status_field}={text}")
        return HealthResult(HealthStatus.HEALTHY)

    return evaluate


# =============================================================================
# REGISTRY AND EVALUATOR
# =============================================================================


class HealthRegistry:
    """(group, kind) -> health rule. User registrations override built-ins."""

    def __init__(self, rules: Iterable[HealthRuleSpec] = ()) -> None:
        self._rules: dict[tuple[str, str], Callable[[dict[str, Any]], HealthResult]] = dict(BUILTIN_RULES)
        for spec in rules:
            self.register_rule(spec)

    def register(self, group: str, kind: str, rule: Callable[[dict[str, Any]], HealthResult]) -> None:
        self._rules[(group, kind)] = rule

    def register_rule(self, spec: HealthRuleSpec) -> None:
        self.register(spec.group, spec.kind, rule_from_spec(spec))

    def lookup(self, group: str, kind: str) -> Callable[[dict[str, Any]], HealthResult] | None:
        return self._rules.get((group, kind))

    def has_rule(self, group: str, kind: str) -> bool:
        return (group, kind) in self._rules


class HealthEvaluator:
    """Evaluates one resource's health from its live object."""

    def __init__(self, registry: HealthRegistry | None = None) -> None:
        self.registry = registry or HealthRegistry()

    def evaluate(
        self,
        key: ResourceKey,
        live: dict[str, Any] | None,
        require_rule: bool = False,
    ) -> HealthResult:
        """
        Evaluate health.

        Args:
            key: Resource identity (selects the rule)
            live: Live object, or None when it has not been observed
            require_rule: Report Unknown when no rule is registered

        Returns:
            HealthResult. A rule that raises yields Unknown with its message.
        """
        if live is None:
            return HealthResult(HealthStatus.MISSING, "resource not found in cluster")
        if (live.get("metadata") or {}).get("deletionTimestamp"):
            return HealthResult(HealthStatus.PROGRESSING, "Pending deletion")
        rule = self.registry.lookup(key.group, key.kind)
        if rule is None:
            if require_rule:
                return HealthResult(HealthStatus.UNKNOWN, f"no health rule for {key.group}/{key.kind}")
            return HealthResult(HealthStatus.HEALTHY)
        try:
            return rule(live)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            return HealthResult(HealthStatus.UNKNOWN, f"health rule failed: {e}")
