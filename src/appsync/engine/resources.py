# ABOUTME: Desired-resource wrapper reading the sync annotations from a rendered manifest
# ABOUTME: Tracking-label helpers and JSON pointer removal shared by diff, prune and cascade

"""
Rendered resources and the annotations that steer them.

Every manifest produced by the renderer is wrapped in a Resource, which reads
the annotations once:

    argocd.argoproj.io/sync-wave           -> wave (int, default 0)
    argocd.argoproj.io/hook                -> hook phases
    argocd.argoproj.io/hook-delete-policy  -> when a hook is deleted
    argocd.argoproj.io/sync-options        -> Prune=false, Delete=false, ...
    argocd.argoproj.io/ignore-differences  -> JSON pointers excluded from diff

Ownership is tracked with the `app.kubernetes.io/instance` label.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from appsync.errors import RenderError
from appsync.models import (
    APPLICATION_GROUP,
    APPLICATION_KIND,
    HookDeletePolicy,
    HookType,
    ResourceKey,
)

# =============================================================================
# ANNOTATIONS AND LABELS
# =============================================================================

ANNOTATION_SYNC_WAVE = "argocd.argoproj.io/sync-wave"
ANNOTATION_HOOK = "argocd.argoproj.io/hook"
ANNOTATION_HOOK_DELETE_POLICY = "argocd.argoproj.io/hook-delete-policy"
ANNOTATION_SYNC_OPTIONS = "argocd.argoproj.io/sync-options"
ANNOTATION_IGNORE_DIFFERENCES = "argocd.argoproj.io/ignore-differences"
LABEL_TRACKING = "app.kubernetes.io/instance"

# Kinds that are never namespaced, used when the cluster cannot be asked.
CLUSTER_SCOPED_KINDS = frozenset(
    {
        ("", "Namespace"),
        ("", "Node"),
        ("", "PersistentVolume"),
        ("apiextensions.k8s.io", "CustomResourceDefinition"),
        ("rbac.authorization.k8s.io", "ClusterRole"),
        ("rbac.authorization.k8s.io", "ClusterRoleBinding"),
        ("storage.k8s.io", "StorageClass"),
        ("apiregistration.k8s.io", "APIService"),
        ("admissionregistration.k8s.io", "MutatingWebhookConfiguration"),
        ("admissionregistration.k8s.io", "ValidatingWebhookConfiguration"),
        ("scheduling.k8s.io", "PriorityClass"),
    }
)


def parse_options(value: str | None) -> dict[str, str]:
    """Parse "Prune=false,SkipHealthGate=true" into {"Prune": "false", ...}."""
    options: dict[str, str] = {}
    for entry in (value or "").split(","):
        name, sep, opt = entry.partition("=")
        if sep and name.strip():
            options[name.strip()] = opt.strip()
    return options


def _split(value: str | None) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


# =============================================================================
# RESOURCE
# =============================================================================


@dataclass(frozen=True)
class Resource:
    """
    A desired resource for one cycle.

    The manifest is immutable for the lifetime of the cycle; every consumer
    receives copies.
    """

    key: ResourceKey
    manifest: dict[str, Any]
    wave: int = 0
    hook_types: tuple[HookType, ...] = ()
    delete_policies: tuple[HookDeletePolicy, ...] = (HookDeletePolicy.BEFORE_HOOK_CREATION,)
    options: dict[str, str] = field(default_factory=dict)
    ignore_pointers: tuple[str, ...] = ()

    @classmethod
    def from_manifest(
        cls,
        manifest: dict[str, Any],
        default_namespace: str = "",
        namespaced: bool = True,
    ) -> Resource:
        """
        Wrap a rendered manifest.

        Namespaced resources without a namespace get `default_namespace`;
        cluster-scoped resources never carry one.

        Raises:
            RenderError: the sync-wave, hook or hook-delete-policy annotation
                         is invalid.
        """
        manifest = copy.deepcopy(manifest)
        metadata = manifest.setdefault("metadata", {})
        if namespaced:
            if not metadata.get("namespace") and default_namespace:
                metadata["namespace"] = default_namespace
        else:
            metadata.pop("namespace", None)
        key = ResourceKey.from_manifest(manifest)
        annotations = metadata.get("annotations") or {}

        raw_wave = annotations.get(ANNOTATION_SYNC_WAVE, "0")
        try:
            wave = int(str(raw_wave).strip())
        except ValueError:
            raise RenderError(
                f"invalid {ANNOTATION_SYNC_WAVE} annotation {raw_wave!r}", resource=key
            ) from None

        try:
            hooks = tuple(HookType(h) for h in _split(annotations.get(ANNOTATION_HOOK)))
            policies = tuple(
                HookDeletePolicy(p) for p in _split(annotations.get(ANNOTATION_HOOK_DELETE_POLICY))
            )
        except ValueError as e:
            raise RenderError(f"invalid hook annotation: {e}", resource=key) from None

        return cls(
            key=key,
            manifest=manifest,
            wave=wave,
            hook_types=hooks,
            delete_policies=policies or (HookDeletePolicy.BEFORE_HOOK_CREATION,),
            options=parse_options(annotations.get(ANNOTATION_SYNC_OPTIONS)),
            ignore_pointers=tuple(_split(annotations.get(ANNOTATION_IGNORE_DIFFERENCES))),
        )

    # -------------------------------------------------------------------------
    # FLAGS
    # -------------------------------------------------------------------------

    @property
    def skipped(self) -> bool:
        """Hook=Skip: never applied, never pruned."""
        return HookType.SKIP in self.hook_types

    @property
    def is_hook(self) -> bool:
        return bool(self.hook_types) and not self.skipped

    def hook_in(self, phase: HookType) -> bool:
        return self.is_hook and phase in self.hook_types

    def _option(self, name: str, value: str) -> bool:
        return self.options.get(name, "").lower() == value

    @property
    def prune_protected(self) -> bool:
        return self._option("Prune", "false")

    @property
    def delete_protected(self) -> bool:
        return self._option("Delete", "false")

    @property
    def skip_health_gate(self) -> bool:
        return self._option("SkipHealthGate", "true")

    @property
    def require_healthy(self) -> bool:
        return self._option("RequireHealthy", "true")

    @property
    def require_health_rule(self) -> bool:
        return self._option("RequireHealthRule", "true")

    @property
    def is_application(self) -> bool:
        return self.key.group_kind == (APPLICATION_GROUP, APPLICATION_KIND)

    def copy_manifest(self) -> dict[str, Any]:
        return copy.deepcopy(self.manifest)


def live_options(obj: dict[str, Any]) -> dict[str, str]:
    """Sync options annotation of a live object."""
    annotations = (obj.get("metadata") or {}).get("annotations") or {}
    return parse_options(annotations.get(ANNOTATION_SYNC_OPTIONS))


def live_is_hook(obj: dict[str, Any]) -> bool:
    annotations = (obj.get("metadata") or {}).get("annotations") or {}
    return bool(_split(annotations.get(ANNOTATION_HOOK)))


def live_wave(obj: dict[str, Any]) -> int:
    annotations = (obj.get("metadata") or {}).get("annotations") or {}
    try:
        return int(str(annotations.get(ANNOTATION_SYNC_WAVE, "0")).strip())
    except ValueError:
        return 0


# =============================================================================
# TRACKING LABEL
# =============================================================================


def with_tracking(manifest: dict[str, Any], app_name: str) -> dict[str, Any]:
    """Return a copy of manifest labelled as owned by app_name."""
    out = copy.deepcopy(manifest)
    labels = out.setdefault("metadata", {}).setdefault("labels", {})
    labels[LABEL_TRACKING] = app_name
    return out


def tracking_of(obj: dict[str, Any]) -> str | None:
    labels = (obj.get("metadata") or {}).get("labels") or {}
    return labels.get(LABEL_TRACKING)


def tracking_selector(app_name: str) -> str:
    return f"{LABEL_TRACKING}={app_name}"


# =============================================================================
# JSON POINTERS
# =============================================================================


def _unescape(token: str) -> str:
    return token.replace("~1", "/").replace("~0", "~")


def remove_pointer(obj: Any, pointer: str) -> None:
    """
    Remove the value at an RFC 6901 JSON pointer, in place.

    Missing paths are ignored.
    """
    if not pointer or pointer == "/":
        return
    tokens = [_unescape(t) for t in pointer.lstrip("/").split("/")]
    target = obj
    for token in tokens[:-1]:
        if isinstance(target, dict):
            target = target.get(token)
        elif isinstance(target, list) and token.isdigit() and int(token) < len(target):
            target = target[int(token)]
        else:
            return
        if target is None:
            return
    last = tokens[-1]
    if isinstance(target, dict):
        target.pop(last, None)
    elif isinstance(target, list) and last.isdigit() and int(last) < len(target):
        del target[int(last)]


def namespace_manifest(name: str) -> dict[str, Any]:
    """Minimal Namespace manifest, used by CreateNamespace=true."""
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}
