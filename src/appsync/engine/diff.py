# ABOUTME: Desired versus live comparison producing per-resource actions
# ABOUTME: Normalizes server-managed fields, applies ignore rules and classifies create/update/prune

"""
Diff engine.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

DiffEngine.compare() takes the desired resources of one Application and a
snapshot of live state and classifies every resource:

    CREATE         desired, not live
    UPDATE         desired and live, some desired field differs
    UNCHANGED      desired and live, equal
    PRUNE          live and tracked by the app, no longer desired
    PRUNE_SKIPPED  as PRUNE, but protected with Prune=false

It is a pure function of its inputs: nothing is mutated, nothing is written,
so it serves dry runs and status computation as well as syncs.

=============================================================================
SUBSET COMPARISON
=============================================================================

The API server fills in defaults (imagePullPolicy, terminationGracePeriodSeconds,
...). Comparing whole objects would report drift forever. Instead every field
SET IN DESIRED must be equal in live; fields only live has are ignored. Lists
are compared element by element and must have the same length.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from appsync.engine.resources import (
    live_is_hook,
    live_options,
    live_wave,
    remove_pointer,
    tracking_of,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from appsync.engine.resources import Resource
    from appsync.models import IgnoreDifference, ResourceKey

# metadata fields owned by the API server.
SERVER_METADATA = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "managedFields",
    "selfLink",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
    "ownerReferences",
)
LAST_APPLIED = "kubectl.kubernetes.io/last-applied-configuration"


class DiffAction(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    UNCHANGED = "Unchanged"
    PRUNE = "Prune"
    PRUNE_SKIPPED = "PruneSkipped"


@dataclass
class ResourceDiff:
    """Comparison outcome for one resource."""

    key: ResourceKey
    action: DiffAction
    desired: Resource | None = None
    live: dict[str, Any] | None = None
    paths: list[str] = field(default_factory=list)
    shared_with: str | None = None

    @property
    def wave(self) -> int:
        if self.desired is not None:
            return self.desired.wave
        return live_wave(self.live or {})


@dataclass
class DiffResult:
    items: list[ResourceDiff] = field(default_factory=list)

    def by_action(self, *actions: DiffAction) -> list[ResourceDiff]:
        return [d for d in self.items if d.action in actions]

    @property
    def changes(self) -> list[ResourceDiff]:
        """Resources that need an apply."""
        return self.by_action(DiffAction.CREATE, DiffAction.UPDATE)

    @property
    def prunable(self) -> list[ResourceDiff]:
        return self.by_action(DiffAction.PRUNE)

    @property
    def protected(self) -> list[ResourceDiff]:
        return self.by_action(DiffAction.PRUNE_SKIPPED)

    @property
    def in_sync(self) -> bool:
        return all(d.action == DiffAction.UNCHANGED for d in self.items)

    @property
    def shared(self) -> list[ResourceDiff]:
        return [d for d in self.items if d.shared_with]

    def get(self, key: ResourceKey) -> ResourceDiff | None:
        for d in self.items:
            if d.key == key:
                return d
        return None


# =============================================================================
# NORMALIZATION
# =============================================================================


def normalize(obj: dict[str, Any], pointers: Iterable[str] = ()) -> dict[str, Any]:
    """
    Copy of obj without server-managed fields and without ignored paths.

    Drops status, the server-owned metadata fields, the last-applied
    annotation, and generateName when a name is present.
    """
    out = copy.deepcopy(obj)
    out.pop("status", None)
    metadata = out.get("metadata")
    if isinstance(metadata, dict):
        for name in SERVER_METADATA:
            metadata.pop(name, None)
        if metadata.get("name"):
            metadata.pop("generateName", None)
        annotations = metadata.get("annotations")
        if isinstance(annotations, dict):
            annotations.pop(LAST_APPLIED, None)
            if not annotations:
                metadata.pop("annotations")
    for pointer in pointers:
        remove_pointer(out, pointer)
    return out


def _empty(value: Any) -> bool:
    return value is None or value == {} or value == []


def diff_paths(desired: Any, live: Any, path: str = "") -> list[str]:
    """JSON-pointer paths where desired is not a subset of live."""
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return [] if _empty(desired) and live is None else [path or "/"]
        out: list[str] = []
        for key, value in desired.items():
            token = str(key).replace("~", "~0").replace("/", "~1")
            if key not in live:
                if not _empty(value):
                    out.append(f"{path}/{token}")
                continue
            out.extend(diff_paths(value, live[key], f"{path}/{token}"))
        return out
    if isinstance(desired, list):
        if not isinstance(live, list) or len(live) != len(desired):
            return [] if not desired and live is None else [path or "/"]
        out = []
        for i, (d, lv) in enumerate(zip(desired, live, strict=True)):
            out.extend(diff_paths(d, lv, f"{path}/{i}"))
        return out
    if desired != live:
        return [path or "/"]
    return []


# =============================================================================
# DIFF ENGINE
# =============================================================================


class DiffEngine:
    """Compares an Application's desired resources with live state."""

    def __init__(self, ignore_differences: Iterable[IgnoreDifference] = ()) -> None:
        self._ignore = list(ignore_differences)

    def pointers_for(self, resource_key: ResourceKey, extra: Iterable[str] = ()) -> list[str]:
        pointers = [p for rule in self._ignore if rule.matches(resource_key) for p in rule.json_pointers]
        pointers.extend(extra)
        return pointers

    def compare_one(self, desired: Resource, live: dict[str, Any] | None) -> ResourceDiff:
        if live is None:
            return ResourceDiff(desired.key, DiffAction.CREATE, desired=desired)
        pointers = self.pointers_for(desired.key, desired.ignore_pointers)
        paths = diff_paths(normalize(desired.manifest, pointers), normalize(live, pointers))
        action = DiffAction.UPDATE if paths else DiffAction.UNCHANGED
        return ResourceDiff(desired.key, action, desired=desired, live=live, paths=paths)

    def compare(
        self,
        desired: Iterable[Resource],
        live: Mapping[ResourceKey, dict[str, Any]],
        app_name: str,
    ) -> DiffResult:
        """
        Classify every desired resource and every tracked live resource.

        Hooks and Hook=Skip resources are never compared and never pruned.

        Args:
            desired: Resources rendered for this cycle
            live: Live snapshot (any superset of the tracked objects)
            app_name: Owning Application, matched against the tracking label

        Returns:
            DiffResult, ordered desired-first then prune candidates.
        """
        result = DiffResult()
        desired_keys: set[ResourceKey] = set()
        for resource in desired:
            desired_keys.add(resource.key)
            if resource.is_hook or resource.skipped:
                continue
            live_obj = live.get(resource.key)
            item = self.compare_one(resource, live_obj)
            owner = tracking_of(live_obj) if live_obj is not None else None
            if owner and owner != app_name:
                item.shared_with = owner
            result.items.append(item)

        for key, live_obj in sorted(live.items()):
            if key in desired_keys or tracking_of(live_obj) != app_name:
                continue
            if live_is_hook(live_obj):
                continue
            protected = live_options(live_obj).get("Prune", "").lower() == "false"
            action = DiffAction.PRUNE_SKIPPED if protected else DiffAction.PRUNE
            result.items.append(ResourceDiff(key, action, live=live_obj))
        return result
