# ABOUTME: Project RBAC gate checked before any other step of a reconciliation cycle
# ABOUTME: Glob matching with negation over source repos, destinations and resource kinds

"""Project RBAC gate."""

from __future__ import annotations

from fnmatch import fnmatchcase
from typing import TYPE_CHECKING

from appsync.errors import RBACDenied

if TYPE_CHECKING:
    from collections.abc import Iterable

    from appsync.engine.resources import Resource
    from appsync.models import AppProject, Application, GroupKind


def glob_match(pattern: str, value: str) -> bool:
    """Shell-style match (`*`, `?`, `[..]`)."""
    return fnmatchcase(value, pattern)


def matches_any(patterns: Iterable[str], value: str) -> bool:
    """
    Match value against a pattern list where `!pattern` entries deny.

    A value is permitted when at least one positive pattern matches and no
    negated pattern does.
    """
    allowed = False
    for pattern in patterns:
        if pattern.startswith("!"):
            if glob_match(pattern[1:], value):
                return False
        elif glob_match(pattern, value):
            allowed = True
    return allowed


def _group_kind_match(entries: Iterable[GroupKind], group: str, kind: str) -> bool:
    return any(glob_match(e.group or "", group) and glob_match(e.kind, kind) for e in entries)


class ProjectGate:
    """Checks an Application and its desired resources against its AppProject."""

    def check_source(self, app: Application, project: AppProject) -> None:
        repo = app.spec.source.repo_url
        if not matches_any(project.spec.source_repos, repo):
            raise RBACDenied(
                f"application repo {repo} is not permitted in project '{project.name}'"
            )

    def check_destination(self, app: Application, project: AppProject) -> None:
        dest = app.spec.destination
        for entry in project.spec.destinations:
            if entry.server and dest.server:
                target_ok = matches_any([entry.server], dest.server)
            elif entry.name and dest.name:
                target_ok = matches_any([entry.name], dest.name)
            else:
                target_ok = entry.server == "*" or entry.name == "*"
            if target_ok and matches_any([entry.namespace or "*"], dest.namespace):
                return
        target = dest.server or dest.name
        raise RBACDenied(
            f"application destination {{{target} {dest.namespace}}} is not permitted "
            f"in project '{project.name}'"
        )

    def check_resources(self, project: AppProject, resources: Iterable[Resource]) -> None:
        for resource in resources:
            group, kind = resource.key.group, resource.key.kind
            if not resource.key.namespace:
                if not _group_kind_match(project.spec.cluster_resource_whitelist, group, kind):
                    raise RBACDenied(
                        f"cluster-scoped resource {group}/{kind} is not permitted in project "
                        f"'{project.name}'",
                        resource=resource.key,
                    )
            elif _group_kind_match(project.spec.namespace_resource_blacklist, group, kind):
                raise RBACDenied(
                    f"resource {group}/{kind} is not permitted in project '{project.name}'",
                    resource=resource.key,
                )

    def check(
        self,
        app: Application,
        project: AppProject | None,
        desired: Iterable[Resource] | None = None,
    ) -> None:
        """
        Raise RBACDenied unless the project permits the Application.

        Called once without desired (before rendering) and once with it.
        """
        if project is None:
            raise RBACDenied(f"application references project {app.spec.project} which does not exist")
        self.check_source(app, project)
        self.check_destination(app, project)
        if desired is not None:
            self.check_resources(project, desired)
