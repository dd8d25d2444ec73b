# ABOUTME: Source checkout and manifest rendering (plain YAML, Kustomize, Helm)
# ABOUTME: Resolves revisions with git, invokes external renderers and caches rendered output

"""
Source checkout and rendering.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Turning an Application's `source` into a list of manifests takes two steps:

1. CHECKOUT (SourceRepository)
   - local paths and file:// URLs are used in place; the revision is the
     git commit of the working tree, or a content hash when it is not a repo
   - remote URLs are cloned once into the cache directory, fetched on every
     resolve, and each resolved commit gets its own detached worktree so
     concurrent Applications at different revisions never share files

2. RENDER (Renderer)
   - KustomizeRenderer when the path has a kustomization file
   - HelmRenderer when the path has Chart.yaml or source.chart is set
   - DirectoryRenderer otherwise (YAML/JSON files, recurse, include/exclude)

The template languages themselves are never reimplemented: `kustomize build`
and `helm template` are run as subprocesses.

=============================================================================
SELF-INCLUSION
=============================================================================

An "app of apps" parent renders its children's Application manifests. If the
parent's own manifest lives in the same directory it would render itself and
recurse forever. RenderService drops any rendered Application whose identity
equals the owning Application.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import tempfile
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
import yaml

from appsync.engine.resources import CLUSTER_SCOPED_KINDS
from appsync.errors import RenderError
from appsync.models import APPLICATION_KIND, group_of

if TYPE_CHECKING:
    from appsync.models import Application, ApplicationSource

logger = structlog.get_logger(__name__)

KUSTOMIZATION_FILENAMES = ("kustomization.yaml", "kustomization.yml", "Kustomization")
MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")
RENDER_CACHE_SIZE = 128


# =============================================================================
# MANIFEST PARSING
# =============================================================================


class ManifestLoader(yaml.SafeLoader):
    """SafeLoader that keeps timestamps as strings, as the API server stores them."""


ManifestLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != "tag:yaml.org,2002:timestamp"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def json_copy(manifests: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Deep copy of manifests restricted to JSON types.

    Raises:
        RenderError: a value has no JSON form (e.g. an explicit !!timestamp or !!binary)
    """
    try:
        return json.loads(json.dumps(manifests))
    except (TypeError, ValueError) as e:
        raise RenderError("rendered manifests contain a value that is not valid JSON", details=str(e)) from e


def expand_braces(pattern: str) -> list[str]:
    """
    Expand shell brace alternatives: "*.{yaml,yml}" -> ["*.yaml", "*.yml"].

    Nested braces are expanded recursively; an unbalanced brace is literal.
    """
    start = pattern.find("{")
    if start < 0:
        return [pattern]
    depth = 0
    for end in range(start, len(pattern)):
        if pattern[end] == "{":
            depth += 1
        elif pattern[end] == "}":
            depth -= 1
            if depth == 0:
                break
    else:
        return [pattern]
    body = pattern[start + 1 : end]
    options: list[str] = []
    current = ""
    depth = 0
    for ch in body:
        if ch == "," and depth == 0:
            options.append(current)
            current = ""
            continue
        depth += ch == "{"
        depth -= ch == "}"
        current += ch
    options.append(current)
    prefix, suffix = pattern[:start], pattern[end + 1 :]
    return [e for opt in options for e in expand_braces(prefix + opt + suffix)]


def parse_manifests(text: str, source: str = "") -> list[dict[str, Any]]:
    """
    Parse a multi-document YAML (or JSON) stream into manifests.

    Empty documents are skipped and `kind: *List` documents are flattened.

    Raises:
        RenderError: invalid YAML, or a document that is not a mapping with
                     apiVersion and kind.
    """
    try:
        documents = list(yaml.load_all(text, Loader=ManifestLoader))
    except yaml.YAMLError as e:
        raise RenderError(f"failed to parse {source or 'manifests'}", details=str(e)) from e
    manifests: list[dict[str, Any]] = []
    for doc in documents:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise RenderError(f"{source or 'manifest'}: document is not a mapping")
        if str(doc.get("kind", "")).endswith("List") and isinstance(doc.get("items"), list):
            manifests.extend(parse_manifests(yaml.safe_dump_all(doc["items"]), source))
            continue
        if not doc.get("apiVersion") or not doc.get("kind"):
            raise RenderError(f"{source or 'manifest'}: apiVersion and kind are required")
        manifests.append(doc)
    return manifests


# =============================================================================
# SUBPROCESS
# =============================================================================


async def run_command(
    args: list[str],
    cwd: Path | None = None,
    timeout: float = 90.0,
    stdin: bytes | None = None,
) -> str:
    """
    Run an external binary and return its stdout.

    Raises:
        RenderError: binary missing, non-zero exit or timeout.
    """
    log = logger.bind(command=args[0], args=args[1:3])
    log.debug("Running command")
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise RenderError(f"{args[0]} binary not found in PATH") from e
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(stdin), timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        raise RenderError(f"{args[0]} {args[1] if len(args) > 1 else ''} timed out after {timeout}s") from None
    if proc.returncode != 0:
        message = stderr.decode(errors="replace").strip()
        log.warning("Command failed", returncode=proc.returncode, stderr=message[:200])
        raise RenderError(f"{args[0]} {args[1] if len(args) > 1 else ''} failed", details=message[:500])
    return stdout.decode()


# =============================================================================
# CHECKOUT
# =============================================================================


@dataclass(frozen=True)
class Checkout:
    """A resolved source: the revision and the directory holding it."""

    revision: str
    root: Path | None


def _is_local(repo_url: str) -> bool:
    return repo_url.startswith(("/", "./", "../", "file://")) or repo_url in (".", "")


def _local_path(repo_url: str) -> Path:
    return Path(repo_url.removeprefix("file://") or ".").resolve()


def content_hash(path: Path) -> str:
    """Stable hash of every file under path (names and contents)."""
    digest = hashlib.sha256()
    files = [path] if path.is_file() else sorted(p for p in path.rglob("*") if p.is_file())
    for file in files:
        if ".git" in file.parts:
            continue
        digest.update(str(file.relative_to(path.parent if path.is_file() else path)).encode())
        digest.update(b"\0")
        digest.update(file.read_bytes())
    return digest.hexdigest()[:12]


class SourceRepository:
    """Resolves source revisions and provides checkouts."""

    def __init__(
        self,
        cache_dir: Path | None = None,
        git_binary: str = "git",
        timeout: float = 90.0,
    ) -> None:
        self._cache_dir = cache_dir or Path(tempfile.gettempdir()) / "appsync-repos"
        self._git = git_binary
        self._timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}

    async def git(self, *args: str, cwd: Path | None = None) -> str:
        return (await run_command([self._git, *args], cwd=cwd, timeout=self._timeout)).strip()

    async def resolve(self, source: ApplicationSource) -> Checkout:
        """
        Resolve source.targetRevision to an immutable revision and a directory.

        Helm chart sources (source.chart) have no checkout; their revision is
        the chart version.

        Raises:
            RenderError: the repository or revision cannot be resolved.
        """
        if source.chart:
            return Checkout(revision=source.target_revision, root=None)
        if _is_local(source.repo_url):
            return await self._resolve_local(source)
        return await self._resolve_remote(source)

    async def _resolve_local(self, source: ApplicationSource) -> Checkout:
        root = _local_path(source.repo_url)
        if not root.exists():
            raise RenderError(f"repository path {root} does not exist")
        if (root / ".git").exists():
            revision = source.target_revision
            sha = await self.git("rev-parse", f"{revision}^{{commit}}", cwd=root)
            if (root / source.path).exists():
                # Working tree edits count as a new revision.
                dirty = await self.git("status", "--porcelain", "--", source.path, cwd=root)
                if dirty:
                    digest = await asyncio.to_thread(content_hash, root / source.path)
                    sha = f"{sha[:12]}+{digest}"
            return Checkout(revision=sha, root=root)
        target = root / source.path
        if not target.exists():
            raise RenderError(f"app path {source.path} does not exist in {root}")
        return Checkout(revision=await asyncio.to_thread(content_hash, target), root=root)

    async def _resolve_remote(self, source: ApplicationSource) -> Checkout:
        url = source.repo_url
        repo_dir = self._cache_dir / hashlib.sha256(url.encode()).hexdigest()[:16]
        lock = self._locks.setdefault(url, asyncio.Lock())
        async with lock:
            if not (repo_dir / "HEAD").exists():
                repo_dir.parent.mkdir(parents=True, exist_ok=True)
                await self.git("clone", "--bare", "--quiet", url, str(repo_dir))
            await self.git("fetch", "--quiet", "--prune", "origin", source.target_revision, cwd=repo_dir)
            sha = await self.git("rev-parse", "FETCH_HEAD^{commit}", cwd=repo_dir)
            worktree = repo_dir.parent / f"{repo_dir.name}-{sha[:12]}"
            if not worktree.exists():
                await self.git("worktree", "add", "--detach", "--force", str(worktree), sha, cwd=repo_dir)
        logger.debug("Resolved remote revision", repo=url, revision=sha)
        return Checkout(revision=sha, root=worktree)


# =============================================================================
# RENDERERS
# =============================================================================


class Renderer(ABC):
    """Turns a directory of templates into manifests."""

    name = "renderer"

    @abstractmethod
    async def render(
        self,
        directory: Path | None,
        source: ApplicationSource,
        app: Application,
    ) -> list[dict[str, Any]]:
        """Render manifests. Deterministic; raises RenderError."""


class DirectoryRenderer(Renderer):
    """Plain YAML/JSON files, optionally recursive, with include/exclude globs."""

    name = "directory"

    @staticmethod
    def _matches(patterns: list[str], rel: str) -> bool:
        name = rel.rsplit("/", 1)[-1]
        for pattern in patterns:
            for expanded in expand_braces(pattern):
                if fnmatchcase(rel, expanded) or fnmatchcase(name, expanded):
                    return True
        return False

    def files(self, directory: Path, source: ApplicationSource) -> list[Path]:
        options = source.directory
        recurse = options.recurse if options else False
        include = options.include if options else []
        exclude = options.exclude if options else []
        candidates = directory.rglob("*") if recurse else directory.glob("*")
        selected = []
        for path in candidates:
            if not path.is_file() or path.suffix not in MANIFEST_SUFFIXES:
                continue
            rel = path.relative_to(directory).as_posix()
            if any(part.startswith(".") for part in rel.split("/")):
                continue
            if include and not self._matches(include, rel):
                continue
            if exclude and self._matches(exclude, rel):
                continue
            selected.append(path)
        return sorted(selected)

    def load(self, directory: Path | None, source: ApplicationSource) -> list[dict[str, Any]]:
        if directory is None or not directory.is_dir():
            raise RenderError(f"app path {source.path} is not a directory")
        manifests: list[dict[str, Any]] = []
        for path in self.files(directory, source):
            rel = path.relative_to(directory).as_posix()
            manifests.extend(parse_manifests(path.read_text(), rel))
        return manifests

    async def render(
        self,
        directory: Path | None,
        source: ApplicationSource,
        app: Application,
    ) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self.load, directory, source)


class KustomizeRenderer(Renderer):
    """`kustomize build`, plus the Application's kustomize overrides."""

    name = "kustomize"

    def __init__(self, binary: str = "kustomize", timeout: float = 90.0) -> None:
        self._binary = binary
        self._timeout = timeout

    @staticmethod
    def detect(directory: Path | None) -> bool:
        return directory is not None and any((directory / f).is_file() for f in KUSTOMIZATION_FILENAMES)

    async def render(
        self,
        directory: Path | None,
        source: ApplicationSource,
        app: Application,
    ) -> list[dict[str, Any]]:
        if directory is None:
            raise RenderError("kustomize source requires a path")
        output = await run_command([self._binary, "build", str(directory)], timeout=self._timeout)
        manifests = parse_manifests(output, f"kustomize build {source.path}")
        options = source.kustomize
        if options is None:
            return manifests
        for manifest in manifests:
            metadata = manifest.setdefault("metadata", {})
            if options.common_labels:
                metadata.setdefault("labels", {}).update(options.common_labels)
            if options.common_annotations:
                metadata.setdefault("annotations", {}).update(options.common_annotations)
            group_kind = (group_of(manifest.get("apiVersion", "")), manifest.get("kind", ""))
            if options.namespace and group_kind not in CLUSTER_SCOPED_KINDS:
                metadata["namespace"] = options.namespace
        return manifests


class HelmRenderer(Renderer):
    """`helm template` for a chart directory or a chart from a Helm repository."""

    name = "helm"

    def __init__(self, binary: str = "helm", timeout: float = 90.0) -> None:
        self._binary = binary
        self._timeout = timeout

    @staticmethod
    def detect(directory: Path | None, source: ApplicationSource) -> bool:
        return bool(source.chart) or (directory is not None and (directory / "Chart.yaml").is_file())

    async def render(
        self,
        directory: Path | None,
        source: ApplicationSource,
        app: Application,
    ) -> list[dict[str, Any]]:
        helm = source.helm
        release = (helm.release_name if helm else None) or app.name
        args = [self._binary, "template", release]
        if source.chart:
            args += [source.chart, "--repo", source.repo_url, "--version", source.target_revision]
        else:
            args.append(str(directory))
        if app.spec.destination.namespace:
            args += ["--namespace", app.spec.destination.namespace]

        with tempfile.TemporaryDirectory(prefix="appsync-helm-") as tmp:
            if helm:
                for value_file in helm.value_files:
                    args += ["--values", value_file]
                if helm.values:
                    inline = Path(tmp) / "values.yaml"
                    values = helm.values if isinstance(helm.values, str) else yaml.safe_dump(helm.values)
                    inline.write_text(values)
                    args += ["--values", str(inline)]
                for param in helm.parameters:
                    args += ["--set", f"{param.name}={param.value}"]
            output = await run_command(args, cwd=directory, timeout=self._timeout)
        return parse_manifests(output, f"helm template {release}")


# =============================================================================
# RENDER SERVICE
# =============================================================================


@dataclass
class RenderedSource:
    revision: str
    manifests: list[dict[str, Any]] = field(default_factory=list)
    renderer: str = ""


class RenderService:
    """
    Resolve, render and cache an Application's source.

    USAGE:
    ------
        service = RenderService(SourceRepository(cache_dir))
        rendered = await service.render(app)
        rendered.revision      # "3f2c9a1..."
        rendered.manifests     # [{"apiVersion": "v1", ...}, ...]

    Output is cached by (repo, revision, path, renderer parameters), so
    periodic refreshes at an unchanged revision do not re-run renderers.
    """

    def __init__(
        self,
        repository: SourceRepository,
        kustomize: KustomizeRenderer | None = None,
        helm: HelmRenderer | None = None,
        directory: DirectoryRenderer | None = None,
    ) -> None:
        self.repository = repository
        self._kustomize = kustomize or KustomizeRenderer()
        self._helm = helm or HelmRenderer()
        self._directory = directory or DirectoryRenderer()
        self._cache: OrderedDict[str, list[dict[str, Any]]] = OrderedDict()

    def select(self, directory: Path | None, source: ApplicationSource) -> Renderer:
        if HelmRenderer.detect(directory, source):
            return self._helm
        if KustomizeRenderer.detect(directory):
            return self._kustomize
        return self._directory

    @staticmethod
    def _app_directory(checkout: Checkout, source: ApplicationSource) -> Path | None:
        if checkout.root is None:
            return None
        directory = (checkout.root / source.path).resolve()
        if directory != checkout.root.resolve() and checkout.root.resolve() not in directory.parents:
            raise RenderError(f"app path {source.path} escapes the repository")
        if not directory.exists():
            raise RenderError(f"app path {source.path} does not exist")
        return directory

    async def resolve(self, app: Application) -> Checkout:
        return await self.repository.resolve(app.spec.source)

    async def render(self, app: Application, checkout: Checkout | None = None) -> RenderedSource:
        """
        Render the Application's source at its current revision.

        Raises:
            RenderError: checkout or rendering failed.
        """
        source = app.spec.source
        checkout = checkout or await self.resolve(app)
        directory = self._app_directory(checkout, source)
        renderer = self.select(directory, source)
        cache_key = json.dumps(
            [
                source.repo_url,
                checkout.revision,
                source.path,
                source.render_params(),
                app.name,
                app.spec.destination.namespace,
            ],
            sort_keys=True,
        )
        manifests = self._cache.get(cache_key)
        if manifests is None:
            manifests = json_copy(await renderer.render(directory, source, app))
            self._cache[cache_key] = manifests
            if len(self._cache) > RENDER_CACHE_SIZE:
                self._cache.popitem(last=False)
            logger.info(
                "Rendered source",
                app=app.name,
                renderer=renderer.name,
                revision=checkout.revision,
                count=len(manifests),
            )
        else:
            self._cache.move_to_end(cache_key)
        return RenderedSource(
            revision=checkout.revision,
            manifests=[m for m in json_copy(manifests) if not self._is_self(m, app)],
            renderer=renderer.name,
        )

    @staticmethod
    def _is_self(manifest: dict[str, Any], app: Application) -> bool:
        if manifest.get("kind") != APPLICATION_KIND:
            return False
        metadata = manifest.get("metadata") or {}
        namespace = metadata.get("namespace") or app.namespace
        return metadata.get("name") == app.name and namespace == app.namespace


def default_cache_dir() -> Path:
    return Path(os.environ.get("XDG_CACHE_HOME", Path.home() / ".cache")) / "appsync" / "repos"
