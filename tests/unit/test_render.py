# ABOUTME: Unit tests for source checkout and rendering
# ABOUTME: Tests manifest parsing, directory selection, external renderers, revisions and the render cache

import asyncio
import shutil
import subprocess
import textwrap

import pytest

from appsync.engine.render import (
    DirectoryRenderer,
    HelmRenderer,
    KustomizeRenderer,
    RenderService,
    SourceRepository,
    content_hash,
    expand_braces,
    parse_manifests,
    run_command,
)
from appsync.errors import RenderError
from appsync.models import Application

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git binary not available")


def fake_binary(path, output):
    """Write an executable shell script that prints output (with "$*" expanded)."""
    path.write_text(f"#!/bin/sh\ncat <<EOF\n{textwrap.dedent(output).strip()}\nEOF\n")
    path.chmod(0o755)
    return str(path)


def application(k8s, source, path="guestbook", **kwargs):
    return Application.from_manifest(k8s.application("guestbook", source.url, path, dest_namespace="web", **kwargs))


class CountingRenderer(DirectoryRenderer):
    def __init__(self):
        self.calls = 0

    async def render(self, directory, source, app):
        self.calls += 1
        return await super().render(directory, source, app)


@pytest.mark.unit
class TestParsing:
    """Tests for expand_braces and parse_manifests."""

    def test_expand_braces(self):
        assert expand_braces("*.{yaml,yml}") == ["*.yaml", "*.yml"]
        assert expand_braces("{a,b/{c,d}}.yaml") == ["a.yaml", "b/c.yaml", "b/d.yaml"]
        assert expand_braces("plain.yaml") == ["plain.yaml"]
        assert expand_braces("broken{.yaml") == ["broken{.yaml"]

    def test_multi_document_and_lists(self):
        """Test that empty documents are skipped and List kinds are flattened."""
        text = textwrap.dedent(
            """
            apiVersion: v1
            kind: ConfigMap
            metadata: {name: a}
            ---
            ---
            apiVersion: v1
            kind: List
            items:
              - {apiVersion: v1, kind: ConfigMap, metadata: {name: b}}
              - {apiVersion: v1, kind: Secret, metadata: {name: c}}
            """
        )

        names = [m["metadata"]["name"] for m in parse_manifests(text)]

        assert names == ["a", "b", "c"]

    def test_json_document(self):
        manifests = parse_manifests('{"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "j"}}')

        assert manifests[0]["metadata"]["name"] == "j"

    def test_invalid_yaml(self):
        with pytest.raises(RenderError, match="failed to parse broken.yaml"):
            parse_manifests("key: [unclosed", "broken.yaml")

    def test_missing_kind(self):
        with pytest.raises(RenderError, match="apiVersion and kind are required"):
            parse_manifests("apiVersion: v1\nmetadata: {name: x}\n")

    def test_scalar_document(self):
        with pytest.raises(RenderError, match="not a mapping"):
            parse_manifests("just a string")

    def test_timestamps_kept_as_strings(self):
        manifests = parse_manifests(
            "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: x\n  annotations:\n    since: 2024-01-01\n"
        )

        assert manifests[0]["metadata"]["annotations"]["since"] == "2024-01-01"


@pytest.mark.unit
class TestRunCommand:
    """Tests for run_command."""

    async def test_stdout(self):
        assert (await run_command(["sh", "-c", "echo hello"])).strip() == "hello"

    async def test_failure_carries_stderr(self):
        with pytest.raises(RenderError) as exc_info:
            await run_command(["sh", "-c", "echo boom >&2; exit 3"])

        assert exc_info.value.details == "boom"

    async def test_missing_binary(self):
        with pytest.raises(RenderError, match="binary not found"):
            await run_command(["appsync-no-such-binary"])

    async def test_timeout(self):
        with pytest.raises(RenderError, match="timed out"):
            await run_command(["sh", "-c", "sleep 5"], timeout=0.1)


@pytest.mark.unit
class TestDirectoryRenderer:
    """Tests for DirectoryRenderer file selection."""

    @pytest.fixture
    def tree(self, source, k8s):
        source.write("app/a.yaml", k8s.config_map("a"))
        source.write("app/b.yml", k8s.config_map("b"))
        source.write("app/notes.txt", k8s.config_map("ignored"))
        source.write("app/.hidden.yaml", k8s.config_map("hidden"))
        source.write("app/nested/c.yaml", k8s.config_map("c"))
        return source.root / "app"

    async def _names(self, k8s, source, tree, directory=None):
        app = application(k8s, source, "app", directory=directory)
        manifests = await DirectoryRenderer().render(tree, app.spec.source, app)
        return [m["metadata"]["name"] for m in manifests]

    async def test_top_level_only(self, k8s, source, tree):
        assert await self._names(k8s, source, tree) == ["a", "b"]

    async def test_recurse(self, k8s, source, tree):
        assert await self._names(k8s, source, tree, {"recurse": True}) == ["a", "b", "c"]

    async def test_include_braces(self, k8s, source, tree):
        assert await self._names(k8s, source, tree, {"recurse": True, "include": "*.{yml,yaml}"}) == ["a", "b", "c"]
        assert await self._names(k8s, source, tree, {"recurse": True, "include": "nested/*"}) == ["c"]

    async def test_exclude(self, k8s, source, tree):
        assert await self._names(k8s, source, tree, {"recurse": True, "exclude": "a.yaml,nested/*"}) == ["b"]

    async def test_not_a_directory(self, k8s, source, tree):
        app = application(k8s, source, "app")

        with pytest.raises(RenderError, match="is not a directory"):
            await DirectoryRenderer().render(tree / "a.yaml", app.spec.source, app)


@pytest.mark.unit
class TestExternalRenderers:
    """Tests for the kustomize and helm subprocess renderers."""

    async def test_kustomize_overrides(self, tmp_path, k8s, source):
        binary = fake_binary(
            tmp_path / "kustomize",
            """
            apiVersion: v1
            kind: ConfigMap
            metadata:
              name: built
            ---
            apiVersion: v1
            kind: Namespace
            metadata:
              name: extra
            """,
        )
        manifest = k8s.application("guestbook", source.url, "overlay")
        manifest["spec"]["source"]["kustomize"] = {"commonLabels": {"team": "a"}, "namespace": "overridden"}
        app = Application.from_manifest(manifest)

        config_map, namespace = await KustomizeRenderer(binary).render(tmp_path, app.spec.source, app)

        assert config_map["metadata"]["namespace"] == "overridden"
        assert config_map["metadata"]["labels"] == {"team": "a"}
        assert "namespace" not in namespace["metadata"]

    async def test_helm_arguments(self, tmp_path, k8s, source):
        binary = fake_binary(
            tmp_path / "helm",
            """
            apiVersion: v1
            kind: ConfigMap
            metadata:
              name: args
            data:
              args: "$*"
            """,
        )
        manifest = k8s.application("guestbook", source.url, "chart", dest_namespace="web")
        manifest["spec"]["source"]["helm"] = {
            "releaseName": "gb",
            "parameters": [{"name": "image.tag", "value": "v2"}],
            "values": {"replicas": 3},
        }
        app = Application.from_manifest(manifest)

        rendered = await HelmRenderer(binary).render(tmp_path, app.spec.source, app)

        args = rendered[0]["data"]["args"]
        assert args.startswith(f"template gb {tmp_path}")
        assert "--namespace web" in args
        assert "--set image.tag=v2" in args
        assert "--values" in args

    def test_detection(self, tmp_path, k8s, source):
        app = application(k8s, source)
        service = RenderService(SourceRepository())
        assert service.select(tmp_path, app.spec.source).name == "directory"

        (tmp_path / "kustomization.yaml").write_text("resources: []\n")
        assert service.select(tmp_path, app.spec.source).name == "kustomize"

        (tmp_path / "Chart.yaml").write_text("name: x\n")
        assert service.select(tmp_path, app.spec.source).name == "helm"


@pytest.mark.unit
class TestSourceRepository:
    """Tests for revision resolution."""

    async def test_plain_directory_uses_content_hash(self, k8s, source):
        source.write("guestbook/cm.yaml", k8s.config_map("a"))
        app = application(k8s, source)

        first = await SourceRepository().resolve(app.spec.source)
        expected = content_hash(source.root / "guestbook")
        source.write("guestbook/cm.yaml", k8s.config_map("a", data={"key": "changed"}))
        second = await SourceRepository().resolve(app.spec.source)

        assert first.revision == expected
        assert first.revision != second.revision
        assert first.root == source.root.resolve()

    async def test_missing_path(self, k8s, source):
        with pytest.raises(RenderError, match="does not exist"):
            await SourceRepository().resolve(application(k8s, source, "nowhere").spec.source)

    async def test_missing_repository(self, k8s, tmp_path):
        manifest = k8s.application("guestbook", str(tmp_path / "absent"), "guestbook")

        with pytest.raises(RenderError, match="repository path"):
            await SourceRepository().resolve(Application.from_manifest(manifest).spec.source)

    @requires_git
    async def test_git_working_tree(self, k8s, source):
        """Test that a git repo resolves to its commit, and uncommitted edits to a new revision."""
        source.write("guestbook/cm.yaml", k8s.config_map("a"))
        git = ["git", "-c", "user.name=test", "-c", "user.email=test@example.com"]
        subprocess.run([*git, "init", "-q"], cwd=source.root, check=True)
        subprocess.run([*git, "add", "."], cwd=source.root, check=True)
        subprocess.run([*git, "commit", "-q", "-m", "init"], cwd=source.root, check=True)
        sha = subprocess.run(
            ["git", "rev-parse", "HEAD"], cwd=source.root, check=True, capture_output=True, text=True
        ).stdout.strip()
        app = application(k8s, source)

        clean = await SourceRepository().resolve(app.spec.source)
        source.write("guestbook/cm.yaml", k8s.config_map("a", data={"key": "dirty"}))
        dirty = await SourceRepository().resolve(app.spec.source)

        assert clean.revision == sha
        assert dirty.revision.startswith(f"{sha[:12]}+")


@pytest.mark.unit
class TestRenderService:
    """Tests for RenderService."""

    async def test_render_directory(self, k8s, source):
        source.write("guestbook/cm.yaml", k8s.config_map("a"), k8s.config_map("b"))
        app = application(k8s, source)

        rendered = await RenderService(SourceRepository()).render(app)

        assert rendered.renderer == "directory"
        assert rendered.revision == content_hash(source.root / "guestbook")
        assert [m["metadata"]["name"] for m in rendered.manifests] == ["a", "b"]

    async def test_cache_by_revision(self, k8s, source):
        """Test that renderers only run again when the revision changes."""
        source.write("guestbook/cm.yaml", k8s.config_map("a"))
        app = application(k8s, source)
        renderer = CountingRenderer()
        service = RenderService(SourceRepository(), directory=renderer)

        first = await service.render(app)
        first.manifests[0]["metadata"]["name"] = "mutated"
        second = await service.render(app)
        source.write("guestbook/cm.yaml", k8s.config_map("a", data={"key": "new"}))
        await service.render(app)

        assert renderer.calls == 2
        assert second.manifests[0]["metadata"]["name"] == "a"

    async def test_own_manifest_excluded(self, k8s, source):
        """Test that an app of apps does not render itself."""
        source.write(
            "apps/apps.yaml",
            k8s.application("guestbook", source.url, "apps"),
            k8s.application("child", source.url, "child"),
        )
        app = application(k8s, source, "apps")

        rendered = await RenderService(SourceRepository()).render(app)

        assert [m["metadata"]["name"] for m in rendered.manifests] == ["child"]

    async def test_value_without_json_form(self, k8s, source):
        path = source.write("guestbook/cm.yaml", k8s.config_map("a"))
        path.write_text(path.read_text() + "binaryData:\n  blob: !!binary aGVsbG8=\n")
        app = application(k8s, source)

        with pytest.raises(RenderError, match="not valid JSON"):
            await RenderService(SourceRepository()).render(app)

    async def test_file_io_runs_in_threads(self, k8s, source, monkeypatch):
        """Test that hashing and reading the source directory happen off the event loop."""
        source.write("guestbook/cm.yaml", k8s.config_map("a"))
        offloaded = []
        to_thread = asyncio.to_thread

        async def recording_to_thread(func, *args, **kwargs):
            offloaded.append(func.__name__)
            return await to_thread(func, *args, **kwargs)

        monkeypatch.setattr(asyncio, "to_thread", recording_to_thread)

        await RenderService(SourceRepository()).render(application(k8s, source))

        assert offloaded == ["content_hash", "load"]

    async def test_path_escaping_repository(self, k8s, source, tmp_path):
        (tmp_path / "outside").mkdir()
        source.write("guestbook/cm.yaml", k8s.config_map("a"))
        app = application(k8s, source, "../outside")
        checkout = await SourceRepository().resolve(application(k8s, source).spec.source)

        with pytest.raises(RenderError, match="escapes the repository"):
            await RenderService(SourceRepository()).render(app, checkout)
