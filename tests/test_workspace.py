"""
Tests for the workspace service.

Path sanitization, file merging, sandboxed writes, artifact collection and
the bootstrap that guarantees a buildable skeleton.
"""

import json
from pathlib import Path

import pytest
from hypothesis import given, settings, strategies as st

from devrunner.errors import InvalidWorkspacePathError
from devrunner.models.domain import PlanSnapshot, RunStatus
from devrunner.services.workspace import (
    WorkspaceFile,
    WorkspaceService,
    build_template_context,
    collect_workspace_artifacts,
    extract_generated_files,
    merge_workspace_files,
    sanitize_workspace_path,
    write_workspace_files,
)

from conftest import BUSINESS_PLAN, TECHNICAL_PLAN, UX_PLAN


# =============================================================================
# Path sanitization
# =============================================================================

class TestSanitizeWorkspacePath:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("src/app/page.tsx", "src/app/page.tsx"),
            ("  ./src//lib///a.ts ", "src/lib/a.ts"),
            ("README.md", "README.md"),
        ],
    )
    def test_normalizes(self, raw, expected):
        assert sanitize_workspace_path(raw) == expected

    @pytest.mark.parametrize("raw", ["", "   ", "/etc/passwd", "../x", "a/../../b", "a\0b", "./"])
    def test_rejects(self, raw):
        with pytest.raises(InvalidWorkspacePathError) as exc_info:
            sanitize_workspace_path(raw)
        assert str(exc_info.value).startswith("INVALID_WORKSPACE_PATH:")


_segment = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789_-.", min_size=1, max_size=8)


@settings(max_examples=200, deadline=None)
@given(raw=st.text(max_size=40))
def test_sanitized_paths_are_always_relative_and_clean(raw):
    """Property: any accepted path is relative, has no '..', no NUL and no '//'."""
    try:
        cleaned = sanitize_workspace_path(raw)
    except InvalidWorkspacePathError:
        return
    assert cleaned
    assert not cleaned.startswith("/")
    assert ".." not in cleaned
    assert "\0" not in cleaned
    assert "//" not in cleaned


@settings(max_examples=100, deadline=None)
@given(parts=st.lists(_segment.filter(lambda s: ".." not in s and s != "."), min_size=1, max_size=4))
def test_sanitized_writes_stay_inside_root(tmp_path_factory, parts):
    """Property: writing any accepted path lands under the sandbox root."""
    root = tmp_path_factory.mktemp("ws")
    path = "/".join(parts)
    try:
        write_workspace_files(str(root), [WorkspaceFile(path=path, content="x")])
    except (InvalidWorkspacePathError, IsADirectoryError, NotADirectoryError):
        return
    target = (root / sanitize_workspace_path(path)).resolve()
    assert root.resolve() in target.parents


# =============================================================================
# Merging and extraction
# =============================================================================

class TestFiles:
    def test_merge_last_writer_wins_keeps_first_position(self):
        merged = merge_workspace_files([
            [WorkspaceFile("a.ts", "1"), WorkspaceFile("b.ts", "2")],
            [WorkspaceFile("./a.ts", "3")],
        ])
        assert [(f.path, f.content) for f in merged] == [("a.ts", "3"), ("b.ts", "2")]

    def test_extract_skips_malformed_entries(self):
        output = {"files": [{"path": "x.ts", "content": "ok"}, {"path": 1}, "nope", {"content": "c"}]}
        assert extract_generated_files(output) == [WorkspaceFile("x.ts", "ok")]
        assert extract_generated_files({"files": "nope"}) == []
        assert extract_generated_files(None) == []

    def test_extract_rejects_unsafe_path(self):
        with pytest.raises(InvalidWorkspacePathError):
            extract_generated_files({"files": [{"path": "../evil", "content": "x"}]})

    def test_collect_skips_build_and_vcs_dirs(self, tmp_path):
        write_workspace_files(str(tmp_path), [
            WorkspaceFile("b.ts", "b"),
            WorkspaceFile("a/z.ts", "z"),
            WorkspaceFile("node_modules/pkg/index.js", "nm"),
            WorkspaceFile(".git/HEAD", "ref"),
            WorkspaceFile(".next/cache", "c"),
        ])
        paths = [f.path for f in collect_workspace_artifacts(str(tmp_path))]
        assert paths == ["a/z.ts", "b.ts"]


# =============================================================================
# WorkspaceService
# =============================================================================

@pytest.fixture
def workspace(context, db, events):
    return WorkspaceService(context, db, events)


@pytest.fixture
def snapshot():
    return PlanSnapshot(
        project_name="Task Board",
        business_plan=BUSINESS_PLAN,
        technical_plan=TECHNICAL_PLAN,
        ux_plan=UX_PLAN,
    )


class TestWorkspaceService:
    def test_sandbox_is_reused_then_cleaned(self, workspace, db, project, config):
        run = db.create_run(project.id, status=RunStatus.RUNNING)
        path = workspace.ensure_sandbox(run.id)

        assert Path(path).is_dir()
        assert Path(path).parent == Path(config.sandbox_root)
        assert workspace.ensure_sandbox(run.id) == path
        assert db.get_run(run.id).worker_sandbox_path == path

        workspace.cleanup_sandbox(run.id)
        assert not Path(path).exists()
        assert db.get_run(run.id).worker_sandbox_path is None

    def test_bootstrap_renders_templates_once(self, workspace, db, project, snapshot, events):
        run = db.create_run(project.id, status=RunStatus.RUNNING)
        path = workspace.ensure_sandbox(run.id)
        workspace.ensure_bootstrap(run.id, path, snapshot)

        manifest = json.loads((Path(path) / "package.json").read_text())
        assert manifest["name"] == "task-board"
        assert (Path(path) / "next-env.d.ts").exists()

        workspace.ensure_bootstrap(run.id, path, snapshot)
        messages = [e["message"] for e in events.list_events(run.id)]
        assert messages.count("Workspace bootstrap generated") == 1

    def test_template_context_from_technical_plan(self, snapshot):
        ctx = build_template_context(snapshot)
        assert ctx.project_name == "Task Board"
        assert ctx.project_slug == "task-board"
        assert [p.name for p in ctx.pages] == ["Home"]
        assert ctx.components[0].name == "Board"
        assert ctx.has_database is False
