from __future__ import annotations

from pathlib import Path

import pytest

from orchestrator.change_set import ChangeSetApplier, branch_name, count_deleted_lines, slugify
from schemas.change_request import FileChange, FileOperation
from tools.base import ToolResult, ToolStatus
from tools.circuit_breaker import CircuitBreaker
from tools.errors import (
    ChangeSetError,
    CircuitOpenError,
    PermanentToolError,
    SecurityViolation,
)
from tools.filesystem_tool import FilesystemTool
from tools.gateway import ResilientToolGateway


class FailingFilesystem(FilesystemTool):
    """Fails the Nth write."""

    def __init__(self, base_path: Path, fail_on: int) -> None:
        super().__init__(base_path)
        self.fail_on = fail_on
        self.writes = 0

    def execute(self, operation: str, **kwargs) -> ToolResult:
        if operation == "write":
            self.writes += 1
            if self.writes == self.fail_on:
                # Leave a torn file behind, like a crash mid-write would
                self._resolve(kwargs["path"]).write_text("partial", encoding="utf-8")
                return ToolResult(status=ToolStatus.FAILURE, error="disk full")
        return super().execute(operation, **kwargs)


def _tree(root: Path) -> dict[str, str]:
    return {
        str(p.relative_to(root)): p.read_text(encoding="utf-8")
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


@pytest.mark.parametrize(
    ("title", "expected"),
    [
        ("Login crashes when session expires!", "login-crashes-when-session-expires"),
        ("  --Weird   spacing__and_symbols--  ", "weird-spacing-and-symbols"),
        ("!!!", "change"),
    ],
)
def test_slugify(title: str, expected: str) -> None:
    assert slugify(title) == expected


def test_slug_truncation_and_branch_name() -> None:
    title = "Dark mode toggle does not persist between sessions on mobile"
    slug = slugify(title, max_length=20)

    assert len(slug) <= 20
    assert not slug.endswith("-")
    assert slugify(title, 20) == slug
    assert branch_name(42, title, 20) == f"ford/issue-42-{slug}"


def test_count_deleted_lines() -> None:
    original = "a\nb\nc\nd\n"
    assert count_deleted_lines(None, FileChange(path="x.py", content="new")) == 0
    assert count_deleted_lines(original, FileChange(path="x.py", operation=FileOperation.DELETE)) == 4
    assert count_deleted_lines(original, FileChange(path="x.py", content="a\nd\ne\n")) == 2


def test_apply_writes_and_deletes(gateway: ResilientToolGateway, repo: Path) -> None:
    (repo / "src" / "old.py").write_text("x = 1\n", encoding="utf-8")
    applier = ChangeSetApplier(gateway, scope=["src", "tests"])

    applied = applier.apply(
        [
            FileChange(path="src/app.py", content="def login():\n    return True\n"),
            FileChange(path="src/old.py", operation=FileOperation.DELETE),
            FileChange(path="tests/test_app.py", content="def test_ok():\n    pass\n"),
        ]
    )

    assert applied == ["src/app.py", "src/old.py", "tests/test_app.py"]
    assert not (repo / "src" / "old.py").exists()
    assert (repo / "tests" / "test_app.py").exists()


@pytest.mark.parametrize("fail_on", [1, 2, 3])
def test_nth_write_failure_leaves_no_net_change(repo: Path, policy, clock, sleeps, fail_on: int) -> None:
    (repo / "src" / "util.py").write_text("def helper():\n    return 1\n", encoding="utf-8")
    gateway = ResilientToolGateway(policy, timeout=0, clock=clock, sleep=sleeps.append)
    tool = FailingFilesystem(repo, fail_on=fail_on)
    gateway.register(tool, name="filesystem")
    before = _tree(repo)

    changes = [
        FileChange(path="src/app.py", content="def login():\n    return True\n"),
        FileChange(path="src/util.py", content="def helper():\n    return 2\n"),
        FileChange(path="src/new_module.py", content="VALUE = 3\n"),
    ]
    with pytest.raises(PermanentToolError, match="disk full"):
        ChangeSetApplier(gateway, scope=["src"]).apply(changes)

    assert _tree(repo) == before
    gateway.shutdown()


class StallingFilesystem(FilesystemTool):
    """Every write to one path times out."""

    def __init__(self, base_path: Path, stalled: str) -> None:
        super().__init__(base_path)
        self.stalled = stalled

    def execute(self, operation: str, **kwargs) -> ToolResult:
        if operation == "write" and kwargs.get("path") == self.stalled:
            return ToolResult(status=ToolStatus.TIMEOUT, error="write timed out")
        return super().execute(operation, **kwargs)


@pytest.mark.parametrize("stalled", ["src/util.py", "src/new_module.py"])
def test_transient_failure_rolls_back_after_breaker_opens(
    repo: Path, policy, clock, sleeps, stalled: str
) -> None:
    (repo / "src" / "util.py").write_text("def helper():\n    return 1\n", encoding="utf-8")
    gateway = ResilientToolGateway(
        policy,
        timeout=0,
        breaker=CircuitBreaker(clock=clock),
        clock=clock,
        sleep=sleeps.append,
    )
    gateway.register(StallingFilesystem(repo, stalled), name="filesystem")
    before = _tree(repo)

    changes = [
        FileChange(path="src/app.py", content="changed\n"),
        FileChange(path="src/util.py", content="def helper():\n    return 2\n"),
        FileChange(path="src/new_module.py", content="VALUE = 3\n"),
    ]
    with pytest.raises(CircuitOpenError):
        ChangeSetApplier(gateway, scope=["src"]).apply(changes)

    # The retried write opened the breaker; the restore still went through
    assert gateway.breaker.open_tools() == ["filesystem"]
    assert sleeps == [1.0, 2.0, 4.0]
    assert _tree(repo) == before
    gateway.shutdown()


def test_restore_returns_paths_to_recorded_content(gateway: ResilientToolGateway, repo: Path) -> None:
    before = _tree(repo)
    applier = ChangeSetApplier(gateway, scope=["src", "tests"])
    changes = [
        FileChange(path="src/app.py", content="changed\n"),
        FileChange(path="tests/test_app.py", content="def test_ok():\n    pass\n"),
    ]
    originals = applier.read_originals(changes)
    applier.apply(changes)

    applier.restore(originals)

    assert originals["tests/test_app.py"] is None
    assert _tree(repo) == before


def test_out_of_scope_path_rejects_whole_set(gateway: ResilientToolGateway, repo: Path) -> None:
    before = _tree(repo)
    changes = [
        FileChange(path="src/app.py", content="changed\n"),
        FileChange(path="docs/readme.md", content="changed\n"),
    ]

    with pytest.raises(SecurityViolation):
        ChangeSetApplier(gateway, scope=["src"]).apply(changes)
    assert _tree(repo) == before


def test_incomplete_rollback_raises_change_set_error(gateway: ResilientToolGateway, repo: Path) -> None:
    applier = ChangeSetApplier(gateway, scope=["src"])
    originals = {"src/app.py": "original\n"}
    (repo / "src" / "app.py").write_text("modified\n", encoding="utf-8")

    class Broken:
        def __init__(self, wrapped):
            self.wrapped = wrapped

        def call_direct(self, tool, operation, **kwargs):
            if operation == "write":
                raise PermanentToolError("read-only filesystem", tool=tool)
            return self.wrapped.call_direct(tool, operation, **kwargs)

    applier.gateway = Broken(gateway)
    with pytest.raises(ChangeSetError, match="Rollback incomplete"):
        applier.rollback([FileChange(path="src/app.py", content="modified\n")], originals)


def test_filesystem_tool_writes_in_place_and_rejects_other_ops(repo: Path) -> None:
    tool = FilesystemTool(repo)

    written = tool.execute("write", path="src/pkg/new.py", content="x = 1\n")
    listing = tool.execute("list", path="src")

    assert written.status == ToolStatus.SUCCESS
    assert written.metadata == {"bytes": 6}
    assert tool.execute("read", path="src/pkg/new.py").output == "x = 1\n"
    assert [p.name for p in (repo / "src" / "pkg").iterdir()] == ["new.py"]
    assert listing.status == ToolStatus.FAILURE
    assert "Unsupported filesystem operation 'list'" in listing.error
    assert tool.execute("delete", path="src/missing.py").status == ToolStatus.FAILURE
