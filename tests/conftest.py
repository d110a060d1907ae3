from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import pytest

from integrations.base import (
    CodeContext,
    CodeGenerator,
    CodeHost,
    FeedbackAnalyzer,
    IssueRef,
    Notifier,
    PullRequestRef,
)
from schemas.change_request import FileChange, GeneratedChange
from schemas.feedback import Category, Classification, FeedbackItem
from tools.base import BaseTool, ToolResult, ToolStatus
from tools.circuit_breaker import CircuitBreaker
from tools.filesystem_tool import FilesystemTool
from tools.gateway import ResilientToolGateway
from tools.security import SecurityPolicy


class FakeClock:
    """Simulated monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTerminal(BaseTool):
    """Terminal tool double; ``pytest`` passes once the fix marker is present."""

    name = "terminal"

    def __init__(self, repo: Path, fix_marker: str = "FIXED", results: dict[str, int] | None = None) -> None:
        self.repo = repo
        self.fix_marker = fix_marker
        self.results = dict(results or {})
        self.calls: list[dict[str, Any]] = []

    def _fixed(self) -> bool:
        return any(
            self.fix_marker in p.read_text(encoding="utf-8")
            for p in (self.repo / "src").rglob("*.py")
        )

    def execute(self, operation: str, **kwargs: Any) -> ToolResult:
        self.calls.append({"operation": operation, **kwargs})
        command = kwargs["command"]
        if command in self.results:
            exit_code = self.results[command]
        elif command == "pytest":
            exit_code = 0 if self._fixed() else 1
        else:
            exit_code = 0
        stderr = "" if exit_code == 0 else f"{command}: 1 error"
        return ToolResult(
            status=ToolStatus.SUCCESS,
            output={"stdout": "", "stderr": stderr, "exit_code": exit_code, "duration": 0.01},
        )

    @property
    def commands(self) -> list[str]:
        return [c["command"] for c in self.calls]


class FakeAnalyzer(FeedbackAnalyzer):
    def __init__(self, vectors: dict[str, list[float]] | None = None, fail: set[str] | None = None) -> None:
        self.vectors = dict(vectors or {})
        self.fail = set(fail or ())
        self.embedded: list[str] = []

    def classify(self, item: FeedbackItem) -> Classification:
        return Classification(feedback_id=item.id, category=Category.BUG, severity=50, confidence=0.9)

    def embed(self, text: str) -> list[float]:
        self.embedded.append(text)
        if text in self.fail:
            from tools.errors import PermanentToolError

            raise PermanentToolError("embedding model rejected input", tool="embed")
        return self.vectors.get(text, [1.0, 0.0, 0.0])


class FakeGenerator(CodeGenerator):
    def __init__(self, tests: GeneratedChange, fix: GeneratedChange) -> None:
        self.tests = tests
        self.fix = fix
        self.test_calls = 0
        self.fix_calls = 0
        self.contexts: list[CodeContext] = []

    def generate_tests(self, summary: str, context: CodeContext) -> GeneratedChange:
        self.test_calls += 1
        self.contexts.append(context)
        return self.tests

    def implement_fix(self, summary: str, context: CodeContext) -> GeneratedChange:
        self.fix_calls += 1
        self.contexts.append(context)
        return self.fix


class FakeCodeHost(CodeHost):
    def __init__(self) -> None:
        self.issues: list[dict[str, Any]] = []
        self.branches: list[str] = []
        self.commits: dict[str, dict[str, str | None]] = {}
        self.prs: dict[int, PullRequestRef] = {}
        self.merged: set[int] = set()
        self.merge_calls = 0
        self._next = 100
        self._lock = threading.Lock()

    def create_issue(self, repo: str, title: str, body: str, labels: list[str]) -> IssueRef:
        with self._lock:
            self._next += 1
            number = self._next
            self.issues.append({"number": number, "title": title, "body": body, "labels": labels})
        return IssueRef(number=number)

    def create_branch(self, repo: str, branch: str, changes: list[FileChange], message: str) -> None:
        self.branches.append(branch)
        self.commits[branch] = {c.path: c.content for c in changes}

    def create_pull_request(self, repo, branch, title, body, issue_number) -> PullRequestRef:
        with self._lock:
            self._next += 1
            pr = PullRequestRef(number=self._next, branch=branch)
            self.prs[pr.number] = pr
        return pr

    def find_pull_request(self, repo: str, branch: str) -> PullRequestRef | None:
        with self._lock:
            prs = list(self.prs.values())
        for pr in prs:
            if pr.branch == branch:
                return pr
        return None

    def is_merged(self, repo: str, pr_number: int) -> bool:
        return pr_number in self.merged

    def merge_pull_request(self, repo: str, pr_number: int) -> None:
        self.merge_calls += 1
        self.merged.add(pr_number)


class FakeNotifier(Notifier):
    def __init__(self, failing_authors: set[str] | None = None) -> None:
        self.sent: list[tuple[str, int, str]] = []
        self.failing_authors = set(failing_authors or ())

    def send(self, item: FeedbackItem, pr_number: int, message: str) -> None:
        if item.author in self.failing_authors:
            from tools.errors import PermanentToolError

            raise PermanentToolError("recipient blocked us", tool="notifier")
        self.sent.append((item.id, pr_number, message))


def make_item(item_id: str, text: str | None = None, author: str | None = None) -> FeedbackItem:
    return FeedbackItem(id=item_id, author=author or f"user-{item_id}", text=text or f"report {item_id}")


def make_classification(
    item_id: str,
    severity: float = 50,
    embedding: list[float] | None = None,
    category: Category = Category.BUG,
    title: str | None = None,
) -> Classification:
    data: dict[str, Any] = {
        "feedback_id": item_id,
        "category": category,
        "severity": severity,
        "confidence": 0.9,
        "embedding": tuple(embedding or ()),
    }
    if title:
        data["extracted"] = {"title": title}
    return Classification(**data)


def fix_for(path: str = "src/app.py") -> tuple[GeneratedChange, GeneratedChange]:
    tests = GeneratedChange(
        files=[FileChange(path="tests/test_app.py", content="def test_login():\n    assert login()\n")],
        test_cases=["test_login"],
        reasoning="reproduces the login crash",
    )
    fix = GeneratedChange(
        files=[FileChange(path=path, content="def login():\n    return True  # FIXED\n")],
        reasoning="guard the missing session",
        impact_analysis="login path only",
    )
    return tests, fix


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    (root / "src").mkdir(parents=True)
    (root / "tests").mkdir()
    (root / "src" / "app.py").write_text("def login():\n    raise KeyError('session')\n", encoding="utf-8")
    return root.resolve()


@pytest.fixture
def policy(repo: Path) -> SecurityPolicy:
    return SecurityPolicy(allowed_dirs=(repo,))


@pytest.fixture
def gateway(policy: SecurityPolicy, repo: Path, clock: FakeClock, sleeps: list[float]) -> ResilientToolGateway:
    gw = ResilientToolGateway(
        policy,
        timeout=0,
        breaker=CircuitBreaker(clock=clock),
        clock=clock,
        sleep=sleeps.append,
    )
    gw.register(FilesystemTool(repo))
    yield gw
    gw.shutdown()


@pytest.fixture
def terminal(repo: Path, gateway: ResilientToolGateway) -> FakeTerminal:
    tool = FakeTerminal(repo)
    gateway.register(tool)
    return tool
