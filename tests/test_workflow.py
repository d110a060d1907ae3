from __future__ import annotations

import threading
from pathlib import Path

import pytest

from conftest import FakeCodeHost, FakeGenerator, FakeTerminal, fix_for
from orchestrator.alerts import AdminAlerts, AlertLevel
from orchestrator.signals import ApprovalResult, Signal, SignalKind
from orchestrator.validation import StageCommand, ValidationPipeline
from orchestrator.workflow import ChangeRequestWorkflow, WorkflowSettings
from schemas.change_request import (
    AwaitingSignal,
    ChangeRequest,
    ChangeRequestStatus,
    FileChange,
    GeneratedChange,
    StageName,
    StageStatus,
)
from schemas.feedback import Category, FeedbackCluster
from tools.gateway import ResilientToolGateway

Status = ChangeRequestStatus
SCOPE = ["src", "tests"]


class Harness:
    def __init__(
        self,
        gateway: ResilientToolGateway,
        repo: Path,
        generator: FakeGenerator | None = None,
        host: FakeCodeHost | None = None,
        settings: WorkflowSettings | None = None,
    ) -> None:
        self.gateway = gateway
        self.repo = repo
        self.generator = generator or FakeGenerator(*fix_for())
        self.host = host or FakeCodeHost()
        self.settings = settings
        self.alerts = AdminAlerts()
        self.checkpoints: list[str] = []
        self.merged: list[str] = []
        self.cluster = FeedbackCluster(category=Category.BUG, representative_id="a", scope=SCOPE)
        self.tree_lock = threading.Lock()
        self.validation = ValidationPipeline(
            gateway,
            {
                StageName.LINT: StageCommand.parse("ruff check ."),
                StageName.TEST: StageCommand.parse("pytest -q"),
                StageName.BUILD: None,
            },
            repo,
        )

    def change_request(self) -> ChangeRequest:
        return ChangeRequest(
            cluster_id=self.cluster.id,
            issue_title="Crash on login",
            issue_body="App dies after entering a password",
            scope=SCOPE,
        )

    def workflow(self, cr: ChangeRequest) -> ChangeRequestWorkflow:
        return ChangeRequestWorkflow(
            cr,
            self.cluster,
            gateway=self.gateway,
            generator=self.generator,
            code_host=self.host,
            validation=self.validation,
            alerts=self.alerts,
            settings=self.settings,
            checkpoint=lambda cr, reason: self.checkpoints.append(reason),
            on_merged=lambda cr: self.merged.append(cr.id),
            tree_lock=self.tree_lock,
        )


def _review(cr: ChangeRequest, result: ApprovalResult = ApprovalResult.APPROVED, token: str | None = None) -> Signal:
    return Signal(
        kind=SignalKind.REVIEW,
        target_id=cr.id,
        result=result,
        token=token or cr.resume_token,
        actor="reviewer",
        notes="looks good" if result == ApprovalResult.APPROVED else "wrong approach",
    )


def test_happy_path_suspends_for_review(gateway: ResilientToolGateway, repo: Path, terminal: FakeTerminal) -> None:
    harness = Harness(gateway, repo)
    cr = harness.change_request()

    harness.workflow(cr).run()

    assert cr.status == Status.PENDING_REVIEW
    assert cr.awaiting == AwaitingSignal.REVIEW
    assert cr.resume_token
    assert cr.issue_number == 101
    assert harness.cluster.issue_number == 101
    assert cr.branch_name == "ford/issue-101-crash-on-login"
    assert cr.pr_number == 102
    assert harness.host.branches == ["ford/issue-101-crash-on-login"]
    assert harness.host.issues[0]["labels"] == ["ford", "bug"]
    # Failing-test confirmation, then full validation
    assert terminal.commands == ["pytest", "ruff", "pytest"]
    assert cr.tests_confirmed_failing
    assert cr.validation_report.success
    # The change set travels with the branch; the shared checkout is left as found
    commit = harness.host.commits[cr.branch_name]
    assert "# FIXED" in commit["src/app.py"]
    assert "tests/test_app.py" in commit
    assert "FIXED" not in (repo / "src" / "app.py").read_text(encoding="utf-8")
    assert not (repo / "tests" / "test_app.py").exists()
    assert cr.tree_originals == {}
    assert not harness.tree_lock.locked()
    assert [t.to_status for t in cr.history] == [
        Status.GENERATING,
        Status.VALIDATING,
        Status.PENDING_REVIEW,
    ]


def test_issue_creation_is_checkpointed_first(gateway: ResilientToolGateway, repo: Path, terminal: FakeTerminal) -> None:
    harness = Harness(gateway, repo)
    cr = harness.change_request()

    harness.workflow(cr).run()

    prefix = cr.id[:8]
    assert harness.checkpoints.index(f"{prefix} creating issue") < harness.checkpoints.index(
        f"{prefix} issue #101 created"
    )
    assert harness.checkpoints.index(f"{prefix} applying tests") < harness.checkpoints.index(
        f"{prefix} tests applied"
    )


def test_approval_merges_and_emits_resolved_event(
    gateway: ResilientToolGateway, repo: Path, terminal: FakeTerminal
) -> None:
    harness = Harness(gateway, repo)
    cr = harness.change_request()
    workflow = harness.workflow(cr)
    workflow.run()

    assert workflow.apply_signal(_review(cr))
    workflow.run()

    assert cr.status == Status.MERGED
    assert cr.notified
    assert cr.reviewer_id == "reviewer"
    assert harness.host.merged == {102}
    assert harness.merged == [cr.id]
    assert cr.awaiting is None


def test_already_merged_pr_is_not_merged_again(
    gateway: ResilientToolGateway, repo: Path, terminal: FakeTerminal
) -> None:
    harness = Harness(gateway, repo)
    cr = harness.change_request()
    workflow = harness.workflow(cr)
    workflow.run()
    workflow.apply_signal(_review(cr))
    harness.host.merged.add(cr.pr_number)

    workflow.run()

    assert cr.status == Status.MERGED
    assert harness.host.merge_calls == 0


def test_rejection_halts_without_merge(gateway: ResilientToolGateway, repo: Path, terminal: FakeTerminal) -> None:
    harness = Harness(gateway, repo)
    cr = harness.change_request()
    workflow = harness.workflow(cr)
    workflow.run()

    assert workflow.apply_signal(_review(cr, ApprovalResult.REJECTED))
    workflow.run()

    assert cr.status == Status.HALTED
    assert "wrong approach" in cr.halt_reason
    assert [t.to_status for t in cr.history][-2:] == [Status.REJECTED, Status.HALTED]
    assert harness.host.merge_calls == 0
    assert harness.merged == []


def test_stale_token_is_ignored(gateway: ResilientToolGateway, repo: Path, terminal: FakeTerminal) -> None:
    harness = Harness(gateway, repo)
    cr = harness.change_request()
    workflow = harness.workflow(cr)
    workflow.run()

    assert not workflow.apply_signal(_review(cr, token="not-the-token"))
    assert cr.status == Status.PENDING_REVIEW
    assert cr.awaiting == AwaitingSignal.REVIEW


@pytest.fixture
def large_module(repo: Path) -> Path:
    path = repo / "src" / "app.py"
    body = "".join(f"value_{i} = {i}\n" for i in range(150))
    path.write_text(body + "def login():\n    raise KeyError('session')\n", encoding="utf-8")
    return path


def test_large_deletion_waits_for_approval(
    gateway: ResilientToolGateway, repo: Path, terminal: FakeTerminal, large_module: Path
) -> None:
    harness = Harness(gateway, repo)
    cr = harness.change_request()
    workflow = harness.workflow(cr)

    workflow.run()

    assert cr.status == Status.GENERATING
    assert cr.awaiting == AwaitingSignal.DELETION_APPROVAL
    assert cr.deleted_lines > 100
    assert cr.deletion_approval_required
    assert not cr.implementation_applied
    assert "FIXED" not in large_module.read_text(encoding="utf-8")
    assert not workflow.machine.can_transition(Status.VALIDATING)

    # Re-running while suspended changes nothing
    workflow.run()
    assert cr.status == Status.GENERATING

    approval = Signal(kind=SignalKind.DELETION_APPROVAL, target_id=cr.id, token=cr.resume_token, actor="lead")
    assert workflow.apply_signal(approval)
    workflow.run()

    assert cr.deletion_approved
    assert cr.status == Status.PENDING_REVIEW
    assert "FIXED" in harness.host.commits[cr.branch_name]["src/app.py"]
    assert "FIXED" not in large_module.read_text(encoding="utf-8")


def test_rejected_deletion_halts(
    gateway: ResilientToolGateway, repo: Path, terminal: FakeTerminal, large_module: Path
) -> None:
    harness = Harness(gateway, repo)
    cr = harness.change_request()
    workflow = harness.workflow(cr)
    workflow.run()

    denial = Signal(
        kind=SignalKind.DELETION_APPROVAL,
        target_id=cr.id,
        token=cr.resume_token,
        result=ApprovalResult.REJECTED,
        actor="lead",
    )
    assert not workflow.apply_signal(denial)

    assert cr.status == Status.HALTED
    assert "rejected by lead" in cr.halt_reason
    assert "FIXED" not in large_module.read_text(encoding="utf-8")


def test_deletion_threshold_is_configurable(
    gateway: ResilientToolGateway, repo: Path, terminal: FakeTerminal, large_module: Path
) -> None:
    harness = Harness(gateway, repo, settings=WorkflowSettings(deletion_threshold=500))
    cr = harness.change_request()

    harness.workflow(cr).run()

    assert cr.status == Status.PENDING_REVIEW
    assert not cr.deletion_approval_required


def test_tests_that_already_pass_halt_before_fix(
    gateway: ResilientToolGateway, repo: Path, terminal: FakeTerminal
) -> None:
    (repo / "src" / "app.py").write_text("def login():\n    return True  # FIXED\n", encoding="utf-8")
    harness = Harness(gateway, repo)
    cr = harness.change_request()

    harness.workflow(cr).run()

    assert cr.status == Status.HALTED
    assert "do not reproduce" in cr.halt_reason
    assert harness.generator.fix_calls == 0
    assert harness.host.prs == {}


def test_lint_failure_halts_without_pr(gateway: ResilientToolGateway, repo: Path) -> None:
    terminal = FakeTerminal(repo, results={"ruff": 1})
    gateway.register(terminal)
    harness = Harness(gateway, repo)
    cr = harness.change_request()

    harness.workflow(cr).run()

    assert cr.status == Status.HALTED
    assert "lint" in cr.halt_reason
    report = cr.validation_report
    assert report.stage(StageName.LINT).status == StageStatus.FAILED
    assert report.stage(StageName.TEST).status == StageStatus.NOT_RUN
    assert report.stage(StageName.BUILD).status == StageStatus.NOT_RUN
    assert harness.host.prs == {}


def test_out_of_scope_fix_raises_critical_alert(
    gateway: ResilientToolGateway, repo: Path, terminal: FakeTerminal
) -> None:
    tests, _ = fix_for()
    rogue = GeneratedChange(files=[FileChange(path="deploy/secrets.py", content="TOKEN = 'x'\n")])
    harness = Harness(gateway, repo, generator=FakeGenerator(tests, rogue))
    cr = harness.change_request()

    harness.workflow(cr).run()

    assert cr.status == Status.HALTED
    assert "security violation" in cr.halt_reason
    assert cr.error_context["type"] == "SecurityViolation"
    assert not (repo / "deploy").exists()
    alert = harness.alerts.recent()[-1]
    assert alert.level == AlertLevel.CRITICAL


def test_cancel_while_awaiting_review(gateway: ResilientToolGateway, repo: Path, terminal: FakeTerminal) -> None:
    harness = Harness(gateway, repo)
    cr = harness.change_request()
    workflow = harness.workflow(cr)
    workflow.run()

    workflow.cancel("superseded by manual fix")
    workflow.run()

    assert cr.status == Status.HALTED
    assert cr.halt_reason == "cancelled: superseded by manual fix"
    assert cr.awaiting is None


def test_reentry_reuses_existing_pull_request(
    gateway: ResilientToolGateway, repo: Path, terminal: FakeTerminal
) -> None:
    harness = Harness(gateway, repo)
    cr = harness.change_request()
    harness.workflow(cr).run()

    # Crash after the PR was opened but before its number was recorded
    restored = cr.model_copy(deep=True)
    restored.pr_number = None
    restored.clear_awaiting()
    harness.workflow(restored).run()

    assert restored.pr_number == cr.pr_number
    assert len(harness.host.prs) == 1
    assert harness.host.branches == [cr.branch_name]


def test_reentry_skips_completed_generation_steps(
    gateway: ResilientToolGateway, repo: Path, terminal: FakeTerminal
) -> None:
    harness = Harness(gateway, repo)
    cr = harness.change_request()
    harness.workflow(cr).run()

    restored = cr.model_copy(deep=True)
    restored.status = Status.VALIDATING
    restored.pr_number = None
    restored.branch_name = None
    restored.clear_awaiting()
    harness.host.prs.clear()
    harness.workflow(restored).run()

    assert harness.generator.test_calls == 1
    assert harness.generator.fix_calls == 1
    assert len(harness.host.issues) == 1
    # Passed report is reused, so no commands run again
    assert terminal.commands == ["pytest", "ruff", "pytest"]
    assert restored.status == Status.PENDING_REVIEW


class LintFailsOnce(FakeTerminal):
    def __init__(self, repo: Path) -> None:
        super().__init__(repo, results={"ruff": 1})

    def execute(self, operation: str, **kwargs):
        result = super().execute(operation, **kwargs)
        if kwargs["command"] == "ruff":
            self.results.pop("ruff", None)
        return result


def test_halted_request_leaves_tree_for_the_next(gateway: ResilientToolGateway, repo: Path) -> None:
    terminal = LintFailsOnce(repo)
    gateway.register(terminal)
    harness = Harness(gateway, repo)
    original = (repo / "src" / "app.py").read_text(encoding="utf-8")

    first = harness.change_request()
    harness.workflow(first).run()

    assert first.status == Status.HALTED
    assert "lint" in first.halt_reason
    assert (repo / "src" / "app.py").read_text(encoding="utf-8") == original
    assert not (repo / "tests" / "test_app.py").exists()
    assert not harness.tree_lock.locked()

    # A leftover fix would make the second request's new tests pass up front
    second = harness.change_request()
    harness.workflow(second).run()

    assert second.status == Status.PENDING_REVIEW
    assert second.tests_confirmed_failing
    assert terminal.commands == ["pytest", "ruff", "pytest", "ruff", "pytest"]
    assert (repo / "src" / "app.py").read_text(encoding="utf-8") == original


def test_test_set_deletions_wait_before_touching_tree(
    gateway: ResilientToolGateway, repo: Path, terminal: FakeTerminal
) -> None:
    big = repo / "tests" / "test_big.py"
    body = "".join(f"def test_case_{i}():\n    assert {i}\n" for i in range(75))
    big.write_text(body, encoding="utf-8")
    tests = GeneratedChange(
        files=[FileChange(path="tests/test_big.py", content="def test_login():\n    assert login()\n")],
        test_cases=["test_login"],
    )
    _, fix = fix_for()
    harness = Harness(gateway, repo, generator=FakeGenerator(tests, fix))
    cr = harness.change_request()
    workflow = harness.workflow(cr)

    workflow.run()

    assert cr.status == Status.GENERATING
    assert cr.awaiting == AwaitingSignal.DELETION_APPROVAL
    assert cr.test_deleted_lines > 100
    assert not cr.tests_applied
    assert big.read_text(encoding="utf-8") == body
    assert terminal.commands == []
    assert harness.generator.fix_calls == 0

    approval = Signal(kind=SignalKind.DELETION_APPROVAL, target_id=cr.id, token=cr.resume_token, actor="lead")
    assert workflow.apply_signal(approval)
    workflow.run()

    assert cr.status == Status.PENDING_REVIEW
    assert terminal.commands == ["pytest", "ruff", "pytest"]
    assert big.read_text(encoding="utf-8") == body


def test_cancel_while_waiting_for_tree(
    gateway: ResilientToolGateway, repo: Path, terminal: FakeTerminal, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("orchestrator.workflow.TREE_WAIT_SECONDS", 0.01)
    harness = Harness(gateway, repo)
    cr = harness.change_request()
    workflow = harness.workflow(cr)
    harness.tree_lock.acquire()
    try:
        worker = threading.Thread(target=workflow.run)
        worker.start()
        workflow.cancel("operator gave up")
        worker.join(timeout=5)
    finally:
        harness.tree_lock.release()

    assert not worker.is_alive()
    assert cr.status == Status.HALTED
    assert cr.halt_reason == "cancelled: operator gave up"
    assert not (repo / "tests" / "test_app.py").exists()
    assert terminal.commands == []
