"""Change request schemas.

A change request tracks one proposed code change for an approved
cluster from generation through merge or halt. Status history is
append-only; nothing is overwritten.
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field

from .feedback import new_id, utcnow


class ChangeRequestStatus(str, Enum):
    """Change request lifecycle states."""

    GENERATING = "generating"
    VALIDATING = "validating"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    MERGED = "merged"
    HALTED = "halted"


TERMINAL_STATUSES = frozenset({ChangeRequestStatus.MERGED, ChangeRequestStatus.HALTED})


class AwaitingSignal(str, Enum):
    """External signal a suspended change request is waiting for."""

    DELETION_APPROVAL = "deletion_approval"  # > deletion threshold, still in generating
    REVIEW = "review"  # PR open, pending_review


class FileOperation(str, Enum):
    WRITE = "write"
    DELETE = "delete"


class FileChange(BaseModel):
    """One file in a generated change set."""

    path: str = Field(..., description="Path relative to the repository root")
    operation: FileOperation = Field(FileOperation.WRITE, description="write or delete")
    content: str | None = Field(None, description="New content (write only)")


class GeneratedChange(BaseModel):
    """Result of a code-generation capability call."""

    files: list[FileChange] = Field(default_factory=list, description="File changes")
    test_cases: list[str] = Field(default_factory=list, description="Test case names")
    reasoning: str = Field("", description="Generator's reasoning")
    impact_analysis: str = Field("", description="Expected impact of the change")


class StageName(str, Enum):
    """Validation stages in execution order."""

    LINT = "lint"
    TEST = "test"
    BUILD = "build"


class StageStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    NOT_RUN = "not_run"


class StageReport(BaseModel):
    """Typed result of a single validation stage."""

    stage: StageName = Field(..., description="Stage")
    status: StageStatus = Field(StageStatus.NOT_RUN, description="Stage status")
    errors: list[str] = Field(default_factory=list, description="Error lines")
    warnings: list[str] = Field(default_factory=list, description="Warning lines")
    exit_code: int | None = Field(None, description="Command exit code")
    duration_seconds: float = Field(0.0, description="Wall time")
    output_tail: str = Field("", description="Last lines of combined output")

    @property
    def success(self) -> bool:
        return self.status == StageStatus.PASSED

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def warning_count(self) -> int:
        return len(self.warnings)


class ValidationReport(BaseModel):
    """Aggregate lint/test/build report."""

    stages: list[StageReport] = Field(
        default_factory=lambda: [StageReport(stage=s) for s in StageName],
        description="One report per stage, in execution order",
    )
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = Field(None)

    @property
    def success(self) -> bool:
        return all(s.success for s in self.stages)

    @property
    def failed_stage(self) -> StageName | None:
        for report in self.stages:
            if report.status == StageStatus.FAILED:
                return report.stage
        return None

    def stage(self, name: StageName) -> StageReport:
        for report in self.stages:
            if report.stage == name:
                return report
        raise KeyError(name)

    def set_stage(self, report: StageReport) -> None:
        self.stages = [report if s.stage == report.stage else s for s in self.stages]

    def summary(self) -> str:
        return ", ".join(f"{s.stage.value}={s.status.value}" for s in self.stages)


class StatusTransition(BaseModel):
    """One entry in the append-only status history."""

    from_status: ChangeRequestStatus | None = Field(None, description="Previous status")
    to_status: ChangeRequestStatus = Field(..., description="New status")
    reason: str = Field("", description="Why the transition happened")
    at: datetime = Field(default_factory=utcnow)


class ChangeRequest(BaseModel):
    """Unit of work tracking one code change for one cluster."""

    # Identity and back-reference
    id: str = Field(default_factory=new_id, description="Change request id")
    cluster_id: str = Field(..., description="Owning cluster id")
    repo: str = Field("", description="Target repository")

    # Issue and PR
    issue_number: int | None = Field(None, description="Originating issue number")
    issue_title: str = Field(..., description="Issue title (drives the branch slug)")
    issue_body: str = Field("", description="Issue body / summary for generation")
    branch_name: str | None = Field(None, description="ford/issue-{n}-{slug}")
    pr_number: int | None = Field(None, description="Pull request number")
    scope: list[str] = Field(default_factory=list, description="Approved write scope")

    # State
    status: ChangeRequestStatus = Field(ChangeRequestStatus.GENERATING)
    history: list[StatusTransition] = Field(default_factory=list)

    # Generation
    reasoning: str = Field("", description="Generator reasoning")
    impact_analysis: str = Field("", description="Impact analysis")
    test_changes: list[FileChange] = Field(default_factory=list)
    test_cases: list[str] = Field(default_factory=list)
    implementation_changes: list[FileChange] = Field(default_factory=list)
    tests_applied: bool = Field(False)
    tests_confirmed_failing: bool = Field(False)
    implementation_applied: bool = Field(False)
    test_deleted_lines: int = Field(0, description="Lines deleted by the test change set")
    deleted_lines: int = Field(0, description="Lines deleted across the change set")
    deletion_approval_required: bool = Field(False)
    deletion_approved: bool = Field(False)
    tree_originals: dict[str, str | None] = Field(
        default_factory=dict,
        description="Working tree content before this request touched it (None = absent)",
    )

    # Validation and review
    validation_report: ValidationReport | None = Field(None)
    reviewer_id: str | None = Field(None)
    reviewer_notes: str | None = Field(None)

    # Suspension
    awaiting: AwaitingSignal | None = Field(None, description="Signal being waited for")
    resume_token: str | None = Field(None, description="Token a signal must carry")

    # Outcome
    halt_reason: str | None = Field(None)
    error_context: dict[str, str | int] = Field(default_factory=dict)
    notified: bool = Field(False, description="Resolved-feedback event handled")

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def await_signal(self, kind: AwaitingSignal) -> str:
        """Suspend on an external signal; returns the resumption token."""
        if self.awaiting != kind or not self.resume_token:
            self.awaiting = kind
            self.resume_token = uuid4().hex
            self.updated_at = utcnow()
        return self.resume_token

    def clear_awaiting(self) -> None:
        self.awaiting = None
        self.resume_token = None
        self.updated_at = utcnow()
