"""Change request workflow.

Drives one change request through its state machine. Each status has a
handler; a handler either advances the state machine (the loop keeps
going) or suspends the workflow on an external human signal (the loop
returns and the orchestrator resubmits the workflow once the signal
arrives). Handlers are written to be re-entered after a crash: every
sub-step records its completion on the change request, and external
actions that may already have happened are checked before they are
repeated.

All workflows share one working tree. A workflow takes the tree lock
before its first write and keeps it until validation is over; when it
lets go, every path it touched is put back to the content recorded in
``tree_originals``. The files travel to the code host with the branch,
so nothing a change request writes outlives its hold on the tree.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from integrations.base import CodeContext, CodeGenerator, CodeHost
from schemas.change_request import (
    AwaitingSignal,
    ChangeRequest,
    ChangeRequestStatus,
    FileChange,
    GeneratedChange,
    StageName,
    StatusTransition,
)
from schemas.feedback import FeedbackCluster
from tools.errors import (
    ChangeSetError,
    CircuitOpenError,
    FordError,
    PermanentToolError,
    RetryExhaustedError,
    SecurityViolation,
    describe_error,
)
from tools.gateway import ResilientToolGateway

from .alerts import AdminAlerts, AlertLevel
from .change_set import DEFAULT_SLUG_LENGTH, ChangeSetApplier, branch_name
from .signals import Signal, SignalKind
from .state_machine import ChangeRequestStateMachine
from .validation import ValidationCancelled, ValidationContext, ValidationPipeline

logger = logging.getLogger(__name__)

Status = ChangeRequestStatus

CODE_GENERATOR_TOOL = "code_generator"
CODE_HOST_TOOL = "code_host"

# How often a workflow waiting for the working tree checks for cancellation
TREE_WAIT_SECONDS = 0.5

# Type alias for status handlers; True means keep going, False means suspend
StatusHandler = Callable[[], bool]


class WorkflowCancelled(Exception):
    """Raised between steps once a cancellation has been requested."""


@dataclass
class WorkflowSettings:
    """Per-deployment knobs for change request workflows."""

    deletion_threshold: int = 100
    slug_length: int = DEFAULT_SLUG_LENGTH
    issue_labels: list[str] = field(default_factory=lambda: ["ford"])


class ChangeRequestWorkflow:
    """Runs the handlers for one change request."""

    def __init__(
        self,
        change_request: ChangeRequest,
        cluster: FeedbackCluster,
        gateway: ResilientToolGateway,
        generator: CodeGenerator,
        code_host: CodeHost,
        validation: ValidationPipeline,
        alerts: AdminAlerts,
        settings: WorkflowSettings | None = None,
        checkpoint: Callable[[ChangeRequest, str], None] | None = None,
        on_merged: Callable[[ChangeRequest], None] | None = None,
        tree_lock: "threading.Lock | None" = None,
    ) -> None:
        """Initialize workflow.

        Args:
            change_request: Change request to drive
            cluster: Owning cluster (read for labels and theme)
            gateway: Resilient gateway for every external call
            generator: Test/fix generation capability
            code_host: Issue/branch/PR capability
            validation: Lint/test/build pipeline
            alerts: Administrator alerts
            settings: Thresholds and naming
            checkpoint: Persists the change request before side effects
            on_merged: Resolved-feedback event (notification step)
            tree_lock: Lock shared by every workflow writing the same checkout
        """
        self.cr = change_request
        self.cluster = cluster
        self.gateway = gateway
        self.generator = generator
        self.code_host = code_host
        self.validation = validation
        self.alerts = alerts
        self.settings = settings or WorkflowSettings()
        self._checkpoint_cb = checkpoint
        self._on_merged = on_merged
        self.applier = ChangeSetApplier(gateway, scope=self.cr.scope or None)
        self.machine = ChangeRequestStateMachine(self.cr, on_transition=self._on_transition)

        self._cancel = threading.Event()
        self._cancel_reason = ""
        self._context: ValidationContext | None = None
        self._context_lock = threading.Lock()
        self.tree_lock = tree_lock or threading.Lock()
        self._tree_held = False

        # Status handlers registry
        self._handlers: dict[ChangeRequestStatus, StatusHandler] = {
            Status.GENERATING: self._handle_generating,
            Status.VALIDATING: self._handle_validating,
            Status.PENDING_REVIEW: self._handle_pending_review,
            Status.APPROVED: self._handle_approved,
            Status.REJECTED: self._handle_rejected,
        }

    # Plumbing

    def _checkpoint(self, reason: str) -> None:
        if self._checkpoint_cb:
            self._checkpoint_cb(self.cr, reason)

    def _on_transition(self, cr: ChangeRequest, entry: StatusTransition) -> None:
        self._checkpoint(f"{cr.id[:8]} -> {entry.to_status.value}")

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise WorkflowCancelled(self._cancel_reason or "cancelled")

    def _invoke(self, tool: str, func, *args, **kwargs):
        self._check_cancelled()
        return self.gateway.invoke(tool, func, *args, **kwargs)

    @property
    def summary(self) -> str:
        parts = [self.cr.issue_title]
        if self.cr.issue_body:
            parts.extend(["", self.cr.issue_body])
        return "\n".join(parts)

    @property
    def suspended(self) -> bool:
        return self.cr.awaiting is not None and not self.cr.is_terminal

    # Control

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def run(self) -> ChangeRequest:
        """Advance until the change request finishes or suspends.

        The working tree is never held across a return.
        """
        try:
            self._advance()
        finally:
            self._release_tree()
        return self.cr

    def _advance(self) -> None:
        while not self.machine.is_terminal():
            if self._cancel.is_set():
                self._halt(f"cancelled: {self._cancel_reason}")
                break

            status = self.cr.status
            handler = self._handlers.get(status)
            if handler is None:
                self._halt(f"No handler for status: {status.value}")
                break

            logger.info(f"WORKFLOW: CR {self.cr.id[:8]} running {status.value}")
            try:
                proceed = handler()
            except WorkflowCancelled:
                self._halt(f"cancelled: {self._cancel_reason}")
                break
            except ValidationCancelled:
                self._halt(f"cancelled: {self._cancel_reason or 'validation context released'}")
                break
            except Exception as exc:
                self._fail(exc)
                break
            if not proceed:
                logger.info(
                    f"WORKFLOW: CR {self.cr.id[:8]} suspended in {self.cr.status.value}"
                    + (f" awaiting {self.cr.awaiting.value}" if self.cr.awaiting else "")
                )
                break

    def cancel(self, reason: str) -> None:
        """Request cancellation; takes effect at the next step boundary."""
        self._cancel_reason = reason
        self._cancel.set()
        with self._context_lock:
            if self._context is not None:
                self._context.close()

    def apply_signal(self, signal: Signal) -> bool:
        """Apply a human decision.

        Returns:
            True if the workflow should be resubmitted
        """
        if self.cr.is_terminal:
            logger.info(f"WORKFLOW: ignoring {signal.kind.value} for finished CR {self.cr.id[:8]}")
            return False
        if signal.token and signal.token != self.cr.resume_token:
            logger.warning(f"WORKFLOW: stale token on {signal.kind.value} for CR {self.cr.id[:8]}")
            return False

        if signal.kind == SignalKind.CANCEL:
            self.cancel(signal.notes or f"cancelled by {signal.actor}")
            return True

        if signal.kind == SignalKind.DELETION_APPROVAL:
            if self.cr.awaiting != AwaitingSignal.DELETION_APPROVAL:
                return False
            self.cr.reviewer_id = signal.actor
            if not signal.approved:
                self.cr.reviewer_notes = signal.notes
                self._halt(f"deletion of {self.cr.deleted_lines} lines rejected by {signal.actor}")
                return False
            self.cr.deletion_approved = True
            self.cr.clear_awaiting()
            self._checkpoint(f"{self.cr.id[:8]} deletion approved")
            return True

        if signal.kind == SignalKind.REVIEW:
            if self.cr.awaiting != AwaitingSignal.REVIEW:
                return False
            self.cr.reviewer_id = signal.actor
            self.cr.reviewer_notes = signal.notes
            self.cr.clear_awaiting()
            if signal.approved:
                self.machine.transition(Status.APPROVED, f"approved by {signal.actor}")
            else:
                self.machine.transition(Status.REJECTED, f"rejected by {signal.actor}")
            return True

        return False

    def _halt(self, reason: str) -> None:
        with self._context_lock:
            if self._context is not None:
                self._context.close()
                self._context = None
        self.machine.halt(reason)

    def _fail(self, exc: Exception) -> None:
        context = describe_error(exc)
        self.cr.error_context = {k: v for k, v in context.items() if isinstance(v, (str, int))}

        if isinstance(exc, SecurityViolation):
            self.alerts.raise_alert(
                AlertLevel.CRITICAL,
                f"Security violation in CR {self.cr.id[:8]}",
                str(exc),
                context,
            )
            self._halt(f"security violation: {exc}")
        elif isinstance(exc, PermanentToolError):
            self.alerts.raise_alert(
                AlertLevel.CRITICAL,
                f"Permanent failure in CR {self.cr.id[:8]}",
                str(exc),
                context,
            )
            self._halt(f"permanent error: {exc}")
        elif isinstance(exc, (RetryExhaustedError, CircuitOpenError)):
            self._halt(f"tool unavailable: {exc}")
        elif isinstance(exc, ChangeSetError):
            self.alerts.raise_alert(
                AlertLevel.WARNING,
                f"Change set could not be applied for CR {self.cr.id[:8]}",
                str(exc),
                context,
            )
            self._halt(f"change set failed: {exc}")
        elif isinstance(exc, FordError):
            self._halt(f"error: {exc}")
        else:
            logger.exception(f"Handler exception for CR {self.cr.id[:8]} in {self.cr.status.value}")
            self.alerts.raise_alert(
                AlertLevel.CRITICAL,
                f"Unexpected error in CR {self.cr.id[:8]}",
                str(exc),
                context,
            )
            self._halt(f"unexpected error: {exc}")

    # Working tree

    def _applied_changes(self) -> list[FileChange]:
        changes: list[FileChange] = []
        if self.cr.tests_applied:
            changes.extend(self.cr.test_changes)
        if self.cr.implementation_applied:
            changes.extend(self.cr.implementation_changes)
        return changes

    def _hold_tree(self, reapply: list[FileChange]) -> None:
        """Take the working tree, writing ``reapply`` back if it was just acquired."""
        if self._tree_held:
            return
        while not self.tree_lock.acquire(timeout=TREE_WAIT_SECONDS):
            self._check_cancelled()
        self._tree_held = True
        logger.debug(f"WORKFLOW: CR {self.cr.id[:8]} holds the working tree")
        if reapply:
            self._apply(reapply, "reapplying changes")

    def _release_tree(self) -> None:
        if not self._tree_held:
            return
        try:
            self.restore_tree()
        finally:
            self._tree_held = False
            self.tree_lock.release()
            logger.debug(f"WORKFLOW: CR {self.cr.id[:8]} released the working tree")

    def _apply(self, changes: list[FileChange], label: str) -> None:
        self.applier.precheck(changes)
        for path, content in self.applier.read_originals(changes).items():
            self.cr.tree_originals.setdefault(path, content)
        self._checkpoint(f"{self.cr.id[:8]} {label}")
        self.applier.apply(changes)

    def restore_tree(self) -> None:
        """Put back every working tree path this change request touched.

        A failed restore keeps ``tree_originals`` so a later attempt (or
        recovery after a restart) can finish the job.
        """
        if not self.cr.tree_originals:
            return
        try:
            self.applier.restore(self.cr.tree_originals)
        except ChangeSetError as exc:
            self.alerts.raise_alert(
                AlertLevel.CRITICAL,
                f"Working tree left modified by CR {self.cr.id[:8]}",
                str(exc),
                {"paths": ", ".join(self.cr.tree_originals)},
            )
            return
        self.cr.tree_originals = {}
        if self.cr.status == Status.GENERATING:
            self.cr.tests_applied = False
            self.cr.implementation_applied = False
        self._checkpoint(f"{self.cr.id[:8]} working tree restored")

    def _awaiting_deletion_approval(self) -> bool:
        """Suspend if ``deleted_lines`` crosses the threshold without approval."""
        if self.cr.deleted_lines <= self.settings.deletion_threshold:
            return False
        self.cr.deletion_approval_required = True
        if self.cr.deletion_approved:
            return False
        token = self.cr.await_signal(AwaitingSignal.DELETION_APPROVAL)
        logger.warning(
            f"WORKFLOW: CR {self.cr.id[:8]} deletes {self.cr.deleted_lines} lines; "
            f"awaiting approval (token {token[:8]})"
        )
        self._checkpoint(f"{self.cr.id[:8]} awaiting deletion approval")
        return True

    # Status handlers

    def _code_context(self, include_tests: bool = False) -> CodeContext:
        files = {}
        if include_tests:
            files = {c.path: c.content or "" for c in self.cr.test_changes}
        return CodeContext(
            repo=self.cr.repo,
            scope=list(self.cr.scope),
            files=files,
            test_cases=list(self.cr.test_cases),
        )

    def _handle_generating(self) -> bool:
        """Issue, failing tests, implementation, in that order."""
        if self.cr.awaiting == AwaitingSignal.DELETION_APPROVAL:
            return False

        if self.cr.issue_number is None:
            self._checkpoint(f"{self.cr.id[:8]} creating issue")
            issue = self._invoke(
                CODE_HOST_TOOL,
                self.code_host.create_issue,
                self.cr.repo,
                self.cr.issue_title,
                self.cr.issue_body,
                list(self.settings.issue_labels) + [self.cluster.category.value],
            )
            self.cr.issue_number = issue.number
            self.cluster.issue_number = issue.number
            self._checkpoint(f"{self.cr.id[:8]} issue #{issue.number} created")

        if not self.cr.test_changes:
            generated: GeneratedChange = self._invoke(
                CODE_GENERATOR_TOOL,
                self.generator.generate_tests,
                self.summary,
                self._code_context(),
            )
            if not generated.files:
                raise PermanentToolError("Test generation produced no files", tool=CODE_GENERATOR_TOOL)
            self.cr.test_changes = generated.files
            self.cr.test_cases = generated.test_cases
            self.cr.reasoning = generated.reasoning
            self._checkpoint(f"{self.cr.id[:8]} tests generated")

        self._check_cancelled()
        self._hold_tree(self._applied_changes())

        if not self.cr.tests_applied:
            self.cr.test_deleted_lines = self.applier.deleted_lines(self.cr.test_changes)
            self.cr.deleted_lines = self.cr.test_deleted_lines
            if self._awaiting_deletion_approval():
                return False
            self._apply(self.cr.test_changes, "applying tests")
            self.cr.tests_applied = True
            self._checkpoint(f"{self.cr.id[:8]} tests applied")

        if not self.cr.tests_confirmed_failing:
            self._check_cancelled()
            report = self._run_with_context(
                lambda ctx: self.validation.run_stage(StageName.TEST, ctx)
            )
            if report.success:
                self._halt("generated tests pass without a fix; they do not reproduce the issue")
                return True
            self.cr.tests_confirmed_failing = True
            self._checkpoint(f"{self.cr.id[:8]} tests confirmed failing")

        if not self.cr.implementation_changes:
            generated = self._invoke(
                CODE_GENERATOR_TOOL,
                self.generator.implement_fix,
                self.summary,
                self._code_context(include_tests=True),
            )
            if not generated.files:
                raise PermanentToolError("Fix generation produced no files", tool=CODE_GENERATOR_TOOL)
            self.cr.implementation_changes = generated.files
            if generated.reasoning:
                self.cr.reasoning = "\n\n".join(p for p in (self.cr.reasoning, generated.reasoning) if p)
            self.cr.impact_analysis = generated.impact_analysis
            self._checkpoint(f"{self.cr.id[:8]} implementation generated")

        if not self.cr.implementation_applied:
            self._check_cancelled()
            impl_deleted = self.applier.deleted_lines(self.cr.implementation_changes)
            self.cr.deleted_lines = self.cr.test_deleted_lines + impl_deleted
            if self._awaiting_deletion_approval():
                return False
            self._apply(self.cr.implementation_changes, "applying implementation")
            self.cr.implementation_applied = True

        self.machine.transition(Status.VALIDATING)
        return True

    def _run_with_context(self, func):
        ctx = self.validation.context()
        with self._context_lock:
            self._context = ctx
        try:
            return func(ctx)
        finally:
            with self._context_lock:
                self._context = None
            ctx.close()

    def _handle_validating(self) -> bool:
        """Full lint -> test -> build; a failure halts without a PR."""
        existing = self.cr.validation_report
        if existing is None or existing.completed_at is None or not existing.success:
            self._check_cancelled()
            changes = self.cr.test_changes + self.cr.implementation_changes
            self._hold_tree(changes)
            self._checkpoint(f"{self.cr.id[:8]} validating")
            report = self._run_with_context(
                lambda ctx: self.validation.validate(changes=changes, context=ctx)
            )
            self.cr.validation_report = report
        else:
            report = existing
            logger.info(f"WORKFLOW: CR {self.cr.id[:8]} reusing passed validation report")

        self._release_tree()
        if not report.success:
            self._halt(f"validation failed at {report.failed_stage.value}: {report.summary()}")
            return True

        self.machine.transition(Status.PENDING_REVIEW, report.summary())
        return True

    def _handle_pending_review(self) -> bool:
        """Open the PR (once) and wait for the reviewer."""
        if self.cr.awaiting == AwaitingSignal.REVIEW:
            return False

        if not self.cr.branch_name:
            self.cr.branch_name = branch_name(
                self.cr.issue_number or 0,
                self.cr.issue_title,
                self.settings.slug_length,
            )

        if self.cr.pr_number is None:
            existing = self._invoke(
                CODE_HOST_TOOL,
                self.code_host.find_pull_request,
                self.cr.repo,
                self.cr.branch_name,
            )
            if existing is not None:
                self.cr.pr_number = existing.number
            else:
                self._checkpoint(f"{self.cr.id[:8]} opening PR")
                self._invoke(
                    CODE_HOST_TOOL,
                    self.code_host.create_branch,
                    self.cr.repo,
                    self.cr.branch_name,
                    self.cr.test_changes + self.cr.implementation_changes,
                    self._commit_message(),
                )
                pr = self._invoke(
                    CODE_HOST_TOOL,
                    self.code_host.create_pull_request,
                    self.cr.repo,
                    self.cr.branch_name,
                    self.cr.issue_title,
                    self._pr_body(),
                    self.cr.issue_number,
                )
                self.cr.pr_number = pr.number
            logger.info(f"WORKFLOW: CR {self.cr.id[:8]} PR #{self.cr.pr_number} on {self.cr.branch_name}")

        self.cr.await_signal(AwaitingSignal.REVIEW)
        self._checkpoint(f"{self.cr.id[:8]} awaiting review")
        return False

    def _commit_message(self) -> str:
        if self.cr.issue_number:
            return f"Fix #{self.cr.issue_number}: {self.cr.issue_title}"
        return self.cr.issue_title

    def _pr_body(self) -> str:
        lines = []
        if self.cr.issue_number:
            lines.append(f"Fixes #{self.cr.issue_number}")
            lines.append("")
        if self.cr.reasoning:
            lines.extend(["## Reasoning", self.cr.reasoning, ""])
        if self.cr.impact_analysis:
            lines.extend(["## Impact", self.cr.impact_analysis, ""])
        if self.cr.validation_report:
            lines.extend(["## Validation", self.cr.validation_report.summary()])
        return "\n".join(lines)

    def _handle_approved(self) -> bool:
        """Merge (confirming first), emit the resolved event, finish."""
        self._checkpoint(f"{self.cr.id[:8]} merging")
        merged = self._invoke(CODE_HOST_TOOL, self.code_host.is_merged, self.cr.repo, self.cr.pr_number)
        if not merged:
            self._invoke(CODE_HOST_TOOL, self.code_host.merge_pull_request, self.cr.repo, self.cr.pr_number)
        else:
            logger.info(f"WORKFLOW: PR #{self.cr.pr_number} already merged")

        if not self.cr.notified and self._on_merged:
            self._on_merged(self.cr)
        self.cr.notified = True
        self.machine.transition(Status.MERGED, f"PR #{self.cr.pr_number} merged")
        return True

    def _handle_rejected(self) -> bool:
        """Record the rejection; no automatic retry."""
        notes = self.cr.reviewer_notes or "no notes"
        self.machine.halt(f"rejected by {self.cr.reviewer_id or 'reviewer'}: {notes}")
        return True
