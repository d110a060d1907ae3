"""Orchestrator for feedback-driven change requests.

Owns the shared pipeline state and the admission loop:

    ingest -> cluster -> (human cluster approval) -> priority queue
      -> concurrency limiter -> change request workflows
      -> (human review) -> merge -> notification ledger

Workflows run on a bounded thread pool. Human waits are durable
``awaiting`` states on the change request; when a matching signal
arrives the workflow is resubmitted. Every transition with an external
side effect is preceded by a checkpoint, and ``recover`` resumes from
the latest one after a restart.

Opening any tool's circuit breaker puts the system in safe mode:
nothing new is admitted, administrators are alerted, and status
queries and signal submission keep working.
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Iterable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any

from clustering.engine import ClusterEngine
from integrations.base import (
    CodeGenerator,
    CodeHost,
    EmbeddingDatabase,
    FeedbackAnalyzer,
    Notifier,
)
from memory.store import EmbeddingStore
from pipeline.config import Config
from schemas.change_request import AwaitingSignal, ChangeRequest, ChangeRequestStatus, StageName
from schemas.feedback import (
    Classification,
    ClusterStatus,
    FeedbackCluster,
    FeedbackItem,
)
from schemas.pipeline_state import Checkpoint, PipelineSnapshot
from tools.circuit_breaker import CircuitBreaker, CircuitBreakerState
from tools.errors import FordError
from tools.filesystem_tool import FilesystemTool
from tools.gateway import ResilientToolGateway, RetryPolicy
from tools.shell_tool import ShellTool

from .alerts import AdminAlerts, AlertLevel
from .checkpoints import CheckpointStore
from .limiter import ConcurrencyLimiter
from .notifications import NotificationLedger
from .signals import Signal, SignalInbox, SignalKind
from .validation import StageCommand, ValidationPipeline
from .work_queue import PriorityWorkQueue
from .workflow import ChangeRequestWorkflow, WorkflowSettings

logger = logging.getLogger(__name__)

# Members quoted in a generated issue body
ISSUE_BODY_SAMPLES = 5


class Orchestrator:
    """Drives clusters through change request workflows."""

    def __init__(
        self,
        gateway: ResilientToolGateway,
        engine: ClusterEngine,
        generator: CodeGenerator,
        code_host: CodeHost,
        validation: ValidationPipeline,
        state_dir: Path | str,
        concurrency_limit: int = 4,
        count_pending_review: bool = True,
        notifier: Notifier | None = None,
        settings: WorkflowSettings | None = None,
        repo: str = "",
        checkpoint_retention: int = 50,
        message_template: str | None = None,
        alerts: AdminAlerts | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            gateway: Resilient gateway with filesystem and terminal tools
            engine: Cluster engine
            generator: Test/fix generation capability
            code_host: Issue/branch/PR capability
            validation: Lint/test/build pipeline
            state_dir: Directory for checkpoints, ledger, signals and alerts
            concurrency_limit: Maximum active change requests
            count_pending_review: Whether review waits hold a slot
            notifier: Sends resolved-feedback messages
            settings: Change request workflow settings
            repo: Default target repository
            checkpoint_retention: Checkpoints kept when pruning
            message_template: Notification text (``{pr_number}``, ``{author}``)
            alerts: Administrator alert fan-out
        """
        self.gateway = gateway
        self.engine = engine
        self.generator = generator
        self.code_host = code_host
        self.validation = validation
        self.state_dir = Path(state_dir)
        self.settings = settings or WorkflowSettings()
        self.repo = repo

        self.alerts = alerts or AdminAlerts(self.state_dir)
        self.queue = PriorityWorkQueue()
        self.limiter = ConcurrencyLimiter(concurrency_limit, count_pending_review)
        self.checkpoints = CheckpointStore(self.state_dir, retention=checkpoint_retention)
        ledger_kwargs = {"message_template": message_template} if message_template else {}
        self.ledger = NotificationLedger(self.state_dir, gateway=gateway, notifier=notifier, **ledger_kwargs)
        self.signals = SignalInbox(self.state_dir)

        # Lookup tables (clusters own the change request id; the request keeps a back-reference)
        self.items: dict[str, FeedbackItem] = {}
        self.change_requests: dict[str, ChangeRequest] = {}
        self.workflows: dict[str, ChangeRequestWorkflow] = {}
        self._futures: dict[str, Future] = {}
        self._ready: deque[str] = deque()

        self._state_lock = threading.RLock()
        # Every workflow writes and validates in the same checkout
        self.tree_lock = threading.Lock()
        self._safe_mode = False
        self._safe_mode_reason: str | None = None
        self._stop = threading.Event()
        self._executor = ThreadPoolExecutor(
            max_workers=concurrency_limit,
            thread_name_prefix="ford-cr",
        )

        self.gateway.breaker.add_listener(on_open=self._on_breaker_open, on_close=self._on_breaker_close)

    @classmethod
    def from_config(
        cls,
        config: Config,
        analyzer: FeedbackAnalyzer,
        generator: CodeGenerator,
        code_host: CodeHost,
        notifier: Notifier | None = None,
        database: EmbeddingDatabase | None = None,
        base_dir: Path | None = None,
    ) -> "Orchestrator":
        """Wire an orchestrator from configuration and capabilities."""
        root = (base_dir or Path.cwd()).resolve()
        policy = config.security_policy(root)
        breaker = CircuitBreaker(
            failure_threshold=config.gateway.breaker_failure_threshold,
            reset_timeout=config.gateway.breaker_reset_seconds,
        )
        gateway = ResilientToolGateway(
            policy,
            retry=RetryPolicy(
                max_retries=config.gateway.max_retries,
                base_delay=config.gateway.backoff_base_seconds,
                multiplier=config.gateway.backoff_multiplier,
            ),
            timeout=config.gateway.timeout_seconds,
            breaker=breaker,
        )
        working_dir = (root / config.validation.working_dir).resolve()
        gateway.register(FilesystemTool(policy.base_dir))
        gateway.register(
            ShellTool(
                working_dir,
                timeout=int(config.validation.timeout_seconds),
                allowed_commands=policy.command_whitelist,
            )
        )

        if database is None:
            embeddings_dir = config.storage.embeddings_dir
            database = EmbeddingStore(Path(embeddings_dir) if embeddings_dir else None)
        engine = ClusterEngine(
            gateway=gateway,
            analyzer=analyzer,
            database=database,
            threshold=config.clustering.similarity_threshold,
        )

        validation = ValidationPipeline(
            gateway,
            commands={
                StageName.LINT: StageCommand.parse(config.validation.lint_command),
                StageName.TEST: StageCommand.parse(config.validation.test_command),
                StageName.BUILD: StageCommand.parse(config.validation.build_command),
            },
            working_dir=working_dir,
            timeout=config.validation.timeout_seconds,
        )

        state_dir = config.state_path(root)

        return cls(
            gateway=gateway,
            engine=engine,
            generator=generator,
            code_host=code_host,
            validation=validation,
            state_dir=state_dir,
            concurrency_limit=config.scheduler.concurrency_limit,
            count_pending_review=config.scheduler.count_pending_review,
            notifier=notifier if config.notifications.enabled else None,
            settings=WorkflowSettings(
                deletion_threshold=config.change_requests.deletion_threshold,
                slug_length=config.change_requests.slug_length,
                issue_labels=list(config.change_requests.issue_labels),
            ),
            repo=config.change_requests.repo,
            checkpoint_retention=config.storage.checkpoint_retention,
            message_template=config.notifications.message_template,
        )

    # Safe mode

    @property
    def safe_mode(self) -> bool:
        return self._safe_mode

    def enter_safe_mode(self, reason: str) -> None:
        with self._state_lock:
            if self._safe_mode:
                return
            self._safe_mode = True
            self._safe_mode_reason = reason
        self.alerts.raise_alert(
            AlertLevel.CRITICAL,
            "Safe mode: admission stopped",
            reason,
            {"open_breakers": ", ".join(self.gateway.breaker.open_tools())},
        )

    def exit_safe_mode(self) -> None:
        with self._state_lock:
            if not self._safe_mode:
                return
            self._safe_mode = False
            self._safe_mode_reason = None
        logger.info("ORCHESTRATOR: safe mode cleared, admission resumed")

    def _on_breaker_open(self, tool: str, state: CircuitBreakerState) -> None:
        self.enter_safe_mode(f"circuit breaker for {tool} opened after {state.failure_count} failures")

    def _on_breaker_close(self, tool: str, state: CircuitBreakerState) -> None:
        if self._safe_mode and not self.gateway.breaker.open_tools():
            self.exit_safe_mode()

    # Checkpoints

    def _snapshot(self) -> PipelineSnapshot:
        entries, dispatched = self.queue.snapshot()
        clusters = [
            c.model_copy(deep=True)
            for c in self.engine.clusters.values()
            if c.status != ClusterStatus.IMPLEMENTED
        ]
        member_ids = {m for c in clusters for m in c.member_ids}
        return PipelineSnapshot(
            queue=entries,
            change_requests=self.checkpoints.records(),
            clusters=clusters,
            items=[item for fid, item in self.items.items() if fid in member_ids],
            ledger_delta=self.ledger.drain_delta(),
            dispatched=dispatched,
            safe_mode=self._safe_mode,
            safe_mode_reason=self._safe_mode_reason,
        )

    def save_checkpoint(self, reason: str) -> Checkpoint:
        """Write a checkpoint of the whole pipeline.

        Raises:
            FordError: If the checkpoint could not be written (safe mode is entered)
        """
        with self._state_lock:
            try:
                checkpoint = self.checkpoints.save(self._snapshot(), reason)
            except OSError as e:
                self.enter_safe_mode(f"checkpoint store unavailable: {e}")
                raise FordError(f"Checkpoint write failed: {e}") from e
        if self.checkpoints.retention and checkpoint.sequence % self.checkpoints.retention == 0:
            self.checkpoints.prune()
        return checkpoint

    def _checkpoint_cr(self, cr: ChangeRequest, reason: str) -> None:
        self.checkpoints.record(cr)
        self.save_checkpoint(reason)

    # Intake and cluster gate

    def ingest(
        self,
        items: Iterable[FeedbackItem],
        classifications: Mapping[str, Classification],
    ) -> list[FeedbackCluster]:
        """Cluster newly classified feedback.

        Returns:
            Clusters that gained members
        """
        items = list(items)
        with self._state_lock:
            for item in items:
                self.items[item.id] = item
        touched = self.engine.cluster(items, classifications)
        logger.info(
            f"ORCHESTRATOR: ingested {len(items)} items into {len(touched)} clusters "
            f"({len(self.engine.dead_letters)} dead letters)"
        )
        self.save_checkpoint(f"ingest {len(items)} items")
        return touched

    def retry_dead_letters(self) -> list[FeedbackCluster]:
        touched = self.engine.retry_dead_letters()
        if touched:
            self.save_checkpoint("dead letters retried")
        return touched

    def _require_cluster(self, cluster_id: str) -> FeedbackCluster:
        cluster = self.engine.get(cluster_id)
        if cluster is None:
            raise KeyError(f"Unknown cluster: {cluster_id}")
        return cluster

    def approve_cluster(
        self,
        cluster_id: str,
        scope: list[str] | None = None,
        actor: str = "user",
    ) -> bool:
        """Human approval gate: the cluster is frozen and queued for work."""
        with self._state_lock:
            cluster = self._require_cluster(cluster_id)
            if cluster.status != ClusterStatus.PENDING:
                logger.warning(f"ORCHESTRATOR: cluster {cluster_id[:8]} is {cluster.status.value}")
                return False
            cluster.scope = list(scope or cluster.scope)
            if not cluster.repo:
                cluster.repo = self.repo
            cluster.set_status(ClusterStatus.APPROVED)
            self.queue.enqueue(cluster)
        logger.info(f"ORCHESTRATOR: cluster {cluster_id[:8]} approved by {actor}")
        self.save_checkpoint(f"cluster {cluster_id[:8]} approved")
        return True

    def reject_cluster(self, cluster_id: str, actor: str = "user", notes: str | None = None) -> bool:
        with self._state_lock:
            cluster = self._require_cluster(cluster_id)
            if cluster.status != ClusterStatus.PENDING:
                return False
            cluster.set_status(ClusterStatus.REJECTED)
            self.queue.remove(cluster_id)
        logger.info(f"ORCHESTRATOR: cluster {cluster_id[:8]} rejected by {actor}: {notes or ''}")
        self.save_checkpoint(f"cluster {cluster_id[:8]} rejected")
        return True

    def requeue(self, cluster_id: str) -> bool:
        """Explicitly put an approved cluster back after its change request halted."""
        with self._state_lock:
            cluster = self._require_cluster(cluster_id)
            if cluster.status != ClusterStatus.APPROVED:
                return False
            active = cluster.change_request_id and cluster.change_request_id in self.change_requests
            if active and not self.change_requests[cluster.change_request_id].is_terminal:
                return False
            cluster.change_request_id = None
            requeued = self.queue.requeue(cluster)
        if requeued:
            self.save_checkpoint(f"cluster {cluster_id[:8]} re-queued")
        return requeued

    # Admission loop

    def _new_change_request(self, cluster: FeedbackCluster) -> ChangeRequest:
        samples = [
            self.items[m].text for m in cluster.member_ids[:ISSUE_BODY_SAMPLES] if m in self.items
        ]
        body_lines = [
            f"Category: {cluster.category.value}",
            f"Reports: {cluster.size}, average severity {cluster.average_severity:.0f}",
        ]
        if samples:
            body_lines.append("")
            body_lines.extend(f"> {text}" for text in samples)
        return ChangeRequest(
            cluster_id=cluster.id,
            repo=cluster.repo or self.repo,
            issue_number=cluster.issue_number,
            issue_title=cluster.common_theme or f"{cluster.category.value} reported by users",
            issue_body="\n".join(body_lines),
            scope=list(cluster.scope),
        )

    def _workflow_for(self, cr: ChangeRequest) -> ChangeRequestWorkflow:
        cluster = self._require_cluster(cr.cluster_id)
        workflow = ChangeRequestWorkflow(
            cr,
            cluster,
            gateway=self.gateway,
            generator=self.generator,
            code_host=self.code_host,
            validation=self.validation,
            alerts=self.alerts,
            settings=self.settings,
            checkpoint=self._checkpoint_cr,
            on_merged=self._on_merged,
            tree_lock=self.tree_lock,
        )
        self.change_requests[cr.id] = cr
        self.workflows[cr.id] = workflow
        return workflow

    def _is_running(self, cr_id: str) -> bool:
        future = self._futures.get(cr_id)
        return future is not None and not future.done()

    def _submit(self, cr_id: str) -> None:
        workflow = self.workflows[cr_id]
        self._futures[cr_id] = self._executor.submit(self._run_workflow, workflow)

    def _run_workflow(self, workflow: ChangeRequestWorkflow) -> ChangeRequest:
        try:
            workflow.run()
        except FordError:
            # Raised while halting, e.g. the checkpoint store failed
            logger.exception(f"ORCHESTRATOR: CR {workflow.cr.id[:8]} stopped abnormally")
        self._after_run(workflow)
        return workflow.cr

    def _after_run(self, workflow: ChangeRequestWorkflow) -> None:
        cr = workflow.cr
        with self._state_lock:
            if workflow.cancel_requested and not cr.is_terminal:
                # Cancel arrived after the run loop made its last check
                try:
                    workflow.run()
                except FordError:
                    logger.exception(f"ORCHESTRATOR: CR {cr.id[:8]} stopped abnormally")
            if cr.is_terminal:
                self.limiter.release(cr.id)
                cluster = self.engine.get(cr.cluster_id)
                if cluster is not None and cr.status == ChangeRequestStatus.MERGED:
                    cluster.set_status(ClusterStatus.IMPLEMENTED)
                    self.queue.release(cluster.id)
                self.checkpoints.record(cr)
                logger.info(f"ORCHESTRATOR: CR {cr.id[:8]} finished as {cr.status.value}")
            elif cr.awaiting == AwaitingSignal.REVIEW and not self.limiter.count_pending_review:
                self.limiter.release(cr.id)
        try:
            self.save_checkpoint(f"CR {cr.id[:8]} {cr.status.value}")
        except FordError:
            logger.exception(f"ORCHESTRATOR: could not checkpoint CR {cr.id[:8]}")

    def tick(self) -> int:
        """One pass of the admission loop.

        Returns:
            Number of workflows started or resumed
        """
        self.process_signals()
        if self._safe_mode:
            return 0

        started = 0
        with self._state_lock:
            # Resumptions first, so human latency never loses a slot to new work
            pending = len(self._ready)
            for _ in range(pending):
                cr_id = self._ready.popleft()
                cr = self.change_requests.get(cr_id)
                if cr is None or cr.is_terminal or self._is_running(cr_id):
                    continue
                if not self.limiter.try_acquire(cr_id):
                    self._ready.append(cr_id)
                    continue
                self._submit(cr_id)
                started += 1

            while not self._ready and self.limiter.available > 0:
                cluster = self.queue.dequeue()
                if cluster is None:
                    break
                cr = self._new_change_request(cluster)
                cluster.change_request_id = cr.id
                self._workflow_for(cr)
                self.limiter.try_acquire(cr.id)
                self.checkpoints.record(cr)
                logger.info(
                    f"ORCHESTRATOR: admitted cluster {cluster.id[:8]} "
                    f"(severity {cluster.average_severity:.1f}) as CR {cr.id[:8]}"
                )
                self._submit(cr.id)
                started += 1
        return started

    def run_forever(self, poll_interval: float = 5.0) -> None:
        """Tick until ``stop`` is called."""
        logger.info("ORCHESTRATOR: admission loop started")
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(poll_interval)
        logger.info("ORCHESTRATOR: admission loop stopped")

    def stop(self) -> None:
        self._stop.set()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no workflow is running (used by tests and shutdown)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._state_lock:
                running = [f for f in self._futures.values() if not f.done()]
            if not running:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            wait(running, timeout=remaining, return_when=FIRST_COMPLETED)

    def shutdown(self, wait: bool = True) -> None:
        self.stop()
        self._executor.shutdown(wait=wait)
        self.gateway.shutdown()
        if isinstance(self.engine.database, EmbeddingStore):
            self.engine.database.save()

    # Signals and cancellation

    def submit_signal(self, signal: Signal) -> None:
        """Queue a human decision (accepted in safe mode too)."""
        self.signals.submit(signal)

    def process_signals(self) -> int:
        """Apply pending inbox signals. Returns how many were handled."""
        handled = 0
        for signal in self.signals.pending():
            if self._apply_signal(signal):
                self.signals.acknowledge(signal)
                handled += 1
        return handled

    def _apply_signal(self, signal: Signal) -> bool:
        """Returns False to leave the signal in the inbox for a later tick."""
        if signal.kind == SignalKind.CLUSTER_DECISION:
            try:
                if signal.approved:
                    self.approve_cluster(signal.target_id, scope=signal.scope or None, actor=signal.actor)
                else:
                    self.reject_cluster(signal.target_id, actor=signal.actor, notes=signal.notes)
            except KeyError:
                logger.warning(f"SIGNAL: unknown cluster {signal.target_id}")
            return True

        if signal.kind == SignalKind.CANCEL:
            self.cancel(signal.target_id, signal.notes or f"cancelled by {signal.actor}")
            return True

        with self._state_lock:
            workflow = self.workflows.get(signal.target_id)
            if workflow is None:
                logger.warning(f"SIGNAL: unknown change request {signal.target_id}")
                return True
            if self._is_running(signal.target_id):
                return False
            resume = workflow.apply_signal(signal)
            cr = workflow.cr
            if cr.is_terminal:
                self._after_run(workflow)
            elif resume:
                self._ready.append(cr.id)
                self.checkpoints.record(cr)
        return True

    def cancel(self, cr_id: str, reason: str) -> bool:
        """Cancel a change request at any non-terminal state."""
        with self._state_lock:
            workflow = self.workflows.get(cr_id)
            if workflow is None or workflow.cr.is_terminal:
                return False
            workflow.cancel(reason)
            if self._is_running(cr_id):
                # Halts at the next step boundary and releases its slot there
                return True
        self._run_workflow(workflow)
        return True

    # Notification step

    def _on_merged(self, cr: ChangeRequest) -> None:
        cluster = self.engine.get(cr.cluster_id)
        if cluster is None or cr.pr_number is None:
            logger.warning(f"ORCHESTRATOR: nothing to notify for CR {cr.id[:8]}")
            return
        self.ledger.notify(cluster, cr.pr_number, self.items)

    # Recovery

    def recover(self) -> int:
        """Restore state from the latest checkpoint.

        Returns:
            Number of change requests restored
        """
        checkpoint = self.checkpoints.latest()
        if checkpoint is None:
            logger.info("ORCHESTRATOR: no checkpoint found, starting fresh")
            return 0

        payload = checkpoint.payload
        with self._state_lock:
            self.engine.restore(payload.clusters)
            for item in payload.items:
                self.items[item.id] = item
            clusters = {c.id: self.engine.clusters[c.id] for c in payload.clusters}
            self.queue.restore(payload.queue, clusters, payload.dispatched)
            merged = self.ledger.merge(payload.ledger_delta)
            if payload.safe_mode:
                self._safe_mode = True
                self._safe_mode_reason = payload.safe_mode_reason

            for cr in payload.change_requests:
                if cr.is_terminal:
                    continue
                if cr.cluster_id not in self.engine.clusters:
                    logger.warning(f"ORCHESTRATOR: CR {cr.id[:8]} has no cluster, skipping")
                    continue
                self._workflow_for(cr)
                self.checkpoints.record(cr)
                if cr.awaiting is None:
                    self._ready.append(cr.id)
                elif cr.awaiting == AwaitingSignal.DELETION_APPROVAL or self.limiter.count_pending_review:
                    if not self.limiter.try_acquire(cr.id):
                        logger.warning(f"ORCHESTRATOR: CR {cr.id[:8]} restored over the concurrency limit")

            # A crash can leave files of any restored request in the shared checkout
            for workflow in list(self.workflows.values()):
                workflow.restore_tree()

        logger.info(
            f"ORCHESTRATOR: recovered checkpoint #{checkpoint.sequence}: "
            f"{len(self.change_requests)} change requests, {len(payload.queue)} queued, "
            f"{merged} ledger entries merged"
        )
        return len(self.change_requests)

    # Read-only status

    def status(self) -> dict[str, Any]:
        """Snapshot for status queries (safe in safe mode)."""
        with self._state_lock:
            entries, _ = self.queue.snapshot()
            return {
                "safe_mode": self._safe_mode,
                "safe_mode_reason": self._safe_mode_reason,
                "queue": [e.model_dump(mode="json") for e in entries],
                "active": self.limiter.active,
                "limit": self.limiter.limit,
                "change_requests": [
                    wf.machine.get_progress_summary() for wf in self.workflows.values()
                ],
                "clusters": {
                    status.value: sum(1 for c in self.engine.clusters.values() if c.status == status)
                    for status in ClusterStatus
                },
                "dead_letters": sorted(self.engine.dead_letters),
                "breakers": self.gateway.breaker.snapshot(),
                "alerts": [a.to_dict() for a in self.alerts.recent(10)],
            }
