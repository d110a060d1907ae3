"""Orchestrator module for Ford.

State machine-based change request orchestration with:
- Explicit status transitions
- Human approval signals (cluster, deletion, review)
- Priority admission under a concurrency limit
- Checkpoint persistence and recovery
"""

from .alerts import AdminAlerts, Alert, AlertLevel
from .change_set import ChangeSetApplier, branch_name, count_deleted_lines, slugify
from .checkpoints import CheckpointStore
from .limiter import ConcurrencyLimiter
from .notifications import NotificationLedger
from .runner import Orchestrator
from .signals import ApprovalResult, Signal, SignalInbox, SignalKind
from .state_machine import ChangeRequestStateMachine, Transition
from .validation import StageCommand, ValidationContext, ValidationPipeline
from .work_queue import PriorityWorkQueue
from .workflow import ChangeRequestWorkflow, WorkflowSettings

__all__ = [
    "AdminAlerts",
    "Alert",
    "AlertLevel",
    "ApprovalResult",
    "ChangeRequestStateMachine",
    "ChangeRequestWorkflow",
    "ChangeSetApplier",
    "CheckpointStore",
    "ConcurrencyLimiter",
    "NotificationLedger",
    "Orchestrator",
    "PriorityWorkQueue",
    "Signal",
    "SignalInbox",
    "SignalKind",
    "StageCommand",
    "Transition",
    "ValidationContext",
    "ValidationPipeline",
    "WorkflowSettings",
    "branch_name",
    "count_deleted_lines",
    "slugify",
]
