"""State machine for change request lifecycles."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from schemas.change_request import (
    TERMINAL_STATUSES,
    ChangeRequest,
    ChangeRequestStatus,
    StatusTransition,
)
from schemas.feedback import utcnow
from tools.errors import InvalidTransitionError

logger = logging.getLogger(__name__)

Status = ChangeRequestStatus


@dataclass
class Transition:
    """Defines a valid state transition."""

    from_status: ChangeRequestStatus
    to_status: ChangeRequestStatus
    condition: Callable[[ChangeRequest], bool] | None = None
    description: str = ""


def _ready_for_validation(cr: ChangeRequest) -> bool:
    if cr.deletion_approval_required and not cr.deletion_approved:
        return False
    return cr.awaiting is None and cr.implementation_applied


class ChangeRequestStateMachine:
    """Enforces the change request transition graph.

    Manages:
    - Valid status transitions (no skipping, terminal states are final)
    - The append-only status history
    - Transition listeners (checkpointing hooks)
    """

    TRANSITIONS: list[Transition] = [
        # Success path
        Transition(
            Status.GENERATING,
            Status.VALIDATING,
            condition=_ready_for_validation,
            description="tests confirmed failing and implementation applied",
        ),
        Transition(Status.VALIDATING, Status.PENDING_REVIEW, description="validation passed"),
        Transition(Status.PENDING_REVIEW, Status.APPROVED, description="reviewer approved"),
        Transition(Status.APPROVED, Status.MERGED, description="merge confirmed"),
        # Rejection path
        Transition(Status.PENDING_REVIEW, Status.REJECTED, description="reviewer rejected"),
        Transition(Status.REJECTED, Status.HALTED, description="rejection recorded"),
        # Unrecoverable errors and cancellation
        Transition(Status.GENERATING, Status.HALTED),
        Transition(Status.VALIDATING, Status.HALTED),
        Transition(Status.PENDING_REVIEW, Status.HALTED),
        Transition(Status.APPROVED, Status.HALTED),
    ]

    TERMINAL = TERMINAL_STATUSES

    def __init__(
        self,
        change_request: ChangeRequest,
        on_transition: Callable[[ChangeRequest, StatusTransition], None] | None = None,
    ) -> None:
        """Initialize state machine.

        Args:
            change_request: Change request to drive
            on_transition: Called after each recorded transition
        """
        self.cr = change_request
        self.on_transition = on_transition

        # Build transition map for quick lookup
        self._transition_map: dict[ChangeRequestStatus, dict[ChangeRequestStatus, Transition]] = {}
        for t in self.TRANSITIONS:
            self._transition_map.setdefault(t.from_status, {})[t.to_status] = t

        if not self.cr.history:
            self.cr.history.append(
                StatusTransition(from_status=None, to_status=self.cr.status, reason="created")
            )

    @property
    def status(self) -> ChangeRequestStatus:
        return self.cr.status

    def is_terminal(self) -> bool:
        return self.cr.status in self.TERMINAL

    def can_transition(self, to_status: ChangeRequestStatus) -> bool:
        """Check if transition to target status is valid right now."""
        transition = self._transition_map.get(self.cr.status, {}).get(to_status)
        if transition is None:
            return False
        if transition.condition and not transition.condition(self.cr):
            return False
        return True

    def transition(self, to_status: ChangeRequestStatus, reason: str = "") -> StatusTransition:
        """Move to a new status and append it to the history.

        Raises:
            InvalidTransitionError: If the graph does not allow it
        """
        if not self.can_transition(to_status):
            raise InvalidTransitionError(
                f"Change request {self.cr.id}: {self.cr.status.value} -> {to_status.value} "
                "is not a valid transition"
            )
        transition = self._transition_map[self.cr.status][to_status]
        entry = StatusTransition(
            from_status=self.cr.status,
            to_status=to_status,
            reason=reason or transition.description,
        )
        self.cr.history.append(entry)
        self.cr.status = to_status
        self.cr.updated_at = utcnow()
        logger.info(
            f"CR {self.cr.id[:8]}: {entry.from_status.value} -> {to_status.value}"
            + (f" ({entry.reason})" if entry.reason else "")
        )
        if self.on_transition:
            self.on_transition(self.cr, entry)
        return entry

    def halt(self, reason: str) -> StatusTransition | None:
        """Halt from any non-terminal status.

        A rejected change request passes through its own rejected -> halted
        edge. Returns None if already terminal.
        """
        if self.is_terminal():
            return None
        self.cr.halt_reason = reason
        self.cr.clear_awaiting()
        return self.transition(Status.HALTED, reason)

    def get_valid_next_statuses(self) -> list[ChangeRequestStatus]:
        return list(self._transition_map.get(self.cr.status, {}))

    def get_progress_summary(self) -> dict[str, Any]:
        return {
            "id": self.cr.id,
            "cluster_id": self.cr.cluster_id,
            "status": self.cr.status.value,
            "awaiting": self.cr.awaiting.value if self.cr.awaiting else None,
            "branch": self.cr.branch_name,
            "pr_number": self.cr.pr_number,
            "history": [
                f"{(h.from_status.value if h.from_status else '-')}->{h.to_status.value}"
                for h in self.cr.history
            ],
        }
