"""All-or-nothing application of multi-file changes.

Every write and delete goes through the gateway's filesystem tool, so
the policy guard sees each path before it reaches the disk. Before
anything is written, all paths are checked against the change scope and
the original contents are captured; if any write fails, the writes that
already landed are undone in reverse order.

Restores bypass the filesystem circuit breaker: the failure that forced
the rollback is often the one that opened it.
"""

import difflib
import logging
import re

from schemas.change_request import FileChange, FileOperation
from tools.errors import ChangeSetError, FordError
from tools.gateway import ResilientToolGateway
from tools.security import FILESYSTEM_TOOL, check_path

logger = logging.getLogger(__name__)

DEFAULT_SLUG_LENGTH = 40


def slugify(title: str, max_length: int = DEFAULT_SLUG_LENGTH) -> str:
    """Deterministic branch slug from an issue title.

    Lower-cases, collapses every run of non-alphanumerics to a single
    hyphen, trims hyphens at both ends and truncates.
    """
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    slug = slug[:max_length].rstrip("-")
    return slug or "change"


def branch_name(issue_number: int, title: str, max_length: int = DEFAULT_SLUG_LENGTH) -> str:
    """Branch name in the ``ford/issue-{number}-{slug}`` form."""
    return f"ford/issue-{issue_number}-{slugify(title, max_length)}"


def count_deleted_lines(original: str | None, change: FileChange) -> int:
    """Lines removed from ``original`` by applying ``change``."""
    if original is None:
        return 0
    old_lines = original.splitlines()
    if change.operation == FileOperation.DELETE:
        return len(old_lines)
    new_lines = (change.content or "").splitlines()
    return sum(
        1
        for line in difflib.ndiff(old_lines, new_lines)
        if line.startswith("- ")
    )


class ChangeSetApplier:
    """Applies a list of file changes as a single unit."""

    def __init__(
        self,
        gateway: ResilientToolGateway,
        scope: list[str] | None = None,
    ) -> None:
        """Initialize applier.

        Args:
            gateway: Gateway with a registered filesystem tool
            scope: Directories (relative to the base dir) writes must stay in
        """
        self.gateway = gateway
        self.scope = scope

    def _call(self, operation: str, **kwargs):
        return self.gateway.call(FILESYSTEM_TOOL, operation, scope=self.scope, **kwargs)

    def _restore_call(self, operation: str, **kwargs):
        return self.gateway.call_direct(FILESYSTEM_TOOL, operation, scope=self.scope, **kwargs)

    def read_originals(self, changes: list[FileChange]) -> dict[str, str | None]:
        """Current content of every path in the change set (None if absent)."""
        originals: dict[str, str | None] = {}
        for change in changes:
            if change.path in originals:
                continue
            if self._call("exists", path=change.path):
                originals[change.path] = self._call("read", path=change.path)
            else:
                originals[change.path] = None
        return originals

    def deleted_lines(self, changes: list[FileChange]) -> int:
        """Total lines the change set would delete."""
        originals = self.read_originals(changes)
        return sum(count_deleted_lines(originals[c.path], c) for c in changes)

    def precheck(self, changes: list[FileChange]) -> None:
        """Reject the whole set if any path is outside policy or scope.

        Raises:
            SecurityViolation: On the first offending path
        """
        for change in changes:
            check_path(change.path, self.gateway.policy, scope=self.scope)

    def apply(self, changes: list[FileChange]) -> list[str]:
        """Apply every change or none.

        Returns:
            Paths written or deleted, in order

        Raises:
            SecurityViolation: If a path is out of scope (nothing applied)
            ChangeSetError: If rollback itself could not complete
            ToolError: The original failure, after rollback
        """
        if not changes:
            return []
        self.precheck(changes)
        originals = self.read_originals(changes)

        applied: list[FileChange] = []
        for change in changes:
            try:
                self._apply_one(change)
            except Exception as exc:
                logger.warning(
                    f"CHANGESET: failed on {change.path} after {len(applied)} of "
                    f"{len(changes)} changes; rolling back"
                )
                self.rollback(applied, originals, failed=change)
                if isinstance(exc, FordError):
                    raise
                raise ChangeSetError(
                    f"Failed to apply {change.path}: {exc}",
                    failed_path=change.path,
                ) from exc
            applied.append(change)

        logger.info(f"CHANGESET: applied {len(applied)} file changes")
        return [c.path for c in applied]

    def _apply_one(self, change: FileChange) -> None:
        if change.operation == FileOperation.DELETE:
            self._call("delete", path=change.path)
        else:
            self._call("write", path=change.path, content=change.content or "")

    def rollback(
        self,
        applied: list[FileChange],
        originals: dict[str, str | None],
        failed: FileChange | None = None,
    ) -> None:
        """Restore original contents in reverse order.

        The failed change is restored too: a write can fail after the
        file was partially touched.

        Raises:
            ChangeSetError: If any path could not be restored
        """
        to_restore = list(applied)
        if failed is not None:
            to_restore.append(failed)
        paths = list(dict.fromkeys(c.path for c in reversed(to_restore)))
        problems = self._restore_paths(paths, originals)

        if problems:
            logger.error(f"CHANGESET: rollback incomplete: {problems}")
            raise ChangeSetError(
                "Rollback incomplete: " + "; ".join(problems),
                failed_path=failed.path if failed else None,
            )

    def restore(self, originals: dict[str, str | None]) -> None:
        """Put every path back to its recorded content (None = absent).

        Raises:
            ChangeSetError: If any path could not be restored
        """
        problems = self._restore_paths(list(reversed(originals)), originals)
        if problems:
            logger.error(f"CHANGESET: restore incomplete: {problems}")
            raise ChangeSetError("Restore incomplete: " + "; ".join(problems))
        if originals:
            logger.info(f"CHANGESET: restored {len(originals)} paths")

    def _restore_paths(self, paths: list[str], originals: dict[str, str | None]) -> list[str]:
        problems: list[str] = []
        for path in paths:
            original = originals.get(path)
            try:
                exists = self._restore_call("exists", path=path)
                if original is None:
                    if exists:
                        self._restore_call("delete", path=path)
                    continue
                current = self._restore_call("read", path=path) if exists else None
                if current != original:
                    self._restore_call("write", path=path, content=original)
            except FordError as exc:
                problems.append(f"{path}: {exc}")
        return problems

