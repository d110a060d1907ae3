"""Validation pipeline: lint, then test, then build.

Stages run strictly in order through the gateway's terminal tool. The
first failing stage stops the pipeline and every later stage is
reported as ``not_run``. The pipeline owns no persistent state; each
invocation gets a scoped ``ValidationContext`` that is released when
the run finishes or is cancelled.
"""

import logging
import re
import shutil
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from schemas.change_request import (
    FileChange,
    StageName,
    StageReport,
    StageStatus,
    ValidationReport,
)
from schemas.feedback import utcnow
from tools.gateway import ResilientToolGateway
from tools.security import TERMINAL_TOOL

logger = logging.getLogger(__name__)

STAGE_ORDER = (StageName.LINT, StageName.TEST, StageName.BUILD)

# Lines kept from combined output for the report
OUTPUT_TAIL_LINES = 40

ERROR_PATTERN = re.compile(r"\b(error|failed|failure|exception)\b", re.IGNORECASE)
WARNING_PATTERN = re.compile(r"\bwarn(ing)?\b", re.IGNORECASE)


@dataclass
class StageCommand:
    """Command line for one validation stage."""

    command: str
    args: list[str] = field(default_factory=list)

    @classmethod
    def parse(cls, line: str) -> "StageCommand | None":
        parts = line.split()
        if not parts:
            return None
        return cls(command=parts[0], args=parts[1:])


class ValidationCancelled(Exception):
    """Validation context was released while stages were pending."""


class ValidationContext:
    """Scoped execution context for one validation run."""

    def __init__(self, working_dir: Path, timeout: float) -> None:
        self.working_dir = working_dir
        self.timeout = timeout
        self._scratch = tempfile.mkdtemp(prefix="ford-validate-")
        self._closed = threading.Event()

    @property
    def scratch_dir(self) -> Path:
        return Path(self._scratch)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        """Release the context (idempotent)."""
        if self._closed.is_set():
            return
        self._closed.set()
        shutil.rmtree(self._scratch, ignore_errors=True)

    def __enter__(self) -> "ValidationContext":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _split_output(text: str) -> tuple[list[str], list[str]]:
    errors, warnings = [], []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if ERROR_PATTERN.search(stripped):
            errors.append(stripped)
        elif WARNING_PATTERN.search(stripped):
            warnings.append(stripped)
    return errors, warnings


class ValidationPipeline:
    """Runs lint, test and build with fail-fast semantics."""

    def __init__(
        self,
        gateway: ResilientToolGateway,
        commands: dict[StageName, StageCommand | None],
        working_dir: Path | str,
        timeout: float = 300.0,
    ) -> None:
        """Initialize validation pipeline.

        Args:
            gateway: Gateway with a registered terminal tool
            commands: Command per stage (None means nothing to run)
            working_dir: Repository checkout the commands run in
            timeout: Per-stage timeout in seconds
        """
        self.gateway = gateway
        self.commands = commands
        self.working_dir = Path(working_dir)
        self.timeout = timeout

    def context(self) -> ValidationContext:
        return ValidationContext(self.working_dir, self.timeout)

    def run_stage(
        self,
        stage: StageName,
        context: ValidationContext | None = None,
    ) -> StageReport:
        """Run a single stage.

        Used on its own to confirm that freshly generated tests fail
        before any implementation is requested.
        """
        if context is None:
            with self.context() as ctx:
                return self._run_stage(stage, ctx)
        return self._run_stage(stage, context)

    def _run_stage(self, stage: StageName, ctx: ValidationContext) -> StageReport:
        if ctx.closed:
            raise ValidationCancelled(f"Validation context released before {stage.value}")

        command = self.commands.get(stage)
        if command is None:
            logger.warning(f"VALIDATE: no command configured for {stage.value}, passing")
            return StageReport(
                stage=stage,
                status=StageStatus.PASSED,
                warnings=[f"No {stage.value} command configured"],
            )

        logger.info(f"VALIDATE: {stage.value}: {command.command} {' '.join(command.args)}")
        output = self.gateway.call(
            TERMINAL_TOOL,
            "execute",
            command=command.command,
            args=list(command.args),
            cwd=str(ctx.working_dir),
            timeout=ctx.timeout,
            env={"TMPDIR": str(ctx.scratch_dir)},
            call_timeout=ctx.timeout + 5,
        )

        combined = "\n".join(p for p in (output.get("stdout", ""), output.get("stderr", "")) if p)
        errors, warnings = _split_output(combined)
        exit_code = output.get("exit_code")
        passed = exit_code == 0
        if not passed and not errors:
            errors = [f"{command.command} exited with code {exit_code}"]
        if passed:
            errors = []

        return StageReport(
            stage=stage,
            status=StageStatus.PASSED if passed else StageStatus.FAILED,
            errors=errors,
            warnings=warnings,
            exit_code=exit_code,
            duration_seconds=float(output.get("duration", 0.0)),
            output_tail="\n".join(combined.splitlines()[-OUTPUT_TAIL_LINES:]),
        )

    def validate(
        self,
        changes: list[FileChange] | None = None,
        context: ValidationContext | None = None,
        on_stage: Callable[[StageReport], None] | None = None,
    ) -> ValidationReport:
        """Run lint, test and build, stopping at the first failure.

        Args:
            changes: Change set under validation (for logging)
            context: Externally owned context (closed by its owner)
            on_stage: Called after each executed stage

        Returns:
            ValidationReport; later stages stay ``not_run`` after a failure
        """
        report = ValidationReport()
        if changes:
            logger.info(f"VALIDATE: validating {len(changes)} changed files")

        owned = context is None
        ctx = context or self.context()
        try:
            for stage in STAGE_ORDER:
                result = self._run_stage(stage, ctx)
                report.set_stage(result)
                if on_stage:
                    on_stage(result)
                if not result.success:
                    logger.warning(
                        f"VALIDATE: {stage.value} failed with {result.error_count} errors; "
                        "skipping remaining stages"
                    )
                    break
        finally:
            if owned:
                ctx.close()

        report.completed_at = utcnow()
        return report
