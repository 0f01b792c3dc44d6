# errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional


class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - per-job summaries
      - debugging without full tracebacks
    """
    kind = "ci_error"

    def __init__(
        self,
        message: str,
        *,
        job: str | None = None,
        step: str | None = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.job = job
        self.step = step
        self.details: Dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ValidationError(CIError):
    """Malformed or unresolved pipeline definition. Always fatal, raised before anything runs."""
    kind = "validation_error"

    def __init__(self, violations: List[str], *, source: str | None = None):
        self.violations = list(violations)
        self.source = source
        count = len(self.violations)
        noun = "problem" if count == 1 else "problems"
        where = f" in {source}" if source else ""
        super().__init__(f"{count} {noun} found{where}")

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        lines.extend(f"  - {v}" for v in self.violations)
        return "\n".join(lines)


class ProvisioningError(CIError):
    """The executor could not be acquired or prepared. Scoped to one JobRun."""
    kind = "provisioning_error"


class StepFailure(CIError):
    """A step exited non-zero. Scoped to one job; remaining steps are skipped."""
    kind = "step_failure"

    def __init__(
        self,
        *,
        job: str,
        step: str,
        cmd: str,
        exit_code: int | None,
        output: str = "",
    ):
        self.cmd = cmd
        self.exit_code = exit_code
        self.output = output
        super().__init__(
            f"step '{step}' failed (exit={exit_code}): {cmd}",
            job=job,
            step=step,
        )

    def __str__(self) -> str:
        return f"[{self.job}] {self.message}"


class ReportingError(CIError):
    """Publishing an artifact failed. Never changes build/test status."""
    kind = "reporting_error"


class CancellationError(CIError):
    """The invocation was cancelled (timeout or interrupt)."""
    kind = "cancelled"
