"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..errors import ValidationError
    from ..model import ExecutorSpec, JobRun, PipelineDefinition, PublishResult, WorkflowResult


OUTPUT_TAIL = 4000


def _tail(text: str, limit: int = OUTPUT_TAIL) -> str:
    text = (text or "").rstrip()
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, out=None, err=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            out: stream for normal output (defaults to sys.stdout at call time)
            err: stream for errors (defaults to sys.stderr at call time)
        """
        self.debug = debug
        self._out = out
        self._err = err
        # jobs print from worker threads; keep multi-line blocks together
        self._lock = threading.Lock()

    def _write(self, *lines: str, error: bool = False) -> None:
        stream = (self._err or sys.stderr) if error else (self._out or sys.stdout)
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_run_started(
        self,
        definition: str,
        workflow: str,
        job_count: int,
        revision: str,
    ) -> None:
        """Print run start information."""
        self._write(
            "\nRUN STARTED",
            f"Definition: {definition}",
            f"Workflow: {workflow}",
            f"Revision: {revision}",
            f"Jobs: {job_count}",
            "",
        )

    def print_job_start(self, name: str, executor: "ExecutorSpec") -> None:
        """Print job start message."""
        self._write(f"[{name}] JOB STARTED on {executor.name} ({executor.kind.value}: {executor.image})")

    def print_step(self, job: str, index: int, name: str) -> None:
        """Print step start message."""
        self._write(f"[{job}] ▶ {index}. {name}")

    def print_failure(
        self,
        job: str,
        step: str,
        output: str,
        exit_code: Optional[int] = None,
    ) -> None:
        """Print step failure message, with the output tail in debug mode."""
        lines = [f"[{job}] STEP FAILED: {step}"]
        if exit_code is not None:
            lines.append(f"[{job}] Exit code: {exit_code}")
        if self.debug and output:
            lines.extend(f"[{job}]   {line}" for line in _tail(output).splitlines())
        self._write(*lines)

    def print_job_finished(self, run: "JobRun") -> None:
        self._write(f"[{run.name}] STATUS: {run.status.value} ({run.duration:.1f}s)")

    def print_summary(self, result: "WorkflowResult") -> None:
        """Print the per-job results of one workflow."""
        lines = ["", "=" * 40, f"RESULTS: {result.workflow}", "=" * 40]
        for name, run in result.runs.items():
            lines.append(f"  {name}: {run.status.value.upper()}")
            failed = run.failed_step
            if failed is not None:
                code = "" if failed.exit_code is None else f" (exit {failed.exit_code})"
                lines.append(f"    failed at step {failed.index}: {failed.name}{code}")
                output = _tail(failed.output, 1500 if not self.debug else OUTPUT_TAIL)
                lines.extend(f"      {line}" for line in output.splitlines())
            elif run.error:
                lines.extend(f"    {line}" for line in run.error.splitlines())
            for artifact in run.artifacts:
                lines.append(f"    artifact: {artifact.name} ({len(artifact.data)} bytes)")

        for publish_result in result.publish_results:
            lines.extend(self._publish_lines(publish_result))

        verdict = "SUCCEEDED" if result.succeeded else "FAILED"
        lines.append(f"WORKFLOW {result.workflow}: {verdict}")
        self._write(*lines)

    def _publish_lines(self, result: "PublishResult") -> list:
        lines = [f"  reporting -> {result.destination}"]
        for item in result.published:
            lines.append(f"    published: {item}")
        for error in result.errors:
            artifact = error.details.get("artifact", "?")
            lines.append(f"    REPORTING FAILED: {error.job}/{artifact}: {error.message}")
        return lines

    def print_definition(self, source: str, definition: "PipelineDefinition") -> None:
        """Print an overview of a valid definition."""
        lines = [f"\nDEFINITION OK: {source}", "Executors:"]
        for spec in definition.executors.values():
            lines.append(f"  {spec.name}: {spec.kind.value} {spec.image} [{spec.resource_class}]")
        lines.append("Jobs:")
        for job in definition.jobs.values():
            lines.append(f"  {job.name}: {len(job.steps)} step(s) on {job.executor}")
        lines.append("Workflows:")
        for wf in definition.workflows.values():
            lines.append(f"  {wf.name}: {', '.join(wf.jobs)}")
        self._write(*lines)

    def print_validation_error(self, err: "ValidationError") -> None:
        self.print_error(
            "Invalid pipeline definition",
            err.message,
            details=err.violations,
        )

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._write(*lines, error=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            self._write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), error=True)
        else:
            self._write(f"Error: {exc}", error=True)

    def print_warning(self, message: str) -> None:
        self._write(f"WARNING: {message}", error=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._write(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._write(f"[DEBUG] {message}", error=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
