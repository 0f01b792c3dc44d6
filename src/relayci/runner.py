# runner.py
from __future__ import annotations

import time
from typing import List

from .builtins import ActionError, compile_action
from .context import RunContext
from .errors import CancellationError, CIError, ProvisioningError, StepFailure
from .executors.base import ExecutorHandle
from .model import Job, JobRun, JobStatus, PipelineDefinition, Step, StepResult, StepStatus
from . import reporting

# provision ---> steps (fail-fast) ---> collect artifacts ---> teardown


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _command_for(step: Step, ctx: RunContext) -> str:
    if step.is_builtin:
        return compile_action(step.action, step.params, ctx)
    return step.command


def _run_step(job: Job, step: Step, handle: ExecutorHandle, ctx: RunContext) -> str:
    """Run one step; returns its output or raises StepFailure / CancellationError."""
    ctx.cancel.raise_if_cancelled(job=job.name, step=step.name)

    try:
        cmd = _command_for(step, ctx)
    except ActionError as e:
        raise StepFailure(job=job.name, step=step.name, cmd=step.action, exit_code=None, output=str(e))

    if step.cwd and not handle.host_path(step.cwd).is_dir():
        raise StepFailure(
            job=job.name,
            step=step.name,
            cmd=cmd,
            exit_code=None,
            output=f"working directory not found: {step.cwd}",
        )

    try:
        proc = handle.exec(cmd, env=step.environment, cwd=step.cwd)
    except CancellationError as e:
        e.job, e.step = job.name, step.name
        raise

    if proc.exit_code != 0:
        raise StepFailure(
            job=job.name,
            step=step.name,
            cmd=cmd,
            exit_code=proc.exit_code,
            output=proc.output,
        )
    return proc.output


def run_steps(job: Job, handle: ExecutorHandle, ctx: RunContext) -> List[StepResult]:
    """
    Execute `job.steps` strictly in order inside one executor.

    Stops at the first failure: the failing step is recorded Failed and every
    later step NotRun. On cancellation the current step is recorded Errored,
    the rest NotRun, and CancellationError is re-raised with the partial
    results attached as `results`.
    """
    results: List[StepResult] = []
    steps = list(job.steps)

    for index, step in enumerate(steps, start=1):
        ctx.console.print_step(job.name, index, step.name)
        started = time.monotonic()
        try:
            output = _run_step(job, step, handle, ctx)
        except StepFailure as e:
            results.append(StepResult(
                index=index,
                name=step.name,
                status=StepStatus.FAILED,
                exit_code=e.exit_code,
                output=e.output,
                duration=time.monotonic() - started,
            ))
            ctx.console.print_failure(job.name, step.name, e.output, exit_code=e.exit_code)
            break
        except CancellationError as e:
            results.append(StepResult(
                index=index,
                name=step.name,
                status=StepStatus.ERRORED,
                output=e.message,
                duration=time.monotonic() - started,
            ))
            results.extend(_not_run(steps, index))
            e.results = results
            raise
        results.append(StepResult(
            index=index,
            name=step.name,
            status=StepStatus.SUCCEEDED,
            exit_code=0,
            output=output,
            duration=time.monotonic() - started,
        ))

    results.extend(_not_run(steps, len(results)))
    return results


def _not_run(steps: List[Step], done: int) -> List[StepResult]:
    return [
        StepResult(index=i, name=s.name, status=StepStatus.NOT_RUN)
        for i, s in enumerate(steps[done:], start=done + 1)
    ]


# ----------------------------------------------------------------------
# One job, end to end
# ----------------------------------------------------------------------

def run_job(job: Job, workflow: str, definition: PipelineDefinition, ctx: RunContext) -> JobRun:
    """
    Provision -> run steps -> collect artifacts -> teardown.

    Never raises for job-scoped failures; the outcome is in JobRun.status.
    """
    spec = definition.executor_for(job)
    run = JobRun(job=job, workflow=workflow, executor=spec)
    started = time.monotonic()
    ctx.console.print_job_start(job.name, spec)

    try:
        with ctx.provisioner.provision(spec, ctx, job=job.name) as handle:
            run.handle = handle
            run.steps = run_steps(job, handle, ctx)
            failed = any(r.status is StepStatus.FAILED for r in run.steps)
            run.status = JobStatus.FAILED if failed else JobStatus.SUCCEEDED
            run.artifacts = reporting.collect(run, revision=ctx.revision, console=ctx.console)
    except ProvisioningError as e:
        run.status = JobStatus.ERRORED
        run.error = str(e)
        run.steps = _not_run(list(job.steps), 0)
    except CancellationError as e:
        run.status = JobStatus.ERRORED
        run.error = f"cancelled: {e.message}"
        run.steps = getattr(e, "results", None) or _not_run(list(job.steps), 0)
    except CIError as e:
        run.status = JobStatus.ERRORED
        run.error = str(e)
        if not run.steps:
            run.steps = _not_run(list(job.steps), 0)
    finally:
        # the executor is gone; the run keeps no live resources
        run.handle = None
        run.duration = time.monotonic() - started

    ctx.console.print_job_finished(run)
    return run
