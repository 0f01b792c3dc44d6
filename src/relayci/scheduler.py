# scheduler.py
from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Dict

from .context import INTERRUPTED, RunContext
from .errors import CancellationError, ProvisioningError
from .model import Job, JobRun, JobStatus, PipelineDefinition, StepResult, StepStatus, Workflow, WorkflowResult
from .reporting import publish
from .runner import run_job


def _errored(job: Job, workflow: str, definition: PipelineDefinition, error: str) -> JobRun:
    return JobRun(
        job=job,
        workflow=workflow,
        executor=definition.executor_for(job),
        steps=[
            StepResult(index=i, name=s.name, status=StepStatus.NOT_RUN)
            for i, s in enumerate(job.steps, start=1)
        ],
        status=JobStatus.ERRORED,
        error=error,
    )


def _execute_job(job: Job, workflow: str, definition: PipelineDefinition, ctx: RunContext) -> JobRun:
    """One independent execution unit: slot -> provision -> steps -> outcome."""
    spec = definition.executor_for(job)
    try:
        ctx.cancel.raise_if_cancelled(job=job.name)
        with ctx.pool.slot(spec.kind, ctx.cancel, timeout=ctx.allocation_timeout, job=job.name):
            return run_job(job, workflow, definition, ctx)
    except CancellationError as e:
        return _errored(job, workflow, definition, f"cancelled: {e.message}")
    except ProvisioningError as e:
        return _errored(job, workflow, definition, str(e))


def execute(workflow: Workflow, definition: PipelineDefinition, ctx: RunContext) -> WorkflowResult:
    """
    Run every job of `workflow` concurrently and aggregate the outcome.

    Jobs are independent: a failing or erroring job never stops its siblings.
    The worker pool is sized to the provisioning capacity; per-kind slots are
    taken from ctx.pool before any executor is provisioned.
    """
    jobs = definition.jobs_for(workflow)
    runs: Dict[str, JobRun] = {}

    with ThreadPoolExecutor(max_workers=ctx.workers, thread_name_prefix="relayci-job") as pool:
        in_flight: Dict[Future, Job] = {
            pool.submit(_execute_job, job, workflow.name, definition, ctx): job
            for job in jobs
        }

        # fan-in; an interrupt cancels everyone but we keep joining so teardown completes
        while in_flight:
            try:
                for fut in as_completed(list(in_flight)):
                    job = in_flight[fut]
                    try:
                        run = fut.result()
                    except Exception as e:
                        ctx.console.print_exception(e)
                        run = _errored(job, workflow.name, definition, f"internal error: {e}")
                    # a run leaves in_flight only once it is stored
                    runs[job.name] = run
                    del in_flight[fut]
            except KeyboardInterrupt:
                ctx.cancel.cancel(INTERRUPTED)
                ctx.console.print_info("\nInterrupted: cancelling running jobs...")

    result = WorkflowResult(
        workflow=workflow.name,
        runs={job.name: runs[job.name] for job in jobs},
    )

    if ctx.destination is not None:
        artifacts = [a for run in result.runs.values() for a in run.artifacts]
        if artifacts:
            result.publish_results.append(publish(artifacts, ctx.destination))

    return result
