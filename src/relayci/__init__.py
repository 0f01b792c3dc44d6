
from .loader import load, load_file, load_text
from .scheduler import execute
from .runner import run_job, run_steps
from .reporting import collect, publish, ReportDestination
from .context import RunContext, CancelToken, ProvisioningPool
from .model import ExecutorSpec, Job, Step, Workflow, PipelineDefinition, JobStatus, StepStatus

__all__ = [
    "load", "load_file", "load_text",
    "execute", "run_job", "run_steps",
    "collect", "publish", "ReportDestination",
    "RunContext", "CancelToken", "ProvisioningPool",
    "ExecutorSpec", "Job", "Step", "Workflow", "PipelineDefinition", "JobStatus", "StepStatus",
]
