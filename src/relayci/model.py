# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from .errors import ReportingError
    from .executors.base import ExecutorHandle


def _empty() -> Mapping:
    return MappingProxyType({})


def frozen_mapping(data: Mapping | None) -> Mapping:
    """Read-only copy of a mapping (definitions are immutable once loaded)."""
    return MappingProxyType(dict(data or {}))


# ---------------------------------------------------------------------
# Definition (templates, read-only after load)
# ---------------------------------------------------------------------

class ExecutorKind(str, Enum):
    CONTAINER = "container"
    VIRTUAL_MACHINE = "virtual-machine"


DEFAULT_RESOURCE_CLASS = "medium"

# resource classes the infrastructure knows how to allocate, per kind
RESOURCE_CLASSES: Dict[ExecutorKind, frozenset] = {
    ExecutorKind.CONTAINER: frozenset({"small", "medium", "medium+", "large", "xlarge", "2xlarge"}),
    ExecutorKind.VIRTUAL_MACHINE: frozenset({
        "medium", "large", "xlarge", "2xlarge",
        "arm.medium", "arm.large", "arm.xlarge", "arm.2xlarge",
    }),
}


@dataclass(frozen=True)
class ExecutorSpec:
    """Where a job runs: a container image or a machine image + resource class."""
    name: str
    kind: ExecutorKind
    image: str
    resource_class: str = DEFAULT_RESOURCE_CLASS
    environment: Mapping[str, str] = field(default_factory=_empty)

    @property
    def architecture(self) -> str:
        return "arm64" if self.resource_class.startswith("arm.") else "amd64"


@dataclass(frozen=True)
class Step:
    """
    A single unit of work inside a job.

    Exactly one of `command` (shell) or `action` (built-in) is set.
    """
    name: str
    command: str | None = None
    action: str | None = None
    params: Mapping = field(default_factory=_empty)
    environment: Mapping[str, str] = field(default_factory=_empty)
    cwd: str | None = None

    @property
    def is_builtin(self) -> bool:
        return self.action is not None


@dataclass(frozen=True)
class ArtifactSpec:
    """A declared job output, read from the workspace after the steps ran."""
    name: str
    path: str


@dataclass(frozen=True)
class Job:
    name: str
    executor: str
    steps: Tuple[Step, ...]
    artifacts: Tuple[ArtifactSpec, ...] = ()


@dataclass(frozen=True)
class Workflow:
    name: str
    jobs: Tuple[str, ...]


@dataclass(frozen=True)
class ReportingSpec:
    url: str | None = None
    slug: str | None = None


@dataclass(frozen=True)
class PipelineDefinition:
    executors: Mapping[str, ExecutorSpec]
    jobs: Mapping[str, Job]
    workflows: Mapping[str, Workflow]
    reporting: ReportingSpec = field(default_factory=ReportingSpec)

    def executor_for(self, job: Job) -> ExecutorSpec:
        return self.executors[job.executor]

    def jobs_for(self, workflow: Workflow) -> List[Job]:
        return [self.jobs[name] for name in workflow.jobs]


# ---------------------------------------------------------------------
# Results (one per triggered run)
# ---------------------------------------------------------------------

class StepStatus(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    NOT_RUN = "NotRun"
    ERRORED = "Errored"   # interrupted by cancellation


class JobStatus(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ERRORED = "Errored"


@dataclass
class StepResult:
    index: int   # 1-based, declaration order
    name: str
    status: StepStatus
    exit_code: int | None = None
    output: str = ""
    duration: float = 0.0


@dataclass(frozen=True)
class Artifact:
    """Opaque named blob plus provenance."""
    name: str
    data: bytes
    job: str
    workflow: str
    revision: str
    executor: str


@dataclass
class JobRun:
    job: Job
    workflow: str
    executor: ExecutorSpec
    handle: Optional["ExecutorHandle"] = None
    steps: List[StepResult] = field(default_factory=list)
    status: JobStatus = JobStatus.ERRORED
    error: str | None = None
    artifacts: List[Artifact] = field(default_factory=list)
    duration: float = 0.0

    @property
    def name(self) -> str:
        return self.job.name

    @property
    def failed_step(self) -> StepResult | None:
        for result in self.steps:
            if result.status in (StepStatus.FAILED, StepStatus.ERRORED):
                return result
        return None


@dataclass
class PublishResult:
    destination: str
    published: List[str] = field(default_factory=list)
    errors: List["ReportingError"] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class WorkflowResult:
    workflow: str
    runs: Dict[str, JobRun] = field(default_factory=dict)
    publish_results: List[PublishResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return all(r.status is JobStatus.SUCCEEDED for r in self.runs.values())

    @property
    def failing_jobs(self) -> Dict[str, JobStatus]:
        return {
            name: run.status
            for name, run in self.runs.items()
            if run.status is not JobStatus.SUCCEEDED
        }

    @property
    def reporting_errors(self) -> List["ReportingError"]:
        return [e for p in self.publish_results for e in p.errors]
