# reporting.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional
from urllib.parse import urlencode, urljoin

from pydantic import BaseModel, ConfigDict, ValidationError as SchemaError

from .errors import ReportingError
from .model import Artifact, JobRun, JobStatus, PublishResult

if TYPE_CHECKING:
    from .ui.console import Console


UPLOAD_TIMEOUT_S = 30


# -------------------- Schemas --------------------

class UploadMetadata(BaseModel):
    """Provenance sent alongside each artifact (query string)."""
    slug: str
    name: str
    job: str
    workflow: str
    revision: str
    executor: str


class UploadReceipt(BaseModel):
    """What the reporting endpoint answers; unknown fields are kept."""
    model_config = ConfigDict(extra="allow")

    id: Optional[str | int] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class ReportDestination:
    url: str
    slug: str
    token: str | None = None   # supplied out-of-band, never from the definition

    def __str__(self) -> str:
        return f"{self.url} ({self.slug})"


# -------------------- Collection --------------------

def collect(run: JobRun, *, revision: str, console: Optional["Console"] = None) -> List[Artifact]:
    """
    Read the job's declared artifacts out of its (still live) workspace.

    Only Succeeded/Failed runs produce data; Errored runs never ran their
    instrumentation. Missing files are skipped, one artifact per name.
    """
    if run.status not in (JobStatus.SUCCEEDED, JobStatus.FAILED) or run.handle is None:
        return []

    artifacts: List[Artifact] = []
    seen = set()
    for declared in run.job.artifacts:
        if declared.name in seen:
            continue
        data = run.handle.read_file(declared.path)
        if data is None:
            if console is not None:
                console.print_warning(f"[{run.name}] artifact '{declared.name}' not found at {declared.path}")
            continue
        seen.add(declared.name)
        artifacts.append(Artifact(
            name=declared.name,
            data=data,
            job=run.name,
            workflow=run.workflow,
            revision=revision,
            executor=run.executor.name,
        ))
    return artifacts


# -------------------- Publishing --------------------

Opener = Callable[..., object]


def _upload(artifact: Artifact, destination: ReportDestination, opener: Opener) -> UploadReceipt:
    meta = UploadMetadata(
        slug=destination.slug,
        name=artifact.name,
        job=artifact.job,
        workflow=artifact.workflow,
        revision=artifact.revision,
        executor=artifact.executor,
    )
    url = urljoin(destination.url.rstrip("/") + "/", "upload") + "?" + urlencode(meta.model_dump())
    req = urllib.request.Request(
        url,
        data=artifact.data,
        headers={
            "Content-Type": "application/octet-stream",
            "Authorization": f"token {destination.token}",
        },
        method="POST",
    )

    try:
        with opener(req, timeout=UPLOAD_TIMEOUT_S) as response:
            body = response.read().decode("utf-8")
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8", errors="replace") if e.fp else ""
        raise ReportingError(
            f"upload rejected: {e.code} {e.reason}",
            job=artifact.job,
            details={"artifact": artifact.name, "body": error_body.strip()[:500]},
        )
    except urllib.error.URLError as e:
        raise ReportingError(
            f"network error: {e.reason}",
            job=artifact.job,
            details={"artifact": artifact.name},
        )
    except OSError as e:
        raise ReportingError(f"network error: {e}", job=artifact.job, details={"artifact": artifact.name})

    if not body.strip():
        return UploadReceipt()
    try:
        return UploadReceipt.model_validate(json.loads(body))
    except (json.JSONDecodeError, SchemaError) as e:
        raise ReportingError(
            f"invalid response from reporting endpoint: {e}",
            job=artifact.job,
            details={"artifact": artifact.name},
        )


def publish(
    artifacts: Iterable[Artifact],
    destination: ReportDestination,
    *,
    opener: Optional[Opener] = None,
) -> PublishResult:
    """
    Upload every artifact; failures are collected, never raised.

    Reporting is best-effort: the caller's job statuses are not touched.
    """
    opener = opener or urllib.request.urlopen
    result = PublishResult(destination=str(destination))
    for artifact in artifacts:
        if not destination.token:
            result.errors.append(ReportingError(
                "no upload token (set RELAYCI_REPORT_TOKEN)",
                job=artifact.job,
                details={"artifact": artifact.name},
            ))
            continue
        try:
            _upload(artifact, destination, opener)
        except ReportingError as e:
            result.errors.append(e)
        else:
            result.published.append(f"{artifact.job}/{artifact.name}")
    return result
