# executors/provisioner.py
from __future__ import annotations

import functools
import re
import uuid
from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable, Dict, Iterator, List, Mapping, Optional

from ..errors import ProvisioningError
from ..model import ExecutorKind, ExecutorSpec
from .base import ExecutorHandle
from .container import ContainerHandle
from .machine import MachineHandle

if TYPE_CHECKING:
    from ..context import RunContext


SECRET_PLACEHOLDER = re.compile(r"\$\{\{\s*secrets\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

_DIR_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]+")

HandleFactory = Callable[..., ExecutorHandle]


def secret_names(value: str) -> List[str]:
    return SECRET_PLACEHOLDER.findall(value)


def resolve_environment(
    environment: Mapping[str, str],
    secrets: Mapping[str, str],
    *,
    job: str | None = None,
) -> Dict[str, str]:
    """Substitute `${{ secrets.NAME }}` placeholders. Every missing secret is reported at once."""
    missing: List[str] = []

    def _sub(match: re.Match) -> str:
        name = match.group(1)
        if name not in secrets:
            missing.append(name)
            return ""
        return str(secrets[name])

    resolved = {key: SECRET_PLACEHOLDER.sub(_sub, value) for key, value in environment.items()}
    if missing:
        raise ProvisioningError(
            "unresolved secret placeholder(s)",
            job=job,
            details={"missing": ", ".join(sorted(set(missing)))},
        )
    return resolved


class Provisioner:
    """
    Turns an ExecutorSpec into a scoped, running ExecutorHandle.

    One handler per ExecutorKind; the set of kinds is closed.
    """

    def __init__(
        self,
        handlers: Optional[Mapping[ExecutorKind, HandleFactory]] = None,
        *,
        docker_bin: str = "docker",
    ):
        table: Dict[ExecutorKind, HandleFactory] = {
            ExecutorKind.CONTAINER: functools.partial(ContainerHandle, docker_bin=docker_bin),
            ExecutorKind.VIRTUAL_MACHINE: MachineHandle,
        }
        for kind, factory in (handlers or {}).items():
            if not isinstance(kind, ExecutorKind):
                raise ValueError(f"unsupported executor kind: {kind!r}")
            table[kind] = factory
        self.handlers = table

    @contextmanager
    def provision(self, spec: ExecutorSpec, ctx: "RunContext", *, job: str) -> Iterator[ExecutorHandle]:
        """
        Acquire an executor for `job`; teardown runs on every exit path,
        including a failure half-way through start().
        """
        environment = resolve_environment(spec.environment, ctx.secrets, job=job)
        safe_job = _DIR_UNSAFE.sub("-", job).strip("-") or "job"
        workdir = ctx.workspace_root / f"{safe_job}-{uuid.uuid4().hex[:12]}"

        factory = self.handlers[spec.kind]
        handle = factory(spec, job=job, workdir=workdir, environment=environment, ctx=ctx)
        try:
            try:
                handle.start()
            except OSError as e:
                raise ProvisioningError(f"could not prepare {spec.kind.value} executor: {e}", job=job) from e
            ctx.console.print_debug(f"[{job}] provisioned {handle!r} in {workdir}")
            yield handle
        finally:
            handle.teardown()
            ctx.console.print_debug(f"[{job}] torn down {spec.name}")
