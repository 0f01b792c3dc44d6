# executors/container.py
from __future__ import annotations

import re
import uuid
from typing import List, Mapping

from ..errors import ProvisioningError
from ..model import ExecutorKind
from .base import ExecutorHandle, ProcessResult, ProcessRunner, run_process


CONTAINER_WORKDIR = "/workspace"

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
}

_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]+")


def _env_flags(env: Mapping[str, str]) -> List[str]:
    flags: List[str] = []
    for key, value in env.items():
        flags.extend(["-e", f"{key}={value}"])
    return flags


class ContainerHandle(ExecutorHandle):
    """
    Docker-backed executor.

    The host workspace is bind-mounted at /workspace in a long-lived detached
    container; every step is a `docker exec` into it, so files written by one
    step are seen by the next.
    """
    kind = ExecutorKind.CONTAINER

    def __init__(self, spec, *, runner: ProcessRunner = run_process, docker_bin: str = "docker", **kwargs):
        super().__init__(spec, **kwargs)
        self.runner = runner
        self.docker_bin = docker_bin
        safe_job = _NAME_UNSAFE.sub("-", self.job).strip("-") or "job"
        self.container_name = f"relayci-{safe_job}-{uuid.uuid4().hex[:8]}"
        self._container_started = False

    def _docker(self, *args: str) -> ProcessResult:
        try:
            return self.runner([self.docker_bin, *args], cancel=self.ctx.cancel)
        except FileNotFoundError:
            raise ProvisioningError(
                "Docker is not available",
                job=self.job,
                details={"hint": TOOL_HINTS["docker"]},
            )

    def _boot(self) -> None:
        version = self._docker("--version")
        if version.exit_code != 0:
            raise ProvisioningError(
                "Docker is not available",
                job=self.job,
                details={"hint": TOOL_HINTS["docker"], "output": version.output.strip()},
            )

        pull = self._docker("pull", self.spec.image)
        if pull.exit_code != 0:
            raise ProvisioningError(
                f"image pull failed: {self.spec.image}",
                job=self.job,
                details={"exit_code": pull.exit_code, "output": pull.output.strip()[-2000:]},
            )

        cmd = [
            "run", "--detach",
            "--name", self.container_name,
            "-v", f"{self.workdir.resolve()}:{CONTAINER_WORKDIR}",
            "-w", CONTAINER_WORKDIR,
            *_env_flags(self.environment),
            "--entrypoint", "sleep",
            self.spec.image,
            "infinity",
        ]
        started = self._docker(*cmd)
        if started.exit_code != 0:
            raise ProvisioningError(
                f"container failed to start: {self.spec.image}",
                job=self.job,
                details={"exit_code": started.exit_code, "output": started.output.strip()[-2000:]},
            )
        self._container_started = True

    def _exec(self, command: str, *, env: Mapping[str, str], cwd: str | None) -> ProcessResult:
        container_cwd = f"{CONTAINER_WORKDIR}/{cwd or '.'}".replace("//", "/")
        return self._docker(
            "exec",
            "-w", container_cwd,
            *_env_flags(env),
            self.container_name,
            "sh", "-c", command,
        )

    def _release(self) -> None:
        # attempt removal even if `run` reported failure; it may have half-created the container
        try:
            result = self.runner([self.docker_bin, "rm", "-f", self.container_name])
        except FileNotFoundError:
            return
        if result.exit_code != 0 and self._container_started:
            self.ctx.console.print_warning(
                f"[{self.job}] container {self.container_name} could not be removed: {result.output.strip()}"
            )
