# executors/machine.py
from __future__ import annotations

import shutil
import uuid
from typing import List, Mapping

from ..errors import ProvisioningError
from ..model import ExecutorKind
from .base import ExecutorHandle, ProcessResult, ProcessRunner, host_environment, kill_process_group, run_process


class MachineHandle(ExecutorHandle):
    """
    Machine executor backed by a session on the local host.

    Booting allocates a fresh workspace, a private HOME next to it and a
    shell-session environment built from a short allowlist of host variables
    plus machine facts and the executor environment. Nothing else leaks in
    from the host, and nothing a job installs under HOME is seen by another.
    There is no pre-baked image: toolchains are installed by ordinary steps.

    Every step's process group is tracked; teardown kills whatever a step
    left running in the background.
    """
    kind = ExecutorKind.VIRTUAL_MACHINE

    def __init__(self, spec, *, runner: ProcessRunner = run_process, shell: str = "sh", **kwargs):
        super().__init__(spec, **kwargs)
        self.runner = runner
        self.shell = shell
        self.machine_id = f"{spec.resource_class}-{uuid.uuid4().hex[:8]}"
        self.home = self.workdir.with_name(self.workdir.name + ".home")
        self.session_env: dict = {}
        self._process_groups: List[int] = []

    def _boot(self) -> None:
        # outside the workspace: `checkout` clones into an empty directory
        self.home.mkdir(parents=True, exist_ok=False)

        session = host_environment()
        session.update({
            "HOME": str(self.home),
            "RELAYCI_MACHINE_ID": self.machine_id,
            "RELAYCI_MACHINE_IMAGE": self.spec.image,
            "RELAYCI_RESOURCE_CLASS": self.spec.resource_class,
            "RELAYCI_ARCH": self.spec.architecture,
        })
        session.update(self.environment)
        self.session_env = session

        try:
            check = self._run(["true"], env=session, cwd=None)
        except FileNotFoundError as e:
            raise ProvisioningError(f"machine shell unavailable: {e}", job=self.job)
        if check.exit_code != 0:
            raise ProvisioningError(
                f"machine session failed to boot ({self.spec.image})",
                job=self.job,
                details={"output": check.output.strip()},
            )

    def _run(self, argv, *, env: Mapping[str, str], cwd: str | None) -> ProcessResult:
        return self.runner(
            argv,
            cwd=self.host_path(cwd),
            env=env,
            cancel=self.ctx.cancel,
            on_spawn=self._process_groups.append,
        )

    def _exec(self, command: str, *, env: Mapping[str, str], cwd: str | None) -> ProcessResult:
        step_env = dict(self.session_env)
        step_env.update(env)
        return self._run([self.shell, "-c", command], env=step_env, cwd=cwd)

    def _release(self) -> None:
        for pgid in self._process_groups:
            kill_process_group(pgid)
        self._process_groups.clear()
        self.session_env = {}
        shutil.rmtree(self.home, ignore_errors=True)
