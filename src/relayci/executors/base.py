# executors/base.py
from __future__ import annotations

import os
import shutil
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Mapping, Optional, Sequence

from ..errors import CancellationError, CIError
from ..model import ExecutorKind, ExecutorSpec

if TYPE_CHECKING:
    from ..context import CancelToken, RunContext


POLL_INTERVAL = 0.2
TERMINATE_GRACE_S = 5.0


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    output: str   # stdout and stderr, interleaved


ProcessRunner = Callable[..., ProcessResult]


def run_process(
    argv: Sequence[str],
    *,
    cwd: str | Path | None = None,
    env: Optional[Mapping[str, str]] = None,
    cancel: Optional["CancelToken"] = None,
    on_spawn: Optional[Callable[[int], None]] = None,
) -> ProcessResult:
    """
    Run a process to completion, capturing combined output.

    The process leads its own process group; `on_spawn` receives the group id
    so callers can reap anything the command left running in the background.
    Polls the cancel token while waiting; on cancellation the group is
    terminated (then killed) and CancellationError is raised.
    """
    proc = subprocess.Popen(
        list(argv),
        cwd=str(cwd) if cwd is not None else None,
        env=dict(env) if env is not None else None,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
        start_new_session=True,
    )
    if on_spawn is not None:
        on_spawn(proc.pid)
    while True:
        try:
            out, _ = proc.communicate(timeout=POLL_INTERVAL)
            return ProcessResult(exit_code=proc.returncode, output=out or "")
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.cancelled:
                _stop(proc)
                raise CancellationError(cancel.reason or "cancelled")


def kill_process_group(pgid: int, sig: int = signal.SIGKILL) -> None:
    try:
        os.killpg(pgid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def _stop(proc: subprocess.Popen) -> None:
    # the step's shell may have forked children that still hold the output pipe
    kill_process_group(proc.pid, signal.SIGTERM)
    try:
        proc.communicate(timeout=TERMINATE_GRACE_S)
    except subprocess.TimeoutExpired:
        kill_process_group(proc.pid, signal.SIGKILL)
        proc.communicate()


class ExecutorHandle:
    """
    A provisioned, isolated environment that one job's steps run inside.

    Every handle owns a fresh host workspace directory. `teardown()` is
    idempotent: the first call releases the executor, later calls do nothing.
    """
    kind: ExecutorKind

    def __init__(
        self,
        spec: ExecutorSpec,
        *,
        job: str,
        workdir: Path,
        environment: Mapping[str, str],
        ctx: "RunContext",
    ):
        self.spec = spec
        self.job = job
        self.workdir = Path(workdir)
        self.environment = dict(environment)
        self.ctx = ctx
        self._lock = threading.Lock()
        self._started = False
        self._torn_down = False

    # ---- lifecycle ----
    def start(self) -> None:
        """Prepare the executor. May raise ProvisioningError after partial setup."""
        self.workdir.mkdir(parents=True, exist_ok=False)
        self._started = True
        self._boot()

    def teardown(self) -> None:
        with self._lock:
            if self._torn_down:
                return
            self._torn_down = True
        try:
            if self._started:
                self._release()
        finally:
            shutil.rmtree(self.workdir, ignore_errors=True)

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    # ---- execution ----
    def exec(
        self,
        command: str,
        *,
        env: Optional[Mapping[str, str]] = None,
        cwd: str | None = None,
    ) -> ProcessResult:
        if self._torn_down:
            raise CIError("executor already torn down", job=self.job)
        return self._exec(command, env=dict(env or {}), cwd=cwd)

    def read_file(self, relpath: str) -> bytes | None:
        """Read a workspace file; None if it does not exist or escapes the workspace."""
        root = self.workdir.resolve()
        target = (root / relpath).resolve()
        if target != root and root not in target.parents:
            return None
        if not target.is_file():
            return None
        return target.read_bytes()

    def host_path(self, cwd: str | None) -> Path:
        return (self.workdir / (cwd or ".")).resolve()

    # ---- per-kind hooks ----
    def _boot(self) -> None:
        raise NotImplementedError

    def _exec(self, command: str, *, env: Mapping[str, str], cwd: str | None) -> ProcessResult:
        raise NotImplementedError

    def _release(self) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} job={self.job} executor={self.spec.name}>"


# the only host variables a machine session inherits
HOST_PASSTHROUGH = ("PATH", "LANG", "LC_ALL", "TERM", "TZ")


def host_environment() -> dict:
    env = {key: os.environ[key] for key in HOST_PASSTHROUGH if key in os.environ}
    env.setdefault("PATH", os.defpath)
    return env
