# tests/conftest.py
"""
Shared fixtures: in-process fake executors and per-test run contexts.

A FakeBackend stands in for one executor kind. Each provisioned handle
records the commands it was asked to run and how often it was released,
and answers with scripted exit codes (default 0).
"""
from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional

import pytest

from relayci.context import ProvisioningPool, RunContext
from relayci.executors.base import ExecutorHandle, ProcessResult
from relayci.executors.provisioner import Provisioner
from relayci.model import ExecutorKind
from relayci.ui.console import Console


class FakeHandle(ExecutorHandle):
    def __init__(self, backend: "FakeBackend", spec, **kwargs):
        super().__init__(spec, **kwargs)
        self.kind = spec.kind
        self.backend = backend
        self.commands: List[tuple] = []
        self.releases = 0

    def _boot(self) -> None:
        self.backend.enter()
        if self.backend.boot_error is not None:
            raise self.backend.boot_error

    def _exec(self, command, *, env, cwd):
        self.commands.append((command, dict(env), cwd))
        outcome: Any = self.backend.script.get(command, 0)
        if callable(outcome):
            outcome = outcome(self)
        if isinstance(outcome, ProcessResult):
            return outcome
        return ProcessResult(exit_code=outcome, output=f"$ {command}\n")

    def _release(self) -> None:
        self.releases += 1
        self.backend.leave()


class FakeBackend:
    """Handle factory for Provisioner handler tables."""

    def __init__(self, script: Optional[Dict[str, Any]] = None, boot_error: Exception | None = None):
        self.script = dict(script or {})
        self.boot_error = boot_error
        self.handles: List[FakeHandle] = []
        self._lock = threading.Lock()
        self.active = 0
        self.peak = 0

    def __call__(self, spec, **kwargs) -> FakeHandle:
        handle = FakeHandle(self, spec, **kwargs)
        with self._lock:
            self.handles.append(handle)
        return handle

    def enter(self) -> None:
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)

    def leave(self) -> None:
        with self._lock:
            self.active -= 1

    @property
    def commands(self) -> List[str]:
        return [c for h in self.handles for c, _, _ in h.commands]


@pytest.fixture
def make_ctx(tmp_path):
    """Factory for an isolated RunContext (own pool, own cancel token, own workspace)."""

    def _make(
        *,
        container: Optional[FakeBackend] = None,
        machine: Optional[FakeBackend] = None,
        container_slots: int = 4,
        machine_slots: int = 2,
        **kwargs,
    ) -> RunContext:
        handlers = {}
        if container is not None:
            handlers[ExecutorKind.CONTAINER] = container
        if machine is not None:
            handlers[ExecutorKind.VIRTUAL_MACHINE] = machine
        kwargs.setdefault("revision", "abc123")
        kwargs.setdefault("repository", "https://example.com/fn_num_types.git")
        kwargs.setdefault("console", Console())
        return RunContext(
            workspace_root=tmp_path / "work",
            pool=ProvisioningPool({
                ExecutorKind.CONTAINER: container_slots,
                ExecutorKind.VIRTUAL_MACHINE: machine_slots,
            }),
            provisioner=Provisioner(handlers),
            **kwargs,
        )

    return _make


SCENARIO_YAML = """\
executors:
  docker:
    kind: container
    image: cimg/rust:1.70.0
  arm:
    kind: virtual-machine
    image: ubuntu-2004:current
    resource_class: arm.medium
    environment:
      RUSTUP_VERSION: 1.70.0
jobs:
  test-docker:
    executor: docker
    steps:
      - run: cargo test
  test-arm:
    executor: arm
    steps:
      - run:
          name: install toolchain
          command: curl https://sh.rustup.rs -sSf | sh -s -- -y
      - run: cargo test
workflows:
  test:
    jobs:
      - test-docker
      - test-arm
"""


@pytest.fixture
def scenario_yaml() -> str:
    return SCENARIO_YAML
