import os
import threading
import time

from conftest import FakeBackend
from relayci.loader import load_text
from relayci.model import JobStatus, StepStatus
from relayci.runner import run_job


def _definition(steps_yaml: str, *, kind: str = "container"):
    resource_class = "arm.medium" if kind == "virtual-machine" else "medium"
    return load_text(f"""\
executors:
  box:
    kind: {kind}
    image: cimg/rust:1.70.0
    resource_class: {resource_class}
    environment:
      RUSTUP_VERSION: 1.70.0
jobs:
  build:
    executor: box
    steps:
{steps_yaml}
workflows:
  ci:
    jobs: [build]
""")


def _statuses(run):
    return [s.status for s in run.steps]


def test_failing_step_stops_the_job(make_ctx):
    definition = _definition("      - run: one\n      - run: two\n      - run: three\n")
    backend = FakeBackend(script={"two": 101})
    ctx = make_ctx(container=backend)

    run = run_job(definition.jobs["build"], "ci", definition, ctx)

    assert run.status is JobStatus.FAILED
    assert _statuses(run) == [StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.NOT_RUN]
    assert run.failed_step.index == 2
    assert run.failed_step.exit_code == 101
    assert backend.commands == ["one", "two"]
    assert backend.handles[0].releases == 1
    assert run.handle is None


def test_all_steps_succeed_in_order(make_ctx):
    definition = _definition("      - run: one\n      - run: two\n")
    backend = FakeBackend()
    run = run_job(definition.jobs["build"], "ci", definition, make_ctx(container=backend))

    assert run.status is JobStatus.SUCCEEDED
    assert [s.index for s in run.steps] == [1, 2]
    assert all(s.exit_code == 0 for s in run.steps)
    assert backend.commands == ["one", "two"]


def test_step_environment_and_working_directory(make_ctx):
    definition = _definition(
        "      - run: mkdir sub\n"
        "      - run:\n"
        "          name: in sub\n"
        "          command: cargo build\n"
        "          working_directory: sub\n"
        "          environment:\n"
        "            CARGO_INCREMENTAL: 0\n"
    )
    backend = FakeBackend(script={"mkdir sub": lambda h: (h.workdir / "sub").mkdir() or 0})
    run = run_job(definition.jobs["build"], "ci", definition, make_ctx(container=backend))

    assert run.status is JobStatus.SUCCEEDED
    command, env, cwd = backend.handles[0].commands[1]
    assert command == "cargo build"
    assert env == {"CARGO_INCREMENTAL": "0"}
    assert cwd == "sub"


def test_missing_working_directory_fails_the_step(make_ctx):
    definition = _definition(
        "      - run:\n"
        "          command: make\n"
        "          working_directory: nowhere\n"
    )
    backend = FakeBackend()
    run = run_job(definition.jobs["build"], "ci", definition, make_ctx(container=backend))

    assert run.status is JobStatus.FAILED
    assert run.steps[0].exit_code is None
    assert "working directory not found" in run.steps[0].output
    assert backend.commands == []


def test_builtin_actions_compile_to_commands(make_ctx):
    definition = _definition(
        "      - checkout\n"
        "      - install-toolchain:\n"
        "          toolchain: nightly\n"
        "          components: [llvm-tools-preview]\n"
    )
    backend = FakeBackend()
    run = run_job(definition.jobs["build"], "ci", definition, make_ctx(container=backend))

    assert run.status is JobStatus.SUCCEEDED
    checkout, toolchain = backend.commands
    assert checkout == (
        "git clone --quiet https://example.com/fn_num_types.git ."
        " && git checkout --quiet abc123"
    )
    assert "https://sh.rustup.rs" in toolchain
    assert "--default-toolchain nightly" in toolchain
    assert "component add llvm-tools-preview" in toolchain


def test_checkout_without_repository_fails_the_step(make_ctx):
    definition = _definition("      - checkout\n      - run: cargo test\n")
    backend = FakeBackend()
    run = run_job(definition.jobs["build"], "ci", definition, make_ctx(container=backend, repository=None))

    assert run.status is JobStatus.FAILED
    assert _statuses(run) == [StepStatus.FAILED, StepStatus.NOT_RUN]
    assert "no source repository" in run.steps[0].output
    assert backend.handles[0].releases == 1


def test_machine_session_shares_files_and_environment(make_ctx, tmp_path):
    definition = _definition(
        "      - run: echo hello > out.txt\n"
        "      - run: test \"$(cat out.txt)\" = hello\n"
        "      - run: test \"$RUSTUP_VERSION\" = 1.70.0 && test \"$RELAYCI_ARCH\" = arm64\n"
        "      - run:\n"
        "          command: test \"$STEP_ONLY\" = yes\n"
        "          environment: {STEP_ONLY: 'yes'}\n",
        kind="virtual-machine",
    )
    ctx = make_ctx()
    run = run_job(definition.jobs["build"], "ci", definition, ctx)

    assert run.status is JobStatus.SUCCEEDED, run.steps
    assert list((tmp_path / "work").iterdir()) == []


def test_machine_step_exit_code_and_output(make_ctx):
    definition = _definition(
        "      - run: echo boom >&2; exit 3\n      - run: echo never\n",
        kind="virtual-machine",
    )
    run = run_job(definition.jobs["build"], "ci", definition, make_ctx())

    assert run.status is JobStatus.FAILED
    assert run.steps[0].exit_code == 3
    assert "boom" in run.steps[0].output
    assert run.steps[1].status is StepStatus.NOT_RUN


def test_cancellation_interrupts_the_running_step(make_ctx, tmp_path):
    definition = _definition("      - run: sleep 30\n      - run: echo never\n", kind="virtual-machine")
    ctx = make_ctx()
    timer = threading.Timer(0.5, ctx.cancel.cancel, args=("timed out after 0.5s",))
    timer.start()
    try:
        run = run_job(definition.jobs["build"], "ci", definition, ctx)
    finally:
        timer.cancel()

    assert run.status is JobStatus.ERRORED
    assert run.error == "cancelled: timed out after 0.5s"
    assert _statuses(run) == [StepStatus.ERRORED, StepStatus.NOT_RUN]
    assert run.duration < 15
    assert list((tmp_path / "work").iterdir()) == []


def test_machine_jobs_get_a_private_home(make_ctx, tmp_path, monkeypatch):
    host_home = tmp_path / "host-home"
    monkeypatch.setenv("HOME", str(host_home))
    definition = _definition(
        '      - run: test ! -e "$HOME/.cargo/env"\n'
        '      - run: mkdir -p "$HOME/.cargo" && touch "$HOME/.cargo/env"\n'
        f'      - run: test "$HOME" != "{host_home}" && test ! -e .cargo\n',
        kind="virtual-machine",
    )
    ctx = make_ctx()

    first = run_job(definition.jobs["build"], "ci", definition, ctx)
    second = run_job(definition.jobs["build"], "ci", definition, ctx)

    assert first.status is JobStatus.SUCCEEDED, first.steps
    assert second.status is JobStatus.SUCCEEDED, second.steps
    assert not host_home.exists()
    assert list((tmp_path / "work").iterdir()) == []


def test_machine_session_does_not_inherit_host_secrets(make_ctx, monkeypatch):
    monkeypatch.setenv("RELAYCI_REPORT_TOKEN", "host-upload-token")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "host-cloud-key")
    definition = _definition(
        '      - run: test -z "$RELAYCI_REPORT_TOKEN" && test -z "$AWS_SECRET_ACCESS_KEY"\n'
        '      - run: test -n "$PATH" && command -v sh\n',
        kind="virtual-machine",
    )
    run = run_job(definition.jobs["build"], "ci", definition, make_ctx())

    assert run.status is JobStatus.SUCCEEDED, run.steps
    assert "host-upload-token" not in "".join(s.output for s in run.steps)


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    # killed but not yet reaped by its new parent
    try:
        with open(f"/proc/{pid}/stat") as f:
            return f.read().rsplit(") ", 1)[-1][:1] != "Z"
    except OSError:
        return True


def test_machine_teardown_kills_background_processes(make_ctx):
    definition = _definition(
        "      - run: sleep 300 >/dev/null 2>&1 & echo $!\n",
        kind="virtual-machine",
    )
    run = run_job(definition.jobs["build"], "ci", definition, make_ctx())

    assert run.status is JobStatus.SUCCEEDED, run.steps
    pid = int(run.steps[0].output.split()[-1])
    deadline = time.monotonic() + 5
    while _alive(pid) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not _alive(pid)
