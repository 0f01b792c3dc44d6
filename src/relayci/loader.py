# loader.py
"""
Pipeline definition loader.

Turns a YAML document (or an already-parsed mapping) into a read-only
PipelineDefinition. Validation never stops at the first problem: every
violation found is collected and raised together in one ValidationError,
before any executor is provisioned.
"""
from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .builtins import BUILTIN_ACTIONS, check_params
from .errors import ValidationError
from .model import (
    DEFAULT_RESOURCE_CLASS,
    RESOURCE_CLASSES,
    ArtifactSpec,
    ExecutorKind,
    ExecutorSpec,
    Job,
    PipelineDefinition,
    ReportingSpec,
    Step,
    Workflow,
    frozen_mapping,
)


TOP_LEVEL_KEYS = ("version", "executors", "jobs", "workflows", "reporting")
NAMED_SECTIONS = ("executors", "jobs", "workflows")

EXECUTOR_KEYS = {"kind", "image", "resource_class", "environment", "docker", "machine"}
JOB_KEYS = {"executor", "steps", "artifacts"}
RUN_KEYS = {"name", "command", "environment", "working_directory"}
REPORTING_KEYS = {"url", "slug"}

_KINDS = ", ".join(k.value for k in ExecutorKind)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def load(raw: Any, *, source: str | None = None) -> PipelineDefinition:
    """Validate an already-parsed definition mapping."""
    return _build(raw, [], source)


def load_text(text: str, *, source: str = "<string>") -> PipelineDefinition:
    """Parse YAML text and validate it. Duplicate names are detected on the node tree."""
    try:
        node = yaml.compose(text, Loader=yaml.SafeLoader)
        _keep_scalar_text(node)
        raw = _construct(node)
    except yaml.YAMLError as e:
        raise ValidationError([f"invalid YAML: {e}"], source=source)

    return _build(raw, _duplicate_names(node), source)


def load_file(path: str | Path) -> PipelineDefinition:
    p = Path(path)
    if not p.is_file():
        raise ValidationError([f"definition file not found: {p}"], source=str(p))
    return load_text(p.read_text(encoding="utf-8"), source=str(p))


def _construct(node: Optional[yaml.Node]) -> Any:
    if node is None:
        return None
    loader = yaml.SafeLoader("")
    try:
        return loader.construct_document(node)
    finally:
        loader.dispose()


# ----------------------------------------------------------------------
# Scalar text ("1.70" must not become 1.7, "0755" must not become 493)
# ----------------------------------------------------------------------

_STR_TAG = "tag:yaml.org,2002:str"
_TYPED_TAGS = {"tag:yaml.org,2002:int", "tag:yaml.org,2002:float", "tag:yaml.org,2002:bool"}


def _child(node: Any, key: str) -> Optional[yaml.Node]:
    if not isinstance(node, yaml.MappingNode):
        return None
    for key_node, value_node in node.value:
        if key_node.value == key:
            return value_node
    return None


def _children(node: Any) -> List[yaml.Node]:
    if isinstance(node, yaml.MappingNode):
        return [value_node for _, value_node in node.value]
    if isinstance(node, yaml.SequenceNode):
        return list(node.value)
    return []


def _as_text(node: Any, depth: int = 1) -> None:
    for value_node in _children(node):
        if isinstance(value_node, yaml.ScalarNode) and value_node.tag in _TYPED_TAGS:
            value_node.tag = _STR_TAG
        elif depth > 0:
            _as_text(value_node, depth - 1)


def _keep_scalar_text(root: Optional[yaml.Node]) -> None:
    """Environment values and built-in parameters keep the text they were written with."""
    for executor in _children(_child(root, "executors")):
        _as_text(_child(executor, "environment"), depth=0)

    for job in _children(_child(root, "jobs")):
        for step in _children(_child(job, "steps")):
            if not isinstance(step, yaml.MappingNode) or len(step.value) != 1:
                continue
            key_node, body = step.value[0]
            if not isinstance(key_node, yaml.ScalarNode):
                continue
            if key_node.value == "run":
                _as_text(_child(body, "environment"), depth=0)
            elif key_node.value in BUILTIN_ACTIONS:
                _as_text(body)


# ----------------------------------------------------------------------
# Duplicate detection (safe_load silently keeps the last duplicate key)
# ----------------------------------------------------------------------

def _duplicate_names(node: Optional[yaml.Node]) -> List[str]:
    if not isinstance(node, yaml.MappingNode):
        return []

    violations: List[str] = []
    seen_sections: set = set()
    for key_node, value_node in node.value:
        section = key_node.value
        if section in seen_sections:
            violations.append(f"duplicate top-level key '{section}' (line {key_node.start_mark.line + 1})")
        seen_sections.add(section)

        if section not in NAMED_SECTIONS or not isinstance(value_node, yaml.MappingNode):
            continue
        seen: set = set()
        for name_node, _ in value_node.value:
            name = name_node.value
            if name in seen:
                violations.append(
                    f"{section}: duplicate name '{name}' (line {name_node.start_mark.line + 1})"
                )
            seen.add(name)
    return violations


# ----------------------------------------------------------------------
# Structural + referential validation
# ----------------------------------------------------------------------

def _build(raw: Any, violations: List[str], source: str | None) -> PipelineDefinition:
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise ValidationError(
            violations + [f"definition root must be a mapping, got {type(raw).__name__}"],
            source=source,
        )

    for key in raw:
        if key not in TOP_LEVEL_KEYS:
            violations.append(f"unknown top-level key '{key}'")

    executors_raw = _section(raw, "executors", violations)
    jobs_raw = _section(raw, "jobs", violations)
    workflows_raw = _section(raw, "workflows", violations)

    executors: Dict[str, ExecutorSpec] = {}
    for name, entry in executors_raw.items():
        if _valid_name("executors", name, violations):
            spec = _executor(name, entry, violations)
            if spec is not None:
                executors[name] = spec

    jobs: Dict[str, Job] = {}
    for name, entry in jobs_raw.items():
        if _valid_name("jobs", name, violations):
            job = _job(name, entry, executors_raw, violations)
            if job is not None:
                jobs[name] = job

    workflows: Dict[str, Workflow] = {}
    for name, entry in workflows_raw.items():
        if _valid_name("workflows", name, violations):
            wf = _workflow(name, entry, jobs_raw, violations)
            if wf is not None:
                workflows[name] = wf

    reporting = _reporting(raw.get("reporting"), violations)

    if violations:
        raise ValidationError(violations, source=source)

    return PipelineDefinition(
        executors=frozen_mapping(executors),
        jobs=frozen_mapping(jobs),
        workflows=frozen_mapping(workflows),
        reporting=reporting,
    )


def _section(raw: Mapping, key: str, violations: List[str]) -> Mapping:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        violations.append(f"'{key}' must be a mapping of name -> entry")
        return {}
    return value


def _valid_name(section: str, name: Any, violations: List[str]) -> bool:
    if isinstance(name, str) and name.strip():
        return True
    violations.append(f"{section}: invalid name {name!r} (names must be non-empty strings)")
    return False


def _unknown_keys(where: str, entry: Mapping, allowed: set, violations: List[str]) -> None:
    for key in entry:
        if key not in allowed:
            violations.append(f"{where}: unknown key '{key}'")


def _environment(raw: Any, where: str, violations: List[str]) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        violations.append(f"{where}.environment: must be a mapping of NAME -> value")
        return {}

    env: Dict[str, str] = {}
    for key, value in raw.items():
        if not isinstance(key, str) or not key:
            violations.append(f"{where}.environment: invalid variable name {key!r}")
            continue
        if isinstance(value, bool):
            env[key] = "true" if value else "false"
        elif isinstance(value, (str, int, float)):
            env[key] = str(value)
        else:
            violations.append(f"{where}.environment.{key}: value must be a string, got {type(value).__name__}")
    return env


def _relative_path(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    p = PurePosixPath(value)
    return not p.is_absolute() and ".." not in p.parts


# ---- executors ----

def _executor(name: str, entry: Any, violations: List[str]) -> ExecutorSpec | None:
    where = f"executors.{name}"
    if not isinstance(entry, Mapping):
        violations.append(f"{where}: must be a mapping")
        return None

    before = len(violations)
    _unknown_keys(where, entry, EXECUTOR_KEYS, violations)

    kind_raw = entry.get("kind")
    image = entry.get("image")

    # CircleCI-style shorthand: `docker: [{image: ...}]` / `machine: {image: ...}`
    if kind_raw is None and "docker" in entry:
        kind_raw = ExecutorKind.CONTAINER.value
        docker = entry.get("docker")
        if image is None and isinstance(docker, list) and docker and isinstance(docker[0], Mapping):
            image = docker[0].get("image")
    elif kind_raw is None and "machine" in entry:
        kind_raw = ExecutorKind.VIRTUAL_MACHINE.value
        machine = entry.get("machine")
        if image is None and isinstance(machine, Mapping):
            image = machine.get("image")

    kind: ExecutorKind | None = None
    if kind_raw is None or kind_raw == "":
        violations.append(f"{where}: missing executor kind (expected one of: {_KINDS})")
    else:
        try:
            kind = ExecutorKind(kind_raw)
        except ValueError:
            violations.append(f"{where}: unsupported executor kind '{kind_raw}' (expected one of: {_KINDS})")

    if not isinstance(image, str) or not image.strip():
        violations.append(f"{where}: missing image reference")

    resource_class = entry.get("resource_class", DEFAULT_RESOURCE_CLASS)
    if not isinstance(resource_class, str) or not resource_class:
        violations.append(f"{where}: resource_class must be a string")
    elif kind is not None and resource_class not in RESOURCE_CLASSES[kind]:
        known = ", ".join(sorted(RESOURCE_CLASSES[kind]))
        violations.append(f"{where}: unknown resource class '{resource_class}' for {kind.value} (known: {known})")

    environment = _environment(entry.get("environment"), where, violations)

    if len(violations) != before:
        return None
    return ExecutorSpec(
        name=name,
        kind=kind,
        image=image,
        resource_class=resource_class,
        environment=frozen_mapping(environment),
    )


# ---- jobs ----

def _job(name: str, entry: Any, executor_names: Mapping, violations: List[str]) -> Job | None:
    where = f"jobs.{name}"
    if not isinstance(entry, Mapping):
        violations.append(f"{where}: must be a mapping")
        return None

    before = len(violations)
    _unknown_keys(where, entry, JOB_KEYS, violations)

    executor = entry.get("executor")
    if not isinstance(executor, str) or not executor:
        violations.append(f"{where}: missing executor reference")
    elif executor not in executor_names:
        violations.append(f"{where}: executor '{executor}' is not defined")

    steps_raw = entry.get("steps")
    steps: List[Step] = []
    if not isinstance(steps_raw, list) or not steps_raw:
        violations.append(f"{where}: must declare at least one step")
    else:
        for i, raw_step in enumerate(steps_raw, start=1):
            step = _step(f"{where}.steps[{i}]", raw_step, violations)
            if step is not None:
                steps.append(step)

    artifacts = _artifacts(where, entry.get("artifacts"), violations)

    if len(violations) != before:
        return None
    return Job(name=name, executor=executor, steps=tuple(steps), artifacts=artifacts)


def _step(where: str, raw: Any, violations: List[str]) -> Step | None:
    if isinstance(raw, str):
        if raw in BUILTIN_ACTIONS:
            return Step(name=raw, action=raw)
        violations.append(f"{where}: unknown built-in action '{raw}' (shell commands use 'run:')")
        return None

    if not isinstance(raw, Mapping) or len(raw) != 1:
        violations.append(f"{where}: a step is an action name or a single-key mapping")
        return None

    (key, value), = raw.items()

    if key == "run":
        return _run_step(where, value, violations)

    if key in BUILTIN_ACTIONS:
        if value is None:
            value = {}
        if not isinstance(value, Mapping):
            violations.append(f"{where}: parameters of '{key}' must be a mapping")
            return None
        problems = check_params(key, value)
        if problems:
            violations.extend(f"{where}: {p}" for p in problems)
            return None
        return Step(name=key, action=key, params=frozen_mapping(value))

    violations.append(f"{where}: unknown built-in action '{key}'")
    return None


def _run_step(where: str, value: Any, violations: List[str]) -> Step | None:
    if isinstance(value, str):
        if not value.strip():
            violations.append(f"{where}: empty command")
            return None
        return Step(name=_default_step_name(value), command=value)

    if not isinstance(value, Mapping):
        violations.append(f"{where}: 'run' must be a command string or a mapping")
        return None

    before = len(violations)
    _unknown_keys(where, value, RUN_KEYS, violations)

    command = value.get("command")
    if not isinstance(command, str) or not command.strip():
        violations.append(f"{where}: missing command")

    name = value.get("name")
    if name is not None and not isinstance(name, str):
        violations.append(f"{where}: name must be a string")

    cwd = value.get("working_directory")
    if cwd is not None and not _relative_path(cwd):
        violations.append(f"{where}: working_directory must be a relative path inside the workspace")

    environment = _environment(value.get("environment"), where, violations)

    if len(violations) != before:
        return None
    return Step(
        name=name or _default_step_name(command),
        command=command,
        environment=frozen_mapping(environment),
        cwd=cwd,
    )


def _default_step_name(command: str) -> str:
    first = command.strip().splitlines()[0]
    return first if len(first) <= 60 else first[:57] + "..."


def _artifacts(where: str, raw: Any, violations: List[str]) -> Tuple[ArtifactSpec, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        violations.append(f"{where}.artifacts: must be a list")
        return ()

    out: List[ArtifactSpec] = []
    seen: set = set()
    for i, item in enumerate(raw, start=1):
        loc = f"{where}.artifacts[{i}]"
        if not isinstance(item, Mapping):
            violations.append(f"{loc}: must be a mapping with 'name' and 'path'")
            continue
        name, path = item.get("name"), item.get("path")
        ok = True
        if not isinstance(name, str) or not name.strip():
            violations.append(f"{loc}: missing name")
            ok = False
        elif name in seen:
            violations.append(f"{loc}: duplicate artifact name '{name}'")
            ok = False
        if not _relative_path(path):
            violations.append(f"{loc}: path must be a relative path inside the workspace")
            ok = False
        if ok:
            seen.add(name)
            out.append(ArtifactSpec(name=name, path=path))
    return tuple(out)


# ---- workflows ----

def _workflow(name: str, entry: Any, job_names: Mapping, violations: List[str]) -> Workflow | None:
    where = f"workflows.{name}"
    if not isinstance(entry, Mapping):
        violations.append(f"{where}: must be a mapping with a 'jobs' list")
        return None

    before = len(violations)
    _unknown_keys(where, entry, {"jobs"}, violations)

    refs = entry.get("jobs")
    members: List[str] = []
    if not isinstance(refs, list) or not refs:
        violations.append(f"{where}: must list at least one job")
        refs = []

    for ref in refs:
        if isinstance(ref, Mapping) and len(ref) == 1:
            (ref_name, options), = ref.items()
            if options:
                # no inter-job ordering: every job in a workflow is independent
                violations.append(f"{where}: job options for '{ref_name}' are not supported (jobs run independently)")
                continue
            ref = ref_name
        if not isinstance(ref, str) or not ref:
            violations.append(f"{where}: invalid job reference {ref!r}")
            continue
        if ref not in job_names:
            violations.append(f"{where}: job '{ref}' is not defined")
            continue
        if ref in members:
            violations.append(f"{where}: job '{ref}' listed more than once")
            continue
        members.append(ref)

    if len(violations) != before:
        return None
    return Workflow(name=name, jobs=tuple(members))


# ---- reporting ----

def _reporting(raw: Any, violations: List[str]) -> ReportingSpec:
    if raw is None:
        return ReportingSpec()
    if not isinstance(raw, Mapping):
        violations.append("reporting: must be a mapping")
        return ReportingSpec()

    for key in raw:
        if key == "token":
            violations.append(
                "reporting.token: upload tokens are supplied out-of-band "
                "(RELAYCI_REPORT_TOKEN), never embedded in the definition"
            )
        elif key not in REPORTING_KEYS:
            violations.append(f"reporting: unknown key '{key}'")

    url, slug = raw.get("url"), raw.get("slug")
    if url is not None and not isinstance(url, str):
        violations.append("reporting.url: must be a string")
    if slug is not None and not isinstance(slug, str):
        violations.append("reporting.slug: must be a string")
    return ReportingSpec(url=url, slug=slug)
