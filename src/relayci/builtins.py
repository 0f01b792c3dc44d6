# builtins.py
from __future__ import annotations

import shlex
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping

if TYPE_CHECKING:
    from .context import RunContext


# ---------------------------------------------------------------------
# Built-in actions compile down to plain shell commands.
# The step runner never sees anything but a command string.
# ---------------------------------------------------------------------

RUSTUP_INSTALLER = "https://sh.rustup.rs"


class ActionError(ValueError):
    """A built-in action could not be compiled (bad or missing parameters)."""


def checkout(params: Mapping[str, Any], ctx: "RunContext") -> str:
    """Clone the source repository into the workspace and check out the revision."""
    repository = params.get("repository") or ctx.repository
    if not repository:
        raise ActionError("checkout: no source repository configured (use --repo)")

    revision = params.get("revision") or ctx.revision
    cmd = f"git clone --quiet {shlex.quote(str(repository))} ."
    if revision and revision != "unknown":
        cmd += f" && git checkout --quiet {shlex.quote(str(revision))}"
    return cmd


def install_toolchain(params: Mapping[str, Any], ctx: "RunContext") -> str:
    """Install a Rust toolchain at runtime via rustup (no pre-baked image needed)."""
    toolchain = str(params.get("toolchain", "stable"))
    args = ["-y", "--default-toolchain", toolchain]
    profile = params.get("profile")
    if profile:
        args.extend(["--profile", str(profile)])

    cmd = (
        f"curl --proto '=https' --tlsv1.2 -sSf {RUSTUP_INSTALLER} | sh -s -- "
        + " ".join(shlex.quote(a) for a in args)
    )

    components = params.get("components") or []
    if isinstance(components, str):
        components = [components]
    if components:
        cmd += " && \"$HOME/.cargo/bin/rustup\" component add " + " ".join(
            shlex.quote(str(c)) for c in components
        )
    return cmd


BUILTIN_ACTIONS: Dict[str, Callable[[Mapping[str, Any], "RunContext"], str]] = {
    "checkout": checkout,
    "install-toolchain": install_toolchain,
}


def compile_action(action: str, params: Mapping[str, Any], ctx: "RunContext") -> str:
    try:
        fn = BUILTIN_ACTIONS[action]
    except KeyError:
        raise ActionError(f"unknown built-in action: {action!r}")
    return fn(params, ctx)


# accepted parameters per action; True marks those that also take a list of strings
ACTION_PARAMETERS: Dict[str, Dict[str, bool]] = {
    "checkout": {"repository": False, "revision": False},
    "install-toolchain": {"toolchain": False, "profile": False, "components": True},
}


def check_params(action: str, params: Mapping[Any, Any]) -> List[str]:
    """Every problem with a built-in's parameters, worded for the loader's report."""
    allowed = ACTION_PARAMETERS.get(action, {})
    problems: List[str] = []
    for key, value in params.items():
        if key not in allowed:
            known = ", ".join(sorted(allowed)) or "none"
            problems.append(f"unknown parameter '{key}' for '{action}' (known: {known})")
            continue
        if isinstance(value, str) and value:
            continue
        if allowed[key] and isinstance(value, list) and all(isinstance(v, str) and v for v in value):
            continue
        expected = "a string or a list of strings" if allowed[key] else "a string"
        problems.append(f"parameter '{key}' of '{action}' must be {expected}")
    return problems
