# git.py
# Small, focused wrapper around the Git CLI.
# Provenance for a run (which commit, which repository) comes from here, so the
# rest of the codebase never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional, Tuple


UNKNOWN_REVISION = "unknown"


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero (e.g. not a repo)
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """Absolute path of the enclosing repository (git is the source of truth)."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    """
    Full SHA of HEAD.

    Used as the revision every job checks out and every artifact is tagged with.
    """
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def is_dirty(cwd: Optional[str] = None) -> bool:
    """True if the working tree has modified, staged or untracked files."""
    # porcelain output is stable; any output at all means dirty
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def get_remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    """URL of a configured remote (the default source for `checkout`)."""
    return _git(["remote", "get-url", remote], cwd=cwd)


def source_facts(cwd: Optional[str] = None) -> Tuple[str, Optional[str]]:
    """
    Best-effort (revision, repository) for the current directory.

    Falls back to ("unknown", None) outside a git checkout, and to the
    repository root path when no `origin` remote is configured.
    """
    try:
        revision = head_sha(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return UNKNOWN_REVISION, None

    try:
        repository: Optional[str] = get_remote_url("origin", cwd)
    except subprocess.CalledProcessError:
        repository = str(repo_root(cwd))
    return revision, repository
