# git.py
# Small wrapper around the Git CLI, used to fill in run metadata
# (revision, branch) when the caller does not pass them.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """Absolute path to the root of the current Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of HEAD; this is the revision a local run reports."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Return the current ref as refs/heads/<branch>, or the bare SHA
    when HEAD is detached.
    """
    branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if branch == "HEAD":
        return head_sha(cwd=cwd)
    return f"refs/heads/{branch}"
