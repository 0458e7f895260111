# src/warmci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, List, Optional

from .errors import WorkflowError
from .model import PROTOC_STEP_NAME, Job, Step


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    skippable: bool = False,
    continue_on_failure: bool = False,
    cwd: str | None = None,
) -> Step:
    """Create a shell step. Steps run even on a cache hit unless skippable."""
    return Step(
        name=name,
        run=cmd,
        skippable=skippable,
        continue_on_failure=continue_on_failure,
        cwd=cwd,
    )


def check(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """A validation step that a warm cache already vouches for."""
    return sh(name, cmd, skippable=True, cwd=cwd)


# ---------------------------------------------------------------------
# Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,
    requires_protoc: bool = False,
    inputs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    requires: Optional[List[str]] = None,
    tool_versions: Optional[Dict[str, str]] = None,
    cache_dirs: Optional[List[str]] = None,
    cache_keep: int = 3,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    if not steps:
        raise WorkflowError(f"job({name!r}) must have at least one step")

    names = [s.name for s in steps]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise WorkflowError(f"job({name!r}) has duplicate step names: {dupes}")
    if requires_protoc and PROTOC_STEP_NAME in names:
        raise WorkflowError(f"job({name!r}) step name {PROTOC_STEP_NAME!r} is reserved for the protoc install step")

    steps_final = list(steps)
    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        requires_protocol_compiler=requires_protoc,
        inputs=inputs or [],
        # force values to str for stable hashing + env compatibility
        env={k: str(v) for k, v in (env or {}).items()},
        requires=requires or [],
        tool_versions=tool_versions,
        cache_dirs=cache_dirs or [],
        cache_keep=cache_keep,
    )


# ---------------------------------------------------------------------
# Workflow helper
# ---------------------------------------------------------------------

def wf(*jobs: Job) -> List[Job]:
    """
    Workflow definition helper. One job set serves every trigger; the
    execution policy decides at run time what may be skipped.

        from warmci import wf, job, sh, check

        def workflow():
            return wf(
                job("check", sh("Install toolchain", "rustup show"), check("cargo check", "cargo check")),
            )
    """
    return list(jobs)
