# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


class Trigger(str, Enum):
    """Pipeline variant selected by the external event."""
    PRE_MERGE_CHECK = "pre-merge-check"
    POST_MERGE_REFRESH = "post-merge-refresh"
    MANUAL_DISPATCH = "manual-dispatch"


@dataclass(frozen=True)
class ExecutionPolicy:
    always_run_steps: bool


class CacheState(str, Enum):
    HIT = "hit"
    MISS = "miss"
    UNKNOWN = "unknown"


class Execution(str, Enum):
    RAN = "ran"
    SKIPPED = "skipped"
    NOT_RUN = "not-run"
    CANCELLED = "cancelled"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROBING = "probing"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    skippable: bool = False
    continue_on_failure: bool = False
    cwd: str | None = None


# injected ahead of the job's own steps when requires_protocol_compiler is set
PROTOC_STEP_NAME = "Install protoc"


@dataclass
class Job:
    """
    A CI job: ordered steps + metadata for cache keying.

    Jobs are independent: no job reads another job's cache state or outcome.
    """
    name: str
    steps: list[Step]
    requires_protocol_compiler: bool = False

    # cache key inputs
    inputs: list[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    requires: list[str] = field(default_factory=list)
    tool_versions: Optional[Dict[str, str]] = None

    # what gets archived after a cold run
    cache_dirs: list[str] = field(default_factory=list)
    cache_keep: int = 3


@dataclass(frozen=True)
class StepRecord:
    job: str
    step: str
    execution: Execution
    outcome: Optional[Outcome] = None
    exit_code: Optional[int] = None
    duration: float = 0.0
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.outcome is Outcome.FAILURE


@dataclass
class JobResult:
    name: str
    status: JobStatus
    cache_state: CacheState
    cache_key: str = ""
    steps: List[StepRecord] = field(default_factory=list)
    cache_saved: bool = False
    cache_error: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PipelineResult:
    trigger: Trigger
    policy: ExecutionPolicy
    jobs: List[JobResult] = field(default_factory=list)

    @property
    def failures(self) -> List[Tuple[str, str]]:
        return [(r.job, r.step) for j in self.jobs for r in j.steps if r.failed]

    @property
    def cancelled(self) -> bool:
        return any(j.status is JobStatus.CANCELLED for j in self.jobs)

    @property
    def passed(self) -> bool:
        # Pass iff every job finished and every step that ran succeeded
        if self.cancelled:
            return False
        return all(j.status is JobStatus.SUCCESS for j in self.jobs) and not self.failures

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1
