# runner.py
from __future__ import annotations

import runpy
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .cache import CacheBackend, CacheLookup, CacheProbe, FileCacheStore, compute_cache_key, pack_artifact
from .config import Settings
from .errors import CacheProbeError, CacheStoreError, WorkflowError
from .executor import StepExecutor, should_run
from .model import (
    CacheState,
    Execution,
    ExecutionPolicy,
    Job,
    JobResult,
    JobStatus,
    PipelineResult,
    PROTOC_STEP_NAME,
    Step,
    StepRecord,
    Trigger,
)
from .trigger import Event, resolve_trigger
from .ui.console import get_console


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> List[Job]:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> List[Job]
      - JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise WorkflowError(f"Workflow must be a .py file, got: {wf_path.name}")

    globals_dict = runpy.run_path(str(wf_path), run_name=f"warmci_workflow_{wf_path.stem}")

    jobs = None
    if callable(globals_dict.get("workflow")):
        jobs = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise WorkflowError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...].",
            path=str(wf_path),
        )
    validate_jobs(jobs)
    return jobs


def _dupes(names: List[str]) -> List[str]:
    return sorted({n for n in names if names.count(n) > 1})


def validate_jobs(jobs: List[Job]) -> None:
    """Job names are unique, and so are step names within each job as it will run."""
    dupes = _dupes([j.name for j in jobs])
    if dupes:
        raise WorkflowError(f"Duplicate job names found: {dupes}")
    for job in jobs:
        # checked on the job as it will run, so the injected protoc step counts too
        names = [s.name for s in job.steps]
        if job.requires_protocol_compiler:
            names.insert(0, PROTOC_STEP_NAME)
        dupes = _dupes(names)
        if dupes:
            raise WorkflowError(f"Duplicate step names in job {job.name!r}: {dupes}", job=job.name)


# ----------------------------------------------------------------------
# Job
# ----------------------------------------------------------------------

def job_steps(job: Job, settings: Settings) -> List[Step]:
    """The steps a job actually runs, in order (protoc install goes first)."""
    steps = list(job.steps)
    if job.requires_protocol_compiler:
        steps.insert(0, Step(name=PROTOC_STEP_NAME, run=settings.protoc_install))
    return steps


def probe_job(
    job: Job,
    backend: CacheBackend,
    *,
    settings: Settings,
    repo_root: Path,
) -> Tuple[Dict, CacheLookup]:
    """Fingerprint the job and ask the store about it once; returns (manifest, lookup)."""
    try:
        key, manifest = compute_cache_key(job, repo_root=repo_root)
    except (OSError, ValueError) as e:
        return {}, CacheLookup(CacheState.UNKNOWN, "", f"could not fingerprint inputs: {e}")
    return manifest, CacheProbe(backend, key, timeout=settings.probe_timeout).probe()


@dataclass
class JobRun:
    """
    One job's lifecycle:
      PENDING -> PROBING -> RUNNING -> SUCCESS | FAILURE | CANCELLED
    The cache state is resolved once while PROBING and shared by every step.
    """
    job: Job
    policy: ExecutionPolicy
    backend: CacheBackend
    settings: Settings
    repo_root: Path
    cancel: threading.Event = field(default_factory=threading.Event)
    status: JobStatus = JobStatus.PENDING
    manifest: Dict = field(default_factory=dict)

    def _enter(self, status: JobStatus) -> None:
        get_console().print_debug(f"[{self.job.name}] {self.status.value} -> {status.value}")
        self.status = status

    def _probe(self) -> CacheLookup:
        self._enter(JobStatus.PROBING)
        self.manifest, lookup = probe_job(
            self.job, self.backend, settings=self.settings, repo_root=self.repo_root
        )

        if lookup.state is CacheState.HIT:
            try:
                self.backend.restore(lookup.handle, self.repo_root)
            except CacheProbeError as e:
                lookup = CacheLookup(CacheState.UNKNOWN, lookup.key, e.message)

        get_console().print_cache(self.job.name, lookup.state, lookup.reason)
        return lookup

    def _save(self, result: JobResult) -> None:
        console = get_console()
        try:
            # keyed by what was observed at probe time, even if steps touched the inputs
            artifact = pack_artifact(self.job, self.manifest, repo_root=self.repo_root)
            self.backend.store(result.cache_key, artifact)
            self.backend.prune(self.job.name, keep=self.job.cache_keep)
        except (CacheStoreError, OSError) as e:
            result.cache_error = e.message if isinstance(e, CacheStoreError) else str(e)
            console.print_cache_store_error(self.job.name, result.cache_error)
            return
        result.cache_saved = True
        console.print_cache_saved(self.job.name, result.cache_key)

    def run(self) -> JobResult:
        console = get_console()
        name = self.job.name
        steps = job_steps(self.job, self.settings)

        if self.cancel.is_set():
            self._enter(JobStatus.CANCELLED)
            records = [StepRecord(name, s.name, Execution.NOT_RUN) for s in steps]
            return JobResult(name, self.status, CacheState.UNKNOWN, steps=records)

        console.print_job_start(name)
        lookup = self._probe()
        result = JobResult(name, self.status, lookup.state, cache_key=lookup.key)

        self._enter(JobStatus.RUNNING)
        executor = StepExecutor(self.repo_root, cancel=self.cancel)
        failed = False
        stopped = False

        for step in steps:
            if stopped or self.cancel.is_set():
                if not stopped:
                    # cancelled between steps: nothing in flight
                    self._enter(JobStatus.CANCELLED)
                    stopped = True
                result.steps.append(StepRecord(name, step.name, Execution.NOT_RUN))
                continue

            record = executor.execute(name, step, lookup.state, self.policy, env=self.job.env)
            result.steps.append(record)

            if record.execution is Execution.CANCELLED:
                self._enter(JobStatus.CANCELLED)
                stopped = True
            elif record.failed:
                failed = True
                if not step.continue_on_failure:
                    self._enter(JobStatus.FAILURE)
                    stopped = True

        if self.status is JobStatus.RUNNING:
            self._enter(JobStatus.FAILURE if failed else JobStatus.SUCCESS)
        result.status = self.status

        # warm the cache after a clean cold run, whatever the policy
        if result.status is JobStatus.SUCCESS and lookup.state is not CacheState.HIT and lookup.key:
            self._save(result)

        console.print_job_finished(name, result.status.value)
        return result


def run_job(
    job: Job,
    policy: ExecutionPolicy,
    *,
    backend: CacheBackend,
    settings: Settings,
    repo_root: str | Path = ".",
    cancel: Optional[threading.Event] = None,
) -> JobResult:
    return JobRun(
        job=job,
        policy=policy,
        backend=backend,
        settings=settings,
        repo_root=Path(repo_root).resolve(),
        cancel=cancel or threading.Event(),
    ).run()


# ----------------------------------------------------------------------
# Pipeline
# ----------------------------------------------------------------------

def run_pipeline(
    jobs: List[Job],
    trigger: Trigger,
    policy: ExecutionPolicy,
    *,
    backend: Optional[CacheBackend] = None,
    settings: Optional[Settings] = None,
    repo_root: str | Path = ".",
    cancel: Optional[threading.Event] = None,
) -> PipelineResult:
    """
    Run every job concurrently and wait for all of them.

    A failing job never stops its siblings: one invocation surfaces every
    independent failure.
    """
    settings = settings or Settings()
    backend = backend or FileCacheStore(settings.cache_dir)
    cancel = cancel or threading.Event()
    validate_jobs(jobs)

    results: Dict[str, JobResult] = {}
    if not jobs:
        return PipelineResult(trigger, policy)

    max_workers = settings.workers or len(jobs)
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="job") as pool:
        futures = {
            pool.submit(
                run_job,
                job,
                policy,
                backend=backend,
                settings=settings,
                repo_root=repo_root,
                cancel=cancel,
            ): job
            for job in jobs
        }
        for future in as_completed(futures):
            job = futures[future]
            try:
                results[job.name] = future.result()
            except Exception as e:
                # the job crashed outside any step; report it, keep the others
                get_console().print_exception(e)
                results[job.name] = JobResult(
                    job.name,
                    JobStatus.FAILURE,
                    CacheState.UNKNOWN,
                    steps=[StepRecord(job.name, s.name, Execution.NOT_RUN) for s in job_steps(job, settings)],
                    error=str(e),
                )

    return PipelineResult(trigger, policy, [results[j.name] for j in jobs])


def run_event(
    event: Event,
    jobs: List[Job],
    *,
    backend: Optional[CacheBackend] = None,
    settings: Optional[Settings] = None,
    repo_root: str | Path = ".",
    cancel: Optional[threading.Event] = None,
) -> PipelineResult:
    """Resolve the trigger (raises UnknownTrigger before any job starts) and run."""
    trigger, policy = resolve_trigger(event)
    get_console().print_run_started(trigger, policy, event.revision, len(jobs))
    return run_pipeline(
        jobs,
        trigger,
        policy,
        backend=backend,
        settings=settings,
        repo_root=repo_root,
        cancel=cancel,
    )


@dataclass
class JobPlan:
    job: str
    lookup: CacheLookup
    steps: List[Tuple[str, bool]]


def plan_pipeline(
    jobs: List[Job],
    policy: ExecutionPolicy,
    *,
    backend: CacheBackend,
    settings: Settings,
    repo_root: str | Path = ".",
) -> List[JobPlan]:
    """Probe each job and report which steps would run, without running anything."""
    root = Path(repo_root).resolve()
    plans: List[JobPlan] = []
    for job in jobs:
        _manifest, lookup = probe_job(job, backend, settings=settings, repo_root=root)
        decisions = [(s.name, should_run(policy, lookup.state, s)) for s in job_steps(job, settings)]
        plans.append(JobPlan(job.name, lookup, decisions))
    return plans
