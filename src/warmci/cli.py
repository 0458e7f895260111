# cli.py
from __future__ import annotations

import signal
import subprocess
import sys
import threading
from contextlib import contextmanager
from pathlib import Path

import click

from warmci.cache import FileCacheStore
from warmci.config import Settings, load_settings
from warmci.errors import ConfigError, UnknownTrigger, WorkflowError
from warmci.git_facts.git import current_ref, head_sha, repo_root
from warmci.runner import load_workflow, plan_pipeline, run_event
from warmci.trigger import Event, event_from_env, event_from_name, resolve_trigger
from warmci.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "warmci_workflow.py"

EXIT_FAIL = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def find_workflow_files() -> list[Path]:
    """Workflow files in the current directory: warmci_workflow.py first, then *_workflow.py."""
    current_dir = Path(".")
    default_workflow = current_dir / DEFAULT_WORKFLOW
    found = [default_workflow] if default_workflow.exists() else []
    found.extend(p for p in sorted(current_dir.glob("*_workflow.py")) if p != default_workflow)
    return found


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Exits with a usage error if it cannot be found or several candidates exist.
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  warmci run --workflow my_workflow.py",
            )
            sys.exit(EXIT_USAGE)
        return workflow_path

    workflow_files = find_workflow_files()
    if not workflow_files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  *_workflow.py"],
            suggestion="Create a workflow file or specify one:\n  warmci run --workflow my_workflow.py",
        )
        sys.exit(EXIT_USAGE)
    if len(workflow_files) > 1 and workflow_files[0].name != DEFAULT_WORKFLOW:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
        )
        sys.exit(EXIT_USAGE)
    return workflow_files[0]


def _git_or_none(fn):
    try:
        return fn()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


def resolve_event(event_name: str | None, revision: str | None, ref: str | None, settings: Settings) -> Event:
    """CLI flags first; without --event the hosting provider's environment decides."""
    if event_name is None:
        event = event_from_env(main_branch=settings.main_branch)
        if revision:
            event = Event(event.kind, revision, event.ref)
        return event

    revision = revision or _git_or_none(head_sha) or ""
    if ref is None and event_name == "push":
        ref = _git_or_none(current_ref)
    return event_from_name(event_name, revision, ref, main_branch=settings.main_branch)


def default_repo_root() -> Path:
    """Top of the enclosing git checkout, so runs from a subdirectory see the same inputs."""
    return _git_or_none(repo_root) or Path(".")


def _settings(cache_dir, workers, probe_timeout) -> Settings:
    return load_settings().override(cache_dir=cache_dir, workers=workers, probe_timeout=probe_timeout)


@contextmanager
def cancel_on_signals():
    """Yield an Event that SIGINT/SIGTERM set, so in-flight jobs can stop cleanly."""
    cancel = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    def handler(signum, frame):
        get_console().print_info(f"\nReceived signal {signum}, cancelling running jobs...")
        cancel.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def event_options(fn):
    fn = click.option("--ref", default=None, help="Git ref the event points at (used for push)")(fn)
    fn = click.option("--revision", default=None, help="Revision being validated (defaults to HEAD)")(fn)
    fn = click.option(
        "--event",
        "event_name",
        default=None,
        help="pull_request | push | workflow_dispatch | workflow_call (defaults to $GITHUB_EVENT_NAME)",
    )(fn)
    fn = click.option(
        "--workflow",
        default=None,
        help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
    )(fn)
    fn = click.option("--cache-dir", default=None, help="Cache directory (env: WARMCI_CACHE_DIR)")(fn)
    fn = click.option(
        "--probe-timeout",
        default=None,
        type=click.FloatRange(min=0, min_open=True),
        help="Seconds before a cache probe counts as unknown",
    )(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """warmci: cache-aware CI pipelines for pre-merge checks and post-merge cache refresh."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@event_options
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Number of parallel jobs (default: all at once)")
def run(workflow, event_name, revision, ref, cache_dir, probe_timeout, workers):
    """Run the workflow for an event; exit 0 iff every job passes."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        settings = _settings(cache_dir, workers, probe_timeout)
        event = resolve_event(event_name, revision, ref, settings)
        # fail closed before loading or starting anything
        resolve_trigger(event)
        jobs = load_workflow(workflow_path)
    except UnknownTrigger as e:
        console.print_error("Unknown trigger", str(e), suggestion="No jobs were started.")
        sys.exit(EXIT_USAGE)
    except (ConfigError, WorkflowError, FileNotFoundError) as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_USAGE)

    with cancel_on_signals() as cancel:
        result = run_event(
            event,
            jobs,
            backend=FileCacheStore(settings.cache_dir),
            settings=settings,
            repo_root=default_repo_root(),
            cancel=cancel,
        )

    console.print_results(result)
    if result.cancelled:
        sys.exit(EXIT_CANCELLED)
    if not result.passed:
        sys.exit(EXIT_FAIL)


@cli.command()
@event_options
def plan(workflow, event_name, revision, ref, cache_dir, probe_timeout):
    """Probe the cache and show which steps would run, without running them."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        settings = _settings(cache_dir, None, probe_timeout)
        trigger, policy = resolve_trigger(resolve_event(event_name, revision, ref, settings))
        jobs = load_workflow(workflow_path)
    except UnknownTrigger as e:
        console.print_error("Unknown trigger", str(e))
        sys.exit(EXIT_USAGE)
    except (ConfigError, WorkflowError, FileNotFoundError) as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_USAGE)

    console.print_info(f"Trigger: {trigger.value} (always run: {str(policy.always_run_steps).lower()})")
    plans = plan_pipeline(
        jobs,
        policy,
        backend=FileCacheStore(settings.cache_dir),
        settings=settings,
        repo_root=default_repo_root(),
    )
    for p in plans:
        console.print_plan_job(p.job, p.lookup.state, p.lookup.reason)
        for step_name, will_run in p.steps:
            console.print_plan_step(step_name, will_run)


@cli.group()
def cache():
    """Inspect and maintain the local cache store."""


@cache.command()
@click.option("--workflow", default=None, help="Workflow whose jobs to prune")
@click.option("--cache-dir", default=None, help="Cache directory (env: WARMCI_CACHE_DIR)")
@click.option("--keep", default=None, type=click.IntRange(min=0), help="Entries to keep per job (default: each job's cache_keep)")
def prune(workflow, cache_dir, keep):
    """Drop old cache entries for every job in the workflow."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        settings = _settings(cache_dir, None, None)
        jobs = load_workflow(workflow_path)
    except (ConfigError, WorkflowError, FileNotFoundError) as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_USAGE)

    store = FileCacheStore(settings.cache_dir)
    for j in jobs:
        n = keep if keep is not None else j.cache_keep
        store.prune(j.name, keep=n)
        console.print_info(f"{j.name}: kept newest {n}")


if __name__ == "__main__":
    cli()
