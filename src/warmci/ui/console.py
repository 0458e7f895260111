"""Console output formatting utilities for warmci."""

from __future__ import annotations

import sys
import threading
from typing import Optional

from ..model import CacheState, Execution, ExecutionPolicy, PipelineResult, Trigger

_CACHE_LABEL = {
    CacheState.HIT: "hit",
    CacheState.MISS: "miss",
    CacheState.UNKNOWN: "unknown (treated as miss)",
}

_EXECUTION_LABEL = {
    Execution.RAN: "ran",
    Execution.SKIPPED: "skipped (cache)",
    Execution.NOT_RUN: "not run",
    Execution.CANCELLED: "cancelled",
}


class Console:
    """Centralized console output formatting.

    Jobs report from worker threads, so every write holds one lock and
    each message is emitted as a single block.
    """

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        with self._lock:
            print("\n".join(lines), file=sys.stderr if err else sys.stdout, flush=True)

    def print_run_started(
        self,
        trigger: Trigger,
        policy: ExecutionPolicy,
        revision: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        mode = "always run" if policy.always_run_steps else "skip validation on cache hit"
        self._emit(
            "\nRUN STARTED",
            f"Trigger: {trigger.value}",
            f"Policy: {mode}",
            f"Revision: {revision or '<unknown>'}",
            f"Jobs: {job_count}",
            "",
        )

    def print_job_start(self, name: str) -> None:
        self._emit(f"[{name}] JOB STARTED")

    def print_cache(self, job: str, state: CacheState, reason: str) -> None:
        self._emit(f"[{job}] CACHE: {_CACHE_LABEL[state]} ({reason})")

    def print_step(self, job: str, step: str) -> None:
        self._emit(f"[{job}] STEP: {step}")

    def print_step_skipped(self, job: str, step: str) -> None:
        self._emit(f"[{job}] STEP: {step} SKIPPED (cache hit)")

    def print_step_failure(
        self,
        job: str,
        step: str,
        reason: str,
        exit_code: Optional[int] = None,
        output: str = "",
        continued: bool = False,
    ) -> None:
        """
        Print a failed step.

        Args:
            job: Job name
            step: Step name
            reason: Failure message
            exit_code: Optional exit code
            output: Captured command output (tail shown, full in debug mode)
            continued: True when the job carries on past this failure
        """
        lines = [f"[{job}] STEP FAILED: {step}"]
        if exit_code is not None:
            lines.append(f"[{job}] Exit code: {exit_code}")
        lines.append(f"[{job}] Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        if output:
            shown = output if self.debug else "\n".join(output.splitlines()[-20:])
            lines.extend(f"[{job}] | {line}" for line in shown.splitlines())
        if continued:
            lines.append(f"[{job}] continuing (step allows failure)")
        self._emit(*lines)

    def print_step_cancelled(self, job: str, step: str) -> None:
        self._emit(f"[{job}] STEP CANCELLED: {step}")

    def print_job_finished(self, job: str, status: str) -> None:
        self._emit(f"[{job}] STATUS: {status}")

    def print_cache_saved(self, job: str, key: str) -> None:
        short_key = key[:40] + "..." if len(key) > 40 else key
        self._emit(f"[{job}] CACHE: saved ({short_key})")

    def print_cache_store_error(self, job: str, reason: str) -> None:
        self._emit(f"[{job}] CACHE: store failed, cache stays cold ({reason})", err=True)

    def print_plan_job(self, job: str, state: CacheState, reason: str) -> None:
        self._emit(f"\n{job}: cache {_CACHE_LABEL[state]} ({reason})")

    def print_plan_step(self, step: str, will_run: bool) -> None:
        self._emit(f"  {'run ' if will_run else 'skip'}  {step}")

    def print_results(self, result: PipelineResult) -> None:
        """Print the per-(job, step) status table and the verdict."""
        rows = [
            (rec.job, rec.step, _EXECUTION_LABEL[rec.execution], rec.outcome.value if rec.outcome else "-")
            for job in result.jobs
            for rec in job.steps
        ]
        headers = ("JOB", "STEP", "EXECUTION", "OUTCOME")
        widths = [max([len(h)] + [len(r[i]) for r in rows]) for i, h in enumerate(headers)]

        def fmt(cols) -> str:
            return "  ".join(c.ljust(w) for c, w in zip(cols, widths)).rstrip()

        lines = ["", "=" * 40, "RESULTS", "=" * 40, fmt(headers)]
        lines.extend(fmt(r) for r in rows)
        lines.append("")
        for job in result.jobs:
            lines.append(f"  {job.name}: {job.status.value.upper()} (cache {job.cache_state.value})")
        lines.append("")
        lines.append(f"PIPELINE: {'PASS' if result.passed else 'FAIL'}")
        for job_name, step_name in result.failures:
            lines.append(f"  failed: {job_name} / {step_name}")
        self._emit(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
