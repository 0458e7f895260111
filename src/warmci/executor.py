# executor.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, Optional

from .errors import CIError, StepFailure
from .model import CacheState, Execution, ExecutionPolicy, Outcome, Step, StepRecord
from .ui.console import get_console

OUTPUT_TAIL = 4000


def should_run(policy: ExecutionPolicy, cache_state: CacheState, step: Step) -> bool:
    """
    Run-vs-skip decision for one step.

    A step is skipped only when the policy permits skipping, the step is
    marked skippable and the cache was confirmed HIT. UNKNOWN counts as MISS.
    """
    return policy.always_run_steps or not step.skippable or cache_state is not CacheState.HIT


class StepCancelled(CIError):
    def __init__(self, job: str, step: str):
        super().__init__(kind="step_cancelled", message="cancelled", job=job, step=step)


class StepExecutor:
    """
    Runs one step's opaque command and reports {ran, skipped} x {success, failure}.

    Only the exit status of the command is interpreted.
    """

    def __init__(
        self,
        repo_root: str | Path = ".",
        *,
        cancel: Optional[threading.Event] = None,
        poll_interval: float = 0.1,
    ):
        self.repo_root = Path(repo_root).resolve()
        self.cancel = cancel or threading.Event()
        self.poll_interval = poll_interval

    def _terminate(self, proc: subprocess.Popen) -> None:
        # the command runs in its own session: signal the whole group, not just sh
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            os.killpg(proc.pid, signal.SIGKILL)

    def _run_command(self, job: str, step: Step, env: Dict[str, str]) -> str:
        """Run the step command; raises StepFailure / StepCancelled, returns captured output."""
        cwd = (self.repo_root / (step.cwd or ".")).resolve()
        if not cwd.is_dir():
            raise StepFailure(job, step.name, step.run, None, reason=f"cwd not found: {cwd}")

        full_env = os.environ.copy()
        full_env.update(env)

        try:
            proc = subprocess.Popen(
                step.run,
                shell=True,
                cwd=str(cwd),
                env=full_env,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            raise StepFailure(job, step.name, step.run, None, reason=f"could not start command: {e}") from e

        chunks = []
        while True:
            if self.cancel.is_set():
                self._terminate(proc)
                proc.communicate()
                raise StepCancelled(job, step.name)
            try:
                out, _ = proc.communicate(timeout=self.poll_interval)
            except subprocess.TimeoutExpired:
                continue
            chunks.append(out or "")
            break

        output = "".join(chunks)
        if proc.returncode != 0:
            failure = StepFailure(job, step.name, step.run, proc.returncode)
            failure.details["output"] = output[-OUTPUT_TAIL:]
            raise failure
        return output

    def execute(
        self,
        job: str,
        step: Step,
        cache_state: CacheState,
        policy: ExecutionPolicy,
        env: Optional[Dict[str, str]] = None,
    ) -> StepRecord:
        console = get_console()

        if not should_run(policy, cache_state, step):
            console.print_step_skipped(job, step.name)
            return StepRecord(job, step.name, Execution.SKIPPED, Outcome.SUCCESS)

        console.print_step(job, step.name)
        started = time.monotonic()
        try:
            output = self._run_command(job, step, env or {})
        except StepCancelled:
            console.print_step_cancelled(job, step.name)
            return StepRecord(
                job, step.name, Execution.CANCELLED, duration=time.monotonic() - started
            )
        except StepFailure as e:
            console.print_step_failure(
                job,
                step.name,
                e.message,
                exit_code=e.exit_code,
                output=e.details.get("output", ""),
                continued=step.continue_on_failure,
            )
            return StepRecord(
                job,
                step.name,
                Execution.RAN,
                Outcome.FAILURE,
                exit_code=e.exit_code,
                duration=time.monotonic() - started,
                error=e.message,
            )

        if output:
            console.print_debug(f"[{job}] {step.name} output:\n{output.rstrip()}")
        return StepRecord(
            job, step.name, Execution.RAN, Outcome.SUCCESS, exit_code=0, duration=time.monotonic() - started
        )
