# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: str | None = None
    step: str | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class UnknownTrigger(CIError):
    """Unrecognized event descriptor. Fatal: no job may start."""

    def __init__(self, event: str, **details):
        super().__init__(
            kind="unknown_trigger",
            message=f"no pipeline is defined for event {event!r}",
            details=details,
        )


class CacheProbeError(CIError):
    def __init__(self, key: str, reason: str):
        super().__init__(kind="cache_probe_error", message=reason, details={"key": key})


class CacheStoreError(CIError):
    def __init__(self, key: str, reason: str):
        super().__init__(kind="cache_store_error", message=reason, details={"key": key})


class ConfigError(CIError):
    def __init__(self, name: str, value: str, reason: str):
        super().__init__(kind="config_error", message=reason, details={"name": name, "value": value})


class WorkflowError(CIError):
    def __init__(self, message: str, **details):
        super().__init__(kind="workflow_error", message=message, details=details)


class StepFailure(CIError):
    def __init__(self, job: str, step: str, cmd: str, exit_code: int | None, reason: str | None = None):
        self.cmd = cmd
        self.exit_code = exit_code
        message = reason or f"step '{step}' failed (exit={exit_code}): {cmd}"
        super().__init__(
            kind="step_failure",
            message=message,
            job=job,
            step=step,
            details={"exit_code": exit_code},
        )
