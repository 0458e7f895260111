# trigger.py
# Maps an external event to a pipeline variant and its execution policy.
# The mapping is a fixed table: anything not in it fails closed.
from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional, Tuple

from .errors import UnknownTrigger
from .model import ExecutionPolicy, Trigger


class EventKind(str, Enum):
    PULL_REQUEST_OPENED = "pull-request-opened"
    PUSH_TO_MAIN = "push-to-main"
    MANUAL_DISPATCH = "manual-dispatch"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    revision: str
    ref: Optional[str] = None


TRIGGER_TABLE: dict[EventKind, Tuple[Trigger, ExecutionPolicy]] = {
    EventKind.PULL_REQUEST_OPENED: (Trigger.PRE_MERGE_CHECK, ExecutionPolicy(always_run_steps=True)),
    EventKind.PUSH_TO_MAIN: (Trigger.POST_MERGE_REFRESH, ExecutionPolicy(always_run_steps=False)),
    EventKind.MANUAL_DISPATCH: (Trigger.MANUAL_DISPATCH, ExecutionPolicy(always_run_steps=True)),
}

# hosting-provider event names -> kind (push is handled separately, it depends on the ref)
EVENT_NAMES: dict[str, EventKind] = {
    "pull_request": EventKind.PULL_REQUEST_OPENED,
    "workflow_dispatch": EventKind.MANUAL_DISPATCH,
    "workflow_call": EventKind.MANUAL_DISPATCH,
}


def resolve_trigger(event: Event) -> Tuple[Trigger, ExecutionPolicy]:
    try:
        kind = EventKind(event.kind)
    except ValueError:
        raise UnknownTrigger(str(event.kind), revision=event.revision) from None
    return TRIGGER_TABLE[kind]


def _is_main(ref: Optional[str], main_branch: str) -> bool:
    return ref in (main_branch, f"refs/heads/{main_branch}")


def event_from_name(
    name: str,
    revision: str,
    ref: Optional[str] = None,
    *,
    main_branch: str = "main",
) -> Event:
    """
    Build an Event from a provider event name ("pull_request", "push", ...)
    or from one of our own kind values ("push-to-main", ...).
    """
    raw = (name or "").strip()
    if raw == "push":
        if not _is_main(ref, main_branch):
            raise UnknownTrigger(raw, ref=ref, main_branch=main_branch)
        return Event(EventKind.PUSH_TO_MAIN, revision, ref)

    if raw in EVENT_NAMES:
        return Event(EVENT_NAMES[raw], revision, ref)

    try:
        return Event(EventKind(raw), revision, ref)
    except ValueError:
        raise UnknownTrigger(raw or "<empty>", revision=revision) from None


def event_from_env(env: Mapping[str, str] | None = None, *, main_branch: str = "main") -> Event:
    env = os.environ if env is None else env
    name = env.get("GITHUB_EVENT_NAME", "")
    return event_from_name(
        name,
        env.get("GITHUB_SHA", ""),
        env.get("GITHUB_REF"),
        main_branch=main_branch,
    )
