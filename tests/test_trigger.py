from __future__ import annotations

import pytest

from warmci.errors import UnknownTrigger
from warmci.model import Trigger
from warmci.trigger import Event, EventKind, event_from_env, event_from_name, resolve_trigger


def test_pull_request_always_runs():
    trigger, policy = resolve_trigger(Event(EventKind.PULL_REQUEST_OPENED, "abc"))
    assert trigger is Trigger.PRE_MERGE_CHECK
    assert policy.always_run_steps is True


def test_push_to_main_may_skip():
    trigger, policy = resolve_trigger(Event(EventKind.PUSH_TO_MAIN, "abc"))
    assert trigger is Trigger.POST_MERGE_REFRESH
    assert policy.always_run_steps is False


def test_manual_dispatch_always_runs():
    trigger, policy = resolve_trigger(Event(EventKind.MANUAL_DISPATCH, "abc"))
    assert trigger is Trigger.MANUAL_DISPATCH
    assert policy.always_run_steps is True


def test_unrecognized_kind_fails_closed():
    with pytest.raises(UnknownTrigger) as exc:
        resolve_trigger(Event("release-published", "abc"))
    assert exc.value.kind == "unknown_trigger"
    assert "release-published" in str(exc.value)


@pytest.mark.parametrize(
    "name,ref,kind",
    [
        ("pull_request", None, EventKind.PULL_REQUEST_OPENED),
        ("push", "refs/heads/main", EventKind.PUSH_TO_MAIN),
        ("push", "main", EventKind.PUSH_TO_MAIN),
        ("workflow_dispatch", None, EventKind.MANUAL_DISPATCH),
        ("workflow_call", None, EventKind.MANUAL_DISPATCH),
        ("push-to-main", None, EventKind.PUSH_TO_MAIN),
    ],
)
def test_event_names(name, ref, kind):
    event = event_from_name(name, "deadbeef", ref)
    assert event.kind is kind
    assert event.revision == "deadbeef"


def test_push_to_other_branch_is_unknown():
    with pytest.raises(UnknownTrigger):
        event_from_name("push", "abc", "refs/heads/feature/x")


def test_custom_main_branch():
    event = event_from_name("push", "abc", "refs/heads/trunk", main_branch="trunk")
    assert event.kind is EventKind.PUSH_TO_MAIN
    with pytest.raises(UnknownTrigger):
        event_from_name("push", "abc", "refs/heads/main", main_branch="trunk")


@pytest.mark.parametrize("name", ["", "schedule", "issue_comment"])
def test_unknown_names(name):
    with pytest.raises(UnknownTrigger):
        event_from_name(name, "abc")


def test_event_from_env():
    env = {"GITHUB_EVENT_NAME": "push", "GITHUB_SHA": "f00", "GITHUB_REF": "refs/heads/main"}
    event = event_from_env(env)
    assert event == Event(EventKind.PUSH_TO_MAIN, "f00", "refs/heads/main")


def test_event_from_empty_env_fails_closed():
    with pytest.raises(UnknownTrigger):
        event_from_env({})
