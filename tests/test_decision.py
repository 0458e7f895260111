from __future__ import annotations

import itertools

import pytest

from warmci.executor import should_run
from warmci.model import CacheState, ExecutionPolicy, Step

ALWAYS = ExecutionPolicy(always_run_steps=True)
REFRESH = ExecutionPolicy(always_run_steps=False)
ALL_STATES = list(CacheState)


def _step(skippable: bool) -> Step:
    return Step(name="s", run="exit 0", skippable=skippable)


@pytest.mark.parametrize("policy,state", itertools.product([ALWAYS, REFRESH], ALL_STATES))
def test_non_skippable_step_always_runs(policy, state):
    assert should_run(policy, state, _step(False))


@pytest.mark.parametrize("state", ALL_STATES)
def test_skippable_step_under_refresh_runs_iff_not_hit(state):
    assert should_run(REFRESH, state, _step(True)) is (state is not CacheState.HIT)


@pytest.mark.parametrize("skippable,state", itertools.product([True, False], ALL_STATES))
def test_always_run_policy_ignores_cache(skippable, state):
    assert should_run(ALWAYS, state, _step(skippable))


def test_unknown_decides_like_miss():
    for policy, skippable in itertools.product([ALWAYS, REFRESH], [True, False]):
        step = _step(skippable)
        assert should_run(policy, CacheState.UNKNOWN, step) == should_run(policy, CacheState.MISS, step)


def test_only_one_combination_skips():
    skips = [
        (policy.always_run_steps, state, skippable)
        for policy, state, skippable in itertools.product([ALWAYS, REFRESH], ALL_STATES, [True, False])
        if not should_run(policy, state, _step(skippable))
    ]
    assert skips == [(False, CacheState.HIT, True)]
