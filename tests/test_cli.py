from __future__ import annotations

import pytest
from click.testing import CliRunner

from warmci.cli import cli

PASSING = """
from warmci.dsl import check, job, sh, wf

def workflow():
    return wf(
        job("fmt", sh("install", "exit 0"), check("verify", "exit 0")),
        job("test", check("run tests", "exit 0")),
    )
"""

FAILING = """
from warmci.dsl import check, job, sh, wf

def workflow():
    return wf(
        job("fmt", check("verify", "exit 1")),
        job("test", check("run tests", "exit 0")),
    )
"""


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("GITHUB_EVENT_NAME", "GITHUB_SHA", "GITHUB_REF", "WARMCI_CACHE_DIR", "WARMCI_WORKERS"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def _write(project, source, name="warmci_workflow.py"):
    (project / name).write_text(source)
    return str(project / name)


def _run(*args):
    return CliRunner().invoke(cli, list(args))


def test_run_pull_request_passes(project):
    wf_path = _write(project, PASSING)
    result = _run("run", "--workflow", wf_path, "--event", "pull_request", "--revision", "abc123")
    assert result.exit_code == 0, result.output
    assert "Trigger: pre-merge-check" in result.output
    assert "PIPELINE: PASS" in result.output


def test_run_failure_exits_nonzero_and_reports_table(project):
    wf_path = _write(project, FAILING)
    result = _run("run", "--workflow", wf_path, "--event", "pull_request", "--revision", "abc123")
    assert result.exit_code == 1
    assert "PIPELINE: FAIL" in result.output
    assert "failed: fmt / verify" in result.output
    # the sibling still ran and reported
    assert "test: SUCCESS" in result.output


def test_push_to_main_warms_then_skips(project):
    wf_path = _write(project, FAILING.replace("exit 1", "exit 0"))
    args = ("run", "--workflow", wf_path, "--event", "push", "--ref", "refs/heads/main", "--revision", "abc")

    first = _run(*args)
    second = _run(*args)

    assert first.exit_code == 0, first.output
    assert "CACHE: saved" in first.output
    assert second.exit_code == 0, second.output
    assert "SKIPPED (cache hit)" in second.output


def test_push_to_feature_branch_fails_closed(project):
    wf_path = _write(project, PASSING)
    result = _run("run", "--workflow", wf_path, "--event", "push", "--ref", "refs/heads/feature", "--revision", "a")
    assert result.exit_code == 2
    assert "JOB STARTED" not in result.output


def test_unknown_event_from_env_fails_closed(project, monkeypatch):
    monkeypatch.setenv("GITHUB_EVENT_NAME", "schedule")
    _write(project, PASSING)
    result = _run("run")
    assert result.exit_code == 2


def test_event_read_from_env(project, monkeypatch):
    monkeypatch.setenv("GITHUB_EVENT_NAME", "workflow_dispatch")
    monkeypatch.setenv("GITHUB_SHA", "f00d")
    _write(project, PASSING)
    result = _run("run")
    assert result.exit_code == 0, result.output
    assert "Trigger: manual-dispatch" in result.output
    assert "Revision: f00d" in result.output


def test_missing_workflow_is_usage_error(project):
    result = _run("run", "--event", "pull_request")
    assert result.exit_code == 2


def test_bad_env_setting_is_usage_error(project, monkeypatch):
    monkeypatch.setenv("WARMCI_WORKERS", "lots")
    wf_path = _write(project, PASSING)
    result = _run("run", "--workflow", wf_path, "--event", "pull_request", "--revision", "a")
    assert result.exit_code == 2


def test_plan_does_not_run_steps(project):
    wf_path = _write(project, FAILING)
    result = _run("plan", "--workflow", wf_path, "--event", "push", "--ref", "refs/heads/main", "--revision", "a")
    assert result.exit_code == 0, result.output
    assert "fmt: cache miss" in result.output
    assert "run   verify" in result.output
    assert "PIPELINE" not in result.output


def test_cache_prune(project):
    wf_path = _write(project, PASSING)
    assert _run("run", "--workflow", wf_path, "--event", "pull_request", "--revision", "a").exit_code == 0
    result = _run("cache", "prune", "--workflow", wf_path, "--keep", "1")
    assert result.exit_code == 0, result.output
    assert "fmt: kept newest 1" in result.output


@pytest.mark.parametrize("flag", ["--workers", "--probe-timeout"])
def test_non_positive_tuning_flags_are_usage_errors(project, flag):
    wf_path = _write(project, PASSING)
    result = _run("run", "--workflow", wf_path, "--event", "pull_request", "--revision", "a", flag, "0")
    assert result.exit_code == 2
    assert "run tests" not in result.output
