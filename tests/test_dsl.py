from __future__ import annotations

from pathlib import Path

import pytest

from warmci.config import Settings
from warmci.dsl import check, job, sh, wf
from warmci.errors import WorkflowError
from warmci.model import CacheState, ExecutionPolicy
from warmci.runner import job_steps, load_workflow, plan_pipeline

REPO_WORKFLOW = Path(__file__).resolve().parents[1] / "warmci_workflow.py"


def test_sh_defaults_to_required_step():
    step = sh("install", "apt-get install -y x")
    assert step.skippable is False
    assert step.continue_on_failure is False


def test_check_is_skippable():
    assert check("cargo check", "cargo check").skippable is True


def test_job_requires_steps():
    with pytest.raises(WorkflowError):
        job("empty")


def test_job_rejects_duplicate_step_names():
    with pytest.raises(WorkflowError):
        job("j", sh("a", "exit 0"), sh("a", "exit 1"))


def test_job_reserves_protoc_install_name():
    with pytest.raises(WorkflowError, match="reserved"):
        job("j", sh("Install protoc", "apt-get install -y protobuf-compiler"), requires_protoc=True)
    # without the flag nothing is injected, so the name is free
    assert job("j", sh("Install protoc", "exit 0")).steps[0].name == "Install protoc"

def test_job_applies_default_cwd_and_stringifies_env():
    j = job("j", sh("a", "exit 0"), sh("b", "exit 0", cwd="sub"), cwd="crate", env={"N": 1})
    assert [s.cwd for s in j.steps] == ["crate", "sub"]
    assert j.env == {"N": "1"}


def test_load_workflow_jobs_constant(tmp_path):
    path = tmp_path / "my_workflow.py"
    path.write_text(
        "from warmci.dsl import job, sh, wf\n"
        "JOBS = wf(job('a', sh('x', 'exit 0')))\n"
    )
    assert [j.name for j in load_workflow(path)] == ["a"]


def test_load_workflow_rejects_non_jobs(tmp_path):
    path = tmp_path / "bad_workflow.py"
    path.write_text("def workflow():\n    return ['not a job']\n")
    with pytest.raises(WorkflowError):
        load_workflow(path)


def test_repo_workflow_shape():
    jobs = {j.name: j for j in load_workflow(REPO_WORKFLOW)}
    assert list(jobs) == ["fmt", "check", "clippy", "test"]
    assert jobs["fmt"].requires_protocol_compiler is False
    assert all(jobs[n].requires_protocol_compiler for n in ("check", "clippy", "test"))
    for j in jobs.values():
        assert j.steps[-1].skippable
        assert not any(s.skippable for s in j.steps[:-1])


def test_repo_workflow_post_merge_plan_on_warm_cache(store, tmp_path):
    store.default = CacheState.HIT
    settings = Settings(protoc_install="true")
    jobs = [j for j in load_workflow(REPO_WORKFLOW) if j.name in ("fmt", "test")]
    for j in jobs:
        j.tool_versions = {"rustc": "1.75.0", "cargo": "1.75.0"}

    plans = {
        p.job: dict(p.steps)
        for p in plan_pipeline(jobs, ExecutionPolicy(False), backend=store, settings=settings, repo_root=tmp_path)
    }

    assert plans["fmt"] == {"Install toolchain": True, "cargo fmt": False}
    assert plans["test"] == {
        "Install protoc": True,
        "Install toolchain": True,
        "Install nextest": True,
        "cargo nextest": False,
    }


def test_job_steps_without_protoc():
    j = job("j", sh("a", "exit 0"))
    assert [s.name for s in job_steps(j, Settings())] == ["a"]


def test_wf_returns_list():
    a, b = job("a", sh("x", "exit 0")), job("b", sh("x", "exit 0"))
    assert wf(a, b) == [a, b]
