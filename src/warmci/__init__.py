from .dsl import check, job, sh, wf
from .model import CacheState, ExecutionPolicy, Job, PipelineResult, Step, Trigger
from .runner import load_workflow, run_event, run_pipeline

__all__ = [
    "check",
    "job",
    "sh",
    "wf",
    "CacheState",
    "ExecutionPolicy",
    "Job",
    "PipelineResult",
    "Step",
    "Trigger",
    "load_workflow",
    "run_event",
    "run_pipeline",
]
