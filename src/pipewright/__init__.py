from .dsl import job, sh, uses, matrix, wf, JobBuilder, build
from .loader import load_workflow
from .model import JobSpec, StepSpec, WorkflowSpec, JobStatus, PipelineResult
from .pipeline import PipelineRunner

__all__ = [
    "job", "sh", "uses", "matrix", "wf", "JobBuilder", "build",
    "load_workflow", "PipelineRunner",
    "JobSpec", "StepSpec", "WorkflowSpec", "JobStatus", "PipelineResult",
]
