# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


# ---------------------------------------------------------------------
# Step bodies (tagged variants)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Command:
    """An inline shell command."""
    run: str
    shell: str = "bash"


@dataclass(frozen=True)
class ActionRef:
    """A reference to a reusable action, e.g. `actions/checkout@v2`."""
    uses: str

    @property
    def action(self) -> str:
        return self.uses.split("@", 1)[0]

    @property
    def version(self) -> str | None:
        _, sep, ver = self.uses.partition("@")
        return ver if sep else None


StepBody = Union[Command, ActionRef]


@dataclass(frozen=True)
class StepSpec:
    """A single step inside a job."""
    name: str
    body: StepBody
    id: str | None = None
    inputs: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    working_directory: str | None = None

    # Opt-in only, the engine never retries on its own.
    retries: int = 0
    timeout: float | None = None  # seconds


# ---------------------------------------------------------------------
# Jobs and matrices
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class MatrixSpec:
    params: Mapping[str, Tuple[Any, ...]]
    exclude: Tuple[Mapping[str, Any], ...] = ()


@dataclass(frozen=True)
class JobSpec:
    """
    A CI job: steps + dependencies + matrix.

    `needs` names jobs that must fully resolve (every matrix instance)
    before this job may run. `barrier` marks a fan-in job.
    """
    name: str
    steps: Tuple[StepSpec, ...]
    runs_on: str = "local"
    needs: Tuple[str, ...] = ()
    matrix: Optional[MatrixSpec] = None
    barrier: bool = False
    env: Mapping[str, str] = field(default_factory=dict)
    outputs: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class BranchFilter:
    branches: Tuple[str, ...] = ()
    branches_ignore: Tuple[str, ...] = ()

    def matches(self, branch: str | None) -> bool:
        if branch is None:
            return not self.branches
        if self.branches and not any(fnmatch(branch, p) for p in self.branches):
            return False
        return not any(fnmatch(branch, p) for p in self.branches_ignore)


@dataclass(frozen=True)
class TriggerSpec:
    """Events (and branch filters) that enable a run. Empty means always."""
    events: Mapping[str, BranchFilter] = field(default_factory=dict)

    def matches(self, event: str, branch: str | None = None) -> bool:
        if not self.events:
            return True
        flt = self.events.get(event)
        if flt is None:
            return False
        return flt.matches(branch)


@dataclass(frozen=True)
class WorkflowSpec:
    name: str
    jobs: Mapping[str, JobSpec]
    trigger: TriggerSpec = field(default_factory=TriggerSpec)
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class JobInstance:
    """A concrete, schedulable job: a job definition plus bound matrix values."""
    job: JobSpec
    params: Mapping[str, str]
    instance_id: str
    runs_on: str

    @property
    def name(self) -> str:
        return self.job.name


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class StepOutcome:
    """What a step executor hands back for one execution."""
    status: StepStatus
    outputs: Dict[str, str] = field(default_factory=dict)
    logs: str = ""
    exit_code: int | None = None


@dataclass
class StepResult:
    name: str
    id: str | None
    status: StepStatus
    outputs: Dict[str, str] = field(default_factory=dict)
    logs: str = ""
    attempts: int = 0
    exit_code: int | None = None
    error: str | None = None


@dataclass
class JobResult:
    instance_id: str
    job: str
    status: JobStatus
    params: Dict[str, str] = field(default_factory=dict)
    # Declared job outputs, only filled in when the job succeeded.
    outputs: Dict[str, str] = field(default_factory=dict)
    # step id -> outputs, kept for diagnostics even on failure
    step_outputs: Dict[str, Dict[str, str]] = field(default_factory=dict)
    steps: List[StepResult] = field(default_factory=list)
    error: str | None = None
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "job": self.job,
            "status": self.status.value,
            "params": dict(self.params),
            "outputs": dict(self.outputs),
            "steps": [
                {
                    "name": s.name,
                    "id": s.id,
                    "status": s.status.value,
                    "attempts": s.attempts,
                    "exit_code": s.exit_code,
                    "error": s.error,
                }
                for s in self.steps
            ],
            "error": self.error,
            "duration": round(self.duration, 3),
        }


@dataclass
class PipelineResult:
    workflow: str
    jobs: Dict[str, JobStatus] = field(default_factory=dict)
    instances: Dict[str, JobResult] = field(default_factory=dict)
    triggered: bool = True
    # jobs whose matrix expanded to no instances
    empty: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not any(s in (JobStatus.FAILED, JobStatus.CANCELLED) for s in self.jobs.values())

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow": self.workflow,
            "triggered": self.triggered,
            "status": "success" if self.ok else "failure",
            "jobs": {name: status.value for name, status in self.jobs.items()},
            "empty": list(self.empty),
            "instances": [r.to_dict() for r in self.instances.values()],
        }
