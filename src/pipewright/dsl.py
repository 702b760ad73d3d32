# src/pipewright/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .errors import ConfigurationError
from .model import (
    ActionRef,
    BranchFilter,
    Command,
    JobSpec,
    MatrixSpec,
    StepSpec,
    TriggerSpec,
    WorkflowSpec,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: str | None = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,
    shell: str = "bash",
    retries: int = 0,
    timeout: float | None = None,
) -> StepSpec:
    """Create a shell step."""
    return StepSpec(
        name=name,
        body=Command(run=cmd, shell=shell),
        id=id,
        env=dict(env or {}),
        working_directory=cwd,
        retries=retries,
        timeout=timeout,
    )


def uses(
    name: str,
    action: str,
    *,
    id: str | None = None,
    with_: Optional[Mapping[str, Any]] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,
    retries: int = 0,
    timeout: float | None = None,
) -> StepSpec:
    """Create an action step, e.g. uses("Checkout", "actions/checkout@v2")."""
    return StepSpec(
        name=name,
        body=ActionRef(uses=action),
        id=id,
        inputs={k: _to_str(v) for k, v in (with_ or {}).items()},
        env=dict(env or {}),
        working_directory=cwd,
        retries=retries,
        timeout=timeout,
    )


def _to_str(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(exclude: Optional[Sequence[Mapping[str, Any]]] = None, **params: Iterable[Any]) -> MatrixSpec:
    """
    Cross-product parameterization for a job.

    Example:
        job("test", sh(...), matrix=matrix(py=["3.11", "3.12"], os=["linux"]))
    """
    return MatrixSpec(
        params={k: tuple(v) for k, v in params.items()},
        exclude=tuple(dict(e) for e in (exclude or ())),
    )


# ---------------------------------------------------------------------
# Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: StepSpec,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[StepSpec]] = None,  # allow: job("x", steps_list=[...])
    needs: Union[str, Sequence[str], None] = None,
    runs_on: str = "local",
    matrix: Optional[MatrixSpec] = None,
    barrier: bool = False,
    env: Optional[Dict[str, str]] = None,
    outputs: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default working directory for steps missing one
) -> JobSpec:
    steps_final: List[StepSpec] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final:
        raise ConfigurationError(f"job({name!r}) must have at least one step", job=name)

    if cwd is not None:
        steps_final = [
            s if s.working_directory is not None else replace(s, working_directory=cwd)
            for s in steps_final
        ]

    if isinstance(needs, str):
        needs = [needs]

    return JobSpec(
        name=name,
        steps=tuple(steps_final),
        runs_on=runs_on,
        needs=tuple(needs or ()),
        matrix=matrix,
        barrier=barrier,
        env={k: str(v) for k, v in (env or {}).items()},
        outputs=dict(outputs or {}),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[StepSpec] = []
        self._env: dict[str, str] = {}
        self._outputs: dict[str, str] = {}
        self._runs_on = "local"
        self._matrix: Optional[MatrixSpec] = None
        self._barrier = False

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def define_step(self, name: str, run: str, **kwargs: Any):
        self._steps.append(sh(name, run, **kwargs))
        return self

    def use_action(self, name: str, action: str, **kwargs: Any):
        self._steps.append(uses(name, action, **kwargs))
        return self

    def with_env(self, **env: Any):
        # env values are always strings
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, **params: Iterable[Any]):
        self._matrix = matrix(**params)
        return self

    def with_outputs(self, **outputs: str):
        self._outputs.update(outputs)
        return self

    def fan_in(self, enabled: bool = True):
        self._barrier = enabled
        return self

    def build(self) -> JobSpec:
        if not self._steps:
            raise ConfigurationError(f"Job '{self.name}' has no steps", job=self.name)
        return job(
            self.name,
            *self._steps,
            needs=self._needs,
            runs_on=self._runs_on,
            matrix=self._matrix,
            barrier=self._barrier,
            env=self._env,
            outputs=self._outputs,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: JobSpec,
    name: str = "workflow",
    on: Union[str, Sequence[str], Mapping[str, Sequence[str]], None] = None,
    env: Optional[Dict[str, str]] = None,
) -> WorkflowSpec:
    """
    Workflow definition helper.

    `on` is an event name, a list of events, or a mapping of event ->
    branch patterns:

        def workflow():
            return wf(
                job("build", sh("Build", "make")),
                job("test", sh("Test", "make test"), needs="build"),
                on={"pull_request": ["master"]},
            )
    """
    by_name: Dict[str, JobSpec] = {}
    for j in jobs:
        if j.name in by_name:
            raise ConfigurationError("duplicate job names", details={"jobs": [j.name]})
        by_name[j.name] = j

    if on is None:
        trigger = TriggerSpec()
    elif isinstance(on, str):
        trigger = TriggerSpec(events={on: BranchFilter()})
    elif isinstance(on, Mapping):
        trigger = TriggerSpec(
            events={event: BranchFilter(branches=tuple(branches or ())) for event, branches in on.items()}
        )
    else:
        trigger = TriggerSpec(events={event: BranchFilter() for event in on})

    return WorkflowSpec(name=name, jobs=by_name, trigger=trigger, env=dict(env or {}))
