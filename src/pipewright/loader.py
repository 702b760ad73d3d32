# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

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
# Document schema (YAML)
# ---------------------------------------------------------------------

class _Doc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


def _str_map(v: Any) -> Dict[str, str]:
    if v is None:
        return {}
    if not isinstance(v, dict):
        raise ValueError("expected a mapping")
    return {str(k): _scalar_str(x) for k, x in v.items()}


def _scalar_str(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, (dict, list)):
        raise ValueError(f"expected a scalar, got {type(v).__name__}")
    return "" if v is None else str(v)


def _as_list(v: Any) -> List[str]:
    if v is None:
        return []
    if isinstance(v, str):
        return [v]
    return [str(x) for x in v]


class StepDoc(_Doc):
    name: Optional[str] = None
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    shell: str = "bash"
    with_: Dict[str, str] = Field(default_factory=dict, alias="with")
    env: Dict[str, str] = Field(default_factory=dict)
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    retries: int = Field(default=0, ge=0)
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)

    @field_validator("with_", "env", mode="before")
    @classmethod
    def coerce_str_maps(cls, v: Any) -> Dict[str, str]:
        return _str_map(v)

    @model_validator(mode="after")
    def check_body(self) -> "StepDoc":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        if self.run is not None and self.with_:
            raise ValueError("'with' is only valid for 'uses' steps")
        return self

    def to_spec(self, index: int) -> StepSpec:
        if self.run is not None:
            body: Union[Command, ActionRef] = Command(run=self.run, shell=self.shell)
            default_name = f"Run {self.run.strip().splitlines()[0] if self.run.strip() else ''}".strip()
        else:
            body = ActionRef(uses=str(self.uses))
            default_name = f"Run {self.uses}"
        return StepSpec(
            name=self.name or default_name or f"step {index + 1}",
            body=body,
            id=self.id,
            inputs=dict(self.with_),
            env=dict(self.env),
            working_directory=self.working_directory,
            retries=self.retries,
            timeout=self.timeout_minutes * 60 if self.timeout_minutes else None,
        )


class StrategyDoc(_Doc):
    matrix: Dict[str, Any] = Field(default_factory=dict)

    def to_spec(self) -> MatrixSpec:
        params = {k: v for k, v in self.matrix.items() if k != "exclude"}
        exclude = self.matrix.get("exclude") or []
        if not isinstance(exclude, list) or not all(isinstance(e, dict) for e in exclude):
            raise ValueError("matrix.exclude must be a list of mappings")
        return MatrixSpec(
            params={k: tuple(v) if isinstance(v, list) else v for k, v in params.items()},
            exclude=tuple(dict(e) for e in exclude),
        )


class JobDoc(_Doc):
    name: Optional[str] = None
    runs_on: str = Field(default="local", alias="runs-on")
    needs: List[str] = Field(default_factory=list)
    strategy: Optional[StrategyDoc] = None
    barrier: bool = False
    env: Dict[str, str] = Field(default_factory=dict)
    outputs: Dict[str, str] = Field(default_factory=dict)
    steps: List[StepDoc] = Field(min_length=1)

    @field_validator("needs", mode="before")
    @classmethod
    def coerce_needs(cls, v: Any) -> List[str]:
        return _as_list(v)

    @field_validator("env", "outputs", mode="before")
    @classmethod
    def coerce_str_maps(cls, v: Any) -> Dict[str, str]:
        return _str_map(v)


class WorkflowDoc(_Doc):
    name: Optional[str] = None
    on: Any = None
    env: Dict[str, str] = Field(default_factory=dict)
    jobs: Dict[str, JobDoc] = Field(min_length=1)

    @field_validator("env", mode="before")
    @classmethod
    def coerce_str_maps(cls, v: Any) -> Dict[str, str]:
        return _str_map(v)


def _trigger(on: Any) -> TriggerSpec:
    if on is None:
        return TriggerSpec()
    if isinstance(on, str):
        return TriggerSpec(events={on: BranchFilter()})
    if isinstance(on, list):
        return TriggerSpec(events={str(e): BranchFilter() for e in on})
    if isinstance(on, dict):
        events: Dict[str, BranchFilter] = {}
        for event, cfg in on.items():
            cfg = cfg or {}
            if not isinstance(cfg, dict):
                raise ConfigurationError(f"trigger '{event}' must be a mapping")
            events[str(event)] = BranchFilter(
                branches=tuple(_as_list(cfg.get("branches"))),
                branches_ignore=tuple(_as_list(cfg.get("branches-ignore"))),
            )
        return TriggerSpec(events=events)
    raise ConfigurationError(f"unsupported 'on' value: {on!r}")


def workflow_from_dict(data: Any, *, default_name: str = "workflow") -> WorkflowSpec:
    """Validate a deserialized document and build a WorkflowSpec."""
    if not isinstance(data, dict):
        raise ConfigurationError("workflow document must be a mapping")
    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data:
        data["on"] = data.pop(True)

    try:
        doc = WorkflowDoc.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(
            "invalid workflow document",
            details={"errors": "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )},
        ) from e

    jobs: Dict[str, JobSpec] = {}
    for job_id, jd in doc.jobs.items():
        try:
            matrix = jd.strategy.to_spec() if jd.strategy and jd.strategy.matrix else None
        except ValueError as e:
            raise ConfigurationError(str(e), job=job_id) from e
        jobs[job_id] = JobSpec(
            name=job_id,
            steps=tuple(s.to_spec(i) for i, s in enumerate(jd.steps)),
            runs_on=jd.runs_on,
            needs=tuple(jd.needs),
            matrix=matrix,
            barrier=jd.barrier,
            env=dict(jd.env),
            outputs=dict(jd.outputs),
        )

    return WorkflowSpec(
        name=doc.name or default_name,
        jobs=jobs,
        trigger=_trigger(doc.on),
        env=dict(doc.env),
    )


# ---------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------

def load_workflow(path: str | Path) -> WorkflowSpec:
    """
    Load a workflow from a file.

    `.yml` / `.yaml`: GitHub-style workflow document.
    `.py`: must define either
      - workflow() -> WorkflowSpec | List[JobSpec]
      - WORKFLOW = WorkflowSpec | List[JobSpec]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigurationError(f"workflow file not found: {wf_path}")

    if wf_path.suffix in (".yml", ".yaml"):
        try:
            data = yaml.safe_load(wf_path.read_text())
        except yaml.YAMLError as e:
            raise ConfigurationError(f"cannot parse {wf_path.name}", details={"yaml": str(e)}) from e
        return workflow_from_dict(data, default_name=wf_path.stem)

    if wf_path.suffix == ".py":
        return _load_python(wf_path)

    raise ConfigurationError(f"unsupported workflow file type: {wf_path.name}")


def _load_python(wf_path: Path) -> WorkflowSpec:
    from .dsl import wf

    module_name = f"pipewright_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
        if "workflow" in globals_dict and callable(globals_dict["workflow"]):
            obj = globals_dict["workflow"]()
        elif "WORKFLOW" in globals_dict:
            obj = globals_dict["WORKFLOW"]
        else:
            raise ConfigurationError(
                f"{wf_path.name} defines neither workflow() nor WORKFLOW",
            )
    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(
            f"cannot load {wf_path.name}",
            details={"error": f"{type(e).__name__}: {e}"},
        ) from e

    if isinstance(obj, WorkflowSpec):
        return obj
    if isinstance(obj, list) and all(isinstance(j, JobSpec) for j in obj):
        return wf(*obj, name=wf_path.stem)
    raise ConfigurationError(
        "workflow() / WORKFLOW must be a WorkflowSpec or a list of jobs",
        details={"got": type(obj).__name__},
    )
