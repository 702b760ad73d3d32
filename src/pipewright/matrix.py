# matrix.py
from __future__ import annotations

from itertools import product
from typing import Any, Dict, List, Mapping

from .errors import ConfigurationError, ResolutionError
from .expressions import substitute_matrix
from .model import JobInstance, JobSpec, MatrixSpec


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def instance_id(name: str, params: Mapping[str, str]) -> str:
    """Stable id used to correlate results, e.g. `ci[rust=nightly]`."""
    if not params:
        return name
    return f"{name}[{','.join(f'{k}={v}' for k, v in params.items())}]"


def validate_matrix(job: JobSpec) -> None:
    matrix = job.matrix
    if matrix is None:
        return
    if not matrix.params:
        raise ConfigurationError("matrix declares no parameters", job=job.name)
    for key, values in matrix.params.items():
        if isinstance(values, (str, bytes)) or not isinstance(values, (list, tuple)):
            raise ConfigurationError(
                f"matrix parameter '{key}' must be a list of values",
                job=job.name,
            )
        for v in values:
            if isinstance(v, (list, tuple, dict, set)) or v is None:
                raise ConfigurationError(
                    f"matrix parameter '{key}' has a non-scalar value: {v!r}",
                    job=job.name,
                )
    for entry in matrix.exclude:
        unknown = sorted(set(entry) - set(matrix.params))
        if unknown:
            raise ConfigurationError(
                f"matrix exclude entry uses unknown parameters {unknown}",
                job=job.name,
            )


def _excluded(params: Mapping[str, str], matrix: MatrixSpec) -> bool:
    for entry in matrix.exclude:
        if all(params.get(k) == _scalar(v) for k, v in entry.items()):
            return True
    return False


def expand(job: JobSpec) -> List[JobInstance]:
    """
    Expand a job template into concrete instances.

    No matrix -> exactly one instance. Otherwise the full cross product in
    declared order, minus `exclude` matches. An empty value list for any
    parameter yields no instances at all.
    """
    validate_matrix(job)

    if job.matrix is None:
        return [JobInstance(job=job, params={}, instance_id=job.name, runs_on=job.runs_on)]

    keys = list(job.matrix.params)
    value_lists = [[_scalar(v) for v in job.matrix.params[k]] for k in keys]

    instances: List[JobInstance] = []
    seen: set[str] = set()
    for combo in product(*value_lists):
        params: Dict[str, str] = dict(zip(keys, combo))
        if _excluded(params, job.matrix):
            continue
        iid = instance_id(job.name, params)
        if iid in seen:
            # duplicate values in a list collapse into one instance
            continue
        seen.add(iid)
        try:
            runs_on = substitute_matrix(job.runs_on, params)
        except ResolutionError as e:
            raise ConfigurationError(str(e), job=job.name) from e
        instances.append(JobInstance(job=job, params=params, instance_id=iid, runs_on=runs_on))
    return instances


def expand_all(jobs: Mapping[str, JobSpec]) -> Dict[str, List[JobInstance]]:
    return {name: expand(job) for name, job in jobs.items()}
