# expressions.py
"""
`${{ ... }}` reference resolution.

Supported contexts:

    matrix.<param>                   bound matrix value of this instance
    steps.<id>.outputs.<name>        output of an earlier step in the same job
    needs.<job>.outputs.<name>       declared output of a needed job
    secrets.<NAME>                   value from the SecretStore (always redacted)
    env.<NAME>                       workflow / job env

Only dotted references are supported, there is no operator language.
Scopes are passed explicitly: WorkflowEnv -> JobEnv -> StepEnv.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

from .errors import ConfigurationError, ResolutionError, SecretNotFound
from .model import ActionRef, Command, JobSpec, StepBody, StepSpec, WorkflowSpec
from .secret_store import Redactor, SecretStore

EXPR_RE = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
REF_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*(\.[A-Za-z0-9_-]+)*$")

CONTEXTS = ("matrix", "steps", "needs", "secrets", "env")


@dataclass
class Scope:
    """Everything a reference inside one job instance may resolve against."""
    matrix: Mapping[str, str] = field(default_factory=dict)
    steps: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    needs: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    secrets: SecretStore = field(default_factory=SecretStore)
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StepEnv:
    """
    Concrete, fully resolved view of one step.

    `secrets` holds every secret value the step could surface; the step
    executor masks them in anything it captures.
    """
    body: StepBody
    values: Mapping[str, str]
    inputs: Mapping[str, str]
    secrets: FrozenSet[str] = frozenset()
    working_directory: Optional[str] = None

    @property
    def redactor(self) -> Redactor:
        return Redactor(self.secrets)


def references(text: str) -> List[str]:
    return [m.group(1) for m in EXPR_RE.finditer(text or "")]


def _split(expr: str) -> List[str]:
    if not REF_RE.match(expr):
        raise ResolutionError(expr, "only dotted context references are supported")
    return expr.split(".")


def lookup(expr: str, scope: Scope, used_secrets: Optional[Set[str]] = None) -> str:
    parts = _split(expr)
    ctx = parts[0]

    if ctx == "matrix":
        if len(parts) != 2 or parts[1] not in scope.matrix:
            raise ResolutionError(expr, "no such matrix parameter")
        return str(scope.matrix[parts[1]])

    if ctx in ("steps", "needs"):
        if len(parts) != 4 or parts[2] != "outputs":
            raise ResolutionError(expr, f"expected {ctx}.<id>.outputs.<name>")
        source = scope.steps if ctx == "steps" else scope.needs
        owner, name = parts[1], parts[3]
        if owner not in source:
            what = "step" if ctx == "steps" else "job"
            raise ResolutionError(expr, f"{what} '{owner}' has produced no outputs")
        if name not in source[owner]:
            raise ResolutionError(expr, f"'{owner}' has no output named '{name}'")
        return source[owner][name]

    if ctx == "secrets":
        if len(parts) != 2:
            raise ResolutionError(expr, "expected secrets.<NAME>")
        try:
            value = scope.secrets.lookup(parts[1])
        except SecretNotFound as e:
            raise ResolutionError(expr, str(e)) from None
        if used_secrets is not None:
            used_secrets.add(value)
        return value

    if ctx == "env":
        if len(parts) != 2 or parts[1] not in scope.env:
            raise ResolutionError(expr, "no such env variable")
        return scope.env[parts[1]]

    raise ResolutionError(expr, f"unknown context '{ctx}'")


def resolve(text: str, scope: Scope, used_secrets: Optional[Set[str]] = None) -> str:
    """Interpolate every reference in `text`."""
    if not text or "${{" not in text:
        return text
    return EXPR_RE.sub(lambda m: lookup(m.group(1), scope, used_secrets), text)


def resolve_map(
    values: Mapping[str, str],
    scope: Scope,
    used_secrets: Optional[Set[str]] = None,
) -> Dict[str, str]:
    return {k: resolve(str(v), scope, used_secrets) for k, v in values.items()}


def substitute_matrix(text: str, params: Mapping[str, str]) -> str:
    """Replace `matrix.*` references only, leaving other contexts untouched."""
    if not text or "${{" not in text:
        return text

    def _sub(m: re.Match) -> str:
        expr = m.group(1)
        if expr.startswith("matrix."):
            return lookup(expr, Scope(matrix=params))
        return m.group(0)

    return EXPR_RE.sub(_sub, text)


def bind_step(
    step: StepSpec,
    scope: Scope,
    base_env: Mapping[str, str],
    job_secrets: Iterable[str] = (),
) -> StepEnv:
    """
    Resolve a step against its scope.

    The returned env layers base env, the job scope env and the step env,
    in that order. Raises ResolutionError for any missing reference.
    """
    used: Set[str] = set(job_secrets)

    values = dict(base_env)
    values.update(scope.env)
    values.update(resolve_map(step.env, scope, used))

    inputs = resolve_map(step.inputs, scope, used)
    if isinstance(step.body, Command):
        body: StepBody = Command(run=resolve(step.body.run, scope, used), shell=step.body.shell)
    else:
        body = ActionRef(uses=step.body.uses)

    workdir = resolve(step.working_directory, scope, used) if step.working_directory else None
    secrets = frozenset(used) | frozenset(scope.secrets.secret_values())
    return StepEnv(body=body, values=values, inputs=inputs, secrets=secrets, working_directory=workdir)


# ---------------------------------------------------------------------
# Static validation
# ---------------------------------------------------------------------

def _check_ref(
    expr: str,
    *,
    job: JobSpec,
    allowed: Tuple[str, ...],
    step_ids: Iterable[str] = (),
    where: str,
) -> None:
    if not REF_RE.match(expr):
        raise ConfigurationError(
            f"unsupported expression '${{{{ {expr} }}}}' in {where}",
            job=job.name,
        )
    parts = expr.split(".")
    ctx = parts[0]
    if ctx not in CONTEXTS:
        raise ConfigurationError(f"unknown context '{ctx}' in {where}", job=job.name)
    if ctx not in allowed:
        raise ConfigurationError(f"context '{ctx}' is not available in {where}", job=job.name)

    if ctx == "matrix":
        params = job.matrix.params if job.matrix else {}
        if len(parts) != 2 or parts[1] not in params:
            raise ConfigurationError(
                f"'{expr}' in {where} does not name a matrix parameter",
                job=job.name,
                details={"matrix": sorted(params)},
            )
    elif ctx in ("steps", "needs"):
        if len(parts) != 4 or parts[2] != "outputs":
            raise ConfigurationError(
                f"'{expr}' in {where} must look like {ctx}.<id>.outputs.<name>",
                job=job.name,
            )
        if ctx == "steps" and parts[1] not in set(step_ids):
            raise ConfigurationError(
                f"'{expr}' in {where} refers to step '{parts[1]}' which is not an earlier step of this job",
                job=job.name,
            )
        if ctx == "needs" and parts[1] not in job.needs:
            raise ConfigurationError(
                f"'{expr}' in {where} refers to job '{parts[1]}' which is not in needs",
                job=job.name,
            )
    elif len(parts) != 2:
        raise ConfigurationError(f"'{expr}' in {where} must look like {ctx}.<NAME>", job=job.name)


def _step_strings(step: StepSpec) -> List[Tuple[str, str]]:
    out: List[Tuple[str, str]] = []
    if isinstance(step.body, Command):
        out.append(("run", step.body.run))
    out.extend((f"with.{k}", str(v)) for k, v in step.inputs.items())
    out.extend((f"env.{k}", str(v)) for k, v in step.env.items())
    if step.working_directory:
        out.append(("working-directory", step.working_directory))
    return out


def validate_job(job: JobSpec) -> None:
    for expr in references(job.runs_on):
        _check_ref(expr, job=job, allowed=("matrix",), where="runs-on")

    for key, value in job.env.items():
        for expr in references(str(value)):
            _check_ref(expr, job=job, allowed=("matrix", "needs", "secrets", "env"), where=f"env.{key}")

    seen: List[str] = []
    for step in job.steps:
        label = f"step '{step.name}'"
        if step.id is not None:
            if step.id in seen:
                raise ConfigurationError(f"duplicate step id '{step.id}'", job=job.name)
        if step.retries < 0:
            raise ConfigurationError(f"{label} declares negative retries", job=job.name)
        for where, text in _step_strings(step):
            for expr in references(text):
                _check_ref(
                    expr,
                    job=job,
                    allowed=CONTEXTS,
                    step_ids=seen,
                    where=f"{label} {where}",
                )
        if step.id is not None:
            seen.append(step.id)

    for key, value in job.outputs.items():
        for expr in references(str(value)):
            _check_ref(
                expr,
                job=job,
                allowed=("matrix", "steps", "needs", "env"),
                step_ids=seen,
                where=f"outputs.{key}",
            )


def validate_workflow(workflow: WorkflowSpec) -> None:
    """Reject every reference that can never resolve. Raises ConfigurationError."""
    for key, value in workflow.env.items():
        for expr in references(str(value)):
            if not expr.startswith("secrets.") or len(expr.split(".")) != 2:
                raise ConfigurationError(
                    f"workflow env.{key} may only reference secrets, got '{expr}'"
                )
    for job in workflow.jobs.values():
        validate_job(job)
