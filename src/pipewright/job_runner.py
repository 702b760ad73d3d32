# job_runner.py
from __future__ import annotations

import os
import re
import threading
import time
from pathlib import Path
from typing import Dict, Mapping, Optional, Set, Tuple

from .errors import CancellationError, JobFailure, ResolutionError, StepFailure
from .executor import StepExecutor
from .expressions import Scope, bind_step, resolve_map
from .model import (
    JobInstance,
    JobResult,
    JobStatus,
    StepResult,
    StepSpec,
    StepStatus,
)
from .secret_store import Redactor, SecretStore
from .state import RunState
from .ui.console import get_console


def instance_slug(instance_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", instance_id).strip("_")


class JobRunner:
    """
    Drives the steps of one job instance, in order, on the calling thread.

    Step outputs accumulate into the scope as `steps.<id>.outputs.<name>`.
    The first failing step ends the job; later steps are recorded as
    skipped and never executed. The final result is published to RunState
    exactly once.
    """

    def __init__(
        self,
        executor: StepExecutor,
        state: RunState,
        *,
        secrets: Optional[SecretStore] = None,
        workspace: str | Path = ".",
        workflow_env: Optional[Mapping[str, str]] = None,
        base_env: Optional[Mapping[str, str]] = None,
        temp_root: Optional[str | Path] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.executor = executor
        self.state = state
        self.secrets = secrets if secrets is not None else SecretStore()
        self.workspace = Path(workspace).resolve()
        self.workflow_env = dict(workflow_env or {})
        self.base_env = self.secrets.scrub(os.environ if base_env is None else base_env)
        self.temp_root = Path(temp_root) if temp_root is not None else self.workspace / ".pipewright" / "tmp"
        self.cancel = cancel if cancel is not None else threading.Event()

    # -----------------------------------------------------------------

    def run(
        self,
        instance: JobInstance,
        *,
        needs_outputs: Optional[Mapping[str, Mapping[str, str]]] = None,
        fanin: int = 0,
    ) -> JobResult:
        started = time.monotonic()
        redact = Redactor(self.secrets.secret_values())
        try:
            result = self._execute(instance, needs_outputs or {}, fanin)
        except Exception as e:
            # engine or plugin bug: still a terminal, visible result
            result = JobResult(
                instance_id=instance.instance_id,
                job=instance.name,
                status=JobStatus.FAILED,
                params=dict(instance.params),
                error=redact(f"{type(e).__name__}: {e}"),
            )
        if redact:
            self._mask_outputs(result, redact)
        result.duration = time.monotonic() - started
        self.state.publish(result)
        get_console().print_job_finished(result)
        return result

    @staticmethod
    def _mask_outputs(result: JobResult, redact: Redactor) -> None:
        # published results leave the run, so outputs carry no secret values
        result.outputs = {k: redact(v) for k, v in result.outputs.items()}
        result.step_outputs = {
            sid: {k: redact(v) for k, v in outs.items()} for sid, outs in result.step_outputs.items()
        }
        for sr in result.steps:
            sr.outputs = {k: redact(v) for k, v in sr.outputs.items()}

    # -----------------------------------------------------------------

    def _base_env(self, instance: JobInstance, fanin: int) -> Dict[str, str]:
        temp = self.temp_root / instance_slug(instance.instance_id)
        temp.mkdir(parents=True, exist_ok=True)

        env = dict(self.base_env)
        env.update(
            {
                "CI": "true",
                "PIPEWRIGHT": "true",
                "PIPEWRIGHT_JOB": instance.name,
                "PIPEWRIGHT_INSTANCE": instance.instance_id,
                "PIPEWRIGHT_RUNS_ON": instance.runs_on,
                "PIPEWRIGHT_WORKSPACE": str(self.workspace),
                "PIPEWRIGHT_TEMP": str(temp),
            }
        )
        for key, value in instance.params.items():
            env[f"PIPEWRIGHT_MATRIX_{key.upper().replace('-', '_')}"] = value
        if instance.job.barrier:
            env["PIPEWRIGHT_FANIN_COUNT"] = str(fanin)
        return env

    def _job_scope(
        self,
        instance: JobInstance,
        needs_outputs: Mapping[str, Mapping[str, str]],
        step_outputs: Dict[str, Dict[str, str]],
    ) -> Tuple[Scope, Set[str]]:
        used: Set[str] = set()
        wf_env = resolve_map(self.workflow_env, Scope(secrets=self.secrets), used)
        scope = Scope(
            matrix=dict(instance.params),
            steps=step_outputs,
            needs={k: dict(v) for k, v in needs_outputs.items()},
            secrets=self.secrets,
            env=wf_env,
        )
        job_env = resolve_map(instance.job.env, scope, used)
        scope.env = {**wf_env, **job_env}
        return scope, used

    def _execute(
        self,
        instance: JobInstance,
        needs_outputs: Mapping[str, Mapping[str, str]],
        fanin: int,
    ) -> JobResult:
        console = get_console()
        console.print_job_start(instance.instance_id, instance.runs_on)

        result = JobResult(
            instance_id=instance.instance_id,
            job=instance.name,
            status=JobStatus.RUNNING,
            params=dict(instance.params),
        )
        step_outputs: Dict[str, Dict[str, str]] = {}

        try:
            scope, job_secrets = self._job_scope(instance, needs_outputs, step_outputs)
        except ResolutionError as e:
            result.status = JobStatus.FAILED
            result.error = str(JobFailure(job=instance.instance_id, reason=str(e)))
            result.steps = [self._skipped(s) for s in instance.job.steps]
            return result

        base_env = self._base_env(instance, fanin)

        for step in instance.job.steps:
            if result.status != JobStatus.RUNNING:
                result.steps.append(self._skipped(step))
                continue
            if self.cancel.is_set():
                result.status = JobStatus.CANCELLED
                result.error = str(CancellationError(job=instance.instance_id, step=step.name))
                result.steps.append(self._skipped(step))
                continue

            console.print_step(instance.instance_id, step.name)
            sr = self._run_step(instance, step, scope, base_env, job_secrets)
            result.steps.append(sr)

            if sr.status == StepStatus.SUCCESS:
                if step.id is not None:
                    step_outputs[step.id] = dict(sr.outputs)
            elif sr.status == StepStatus.CANCELLED:
                result.status = JobStatus.CANCELLED
                result.error = sr.error
            else:
                console.print_step_failure(instance.instance_id, sr)
                result.status = JobStatus.FAILED
                result.error = str(JobFailure(job=instance.instance_id, step=step.name))

        result.step_outputs = {k: dict(v) for k, v in step_outputs.items()}
        if result.status != JobStatus.RUNNING:
            return result

        try:
            result.outputs = resolve_map(instance.job.outputs, scope)
        except ResolutionError as e:
            result.status = JobStatus.FAILED
            result.error = str(JobFailure(job=instance.instance_id, reason=f"job outputs: {e}"))
            return result

        result.status = JobStatus.SUCCEEDED
        return result

    @staticmethod
    def _skipped(step: StepSpec) -> StepResult:
        return StepResult(name=step.name, id=step.id, status=StepStatus.SKIPPED)

    def _run_step(
        self,
        instance: JobInstance,
        step: StepSpec,
        scope: Scope,
        base_env: Mapping[str, str],
        job_secrets: Set[str],
    ) -> StepResult:
        attempts = 0
        while True:
            attempts += 1
            try:
                senv = bind_step(step, scope, base_env, job_secrets)
            except ResolutionError as e:
                return StepResult(
                    name=step.name,
                    id=step.id,
                    status=StepStatus.FAILURE,
                    attempts=attempts,
                    error=str(e),
                )

            workdir = self.workspace
            if senv.working_directory:
                workdir = (self.workspace / senv.working_directory).resolve()
            if not workdir.is_dir():
                return StepResult(
                    name=step.name,
                    id=step.id,
                    status=StepStatus.FAILURE,
                    attempts=attempts,
                    error=f"working directory not found: {workdir}",
                )

            try:
                outcome = self.executor.execute(
                    step.name,
                    senv.body,
                    senv.inputs,
                    senv,
                    workdir,
                    cancel=self.cancel,
                    timeout=step.timeout,
                )
            except CancellationError as e:
                e.job = instance.instance_id
                return StepResult(
                    name=step.name,
                    id=step.id,
                    status=StepStatus.CANCELLED,
                    attempts=attempts,
                    error=str(e),
                )

            if outcome.status == StepStatus.SUCCESS or attempts > step.retries:
                break
            get_console().print_retry(instance.instance_id, step.name, attempts, step.retries + 1)

        ok = outcome.status == StepStatus.SUCCESS
        error = None
        if not ok:
            error = str(StepFailure(job=instance.instance_id, step=step.name, exit_code=outcome.exit_code))
        return StepResult(
            name=step.name,
            id=step.id,
            status=StepStatus.SUCCESS if ok else StepStatus.FAILURE,
            outputs=dict(outcome.outputs) if ok else {},
            logs=outcome.logs,
            attempts=attempts,
            exit_code=outcome.exit_code,
            error=error,
        )
