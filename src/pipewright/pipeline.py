# pipeline.py
from __future__ import annotations

import os
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from .errors import ConfigurationError
from .executor import LocalStepExecutor, StepExecutor
from .expressions import validate_workflow
from .job_runner import JobRunner
from .matrix import expand_all
from .model import JobInstance, JobSpec, JobStatus, PipelineResult, WorkflowSpec
from .scheduler import Decision, DependencyScheduler
from .secret_store import SecretStore
from .settings import STATE_DIR, WORKERS
from .state import RunState
from .ui.console import get_console


def select_jobs(workflow: WorkflowSpec, names: Optional[Iterable[str]] = None) -> Dict[str, JobSpec]:
    """
    Requested jobs plus everything they transitively need.

    No names selects the whole workflow. Declaration order is kept.
    """
    if not names:
        return dict(workflow.jobs)

    wanted: set[str] = set()
    stack = list(names)
    while stack:
        name = stack.pop()
        if name in wanted:
            continue
        job = workflow.jobs.get(name)
        if job is None:
            raise ConfigurationError(
                f"unknown job '{name}'",
                details={"known": sorted(workflow.jobs)},
            )
        wanted.add(name)
        # dangling needs are reported by the scheduler
        stack.extend(n for n in job.needs if n in workflow.jobs)

    return {n: j for n, j in workflow.jobs.items() if n in wanted}


@dataclass
class Plan:
    """A validated, expanded workflow, ready to schedule."""
    workflow: WorkflowSpec
    jobs: Dict[str, JobSpec]
    instances: Dict[str, List[JobInstance]]
    state: RunState = field(default_factory=RunState)
    scheduler: Optional[DependencyScheduler] = None

    @property
    def levels(self) -> List[List[str]]:
        return self.scheduler.levels if self.scheduler else []

    @property
    def instance_count(self) -> int:
        return sum(len(v) for v in self.instances.values())


class PipelineRunner:
    """
    Top-level entry point: validate, expand, schedule, run, aggregate.

    Job instances run concurrently on a thread pool; each instance's steps
    run sequentially on one worker.
    """

    def __init__(
        self,
        executor: Optional[StepExecutor] = None,
        *,
        secrets: Optional[SecretStore] = None,
        workspace: str | Path = ".",
        max_workers: Optional[int] = WORKERS,
        labels: Optional[Iterable[str]] = None,
        state_dir: str | Path = STATE_DIR,
        base_env: Optional[Mapping[str, str]] = None,
    ):
        self.executor = executor if executor is not None else LocalStepExecutor()
        self.secrets = secrets if secrets is not None else SecretStore()
        self.workspace = Path(workspace).resolve()
        self.max_workers = max_workers
        self.labels = set(labels) if labels else None
        self.state_dir = Path(state_dir)
        self.base_env = base_env
        self.run_id = uuid.uuid4().hex[:12]
        self._cancel = threading.Event()
        self._scheduler: Optional[DependencyScheduler] = None
        self.aborted = False

    def abort(self) -> None:
        """Cooperatively cancel the run: running steps are signalled, pending jobs cancelled."""
        self.aborted = True
        self._cancel.set()
        if self._scheduler is not None:
            self._scheduler.abort()

    # -----------------------------------------------------------------

    def plan(self, workflow: WorkflowSpec, jobs: Optional[Iterable[str]] = None) -> Plan:
        """Validate and expand. Raises ConfigurationError before anything runs."""
        validate_workflow(workflow)
        selected = select_jobs(workflow, jobs)
        instances = expand_all(selected)

        if self.labels is not None:
            for insts in instances.values():
                for inst in insts:
                    if inst.runs_on not in self.labels:
                        raise ConfigurationError(
                            f"no runner for label '{inst.runs_on}'",
                            job=inst.instance_id,
                            details={"labels": sorted(self.labels)},
                        )

        plan = Plan(workflow=workflow, jobs=selected, instances=instances)
        plan.scheduler = DependencyScheduler(selected, instances, plan.state)
        return plan

    def run(
        self,
        workflow: WorkflowSpec,
        *,
        jobs: Optional[Iterable[str]] = None,
        event: Optional[str] = None,
        branch: Optional[str] = None,
        plan: Optional[Plan] = None,
    ) -> PipelineResult:
        """
        Run the workflow and aggregate the results.

        A `plan` from `plan()` is reused as is; otherwise one is built here.
        """
        console = get_console()

        if event is not None and not workflow.trigger.matches(event, branch):
            console.print_trigger_skipped(event, branch)
            return PipelineResult(workflow=workflow.name, triggered=False)

        if plan is None:
            plan = self.plan(workflow, jobs)
        scheduler = plan.scheduler
        self._scheduler = scheduler
        if self._cancel.is_set():
            scheduler.abort()

        runner = JobRunner(
            self.executor,
            plan.state,
            secrets=self.secrets,
            workspace=self.workspace,
            workflow_env=workflow.env,
            base_env=self.base_env,
            temp_root=self.workspace / self.state_dir / "runs" / self.run_id,
            cancel=self._cancel,
        )

        workers = self.max_workers
        if workers is None:
            workers = max(1, (os.cpu_count() or 2) - 1)

        for name in scheduler.empty:
            console.print_job_skipped(name, "matrix expanded to no instances")

        futures: List[Future] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pipewright-job") as pool:
            decisions = scheduler.schedule()
            while True:
                try:
                    for inst, decision in decisions:
                        if decision is Decision.DISPATCH:
                            futures.append(
                                pool.submit(
                                    runner.run,
                                    inst,
                                    needs_outputs=scheduler.needs_outputs(inst.name),
                                    fanin=scheduler.fanin_count(inst.name),
                                )
                            )
                        else:
                            skipped = plan.state.get(inst.instance_id)
                            console.print_job_skipped(inst.instance_id, skipped.error if skipped else "")
                    break
                except KeyboardInterrupt:
                    console.print_info("\nInterrupted, cancelling running jobs...")
                    self.abort()
                    # resume: pending nodes get cancelled, running ones drain
                    decisions = scheduler.schedule()

        for fut in futures:
            fut.result()

        results = plan.state.snapshot()
        out = PipelineResult(workflow=workflow.name)
        out.empty = list(scheduler.empty)
        for name in plan.jobs:
            if name in scheduler.empty:
                continue
            out.jobs[name] = scheduler.resolved.get(name, JobStatus.CANCELLED)
            for inst in plan.instances[name]:
                if inst.instance_id in results:
                    out.instances[inst.instance_id] = results[inst.instance_id]
        return out
