# cli.py
from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import click

from pipewright.actions import ActionRegistry
from pipewright.errors import ConfigurationError, SecretNotFound
from pipewright.executor import LocalStepExecutor
from pipewright.git_facts.git import get_current_ref
from pipewright.loader import load_workflow
from pipewright.pipeline import PipelineRunner
from pipewright.secret_store import SecretStore
from pipewright.settings import CANCEL_GRACE, SECRET_PREFIX, STATE_DIR, WORKERS
from pipewright.ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def _config_error(e: ConfigurationError, ctx: click.Context) -> None:
    console = get_console()
    details = [f"{k}: {v}" for k, v in e.details.items()]
    if e.job:
        details.insert(0, f"job: {e.job}")
    console.print_error("Invalid workflow", e.message, details=details or None)
    ctx.exit(EXIT_CONFIG)


def _current_branch(workdir: Path) -> str | None:
    try:
        return get_current_ref(workdir)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and full step logs)",
)
@click.pass_context
def cli(ctx, debug):
    """pipewright: run declarative CI workflows locally."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("workflow_file", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--job", "jobs", multiple=True, help="Run only this job (and what it needs). Repeatable.")
@click.option("--workers", default=WORKERS, type=click.IntRange(min=1), help="Number of parallel job workers")
@click.option("--workdir", default=".", type=click.Path(file_okay=False, path_type=Path), help="Workspace root")
@click.option("--event", default=None, help="Only run if the workflow triggers on this event")
@click.option("--branch", default=None, help="Branch used with --event (defaults to the current git branch)")
@click.option("--secret", "secret_names", multiple=True, help="Expose env var NAME as secrets.NAME. Repeatable.")
@click.option("--label", "labels", multiple=True, help="Runner labels this host provides. Repeatable.")
@click.option("--stub-actions", is_flag=True, default=False, help="Treat actions without a handler as no-ops")
@click.option("--cancel-grace", default=CANCEL_GRACE, show_default=True, type=float, help="Seconds a cancelled step gets before it is killed")
@click.option("--report", default=None, type=click.Path(dir_okay=False, path_type=Path), help="Write a JSON report here")
@click.pass_context
def run(ctx, workflow_file, jobs, workers, workdir, event, branch, secret_names, labels, stub_actions, cancel_grace, report):
    """Run a workflow file (.yml, .yaml or .py)."""
    console = get_console()

    try:
        workflow = load_workflow(workflow_file)
    except ConfigurationError as e:
        _config_error(e, ctx)
        return

    try:
        secrets = SecretStore.from_environ(prefix=SECRET_PREFIX, names=secret_names)
    except SecretNotFound as e:
        console.print_error(
            "Missing secret",
            str(e),
            suggestion=f"Export it first:\n  export {e.name}=...",
        )
        ctx.exit(EXIT_CONFIG)
        return

    if event is not None and branch is None:
        branch = _current_branch(workdir)

    executor = LocalStepExecutor(ActionRegistry.default(stub_unknown=stub_actions), grace=cancel_grace)
    runner = PipelineRunner(
        executor,
        secrets=secrets,
        workspace=workdir,
        max_workers=workers,
        labels=labels or None,
        state_dir=STATE_DIR,
    )

    try:
        planned = runner.plan(workflow, jobs or None)
        if event is None or workflow.trigger.matches(event, branch):
            console.print_run_started(
                workflow=workflow.name,
                path=str(workflow_file),
                job_count=len(planned.jobs),
                instance_count=planned.instance_count,
            )
        result = runner.run(workflow, event=event, branch=branch, plan=planned)
    except ConfigurationError as e:
        _config_error(e, ctx)
        return
    except Exception as e:
        console.print_exception(e)
        ctx.exit(EXIT_FAILED)
        return

    if result.triggered:
        console.print_results(result)

    if report is not None:
        report.parent.mkdir(parents=True, exist_ok=True)
        report.write_text(json.dumps(result.to_dict(), indent=2))
        console.print_info(f"Report written to {report}")

    if runner.aborted:
        ctx.exit(EXIT_INTERRUPTED)
    ctx.exit(result.exit_code)


@cli.command()
@click.argument("workflow_file", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--job", "jobs", multiple=True, help="Plan only this job (and what it needs). Repeatable.")
@click.pass_context
def plan(ctx, workflow_file, jobs):
    """Validate a workflow and print its execution stages."""
    console = get_console()
    try:
        workflow = load_workflow(workflow_file)
        p = PipelineRunner().plan(workflow, jobs or None)
    except ConfigurationError as e:
        _config_error(e, ctx)
        return

    console.print_info(f"Workflow: {workflow.name}")
    console.print_plan(p.levels, p.instances)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    sys.exit(main())
