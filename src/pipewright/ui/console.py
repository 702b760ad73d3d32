"""Console output formatting utilities for pipewright."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from pipewright.model import JobInstance, JobResult, PipelineResult, StepResult

LOG_TAIL_LINES = 20


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including full step logs
                   and stack traces
        """
        self.debug = debug
        # job instances print from worker threads
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_run_started(
        self,
        workflow: str,
        path: str,
        job_count: int,
        instance_count: int,
    ) -> None:
        """Print run start information."""
        self._emit(
            "",
            "RUN STARTED",
            f"Workflow: {workflow} ({path})",
            f"Jobs: {job_count} ({instance_count} instances)",
            "",
        )

    def print_trigger_skipped(self, event: str, branch: Optional[str]) -> None:
        where = f" on branch {branch}" if branch else ""
        self._emit(f"Workflow not triggered by '{event}'{where}, nothing to run")

    def print_job_start(self, name: str, runs_on: str) -> None:
        """Print job start message."""
        self._emit(f"[{name}] JOB STARTED (runs-on: {runs_on})")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._emit(f"[{job}] STEP: {name}")

    def print_retry(self, job: str, step: str, attempt: int, total: int) -> None:
        self._emit(f"[{job}] STEP: {step} failed (attempt {attempt}/{total}), retrying")

    def print_step_failure(self, job: str, step: "StepResult") -> None:
        """
        Print a failed step with the tail of its (already redacted) logs.

        In debug mode the whole log is shown.
        """
        lines = [f"[{job}] STEP FAILED: {step.name}"]
        if step.exit_code is not None:
            lines.append(f"[{job}] Exit code: {step.exit_code}")
        if step.error:
            lines.append(f"[{job}] Error: {step.error.splitlines()[0]}")
        log_lines = step.logs.splitlines() if step.logs else []
        if log_lines:
            if not self.debug and len(log_lines) > LOG_TAIL_LINES:
                lines.append(f"[{job}] ... ({len(log_lines) - LOG_TAIL_LINES} lines omitted, use --debug)")
                log_lines = log_lines[-LOG_TAIL_LINES:]
            lines.extend(f"[{job}] | {line}" for line in log_lines)
        self._emit(*lines)

    def print_job_finished(self, result: "JobResult") -> None:
        line = f"[{result.instance_id}] STATUS: {result.status.value}"
        if result.duration:
            line += f" ({result.duration:.1f}s)"
        self._emit(line)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._emit(f"[{name}] STATUS: skipped ({reason})")

    def print_plan(self, levels: List[List[str]], instances: Dict[str, List["JobInstance"]]) -> None:
        """Print execution plan, one topological level per stage."""
        lines: List[str] = []
        for idx, level in enumerate(levels):
            lines.append(f"=== Stage {idx + 1} ===")
            for name in level:
                insts = instances.get(name, [])
                lines.append(f"  {name} ({len(insts)} instance{'s' if len(insts) != 1 else ''})")
                for inst in insts:
                    if inst.instance_id != name:
                        lines.append(f"    - {inst.instance_id} (runs-on: {inst.runs_on})")
        empty = sorted(n for n, insts in instances.items() if not insts)
        for name in empty:
            lines.append(f"  {name} (skipped: empty matrix)")
        self._emit(*lines)

    def print_results(self, result: "PipelineResult") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, status in result.jobs.items():
            lines.append(f"  {job}: {status.value.upper()}")
            instances = [r for r in result.instances.values() if r.job == job and r.instance_id != job]
            for r in instances:
                lines.append(f"    {r.instance_id}: {r.status.value}")
        lines.append("")
        lines.append("SUCCESS" if result.ok else "FAILURE")
        self._emit(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = ["", f"ERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.extend(["", suggestion])
        self._emit(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
