# executor.py
from __future__ import annotations

import re
import shlex
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol

from .actions import ActionContext, ActionRegistry
from .errors import ActionError, CancellationError
from .expressions import StepEnv
from .model import ActionRef, Command, StepBody, StepOutcome, StepStatus
from .process import POLL_INTERVAL, hint_for, run_process
from .settings import CANCEL_GRACE

OUTPUT_ENV = "PIPEWRIGHT_OUTPUT"

SHELLS: Dict[str, List[str]] = {
    "bash": ["bash", "--noprofile", "--norc", "-eo", "pipefail", "-c"],
    "sh": ["sh", "-e", "-c"],
    "python": ["python", "-c"],
}

_HEREDOC_RE = re.compile(r"^([A-Za-z0-9_.-]+)<<(\S+)$")


class StepExecutor(Protocol):
    """Plugin interface every toolchain adapter implements."""

    def execute(
        self,
        name: str,
        kind: StepBody,
        inputs: Mapping[str, str],
        env: StepEnv,
        workdir: Path,
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> StepOutcome:
        ...


def parse_output_file(text: str) -> Dict[str, str]:
    """
    Parse step outputs written to $PIPEWRIGHT_OUTPUT.

        name=value
        name<<EOF
        multi-line
        value
        EOF
    """
    outputs: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        m = _HEREDOC_RE.match(line)
        if m:
            key, delim = m.groups()
            buf: List[str] = []
            while i < len(lines) and lines[i] != delim:
                buf.append(lines[i])
                i += 1
            if i >= len(lines):
                raise ValueError(f"unterminated output block for '{key}' (expected {delim!r})")
            i += 1  # skip the delimiter
            outputs[key] = "\n".join(buf)
            continue
        key, sep, value = line.partition("=")
        if not sep or not key:
            raise ValueError(f"invalid output line: {line!r}")
        outputs[key] = value
    return outputs


def shell_argv(shell: str, script: str) -> List[str]:
    if shell in SHELLS:
        return [*SHELLS[shell], script]
    return [*shlex.split(shell), script]


class LocalStepExecutor:
    """
    Runs commands in a local shell and actions through an ActionRegistry.

    Whatever the step prints is returned as logs, with every secret value
    of the step env masked. Outputs are only returned on success.
    """

    def __init__(self, actions: Optional[ActionRegistry] = None, *, grace: float = CANCEL_GRACE):
        self.actions = actions if actions is not None else ActionRegistry.default()
        self.grace = grace

    def execute(
        self,
        name: str,
        kind: StepBody,
        inputs: Mapping[str, str],
        env: StepEnv,
        workdir: Path,
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> StepOutcome:
        redact = env.redactor
        try:
            if isinstance(kind, Command):
                outcome = self._run_command(name, kind, env, workdir, cancel, timeout)
            elif isinstance(kind, ActionRef):
                outcome = self._run_action(name, kind, inputs, env, workdir, cancel, timeout)
            else:
                raise TypeError(f"unsupported step body: {type(kind).__name__}")
        except CancellationError as e:
            e.step = name
            raise

        outcome.logs = redact(outcome.logs)
        if outcome.status != StepStatus.SUCCESS:
            outcome.outputs = {}
        return outcome

    # -----------------------------------------------------------------

    def _run_command(
        self,
        name: str,
        cmd: Command,
        env: StepEnv,
        workdir: Path,
        cancel: Optional[threading.Event],
        timeout: Optional[float],
    ) -> StepOutcome:
        argv = shell_argv(cmd.shell, cmd.run)
        with tempfile.TemporaryDirectory(prefix="pipewright-step-") as tmp:
            out_file = Path(tmp) / "output"
            out_file.touch()
            proc_env = dict(env.values)
            proc_env[OUTPUT_ENV] = str(out_file)
            try:
                proc = run_process(
                    argv,
                    cwd=workdir,
                    env=proc_env,
                    cancel=cancel,
                    timeout=timeout,
                    grace=self.grace,
                    label=name,
                )
            except FileNotFoundError:
                return StepOutcome(
                    status=StepStatus.FAILURE,
                    logs=f"{argv[0]} is not available. Hint: {hint_for(argv)}",
                )

            if proc.timed_out:
                return StepOutcome(
                    status=StepStatus.FAILURE,
                    logs=proc.output + f"\nstep timed out after {timeout:g}s",
                )
            if proc.returncode != 0:
                return StepOutcome(status=StepStatus.FAILURE, logs=proc.output, exit_code=proc.returncode)

            try:
                outputs = parse_output_file(out_file.read_text())
            except ValueError as e:
                return StepOutcome(
                    status=StepStatus.FAILURE,
                    logs=proc.output + f"\n{e}",
                    exit_code=proc.returncode,
                )
        return StepOutcome(status=StepStatus.SUCCESS, outputs=outputs, logs=proc.output, exit_code=0)

    def _run_action(
        self,
        name: str,
        ref: ActionRef,
        inputs: Mapping[str, str],
        env: StepEnv,
        workdir: Path,
        cancel: Optional[threading.Event],
        timeout: Optional[float],
    ) -> StepOutcome:
        handler = self.actions.get(ref.uses)
        if handler is None:
            if self.actions.stub_unknown:
                return StepOutcome(status=StepStatus.SUCCESS, logs=f"{ref.uses}: no handler registered, stubbed")
            return StepOutcome(status=StepStatus.FAILURE, logs=f"no handler registered for action '{ref.uses}'")

        ctx = ActionContext(
            name=name,
            uses=ref.uses,
            inputs=dict(inputs),
            env=dict(env.values),
            workdir=workdir,
            cancel=threading.Event(),
            grace=self.grace,
            timeout=timeout,
        )
        box: Dict[str, Any] = {}

        def target() -> None:
            try:
                result = handler(ctx)
                box["outputs"] = dict(result or {})
            except CancellationError as e:
                box["cancelled"] = e
            except ActionError as e:
                box["error"] = str(e)
            except Exception as e:  # handler bug -> step failure, not engine crash
                box["error"] = f"{type(e).__name__}: {e}"

        worker = threading.Thread(target=target, name=f"action:{name}", daemon=True)
        worker.start()

        started = time.monotonic()
        cancelled_at: Optional[float] = None
        while worker.is_alive():
            worker.join(POLL_INTERVAL)
            if not worker.is_alive():
                break
            now = time.monotonic()
            if cancel is not None and cancel.is_set():
                ctx.cancel.set()
            if ctx.cancel.is_set():
                if cancelled_at is None:
                    cancelled_at = now
                elif now - cancelled_at >= self.grace:
                    # the handler thread is abandoned, it cannot be killed
                    raise CancellationError(step=name, forced=True)
            elif timeout and now - started >= timeout:
                ctx.cancel.set()
                ctx.lines.append(f"action timed out after {timeout:g}s")
                return StepOutcome(
                    status=StepStatus.FAILURE,
                    logs="\n".join(ctx.lines),
                )

        if "cancelled" in box or (cancel is not None and cancel.is_set()):
            raise CancellationError(step=name)

        logs = "\n".join(ctx.lines)
        if "error" in box:
            logs = f"{logs}\n{box['error']}" if logs else box["error"]
            return StepOutcome(status=StepStatus.FAILURE, logs=logs)

        outputs = {str(k): str(v) for k, v in box.get("outputs", {}).items()}
        return StepOutcome(status=StepStatus.SUCCESS, outputs=outputs, logs=logs)
