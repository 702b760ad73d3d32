# process.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional

from .errors import CancellationError

POLL_INTERVAL = 0.1

TOOL_HINTS = {
    "bash": "Install bash or declare `shell: sh` on the step.",
    "sh": "No POSIX shell found on PATH.",
    "python": "Install Python or fix PATH (python).",
    "git": "Install Git or fix PATH.",
    "docker": "Install Docker and ensure the daemon is running.",
}


@dataclass
class ProcessResult:
    returncode: Optional[int]
    output: str
    timed_out: bool = False


def hint_for(argv: List[str]) -> str:
    tool = Path(argv[0]).name if argv else ""
    return TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")


def _signal(proc: subprocess.Popen, sig: int) -> None:
    # steps run in their own session, so the whole process tree gets the signal
    try:
        if os.name == "posix":
            os.killpg(proc.pid, sig)
        else:
            proc.send_signal(sig)
    except ProcessLookupError:
        pass


def _terminate(proc: subprocess.Popen, grace: float) -> tuple[str, bool]:
    """SIGTERM, wait `grace` seconds, then SIGKILL. Returns (output, forced)."""
    _signal(proc, signal.SIGTERM)
    try:
        out, _ = proc.communicate(timeout=grace)
        return out or "", False
    except subprocess.TimeoutExpired:
        _signal(proc, signal.SIGKILL if os.name == "posix" else signal.SIGTERM)
        out, _ = proc.communicate()
        return out or "", True


def run_process(
    argv: List[str],
    *,
    cwd: Path,
    env: Mapping[str, str],
    cancel: Optional[threading.Event] = None,
    timeout: Optional[float] = None,
    grace: float = 10.0,
    label: str = "",
) -> ProcessResult:
    """
    Run a process to completion, merging stderr into stdout.

    Raises FileNotFoundError if the executable is missing and
    CancellationError if `cancel` is set while the process runs.
    """
    proc = subprocess.Popen(
        argv,
        cwd=str(cwd),
        env=dict(env),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        start_new_session=os.name == "posix",
    )
    deadline = time.monotonic() + timeout if timeout else None

    while True:
        try:
            out, _ = proc.communicate(timeout=POLL_INTERVAL)
            return ProcessResult(returncode=proc.returncode, output=out or "")
        except subprocess.TimeoutExpired:
            pass

        if cancel is not None and cancel.is_set():
            _out, forced = _terminate(proc, grace)
            raise CancellationError(step=label or None, forced=forced)

        if deadline is not None and time.monotonic() >= deadline:
            out, _forced = _terminate(proc, grace)
            return ProcessResult(returncode=None, output=out, timed_out=True)
