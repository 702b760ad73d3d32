"""Common fixtures."""

from __future__ import annotations

import pathlib
import threading
from typing import Callable, Dict, List, Mapping, Optional

import pytest

from pipewright.errors import CancellationError
from pipewright.expressions import StepEnv
from pipewright.model import StepBody, StepOutcome, StepStatus
from pipewright.ui.console import Console, set_console

Behaviour = Callable[["Call"], StepOutcome]


class Call:
    """What a fake executor saw for one step execution."""

    def __init__(self, name: str, kind: StepBody, inputs: Mapping[str, str], env: StepEnv, workdir, job: str):
        self.name = name
        self.kind = kind
        self.inputs = dict(inputs)
        self.env = env
        self.workdir = workdir
        self.job = job


class FakeExecutor:
    """
    In-memory StepExecutor.

    Every step succeeds unless a behaviour is registered for its name.
    Calls are recorded in order, keyed by the running job instance.
    """

    def __init__(self, behaviours: Optional[Dict[str, Behaviour]] = None):
        self.behaviours: Dict[str, Behaviour] = dict(behaviours or {})
        self.calls: List[Call] = []
        self._lock = threading.Lock()

    def execute(self, name, kind, inputs, env, workdir, *, cancel=None, timeout=None) -> StepOutcome:
        call = Call(name, kind, inputs, env, workdir, env.values.get("PIPEWRIGHT_INSTANCE", ""))
        with self._lock:
            self.calls.append(call)
        if cancel is not None and cancel.is_set():
            raise CancellationError(step=name)
        behaviour = self.behaviours.get(name)
        if behaviour is None:
            return StepOutcome(status=StepStatus.SUCCESS, exit_code=0)
        return behaviour(call)

    def names(self) -> List[str]:
        with self._lock:
            return [c.name for c in self.calls]

    def jobs(self) -> List[str]:
        with self._lock:
            return [c.job for c in self.calls]


def succeed(**outputs: str) -> Behaviour:
    return lambda call: StepOutcome(status=StepStatus.SUCCESS, outputs=dict(outputs), exit_code=0)


def fail(code: int = 1, logs: str = "") -> Behaviour:
    return lambda call: StepOutcome(status=StepStatus.FAILURE, logs=logs, exit_code=code)


@pytest.fixture(autouse=True)
def console() -> Console:
    """Fresh global console per test."""
    c = Console()
    set_console(c)
    return c


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def workspace(tmp_path: pathlib.Path) -> pathlib.Path:
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws
