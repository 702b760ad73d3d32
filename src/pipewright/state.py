# state.py
from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional

from .model import JobResult, JobStatus

Listener = Callable[[JobResult], None]


class RunState:
    """
    Pipeline-run-scoped record of job instance outcomes.

    Each key is written exactly once, with a terminal status. Readers see
    either the full result or nothing. Listeners are called after the
    write is committed, outside the lock, in the publishing thread.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._results: Dict[str, JobResult] = {}
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def publish(self, result: JobResult) -> None:
        if not result.status.terminal:
            raise ValueError(f"cannot publish non-terminal status {result.status.value!r}")
        with self._lock:
            if result.instance_id in self._results:
                raise RuntimeError(f"result for '{result.instance_id}' was already published")
            self._results[result.instance_id] = result
            listeners = list(self._listeners)
        for fn in listeners:
            fn(result)

    def get(self, instance_id: str) -> Optional[JobResult]:
        with self._lock:
            return self._results.get(instance_id)

    def __contains__(self, instance_id: object) -> bool:
        with self._lock:
            return instance_id in self._results

    def snapshot(self) -> Dict[str, JobResult]:
        with self._lock:
            return dict(self._results)


def resolve_node(statuses: List[JobStatus]) -> JobStatus:
    """
    Collapse sibling instance statuses into one job-level status.

    Failed wins over cancelled, cancelled over skipped. Succeeded only
    when every instance succeeded.
    """
    if not statuses:
        return JobStatus.SUCCEEDED
    if any(s == JobStatus.FAILED for s in statuses):
        return JobStatus.FAILED
    if any(s == JobStatus.CANCELLED for s in statuses):
        return JobStatus.CANCELLED
    if all(s == JobStatus.SUCCEEDED for s in statuses):
        return JobStatus.SUCCEEDED
    return JobStatus.SKIPPED


class FanInBarrier:
    """
    Counted rendezvous for all instances of one job.

    `arrive()` is called once per sibling result; waiters are released
    only when every expected sibling has arrived.
    """

    def __init__(self, name: str, expected: List[str]):
        self.name = name
        self._expected = set(expected)
        self._cond = threading.Condition()
        self._arrived: Dict[str, JobResult] = {}

    @property
    def expected(self) -> int:
        return len(self._expected)

    @property
    def remaining(self) -> int:
        with self._cond:
            return len(self._expected) - len(self._arrived)

    def arrive(self, result: JobResult) -> bool:
        """Record a sibling result. Returns True for the arrival that completes the barrier."""
        with self._cond:
            if result.instance_id not in self._expected:
                raise KeyError(f"'{result.instance_id}' is not an instance of '{self.name}'")
            if result.instance_id in self._arrived:
                raise RuntimeError(f"'{result.instance_id}' arrived twice at barrier '{self.name}'")
            self._arrived[result.instance_id] = result
            done = len(self._arrived) == len(self._expected)
            if done:
                self._cond.notify_all()
            return done

    def wait(self, timeout: float | None = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: len(self._arrived) == len(self._expected), timeout)

    def results(self) -> List[JobResult]:
        with self._cond:
            return [self._arrived[i] for i in sorted(self._arrived)]

    def status(self) -> JobStatus:
        with self._cond:
            if len(self._arrived) != len(self._expected):
                return JobStatus.PENDING
            return resolve_node([r.status for r in self._arrived.values()])
