# scheduler.py
from __future__ import annotations

import queue
import threading
from collections import deque
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from .errors import ConfigurationError
from .model import JobInstance, JobResult, JobSpec, JobStatus
from .state import FanInBarrier, RunState


class Decision(str, Enum):
    DISPATCH = "dispatch"
    SKIP = "skip"


def build_dag(jobs: Iterable[JobSpec]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from job specs.

    Edges go need -> job (the need must resolve BEFORE the job).
    Raises ConfigurationError on duplicate names or dangling needs.
    """
    jobs = list(jobs)
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError("duplicate job names", details={"jobs": dupes})

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for need in job.needs:
            if need not in name_set:
                raise ConfigurationError(
                    f"needs unknown job '{need}'",
                    job=job.name,
                    details={"known": sorted(name_set)},
                )
            if need == job.name:
                raise ConfigurationError("job needs itself", job=job.name)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert the DAG into topological "levels".
    Jobs within one level do not depend on each other.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level: List[str] = []
        for _ in range(len(q)):
            node = q.popleft()
            level.append(node)
            processed += 1
            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)
        levels.append(level)

    if processed != len(indeg):
        stuck = sorted(n for n, d in indeg.items() if d > 0)
        raise ConfigurationError("needs graph has a cycle", details={"stuck": stuck})

    return levels


class DependencyScheduler:
    """
    Gate job instances on their `needs`.

    Nodes are job names; matrix siblings share one node and one
    FanInBarrier. A node resolves only once every sibling has published a
    terminal result to RunState. The whole graph is validated (dangling
    needs, cycles, barrier declarations) in the constructor, so a bad
    workflow never dispatches anything.
    """

    def __init__(
        self,
        jobs: Mapping[str, JobSpec],
        instances: Mapping[str, List[JobInstance]],
        state: RunState,
    ):
        adj, indeg = build_dag(jobs.values())
        self._levels = topo_levels(adj, indeg)

        for job in jobs.values():
            if job.barrier and not job.needs:
                raise ConfigurationError("barrier job must declare needs", job=job.name)

        self._jobs = dict(jobs)
        self._state = state

        # jobs that expanded to nothing take no part in the graph
        self.empty: List[str] = [n for n in jobs if not instances.get(n)]
        self._instances: Dict[str, List[JobInstance]] = {
            n: list(instances[n]) for n in jobs if instances.get(n)
        }
        self._needs: Dict[str, Tuple[str, ...]] = {
            n: tuple(d for d in jobs[n].needs if d in self._instances) for n in self._instances
        }
        self._barriers: Dict[str, FanInBarrier] = {
            n: FanInBarrier(n, [i.instance_id for i in insts]) for n, insts in self._instances.items()
        }
        self._order: List[str] = [n for level in self._levels for n in level if n in self._instances]

        self._resolved_q: "queue.Queue[Optional[str]]" = queue.Queue()
        self._cancel = threading.Event()
        self.resolved: Dict[str, JobStatus] = {}
        self._emitted: Set[str] = set()
        self._pending: "deque[Tuple[JobInstance, Decision]]" = deque()

        state.subscribe(self._on_publish)

    # -----------------------------------------------------------------

    @property
    def levels(self) -> List[List[str]]:
        return [[n for n in level if n in self._instances] for level in self._levels]

    def instances(self, name: str) -> List[JobInstance]:
        return list(self._instances.get(name, []))

    def barrier(self, name: str) -> FanInBarrier:
        return self._barriers[name]

    def fanin_count(self, name: str) -> int:
        """Number of upstream instances a job joins."""
        return sum(self._barriers[n].expected for n in self._needs.get(name, ()))

    def needs_outputs(self, name: str) -> Dict[str, Dict[str, str]]:
        """
        Outputs of every needed job, merged across matrix siblings in
        instance-id order. Blocks until every needed barrier is complete.
        """
        out: Dict[str, Dict[str, str]] = {}
        for need in self._needs.get(name, ()):
            self._barriers[need].wait()
            merged: Dict[str, str] = {}
            for r in self._barriers[need].results():
                if r.status == JobStatus.SUCCEEDED:
                    merged.update(r.outputs)
            out[need] = merged
        return out

    def abort(self) -> None:
        self._cancel.set()
        self._resolved_q.put(None)

    @property
    def aborted(self) -> bool:
        return self._cancel.is_set()

    def _on_publish(self, result: JobResult) -> None:
        barrier = self._barriers.get(result.job)
        if barrier is None:
            return
        if barrier.arrive(result):
            self._resolved_q.put(result.job)

    # -----------------------------------------------------------------

    def _publish_all(self, name: str, status: JobStatus, reason: str) -> None:
        for inst in self._instances[name]:
            self._publish(inst, status, reason)

    def _publish(self, inst: JobInstance, status: JobStatus, reason: str) -> None:
        self._state.publish(
            JobResult(
                instance_id=inst.instance_id,
                job=inst.name,
                status=status,
                params=dict(inst.params),
                error=reason,
            )
        )

    def _drain(self) -> Iterator[Tuple[JobInstance, Decision]]:
        # popped before the yield, so an abandoned generator never hands
        # the same instance out twice
        while self._pending:
            inst, decision = self._pending.popleft()
            if decision is Decision.DISPATCH and self._cancel.is_set():
                self._publish(inst, JobStatus.CANCELLED, "pipeline aborted before dispatch")
                continue
            yield inst, decision

    def schedule(self) -> Iterator[Tuple[JobInstance, Decision]]:
        """
        Yield (instance, decision) pairs as nodes become eligible.

        DISPATCH means the caller must run the instance and publish its
        result; SKIP results have already been published. Between yields the
        generator blocks until some node's barrier completes.
        Calling it again after an interrupted iteration resumes where the
        previous generator stopped, starting with the siblings it had not
        handed out yet.
        """
        emitted = self._emitted
        yield from self._drain()

        while True:
            progress = True
            while progress:
                progress = False
                for name in self._order:
                    if name in emitted:
                        continue
                    if self._cancel.is_set():
                        emitted.add(name)
                        self._publish_all(name, JobStatus.CANCELLED, "pipeline aborted before dispatch")
                        continue

                    needs = self._needs[name]
                    if not all(n in self.resolved for n in needs):
                        continue

                    emitted.add(name)
                    progress = True
                    blocked = [n for n in needs if self.resolved[n] != JobStatus.SUCCEEDED]
                    if not blocked:
                        self._pending.extend((inst, Decision.DISPATCH) for inst in self._instances[name])
                    else:
                        reason = "needs not satisfied: " + ", ".join(
                            f"{n} ({self.resolved[n].value})" for n in blocked
                        )
                        self._publish_all(name, JobStatus.SKIPPED, reason)
                        self._pending.extend((inst, Decision.SKIP) for inst in self._instances[name])
                    yield from self._drain()

            if len(self.resolved) == len(self._instances):
                return

            name = self._resolved_q.get()
            if name is None:
                continue
            self.resolved[name] = self._barriers[name].status()
