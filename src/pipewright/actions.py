# actions.py
from __future__ import annotations

import shlex
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from .errors import ActionError
from .git_facts.git import get_current_ref, head_sha, is_dirty, is_work_tree
from .process import hint_for, run_process


@dataclass
class ActionContext:
    """Everything an action handler may look at. Inputs are already resolved."""
    name: str
    uses: str
    inputs: Mapping[str, str]
    env: Mapping[str, str]
    workdir: Path
    cancel: threading.Event = field(default_factory=threading.Event)
    grace: float = 10.0
    timeout: Optional[float] = None
    lines: List[str] = field(default_factory=list)

    def log(self, message: str) -> None:
        self.lines.append(message)

    def require(self, key: str) -> str:
        value = self.inputs.get(key)
        if value is None or value == "":
            raise ActionError(f"{self.uses}: missing required input '{key}'")
        return value


ActionHandler = Callable[[ActionContext], Optional[Mapping[str, str]]]


class ActionRegistry:
    """
    Maps action names (`owner/name`, without `@version`) to handlers.

    With `stub_unknown=True` an action without a handler succeeds as a
    no-op instead of failing the step.
    """

    def __init__(self, handlers: Optional[Mapping[str, ActionHandler]] = None, *, stub_unknown: bool = False):
        self._handlers: Dict[str, ActionHandler] = dict(handlers or {})
        self.stub_unknown = stub_unknown

    @classmethod
    def default(cls, *, stub_unknown: bool = False) -> "ActionRegistry":
        return cls(BUILTIN_ACTIONS, stub_unknown=stub_unknown)

    def register(self, action: str, handler: Optional[ActionHandler] = None):
        """Register a handler. Works as a plain call or as a decorator."""
        if handler is not None:
            self._handlers[action] = handler
            return handler

        def deco(fn: ActionHandler) -> ActionHandler:
            self._handlers[action] = fn
            return fn

        return deco

    def get(self, action: str) -> Optional[ActionHandler]:
        return self._handlers.get(action.split("@", 1)[0])

    def __contains__(self, action: object) -> bool:
        return isinstance(action, str) and self.get(action) is not None

    def names(self) -> List[str]:
        return sorted(self._handlers)


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

def checkout(ctx: ActionContext) -> Dict[str, str]:
    """
    Local stand-in for `actions/checkout`: the workspace already is the
    checkout, so only verify it and report where it points.
    """
    if not is_work_tree(ctx.workdir):
        raise ActionError(f"{ctx.workdir} is not a git working tree")
    ref = get_current_ref(ctx.workdir)
    sha = head_sha(ctx.workdir)
    ctx.log(f"Using local checkout {ctx.workdir} at {ref} ({sha[:12]})")
    if is_dirty(ctx.workdir):
        ctx.log("Working tree has uncommitted changes")
    return {"ref": ref, "sha": sha}


def tool(ctx: ActionContext) -> Dict[str, str]:
    """
    Run a tool by name with optional args.

    Inputs:
        command: executable to run (required)
        args:    argument string, split with shlex
    """
    argv = [ctx.require("command"), *shlex.split(ctx.inputs.get("args", "") or "")]
    try:
        proc = run_process(
            argv,
            cwd=ctx.workdir,
            env=ctx.env,
            cancel=ctx.cancel,
            timeout=ctx.timeout,
            grace=ctx.grace,
            label=ctx.name,
        )
    except FileNotFoundError:
        raise ActionError(f"{argv[0]} is not available. Hint: {hint_for(argv)}") from None

    if proc.output:
        ctx.log(proc.output.rstrip("\n"))
    if proc.timed_out:
        raise ActionError(f"{argv[0]} timed out")
    if proc.returncode != 0:
        raise ActionError(f"{' '.join(argv)} exited with {proc.returncode}")
    return {"exit-code": str(proc.returncode)}


BUILTIN_ACTIONS: Dict[str, ActionHandler] = {
    "actions/checkout": checkout,
    "pipewright/tool": tool,
}
