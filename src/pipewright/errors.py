# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class PipewrightError(Exception):
    """Base class for every error raised by the engine."""


@dataclass
class ConfigurationError(PipewrightError):
    """
    The workflow cannot be run as declared.

    Raised before any job is dispatched: cyclic or dangling `needs`,
    malformed matrices, unknown expression contexts, unparsable files.
    """
    message: str
    job: str | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"configuration error: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class ResolutionError(PipewrightError):
    """A `${{ ... }}` reference names something that does not exist at run time."""
    expression: str
    reason: str

    def __str__(self) -> str:
        return f"cannot resolve '${{{{ {self.expression} }}}}': {self.reason}"


@dataclass
class StepFailure(PipewrightError):
    job: str
    step: str
    exit_code: int | None = None
    reason: str = ""

    def __str__(self) -> str:
        code = f" (exit={self.exit_code})" if self.exit_code is not None else ""
        tail = f": {self.reason}" if self.reason else ""
        return f"[{self.job}] step '{self.step}' failed{code}{tail}"


@dataclass
class JobFailure(PipewrightError):
    """Job-level summary of why an instance did not succeed."""
    job: str
    step: str | None = None
    reason: str = ""

    def __str__(self) -> str:
        where = f" at step '{self.step}'" if self.step else ""
        tail = f": {self.reason}" if self.reason else ""
        return f"job '{self.job}' failed{where}{tail}"


@dataclass
class CancellationError(PipewrightError):
    """The run was aborted while this unit of work was pending or running."""
    job: str | None = None
    step: str | None = None
    forced: bool = False

    def __str__(self) -> str:
        where = self.job or "pipeline"
        if self.step:
            where = f"{where} / {self.step}"
        how = "terminated after grace period" if self.forced else "cancelled"
        return f"{where}: {how}"


class ActionError(PipewrightError):
    """Raised by action handlers to report a failed action."""


class SecretNotFound(PipewrightError, KeyError):
    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"secret '{self.name}' is not defined"
