"""Error taxonomy for the deployment run.

Every failure the orchestrator can surface is a ``DeployError`` subclass with
an ``exit_code``; the CLI maps it straight to the process exit status.
"""

from __future__ import annotations

from typing import Sequence


class DeployError(RuntimeError):
    exit_code = 1
    result = "FAIL_GENERIC"


class ValidationError(DeployError):
    exit_code = 2
    result = "FAIL_VALIDATION"


class PreconditionError(DeployError):
    exit_code = 3
    result = "FAIL_PRECONDITION"


class InsufficientSpaceError(ValidationError):
    exit_code = 4
    result = "FAIL_DISK_SPACE"

    def __init__(self, message: str, *, available_gb: int, required_gb: int):
        super().__init__(message)
        self.available_gb = available_gb
        self.required_gb = required_gb


class StateError(DeployError):
    exit_code = 5
    result = "FAIL_STATE"


class UnsafeCommandError(DeployError):
    exit_code = 6
    result = "FAIL_UNSAFE_COMMAND"


class CommandError(DeployError):
    """A critical external command returned nonzero."""

    result = "FAIL_COMMAND"

    def __init__(self, cmd: Sequence[str], rc: int, description: str = "", err: str = ""):
        self.cmd = list(cmd)
        self.rc = rc
        self.description = description or " ".join(self.cmd)
        self.err = err
        super().__init__(f"{self.description} - FAILED (exit code: {rc})")

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        return self.rc if self.rc > 0 else 1


class UserCancelled(DeployError):
    """Operator declined a confirmation; nothing destructive happened yet."""

    exit_code = 0
    result = "CANCELLED"


def exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, KeyboardInterrupt):
        return 130
    if isinstance(exc, DeployError):
        return exc.exit_code
    return 12


def result_kind_for(exc: BaseException) -> str:
    if isinstance(exc, KeyboardInterrupt):
        return "FAIL_INTERRUPTED"
    if isinstance(exc, DeployError):
        return exc.result
    return "FAIL_UNHANDLED"
