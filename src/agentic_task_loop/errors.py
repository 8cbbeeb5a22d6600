"""Error taxonomy for the task loop engine.

Fatal conditions derive from LoopError and carry a message meant for an
operator, not a stack trace. Recoverable conditions are absorbed where they
occur and only logged.
"""

from typing import Optional


class LoopError(Exception):
    """Base class for fatal loop errors."""
    pass


class WorkerInvocationError(LoopError):
    """The external worker call failed (missing binary, non-zero exit, ...)."""

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: Optional[str] = None):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class MissingTemplateError(LoopError):
    """A required prompt template file is absent."""
    pass


class IterationBudgetExhausted(LoopError):
    """The loop used its whole iteration budget without a verified pass."""

    def __init__(self, message: str, iterations: int, remaining: Optional[str] = None):
        super().__init__(message)
        self.iterations = iterations
        self.remaining = remaining


class ScopeValidationError(LoopError):
    """Multi-repo mode needs a scope and none could be resolved."""
    pass


class MalformedArtifactError(LoopError):
    """An artifact could not be read or parsed.

    Only raised by strict loaders; the oracle and the lenient loaders degrade
    to defaults instead.
    """
    pass


class PreconditionError(LoopError):
    """A pre-condition command failed, so the task is blocked."""
    pass


class PhaseGateError(LoopError):
    """The current phase started before the previous one completed."""
    pass
