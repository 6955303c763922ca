# ABOUTME: Error taxonomy for the trading workflow runtime.
# ABOUTME: Compile-time validation errors, run-time aborts and the non-fatal persistence warning.

from typing import Iterable, Optional


class WorkflowError(Exception):
    """Base class for every error raised by the orchestration runtime."""


class GraphValidationError(WorkflowError):
    """The registered graph cannot be compiled into a plan."""


class DuplicateNodeError(GraphValidationError):
    def __init__(self, name: str):
        super().__init__(f"Node '{name}' is already registered")
        self.name = name


class UnknownNodeError(GraphValidationError):
    def __init__(self, name: str, referencedBy: Optional[str] = None):
        detail = f" (referenced by '{referencedBy}')" if referencedBy else ""
        super().__init__(f"Node '{name}' is not registered{detail}")
        self.name = name
        self.referencedBy = referencedBy


class StateMutationError(WorkflowError):
    """A write-once field of the workflow state was written with a conflicting value."""


class RoutingError(WorkflowError):
    """A node wrote a route that the compiled plan does not allow."""

    def __init__(self, nodeName: str, target: Optional[str], allowed: Iterable[str]):
        allowedList = ", ".join(sorted(str(a) for a in allowed))
        super().__init__(f"Node '{nodeName}' routed to '{target}', allowed: [{allowedList}]")
        self.nodeName = nodeName
        self.target = target


class IterationLimitExceededError(WorkflowError):
    def __init__(self, lastNode: Optional[str], iterations: int):
        super().__init__(
            f"Workflow exceeded {iterations} node executions (last node: '{lastNode}')"
        )
        self.lastNode = lastNode
        self.iterations = iterations


class ToolLoopExceededError(WorkflowError):
    def __init__(self, nodeName: str, maxCycles: int):
        super().__init__(f"{nodeName}: Exceeded maximum tool iteration cycles ({maxCycles})")
        self.nodeName = nodeName
        self.maxCycles = maxCycles


class InvocationError(WorkflowError):
    """The model/tool layer failed or returned an unusable response."""

    def __init__(self, nodeName: str, message: str):
        super().__init__(f"{nodeName}: {message}")
        self.nodeName = nodeName


class Cancelled(WorkflowError):
    """Cooperative cancellation (explicit or deadline) observed during a run."""

    def __init__(self, nodeName: Optional[str] = None, reason: str = "cancelled", partial=None):
        where = f" during '{nodeName}'" if nodeName else ""
        super().__init__(f"Run {reason}{where}")
        self.nodeName = nodeName
        self.reason = reason
        self.partial = partial


class PersistenceWarning(Warning):
    """A store write failed. Logged and surfaced as an event, never raised into a run."""

    def __init__(self, operation: str, cause: BaseException):
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause
