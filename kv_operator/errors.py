"""
Operator error taxonomy.

Only the benign cases (forgetting an unknown node, deleting a pod that is
already gone) are caught inside a stage. Everything else propagates to the
controller, which requeues the resource with backoff.
"""

from typing import Optional


class OperatorError(Exception):
    """Base class for operator failures."""


class CommandError(OperatorError):
    """A node replied with an error where success was required."""

    def __init__(self, command: str, message: str):
        super().__init__(f"{command}: {message}")
        self.command = command
        self.message = message


class NodeConnectionError(OperatorError):
    """A node could not be reached or closed the connection mid-command."""


class RetryExhaustedError(OperatorError):
    """A retried operation never satisfied its condition."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


class NotFoundError(OperatorError):
    """The platform object does not exist."""


class ConflictError(OperatorError):
    """The platform rejected a write because the object version moved."""


class StatusConflictError(OperatorError):
    """The resource changed since the pass read it; the pass must be abandoned."""


class InvalidSpecError(OperatorError, ValueError):
    """The resource asks for a shape the operator cannot build."""


class RequeueRequested(Exception):
    """
    Not a failure: the cluster has not converged yet and another pass is needed.

    Raised by the orchestrator when primary/replica counts still differ from
    the resource spec at the end of the membership stages.
    """

    def __init__(self, reason: str = "", delay: float = 0.0):
        super().__init__(reason)
        self.reason = reason
        self.delay = delay
