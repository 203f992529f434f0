"""Error taxonomy for the program review workflow.

Routers translate these into HTTP responses (see ``routers/programs.py``);
the builder session turns them into a user-facing status message.
"""

from typing import List, Optional


class ProgramWorkflowError(Exception):
    """Base class for every error raised by the workflow or a program store."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ProgramWorkflowError, ValueError):
    """Input rejected before anything was sent to the store."""

    status_code = 400

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        super().__init__(message)
        self.problems = problems or []


class ProgramNotFoundError(ProgramWorkflowError):
    status_code = 404


class ProgramAccessError(ProgramWorkflowError):
    """The actor cannot see the program through the requested view."""

    status_code = 403


class CapabilityError(ProgramWorkflowError):
    """The actor holds no role that may perform the action at all."""

    status_code = 403


class InvalidTransitionError(ProgramWorkflowError):
    status_code = 409

    def __init__(self, current_status: str, action: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot {action.replace('_', ' ')} a program in '{current_status}' status"
        )
        self.current_status = current_status
        self.action = action


class ConcurrentModificationError(ProgramWorkflowError):
    status_code = 409

    def __init__(self, program_id: str, expected: int, actual: Optional[int]):
        super().__init__(
            f"Program {program_id} was modified by someone else "
            f"(expected version {expected}, found {actual})"
        )
        self.expected = expected
        self.actual = actual


class StoreUnavailableError(ProgramWorkflowError):
    """Transient store or network failure; the operation is safe to retry."""

    status_code = 503


class StoreTimeoutError(StoreUnavailableError):
    status_code = 504
