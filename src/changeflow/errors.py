from __future__ import annotations

from typing import Any


class ChangeflowError(RuntimeError):
    """Base class for workflow errors; carries the context of the failed operation."""

    def __init__(
        self,
        message: str,
        *,
        role: str | None = None,
        phase: str | None = None,
        artifact_id: str | None = None,
        action: str | None = None,
    ) -> None:
        super().__init__(message)
        self.role = role
        self.phase = phase
        self.artifact_id = artifact_id
        self.action = action

    def context(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "role": self.role,
            "phase": self.phase,
            "artifact_id": self.artifact_id,
            "action": self.action,
        }


class PolicyViolation(ChangeflowError):
    """Raised before execution when an action is outside the granted capability set."""


class AmbiguityError(ChangeflowError):
    """Raised when missing information blocks a phase exit; requires human input."""

    def __init__(self, message: str, *, questions: list[str] | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.questions = list(questions or [])


class AlreadyCompletedError(ChangeflowError):
    """Raised on re-entry into a workflow whose artifact carries a completion marker."""


class VerificationFailure(ChangeflowError):
    """Raised when a post-step check fails."""

    def __init__(
        self, message: str, *, step_id: str | None = None, output: str = "", **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)
        self.step_id = step_id
        self.output = output


class ReviewerError(ChangeflowError):
    def __init__(self, message: str, *, reviewer_id: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.reviewer_id = reviewer_id


class ReviewerTimeout(ReviewerError):
    """A reviewer did not respond within its bound."""


class ReviewerFailure(ReviewerError):
    """A reviewer raised or returned an unusable response."""


class InvalidTransition(ChangeflowError):
    """Raised when a phase transition is not an edge or its exit condition is false."""


class HandoffError(ChangeflowError):
    """Raised when a handoff request is malformed or its preconditions fail."""


class ResourceConflictError(ChangeflowError):
    """Raised when concurrently scheduled steps declare overlapping write targets."""

    def __init__(
        self, message: str, *, overlapping: list[str] | None = None, **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)
        self.overlapping = sorted(overlapping or [])


class StateStoreError(ChangeflowError):
    """Raised when shared-state operations fail."""


class CIError(ChangeflowError):
    """Raised when the CI provider cannot locate or report on a run."""


class CompensationFailed(ChangeflowError):
    """Raised when a forward failure could not be fully compensated; `report` lists the gaps."""

    def __init__(self, message: str, *, report: Any, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.report = report
