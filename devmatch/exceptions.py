"""
Typed errors raised by the rotation engine.

Each error carries an HTTP status code, a stable machine-readable code and a
context dict (ids, current status, deadline) so callers can render a precise
message without parsing strings.
"""

import re
from typing import Any, Optional


class RotationError(Exception):
    status_code = 400
    code = "rotation_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = {k: (v.isoformat() if hasattr(v, "isoformat") else v) for k, v in context.items()}

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code, "context": self.context}


# Not found

class NotFound(RotationError):
    status_code = 404
    code = "not_found"


class ProjectNotFound(NotFound):
    code = "project_not_found"

    def __init__(self, project_id: str):
        super().__init__("Project not found", project_id=project_id)


class CandidateNotFound(NotFound):
    code = "candidate_not_found"

    def __init__(self, candidate_id: str):
        super().__init__("Candidate not found", candidate_id=candidate_id)


# Invalid state

class InvalidState(RotationError):
    status_code = 409
    code = "invalid_state"


class InvalidProjectState(InvalidState):
    code = "invalid_project_state"

    def __init__(self, project_id: str, status: str):
        super().__init__(
            f"Cannot generate batch for project with status: {status}",
            project_id=project_id,
            current_status=status,
        )


class InvalidCandidateState(InvalidState):
    code = "invalid_candidate_state"

    def __init__(self, candidate_id: str, status: str, action: str = "accept"):
        super().__init__(
            f"Cannot {action} candidate with status: {status}",
            candidate_id=candidate_id,
            current_status=status,
        )


class BatchNotActive(InvalidState):
    code = "batch_not_active"

    def __init__(self, batch_id: str, status: str, action: str = "accept"):
        super().__init__(
            f"Cannot {action} candidate from {status} batch", batch_id=batch_id, current_status=status
        )


class BatchSuperseded(InvalidState):
    code = "batch_superseded"

    def __init__(self, batch_id: str, current_batch_id: Optional[str]):
        super().__init__(
            "This batch is no longer current", batch_id=batch_id, current_batch_id=current_batch_id
        )


class AlreadyAccepted(InvalidState):
    code = "already_accepted"

    def __init__(self, candidate_id: str):
        super().__init__(
            "This candidate has already been marked as first accepted", candidate_id=candidate_id
        )


class BatchPoolExhausted(InvalidState):
    code = "batch_pool_exhausted"

    def __init__(self, project_id: str, batch_count: int):
        super().__init__(
            "Developer pool exhausted for this project", project_id=project_id, batch_count=batch_count
        )


# Identity

class Unauthorized(RotationError):
    status_code = 403
    code = "unauthorized"


class SelfAcceptForbidden(Unauthorized):
    code = "self_accept_forbidden"

    def __init__(self, project_id: str):
        super().__init__("You cannot accept your own project", project_id=project_id)


class DeadlinePassed(RotationError):
    status_code = 410
    code = "deadline_passed"

    def __init__(self, candidate_id: str, deadline):
        super().__init__("Acceptance deadline has passed", candidate_id=candidate_id, deadline=deadline)


# Conditional update affected zero rows: someone else got there first

class RaceLost(RotationError):
    status_code = 409
    code = "race_lost"


AlreadyClaimed = RaceLost


class ProjectAlreadyAccepted(RaceLost):
    code = "project_already_accepted"

    def __init__(self, project_id: str):
        super().__init__(
            "Project already accepted by another developer or batch replaced", project_id=project_id
        )


class CandidateNoLongerPending(RaceLost):
    code = "candidate_no_longer_pending"

    def __init__(self, candidate_id: str):
        super().__init__("Candidate no longer pending or deadline passed", candidate_id=candidate_id)


class NoEligibleCandidates(RotationError):
    status_code = 422
    code = "no_eligible_candidates"

    def __init__(self, project_id: str):
        super().__init__("No eligible candidates found", project_id=project_id)


class TransientStoreConflict(RotationError):
    status_code = 503
    code = "transient_store_conflict"

    def __init__(self, operation: str, attempts: int):
        super().__init__(
            f"{operation} hit a transaction conflict, please retry", operation=operation, attempts=attempts
        )


_TRANSIENT_PATTERN = re.compile(
    r"deadlock|write conflict|could not serialize|database is locked"
    r"|transaction .* has been aborted|current transaction is aborted",
    re.IGNORECASE,
)


def is_transient_conflict(error: BaseException) -> bool:
    """Detect retryable store conflicts from the error message signature"""
    if isinstance(error, RotationError):
        return False
    return bool(_TRANSIENT_PATTERN.search(str(error)))
