class AssignmentError(Exception):
    """Base class for failures raised by the assignment engine."""

    pass


class AssignmentValidationError(AssignmentError):
    """Raised when a command carries identities or dates that cannot be applied."""

    pass


class MissingTeamPlacementError(AssignmentValidationError):
    """Raised when a booking link is requested for staff not placed on that team and date."""

    def __init__(self, staff_id: str, team_id: str, assignment_date) -> None:
        super().__init__(f"Staff {staff_id} is not assigned to team {team_id} on {assignment_date}")
        self.staff_id = staff_id
        self.team_id = team_id
        self.assignment_date = assignment_date


class UnknownOperationError(AssignmentError):
    """Raised when the dispatcher receives an operation it does not know."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"Unknown operation: {operation}")
        self.operation = operation


class OutOfScopeError(AssignmentError):
    """Raised when a client mutation targets a date outside the cached scope."""


class InvalidTransitionError(AssignmentError):
    """Raised when a pending mutation is moved to a state it cannot reach."""


class BackendError(AssignmentError):
    """Raised when the authoritative store cannot be reached from a client."""


# Mapping of custom exceptions to HTTP status codes
CUSTOM_ERRORS = {
    AssignmentValidationError: 400,
    MissingTeamPlacementError: 409,
    UnknownOperationError: 400,
    OutOfScopeError: 400,
    InvalidTransitionError: 500,
    BackendError: 502,
}


def status_code_for(exc: Exception) -> int:
    for error_type in type(exc).__mro__:
        if error_type in CUSTOM_ERRORS:
            return CUSTOM_ERRORS[error_type]
    return 500
