"""Domain exceptions for the booking core.

Each error carries the HTTP status the API layer answers with, so the
services stay free of FastAPI imports.
"""

from typing import Optional


class RelaxGoError(Exception):
    """Base application exception."""

    status_code: int = 500

    def __init__(self, detail: str = "An unexpected error occurred") -> None:
        self.detail = detail
        super().__init__(detail)


class ValidationError(RelaxGoError):
    """Malformed input, e.g. a date/time pair that is not a real instant."""

    status_code = 422


class MissingReferenceError(RelaxGoError):
    """A referenced customer, masseur, massage type or booking is absent or unknown."""

    status_code = 404

    def __init__(self, resource: str, identifier: Optional[str] = None) -> None:
        self.resource = resource
        self.identifier = identifier
        detail = f"{resource} is required"
        if identifier:
            detail = f"{resource} '{identifier}' not found"
        super().__init__(detail)


class InvalidTransitionError(RelaxGoError):
    """Disallowed status edge or an actor not entitled to take it."""

    status_code = 409

    def __init__(self, current: Optional[str], target: str, reason: str = "") -> None:
        self.current = current
        self.target = target
        detail = f"Invalid transition: {current} -> {target}"
        if reason:
            detail = f"{detail} ({reason})"
        super().__init__(detail)


class AuthorizationError(RelaxGoError):
    status_code = 403

    def __init__(self, detail: str = "You don't have permission to perform this action") -> None:
        super().__init__(detail)


class TransientIOError(RelaxGoError):
    """Store or change feed unavailable. Never retried by the controller."""

    status_code = 503

    def __init__(self, operation: str, detail: Optional[str] = None) -> None:
        self.operation = operation
        message = f"Backend unavailable during '{operation}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ConsistencyGapError(RelaxGoError):
    """An application status and the matching capability grant disagree.

    Raised when the second write of an approval or rejection fails. The
    repair pass in ApprovalService closes the gap on the next admin load.
    """

    status_code = 500

    def __init__(self, masseur_id: str, application_status: str, capability: str) -> None:
        self.masseur_id = masseur_id
        self.application_status = application_status
        self.capability = capability
        super().__init__(
            f"Application {masseur_id} is {application_status} but the '{capability}' "
            f"capability could not be updated; it will be repaired on the next admin load"
        )
