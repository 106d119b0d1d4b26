"""Error taxonomy for the lending desk.

Every business-rule failure is raised as a subclass of ``CirculationError``
carrying a machine-readable ``code`` and any structured details (restriction
reasons, suggested next action) a presentation layer needs to render a
specific message. Storage failures are not wrapped and propagate as-is.
"""

from typing import Any, Dict


class CirculationError(Exception):
    """Base exception for all lending desk errors."""

    code = "circulation_error"

    def __init__(self, message: str, code: str = None, **details: Any):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload = {"detail": self.message, "code": self.code}
        payload.update(self.details)
        return payload


class NotFoundError(CirculationError):
    """Raised when a loan, penalty, reservation, patron or title is absent."""

    code = "not_found"


class NotEligibleError(CirculationError):
    """Raised when a business rule blocks borrowing, renewal or reservation."""

    code = "not_eligible"

    def __init__(self, message: str, reasons=None, **details: Any):
        super().__init__(message, reasons=list(reasons or []), **details)

    @property
    def reasons(self):
        return self.details["reasons"]


class ConflictError(CirculationError):
    """Raised when the current state forbids the operation."""

    code = "conflict"


class InvalidInputError(CirculationError):
    """Raised for out-of-range amounts, malformed dates or limits."""

    code = "invalid_input"


class InvalidTransitionError(CirculationError):
    """Raised when a status change is not permitted from the current state."""

    code = "invalid_transition"


class ConfigurationError(CirculationError):
    """Raised when configuration is invalid or missing."""

    code = "configuration_error"
