"""Domain errors raised by the availability, booking and search services.

Routes translate these into HTTP responses; services never raise HTTPException.
"""


class DomainError(Exception):
    """Base class for errors the caller can act on."""

    default_message = "Request could not be completed."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(DomainError):
    default_message = "Invalid input."


class NotFound(DomainError):
    default_message = "Resource not found."


class Unauthorized(DomainError):
    default_message = "You are not allowed to perform this action."


class Conflict(DomainError):
    default_message = "This time is no longer available."


class Unavailable(DomainError):
    """Store timeout or outage. Safe to retry idempotent operations."""

    default_message = "Database unavailable. Please retry shortly."


class SearchUnavailable(DomainError):
    """The search backend rejected or could not serve the request."""

    default_message = "Search is temporarily unavailable."
