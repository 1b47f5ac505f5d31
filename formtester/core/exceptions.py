from typing import Any, Optional


class FormTesterError(Exception):
    """Base class for errors that map onto an HTTP status.

    The exception handlers in ``formtester.main`` turn these into
    ``{"error": title, "message": str(exc)}`` JSON bodies.
    """
    status_code: int = 500
    title: str = "Internal Server Error"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.title, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(FormTesterError):
    """Missing or malformed input. Never retried."""
    status_code = 400
    title = "Validation Error"


class NotFoundError(FormTesterError):
    status_code = 404
    title = "Not Found"


class ConflictError(FormTesterError):
    """A versioned record changed underneath the caller."""
    status_code = 409
    title = "Conflict"


class ExternalServiceError(FormTesterError):
    """A call to the record store, timer service or blob store failed."""
    status_code = 500
    title = "Internal Server Error"
