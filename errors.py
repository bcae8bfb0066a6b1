"""
errors.py

Exception types raised by the transparency API.

Services and route handlers raise these at the point where the problem is
detected; a single Flask error handler in app.py turns them into

    {"ok": false, "message": "..."}

with the matching HTTP status code.

Usage:
    from errors import BadRequestError, NotFoundError

    raise BadRequestError("Please provide the Department ID")
    raise NotFoundError("Institution", institution_id)
"""


class ApiError(Exception):
    """Base class for errors that map onto a JSON error response."""

    status_code = 500
    default_message = "Something went wrong, please try again later"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"ok": False, "message": self.message}


class BadRequestError(ApiError):
    status_code = 400
    default_message = "Bad request"


class UnauthenticatedError(ApiError):
    status_code = 401
    default_message = "Authentication invalid"


class UnauthorizedError(ApiError):
    status_code = 403
    default_message = "Unauthorized to access this route"


class NotFoundError(ApiError):
    """Raised when a requested document does not exist.

    Args:
        resource: Human readable entity name (e.g. "Institution").
        resource_id: The id that was looked up, echoed in the message.
    """

    status_code = 404

    def __init__(self, resource: str = "Resource", resource_id=None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"No {resource.lower()} found"
        if resource_id is not None:
            msg += f" with id: {resource_id}"
        super().__init__(msg)


class ConflictError(ApiError):
    status_code = 409
    default_message = "Resource already exists"


class UnsupportedFileError(ApiError):
    status_code = 415
    default_message = "Unsupported file type. Please upload a CSV or PDF."


class UpstreamError(ApiError):
    """The text-generation service failed. The message stays opaque."""

    status_code = 502
    default_message = "The assistant could not answer right now"


class AssistantUnavailableError(ApiError):
    status_code = 503
    default_message = "The assistant is not configured"
