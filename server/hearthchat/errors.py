"""Application errors rendered as ``{"error": {"code", "message"}}`` envelopes."""


class AppError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Internal error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_envelope(self) -> dict:
        return {"error": {"code": self.code, "message": self.message}}


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Validation failed"


class UnauthorizedError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Unauthorized"


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Forbidden"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Not found"


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Conflict"


class NoModelError(AppError):
    status_code = 503
    code = "NO_MODEL"
    default_message = "No AI model is available. An administrator must configure one."


class UpstreamUnavailableError(AppError):
    status_code = 502
    code = "UPSTREAM_UNAVAILABLE"
    default_message = "An upstream service is unreachable"
