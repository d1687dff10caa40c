"""Error taxonomy shared by the services and the HTTP layer.

Every error carries the HTTP status it maps to and renders its own JSON body,
so route handlers raise and ``create_app`` translates in one place.
"""


class AppError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message

    def body(self) -> dict:
        return {"error": self.message}


class ValidationFailed(AppError):
    status_code = 400
    message = "Validation failed"

    def __init__(self, details: list[dict]):
        super().__init__()
        self.details = details

    def body(self) -> dict:
        return {"error": self.message, "details": self.details}


class BadRequest(AppError):
    status_code = 400
    message = "Bad request"


class AuthRequired(AppError):
    status_code = 401
    message = "Authentication required"


class InvalidCredentials(AppError):
    status_code = 401
    message = "Invalid password"


class CsrfInvalid(AppError):
    status_code = 403
    message = "Invalid or missing CSRF token"
    code = "csrf_invalid"

    def body(self) -> dict:
        return {"error": self.message, "code": self.code}


class OriginNotAllowed(AppError):
    status_code = 403
    message = "Request origin not allowed"


class NotFound(AppError):
    status_code = 404
    message = "Not found"


class PayloadTooLarge(AppError):
    status_code = 413
    message = "Image too large"


class UnsupportedImageType(AppError):
    status_code = 415
    message = "Invalid file type. Only JPG, PNG, and WEBP are allowed."


class RateLimited(AppError):
    status_code = 429
    message = "Too many requests, please try again later"


class UploadFailed(AppError):
    status_code = 500
    message = "Image upload failed"

    def __init__(self, detail: str = "", index: int | None = None):
        super().__init__()
        self.detail = detail
        self.index = index

    def body(self) -> dict:
        return {"error": self.message, "details": self.detail}


class StoreFailure(AppError):
    status_code = 500
    message = "Database operation failed"


class SpamDetected(AppError):
    """Honeypot tripped. Answered as a success so bots learn nothing."""

    status_code = 200
    message = "spam_detected"

    def body(self) -> dict:
        return {"success": True, "message": "Message sent successfully"}
