from typing import Optional


class AppError(Exception):
    status_code = 500
    title = "Internal server error"

    def __init__(self, message: str, *, title: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if title is not None:
            self.title = title

    def to_dict(self) -> dict[str, str]:
        return {"error": self.title, "message": self.message}


class ValidationError(AppError, ValueError):
    status_code = 400
    title = "Validation failed"


class AuthError(AppError):
    status_code = 401
    title = "Access denied"


class TokenError(AuthError):
    status_code = 403
    title = "Invalid token"


class NotFoundError(AppError, ValueError):
    status_code = 404
    title = "Not found"


class ConflictError(AppError, ValueError):
    status_code = 409
    title = "Conflict"


class InternalError(AppError):
    status_code = 500
    title = "Internal server error"
