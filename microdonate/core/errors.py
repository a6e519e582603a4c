# microdonate/core/errors.py
from fastapi import Request
from fastapi.responses import JSONResponse


class AppError(Exception):
    status_code = 500
    message = "Internal Server Error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class ValidationFailed(AppError):
    status_code = 400
    message = "Invalid request"


class AuthFailed(AppError):
    status_code = 401
    message = "Not authorized to access this route"


class Forbidden(AppError):
    status_code = 403
    message = "Not enough permissions"


class NotFound(AppError):
    status_code = 404
    message = "Not found"


class Conflict(AppError):
    status_code = 409
    message = "Already exists"


class DonationFailed(AppError):
    """The donation unit of work aborted; nothing was persisted."""
    status_code = 500
    message = "Failed to process donation. No charges were made. Please try again."


async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse({"detail": exc.message}, status_code=exc.status_code)
