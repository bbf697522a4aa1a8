"""Error types raised by the API service and the JSON responses they map to."""
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from logging_config import get_logger

logger = get_logger("api")


class AppError(Exception):
    """Base class for errors that carry their own HTTP status"""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    """A required field is missing or empty"""
    status_code = status.HTTP_400_BAD_REQUEST


class UnauthorizedError(AppError):
    """No usable session token was presented"""
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(AppError):
    """The requester may not perform this operation"""
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(AppError):
    """Unknown id, or a private post that has expired"""
    status_code = status.HTTP_404_NOT_FOUND


class ServerError(AppError):
    """Persistence failure or unexpected exception. Never leaks detail."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "Server error"):
        super().__init__(message)


def error_response(status_code: int, message: str) -> JSONResponse:
    """Build the ``{"success": false, "error": ...}`` envelope"""
    return JSONResponse(status_code=status_code,
                        content={"success": False, "error": message})


async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        return error_response(exc.status_code, "Server error")
    return error_response(exc.status_code, exc.message)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        field = ".".join(str(part) for part in errors[0].get("loc", ())[1:])
        message = f"Invalid or missing field: {field}" if field else "Invalid request body"
    else:
        message = "Invalid request body"
    return error_response(status.HTTP_400_BAD_REQUEST, message)


async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Server error")


def register_error_handlers(app: FastAPI):
    """Install the JSON error handlers on the application"""
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
