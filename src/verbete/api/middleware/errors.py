"""Error handling middleware for consistent JSON error responses.

Every error leaves the API as:
- error: Machine-readable code
- message: Human-readable description
- detail: Structured context, when there is any

Domain errors carry their own code and HTTP status; anything unexpected
is logged and answered with a generic 500.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from verbete.core.errors import OperationalError, SubmissionError

logger = logging.getLogger(__name__)


def build_error_response(
    error: str,
    message: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> JSONResponse:
    """Build a standardized error response.

    Args:
        error: Machine-readable error code.
        message: Human-readable description.
        status_code: HTTP status code.
        detail: Optional structured context.

    Returns:
        JSONResponse with the common error structure.
    """
    body: dict[str, Any] = {"error": error, "message": message}
    if detail:
        body["detail"] = detail
    return JSONResponse(status_code=status_code, content=body)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catches exceptions and returns consistent JSON errors.

    Handles:
    - SubmissionError and subclasses: domain errors with their own status
    - HTTPException: FastAPI's built-in HTTP errors
    - Pydantic ValidationError raised inside handlers
    - Anything else: logged, generic 500
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        try:
            return await call_next(request)
        except OperationalError as exc:
            # Already logged where it was raised; hide storage internals
            return build_error_response(
                error=exc.error_code,
                message="A storage error occurred",
                status_code=exc.status_code,
            )
        except SubmissionError as exc:
            if exc.status_code >= 500:
                logger.error("Domain error on %s %s: %s", request.method, request.url.path, exc)
            return build_error_response(
                error=exc.error_code,
                message=exc.message,
                status_code=exc.status_code,
                detail=exc.details,
            )
        except HTTPException as exc:
            return build_error_response(
                error="http_error",
                message=str(exc.detail),
                status_code=exc.status_code,
            )
        except PydanticValidationError as exc:
            return build_error_response(
                error="validation_error",
                message="Request validation failed",
                status_code=422,
                detail={"errors": exc.errors(include_url=False)},
            )
        except Exception:
            logger.exception(
                "Unexpected error processing request: %s %s",
                request.method,
                request.url.path,
            )
            return build_error_response(
                error="internal_error",
                message="An internal error occurred",
                status_code=500,
            )
