"""Verbete API middleware components."""

from verbete.api.middleware.errors import ErrorHandlerMiddleware, build_error_response

__all__ = ["ErrorHandlerMiddleware", "build_error_response"]
