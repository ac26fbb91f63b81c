"""Application error types and the FastAPI handlers that render them."""
from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."
DATABASE_ERROR_MESSAGE = "Unable to complete request. Please try again."
VALIDATION_ERROR_MESSAGE = "Invalid request data. Please check your input."


class AppError(Exception):
    """Error with a user-safe message and an internal code for the logs."""

    def __init__(
        self,
        user_message: str,
        internal_code: str,
        status_code: int = 500,
        metadata: Optional[Dict[str, Any]] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(user_message)
        self.user_message = user_message
        self.internal_code = internal_code
        self.status_code = status_code
        self.metadata = metadata or {}
        # additional keys merged into the response body
        self.extra = extra or {}

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.user_message, **self.extra}


class BadRequestError(AppError):
    def __init__(self, user_message: str, internal_code: str = "VALIDATION_ERROR", **kwargs: Any) -> None:
        super().__init__(user_message, internal_code, 400, **kwargs)


class NotFoundError(AppError):
    def __init__(self, user_message: str = "Not found", internal_code: str = "NOT_FOUND", **kwargs: Any) -> None:
        super().__init__(user_message, internal_code, 404, **kwargs)


def register_error_handlers(app: FastAPI) -> None:
    """Install handlers that turn every failure into an ``{"error": ...}`` body."""

    @app.exception_handler(AppError)
    async def _handle_app_error(request: Request, exc: AppError) -> JSONResponse:
        logger.warning(
            "API error %s on %s %s: %s",
            exc.internal_code,
            request.method,
            request.url.path,
            exc.metadata,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(RequestValidationError)
    async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("Request validation failed on %s: %s", request.url.path, exc.errors())
        return JSONResponse(status_code=400, content={"error": VALIDATION_ERROR_MESSAGE})

    @app.exception_handler(sqlite3.Error)
    async def _handle_database_error(request: Request, exc: sqlite3.Error) -> JSONResponse:
        logger.error("Database error on %s: %s", request.url.path, exc, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": DATABASE_ERROR_MESSAGE})

    @app.exception_handler(Exception)
    async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s", request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": GENERIC_ERROR_MESSAGE})
