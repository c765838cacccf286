"""
Exception handlers for the blocktree HTTP app.

Maps the runtime error taxonomy onto status codes:

- NotFoundError: 404
- ConflictError: 409
- AmbiguousDeletionError: 400
- CycleError, ValidationError (and subclasses): 422
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from blocktree.runtime.errors import (
    AmbiguousDeletionError,
    BlockTreeError,
    ConflictError,
    CycleError,
    NotFoundError,
    ValidationError,
)
from blocktree.runtime.logging import get_api_logger, log_with_context

logger = get_api_logger()

STATUS_CODES: dict[type[BlockTreeError], int] = {
    NotFoundError: 404,
    ConflictError: 409,
    AmbiguousDeletionError: 400,
    CycleError: 422,
    ValidationError: 422,
}


def status_for(exc: BlockTreeError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 400


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register blocktree exception handlers on a FastAPI application.

    Args:
        app: FastAPI application instance
    """

    @app.exception_handler(BlockTreeError)
    async def blocktree_error_handler(request: Request, exc: BlockTreeError) -> Response:
        """Convert structured runtime errors into JSON responses."""
        status = status_for(exc)
        log_with_context(
            logger,
            logging.INFO if status == 404 else logging.WARNING,
            f"{request.method} {request.url.path} -> {status}: {exc.message}",
            type=exc.error_type,
        )
        return JSONResponse(status_code=status, content=exc.to_dict())
