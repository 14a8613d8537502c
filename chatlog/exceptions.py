"""
Error taxonomy for the message log and its HTTP handlers.

- ValidationError: caller supplied invalid input (400, no retry)
- NotFoundError: referenced conversation does not exist (404)
- MalformedPayloadError: webhook payload shape violation (logged and skipped,
  never surfaced over HTTP)
- StorageError: the persistence layer failed (500, caller may retry)
"""

import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ChatlogError(Exception):
    """Base class for all errors raised by the core."""


class ValidationError(ChatlogError):
    """Raised when a caller supplies invalid input (empty body, missing field)."""


class NotFoundError(ChatlogError):
    """Raised when a referenced conversation does not exist.

    Args:
        counterparty_id: Identifier of the conversation that was looked up.
    """

    def __init__(self, counterparty_id: str):
        self.counterparty_id = counterparty_id
        super().__init__(f"Conversation '{counterparty_id}' not found")


class MalformedPayloadError(ChatlogError):
    """Raised when a webhook payload is missing expected nested fields."""


class StorageError(ChatlogError):
    """Raised when the storage backend fails (connectivity, timeout, ...)."""


# =============================================================================
# Exception Handlers
# =============================================================================

async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc)},
    )


async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": "Conversation not found", "conversation_id": exc.counterparty_id},
    )


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    """
    Storage failures surface as a generic internal error.

    Webhook senders are expected to resubmit; ingestion is idempotent so a
    retry never duplicates stored state.
    """
    logger.error(f"Storage failure on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "storage unavailable"},
    )


def register_exception_handlers(app) -> None:
    """Attach the core error handlers to a FastAPI app."""
    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(StorageError, storage_error_handler)
