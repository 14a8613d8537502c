import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterator, Optional

from fastapi import Request, Response
from pythonjsonlogger.json import JsonFormatter
from starlette.middleware.base import BaseHTTPMiddleware

from chatlog.metrics import record_http_request
from chatlog.utils import to_iso, utc_now


# Request and conversation being handled, stamped on every log line
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
counterparty_id_ctx: ContextVar[Optional[str]] = ContextVar("counterparty_id", default=None)


@contextmanager
def conversation_context(counterparty_id: Optional[str]) -> Iterator[None]:
    """Tag log lines emitted inside the block with the conversation they concern."""
    token = counterparty_id_ctx.set(counterparty_id)
    try:
        yield
    finally:
        counterparty_id_ctx.reset(token)


class ChatlogJsonFormatter(JsonFormatter):
    """JSON log lines with an ISO-8601 ts, the level, and the request/conversation in scope."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = to_iso(utc_now())
        log_record['level'] = record.levelname

        for key, var in (('request_id', request_id_ctx), ('counterparty_id', counterparty_id_ctx)):
            value = var.get()
            if value and key not in log_record:
                log_record[key] = value


def setup_logging(log_level: str = "INFO"):
    """
    Route the root logger and uvicorn's loggers to one JSON stdout handler.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root = logging.getLogger()
    root.setLevel(log_level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ChatlogJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # Requests are logged by RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    return root


def _route_path(request: Request) -> str:
    """Route template (e.g. /api/conversations/{counterparty_id}) to keep labels bounded."""
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests in structured JSON format.

    Log keys:
    - ts, level, request_id
    - method, path, status, latency_ms
    - counterparty_id for conversation routes

    For /webhook requests, also includes the ingestion counters
    (received, created, duplicates, status_updated, status_ignored, malformed, invalid).
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        # Set request_id in context for all loggers to use
        token = request_id_ctx.set(request_id)
        start_time = time.time()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.time() - start_time
            latency_ms = round(latency_seconds * 1000, 2)
            path = _route_path(request)

            # Exclude /metrics endpoint to avoid self-instrumentation noise
            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": latency_ms,
            }

            counterparty_id = request.scope.get("path_params", {}).get("counterparty_id")
            if counterparty_id:
                log_data["counterparty_id"] = counterparty_id

            if hasattr(request.state, "ingestion_log_data"):
                log_data.update(request.state.ingestion_log_data)

            logger = logging.getLogger("chatlog.requests")

            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_ingestion_data(request: Request, counts: dict) -> None:
    """
    Attach webhook ingestion counters to the request state.
    They are included in the request log line by the middleware.

    Args:
        request: FastAPI request object
        counts: IngestionReport counters
    """
    request.state.ingestion_log_data = dict(counts)
