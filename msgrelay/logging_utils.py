import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from msgrelay.metrics import record_http_request


# request_id of the HTTP request being served, if any
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Pipeline identifiers (idempotency_key, event_key, ...) for the unit of work in progress
log_context_ctx: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_ctx.get()


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """
    Stamp every log line emitted inside the block with ``fields``.

    Nested blocks add to (and may override) the outer fields. None values
    are dropped.

    Example:
        with log_context(idempotency_key=key):
            logger.info("Claim acquired")
    """
    merged = {**log_context_ctx.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = log_context_ctx.set(merged)
    try:
        yield
    finally:
        log_context_ctx.reset(token)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter adding ISO-8601 ``ts``, ``level``, the current request_id
    and any fields bound with ``log_context``. Fields passed via ``extra`` win.
    """

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            now = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = now.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname

        if "request_id" not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record["request_id"] = req_id

        for key, value in log_context_ctx.get().items():
            log_record.setdefault(key, value)


def setup_logging(log_level: str = "INFO"):
    """
    Route the root logger and uvicorn's loggers through one JSON handler on stdout.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))
    logger.addHandler(json_handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # RequestLoggingMiddleware writes the access log
    logging.getLogger("uvicorn.access").disabled = True

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line per HTTP request.

    Keys: ts, level, request_id, method, path, status, latency_ms.
    Webhook requests add provider, event_key, result and dup
    (see ``log_webhook_data``).
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.perf_counter() - start_time

            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=latency_seconds,
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            if hasattr(request.state, "webhook_log_data"):
                log_data.update(request.state.webhook_log_data)

            logger = logging.getLogger("msgrelay.requests")
            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(
    request: Request,
    provider: Optional[str] = None,
    event_key: Optional[str] = None,
    result: Optional[str] = None,
    dup: bool = False,
):
    """
    Attach callback fields to the request so the middleware's access line
    carries them.

    Args:
        request: FastAPI request object
        provider: Provider name from the URL
        event_key: Derived event idempotency key, when the payload parsed
        result: processed, ignored, stored_orphan or the rejection reason
        dup: Whether the callback was a duplicate
    """
    webhook_data = {"dup": dup}
    if provider is not None:
        webhook_data["provider"] = provider
    if event_key is not None:
        webhook_data["event_key"] = event_key
    if result is not None:
        webhook_data["result"] = result

    request.state.webhook_log_data = webhook_data
