import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from chatstore.metrics import record_http_request


# Request id of the HTTP request being served, if any
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Paths whose requests are neither counted nor logged at INFO
QUIET_PATHS = frozenset({"/metrics", "/health/live", "/health/ready"})

# Path parameters copied into the request log line
LOGGED_PATH_PARAMS = ("conversation_id", "message_id")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding a millisecond UTC `ts`, `level` and `request_id`."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record['ts'] = stamp.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Send every log record to stdout as one JSON object per line.

    Store, notifier and auto-reply loggers all propagate to the root logger.
    When the adapter runs under uvicorn its loggers are pointed at the same
    handler and its access log is switched off in favour of
    RequestLoggingMiddleware.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))
    root.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    return root


def _route_template(request: Request) -> str:
    """Matched route path such as /conversations/{conversation_id}, else the raw path."""
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one structured line per HTTP request and records request metrics.

    Log keys: ts, level, request_id, method, path, route, status,
    latency_ms, plus conversation_id / message_id when the route has them.
    Metrics are labelled with the route template so ids never become
    label values.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        start_time = time.time()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            latency_seconds = time.time() - start_time

            route = _route_template(request)
            if route not in QUIET_PATHS:
                record_http_request(
                    method=request.method,
                    path=route,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "route": route,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            path_params = request.scope.get("path_params", {})
            for name in LOGGED_PATH_PARAMS:
                if name in path_params:
                    log_data[name] = path_params[name]

            logger = logging.getLogger("chatstore.requests")
            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            elif route in QUIET_PATHS:
                logger.debug("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)
