import hashlib
import json
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("backoffice.access")

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _client_hash(request: Request) -> str | None:
    if not request.client:
        return None
    return hashlib.sha256((request.client.host or "").encode()).hexdigest()[:12]


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """One JSON access-log line per request; propagates or assigns X-Request-ID."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())[:8]
        request.state.request_id = request_id
        started = time.perf_counter()

        response: Response = await call_next(request)

        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            "client_ip_hash": _client_hash(request),
        }
        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(level, json.dumps(log_data))

        response.headers["X-Request-ID"] = request_id
        return response


def setup_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=_LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")
    # httpx logs every request at INFO; market pollers hit upstream every few seconds.
    logging.getLogger("httpx").setLevel(logging.WARNING)
