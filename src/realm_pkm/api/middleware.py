"""Request tracing middleware.

Gives every request an id (client-supplied ``X-Request-ID`` or a new
one), exposes it to log records and service traces, and records one
``http_request`` metric per request. Unhandled errors become a 500 whose
``error_id`` is that request id.
"""
import logging
import re
import time

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from realm_pkm.observability import metrics, new_request_id, request_id_var

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Client ids are echoed into logs, so only short plain tokens are accepted
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def internal_error_body(error_id: str) -> dict:
    """Body of every 500 response; details stay in the log."""
    return {"error": "InternalError", "message": "Internal server error", "error_id": error_id}


class RequestTracingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next):
        supplied = request.headers.get(REQUEST_ID_HEADER, "")
        request_id = supplied if _VALID_REQUEST_ID.match(supplied) else new_request_id()
        token = request_id_var.set(request_id)
        request.state.request_id = request_id

        started = time.perf_counter()
        error = None
        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception(f"Unhandled error on {request.method} {request.url.path}")
            error = e
            response = JSONResponse(status_code=500, content=internal_error_body(request_id))
        finally:
            request_id_var.reset(token)
        duration_ms = (time.perf_counter() - started) * 1000

        failed = response.status_code >= 500
        if error is not None:
            error_message, error_code = str(error), type(error).__name__
        else:
            error_message = f"HTTP {response.status_code}" if failed else None
            error_code = str(response.status_code) if failed else None
        metrics.record_operation(
            "http_request", duration_ms, not failed, error=error_message, error_code=error_code
        )
        logger.info(
            f"[{request_id}] {request.method} {request.url.path} -> "
            f"{response.status_code} ({duration_ms:.1f}ms)"
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
