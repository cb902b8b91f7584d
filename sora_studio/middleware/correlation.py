"""
Correlation ID middleware for request tracing.

Accepts X-Correlation-ID from the client or generates a UUID4, keeps it in a
contextvar for the logger for the lifetime of the request, logs one line
when the request starts and one when it ends, and echoes the id back.
"""
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from sora_studio.utils.logger import correlation_id_var, logger, request_owner_id_var


def get_request_owner_id() -> str:
    """Owner resolved for the current request, empty before resolution"""
    return request_owner_id_var.get()


class CorrelationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        cid_token = correlation_id_var.set(cid)
        # Header value until resolve_owner replaces it with the authoritative owner
        owner_token = request_owner_id_var.set(request.headers.get("x-user-id", ""))

        route = {"method": request.method, "path": request.url.path}
        start = time.monotonic()
        logger.info(
            "request.started",
            extra={**route, "client_ip": request.client.host if request.client else ""},
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request.failed",
                extra={
                    **route,
                    "duration_ms": round((time.monotonic() - start) * 1000),
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            raise
        else:
            (logger.warning if response.status_code >= 400 else logger.info)(
                "request.completed",
                extra={
                    **route,
                    "status": response.status_code,
                    "duration_ms": round((time.monotonic() - start) * 1000),
                },
            )
            response.headers["X-Correlation-ID"] = cid
            return response
        finally:
            correlation_id_var.reset(cid_token)
            request_owner_id_var.reset(owner_token)
