"""Request logging middleware with request id propagation and latency headers."""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestLoggerMiddleware(BaseHTTPMiddleware):
    """Log each request with its id, status and latency.

    The request id is taken from ``X-Request-ID`` when the caller sends one
    and stored on ``request.state.request_id`` so handlers can reuse it as
    the pipeline request id.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        request_id = request.headers.get(REQUEST_ID_HEADER) or f"req-{uuid.uuid4().hex[:16]}"
        request.state.request_id = request_id

        logger.info(
            f"→ {request.method} {request.url.path} "
            f"[{request_id}] from {request.client.host if request.client else 'unknown'}"
        )

        try:
            response = await call_next(request)
        except Exception as e:
            latency_ms = (time.time() - start_time) * 1000
            logger.error(
                f"✗ {request.method} {request.url.path} "
                f"[{request_id}] ERROR in {latency_ms:.0f}ms: {e}"
            )
            raise

        latency_ms = (time.time() - start_time) * 1000
        task_state = response.headers.get("X-Task-State", "")
        logger.info(
            f"← {request.method} {request.url.path} "
            f"[{request_id}] {response.status_code} in {latency_ms:.0f}ms"
            + (f" state={task_state}" if task_state else "")
        )

        response.headers["X-Response-Time"] = f"{latency_ms:.2f}ms"
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
