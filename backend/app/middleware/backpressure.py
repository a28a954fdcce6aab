import logging
from typing import Awaitable, Callable

import anyio
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core import metrics
from app.core.config import settings

logger = logging.getLogger(__name__)


class BackpressureMiddleware(BaseHTTPMiddleware):
    """Sheds coupon traffic with 429 once `max_concurrent` requests under `path_prefix` are in flight.

    Redemptions hold a database transaction for their whole duration, so the cap keeps
    the connection pool from being exhausted by a burst of checkouts.
    """

    def __init__(self, app, max_concurrent: int | None = None, path_prefix: str | None = None):
        super().__init__(app)
        limit = settings.max_concurrent_requests if max_concurrent is None else int(max_concurrent)
        self.path_prefix = path_prefix or settings.backpressure_path_prefix
        self.limiter = anyio.CapacityLimiter(limit) if limit > 0 else None

    def _guarded(self, request: Request) -> bool:
        return self.limiter is not None and request.url.path.startswith(self.path_prefix)

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable]):
        if not self._guarded(request):
            return await call_next(request)

        try:
            self.limiter.acquire_nowait()
        except anyio.WouldBlock:
            return self._shed(request)

        try:
            return await call_next(request)
        finally:
            self.limiter.release()

    def _shed(self, request: Request) -> JSONResponse:
        metrics.record_backpressure_rejection()
        request_id = getattr(request.state, "request_id", None)
        logger.warning("coupon_request_shed", extra={"path": request.url.path, "request_id": request_id})
        body: dict[str, object] = {"detail": "Too many requests", "code": "too_many_requests", "retry_after": 1}
        if request_id:
            body["request_id"] = request_id
        return JSONResponse(status_code=429, content=body, headers={"Retry-After": "1"})
