import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Optional

from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from mediabridge.configs import Settings, settings as default_settings

logger = logging.getLogger(__name__)

# Plain ASGI: streaming responses must receive http.disconnect directly.


class AccessControlMiddleware:
    """Middleware that hides the API docs and the admin endpoints based on settings."""

    def __init__(self, app: ASGIApp, settings: Optional[Settings] = None):
        self.app = app
        self.settings = settings or default_settings

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            path = scope["path"]
            s = self.settings
            blocked = (s.disable_docs and (path in ("/docs", "/redoc") or path.startswith("/openapi"))) or (
                s.disable_admin and path.startswith("/admin")
            )
            if blocked:
                response = JSONResponse(status_code=404, content={"error": "not_found", "message": "Not Found"})
                await response(scope, receive, send)
                return
        await self.app(scope, receive, send)


class RequestStats:
    """Request counters and a bounded log of recent requests for the admin endpoints."""

    TRACKED_PREFIXES = ("/stream", "/admin/stats", "/health")

    def __init__(self, recent_limit: int = 50, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.start_time = clock()
        self.request_count = 0
        self.endpoints = {prefix: {"count": 0, "avgResponse": 0, "totalTime": 0} for prefix in self.TRACKED_PREFIXES}
        self.recent = deque(maxlen=recent_limit)

    def record(self, method: str, path: str, status_code: int, duration_ms: int, user_agent: str, ip: Optional[str]):
        self.request_count += 1
        self.recent.appendleft(
            {
                "method": method,
                "path": path,
                "statusCode": status_code,
                "duration": duration_ms,
                "userAgent": user_agent,
                "ip": ip,
                "timestamp": datetime.now(tz=timezone.utc).isoformat(),
            }
        )
        for prefix, stats in self.endpoints.items():
            if path.startswith(prefix):
                stats["count"] += 1
                stats["totalTime"] += duration_ms
                stats["avgResponse"] = round(stats["totalTime"] / stats["count"])
                break

    @property
    def uptime(self) -> float:
        return self._clock() - self.start_time

    def recent_requests(self, limit: Optional[int] = None) -> list:
        entries = list(self.recent)
        return entries[:limit] if limit is not None else entries


class RequestStatsMiddleware:
    def __init__(self, app: ASGIApp, stats: RequestStats):
        self.app = app
        self.stats = stats

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        status_code = 500

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = round((time.perf_counter() - started) * 1000)
            headers = Headers(scope=scope)
            client = scope.get("client")
            self.stats.record(
                scope["method"],
                scope["path"],
                status_code,
                duration_ms,
                headers.get("user-agent", "Unknown"),
                client[0] if client else None,
            )
            logger.debug(f"{scope['method']} {scope['path']} - {status_code} ({duration_ms}ms)")
