import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request

from mediabridge.configs import Settings, settings as default_settings
from mediabridge.dependencies import verify_api_key
from mediabridge.errors import BridgeError, InvalidArgument
from mediabridge.handlers import handle_exceptions
from mediabridge.middleware import AccessControlMiddleware, RequestStats, RequestStatsMiddleware
from mediabridge.playback import PlaybackNegotiator, PlaybackReporter, SessionRegistry, run_periodic_sweep
from mediabridge.routes import admin_router, stream_router
from mediabridge.upstream import UpstreamClient

logging.basicConfig(level=default_settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    client: UpstreamClient = app.state.upstream_client
    s: Settings = app.state.settings

    logger.info(f"Connecting to upstream server at {client.base_url}")
    await client.start()
    sweeper = None
    if s.session_sweep_interval > 0:
        sweeper = asyncio.create_task(
            run_periodic_sweep(app.state.session_registry, s.session_sweep_interval, s.session_stale_after)
        )
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
        await client.aclose()


async def error_handler(request: Request, exc: Exception):
    return handle_exceptions(exc)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    return handle_exceptions(InvalidArgument("Invalid request", f"{location}: {first.get('msg', 'invalid value')}"))


def create_app(settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """
    Build the application with its own upstream client, session registry and request statistics.

    Args:
        settings (Settings, optional): Configuration to use instead of the environment-loaded settings.
        transport (httpx.AsyncBaseTransport, optional): Transport for upstream requests, mainly for tests.
    """
    s = settings or default_settings
    app = FastAPI(
        title="Media Bridge",
        description="Streaming bridge between constrained clients and a Jellyfin server",
        lifespan=lifespan,
    )

    client = UpstreamClient(s, transport=transport)
    app.state.settings = s
    app.state.upstream_client = client
    app.state.session_registry = SessionRegistry()
    app.state.request_stats = RequestStats(recent_limit=s.recent_requests_limit)
    app.state.negotiator = PlaybackNegotiator(client, s)
    app.state.reporter = PlaybackReporter(client)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=s.cors_origins,
        allow_credentials=s.cors_origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Length", "Content-Range"],
    )
    app.add_middleware(AccessControlMiddleware, settings=s)
    app.add_middleware(RequestStatsMiddleware, stats=app.state.request_stats)

    app.add_exception_handler(BridgeError, error_handler)
    app.add_exception_handler(StarletteHTTPException, error_handler)
    app.add_exception_handler(Exception, error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    @app.get("/health")
    async def health_check():
        registry: SessionRegistry = app.state.session_registry
        return {
            "status": "healthy",
            "authenticated": client.credential is not None,
            "activeStreams": registry.active_count,
        }

    @app.get("/")
    async def index():
        return {
            "name": app.title,
            "endpoints": {
                "stream": "/stream/{itemId}",
                "segments": "/stream/{itemId}/segments/{path}",
                "progress": "/stream/{itemId}/progress",
                "start": "/stream/{itemId}/start",
                "stop": "/stream/{itemId}/stop",
                "stats": "/admin/stats",
                "health": "/health",
            },
        }

    app.include_router(stream_router, prefix="/stream", tags=["stream"], dependencies=[Depends(verify_api_key)])
    app.include_router(admin_router, prefix="/admin", tags=["admin"], dependencies=[Depends(verify_api_key)])
    return app


app = create_app()


def run():
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=3001, log_level=default_settings.log_level.lower())


if __name__ == "__main__":
    run()
