import logging
from datetime import datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from mediabridge.dependencies import get_request_stats, get_session_registry, get_upstream_client
from mediabridge.errors import BridgeError
from mediabridge.middleware import RequestStats
from mediabridge.playback import SessionRegistry
from mediabridge.upstream import UpstreamClient
from mediabridge.utils.http_utils import Streamer

logger = logging.getLogger(__name__)

admin_router = APIRouter()


async def upstream_status(client: UpstreamClient) -> dict:
    """Probe the upstream server. Failures are reported as ``connected: false``."""
    checked_at = datetime.now(tz=timezone.utc).isoformat()
    try:
        info = await client.system_info() or {}
    except BridgeError as e:
        logger.warning(f"Upstream status check failed: {e.message}")
        return {
            "connected": False,
            "server": client.base_url,
            "error": e.details or e.message,
            "lastChecked": checked_at,
        }
    return {
        "connected": True,
        "server": client.base_url,
        "version": info.get("Version"),
        "serverName": info.get("ServerName"),
        "lastChecked": checked_at,
    }


@admin_router.get("/stats", summary="Server, upstream and streaming statistics")
async def get_stats(
    client: Annotated[UpstreamClient, Depends(get_upstream_client)],
    registry: Annotated[SessionRegistry, Depends(get_session_registry)],
    stats: Annotated[RequestStats, Depends(get_request_stats)],
):
    uptime = stats.uptime
    hours = uptime / 3600
    totals = registry.snapshot()
    credential = client.credential

    return {
        "server": {
            "uptime": round(uptime),
            "startTime": datetime.fromtimestamp(stats.start_time, tz=timezone.utc).isoformat(),
            "requestCount": stats.request_count,
            "requestsPerHour": round(stats.request_count / hours) if hours > 0 else 0,
        },
        "upstream": {
            **(await upstream_status(client)),
            "authenticated": credential is not None,
            "userName": credential.user_name if credential else None,
            "lastAuthError": client.last_auth_error,
        },
        "streaming": {
            "activeStreams": totals["active"],
            "totalStreams": totals["total_streams"],
            "totalBandwidth": Streamer.format_bytes(totals["total_bytes"]),
            "totalBytes": totals["total_bytes"],
        },
        "apiStats": stats.endpoints,
        "activeStreams": registry.list_active(),
        "recentRequests": stats.recent_requests(20),
    }


@admin_router.get("/requests", summary="Recent request log")
async def get_requests(
    stats: Annotated[RequestStats, Depends(get_request_stats)],
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
):
    return {"requests": stats.recent_requests(limit), "total": stats.request_count}
