import logging
import typing

import httpx
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException

from .const import RELAYED_RESPONSE_HEADERS, STREAM_RESPONSE_HEADERS, TICKS_PER_SECOND
from .errors import BridgeError, UpstreamTransportError, UpstreamUnavailable
from .playback.negotiator import NegotiationResult
from .playback.sessions import PlaybackSession, SessionRegistry
from .schemas import MediaStreamInfo, StreamOptions
from .upstream.client import UpstreamClient
from .utils.http_utils import ProxyStreamingResponse, Streamer

logger = logging.getLogger(__name__)

HTTP_ERROR_CATEGORIES = {403: "forbidden", 404: "not_found", 405: "method_not_allowed"}


def handle_exceptions(exception: Exception) -> JSONResponse:
    """
    Convert an exception into a structured JSON error response.

    Args:
        exception (Exception): The exception that was raised.

    Returns:
        JSONResponse: ``{"error": category, "message": ..., "details": ...}`` with a matching status code.
    """
    if isinstance(exception, BridgeError):
        if exception.status_code >= 500:
            logger.error(f"{exception.category}: {exception.message} ({exception.details})")
        else:
            logger.info(f"{exception.category}: {exception.message}")
        return JSONResponse(status_code=exception.status_code, content=exception.to_dict())
    elif isinstance(exception, HTTPException):
        return JSONResponse(
            status_code=exception.status_code,
            content={
                "error": HTTP_ERROR_CATEGORIES.get(exception.status_code, "http_error"),
                "message": str(exception.detail),
            },
            headers=exception.headers,
        )
    else:
        logger.exception(f"Internal server error while handling request: {exception}")
        return JSONResponse(status_code=500, content={"error": "internal_error", "message": "Internal server error"})


def _video_metadata(stream: typing.Optional[MediaStreamInfo]) -> dict:
    stream = stream or MediaStreamInfo()
    return {
        "codec": stream.codec or "unknown",
        "profile": stream.profile,
        "level": stream.level,
        "width": stream.width or 0,
        "height": stream.height or 0,
        "bitrate": stream.bit_rate or 0,
        "fps": stream.real_frame_rate or stream.average_frame_rate or 0,
        "aspectRatio": stream.aspect_ratio,
        "colorSpace": stream.color_space,
        "colorRange": stream.color_range,
    }


def _audio_metadata(stream: typing.Optional[MediaStreamInfo]) -> dict:
    stream = stream or MediaStreamInfo()
    return {
        "codec": stream.codec or "unknown",
        "profile": stream.profile,
        "channels": stream.channels or 0,
        "sampleRate": stream.sample_rate or 0,
        "bitrate": stream.bit_rate or 0,
        "language": stream.language or "unknown",
        "title": stream.title,
    }


def stream_metadata(result: NegotiationResult, client: UpstreamClient) -> dict:
    """Shape a negotiation result into the JSON document returned by ``GET /stream/{itemId}``."""
    item = result.item
    source = result.media_source
    token = result.parameters.get("api_key", "")

    subtitles = []
    for sub in source.subtitle_streams:
        if sub.delivery_url:
            download_url = f"{client.base_url}{sub.delivery_url}"
        else:
            download_url = client.build_url(
                f"/Videos/{result.item_id}/{source.id}/Subtitles/{sub.index}/Stream.{sub.codec}", {"api_key": token}
            )
        subtitles.append(
            {
                "index": sub.index,
                "language": sub.language or "unknown",
                "title": sub.title or sub.display_title,
                "codec": sub.codec,
                "isDefault": sub.is_default,
                "isForced": sub.is_forced,
                "downloadUrl": download_url,
            }
        )

    run_time_ticks = item.get("RunTimeTicks")
    return {
        "streamUrl": result.stream_url,
        "hlsUrl": result.hls_url,
        "directUrl": result.direct_url,
        "directPlay": result.is_direct_play,
        "playMethod": result.method.value,
        "transcodeReasons": result.transcode_reasons,
        "item": {
            "id": item.get("Id", result.item_id),
            "name": item.get("Name"),
            "duration": round(run_time_ticks / TICKS_PER_SECOND) if run_time_ticks else 0,
            "overview": item.get("Overview") or "",
            "type": item.get("Type"),
            "year": item.get("ProductionYear"),
            "genres": item.get("Genres") or [],
        },
        "video": _video_metadata(source.video_stream),
        "audio": _audio_metadata(source.audio_stream),
        "subtitles": subtitles,
        "mediaSource": {
            "id": source.id,
            "container": source.container,
            "size": source.size,
            "bitrate": source.bitrate,
            "supportsDirectPlay": source.supports_direct_play,
            "supportsDirectStream": source.supports_direct_stream,
            "supportsTranscoding": source.supports_transcoding,
        },
        "playbackInfo": {
            "playSessionId": result.play_session_id,
            "userId": result.parameters.get("UserId"),
            "itemId": result.item_id,
        },
    }


def prepare_stream_headers(upstream_headers: httpx.Headers, default_content_type: str) -> dict:
    """Relay content type and length/range headers from upstream and add the fixed playback headers."""
    response_headers = {"content-type": upstream_headers.get("content-type", default_content_type)}
    response_headers.update({k: upstream_headers[k] for k in RELAYED_RESPONSE_HEADERS if k in upstream_headers})
    response_headers.update(STREAM_RESPONSE_HEADERS)
    return response_headers


async def proxy_playback_stream(
    request: Request,
    client: UpstreamClient,
    registry: SessionRegistry,
    result: NegotiationResult,
    options: StreamOptions,
) -> Response:
    """
    Proxy the negotiated direct URL to the caller and track it as a playback session.

    The session is registered before the upstream request is made and deregistered when the
    response finishes, the client disconnects, or the upstream stream fails.

    Args:
        request (Request): The incoming request; its Range header is forwarded verbatim.
        client (UpstreamClient): Authenticated upstream client.
        registry (SessionRegistry): Registry receiving the session record and byte counts.
        result (NegotiationResult): Output of the playback negotiation.
        options (StreamOptions): The caller's stream options.

    Returns:
        Response: A streaming response, or a structured 500 error if upstream could not be opened.
    """
    session = registry.register(
        PlaybackSession(
            item_id=result.item_id,
            item_name=result.item_name,
            quality=options.quality,
            bitrate=options.video_bitrate,
            user_agent=request.headers.get("user-agent", "Unknown"),
            client_ip=request.client.host if request.client else None,
            is_direct_play=result.is_direct_play,
            transcode_reasons=list(result.transcode_reasons),
            play_session_id=result.play_session_id,
            media_source_id=result.media_source_id,
        )
    )
    session_id = session.session_id

    upstream_headers = {"accept-encoding": "identity"}
    if range_header := request.headers.get("range"):
        upstream_headers["range"] = range_header

    try:
        streamer = await client.open_stream(
            result.direct_url, headers=upstream_headers, on_chunk=lambda size: registry.touch(session_id, size)
        )
    except UpstreamUnavailable as e:
        registry.deregister(session_id)
        return handle_exceptions(e)
    except BridgeError as e:
        registry.deregister(session_id)
        logger.error(f"Direct stream proxy error for {result.item_id}: {e.message}")
        return handle_exceptions(UpstreamTransportError("Failed to proxy video stream", e.details or e.message))

    async def pipe() -> typing.AsyncGenerator[bytes, None]:
        try:
            async for chunk in streamer.stream_content():
                yield chunk
        except UpstreamTransportError as e:
            logger.error(f"Stream error for {result.item_id}: {e.message}")
            raise
        finally:
            registry.deregister(session_id)

    async def finalize():
        registry.deregister(session_id)
        await streamer.close()

    return ProxyStreamingResponse(
        pipe(),
        status_code=streamer.response.status_code,
        headers=prepare_stream_headers(streamer.response.headers, "video/mp4"),
        background=BackgroundTask(finalize),
    )


async def proxy_segment(
    request: Request,
    client: UpstreamClient,
    registry: SessionRegistry,
    item_id: str,
    segment_path: str,
) -> Response:
    """
    Proxy a single HLS media segment. Segment bytes count towards total bandwidth only.
    """
    credential = await client.require_credential()
    params = {k: v for k, v in request.query_params.items() if k != "api_password"}
    params["api_key"] = credential.token
    url = client.build_url(f"/Videos/{item_id}/{segment_path}", params)

    try:
        streamer: Streamer = await client.open_stream(
            url, timeout=client.settings.segment_timeout, on_chunk=registry.add_bandwidth
        )
    except BridgeError as e:
        logger.error(f"Segment proxy error for {item_id}: {e.message}")
        return handle_exceptions(UpstreamTransportError("Failed to proxy segment", e.details or e.message))

    headers = prepare_stream_headers(streamer.response.headers, "video/mp2t")
    headers.pop("content-range", None)
    return ProxyStreamingResponse(
        streamer.stream_content(),
        status_code=streamer.response.status_code,
        headers=headers,
        background=BackgroundTask(streamer.close),
    )
