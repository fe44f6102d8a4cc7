import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse

from mediabridge.dependencies import get_negotiator, get_reporter, get_session_registry, get_upstream_client
from mediabridge.handlers import proxy_playback_stream, proxy_segment, stream_metadata
from mediabridge.playback import PlaybackNegotiator, PlaybackReporter, SessionRegistry
from mediabridge.schemas import PlaybackStartReport, PlaybackStopReport, ProgressReport, StreamOptions
from mediabridge.upstream import UpstreamClient

logger = logging.getLogger(__name__)

stream_router = APIRouter()


@stream_router.get("/{item_id}", summary="Negotiate playback for an item")
async def get_stream(
    request: Request,
    item_id: str,
    options: Annotated[StreamOptions, Query()],
    client: Annotated[UpstreamClient, Depends(get_upstream_client)],
    negotiator: Annotated[PlaybackNegotiator, Depends(get_negotiator)],
    registry: Annotated[SessionRegistry, Depends(get_session_registry)],
):
    """
    Negotiate playback for an item.

    Without ``format`` the negotiation metadata is returned as JSON, ``format=hls`` redirects to the
    upstream HLS manifest and ``format=direct`` proxies the video bytes with range support.
    """
    result = await negotiator.negotiate(item_id, options)

    if options.output_format == "hls":
        logger.info(f"HLS requested for {item_id}, redirecting to manifest")
        return RedirectResponse(result.hls_url)

    if options.output_format == "direct":
        return await proxy_playback_stream(request, client, registry, result, options)

    return stream_metadata(result, client)


@stream_router.get("/{item_id}/segments/{segment_path:path}", summary="Proxy an HLS media segment")
async def get_segment(
    request: Request,
    item_id: str,
    segment_path: str,
    client: Annotated[UpstreamClient, Depends(get_upstream_client)],
    registry: Annotated[SessionRegistry, Depends(get_session_registry)],
):
    return await proxy_segment(request, client, registry, item_id, segment_path)


@stream_router.post("/{item_id}/progress", summary="Report playback progress")
async def report_progress(
    item_id: str,
    report: ProgressReport,
    reporter: Annotated[PlaybackReporter, Depends(get_reporter)],
):
    return await reporter.report_progress(
        item_id, report.position, report.is_paused, report.play_method, report.play_session_id
    )


@stream_router.post("/{item_id}/start", summary="Report playback start")
async def report_start(
    item_id: str,
    report: PlaybackStartReport,
    reporter: Annotated[PlaybackReporter, Depends(get_reporter)],
):
    return await reporter.report_start(
        item_id,
        play_session_id=report.play_session_id,
        media_source_id=report.media_source_id,
        audio_stream_index=report.audio_stream_index,
        subtitle_stream_index=report.subtitle_stream_index,
    )


@stream_router.post("/{item_id}/stop", summary="Report playback stop")
async def report_stop(
    item_id: str,
    report: PlaybackStopReport,
    reporter: Annotated[PlaybackReporter, Depends(get_reporter)],
):
    return await reporter.report_stop(item_id, report.position, report.play_session_id)
