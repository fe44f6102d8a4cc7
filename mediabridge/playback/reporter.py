import logging
import math
from typing import Any, Optional

from mediabridge.const import TICKS_PER_SECOND
from mediabridge.errors import BridgeError, InvalidArgument
from mediabridge.upstream.client import UpstreamClient

logger = logging.getLogger(__name__)


def seconds_to_ticks(position: float) -> int:
    return int(round(position * TICKS_PER_SECOND))


def validate_position(position: Any) -> float:
    """Accept non-negative ints and floats only; booleans and numeric strings are rejected."""
    if isinstance(position, bool) or not isinstance(position, (int, float)):
        raise InvalidArgument("Invalid position value")
    if not math.isfinite(position) or position < 0:
        raise InvalidArgument("Invalid position value")
    return position


def _failure(error: str, exc: Exception) -> dict:
    details = (exc.details or exc.message) if isinstance(exc, BridgeError) else str(exc)
    return {"success": False, "error": error, "details": details}


class PlaybackReporter:
    """
    Forwards client playback events to the upstream session endpoints.

    Upstream failures never propagate: they come back as ``success: false`` bodies so that a
    flaky telemetry call cannot interrupt playback.
    """

    def __init__(self, client: UpstreamClient):
        self.client = client

    async def report_progress(
        self,
        item_id: str,
        position: Any,
        is_paused: bool = False,
        play_method: str = "Transcode",
        play_session_id: Optional[str] = None,
    ) -> dict:
        position = validate_position(position)
        payload = {
            "ItemId": item_id,
            "PositionTicks": seconds_to_ticks(position),
            "IsPaused": is_paused,
            "PlayMethod": play_method,
        }
        if play_session_id:
            payload["PlaySessionId"] = play_session_id

        try:
            await self.client.request("POST", "/Sessions/Playing/Progress", json=payload)
        except Exception as e:
            logger.error(f"Progress report error for {item_id}: {e}")
            return _failure("Progress report failed", e)
        return {"success": True, "position": position, "isPaused": is_paused}

    async def report_start(
        self,
        item_id: str,
        play_session_id: Optional[str] = None,
        media_source_id: Optional[str] = None,
        audio_stream_index: Optional[int] = None,
        subtitle_stream_index: Optional[int] = None,
    ) -> dict:
        payload = {
            "ItemId": item_id,
            "PlaySessionId": play_session_id,
            "MediaSourceId": media_source_id or item_id,
            "AudioStreamIndex": audio_stream_index,
            "SubtitleStreamIndex": subtitle_stream_index,
        }
        try:
            await self.client.request("POST", "/Sessions/Playing", json=payload)
        except Exception as e:
            logger.error(f"Playback start error for {item_id}: {e}")
            return _failure("Failed to report playback start", e)
        return {"success": True}

    async def report_stop(self, item_id: str, position: Any = None, play_session_id: Optional[str] = None) -> dict:
        ticks = seconds_to_ticks(validate_position(position)) if position is not None else 0
        payload = {"ItemId": item_id, "PositionTicks": ticks, "PlaySessionId": play_session_id}
        try:
            await self.client.request("POST", "/Sessions/Playing/Stopped", json=payload)
        except Exception as e:
            logger.error(f"Playback stop error for {item_id}: {e}")
            return _failure("Failed to report playback stop", e)
        return {"success": True}
