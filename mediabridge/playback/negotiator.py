import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
from urllib.parse import parse_qs, urlparse

from pydantic import ValidationError

from mediabridge.configs import ClientProfile, Settings, settings as default_settings
from mediabridge.const import MUSIC_TRANSCODING_BITRATE, QUALITY_PRESETS
from mediabridge.errors import ItemNotFound, NoMediaSource, UpstreamHTTPError, UpstreamProtocolError
from mediabridge.schemas import MediaSourceInfo, PlaybackInfo, StreamOptions
from mediabridge.upstream.client import UpstreamClient

logger = logging.getLogger(__name__)

REMUX_REASON = "container remux"
FULL_TRANSCODE_REASON = "full transcode required"


class PlayMethod(str, Enum):
    DIRECT_PLAY = "direct-play"
    REMUX = "remux"
    TRANSCODE = "transcode"


@dataclass
class NegotiationResult:
    item_id: str
    item: dict
    method: PlayMethod
    media_source: MediaSourceInfo
    play_session_id: Optional[str]
    parameters: dict
    hls_url: str
    direct_url: str
    transcode_reasons: List[str] = field(default_factory=list)

    @property
    def is_direct_play(self) -> bool:
        return self.method is PlayMethod.DIRECT_PLAY

    @property
    def media_source_id(self) -> str:
        return self.media_source.id

    @property
    def stream_url(self) -> str:
        return self.hls_url if self.method is PlayMethod.TRANSCODE else self.direct_url

    @property
    def item_name(self) -> Optional[str]:
        return self.item.get("Name")


def upstream_transcode_reasons(media_source: MediaSourceInfo) -> List[str]:
    """Transcode reasons reported by upstream, from TranscodingInfo or the TranscodingUrl query string."""
    if media_source.transcoding_info and media_source.transcoding_info.transcode_reasons:
        return list(media_source.transcoding_info.transcode_reasons)
    if media_source.transcoding_url:
        values = parse_qs(urlparse(media_source.transcoding_url).query).get("TranscodeReasons", [])
        return [reason for value in values for reason in value.split(",") if reason]
    return []


def is_client_playable(profile: ClientProfile, media_source: MediaSourceInfo) -> bool:
    """Whether a constrained client can play the source as-is. Unconstrained profiles trust upstream."""
    if not profile.enforce_direct_play:
        return True
    video = media_source.video_stream
    audio = media_source.audio_stream
    return profile.allows(
        media_source.container or "",
        (video.codec if video else None) or "",
        # A source without audio only needs the video side to match.
        (audio.codec if audio else None) or "aac",
    )


class PlaybackNegotiator:
    """Chooses between direct play, remux and transcode for an item and builds the upstream URLs."""

    def __init__(self, client: UpstreamClient, settings: Optional[Settings] = None):
        self.client = client
        self.settings = settings or default_settings

    async def negotiate(self, item_id: str, options: StreamOptions) -> NegotiationResult:
        credential = await self.client.require_credential()
        profile = self.settings.get_client_profile(options.client)
        container = options.container or profile.default_container

        item = await self._fetch_item(credential.user_id, item_id)
        playback_info = await self._fetch_playback_info(credential.user_id, item_id, options, profile, container)
        if not playback_info.media_sources:
            raise NoMediaSource("No media source available")
        media_source = playback_info.media_sources[0]

        base_params = {
            "UserId": credential.user_id,
            "DeviceId": self.settings.device_id,
            "api_key": credential.token,
            "PlaySessionId": playback_info.play_session_id or "",
            "MediaSourceId": media_source.id,
        }

        playable = is_client_playable(profile, media_source)
        force_transcode = not playable or options.quality != "auto"

        if media_source.supports_direct_play and not force_transcode:
            method = PlayMethod.DIRECT_PLAY
            params = {**base_params, "Static": "true"}
            reasons = []
        elif media_source.supports_direct_stream and not force_transcode:
            method = PlayMethod.REMUX
            params = {**base_params, "Container": container}
            reasons = [REMUX_REASON]
        else:
            method = PlayMethod.TRANSCODE
            params = {**base_params, **self._transcode_params(options, container)}
            reasons = upstream_transcode_reasons(media_source) or [FULL_TRANSCODE_REASON]
            if options.quality != "auto":
                reasons.append(f"quality override: {options.quality}")

        logger.info(f"Negotiated {method.value} for item {item_id} (quality={options.quality}, client={options.client})")
        return NegotiationResult(
            item_id=item_id,
            item=item,
            method=method,
            media_source=media_source,
            play_session_id=playback_info.play_session_id,
            parameters=params,
            hls_url=self.client.build_url(f"/Videos/{item_id}/master.m3u8", params),
            direct_url=self.client.build_url(f"/Videos/{item_id}/stream", params),
            transcode_reasons=reasons,
        )

    @staticmethod
    def _transcode_params(options: StreamOptions, container: str) -> dict:
        max_width, max_height, video_bitrate = options.max_width, options.max_height, options.video_bitrate
        preset = QUALITY_PRESETS.get(options.quality)
        if preset is not None:
            max_width, max_height, video_bitrate = preset
        return {
            "VideoCodec": options.video_codec,
            "AudioCodec": options.audio_codec,
            "Container": container,
            "MaxWidth": str(max_width),
            "MaxHeight": str(max_height),
            "VideoBitrate": str(video_bitrate),
            "AudioChannels": str(options.audio_channels),
        }

    async def _fetch_item(self, user_id: str, item_id: str) -> dict:
        try:
            item = await self.client.get_json(f"/Users/{user_id}/Items/{item_id}")
        except UpstreamHTTPError as e:
            if e.upstream_status in (400, 404):
                raise ItemNotFound("Video not found", e.details) from e
            raise
        if not item:
            raise ItemNotFound("Video not found")
        if not isinstance(item, dict):
            raise UpstreamProtocolError("Unexpected item payload from upstream")
        return item

    async def _fetch_playback_info(
        self, user_id: str, item_id: str, options: StreamOptions, profile: ClientProfile, container: str
    ) -> PlaybackInfo:
        body = {
            "UserId": user_id,
            "MaxStreamingBitrate": options.video_bitrate,
            "MaxStaticBitrate": options.video_bitrate,
            "MusicStreamingTranscodingBitrate": MUSIC_TRANSCODING_BITRATE,
            "DirectPlayProfiles": profile.direct_play_profiles(),
            "TranscodingProfiles": [
                {
                    "Container": container,
                    "Type": "Video",
                    "AudioCodec": options.audio_codec,
                    "VideoCodec": options.video_codec,
                    "Context": "Streaming",
                    "MaxAudioChannels": options.audio_channels,
                }
            ],
        }
        try:
            payload = await self.client.post_json(f"/Items/{item_id}/PlaybackInfo", json=body)
        except UpstreamHTTPError as e:
            if e.upstream_status == 404:
                raise ItemNotFound("Video not found", e.details) from e
            raise
        try:
            return PlaybackInfo.model_validate(payload or {})
        except ValidationError as e:
            raise UpstreamProtocolError("Unexpected playback info payload from upstream", str(e)) from e
