import re
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic.alias_generators import to_pascal

from mediabridge.const import QUALITY_TIERS


def parse_int_param(value: Any, default: int, min_value: int = 1, max_value: int = 1000) -> int:
    """
    Parse a loosely formatted integer (``"720p"`` -> 720) and clamp it to ``[min_value, max_value]``.

    Values without a leading integer fall back to ``default``.
    """
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, int):
        parsed = value
    else:
        match = re.match(r"\s*([-+]?\d+)", str(value))
        if not match:
            return default
        parsed = int(match.group(1))
    return max(min_value, min(max_value, parsed))


class GenericParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# field name -> (default, min, max)
_STREAM_INT_BOUNDS = {
    "max_width": (1920, 1, 7680),
    "max_height": (1080, 1, 4320),
    "video_bitrate": (5_000_000, 64_000, 200_000_000),
    "audio_channels": (2, 1, 8),
}


class StreamOptions(GenericParams):
    max_width: int = Field(1920, alias="maxWidth", description="Maximum output width in pixels.")
    max_height: int = Field(1080, alias="maxHeight", description="Maximum output height in pixels.")
    video_bitrate: int = Field(5_000_000, alias="videoBitrate", description="Video bitrate ceiling in bits/s.")
    audio_codec: str = Field("aac", alias="audioCodec", description="Audio codec to transcode to.")
    video_codec: str = Field("h264", alias="videoCodec", description="Video codec to transcode to.")
    container: Optional[str] = Field(
        None, description="Output container. Defaults to the client profile's container (mp4 for browsers, ts otherwise)."
    )
    audio_channels: int = Field(2, alias="audioChannels", description="Maximum number of audio channels.")
    quality: str = Field("auto", description="Quality tier: auto, low, medium or high.")
    output_format: Optional[Literal["hls", "direct"]] = Field(
        None, alias="format", description="hls redirects to the manifest, direct proxies bytes, absent returns metadata."
    )
    client: Optional[str] = Field(None, description="Client capability profile, e.g. browser or native.")

    @field_validator("max_width", "max_height", "video_bitrate", "audio_channels", mode="before")
    @classmethod
    def clamp_int(cls, value: Any, info: ValidationInfo) -> int:
        default, min_value, max_value = _STREAM_INT_BOUNDS[info.field_name]
        return parse_int_param(value, default, min_value, max_value)

    @field_validator("quality", mode="before")
    @classmethod
    def normalize_quality(cls, value: Any) -> str:
        quality = str(value or "auto").strip().lower()
        return quality if quality in QUALITY_TIERS else "auto"

    @field_validator("output_format", mode="before")
    @classmethod
    def normalize_format(cls, value: Any) -> Optional[str]:
        fmt = str(value or "").strip().lower()
        return fmt if fmt in ("hls", "direct") else None


class ProgressReport(GenericParams):
    # Left untyped so the reporter can reject bad positions itself before touching upstream.
    position: Any = Field(None, description="Playback position in seconds.")
    is_paused: bool = Field(False, alias="isPaused")
    play_method: str = Field("Transcode", alias="playMethod")
    play_session_id: Optional[str] = Field(None, alias="playSessionId")


class PlaybackStartReport(GenericParams):
    play_session_id: Optional[str] = Field(None, alias="playSessionId")
    media_source_id: Optional[str] = Field(None, alias="mediaSourceId")
    audio_stream_index: Optional[int] = Field(None, alias="audioStreamIndex")
    subtitle_stream_index: Optional[int] = Field(None, alias="subtitleStreamIndex")


class PlaybackStopReport(GenericParams):
    position: Any = Field(None, description="Final playback position in seconds.")
    play_session_id: Optional[str] = Field(None, alias="playSessionId")


class UpstreamModel(BaseModel):
    """Read-only view of an upstream payload; field names map to the server's PascalCase keys."""

    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True, extra="ignore", frozen=True)


class MediaStreamInfo(UpstreamModel):
    type: Optional[str] = None
    codec: Optional[str] = None
    profile: Optional[str] = None
    level: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    bit_rate: Optional[int] = None
    real_frame_rate: Optional[float] = None
    average_frame_rate: Optional[float] = None
    aspect_ratio: Optional[str] = None
    color_space: Optional[str] = None
    color_range: Optional[str] = None
    channels: Optional[int] = None
    sample_rate: Optional[int] = None
    language: Optional[str] = None
    title: Optional[str] = None
    display_title: Optional[str] = None
    index: Optional[int] = None
    is_default: bool = False
    is_forced: bool = False
    delivery_url: Optional[str] = None


class TranscodingInfo(UpstreamModel):
    transcode_reasons: List[str] = Field(default_factory=list)


class MediaSourceInfo(UpstreamModel):
    id: str
    container: Optional[str] = None
    size: Optional[int] = None
    bitrate: Optional[int] = None
    media_streams: List[MediaStreamInfo] = Field(default_factory=list)
    supports_direct_play: bool = False
    supports_direct_stream: bool = False
    supports_transcoding: bool = False
    transcoding_url: Optional[str] = None
    transcoding_info: Optional[TranscodingInfo] = None

    def first_stream(self, stream_type: str) -> Optional[MediaStreamInfo]:
        return next((s for s in self.media_streams if s.type == stream_type), None)

    @property
    def video_stream(self) -> Optional[MediaStreamInfo]:
        return self.first_stream("Video")

    @property
    def audio_stream(self) -> Optional[MediaStreamInfo]:
        return self.first_stream("Audio")

    @property
    def subtitle_streams(self) -> List[MediaStreamInfo]:
        return [s for s in self.media_streams if s.type == "Subtitle"]


class PlaybackInfo(UpstreamModel):
    media_sources: List[MediaSourceInfo] = Field(default_factory=list)
    play_session_id: Optional[str] = None
