from typing import NamedTuple

TICKS_PER_SECOND = 10_000_000


class TranscodePreset(NamedTuple):
    max_width: int
    max_height: int
    video_bitrate: int


QUALITY_PRESETS = {
    "low": TranscodePreset(720, 480, 1_000_000),
    "medium": TranscodePreset(1280, 720, 2_500_000),
    "high": TranscodePreset(1920, 1080, 8_000_000),
}

QUALITY_TIERS = ("auto", *QUALITY_PRESETS)

MUSIC_TRANSCODING_BITRATE = 192_000

# Headers always attached to proxied video responses.
STREAM_RESPONSE_HEADERS = {
    "accept-ranges": "bytes",
    "cache-control": "public, max-age=3600",
    "access-control-allow-origin": "*",
    "access-control-allow-headers": "Range",
    "access-control-expose-headers": "Content-Length, Content-Range",
}

# Upstream response headers relayed to the caller.
RELAYED_RESPONSE_HEADERS = [
    "content-length",
    "content-range",
]
