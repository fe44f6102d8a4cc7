"""
Pytest configuration for the bridge tests.

Unit and route tests run against an in-process fake of the upstream media server.
The optional live tests read TEST_JELLYFIN_* variables; locally, add them to your .env file.
"""

import asyncio
import json
import os
import re
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio
from dotenv import load_dotenv

from mediabridge.configs import Settings
from mediabridge.main import create_app
from mediabridge.upstream import UpstreamClient

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")

UPSTREAM_URL = "http://jellyfin.test"
VIDEO_BYTES = bytes(range(256)) * 40


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


def _stream(stream_type: str, codec: str, **extra) -> dict:
    return {"Type": stream_type, "Codec": codec, **extra}


def _source(source_id: str, container: str, video: str, audio: Optional[str], **flags) -> dict:
    streams = [_stream("Video", video, Width=1920, Height=1080, BitRate=4_000_000, RealFrameRate=23.976, Index=0)]
    if audio:
        streams.append(_stream("Audio", audio, Channels=2, SampleRate=48000, Language="eng", Index=1))
    return {"Id": source_id, "Container": container, "Size": len(VIDEO_BYTES), "MediaStreams": streams, **flags}


ITEMS = {
    "movie-h264": {"Id": "movie-h264", "Name": "Big Buck Bunny", "Type": "Movie", "RunTimeTicks": 5_960_000_000},
    "movie-mkv": {"Id": "movie-mkv", "Name": "Sintel", "Type": "Movie"},
    "movie-mkv-playable": {"Id": "movie-mkv-playable", "Name": "Tears of Steel", "Type": "Movie"},
    "movie-hevc": {"Id": "movie-hevc", "Name": "Cosmos Laundromat", "Type": "Movie"},
    "no-sources": {"Id": "no-sources", "Name": "Placeholder", "Type": "Movie"},
}

PLAYBACK_SOURCES = {
    "movie-h264": [
        {
            **_source("src-h264", "mp4", "h264", "aac", SupportsDirectPlay=True, SupportsDirectStream=True),
            "MediaStreams": [
                _stream("Video", "h264", Width=1920, Height=1080, Index=0),
                _stream("Audio", "aac", Channels=2, Language="eng", Index=1),
                _stream("Subtitle", "srt", Language="eng", Title="English", Index=2, IsDefault=True),
            ],
        }
    ],
    "movie-mkv": [_source("src-mkv", "mkv", "h264", "aac", SupportsDirectPlay=False, SupportsDirectStream=True)],
    "movie-mkv-playable": [
        _source("src-mkv-2", "mkv", "h264", "aac", SupportsDirectPlay=True, SupportsDirectStream=True)
    ],
    "movie-hevc": [
        _source(
            "src-hevc",
            "mkv",
            "hevc",
            "dts",
            SupportsTranscoding=True,
            TranscodingInfo={"TranscodeReasons": ["VideoCodecNotSupported", "AudioCodecNotSupported"]},
        )
    ],
    "no-sources": [],
}


class ControlledVideoStream(httpx.AsyncByteStream):
    """Upstream body that never ends, or breaks after its first chunk, and records when it is closed."""

    def __init__(self, server: "FakeJellyfin", chunk_size: int = 1000):
        self.server = server
        self.chunk_size = chunk_size

    async def __aiter__(self):
        while True:
            self.server.streamed_bytes += self.chunk_size
            yield b"\x00" * self.chunk_size
            if self.server.stream_mode != "endless":
                raise self.server.stream_mode("peer closed connection without sending complete message body")
            await asyncio.sleep(0)

    async def aclose(self):
        self.server.stream_closed = True


class FakeJellyfin:
    """Minimal stand-in for the upstream media server, served through httpx.MockTransport."""

    def __init__(self):
        self.auth_calls = 0
        self.auth_status = 200
        self.auth_gate: Optional[asyncio.Event] = None
        self.tokens: list[str] = []
        self.reject_next_token = False
        self.fail_stream = False
        # "full", "endless" or an exception class raised after the first chunk
        self.stream_mode = "full"
        self.streamed_bytes = 0
        self.stream_closed = False
        self.session_status = 204
        self.transport_failures = 0
        self.requests: list[httpx.Request] = []
        self.playback_info_bodies: list[dict] = []
        self.session_reports: list[tuple[str, dict]] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def _authorized(self, request: httpx.Request) -> bool:
        token = request.headers.get("x-emby-token") or request.url.params.get("api_key")
        return token in self.tokens

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.lower()

        if path == "/users/authenticatebyname":
            return await self._authenticate(request)

        if self.transport_failures > 0:
            self.transport_failures -= 1
            raise httpx.ConnectError("connection refused", request=request)

        if self.reject_next_token or not self._authorized(request):
            self.reject_next_token = False
            return httpx.Response(401, json={"message": "Invalid token"})

        if match := re.fullmatch(r"/users/[^/]+/items/([^/]+)", path):
            item = ITEMS.get(match.group(1))
            return httpx.Response(200, json=item) if item else httpx.Response(404, text="Item not found")

        if match := re.fullmatch(r"/items/([^/]+)/playbackinfo", path):
            item_id = match.group(1)
            if item_id not in PLAYBACK_SOURCES:
                return httpx.Response(404)
            self.playback_info_bodies.append(json.loads(request.content))
            return httpx.Response(
                200, json={"MediaSources": PLAYBACK_SOURCES[item_id], "PlaySessionId": f"play-{item_id}"}
            )

        if re.fullmatch(r"/videos/[^/]+/stream", path):
            return self._video(request)

        if path.startswith("/videos/"):
            return httpx.Response(200, headers={"content-type": "video/mp2t"}, content=b"segment-data")

        if path.startswith("/sessions/playing"):
            self.session_reports.append((path, json.loads(request.content or b"{}")))
            return httpx.Response(self.session_status)

        if path == "/system/info":
            return httpx.Response(200, json={"Version": "10.9.11", "ServerName": "fake-jellyfin"})

        return httpx.Response(404)

    async def _authenticate(self, request: httpx.Request) -> httpx.Response:
        self.auth_calls += 1
        if self.auth_gate is not None:
            await self.auth_gate.wait()
        if self.auth_status != 200:
            return httpx.Response(self.auth_status, json={"message": "Invalid username or password"})
        body = json.loads(request.content)
        token = f"token-{self.auth_calls}"
        self.tokens.append(token)
        return httpx.Response(
            200,
            json={"AccessToken": token, "ServerId": "server-1", "User": {"Id": "user-1", "Name": body["Username"]}},
        )

    def _video(self, request: httpx.Request) -> httpx.Response:
        if self.fail_stream:
            return httpx.Response(500, text="Transcoder crashed")
        if self.stream_mode != "full":
            headers = {"content-type": "video/mp4"}
            if self.stream_mode != "endless":
                headers["content-length"] = "5000"
            return httpx.Response(200, headers=headers, stream=ControlledVideoStream(self))

        body, status, headers = VIDEO_BYTES, 200, {"content-type": "video/mp4"}
        if match := re.fullmatch(r"bytes=(\d+)-(\d*)", request.headers.get("range", "")):
            start = int(match.group(1))
            end = int(match.group(2)) if match.group(2) else len(VIDEO_BYTES) - 1
            body, status = VIDEO_BYTES[start : end + 1], 206
            headers["content-range"] = f"bytes {start}-{end}/{len(VIDEO_BYTES)}"
        headers["content-length"] = str(len(body))

        async def chunks():
            for offset in range(0, len(body), 1000):
                yield body[offset : offset + 1000]

        return httpx.Response(status, headers=headers, content=chunks())

    def query_of(self, request: httpx.Request) -> dict:
        return {k: v[0] for k, v in parse_qs(request.url.query.decode()).items()}


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def fake_jellyfin():
    return FakeJellyfin()


@pytest.fixture
def video_bytes():
    return VIDEO_BYTES


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    return Settings(
        jellyfin_server=UPSTREAM_URL,
        jellyfin_username="tester",
        jellyfin_password="secret",
        upstream_retry_attempts=1,
        auth_refresh_interval=0,
        session_sweep_interval=0,
        api_password=None,
        disable_admin=False,
        disable_docs=False,
    )


@pytest_asyncio.fixture
async def upstream(fake_jellyfin, test_settings, clock):
    client = UpstreamClient(test_settings, transport=fake_jellyfin.transport, clock=clock)
    yield client
    await client.aclose()


@pytest.fixture
def make_app(fake_jellyfin, test_settings):
    """Factory fixture building an app wired to the fake upstream, with optional settings overrides."""

    def _make(**overrides):
        settings = test_settings.model_copy(update=overrides) if overrides else test_settings
        return create_app(settings, transport=fake_jellyfin.transport)

    return _make


@pytest.fixture
def bridge_app(make_app):
    return make_app()


@pytest_asyncio.fixture
async def api(bridge_app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=bridge_app), base_url="http://bridge.test") as client:
        yield client
    await bridge_app.state.upstream_client.aclose()


@pytest.fixture
def live_settings():
    server = os.environ.get("TEST_JELLYFIN_SERVER")
    if not server:
        pytest.skip("TEST_JELLYFIN_SERVER not set")
    return Settings(
        jellyfin_server=server,
        jellyfin_username=os.environ.get("TEST_JELLYFIN_USERNAME", ""),
        jellyfin_password=os.environ.get("TEST_JELLYFIN_PASSWORD", ""),
    )
