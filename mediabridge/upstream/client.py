import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from mediabridge.configs import Settings, settings as default_settings
from mediabridge.errors import (
    AuthenticationError,
    UpstreamHTTPError,
    UpstreamProtocolError,
    UpstreamTransportError,
    UpstreamUnavailable,
)
from mediabridge.utils.http_utils import ChunkCallback, Streamer, create_httpx_client, upstream_error_detail

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    token: str
    user_id: str
    server_id: Optional[str]
    user_name: Optional[str]
    authenticated_at: float

    def is_expired(self, max_age: float, now: float) -> bool:
        return now - self.authenticated_at > max_age


class UpstreamClient:
    """
    HTTP client for the upstream media server that owns the shared access token.

    Every call goes through :meth:`ensure_authenticated`. Concurrent callers that find the token
    missing or stale all await one shared authentication task instead of starting their own.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or default_settings
        self.base_url = self.settings.jellyfin_server.rstrip("/")
        self.http = create_httpx_client(
            self.settings.transport_config,
            transport=transport,
            base_url=self.base_url,
            timeout=self.settings.upstream_timeout,
        )
        self._clock = clock
        self._credential: Optional[Credential] = None
        self._auth_task: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self.last_auth_error: Optional[str] = None

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    def needs_authentication(self) -> bool:
        return self._credential is None or self._credential.is_expired(
            self.settings.auth_cache_duration, self._clock()
        )

    def invalidate(self, credential: Optional[Credential] = None):
        """Drop the cached credential, or only the given one if it is still current."""
        if credential is None or self._credential is credential:
            self._credential = None

    async def ensure_authenticated(self) -> Credential:
        """Return a valid credential, authenticating first when none is cached or it is too old."""
        if not self.needs_authentication():
            return self._credential
        return await self.authenticate()

    async def authenticate(self) -> Credential:
        """Authenticate against the upstream server, joining an attempt that is already running."""
        if self._auth_task is None or self._auth_task.done():
            self._auth_task = asyncio.create_task(self._authenticate())
            self._auth_task.add_done_callback(self._auth_finished)
        # Shielded so one cancelled waiter does not cancel the attempt for everybody else.
        return await asyncio.shield(self._auth_task)

    def _auth_finished(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        self.last_auth_error = str(error) if error else None

    async def _authenticate(self) -> Credential:
        s = self.settings
        headers = {
            "X-Emby-Authorization": (
                f'MediaBrowser Client="{s.client_name}", Device="Server", '
                f'DeviceId="{s.device_id}", Version="{s.client_version}"'
            )
        }
        body = {"Username": s.jellyfin_username, "Pw": s.jellyfin_password}

        try:
            response = await self.http.post(
                "/Users/AuthenticateByName", json=body, headers=headers, timeout=s.auth_timeout
            )
            response.raise_for_status()
            payload = response.json()
            credential = Credential(
                token=payload["AccessToken"],
                user_id=payload["User"]["Id"],
                user_name=payload["User"].get("Name"),
                server_id=payload.get("ServerId"),
                authenticated_at=self._clock(),
            )
        except httpx.HTTPStatusError as e:
            raise AuthenticationError(
                f"Authentication failed: {e.response.status_code}", upstream_error_detail(e.response)
            ) from e
        except httpx.ConnectError as e:
            raise AuthenticationError(f"Cannot connect to upstream server at {self.base_url}", str(e)) from e
        except httpx.RequestError as e:
            raise AuthenticationError("Authentication error", str(e)) from e
        except (ValueError, KeyError, TypeError) as e:
            raise AuthenticationError("Malformed authentication response", str(e)) from e

        self._credential = credential
        logger.info(f"Authenticated as: {credential.user_name}")
        return credential

    async def start(self):
        """Authenticate once and keep the token fresh in the background. Never raises."""
        try:
            await self.authenticate()
        except AuthenticationError as e:
            logger.error(f"Initial authentication failed: {e.message} ({e.details}); API calls will retry")

        if self.settings.auth_refresh_interval > 0 and self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def _refresh_loop(self):
        while True:
            try:
                await asyncio.sleep(self.settings.auth_refresh_interval)
                if self.needs_authentication():
                    logger.info("Refreshing upstream authentication")
                    await self.authenticate()
            except asyncio.CancelledError:
                return
            except AuthenticationError as e:
                logger.warning(f"Background re-authentication failed: {e.message} ({e.details})")
            except Exception as e:
                logger.exception(f"Unexpected error in authentication refresh: {e}")

    async def aclose(self):
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        await self.http.aclose()

    async def require_credential(self) -> Credential:
        try:
            return await self.ensure_authenticated()
        except AuthenticationError as e:
            raise UpstreamUnavailable("Unable to authenticate with the upstream server", e.details or e.message) from e

    def _auth_headers(self, credential: Credential, headers: Optional[dict] = None) -> dict:
        request_headers = {"X-Emby-Token": credential.token}
        request_headers.update(headers or {})
        return request_headers

    async def _send(self, method: str, path: str, credential: Credential, headers=None, **kwargs) -> httpx.Response:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(1, self.settings.upstream_retry_attempts)),
                wait=wait_exponential(multiplier=0.5, max=4),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    return await self.http.request(
                        method, path, headers=self._auth_headers(credential, headers), **kwargs
                    )
        except httpx.TimeoutException as e:
            raise UpstreamTransportError(f"Timeout during {method} {path}", str(e)) from e
        except httpx.TransportError as e:
            raise UpstreamTransportError(f"Error during {method} {path}", str(e)) from e

    async def request(self, method: str, path: str, headers: Optional[dict] = None, **kwargs) -> httpx.Response:
        """
        Send an authenticated request to the upstream server.

        A 401 answer invalidates the token, triggers one re-authentication and one retry.

        Raises:
            UpstreamUnavailable: If no credential can be obtained.
            UpstreamTransportError: If the request fails on the network level after retries.
            UpstreamHTTPError: If upstream answers with a status >= 400.
        """
        credential = await self.require_credential()
        response = await self._send(method, path, credential, headers=headers, **kwargs)

        if response.status_code == 401:
            logger.warning(f"Upstream rejected token for {method} {path}, re-authenticating")
            self.invalidate(credential)
            credential = await self.require_credential()
            response = await self._send(method, path, credential, headers=headers, **kwargs)

        if response.is_error:
            raise UpstreamHTTPError(
                response.status_code,
                f"Upstream returned HTTP {response.status_code} for {method} {path}",
                upstream_error_detail(response),
            )
        return response

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamProtocolError("Upstream returned invalid JSON", str(e)) from e

    async def get_json(self, path: str, params: Optional[dict] = None) -> Any:
        return self._decode(await self.request("GET", path, params=params))

    async def post_json(self, path: str, json: Optional[dict] = None) -> Any:
        return self._decode(await self.request("POST", path, json=json))

    async def system_info(self, timeout: float = 5) -> dict:
        return self._decode(await self.request("GET", "/System/Info", timeout=timeout))

    async def open_stream(
        self,
        url: str,
        headers: Optional[dict] = None,
        timeout: Any = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> Streamer:
        """
        Open a streaming GET against an upstream URL (absolute or relative to the server).

        The default timeout is ``None`` because video streams stay open for the whole playback.
        """
        credential = await self.require_credential()
        streamer = Streamer(self.http, on_chunk=on_chunk)
        await streamer.create_streaming_response(url, self._auth_headers(credential, headers), timeout=timeout)
        return streamer

    def build_url(self, path: str, params: Optional[dict] = None) -> str:
        url = f"{self.base_url}{path}"
        if params:
            return f"{url}?{urlencode(params)}"
        return url
