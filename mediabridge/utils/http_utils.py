import logging
import typing
from functools import partial

import anyio
import h11
import httpx
from starlette.background import BackgroundTask
from starlette.concurrency import iterate_in_threadpool
from starlette.responses import Response
from starlette.types import Receive, Scope, Send
from tqdm.asyncio import tqdm as tqdm_asyncio

from mediabridge.configs import TransportConfig, settings
from mediabridge.errors import UpstreamHTTPError, UpstreamTransportError

logger = logging.getLogger(__name__)

ChunkCallback = typing.Callable[[int], None]


def create_httpx_client(
    transport_config: typing.Optional[TransportConfig] = None,
    transport: typing.Optional[httpx.AsyncBaseTransport] = None,
    follow_redirects: bool = True,
    **kwargs,
) -> httpx.AsyncClient:
    """
    Create an HTTPX AsyncClient configured from the transport settings.

    Args:
        transport_config (TransportConfig, optional): Proxy/SSL configuration. Defaults to the global settings.
        transport (httpx.AsyncBaseTransport, optional): Explicit transport; disables the configured mounts.
        follow_redirects (bool): Whether to follow 3xx redirects automatically.
        **kwargs: Additional AsyncClient keyword arguments (base_url, headers, ...).

    Returns:
        httpx.AsyncClient: Configured client.
    """
    transport_config = transport_config or settings.transport_config
    kwargs.setdefault("timeout", transport_config.timeout)

    if transport is not None:
        return httpx.AsyncClient(transport=transport, follow_redirects=follow_redirects, **kwargs)

    return httpx.AsyncClient(
        mounts=transport_config.get_mounts(),
        verify=not transport_config.disable_ssl_verification_globally,
        follow_redirects=follow_redirects,
        **kwargs,
    )


def upstream_error_detail(response: httpx.Response) -> str:
    """Extract a human readable message from an upstream error response."""
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(payload, dict):
        for key in ("message", "Message", "error"):
            if payload.get(key):
                return str(payload[key])
    return response.reason_phrase


class Streamer:
    def __init__(
        self,
        client: httpx.AsyncClient,
        on_chunk: typing.Optional[ChunkCallback] = None,
        show_progress: typing.Optional[bool] = None,
    ):
        """
        Initialize a Streamer on top of a shared HTTP client.

        Args:
            client (httpx.AsyncClient): The HTTP client to use for streaming. The streamer never closes it.
            on_chunk (callable, optional): Called with the size of every chunk received from upstream.
            show_progress (bool, optional): Show a tqdm progress bar. Defaults to settings.enable_streaming_progress.
        """
        self.client = client
        self.on_chunk = on_chunk
        self.show_progress = settings.enable_streaming_progress if show_progress is None else show_progress
        self.response: typing.Optional[httpx.Response] = None
        self.progress_bar = None
        self.bytes_transferred = 0
        self.start_byte = 0
        self.end_byte = 0
        self.total_size = 0

    async def create_streaming_response(
        self,
        url: str,
        headers: typing.Optional[dict] = None,
        timeout: typing.Any = httpx.USE_CLIENT_DEFAULT,
    ):
        """
        Open a streaming GET request against the upstream server.

        Args:
            url (str): Source URL for the streaming content.
            headers (dict, optional): Request headers, e.g. a forwarded Range header.
            timeout: Request timeout; ``None`` keeps the connection open for the whole playback.

        Raises:
            UpstreamHTTPError: If upstream answers with a status >= 400.
            UpstreamTransportError: If the connection fails or times out.
        """
        try:
            request = self.client.build_request("GET", url, headers=headers, timeout=timeout)
            self.response = await self.client.send(request, stream=True)
            self.response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"HTTP error {status} while opening upstream stream")
            await e.response.aclose()
            raise UpstreamHTTPError(status, f"Upstream returned HTTP {status} while opening stream")
        except httpx.TimeoutException:
            logger.warning("Timeout while opening upstream stream")
            raise UpstreamTransportError("Timeout while opening upstream stream")
        except httpx.RequestError as e:
            logger.error(f"Error opening upstream stream: {e}")
            raise UpstreamTransportError("Error opening upstream stream", str(e))

    async def stream_content(self) -> typing.AsyncGenerator[bytes, None]:
        """
        Stream response content as an async byte generator.
        """
        if not self.response:
            raise RuntimeError("No response available for streaming")

        try:
            self.parse_content_range()

            if self.show_progress:
                with tqdm_asyncio(
                    total=self.total_size,
                    initial=self.start_byte,
                    unit="B",
                    unit_scale=True,
                    unit_divisor=1024,
                    desc="Streaming",
                    ncols=100,
                    mininterval=1,
                ) as self.progress_bar:
                    async for chunk in self.response.aiter_bytes():
                        self._record(chunk)
                        self.progress_bar.set_postfix_str(
                            f"📥 : {self.format_bytes(self.bytes_transferred)}", refresh=False
                        )
                        self.progress_bar.update(len(chunk))
                        yield chunk
            else:
                async for chunk in self.response.aiter_bytes():
                    self._record(chunk)
                    yield chunk

        except httpx.TimeoutException:
            logger.warning("Timeout while streaming")
            raise UpstreamTransportError("Timeout while streaming")
        except httpx.RemoteProtocolError as e:
            if self.bytes_transferred > 0:
                logger.warning(
                    f"Upstream closed the stream early after {self.bytes_transferred} bytes: {e}"
                )
                return
            raise UpstreamTransportError("Upstream closed the stream without sending data", str(e))
        except httpx.RequestError as e:
            logger.error(f"Error streaming content: {e}")
            raise UpstreamTransportError("Error streaming content", str(e))
        except GeneratorExit:
            logger.info("Streaming session stopped by the client")

    def _record(self, chunk: bytes):
        size = len(chunk)
        self.bytes_transferred += size
        if self.on_chunk is not None:
            self.on_chunk(size)

    @staticmethod
    def format_bytes(size) -> str:
        power = 2**10
        n = 0
        units = {0: "B", 1: "KB", 2: "MB", 3: "GB", 4: "TB"}
        while size > power and n < 4:
            size /= power
            n += 1
        return f"{size:.2f} {units[n]}"

    def parse_content_range(self):
        """
        Parse Content-Range/Content-Length headers to compute byte positions and total size.
        """
        content_range = self.response.headers.get("content-range", "")
        try:
            if content_range:
                range_info = content_range.split()[-1]
                self.start_byte, self.end_byte, self.total_size = map(int, range_info.replace("/", "-").split("-"))
                return
        except ValueError:
            logger.debug(f"Unparseable Content-Range header: {content_range}")

        self.start_byte = 0
        self.total_size = int(self.response.headers.get("content-length", 0) or 0)
        self.end_byte = self.total_size - 1 if self.total_size > 0 else 0

    async def close(self):
        """
        Close the upstream response. Safe to call more than once.
        """
        if self.response is not None and not self.response.is_closed:
            await self.response.aclose()
        if self.progress_bar:
            self.progress_bar.close()
            self.progress_bar = None


class ProxyStreamingResponse(Response):
    """
    Streaming response that keeps relayed Content-Length/Content-Range intact and stops
    pulling from the body iterator as soon as the client disconnects.
    """

    body_iterator: typing.AsyncIterable[typing.Any]

    def __init__(
        self,
        content: typing.Union[typing.AsyncIterable[typing.Any], typing.Iterable[typing.Any]],
        status_code: int = 200,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
        media_type: typing.Optional[str] = None,
        background: typing.Optional[BackgroundTask] = None,
    ) -> None:
        if isinstance(content, typing.AsyncIterable):
            self.body_iterator = content
        else:
            self.body_iterator = iterate_in_threadpool(content)
        self.status_code = status_code
        self.media_type = self.media_type if media_type is None else media_type
        self.background = background
        self.init_headers(headers)
        self.bytes_sent = 0

    @staticmethod
    async def listen_for_disconnect(receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                logger.debug("Client disconnected")
                return

    async def stream_response(self, send: Send) -> None:
        await send({"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers})

        try:
            async for chunk in self.body_iterator:
                if not isinstance(chunk, (bytes, memoryview)):
                    chunk = chunk.encode(self.charset)
                await send({"type": "http.response.body", "body": chunk, "more_body": True})
                self.bytes_sent += len(chunk)
        except (ConnectionResetError, anyio.BrokenResourceError):
            logger.info(f"Client went away after {self.bytes_sent} bytes")
            return
        except (UpstreamTransportError, httpx.RemoteProtocolError, h11.LocalProtocolError) as e:
            # Headers are already out, so the only thing left to do is end the body.
            logger.warning(f"Upstream failure after {self.bytes_sent} bytes: {e}")

        await self.end_body(send)

    async def end_body(self, send: Send) -> None:
        """Close the body. A short upstream body leaves the declared Content-Length unmet, which only gets logged."""
        try:
            await send({"type": "http.response.body", "body": b"", "more_body": False})
        except (h11.LocalProtocolError, RuntimeError, ConnectionResetError, anyio.BrokenResourceError) as e:
            logger.warning(f"Could not finalize response after {self.bytes_sent} bytes: {e}")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        Run the body pump and the disconnect listener side by side; whichever ends first stops the other.
        """
        try:
            async with anyio.create_task_group() as task_group:

                async def run_and_cancel(func: typing.Callable[[], typing.Awaitable[None]]) -> None:
                    await func()
                    task_group.cancel_scope.cancel()

                task_group.start_soon(run_and_cancel, partial(self.stream_response, send))
                await run_and_cancel(partial(self.listen_for_disconnect, receive))
        finally:
            if self.background is not None:
                with anyio.CancelScope(shield=True):
                    await self.background()
