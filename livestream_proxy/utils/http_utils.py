import logging
import typing
from functools import partial
from urllib import parse

import anyio
import h11
import httpx
from fastapi import Response
from starlette.background import BackgroundTask
from starlette.concurrency import iterate_in_threadpool
from starlette.requests import Request
from starlette.types import Receive, Send, Scope
from tqdm.asyncio import tqdm as tqdm_asyncio

from livestream_proxy.configs import settings

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    def __init__(self, status_code: int | None, message: str):
        """
        Args:
            status_code (int | None): The upstream HTTP status, or None when no response was received.
            message (str): A human readable description of the failure.
        """
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def create_httpx_client(follow_redirects: bool = True, **kwargs) -> httpx.AsyncClient:
    """
    Create an HTTPX AsyncClient for upstream requests.

    Every client carries the configured deadline, so a hanging upstream never holds a request open
    indefinitely.

    Args:
        follow_redirects (bool): Whether to follow 3xx redirects automatically.
        **kwargs: Additional AsyncClient keyword arguments.

    Returns:
        httpx.AsyncClient: The configured client.
    """
    kwargs.setdefault("mounts", settings.transport_config.get_mounts())
    kwargs.setdefault("timeout", settings.transport_config.timeout)
    kwargs.setdefault("verify", not settings.transport_config.disable_ssl_verification_globally)
    return httpx.AsyncClient(follow_redirects=follow_redirects, **kwargs)


class Streamer:
    def __init__(self, client: httpx.AsyncClient):
        """
        Initialize a Streamer with a configured HTTP client.

        Args:
            client (httpx.AsyncClient): The HTTP client to use for streaming.
        """
        self.client = client
        self.response: httpx.Response | None = None
        self.progress_bar = None
        self.bytes_transferred = 0
        self.total_size = 0

    async def create_streaming_response(self, url: str, headers: dict):
        """
        Send a single GET request and keep the response open for streaming.

        Only the status line and headers are read here. There is no retry: one attempt decides the outcome.

        Args:
            url (str): Source URL for the streaming content.
            headers (dict): Request headers.

        Raises:
            DownloadError: If the upstream answers with a non-2xx status or cannot be reached.
        """
        try:
            request = self.client.build_request("GET", url, headers=headers)
            self.response = await self.client.send(request, stream=True, follow_redirects=True)
        except httpx.TimeoutException:
            logger.warning(f"Timeout while fetching {url}")
            raise DownloadError(None, f"Timeout while fetching {url}")
        except (httpx.RequestError, httpx.InvalidURL) as e:
            logger.error(f"Error fetching {url}: {e}")
            raise DownloadError(None, f"Error fetching {url}: {e}")

        if not self.response.is_success:
            status_code = self.response.status_code
            reason = self.response.reason_phrase
            logger.error(f"HTTP error {status_code} while fetching {url}")
            await self.response.aclose()
            raise DownloadError(status_code, f"{status_code} {reason}".strip())

    @property
    def final_url(self) -> str:
        """The URL the response was actually served from, after redirects."""
        return str(self.response.url)

    @property
    def content_type(self) -> str:
        return self.response.headers.get("content-type", "")

    async def get_text(self) -> str:
        """
        Read the whole response body as text. Only used for playlists, which are small.
        """
        if not self.response:
            raise RuntimeError("No response available for reading")
        await self.response.aread()
        return self.response.text

    async def stream_content(self) -> typing.AsyncGenerator[bytes, None]:
        """
        Stream response content as an async byte generator.
        """
        if not self.response:
            raise RuntimeError("No response available for streaming")

        try:
            self.total_size = int(self.response.headers.get("content-length", 0) or 0)

            if settings.enable_streaming_progress:
                with tqdm_asyncio(
                    total=self.total_size or None,
                    unit="B",
                    unit_scale=True,
                    unit_divisor=1024,
                    desc="Streaming",
                    ncols=100,
                    mininterval=1,
                ) as self.progress_bar:
                    async for chunk in self.response.aiter_bytes():
                        yield chunk
                        chunk_size = len(chunk)
                        self.bytes_transferred += chunk_size
                        self.progress_bar.set_postfix_str(
                            f"📥 : {self.format_bytes(self.bytes_transferred)}", refresh=False
                        )
                        self.progress_bar.update(chunk_size)
            else:
                async for chunk in self.response.aiter_bytes():
                    yield chunk
                    self.bytes_transferred += len(chunk)

        except httpx.TimeoutException:
            logger.warning("Timeout while streaming")
            raise DownloadError(None, "Timeout while streaming")
        except httpx.RemoteProtocolError as e:
            if self.bytes_transferred > 0:
                logger.warning(f"Remote server closed connection prematurely: {e}")
                logger.info(
                    f"Partial content received ({self.bytes_transferred} bytes). Continuing with available data."
                )
                return
            logger.error(f"Protocol error while streaming: {e}")
            raise DownloadError(None, f"Protocol error while streaming: {e}")
        except GeneratorExit:
            logger.info("Streaming session stopped by the client")

    @staticmethod
    def format_bytes(size) -> str:
        power = 2**10
        n = 0
        units = {0: "B", 1: "KB", 2: "MB", 3: "GB", 4: "TB"}
        while size > power:
            size /= power
            n += 1
        return f"{size:.2f} {units[n]}"

    async def close(self):
        """
        Close HTTP response and client resources. Safe to call more than once.
        """
        if self.response:
            await self.response.aclose()
        if self.progress_bar:
            self.progress_bar.close()
        await self.client.aclose()


def classify_content_type(content_type: str | None) -> str:
    """
    Classify an upstream stream by its Content-Type header.

    Args:
        content_type (str | None): The Content-Type header value, if any.

    Returns:
        str: The configured label for the first matching content type ("mp4", "flv"), else "m3u8".
    """
    content_type = (content_type or "").lower()
    for pattern, label in settings.precheck_content_types.items():
        if pattern.lower() in content_type:
            return label
    return "m3u8"


def is_manifest_content_type(content_type: str | None) -> bool:
    """Whether a Content-Type marks a response as a playlist that should be rewritten."""
    content_type = (content_type or "").lower()
    return any(pattern.lower() in content_type for pattern in settings.manifest_content_types)


def get_original_scheme(request: Request) -> str:
    """
    Guess the scheme the player used to reach the proxy.

    The Referer of the page hosting the player is the most reliable hint; reverse proxy headers come next.

    Args:
        request (Request): Incoming HTTP request.

    Returns:
        str: 'http' or 'https'
    """
    referer = request.headers.get("referer")
    if referer:
        try:
            scheme = parse.urlsplit(referer).scheme
        except ValueError:
            scheme = ""
        if scheme in ("http", "https"):
            return scheme

    forwarded_proto = request.headers.get("x-forwarded-proto")
    if forwarded_proto in ("http", "https"):
        return forwarded_proto

    return "http"


def get_proxy_base_url(request: Request) -> str:
    """
    Build the absolute base URL of the proxy endpoints as seen by the player.

    Args:
        request (Request): Incoming HTTP request.

    Returns:
        str: ``{scheme}://{host}{proxy_path_prefix}`` without a trailing slash.
    """
    host = request.headers.get("host") or request.url.netloc
    prefix = settings.proxy_path_prefix.rstrip("/")
    return f"{get_original_scheme(request)}://{host}{prefix}"


class EnhancedStreamingResponse(Response):
    body_iterator: typing.AsyncIterable[typing.Any]

    def __init__(
        self,
        content: typing.Union[typing.AsyncIterable[typing.Any], typing.Iterable[typing.Any]],
        status_code: int = 200,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
        media_type: typing.Optional[str] = None,
        background: typing.Optional[BackgroundTask] = None,
        chunked: bool = True,
    ) -> None:
        if isinstance(content, typing.AsyncIterable):
            self.body_iterator = content
        else:
            self.body_iterator = iterate_in_threadpool(content)
        self.status_code = status_code
        self.media_type = self.media_type if media_type is None else media_type
        self.background = background
        self.chunked = chunked
        self.init_headers(headers)
        self.actual_content_length = 0

    @staticmethod
    async def listen_for_disconnect(receive: Receive) -> None:
        """
        Listen for client disconnect events to stop streaming gracefully.
        """
        try:
            while True:
                message = await receive()
                if message["type"] == "http.disconnect":
                    logger.debug("Client disconnected")
                    break
        except Exception as e:
            logger.error(f"Error in listen_for_disconnect: {str(e)}")

    async def stream_response(self, send: Send) -> None:
        """
        Stream the response body in chunks and handle protocol edge cases gracefully.
        """
        try:
            headers = list(self.raw_headers)

            # Unless the upstream length must be passed through, prefer chunked transfer
            # to avoid protocol errors if upstream closes prematurely.
            if self.chunked:
                for name, _ in headers:
                    if name.lower() == b"content-length":
                        headers = [h for h in headers if h[0].lower() != b"content-length"]
                        headers.append((b"transfer-encoding", b"chunked"))
                        logger.debug("Switched from content-length to chunked transfer-encoding for streaming")
                        break

            await send(
                {
                    "type": "http.response.start",
                    "status": self.status_code,
                    "headers": headers,
                }
            )

            data_sent = False

            try:
                async for chunk in self.body_iterator:
                    if not isinstance(chunk, (bytes, memoryview)):
                        chunk = chunk.encode(self.charset)
                    try:
                        await send({"type": "http.response.body", "body": chunk, "more_body": True})
                        data_sent = True
                        self.actual_content_length += len(chunk)
                    except (ConnectionResetError, anyio.BrokenResourceError):
                        logger.info("Client disconnected during streaming")
                        return

                await send({"type": "http.response.body", "body": b"", "more_body": False})
            except (httpx.RemoteProtocolError, h11.LocalProtocolError) as e:
                if data_sent:
                    logger.warning(f"Remote protocol error after partial streaming: {e}")
                    try:
                        await send({"type": "http.response.body", "body": b"", "more_body": False})
                        logger.info(
                            f"Response finalized after partial content ({self.actual_content_length} bytes transferred)"
                        )
                    except Exception as close_err:
                        logger.warning(f"Could not finalize response after remote error: {close_err}")
                else:
                    logger.error(f"Protocol error before any data was streamed: {e}")
                    raise
        except Exception as e:
            logger.exception(f"Error in stream_response: {str(e)}")
            if not isinstance(e, (ConnectionResetError, anyio.BrokenResourceError)):
                try:
                    await send({"type": "http.response.body", "body": b"", "more_body": False})
                except Exception as close_err:
                    logger.debug(f"Could not close response after streaming error: {close_err}")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        ASGI entrypoint: run streaming and disconnect listener concurrently.

        A client disconnect cancels the streaming task, after which the background task releases the
        upstream connection.
        """
        try:
            async with anyio.create_task_group() as task_group:
                streaming_completed = False
                stream_func = partial(self.stream_response, send)
                listen_func = partial(self.listen_for_disconnect, receive)

                async def wrap(func: typing.Callable[[], typing.Awaitable[None]]) -> None:
                    try:
                        await func()
                        if func == stream_func:
                            nonlocal streaming_completed
                            streaming_completed = True
                    except Exception as e:
                        if isinstance(e, (httpx.RemoteProtocolError, h11.LocalProtocolError)):
                            logger.warning(f"Protocol error during streaming: {e}")
                        elif not isinstance(e, anyio.get_cancelled_exc_class()):
                            logger.exception("Error in streaming task")
                            raise
                    finally:
                        if func == listen_func or streaming_completed:
                            task_group.cancel_scope.cancel()

                task_group.start_soon(wrap, stream_func)
                await wrap(listen_func)
        finally:
            if self.background is not None:
                await self.background()
