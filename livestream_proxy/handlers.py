import logging
from typing import Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask

from .configs import LiveSourceConfig, settings
from .const import (
    CORS_HEADERS,
    HLS_CONTENT_TYPE,
    KEY_CACHE_CONTROL,
    KEY_CONTENT_TYPE,
    LOGO_CACHE_CONTROL,
    SEGMENT_CONTENT_TYPE,
)
from .schemas import ManifestParams, PrecheckResponse, ProxyParams
from .utils.http_utils import (
    DownloadError,
    EnhancedStreamingResponse,
    Streamer,
    classify_content_type,
    create_httpx_client,
    get_proxy_base_url,
    is_manifest_content_type,
)
from .utils.m3u8_processor import M3U8Processor, RewriteContext
from .utils.url_utils import directory_of

logger = logging.getLogger(__name__)

NO_CACHE = {"cache-control": "no-cache"}
# Byte proxies forward Content-Length, so the body must not be decoded on the way through.
IDENTITY_ENCODING = {"accept-encoding": "identity"}


class ProxyRequestError(Exception):
    """A request the proxy refuses before contacting the upstream (missing url, unknown source)."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def error_response(status_code: int, error: str, message: Optional[str] = None) -> JSONResponse:
    content = {"error": error}
    if message:
        content["message"] = message
    return JSONResponse(status_code=status_code, content=content)


def handle_exceptions(exception: Exception, error: str) -> Response:
    """
    Convert an upstream failure into a JSON 500 response.

    Args:
        exception (Exception): The exception that was raised.
        error (str): The endpoint specific error message.

    Returns:
        Response: A JSON error response. The exception is never re-raised.
    """
    if isinstance(exception, DownloadError):
        logger.error(f"{error}: {exception.message}")
        return error_response(500, error, exception.message)
    logger.exception(f"{error}: {exception}")
    return error_response(500, error, str(exception))


def upstream_headers(source: Optional[LiveSourceConfig], extra: Optional[dict] = None) -> dict:
    headers = {"user-agent": source.user_agent if source else settings.user_agent}
    headers.update(extra or {})
    return headers


async def open_upstream(url: str, headers: dict) -> Streamer:
    """
    Open a streaming upstream response.

    The client is released here when the upstream fails; on success the caller owns the streamer and must
    either stream it through a response with a closing background task or close it.

    Raises:
        DownloadError: If the upstream fails or answers with a non-2xx status.
    """
    streamer = Streamer(create_httpx_client())
    try:
        await streamer.create_streaming_response(url, headers)
    except BaseException:
        await streamer.close()
        raise
    return streamer


async def handle_precheck(params: ProxyParams, source: LiveSourceConfig) -> Response:
    """
    Classify an upstream stream as mp4, flv or m3u8 from its Content-Type.

    Only the response headers are used; the body is released without being read.

    Args:
        params (ProxyParams): The target URL and source key.
        source (LiveSourceConfig): The resolved live source.

    Returns:
        Response: ``{"success": true, "type": ...}`` or a JSON error.
    """
    try:
        streamer = await open_upstream(params.url, upstream_headers(source, NO_CACHE))
    except Exception as e:
        return handle_exceptions(e, "Failed to fetch")

    try:
        stream_type = classify_content_type(streamer.content_type)
    finally:
        await streamer.close()

    logger.debug(f"Precheck classified {params.url} as {stream_type}")
    return JSONResponse(content=PrecheckResponse(type=stream_type).model_dump())


async def handle_m3u8_proxy(request: Request, params: ManifestParams, source: LiveSourceConfig) -> Response:
    """
    Handle playlist proxy requests.

    Playlists are rewritten so that their child references route back through the proxy. Anything else
    the upstream returns is streamed through unmodified.

    Args:
        request (Request): The incoming FastAPI request object.
        params (ManifestParams): The target URL, source key and CORS flag.
        source (LiveSourceConfig): The resolved live source.

    Returns:
        Union[Response, EnhancedStreamingResponse]: Either a rewritten playlist or a streaming response.
    """
    error = "Failed to fetch m3u8"
    try:
        streamer = await open_upstream(params.url, upstream_headers(source, NO_CACHE))
    except Exception as e:
        return handle_exceptions(e, error)

    handed_off = False
    try:
        content_type = streamer.content_type
        if is_manifest_content_type(content_type):
            # Relative references resolve against where the playlist was actually served from.
            context = RewriteContext(
                final_base_url=directory_of(streamer.final_url),
                proxy_base_url=get_proxy_base_url(request),
                allow_cors=params.allow_cors,
                source_key=params.source_key,
            )
            content = await streamer.get_text()
            processed = M3U8Processor(context).process_m3u8(content)
            logger.debug(f"Rewrote playlist {streamer.final_url}")

            response_headers = {"cache-control": "no-cache"}
            response_headers.update(CORS_HEADERS)
            return Response(content=processed, media_type=HLS_CONTENT_TYPE, headers=response_headers)

        response_headers = {"content-type": content_type or HLS_CONTENT_TYPE, "cache-control": "no-cache"}
        response_headers.update(CORS_HEADERS)
        handed_off = True
        return EnhancedStreamingResponse(
            streamer.stream_content(),
            headers=response_headers,
            background=BackgroundTask(streamer.close),
        )
    except Exception as e:
        return handle_exceptions(e, error)
    finally:
        if not handed_off:
            await streamer.close()


async def proxy_bytes(
    params: ProxyParams,
    source: Optional[LiveSourceConfig],
    error: str,
    response_headers: dict,
    pass_content_length: bool = False,
) -> Response:
    """
    Proxy a single binary resource, streaming the upstream body through unmodified.

    Args:
        params (ProxyParams): The target URL and source key.
        source (LiveSourceConfig, optional): The resolved live source. None uses the default user agent.
        error (str): The error message returned when the upstream fails.
        response_headers (dict): The headers to send with the body.
        pass_content_length (bool): Whether to forward the upstream Content-Length. Ignored for content-encoded
            upstream bodies.

    Returns:
        Response: The streaming response or a JSON error.
    """
    try:
        streamer = await open_upstream(params.url, upstream_headers(source, IDENTITY_ENCODING))
    except Exception as e:
        return handle_exceptions(e, error)

    headers = dict(response_headers)
    content_length = streamer.response.headers.get("content-length")
    # The body is decoded while streaming, so an encoded upstream length does not describe what is sent.
    pass_content_length = (
        pass_content_length and bool(content_length) and not streamer.response.headers.get("content-encoding")
    )
    if pass_content_length:
        headers["content-length"] = content_length

    return EnhancedStreamingResponse(
        streamer.stream_content(),
        headers=headers,
        background=BackgroundTask(streamer.close),
        chunked=not pass_content_length,
    )


async def handle_segment_proxy(params: ProxyParams, source: LiveSourceConfig) -> Response:
    headers = {"content-type": SEGMENT_CONTENT_TYPE, "accept-ranges": "bytes"}
    headers.update(CORS_HEADERS)
    return await proxy_bytes(params, source, "Failed to fetch segment", headers, pass_content_length=True)


async def handle_key_proxy(params: ProxyParams, source: LiveSourceConfig) -> Response:
    headers = {"content-type": KEY_CONTENT_TYPE, "cache-control": KEY_CACHE_CONTROL}
    headers.update(CORS_HEADERS)
    return await proxy_bytes(params, source, "Failed to fetch key", headers)


async def handle_logo_proxy(params: ProxyParams, source: Optional[LiveSourceConfig]) -> Response:
    """
    Proxy a channel logo. Unknown sources are tolerated and fetched with the default user agent.

    Upstream error statuses are mirrored to the caller instead of being folded into a 500.
    """
    try:
        streamer = await open_upstream(params.url, upstream_headers(source, NO_CACHE))
    except Exception as e:
        if isinstance(e, DownloadError) and e.status_code is not None:
            logger.warning(f"Logo upstream returned {e.message} for {params.url}")
            return error_response(e.status_code, e.message)
        return handle_exceptions(e, "Error fetching image")

    headers = {"cache-control": LOGO_CACHE_CONTROL}
    content_type = streamer.content_type
    if content_type:
        headers["content-type"] = content_type

    return EnhancedStreamingResponse(
        streamer.stream_content(),
        headers=headers,
        background=BackgroundTask(streamer.close),
    )
