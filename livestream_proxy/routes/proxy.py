import logging
from typing import Annotated, Optional
from urllib.parse import unquote

from fastapi import APIRouter, Depends, Query, Request

from livestream_proxy.configs import LiveSourceConfig
from livestream_proxy.const import ALLOW_CORS_QUERY_PARAM, SOURCE_QUERY_PARAM
from livestream_proxy.handlers import (
    ProxyRequestError,
    handle_key_proxy,
    handle_logo_proxy,
    handle_m3u8_proxy,
    handle_precheck,
    handle_segment_proxy,
)
from livestream_proxy.schemas import LiveSourcesResponse, ManifestParams, ProxyParams
from livestream_proxy.sources import SourceResolver, get_source_resolver

logger = logging.getLogger(__name__)

proxy_router = APIRouter()


def decode_target_url(url: str) -> str:
    """
    Decode a target URL that arrived percent-encoded once more than the query string requires.

    Players encode the upstream URL before placing it in the query string; some encode it twice. URLs that
    are already absolute are returned unchanged so their own escapes survive.

    Args:
        url (str): The value of the ``url`` query parameter.

    Returns:
        str: The upstream URL.
    """
    url = url.strip()
    if url.lower().startswith(("http://", "https://")):
        return url
    return unquote(url)


def get_proxy_params(
    url: Annotated[Optional[str], Query(description="The URL-encoded upstream URL.")] = None,
    source_key: Annotated[Optional[str], Query(alias=SOURCE_QUERY_PARAM, description="The live source key.")] = None,
) -> ProxyParams:
    if not url:
        raise ProxyRequestError(400, "Missing url")
    return ProxyParams(url=decode_target_url(url), source_key=source_key)


def get_manifest_params(
    params: Annotated[ProxyParams, Depends(get_proxy_params)],
    allow_cors: Annotated[Optional[str], Query(alias=ALLOW_CORS_QUERY_PARAM)] = None,
) -> ManifestParams:
    return ManifestParams(url=params.url, source_key=params.source_key, allow_cors=allow_cors == "true")


async def get_live_source(
    params: Annotated[ProxyParams, Depends(get_proxy_params)],
    resolver: Annotated[SourceResolver, Depends(get_source_resolver)],
) -> LiveSourceConfig:
    """Resolve the requested live source. Every request re-resolves; nothing is cached here."""
    source = await resolver.get_source(params.source_key)
    if source is None:
        logger.warning(f"Unknown live source: {params.source_key!r}")
        raise ProxyRequestError(404, "Source not found")
    return source


def get_logo_params(
    url: Annotated[Optional[str], Query(description="The URL-encoded image URL.")] = None,
    source_key: Annotated[Optional[str], Query(alias=SOURCE_QUERY_PARAM, description="The live source key.")] = None,
) -> ProxyParams:
    if not url:
        raise ProxyRequestError(400, "Missing image URL")
    return ProxyParams(url=decode_target_url(url), source_key=source_key)


@proxy_router.get("/precheck")
async def precheck(
    params: Annotated[ProxyParams, Depends(get_proxy_params)],
    source: Annotated[LiveSourceConfig, Depends(get_live_source)],
):
    """
    Detects whether an upstream stream is mp4, flv or m3u8 from its Content-Type.

    Args:
        params (ProxyParams): The target URL and source key.
        source (LiveSourceConfig): The resolved live source.

    Returns:
        Response: ``{"success": true, "type": "mp4" | "flv" | "m3u8"}``.
    """
    return await handle_precheck(params, source)


@proxy_router.get("/m3u8", name="m3u8_proxy")
async def m3u8_proxy(
    request: Request,
    params: Annotated[ManifestParams, Depends(get_manifest_params)],
    source: Annotated[LiveSourceConfig, Depends(get_live_source)],
):
    """
    Fetches an HLS playlist and rewrites its references to route through the proxy.

    Args:
        request (Request): The incoming HTTP request.
        params (ManifestParams): The target URL, source key and CORS flag.
        source (LiveSourceConfig): The resolved live source.

    Returns:
        Response: The rewritten playlist, or the raw upstream body when it is not a playlist.
    """
    return await handle_m3u8_proxy(request, params, source)


@proxy_router.get("/segment", name="segment_proxy")
async def segment_proxy(
    params: Annotated[ProxyParams, Depends(get_proxy_params)],
    source: Annotated[LiveSourceConfig, Depends(get_live_source)],
):
    """
    Streams a media segment from the upstream.

    Args:
        params (ProxyParams): The segment URL and source key.
        source (LiveSourceConfig): The resolved live source.

    Returns:
        Response: The segment bytes as ``video/mp2t``.
    """
    return await handle_segment_proxy(params, source)


@proxy_router.get("/key", name="key_proxy")
async def key_proxy(
    params: Annotated[ProxyParams, Depends(get_proxy_params)],
    source: Annotated[LiveSourceConfig, Depends(get_live_source)],
):
    """Streams an encryption key from the upstream as ``application/octet-stream``."""
    return await handle_key_proxy(params, source)


@proxy_router.get("/logo", name="logo_proxy")
async def logo_proxy(
    params: Annotated[ProxyParams, Depends(get_logo_params)],
    resolver: Annotated[SourceResolver, Depends(get_source_resolver)],
):
    """Streams a channel logo. Unknown sources fall back to the default user agent."""
    source = await resolver.get_source(params.source_key)
    return await handle_logo_proxy(params, source)


@proxy_router.get("/sources", response_model=LiveSourcesResponse)
async def list_live_sources(resolver: Annotated[SourceResolver, Depends(get_source_resolver)]):
    """Lists the enabled live sources."""
    sources = [source for source in await resolver.list_sources() if not source.disabled]
    return LiveSourcesResponse(data=sources)
