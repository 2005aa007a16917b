HLS_CONTENT_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_CONTENT_TYPE = "video/mp2t"
KEY_CONTENT_TYPE = "application/octet-stream"

SOURCE_QUERY_PARAM = "moontv-source"
ALLOW_CORS_QUERY_PARAM = "allowCORS"

CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "GET, POST, OPTIONS",
    "access-control-allow-headers": "Content-Type, Range, Origin, Accept",
    "access-control-expose-headers": "Content-Length, Content-Range",
}

KEY_CACHE_CONTROL = "public, max-age=3600"
LOGO_CACHE_CONTROL = "public, max-age=86400, s-maxage=86400"
