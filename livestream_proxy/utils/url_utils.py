import logging
from urllib import parse

logger = logging.getLogger(__name__)


def directory_of(url: str) -> str:
    """
    Return the directory part of a URL: everything up to and including the last "/" of its path.

    Query strings and fragments are dropped before truncating, so the slash they may contain
    never counts as the last path segment.

    Args:
        url (str): A full URL, typically the final URL of a fetched playlist.

    Returns:
        str: The directory URL, ending with "/".
    """
    try:
        parsed = parse.urlsplit(url)
    except ValueError:
        logger.warning(f"Unparsable URL, truncating as plain text: {url}")
        return url[: url.rfind("/") + 1] if "/" in url else url

    if not parsed.scheme or not parsed.netloc:
        return url[: url.rfind("/") + 1] if "/" in url else url

    path = parsed.path or "/"
    directory = path[: path.rfind("/") + 1]
    return f"{parsed.scheme}://{parsed.netloc}{directory}"


def resolve_url(base: str, ref: str) -> str:
    """
    Resolve a playlist reference against the URL of the playlist that contains it.

    Args:
        base (str): The playlist URL (or its directory).
        ref (str): The reference found in the playlist. May be absolute, scheme-relative,
            root-relative or path-relative.

    Returns:
        str: The absolute URL. Malformed input degrades to plain concatenation instead of raising.
    """
    ref = ref.strip()
    if ref.lower().startswith(("http://", "https://")):
        return ref

    try:
        parsed = parse.urlsplit(base)
    except ValueError:
        logger.warning(f"Unparsable base URL {base!r}, concatenating {ref!r}")
        return base + ref

    if not parsed.scheme or not parsed.netloc:
        return base + ref

    if ref.startswith("//"):
        return f"{parsed.scheme}:{ref}"
    if ref.startswith("/"):
        return f"{parsed.scheme}://{parsed.netloc}{ref}"
    return directory_of(base) + ref
