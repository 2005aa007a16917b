import logging
from dataclasses import dataclass
from typing import Optional
from urllib import parse

from livestream_proxy.const import ALLOW_CORS_QUERY_PARAM, SOURCE_QUERY_PARAM
from livestream_proxy.utils.url_utils import resolve_url

logger = logging.getLogger(__name__)

STREAM_INF_TAG = "#EXT-X-STREAM-INF:"
MAP_TAG = "#EXT-X-MAP:"
KEY_TAG = "#EXT-X-KEY:"

# Characters JavaScript's encodeURIComponent leaves untouched, on top of quote()'s always-safe set.
_URI_COMPONENT_SAFE = "!*'()"


@dataclass
class RewriteContext:
    final_base_url: str
    proxy_base_url: str
    allow_cors: bool = False
    source_key: Optional[str] = None


@dataclass
class Attribute:
    name: str
    value: str
    quoted: bool
    start: int  # offset of the raw value (including quotes) in the attribute list
    end: int


def parse_attribute_list(text: str) -> list[Attribute]:
    """
    Tokenize an HLS attribute list (``KEY=VALUE,KEY="quoted, value",...``).

    Quoted values may contain commas and equals signs. Offsets of each raw value are kept so a single
    value can be substituted while every other byte of the list stays as it was.

    Args:
        text (str): The attribute list, i.e. the part of a tag line after the first ":".

    Returns:
        list[Attribute]: The attributes in order of appearance. Fragments without "=" are skipped.
    """
    attributes = []
    pos = 0
    length = len(text)
    while pos < length:
        eq = text.find("=", pos)
        comma = text.find(",", pos)
        if eq == -1 or (comma != -1 and comma < eq):
            # Bare fragment without a value
            if comma == -1:
                break
            pos = comma + 1
            continue

        name = text[pos:eq].strip()
        value_start = eq + 1
        if value_start < length and text[value_start] == '"':
            closing = text.find('"', value_start + 1)
            if closing == -1:
                # Unterminated quote, treat the rest of the line as the value
                value_end = length
                value = text[value_start + 1 :]
            else:
                value_end = closing + 1
                value = text[value_start + 1 : closing]
            quoted = True
            next_comma = text.find(",", value_end)
        else:
            next_comma = text.find(",", value_start)
            value_end = length if next_comma == -1 else next_comma
            value = text[value_start:value_end].strip()
            quoted = False

        attributes.append(Attribute(name=name, value=value, quoted=quoted, start=value_start, end=value_end))
        if next_comma == -1:
            break
        pos = next_comma + 1
    return attributes


class M3U8Processor:
    def __init__(self, context: RewriteContext):
        """
        Initializes the M3U8Processor with the request-scoped rewrite context.

        Args:
            context (RewriteContext): Base URLs and routing options for this playlist.
        """
        self.context = context

    def process_m3u8(self, content: str) -> str:
        """
        Rewrites a playlist so that every child reference routes back through the proxy.

        Line structure is preserved: each input line produces exactly one output line.

        Args:
            content (str): The playlist text.

        Returns:
            str: The rewritten playlist text.
        """
        # Strip a UTF-8 byte order mark ahead of the #EXTM3U header.
        # A leading byte order mark would otherwise hide the #EXTM3U header.
        lines = content.removeprefix("\ufeff").split("\n")
        processed_lines = []
        index = 0
        while index < len(lines):
            line = lines[index].strip()
            index += 1

            if line.startswith(STREAM_INF_TAG):
                processed_lines.append(line)
                # The variant URI is the next non-blank line
                while index < len(lines) and not lines[index].strip():
                    processed_lines.append("")
                    index += 1
                if index < len(lines):
                    variant_line = lines[index].strip()
                    index += 1
                    if variant_line.startswith("#"):
                        processed_lines.append(variant_line)
                    else:
                        processed_lines.append(self.proxy_variant_url(variant_line))
                continue

            processed_lines.append(self.process_line(line))

        return "\n".join(processed_lines)

    def process_line(self, line: str) -> str:
        """
        Process a single line that is not part of a stream-variant pair.

        Args:
            line (str): The stripped line.

        Returns:
            str: The processed line.
        """
        if line and not line.startswith("#"):
            return self.proxy_content_url(line)
        if line.startswith(MAP_TAG):
            return self.process_uri_line(line, "segment")
        if line.startswith(KEY_TAG):
            return self.process_uri_line(line, "key")
        return line

    def process_uri_line(self, line: str, endpoint: str) -> str:
        """
        Rewrites the URI attribute of a tag line, leaving every other attribute untouched.

        Args:
            line (str): The tag line, e.g. ``#EXT-X-KEY:METHOD=AES-128,URI="enc.key"``.
            endpoint (str): The proxy endpoint that serves the referenced resource.

        Returns:
            str: The line with its URI routed through the proxy, or the line unchanged when it has no URI.
        """
        tag, _, attribute_list = line.partition(":")
        uri = next((attr for attr in parse_attribute_list(attribute_list) if attr.name == "URI"), None)
        if uri is None or not uri.value:
            logger.debug(f"No URI attribute in {tag}, leaving line unchanged")
            return line

        new_uri = self.proxy_url(resolve_url(self.context.final_base_url, uri.value), endpoint)
        return f'{tag}:{attribute_list[: uri.start]}"{new_uri}"{attribute_list[uri.end :]}'

    def proxy_content_url(self, url: str) -> str:
        """
        Routes a media segment reference through the segment endpoint, or returns it resolved when the
        player may fetch it directly.
        """
        full_url = resolve_url(self.context.final_base_url, url)
        if self.context.allow_cors:
            return full_url
        return self.proxy_url(full_url, "segment")

    def proxy_variant_url(self, url: str) -> str:
        """Routes a variant playlist reference back through the playlist endpoint."""
        full_url = resolve_url(self.context.final_base_url, url)
        return self.proxy_url(full_url, "m3u8", forward_cors=True)

    def proxy_url(self, url: str, endpoint: str, forward_cors: bool = False) -> str:
        """
        Builds a proxy URL for an absolute upstream URL.

        Args:
            url (str): The absolute upstream URL.
            endpoint (str): The proxy endpoint name ("segment", "key" or "m3u8").
            forward_cors (bool): Whether to carry the allowCORS flag into the generated URL.

        Returns:
            str: ``{proxy_base_url}/{endpoint}?url={encoded url}`` plus the forwarded parameters.
        """
        proxied = f"{self.context.proxy_base_url}/{endpoint}?url={encode_uri_component(url)}"
        if self.context.source_key:
            proxied += f"&{SOURCE_QUERY_PARAM}={encode_uri_component(self.context.source_key)}"
        if forward_cors and self.context.allow_cors:
            proxied += f"&{ALLOW_CORS_QUERY_PARAM}=true"
        return proxied


def encode_uri_component(value: str) -> str:
    return parse.quote(value, safe=_URI_COMPONENT_SAFE)
