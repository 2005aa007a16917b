import pytest

from livestream_proxy.utils.url_utils import directory_of, resolve_url

BASE = "https://cdn.example.com/live/channel/index.m3u8"


@pytest.mark.parametrize(
    "ref, expected",
    [
        ("seg0.ts", "https://cdn.example.com/live/channel/seg0.ts"),
        ("/abs/seg0.ts", "https://cdn.example.com/abs/seg0.ts"),
        ("https://other.cdn/seg0.ts", "https://other.cdn/seg0.ts"),
        ("http://other.cdn/seg0.ts", "http://other.cdn/seg0.ts"),
        ("//edge.example.com/seg0.ts", "https://edge.example.com/seg0.ts"),
        ("480p/index.m3u8", "https://cdn.example.com/live/channel/480p/index.m3u8"),
        ("seg0.ts?token=abc", "https://cdn.example.com/live/channel/seg0.ts?token=abc"),
    ],
)
def test_resolve_url(ref, expected):
    assert resolve_url(BASE, ref) == expected


def test_resolve_url_against_directory_base():
    assert resolve_url("https://cdn.example.com/live/", "seg0.ts") == "https://cdn.example.com/live/seg0.ts"


def test_resolve_url_ignores_query_of_base():
    base = "https://cdn.example.com/live/index.m3u8?token=a/b"
    assert resolve_url(base, "seg0.ts") == "https://cdn.example.com/live/seg0.ts"


def test_resolve_url_keeps_port():
    assert resolve_url("http://10.0.0.1:8080/hls/a.m3u8", "/b.ts") == "http://10.0.0.1:8080/b.ts"


def test_resolve_url_degrades_to_concatenation_for_malformed_base():
    assert resolve_url("not-a-url/", "seg0.ts") == "not-a-url/seg0.ts"
    assert resolve_url("http://[broken/", "seg0.ts") == "http://[broken/seg0.ts"


def test_directory_of():
    assert directory_of(BASE) == "https://cdn.example.com/live/channel/"
    assert directory_of("https://cdn.example.com") == "https://cdn.example.com/"
    assert directory_of("https://cdn.example.com/live/") == "https://cdn.example.com/live/"
    assert directory_of("https://cdn.example.com/a/b.m3u8?x=1/2") == "https://cdn.example.com/a/"


def test_directory_of_malformed_input():
    assert directory_of("relative/path/index.m3u8") == "relative/path/"
    assert directory_of("nothing") == "nothing"
