import socket

import pytest
import requests

from dns_smart_block.fetch import (
    BROWSER_HEADERS,
    DomainResolutionError,
    SiteFetcher,
    SiteMetadata,
    extract_metadata,
)
from dns_smart_block.utils import RetryPolicy

HTML = b"""<!doctype html>
<html lang="en">
<head>
  <title>  Steam - The Ultimate
    Destination for Playing Games </title>
  <meta name="description" content="Play, discuss and create games.">
  <meta property="og:title" content="Steam">
  <meta property="og:description" content="The ultimate online gaming platform.">
  <meta property="og:site_name" content="Steam">
  <style>body { color: red; }</style>
  <script>var tracking = true;</script>
</head>
<body><h1>Featured</h1><p>Top sellers this week</p></body>
</html>"""


def _resolver(*_args, **_kwargs):
    return [("AF_INET", None, None, "", ("127.0.0.1", 443))]


@pytest.fixture
def fetcher(mocker):
    mocker.patch("dns_smart_block.utils.time.sleep")
    return SiteFetcher(
        http_timeout=2.0,
        max_bytes=64 * 1024,
        retry_policy=RetryPolicy(max_attempts=3, base_delay_seconds=0.01),
        resolver=_resolver,
    )


def test_extract_metadata_reads_title_meta_and_text():
    metadata = extract_metadata("store.steampowered.com", HTML, 200, "text/html")

    assert metadata.title == "Steam - The Ultimate Destination for Playing Games"
    assert metadata.description == "Play, discuss and create games."
    assert metadata.og_title == "Steam"
    assert metadata.og_description == "The ultimate online gaming platform."
    assert metadata.og_site_name == "Steam"
    assert metadata.language == "en"
    assert metadata.content_type == "text/html"
    assert metadata.http_status == 200
    assert metadata.fetch_error is None
    assert "Top sellers this week" in metadata.text_excerpt
    assert "tracking" not in metadata.text_excerpt
    assert "color" not in metadata.text_excerpt


def test_extract_metadata_limits_excerpt():
    body = b"<html><body><p>" + b"word " * 400 + b"</p></body></html>"

    metadata = extract_metadata("example.com", body, 200)

    assert len(metadata.text_excerpt) == 500
    assert metadata.title is None


def test_extract_metadata_empty_body():
    metadata = extract_metadata("example.com", b"", 204)

    assert metadata == SiteMetadata(domain="example.com", http_status=204)


def test_to_dict_skips_unknown_fields_in_fixed_order():
    metadata = SiteMetadata(domain="example.com", title="Example", http_status=200)

    assert list(metadata.to_dict().items()) == [
        ("domain", "example.com"),
        ("title", "Example"),
        ("http_status", 200),
    ]
    assert SiteMetadata.from_fetch_error("example.com", "boom").to_dict() == {
        "domain": "example.com",
        "http_status": 0,
        "fetch_error": "boom",
    }


def test_fetch_success(fetcher, requests_mock):
    requests_mock.get(
        "https://store.steampowered.com/",
        content=HTML,
        headers={"Content-Type": "text/html; charset=utf-8"},
    )

    metadata = fetcher.fetch("store.steampowered.com")

    assert metadata.title.startswith("Steam")
    assert metadata.http_status == 200
    assert metadata.content_type == "text/html; charset=utf-8"
    sent = requests_mock.request_history[0]
    assert sent.headers["User-Agent"] == BROWSER_HEADERS["User-Agent"]


def test_fetch_keeps_status_of_error_pages(fetcher, requests_mock):
    requests_mock.get(
        "https://example.com/", status_code=404, content=b"<title>Not Found</title>"
    )

    metadata = fetcher.fetch("example.com")

    assert metadata.http_status == 404
    assert metadata.title == "Not Found"


def test_fetch_truncates_large_bodies(requests_mock):
    fetcher = SiteFetcher(
        http_timeout=2.0,
        max_bytes=100,
        retry_policy=RetryPolicy(max_attempts=1),
        resolver=_resolver,
    )
    requests_mock.get("https://example.com/", content=b"<p>" + b"a" * 10_000 + b"</p>")

    metadata = fetcher.fetch("example.com")

    assert metadata.fetch_error is None
    assert len(metadata.text_excerpt) < 100


def test_fetch_stops_reading_when_time_budget_is_spent(requests_mock):
    ticks = iter([0.0, 5.0, 10.0, 15.0])
    fetcher = SiteFetcher(
        http_timeout=2.0,
        max_bytes=1024 * 1024,
        retry_policy=RetryPolicy(max_attempts=1),
        resolver=_resolver,
        clock=lambda: next(ticks),
    )
    requests_mock.get("https://example.com/", content=b"<title>Slow</title>" + b"x" * 20_000)

    metadata = fetcher.fetch("example.com")

    assert metadata.title == "Slow"
    assert metadata.fetch_error is None


def test_fetch_retries_connection_errors(fetcher, requests_mock):
    requests_mock.get(
        "https://example.com/",
        [
            {"exc": requests.exceptions.ConnectionError("reset")},
            {"content": b"<title>Back</title>", "status_code": 200},
        ],
    )

    metadata = fetcher.fetch("example.com")

    assert metadata.title == "Back"
    assert requests_mock.call_count == 2


def test_fetch_degrades_after_repeated_connection_errors(fetcher, requests_mock):
    requests_mock.get("https://example.com/", exc=requests.exceptions.ConnectionError("refused"))

    metadata = fetcher.fetch("example.com")

    assert metadata.http_status == 0
    assert "refused" in metadata.fetch_error
    assert requests_mock.call_count == 3


def test_fetch_degrades_on_timeout(fetcher, requests_mock):
    requests_mock.get("https://example.com/", exc=requests.exceptions.ReadTimeout("slow"))

    metadata = fetcher.fetch("example.com")

    assert metadata.fetch_error.startswith("Timeout")
    assert requests_mock.call_count == 1


def test_fetch_raises_when_domain_does_not_resolve(requests_mock):
    def resolver(*_args, **_kwargs):
        raise socket.gaierror(-2, "Name or service not known")

    fetcher = SiteFetcher(
        http_timeout=2.0,
        max_bytes=1024,
        retry_policy=RetryPolicy(max_attempts=1),
        resolver=resolver,
    )

    with pytest.raises(DomainResolutionError, match="nonexistent.invalid"):
        fetcher.fetch("nonexistent.invalid")
    assert requests_mock.call_count == 0
