"""
Site Content Fetcher
====================

Fetches a bounded amount of a domain's front page and reduces it to the
small set of metadata fields the classification prompt is built from.

The fetch never reads more than ``max_bytes`` of the body and stops reading
once ``http_timeout`` has elapsed, keeping whatever arrived so far. Failures
other than DNS resolution degrade to metadata that only carries the domain
and the error, so the model can still classify on the name alone. A domain
that does not resolve raises `DomainResolutionError` instead.
"""

from __future__ import annotations

import re
import socket
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests
import structlog
from bs4 import BeautifulSoup

from .utils import RetryPolicy, retry

log = structlog.get_logger(__name__)

MAX_REDIRECTS = 10
TEXT_EXCERPT_CHARS = 500
CHUNK_SIZE = 8192

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

_WHITESPACE = re.compile(r"\s+")


class DomainResolutionError(Exception):
    """The domain has no DNS records, so no content can be fetched at all."""


@dataclass(frozen=True)
class SiteMetadata:
    domain: str
    title: str | None = None
    description: str | None = None
    og_title: str | None = None
    og_description: str | None = None
    og_site_name: str | None = None
    language: str | None = None
    content_type: str | None = None
    text_excerpt: str | None = None
    http_status: int = 0
    fetch_error: str | None = None

    @classmethod
    def from_fetch_error(cls, domain: str, error: str) -> "SiteMetadata":
        return cls(domain=domain, http_status=0, fetch_error=error)

    def to_dict(self) -> dict[str, Any]:
        """Fields in a fixed order, leaving out the ones that are unknown."""
        fields = (
            ("domain", self.domain),
            ("title", self.title),
            ("description", self.description),
            ("og_title", self.og_title),
            ("og_description", self.og_description),
            ("og_site_name", self.og_site_name),
            ("language", self.language),
            ("content_type", self.content_type),
            ("text_excerpt", self.text_excerpt),
            ("http_status", self.http_status),
            ("fetch_error", self.fetch_error),
        )
        return {name: value for name, value in fields if value is not None}


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = _WHITESPACE.sub(" ", value).strip()
    return value or None


def _meta_content(soup: BeautifulSoup, **attrs) -> str | None:
    tag = soup.find("meta", attrs=attrs)
    if tag is None:
        return None
    return _clean(tag.get("content"))


def extract_metadata(
    domain: str,
    body: bytes | str,
    http_status: int,
    content_type: str | None = None,
) -> SiteMetadata:
    """Extract title, descriptions, language and a text excerpt from HTML."""
    if not body:
        return SiteMetadata(
            domain=domain, content_type=content_type, http_status=http_status
        )

    soup = BeautifulSoup(body, "html.parser")

    title = _clean(soup.title.string) if soup.title and soup.title.string else None
    html_tag = soup.find("html")
    language = _clean(html_tag.get("lang")) if html_tag is not None else None

    description = _meta_content(soup, name="description")
    og_title = _meta_content(soup, property="og:title")
    og_description = _meta_content(soup, property="og:description")
    og_site_name = _meta_content(soup, property="og:site_name")

    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    text = _clean(soup.get_text(" ", strip=True))
    excerpt = text[:TEXT_EXCERPT_CHARS] if text else None

    return SiteMetadata(
        domain=domain,
        title=title,
        description=description,
        og_title=og_title,
        og_description=og_description,
        og_site_name=og_site_name,
        language=language,
        content_type=content_type,
        text_excerpt=excerpt,
        http_status=http_status,
    )


class SiteFetcher:
    """
    Fetches a domain's front page over HTTPS within size and time limits.
    """

    def __init__(
        self,
        http_timeout: float,
        max_bytes: int,
        retry_policy: RetryPolicy,
        session: requests.Session | None = None,
        resolver: Callable[..., Any] = socket.getaddrinfo,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.http_timeout = http_timeout
        self.max_bytes = max_bytes
        self.retry_policy = retry_policy
        self.session = session or requests.Session()
        self.session.max_redirects = MAX_REDIRECTS
        self.resolver = resolver
        self.clock = clock

    def fetch(self, domain: str) -> SiteMetadata:
        """
        Fetch and extract metadata for ``domain``.

        Raises:
            DomainResolutionError: if the domain does not resolve.
        """
        try:
            self.resolver(domain, 443)
        except socket.gaierror as e:
            raise DomainResolutionError(f"DNS resolution failed for {domain}: {e}") from e

        url = domain if "://" in domain else f"https://{domain}"
        try:
            body, status, content_type = self._download(url)
        except requests.Timeout as e:
            log.warning("Fetch timed out", domain=domain, error=str(e))
            return SiteMetadata.from_fetch_error(domain, f"Timeout: {e}")
        except requests.RequestException as e:
            log.warning("Fetch failed", domain=domain, error=str(e))
            return SiteMetadata.from_fetch_error(domain, f"{type(e).__name__}: {e}")

        metadata = extract_metadata(domain, body, status, content_type)
        log.info(
            "Fetched site metadata",
            domain=domain,
            http_status=status,
            bytes_read=len(body),
            has_title=metadata.title is not None,
        )
        return metadata

    @retry(retryable_exceptions=(requests.ConnectionError,))
    def _download(self, url: str) -> tuple[bytes, int, str | None]:
        """Read at most ``max_bytes`` of the body, stopping at ``http_timeout``."""
        started = self.clock()
        response = self.session.get(
            url,
            headers=BROWSER_HEADERS,
            timeout=self.http_timeout,
            stream=True,
            allow_redirects=True,
        )
        try:
            chunks: list[bytes] = []
            size = 0
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if not chunk:
                    continue
                chunk = chunk[: self.max_bytes - size]
                chunks.append(chunk)
                size += len(chunk)
                if size >= self.max_bytes:
                    log.debug("Body truncated", url=url, max_bytes=self.max_bytes)
                    break
                if self.clock() - started > self.http_timeout:
                    log.debug("Read budget exhausted; keeping partial body", url=url)
                    break
            return (
                b"".join(chunks),
                response.status_code,
                response.headers.get("Content-Type"),
            )
        finally:
            response.close()
