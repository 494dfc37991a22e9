"""Manifest rewriting and segment relay for capture sessions.

Every upstream request is tried with up to three header configurations
(``HEADER_TIERS``).  Playlists are rewritten so that each URI points back at
the ``/segment`` endpoint with the session id and the absolute upstream URL;
segments are streamed through without buffering.
"""

from __future__ import annotations

import enum
import logging
import re
import urllib.parse
from collections.abc import AsyncIterator
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field

import httpx

from browser import ACCEPT_LANGUAGE
from browser import USER_AGENT
from errors import UpstreamManifestError
from errors import UpstreamSegmentError
from sessions import SessionRegistry


log = logging.getLogger(__name__)

MANIFEST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_CONTENT_TYPE = "video/mp2t"
_MANIFEST_ACCEPT = "application/vnd.apple.mpegurl,application/x-mpegURL;q=0.9,*/*;q=0.8"
_RETRY_STATUSES = frozenset({401, 403, 405})
_RELAY_HEADERS = ("content-length", "accept-ranges", "content-range", "cache-control")
_UPSTREAM_TIMEOUT_SEC = 30.0

_URI_ATTR_RE = re.compile(r"(?<![A-Z-])URI=([\"'])(.*?)\1", re.IGNORECASE)
_SEGMENT_NAME_RE = re.compile(
    r"/(?:seg|segment|chunk)[-_]?\d+(?:[-_][^/]*)?\.([a-z0-9]+)$",
    re.IGNORECASE,
)
_DISGUISE_EXTENSIONS = frozenset(
    {
        "js",
        "css",
        "txt",
        "png",
        "jpg",
        "jpeg",
        "gif",
        "webp",
        "ico",
        "svg",
        "woff",
        "woff2",
        "ttf",
        "json",
        "html",
        "xml",
    }
)


# =============================================================================
# Header tiers
# =============================================================================


def _origin(url: str) -> str:
    parts = urllib.parse.urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def _base_headers(accept: str) -> dict[str, str]:
    return {
        "User-Agent": USER_AGENT,
        "Accept": accept,
        "Accept-Language": ACCEPT_LANGUAGE,
        "Accept-Encoding": "identity",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
        "Sec-Fetch-Site": "cross-site",
        "Sec-Fetch-Mode": "cors",
        "Sec-Fetch-Dest": "empty",
    }


def primary_headers(source_url: str, target_url: str, manifest: bool) -> dict[str, str]:
    headers = _base_headers(_MANIFEST_ACCEPT if manifest else "*/*")
    headers["Referer"] = source_url
    headers["Origin"] = _origin(source_url)
    return headers


def no_referrer_headers(source_url: str, target_url: str, manifest: bool) -> dict[str, str]:
    return _base_headers("*/*")


def target_referrer_headers(source_url: str, target_url: str, manifest: bool) -> dict[str, str]:
    headers = _base_headers("*/*")
    origin = _origin(target_url)
    headers["Referer"] = origin + "/"
    headers["Origin"] = origin
    return headers


HeaderBuilder = Callable[[str, str, bool], dict[str, str]]

HEADER_TIERS: tuple[tuple[str, HeaderBuilder], ...] = (
    ("primary", primary_headers),
    ("no-referrer", no_referrer_headers),
    ("target-referrer", target_referrer_headers),
)


def should_retry(status: int) -> bool:
    return status in _RETRY_STATUSES


async def fetch_with_fallback(
    client: httpx.AsyncClient,
    url: str,
    source_url: str,
    *,
    manifest: bool,
    cookie: str | None = None,
    range_header: str | None = None,
    stream: bool = False,
) -> httpx.Response:
    """GET url, moving to the next header tier only on 401/403/405.

    Returns the last response, successful or not. Transport errors propagate.
    """
    response: httpx.Response | None = None
    for name, build_headers in HEADER_TIERS:
        if response is not None:
            await response.aclose()
        headers = build_headers(source_url, url, manifest)
        if cookie:
            headers["Cookie"] = cookie
        if range_header:
            headers["Range"] = range_header
        request = client.build_request("GET", url, headers=headers)
        response = await client.send(request, stream=stream, follow_redirects=True)
        if response.is_success or not should_retry(response.status_code):
            return response
        log.info("Upstream %d for %s with %s headers", response.status_code, url[:80], name)
    assert response is not None
    return response


# =============================================================================
# Manifest rewriting
# =============================================================================


class LineKind(enum.Enum):
    BLANK = "blank"
    URI = "uri"
    TAG = "tag"
    TAG_WITH_URI = "tag_with_uri"


def classify_line(line: str) -> LineKind:
    stripped = line.strip()
    if not stripped:
        return LineKind.BLANK
    if stripped.startswith("#"):
        return LineKind.TAG_WITH_URI if _URI_ATTR_RE.search(stripped) else LineKind.TAG
    return LineKind.URI


def resolve_url(reference: str, base_url: str) -> str:
    """Absolute references are kept, relative ones are joined onto base_url."""
    return urllib.parse.urljoin(base_url, reference)


def proxy_url(session_id: str, target_url: str, endpoint: str = "/segment") -> str:
    sid = urllib.parse.quote(session_id, safe="")
    return f"{endpoint}?sessionId={sid}&url={urllib.parse.quote(target_url, safe='')}"


def rewrite_manifest(
    text: str,
    base_url: str,
    session_id: str,
    endpoint: str = "/segment",
) -> str:
    out: list[str] = []
    for line in text.splitlines():
        kind = classify_line(line)
        if kind is LineKind.URI:
            out.append(proxy_url(session_id, resolve_url(line.strip(), base_url), endpoint))
        elif kind is LineKind.TAG_WITH_URI:

            def replace(m: re.Match[str]) -> str:
                target = resolve_url(m.group(2), base_url)
                quote = m.group(1)
                return f"URI={quote}{proxy_url(session_id, target, endpoint)}{quote}"

            out.append(_URI_ATTR_RE.sub(replace, line))
        else:
            out.append(line)
    return "\n".join(out) + "\n"


# =============================================================================
# Segment classification
# =============================================================================


def is_manifest_response(url: str, content_type: str) -> bool:
    path = urllib.parse.urlsplit(url).path.lower()
    return "mpegurl" in content_type.lower() or path.endswith(".m3u8")


def is_disguised_segment(url: str) -> bool:
    """Segment-named path served under a document/image/script/font extension."""
    m = _SEGMENT_NAME_RE.search(urllib.parse.urlsplit(url).path)
    return bool(m) and m.group(1).lower() in _DISGUISE_EXTENSIONS


@dataclass(slots=True)
class RelayResponse:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None
    stream: AsyncIterator[bytes] | None = None


async def _iter_body(response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_raw():
            yield chunk
    finally:
        await response.aclose()


class HLSProxy:
    def __init__(
        self,
        registry: SessionRegistry,
        client: httpx.AsyncClient | None = None,
        endpoint: str = "/segment",
        timeout_sec: float = _UPSTREAM_TIMEOUT_SEC,
    ) -> None:
        self.registry = registry
        self.endpoint = endpoint
        self._client = client or httpx.AsyncClient(timeout=timeout_sec)

    async def fetch_playlist(self, session_id: str) -> str:
        session = self.registry.get(session_id)
        url = session.manifest_url
        cookie = await self.registry.get_cookie_header(session_id, url)
        try:
            response = await fetch_with_fallback(
                self._client, url, session.source_url, manifest=True, cookie=cookie
            )
        except httpx.HTTPError as e:
            raise UpstreamManifestError(f"Upstream m3u8 unreachable: {e}") from e
        if not response.is_success:
            log.warning("Manifest fetch failed for session %s: %d", session_id, response.status_code)
            raise UpstreamManifestError(
                f"Upstream error m3u8 ({response.status_code})", status=response.status_code
            )
        return rewrite_manifest(response.text, url, session_id, self.endpoint)

    async def fetch_segment(
        self,
        session_id: str,
        url: str,
        range_header: str | None = None,
    ) -> RelayResponse:
        session = self.registry.get(session_id)
        cookie = await self.registry.get_cookie_header(session_id, url)
        try:
            response = await fetch_with_fallback(
                self._client,
                url,
                session.source_url,
                manifest=False,
                cookie=cookie,
                range_header=range_header,
                stream=True,
            )
        except httpx.HTTPError as e:
            raise UpstreamSegmentError(f"Upstream segment unreachable: {e}") from e

        content_type = response.headers.get("content-type", "")
        if response.is_success and is_manifest_response(url, content_type):
            try:
                await response.aread()
            finally:
                await response.aclose()
            body = rewrite_manifest(response.text, url, session_id, self.endpoint).encode()
            headers = {
                "content-type": MANIFEST_CONTENT_TYPE,
                "cache-control": response.headers.get("cache-control", "no-cache"),
                "content-length": str(len(body)),
            }
            return RelayResponse(response.status_code, headers, body=body)

        headers = {k: v for k in _RELAY_HEADERS if (v := response.headers.get(k))}
        if response.is_success and is_disguised_segment(url):
            log.debug("Disguised segment %s -> %s", url[:100], SEGMENT_CONTENT_TYPE)
            headers["content-type"] = SEGMENT_CONTENT_TYPE
        elif content_type:
            headers["content-type"] = content_type
        return RelayResponse(response.status_code, headers, stream=_iter_body(response))

    async def aclose(self) -> None:
        await self._client.aclose()
