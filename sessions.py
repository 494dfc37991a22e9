"""Capture session registry and age-based garbage collection."""

from __future__ import annotations

import asyncio
import logging
import time
import urllib.parse
import uuid
from dataclasses import dataclass
from dataclasses import field
from typing import Any

from browser import BrowserEngine
from browser import close_page
from browser import page_cookie_header
from errors import SessionNotFoundError


log = logging.getLogger(__name__)

DEFAULT_SOURCE_BASE_URL = "https://111movies.com"
DEFAULT_MAX_AGE_SEC = 15 * 60


def build_source_url(
    kind: str,
    media_id: str,
    season: str | None = None,
    episode: str | None = None,
    base_url: str = DEFAULT_SOURCE_BASE_URL,
) -> str:
    base_url = base_url.rstrip("/")
    if kind.lower() == "tv":
        return f"{base_url}/tv/{media_id}/{season or ''}/{episode or ''}"
    return f"{base_url}/movie/{media_id}"


def normalize_host(url: str) -> str:
    return urllib.parse.urlsplit(url).netloc.lower()


@dataclass(slots=True)
class CaptureSession:
    id: str
    source_url: str
    manifest_url: str
    created_at: float
    page: Any = None  # playwright Page, None for cache sessions
    cookies: dict[str, str] = field(default_factory=dict)
    _cookie_locks: dict[str, asyncio.Lock] = field(default_factory=dict, repr=False)

    @property
    def age(self) -> float:
        return time.time() - self.created_at


class SessionRegistry:
    """Maps opaque session ids to capture sessions.

    Owns the browser pages of browser-backed sessions; close() releases them
    together with the engine's browser.
    """

    def __init__(
        self,
        engine: BrowserEngine | None = None,
        source_base_url: str = DEFAULT_SOURCE_BASE_URL,
        max_age_sec: float = DEFAULT_MAX_AGE_SEC,
    ) -> None:
        self.engine = engine or BrowserEngine()
        self.source_base_url = source_base_url
        self.max_age_sec = max_age_sec
        self._sessions: dict[str, CaptureSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def _register(self, session: CaptureSession) -> CaptureSession:
        self._sessions[session.id] = session
        return session

    async def create_from_capture(
        self,
        kind: str,
        media_id: str,
        season: str | None = None,
        episode: str | None = None,
    ) -> CaptureSession:
        source_url = build_source_url(kind, media_id, season, episode, self.source_base_url)
        log.info("Capturing manifest from %s", source_url)
        result = await self.engine.capture_page(source_url)
        session = self._register(
            CaptureSession(
                id=uuid.uuid4().hex,
                source_url=source_url,
                manifest_url=result.manifest_url,
                created_at=time.time(),
                page=result.page,
            )
        )
        await self.get_cookie_header(session.id, session.manifest_url)
        log.info("Session %s bound to %s", session.id, session.manifest_url[:120])
        return session

    def create_from_cache(
        self,
        manifest_url: str,
        kind: str,
        media_id: str,
        season: str | None = None,
        episode: str | None = None,
        source_url: str | None = None,
    ) -> CaptureSession:
        session = self._register(
            CaptureSession(
                id=uuid.uuid4().hex,
                source_url=source_url
                or build_source_url(kind, media_id, season, episode, self.source_base_url),
                manifest_url=manifest_url,
                created_at=time.time(),
            )
        )
        log.info("Cache session %s (source %s)", session.id, session.source_url)
        return session

    def get(self, session_id: str) -> CaptureSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def get_cookie_header(self, session_id: str, target_url: str) -> str | None:
        """Cookie header for target_url's host, read from the page once per host."""
        session = self.get(session_id)
        host = normalize_host(target_url)
        if host in session.cookies:
            return session.cookies[host] or None
        if session.page is None:
            return None
        lock = session._cookie_locks.setdefault(host, asyncio.Lock())
        async with lock:
            if host not in session.cookies:
                session.cookies[host] = await page_cookie_header(session.page, target_url) or ""
        return session.cookies[host] or None

    async def sweep(self, max_age_sec: float | None = None) -> list[str]:
        """Drop sessions older than max_age_sec and close their pages."""
        max_age = self.max_age_sec if max_age_sec is None else max_age_sec
        expired = [s for s in list(self._sessions.values()) if s.age > max_age]
        for session in expired:
            self._sessions.pop(session.id, None)
            if session.page is not None:
                try:
                    await close_page(session.page)
                except Exception as e:
                    log.debug("Ignoring page close error for %s: %s", session.id, e)
        if expired:
            log.info("Reaped %d expired session(s)", len(expired))
        return [s.id for s in expired]

    async def close(self) -> None:
        for session in list(self._sessions.values()):
            if session.page is not None:
                await close_page(session.page)
        self._sessions.clear()
        await self.engine.close()
