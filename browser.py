"""Headless Chromium driven by Playwright to discover a page's real HLS manifest."""

from __future__ import annotations

import asyncio
import logging
import re
import urllib.parse
from dataclasses import dataclass
from typing import Any

from playwright.async_api import Browser
from playwright.async_api import BrowserContext
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import Playwright
from playwright.async_api import async_playwright

from errors import CaptureTimeout
from errors import LaunchError


log = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/142.0.0.0 Safari/537.36"
)
ACCEPT_LANGUAGE = "en-US,en;q=0.9"

# Timing constants (seconds)
_SETTLE_SEC = 3.5
_NAV_TIMEOUT_SEC = 60.0
_LAUNCH_TIMEOUT_SEC = 30.0
_CLICK_TIMEOUT_SEC = 2.0

_LAUNCH_ARGS = [
    "--disable-dev-shm-usage",
    "--disable-setuid-sandbox",
    "--disable-gpu",
    "--disable-software-rasterizer",
    "--disable-blink-features=AutomationControlled",
    "--autoplay-policy=no-user-gesture-required",
    "--no-first-run",
    "--no-sandbox",
    "--no-zygote",
    "--window-size=1920,1080",
]

PLAY_SELECTORS = [
    ".vjs-big-play-button",
    ".jw-icon-play",
    "#play",
    '[data-action="play"]',
    'button[aria-label="Play"]',
    'button[title="Play"]',
    '.plyr__control[data-plyr="play"]',
]

_MANIFEST_URL_RE = re.compile(r"\.m3u8(\?|$)", re.IGNORECASE)
_HTML_MANIFEST_RE = re.compile(r"https?://[^\"'\s<>]+\.m3u8[^\"'\s<>]*", re.IGNORECASE)

# Runs before any page script: hide automation signals headless Chromium leaks.
_FINGERPRINT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => false });
window.chrome = { runtime: {} };
Object.defineProperty(navigator, 'plugins', {
  get: () => [
    { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer', description: 'Portable Document Format' },
    { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai', description: '' },
    { name: 'Native Client', filename: 'internal-nacl-plugin', description: '' },
  ],
});
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
const originalQuery = window.navigator.permissions.query;
window.navigator.permissions.query = (parameters) => (
  parameters.name === 'notifications'
    ? Promise.resolve({ state: Notification.permission })
    : originalQuery(parameters)
);
Object.defineProperty(document, 'hidden', { get: () => false });
Object.defineProperty(document, 'visibilityState', { get: () => 'visible' });
"""


def looks_like_manifest(url: str) -> bool:
    return bool(_MANIFEST_URL_RE.search(url)) or ".workers.dev/" in url


def find_manifest_in_html(html: str) -> str | None:
    m = _HTML_MANIFEST_RE.search(html)
    return m.group(0) if m else None


def _origin(url: str) -> str:
    parts = urllib.parse.urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


@dataclass(slots=True)
class CaptureResult:
    source_url: str
    manifest_url: str
    page: Page


async def page_cookie_header(page: Page, url: str) -> str | None:
    """Cookie header the page's context would send to url, or None."""
    try:
        cookies = await page.context.cookies(url)
    except PlaywrightError as e:
        log.debug("Cookie read failed for %s: %s", url[:80], e)
        return None
    if not cookies:
        return None
    return "; ".join(f"{c['name']}={c['value']}" for c in cookies)


async def _close_context(context: BrowserContext) -> None:
    try:
        await context.close()
    except PlaywrightError as e:
        log.debug("Context close failed: %s", e)


async def close_page(page: Page) -> None:
    """Close a capture page together with its private context."""
    await _close_context(page.context)


class BrowserEngine:
    """Owns one lazily launched Chromium shared by every capture."""

    def __init__(
        self,
        headless: bool = True,
        executable_path: str | None = None,
        settle_sec: float = _SETTLE_SEC,
        nav_timeout_sec: float = _NAV_TIMEOUT_SEC,
    ) -> None:
        self.headless = headless
        self.executable_path = executable_path or None
        self.settle_sec = settle_sec
        self.nav_timeout_sec = nav_timeout_sec
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._lock = asyncio.Lock()

    async def launch(self) -> Browser:
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            try:
                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=self.headless,
                    args=_LAUNCH_ARGS,
                    executable_path=self.executable_path,
                    timeout=_LAUNCH_TIMEOUT_SEC * 1000,
                )
            except PlaywrightError as e:
                log.error("Browser launch failed: %s", e)
                raise LaunchError(f"Browser launch failed: {e}") from e
            log.info("Browser launched (headless=%s)", self.headless)
            return self._browser

    async def new_page(self, source_url: str) -> Page:
        """Open a page in a fresh context fingerprinted as a desktop Chrome tab.

        Raises LaunchError if the context or page cannot be created.
        """
        browser = await self.launch()
        try:
            context = await browser.new_context(
                user_agent=USER_AGENT,
                viewport={"width": 1920, "height": 1080},
                locale="en-US",
                extra_http_headers={
                    "Referer": source_url,
                    "Origin": _origin(source_url),
                    "Accept-Language": ACCEPT_LANGUAGE,
                    "Cache-Control": "no-cache",
                    "Pragma": "no-cache",
                },
            )
        except PlaywrightError as e:
            raise LaunchError(f"Could not open browser context: {e}") from e
        try:
            await context.add_init_script(script=_FINGERPRINT_SCRIPT)
            return await context.new_page()
        except PlaywrightError as e:
            await _close_context(context)
            raise LaunchError(f"Could not open capture page: {e}") from e
        except BaseException:
            await _close_context(context)
            raise

    async def capture_page(self, source_url: str) -> CaptureResult:
        """Navigate to source_url and return the first manifest URL it requests.

        The returned page stays open; its owner must close it with close_page().
        Raises CaptureTimeout (after closing the page) if nothing is found.
        """
        page = await self.new_page(source_url)
        found: list[str] = []

        def observe(message: Any) -> None:
            if not found and looks_like_manifest(message.url):
                found.append(message.url)
                log.info("Observed manifest %s", message.url[:120])

        try:
            page.on("request", observe)
            page.on("response", observe)
            try:
                await page.goto(
                    source_url,
                    wait_until="domcontentloaded",
                    timeout=self.nav_timeout_sec * 1000,
                )
            except PlaywrightError as e:
                log.warning("Navigation to %s incomplete: %s", source_url, e)

            await _click_play_controls(page)
            await asyncio.sleep(self.settle_sec)

            if not found:
                try:
                    html = await page.content()
                except PlaywrightError as e:
                    log.debug("Could not read page HTML: %s", e)
                    html = ""
                if manifest := find_manifest_in_html(html):
                    log.info("Found manifest in page HTML: %s", manifest[:120])
                    found.append(manifest)
        except PlaywrightError as e:
            await close_page(page)
            log.warning("Capture of %s failed: %s", source_url, e)
            raise CaptureTimeout(source_url) from e
        except BaseException:
            # includes cancellation; the page must not outlive the capture
            await close_page(page)
            raise

        if not found:
            await close_page(page)
            raise CaptureTimeout(source_url)
        return CaptureResult(source_url=source_url, manifest_url=found[0], page=page)

    async def close(self) -> None:
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                log.warning("Error closing browser: %s", e)
            self._browser = None
            log.info("Browser closed")
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


async def _click_play_controls(page: Page) -> None:
    # page.frames includes the main frame
    for frame in page.frames:
        for selector in PLAY_SELECTORS:
            try:
                handle = await frame.query_selector(selector)
                if handle:
                    await handle.click(delay=50, timeout=_CLICK_TIMEOUT_SEC * 1000)
            except PlaywrightError as e:
                log.debug("Click %s failed in %s: %s", selector, frame.url[:80], e)
