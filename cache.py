"""Server settings and the on-disk manifest URL cache."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

import json
import logging
import pathlib
import time


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
CACHE_DIR = APP_DIR / ".cache"
SERVER_SETTINGS_FILE = CACHE_DIR / "server_settings.json"
MANIFEST_CACHE_DIR = CACHE_DIR / "manifests"

# Manifest URLs from the capture sources are long-lived
MANIFEST_CACHE_TTL = 90 * 24 * 3600  # 90 days


def load_settings() -> dict[str, Any]:
    """Load server-wide settings."""
    if SERVER_SETTINGS_FILE.exists():
        data: dict[str, Any] = json.loads(SERVER_SETTINGS_FILE.read_text())
    else:
        data = {}
    # Capture proxy
    data.setdefault("source_base_url", "https://111movies.com")
    data.setdefault("browser_headless", True)
    data.setdefault("browser_executable", "")  # Empty = Playwright's bundled Chromium
    data.setdefault("capture_settle_secs", 3.5)
    data.setdefault("capture_nav_timeout_secs", 60)
    data.setdefault("upstream_timeout_secs", 30)
    data.setdefault("session_max_age_mins", 15)
    data.setdefault("gc_interval_secs", 60)
    # Transcoding
    data.setdefault("transcode_dir", "/tmp/hls-streams")
    data.setdefault("segment_duration", 6)
    data.setdefault("playlist_size", 10)
    data.setdefault("quality", "medium")
    data.setdefault("stop_grace_secs", 5)
    data.setdefault("stream_max_age_mins", 60)
    return data


@dataclass(slots=True)
class ManifestCacheEntry:
    stream_url: str
    source_url: str
    kind: str
    media_id: str
    season: str | None = None
    episode: str | None = None
    timestamp: float = 0.0
    expires_at: float = 0.0


def _sanitize_name(name: str) -> str:
    """Sanitize a name for use as a file name."""
    name = name.replace("..", "").replace("/", "_").replace("\\", "_")
    name = "".join(c for c in name if c.isalnum() or c in "-_")
    return name[:224] or "default"


def manifest_cache_key(
    kind: str,
    media_id: str,
    season: str | None = None,
    episode: str | None = None,
) -> str:
    if "tv" in kind.lower() and season and episode:
        return _sanitize_name(f"{kind}_{media_id}_s{season}e{episode}")
    return _sanitize_name(f"{kind}_{media_id}")


def _manifest_cache_path(key: str) -> pathlib.Path:
    return MANIFEST_CACHE_DIR / f"{key}.json"


def save_manifest_cache(
    kind: str,
    media_id: str,
    stream_url: str,
    source_url: str,
    season: str | None = None,
    episode: str | None = None,
    ttl: float = MANIFEST_CACHE_TTL,
) -> pathlib.Path:
    """Store a captured manifest URL. Returns the cache file path."""
    MANIFEST_CACHE_DIR.mkdir(parents=True, exist_ok=True)
    key = manifest_cache_key(kind, media_id, season, episode)
    now = time.time()
    entry = ManifestCacheEntry(
        stream_url=stream_url,
        source_url=source_url,
        kind=kind,
        media_id=media_id,
        season=season,
        episode=episode,
        timestamp=now,
        expires_at=now + ttl,
    )
    path = _manifest_cache_path(key)
    # Atomic write: write to temp file then rename
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(asdict(entry), indent=2))
    tmp.rename(path)
    log.info("Cached manifest for %s (expires in %.0f days)", key, ttl / 86400)
    return path


def _read_entry(path: pathlib.Path) -> ManifestCacheEntry | None:
    try:
        return ManifestCacheEntry(**json.loads(path.read_text()))
    except (OSError, ValueError, TypeError):
        return None


def get_manifest_cache(
    kind: str,
    media_id: str,
    season: str | None = None,
    episode: str | None = None,
) -> ManifestCacheEntry | None:
    """Get cached manifest entry. Expired entries are deleted and None returned."""
    key = manifest_cache_key(kind, media_id, season, episode)
    path = _manifest_cache_path(key)
    if not path.exists():
        return None
    entry = _read_entry(path)
    if entry is None:
        log.warning("Unreadable manifest cache entry %s", key)
        return None
    if time.time() > entry.expires_at:
        log.info("Manifest cache expired for %s", key)
        path.unlink(missing_ok=True)
        return None
    age_days = (time.time() - entry.timestamp) / 86400
    log.info("Manifest cache hit for %s (age %.1f days)", key, age_days)
    return entry


def clean_expired_manifest_cache() -> int:
    """Delete expired or unreadable entries. Returns count deleted."""
    if not MANIFEST_CACHE_DIR.exists():
        return 0
    now = time.time()
    deleted = 0
    for path in MANIFEST_CACHE_DIR.glob("*.json"):
        entry = _read_entry(path)
        if entry is None or now > entry.expires_at:
            path.unlink(missing_ok=True)
            deleted += 1
    if deleted:
        log.info("Removed %d expired manifest cache entries", deleted)
    return deleted


def clear_manifest_cache() -> int:
    """Delete every manifest cache entry. Returns count deleted."""
    if not MANIFEST_CACHE_DIR.exists():
        return 0
    deleted = 0
    for path in MANIFEST_CACHE_DIR.glob("*.json"):
        path.unlink(missing_ok=True)
        deleted += 1
    return deleted


def get_manifest_cache_stats() -> dict[str, Any]:
    """Get counts and size of the manifest cache for the settings API."""
    stats = {"total": 0, "valid": 0, "expired": 0, "size_bytes": 0}
    if not MANIFEST_CACHE_DIR.exists():
        return stats
    now = time.time()
    for path in MANIFEST_CACHE_DIR.glob("*.json"):
        stats["total"] += 1
        stats["size_bytes"] += path.stat().st_size
        entry = _read_entry(path)
        if entry is None or now > entry.expires_at:
            stats["expired"] += 1
        else:
            stats["valid"] += 1
    return stats
