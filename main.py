#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = ["fastapi", "uvicorn[standard]", "httpx", "playwright"]
# ///
"""HLS relay server.

Serves scraped HLS streams through a rewriting proxy bound to browser capture
sessions, and transcodes local media files to HLS on demand.

Usage:
    ./main.py [--port PORT] [--debug] [--cert FILE --key FILE]

Options:
    --port PORT     Port to listen on (default: 8000)
    --debug         Enable debug logging
    --cert FILE     SSL certificate file
    --key FILE      SSL private key file
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import pathlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated
from typing import Any

from fastapi import Depends
from fastapi import FastAPI
from fastapi import HTTPException
from fastapi import Query
from fastapi import Request
from fastapi.responses import FileResponse
from fastapi.responses import JSONResponse
from fastapi.responses import Response
from fastapi.responses import StreamingResponse

from browser import BrowserEngine
from cache import clean_expired_manifest_cache
from cache import clear_manifest_cache
from cache import get_manifest_cache
from cache import get_manifest_cache_stats
from cache import load_settings
from cache import save_manifest_cache
from errors import CaptureTimeout
from errors import EncoderProcessError
from errors import LaunchError
from errors import SessionNotFoundError
from errors import UpstreamError
from hls_proxy import MANIFEST_CONTENT_TYPE
from hls_proxy import HLSProxy
from sessions import SessionRegistry
from transcoding import QUALITY_PRESETS
from transcoding import HLSConfig
from transcoding import TranscodePipeline


log = logging.getLogger()

_CORS = {"Access-Control-Allow-Origin": "*"}
_NO_CACHE = {"Cache-Control": "no-cache, no-store, must-revalidate"}


# =============================================================================
# App Setup
# =============================================================================


def init_state(app: FastAPI, settings: dict[str, Any]) -> None:
    """Create the engines on app.state unless they were injected already."""
    state = app.state
    if getattr(state, "registry", None) is None:
        engine = BrowserEngine(
            headless=settings["browser_headless"],
            executable_path=settings["browser_executable"],
            settle_sec=settings["capture_settle_secs"],
            nav_timeout_sec=settings["capture_nav_timeout_secs"],
        )
        state.registry = SessionRegistry(
            engine,
            source_base_url=settings["source_base_url"],
            max_age_sec=settings["session_max_age_mins"] * 60,
        )
    if getattr(state, "proxy", None) is None:
        state.proxy = HLSProxy(state.registry, timeout_sec=settings["upstream_timeout_secs"])
    if getattr(state, "pipeline", None) is None:
        state.pipeline = TranscodePipeline(
            settings["transcode_dir"],
            default_config=HLSConfig(
                segment_duration=settings["segment_duration"],
                playlist_size=settings["playlist_size"],
                quality=settings["quality"],
            ),
            stop_grace_sec=settings["stop_grace_secs"],
        )


async def _cleanup_loop(app: FastAPI, interval_sec: float, stream_max_age_sec: float) -> None:
    while True:
        await asyncio.sleep(interval_sec)
        try:
            await app.state.registry.sweep()
            await asyncio.to_thread(app.state.pipeline.cleanup, stream_max_age_sec)
        except Exception as e:
            log.error("Cleanup error: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the engines, run periodic cleanup, release browser and encoders on exit."""
    settings = load_settings()
    init_state(app, settings)
    clean_expired_manifest_cache()
    cleanup_task = asyncio.create_task(
        _cleanup_loop(app, settings["gc_interval_secs"], settings["stream_max_age_mins"] * 60)
    )
    try:
        yield
    finally:
        cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup_task
        await app.state.pipeline.aclose()
        await app.state.proxy.aclose()
        await app.state.registry.close()


app = FastAPI(lifespan=lifespan)


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_proxy(request: Request) -> HLSProxy:
    return request.app.state.proxy


def get_pipeline(request: Request) -> TranscodePipeline:
    return request.app.state.pipeline


@app.exception_handler(SessionNotFoundError)
async def session_not_found_handler(_request: Request, exc: SessionNotFoundError):
    return JSONResponse({"error": str(exc)}, status_code=404)


@app.exception_handler(UpstreamError)
async def upstream_error_handler(_request: Request, exc: UpstreamError):
    return Response(str(exc), status_code=exc.status or 502, media_type="text/plain")


@app.exception_handler(LaunchError)
async def launch_error_handler(_request: Request, exc: LaunchError):
    return JSONResponse({"error": str(exc)}, status_code=503)


@app.exception_handler(CaptureTimeout)
async def capture_timeout_handler(_request: Request, exc: CaptureTimeout):
    return JSONResponse({"error": str(exc)}, status_code=504)


@app.exception_handler(EncoderProcessError)
async def encoder_error_handler(_request: Request, exc: EncoderProcessError):
    return JSONResponse({"error": str(exc)}, status_code=500)


# =============================================================================
# Capture Sessions & Proxy
# =============================================================================


def _session_response(session_id: str, cached: bool) -> dict[str, Any]:
    return {
        "ok": True,
        "sessionId": session_id,
        "playlistUrl": f"/playlist?sessionId={session_id}",
        "cached": cached,
    }


@app.get("/session/start")
async def session_start(
    registry: Annotated[SessionRegistry, Depends(get_registry)],
    media_id: Annotated[str, Query(alias="id")],
    kind: str = "movie",
    season: str | None = None,
    episode: str | None = None,
    no_cache: bool = False,
):
    """Start a capture session, reusing a cached manifest URL when one exists."""
    kind = kind.lower()
    entry = None if no_cache else get_manifest_cache(kind, media_id, season, episode)
    if entry:
        session = registry.create_from_cache(
            entry.stream_url, kind, media_id, season, episode, entry.source_url
        )
        return _session_response(session.id, cached=True)

    session = await registry.create_from_capture(kind, media_id, season, episode)
    save_manifest_cache(kind, media_id, session.manifest_url, session.source_url, season, episode)
    return _session_response(session.id, cached=False)


@app.get("/session/start-cache")
async def session_start_cache(
    registry: Annotated[SessionRegistry, Depends(get_registry)],
    manifest_url: str,
    media_id: Annotated[str, Query(alias="id")],
    kind: str = "movie",
    season: str | None = None,
    episode: str | None = None,
    source_url: str | None = None,
):
    """Start a session from a known manifest URL, skipping the browser."""
    session = registry.create_from_cache(
        manifest_url, kind.lower(), media_id, season, episode, source_url
    )
    return _session_response(session.id, cached=True)


@app.get("/playlist")
async def playlist(
    proxy: Annotated[HLSProxy, Depends(get_proxy)],
    session_id: Annotated[str, Query(alias="sessionId")],
):
    text = await proxy.fetch_playlist(session_id)
    return Response(
        content=text,
        media_type=MANIFEST_CONTENT_TYPE,
        headers={"Cache-Control": "no-cache", "Pragma": "no-cache", **_CORS},
    )


@app.get("/segment")
async def segment(
    request: Request,
    proxy: Annotated[HLSProxy, Depends(get_proxy)],
    session_id: Annotated[str, Query(alias="sessionId")],
    url: str,
):
    relay = await proxy.fetch_segment(session_id, url, request.headers.get("range"))
    headers = {"cache-control": "no-cache", **relay.headers, **_CORS}
    if relay.body is not None:
        return Response(content=relay.body, status_code=relay.status, headers=headers)
    return StreamingResponse(relay.stream, status_code=relay.status, headers=headers)


@app.get("/manifest-cache/stats")
async def manifest_cache_stats():
    return get_manifest_cache_stats()


@app.delete("/manifest-cache")
async def manifest_cache_clear():
    return {"status": "cleared", "deleted": clear_manifest_cache()}


# =============================================================================
# Transcoding
# =============================================================================


def _stream_info(pipeline: TranscodePipeline, stream_id: str, base_url: str) -> dict[str, Any]:
    stream = pipeline.get_stream(stream_id)
    if stream is None:
        raise HTTPException(404, "Stream not found")
    return {
        "stream_id": stream.id,
        "status": stream.status.value,
        "error": stream.error,
        "ready": pipeline.is_stream_ready(stream_id),
        "url": pipeline.get_stream_url(stream_id, base_url),
    }


def _check_input(input_path: str) -> None:
    if not pathlib.Path(input_path).is_file():
        raise HTTPException(404, "Input file not found")


def _check_name(name: str) -> None:
    # Prevent path traversal
    if pathlib.Path(name).name != name or ".." in name:
        raise HTTPException(400, "Invalid name")


@app.post("/stream/start")
async def stream_start(
    request: Request,
    pipeline: Annotated[TranscodePipeline, Depends(get_pipeline)],
    stream_id: str,
    input_path: str,
    segment_duration: int | None = None,
    playlist_size: int | None = None,
    quality: str | None = None,
    start_offset: float = 0.0,
):
    """Start (or reuse) an HLS transcode of a local file."""
    _check_name(stream_id)
    _check_input(input_path)
    defaults = pipeline.default_config
    config = HLSConfig(
        segment_duration=segment_duration or defaults.segment_duration,
        playlist_size=defaults.playlist_size if playlist_size is None else playlist_size,
        quality=quality or defaults.quality,
        start_offset=start_offset,
    )
    if config.quality not in QUALITY_PRESETS:
        raise HTTPException(400, f"Unknown quality: {config.quality}")
    stream = await pipeline.start_stream(stream_id, input_path, config)
    stream.raise_for_error()
    return _stream_info(pipeline, stream_id, str(request.base_url))


@app.post("/stream/adaptive")
async def stream_adaptive(
    request: Request,
    pipeline: Annotated[TranscodePipeline, Depends(get_pipeline)],
    stream_id: str,
    input_path: str,
    quality: Annotated[list[str], Query()] = ["low", "medium", "high"],  # noqa: B006
):
    """Start one transcode per quality tier under a shared master playlist."""
    _check_name(stream_id)
    _check_input(input_path)
    try:
        streams = await pipeline.start_adaptive_stream(stream_id, input_path, quality)
    except ValueError as e:
        raise HTTPException(400, str(e)) from e
    base_url = str(request.base_url)
    return {
        "stream_id": stream_id,
        "master": pipeline.get_master_url(stream_id, base_url),
        "variants": [_stream_info(pipeline, s.id, base_url) for s in streams],
    }


@app.get("/stream/{stream_id}")
async def stream_status(
    request: Request,
    stream_id: str,
    pipeline: Annotated[TranscodePipeline, Depends(get_pipeline)],
):
    return _stream_info(pipeline, stream_id, str(request.base_url))


@app.delete("/stream/{stream_id}")
async def stream_stop(
    stream_id: str,
    pipeline: Annotated[TranscodePipeline, Depends(get_pipeline)],
):
    await pipeline.stop_stream(stream_id)
    return {"status": "stopped"}


@app.post("/stream/{stream_id}/stop")
async def stream_stop_post(
    stream_id: str,
    pipeline: Annotated[TranscodePipeline, Depends(get_pipeline)],
):
    """Stop a stream (POST for sendBeacon)."""
    await pipeline.stop_stream(stream_id)
    return {"status": "stopped"}


@app.get("/hls/{stream_id}/{filename}")
async def hls_file(
    stream_id: str,
    filename: str,
    pipeline: Annotated[TranscodePipeline, Depends(get_pipeline)],
):
    """Serve HLS playlists and segments from the transcode directory."""
    _check_name(stream_id)
    _check_name(filename)
    file_path = pipeline.output_dir / stream_id / filename
    if not file_path.is_file():
        raise HTTPException(404, "File not found")
    if filename.endswith(".m3u8"):
        return Response(
            content=file_path.read_text(),
            media_type=MANIFEST_CONTENT_TYPE,
            headers={**_NO_CACHE, **_CORS},
        )
    return FileResponse(file_path, media_type="video/mp2t", headers=_CORS)


if __name__ == "__main__":
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="HLS relay server")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--cert", help="SSL certificate file (e.g., fullchain.pem)")
    parser.add_argument("--key", help="SSL private key file (e.g., privkey.pem)")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )

    ssl_args = {}
    if args.cert and args.key:
        ssl_args = {"ssl_certfile": args.cert, "ssl_keyfile": args.key}
    elif args.cert or args.key:
        raise SystemExit("--cert and --key must be given together")

    uv_log = "debug" if args.debug else "info"
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=args.port,
        access_log=args.debug,
        log_level=uv_log,
        **ssl_args,  # pyright: ignore[reportArgumentType]
    )
