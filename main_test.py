"""Tests for the HTTP routes in main.py."""

from __future__ import annotations

from pathlib import Path
from unittest import mock

import asyncio
import threading
import types

import httpx
import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

import cache
import main
from browser import CaptureResult
from errors import CaptureTimeout
from errors import LaunchError
from hls_proxy import HLSProxy
from sessions import SessionRegistry
from transcoding import HLSConfig
from transcoding import StreamStatus
from transcoding import TranscodePipeline
from transcoding import TranscodeStream


MANIFEST_URL = "https://host.example/a/master.m3u8"
MEDIA = "#EXTM3U\n#EXTINF:6.0,\nseg-1.png\n"


def upstream(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path.endswith("/forbidden.m3u8"):
        return httpx.Response(403)
    if path.endswith("/down.m3u8"):
        raise httpx.ConnectError("connection refused", request=request)
    if path.endswith(".m3u8"):
        return httpx.Response(200, text=MEDIA)
    headers = {"content-type": "image/png", "accept-ranges": "bytes"}
    if "range" in request.headers:
        headers["content-range"] = "bytes 0-3/188"
        return httpx.Response(206, content=b"\x47abc", headers=headers)
    return httpx.Response(200, content=b"\x47" * 188, headers=headers)


@pytest.fixture
def app_state(tmp_path: Path, monkeypatch):
    """Inject engines into app.state; the lifespan is not run."""
    monkeypatch.setattr(cache, "MANIFEST_CACHE_DIR", tmp_path / "manifests")
    engine = mock.Mock()
    engine.capture_page = mock.AsyncMock()
    engine.close = mock.AsyncMock()
    registry = SessionRegistry(engine, source_base_url="https://src.example")
    proxy = HLSProxy(registry, client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)))
    pipeline = TranscodePipeline(tmp_path / "hls")
    state = main.app.state
    state.registry, state.proxy, state.pipeline = registry, proxy, pipeline

    yield state

    asyncio.run(proxy.aclose())
    del state.registry, state.proxy, state.pipeline


@pytest.fixture
def client(app_state):
    return TestClient(main.app)


def _fake_page():
    page = mock.Mock()
    page.context.cookies = mock.AsyncMock(return_value=[])
    page.context.close = mock.AsyncMock()
    return page


class TestSessions:
    def test_start_cache_then_playlist(self, client):
        resp = client.get("/session/start-cache", params={"manifest_url": MANIFEST_URL, "id": "550"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["ok"] is True
        assert data["cached"] is True

        resp = client.get(data["playlistUrl"])
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/vnd.apple.mpegurl")
        assert f"/segment?sessionId={data['sessionId']}&url=" in resp.text

    def test_start_captures_and_saves(self, client, app_state):
        engine = app_state.registry.engine
        engine.capture_page.return_value = CaptureResult(
            "https://src.example/movie/550", MANIFEST_URL, _fake_page()
        )
        resp = client.get("/session/start", params={"id": "550"})
        assert resp.status_code == 200
        assert resp.json()["cached"] is False
        engine.capture_page.assert_awaited_once_with("https://src.example/movie/550")

        # Second start is served from the manifest cache
        resp = client.get("/session/start", params={"id": "550"})
        assert resp.json()["cached"] is True
        engine.capture_page.assert_awaited_once()
        assert len(app_state.registry) == 2

    def test_start_no_cache_bypasses_cache(self, client, app_state):
        cache.save_manifest_cache("movie", "550", MANIFEST_URL, "https://src.example/movie/550")
        engine = app_state.registry.engine
        engine.capture_page.return_value = CaptureResult(
            "https://src.example/movie/550", MANIFEST_URL, _fake_page()
        )
        resp = client.get("/session/start", params={"id": "550", "no_cache": "true"})
        assert resp.json()["cached"] is False
        engine.capture_page.assert_awaited_once()

    def test_capture_timeout_is_504(self, client, app_state):
        app_state.registry.engine.capture_page.side_effect = CaptureTimeout("https://src.example/tv/1/1/1")
        resp = client.get("/session/start", params={"kind": "tv", "id": "1", "season": "1", "episode": "1"})
        assert resp.status_code == 504
        assert cache.get_manifest_cache("tv", "1", "1", "1") is None

    def test_launch_error_is_503(self, client, app_state):
        app_state.registry.engine.capture_page.side_effect = LaunchError("no chromium")
        assert client.get("/session/start", params={"id": "1"}).status_code == 503

    def test_unknown_session_is_404(self, client):
        assert client.get("/playlist", params={"sessionId": "nope"}).status_code == 404
        resp = client.get("/segment", params={"sessionId": "nope", "url": "https://h/s.ts"})
        assert resp.status_code == 404


class TestProxyRoutes:
    def _session(self, app_state, manifest_url: str = MANIFEST_URL) -> str:
        return app_state.registry.create_from_cache(manifest_url, "movie", "550").id

    def test_upstream_status_mirrored(self, client, app_state):
        sid = self._session(app_state, "https://host.example/forbidden.m3u8")
        assert client.get("/playlist", params={"sessionId": sid}).status_code == 403

    def test_unreachable_upstream_is_502(self, client, app_state):
        sid = self._session(app_state, "https://host.example/down.m3u8")
        assert client.get("/playlist", params={"sessionId": sid}).status_code == 502

    def test_segment_disguised(self, client, app_state):
        sid = self._session(app_state)
        resp = client.get(
            "/segment", params={"sessionId": sid, "url": "https://host.example/a/seg-1.png"}
        )
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "video/mp2t"
        assert resp.content == b"\x47" * 188

    def test_segment_range(self, client, app_state):
        sid = self._session(app_state)
        resp = client.get(
            "/segment",
            params={"sessionId": sid, "url": "https://host.example/a/seg-1.png"},
            headers={"Range": "bytes=0-3"},
        )
        assert resp.status_code == 206
        assert resp.headers["content-range"] == "bytes 0-3/188"
        assert resp.content == b"\x47abc"

    def test_segment_nested_manifest(self, client, app_state):
        sid = self._session(app_state)
        resp = client.get(
            "/segment", params={"sessionId": sid, "url": "https://host.example/a/720p/index.m3u8"}
        )
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/vnd.apple.mpegurl")
        assert "/segment?sessionId=" in resp.text

    def test_manifest_cache_routes(self, client):
        cache.save_manifest_cache("movie", "1", MANIFEST_URL, "https://src.example/movie/1")
        assert client.get("/manifest-cache/stats").json()["valid"] == 1
        assert client.delete("/manifest-cache").json() == {"status": "cleared", "deleted": 1}


class TestStreamRoutes:
    @pytest.fixture
    def pipeline(self, app_state, tmp_path: Path):
        """Pipeline with start/stop mocked out; no encoder processes are spawned."""
        pipeline = app_state.pipeline
        stream = TranscodeStream(id="s1", output_dir=pipeline.output_dir / "s1")

        async def start_stream(stream_id, input_path, config=None):
            pipeline._streams[stream_id] = stream
            stream.status = StreamStatus.RUNNING
            stream.output_dir.mkdir(parents=True, exist_ok=True)
            stream.playlist_path.write_text("#EXTM3U\n")
            return stream

        with (
            mock.patch.object(pipeline, "start_stream", mock.AsyncMock(side_effect=start_stream)),
            mock.patch.object(pipeline, "stop_stream", mock.AsyncMock()),
        ):
            yield pipeline

    @pytest.fixture
    def media_file(self, tmp_path: Path) -> str:
        path = tmp_path / "movie.mkv"
        path.write_bytes(b"\x00")
        return str(path)

    def test_start(self, client, pipeline, media_file):
        resp = client.post(
            "/stream/start", params={"stream_id": "s1", "input_path": media_file, "quality": "high"}
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "running"
        assert data["ready"] is True
        assert data["url"] == "http://testserver/hls/s1/playlist.m3u8"
        config = pipeline.start_stream.call_args.args[2]
        assert config == HLSConfig(quality="high")

    def test_start_missing_input(self, client, pipeline, tmp_path: Path):
        resp = client.post(
            "/stream/start", params={"stream_id": "s1", "input_path": str(tmp_path / "nope.mkv")}
        )
        assert resp.status_code == 404
        pipeline.start_stream.assert_not_called()

    def test_start_bad_quality(self, client, pipeline, media_file):
        resp = client.post(
            "/stream/start", params={"stream_id": "s1", "input_path": media_file, "quality": "8k"}
        )
        assert resp.status_code == 400

    def test_start_encoder_error_is_500(self, client, pipeline, media_file):
        failed = TranscodeStream(id="s1", output_dir=pipeline.output_dir / "s1")
        failed._finish(StreamStatus.ERROR, "spawn failed")
        pipeline.start_stream.side_effect = None
        pipeline.start_stream.return_value = failed
        resp = client.post("/stream/start", params={"stream_id": "s1", "input_path": media_file})
        assert resp.status_code == 500
        assert "spawn failed" in resp.json()["error"]

    def test_status_and_stop(self, client, pipeline, media_file):
        client.post("/stream/start", params={"stream_id": "s1", "input_path": media_file})
        assert client.get("/stream/s1").json()["status"] == "running"
        assert client.get("/stream/unknown").status_code == 404
        assert client.delete("/stream/s1").json() == {"status": "stopped"}
        assert client.post("/stream/s1/stop").json() == {"status": "stopped"}
        assert pipeline.stop_stream.await_count == 2

    def test_adaptive_bad_tier(self, client, app_state, media_file):
        resp = client.post(
            "/stream/adaptive",
            params=[("stream_id", "m"), ("input_path", media_file), ("quality", "low"), ("quality", "8k")],
        )
        assert resp.status_code == 400
        assert app_state.pipeline.get_all_streams() == []


class TestHlsFiles:
    def test_serves_playlist_and_segment(self, client, app_state):
        stream_dir = app_state.pipeline.output_dir / "s1"
        stream_dir.mkdir(parents=True)
        (stream_dir / "playlist.m3u8").write_text("#EXTM3U\n")
        (stream_dir / "segment_000.ts").write_bytes(b"\x47" * 188)

        resp = client.get("/hls/s1/playlist.m3u8")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/vnd.apple.mpegurl")
        assert resp.headers["access-control-allow-origin"] == "*"
        assert resp.text == "#EXTM3U\n"

        resp = client.get("/hls/s1/segment_000.ts")
        assert resp.headers["content-type"] == "video/mp2t"
        assert len(resp.content) == 188

    def test_missing_file(self, client):
        assert client.get("/hls/s1/playlist.m3u8").status_code == 404

    @pytest.mark.parametrize("name", ["..", "../etc", "a/b", "..hidden"])
    def test_rejects_traversal(self, name):
        with pytest.raises(HTTPException) as exc_info:
            main._check_name(name)
        assert exc_info.value.status_code == 400


class TestCleanupLoop:
    def test_stream_cleanup_runs_off_event_loop(self):
        cleanup_threads: list[threading.Thread] = []

        def cleanup(max_age_sec: float) -> list[str]:
            cleanup_threads.append(threading.current_thread())
            return []

        registry = mock.Mock()
        registry.sweep = mock.AsyncMock(return_value=[])
        pipeline = mock.Mock()
        pipeline.cleanup = mock.Mock(side_effect=cleanup)
        fake_app = types.SimpleNamespace(state=types.SimpleNamespace(registry=registry, pipeline=pipeline))

        async def run():
            task = asyncio.create_task(main._cleanup_loop(fake_app, 0, 3600))
            while not cleanup_threads:
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return threading.current_thread()

        loop_thread = asyncio.run(run())
        pipeline.cleanup.assert_called_with(3600)
        assert registry.sweep.await_count >= 1
        assert cleanup_threads[0] is not loop_thread
