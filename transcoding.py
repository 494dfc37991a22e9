"""HLS transcoding of local files with ffmpeg and per-stream process supervision."""

from __future__ import annotations

import asyncio
import enum
import logging
import pathlib
import shutil
import time
from collections.abc import Callable
from collections.abc import Sequence
from contextlib import suppress
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from typing import Any

from errors import EncoderProcessError


log = logging.getLogger(__name__)

# Timing constants (seconds)
_POLL_INTERVAL_SEC = 0.2
_STOP_GRACE_SEC = 5.0
_CLEANUP_MAX_AGE_SEC = 3_600

_DEFAULT_OUTPUT_DIR = "/tmp/hls-streams"
_STDERR_TAIL_LINES = 10

PLAYLIST_NAME = "playlist.m3u8"
MASTER_PLAYLIST_NAME = "master.m3u8"
SEGMENT_PATTERN = "segment_%03d.ts"
SEGMENT_GLOB = "segment_*.ts"


@dataclass(frozen=True, slots=True)
class QualityPreset:
    preset: str
    resolution: str | None  # None keeps the source size
    crf: int


QUALITY_PRESETS: dict[str, QualityPreset] = {
    "low": QualityPreset("veryfast", "854x480", 28),
    "medium": QualityPreset("fast", "1280x720", 23),
    "high": QualityPreset("medium", "1920x1080", 18),
    "auto": QualityPreset("fast", None, 23),
}


@dataclass(frozen=True, slots=True)
class QualityVariant:
    name: str
    bandwidth: int  # bits per second
    resolution: str


QUALITY_VARIANTS: dict[str, QualityVariant] = {
    "low": QualityVariant("low", 500_000, "854x480"),
    "medium": QualityVariant("medium", 1_500_000, "1280x720"),
    "high": QualityVariant("high", 3_000_000, "1920x1080"),
}


@dataclass(slots=True)
class HLSConfig:
    segment_duration: int = 6
    playlist_size: int = 10  # rolling window; 0 keeps every segment
    quality: str = "medium"
    start_offset: float = 0.0


class StreamStatus(str, enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(slots=True)
class TranscodeStream:
    id: str
    output_dir: pathlib.Path
    status: StreamStatus = StreamStatus.STARTING
    process: asyncio.subprocess.Process | None = None
    error: str | None = None
    started: float = field(default_factory=time.time)
    finished: float | None = None
    stop_requested: bool = False
    supervisor: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def playlist_path(self) -> pathlib.Path:
        return self.output_dir / PLAYLIST_NAME

    def raise_for_error(self) -> None:
        if self.status is StreamStatus.ERROR:
            raise EncoderProcessError(self.id, self.error or "encoder failed")

    def _finish(self, status: StreamStatus, error: str | None = None) -> None:
        self.status = status
        self.error = error
        self.finished = time.time()


CommandBuilder = Callable[[str, pathlib.Path, HLSConfig], list[str]]


def build_hls_ffmpeg_cmd(input_path: str, output_dir: pathlib.Path, config: HLSConfig) -> list[str]:
    preset = QUALITY_PRESETS.get(config.quality)
    if preset is None:
        raise ValueError(f"Unknown quality: {config.quality}")

    cmd = ["ffmpeg", "-hide_banner", "-loglevel", "warning", "-y"]
    if config.start_offset > 0:
        cmd.extend(["-ss", str(config.start_offset)])
    cmd.extend(["-i", input_path])

    cmd.extend(
        [
            "-c:v",
            "libx264",
            "-preset",
            preset.preset,
            "-crf",
            str(preset.crf),
        ]
    )
    if preset.resolution:
        cmd.extend(["-s", preset.resolution])
    cmd.extend(["-c:a", "aac"])

    cmd.extend(
        [
            "-f",
            "hls",
            "-hls_time",
            str(config.segment_duration),
            "-hls_list_size",
            str(config.playlist_size),
            "-hls_flags",
            "delete_segments",
            "-hls_segment_filename",
            str(output_dir / SEGMENT_PATTERN),
            str(output_dir / PLAYLIST_NAME),
        ]
    )
    return cmd


def build_master_playlist(stream_id: str, variants: Sequence[QualityVariant]) -> str:
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", ""]
    for variant in variants:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={variant.bandwidth},RESOLUTION={variant.resolution}"
        )
        # master lives in <base>/<id>/, variants in sibling <base>/<id>_<tier>/
        lines.append(f"../{stream_id}_{variant.name}/{PLAYLIST_NAME}")
        lines.append("")
    return "\n".join(lines)


def _kill_process(proc: Any) -> bool:
    """Kill process, return True if killed."""
    try:
        proc.kill()
        return True
    except (ProcessLookupError, OSError):
        return False


def _first_segment_ready(output_dir: pathlib.Path) -> bool:
    segments = sorted(output_dir.glob(SEGMENT_GLOB))
    if not segments:
        return False
    # the rolling window may delete the file between glob and stat
    with suppress(FileNotFoundError):
        return segments[0].stat().st_size > 0
    return False


async def _wait_for_first_segment(
    output_dir: pathlib.Path,
    process: asyncio.subprocess.Process,
) -> bool:
    """Poll until a non-empty segment exists. False if ffmpeg exits first."""
    while True:
        if _first_segment_ready(output_dir):
            return True
        if process.returncode is not None:
            return False
        await asyncio.sleep(_POLL_INTERVAL_SEC)


async def _monitor_ffmpeg_stderr(
    process: asyncio.subprocess.Process,
    stream_id: str,
    stderr_lines: list[str],
) -> None:
    assert process.stderr is not None
    while True:
        line = await process.stderr.readline()
        if not line:
            break
        text = line.decode(errors="replace").rstrip()
        stderr_lines.append(text)
        del stderr_lines[:-_STDERR_TAIL_LINES]
        is_fatal = "fatal" in text.lower() or "error" in text.lower()
        level = logging.WARNING if is_fatal else logging.DEBUG
        log.log(level, "ffmpeg:%s %s", stream_id, text)


class TranscodePipeline:
    """Runs at most one ffmpeg per stream id, writing to <output_dir>/<stream_id>/."""

    def __init__(
        self,
        output_dir: str | pathlib.Path = _DEFAULT_OUTPUT_DIR,
        default_config: HLSConfig | None = None,
        stop_grace_sec: float = _STOP_GRACE_SEC,
        build_cmd: CommandBuilder = build_hls_ffmpeg_cmd,
    ) -> None:
        self.output_dir = pathlib.Path(output_dir)
        self.default_config = default_config or HLSConfig()
        self.stop_grace_sec = stop_grace_sec
        self._build_cmd = build_cmd
        self._streams: dict[str, TranscodeStream] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._masters: dict[str, list[str]] = {}

    def _lock(self, stream_id: str) -> asyncio.Lock:
        return self._locks.setdefault(stream_id, asyncio.Lock())

    def get_stream(self, stream_id: str) -> TranscodeStream | None:
        return self._streams.get(stream_id)

    def get_all_streams(self) -> list[TranscodeStream]:
        return list(self._streams.values())

    async def start_stream(
        self,
        stream_id: str,
        input_path: str,
        config: HLSConfig | None = None,
    ) -> TranscodeStream:
        async with self._lock(stream_id):
            existing = self._streams.get(stream_id)
            if existing is not None and existing.status is StreamStatus.RUNNING:
                return existing
            if existing is not None:
                await self._teardown(existing)
            return await self._spawn(stream_id, input_path, config or self.default_config)

    async def _spawn(self, stream_id: str, input_path: str, config: HLSConfig) -> TranscodeStream:
        output_dir = self.output_dir / stream_id
        cmd = self._build_cmd(input_path, output_dir, config)
        output_dir.mkdir(parents=True, exist_ok=True)
        # stale files from a previous run must not satisfy the readiness check
        (output_dir / PLAYLIST_NAME).unlink(missing_ok=True)
        for seg_file in output_dir.glob(SEGMENT_GLOB):
            seg_file.unlink(missing_ok=True)

        stream = TranscodeStream(id=stream_id, output_dir=output_dir)
        self._streams[stream_id] = stream

        log.info("Starting HLS stream %s: %s", stream_id, " ".join(cmd))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            log.error("Failed to spawn encoder for %s: %s", stream_id, e)
            stream._finish(StreamStatus.ERROR, str(e))
            return stream

        stream.process = process
        stream.supervisor = asyncio.create_task(self._supervise(stream, process))
        return stream

    async def _supervise(
        self,
        stream: TranscodeStream,
        process: asyncio.subprocess.Process,
    ) -> None:
        stderr_lines: list[str] = []
        stderr_task = asyncio.create_task(_monitor_ffmpeg_stderr(process, stream.id, stderr_lines))

        if await _wait_for_first_segment(stream.output_dir, process):
            if stream.status is StreamStatus.STARTING:
                stream.status = StreamStatus.RUNNING
                log.info("HLS stream %s is now running", stream.id)

        returncode = await process.wait()
        await stderr_task
        log.info("ffmpeg for stream %s exited with code %s", stream.id, returncode)

        if stream.stop_requested or returncode == 0:
            stream._finish(StreamStatus.STOPPED)
        else:
            detail = "\n".join(stderr_lines) or "no output"
            stream._finish(StreamStatus.ERROR, f"ffmpeg exited with code {returncode}: {detail}")
            log.error("ffmpeg:%s failed (exit %d): %s", stream.id, returncode, detail)

    async def _teardown(self, stream: TranscodeStream) -> None:
        """SIGTERM, wait stop_grace_sec, then SIGKILL. Returns once the process is reaped."""
        process = stream.process
        if process is not None and process.returncode is None:
            stream.stop_requested = True
            with suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_grace_sec)
            except TimeoutError:
                log.warning("ffmpeg for %s ignored SIGTERM, killing", stream.id)
                _kill_process(process)
                await process.wait()
        if stream.supervisor is not None:
            await stream.supervisor
        if stream.status in (StreamStatus.STARTING, StreamStatus.RUNNING):
            stream._finish(StreamStatus.STOPPED)

    async def stop_stream(self, stream_id: str) -> None:
        async with self._lock(stream_id):
            stream = self._streams.get(stream_id)
            if stream is None:
                return
            await self._teardown(stream)
        log.info("HLS stream %s stopped", stream_id)

    def is_stream_ready(self, stream_id: str) -> bool:
        stream = self._streams.get(stream_id)
        if stream is None:
            return False
        try:
            return stream.playlist_path.stat().st_size > 0
        except OSError:
            return False

    def get_stream_url(self, stream_id: str, base_url: str) -> str | None:
        stream = self._streams.get(stream_id)
        if stream is None or stream.status is not StreamStatus.RUNNING:
            return None
        return f"{base_url.rstrip('/')}/hls/{stream_id}/{PLAYLIST_NAME}"

    def get_master_url(self, stream_id: str, base_url: str) -> str | None:
        if stream_id not in self._masters:
            return None
        return f"{base_url.rstrip('/')}/hls/{stream_id}/{MASTER_PLAYLIST_NAME}"

    async def start_adaptive_stream(
        self,
        stream_id: str,
        input_path: str,
        qualities: Sequence[str] = ("low", "medium", "high"),
        config: HLSConfig | None = None,
    ) -> list[TranscodeStream]:
        """Start one encoder per tier and write <stream_id>/master.m3u8 listing them."""
        unknown = [q for q in qualities if q not in QUALITY_VARIANTS]
        if unknown:
            raise ValueError(f"Unknown quality tier(s): {', '.join(unknown)}")
        base_config = config or self.default_config

        streams = []
        for quality in qualities:
            variant_id = f"{stream_id}_{quality}"
            variant_config = replace(base_config, quality=quality)
            streams.append(await self.start_stream(variant_id, input_path, variant_config))

        master_dir = self.output_dir / stream_id
        master_dir.mkdir(parents=True, exist_ok=True)
        content = build_master_playlist(stream_id, [QUALITY_VARIANTS[q] for q in qualities])
        (master_dir / MASTER_PLAYLIST_NAME).write_text(content)
        self._masters[stream_id] = [s.id for s in streams]
        log.info("Master playlist created for stream %s (%s)", stream_id, ", ".join(qualities))
        return streams

    def cleanup(self, max_age_sec: float = _CLEANUP_MAX_AGE_SEC) -> list[str]:
        """Remove finished streams older than max_age_sec. Returns removed ids."""
        now = time.time()
        removed = []
        for stream_id, stream in list(self._streams.items()):
            if stream.status not in (StreamStatus.STOPPED, StreamStatus.ERROR):
                continue
            if now - (stream.finished or stream.started) <= max_age_sec:
                continue
            shutil.rmtree(stream.output_dir, ignore_errors=True)
            self._streams.pop(stream_id, None)
            self._locks.pop(stream_id, None)
            removed.append(stream_id)
            log.info("Cleaned up HLS stream %s", stream_id)

        for master_id, variant_ids in list(self._masters.items()):
            if not any(v in self._streams for v in variant_ids):
                shutil.rmtree(self.output_dir / master_id, ignore_errors=True)
                del self._masters[master_id]
                log.info("Cleaned up master playlist %s", master_id)
        return removed

    def shutdown(self) -> None:
        """Kill all running ffmpeg processes for clean shutdown."""
        for stream_id, stream in self._streams.items():
            proc = stream.process
            if proc is not None and proc.returncode is None and _kill_process(proc):
                stream.stop_requested = True
                log.info("Shutdown: killed ffmpeg for stream %s", stream_id)

    async def aclose(self) -> None:
        """Kill all encoders and wait for their supervisors to record the exit."""
        self.shutdown()
        supervisors = [s.supervisor for s in self._streams.values() if s.supervisor is not None]
        await asyncio.gather(*supervisors)
