"""Capture frames from a source into a streamed intermediate video clip."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from fractions import Fraction
from typing import Callable, Iterable, Mapping, Protocol

import av
import numpy as np

from .camera import FrameSource, SourceUnavailable
from .frames import ensure_rgb_frame

logger = logging.getLogger(__name__)

CLIP_TIME_BASE = Fraction(1, 1000)


class CaptureError(RuntimeError):
    """Raised when the capture backend could not produce a clip."""


_CODEC_PROFILES: dict[str, Mapping[str, object]] = {
    "libvpx": {
        "format": "webm",
        "media_type": "video/webm",
        "options": {"deadline": "realtime", "cpu-used": "8", "lag-in-frames": "0"},
    },
    "mpeg4": {
        "format": "matroska",
        "media_type": "video/x-matroska",
        "options": {},
    },
}

_CODEC_ALIASES = {
    "vp8": "libvpx",
    "webm": "libvpx",
    "mpeg-4": "mpeg4",
}


def _codec_candidates(preference: str) -> list[str]:
    codec = _CODEC_ALIASES.get(preference.strip().lower(), preference.strip().lower())
    if codec in {"", "auto"}:
        return ["libvpx", "mpeg4"]
    candidates = [codec]
    candidates.extend(candidate for candidate in ("libvpx", "mpeg4") if candidate != codec)
    return candidates


def _codec_profile(codec: str) -> Mapping[str, object]:
    return _CODEC_PROFILES.get(
        codec, {"format": "matroska", "media_type": "video/x-matroska", "options": {}}
    )


class _ChunkCollector:
    """Write-only sink handed to the muxer.

    Exposing neither ``seek`` nor ``tell`` makes FFmpeg treat the output as a
    live stream, so every buffer flush becomes a self-contained chunk.
    """

    def __init__(self) -> None:
        self._pending: list[bytes] = []

    def write(self, data) -> int:
        payload = bytes(data)
        if payload:
            self._pending.append(payload)
        return len(payload)

    def drain(self) -> list[bytes]:
        pending, self._pending = self._pending, []
        return pending


class ClipWriter:
    """Incrementally encode RGB frames into a streamed Matroska/WebM clip."""

    def __init__(self, *, fps: int, codec: str = "auto", bit_rate: int = 2_000_000) -> None:
        if fps <= 0:
            raise ValueError("fps must be positive")
        self._fps = int(fps)
        self._preference = codec
        self._bit_rate = int(bit_rate)
        self._collector = _ChunkCollector()
        self._container: av.container.OutputContainer | None = None
        self._stream: av.video.stream.VideoStream | None = None
        self._codec: str | None = None
        self._media_type: str | None = None
        self._last_pts = -1
        self._frame_count = 0
        self._closed = False
        self._lock = threading.Lock()

    @property
    def codec(self) -> str | None:
        return self._codec

    @property
    def media_type(self) -> str | None:
        return self._media_type

    @property
    def frame_count(self) -> int:
        return self._frame_count

    # ------------------------------------------------------------------
    def _open(self, width: int, height: int) -> None:
        attempted: list[str] = []
        for codec in _codec_candidates(self._preference):
            attempted.append(codec)
            profile = _codec_profile(codec)
            container = av.open(self._collector, mode="w", format=str(profile["format"]))
            try:
                stream = container.add_stream(codec, rate=self._fps)
            except (av.FFmpegError, ValueError) as exc:
                logger.debug("Codec %s unavailable for clip capture: %s", codec, exc)
                try:
                    container.close()
                except Exception:  # pragma: no cover - best effort cleanup
                    logger.debug("Failed to close unused clip container", exc_info=True)
                self._collector.drain()
                continue
            stream.width = int(width)
            stream.height = int(height)
            stream.pix_fmt = "yuv420p"
            stream.bit_rate = self._bit_rate
            stream.time_base = CLIP_TIME_BASE
            stream.codec_context.time_base = CLIP_TIME_BASE
            options = profile.get("options")
            if isinstance(options, Mapping) and options:
                try:  # pragma: no cover - codec options availability varies
                    stream.codec_context.options.update({str(k): str(v) for k, v in options.items()})
                except Exception:
                    logger.debug("Unable to apply %s codec options", codec, exc_info=True)
            self._container = container
            self._stream = stream
            self._codec = codec
            self._media_type = str(profile["media_type"])
            logger.debug("Capturing %dx%d clip with %s", width, height, codec)
            return
        raise CaptureError(f"No compatible clip encoder available (tried {', '.join(attempted)})")

    def add_frame(self, frame: np.ndarray, elapsed: float) -> None:
        """Encode ``frame`` presented ``elapsed`` seconds after capture start."""

        with self._lock:
            if self._closed:
                raise CaptureError("Clip writer has been closed")
            rgb = ensure_rgb_frame(frame, even=True)
            if self._container is None:
                height, width = rgb.shape[:2]
                if width == 0 or height == 0:
                    raise CaptureError("Frames must be at least 2x2 pixels")
                self._open(width, height)
            if self._stream is None or self._container is None:
                raise CaptureError("Clip encoder is not open")
            pts = max(int(round(float(elapsed) / CLIP_TIME_BASE)), self._last_pts + 1)
            video_frame = av.VideoFrame.from_ndarray(rgb, format="rgb24")
            video_frame.pts = pts
            video_frame.time_base = CLIP_TIME_BASE
            try:
                packets = self._stream.encode(video_frame)
                for packet in packets:
                    self._container.mux(packet)
            except av.FFmpegError as exc:
                raise CaptureError(f"Failed to encode captured frame: {exc}") from exc
            self._last_pts = pts
            self._frame_count += 1

    def close(self) -> None:
        """Flush the encoder and finish the container."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._stream is None or self._container is None:
                return
            try:
                for packet in self._stream.encode():
                    self._container.mux(packet)
                self._container.close()
            except av.FFmpegError as exc:
                raise CaptureError(f"Failed to finalise captured clip: {exc}") from exc
            finally:
                self._stream = None
                self._container = None

    def abort(self) -> None:
        """Release the encoder without flushing, discarding pending output."""

        with self._lock:
            self._closed = True
            container = self._container
            self._stream = None
            self._container = None
            if container is not None:
                try:
                    container.close()
                except Exception:  # pragma: no cover - best effort cleanup
                    logger.debug("Failed to close aborted clip container", exc_info=True)
            self._collector.drain()

    def drain(self) -> list[bytes]:
        """Return the container bytes written since the previous call."""

        return self._collector.drain()


class ChunkStream:
    """Ordered stream of clip chunks produced by a running capture.

    Iterating yields ``bytes`` chunks in the order the muxer wrote them and
    ends once the capture has stopped and flushed its final chunk. Call
    :meth:`stop` exactly once to request the end of the capture.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._stop_event = asyncio.Event()
        self._finished = False
        self._error: BaseException | None = None
        self._task: asyncio.Task[None] | None = None
        self._stop_calls = 0
        self.media_type: str | None = None
        self.frames_captured = 0

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    @property
    def finished(self) -> bool:
        return self._finished

    def stop(self) -> None:
        self._stop_calls += 1
        if self._stop_calls > 1:
            logger.warning("Capture stop requested %d times; ignoring repeat", self._stop_calls)
            return
        self._stop_event.set()

    async def cancel(self) -> None:
        """Abort the capture without delivering its remaining output."""

        self._stop_event.set()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        # A task cancelled before its first step never reaches its own handler.
        self._finish(error=CaptureError("Capture cancelled"))

    async def wait_stop(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def __aiter__(self) -> "ChunkStream":
        return self

    async def __anext__(self) -> bytes:
        item = await self._queue.get()
        if item is None:
            self._queue.put_nowait(None)
            if self._error is not None:
                raise CaptureError(f"Capture failed: {self._error}") from self._error
            raise StopAsyncIteration
        return item

    # ------------------------------------------------------------------
    def _bind(self, task: asyncio.Task[None]) -> None:
        self._task = task

    def _emit(self, chunks: Iterable[bytes]) -> None:
        for chunk in chunks:
            self._queue.put_nowait(chunk)

    def _finish(self, *, error: BaseException | None = None) -> None:
        if self._finished:
            return
        self._finished = True
        self._error = error
        self._queue.put_nowait(None)


class CaptureBackend(Protocol):
    """Capture boundary used by :class:`~motion_clip.recording.RecordingController`."""

    def begin_capture(self, source: FrameSource) -> ChunkStream:  # pragma: no cover - protocol
        ...


class MediaCapture:
    """Pull frames from a source at a fixed rate and stream them as a video clip."""

    def __init__(
        self,
        *,
        fps: int = 15,
        codec: str = "auto",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if fps <= 0:
            raise ValueError("fps must be positive")
        self._fps = int(fps)
        self._codec = codec
        self._clock = clock

    @property
    def fps(self) -> int:
        return self._fps

    def begin_capture(self, source: FrameSource) -> ChunkStream:
        stream = ChunkStream()
        writer = ClipWriter(fps=self._fps, codec=self._codec)
        task = asyncio.create_task(self._run(source, stream, writer), name="motion-clip-capture")
        stream._bind(task)
        return stream

    async def _run(self, source: FrameSource, stream: ChunkStream, writer: ClipWriter) -> None:
        interval = 1.0 / float(self._fps)
        started = self._clock()
        try:
            while not stream.stop_requested:
                tick_start = self._clock()
                try:
                    frame = await source.get_frame()
                except SourceUnavailable as exc:
                    logger.debug("Capture source unavailable: %s", exc)
                else:
                    await asyncio.to_thread(writer.add_frame, frame.pixels, tick_start - started)
                    stream.media_type = writer.media_type
                    stream.frames_captured = writer.frame_count
                    stream._emit(writer.drain())
                remaining = interval - (self._clock() - tick_start)
                if remaining > 0:
                    await stream.wait_stop(remaining)
                else:
                    await asyncio.sleep(0)
            await asyncio.to_thread(writer.close)
            stream._emit(writer.drain())
        except asyncio.CancelledError:
            writer.abort()
            stream._finish(error=CaptureError("Capture cancelled"))
            raise
        except Exception as exc:
            logger.error("Clip capture failed: %s", exc)
            writer.abort()
            stream._finish(error=exc)
        else:
            logger.debug("Capture finished with %d frames", writer.frame_count)
            stream._finish()


__all__ = [
    "CLIP_TIME_BASE",
    "CaptureBackend",
    "CaptureError",
    "ChunkStream",
    "ClipWriter",
    "MediaCapture",
]
