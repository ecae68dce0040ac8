from __future__ import annotations

import asyncio
import io
import logging

import av
import numpy as np
import pytest

from motion_clip.camera import FrameSource, StaticFrameSource
from motion_clip.capture import CaptureError, ClipWriter, MediaCapture
from motion_clip.frames import Frame


def _decode_times(data: bytes) -> list[float]:
    times: list[float] = []
    with av.open(io.BytesIO(data)) as container:
        for frame in container.decode(video=0):
            times.append(float(frame.time))
    return times


@pytest.mark.parametrize("codec", ["mpeg4", "auto"])
def test_clip_writer_streams_decodable_chunks(codec: str) -> None:
    writer = ClipWriter(fps=10, codec=codec)
    chunks: list[bytes] = []
    for index in range(10):
        frame = np.full((48, 64, 3), index * 20, dtype=np.uint8)
        writer.add_frame(frame, index / 10)
        chunks.extend(writer.drain())
    writer.close()
    chunks.extend(writer.drain())

    assert writer.frame_count == 10
    assert writer.codec in {"libvpx", "mpeg4"}
    assert writer.media_type in {"video/webm", "video/x-matroska"}
    assert all(chunks)
    times = _decode_times(b"".join(chunks))
    assert len(times) == 10
    assert times == sorted(times)
    assert times[-1] - times[0] == pytest.approx(0.9, abs=0.01)


def test_clip_writer_keeps_pts_increasing_for_repeated_timestamps() -> None:
    writer = ClipWriter(fps=10, codec="mpeg4")
    for _ in range(3):
        writer.add_frame(np.zeros((16, 16, 3), dtype=np.uint8), 0.0)
    writer.close()
    times = _decode_times(b"".join(writer.drain()))
    assert len(times) == 3
    assert times[0] < times[1] < times[2]


def test_clip_writer_crops_odd_dimensions() -> None:
    writer = ClipWriter(fps=5, codec="mpeg4")
    writer.add_frame(np.zeros((15, 17, 3), dtype=np.uint8), 0.0)
    writer.close()
    with av.open(io.BytesIO(b"".join(writer.drain()))) as container:
        stream = container.streams.video[0]
        assert (stream.codec_context.width, stream.codec_context.height) == (16, 14)


def test_clip_writer_rejects_frames_after_close() -> None:
    writer = ClipWriter(fps=5, codec="mpeg4")
    writer.close()
    with pytest.raises(CaptureError):
        writer.add_frame(np.zeros((4, 4, 3), dtype=np.uint8), 0.0)


class _FailingSource(FrameSource):
    async def get_frame(self) -> Frame:
        raise RuntimeError("sensor unplugged")


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_media_capture_collects_chunks_until_stopped(anyio_backend) -> None:
    source = StaticFrameSource(np.full((32, 32, 3), 90, dtype=np.uint8))
    capture = MediaCapture(fps=20, codec="mpeg4")
    stream = capture.begin_capture(source)
    collected: list[bytes] = []

    async def consume() -> None:
        async for chunk in stream:
            collected.append(chunk)

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0.3)
    stream.stop()
    await asyncio.wait_for(consumer, timeout=5.0)

    assert stream.finished
    assert stream.media_type == "video/x-matroska"
    assert stream.frames_captured >= 2
    assert len(_decode_times(b"".join(collected))) == stream.frames_captured


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_media_capture_without_frames_yields_nothing(anyio_backend) -> None:
    stream = MediaCapture(fps=20).begin_capture(StaticFrameSource())
    await asyncio.sleep(0.05)
    stream.stop()
    chunks = [chunk async for chunk in stream]
    assert chunks == []
    assert stream.frames_captured == 0


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_media_capture_surfaces_source_failure(anyio_backend) -> None:
    stream = MediaCapture(fps=20).begin_capture(_FailingSource())
    with pytest.raises(CaptureError):
        async for _ in stream:
            pass
    assert stream.finished


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_repeated_stop_is_ignored(anyio_backend, caplog: pytest.LogCaptureFixture) -> None:
    stream = MediaCapture(fps=20).begin_capture(StaticFrameSource())
    with caplog.at_level(logging.WARNING, logger="motion_clip.capture"):
        stream.stop()
        stream.stop()
    assert [chunk async for chunk in stream] == []
    assert "ignoring repeat" in caplog.text


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_cancelled_capture_ends_stream_with_error(anyio_backend) -> None:
    source = StaticFrameSource(np.zeros((16, 16, 3), dtype=np.uint8))
    stream = MediaCapture(fps=20, codec="mpeg4").begin_capture(source)
    await asyncio.sleep(0.05)
    await stream.cancel()
    with pytest.raises(CaptureError):
        async for _ in stream:
            pass
