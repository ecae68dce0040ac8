"""Convert recorded clips into looping animated GIF artifacts."""
from __future__ import annotations

import asyncio
import base64
import io
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from fractions import Fraction
from typing import Iterable, Iterator, Sequence

import av
import numpy as np
import simplejpeg
from PIL import Image

from .config import EncoderSettings
from .frames import ensure_rgb_frame
from .recording import RecordingSession

logger = logging.getLogger(__name__)

# Frames drawn from the clip when building the shared palette.
_PALETTE_SAMPLE_FRAMES = 8
_PALETTE_SAMPLE_WIDTH = 160


class ClipEncodingError(RuntimeError):
    """Base class for failures while turning a recording into an artifact."""


class DecodeFailure(ClipEncodingError):
    """Raised when the recorded clip cannot be decoded or holds no frames."""


class EncodeFailure(ClipEncodingError):
    """Raised when the animated image could not be produced."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ClipArtifact:
    """Encoded animated image plus the metadata handed to sinks."""

    data: bytes
    frame_count: int
    delay_ms: int
    width: int
    height: int
    loop: int = 0
    media_type: str = "image/gif"
    created_at: datetime = field(default_factory=_utcnow)
    poster: bytes | None = None
    recording_started_at: datetime | None = None

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def duration_ms(self) -> int:
        return self.frame_count * self.delay_ms

    def data_url(self) -> str:
        """Return the artifact as an addressable ``data:`` URL."""

        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.media_type};base64,{encoded}"

    def poster_data_url(self) -> str | None:
        if self.poster is None:
            return None
        return "data:image/jpeg;base64," + base64.b64encode(self.poster).decode("ascii")

    def to_dict(self) -> dict[str, object]:
        return {
            "media_type": self.media_type,
            "frame_count": int(self.frame_count),
            "delay_ms": int(self.delay_ms),
            "duration_ms": int(self.duration_ms),
            "width": int(self.width),
            "height": int(self.height),
            "loop": int(self.loop),
            "size_bytes": self.size_bytes,
            "created_at": self.created_at.isoformat(),
            "recording_started_at": (
                self.recording_started_at.isoformat() if self.recording_started_at else None
            ),
            "poster": self.poster_data_url(),
        }


def iter_clip_frames(data: bytes) -> Iterator[tuple[float, np.ndarray]]:
    """Yield ``(seconds, rgb_array)`` for each frame of an encoded clip.

    Timestamps are taken from the clip's presentation timestamps and made
    relative to the first frame.
    """

    if not data:
        raise DecodeFailure("Recorded clip is empty")
    try:
        container = av.open(io.BytesIO(data), mode="r")
    except av.FFmpegError as exc:
        raise DecodeFailure(f"Unable to open recorded clip: {exc}") from exc
    with container:
        video_stream = None
        for stream in container.streams.video:
            video_stream = stream
            break
        if video_stream is None:
            raise DecodeFailure("Recorded clip does not contain a video stream")
        rate = video_stream.average_rate or video_stream.guessed_rate
        fallback_step = 1.0 / float(rate) if rate else 0.0
        origin: float | None = None
        index = 0
        try:
            for frame in container.decode(video_stream):
                seconds = frame.time
                if seconds is None:
                    seconds = index * fallback_step
                if origin is None:
                    origin = float(seconds)
                array = ensure_rgb_frame(frame.to_ndarray(format="rgb24"))
                index += 1
                yield float(seconds) - origin, array
        except av.FFmpegError as exc:
            raise DecodeFailure(f"Recorded clip could not be decoded: {exc}") from exc


def sample_clip_frames(
    frames: Iterable[tuple[float, np.ndarray]],
    *,
    delay_ms: int,
    duration_s: float,
) -> list[np.ndarray]:
    """Pick the frame presented at every ``delay_ms`` step of the clip.

    Sampling stops at whichever comes first of ``duration_s`` and the end of
    the clip (the last frame's timestamp plus one frame interval). Each sample
    is the latest frame whose timestamp is not after the sampling instant, so
    the output never goes backwards in time.
    """

    if delay_ms <= 0:
        raise ValueError("delay_ms must be positive")
    limit_ms = float(duration_s) * 1000.0
    samples: list[np.ndarray] = []
    current: np.ndarray | None = None
    current_ms = 0.0
    previous_ms: float | None = None
    step = 0
    for seconds, array in frames:
        frame_ms = max(0.0, float(seconds) * 1000.0)
        if current is not None:
            while step * delay_ms < frame_ms and step * delay_ms < limit_ms:
                samples.append(current)
                step += 1
            previous_ms = current_ms
        current = array
        current_ms = frame_ms
    if current is None:
        return samples
    interval = current_ms - previous_ms if previous_ms is not None else float(delay_ms)
    end_ms = min(limit_ms, current_ms + max(interval, 1.0))
    while step * delay_ms < end_ms:
        samples.append(current)
        step += 1
    return samples


def _fit_width(rgb: np.ndarray, max_width: int | None) -> np.ndarray:
    height, width = rgb.shape[:2]
    if max_width is None or width <= max_width:
        return rgb
    scaled_height = max(1, int(round(height * max_width / width)))
    image = Image.fromarray(rgb).resize((max_width, scaled_height), Image.Resampling.BILINEAR)
    return np.asarray(image, dtype=np.uint8)


def build_palette(frames: Sequence[np.ndarray], colors: int) -> Image.Image:
    """Return a ``P`` mode image whose palette covers a spread of ``frames``."""

    if not frames:
        raise ValueError("At least one frame is required to build a palette")
    count = min(len(frames), _PALETTE_SAMPLE_FRAMES)
    picks = np.linspace(0, len(frames) - 1, count).round().astype(int)
    tiles: list[np.ndarray] = []
    for index in picks:
        frame = frames[int(index)]
        step = max(1, frame.shape[1] // _PALETTE_SAMPLE_WIDTH)
        tiles.append(frame[::step, ::step][:, :_PALETTE_SAMPLE_WIDTH])
    width = min(tile.shape[1] for tile in tiles)
    mosaic = np.ascontiguousarray(np.concatenate([tile[:, :width] for tile in tiles], axis=0))
    return Image.fromarray(mosaic).quantize(colors=colors, method=Image.Quantize.MEDIANCUT)


def _palette_words(palette_image: Image.Image) -> np.ndarray:
    """Return the palette as 256 native-endian ``0xAARRGGBB`` words."""

    raw = np.asarray(palette_image.getpalette() or [], dtype=np.uint32)[:768]
    rgb = np.zeros((256, 3), dtype=np.uint32)
    entries = raw[: (raw.size // 3) * 3].reshape(-1, 3)
    rgb[: len(entries)] = entries
    return (0xFF000000 | (rgb[:, 0] << 16) | (rgb[:, 1] << 8) | rgb[:, 2]).astype("=u4")


def _pal8_frame(indices: np.ndarray, palette: np.ndarray) -> av.VideoFrame:
    height, width = indices.shape
    frame = av.VideoFrame(width, height, "pal8")
    plane = frame.planes[0]
    line_size = plane.line_size
    if line_size != width:
        padded = np.zeros((height, line_size), dtype=np.uint8)
        padded[:, :width] = indices
        indices = padded
    plane.update(np.ascontiguousarray(indices).tobytes())
    frame.planes[1].update(palette.tobytes())
    return frame


class ClipEncoder:
    """Decode a sealed recording and re-encode it as a looping GIF.

    Palette mapping of the sampled frames runs on ``settings.workers``
    threads; results are collected in sampling order so the worker count never
    changes the output.
    """

    def __init__(self, settings: EncoderSettings | None = None) -> None:
        self._settings = settings or EncoderSettings()

    @property
    def settings(self) -> EncoderSettings:
        return self._settings

    async def encode(self, session: RecordingSession) -> ClipArtifact:
        """Encode ``session`` off the event loop."""

        return await asyncio.to_thread(self.encode_session, session)

    def encode_session(self, session: RecordingSession) -> ClipArtifact:
        if not session.sealed:
            raise ValueError("Only sealed recording sessions can be encoded")
        delay_ms = self._settings.frame_delay_ms
        frames = sample_clip_frames(
            iter_clip_frames(session.to_bytes()),
            delay_ms=delay_ms,
            duration_s=session.duration_s,
        )
        if not frames:
            raise DecodeFailure("Recorded clip did not contain any frames")
        logger.debug(
            "Sampled %d frames from %d-byte clip at %d ms intervals",
            len(frames),
            session.size_bytes,
            delay_ms,
        )
        return self.encode_frames(frames, recording_started_at=session.started_at)

    def encode_frames(
        self,
        frames: Sequence[np.ndarray],
        *,
        recording_started_at: datetime | None = None,
    ) -> ClipArtifact:
        """Encode ``frames`` in order, one GIF frame each."""

        if not frames:
            raise EncodeFailure("No frames to encode")
        settings = self._settings
        try:
            rgb_frames = [
                _fit_width(ensure_rgb_frame(frame), settings.max_width) for frame in frames
            ]
        except ValueError as exc:
            raise EncodeFailure(f"Invalid frame for encoding: {exc}") from exc
        height, width = rgb_frames[0].shape[:2]
        if any(frame.shape[:2] != (height, width) for frame in rgb_frames):
            rgb_frames = [
                np.asarray(Image.fromarray(frame).resize((width, height), Image.Resampling.BILINEAR))
                for frame in rgb_frames
            ]

        try:
            palette_image = build_palette(rgb_frames, settings.colors)
            dither = Image.Dither.FLOYDSTEINBERG if settings.dither else Image.Dither.NONE

            def _map(rgb: np.ndarray) -> np.ndarray:
                mapped = Image.fromarray(rgb).quantize(palette=palette_image, dither=dither)
                return np.asarray(mapped, dtype=np.uint8)

            with ThreadPoolExecutor(
                max_workers=settings.workers, thread_name_prefix="motion-clip-quantize"
            ) as executor:
                indexed = list(executor.map(_map, rgb_frames))
        except (OSError, ValueError) as exc:
            raise EncodeFailure(f"Palette quantisation failed: {exc}") from exc

        data = self._write_gif(indexed, _palette_words(palette_image), width, height)
        poster = simplejpeg.encode_jpeg(rgb_frames[0], quality=85, colorspace="RGB")
        artifact = ClipArtifact(
            data=data,
            frame_count=len(indexed),
            delay_ms=settings.frame_delay_ms,
            width=width,
            height=height,
            poster=poster,
            recording_started_at=recording_started_at,
        )
        logger.info(
            "Encoded %dx%d GIF with %d frames (%d bytes)",
            width,
            height,
            artifact.frame_count,
            artifact.size_bytes,
        )
        return artifact

    def _write_gif(
        self,
        indexed: Sequence[np.ndarray],
        palette: np.ndarray,
        width: int,
        height: int,
    ) -> bytes:
        delay_ms = self._settings.frame_delay_ms
        frame_time = Fraction(delay_ms, 1000)
        buffer = io.BytesIO()
        try:
            container = av.open(
                buffer,
                mode="w",
                format="gif",
                container_options={"loop": "0", "final_delay": str(delay_ms // 10)},
            )
            with container:
                stream = container.add_stream("gif", rate=Fraction(1000, delay_ms))
                stream.width = int(width)
                stream.height = int(height)
                stream.pix_fmt = "pal8"
                for index, indices in enumerate(indexed):
                    video_frame = _pal8_frame(indices, palette)
                    video_frame.pts = index
                    video_frame.time_base = frame_time
                    for packet in stream.encode(video_frame):
                        container.mux(packet)
                for packet in stream.encode():
                    container.mux(packet)
        except (av.FFmpegError, ValueError) as exc:
            raise EncodeFailure(f"GIF encoding failed: {exc}") from exc
        data = buffer.getvalue()
        if not data:
            raise EncodeFailure("GIF encoder produced no output")
        return data


__all__ = [
    "ClipArtifact",
    "ClipEncoder",
    "ClipEncodingError",
    "DecodeFailure",
    "EncodeFailure",
    "build_palette",
    "iter_clip_frames",
    "sample_clip_frames",
]
