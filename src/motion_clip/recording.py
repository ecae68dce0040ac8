"""Fixed-duration recording of a frame source into a sealed session."""
from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence

from .camera import FrameSource
from .capture import CaptureBackend, ChunkStream

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordingError(RuntimeError):
    """Base class for recording failures."""


class AlreadyRecordingError(RecordingError):
    """Raised when a recording is requested while another one is active."""


class SessionSealedError(RecordingError):
    """Raised when appending to a session that has already been sealed."""


class RecordingState(str, enum.Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPED = "stopped"


@dataclass(slots=True)
class RecordingSession:
    """Captured clip chunks for a single recording, in arrival order."""

    started_at: datetime
    duration_s: float
    chunks: Sequence[bytes] = field(default_factory=list)
    media_type: str | None = None
    frames_captured: int = 0
    ended_at: datetime | None = None
    _sealed: bool = field(init=False, default=False)

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def size_bytes(self) -> int:
        return sum(len(chunk) for chunk in self.chunks)

    def append(self, chunk: bytes) -> None:
        if self._sealed:
            raise SessionSealedError("Recording session has been sealed")
        if not isinstance(self.chunks, list):
            self.chunks = list(self.chunks)
        self.chunks.append(bytes(chunk))

    def seal(
        self,
        *,
        media_type: str | None = None,
        frames_captured: int | None = None,
        ended_at: datetime | None = None,
    ) -> "RecordingSession":
        """Freeze the chunk sequence; later appends raise :class:`SessionSealedError`."""

        if self._sealed:
            return self
        if media_type is not None:
            self.media_type = media_type
        if frames_captured is not None:
            self.frames_captured = int(frames_captured)
        self.ended_at = ended_at or _utcnow()
        self.chunks = tuple(self.chunks)
        self._sealed = True
        return self

    def to_bytes(self) -> bytes:
        """Return the chunks joined into a single clip container."""

        return b"".join(self.chunks)

    def to_dict(self) -> dict[str, object]:
        return {
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": float(self.duration_s),
            "chunks": len(self.chunks),
            "size_bytes": self.size_bytes,
            "frames_captured": int(self.frames_captured),
            "media_type": self.media_type,
            "sealed": self._sealed,
        }


class RecordingController:
    """Record one source at a time for a fixed wall-clock duration.

    :meth:`start` moves the controller from ``IDLE`` to ``RECORDING`` and
    returns a task resolving to the sealed :class:`RecordingSession`. A one-shot
    timer stops the capture after ``duration_s``; the session is sealed and the
    controller returns to ``IDLE`` before the task completes.
    """

    def __init__(
        self,
        capture: CaptureBackend,
        *,
        duration_s: float = 5.0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if duration_s <= 0:
            raise ValueError("Recording duration must be positive")
        self._capture = capture
        self._duration = float(duration_s)
        self._sleep = sleep
        self._state = RecordingState.IDLE
        self._session: RecordingSession | None = None
        self._stream: ChunkStream | None = None
        self._task: asyncio.Task[RecordingSession] | None = None

    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def is_recording(self) -> bool:
        return self._state is RecordingState.RECORDING

    @property
    def duration_s(self) -> float:
        return self._duration

    @property
    def active_session(self) -> RecordingSession | None:
        return self._session

    def start(self, source: FrameSource) -> asyncio.Task[RecordingSession]:
        """Begin recording ``source``; raises :class:`AlreadyRecordingError` unless idle."""

        if self._state is not RecordingState.IDLE:
            raise AlreadyRecordingError(
                f"Recording already in progress (state={self._state.value})"
            )
        session = RecordingSession(started_at=_utcnow(), duration_s=self._duration)
        stream = self._capture.begin_capture(source)
        self._state = RecordingState.RECORDING
        self._session = session
        self._stream = stream
        logger.info("Recording started for %.1fs", self._duration)
        task = asyncio.create_task(self._record(session, stream), name="motion-clip-recording")
        self._task = task
        return task

    async def cancel(self) -> None:
        """Abort the active recording; its session is discarded."""

        task = self._task
        if task is None or task.done():
            return
        stream = self._stream
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        if self._task is task:
            # Cancelled before its first step, so _record never ran its cleanup.
            logger.info("Recording cancelled before it started; discarding session")
            if stream is not None:
                await stream.cancel()
            self._release()

    def _release(self) -> None:
        self._state = RecordingState.IDLE
        self._session = None
        self._stream = None
        self._task = None

    async def _record(self, session: RecordingSession, stream: ChunkStream) -> RecordingSession:
        consumer = asyncio.create_task(self._consume(session, stream))
        timer = asyncio.create_task(self._sleep(self._duration))
        try:
            await asyncio.wait({consumer, timer}, return_when=asyncio.FIRST_COMPLETED)
            if consumer.done():
                timer.cancel()
                # Re-raises a capture failure before the timer fired.
                consumer.result()
                logger.warning("Capture ended before the recording timer fired")
            else:
                stream.stop()
                await consumer
            self._state = RecordingState.STOPPED
            session.seal(media_type=stream.media_type, frames_captured=stream.frames_captured)
            logger.info(
                "Recording sealed: %d chunks, %d bytes, %d frames",
                len(session.chunks),
                session.size_bytes,
                session.frames_captured,
            )
            return session
        except asyncio.CancelledError:
            logger.info("Recording cancelled; discarding session")
            timer.cancel()
            consumer.cancel()
            await stream.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await consumer
            raise
        finally:
            self._release()

    @staticmethod
    async def _consume(session: RecordingSession, stream: ChunkStream) -> None:
        async for chunk in stream:
            session.append(chunk)


__all__ = [
    "AlreadyRecordingError",
    "RecordingController",
    "RecordingError",
    "RecordingSession",
    "RecordingState",
    "SessionSealedError",
]
