"""Frame source abstractions."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Iterable

import numpy as np

from .frames import Frame

if TYPE_CHECKING:  # pragma: no cover - imported for type checkers only
    from aiortc.mediastreams import MediaStreamTrack

try:  # pragma: no cover - optional dependency
    from aiortc.mediastreams import MediaStreamError as _MediaStreamError
except ImportError as exc:  # pragma: no cover - handled at runtime
    _MediaStreamError = None  # type: ignore[assignment]
    _AIORTC_IMPORT_ERROR: ImportError | None = exc
else:  # pragma: no cover - executed when dependency is installed
    _AIORTC_IMPORT_ERROR = None

logger = logging.getLogger(__name__)

# User visible identifiers for camera backends.
CAMERA_SOURCES: dict[str, str] = {
    "auto": "Automatic (OpenCV with synthetic fallback)",
    "opencv": "OpenCV (USB webcam)",
    "synthetic": "Synthetic test pattern",
}

DEFAULT_CAMERA_CHOICE = "auto"

_CAMERA_ALIASES = {
    "cv2": "opencv",
    "webcam": "opencv",
    "test": "synthetic",
}


class CameraError(RuntimeError):
    """Raised when a frame source cannot be initialised or read."""


class SourceUnavailable(CameraError):
    """Raised when a source has no decodable frame at the moment."""


class FrameSource(ABC):
    """Anything able to hand out its current frame on request."""

    @abstractmethod
    async def get_frame(self) -> Frame:  # pragma: no cover - interface only
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - optional override
        return None


def summarise_exception(exc: BaseException) -> str:
    """Collect the unique error messages from an exception chain."""

    details: list[str] = []
    seen: set[str] = set()
    to_consider: Iterable[BaseException | None] = (
        exc,
        getattr(exc, "__cause__", None),
        getattr(exc, "__context__", None),
    )
    for candidate in to_consider:
        if candidate is None:
            continue
        text = str(candidate).strip()
        if text and text not in seen:
            details.append(text)
            seen.add(text)
    return " | ".join(details)


class StaticFrameSource(FrameSource):
    """Source returning whichever frame was last assigned to it."""

    def __init__(self, frame: Frame | np.ndarray | None = None) -> None:
        self._frame: Frame | None = None
        if frame is not None:
            self.set_frame(frame)

    def set_frame(self, frame: Frame | np.ndarray | None) -> None:
        if frame is None or isinstance(frame, Frame):
            self._frame = frame
        else:
            self._frame = Frame.from_array(frame)

    async def get_frame(self) -> Frame:
        if self._frame is None:
            raise SourceUnavailable("No frame has been attached to the source")
        return self._frame


class OpenCVCamera(FrameSource):
    """Camera backed by OpenCV ``VideoCapture``."""

    def __init__(
        self,
        index: int = 0,
        resolution: tuple[int, int] | None = None,
        *,
        fps: int | None = None,
    ) -> None:
        try:
            import cv2
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise CameraError(
                "OpenCV is not installed. Install the 'opencv' extra to use USB cameras."
            ) from exc

        self._cv2 = cv2
        self._capture = cv2.VideoCapture(index)
        if not self._capture.isOpened():
            raise CameraError(f"Failed to open camera index {index}")
        if resolution is not None:
            width, height = resolution
            self._capture.set(cv2.CAP_PROP_FRAME_WIDTH, float(width))
            self._capture.set(cv2.CAP_PROP_FRAME_HEIGHT, float(height))
        if fps is not None and fps > 0:
            self._capture.set(cv2.CAP_PROP_FPS, float(fps))

    async def get_frame(self) -> Frame:  # pragma: no cover - hardware dependent
        ret, frame = await asyncio.to_thread(self._capture.read)
        if not ret or frame is None:
            raise SourceUnavailable("OpenCV camera did not return a frame")
        return Frame.from_array(self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2RGB))

    async def close(self) -> None:  # pragma: no cover - hardware dependent
        await asyncio.to_thread(self._capture.release)


class SyntheticCamera(FrameSource):
    """Generates a moving gradient for development and testing."""

    def __init__(
        self,
        width: int = 640,
        height: int = 480,
        *,
        resolution: tuple[int, int] | None = None,
        speed: float = 10.0,
    ) -> None:
        if resolution is not None:
            width, height = resolution
        self._width = int(width)
        self._height = int(height)
        self._speed = float(speed)
        self._start = time.perf_counter()

    async def get_frame(self) -> Frame:
        elapsed = time.perf_counter() - self._start
        horizontal = np.linspace(0, 255, self._width, dtype=np.uint8)
        vertical = np.linspace(0, 255, self._height, dtype=np.uint8).reshape(-1, 1)
        red = np.tile(horizontal, (self._height, 1))
        green = np.roll(red, int(elapsed * self._speed), axis=1)
        blue = np.tile(vertical, (1, self._width))
        return Frame.from_array(np.stack([red, green, blue], axis=2))


def _ensure_aiortc_available() -> None:
    if _AIORTC_IMPORT_ERROR is not None:
        raise CameraError(
            "aiortc is required for remote track sources. Install the 'aiortc' package."
        ) from _AIORTC_IMPORT_ERROR


class TrackFrameSource(FrameSource):
    """Source fed by a remote media track such as an aiortc ``MediaStreamTrack``.

    A background task keeps receiving frames from the track and retains the
    latest one. Until the first frame arrives, and after the track has been
    detached, :meth:`get_frame` raises :class:`SourceUnavailable`.
    """

    def __init__(self) -> None:
        _ensure_aiortc_available()
        self._track: MediaStreamTrack | None = None
        self._latest: Frame | None = None
        self._task: asyncio.Task[None] | None = None
        self._frames_received = 0

    @property
    def frames_received(self) -> int:
        return self._frames_received

    @property
    def attached(self) -> bool:
        return self._task is not None and not self._task.done()

    async def attach(self, track: MediaStreamTrack) -> None:
        """Start reading frames from ``track``, replacing any previous one."""

        await self.detach()
        self._track = track
        self._task = asyncio.create_task(self._read_frames(track), name="motion-clip-track-reader")

    async def detach(self) -> None:
        task = self._task
        self._task = None
        self._track = None
        self._latest = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def get_frame(self) -> Frame:
        if self._latest is None:
            raise SourceUnavailable("No frame received from the remote track yet")
        return self._latest

    async def close(self) -> None:
        await self.detach()

    async def _read_frames(self, track: MediaStreamTrack) -> None:
        while True:
            try:
                video_frame = await track.recv()
            except _MediaStreamError:
                logger.info("Remote track ended after %d frames", self._frames_received)
                self._latest = None
                return
            try:
                array = video_frame.to_ndarray(format="rgb24")
            except Exception:  # pragma: no cover - defensive decode
                logger.debug("Skipping undecodable remote frame", exc_info=True)
                continue
            self._latest = Frame.from_array(array)
            self._frames_received += 1


def _normalise_choice(choice: str | None) -> str:
    if choice is None:
        choice = os.getenv("MOTION_CLIP_CAMERA", DEFAULT_CAMERA_CHOICE)
    normalised = choice.strip().lower()
    return _CAMERA_ALIASES.get(normalised, normalised)


def create_camera(
    choice: str | None = None,
    *,
    index: int = 0,
    resolution: tuple[int, int] | None = None,
    fps: int | None = None,
) -> FrameSource:
    """Create the camera specified by *choice* or the environment.

    ``"auto"`` tries OpenCV and falls back to :class:`SyntheticCamera` when no
    camera can be opened. Explicit selections raise :class:`CameraError` on
    failure.
    """

    resolved_choice = _normalise_choice(choice)
    if resolved_choice == "synthetic":
        return SyntheticCamera(resolution=resolution)
    if resolved_choice == "opencv":
        return OpenCVCamera(index, resolution=resolution, fps=fps)
    if resolved_choice == "auto":
        try:
            return OpenCVCamera(index, resolution=resolution, fps=fps)
        except CameraError as exc:
            logger.error("OpenCV camera unavailable during auto selection: %s", summarise_exception(exc))
            return SyntheticCamera(resolution=resolution)
    raise CameraError(f"Unknown camera choice: {choice}")


__all__ = [
    "CAMERA_SOURCES",
    "DEFAULT_CAMERA_CHOICE",
    "CameraError",
    "FrameSource",
    "OpenCVCamera",
    "SourceUnavailable",
    "StaticFrameSource",
    "SyntheticCamera",
    "TrackFrameSource",
    "create_camera",
    "summarise_exception",
]
