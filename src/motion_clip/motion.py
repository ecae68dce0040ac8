"""Frame differencing motion detection with a one-shot trigger latch."""
from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from typing import Callable

import numpy as np

from .camera import FrameSource, SourceUnavailable
from .config import MotionSettings
from .frames import frame_difference, resample_frame

logger = logging.getLogger(__name__)

MotionCallback = Callable[[bool], None]


class DetectionState(str, enum.Enum):
    IDLE = "idle"
    TRIGGERED = "triggered"


class MotionDetector:
    """Sample a frame source periodically and report the first significant change.

    Every tick compares the resampled frame with the previous sample using
    :func:`frame_difference`. The first comparison exceeding
    ``settings.diff_threshold`` fires ``on_motion`` and latches the detector in
    :attr:`DetectionState.TRIGGERED`. The latch stays set for the lifetime of
    the detector; only an explicit :meth:`reset` re-arms it.
    """

    def __init__(
        self,
        source: FrameSource,
        *,
        settings: MotionSettings | None = None,
        is_local: bool = True,
        on_motion: MotionCallback | None = None,
        name: str = "source",
    ) -> None:
        self._source = source
        self._settings = settings or MotionSettings()
        self._is_local = bool(is_local)
        self._on_motion = on_motion
        self._name = name
        self._state = DetectionState.IDLE
        self._previous: np.ndarray | None = None
        self._task: asyncio.Task[None] | None = None
        self._ticks = 0
        self._skipped_ticks = 0
        self._events = 0
        self._last_difference: int | None = None

    @property
    def settings(self) -> MotionSettings:
        return self._settings

    @property
    def state(self) -> DetectionState:
        return self._state

    @property
    def is_local(self) -> bool:
        return self._is_local

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> bool:
        """Sample the source once; return ``True`` when a detection event fired."""

        self._ticks += 1
        try:
            frame = await self._source.get_frame()
        except SourceUnavailable as exc:
            self._skipped_ticks += 1
            logger.debug("Skipping motion sample for %s: %s", self._name, exc)
            return False

        sample = resample_frame(frame, self._settings.size)
        previous = self._previous
        self._previous = sample
        if previous is None:
            return False

        difference = frame_difference(sample, previous)
        self._last_difference = difference
        if difference <= self._settings.diff_threshold:
            return False
        if self._state is DetectionState.TRIGGERED:
            return False

        self._state = DetectionState.TRIGGERED
        self._events += 1
        logger.info(
            "Motion detected for %s source %s (difference=%d, threshold=%s)",
            "local" if self._is_local else "remote",
            self._name,
            difference,
            self._settings.diff_threshold,
        )
        self._notify()
        return True

    def reset(self) -> None:
        """Re-arm the latch and forget the previous sample."""

        self._state = DetectionState.IDLE
        self._previous = None
        self._last_difference = None

    def start(self) -> None:
        """Run :meth:`tick` every ``sample_interval_s`` on the running loop."""

        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"motion-clip-detector-{self._name}")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def snapshot(self) -> dict[str, object]:
        """Return a JSON-serialisable view of the detector state."""

        return {
            "name": self._name,
            "local": self._is_local,
            "state": self._state.value,
            "threshold": float(self._settings.diff_threshold),
            "sample_interval_seconds": float(self._settings.sample_interval_s),
            "ticks": self._ticks,
            "skipped_ticks": self._skipped_ticks,
            "events": self._events,
            "last_difference": self._last_difference,
        }

    def _notify(self) -> None:
        if self._on_motion is None:
            return
        try:
            self._on_motion(self._is_local)
        except Exception:
            logger.exception("Motion callback failed for %s", self._name)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self._settings.sample_interval_s
        deadline = loop.time()
        while True:
            try:
                await self.tick()
            except Exception as exc:
                logger.error("Failed to sample %s for motion: %s", self._name, exc)
            deadline += interval
            now = loop.time()
            if deadline < now:
                # Overran one or more periods; resume the cadence from now.
                missed = int((now - deadline) // interval) + 1
                deadline += missed * interval
                logger.debug("Motion sampling for %s fell behind by %d tick(s)", self._name, missed)
            await asyncio.sleep(deadline - now)


__all__ = ["DetectionState", "MotionCallback", "MotionDetector"]
