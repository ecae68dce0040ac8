"""Wire motion detection, recording, encoding and delivery together."""
from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from typing import Callable

from .camera import FrameSource, summarise_exception
from .capture import CaptureError, MediaCapture
from .config import MotionSettings, PipelineSettings
from .encoder import ClipArtifact, ClipEncoder, ClipEncodingError
from .event_log import EventLog
from .motion import MotionDetector
from .recording import AlreadyRecordingError, RecordingController, RecordingError, RecordingSession
from .sinks import ArtifactSink

logger = logging.getLogger(__name__)

MotionHook = Callable[[str, bool], None]
ErrorHook = Callable[[BaseException], None]


class MotionCapturePipeline:
    """Turn motion on local sources into GIF artifacts delivered to a sink.

    Each registered source gets its own :class:`MotionDetector`. A detection
    on a local source starts a recording of ``recording_source`` (or the
    triggering source), the sealed session is encoded and the artifact bytes
    plus metadata are handed to ``sink``. Failures along the way are logged and
    reported through ``on_error`` without stopping the pipeline.
    """

    def __init__(
        self,
        controller: RecordingController,
        encoder: ClipEncoder,
        sink: ArtifactSink,
        *,
        motion_settings: MotionSettings | None = None,
        event_log: EventLog | None = None,
        on_motion: MotionHook | None = None,
        on_error: ErrorHook | None = None,
        recording_source: FrameSource | None = None,
    ) -> None:
        self._controller = controller
        self._encoder = encoder
        self._sink = sink
        self._motion_settings = motion_settings or MotionSettings()
        self._event_log = event_log
        self._on_motion = on_motion
        self._on_error = on_error
        self._recording_source = recording_source
        self._detectors: dict[str, MotionDetector] = {}
        self._sources: dict[str, FrameSource] = {}
        self._tasks: set[asyncio.Task[ClipArtifact | None]] = set()
        self._running = False
        self._artifacts_delivered = 0
        self._errors = 0

    # ------------------------------------------------------------------
    @property
    def controller(self) -> RecordingController:
        return self._controller

    @property
    def detectors(self) -> dict[str, MotionDetector]:
        return dict(self._detectors)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def artifacts_delivered(self) -> int:
        return self._artifacts_delivered

    @property
    def error_count(self) -> int:
        return self._errors

    # ------------------------------------------------------------------
    def add_source(
        self,
        source: FrameSource,
        *,
        local: bool = True,
        name: str | None = None,
    ) -> MotionDetector:
        """Register ``source`` for motion detection and return its detector."""

        label = name or f"{'local' if local else 'remote'}-{len(self._detectors) + 1}"
        if label in self._detectors:
            raise ValueError(f"A source named {label!r} is already registered")

        def _motion(is_local: bool, *, _name: str = label) -> None:
            self._handle_motion(_name, is_local)

        detector = MotionDetector(
            source,
            settings=self._motion_settings,
            is_local=local,
            on_motion=_motion,
            name=label,
        )
        self._detectors[label] = detector
        self._sources[label] = source
        if self._running:
            detector.start()
        logger.debug("Registered %s source %s", "local" if local else "remote", label)
        return detector

    async def remove_source(self, name: str) -> None:
        detector = self._detectors.pop(name, None)
        self._sources.pop(name, None)
        if detector is not None:
            await detector.stop()

    def start(self) -> None:
        """Start sampling every registered source."""

        if self._running:
            return
        self._running = True
        for detector in self._detectors.values():
            detector.start()
        logger.info("Motion capture pipeline started with %d source(s)", len(self._detectors))

    async def stop(self) -> None:
        """Stop all detectors and cancel in-flight captures."""

        self._running = False
        for detector in list(self._detectors.values()):
            await detector.stop()
        await self._controller.cancel()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("Motion capture pipeline stopped")

    async def wait_idle(self) -> None:
        """Wait until every capture started so far has finished."""

        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def trigger(self, source: FrameSource | None = None) -> asyncio.Task[ClipArtifact | None] | None:
        """Start a capture immediately, as a local detection would.

        Returns the capture task or ``None`` when a recording is already in
        progress.
        """

        target = source or self._recording_source
        if target is None:
            if not self._sources:
                raise ValueError("No source available to record")
            target = next(iter(self._sources.values()))
        return self._begin_capture(target)

    def snapshot(self) -> dict[str, object]:
        return {
            "running": self._running,
            "recording_state": self._controller.state.value,
            "pending_captures": len(self._tasks),
            "artifacts_delivered": self._artifacts_delivered,
            "errors": self._errors,
            "detectors": [detector.snapshot() for detector in self._detectors.values()],
            "events": self._event_log.counts() if self._event_log is not None else None,
        }

    # ------------------------------------------------------------------
    def _handle_motion(self, name: str, is_local: bool) -> None:
        if self._event_log is not None:
            self._event_log.motion_detected(name, local=is_local)
        if self._on_motion is not None:
            try:
                self._on_motion(name, is_local)
            except Exception:
                logger.exception("Motion hook failed for %s", name)
        if not is_local:
            logger.debug("Ignoring remote motion on %s for recording", name)
            return
        source = self._recording_source or self._sources.get(name)
        if source is None:
            logger.warning("Source %s is no longer registered; skipping capture", name)
            return
        self._begin_capture(source)

    def _begin_capture(self, source: FrameSource) -> asyncio.Task[ClipArtifact | None] | None:
        try:
            recording = self._controller.start(source)
        except AlreadyRecordingError as exc:
            self._report(exc, "recording")
            return None
        task = asyncio.create_task(self._process(recording), name="motion-clip-capture-task")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _process(
        self, recording: asyncio.Task[RecordingSession]
    ) -> ClipArtifact | None:
        try:
            session = await recording
            if self._event_log is not None:
                self._event_log.recording_sealed(session)
            artifact = await self._encoder.encode(session)
            metadata = artifact.to_dict()
            result = self._sink(artifact.data, metadata)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            if not recording.done():
                await self._controller.cancel()
            raise
        except (RecordingError, CaptureError) as exc:
            self._report(exc, "recording")
            return None
        except ClipEncodingError as exc:
            self._report(exc, "encoding")
            return None
        except Exception as exc:
            logger.exception("Unexpected failure while delivering clip")
            self._report(exc, "delivery", logged=True)
            return None
        self._artifacts_delivered += 1
        if self._event_log is not None:
            self._event_log.artifact_delivered(artifact)
        return artifact

    def _report(self, exc: BaseException, stage: str, *, logged: bool = False) -> None:
        self._errors += 1
        detail = summarise_exception(exc) or exc.__class__.__name__
        if not logged:
            logger.error("Capture %s failed: %s", stage, detail)
        if self._event_log is not None:
            self._event_log.failure(exc, stage, detail)
        if self._on_error is not None:
            try:
                self._on_error(exc)
            except Exception:
                logger.exception("Error hook failed")


def build_pipeline(
    settings: PipelineSettings,
    sink: ArtifactSink,
    *,
    event_log: EventLog | None = None,
    on_motion: MotionHook | None = None,
    on_error: ErrorHook | None = None,
    recording_source: FrameSource | None = None,
) -> MotionCapturePipeline:
    """Create a pipeline with PyAV capture configured from ``settings``."""

    capture = MediaCapture(
        fps=settings.recording.capture_fps,
        codec=settings.recording.codec,
    )
    controller = RecordingController(capture, duration_s=settings.recording.duration_s)
    encoder = ClipEncoder(settings.encoder)
    return MotionCapturePipeline(
        controller,
        encoder,
        sink,
        motion_settings=settings.motion,
        event_log=event_log,
        on_motion=on_motion,
        on_error=on_error,
        recording_source=recording_source,
    )


__all__ = ["ErrorHook", "MotionCapturePipeline", "MotionHook", "build_pipeline"]
