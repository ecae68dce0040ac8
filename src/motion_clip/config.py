"""Configuration management for the motion capture pipeline."""
from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Mapping

from .camera import CAMERA_SOURCES, DEFAULT_CAMERA_CHOICE

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_INTERVAL_S = 2.0
DEFAULT_DIFF_THRESHOLD = 7_718_920
DEFAULT_SAMPLE_SIZE = (649, 480)
DEFAULT_RECORDING_DURATION_S = 5.0
DEFAULT_CAPTURE_FPS = 15
DEFAULT_FRAME_DELAY_MS = 100
DEFAULT_ENCODER_WORKERS = 2

THRESHOLD_ENV = "MOTION_CLIP_THRESHOLD"


def _finite_float(value: object, name: str) -> float:
    try:
        numeric = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not math.isfinite(numeric):
        raise ValueError(f"{name} must be finite")
    return numeric


def _threshold_default() -> float:
    raw = os.getenv(THRESHOLD_ENV)
    if raw:
        try:
            value = float(raw)
        except ValueError:
            logger.warning("Invalid %s value %r; ignoring", THRESHOLD_ENV, raw)
        else:
            if math.isfinite(value) and value > 0:
                return value
            logger.warning("%s must be a positive number; ignoring %r", THRESHOLD_ENV, raw)
    return float(DEFAULT_DIFF_THRESHOLD)


@dataclass(frozen=True, slots=True)
class MotionSettings:
    """Sampling cadence and sensitivity of the motion detector."""

    sample_interval_s: float = DEFAULT_SAMPLE_INTERVAL_S
    diff_threshold: float = field(default_factory=_threshold_default)
    width: int = DEFAULT_SAMPLE_SIZE[0]
    height: int = DEFAULT_SAMPLE_SIZE[1]

    def __post_init__(self) -> None:
        interval = _finite_float(self.sample_interval_s, "Sample interval")
        if interval <= 0:
            raise ValueError("Sample interval must be positive")
        threshold = _finite_float(self.diff_threshold, "Difference threshold")
        if threshold <= 0:
            raise ValueError("Difference threshold must be a positive number")
        if int(self.width) <= 0 or int(self.height) <= 0:
            raise ValueError("Sample dimensions must be positive integers")
        object.__setattr__(self, "sample_interval_s", interval)
        object.__setattr__(self, "diff_threshold", threshold)
        object.__setattr__(self, "width", int(self.width))
        object.__setattr__(self, "height", int(self.height))

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class RecordingSettings:
    """Length and frame rate of motion-triggered recordings."""

    duration_s: float = DEFAULT_RECORDING_DURATION_S
    capture_fps: int = DEFAULT_CAPTURE_FPS
    codec: str = "auto"

    def __post_init__(self) -> None:
        duration = _finite_float(self.duration_s, "Recording duration")
        if duration <= 0:
            raise ValueError("Recording duration must be positive")
        if int(self.capture_fps) < 1 or int(self.capture_fps) > 60:
            raise ValueError("Capture fps must be between 1 and 60")
        codec = str(self.codec).strip().lower() or "auto"
        object.__setattr__(self, "duration_s", duration)
        object.__setattr__(self, "capture_fps", int(self.capture_fps))
        object.__setattr__(self, "codec", codec)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class EncoderSettings:
    """Animated GIF output options."""

    frame_delay_ms: int = DEFAULT_FRAME_DELAY_MS
    workers: int = DEFAULT_ENCODER_WORKERS
    colors: int = 256
    dither: bool = True
    max_width: int | None = None

    def __post_init__(self) -> None:
        delay = int(self.frame_delay_ms)
        # GIF stores delays in hundredths of a second.
        if delay < 10 or delay % 10:
            raise ValueError("Frame delay must be a positive multiple of 10 ms")
        if int(self.workers) < 1:
            raise ValueError("Encoder workers must be at least 1")
        if int(self.colors) < 2 or int(self.colors) > 256:
            raise ValueError("Palette colours must be between 2 and 256")
        if self.max_width is not None and int(self.max_width) < 2:
            raise ValueError("Maximum width must be at least 2 pixels")
        object.__setattr__(self, "frame_delay_ms", delay)
        object.__setattr__(self, "workers", int(self.workers))
        object.__setattr__(self, "colors", int(self.colors))
        object.__setattr__(self, "dither", bool(self.dither))
        if self.max_width is not None:
            object.__setattr__(self, "max_width", int(self.max_width))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    """Aggregate settings for a capture pipeline."""

    camera: str = DEFAULT_CAMERA_CHOICE
    motion: MotionSettings = field(default_factory=MotionSettings)
    recording: RecordingSettings = field(default_factory=RecordingSettings)
    encoder: EncoderSettings = field(default_factory=EncoderSettings)

    def __post_init__(self) -> None:
        camera = str(self.camera).strip().lower()
        if camera not in CAMERA_SOURCES:
            raise ValueError(f"Unknown camera choice: {self.camera!r}")
        object.__setattr__(self, "camera", camera)

    def to_dict(self) -> dict[str, Any]:
        return {
            "camera": self.camera,
            "motion": self.motion.to_dict(),
            "recording": self.recording.to_dict(),
            "encoder": self.encoder.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PipelineSettings":
        if not isinstance(payload, Mapping):
            raise ValueError("Settings payload must be a mapping")
        return cls(
            camera=payload.get("camera", DEFAULT_CAMERA_CHOICE),
            motion=_parse_section(MotionSettings, payload.get("motion")),
            recording=_parse_section(RecordingSettings, payload.get("recording")),
            encoder=_parse_section(EncoderSettings, payload.get("encoder")),
        )


def _parse_section(factory, payload: object):
    if payload is None:
        return factory()
    if isinstance(payload, factory):
        return payload
    if not isinstance(payload, Mapping):
        raise ValueError(f"{factory.__name__} payload must be a mapping")
    known = set(factory.__dataclass_fields__)
    unknown = set(payload) - known
    if unknown:
        raise ValueError(f"Unknown {factory.__name__} fields: {', '.join(sorted(unknown))}")
    return factory(**dict(payload))


class ConfigManager:
    """Stores pipeline settings on disk with thread-safety."""

    def __init__(self, config_path: Path | str) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._settings = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> PipelineSettings:
        if not self._path.exists():
            return PipelineSettings()
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError("Invalid configuration JSON") from exc
        if not isinstance(payload, dict):
            raise ValueError("Configuration file must contain a JSON object")
        return PipelineSettings.from_dict(payload)

    def _save(self, settings: PipelineSettings) -> None:
        payload = settings.to_dict()
        self._path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")

    def get_settings(self) -> PipelineSettings:
        with self._lock:
            return self._settings

    def update(self, payload: Mapping[str, Any]) -> PipelineSettings:
        """Merge ``payload`` into the stored settings and persist the result."""

        with self._lock:
            merged = self._settings.to_dict()
            for key, value in payload.items():
                if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
                    merged[key] = {**merged[key], **value}
                else:
                    merged[key] = value
            settings = PipelineSettings.from_dict(merged)
            self._save(settings)
            self._settings = settings
            return settings


__all__ = [
    "ConfigManager",
    "DEFAULT_DIFF_THRESHOLD",
    "DEFAULT_FRAME_DELAY_MS",
    "DEFAULT_RECORDING_DURATION_S",
    "DEFAULT_SAMPLE_INTERVAL_S",
    "DEFAULT_SAMPLE_SIZE",
    "EncoderSettings",
    "MotionSettings",
    "PipelineSettings",
    "RecordingSettings",
]
