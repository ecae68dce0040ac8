"""Pipeline event journal: detections, recordings, artifacts and failures."""

from __future__ import annotations

import enum
import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Deque

if TYPE_CHECKING:  # pragma: no cover - imports for annotations only
    from .encoder import ClipArtifact
    from .recording import RecordingSession

logger = logging.getLogger(__name__)


class EventCategory(str, enum.Enum):
    MOTION = "motion"
    RECORDING = "recording"
    ARTIFACT = "artifact"
    ERROR = "error"


def _coerce_category(value: EventCategory | str) -> EventCategory:
    if isinstance(value, EventCategory):
        return value
    try:
        return EventCategory(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unknown event category: {value!r}") from None


@dataclass(slots=True)
class PipelineEvent:
    """One journal line. ``details`` never holds ``None`` values."""

    timestamp: float
    category: EventCategory
    event: str
    message: str
    details: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp,
            "category": self.category.value,
            "event": self.event,
            "message": self.message,
        }
        if self.details:
            payload["details"] = dict(self.details)
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> "PipelineEvent | None":
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        try:
            category = _coerce_category(payload.get("category", ""))
            timestamp = float(payload["timestamp"])
        except (KeyError, TypeError, ValueError):
            return None
        details = payload.get("details")
        return cls(timestamp, category, event, message, dict(details) if isinstance(details, dict) else {})


class EventLog:
    """Bounded in-memory journal, mirrored to a JSON-lines file when ``path`` is set.

    The pipeline writes through the typed helpers (:meth:`motion_detected`,
    :meth:`recording_sealed`, :meth:`artifact_delivered`, :meth:`failure`);
    :meth:`record` is the validated primitive they share.
    """

    def __init__(self, path: Path | str | None = None, *, max_entries: int = 500) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path = Path(path) if path is not None else None
        self._entries: Deque[PipelineEvent] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._replay()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: EventCategory | str,
        event: str,
        message: str,
        **details: object,
    ) -> PipelineEvent:
        """Append an event; raises :class:`ValueError` for unknown categories."""

        if not event:
            raise ValueError("event name must not be empty")
        entry = PipelineEvent(
            timestamp=time.time(),
            category=_coerce_category(category),
            event=event,
            message=message,
            details={key: value for key, value in details.items() if value is not None},
        )
        with self._lock:
            self._entries.append(entry)
            self._persist(entry)
        return entry

    # Typed helpers used by the pipeline -----------------------------------
    def motion_detected(self, source: str, *, local: bool) -> PipelineEvent:
        kind = "local" if local else "remote"
        return self.record(
            EventCategory.MOTION,
            "detected",
            f"Motion detected on {kind} source {source}",
            source=source,
            local=local,
        )

    def recording_sealed(self, session: "RecordingSession") -> PipelineEvent:
        return self.record(
            EventCategory.RECORDING,
            "sealed",
            f"Recording sealed after {session.frames_captured} frame(s)",
            chunks=len(session.chunks),
            size_bytes=session.size_bytes,
            frames=session.frames_captured,
            media_type=session.media_type,
        )

    def artifact_delivered(self, artifact: "ClipArtifact") -> PipelineEvent:
        return self.record(
            EventCategory.ARTIFACT,
            "delivered",
            f"GIF with {artifact.frame_count} frame(s) delivered",
            frames=artifact.frame_count,
            size_bytes=artifact.size_bytes,
            width=artifact.width,
            height=artifact.height,
        )

    def failure(self, exc: BaseException, stage: str, detail: str | None = None) -> PipelineEvent:
        return self.record(
            EventCategory.ERROR,
            exc.__class__.__name__,
            f"{stage.capitalize()} failed: {detail or exc}",
            stage=stage,
        )

    # Queries ----------------------------------------------------------------
    def tail(
        self,
        limit: int | None = None,
        *,
        category: EventCategory | str | None = None,
    ) -> list[PipelineEvent]:
        """Return the newest entries, oldest first, optionally for one category."""

        with self._lock:
            entries = list(self._entries)
        if category is not None:
            wanted = _coerce_category(category)
            entries = [entry for entry in entries if entry.category is wanted]
        if limit is not None:
            entries = entries[-max(1, int(limit)):]
        return entries

    def counts(self) -> dict[str, int]:
        with self._lock:
            entries = list(self._entries)
        totals = {category.value: 0 for category in EventCategory}
        for entry in entries:
            totals[entry.category.value] += 1
        return totals

    # ------------------------------------------------------------------
    def _replay(self) -> None:
        assert self._path is not None
        if not self._path.exists():
            return
        with self._path.open("r", encoding="utf-8") as handle:
            for line in handle:
                if not line.strip():
                    continue
                try:
                    entry = PipelineEvent.from_dict(json.loads(line))
                except ValueError:
                    entry = None
                if entry is None:
                    logger.debug("Skipping malformed event log line in %s", self._path)
                    continue
                self._entries.append(entry)

    def _persist(self, entry: PipelineEvent) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:
            logger.warning("Unable to persist pipeline event: %s", exc)


__all__ = ["EventCategory", "EventLog", "PipelineEvent"]
