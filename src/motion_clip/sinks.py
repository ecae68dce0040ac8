"""Destinations for finished clip artifacts."""
from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import re
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Mapping, Union

logger = logging.getLogger(__name__)

ArtifactSink = Callable[[bytes, dict], Union[None, Awaitable[None]]]

_DATA_URL_PATTERN = re.compile(r"^data:(?P<media>[\w/+.-]+);base64,(?P<payload>.*)$", re.DOTALL)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def decode_data_url(value: object) -> bytes | None:
    """Return the payload of a base64 ``data:`` URL or ``None``."""

    if not isinstance(value, str):
        return None
    match = _DATA_URL_PATTERN.match(value)
    if match is None:
        return None
    try:
        return base64.b64decode(match.group("payload"), validate=True)
    except (binascii.Error, ValueError):
        return None


@dataclass(slots=True)
class DeliveredArtifact:
    data: bytes
    metadata: dict[str, Any]
    received_at: datetime

    @property
    def data_url(self) -> str:
        media_type = str(self.metadata.get("media_type") or "image/gif")
        return f"data:{media_type};base64," + base64.b64encode(self.data).decode("ascii")


class MemorySink:
    """Keeps recently delivered artifacts, newest last, for display."""

    def __init__(self, *, history: int = 10) -> None:
        if history <= 0:
            raise ValueError("history must be positive")
        self._items: Deque[DeliveredArtifact] = deque(maxlen=history)
        self._total = 0

    def __call__(self, data: bytes, metadata: dict) -> None:
        item = DeliveredArtifact(bytes(data), dict(metadata), _utcnow())
        self._items.append(item)
        self._total += 1
        logger.debug("Artifact %d stored in memory (%d bytes)", self._total, len(item.data))

    @property
    def latest(self) -> DeliveredArtifact | None:
        return self._items[-1] if self._items else None

    @property
    def latest_data_url(self) -> str | None:
        latest = self.latest
        return latest.data_url if latest is not None else None

    @property
    def items(self) -> list[DeliveredArtifact]:
        return list(self._items)

    @property
    def total_delivered(self) -> int:
        return self._total

    def clear(self) -> None:
        self._items.clear()


class FileSink:
    """Write each artifact to ``directory`` as ``.gif``, ``.jpg`` and ``.json`` files."""

    def __init__(self, directory: Path | str, *, prefix: str = "motion") -> None:
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)
        cleaned = re.sub(r"[^A-Za-z0-9_-]+", "-", prefix).strip("-")
        self._prefix = cleaned or "motion"
        self._written: list[str] = []

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def written(self) -> list[str]:
        return list(self._written)

    def _next_name(self) -> str:
        stamp = _utcnow().strftime("%Y%m%d-%H%M%S")
        base = f"{self._prefix}-{stamp}"
        name = base
        counter = 1
        while (self._directory / f"{name}.gif").exists():
            counter += 1
            name = f"{base}-{counter}"
        return name

    async def __call__(self, data: bytes, metadata: dict) -> None:
        await asyncio.to_thread(self.write, data, metadata)

    def write(self, data: bytes, metadata: dict) -> str:
        """Store one artifact and return the base name used for its files."""

        name = self._next_name()
        payload: dict[str, Any] = dict(metadata)
        payload["name"] = name
        payload["file"] = f"{name}.gif"

        gif_path = self._directory / f"{name}.gif"
        gif_path.write_bytes(bytes(data))

        poster = decode_data_url(payload.pop("poster", None))
        if poster is not None:
            (self._directory / f"{name}.jpg").write_bytes(poster)
            payload["poster_file"] = f"{name}.jpg"

        self._write_metadata(self._directory / f"{name}.json", payload)
        self._written.append(name)
        logger.info("Wrote artifact %s (%d bytes)", gif_path, len(data))
        return name

    @staticmethod
    def _write_metadata(path: Path, payload: Mapping[str, object]) -> None:
        data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
        path.write_text(data, encoding="utf-8")

    def list_artifacts(self) -> list[dict[str, object]]:
        """Return stored metadata, newest first."""

        entries: list[dict[str, object]] = []
        for path in sorted(self._directory.glob("*.json"), reverse=True):
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                logger.debug("Skipping unreadable artifact metadata %s", path)
                continue
            if isinstance(payload, dict):
                entries.append(payload)
        return entries


__all__ = [
    "ArtifactSink",
    "DeliveredArtifact",
    "FileSink",
    "MemorySink",
    "decode_data_url",
]
