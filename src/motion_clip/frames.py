"""Frame containers and raster helpers shared by the capture pipeline."""
from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Sequence

import numpy as np


def ensure_rgb_frame(frame: np.ndarray | Sequence, *, even: bool = False) -> np.ndarray:
    """Return a contiguous RGB ``uint8`` frame.

    Grayscale input is expanded to three channels and any fourth (alpha)
    channel is dropped. With ``even`` the frame is cropped to even dimensions
    as required by YUV 4:2:0 encoders.
    """

    array = np.asarray(frame)
    if array.ndim == 2:
        array = np.repeat(array[:, :, np.newaxis], 3, axis=2)
    elif array.ndim == 3:
        if array.shape[2] == 1:
            array = np.repeat(array, 3, axis=2)
        elif array.shape[2] > 3:
            array = array[:, :, :3]
    else:
        raise ValueError("Expected a 2D or 3D frame")

    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)

    if even:
        height, width = array.shape[:2]
        if width % 2:
            array = array[:, : width - 1, :]
        if height % 2:
            array = array[: height - 1, :, :]

    if not array.flags["C_CONTIGUOUS"]:
        array = np.ascontiguousarray(array)

    return array


@dataclass(frozen=True, slots=True)
class Frame:
    """Immutable RGB raster captured from a frame source."""

    pixels: np.ndarray
    timestamp: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        array = ensure_rgb_frame(self.pixels)
        if array is self.pixels or np.may_share_memory(array, self.pixels):
            array = array.copy()
        if array.shape[0] == 0 or array.shape[1] == 0:
            raise ValueError("Frames must not be empty")
        array.setflags(write=False)
        object.__setattr__(self, "pixels", array)

    @classmethod
    def from_array(cls, array: np.ndarray | Sequence, timestamp: float | None = None) -> "Frame":
        if timestamp is None:
            return cls(np.asarray(array))
        return cls(np.asarray(array), float(timestamp))

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)


def resample_frame(frame: Frame | np.ndarray, size: tuple[int, int]) -> np.ndarray:
    """Scale ``frame`` to ``size`` (width, height) with nearest-neighbour sampling."""

    pixels = frame.pixels if isinstance(frame, Frame) else ensure_rgb_frame(frame)
    target_width, target_height = (int(size[0]), int(size[1]))
    if target_width <= 0 or target_height <= 0:
        raise ValueError("Resample dimensions must be positive")
    height, width = pixels.shape[:2]
    if (width, height) == (target_width, target_height):
        return pixels
    rows = (np.arange(target_height) * height // target_height).astype(np.intp)
    cols = (np.arange(target_width) * width // target_width).astype(np.intp)
    return pixels[rows[:, np.newaxis], cols[np.newaxis, :]]


def frame_difference(current: np.ndarray, previous: np.ndarray) -> int:
    """Return the summed absolute RGB channel delta between two rasters.

    Only the first three channels take part, so RGBA buffers compare the same
    as their RGB counterparts.
    """

    first = np.asarray(current)
    second = np.asarray(previous)
    if first.shape[:2] != second.shape[:2]:
        raise ValueError(
            f"Frame dimensions differ: {first.shape[:2]} != {second.shape[:2]}"
        )
    if first.ndim == 3:
        first = first[..., :3]
    if second.ndim == 3:
        second = second[..., :3]
    delta = np.abs(first.astype(np.int16) - second.astype(np.int16))
    return int(delta.sum(dtype=np.int64))


__all__ = ["Frame", "ensure_rgb_frame", "frame_difference", "resample_frame"]
