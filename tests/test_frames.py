from __future__ import annotations

import numpy as np
import pytest

from motion_clip.frames import Frame, ensure_rgb_frame, frame_difference, resample_frame


def test_ensure_rgb_frame_expands_grayscale_and_drops_alpha() -> None:
    gray = np.full((4, 6), 9, dtype=np.uint8)
    rgb = ensure_rgb_frame(gray)
    assert rgb.shape == (4, 6, 3)
    assert np.all(rgb == 9)

    rgba = np.zeros((4, 6, 4), dtype=np.uint8)
    rgba[..., 3] = 255
    assert ensure_rgb_frame(rgba).shape == (4, 6, 3)


def test_ensure_rgb_frame_crops_to_even_dimensions() -> None:
    frame = np.zeros((5, 7, 3), dtype=np.uint8)
    assert ensure_rgb_frame(frame, even=True).shape == (4, 6, 3)


def test_ensure_rgb_frame_rejects_unexpected_dimensions() -> None:
    with pytest.raises(ValueError):
        ensure_rgb_frame(np.zeros((2, 2, 2, 2), dtype=np.uint8))


def test_frame_is_read_only_copy() -> None:
    source = np.zeros((2, 3, 3), dtype=np.uint8)
    frame = Frame.from_array(source, timestamp=1.5)
    source[:] = 200
    assert frame.timestamp == 1.5
    assert frame.size == (3, 2)
    assert int(frame.pixels.sum()) == 0
    with pytest.raises(ValueError):
        frame.pixels[0, 0, 0] = 1


def test_frame_rejects_empty_raster() -> None:
    with pytest.raises(ValueError):
        Frame.from_array(np.zeros((0, 4, 3), dtype=np.uint8))


def test_identical_frames_have_zero_difference() -> None:
    frame = np.random.default_rng(3).integers(0, 256, size=(12, 10, 3), dtype=np.uint8)
    assert frame_difference(frame, frame.copy()) == 0


def test_difference_ignores_alpha_channel() -> None:
    first = np.zeros((2, 2, 4), dtype=np.uint8)
    second = first.copy()
    second[..., 3] = 255
    assert frame_difference(first, second) == 0
    second[0, 0, :3] = (10, 20, 30)
    assert frame_difference(first, second) == 60


def test_saturated_difference_does_not_overflow() -> None:
    black = np.zeros((480, 649, 3), dtype=np.uint8)
    red = black.copy()
    red[..., 0] = 255
    assert frame_difference(red, black) == 649 * 480 * 255
    white = np.full_like(black, 255)
    assert frame_difference(white, black) == 649 * 480 * 255 * 3


def test_difference_requires_matching_dimensions() -> None:
    with pytest.raises(ValueError):
        frame_difference(np.zeros((2, 2, 3)), np.zeros((3, 2, 3)))


def test_resample_frame_nearest_neighbour() -> None:
    frame = np.zeros((2, 2, 3), dtype=np.uint8)
    frame[0, 1] = 255
    scaled = resample_frame(frame, (4, 4))
    assert scaled.shape == (4, 4, 3)
    assert np.all(scaled[:2, 2:] == 255)
    assert np.all(scaled[2:, :] == 0)


def test_resample_frame_keeps_matching_size() -> None:
    frame = Frame.from_array(np.zeros((3, 4, 3), dtype=np.uint8))
    assert resample_frame(frame, (4, 3)) is frame.pixels
