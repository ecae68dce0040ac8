from __future__ import annotations

import base64
import json
from pathlib import Path

import numpy as np
import pytest
import simplejpeg

from motion_clip.sinks import FileSink, MemorySink, decode_data_url


def _poster_url() -> str:
    jpeg = simplejpeg.encode_jpeg(np.zeros((8, 8, 3), dtype=np.uint8), quality=85, colorspace="RGB")
    return "data:image/jpeg;base64," + base64.b64encode(jpeg).decode("ascii")


def test_memory_sink_keeps_bounded_history() -> None:
    sink = MemorySink(history=2)
    assert sink.latest is None
    assert sink.latest_data_url is None
    for index in range(3):
        sink(bytes([index]), {"frame_count": index, "media_type": "image/gif"})
    assert sink.total_delivered == 3
    assert [item.metadata["frame_count"] for item in sink.items] == [1, 2]
    assert sink.latest_data_url == "data:image/gif;base64," + base64.b64encode(b"\x02").decode()
    sink.clear()
    assert sink.items == []


def test_memory_sink_history_must_be_positive() -> None:
    with pytest.raises(ValueError):
        MemorySink(history=0)


def test_file_sink_writes_gif_poster_and_metadata(tmp_path: Path) -> None:
    sink = FileSink(tmp_path / "clips", prefix="front door")
    sink.write(b"GIF89a-one", {"frame_count": 50, "poster": _poster_url()})
    sink.write(b"GIF89a-two", {"frame_count": 49, "poster": None})

    names = sink.written
    assert len(names) == 2
    assert len(set(names)) == 2
    assert all(name.startswith("front-door-") for name in names)

    first, second = names
    assert (sink.directory / f"{first}.gif").read_bytes() == b"GIF89a-one"
    assert (sink.directory / f"{first}.jpg").read_bytes()[:2] == b"\xff\xd8"
    metadata = json.loads((sink.directory / f"{first}.json").read_text(encoding="utf-8"))
    assert metadata["frame_count"] == 50
    assert metadata["poster_file"] == f"{first}.jpg"
    assert "poster" not in metadata

    assert not (sink.directory / f"{second}.jpg").exists()
    assert len(sink.list_artifacts()) == 2


def test_decode_data_url_rejects_invalid_values() -> None:
    assert decode_data_url(None) is None
    assert decode_data_url("https://example.com/clip.gif") is None
    assert decode_data_url("data:image/gif;base64,@@@") is None
    assert decode_data_url("data:image/gif;base64,R0lG") == b"GIF"


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_file_sink_call_writes_off_the_loop(anyio_backend, tmp_path: Path) -> None:
    sink = FileSink(tmp_path)
    await sink(b"GIF89a", {"frame_count": 1, "media_type": "image/gif"})

    assert len(sink.written) == 1
    stored = sink.list_artifacts()
    assert stored[0]["file"] == f"{sink.written[0]}.gif"
    assert stored[0]["frame_count"] == 1
    assert (tmp_path / stored[0]["file"]).read_bytes() == b"GIF89a"
