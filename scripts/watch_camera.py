"""Watch a camera for motion and write each triggered clip as a GIF."""

from __future__ import annotations

import argparse
import asyncio
import logging
import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from motion_clip import APP_VERSION
from motion_clip.camera import CAMERA_SOURCES, create_camera
from motion_clip.config import ConfigManager, PipelineSettings
from motion_clip.event_log import EventLog
from motion_clip.pipeline import build_pipeline
from motion_clip.sinks import FileSink


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("output", type=pathlib.Path, help="Directory receiving GIF clips")
    parser.add_argument("--camera", choices=sorted(CAMERA_SOURCES), default=None)
    parser.add_argument("--index", type=int, default=0, help="OpenCV camera index")
    parser.add_argument("--config", type=pathlib.Path, default=None, help="JSON settings file")
    parser.add_argument("--threshold", type=float, default=None, help="Difference threshold")
    parser.add_argument("--runtime", type=float, default=None, help="Stop after N seconds")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--version", action="version", version=f"motion-clip {APP_VERSION}")
    return parser.parse_args(argv)


async def _watch(args: argparse.Namespace) -> None:
    if args.config is not None:
        settings = ConfigManager(args.config).get_settings()
    else:
        settings = PipelineSettings()
    if args.threshold is not None:
        payload = settings.to_dict()
        payload["motion"]["diff_threshold"] = args.threshold
        settings = PipelineSettings.from_dict(payload)

    camera = create_camera(args.camera or settings.camera, index=args.index)
    sink = FileSink(args.output)
    event_log = EventLog(args.output / "events.jsonl")
    pipeline = build_pipeline(settings, sink, event_log=event_log)
    pipeline.add_source(camera, local=True, name="camera")
    pipeline.start()
    try:
        if args.runtime is not None:
            await asyncio.sleep(args.runtime)
        else:
            await asyncio.Event().wait()
    finally:
        await pipeline.stop()
        await camera.close()
    print(f"Wrote {len(sink.written)} clip(s) to {sink.directory}")


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(_watch(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
