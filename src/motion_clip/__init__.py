"""Motion-triggered capture pipeline producing looping GIF clips."""

from typing import Any

from .version import APP_VERSION


def build_pipeline(*args: Any, **kwargs: Any):
    from .pipeline import build_pipeline as _build_pipeline

    return _build_pipeline(*args, **kwargs)


__all__ = ["build_pipeline", "APP_VERSION"]
