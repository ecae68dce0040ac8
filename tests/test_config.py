from pathlib import Path
import json

import pytest

from motion_clip.config import (
    ConfigManager,
    EncoderSettings,
    MotionSettings,
    PipelineSettings,
    RecordingSettings,
    DEFAULT_DIFF_THRESHOLD,
    DEFAULT_FRAME_DELAY_MS,
    DEFAULT_RECORDING_DURATION_S,
    DEFAULT_SAMPLE_INTERVAL_S,
    DEFAULT_SAMPLE_SIZE,
)


def test_default_settings(tmp_path: Path):
    manager = ConfigManager(tmp_path / "config.json")
    settings = manager.get_settings()
    assert settings == PipelineSettings()
    assert settings.camera == "auto"
    assert settings.motion.sample_interval_s == DEFAULT_SAMPLE_INTERVAL_S
    assert settings.motion.diff_threshold == DEFAULT_DIFF_THRESHOLD
    assert settings.motion.size == DEFAULT_SAMPLE_SIZE
    assert settings.recording.duration_s == DEFAULT_RECORDING_DURATION_S
    assert settings.encoder.frame_delay_ms == DEFAULT_FRAME_DELAY_MS
    assert settings.encoder.workers == 2


def test_update_persists(tmp_path: Path):
    config_file = tmp_path / "config.json"
    manager = ConfigManager(config_file)
    updated = manager.update({"motion": {"diff_threshold": 1000}, "camera": "synthetic"})
    assert updated.motion.diff_threshold == 1000
    # Untouched fields in the merged section keep their values.
    assert updated.motion.sample_interval_s == DEFAULT_SAMPLE_INTERVAL_S
    reloaded = ConfigManager(config_file)
    assert reloaded.get_settings() == updated
    stored = json.loads(config_file.read_text(encoding="utf-8"))
    assert stored["camera"] == "synthetic"


def test_invalid_update_is_not_persisted(tmp_path: Path):
    config_file = tmp_path / "config.json"
    manager = ConfigManager(config_file)
    with pytest.raises(ValueError):
        manager.update({"encoder": {"frame_delay_ms": 15}})
    assert not config_file.exists()
    assert manager.get_settings() == PipelineSettings()


def test_invalid_config_file_rejected(tmp_path: Path):
    config_file = tmp_path / "config.json"
    config_file.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        ConfigManager(config_file)


def test_unknown_section_fields_rejected():
    with pytest.raises(ValueError):
        PipelineSettings.from_dict({"motion": {"sensitivity": 5}})


def test_settings_round_trip_through_dict():
    settings = PipelineSettings(
        camera="synthetic",
        motion=MotionSettings(sample_interval_s=0.5, diff_threshold=42, width=64, height=48),
        recording=RecordingSettings(duration_s=2.0, capture_fps=10, codec="MPEG4"),
        encoder=EncoderSettings(frame_delay_ms=50, workers=3, colors=64, dither=False, max_width=320),
    )
    assert PipelineSettings.from_dict(settings.to_dict()) == settings
    assert settings.recording.codec == "mpeg4"


@pytest.mark.parametrize(
    "factory, kwargs",
    [
        (MotionSettings, {"sample_interval_s": 0}),
        (MotionSettings, {"diff_threshold": -1}),
        (MotionSettings, {"diff_threshold": float("nan")}),
        (MotionSettings, {"width": 0}),
        (RecordingSettings, {"duration_s": 0}),
        (RecordingSettings, {"capture_fps": 120}),
        (EncoderSettings, {"frame_delay_ms": 5}),
        (EncoderSettings, {"frame_delay_ms": 105}),
        (EncoderSettings, {"workers": 0}),
        (EncoderSettings, {"colors": 1}),
        (EncoderSettings, {"max_width": 1}),
        (PipelineSettings, {"camera": "thermal"}),
    ],
)
def test_invalid_settings_rejected(factory, kwargs):
    with pytest.raises(ValueError):
        factory(**kwargs)


def test_threshold_environment_override(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MOTION_CLIP_THRESHOLD", "12345")
    assert MotionSettings().diff_threshold == 12345


def test_invalid_threshold_environment_ignored(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MOTION_CLIP_THRESHOLD", "lots")
    assert MotionSettings().diff_threshold == DEFAULT_DIFF_THRESHOLD
    monkeypatch.setenv("MOTION_CLIP_THRESHOLD", "-4")
    assert MotionSettings().diff_threshold == DEFAULT_DIFF_THRESHOLD
