from pathlib import Path

import pytest
from pydantic import ValidationError

from settings import DEFAULT_PROFILE_PATH, AutomationSettings, parse_bool, parse_seconds


def test_defaults_without_environment():
    settings = AutomationSettings.from_env({})
    assert settings.step_gap_sec == 4.0
    assert settings.fast_step_gap_sec == 0.7
    assert settings.use_mirror_shortcuts is True
    assert settings.clear_mode == "select_all"
    assert settings.clear_backspaces == 40
    assert settings.profile_path == Path(DEFAULT_PROFILE_PATH)
    assert settings.host_process_names == ["iPhone Mirroring", "QuickTime Player"]
    assert settings.verbose is False


def test_environment_overrides():
    settings = AutomationSettings.from_env({
        "CAPTURE_PRE_ACTION_DELAY_SEC": "0",
        "CAPTURE_STEP_GAP_SEC": "1.5",
        "CAPTURE_FAST_STEP_GAP_SEC": "0.25",
        "CAPTURE_CHAR_DELAY_SEC": "2",
        "CAPTURE_USE_MIRROR_SHORTCUTS": "off",
        "CAPTURE_CLEAR_MODE": "Backspace:12",
        "CAPTURE_PROFILE_PATH": "/tmp/profile.json",
        "PRINT_WINDOW_DEBUG": "1",
    })
    assert settings.pre_action_delay_sec == 0
    assert settings.step_gap_sec == 1.5
    assert settings.fast_step_gap_sec == 0.25
    assert settings.char_delay_sec == 2
    assert settings.use_mirror_shortcuts is False
    assert settings.clear_mode == "backspace:12"
    assert settings.clear_backspaces == 12
    assert settings.profile_path == Path("/tmp/profile.json")
    assert settings.verbose is True


@pytest.mark.parametrize("raw", ["-1", "abc", "inf", "nan"])
def test_invalid_seconds_fall_back(raw):
    assert AutomationSettings.from_env({"CAPTURE_STEP_GAP_SEC": raw}).step_gap_sec == 4.0


def test_unknown_clear_mode_falls_back():
    settings = AutomationSettings.from_env({"CAPTURE_CLEAR_MODE": "shred"})
    assert settings.clear_mode == "select_all"


def test_plain_backspace_mode_uses_default_count():
    assert AutomationSettings.from_env({"CAPTURE_CLEAR_MODE": "backspace"}).clear_backspaces == 40


@pytest.mark.parametrize("raw,expected", [
    ("yes", True), ("ENABLED", True), ("0", False), ("Off", False), ("", True), (None, True), ("maybe", True),
])
def test_parse_bool(raw, expected):
    assert parse_bool(raw, True) is expected


def test_parse_seconds():
    assert parse_seconds(" 3 ", 1.0) == 3.0
    assert parse_seconds(None, 1.0) == 1.0


def test_model_rejects_invalid_values():
    with pytest.raises(ValidationError):
        AutomationSettings(coord_scale=0)
    with pytest.raises(ValidationError):
        AutomationSettings(clear_mode="shred")
