import asyncio
from datetime import datetime
from pathlib import Path

import pytest

from app_catalog import make_base_point_from_rel
from app_launcher import AppLauncher
from capture_flow import (
    CaptureFlow,
    default_output_dir,
    parse_apps,
    screenshot_name,
    slugify_query,
    validate_capture_request,
)
from mirror_controller import MirrorController
from profile_store import ProfileStore
from utils.error_handler import ConfigurationError, MissingActionPointError, MissingProfileError

from conftest import make_profile


def make_flow(bridge, settings):
    controller = MirrorController(bridge, settings)
    launcher = AppLauncher(controller, settings)
    return CaptureFlow(controller, launcher, ProfileStore(settings.profile_path), settings)


@pytest.mark.parametrize("raw,expected", [
    ("best pizza", "best_pizza"),
    ("  Café & Bar!! ", "caf_bar"),
    ("NYC-2024", "nyc_2024"),
    ("???", "query"),
])
def test_slugify_query(raw, expected):
    assert slugify_query(raw) == expected


def test_output_names():
    assert default_output_dir(datetime(2024, 5, 1, 10, 20, 30)) == Path("./autofill_shots_20240501_102030")
    assert screenshot_name("tiktok", "00_empty", "best_pizza") == "tiktok_00_empty_best_pizza.png"


def test_parse_apps():
    assert parse_apps(" Chrome, ,tiktok ") == ["chrome", "tiktok"]
    assert parse_apps("") == []


@pytest.mark.parametrize("query,apps,code", [
    ("", ["chrome"], "INVALID_QUERY"),
    ("pizza", [], "MISSING_APPS"),
    ("pizza", ["chrome", "safari"], "UNSUPPORTED_APP"),
])
def test_validate_capture_request(query, apps, code):
    with pytest.raises(ConfigurationError) as excinfo:
        validate_capture_request(query, apps)
    assert excinfo.value.code == code


def test_capture_requires_profile(bridge, settings, tmp_path):
    with pytest.raises(MissingProfileError):
        asyncio.run(make_flow(bridge, settings).run_capture("pizza", ["instagram"], tmp_path / "out"))
    assert bridge.actions == []


def test_missing_chrome_points_fail_before_any_ui_action(bridge, settings, tmp_path):
    ProfileStore(settings.profile_path).persist(make_profile())

    with pytest.raises(MissingActionPointError) as excinfo:
        asyncio.run(make_flow(bridge, settings).run_capture("pizza", ["instagram", "chrome"], tmp_path / "out"))

    assert excinfo.value.action_ids == ["chrome:ellipsis", "chrome:newIncognitoTab"]
    assert bridge.actions == []
    assert not (tmp_path / "out").exists()


def test_capture_screenshots_every_keystroke(bridge, settings, tmp_path):
    ProfileStore(settings.profile_path).persist(make_profile())
    out = tmp_path / "out"

    result = asyncio.run(make_flow(bridge, settings).run_capture("ab c", ["instagram"], out))

    assert result == out
    names = sorted(p.name for p in (out / "instagram").iterdir())
    assert names == [
        "instagram_00_empty_ab_c.png",
        "instagram_01_ab_c.png",
        "instagram_02_ab_c.png",
        "instagram_03_ab_c.png",
        "instagram_04_ab_c.png",
    ]
    typed = "".join(action[1] for action in bridge.of_kind("type"))
    assert typed.endswith("ab c")
    # a screenshot follows each typed query character
    tail = bridge.actions[-8:]
    assert [kind for kind, *_ in tail] == ["type", "screenshot"] * 4


def test_chrome_capture_opens_incognito_tab_first(bridge, settings, tmp_path):
    profile = make_profile({
        "chrome": {
            "ellipsis": make_base_point_from_rel((0.92, 0.08)),
            "newIncognitoTab": make_base_point_from_rel((0.5, 0.5)),
        },
    })
    ProfileStore(settings.profile_path).persist(profile)
    settings.use_mirror_shortcuts = False

    asyncio.run(make_flow(bridge, settings).run_capture("q", ["chrome"], tmp_path / "out"))

    clicks = bridge.of_kind("click")
    # ellipsis, new incognito tab, then the fallback search bar step (0.50, 0.10)
    assert clicks[-3:] == [("click", 460, 191), ("click", 300, 419), ("click", 300, 202)]
    assert (tmp_path / "out" / "chrome" / "chrome_01_q.png").exists()
