import asyncio

import pytest

from app_catalog import ACTION_CALIBRATION_DEFINITIONS
from app_launcher import AppLauncher
from calibration_workflow import (
    HOME_SEARCH_LABEL,
    CalibrationStepHooks,
    CalibrationWorkflow,
    order_calibration_definitions,
)
from mirror_controller import MirrorController
from mirror_models import ActionCalibrationDefinition, MouseSample
from profile_store import ProfileStore, get_action_point
from utils.error_handler import (
    CircularPrerequisiteError,
    ConfigurationError,
    MissingProfileError,
    PointOutOfRegionError,
    UnknownActionError,
)

from conftest import ScriptedPrompt, make_profile, sample_at_rel


class RecordingStepHooks(CalibrationStepHooks):
    def __init__(self):
        self.started = []
        self.finished = []
        self.failed = []

    async def before_step(self, step, state):
        self.started.append(step)

    async def after_step(self, step, state):
        self.finished.append(step.id)

    async def on_step_error(self, step, error, state):
        self.failed.append((step.id, error))


def make_workflow(bridge, settings, samples=None):
    controller = MirrorController(bridge, settings)
    launcher = AppLauncher(controller, settings)
    store = ProfileStore(settings.profile_path)
    prompt = ScriptedPrompt(samples)
    return CalibrationWorkflow(controller, launcher, store, prompt, settings), store, prompt


def definition(action_id, prerequisites=(), skip=False):
    app = action_id.split(":", 1)[0]
    return ActionCalibrationDefinition(
        id=action_id,
        label=action_id,
        for_app=app,
        prerequisites=list(prerequisites),
        skip_in_calibrate_all=skip,
    )


# ========== Ordering ==========

def test_catalog_order_puts_prerequisites_first():
    ids = [d.id for d in order_calibration_definitions()]
    assert len(ids) == len(ACTION_CALIBRATION_DEFINITIONS)
    assert ids.index("chrome:ellipsis") < ids.index("chrome:newIncognitoTab") < ids.index("chrome:searchBar")


def test_order_visits_prerequisites_declared_later():
    ordered = order_calibration_definitions([
        definition("chrome:searchBar", ["chrome:ellipsis"]),
        definition("chrome:ellipsis"),
    ])
    assert [d.id for d in ordered] == ["chrome:ellipsis", "chrome:searchBar"]


def test_order_detects_cycles():
    with pytest.raises(CircularPrerequisiteError):
        order_calibration_definitions([
            definition("chrome:ellipsis", ["chrome:searchBar"]),
            definition("chrome:searchBar", ["chrome:ellipsis"]),
        ])


def test_order_skips_flagged_and_ignores_unknown_prerequisites():
    ordered = order_calibration_definitions([
        definition("chrome:ellipsis", skip=True),
        definition("chrome:searchBar", ["chrome:ellipsis", "chrome:missing"]),
    ])
    assert [d.id for d in ordered] == ["chrome:searchBar"]


# ========== calibrate ==========

def test_calibrate_home_search_writes_profile(bridge, settings):
    workflow, store, prompt = make_workflow(bridge, settings, [sample_at_rel(0.5, 0.91)])

    profile = asyncio.run(workflow.calibrate_home_search())

    assert prompt.labels == [HOME_SEARCH_LABEL]
    assert profile.points.home_search_button.rel_x == pytest.approx(0.5)
    assert profile.points.home_search_button.rel_y == pytest.approx(0.91)
    assert profile.points.launch_result_tap.abs_x == 300
    assert store.load() == profile
    assert settings.content_screenshot_path.exists()
    # nothing is tapped during a plain calibrate
    assert not bridge.of_kind("click")


def test_calibrate_home_search_keeps_existing_action_points(bridge, settings):
    store = ProfileStore(settings.profile_path)
    store.persist(make_profile({"chrome": {"ellipsis": make_profile().points.home_search_button}}))
    workflow, _, _ = make_workflow(bridge, settings, [sample_at_rel(0.5, 0.9)])

    profile = asyncio.run(workflow.calibrate_home_search())

    assert get_action_point(profile, "chrome", "ellipsis") is not None


# ========== calibrate-action ==========

def test_calibrate_action_requires_profile(bridge, settings):
    workflow, _, prompt = make_workflow(bridge, settings, [sample_at_rel(0.9, 0.08)])

    with pytest.raises(MissingProfileError):
        asyncio.run(workflow.calibrate_action("chrome:ellipsis"))
    assert prompt.labels == []


def test_calibrate_action_rejects_unknown_id(bridge, settings):
    workflow, _, _ = make_workflow(bridge, settings)
    with pytest.raises(UnknownActionError):
        asyncio.run(workflow.calibrate_action("chrome:teleport"))


def test_calibrate_action_merges_point_and_backs_up(bridge, settings):
    store = ProfileStore(settings.profile_path)
    store.persist(make_profile())
    workflow, _, _ = make_workflow(bridge, settings, [sample_at_rel(0.9, 0.08)])

    point = asyncio.run(workflow.calibrate_action("chrome:ellipsis"))

    assert point.rel_x == pytest.approx(0.9)
    assert point.rel_y == pytest.approx(0.08)
    saved = get_action_point(store.load(), "chrome", "ellipsis")
    assert saved.rel_x == pytest.approx(0.9)
    assert list(settings.profile_path.parent.glob("base-coordinates.snapshot-*.json"))


def test_out_of_region_sample_is_rejected(bridge, settings):
    store = ProfileStore(settings.profile_path)
    store.persist(make_profile())
    before = settings.profile_path.read_text()
    workflow, _, _ = make_workflow(bridge, settings, [MouseSample(x=50, y=200)])

    with pytest.raises(PointOutOfRegionError) as excinfo:
        asyncio.run(workflow.calibrate_action("chrome:ellipsis"))

    assert "calibrate-action chrome:ellipsis" in excinfo.value.hint
    assert settings.profile_path.read_text() == before


# ========== calibrate-all ==========

def test_calibrate_all_runs_every_step_in_order(bridge, settings):
    definitions = order_calibration_definitions()
    samples = [sample_at_rel(0.5, 0.5) for _ in range(len(definitions) + 1)]
    workflow, store, prompt = make_workflow(bridge, settings, samples)
    hooks = RecordingStepHooks()

    profile = asyncio.run(workflow.calibrate_all(hooks))

    total = 2 * len(definitions) + 4
    assert [step.index for step in hooks.started] == list(range(1, total + 1))
    assert {step.total for step in hooks.started} == {total}
    expected_ids = ["preflight-check", "focus-mirroring", "capture-home-search-button"]
    for d in definitions:
        expected_ids += [f"transition:{d.id}", f"capture:{d.id}"]
    expected_ids.append("persist-profile")
    assert hooks.finished == expected_ids
    assert hooks.failed == []

    assert len(prompt.labels) == len(definitions) + 1
    saved = store.load()
    assert saved == profile
    for d in definitions:
        assert get_action_point(saved, d.app, d.action) is not None
    assert settings.content_screenshot_path.exists()


def test_calibrate_all_transitions_reach_target_contexts(bridge, settings):
    definitions = order_calibration_definitions()
    samples = [sample_at_rel(0.5, 0.5) for _ in range(len(definitions) + 1)]
    workflow, _, _ = make_workflow(bridge, settings, samples)

    asyncio.run(workflow.calibrate_all())

    # the last catalog entries are home icons
    assert workflow.launcher.runtime_context.current_context == "home"
    assert workflow.launcher.runtime_context.current_app == "tiktok"


def test_calibrate_all_reports_failing_step(bridge, settings):
    workflow, store, _ = make_workflow(bridge, settings, [sample_at_rel(0.5, 0.5)])
    bridge.missing = ["cliclick (brew install cliclick)"]
    hooks = RecordingStepHooks()

    with pytest.raises(ConfigurationError) as excinfo:
        asyncio.run(workflow.calibrate_all(hooks))

    assert excinfo.value.code == "MISSING_COMMANDS"
    assert [step_id for step_id, _ in hooks.failed] == ["preflight-check"]
    assert not settings.profile_path.exists()


class ScreenshotWriteFailingHooks(RecordingStepHooks):
    async def after_step(self, step, state):
        if step.id == "focus-mirroring":
            raise OSError("No space left on device")
        await super().after_step(step, state)


def test_calibrate_all_reports_foreign_errors_to_hooks(bridge, settings):
    workflow, _, _ = make_workflow(bridge, settings, [sample_at_rel(0.5, 0.5)])
    hooks = ScreenshotWriteFailingHooks()

    with pytest.raises(OSError):
        asyncio.run(workflow.calibrate_all(hooks))

    assert hooks.finished == ["preflight-check"]
    assert [step_id for step_id, _ in hooks.failed] == ["focus-mirroring"]
    assert isinstance(hooks.failed[0][1], OSError)
