"""
Shared fixtures: an in-memory host bridge and zero-delay settings.
"""

from collections import deque
from pathlib import Path
from typing import List, Optional

import pytest

from app_catalog import MIRROR_APP_NAME, make_base_point_from_rel
from mirror_models import MouseSample, Region, WindowBounds
from profile_store import build_profile
from settings import AutomationSettings
from utils.error_handler import OperatorCanceledError

EXAMPLE_BOUNDS = WindowBounds(x1=100, y1=100, x2=500, y2=700)
EXAMPLE_REGION = Region(x=110, y=148, width=380, height=542)


class FakeBridge:
    """
    Records every host action. Frontmost process, keystroke results and
    mouse samples can be scripted per test.
    """

    def __init__(self, bounds: Optional[WindowBounds] = EXAMPLE_BOUNDS):
        self.bounds = bounds
        self.frontmost = MIRROR_APP_NAME
        self.frontmost_script = deque()
        self.missing: List[str] = []
        self.keystroke_results = {}
        self.mouse_samples = deque()
        self.mouse_queries = 0
        self.actions = []

    @staticmethod
    def _label(key, modifiers):
        return "+".join([*(modifiers or []), key])

    def missing_commands(self) -> List[str]:
        return list(self.missing)

    async def get_frontmost_process_name(self) -> str:
        if self.frontmost_script:
            return self.frontmost_script.popleft()
        return self.frontmost

    async def activate_app(self, name: str) -> bool:
        self.actions.append(("activate", name))
        return True

    async def query_window_bounds(self, candidates):
        return self.bounds

    async def query_frontmost_window_bounds(self):
        return self.frontmost, self.bounds

    async def query_mouse_location(self) -> MouseSample:
        self.mouse_queries += 1
        if self.mouse_samples:
            return self.mouse_samples.popleft()
        return MouseSample(x=300, y=419, source="fake", raw="300, 419")

    async def send_keystroke(self, key, modifiers=None) -> bool:
        label = self._label(key, modifiers)
        self.actions.append(("key", label))
        return self.keystroke_results.get(label, True)

    async def click_at(self, x, y):
        self.actions.append(("click", x, y))

    async def drag_from(self, x, y, to_x, to_y):
        self.actions.append(("drag", x, y, to_x, to_y))

    async def type_character(self, character):
        self.actions.append(("type", character))

    async def press_key(self, name):
        self.actions.append(("press", name))

    async def capture_region(self, region, out_path):
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_bytes(b"")
        self.actions.append(("screenshot", out_path.name))
        return region.width, region.height

    def of_kind(self, kind):
        return [action for action in self.actions if action[0] == kind]


class ScriptedPrompt:
    """Stands in for CalibrationPrompt; answers with queued mouse samples"""

    def __init__(self, samples=None):
        self.samples = deque(samples or [])
        self.labels = []

    async def capture(self, label, region, instructions=None):
        self.labels.append(label)
        if not self.samples:
            raise OperatorCanceledError()
        return self.samples.popleft()


class ScriptedLineReader:
    """Returns queued answers; running out behaves like a closed terminal"""

    def __init__(self, answers=None):
        self.answers = deque(answers or [])
        self.reads = 0

    async def readline(self) -> str:
        self.reads += 1
        if not self.answers:
            raise OperatorCanceledError("Calibration input closed")
        return self.answers.popleft()


def sample_at_rel(rel_x: float, rel_y: float, region: Region = EXAMPLE_REGION) -> MouseSample:
    x = region.x + region.width * rel_x
    y = region.y + region.height * rel_y
    return MouseSample(x=x, y=y, source="fake", raw=f"{x}, {y}")


def make_profile(action_points=None):
    return build_profile(
        mirror_window=EXAMPLE_BOUNDS,
        content_region=EXAMPLE_REGION,
        home_search_button=make_base_point_from_rel((0.5, 0.91)),
        app_action_points=action_points,
    )


@pytest.fixture
def bridge():
    return FakeBridge()


@pytest.fixture
def settings(tmp_path):
    return AutomationSettings(
        pre_action_delay_sec=0,
        step_gap_sec=0,
        fast_step_gap_sec=0,
        char_delay_sec=0,
        retry_backoff_sec=0,
        focus_retry_delay_sec=0,
        touch_id_wait_sec=0,
        preview_interval_ms=1,
        focus_attempts=2,
        profile_path=tmp_path / "calibration" / "base-coordinates.json",
        checkpoint_dir=tmp_path / "calibration" / "debug-checkpoints",
        report_dir=tmp_path / "calibration" / "debug-reports",
        content_screenshot_path=tmp_path / "calibration" / "iphone_content.png",
    )
