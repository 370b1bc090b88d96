"""
Mirror Autofill - Settings

Runtime configuration read from environment variables. Invalid values fall
back to the defaults with a warning instead of aborting the run.
"""

import logging
import math
import os
import re
from pathlib import Path
from typing import List, Mapping, Optional

from pydantic import BaseModel, Field

from app_catalog import HOST_PROCESS_NAMES
from mirror_models import Insets

logger = logging.getLogger(__name__)

TRUE_VALUES = {"1", "true", "yes", "on", "enabled"}
FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
CLEAR_MODE_PATTERN = re.compile(r"^(select_all|backspace(:\d+)?)$")

DEFAULT_PROFILE_PATH = "./calibration/base-coordinates.json"
DEFAULT_CHECKPOINT_DIR = "./calibration/debug-checkpoints"
DEFAULT_REPORT_DIR = "./calibration/debug-reports"
DEFAULT_CONTENT_SCREENSHOT = "./calibration/iphone_content.png"


def parse_bool(raw: Optional[str], default: bool, name: str = "") -> bool:
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    logger.warning(f"[Settings] Ignoring invalid boolean {name}={raw!r}, using {default}")
    return default


def parse_seconds(raw: Optional[str], default: float, name: str = "") -> float:
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"[Settings] Ignoring invalid number {name}={raw!r}, using {default}")
        return default
    if value < 0 or not math.isfinite(value):
        logger.warning(f"[Settings] Ignoring non-finite or negative {name}={raw!r}, using {default}")
        return default
    return value


class AutomationSettings(BaseModel):
    """All tunables for one run"""
    host_process_names: List[str] = Field(default_factory=lambda: list(HOST_PROCESS_NAMES))
    insets: Insets = Field(default_factory=Insets)
    coord_scale: int = Field(1, ge=1)

    # Timing (seconds)
    pre_action_delay_sec: float = Field(4.0, ge=0)
    step_gap_sec: float = Field(4.0, ge=0)
    fast_step_gap_sec: float = Field(0.7, ge=0)
    char_delay_sec: float = Field(4.0, ge=0)
    retry_backoff_sec: float = Field(0.5, ge=0)
    focus_retry_delay_sec: float = Field(0.15, ge=0)
    touch_id_wait_sec: float = Field(25.0, ge=0)
    preview_interval_ms: int = Field(150, gt=0)

    # Behaviour
    use_mirror_shortcuts: bool = True
    clear_mode: str = Field("select_all", pattern=r"^(select_all|backspace(:\d+)?)$")
    backspace_count: int = Field(40, ge=1)
    focus_attempts: int = Field(6, ge=1)
    transient_retries: int = Field(2, ge=0)
    verbose: bool = False

    # Paths
    profile_path: Path = Path(DEFAULT_PROFILE_PATH)
    checkpoint_dir: Path = Path(DEFAULT_CHECKPOINT_DIR)
    report_dir: Path = Path(DEFAULT_REPORT_DIR)
    content_screenshot_path: Path = Path(DEFAULT_CONTENT_SCREENSHOT)

    @property
    def clear_backspaces(self) -> int:
        """Backspace count for the clear-field fallback"""
        if self.clear_mode.startswith("backspace:"):
            return int(self.clear_mode.split(":", 1)[1])
        return self.backspace_count

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AutomationSettings":
        env = os.environ if environ is None else environ
        defaults = cls()

        clear_mode = (env.get("CAPTURE_CLEAR_MODE") or defaults.clear_mode).strip().lower()
        if not CLEAR_MODE_PATTERN.match(clear_mode):
            logger.warning(f"[Settings] Unknown CAPTURE_CLEAR_MODE={clear_mode!r}, using select_all")
            clear_mode = "select_all"

        return cls(
            verbose=parse_bool(env.get("PRINT_WINDOW_DEBUG"), False, "PRINT_WINDOW_DEBUG"),
            pre_action_delay_sec=parse_seconds(
                env.get("CAPTURE_PRE_ACTION_DELAY_SEC"), defaults.pre_action_delay_sec,
                "CAPTURE_PRE_ACTION_DELAY_SEC"),
            step_gap_sec=parse_seconds(
                env.get("CAPTURE_STEP_GAP_SEC"), defaults.step_gap_sec, "CAPTURE_STEP_GAP_SEC"),
            fast_step_gap_sec=parse_seconds(
                env.get("CAPTURE_FAST_STEP_GAP_SEC"), defaults.fast_step_gap_sec,
                "CAPTURE_FAST_STEP_GAP_SEC"),
            char_delay_sec=parse_seconds(
                env.get("CAPTURE_CHAR_DELAY_SEC"), defaults.char_delay_sec, "CAPTURE_CHAR_DELAY_SEC"),
            use_mirror_shortcuts=parse_bool(
                env.get("CAPTURE_USE_MIRROR_SHORTCUTS"), defaults.use_mirror_shortcuts,
                "CAPTURE_USE_MIRROR_SHORTCUTS"),
            clear_mode=clear_mode,
            profile_path=Path(env.get("CAPTURE_PROFILE_PATH") or DEFAULT_PROFILE_PATH),
        )

