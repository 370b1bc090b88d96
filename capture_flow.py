"""
Mirror Autofill - Capture Flow

For each requested app: open it, reach its search field, clear it, then
type the query one character at a time and screenshot the content region
after every keystroke so the autocomplete suggestions can be compared.

Output layout:
    <out>/<app>/<app>_00_empty_<slug>.png
    <out>/<app>/<app>_01_<slug>.png ... one per typed character
"""

import asyncio
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from app_catalog import get_app_flow
from app_launcher import AppLauncher
from mirror_controller import MirrorController
from mirror_models import SUPPORTED_APPS
from profile_store import ProfileStore
from settings import AutomationSettings
from utils.error_handler import ConfigurationError

logger = logging.getLogger(__name__)


def slugify_query(raw: str) -> str:
    """Filename-safe form of the query; "query" when nothing survives"""
    slug = re.sub(r"[^a-z0-9]+", "_", raw.lower()).strip("_")
    return slug or "query"


def default_output_dir(now: Optional[datetime] = None) -> Path:
    return Path(f"./autofill_shots_{(now or datetime.now()).strftime('%Y%m%d_%H%M%S')}")


def screenshot_name(app: str, prefix: str, slug: str) -> str:
    return f"{app}_{prefix}_{slug}.png"


def parse_apps(raw: str) -> List[str]:
    """Split a comma-separated --apps value; blanks are dropped"""
    return [app.strip().lower() for app in raw.split(",") if app.strip()]


def validate_capture_request(query: str, apps: Sequence[str]) -> None:
    """
    Raises:
        ConfigurationError: empty query, no apps, or an unsupported app
    """
    if not query:
        raise ConfigurationError("Query must not be empty", code="INVALID_QUERY", hint="Pass --query \"text\".")
    if not apps:
        raise ConfigurationError(
            "Missing --apps",
            code="MISSING_APPS",
            hint="Pass --apps with any of: " + ",".join(SUPPORTED_APPS),
        )
    for app in apps:
        get_app_flow(app)


class CaptureFlow:
    """Per-keystroke autocomplete screenshots across apps"""

    def __init__(
        self,
        controller: MirrorController,
        launcher: AppLauncher,
        store: ProfileStore,
        settings: AutomationSettings,
    ):
        self.controller = controller
        self.launcher = launcher
        self.store = store
        self.settings = settings

    async def run_capture(self, query: str, apps: Sequence[str], out_dir: Optional[Path] = None) -> Path:
        """
        Capture every app in order.

        Every app's required calibration is checked before the first UI
        action so a missing point never leaves the phone half-navigated.

        Returns:
            The output directory

        Raises:
            ConfigurationError: bad request, missing profile or missing action points
            LaunchExhaustedError: an app could not be opened
        """
        self.controller.preflight()
        validate_capture_request(query, apps)

        profile = self.store.load()
        self.launcher.use_profile(profile)
        for app in apps:
            self.launcher.ensure_required_calibration(app)

        base_dir = Path(out_dir) if out_dir else default_output_dir()
        base_dir.mkdir(parents=True, exist_ok=True)
        slug = slugify_query(query)

        logger.info(f"[CaptureFlow] Effective CAPTURE_PRE_ACTION_DELAY_SEC={self.settings.pre_action_delay_sec}")
        logger.info(f"[CaptureFlow] Effective CAPTURE_STEP_GAP_SEC={self.settings.step_gap_sec}")
        logger.info(f"[CaptureFlow] Effective CAPTURE_FAST_STEP_GAP_SEC={self.settings.fast_step_gap_sec}")
        logger.info(f"[CaptureFlow] Effective CAPTURE_USE_MIRROR_SHORTCUTS={self.settings.use_mirror_shortcuts}")

        if self.settings.pre_action_delay_sec > 0:
            logger.info(
                f"[CaptureFlow] Waiting {self.settings.pre_action_delay_sec}s for mirroring to settle before actions"
            )
            await asyncio.sleep(self.settings.pre_action_delay_sec)

        for app in apps:
            await self.run_app(app, query, base_dir / app, slug)

        logger.info(f"[CaptureFlow] Done. Output: {base_dir}")
        return base_dir

    async def run_app(self, app: str, query: str, app_dir: Path, slug: str) -> List[Path]:
        logger.info(f"[CaptureFlow] Starting app flow for {app} (query={query!r})")
        await self.controller.focus_mirroring()
        await self.controller.settle("focus-mirroring-init", self.settings.fast_step_gap_sec)
        await self.controller.require_frontmost(f"run-app-{app}")

        await self.launcher.open_app_with_fallback(app)
        await self.launcher.run_post_launch_actions(app)
        await self.launcher.run_search_placement(app)
        await self.controller.clear_field()
        return await self.type_and_capture(app, query, app_dir, slug)

    async def type_and_capture(self, app: str, query: str, app_dir: Path, slug: str) -> List[Path]:
        app_dir.mkdir(parents=True, exist_ok=True)
        shots = [await self.controller.screenshot_content(app_dir / screenshot_name(app, "00_empty", slug))]

        for index, character in enumerate(query, start=1):
            await self.controller.type_text(character)
            shots.append(await self.controller.screenshot_content(app_dir / screenshot_name(app, f"{index:02d}", slug)))

        logger.info(f"[CaptureFlow] {app}: saved {len(shots)} screenshots to {app_dir}")
        return shots
