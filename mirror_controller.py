"""
Mirror Autofill - Mirror Controller

Focus-aware interaction with the mirrored phone screen. Every action
re-reads the window bounds and re-verifies that the mirroring host is
frontmost; nothing about the window is cached between steps.
"""

import asyncio
import logging
import math
from pathlib import Path
from typing import List, Optional, Tuple

from geometry import content_region_from, parse_tap_sequence, to_absolute
from mirror_models import BaseCoordinatePoint, Region, WindowBounds
from settings import AutomationSettings
from utils.error_handler import (
    ConfigurationError,
    FocusNotAcquiredError,
    GeometryError,
    MirrorUnavailableError,
)

logger = logging.getLogger(__name__)


def validate_relative_pair(rel_x: float, rel_y: float, label: str) -> None:
    if not (math.isfinite(rel_x) and math.isfinite(rel_y)):
        raise GeometryError(
            f"Relative point for {label} is not finite: ({rel_x}, {rel_y})",
            code="INVALID_RELATIVE_POINT",
            details={"label": label},
        )
    if not (0 <= rel_x <= 1 and 0 <= rel_y <= 1):
        raise GeometryError(
            f"Relative point for {label} is outside 0..1: ({rel_x}, {rel_y})",
            code="INVALID_RELATIVE_POINT",
            details={"label": label, "rel": [rel_x, rel_y]},
        )


class MirrorController:
    """Drives the mirroring window through a host bridge"""

    def __init__(self, bridge, settings: AutomationSettings):
        """
        Args:
            bridge: MirrorBridge (or a test double with the same methods)
            settings: Timing, insets and host process names
        """
        self.bridge = bridge
        self.settings = settings

    async def settle(self, label: str, delay: Optional[float] = None) -> None:
        """Wait after a UI action; a zero delay is logged and skipped"""
        delay = self.settings.step_gap_sec if delay is None else delay
        if delay <= 0:
            logger.debug(f"[MirrorController] No wait after {label}")
            return
        logger.debug(f"[MirrorController] Waiting {delay}s after {label}")
        await asyncio.sleep(delay)

    def preflight(self) -> None:
        """
        Raises:
            ConfigurationError: a required host command is not installed
        """
        missing = self.bridge.missing_commands()
        if missing:
            raise ConfigurationError(
                f"Missing required host commands: {', '.join(missing)}",
                code="MISSING_COMMANDS",
                details={"missing": missing},
                hint="Install cliclick with 'brew install cliclick'; osascript and screencapture ship with macOS.",
            )

    def is_mirror_process(self, name: Optional[str]) -> bool:
        return name in self.settings.host_process_names

    async def frontmost_process(self) -> str:
        return await self.bridge.get_frontmost_process_name()

    # ========== Focus ==========

    async def focus_mirroring(self) -> str:
        """
        Activate the first host app that accepts activation.

        Raises:
            MirrorUnavailableError: no candidate could be activated
        """
        for candidate in self.settings.host_process_names:
            logger.debug(f"[MirrorController] Activating '{candidate}'")
            if await self.bridge.activate_app(candidate):
                return candidate
        raise MirrorUnavailableError(
            "Could not activate a mirroring host application",
            candidates=self.settings.host_process_names,
        )

    async def ensure_mirror_frontmost(self, phase: str) -> bool:
        attempts = self.settings.focus_attempts
        for attempt in range(1, attempts + 1):
            frontmost = await self.frontmost_process()
            logger.debug(f"[MirrorController] ensure_frontmost({phase}) attempt {attempt}/{attempts}: {frontmost}")
            if self.is_mirror_process(frontmost):
                return True
            await self.focus_mirroring()
            await self.settle("frontmost-retry", self.settings.focus_retry_delay_sec)

        frontmost = await self.frontmost_process()
        logger.warning(f"[MirrorController] Mirror not frontmost for {phase} (frontmost: {frontmost})")
        return False

    async def require_frontmost(self, phase: str) -> None:
        if not await self.ensure_mirror_frontmost(phase):
            raise FocusNotAcquiredError(phase, await self.frontmost_process())

    # ========== Geometry ==========

    async def get_mirror_window_bounds(self) -> WindowBounds:
        bounds = await self.bridge.query_window_bounds(self.settings.host_process_names)
        if bounds is None:
            raise MirrorUnavailableError(
                "Could not find a mirrored host window to read bounds from. Try reopening iPhone Mirroring",
                candidates=self.settings.host_process_names,
            )
        return bounds

    async def get_content_region(self, bounds: Optional[WindowBounds] = None) -> Region:
        bounds = bounds or await self.get_mirror_window_bounds()
        return content_region_from(bounds, self.settings.insets, self.settings.coord_scale)

    # ========== Input ==========

    async def send_host_keystroke(
        self,
        key: str,
        modifiers: Optional[List[str]] = None,
        context: str = "keystroke",
    ) -> bool:
        """
        Send a keystroke with focus verified before and after.

        Returns:
            False when focus could not be ensured first or the key event failed

        Raises:
            FocusNotAcquiredError: focus was lost after the keystroke and could not be restored
        """
        label = "+".join([*(modifiers or []), key])
        if not await self.ensure_mirror_frontmost(context):
            logger.info(f"[MirrorController] Keystroke {label} ({context}) skipped: mirror not frontmost")
            return False

        if not await self.bridge.send_keystroke(key, modifiers or []):
            logger.info(f"[MirrorController] Keystroke {label} ({context}) failed to dispatch")
            return False

        if not await self.ensure_mirror_frontmost(f"{context}:post"):
            logger.info(f"[MirrorController] Focus lost after {label}, re-focusing host")
            await self.focus_mirroring()
            await self.settle("focus-restore", self.settings.focus_retry_delay_sec)
            await self.settle("post-keystroke-focus-restore")
            if not await self.ensure_mirror_frontmost(f"{context}:post-retry"):
                raise FocusNotAcquiredError(f"{context}:post-retry", await self.frontmost_process())

        logger.debug(f"[MirrorController] Sent {label} ({context})")
        return True

    async def click_rel(self, rel_x: float, rel_y: float, label: str = "click") -> Tuple[int, int]:
        """Click a fractional point of the content region; returns the absolute pixel"""
        await self.require_frontmost(f"click-{label}")
        validate_relative_pair(rel_x, rel_y, label)
        region = await self.get_content_region()
        abs_x, abs_y = to_absolute((rel_x, rel_y), region)
        logger.debug(f"[MirrorController] {label}: rel ({rel_x:.4f}, {rel_y:.4f}) -> abs ({abs_x}, {abs_y})")
        await self.bridge.click_at(abs_x, abs_y)
        return abs_x, abs_y

    async def tap_point(self, point: BaseCoordinatePoint, label: str) -> Tuple[int, int]:
        return await self.click_rel(point.rel_x, point.rel_y, label)

    async def drag_rel(
        self,
        start: Tuple[float, float],
        end: Tuple[float, float],
        label: str = "drag",
    ) -> None:
        await self.require_frontmost(f"drag-{label}")
        validate_relative_pair(start[0], start[1], f"{label}-start")
        validate_relative_pair(end[0], end[1], f"{label}-end")
        region = await self.get_content_region()
        start_x, start_y = to_absolute(start, region)
        end_x, end_y = to_absolute(end, region)
        logger.debug(f"[MirrorController] {label}: ({start_x},{start_y}) -> ({end_x},{end_y})")
        await self.bridge.drag_from(start_x, start_y, end_x, end_y)

    async def tap_sequence(self, raw: str, label: str = "tap sequence") -> None:
        steps = parse_tap_sequence(raw, label)
        await self.require_frontmost("tap-sequence")
        for index, (rel_x, rel_y) in enumerate(steps, start=1):
            await self.click_rel(rel_x, rel_y, f"{label} step {index}")
            await self.settle("tap-sequence-step")

    async def clear_field(self) -> None:
        await self.require_frontmost("clear-field")

        if self.settings.clear_mode == "select_all":
            if await self.send_host_keystroke("a", ["command"], "select_all"):
                await self.bridge.press_key("delete")
                return
            logger.info("[MirrorController] Select-all failed, falling back to backspaces")

        for _ in range(self.settings.clear_backspaces):
            await self.bridge.press_key("delete")

    async def type_text(self, text: str, char_delay: Optional[float] = None) -> None:
        delay = self.settings.char_delay_sec if char_delay is None else char_delay
        await self.require_frontmost("type-text")
        for character in text:
            await self.bridge.type_character(character)
            if delay > 0:
                await asyncio.sleep(delay)

    # ========== Screenshots ==========

    async def screenshot_content(self, out_path: Path) -> Path:
        region = await self.get_content_region()
        await self.bridge.capture_region(region, Path(out_path))
        logger.debug(f"[MirrorController] Saved screenshot {out_path}")
        return Path(out_path)
