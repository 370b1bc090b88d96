"""
Mirror Autofill - Command Line Interface

Usage:
    mirror-autofill capture --query "best pizza" --apps chrome,instagram [--out DIR]
    mirror-autofill print-window
    mirror-autofill calibrate
    mirror-autofill calibrate-action chrome:ellipsis
    mirror-autofill calibrate-all
    mirror-autofill debug-calibrate-all
    mirror-autofill coord-to-rel X Y
    mirror-autofill point-check RX RY

Exit codes: 0 success, 1 error, 130 canceled by the operator.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from app_catalog import ACTION_DEFINITIONS_BY_ID
from app_launcher import AppLauncher
from calibration_debugger import CheckpointDriver, require_interactive_terminal
from calibration_prompt import CalibrationPrompt
from calibration_workflow import CalibrationWorkflow
from capture_flow import CaptureFlow, parse_apps
from geometry import to_absolute, to_relative
from mirror_bridge import MirrorBridge
from mirror_controller import MirrorController, validate_relative_pair
from mirror_models import SUPPORTED_APPS
from profile_store import ProfileStore
from settings import AutomationSettings
from utils.error_handler import (
    MirrorAutomationError,
    OperatorCanceledError,
    get_user_friendly_message,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELED = 130


class AutomationSession:
    """Wires one run's components together"""

    def __init__(self, settings: AutomationSettings, bridge=None):
        self.settings = settings
        self.bridge = bridge or MirrorBridge()
        self.controller = MirrorController(self.bridge, settings)
        self.store = ProfileStore(settings.profile_path)
        self.launcher = AppLauncher(self.controller, settings)

    def workflow(self) -> CalibrationWorkflow:
        prompt = CalibrationPrompt(self.bridge, self.settings)
        return CalibrationWorkflow(self.controller, self.launcher, self.store, prompt, self.settings)

    def capture_flow(self) -> CaptureFlow:
        return CaptureFlow(self.controller, self.launcher, self.store, self.settings)


# ========== Commands ==========

async def cmd_capture(session: AutomationSession, args) -> None:
    out_dir = await session.capture_flow().run_capture(args.query, parse_apps(args.apps), args.out)
    print(f"Done. Output: {out_dir}")


async def cmd_print_window(session: AutomationSession, args) -> None:
    session.controller.preflight()
    await session.controller.focus_mirroring()
    bounds = await session.controller.get_mirror_window_bounds()
    region = await session.controller.get_content_region(bounds)
    logger.info("[CLI] Computed window/content bounds successfully for diagnostics")
    print(f"window: {bounds.x1},{bounds.y1},{bounds.x2},{bounds.y2}")
    print(f"content: {region.x} {region.y} {region.width} {region.height}")


async def cmd_calibrate(session: AutomationSession, args) -> None:
    await session.workflow().calibrate_home_search()


async def cmd_calibrate_action(session: AutomationSession, args) -> None:
    point = await session.workflow().calibrate_action(args.key)
    print(f"rel={point.rel_x:.6f},{point.rel_y:.6f}")


async def cmd_calibrate_all(session: AutomationSession, args) -> None:
    await session.workflow().calibrate_all()


async def cmd_debug_calibrate_all(session: AutomationSession, args) -> None:
    require_interactive_terminal()
    driver = CheckpointDriver(session.controller, session.settings)
    await driver.run(session.workflow())


async def cmd_coord_to_rel(session: AutomationSession, args) -> None:
    session.controller.preflight()
    region = await session.controller.get_content_region()
    rel_x, rel_y = to_relative((args.x, args.y), region)
    print(f"{rel_x:.6f} {rel_y:.6f}")


async def cmd_point_check(session: AutomationSession, args) -> None:
    session.controller.preflight()
    validate_relative_pair(args.rx, args.ry, "point-check")
    region = await session.controller.get_content_region()
    abs_x, abs_y = to_absolute((args.rx, args.ry), region)
    print(f"rel ({args.rx:g}, {args.ry:g}) => abs ({abs_x}, {abs_y})")


COMMANDS = {
    "capture": cmd_capture,
    "print-window": cmd_print_window,
    "calibrate": cmd_calibrate,
    "calibrate-action": cmd_calibrate_action,
    "calibrate-all": cmd_calibrate_all,
    "debug-calibrate-all": cmd_debug_calibrate_all,
    "coord-to-rel": cmd_coord_to_rel,
    "point-check": cmd_point_check,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mirror-autofill",
        description="Capture per-keystroke autocomplete screenshots through iPhone Mirroring",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    capture = sub.add_parser("capture", help="Type a query into each app and screenshot every keystroke")
    capture.add_argument("--query", required=True, help="Text to type")
    capture.add_argument("--apps", required=True, help="Comma-separated apps: " + ",".join(SUPPORTED_APPS))
    capture.add_argument("--out", type=Path, default=None, help="Output directory (default ./autofill_shots_<timestamp>)")

    sub.add_parser("print-window", help="Print the mirror window and content region")
    sub.add_parser("calibrate", help="Capture the Home Screen Search button")

    calibrate_action = sub.add_parser("calibrate-action", help="Capture one action point")
    calibrate_action.add_argument("key", help="Action id, one of: " + ", ".join(ACTION_DEFINITIONS_BY_ID))

    sub.add_parser("calibrate-all", help="Capture every action point in order")
    sub.add_parser("debug-calibrate-all", help="calibrate-all with operator checkpoints")

    coord = sub.add_parser("coord-to-rel", help="Convert a screen point to content fractions")
    coord.add_argument("x", type=float)
    coord.add_argument("y", type=float)

    point = sub.add_parser("point-check", help="Convert content fractions to a screen point")
    point.add_argument("rx", type=float)
    point.add_argument("ry", type=float)
    return parser


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='[%(asctime)s] %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def run(argv: Optional[List[str]] = None, session: Optional[AutomationSession] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = AutomationSettings.from_env()
    if args.verbose:
        settings.verbose = True
    configure_logging(settings.verbose)

    session = session or AutomationSession(settings)
    try:
        asyncio.run(COMMANDS[args.command](session, args))
    except (OperatorCanceledError, KeyboardInterrupt):
        print("Canceled by user.", file=sys.stderr)
        return EXIT_CANCELED
    except MirrorAutomationError as e:
        logger.debug(f"[CLI] {args.command} failed", exc_info=True)
        print(f"error: {get_user_friendly_message(e)}", file=sys.stderr)
        return EXIT_ERROR
    return EXIT_OK


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
