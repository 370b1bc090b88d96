"""
Mirror Autofill - Host Automation Bridge

macOS implementation of the host capabilities the automation needs:
window bounds and frontmost-process queries (System Events via osascript),
pointer and keyboard synthesis (cliclick, osascript) and region screenshots
(screencapture). Every command runs in a worker thread so the event loop
stays responsive.
"""

import asyncio
import logging
import re
import shutil
import subprocess
from pathlib import Path
from typing import List, NamedTuple, Optional, Tuple

from PIL import Image

from geometry import is_numeric_bounds_payload, parse_bounds_tuple
from mirror_models import MouseSample, Region, WindowBounds
from utils.error_handler import (
    ErrorContext,
    HostCommandError,
    InvalidBoundsError,
)

logger = logging.getLogger(__name__)

REQUIRED_COMMANDS = {
    "osascript": "This command is built into macOS.",
    "cliclick": "brew install cliclick",
    "screencapture": "This command is built into macOS.",
}

BOUNDS_SENTINELS = ("NOAPP", "NOWINDOW", "NOBOUNDS")

MODIFIER_STATEMENTS = {
    "command": "command down",
    "cmd": "command down",
    "control": "control down",
    "ctrl": "control down",
    "option": "option down",
    "alt": "option down",
    "shift": "shift down",
}

# Keys sent as raw key codes instead of keystroke text
KEY_CODES = {
    "return": 36,
    "enter": 36,
    "delete": 51,
    "escape": 53,
}

MOUSE_PATTERNS = [
    re.compile(r"^\s*\{?\s*([+-]?\d+(?:\.\d+)?)\s*,\s*([+-]?\d+(?:\.\d+)?)\s*\}?\s*$"),
    re.compile(r"x:\s*([+-]?\d+(?:\.\d+)?)\s*,\s*y:\s*([+-]?\d+(?:\.\d+)?)", re.IGNORECASE),
]

FRONTMOST_SCRIPT = """
tell application "System Events"
  try
    return (name of first process whose frontmost is true as text)
  on error
    return "unknown"
  end try
end tell
""".strip()

MOUSE_SCRIPT = """
tell application "System Events"
  set mouseXY to mouse location
  return mouseXY
end tell
""".strip()

# Same lookup chain for a named process and for whatever is frontmost
BOUNDS_LOOKUP = """
    try
      set b to bounds of front window{of}
      return {prefix}"MODE=front-bounds|" & (item 1 of b as text) & "," & (item 2 of b as text) & "," & (item 3 of b as text) & "," & (item 4 of b as text)
    on error
      try
        set pxy to position of front window{of}
        set sz to size of front window{of}
        return {prefix}"MODE=front-possize|" & (item 1 of pxy as text) & "," & (item 2 of pxy as text) & "," & (item 1 of pxy + item 1 of sz as text) & "," & (item 2 of pxy + item 2 of sz as text)
      on error
        return "NOBOUNDS"
      end try
    end try
"""


def parse_mouse_location(raw: str) -> Tuple[float, float]:
    """Parse "{x, y}", "x, y" or "x: 1, y: 2" pointer output"""
    for pattern in MOUSE_PATTERNS:
        match = pattern.search(raw)
        if match:
            return float(match.group(1)), float(match.group(2))
    raise ValueError(f"Unable to parse mouse coordinates from {raw!r}")


def escape_cliclick_text(value: str) -> str:
    return value.replace("\\", "\\\\").replace(",", "\\,").replace(":", "\\:")


def escape_applescript(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def split_bounds_payload(payload: str) -> Tuple[str, str]:
    """Split "MODE=<mode>|x1,y1,x2,y2" into (mode, bounds)"""
    if "MODE=" not in payload:
        return "", payload
    mode_and_bounds = payload[payload.index("MODE=") + len("MODE="):]
    mode, _, bounds = mode_and_bounds.partition("|")
    return mode, bounds


class CommandResult(NamedTuple):
    exit_code: int
    output: str


class MirrorBridge:
    """
    Runs host automation commands.

    Queries return sentinel-free Python values (None when a window or
    process is missing); commands that fail raise HostCommandError with
    the tool's own output attached.
    """

    def __init__(self, command_timeout: float = 15.0):
        self.command_timeout = command_timeout

    @staticmethod
    def missing_commands() -> List[str]:
        """Required host tools that are not on PATH, each with an install hint"""
        return [
            f"{command} ({hint})"
            for command, hint in REQUIRED_COMMANDS.items()
            if shutil.which(command) is None
        ]

    async def _run(self, command: str, *args: str) -> CommandResult:
        def _execute():
            return subprocess.run(
                [command, *args],
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
            )

        try:
            result = await asyncio.to_thread(_execute)
        except subprocess.TimeoutExpired as e:
            raise HostCommandError(f"{command} timed out after {self.command_timeout}s", command=command) from e
        except FileNotFoundError as e:
            raise HostCommandError(f"{command} is not installed", command=command) from e

        output = f"{result.stdout or ''}{result.stderr or ''}"
        return CommandResult(result.returncode, output)

    async def run_osa(self, script: str) -> str:
        result = await self._run("osascript", "-e", script)
        if result.exit_code != 0:
            logger.debug(f"[MirrorBridge] osascript output: {result.output.strip()}")
            raise HostCommandError(
                "AppleScript call failed. Ensure Accessibility and Automation permissions include your terminal app",
                command="osascript",
                output=result.output,
            )
        return result.output.strip()

    async def run_cliclick(self, *payload: str) -> None:
        result = await self._run("cliclick", *payload)
        if result.exit_code != 0:
            raise HostCommandError(
                f"cliclick command failed for {' '.join(payload)!r}",
                command="cliclick",
                output=result.output,
            )

    # ========== Window and process queries ==========

    async def get_frontmost_process_name(self) -> str:
        try:
            return await self.run_osa(FRONTMOST_SCRIPT)
        except HostCommandError as e:
            logger.debug(f"[MirrorBridge] Frontmost query failed: {e.message}")
            return "unknown"

    async def activate_app(self, name: str) -> bool:
        result = await self._run("osascript", "-e", f'tell application "{escape_applescript(name)}" to activate')
        if result.exit_code != 0:
            logger.debug(f"[MirrorBridge] Activating '{name}' failed: {result.output.strip()}")
        return result.exit_code == 0

    async def query_process_bounds(self, process_name: str) -> Optional[WindowBounds]:
        name = escape_applescript(process_name)
        script = "\n".join([
            'tell application "System Events"',
            f'  if not (exists application process "{name}") then',
            '    return "NOAPP"',
            '  end if',
            f'  tell application process "{name}"',
            '    if (count of windows) is 0 then',
            '      return "NOWINDOW"',
            '    end if',
            BOUNDS_LOOKUP.format(of="", prefix=""),
            '  end tell',
            'end tell',
        ])
        out = await self.run_osa(script)
        logger.debug(f"[MirrorBridge] Bounds query for '{process_name}': {out}")
        if out in BOUNDS_SENTINELS:
            return None

        mode, payload = split_bounds_payload(out)
        if not is_numeric_bounds_payload(payload):
            logger.debug(f"[MirrorBridge] Non-numeric bounds payload from '{process_name}': {out}")
            return None
        logger.debug(f"[MirrorBridge] '{process_name}' bounds via {mode or 'direct'}: {payload}")
        return parse_bounds_tuple(payload)

    async def query_frontmost_window_bounds(self) -> Tuple[Optional[str], Optional[WindowBounds]]:
        """(frontmost process name, its front window bounds) with None for unknowns"""
        script = "\n".join([
            'tell application "System Events"',
            '  set frontProc to (first process whose frontmost is true)',
            '  set frontName to (name of frontProc as text)',
            '  if (count of windows of frontProc) is 0 then',
            '    return "NOWINDOW"',
            '  end if',
            BOUNDS_LOOKUP.format(of=" of frontProc", prefix='"FRONT=" & frontName & "|" & '),
            'end tell',
        ])
        out = await self.run_osa(script)
        if not out.startswith("FRONT="):
            return None, None

        front, _, rest = out[len("FRONT="):].partition("|")
        mode, payload = split_bounds_payload(rest)
        if not is_numeric_bounds_payload(payload):
            return front, None
        logger.debug(f"[MirrorBridge] Frontmost '{front}' bounds via {mode}: {payload}")
        return front, parse_bounds_tuple(payload)

    async def query_window_bounds(self, candidates: List[str]) -> Optional[WindowBounds]:
        """
        Bounds of the first candidate host with a readable window.

        Falls back to the frontmost window when no candidate answers.
        Returns None when nothing usable was found.
        """
        for candidate in candidates:
            try:
                bounds = await self.query_process_bounds(candidate)
            except (HostCommandError, InvalidBoundsError) as e:
                logger.debug(f"[MirrorBridge] Skipping '{candidate}' during host scan: {e.message}")
                continue
            if bounds is not None:
                return bounds

        logger.debug("[MirrorBridge] Configured hosts unusable, checking frontmost window")
        try:
            front, bounds = await self.query_frontmost_window_bounds()
        except (HostCommandError, InvalidBoundsError) as e:
            logger.debug(f"[MirrorBridge] Frontmost window probe failed: {e.message}")
            return None
        if bounds is not None:
            logger.info(f"[MirrorBridge] Using frontmost window of '{front}' as mirror host")
        return bounds

    async def query_mouse_location(self) -> MouseSample:
        try:
            raw = await self.run_osa(MOUSE_SCRIPT)
            x, y = parse_mouse_location(raw)
            return MouseSample(x=x, y=y, source="osascript", raw=raw)
        except (HostCommandError, ValueError) as e:
            logger.debug(f"[MirrorBridge] osascript mouse location failed, trying cliclick: {e}")

        result = await self._run("cliclick", "p")
        if result.exit_code != 0:
            raise HostCommandError(
                "Unable to read mouse location. Ensure Accessibility permissions are enabled for your terminal",
                command="cliclick",
                output=result.output,
            )
        raw = result.output.strip()
        try:
            x, y = parse_mouse_location(raw)
        except ValueError as e:
            raise HostCommandError(str(e), command="cliclick", output=raw) from e
        return MouseSample(x=x, y=y, source="cliclick", raw=raw)

    # ========== Input synthesis ==========

    async def send_keystroke(self, key: str, modifiers: Optional[List[str]] = None) -> bool:
        """
        Send one keystroke to the frontmost app.

        Returns:
            False when the key event could not be dispatched

        Raises:
            ValueError: unsupported modifier, or modifiers combined with a key code key
        """
        modifiers = modifiers or []
        statements = []
        for token in modifiers:
            statement = MODIFIER_STATEMENTS.get(token.strip().lower())
            if statement is None:
                raise ValueError(f"Unsupported modifier token '{token}'")
            statements.append(statement)

        normalized = key.strip().lower()
        if normalized in KEY_CODES:
            if statements:
                raise ValueError(f"Modifiers are not supported for the {normalized} key")
            script = f'tell application "System Events" to key code {KEY_CODES[normalized]}'
        elif statements:
            script = (
                f'tell application "System Events" to keystroke "{escape_applescript(key)}" '
                f'using {{{", ".join(statements)}}}'
            )
        else:
            script = f'tell application "System Events" to keystroke "{escape_applescript(key)}"'

        try:
            await self.run_osa(script)
        except HostCommandError as e:
            logger.debug(f"[MirrorBridge] Key event failed: {e.message}")
            return False
        return True

    async def click_at(self, x: int, y: int) -> None:
        logger.debug(f"[MirrorBridge] Click at ({x}, {y})")
        await self.run_cliclick(f"c:{x},{y}")

    async def drag_from(self, x: int, y: int, to_x: int, to_y: int) -> None:
        logger.debug(f"[MirrorBridge] Drag ({x},{y}) -> ({to_x},{to_y})")
        await self.run_cliclick(f"dd:{x},{y}", f"m:{to_x},{to_y}", f"du:{to_x},{to_y}")

    async def type_character(self, character: str) -> None:
        await self.run_cliclick(f"t:{escape_cliclick_text(character)}")

    async def press_key(self, name: str) -> None:
        await self.run_cliclick(f"kp:{name}")

    # ========== Screenshots ==========

    async def capture_region(self, region: Region, out_path: Path) -> Tuple[int, int]:
        """
        Screenshot a screen region to a PNG file.

        Returns:
            (width, height) of the written image
        """
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        result = await self._run(
            "screencapture", "-x", "-R",
            f"{region.x},{region.y},{region.width},{region.height}",
            str(out_path),
        )
        if result.exit_code != 0 or not out_path.exists():
            raise HostCommandError(
                f"Failed to write screenshot '{out_path}'",
                command="screencapture",
                output=result.output,
            )

        with ErrorContext(f"reading screenshot {out_path}", raise_as=HostCommandError):
            with Image.open(out_path) as image:
                size = image.size
                image.verify()

        logger.debug(f"[MirrorBridge] Screenshot {out_path.name} ({size[0]}x{size[1]})")
        return size
