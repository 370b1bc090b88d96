"""
Mirror Autofill - Calibration Prompt

Interactive point capture. While the operator hovers the target, a polling
task samples the mouse and redraws a one-line readout; pressing Enter takes
the final sample. Ctrl+C, task cancellation and end-of-input all surface as
OperatorCanceledError.
"""

import asyncio
import contextlib
import logging
import math
import os
import sys
from typing import Optional, TextIO

from mirror_models import MouseSample, Region
from settings import AutomationSettings
from utils.error_handler import HostCommandError, OperatorCanceledError

logger = logging.getLogger(__name__)

PROMPT_HEADER = "=== iPhone Mirroring calibration ==="
OUT_OF_REGION_TAG = " [OUT OF CONTENT REGION]"
READ_CHUNK_SIZE = 4096


class StdinLineReader:
    """
    Reads one line from a stream without blocking the event loop.

    The stream's file descriptor is registered with the running loop only
    while a read is pending. Bytes are read straight from the descriptor
    into a buffer owned by the reader, so lines that arrive together in one
    chunk (a paste, typed-ahead Enter) are served by later calls without
    waiting for the descriptor to become readable again.
    """

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stdin
        self.encoding = getattr(self.stream, "encoding", None) or "utf-8"
        self._pending = b""

    async def _read_chunk(self, fd: int) -> bytes:
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def _on_readable():
            if future.done():
                return
            try:
                future.set_result(os.read(fd, READ_CHUNK_SIZE))
            except OSError as e:
                future.set_exception(e)

        loop.add_reader(fd, _on_readable)
        try:
            return await future
        finally:
            loop.remove_reader(fd)

    async def readline(self) -> str:
        fd = self.stream.fileno()
        while b"\n" not in self._pending:
            chunk = await self._read_chunk(fd)
            if not chunk:
                if not self._pending:
                    raise OperatorCanceledError("Calibration input closed")
                break
            self._pending += chunk

        line, sep, rest = self._pending.partition(b"\n")
        self._pending = rest
        return line.decode(self.encoding, errors="replace").rstrip("\r\n")


def format_telemetry(label: str, sample: MouseSample, region: Region) -> str:
    """Single-line preview of where the pointer sits relative to the content region"""
    local_x = sample.x - region.x
    local_y = sample.y - region.y
    rel_x = local_x / region.width
    rel_y = local_y / region.height
    in_bounds = (
        math.isfinite(rel_x) and math.isfinite(rel_y)
        and 0 <= rel_x <= 1 and 0 <= rel_y <= 1
    )
    return (
        f"Calibration preview [{label}]: source={sample.source} raw={sample.raw} | "
        f"screen=({sample.x:g}, {sample.y:g}) | "
        f"contentRegion=(x={region.x}, y={region.y}, w={region.width}, h={region.height}) | "
        f"contentLocal=({local_x:g}, {local_y:g}) | rel=({rel_x:.6f}, {rel_y:.6f})"
        f"{'' if in_bounds else OUT_OF_REGION_TAG}"
    )


class CalibrationPrompt:
    """Asks the operator to hover a point and press Enter"""

    def __init__(
        self,
        bridge,
        settings: AutomationSettings,
        line_reader=None,
        stream: Optional[TextIO] = None,
    ):
        """
        Args:
            bridge: Anything with an async query_mouse_location()
            settings: Supplies the preview interval
            line_reader: Object with an async readline(); defaults to stdin
            stream: Where instructions and the preview are written
        """
        self.bridge = bridge
        self.settings = settings
        self.line_reader = line_reader or StdinLineReader()
        self.stream = stream or sys.stdout

    def _is_tty(self) -> bool:
        isatty = getattr(self.stream, "isatty", None)
        return bool(isatty and isatty())

    def _write_line(self, text: str = "") -> None:
        self.stream.write(f"{text}\n")
        self.stream.flush()

    def _render(self, text: str) -> None:
        if self._is_tty():
            self.stream.write(f"\r\x1b[2K{text}")
            self.stream.flush()
        else:
            logger.debug(f"[CalibrationPrompt] {text}")

    def print_instructions(self, label: str, instructions: Optional[str] = None) -> None:
        self._write_line(PROMPT_HEADER)
        self._write_line(f"Next: {label}")
        if instructions:
            self._write_line(f"  - {instructions}")
        self._write_line("  - Move your mouse pointer over the target point in the mirrored iPhone.")
        self._write_line("  - Keep both this terminal and the iPhone mirroring window visible.")
        self._write_line("  - Make sure this terminal is focused before pressing Enter.")
        self._write_line("  - Press Enter to sample that point.")
        self._write_line("  - Press Ctrl+C to cancel.")

    async def _preview_loop(self, label: str, region: Region) -> None:
        interval = self.settings.preview_interval_ms / 1000
        while True:
            try:
                sample = await self.bridge.query_mouse_location()
            except HostCommandError as e:
                logger.debug(f"[CalibrationPrompt] Preview sample failed: {e.message}")
            else:
                self._render(format_telemetry(label, sample, region))
            await asyncio.sleep(interval)

    async def capture(
        self,
        label: str,
        region: Region,
        instructions: Optional[str] = None,
    ) -> MouseSample:
        """
        Show the live preview until the operator presses Enter.

        Returns:
            Mouse position sampled after Enter

        Raises:
            OperatorCanceledError: interrupted or input closed
        """
        self.print_instructions(label, instructions)
        preview = asyncio.create_task(self._preview_loop(label, region))
        try:
            await self.line_reader.readline()
        except asyncio.CancelledError as e:
            raise OperatorCanceledError() from e
        finally:
            preview.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await preview
            if self._is_tty():
                self._write_line()

        sample = await self.bridge.query_mouse_location()
        logger.info(f"[CalibrationPrompt] {label}: sampled ({sample.x:g}, {sample.y:g}) via {sample.source}")
        return sample
