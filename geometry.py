"""
Mirror Autofill - Geometry Engine

Pure conversions between the mirroring window's absolute screen rectangle,
the phone content region inside it, and resolution-independent fractional
coordinates. Also parses tap-sequence strings ("x,y;x,y").
"""

import math
import re
from typing import List, Optional, Tuple

from pydantic import ValidationError

from mirror_models import Insets, Region, WindowBounds
from utils.error_handler import (
    DegenerateRegionError,
    InvalidBoundsError,
    InvalidTapSequenceError,
    NonIntegerConversionError,
    PointOutOfRegionError,
)

NUMERIC_TOKEN = re.compile(r"^[+-]?(?:[0-9]+(?:\.[0-9]*)?|[0-9]*\.[0-9]+)$")
BOUNDS_PAYLOAD = re.compile(r"^-?\d+(?:\.\d+)?(?:,-?\d+(?:\.\d+)?){3}$")

DEFAULT_INSETS = Insets()


def is_numeric_bounds_payload(raw: str) -> bool:
    """True when raw looks like "x1,y1,x2,y2" as printed by the window manager"""
    return bool(BOUNDS_PAYLOAD.match(raw.replace(" ", "")))


def parse_bounds_tuple(raw: str) -> WindowBounds:
    """
    Parse an "x1,y1,x2,y2" payload into window bounds.

    Raises:
        InvalidBoundsError: payload is not four numbers or the rectangle is empty
    """
    compact = raw.strip().replace(" ", "")
    if not is_numeric_bounds_payload(compact):
        raise InvalidBoundsError(f"Unexpected bounds payload: {raw!r}")
    x1, y1, x2, y2 = (int(round(float(part))) for part in compact.split(","))
    return make_window_bounds(x1, y1, x2, y2)


def make_window_bounds(x1: int, y1: int, x2: int, y2: int) -> WindowBounds:
    """Build validated bounds, mapping validation failures to InvalidBoundsError"""
    try:
        return WindowBounds(x1=x1, y1=y1, x2=x2, y2=y2)
    except ValidationError as e:
        raise InvalidBoundsError(
            f"Invalid mirror window bounds: {e.errors()[0]['msg']}",
            bounds={"x1": x1, "y1": y1, "x2": x2, "y2": y2},
        ) from e


def content_region_from(
    bounds: WindowBounds,
    insets: Optional[Insets] = None,
    scale: int = 1,
) -> Region:
    """
    Shrink window bounds by the chrome insets and apply the coordinate scale.

    Args:
        bounds: Absolute window rectangle
        insets: Chrome to trim (defaults to 10/48/10/10)
        scale: Integer multiplier applied to x, y, width and height

    Returns:
        Content region in the same pixel space the click tool uses

    Raises:
        InvalidBoundsError: inverted bounds, or nothing left after insets
        NonIntegerConversionError: scale is not an integer >= 1
    """
    insets = insets or DEFAULT_INSETS
    if isinstance(scale, bool) or not isinstance(scale, int) or scale < 1:
        raise NonIntegerConversionError(f"Coordinate scale must be an integer >= 1, got {scale!r}", scale)

    bounds_dict = {"x1": bounds.x1, "y1": bounds.y1, "x2": bounds.x2, "y2": bounds.y2}
    if bounds.x2 <= bounds.x1 or bounds.y2 <= bounds.y1:
        raise InvalidBoundsError("Mirror window bounds are inverted or empty", bounds=bounds_dict)

    x = bounds.x1 + insets.left
    y = bounds.y1 + insets.top
    width = (bounds.x2 - insets.right) - x
    height = (bounds.y2 - insets.bottom) - y
    if width <= 0 or height <= 0:
        raise InvalidBoundsError(
            f"Content region is empty after insets (width={width}, height={height})",
            bounds=bounds_dict,
        )

    return Region(x=x * scale, y=y * scale, width=width * scale, height=height * scale)


def to_absolute(rel: Tuple[float, float], region: Region) -> Tuple[int, int]:
    """Fractional point to absolute screen pixels, halves rounded up"""
    rel_x, rel_y = rel
    raw_x = region.x + region.width * rel_x
    raw_y = region.y + region.height * rel_y
    if not (math.isfinite(raw_x) and math.isfinite(raw_y)):
        raise NonIntegerConversionError(
            f"Cannot convert ({rel_x}, {rel_y}) to screen pixels", (raw_x, raw_y)
        )
    return math.floor(raw_x + 0.5), math.floor(raw_y + 0.5)


def to_relative(point: Tuple[float, float], region: Region) -> Tuple[float, float]:
    """Absolute screen point to fractions of the region (not clamped)"""
    if region.width == 0 or region.height == 0:
        raise DegenerateRegionError(region.model_dump())
    x, y = point
    return (x - region.x) / region.width, (y - region.y) / region.height


def to_relative_within_region(
    point: Tuple[float, float],
    region: Region,
    label: str,
    remediation: str,
) -> Tuple[float, float]:
    """
    Like to_relative but rejects points outside the region.

    Raises:
        PointOutOfRegionError: with the screen, local and fractional values
    """
    rel_x, rel_y = to_relative(point, region)
    if 0 <= rel_x <= 1 and 0 <= rel_y <= 1:
        return rel_x, rel_y

    x, y = point
    raise PointOutOfRegionError(
        label,
        details={
            "screen": {"x": x, "y": y},
            "local": {"x": x - region.x, "y": y - region.y},
            "region": region.model_dump(),
            "rel": {"x": round(rel_x, 6), "y": round(rel_y, 6)},
        },
        remediation=remediation,
    )


def parse_tap_sequence(raw: str, label: str) -> List[Tuple[float, float]]:
    """
    Parse "x,y;x,y" into fractional points.

    Empty segments between semicolons are ignored; every remaining segment
    must hold exactly two numeric tokens.

    Raises:
        InvalidTapSequenceError: names the offending step or token
    """
    if not isinstance(raw, str):
        raise InvalidTapSequenceError(label, "expected a string")

    steps = [part.strip() for part in raw.split(";") if part.strip()]
    if not steps:
        raise InvalidTapSequenceError(label, "sequence is empty")

    points = []
    for step in steps:
        tokens = [token.strip() for token in step.split(",")]
        if len(tokens) != 2:
            raise InvalidTapSequenceError(label, f"step '{step}' must be 'x,y'", token=step)
        for token in tokens:
            if not NUMERIC_TOKEN.match(token):
                raise InvalidTapSequenceError(label, f"token '{token}' is not a number", token=token)
        points.append((float(tokens[0]), float(tokens[1])))

    return points
