import math

import pytest

from geometry import (
    content_region_from,
    parse_bounds_tuple,
    parse_tap_sequence,
    to_absolute,
    to_relative,
    to_relative_within_region,
)
from mirror_models import Insets, Region, WindowBounds
from utils.error_handler import (
    DegenerateRegionError,
    InvalidBoundsError,
    InvalidTapSequenceError,
    NonIntegerConversionError,
    PointOutOfRegionError,
)

from conftest import EXAMPLE_BOUNDS, EXAMPLE_REGION


def test_content_region_uses_default_insets():
    assert content_region_from(EXAMPLE_BOUNDS) == EXAMPLE_REGION


def test_home_search_button_maps_to_pixels():
    assert to_absolute((0.5, 0.91), EXAMPLE_REGION) == (300, 641)


def test_half_pixels_round_up():
    region = Region(x=0, y=0, width=3, height=3)
    assert to_absolute((0.5, 0.5), region) == (2, 2)


def test_region_corners():
    assert to_absolute((0, 0), EXAMPLE_REGION) == (110, 148)
    assert to_absolute((1, 1), EXAMPLE_REGION) == (490, 690)


def test_round_trip_stays_within_one_pixel():
    for rel in [(0.0, 0.0), (0.25, 0.75), (0.5, 0.91), (0.333333, 0.123456), (1.0, 1.0)]:
        back = to_relative(to_absolute(rel, EXAMPLE_REGION), EXAMPLE_REGION)
        assert abs(back[0] - rel[0]) <= 1 / EXAMPLE_REGION.width
        assert abs(back[1] - rel[1]) <= 1 / EXAMPLE_REGION.height


def test_scale_multiplies_region():
    region = content_region_from(EXAMPLE_BOUNDS, scale=2)
    assert region == Region(x=220, y=296, width=760, height=1084)


@pytest.mark.parametrize("scale", [0, 1.5, -1, True])
def test_scale_must_be_positive_integer(scale):
    with pytest.raises(NonIntegerConversionError):
        content_region_from(EXAMPLE_BOUNDS, scale=scale)


def test_insets_consuming_window_are_rejected():
    with pytest.raises(InvalidBoundsError):
        content_region_from(WindowBounds(x1=0, y1=0, x2=20, y2=100), Insets())


def test_parse_bounds_tuple():
    assert parse_bounds_tuple(" 100, 100, 500, 700 ") == EXAMPLE_BOUNDS


@pytest.mark.parametrize("raw", ["500,100,100,700", "100,700,500,100", "100,100,100,700", "NOWINDOW", "1,2,3"])
def test_parse_bounds_tuple_rejects_bad_payloads(raw):
    with pytest.raises(InvalidBoundsError):
        parse_bounds_tuple(raw)


def test_to_relative_is_not_clamped():
    rel_x, rel_y = to_relative((90, 148), EXAMPLE_REGION)
    assert rel_x < 0
    assert rel_y == 0


def test_to_relative_rejects_degenerate_region():
    region = Region.model_construct(x=0, y=0, width=0, height=10)
    with pytest.raises(DegenerateRegionError):
        to_relative((1, 1), region)


def test_to_absolute_rejects_non_finite_values():
    with pytest.raises(NonIntegerConversionError):
        to_absolute((math.nan, 0.5), EXAMPLE_REGION)


def test_point_outside_region_reports_details():
    with pytest.raises(PointOutOfRegionError) as excinfo:
        to_relative_within_region((50, 200), EXAMPLE_REGION, "search", "mirror-autofill calibrate")

    error = excinfo.value
    assert error.details["screen"] == {"x": 50, "y": 200}
    assert error.details["local"] == {"x": -60, "y": 52}
    assert error.details["rel"]["x"] < 0
    assert "mirror-autofill calibrate" in error.hint


def test_point_inside_region_converts():
    rel = to_relative_within_region((300, 419), EXAMPLE_REGION, "center", "mirror-autofill calibrate")
    assert rel == pytest.approx((0.5, 0.5))


def test_parse_tap_sequence():
    assert parse_tap_sequence("0.20,0.95; 0.50,0.12;", "steps") == [(0.2, 0.95), (0.5, 0.12)]


@pytest.mark.parametrize("raw", ["", " ; ", "0.5", "0.5,0.5,0.5", "a,0.5", "0.5,1e-3"])
def test_parse_tap_sequence_rejects(raw):
    with pytest.raises(InvalidTapSequenceError):
        parse_tap_sequence(raw, "steps")
