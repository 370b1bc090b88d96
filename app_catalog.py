"""
Mirror Autofill - App and Action Catalog

Static per-app launch flows, the calibratable action catalog and the
default fractional points used when nothing has been calibrated yet.
"""

from typing import Dict, List, Optional, Tuple

from mirror_models import (
    ActionCalibrationDefinition,
    ActionContext,
    AppFlowDefinition,
    BaseCoordinatePoint,
    SearchEntryMode,
    SearchSubmitMode,
    SUPPORTED_APPS,
)
from utils.error_handler import ConfigurationError, UnknownActionError

# Mirroring host processes, in order of preference
MIRROR_APP_NAME = "iPhone Mirroring"
FALLBACK_MIRROR_APP_NAME = "QuickTime Player"
HOST_PROCESS_NAMES = [MIRROR_APP_NAME, FALLBACK_MIRROR_APP_NAME]

# iPhone Mirroring menu shortcuts
HOME_SHORTCUT = ("1", ["command"])
SEARCH_SHORTCUT = ("3", ["command"])
LEGACY_HOME_SHORTCUT = ("h", ["command"])
HOME_SWIPE_START = (0.5, 0.96)
HOME_SWIPE_END = (0.5, 0.55)

# Text typed into system search to open each app
APP_LAUNCH_QUERY: Dict[str, str] = {
    "chrome": "Chrome",
    "instagram": "Instagram",
    "tiktok": "TikTok",
}

DEFAULT_HOME_SEARCH_BUTTON = (0.5, 0.91)
DEFAULT_LAUNCH_RESULT_TAP = (0.5, 0.63)
DEBUG_RESUME_BUTTON = (0.5, 0.58)

# Home screen icon positions used when no homeIcon point is calibrated
LEGACY_HOME_ICON_POINTS: Dict[str, Tuple[float, float]] = {
    "chrome": (0.18, 0.78),
    "instagram": (0.40, 0.78),
    "tiktok": (0.62, 0.78),
}

CHROME_SEARCH_STEPS = "0.50,0.10"
INSTAGRAM_SEARCH_STEPS = "0.20,0.95;0.50,0.12"
TIKTOK_SEARCH_STEPS = "0.92,0.08;0.50,0.12"

DEFAULT_APP_SEARCH_STEPS: Dict[str, str] = {
    "chrome": CHROME_SEARCH_STEPS,
    "instagram": INSTAGRAM_SEARCH_STEPS,
    "tiktok": TIKTOK_SEARCH_STEPS,
}

APP_FLOWS: Dict[str, AppFlowDefinition] = {
    "chrome": AppFlowDefinition(
        app="chrome",
        launch=SearchEntryMode.SHORTCUT,
        search_submit_mode=SearchSubmitMode.ENTER,
        post_launch_actions=["chrome:ellipsis", "chrome:newIncognitoTab"],
        in_app_search_point="searchBar",
        fallback_search_steps=CHROME_SEARCH_STEPS,
        required_calibration_for_capture=["chrome:ellipsis", "chrome:newIncognitoTab"],
    ),
    "instagram": AppFlowDefinition(
        app="instagram",
        launch=SearchEntryMode.SHORTCUT,
        search_submit_mode=SearchSubmitMode.ENTER,
        fallback_search_steps=INSTAGRAM_SEARCH_STEPS,
    ),
    "tiktok": AppFlowDefinition(
        app="tiktok",
        launch=SearchEntryMode.SHORTCUT,
        search_submit_mode=SearchSubmitMode.ENTER,
        fallback_search_steps=TIKTOK_SEARCH_STEPS,
    ),
}


def _search_icon(app: str, label: str) -> ActionCalibrationDefinition:
    return ActionCalibrationDefinition(
        id=f"{app}:searchIcon",
        label=f"{label} launcher search icon",
        for_app=app,
        auto_navigate_to=ActionContext.SEARCH_ENTRY,
        capture_hint="Hover the Search button at the bottom of the Home Screen.",
    )


def _home_icon(app: str, label: str) -> ActionCalibrationDefinition:
    return ActionCalibrationDefinition(
        id=f"{app}:homeIcon",
        label=f"{label} Home Screen icon",
        for_app=app,
        auto_navigate_to=ActionContext.HOME,
        capture_hint=f"Hover the {label} app icon on the Home Screen.",
    )


ACTION_CALIBRATION_DEFINITIONS: List[ActionCalibrationDefinition] = [
    ActionCalibrationDefinition(
        id="chrome:ellipsis",
        label="Chrome ellipsis (More) button",
        for_app="chrome",
        required_for_capture=True,
        auto_navigate_to=ActionContext.APP_ACTIVE,
        requirements_hint="Chrome must be open on any page with the toolbar visible.",
        capture_hint="Hover the three-dots menu button in Chrome's toolbar.",
    ),
    ActionCalibrationDefinition(
        id="chrome:newIncognitoTab",
        label="Chrome 'New Incognito Tab' menu item",
        for_app="chrome",
        required_for_capture=True,
        auto_navigate_to=ActionContext.APP_ACTIVE,
        prerequisites=["chrome:ellipsis"],
        requirements_hint="The ellipsis menu is opened automatically before capture.",
        capture_hint="Hover 'New Incognito Tab' in the open menu.",
    ),
    ActionCalibrationDefinition(
        id="chrome:searchBar",
        label="Chrome incognito search bar",
        for_app="chrome",
        fallback_tap_steps=CHROME_SEARCH_STEPS,
        auto_navigate_to=ActionContext.SEARCH_FOCUSED,
        prerequisites=["chrome:ellipsis", "chrome:newIncognitoTab"],
        capture_hint="Hover the address/search bar of the new incognito tab.",
    ),
    _search_icon("chrome", "Chrome"),
    _search_icon("instagram", "Instagram"),
    _search_icon("tiktok", "TikTok"),
    _home_icon("chrome", "Chrome"),
    _home_icon("instagram", "Instagram"),
    _home_icon("tiktok", "TikTok"),
]

ACTION_DEFINITIONS_BY_ID: Dict[str, ActionCalibrationDefinition] = {
    definition.id: definition for definition in ACTION_CALIBRATION_DEFINITIONS
}


def get_app_flow(app: str) -> AppFlowDefinition:
    flow = APP_FLOWS.get(app)
    if flow is None:
        raise ConfigurationError(
            f"Unsupported app '{app}'",
            code="UNSUPPORTED_APP",
            details={"app": app},
            hint="Supported apps: " + ", ".join(SUPPORTED_APPS),
        )
    return flow


def get_action_definition(action_id: str) -> Optional[ActionCalibrationDefinition]:
    return ACTION_DEFINITIONS_BY_ID.get(action_id)


def require_action_definition(action_id: str) -> ActionCalibrationDefinition:
    definition = ACTION_DEFINITIONS_BY_ID.get(action_id)
    if definition is None:
        raise UnknownActionError(action_id, known=list(ACTION_DEFINITIONS_BY_ID))
    return definition


def is_action_required_for_capture(app: str, action: str, flow: Optional[AppFlowDefinition] = None) -> bool:
    """Required when the catalog entry says so or the app flow lists it; unknown actions never are"""
    action_id = f"{app}:{action}"
    definition = get_action_definition(action_id)
    if definition is None:
        return False
    if definition.required_for_capture:
        return True
    flow = flow or get_app_flow(app)
    return action_id in flow.required_calibration_for_capture


def parse_action_id(action_id: str) -> Tuple[str, str]:
    """
    Split "<app>:<action>" and check it names a catalog entry.

    Raises:
        UnknownActionError: malformed id or not in the catalog
    """
    app, sep, action = action_id.strip().partition(":")
    if not sep or not app or not action:
        raise UnknownActionError(action_id, known=list(ACTION_DEFINITIONS_BY_ID))
    require_action_definition(f"{app}:{action}")
    return app, action


def action_id_for(app: str, action: str) -> str:
    return f"{app}:{action}"


def make_base_point_from_rel(
    rel: Tuple[float, float],
    absolute: Optional[Tuple[float, float]] = None,
) -> BaseCoordinatePoint:
    rel_x, rel_y = rel
    if absolute is None:
        return BaseCoordinatePoint(rel_x=rel_x, rel_y=rel_y)
    return BaseCoordinatePoint(rel_x=rel_x, rel_y=rel_y, abs_x=absolute[0], abs_y=absolute[1])
