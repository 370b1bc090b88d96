"""
Mirror Autofill - Data Models

Pydantic models for window geometry, the persisted calibration profile,
the static app/action catalog entries and runtime navigation state.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SUPPORTED_PROFILE_VERSIONS = (1,)
CURRENT_PROFILE_VERSION = 1


class SupportedApp(str, Enum):
    """Apps the capture flow knows how to open"""
    CHROME = "chrome"
    INSTAGRAM = "instagram"
    TIKTOK = "tiktok"


SUPPORTED_APPS: List[str] = [app.value for app in SupportedApp]


class ActionContext(str, Enum):
    """UI state a calibration action must be captured in"""
    HOME = "home"  # Springboard home screen
    SEARCH_ENTRY = "search-entry"  # System search opened, nothing typed
    APP_ACTIVE = "app-active"  # Target app in foreground
    SEARCH_FOCUSED = "search-focused"  # Target app's own search field focused
    CUSTOM = "custom"  # Whatever screen the operator left it on


class SearchEntryMode(str, Enum):
    """How a flow reaches the system search field"""
    SHORTCUT = "shortcut"
    SEARCH_ICON = "searchIcon"
    HOME_THEN_SEARCH_ICON = "homeThenSearchIcon"
    LEGACY_HOME_ICON_ONLY = "legacyHomeIconOnly"


class SearchSubmitMode(str, Enum):
    """How the typed launch query is confirmed"""
    ENTER = "enter"  # Return key
    TAP_RESULT = "tapResult"  # Tap the calibrated first result


class LaunchStepKind(str, Enum):
    """Observable steps of a launch attempt"""
    ACQUIRE_SEARCH_ENTRY = "acquire-search-entry"
    CLEAR_FIELD = "clear-field"
    TYPE_QUERY = "type-query"
    SUBMIT_LAUNCH = "submit-launch"
    RETRY_SWITCH = "retry-switch"
    HOME_FALLBACK = "home-fallback"


class CalibrationStepKind(str, Enum):
    """Top-level steps of calibrate-all"""
    PREFLIGHT = "preflight"
    FOCUS_MIRRORING = "focus-mirroring"
    CAPTURE_HOME_SEARCH_BUTTON = "capture-home-search-button"
    TRANSITION_CONTEXT = "transition-context"
    CAPTURE_ACTION_POINT = "capture-action-point"
    PERSIST_PROFILE = "persist-profile"


# =============================================================================
# Geometry
# =============================================================================

class WindowBounds(BaseModel):
    """Absolute screen rectangle of the mirroring window (x1, y1, x2, y2)"""
    x1: int
    y1: int
    x2: int
    y2: int

    @model_validator(mode="after")
    def _check_orientation(self):
        if self.x2 <= self.x1 or self.y2 <= self.y1:
            raise ValueError(
                f"inverted or empty bounds ({self.x1},{self.y1},{self.x2},{self.y2})"
            )
        return self

    @property
    def width(self) -> int:
        return self.x2 - self.x1

    @property
    def height(self) -> int:
        return self.y2 - self.y1


class Region(BaseModel):
    """Phone content area inside the window (x, y, width, height)"""
    x: int
    y: int
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)

    def contains(self, x: float, y: float) -> bool:
        return self.x <= x <= self.x + self.width and self.y <= y <= self.y + self.height


class Insets(BaseModel):
    """Window chrome trimmed off each side of the mirror window"""
    left: int = Field(10, ge=0)
    top: int = Field(48, ge=0)
    right: int = Field(10, ge=0)
    bottom: int = Field(10, ge=0)


class MouseSample(BaseModel):
    """One pointer location reading from the host"""
    x: float
    y: float
    source: str = "osascript"
    raw: str = ""


# =============================================================================
# Calibration profile (persisted)
# =============================================================================

class BaseCoordinatePoint(BaseModel):
    """Calibrated point stored as fractions of the content region"""
    model_config = ConfigDict(populate_by_name=True)

    rel_x: float = Field(..., alias="relX", ge=0, le=1, allow_inf_nan=False)
    rel_y: float = Field(..., alias="relY", ge=0, le=1, allow_inf_nan=False)
    abs_x: Optional[float] = Field(None, alias="absX")  # Advisory only
    abs_y: Optional[float] = Field(None, alias="absY")  # Advisory only


class ProfilePoints(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    home_search_button: BaseCoordinatePoint = Field(..., alias="homeSearchButton")
    launch_result_tap: BaseCoordinatePoint = Field(..., alias="launchResultTap")
    app_search_steps: Dict[str, str] = Field(..., alias="appSearchSteps")
    app_action_points: Dict[str, Dict[str, BaseCoordinatePoint]] = Field(
        default_factory=dict, alias="appActionPoints"
    )

    @field_validator("app_search_steps")
    @classmethod
    def _check_search_steps(cls, value: Dict[str, str]) -> Dict[str, str]:
        # geometry imports this module
        from geometry import parse_tap_sequence
        from utils.error_handler import InvalidTapSequenceError

        steps = {}
        for app in SUPPORTED_APPS:
            raw = value.get(app)
            if not isinstance(raw, str) or not raw.strip():
                raise ValueError(f"missing tap sequence for {app}")
            try:
                parse_tap_sequence(raw, f"appSearchSteps.{app}")
            except InvalidTapSequenceError as e:
                raise ValueError(e.message) from e
            steps[app] = raw.strip()
        return steps


class BaseCoordinatesProfile(BaseModel):
    """Versioned calibration profile as stored on disk"""
    model_config = ConfigDict(populate_by_name=True)

    version: int = Field(..., ge=1)
    generated_at: str = Field(..., alias="generatedAt", min_length=1)
    mirror_window: WindowBounds = Field(..., alias="mirrorWindow")
    content_region: Region = Field(..., alias="contentRegion")
    points: ProfilePoints

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: int) -> int:
        if value not in SUPPORTED_PROFILE_VERSIONS:
            raise ValueError(
                f"unsupported profile version {value} (supported: {list(SUPPORTED_PROFILE_VERSIONS)})"
            )
        return value

    @field_validator("generated_at")
    @classmethod
    def _check_generated_at(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("generatedAt must not be blank")
        return value

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def utc_timestamp() -> str:
    """ISO-8601 timestamp used for generatedAt"""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# =============================================================================
# Static catalog entries
# =============================================================================

class ActionCalibrationDefinition(BaseModel):
    """Catalog entry for one calibratable in-app action"""
    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(..., pattern=r"^[a-z]+:[A-Za-z]+$")  # "<app>:<action>"
    label: str
    for_app: SupportedApp
    fallback_tap_steps: Optional[str] = None
    required_for_capture: bool = False
    skip_in_calibrate_all: bool = False
    requirements_hint: Optional[str] = None
    auto_navigate_to: Optional[ActionContext] = None
    prerequisites: List[str] = Field(default_factory=list)
    capture_hint: Optional[str] = None

    @property
    def app(self) -> str:
        return self.id.split(":", 1)[0]

    @property
    def action(self) -> str:
        return self.id.split(":", 1)[1]


class AppFlowDefinition(BaseModel):
    """How to open an app and reach its search field"""
    model_config = ConfigDict(use_enum_values=True)

    app: SupportedApp
    launch: SearchEntryMode = SearchEntryMode.SHORTCUT
    search_submit_mode: SearchSubmitMode = SearchSubmitMode.ENTER
    post_launch_actions: List[str] = Field(default_factory=list)
    in_app_search_point: Optional[str] = None  # Action name within this app
    fallback_search_steps: Optional[str] = None
    required_calibration_for_capture: List[str] = Field(default_factory=list)


# =============================================================================
# Runtime state (in memory only)
# =============================================================================

class RuntimeAppContext(BaseModel):
    """Where the orchestrator believes the phone UI currently is"""
    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)

    current_app: Optional[SupportedApp] = None
    current_context: Optional[ActionContext] = None

    def update(self, app: Optional[str], context: Optional[str]) -> None:
        self.current_app = app
        self.current_context = context

    def reset(self) -> None:
        self.current_app = None
        self.current_context = None

    def matches(self, app: Optional[str], context: Optional[str]) -> bool:
        return self.current_app == app and self.current_context == context


class FocusProbe(BaseModel):
    """Frontmost-process readings taken around one launch step"""
    ensure_phase: str
    ensured_frontmost: bool = False
    frontmost_before_focus: Optional[str] = None
    frontmost_after_focus: Optional[str] = None
    frontmost_before_action: Optional[str] = None
    frontmost_after_action: Optional[str] = None


class LaunchStep(BaseModel):
    """One observable step inside a launch attempt"""
    model_config = ConfigDict(use_enum_values=True)

    id: str
    kind: LaunchStepKind
    app: SupportedApp
    attempt: int = 0
    label: str
    expected: str = ""


class CalibrationStepDescriptor(BaseModel):
    """One top-level step of calibrate-all"""
    model_config = ConfigDict(use_enum_values=True)

    index: int = Field(..., ge=1)
    total: int = Field(..., ge=1)
    id: str
    kind: CalibrationStepKind
    label: str
    expected: str = ""
    definition_id: Optional[str] = None
    app: Optional[SupportedApp] = None
    action: Optional[str] = None
    target_context: Optional[ActionContext] = None


class CalibrationRuntimeState(BaseModel):
    """Live state shared between the calibration engine and its hooks"""
    runtime_context: RuntimeAppContext = Field(default_factory=RuntimeAppContext)
    content_region: Optional[Region] = None
    mirror_window: Optional[WindowBounds] = None
    current_definition_id: Optional[str] = None
