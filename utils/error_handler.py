"""
Centralized Error Handling Module for Mirror Autofill

Provides the exception hierarchy, troubleshooting hints and operator-facing
messages shared by every component.
"""

import logging
from typing import Dict, Any, Optional, List

# Configure logging
logger = logging.getLogger("mirror_autofill")

CALIBRATE_COMMAND = "mirror-autofill calibrate"
CALIBRATE_ACTION_COMMAND = "mirror-autofill calibrate-action"


# =============================================================================
# ERROR HINTS - Operator-facing troubleshooting suggestions
# =============================================================================

ERROR_HINTS = {
    "mirror_unavailable": {
        "message": "Mirroring window not found",
        "hint": "Open iPhone Mirroring and make sure the phone is connected and unlocked. QuickTime Player is used as a fallback host.",
        "docs": "docs/connection"
    },
    "focus_lost": {
        "message": "Mirroring window is not frontmost",
        "hint": "Another application took focus. Close popups or notifications on the desktop and rerun.",
        "docs": "docs/focus"
    },
    "missing_profile": {
        "message": "Calibration profile missing",
        "hint": f"Run: {CALIBRATE_COMMAND}",
        "docs": "docs/calibration"
    },
    "invalid_profile": {
        "message": "Calibration profile is invalid",
        "hint": f"Fix the named field by hand or recalibrate with: {CALIBRATE_COMMAND}",
        "docs": "docs/calibration"
    },
    "missing_action_point": {
        "message": "Required action point not calibrated",
        "hint": f"Calibrate it with: {CALIBRATE_ACTION_COMMAND} <app>:<action>",
        "docs": "docs/calibration"
    },
    "point_out_of_region": {
        "message": "Captured point is outside the mirrored content",
        "hint": "Keep the pointer inside the phone screen area and rerun the calibration step.",
        "docs": "docs/calibration"
    },
    "launch_exhausted": {
        "message": "Could not open the app",
        "hint": "Check the app is installed and visible on the Home Screen, then recalibrate its home icon.",
        "docs": "docs/launch"
    },
    "screenshot_failed": {
        "message": "Failed to capture screenshot",
        "hint": "Grant Screen Recording permission to your terminal in System Settings > Privacy & Security.",
        "docs": "docs/screenshots"
    },
    "host_command": {
        "message": "Host automation command failed",
        "hint": "Install cliclick (brew install cliclick) and grant Accessibility permission to your terminal.",
        "docs": "docs/setup"
    },
    "permission_denied": {
        "message": "Permission denied by macOS",
        "hint": "Grant Accessibility and Screen Recording permission to your terminal, then restart it.",
        "docs": "docs/permissions"
    },
}


def get_error_with_hint(error_type: str, original_message: str = "") -> dict:
    """
    Get error message with troubleshooting hint.

    Args:
        error_type: Key from ERROR_HINTS dictionary
        original_message: Original error message to include

    Returns:
        Dict with error, hint, and optional docs link
    """
    hint_info = ERROR_HINTS.get(error_type, {})
    return {
        "error": original_message or hint_info.get("message", "Unknown error"),
        "hint": hint_info.get("hint", ""),
        "docs": hint_info.get("docs", "")
    }


def classify_error(error_message: str) -> str:
    """
    Classify an error message to determine the appropriate hint type.

    Args:
        error_message: The error message to classify

    Returns:
        Error type key for ERROR_HINTS lookup
    """
    msg = error_message.lower()

    if "not allowed" in msg or "permission" in msg or "denied" in msg:
        return "permission_denied"
    if "screencapture" in msg or "screenshot" in msg:
        return "screenshot_failed"
    if "cliclick" in msg or "osascript" in msg:
        return "host_command"
    if "window" in msg and ("not found" in msg or "no match" in msg):
        return "mirror_unavailable"
    if "frontmost" in msg or "focus" in msg:
        return "focus_lost"
    if "calibration file" in msg or ("profile" in msg and "missing" in msg):
        return "missing_profile"
    if "action point" in msg:
        return "missing_action_point"

    # Default - no specific hint
    return ""


class MirrorAutomationError(Exception):
    """Base exception for all Mirror Autofill errors"""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None,
        hint: Optional[str] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        self.hint = hint
        super().__init__(self.message)


# =============================================================================
# Configuration errors - fatal, always carry a remediation hint
# =============================================================================

class ConfigurationError(MirrorAutomationError):
    """Raised when persisted or static configuration cannot be used"""

    def __init__(
        self,
        message: str,
        code: str = "CONFIGURATION_ERROR",
        details: Optional[Dict[str, Any]] = None,
        hint: Optional[str] = None,
    ):
        super().__init__(
            message,
            code=code,
            details=details,
            hint=hint or ERROR_HINTS["invalid_profile"]["hint"],
        )


class MissingProfileError(ConfigurationError):
    """Raised when the calibration profile is absent or unreadable"""

    def __init__(self, path: str, reason: Optional[str] = None):
        message = f"Missing or invalid base-coordinate calibration file: {path}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            message,
            code="MISSING_PROFILE",
            details={"path": path, "reason": reason},
            hint=ERROR_HINTS["missing_profile"]["hint"],
        )


class InvalidProfileError(ConfigurationError):
    """Raised when a calibration profile field fails validation"""

    def __init__(self, field: str, reason: str, path: Optional[str] = None):
        self.field = field
        super().__init__(
            f"Invalid calibration profile field '{field}': {reason}",
            code="INVALID_PROFILE",
            details={"field": field, "reason": reason, "path": path},
        )


class InvalidTapSequenceError(ConfigurationError):
    """Raised when a tap-sequence string cannot be parsed"""

    def __init__(self, label: str, reason: str, token: Optional[str] = None):
        self.token = token
        super().__init__(
            f"Invalid tap sequence for {label}: {reason}",
            code="INVALID_TAP_SEQUENCE",
            details={"label": label, "token": token},
        )


class CircularPrerequisiteError(ConfigurationError):
    """Raised when calibration prerequisites form a cycle"""

    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(
            f"Circular calibration prerequisite detected: {action_id}",
            code="CIRCULAR_PREREQUISITE",
            details={"action_id": action_id},
            hint="Remove the cycle from the action catalog prerequisites.",
        )


class UnknownActionError(ConfigurationError):
    """Raised when an app:action id is not in the catalog"""

    def __init__(self, action_id: str, known: Optional[List[str]] = None):
        super().__init__(
            f"Unknown calibration action '{action_id}'",
            code="UNKNOWN_ACTION",
            details={"action_id": action_id, "known": known or []},
            hint="Supported actions: " + ", ".join(known or []),
        )


class MissingActionPointError(ConfigurationError):
    """Raised when required action points have not been calibrated"""

    def __init__(self, app: str, action_ids: List[str]):
        self.action_ids = action_ids
        commands = "; ".join(f"{CALIBRATE_ACTION_COMMAND} {action_id}" for action_id in action_ids)
        super().__init__(
            f"Missing required action point(s) for {app}: {', '.join(action_ids)}",
            code="MISSING_ACTION_POINT",
            details={"app": app, "action_ids": action_ids},
            hint=f"Calibrate with: {commands}",
        )


# =============================================================================
# Geometry errors
# =============================================================================

class GeometryError(MirrorAutomationError):
    """Raised when coordinates cannot be mapped"""


class InvalidBoundsError(GeometryError):
    """Raised when window bounds are inverted, empty or consumed by insets"""

    def __init__(self, message: str, bounds: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="INVALID_BOUNDS", details={"bounds": bounds})


class DegenerateRegionError(GeometryError):
    """Raised when converting into a zero-sized region"""

    def __init__(self, region: Dict[str, Any]):
        super().__init__(
            f"Cannot convert into a degenerate region: {region}",
            code="DEGENERATE_REGION",
            details={"region": region},
        )


class NonIntegerConversionError(GeometryError):
    """Raised when a conversion does not yield integral pixels"""

    def __init__(self, message: str, value: Any = None):
        super().__init__(message, code="NON_INTEGER_CONVERSION", details={"value": value})


class PointOutOfRegionError(GeometryError):
    """Raised when a captured point falls outside the content region"""

    def __init__(self, label: str, details: Dict[str, Any], remediation: str):
        super().__init__(
            f"Calibration point for {label} is outside the detected mirror content region",
            code="POINT_OUT_OF_REGION",
            details=details,
            hint=f"{ERROR_HINTS['point_out_of_region']['hint']} Run: {remediation}",
        )


# =============================================================================
# Runtime UI and host errors
# =============================================================================

class TransientUIError(MirrorAutomationError):
    """Raised for UI conditions that a short retry may clear"""


class FocusNotAcquiredError(TransientUIError):
    """Raised when the mirroring window cannot be brought frontmost"""

    def __init__(self, phase: str, frontmost: Optional[str] = None):
        super().__init__(
            f"Mirroring window not frontmost during {phase} (frontmost: {frontmost or 'unknown'})",
            code="FOCUS_NOT_ACQUIRED",
            details={"phase": phase, "frontmost": frontmost},
            hint=ERROR_HINTS["focus_lost"]["hint"],
        )


class KeystrokeNotConfirmedError(TransientUIError):
    """Raised when a keystroke could not be dispatched to the mirror"""

    def __init__(self, keystroke: str, frontmost: Optional[str] = None):
        super().__init__(
            f"Keystroke {keystroke} was not confirmed by the mirroring window",
            code="KEYSTROKE_NOT_CONFIRMED",
            details={"keystroke": keystroke, "frontmost": frontmost},
        )


class HostCommandError(MirrorAutomationError):
    """Raised when a host automation tool exits with an error"""

    def __init__(self, message: str, command: Optional[str] = None, output: str = ""):
        error_type = classify_error(f"{command or ''} {output}") or "host_command"
        super().__init__(
            f"{message}: {output.strip()}" if output.strip() else message,
            code="HOST_COMMAND_ERROR",
            details={"command": command, "output": output},
            hint=ERROR_HINTS[error_type]["hint"],
        )


class MirrorUnavailableError(MirrorAutomationError):
    """Raised when no mirroring host window can be found"""

    def __init__(self, message: str, candidates: Optional[List[str]] = None):
        super().__init__(
            message,
            code="MIRROR_UNAVAILABLE",
            details={"candidates": candidates or []},
            hint=ERROR_HINTS["mirror_unavailable"]["hint"],
        )


class LaunchExhaustedError(MirrorAutomationError):
    """Raised when every launch attempt and the home icon fallback failed"""

    def __init__(self, app: str, attempts: List[Dict[str, Any]], cause: Optional[str] = None):
        super().__init__(
            f"Failed to open {app} after {len(attempts)} search attempt(s) and home icon fallback",
            code="LAUNCH_EXHAUSTED",
            details={"app": app, "attempts": attempts, "cause": cause},
            hint=ERROR_HINTS["launch_exhausted"]["hint"],
        )


# =============================================================================
# Operator interaction
# =============================================================================

class OperatorCanceledError(MirrorAutomationError):
    """Raised when the operator interrupts an interactive prompt"""

    def __init__(self, message: str = "Calibration canceled by user"):
        super().__init__(message, code="OPERATOR_CANCELED")


class OperatorMarkedStepFailedError(MirrorAutomationError):
    """Raised when the operator marks a checkpoint step as failed"""

    def __init__(self, step_id: str, sub_step_id: Optional[str] = None):
        label = f"{step_id} / {sub_step_id}" if sub_step_id else step_id
        super().__init__(
            f"Operator marked step as failed: {label}",
            code="OPERATOR_MARKED_FAILED",
            details={"step_id": step_id, "sub_step_id": sub_step_id},
        )


def get_user_friendly_message(error: Exception) -> str:
    """
    Get an operator-facing error message with its remediation hint

    Args:
        error: The exception

    Returns:
        Message suitable for the terminal
    """
    if isinstance(error, OperatorCanceledError):
        return "Canceled by user."

    elif isinstance(error, MirrorAutomationError):
        if error.hint:
            return f"{error.message}\nHint: {error.hint}"
        hint = get_error_with_hint(classify_error(error.message), error.message)["hint"]
        return f"{error.message}\nHint: {hint}" if hint else error.message

    else:
        return f"An unexpected error occurred: {str(error)}"


# Context manager for error handling
class ErrorContext:
    """
    Context manager for error handling

    Usage:
        with ErrorContext("capturing screenshot", raise_as=HostCommandError):
            # code that might fail
            pass
    """

    def __init__(self, operation: str, raise_as: type = MirrorAutomationError):
        self.operation = operation
        self.raise_as = raise_as

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            logger.debug(f"Error during {self.operation}: {exc_val}", exc_info=True)
            # Re-raise as MirrorAutomationError
            if isinstance(exc_val, Exception) and not isinstance(exc_val, MirrorAutomationError):
                raise self.raise_as(f"Failed {self.operation}: {exc_val}") from exc_val
        return False  # Don't suppress exception
