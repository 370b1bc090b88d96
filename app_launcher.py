"""
Mirror Autofill - App Launcher

Opens an app on the mirrored phone through system search with an explicit,
ordered list of attempts, falling back to tapping the app's Home Screen
icon when every search attempt fails.

Attempt modes:
- shortcut-preferred: Command+1 (Home) and Command+3 (Search) keyboard shortcuts,
  with a tap on the search button if a shortcut cannot be dispatched
- tap-only: swipe home and tap the search button, no keyboard shortcuts
"""

import logging
import time
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app_catalog import (
    APP_LAUNCH_QUERY,
    DEFAULT_HOME_SEARCH_BUTTON,
    DEFAULT_LAUNCH_RESULT_TAP,
    HOME_SHORTCUT,
    HOME_SWIPE_END,
    HOME_SWIPE_START,
    LEGACY_HOME_ICON_POINTS,
    LEGACY_HOME_SHORTCUT,
    SEARCH_SHORTCUT,
    get_action_definition,
    get_app_flow,
    is_action_required_for_capture,
)
from mirror_controller import MirrorController
from mirror_models import (
    ActionContext,
    BaseCoordinatePoint,
    BaseCoordinatesProfile,
    FocusProbe,
    LaunchStep,
    LaunchStepKind,
    RuntimeAppContext,
    SearchEntryMode,
    SearchSubmitMode,
)
from settings import AutomationSettings
from utils.error_handler import (
    FocusNotAcquiredError,
    HostCommandError,
    KeystrokeNotConfirmedError,
    LaunchExhaustedError,
    MirrorAutomationError,
    MissingActionPointError,
    TransientUIError,
)

logger = logging.getLogger(__name__)

# A search launched via the Search shortcut and submitted with Return has been
# seen to land on the wrong result; repeat it once with taps only.
FORCE_TAP_ONLY_AFTER_SHORTCUT_ENTER = True

MAX_SEARCH_ATTEMPTS = 2


class AttemptMode(str, Enum):
    SHORTCUT_PREFERRED = "shortcut-preferred"
    TAP_ONLY = "tap-only"


class LaunchAttempt(BaseModel):
    """One queued search attempt"""
    model_config = ConfigDict(use_enum_values=True)

    number: int = Field(..., ge=1)
    mode: AttemptMode
    reason: str


class AttemptRecord(BaseModel):
    """What happened during one search attempt"""
    model_config = ConfigDict(use_enum_values=True)

    number: int
    mode: AttemptMode
    reason: str
    success: bool = False
    used_search_shortcut: bool = False
    error: Optional[str] = None
    started_at: str
    completed_at: Optional[str] = None
    duration_ms: Optional[int] = None


class LaunchOutcome(BaseModel):
    app: str
    method: str  # "search" or "home-icon"
    used_search_shortcut: bool = False
    attempts: List[AttemptRecord] = Field(default_factory=list)


class LaunchPoints(BaseModel):
    """Calibrated points the launcher taps; missing entries use catalog defaults"""
    home_search_button: Optional[BaseCoordinatePoint] = None
    launch_result_tap: Optional[BaseCoordinatePoint] = None
    app_search_steps: Dict[str, str] = Field(default_factory=dict)
    app_action_points: Dict[str, Dict[str, BaseCoordinatePoint]] = Field(default_factory=dict)

    @classmethod
    def from_profile(cls, profile: Optional[BaseCoordinatesProfile]) -> "LaunchPoints":
        if profile is None:
            return cls()
        points = profile.points
        return cls(
            home_search_button=points.home_search_button,
            launch_result_tap=points.launch_result_tap,
            app_search_steps=dict(points.app_search_steps),
            app_action_points={app: dict(actions) for app, actions in points.app_action_points.items()},
        )

    def action_point(self, app: str, action: str) -> Optional[BaseCoordinatePoint]:
        return self.app_action_points.get(app, {}).get(action)

    def set_action_point(self, app: str, action: str, point: BaseCoordinatePoint) -> None:
        self.app_action_points.setdefault(app, {})[action] = point


class LaunchStepHooks:
    """
    Observer for launch steps. The default implementation does nothing;
    the calibration debugger overrides these to pause and screenshot.
    """

    async def before_step(self, step: LaunchStep) -> None:
        return None

    async def after_step(self, step: LaunchStep, probe: FocusProbe) -> None:
        return None

    async def on_step_error(self, step: LaunchStep, error: Exception, probe: FocusProbe) -> None:
        return None


class AppLauncher:
    """Reaches a target app through search, with a home-icon fallback"""

    def __init__(
        self,
        controller: MirrorController,
        settings: AutomationSettings,
        points: Optional[LaunchPoints] = None,
        runtime_context: Optional[RuntimeAppContext] = None,
    ):
        self.controller = controller
        self.settings = settings
        self.points = points or LaunchPoints()
        self.runtime_context = runtime_context or RuntimeAppContext()
        self._no_hooks = LaunchStepHooks()

    def use_profile(self, profile: Optional[BaseCoordinatesProfile]) -> None:
        self.points = LaunchPoints.from_profile(profile)

    # ========== Attempt planning ==========

    def plan_initial_attempt(self, app: str) -> LaunchAttempt:
        flow = get_app_flow(app)
        if not self.settings.use_mirror_shortcuts:
            return LaunchAttempt(number=1, mode=AttemptMode.TAP_ONLY, reason="mirror shortcuts disabled")
        if flow.launch == SearchEntryMode.SEARCH_ICON:
            return LaunchAttempt(number=1, mode=AttemptMode.TAP_ONLY, reason="flow opens search by icon")
        return LaunchAttempt(number=1, mode=AttemptMode.SHORTCUT_PREFERRED, reason="initial attempt")

    def follow_up_attempt(
        self,
        app: str,
        attempt: LaunchAttempt,
        succeeded: bool,
        used_search_shortcut: bool,
    ) -> Optional[LaunchAttempt]:
        """Next attempt to queue after `attempt`, or None to stop searching"""
        if attempt.number >= MAX_SEARCH_ATTEMPTS:
            return None

        if not succeeded:
            return LaunchAttempt(
                number=attempt.number + 1,
                mode=AttemptMode.TAP_ONLY,
                reason=f"attempt {attempt.number} failed",
            )

        flow = get_app_flow(app)
        if (
            FORCE_TAP_ONLY_AFTER_SHORTCUT_ENTER
            and used_search_shortcut
            and flow.search_submit_mode == SearchSubmitMode.ENTER
        ):
            return LaunchAttempt(
                number=attempt.number + 1,
                mode=AttemptMode.TAP_ONLY,
                reason="search shortcut with Return submit is unconfirmed, repeating with taps",
            )
        return None

    # ========== Public entry points ==========

    async def open_app_with_fallback(
        self,
        app: str,
        hooks: Optional[LaunchStepHooks] = None,
    ) -> LaunchOutcome:
        """
        Open `app` and leave it in the foreground.

        Returns:
            LaunchOutcome describing every attempt

        Raises:
            LaunchExhaustedError: search attempts and the home icon fallback all failed
        """
        hooks = hooks or self._no_hooks
        flow = get_app_flow(app)

        if flow.launch == SearchEntryMode.LEGACY_HOME_ICON_ONLY:
            logger.info(f"[AppLauncher] {app}: flow uses home icon only")
            return await self._open_from_home_icon(app, [], hooks, cause=None)

        queue = deque([self.plan_initial_attempt(app)])
        records: List[AttemptRecord] = []
        last_error: Optional[MirrorAutomationError] = None

        while queue:
            attempt = queue.popleft()
            logger.info(
                f"[AppLauncher] {app}: attempt {attempt.number}/{MAX_SEARCH_ATTEMPTS} "
                f"({attempt.mode}) - {attempt.reason}"
            )
            record = AttemptRecord(
                number=attempt.number,
                mode=attempt.mode,
                reason=attempt.reason,
                started_at=datetime.now().isoformat(),
            )
            attempt_start = time.time()

            try:
                if attempt.number > 1:
                    await self._run_step(
                        self._step(LaunchStepKind.RETRY_SWITCH, app, attempt, "Settle before retry"),
                        lambda: self.controller.settle("retry-switch"),
                        hooks,
                    )
                used_shortcut = await self._run_search_attempt(app, attempt, hooks)
                record.success = True
                record.used_search_shortcut = used_shortcut
            except (TransientUIError, HostCommandError) as e:
                last_error = e
                record.error = e.message
                logger.warning(f"[AppLauncher] {app}: attempt {attempt.number} failed: {e.message}")
            finally:
                record.completed_at = datetime.now().isoformat()
                record.duration_ms = int((time.time() - attempt_start) * 1000)
                records.append(record)

            follow_up = self.follow_up_attempt(app, attempt, record.success, record.used_search_shortcut)
            if follow_up is not None:
                queue.append(follow_up)
                continue

            if record.success:
                self.runtime_context.update(app, ActionContext.APP_ACTIVE)
                logger.info(f"[AppLauncher] {app}: opened via search (attempt {attempt.number})")
                return LaunchOutcome(
                    app=app,
                    method="search",
                    used_search_shortcut=any(r.used_search_shortcut for r in records),
                    attempts=records,
                )

        logger.warning(f"[AppLauncher] {app}: search attempts exhausted, using home icon")
        return await self._open_from_home_icon(app, records, hooks, cause=last_error)

    async def open_search_entry(self, app: str, hooks: Optional[LaunchStepHooks] = None) -> bool:
        """Open system search and stop there; returns True if the shortcut was used"""
        hooks = hooks or self._no_hooks
        attempt = self.plan_initial_attempt(app)
        used_shortcut = await self._run_step(
            self._step(LaunchStepKind.ACQUIRE_SEARCH_ENTRY, app, attempt, "Open system search"),
            lambda: self._acquire_search_entry(app, attempt.mode == AttemptMode.SHORTCUT_PREFERRED),
            hooks,
        )
        self.runtime_context.update(app, ActionContext.SEARCH_ENTRY)
        return used_shortcut

    async def go_home_best_effort(self, prefer_shortcuts: bool = True) -> None:
        """Return to the Home Screen by shortcut when allowed, otherwise by swipe"""
        if prefer_shortcuts and self.settings.use_mirror_shortcuts:
            key, modifiers = HOME_SHORTCUT
            if await self.controller.send_host_keystroke(key, modifiers, "home-shortcut"):
                await self.controller.settle("home-shortcut")
                self.runtime_context.update(None, ActionContext.HOME)
                return
            logger.info("[AppLauncher] Home shortcut failed, trying legacy home")
            key, modifiers = LEGACY_HOME_SHORTCUT
            if await self.controller.send_host_keystroke(key, modifiers, "legacy-home"):
                await self.controller.settle("legacy-home")

        await self.controller.drag_rel(HOME_SWIPE_START, HOME_SWIPE_END, "home-swipe")
        await self.controller.settle("home-swipe")
        self.runtime_context.update(None, ActionContext.HOME)

    async def open_app_from_home(self, app: str) -> None:
        """Go Home and tap the app icon (calibrated, else the legacy position)"""
        await self.controller.require_frontmost(f"open-from-home-{app}")
        await self.go_home_best_effort(self.settings.use_mirror_shortcuts)
        await self.controller.require_frontmost(f"home-icon-{app}")

        point = self.points.action_point(app, "homeIcon")
        if point is not None:
            await self.controller.tap_point(point, f"{app} home icon")
        else:
            rel_x, rel_y = LEGACY_HOME_ICON_POINTS[app]
            await self.controller.click_rel(rel_x, rel_y, f"{app} legacy home icon")
        await self.controller.settle(f"open-{app}-from-home")
        self.runtime_context.update(app, ActionContext.APP_ACTIVE)

    # ========== In-app actions ==========

    async def tap_action_point(self, app: str, action: str) -> bool:
        """
        Tap a catalog action: calibrated point, else its fallback tap steps.

        Returns:
            False when the action is optional and nothing could be tapped

        Raises:
            MissingActionPointError: the action is required and not calibrated
        """
        action_id = f"{app}:{action}"
        definition = get_action_definition(action_id)
        point = self.points.action_point(app, action)

        if point is not None:
            await self.controller.tap_point(point, action_id)
            await self.controller.settle(action_id)
            return True

        if definition is not None and definition.fallback_tap_steps:
            logger.info(f"[AppLauncher] {action_id} not calibrated, using fallback taps")
            await self.controller.tap_sequence(definition.fallback_tap_steps, action_id)
            return True

        if is_action_required_for_capture(app, action):
            raise MissingActionPointError(app, [action_id])

        logger.info(f"[AppLauncher] {action_id} not calibrated, skipping optional action")
        return False

    async def run_post_launch_actions(self, app: str) -> None:
        for action_id in get_app_flow(app).post_launch_actions:
            _, action = action_id.split(":", 1)
            await self.tap_action_point(app, action)

    async def run_search_placement(self, app: str) -> None:
        """Focus the app's own search field"""
        flow = get_app_flow(app)

        point = self.points.action_point(app, flow.in_app_search_point) if flow.in_app_search_point else None
        if point is not None:
            await self.controller.tap_point(point, f"{app}:{flow.in_app_search_point}")
            await self.controller.settle("search-placement")
        else:
            steps = self.points.app_search_steps.get(app) or flow.fallback_search_steps
            if steps:
                await self.controller.tap_sequence(steps, f"{app} search steps")
            else:
                logger.info(f"[AppLauncher] {app}: no search placement configured")
        self.runtime_context.update(app, ActionContext.SEARCH_FOCUSED)

    def ensure_required_calibration(self, app: str) -> None:
        """Raise before any UI action if `app` needs action points that are missing"""
        missing = [
            action_id
            for action_id in get_app_flow(app).required_calibration_for_capture
            if self.points.action_point(*action_id.split(":", 1)) is None
        ]
        if missing:
            raise MissingActionPointError(app, missing)

    # ========== Attempt internals ==========

    def _step(self, kind: LaunchStepKind, app: str, attempt: LaunchAttempt, label: str, expected: str = "") -> LaunchStep:
        return LaunchStep(
            id=f"{app}-attempt{attempt.number}-{kind.value}",
            kind=kind,
            app=app,
            attempt=attempt.number,
            label=label,
            expected=expected,
        )

    async def _run_step(
        self,
        step: LaunchStep,
        action: Callable[[], Awaitable[Any]],
        hooks: LaunchStepHooks,
    ) -> Any:
        """
        Run one launch step with focus verified around it.

        Transient UI errors are retried with a short backoff before the
        error reaches the attempt loop.
        """
        await hooks.before_step(step)
        max_tries = self.settings.transient_retries + 1

        for try_number in range(1, max_tries + 1):
            probe = FocusProbe(ensure_phase=step.id)
            try:
                probe.frontmost_before_focus = await self.controller.frontmost_process()
                probe.ensured_frontmost = await self.controller.ensure_mirror_frontmost(step.id)
                probe.frontmost_after_focus = await self.controller.frontmost_process()
                if not probe.ensured_frontmost:
                    raise FocusNotAcquiredError(step.id, probe.frontmost_after_focus)

                probe.frontmost_before_action = probe.frontmost_after_focus
                result = await action()
                probe.frontmost_after_action = await self.controller.frontmost_process()
            except TransientUIError as e:
                if try_number < max_tries:
                    logger.info(
                        f"[AppLauncher] Retrying {step.id} after {e.code} (attempt {try_number + 1}/{max_tries})"
                    )
                    await self.controller.settle(f"{step.id}-backoff", self.settings.retry_backoff_sec * try_number)
                    continue
                await hooks.on_step_error(step, e, probe)
                raise
            except Exception as e:
                await hooks.on_step_error(step, e, probe)
                raise

            await hooks.after_step(step, probe)
            return result

    async def _acquire_search_entry(self, app: str, prefer_shortcuts: bool) -> bool:
        flow = get_app_flow(app)
        await self.go_home_best_effort(prefer_shortcuts)

        if prefer_shortcuts and flow.launch != SearchEntryMode.SEARCH_ICON:
            key, modifiers = SEARCH_SHORTCUT
            if await self.controller.send_host_keystroke(key, modifiers, "search-shortcut"):
                await self.controller.settle("search-shortcut")
                return True
            logger.info(f"[AppLauncher] {app}: search shortcut failed, tapping search button")

        point = self.points.action_point(app, "searchIcon") or self.points.home_search_button
        if point is not None:
            await self.controller.tap_point(point, f"{app} search entry")
        else:
            rel_x, rel_y = DEFAULT_HOME_SEARCH_BUTTON
            await self.controller.click_rel(rel_x, rel_y, "default home search button")
        await self.controller.settle("search-entry-tap")
        return False

    async def _submit_launch(self, app: str) -> None:
        flow = get_app_flow(app)
        if flow.search_submit_mode == SearchSubmitMode.ENTER:
            if not await self.controller.send_host_keystroke("return", [], f"submit-{app}"):
                raise KeystrokeNotConfirmedError("return", await self.controller.frontmost_process())
        else:
            point = self.points.launch_result_tap
            if point is not None:
                await self.controller.tap_point(point, f"{app} launch result")
            else:
                rel_x, rel_y = DEFAULT_LAUNCH_RESULT_TAP
                await self.controller.click_rel(rel_x, rel_y, f"{app} default launch result")

        await self.controller.settle(f"launch-{app}")
        await self.controller.require_frontmost(f"confirm-{app}")

    async def _run_search_attempt(self, app: str, attempt: LaunchAttempt, hooks: LaunchStepHooks) -> bool:
        """idle -> home -> search-entry -> query-typed -> submitted -> confirmed"""
        prefer_shortcuts = attempt.mode == AttemptMode.SHORTCUT_PREFERRED

        used_shortcut = await self._run_step(
            self._step(LaunchStepKind.ACQUIRE_SEARCH_ENTRY, app, attempt, "Open system search",
                       expected="Search field is open"),
            lambda: self._acquire_search_entry(app, prefer_shortcuts),
            hooks,
        )
        self.runtime_context.update(app, ActionContext.SEARCH_ENTRY)

        await self._run_step(
            self._step(LaunchStepKind.CLEAR_FIELD, app, attempt, "Clear search field",
                       expected="Search field is empty"),
            self.controller.clear_field,
            hooks,
        )
        query = APP_LAUNCH_QUERY[app]
        await self._run_step(
            self._step(LaunchStepKind.TYPE_QUERY, app, attempt, f"Type '{query}'",
                       expected=f"'{query}' is the top result"),
            lambda: self.controller.type_text(query, self.settings.fast_step_gap_sec),
            hooks,
        )
        await self._run_step(
            self._step(LaunchStepKind.SUBMIT_LAUNCH, app, attempt, "Submit launch",
                       expected=f"{query} is in the foreground"),
            lambda: self._submit_launch(app),
            hooks,
        )
        return used_shortcut

    async def _open_from_home_icon(
        self,
        app: str,
        records: List[AttemptRecord],
        hooks: LaunchStepHooks,
        cause: Optional[MirrorAutomationError],
    ) -> LaunchOutcome:
        attempt = LaunchAttempt(number=len(records) + 1, mode=AttemptMode.TAP_ONLY, reason="home icon fallback")
        try:
            await self._run_step(
                self._step(LaunchStepKind.HOME_FALLBACK, app, attempt, "Open app from Home Screen icon",
                           expected=f"{APP_LAUNCH_QUERY[app]} is in the foreground"),
                lambda: self.open_app_from_home(app),
                hooks,
            )
        except (TransientUIError, HostCommandError) as e:
            raise LaunchExhaustedError(
                app,
                [record.model_dump() for record in records],
                cause=e.message if cause is None else f"{cause.message}; home icon: {e.message}",
            ) from e

        logger.info(f"[AppLauncher] {app}: opened from home icon")
        return LaunchOutcome(
            app=app,
            method="home-icon",
            used_search_shortcut=any(r.used_search_shortcut for r in records),
            attempts=records,
        )
