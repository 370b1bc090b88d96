"""
Mirror Autofill - Calibration Workflow

Interactive capture of calibration points:
- calibrate: Home Screen Search button only, writes a fresh profile
- calibrate-action: one catalog action merged into the existing profile
- calibrate-all: every catalog action in prerequisite order, navigating the
  phone to each action's context first and persisting once at the end

calibrate-all is a sequence of numbered steps reported through
CalibrationStepHooks so a driver (see calibration_debugger) can pause,
screenshot and judge each one.
"""

import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from app_catalog import (
    ACTION_CALIBRATION_DEFINITIONS,
    DEFAULT_APP_SEARCH_STEPS,
    DEFAULT_LAUNCH_RESULT_TAP,
    get_app_flow,
    make_base_point_from_rel,
    parse_action_id,
    require_action_definition,
)
from app_launcher import AppLauncher, LaunchPoints, LaunchStepHooks
from calibration_prompt import CalibrationPrompt
from geometry import to_absolute, to_relative_within_region
from mirror_controller import MirrorController
from mirror_models import (
    ActionCalibrationDefinition,
    ActionContext,
    BaseCoordinatePoint,
    BaseCoordinatesProfile,
    CalibrationRuntimeState,
    CalibrationStepDescriptor,
    CalibrationStepKind,
    Region,
    WindowBounds,
)
from profile_store import ProfileStore, build_profile, upsert_action_point
from settings import AutomationSettings
from utils.error_handler import (
    CALIBRATE_ACTION_COMMAND,
    CALIBRATE_COMMAND,
    CircularPrerequisiteError,
)

logger = logging.getLogger(__name__)

HOME_SEARCH_LABEL = "iPhone Home Screen Search button"


def order_calibration_definitions(
    definitions: Sequence[ActionCalibrationDefinition] = ACTION_CALIBRATION_DEFINITIONS,
) -> List[ActionCalibrationDefinition]:
    """
    Depth-first order in which every prerequisite precedes its dependents.

    Entries flagged skip_in_calibrate_all are left out; prerequisites that
    are not among the remaining entries are ignored.

    Raises:
        CircularPrerequisiteError: naming an action on the cycle
    """
    candidates = [d for d in definitions if not d.skip_in_calibrate_all]
    indexed = {d.id: d for d in candidates}
    resolved = set()
    visiting = set()
    ordered: List[ActionCalibrationDefinition] = []

    def visit(definition: ActionCalibrationDefinition) -> None:
        if definition.id in resolved:
            return
        if definition.id in visiting:
            raise CircularPrerequisiteError(definition.id)
        visiting.add(definition.id)
        for prerequisite_id in definition.prerequisites:
            prerequisite = indexed.get(prerequisite_id)
            if prerequisite is None:
                logger.debug(f"[CalibrationWorkflow] {definition.id}: ignoring prerequisite {prerequisite_id}")
                continue
            visit(prerequisite)
        visiting.discard(definition.id)
        resolved.add(definition.id)
        ordered.append(definition)

    for definition in candidates:
        visit(definition)
    return ordered


class CalibrationStepHooks:
    """No-op observer for calibrate-all steps"""

    async def before_step(self, step: CalibrationStepDescriptor, state: CalibrationRuntimeState) -> None:
        return None

    async def after_step(self, step: CalibrationStepDescriptor, state: CalibrationRuntimeState) -> None:
        return None

    async def on_step_error(
        self,
        step: CalibrationStepDescriptor,
        error: Exception,
        state: CalibrationRuntimeState,
    ) -> None:
        return None

    def build_launch_hooks(
        self,
        step: CalibrationStepDescriptor,
        state: CalibrationRuntimeState,
    ) -> Optional[LaunchStepHooks]:
        return None


class CalibrationWorkflow:
    """Captures calibration points from the operator's mouse"""

    def __init__(
        self,
        controller: MirrorController,
        launcher: AppLauncher,
        store: ProfileStore,
        prompt: CalibrationPrompt,
        settings: AutomationSettings,
    ):
        self.controller = controller
        self.launcher = launcher
        self.store = store
        self.prompt = prompt
        self.settings = settings

    # ========== Shared pieces ==========

    async def capture_point(
        self,
        label: str,
        region: Region,
        remediation: str,
        instructions: Optional[str] = None,
        tap_after_capture: bool = False,
    ) -> BaseCoordinatePoint:
        """
        Prompt for a point and convert it to content-region fractions.

        The content region is read again after the operator confirms so a
        window moved during the prompt is measured where it now is.

        Raises:
            PointOutOfRegionError: the pointer was outside the content region
            OperatorCanceledError: the prompt was interrupted
        """
        sample = await self.prompt.capture(label, region, instructions)
        region = await self.controller.get_content_region()
        rel_x, rel_y = to_relative_within_region((sample.x, sample.y), region, label, remediation)
        point = make_base_point_from_rel((rel_x, rel_y), (sample.x, sample.y))
        logger.info(
            f"[CalibrationWorkflow] Captured {label}: rel=({rel_x:.6f}, {rel_y:.6f}) abs=({sample.x:g}, {sample.y:g})"
        )

        if tap_after_capture:
            await self.controller.click_rel(point.rel_x, point.rel_y, f"confirm {label}")
            await self.controller.settle("calibration-point-tap", self.settings.fast_step_gap_sec)
        return point

    async def _measure(self, state: Optional[CalibrationRuntimeState] = None) -> Tuple[WindowBounds, Region]:
        await self.controller.focus_mirroring()
        bounds = await self.controller.get_mirror_window_bounds()
        region = await self.controller.get_content_region(bounds)
        if state is not None:
            state.mirror_window = bounds
            state.content_region = region
        logger.info(
            f"[CalibrationWorkflow] Using content region: x={region.x} y={region.y} "
            f"w={region.width} h={region.height}"
        )
        return bounds, region

    async def _write_profile(self, profile: BaseCoordinatesProfile) -> Optional[Path]:
        screenshot = self.settings.content_screenshot_path
        screenshot.parent.mkdir(parents=True, exist_ok=True)
        await self.controller.screenshot_content(screenshot)
        logger.info(f"[CalibrationWorkflow] Wrote {screenshot}")

        snapshot = self.store.persist(profile)
        logger.info(f"[CalibrationWorkflow] Wrote {self.store.path}")
        if snapshot is not None:
            logger.info(f"[CalibrationWorkflow] Backed up previous calibration to: {snapshot}")
        return snapshot

    def _launch_result_point(self, region: Region) -> BaseCoordinatePoint:
        return make_base_point_from_rel(DEFAULT_LAUNCH_RESULT_TAP, to_absolute(DEFAULT_LAUNCH_RESULT_TAP, region))

    # ========== calibrate ==========

    async def calibrate_home_search(self) -> BaseCoordinatesProfile:
        """Capture the Home Search button and write a new profile"""
        self.controller.preflight()
        existing = self.store.load_existing()
        _, region = await self._measure()

        home_search_button = await self.capture_point(HOME_SEARCH_LABEL, region, CALIBRATE_COMMAND)
        bounds = await self.controller.get_mirror_window_bounds()
        region = await self.controller.get_content_region(bounds)

        profile = build_profile(
            mirror_window=bounds,
            content_region=region,
            home_search_button=home_search_button,
            launch_result_tap=self._launch_result_point(region),
            app_search_steps=existing.points.app_search_steps if existing else DEFAULT_APP_SEARCH_STEPS,
            app_action_points=existing.points.app_action_points if existing else None,
        )
        await self._write_profile(profile)
        return profile

    # ========== calibrate-action ==========

    async def calibrate_action(self, action_id: str) -> BaseCoordinatePoint:
        """
        Capture one catalog action and merge it into the existing profile.

        Raises:
            UnknownActionError: action_id is not in the catalog
            MissingProfileError: there is no profile to merge into
        """
        app, action = parse_action_id(action_id)
        definition = require_action_definition(f"{app}:{action}")
        self.controller.preflight()
        profile = self.store.load()

        _, region = await self._measure()
        logger.info(f"[CalibrationWorkflow] Calibrating action point '{definition.label}' ({definition.id})")
        point = await self.capture_point(
            f"{definition.label} ({definition.id})",
            region,
            f"{CALIBRATE_ACTION_COMMAND} {definition.id}",
            instructions=definition.capture_hint,
        )

        snapshot = self.store.persist(upsert_action_point(profile, app, action, point))
        logger.info(f"[CalibrationWorkflow] Updated {self.store.path} with {definition.id}")
        logger.info(f"[CalibrationWorkflow]   rel={point.rel_x:.6f},{point.rel_y:.6f}")
        if snapshot is not None:
            logger.info(f"[CalibrationWorkflow] Backed up previous calibration to: {snapshot}")
        return point

    # ========== calibrate-all ==========

    async def transition_to_context(
        self,
        definition: ActionCalibrationDefinition,
        runtime_context,
        launch_hooks: Optional[LaunchStepHooks] = None,
    ) -> None:
        """Drive the phone to the context `definition` is captured in"""
        app = definition.app
        target = definition.auto_navigate_to or ActionContext.APP_ACTIVE.value
        if runtime_context.matches(app, target):
            logger.debug(f"[CalibrationWorkflow] {definition.id}: already in {target}")
            return

        logger.info(
            f"[CalibrationWorkflow] transition({definition.id}): "
            f"{runtime_context.current_context or 'none'} -> {target}"
        )
        if target == ActionContext.HOME:
            await self.launcher.go_home_best_effort(self.settings.use_mirror_shortcuts)
        elif target == ActionContext.SEARCH_ENTRY:
            await self.launcher.open_search_entry(app, launch_hooks)
        elif target == ActionContext.APP_ACTIVE:
            await self.launcher.open_app_with_fallback(app, launch_hooks)
        elif target == ActionContext.SEARCH_FOCUSED:
            await self.launcher.open_app_with_fallback(app, launch_hooks)
            if get_app_flow(app).post_launch_actions:
                await self.launcher.run_post_launch_actions(app)
        elif runtime_context.current_app != app:
            await self.launcher.open_app_with_fallback(app, launch_hooks)

        runtime_context.update(app, target)

    async def _run_step(
        self,
        step: CalibrationStepDescriptor,
        state: CalibrationRuntimeState,
        hooks: CalibrationStepHooks,
        action: Callable[[], Awaitable[None]],
    ) -> None:
        logger.debug(f"[CalibrationWorkflow] Step {step.index}/{step.total}: {step.id}")
        try:
            await hooks.before_step(step, state)
            await action()
            await hooks.after_step(step, state)
        except Exception as e:
            await hooks.on_step_error(step, e, state)
            raise

    async def calibrate_all(self, hooks: Optional[CalibrationStepHooks] = None) -> BaseCoordinatesProfile:
        """
        Capture the Home Search button and every catalog action.

        Returns:
            The persisted profile
        """
        hooks = hooks or CalibrationStepHooks()
        existing = self.store.load_existing()
        definitions = order_calibration_definitions()

        self.launcher.use_profile(existing)
        self.launcher.runtime_context.reset()
        points: LaunchPoints = self.launcher.points
        state = CalibrationRuntimeState(runtime_context=self.launcher.runtime_context)

        total = len(definitions) * 2 + 4
        counter = iter(range(1, total + 1))

        def next_step(**fields) -> CalibrationStepDescriptor:
            return CalibrationStepDescriptor(index=next(counter), total=total, **fields)

        home_search_button: Optional[BaseCoordinatePoint] = None
        profile: Optional[BaseCoordinatesProfile] = None

        async def preflight():
            self.controller.preflight()

        await self._run_step(
            next_step(
                id="preflight-check",
                kind=CalibrationStepKind.PREFLIGHT,
                label="Preflight checks",
                expected="Verify required automation commands are available before calibration begins.",
            ),
            state, hooks, preflight,
        )

        async def focus():
            await self._measure(state)
            logger.info(f"[CalibrationWorkflow] Total actions to capture: {len(definitions)}")

        await self._run_step(
            next_step(
                id="focus-mirroring",
                kind=CalibrationStepKind.FOCUS_MIRRORING,
                label="Focus iPhone Mirroring",
                expected="Bring iPhone Mirroring frontmost and compute mirror/content bounds.",
            ),
            state, hooks, focus,
        )

        async def capture_home():
            nonlocal home_search_button
            home_search_button = await self.capture_point(
                HOME_SEARCH_LABEL, state.content_region, CALIBRATE_COMMAND, tap_after_capture=True
            )
            points.home_search_button = home_search_button
            state.runtime_context.update(None, ActionContext.SEARCH_ENTRY)

        await self._run_step(
            next_step(
                id="capture-home-search-button",
                kind=CalibrationStepKind.CAPTURE_HOME_SEARCH_BUTTON,
                label="Capture Home Search button",
                expected="Capture and tap the iPhone Home Screen Search button point.",
            ),
            state, hooks, capture_home,
        )

        for definition in definitions:
            target = definition.auto_navigate_to or ActionContext.APP_ACTIVE.value
            state.current_definition_id = definition.id
            transition_step = next_step(
                id=f"transition:{definition.id}",
                kind=CalibrationStepKind.TRANSITION_CONTEXT,
                label=f"Transition context for {definition.id}",
                expected=f"Auto-navigate to '{target}' before capturing {definition.id}.",
                definition_id=definition.id,
                app=definition.app,
                action=definition.action,
                target_context=target,
            )

            async def transition(definition=definition, transition_step=transition_step):
                await self.transition_to_context(
                    definition,
                    state.runtime_context,
                    hooks.build_launch_hooks(transition_step, state),
                )

            await self._run_step(transition_step, state, hooks, transition)

            async def capture_action(definition=definition):
                point = await self.capture_point(
                    f"{definition.label} ({definition.id})",
                    state.content_region,
                    f"{CALIBRATE_ACTION_COMMAND} {definition.id}",
                    instructions=definition.capture_hint,
                    tap_after_capture=True,
                )
                points.set_action_point(definition.app, definition.action, point)

            await self._run_step(
                next_step(
                    id=f"capture:{definition.id}",
                    kind=CalibrationStepKind.CAPTURE_ACTION_POINT,
                    label=f"Capture {definition.id}",
                    expected=f"Capture and tap the point for {definition.label} ({definition.id}).",
                    definition_id=definition.id,
                    app=definition.app,
                    action=definition.action,
                    target_context=target,
                ),
                state, hooks, capture_action,
            )

        state.current_definition_id = None

        async def persist():
            nonlocal profile
            profile = build_profile(
                mirror_window=state.mirror_window,
                content_region=state.content_region,
                home_search_button=home_search_button,
                launch_result_tap=self._launch_result_point(state.content_region),
                app_search_steps=existing.points.app_search_steps if existing else DEFAULT_APP_SEARCH_STEPS,
                app_action_points=points.app_action_points,
            )
            await self._write_profile(profile)
            logger.info(
                f"[CalibrationWorkflow] Configured {len(definitions) + 1} calibration points in {self.store.path}"
            )

        await self._run_step(
            next_step(
                id="persist-profile",
                kind=CalibrationStepKind.PERSIST_PROFILE,
                label="Persist calibration profile",
                expected="Write updated calibration profile, screenshot, and backup snapshot.",
            ),
            state, hooks, persist,
        )
        return profile
