"""
Mirror Autofill - Checkpointed Calibration (debug-calibrate-all)

Runs calibrate-all one step at a time. Before each step the operator presses
Enter; after it a content-region screenshot is saved and the operator marks
the step pass or fail. App launches during context transitions are broken
into their launch sub-steps. Any failure writes a JSON report with the last
step, live host probes and the settings in effect.
"""

import asyncio
import logging
import re
import sys
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

from pydantic import BaseModel, Field

from app_catalog import DEBUG_RESUME_BUTTON
from app_launcher import LaunchStepHooks
from calibration_prompt import StdinLineReader
from calibration_workflow import CalibrationStepHooks, CalibrationWorkflow
from mirror_controller import MirrorController
from mirror_models import (
    ActionContext,
    CalibrationRuntimeState,
    CalibrationStepDescriptor,
    CalibrationStepKind,
    FocusProbe,
    LaunchStep,
    Region,
    RuntimeAppContext,
    WindowBounds,
)
from settings import AutomationSettings
from utils.error_handler import (
    ConfigurationError,
    MirrorAutomationError,
    OperatorMarkedStepFailedError,
)

logger = logging.getLogger(__name__)

PREFIX = "[debug-calibrate-all]"
TIMEOUT_ANSWER = "__timeout__"
LAUNCH_SUB_STEP_CONTEXTS = (ActionContext.APP_ACTIVE.value, ActionContext.SEARCH_FOCUSED.value)


# =============================================================================
# Report models
# =============================================================================

class LaunchSubStepSnapshot(BaseModel):
    """A launch step as seen from inside a calibrate-all transition"""
    display_index: str  # "<main index>.<sub index>"
    id: str
    kind: str
    label: str
    expected: str = ""
    app: str
    main_step_id: str
    main_step_label: str
    attempt: int = 0
    checkpoint_screenshot: Optional[str] = None
    focus: Optional[FocusProbe] = None


class StateSnapshot(BaseModel):
    runtime_context: RuntimeAppContext
    content_region: Optional[Region] = None
    mirror_window: Optional[WindowBounds] = None
    current_definition_id: Optional[str] = None


class ProbeSnapshot(BaseModel):
    """Live host readings taken while writing a failure report"""
    frontmost_process: Optional[str] = None
    frontmost_window: Optional[str] = None
    frontmost_window_bounds: Optional[WindowBounds] = None
    mirror_window_bounds: Optional[WindowBounds] = None
    content_region: Optional[Region] = None
    errors: List[str] = Field(default_factory=list)


class ErrorSnapshot(BaseModel):
    type: str
    message: str
    code: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    traceback: Optional[str] = None


class FailureReport(BaseModel):
    timestamp: str
    mode: str = "debug-calibrate-all"
    failure_kind: str  # "operator-fail", "operator-canceled" or "runtime-error"
    operator_verdict: str  # "pass", "fail" or "not-recorded"
    main_step: Optional[CalibrationStepDescriptor] = None
    main_step_screenshot: Optional[str] = None
    sub_step: Optional[LaunchSubStepSnapshot] = None
    runtime_state: Optional[StateSnapshot] = None
    probes: ProbeSnapshot
    settings: Dict[str, Any]
    error: ErrorSnapshot


# =============================================================================
# Helpers
# =============================================================================

def require_interactive_terminal(stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None) -> None:
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    if stdin.isatty() and stdout.isatty():
        return
    raise ConfigurationError(
        "debug-calibrate-all requires an interactive TTY (stdin/stdout)",
        code="NOT_INTERACTIVE",
        hint="Run it directly in a terminal, or use calibrate-all for an unattended run.",
    )


def sanitize_checkpoint_token(value: str) -> str:
    token = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return token or "step"


def snapshot_state(state: CalibrationRuntimeState) -> StateSnapshot:
    return StateSnapshot(
        runtime_context=state.runtime_context.model_copy(),
        content_region=state.content_region,
        mirror_window=state.mirror_window,
        current_definition_id=state.current_definition_id,
    )


def should_use_launch_sub_steps(step: CalibrationStepDescriptor, state: CalibrationRuntimeState) -> bool:
    """True when a transition step will run an app launch the operator should see step by step"""
    if step.kind != CalibrationStepKind.TRANSITION_CONTEXT:
        return False
    if not step.app or step.target_context not in LAUNCH_SUB_STEP_CONTEXTS:
        return False
    return not state.runtime_context.matches(step.app, step.target_context)


def failure_report_path(report_dir: Path, now: Optional[datetime] = None) -> Path:
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return Path(report_dir) / f"debug-calibrate-all-failure-{stamp}.json"


# =============================================================================
# Driver
# =============================================================================

class _LaunchSubSteps(LaunchStepHooks):
    """Launch hooks for one transition step; numbered <main>.<n>"""

    def __init__(self, driver: "CheckpointDriver", main_step: CalibrationStepDescriptor, state: StateSnapshot):
        self.driver = driver
        self.main_step = main_step
        self.state = state
        self.sub_index = 0

    def _snapshot(self, step: LaunchStep, probe: Optional[FocusProbe] = None) -> LaunchSubStepSnapshot:
        return LaunchSubStepSnapshot(
            display_index=f"{self.main_step.index}.{max(self.sub_index, 1)}",
            id=step.id,
            kind=step.kind,
            label=step.label,
            expected=step.expected,
            app=step.app,
            main_step_id=self.main_step.id,
            main_step_label=self.main_step.label,
            attempt=step.attempt,
            focus=probe.model_copy() if probe else None,
        )

    async def before_step(self, step: LaunchStep) -> None:
        self.sub_index += 1
        driver = self.driver
        driver.latest_step = self.main_step
        driver.latest_state = self.state
        driver.latest_sub_step = self._snapshot(step)
        driver.verdict = "not-recorded"
        sub = driver.latest_sub_step
        driver.say("")
        driver.say(f"{PREFIX} Step {sub.display_index}: {sub.label}")
        driver.say(f"{PREFIX} Sub-step ID: {sub.id}")
        driver.say(f"{PREFIX} Expected next action: {sub.expected}")
        await driver.prompt_line(f"{PREFIX} Press Enter to execute this sub-step... ")

    async def after_step(self, step: LaunchStep, probe: FocusProbe) -> None:
        driver = self.driver
        current = self._snapshot(step, probe)
        screenshot = await driver.capture_checkpoint(self.main_step, self.state, current)
        if screenshot is not None:
            current.checkpoint_screenshot = str(screenshot)
        driver.latest_sub_step = current

        if await driver.prompt_verdict(f"{PREFIX} Step {current.display_index} result?"):
            driver.verdict = "pass"
            return
        driver.verdict = "fail"
        raise OperatorMarkedStepFailedError(self.main_step.id, current.id)

    async def on_step_error(self, step: LaunchStep, error: Exception, probe: FocusProbe) -> None:
        self.driver.latest_sub_step = self._snapshot(step, probe)


class CheckpointDriver(CalibrationStepHooks):
    """Operator-paced calibrate-all with screenshots and a failure report"""

    def __init__(
        self,
        controller: MirrorController,
        settings: AutomationSettings,
        line_reader=None,
        stream: Optional[TextIO] = None,
    ):
        self.controller = controller
        self.settings = settings
        self.line_reader = line_reader or StdinLineReader()
        self.stream = stream or sys.stdout

        self.checkpoint_sequence = 0
        self.latest_step: Optional[CalibrationStepDescriptor] = None
        self.latest_step_screenshot: Optional[str] = None
        self.latest_sub_step: Optional[LaunchSubStepSnapshot] = None
        self.latest_state: Optional[StateSnapshot] = None
        self.verdict = "not-recorded"

    # ========== Terminal I/O ==========

    def say(self, text: str) -> None:
        self.stream.write(f"{text}\n")
        self.stream.flush()

    async def prompt_line(self, text: str, timeout: Optional[float] = None) -> str:
        """Read one answer; returns TIMEOUT_ANSWER when `timeout` seconds pass first (at once for 0)"""
        self.stream.write(text)
        self.stream.flush()
        if timeout is None:
            return await self.line_reader.readline()
        if timeout <= 0:
            self.say("")
            return TIMEOUT_ANSWER
        try:
            return await asyncio.wait_for(self.line_reader.readline(), timeout)
        except asyncio.TimeoutError:
            self.say("")
            return TIMEOUT_ANSWER

    async def prompt_verdict(self, prefix: str) -> bool:
        while True:
            answer = (await self.prompt_line(f"{prefix} (p=pass, f=fail): ")).strip().lower()
            if answer == "p":
                return True
            if answer == "f":
                return False
            self.say(f"{PREFIX} Invalid input. Enter 'p' for pass or 'f' for fail.")

    # ========== Checkpoints ==========

    async def capture_checkpoint(
        self,
        main_step: CalibrationStepDescriptor,
        state: Optional[StateSnapshot],
        sub_step: Optional[LaunchSubStepSnapshot] = None,
    ) -> Optional[Path]:
        """
        Screenshot the content region for a finished step.

        Failures are reported and skipped; a missing screenshot never stops the run.
        """
        self.checkpoint_sequence += 1
        name = (
            f"debug-calibrate-all-{self.checkpoint_sequence:03d}"
            f"-step-{main_step.index:02d}-{sanitize_checkpoint_token(main_step.id)}"
        )
        if sub_step is not None:
            name += (
                f"-sub-{sanitize_checkpoint_token(sub_step.display_index)}"
                f"-{sanitize_checkpoint_token(sub_step.id)}"
            )
        path = Path(self.settings.checkpoint_dir) / f"{name}.png"
        phase = f"debug-calibrate-all:checkpoint:{sub_step.id if sub_step else main_step.id}"

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if not await self.controller.ensure_mirror_frontmost(phase):
                logger.error(f"{PREFIX} Checkpoint screenshot skipped (could not focus mirror): {phase}")
                return None
            region = state.content_region if state and state.content_region else None
            region = region or await self.controller.get_content_region()
            await self.controller.bridge.capture_region(region, path)
        except (MirrorAutomationError, OSError) as e:
            logger.error(f"{PREFIX} Failed to capture checkpoint screenshot: {e}")
            return None

        self.say(f"{PREFIX} Checkpoint screenshot: {path}")
        return path

    async def offer_resume_recovery(
        self,
        main_step: CalibrationStepDescriptor,
        state: StateSnapshot,
    ) -> None:
        """After focusing, optionally tap the mirror's Resume button and wait for Touch ID"""
        while True:
            choice = (await self.prompt_line(
                f"{PREFIX} If mirror shows Resume/Locked, type 'r' then Enter to click Resume; "
                "otherwise press Enter to continue: "
            )).strip().lower()
            if not choice:
                return
            if choice == "r":
                break
            self.say(f"{PREFIX} Invalid input. Press Enter to skip recovery or type 'r' to run Resume recovery.")

        rel_x, rel_y = DEBUG_RESUME_BUTTON
        self.say(f"{PREFIX} Running mirror recovery click at rel=({rel_x}, {rel_y})")
        await self.controller.require_frontmost("debug-calibrate-all:resume-recovery")
        await self.controller.click_rel(rel_x, rel_y, "resume-recovery")
        await self.controller.settle("debug-resume-recovery-click", self.settings.fast_step_gap_sec)

        wait = self.settings.touch_id_wait_sec
        answer = await self.prompt_line(
            f"{PREFIX} Use TouchID now, press Enter when done (auto-continue in {wait:g}s): ",
            timeout=wait,
        )
        if answer == TIMEOUT_ANSWER:
            self.say(f"{PREFIX} TouchID wait timed out; continuing recovery flow.")
        screenshot = await self.capture_checkpoint(main_step, state)
        if screenshot is not None:
            self.say(f"{PREFIX} Post-recovery checkpoint screenshot: {screenshot}")

    # ========== Calibration hooks ==========

    async def before_step(self, step: CalibrationStepDescriptor, state: CalibrationRuntimeState) -> None:
        self.latest_step = step.model_copy()
        self.latest_step_screenshot = None
        self.latest_state = snapshot_state(state)
        self.latest_sub_step = None
        self.verdict = "not-recorded"
        if should_use_launch_sub_steps(step, state):
            return

        self.say("")
        self.say(f"{PREFIX} Step {step.index}/{step.total}: {step.label}")
        self.say(f"{PREFIX} Step ID: {step.id}")
        self.say(f"{PREFIX} Expected next action: {step.expected}")
        await self.prompt_line(f"{PREFIX} Press Enter to execute this step... ")

    async def after_step(self, step: CalibrationStepDescriptor, state: CalibrationRuntimeState) -> None:
        self.latest_step = step.model_copy()
        self.latest_state = snapshot_state(state)
        if self.latest_sub_step is not None and self.latest_sub_step.main_step_id == step.id:
            # Judged sub-step by sub-step
            if self.verdict == "not-recorded":
                self.verdict = "pass"
            return

        if step.kind == CalibrationStepKind.FOCUS_MIRRORING:
            await self.offer_resume_recovery(self.latest_step, self.latest_state)

        screenshot = await self.capture_checkpoint(self.latest_step, self.latest_state)
        if screenshot is not None:
            self.latest_step_screenshot = str(screenshot)

        if await self.prompt_verdict(f"{PREFIX} Step {step.index}/{step.total} result?"):
            self.verdict = "pass"
            return
        self.verdict = "fail"
        raise OperatorMarkedStepFailedError(step.id)

    async def on_step_error(
        self,
        step: CalibrationStepDescriptor,
        error: Exception,
        state: CalibrationRuntimeState,
    ) -> None:
        self.latest_step = step.model_copy()
        self.latest_state = snapshot_state(state)

    def build_launch_hooks(
        self,
        step: CalibrationStepDescriptor,
        state: CalibrationRuntimeState,
    ) -> Optional[LaunchStepHooks]:
        if not should_use_launch_sub_steps(step, state):
            return None
        return _LaunchSubSteps(self, step.model_copy(), snapshot_state(state))

    # ========== Failure report ==========

    async def probe_host(self) -> ProbeSnapshot:
        probes = ProbeSnapshot()
        bridge = self.controller.bridge

        try:
            probes.frontmost_process = await bridge.get_frontmost_process_name()
        except MirrorAutomationError as e:
            probes.errors.append(f"frontmost_process: {e.message}")
        try:
            probes.frontmost_window, probes.frontmost_window_bounds = await bridge.query_frontmost_window_bounds()
        except MirrorAutomationError as e:
            probes.errors.append(f"frontmost_window_bounds: {e.message}")
        try:
            probes.mirror_window_bounds = await self.controller.get_mirror_window_bounds()
        except MirrorAutomationError as e:
            probes.errors.append(f"mirror_window_bounds: {e.message}")

        if self.latest_state is not None and self.latest_state.content_region is not None:
            probes.content_region = self.latest_state.content_region
        elif probes.mirror_window_bounds is not None:
            try:
                probes.content_region = await self.controller.get_content_region(probes.mirror_window_bounds)
            except MirrorAutomationError as e:
                probes.errors.append(f"content_region: {e.message}")
        return probes

    async def build_failure_report(self, error: BaseException) -> FailureReport:
        if isinstance(error, OperatorMarkedStepFailedError):
            failure_kind = "operator-fail"
        elif isinstance(error, asyncio.CancelledError):
            failure_kind = "operator-canceled"
        else:
            failure_kind = "runtime-error"
        return FailureReport(
            timestamp=datetime.now().isoformat(),
            failure_kind=failure_kind,
            operator_verdict=self.verdict,
            main_step=self.latest_step,
            main_step_screenshot=self.latest_step_screenshot,
            sub_step=self.latest_sub_step,
            runtime_state=self.latest_state,
            probes=await self.probe_host(),
            settings=self.settings.model_dump(mode="json"),
            error=ErrorSnapshot(
                type=type(error).__name__,
                message=getattr(error, "message", str(error)),
                code=getattr(error, "code", None),
                details=getattr(error, "details", {}) or {},
                traceback="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            ),
        )

    def write_failure_report(self, report: FailureReport) -> Path:
        path = failure_report_path(self.settings.report_dir)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(report.model_dump_json(indent=2))
            f.write("\n")
        return path

    def print_failure_summary(self, report: FailureReport, path: Path) -> None:
        lines = ["", f"{PREFIX} Failure detected."]
        if report.sub_step is not None:
            lines.append(f"{PREFIX} Sub-step: {report.sub_step.display_index} ({report.sub_step.id})")
            lines.append(f"{PREFIX} Expected: {report.sub_step.expected}")
            focus = report.sub_step.focus
            if focus is not None:
                lines.append(f"{PREFIX} Launch focus phase: {focus.ensure_phase}")
                lines.append(f"{PREFIX} Launch focus ensured: {focus.ensured_frontmost}")
                if focus.frontmost_after_action:
                    lines.append(f"{PREFIX} Launch frontmost after action: {focus.frontmost_after_action}")
        elif report.main_step is not None:
            lines.append(f"{PREFIX} Step: {report.main_step.index}/{report.main_step.total} ({report.main_step.id})")
            lines.append(f"{PREFIX} Expected: {report.main_step.expected}")
        lines.append(f"{PREFIX} Failure kind: {report.failure_kind}")
        lines.append(f"{PREFIX} Operator verdict: {report.operator_verdict}")
        if report.probes.frontmost_process:
            lines.append(f"{PREFIX} Frontmost process: {report.probes.frontmost_process}")
        if report.probes.errors:
            lines.append(f"{PREFIX} Probe warnings: {' | '.join(report.probes.errors)}")
        lines.append(f"{PREFIX} Report saved: {path}")
        for line in lines:
            self.say(line)

    # ========== Entry point ==========

    async def run(self, workflow: CalibrationWorkflow) -> None:
        """
        Run calibrate-all under operator checkpoints.

        Raises:
            The error that stopped the run, after its failure report is written
        """
        self.say(f"{PREFIX} Starting checkpointed calibration run.")
        try:
            await workflow.calibrate_all(self)
        except (Exception, asyncio.CancelledError) as e:
            report = await self.build_failure_report(e)
            path = self.write_failure_report(report)
            self.print_failure_summary(report, path)
            logger.error(f"{PREFIX} Stopped after {report.failure_kind}. Report: {path}")
            raise
        self.say(f"{PREFIX} Completed successfully.")
