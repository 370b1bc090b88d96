"""
Mirror Autofill - Calibration Profile Store

Loads, validates and persists the base-coordinate calibration profile.
Raw JSON is validated once here; the rest of the code only ever sees a
BaseCoordinatesProfile.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from app_catalog import (
    ACTION_DEFINITIONS_BY_ID,
    DEFAULT_APP_SEARCH_STEPS,
    DEFAULT_LAUNCH_RESULT_TAP,
)
from mirror_models import (
    BaseCoordinatePoint,
    BaseCoordinatesProfile,
    CURRENT_PROFILE_VERSION,
    ProfilePoints,
    Region,
    WindowBounds,
    utc_timestamp,
)
from utils.error_handler import InvalidProfileError, MissingProfileError

logger = logging.getLogger(__name__)


def snapshot_path_for(path: Path, stamp: Optional[str] = None) -> Path:
    """
    <stem>.snapshot-<timestamp>.json next to the profile, ':' and '.' made filename-safe.

    A numeric suffix is added when a snapshot with the same timestamp
    already exists, so an earlier snapshot is never replaced.
    """
    stamp = (stamp or utc_timestamp()).replace(":", "-").replace(".", "-")
    candidate = path.with_name(f"{path.stem}.snapshot-{stamp}.json")
    counter = 1
    while candidate.exists():
        candidate = path.with_name(f"{path.stem}.snapshot-{stamp}-{counter}.json")
        counter += 1
    return candidate


def parse_profile(raw: Any, source: Optional[str] = None) -> BaseCoordinatesProfile:
    """
    Validate raw JSON data into a profile.

    Args:
        raw: Decoded JSON value
        source: File path for error messages

    Returns:
        Validated profile with unknown action points removed

    Raises:
        InvalidProfileError: naming the first offending field
    """
    if not isinstance(raw, dict):
        raise InvalidProfileError("profile", "expected a JSON object", source)

    try:
        profile = BaseCoordinatesProfile.model_validate(raw)
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(["profile", *[str(part) for part in error["loc"]]])
        raise InvalidProfileError(field, error["msg"], source) from e

    return _drop_unknown_action_points(profile)


def _drop_unknown_action_points(profile: BaseCoordinatesProfile) -> BaseCoordinatesProfile:
    known: Dict[str, Dict[str, BaseCoordinatePoint]] = {}
    for app, actions in profile.points.app_action_points.items():
        for action, point in actions.items():
            if f"{app}:{action}" not in ACTION_DEFINITIONS_BY_ID:
                logger.debug(f"[ProfileStore] Ignoring unknown action point {app}:{action}")
                continue
            known.setdefault(app, {})[action] = point
    profile.points.app_action_points = known
    return profile


def get_action_point(
    profile: Optional[BaseCoordinatesProfile],
    app: str,
    action: str,
) -> Optional[BaseCoordinatePoint]:
    if profile is None:
        return None
    return profile.points.app_action_points.get(app, {}).get(action)


def upsert_action_point(
    profile: BaseCoordinatesProfile,
    app: str,
    action: str,
    point: BaseCoordinatePoint,
) -> BaseCoordinatesProfile:
    """Return a copy with one action point set and generatedAt bumped"""
    updated = profile.model_copy(deep=True)
    updated.points.app_action_points.setdefault(app, {})[action] = point.model_copy()
    updated.generated_at = utc_timestamp()
    return updated


def build_profile(
    mirror_window: WindowBounds,
    content_region: Region,
    home_search_button: BaseCoordinatePoint,
    launch_result_tap: Optional[BaseCoordinatePoint] = None,
    app_search_steps: Optional[Dict[str, str]] = None,
    app_action_points: Optional[Dict[str, Dict[str, BaseCoordinatePoint]]] = None,
) -> BaseCoordinatesProfile:
    """Assemble a fresh profile at the current version"""
    if launch_result_tap is None:
        rel_x, rel_y = DEFAULT_LAUNCH_RESULT_TAP
        launch_result_tap = BaseCoordinatePoint(rel_x=rel_x, rel_y=rel_y)

    return BaseCoordinatesProfile(
        version=CURRENT_PROFILE_VERSION,
        generated_at=utc_timestamp(),
        mirror_window=mirror_window,
        content_region=content_region,
        points=ProfilePoints(
            home_search_button=home_search_button,
            launch_result_tap=launch_result_tap,
            app_search_steps=dict(app_search_steps or DEFAULT_APP_SEARCH_STEPS),
            app_action_points=app_action_points or {},
        ),
    )


class ProfileStore:
    """
    File-backed calibration profile with a load cache.

    Every overwrite first renames the existing file to a timestamped
    snapshot so earlier calibrations are never lost.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._cache: Optional[BaseCoordinatesProfile] = None
        logger.debug(f"[ProfileStore] Initialized (path: {self.path})")

    def load(self) -> BaseCoordinatesProfile:
        """
        Load and validate the profile.

        Raises:
            MissingProfileError: file absent or not JSON
            InvalidProfileError: schema or invariant violation
        """
        if self._cache is not None:
            return self._cache

        if not self.path.exists():
            raise MissingProfileError(str(self.path), "file not found")

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise MissingProfileError(str(self.path), str(e)) from e

        profile = parse_profile(raw, source=str(self.path))
        self._cache = profile
        logger.info(f"[ProfileStore] Loaded calibration profile from {self.path}")
        return profile

    def load_existing(self) -> Optional[BaseCoordinatesProfile]:
        """Like load() but returns None instead of raising"""
        try:
            return self.load()
        except (MissingProfileError, InvalidProfileError) as e:
            logger.warning(f"[ProfileStore] No usable existing profile: {e.message}")
            return None

    def backup(self) -> Optional[Path]:
        """Rename the current file to a snapshot; None when nothing to back up"""
        if not self.path.exists():
            return None
        snapshot = snapshot_path_for(self.path)
        self.path.rename(snapshot)
        self._cache = None
        logger.info(f"[ProfileStore] Backed up previous profile to {snapshot}")
        return snapshot

    def persist(self, profile: BaseCoordinatesProfile) -> Optional[Path]:
        """
        Write the profile, backing up any existing file first.

        Returns:
            Path of the snapshot created, or None
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        snapshot = self.backup()

        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(profile.to_json_dict(), f, indent=2)
            f.write("\n")

        self._cache = profile
        logger.info(f"[ProfileStore] Saved calibration profile to {self.path}")
        return snapshot
