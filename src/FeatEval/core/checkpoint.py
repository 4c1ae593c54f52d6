"""
Training callbacks and snapshot/resume for feature evaluation.

Progress is a marker tuple (fold_range_begin, feature_set_idx, is_test, fold_idx)
naming the last fully committed fold. After a snapshot is loaded, every fold up to
and including the marker is reported as already evaluated; the first fold past
the marker switches the callbacks to normal operation for the rest of the run.
"""

import os
import time
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple, Union

import joblib
from ezcolorlog import root_logger as logger

from .config import FeatureEvalOptions
from .errors import ensure, ensure_internal
from .results import FeatureEvaluationSummary


class SnapshotState(str, Enum):
    AWAITING_FIRST_COMPARISON = "awaiting_first_comparison"
    ACTIVE = "active"


ProgressMarker = Tuple[int, int, bool, int]


class FeatureEvaluationCallbacks:
    """Per-iteration hook for the trainer plus the progress bookkeeping snapshots are made of"""

    heartbeat_seconds = 1.0

    def __init__(
        self,
        iteration_count: int,
        options: FeatureEvalOptions,
        summary: FeatureEvaluationSummary,
        absolute_offset: Optional[int] = None,
    ):
        self.iteration_count = iteration_count
        self.options = options
        self.summary = summary
        # first evaluated fold; k-fold mode evaluates from fold 0 whatever the options say
        self.absolute_offset = options.offset if absolute_offset is None else absolute_offset
        self.state = SnapshotState.ACTIVE

        self.fold_range_begin: Optional[int] = None
        self.feature_set_idx: Optional[int] = None
        self.is_test: Optional[bool] = None
        self.fold_idx: Optional[int] = None

        self._iteration_idx = 0
        self._last_heartbeat = time.monotonic()

    def is_continue_training(self, iteration: int) -> bool:
        self._iteration_idx += 1
        now = time.monotonic()
        if now - self._last_heartbeat >= self.heartbeat_seconds:
            logger.info(f"Train iteration {self._iteration_idx} of {self.iteration_count}")
            self._last_heartbeat = now
        return True

    def reset_iteration_index(self) -> None:
        self._iteration_idx = 0

    @property
    def iteration_index(self) -> int:
        return self._iteration_idx

    ###########################################################################
    # Progress marker
    ###########################################################################

    def set_progress(self, fold_range_begin: int, feature_set_idx: int, is_test: bool, fold_idx: int) -> None:
        self.fold_range_begin = fold_range_begin
        self.feature_set_idx = feature_set_idx
        self.is_test = is_test
        self.fold_idx = fold_idx

    @property
    def marker(self) -> Optional[ProgressMarker]:
        fields = (self.fold_range_begin, self.feature_set_idx, self.is_test, self.fold_idx)
        if any(f is None for f in fields):
            return None
        return fields

    def have_eval_feature_summary(
        self, fold_range_begin: int, feature_set_idx: int, is_test: bool, fold_idx: int
    ) -> bool:
        """True if this fold was committed before the snapshot was taken"""
        if self.state == SnapshotState.ACTIVE:
            return False
        marker = self.marker
        ensure_internal(marker is not None, "Snapshot progress marker is incomplete")
        if (fold_range_begin, feature_set_idx, is_test, fold_idx) <= marker:
            return True
        self.state = SnapshotState.ACTIVE
        logger.info(
            f"Resuming feature evaluation at fold range {fold_range_begin}, feature set {feature_set_idx}, "
            f"{'testing' if is_test else 'baseline'}, fold {fold_idx}"
        )
        return False

    ###########################################################################
    # Snapshot
    ###########################################################################

    def save_snapshot(self, path: Union[str, Path]) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        blob = {
            "options": self.options.to_dict(),
            "marker": self.marker,
            "absolute_offset": self.absolute_offset,
            "summary": self.summary.to_state(),
        }
        tmp_path = path.with_name(path.name + ".tmp")
        joblib.dump(blob, tmp_path)
        os.replace(tmp_path, path)
        logger.debug(f"Saved feature evaluation snapshot at {self.marker} to {path}")

    def load_snapshot(self, path: Union[str, Path]) -> None:
        blob = joblib.load(Path(path))
        saved_options = FeatureEvalOptions.from_dict(blob["options"])
        ensure(
            saved_options == self.options,
            f"Current feature evaluation options differ from options in snapshot {path}: "
            f"{saved_options} != {self.options}",
        )
        ensure_internal(blob["marker"] is not None, f"Snapshot {path} has no progress marker")
        self.summary.load_state(blob["summary"])
        self.set_progress(*blob["marker"])
        self.absolute_offset = blob["absolute_offset"]
        self.state = SnapshotState.AWAITING_FIRST_COMPARISON
        logger.info(f"Loaded feature evaluation snapshot from {path}, last evaluated fold {self.marker}")
