"""
Feature evaluation summary: the accumulator behind the final report.

Per-fold results are keyed [is_test][feature_set_idx][fold]. The header
(metric names/directions and feature sets) is set once and fixes the shape of
every table for the rest of the run, including runs resumed from a snapshot.
"""

import copy
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from ezcolorlog import root_logger as logger

from .config import FeatureEvalOptions, OutputOptions
from .errors import ensure_internal
from .feature_sets import uses_common_baseline
from .metrics import Metric, get_best_value_types
from .protocols import MetricDirection
from ..utils import join_ints, wx_test

LOSS_IDX = 0


def get_best_iteration_in_fold(metric_types: Sequence[MetricDirection], metric_values: np.ndarray) -> int:
    """First iteration with the best value of metric 0; other metrics never influence the choice"""
    losses = np.asarray(metric_values, dtype=float)[:, LOSS_IDX]
    ensure_internal(len(losses) > 0, "Empty metric history for fold")
    if metric_types[LOSS_IDX] == MetricDirection.MINIMIZE:
        return int(np.argmin(losses))
    return int(np.argmax(losses))


def make_fold_dir_name(options: FeatureEvalOptions, is_test: bool, feature_set_idx: int, fold_idx: int) -> str:
    if not is_test:
        name = "Baseline_"
        if options.feature_set_count > 0 and not uses_common_baseline(options.feature_eval_mode):
            name += f"set_{feature_set_idx}_"
    else:
        name = f"Testing_set_{feature_set_idx}_"
    return name + f"fold_{fold_idx}"


def _rank2(feature_set_count: int) -> List[List[Any]]:
    return [[[] for _ in range(feature_set_count)] for _ in range(2)]


@dataclass
class FeatureEvaluationSummary:
    """Accumulated per-fold results and the derived significance tables"""

    metric_types: List[MetricDirection] = field(default_factory=list)
    metric_names: List[str] = field(default_factory=list)
    feature_sets: List[List[int]] = field(default_factory=list)

    # [is_test][feature_set_idx][fold] -> (iteration, metric) matrix
    metrics_history: List[List[List[np.ndarray]]] = field(default_factory=list)
    # [is_test][feature_set_idx][fold] -> DataFrame[feature, importance]
    feature_strengths: List[List[List[pd.DataFrame]]] = field(default_factory=list)
    # [is_test][feature_set_idx][metric_idx] -> best value per fold
    best_metrics: List[List[List[List[float]]]] = field(default_factory=list)
    # [feature_set_idx] -> best iteration per fold
    best_baseline_iterations: List[List[int]] = field(default_factory=list)

    wx_test: List[float] = field(default_factory=list)
    average_metric_delta: List[List[float]] = field(default_factory=list)

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def feature_set_count(self) -> int:
        return max(1, len(self.feature_sets))

    @property
    def metric_count(self) -> int:
        return len(self.metric_types)

    def has_header_info(self) -> bool:
        return len(self.metric_names) > 0

    def set_header_info(self, metrics: Sequence[Metric], feature_sets: Sequence[Sequence[int]]) -> None:
        ensure_internal(not self.has_header_info(), "Summary header is already set")
        self.metric_types = get_best_value_types(metrics)
        self.metric_names = [metric.name for metric in metrics]
        self.feature_sets = [list(feature_set) for feature_set in feature_sets]
        count = self.feature_set_count
        self.metrics_history = _rank2(count)
        self.feature_strengths = _rank2(count)
        self.best_metrics = [[[[] for _ in self.metric_types] for _ in range(count)] for _ in range(2)]
        self.best_baseline_iterations = [[] for _ in range(count)]

    ###########################################################################
    # Accumulation
    ###########################################################################

    def append_fold(
        self,
        is_test: bool,
        feature_set_idx: int,
        metric_values_on_fold: np.ndarray,
        feature_strength: Optional[pd.DataFrame] = None,
    ) -> None:
        """Commit one trained fold; safe to call from concurrent fold tasks"""
        metric_values_on_fold = np.asarray(metric_values_on_fold, dtype=float)
        with self._lock:
            self.metrics_history[is_test][feature_set_idx].append(metric_values_on_fold)
            self._append_feature_set_metrics(is_test, feature_set_idx, metric_values_on_fold)
            if feature_strength is not None:
                self.feature_strengths[is_test][feature_set_idx].append(feature_strength)

    def _append_feature_set_metrics(self, is_test: bool, feature_set_idx: int, metric_values_on_fold: np.ndarray):
        ensure_internal(feature_set_idx < self.feature_set_count, "Feature set index is too large")
        ensure_internal(
            metric_values_on_fold.ndim == 2 and metric_values_on_fold.shape[1] == self.metric_count,
            f"Metric history shape {metric_values_on_fold.shape} does not match {self.metric_count} metrics",
        )
        best_iteration = get_best_iteration_in_fold(self.metric_types, metric_values_on_fold)
        if not is_test:
            self.best_baseline_iterations[feature_set_idx].append(best_iteration)
        best_metrics = self.best_metrics[is_test][feature_set_idx]
        for metric_idx in range(self.metric_count):
            best_metrics[metric_idx].append(float(metric_values_on_fold[best_iteration, metric_idx]))

    def clone_common_baseline(self, feature_set_idx: int) -> None:
        """Reuse feature set 0's baseline for a feature set sharing it"""
        with self._lock:
            self.best_metrics[0][feature_set_idx] = copy.deepcopy(self.best_metrics[0][0])
            self.best_baseline_iterations[feature_set_idx] = list(self.best_baseline_iterations[0])

    def copy_baseline_to_testing(self, feature_set_idx: int, baseline_idx: int) -> None:
        """Testing results of a degenerate feature set are its baseline results"""
        with self._lock:
            self.metrics_history[1][feature_set_idx] = list(self.metrics_history[0][baseline_idx])
            self.feature_strengths[1][feature_set_idx] = list(self.feature_strengths[0][baseline_idx])
            self.best_metrics[1][feature_set_idx] = copy.deepcopy(self.best_metrics[0][baseline_idx])

    ###########################################################################
    # Statistics
    ###########################################################################

    def calc_wx_test_and_average_delta(self) -> None:
        """Wx p-value of the loss and signed average delta per metric; positive delta = tested set is better"""
        self.wx_test = []
        self.average_metric_delta = []
        for feature_set_idx in range(self.feature_set_count):
            baseline_metrics = self.best_metrics[0][feature_set_idx]
            tested_metrics = baseline_metrics if not self.feature_sets else self.best_metrics[1][feature_set_idx]
            ensure_internal(
                len(baseline_metrics[LOSS_IDX]) == len(tested_metrics[LOSS_IDX]),
                f"Feature set {feature_set_idx}: {len(baseline_metrics[LOSS_IDX])} baseline folds "
                f"vs {len(tested_metrics[LOSS_IDX])} testing folds",
            )
            self.wx_test.append(wx_test(baseline_metrics[LOSS_IDX], tested_metrics[LOSS_IDX]).p_value)

            deltas = []
            for metric_idx, metric_type in enumerate(self.metric_types):
                baseline_average = float(np.mean(baseline_metrics[metric_idx]))
                tested_average = float(np.mean(tested_metrics[metric_idx]))
                if metric_type == MetricDirection.MINIMIZE:
                    deltas.append(-tested_average + baseline_average)
                else:
                    deltas.append(+tested_average - baseline_average)
            self.average_metric_delta.append(deltas)

    ###########################################################################
    # Reporting
    ###########################################################################

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for feature_set_idx in range(self.feature_set_count):
            row = {
                "p-value": self.wx_test[feature_set_idx],
                "best iteration in each fold": join_ints(self.best_baseline_iterations[feature_set_idx]),
            }
            row.update(zip(self.metric_names, self.average_metric_delta[feature_set_idx]))
            row["feature set"] = join_ints(self.feature_sets[feature_set_idx]) if self.feature_sets else ""
            rows.append(row)
        return pd.DataFrame(rows, columns=["p-value", "best iteration in each fold", *self.metric_names, "feature set"])

    def to_tsv(self) -> str:
        lines = ["\t".join(["p-value", "best iteration in each fold", *self.metric_names, "feature set"])]
        for feature_set_idx in range(self.feature_set_count):
            cells = [repr(float(self.wx_test[feature_set_idx]))]
            cells.append(join_ints(self.best_baseline_iterations[feature_set_idx]))
            cells.extend(repr(float(delta)) for delta in self.average_metric_delta[feature_set_idx])
            cells.append(join_ints(self.feature_sets[feature_set_idx]) if self.feature_sets else "")
            lines.append("\t".join(cells))
        return "\n".join(lines) + "\n"

    def __str__(self) -> str:
        return self.to_tsv()

    def create_logs(
        self,
        output_options: OutputOptions,
        eval_options: FeatureEvalOptions,
        is_test: bool,
        fold_range_begin: int,
        absolute_offset: int,
    ) -> None:
        """Write per-fold metric histories (and feature strengths) of one fold range"""
        if not output_options.allow_write_files:
            return
        top_level_dir = Path(output_options.train_dir)
        absolute_begin = fold_range_begin + eval_options.offset
        use_set_zero_always = not is_test and uses_common_baseline(eval_options.feature_eval_mode)
        for feature_set_idx in range(self.feature_set_count):
            source_idx = 0 if use_set_zero_always else feature_set_idx
            histories = self.metrics_history[is_test][source_idx]
            strengths = self.feature_strengths[is_test][source_idx]
            for absolute_fold_idx in range(absolute_begin, absolute_begin + eval_options.fold_count):
                position = absolute_fold_idx - absolute_offset
                ensure_internal(
                    0 <= position < len(histories),
                    f"No metric history for fold {absolute_fold_idx} (have {len(histories)})",
                )
                fold_dir = top_level_dir / make_fold_dir_name(eval_options, is_test, feature_set_idx, absolute_fold_idx)
                fold_dir.mkdir(parents=True, exist_ok=True)
                history = pd.DataFrame(histories[position], columns=self.metric_names)
                history.index.name = "iter"
                history.to_csv(fold_dir / "test_error.tsv", sep="\t")
                if position < len(strengths):
                    strengths[position].to_csv(fold_dir / "feature_strength.tsv", sep="\t", index=False)
        logger.debug(f"Wrote {'testing' if is_test else 'baseline'} fold logs to {top_level_dir}")

    ###########################################################################
    # Persistence
    ###########################################################################

    def to_state(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "metric_types": [t.value for t in self.metric_types],
                "metric_names": list(self.metric_names),
                "feature_sets": copy.deepcopy(self.feature_sets),
                "metrics_history": copy.deepcopy(self.metrics_history),
                "feature_strengths": copy.deepcopy(self.feature_strengths),
                "best_metrics": copy.deepcopy(self.best_metrics),
                "best_baseline_iterations": copy.deepcopy(self.best_baseline_iterations),
                "wx_test": list(self.wx_test),
                "average_metric_delta": copy.deepcopy(self.average_metric_delta),
            }

    def load_state(self, state: Dict[str, Any]) -> None:
        with self._lock:
            self.metric_types = [MetricDirection(t) for t in state["metric_types"]]
            self.metric_names = list(state["metric_names"])
            self.feature_sets = state["feature_sets"]
            self.metrics_history = state["metrics_history"]
            self.feature_strengths = state["feature_strengths"]
            self.best_metrics = state["best_metrics"]
            self.best_baseline_iterations = state["best_baseline_iterations"]
            self.wx_test = state["wx_test"]
            self.average_metric_delta = state["average_metric_delta"]

    @classmethod
    def from_state(cls, state: Dict[str, Any]) -> "FeatureEvaluationSummary":
        summary = cls()
        summary.load_state(state)
        return summary
