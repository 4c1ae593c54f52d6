"""
Tests for the feature evaluation summary.

These tests cover best-iteration selection, the Wx test and average delta
statistics, the TSV report, per-fold logs and concurrent accumulation.
"""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pandas as pd
import pytest

from FeatEval.core.config import FeatureEvalOptions, OutputOptions
from FeatEval.core.errors import InternalError
from FeatEval.core.metrics import create_metrics
from FeatEval.core.protocols import MetricDirection
from FeatEval.core.results import FeatureEvaluationSummary, get_best_iteration_in_fold, make_fold_dir_name


def make_summary(feature_sets=((0,),), loss="RMSE", eval_metrics=("MAE",)) -> FeatureEvaluationSummary:
    summary = FeatureEvaluationSummary()
    summary.set_header_info(create_metrics(loss, list(eval_metrics)), [list(s) for s in feature_sets])
    return summary


def history(losses, other=None) -> np.ndarray:
    losses = np.asarray(losses, dtype=float)
    other = np.zeros_like(losses) if other is None else np.asarray(other, dtype=float)
    return np.column_stack([losses, other])


class TestBestIteration:
    """Test best iteration selection on metric 0"""

    def test_first_occurrence_of_minimum(self):
        assert get_best_iteration_in_fold([MetricDirection.MINIMIZE], history([3, 1, 2, 1])) == 1

    def test_maximum(self):
        assert get_best_iteration_in_fold([MetricDirection.MAXIMIZE], history([0.1, 0.9, 0.9, 0.5])) == 1

    def test_other_metrics_do_not_matter(self):
        """Permuting metric 1 never moves the best iteration"""
        losses = [5, 4, 3, 4]
        types = [MetricDirection.MINIMIZE, MetricDirection.MAXIMIZE]
        first = get_best_iteration_in_fold(types, history(losses, [0, 1, 2, 3]))
        second = get_best_iteration_in_fold(types, history(losses, [3, 2, 1, 0]))
        assert first == second == 2

    def test_all_metrics_taken_at_best_iteration(self):
        summary = make_summary()
        summary.append_fold(False, 0, history([3, 1, 2], [7, 8, 9]))
        assert summary.best_baseline_iterations[0] == [1]
        assert summary.best_metrics[0][0] == [[1.0], [8.0]]

    def test_wrong_metric_count(self):
        summary = make_summary()
        with pytest.raises(InternalError, match="does not match 2 metrics"):
            summary.append_fold(False, 0, np.zeros((3, 3)))


class TestStatistics:
    """Test Wx p-values and average deltas"""

    def test_delta_sign_for_minimized_loss(self):
        """Lower tested loss gives a positive delta"""
        summary = make_summary(eval_metrics=())
        for baseline, tested in [(1.0, 0.5), (2.0, 1.0), (3.0, 2.5)]:
            summary.append_fold(False, 0, np.array([[baseline]]))
            summary.append_fold(True, 0, np.array([[tested]]))
        summary.calc_wx_test_and_average_delta()

        assert summary.average_metric_delta[0][0] == pytest.approx(2.0 - 4.0 / 3.0)
        assert 0.0 <= summary.wx_test[0] <= 1.0

    def test_delta_sign_for_maximized_metric(self):
        """Higher tested metric gives a positive delta"""
        summary = make_summary(loss="Logloss", eval_metrics=("AUC",))
        summary.append_fold(False, 0, np.array([[0.6, 0.5]]))
        summary.append_fold(True, 0, np.array([[0.7, 0.4]]))
        summary.calc_wx_test_and_average_delta()

        auc_delta, logloss_delta = summary.average_metric_delta[0]
        assert auc_delta == pytest.approx(0.1)
        assert logloss_delta == pytest.approx(0.1)

    def test_identical_runs(self):
        summary = make_summary()
        for loss in (1.0, 2.0, 3.0):
            summary.append_fold(False, 0, history([loss]))
            summary.append_fold(True, 0, history([loss]))
        summary.calc_wx_test_and_average_delta()

        assert summary.wx_test == [0.5]
        assert summary.average_metric_delta == [[0.0, 0.0]]

    def test_no_feature_sets_compares_baseline_with_itself(self):
        summary = make_summary(feature_sets=())
        summary.append_fold(False, 0, history([2.0, 1.0]))
        summary.append_fold(False, 0, history([3.0, 1.5]))
        summary.calc_wx_test_and_average_delta()

        assert summary.feature_set_count == 1
        assert summary.wx_test == [0.5]
        assert summary.average_metric_delta == [[0.0, 0.0]]

    def test_fold_count_mismatch(self):
        summary = make_summary()
        summary.append_fold(False, 0, history([1.0]))
        with pytest.raises(InternalError):
            summary.calc_wx_test_and_average_delta()

    def test_shared_baseline_clone(self):
        summary = make_summary(feature_sets=((0,), (1,)))
        summary.append_fold(False, 0, history([2.0, 1.0]))
        summary.clone_common_baseline(1)

        assert summary.best_baseline_iterations[1] == [1]
        assert summary.best_metrics[0][1] == summary.best_metrics[0][0]
        assert summary.best_metrics[0][1] is not summary.best_metrics[0][0]


class TestReport:
    """Test the TSV report and data frame"""

    def make_finished_summary(self):
        summary = make_summary(feature_sets=((2, 0),))
        for baseline, tested in [(1.0, 0.5), (2.0, 1.0)]:
            summary.append_fold(False, 0, history([baseline + 1, baseline]))
            summary.append_fold(True, 0, history([tested + 1, tested]))
        summary.calc_wx_test_and_average_delta()
        return summary

    def test_tsv_layout(self):
        lines = self.make_finished_summary().to_tsv().splitlines()
        assert lines[0] == "p-value\tbest iteration in each fold\tMAE\tRMSE\tfeature set"
        cells = lines[1].split("\t")
        assert len(cells) == 5
        assert cells[1] == "1,1"
        assert cells[4] == "2,0"

    def test_frame_matches_tsv(self):
        summary = self.make_finished_summary()
        frame = summary.to_frame()
        assert list(frame.columns) == ["p-value", "best iteration in each fold", "MAE", "RMSE", "feature set"]
        assert frame.loc[0, "p-value"] == summary.wx_test[0]
        assert str(summary) == summary.to_tsv()


class TestFoldLogs:
    """Test per-fold log directories"""

    def test_fold_dir_names(self):
        shared = FeatureEvalOptions(features_to_evaluate=[[0], [1]], feature_eval_mode="OneVsAll")
        per_set = FeatureEvalOptions(features_to_evaluate=[[0], [1]], feature_eval_mode="OneVsOthers")
        assert make_fold_dir_name(shared, False, 1, 3) == "Baseline_fold_3"
        assert make_fold_dir_name(per_set, False, 1, 3) == "Baseline_set_1_fold_3"
        assert make_fold_dir_name(shared, True, 1, 3) == "Testing_set_1_fold_3"

    def test_create_logs(self, tmp_path):
        summary = make_summary()
        options = FeatureEvalOptions(features_to_evaluate=[[0]], fold_count=2, offset=1)
        strength = pd.DataFrame({"feature": ["a"], "importance": [1.0]})
        for _ in range(2):
            summary.append_fold(False, 0, history([2.0, 1.0]), strength)

        summary.create_logs(OutputOptions(train_dir=str(tmp_path)), options, False, 5, 6)

        for fold_idx in (6, 7):
            fold_dir = tmp_path / f"Baseline_fold_{fold_idx}"
            errors = pd.read_csv(fold_dir / "test_error.tsv", sep="\t")
            assert list(errors.columns) == ["iter", "MAE", "RMSE"]
            assert len(errors) == 2
            assert (fold_dir / "feature_strength.tsv").exists()

    def test_no_train_dir_writes_nothing(self, tmp_path):
        summary = make_summary()
        summary.create_logs(OutputOptions(), FeatureEvalOptions(), False, 0, 0)
        assert list(tmp_path.iterdir()) == []


class TestConcurrency:
    """Test that concurrent fold commits are not lost"""

    def test_concurrent_append(self):
        summary = make_summary(feature_sets=((0,), (1,)))
        fold_total = 200

        def commit(fold_idx):
            summary.append_fold(fold_idx % 2 == 1, fold_idx % 2, history([float(fold_idx), 0.0]))

        with ThreadPoolExecutor(max_workers=8) as executor:
            list(executor.map(commit, range(fold_total)))

        assert len(summary.metrics_history[0][0]) == fold_total // 2
        assert len(summary.metrics_history[1][1]) == fold_total // 2
        assert len(summary.best_metrics[0][0][0]) == fold_total // 2
        assert len(summary.best_baseline_iterations[0]) == fold_total // 2


class TestState:
    """Test summary state used by snapshots"""

    def test_restored_summary_reports_the_same(self):
        summary = make_summary()
        summary.append_fold(False, 0, history([3.0, 2.0]))
        summary.append_fold(True, 0, history([2.5, 1.0]))

        restored = FeatureEvaluationSummary.from_state(summary.to_state())
        summary.calc_wx_test_and_average_delta()
        restored.calc_wx_test_and_average_delta()
        assert restored.to_tsv() == summary.to_tsv()
        assert restored.metric_types == [MetricDirection.MINIMIZE, MetricDirection.MINIMIZE]
