"""
Tests for the LightGBM trainer.

These tests train real boosters on a small synthetic regression and check
that per-iteration contributions add up to the booster's raw predictions,
then run a short feature evaluation end to end.
"""

from unittest.mock import Mock

import lightgbm as lgb
import numpy as np
import pandas as pd
import pytest

from FeatEval.core.config import FeatureEvalOptions, OutputOptions, TrainingOptions
from FeatEval.core.errors import ConfigurationError
from FeatEval.core.metrics import create_metrics
from FeatEval.core.protocols import FoldContext, FoldData
from FeatEval.data import FrameDatasetView
from FeatEval.evaluation import REPORT_FILE, run_feature_evaluation
from FeatEval.evaluators import LightGBMFeatureStrength, LightGBMTrainer
from FeatEval.evaluators.lgbm import make_lgb_params


def make_callbacks():
    return Mock(is_continue_training=Mock(return_value=True))


def train_fold(dataset, options, trainer=None, train_dir=None):
    trainer = trainer or LightGBMTrainer()
    fold_context = FoldContext(fold_idx=0, data=FoldData(learn=dataset, test=dataset), random_seed=7)
    callbacks = make_callbacks()
    trainer.train(options, train_dir, create_metrics(options.loss_function), fold_context, callbacks)
    return fold_context, callbacks


class TestParams:
    """Test translating training options into LightGBM parameters"""

    def test_objective_and_seed(self):
        params = make_lgb_params(TrainingOptions(loss_function="MAE"), 2**40 + 5, 1)
        assert params["objective"] == "regression_l1"
        assert 0 <= params["seed"] < 2**31 - 1
        assert params["metric"] == "None"
        assert "num_class" not in params

    def test_multiclass(self):
        assert make_lgb_params(TrainingOptions(loss_function="MultiClass"), 0, 3)["num_class"] == 3
        with pytest.raises(ConfigurationError, match="num_class > 1"):
            make_lgb_params(TrainingOptions(loss_function="MultiClass"), 0, 1)

    def test_extra_params_win(self):
        options = TrainingOptions(extra_params={"num_leaves": 7, "verbosity": 1})
        params = make_lgb_params(options, 0, 1)
        assert params["num_leaves"] == 7
        assert params["verbosity"] == 1

    def test_unsupported_loss(self):
        with pytest.raises(ConfigurationError, match="Unsupported loss function"):
            make_lgb_params(TrainingOptions(loss_function="Huber"), 0, 1)


class TestTrainer:
    """Test training a booster on one fold"""

    def test_tree_count_matches_iterations(self, regression_dataset):
        fold_context, callbacks = train_fold(regression_dataset, TrainingOptions(iterations=12))
        assert fold_context.model.tree_count == 12
        assert len(fold_context.metric_values_on_train) == 12
        assert callbacks.is_continue_training.call_count == 12
        assert fold_context.metadata["n_features"] == 4

    def test_contributions_add_up_to_raw_prediction(self, regression_dataset):
        fold_context, _ = train_fold(regression_dataset, TrainingOptions(iterations=10))
        model = fold_context.model
        features = regression_dataset.get_feature_matrix()

        staged = model.apply(features, 0, 4) + model.apply(features, 4, 10)
        full = model.booster.predict(features, raw_score=True)
        assert staged.shape == (1, regression_dataset.object_count)
        np.testing.assert_allclose(staged[0], full, rtol=1e-6, atol=1e-8)

    def test_saved_model_is_written_to_fold_dir(self, regression_dataset, tmp_path):
        fold_dir = tmp_path / "Baseline_fold_0"
        train_fold(regression_dataset, TrainingOptions(iterations=6), LightGBMTrainer(save_models=True), str(fold_dir))

        saved = lgb.Booster(model_file=str(fold_dir / "model.txt"))
        assert saved.current_iteration() == 6
        assert saved.feature_name() == ["f0", "f1", "f2", "f3"]

    def test_models_are_not_saved_by_default(self, regression_dataset, tmp_path):
        train_fold(regression_dataset, TrainingOptions(iterations=3), train_dir=str(tmp_path / "fold"))
        assert list(tmp_path.iterdir()) == []

    def test_masked_features_are_not_trained_on(self, regression_dataset):
        fold_context, _ = train_fold(regression_dataset.get_features_subset([0, 2]), TrainingOptions(iterations=5))
        assert fold_context.model.feature_names == ["f1", "f3"]

    def test_multiclass_approx_dimension(self):
        rng = np.random.default_rng(0)
        features = pd.DataFrame({"x": rng.normal(size=150), "y": rng.normal(size=150)})
        target = np.digitize(features["x"], [-0.5, 0.5])
        dataset = FrameDatasetView(features, target)
        trainer = LightGBMTrainer(num_class=3)

        fold_context, _ = train_fold(dataset, TrainingOptions(iterations=5, loss_function="MultiClass"), trainer)
        assert trainer.get_approx_dimension(dataset) == 3
        assert fold_context.model.apply(dataset.get_feature_matrix(), 0, 5).shape == (3, 150)

    def test_feature_strength_ranks_informative_feature_first(self, regression_dataset):
        fold_context, _ = train_fold(regression_dataset, TrainingOptions(iterations=20))
        strength = LightGBMFeatureStrength("gain")(fold_context.model)
        assert list(strength.columns) == ["feature", "importance"]
        assert strength.loc[0, "feature"] == "f0"


class TestEndToEnd:
    """Test a short feature evaluation with real boosters"""

    def test_report_is_written(self, regression_dataset, tmp_path):
        summary = run_feature_evaluation(
            regression_dataset,
            FeatureEvalOptions(features_to_evaluate=[[0]], feature_eval_mode="OneVsOthers", fold_size=50, fold_count=3),
            TrainingOptions(iterations=20, eval_metrics=["MAE"]),
            OutputOptions(train_dir=str(tmp_path), calc_feature_strength=True, show_progress=False),
            max_workers=2,
        )

        report = (tmp_path / REPORT_FILE).read_text()
        assert report == summary.to_tsv()
        assert report.splitlines()[0] == "p-value\tbest iteration in each fold\tMAE\tRMSE\tfeature set"
        assert all(delta > 0 for delta in summary.average_metric_delta[0])
        assert (tmp_path / "Testing_set_0_fold_2" / "feature_strength.tsv").exists()
        assert (tmp_path / "Baseline_set_0_fold_0" / "test_error.tsv").exists()
