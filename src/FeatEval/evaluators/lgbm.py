"""
LightGBM trainer for the feature evaluation framework.

This module adapts lightgbm.train / Booster to the ModelTrainer, TreeModel and
FeatureStrengthCalculator collaborators the FeatureEvaluator drives fold by fold.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import lightgbm as lgb
import numpy as np
import pandas as pd

from ..core.config import TrainingOptions
from ..core.errors import ensure
from ..core.metrics import Metric, staged_metric_values
from ..core.protocols import DatasetView, FoldContext, ModelTrainer, TrainingCallbacks

OBJECTIVES = {
    "RMSE": "regression",
    "MAE": "regression_l1",
    "Logloss": "binary",
    "MultiClass": "multiclass",
}


def make_lgb_params(options: TrainingOptions, seed: int, num_class: int) -> Dict[str, Any]:
    ensure(
        options.loss_function in OBJECTIVES,
        f"Unsupported loss function for LightGBM: {options.loss_function}. Available: {list(OBJECTIVES)}",
    )
    params = {
        "objective": OBJECTIVES[options.loss_function],
        "learning_rate": options.learning_rate,
        "seed": seed % (2**31 - 1),  # LightGBM seeds are int32
        "num_threads": max(options.thread_count, 0),
        "metric": "None",  # metrics are computed by the evaluator on every iteration
        "verbosity": -1,
        "deterministic": True,
    }
    if params["objective"] == "multiclass":
        ensure(num_class > 1, f"MultiClass loss needs num_class > 1, got {num_class}")
        params["num_class"] = num_class
    params.update(options.extra_params)
    return params


def _continue_training_cb(callbacks: TrainingCallbacks):
    """Ask the evaluator after every boosting round whether to go on"""

    def _cb(env):
        if not callbacks.is_continue_training(env.iteration):
            raise lgb.callback.EarlyStopException(env.iteration, env.evaluation_result_list)

    _cb.order = 0
    return _cb


class LightGBMTreeModel:
    """Booster wrapper exposing per-iteration raw contributions"""

    def __init__(self, booster: lgb.Booster):
        self.booster = booster

    @property
    def tree_count(self) -> int:
        return self.booster.current_iteration()

    @property
    def feature_names(self) -> List[str]:
        return self.booster.feature_name()

    def apply(self, features: pd.DataFrame, tree_begin: int, tree_end: int) -> np.ndarray:
        raw = self.booster.predict(
            features,
            start_iteration=tree_begin,
            num_iteration=tree_end - tree_begin,
            raw_score=True,
        )
        raw = np.asarray(raw, dtype=float)
        return raw[np.newaxis, :] if raw.ndim == 1 else raw.T


class LightGBMTrainer(ModelTrainer):
    """Trains one LightGBM booster per fold on the fold's learn view"""

    def __init__(self, num_class: int = 1, save_models: bool = False):
        self.num_class = num_class
        self.save_models = save_models

    def get_approx_dimension(self, dataset: DatasetView) -> int:
        return max(self.num_class, 1)

    def train(
        self,
        options: TrainingOptions,
        train_dir: Optional[str],
        metrics: List[Metric],
        fold_context: FoldContext,
        callbacks: TrainingCallbacks,
    ) -> None:
        learn = fold_context.data.learn
        features = learn.get_feature_matrix()
        params = make_lgb_params(options, fold_context.random_seed, self.num_class)
        train_set = lgb.Dataset(features, label=learn.target, weight=learn.weights, free_raw_data=False)

        booster = lgb.train(
            params,
            train_set,
            num_boost_round=options.iterations,
            callbacks=[_continue_training_cb(callbacks)],
        )
        model = LightGBMTreeModel(booster)
        fold_context.model = model
        fold_context.metric_values_on_train = staged_metric_values(
            model, learn, metrics, self.get_approx_dimension(learn)
        ).tolist()
        fold_context.metadata.update(
            {
                "lgb_params": params,
                "n_features": features.shape[1],
                "train_size": learn.object_count,
            }
        )

        if self.save_models and train_dir is not None:
            Path(train_dir).mkdir(parents=True, exist_ok=True)
            booster.save_model(str(Path(train_dir) / "model.txt"))


class LightGBMFeatureStrength:
    """Booster feature importances as a sorted [feature, importance] table"""

    def __init__(self, importance_type: str = "gain"):
        ensure(importance_type in ("gain", "split"), f"Unknown importance type: {importance_type}")
        self.importance_type = importance_type

    def __call__(self, model: LightGBMTreeModel, dataset: Optional[DatasetView] = None) -> pd.DataFrame:
        booster = model.booster
        return (
            pd.DataFrame(
                {
                    "feature": booster.feature_name(),
                    "importance": booster.feature_importance(importance_type=self.importance_type),
                }
            )
            .sort_values("importance", ascending=False)
            .reset_index(drop=True)
        )
