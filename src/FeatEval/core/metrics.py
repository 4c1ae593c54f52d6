"""
Metric descriptors and staged (tree-by-tree) metric evaluation.

Every metric scores raw model approximations of shape (approx_dimension, n_objects)
and declares whether lower or higher values are better. Metric 0 of a run is the
tracked loss that drives best-iteration selection.
"""

from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy.special import expit, softmax
from sklearn.metrics import (
    accuracy_score,
    log_loss,
    mean_absolute_error,
    mean_squared_error,
    r2_score,
    roc_auc_score,
)

from .errors import ensure
from .protocols import DatasetView, MetricDirection, TreeModel


@dataclass(frozen=True)
class Metric:
    name: str
    direction: Optional[MetricDirection]
    score: Callable[[np.ndarray, np.ndarray, Optional[np.ndarray]], float]

    def __call__(self, approx: np.ndarray, target: np.ndarray, weights: Optional[np.ndarray] = None) -> float:
        return float(self.score(np.atleast_2d(approx), target, weights))

    def __str__(self) -> str:
        return self.name


###############################################################################
# Built-in metrics ------------------------------------------------------------
###############################################################################


def _rmse(approx, target, weights):
    return np.sqrt(mean_squared_error(target, approx[0], sample_weight=weights))


def _mae(approx, target, weights):
    return mean_absolute_error(target, approx[0], sample_weight=weights)


def _r2(approx, target, weights):
    return r2_score(target, approx[0], sample_weight=weights)


def _logloss(approx, target, weights):
    return log_loss(target, expit(approx[0]), sample_weight=weights, labels=[0, 1])


def _auc(approx, target, weights):
    return roc_auc_score(target, approx[0], sample_weight=weights)


def _multiclass(approx, target, weights):
    return log_loss(target, softmax(approx, axis=0).T, sample_weight=weights, labels=list(range(approx.shape[0])))


def _accuracy(approx, target, weights):
    if approx.shape[0] == 1:
        predicted = (approx[0] > 0).astype(int)
    else:
        predicted = approx.argmax(axis=0)
    return accuracy_score(target, predicted, sample_weight=weights)


BUILTIN_METRICS: Dict[str, Metric] = {
    metric.name: metric
    for metric in [
        Metric("RMSE", MetricDirection.MINIMIZE, _rmse),
        Metric("MAE", MetricDirection.MINIMIZE, _mae),
        Metric("R2", MetricDirection.MAXIMIZE, _r2),
        Metric("Logloss", MetricDirection.MINIMIZE, _logloss),
        Metric("AUC", MetricDirection.MAXIMIZE, _auc),
        Metric("MultiClass", MetricDirection.MINIMIZE, _multiclass),
        Metric("Accuracy", MetricDirection.MAXIMIZE, _accuracy),
    ]
}


def get_metric(metric: Union[str, Metric]) -> Metric:
    if isinstance(metric, Metric):
        return metric
    if metric not in BUILTIN_METRICS:
        raise ValueError(f"Unknown metric: {metric}. Available: {list(BUILTIN_METRICS)}")
    return BUILTIN_METRICS[metric]


def create_metrics(
    loss_function: Union[str, Metric],
    eval_metrics: Sequence[Union[str, Metric]] = (),
) -> List[Metric]:
    """Eval metric first (the loss function if none is set), then the loss, then the rest"""
    metrics: List[Metric] = []
    ordered = list(eval_metrics[:1]) + [loss_function] + list(eval_metrics[1:])
    for description in ordered:
        metric = get_metric(description)
        if metric.name not in {m.name for m in metrics}:
            metrics.append(metric)
    return metrics


def get_best_value_types(metrics: Sequence[Metric]) -> List[MetricDirection]:
    for metric in metrics:
        ensure(
            metric.direction in (MetricDirection.MINIMIZE, MetricDirection.MAXIMIZE),
            f"Metric {metric.name} has neither lower, nor upper bound",
        )
    return [metric.direction for metric in metrics]


###############################################################################
# Staged evaluation -----------------------------------------------------------
###############################################################################


def apply_trees(
    model: TreeModel,
    features: pd.DataFrame,
    tree_begin: int,
    tree_end: int,
    executor: Optional[Executor] = None,
    chunk_size: int = 16384,
) -> np.ndarray:
    """Raw contribution of a tree range, split across objects when an executor is given"""
    object_count = len(features)
    if executor is None or object_count <= chunk_size:
        return model.apply(features, tree_begin, tree_end)
    futures = [
        executor.submit(model.apply, features.iloc[start : start + chunk_size], tree_begin, tree_end)
        for start in range(0, object_count, chunk_size)
    ]
    return np.concatenate([future.result() for future in futures], axis=1)


def staged_metric_values(
    model: TreeModel,
    dataset: DatasetView,
    metrics: Sequence[Metric],
    approx_dimension: int,
    executor: Optional[Executor] = None,
) -> np.ndarray:
    """Metric values after every tree, shape (tree_count, metric_count).

    Keeps a running approximation and adds one tree at a time instead of
    re-applying the whole prefix of the model per iteration.
    """
    features = dataset.get_feature_matrix()
    approx = np.zeros((approx_dimension, dataset.object_count))
    history = np.zeros((model.tree_count, len(metrics)))
    for tree_idx in range(model.tree_count):
        approx += apply_trees(model, features, tree_idx, tree_idx + 1, executor)
        for metric_idx, metric in enumerate(metrics):
            history[tree_idx, metric_idx] = metric(approx, dataset.target, dataset.weights)
    return history
