"""
Pytest configuration and shared fixtures for FeatEval tests.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

import numpy as np
import pandas as pd
import pytest

from FeatEval.core.metrics import staged_metric_values
from FeatEval.core.protocols import FoldContext, ModelTrainer
from FeatEval.data import FrameDatasetView


class MockTreeModel:
    """Least-squares fit on the visible features, released by geometric shrinkage over trees.

    Tree t contributes `lr * (1 - lr)**t` of the final prediction, so the raw
    approximation converges to the least-squares prediction as trees are added.
    """

    def __init__(self, columns: List[str], coefs: np.ndarray, intercept: float, tree_count: int, lr: float = 0.3):
        self.columns = columns
        self.coefs = coefs
        self.intercept = intercept
        self._tree_count = tree_count
        self.lr = lr

    @property
    def tree_count(self) -> int:
        return self._tree_count

    @property
    def feature_names(self) -> List[str]:
        return self.columns

    def predict_full(self, features: pd.DataFrame) -> np.ndarray:
        values = features[self.columns].to_numpy(dtype=float) if self.columns else np.zeros((len(features), 0))
        return values @ self.coefs + self.intercept

    def apply(self, features: pd.DataFrame, tree_begin: int, tree_end: int) -> np.ndarray:
        share = sum(self.lr * (1 - self.lr) ** t for t in range(tree_begin, tree_end))
        return (self.predict_full(features) * share)[np.newaxis, :]


class MockTrainer(ModelTrainer):
    """Deterministic trainer recording every fold it trains"""

    def __init__(self, fail_after: Optional[int] = None, tree_count_delta: int = 0):
        self.calls = []
        self.fail_after = fail_after
        self.tree_count_delta = tree_count_delta

    def get_approx_dimension(self, dataset) -> int:
        return 1

    def train(self, options, train_dir, metrics, fold_context: FoldContext, callbacks) -> None:
        if self.fail_after is not None and len(self.calls) >= self.fail_after:
            raise RuntimeError("Trainer crashed")
        learn = fold_context.data.learn
        features = learn.get_feature_matrix()
        self.calls.append(
            {
                "fold_idx": fold_context.fold_idx,
                "seed": fold_context.random_seed,
                "columns": list(features.columns),
                "train_dir": train_dir,
            }
        )
        for iteration in range(options.iterations):
            callbacks.is_continue_training(iteration)

        design = np.column_stack([features.to_numpy(dtype=float), np.ones(len(features))])
        solution = np.linalg.lstsq(design, learn.target.astype(float), rcond=None)[0]
        model = MockTreeModel(list(features.columns), solution[:-1], float(solution[-1]), options.iterations)
        fold_context.model = model
        history = staged_metric_values(model, learn, metrics, 1)
        fold_context.metric_values_on_train = history[: len(history) + self.tree_count_delta].tolist()


def make_regression_frame(n_samples: int = 200, seed: int = 42) -> pd.DataFrame:
    """f0 and f1 drive the target, f2 is noise, f3 is constant"""
    rng = np.random.default_rng(seed)
    frame = pd.DataFrame(
        {
            "f0": rng.normal(size=n_samples),
            "f1": rng.normal(size=n_samples),
            "f2": rng.normal(size=n_samples),
            "f3": np.ones(n_samples),
        }
    )
    frame["target"] = 3.0 * frame["f0"] + 1.0 * frame["f1"] + rng.normal(scale=0.1, size=n_samples)
    return frame


@pytest.fixture
def regression_frame():
    return make_regression_frame()


@pytest.fixture
def regression_dataset(regression_frame):
    return FrameDatasetView(regression_frame.drop(columns="target"), regression_frame["target"].to_numpy())


@pytest.fixture
def grouped_dataset():
    """12 groups of sizes 1..4 with increasing timestamps per group"""
    sizes = [1, 2, 3, 4] * 3
    group_ids = np.repeat(np.arange(len(sizes)), sizes)
    timestamps = np.repeat(np.arange(len(sizes)) * 10, sizes)
    n = len(group_ids)
    features = pd.DataFrame({"a": np.arange(n, dtype=float), "b": np.arange(n, dtype=float) % 3})
    return FrameDatasetView(features, np.arange(n, dtype=float), group_ids=group_ids, timestamps=timestamps)


@pytest.fixture
def executor():
    with ThreadPoolExecutor(max_workers=4) as pool:
        yield pool


@pytest.fixture
def mock_trainer():
    return MockTrainer()


@pytest.fixture
def trainer_factory():
    return MockTrainer
