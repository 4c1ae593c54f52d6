"""
All protocols and shared types for the feature evaluation framework.

This module defines the vocabulary every component speaks:
- Enumerations for sampling units, training kinds, evaluation modes and metric directions
- FoldSpec / FoldContext data holders for a single fold
- DatasetView: capability interface over an in-memory dataset
- TreeModel / ModelTrainer: the boosting collaborator, driven fold by fold
- FeatureStrengthCalculator: optional per-feature effect tables
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

import numpy as np
import pandas as pd


########################################################
# Enumerations
########################################################


class SamplingUnit(str, Enum):
    """Atomic entity folds are built from"""

    OBJECT = "object"
    GROUP = "group"


class TrainingKind(str, Enum):
    BASELINE = "baseline"
    TESTING = "testing"


class FeatureEvalMode(str, Enum):
    """Which features are hidden for the baseline and testing runs of a feature set"""

    ONE_VS_ALL = "OneVsAll"
    ONE_VS_OTHERS = "OneVsOthers"
    OTHERS_VS_ALL = "OthersVsAll"
    ONE_VS_NONE = "OneVsNone"


class MetricDirection(str, Enum):
    MINIMIZE = "min"
    MAXIMIZE = "max"


########################################################
# Folds
########################################################


@dataclass
class FoldSpec:
    """Train/test object indices of one fold"""

    train_indices: np.ndarray
    test_indices: np.ndarray


@dataclass
class FoldData:
    """Dataset views of one fold, reused across feature sets"""

    learn: "DatasetView"
    test: Optional["DatasetView"] = None


@dataclass
class FoldContext:
    """Mutable training session state for one fold"""

    fold_idx: int
    data: FoldData
    random_seed: int
    model: Optional["TreeModel"] = None
    # [iteration][metric]
    metric_values_on_train: List[List[float]] = field(default_factory=list)
    metric_values_on_test: Optional[np.ndarray] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


########################################################
# Collaborators
########################################################


@runtime_checkable
class DatasetView(Protocol):
    """Capability interface over a dataset (or a subset of one)"""

    task_type: str
    feature_names: List[str]
    ignored_features: frozenset
    ordered: bool

    @property
    def object_count(self) -> int: ...

    @property
    def group_ids(self) -> Optional[np.ndarray]: ...

    @property
    def timestamps(self) -> Optional[np.ndarray]: ...

    @property
    def target(self) -> np.ndarray: ...

    @property
    def weights(self) -> Optional[np.ndarray]: ...

    def group_bounds(self) -> np.ndarray:
        """Offsets of consecutive groups, length group_count + 1"""
        ...

    def get_subset(self, indices: np.ndarray, memory_budget: Optional[int] = None) -> "DatasetView": ...

    def get_features_subset(self, ignored_features: Sequence[int]) -> "DatasetView":
        """Return a view that additionally hides `ignored_features`"""
        ...

    def has_available_features(self, features: Optional[Sequence[int]] = None) -> bool:
        """True if any of `features` (all features by default) is visible and not constant"""
        ...

    def get_feature_matrix(self) -> pd.DataFrame:
        """Visible features only"""
        ...


@runtime_checkable
class TreeModel(Protocol):
    """Additive tree ensemble; raw approximations are the sum of per-tree contributions"""

    @property
    def tree_count(self) -> int: ...

    @property
    def feature_names(self) -> List[str]: ...

    def apply(self, features: pd.DataFrame, tree_begin: int, tree_end: int) -> np.ndarray:
        """Raw contribution of trees [tree_begin, tree_end), shape (approx_dimension, n_objects)"""
        ...


@runtime_checkable
class TrainingCallbacks(Protocol):
    def is_continue_training(self, iteration: int) -> bool: ...


class ModelTrainer(ABC):
    """Abstract base for boosting trainers driven by the feature evaluator"""

    @abstractmethod
    def get_approx_dimension(self, dataset: DatasetView) -> int:
        pass

    @abstractmethod
    def train(
        self,
        options: Any,
        train_dir: Optional[str],
        metrics: List[Any],
        fold_context: FoldContext,
        callbacks: TrainingCallbacks,
    ) -> None:
        """Train on fold_context.data.learn, setting fold_context.model and metric_values_on_train.

        Must call callbacks.is_continue_training once per iteration.
        """
        pass


@runtime_checkable
class FeatureStrengthCalculator(Protocol):
    def __call__(self, model: TreeModel, dataset: Optional[DatasetView] = None) -> pd.DataFrame:
        """Per-feature effect table with columns [feature, importance]"""
        ...
