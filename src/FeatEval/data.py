"""
In-memory dataset views.

Two variants implement the DatasetView capability interface:
- FrameDatasetView keeps features in a pandas DataFrame (task type "cpu")
- ArrayDatasetView keeps features in a dense numpy matrix (task type "gpu")

Views are cheap: feature masking shares the underlying storage and only
records which feature indices are hidden.
"""

from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from ezcolorlog import root_logger as logger

from .core.errors import ensure


class _DatasetViewBase:
    task_type = ""

    def __init__(
        self,
        feature_names: List[str],
        target,
        group_ids=None,
        timestamps=None,
        weights=None,
        ignored_features: Sequence[int] = (),
        ordered: bool = False,
    ):
        self.feature_names = list(feature_names)
        self._target = np.asarray(target)
        n = len(self._target)
        self._group_ids = None if group_ids is None else np.asarray(group_ids)
        self._timestamps = None if timestamps is None else np.asarray(timestamps, dtype=np.uint64)
        self._weights = None if weights is None else np.asarray(weights, dtype=float)
        for name, arr in (("group_ids", self._group_ids), ("timestamps", self._timestamps), ("weights", self._weights)):
            ensure(arr is None or len(arr) == n, f"Length of {name} ({len(arr) if arr is not None else 0}) != object count ({n})")
        self.ignored_features = frozenset(int(f) for f in ignored_features)
        ensure(
            all(0 <= f < len(self.feature_names) for f in self.ignored_features),
            f"Ignored feature index out of range [0, {len(self.feature_names)})",
        )
        self.ordered = ordered

    def __len__(self) -> int:
        return self.object_count

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(objects={self.object_count}, groups={self.group_count}, "
            f"features={len(self.feature_names)}, ignored={sorted(self.ignored_features)})"
        )

    @property
    def object_count(self) -> int:
        return len(self._target)

    @property
    def group_count(self) -> int:
        return len(self.group_bounds()) - 1

    @property
    def group_ids(self) -> Optional[np.ndarray]:
        return self._group_ids

    @property
    def timestamps(self) -> Optional[np.ndarray]:
        return self._timestamps

    @property
    def target(self) -> np.ndarray:
        return self._target

    @property
    def weights(self) -> Optional[np.ndarray]:
        return self._weights

    @property
    def visible_features(self) -> List[int]:
        return [i for i in range(len(self.feature_names)) if i not in self.ignored_features]

    def group_bounds(self) -> np.ndarray:
        n = self.object_count
        if self._group_ids is None:
            return np.arange(n + 1)
        if n == 0:
            return np.zeros(1, dtype=int)
        starts = np.flatnonzero(self._group_ids[1:] != self._group_ids[:-1]) + 1
        return np.concatenate(([0], starts, [n]))

    def get_subset(self, indices, memory_budget: Optional[int] = None):
        indices = np.asarray(indices, dtype=np.int64)
        if memory_budget is not None and self.object_count > 0:
            estimate = self._feature_nbytes() * len(indices) // self.object_count
            if estimate > memory_budget:
                logger.warning(
                    f"Subset of {len(indices)} objects needs about {estimate} bytes, over the budget of {memory_budget}"
                )
        logger.debug(f"Taking subset of {len(indices)} of {self.object_count} objects")
        return self._make(
            self._take_features(indices),
            target=self._target[indices],
            group_ids=None if self._group_ids is None else self._group_ids[indices],
            timestamps=None if self._timestamps is None else self._timestamps[indices],
            weights=None if self._weights is None else self._weights[indices],
            ignored_features=self.ignored_features,
        )

    def get_features_subset(self, ignored_features: Sequence[int]):
        return self._make(
            self._features,
            target=self._target,
            group_ids=self._group_ids,
            timestamps=self._timestamps,
            weights=self._weights,
            ignored_features=self.ignored_features | frozenset(int(f) for f in ignored_features),
        )

    def has_available_features(self, features: Optional[Sequence[int]] = None) -> bool:
        candidates = range(len(self.feature_names)) if features is None else features
        return any(f not in self.ignored_features and not self._is_constant(f) for f in candidates)

    def _make(self, features, **kwargs):
        return type(self)(features, feature_names=self.feature_names, ordered=self.ordered, **kwargs)


class FrameDatasetView(_DatasetViewBase):
    """DataFrame-backed view used for CPU training"""

    task_type = "cpu"

    def __init__(self, features: pd.DataFrame, target, feature_names: Optional[List[str]] = None, **kwargs):
        if not features.index.equals(pd.RangeIndex(len(features))):
            features = features.reset_index(drop=True)
        self._features = features
        super().__init__(feature_names or [str(c) for c in features.columns], target, **kwargs)
        ensure(len(self._features) == self.object_count, "Feature rows and target length differ")

    def _take_features(self, indices: np.ndarray) -> pd.DataFrame:
        return self._features.iloc[indices]

    def _feature_nbytes(self) -> int:
        return int(self._features.memory_usage(index=False, deep=False).sum())

    def _is_constant(self, feature_idx: int) -> bool:
        return self._features.iloc[:, feature_idx].nunique(dropna=False) <= 1

    def get_feature_matrix(self) -> pd.DataFrame:
        frame = self._features.iloc[:, self.visible_features].copy()
        frame.columns = [self.feature_names[i] for i in self.visible_features]
        return frame


class ArrayDatasetView(_DatasetViewBase):
    """Dense numpy-backed view used by the generic (GPU-style) path"""

    task_type = "gpu"

    def __init__(self, features: np.ndarray, target, feature_names: Optional[List[str]] = None, **kwargs):
        self._features = np.asarray(features)
        ensure(self._features.ndim == 2, f"Features must be a 2D matrix, got shape {self._features.shape}")
        names = feature_names or [f"f{i}" for i in range(self._features.shape[1])]
        super().__init__(names, target, **kwargs)
        ensure(self._features.shape[0] == self.object_count, "Feature rows and target length differ")

    def _take_features(self, indices: np.ndarray) -> np.ndarray:
        return self._features[indices]

    def _feature_nbytes(self) -> int:
        return int(self._features.nbytes)

    def _is_constant(self, feature_idx: int) -> bool:
        return pd.Series(self._features[:, feature_idx]).nunique(dropna=False) <= 1

    def get_feature_matrix(self) -> pd.DataFrame:
        visible = self.visible_features
        return pd.DataFrame(self._features[:, visible], columns=[self.feature_names[i] for i in visible])


def make_dataset_view(
    task_type: str,
    features: Union[pd.DataFrame, np.ndarray],
    target,
    **kwargs,
):
    """Pick the dataset view variant for a task type tag"""
    match task_type:
        case "cpu":
            if not isinstance(features, pd.DataFrame):
                features = pd.DataFrame(np.asarray(features))
            return FrameDatasetView(features, target, **kwargs)
        case "gpu":
            if isinstance(features, pd.DataFrame):
                kwargs.setdefault("feature_names", [str(c) for c in features.columns])
                features = features.to_numpy()
            return ArrayDatasetView(features, target, **kwargs)
        case _:
            raise ValueError(f"Unknown task type: {task_type}")
