"""
Typed configuration for feature evaluation runs.

Options are plain dataclasses built by the caller; nothing here reads files.
`FeatureEvalOptions` equality is what a snapshot is checked against on resume.
"""

import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ensure
from .protocols import FeatureEvalMode, SamplingUnit


@dataclass
class FeatureEvalOptions:
    """What to evaluate and how to cut the dataset into folds"""

    features_to_evaluate: List[List[int]] = field(default_factory=list)
    feature_eval_mode: FeatureEvalMode = FeatureEvalMode.ONE_VS_NONE
    fold_size_unit: SamplingUnit = SamplingUnit.OBJECT
    fold_size: int = 0
    relative_fold_size: float = 0.0
    fold_count: int = 1
    offset: int = 0
    time_split_quantile: float = 0.95

    def __post_init__(self):
        self.feature_eval_mode = FeatureEvalMode(self.feature_eval_mode)
        self.fold_size_unit = SamplingUnit(self.fold_size_unit)
        self.features_to_evaluate = [[int(f) for f in feature_set] for feature_set in self.features_to_evaluate]
        ensure(self.offset >= 0, f"Offset must be non-negative, got {self.offset}")
        ensure(0.0 < self.time_split_quantile <= 1.0, "Time split quantile must be in (0, 1]")

    @property
    def is_objectwise(self) -> bool:
        return self.fold_size_unit == SamplingUnit.OBJECT

    @property
    def feature_set_count(self) -> int:
        return len(self.features_to_evaluate)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["feature_eval_mode"] = self.feature_eval_mode.value
        data["fold_size_unit"] = self.fold_size_unit.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureEvalOptions":
        return cls(**data)


@dataclass
class CrossValidationConfig:
    """K-fold partitioning parameters; `fold_count == 0` means fixed-size folds are used"""

    fold_count: int = 0
    cv_type: str = "inverted"
    shuffle: bool = True

    @property
    def initialized(self) -> bool:
        return self.fold_count > 0


@dataclass
class TrainingOptions:
    """Knobs forwarded to the trainer, plus the ones the evaluator itself consumes"""

    iterations: int = 100
    learning_rate: float = 0.1
    random_seed: int = 0
    loss_function: str = "RMSE"
    eval_metrics: List[str] = field(default_factory=list)
    ignored_features: List[int] = field(default_factory=list)
    used_ram_limit: Optional[str] = None
    task_type: str = "cpu"
    thread_count: int = -1
    extra_params: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        ensure(self.iterations > 0, f"Iteration count must be positive, got {self.iterations}")


@dataclass
class OutputOptions:
    """Where per-fold logs and snapshots go"""

    train_dir: Optional[str] = None
    snapshot_file: str = "feature_eval_snapshot.bkp"
    save_snapshot: bool = False
    calc_feature_strength: bool = False
    feature_strength_type: str = "gain"
    metric_period: int = 1
    show_progress: bool = True

    @property
    def allow_write_files(self) -> bool:
        return self.train_dir is not None

    def snapshot_path(self) -> Path:
        path = Path(self.snapshot_file)
        if path.is_absolute():
            return path
        return Path(os.getcwd()) / path
