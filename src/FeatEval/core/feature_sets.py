"""
Feature masking per training kind and feature evaluation mode.

| Mode          | Baseline hides      | Testing hides   |
|---------------|---------------------|-----------------|
| OneVsAll      | nothing             | nothing         |
| OneVsNone     | union of all sets   | nothing         |
| OneVsOthers   | tested set          | nothing         |
| OthersVsAll   | nothing             | tested set      |
"""

from typing import List, Sequence

from ezcolorlog import root_logger as logger

from .errors import ensure
from .protocols import FeatureEvalMode, FoldData, TrainingKind


def uses_common_baseline(mode: FeatureEvalMode) -> bool:
    """Only OneVsOthers needs a baseline per feature set"""
    return mode != FeatureEvalMode.ONE_VS_OTHERS


def get_ignored_features(
    mode: FeatureEvalMode,
    training_kind: TrainingKind,
    feature_set_idx: int,
    feature_sets: Sequence[Sequence[int]],
) -> List[int]:
    """Sorted feature indices to hide on top of the globally ignored ones"""
    ensure(
        0 <= feature_set_idx < len(feature_sets),
        f"Feature set index {feature_set_idx} out of range for {len(feature_sets)} feature sets",
    )
    tested = feature_sets[feature_set_idx]
    match (mode, training_kind):
        case (FeatureEvalMode.ONE_VS_ALL, _):
            ignored = set()
        case (FeatureEvalMode.ONE_VS_NONE, TrainingKind.BASELINE):
            ignored = {f for feature_set in feature_sets for f in feature_set}
        case (FeatureEvalMode.ONE_VS_NONE, TrainingKind.TESTING):
            ignored = set()
        case (FeatureEvalMode.ONE_VS_OTHERS, TrainingKind.BASELINE):
            ignored = set(tested)
        case (FeatureEvalMode.ONE_VS_OTHERS, TrainingKind.TESTING):
            ignored = set()
        case (FeatureEvalMode.OTHERS_VS_ALL, TrainingKind.BASELINE):
            ignored = set()
        case (FeatureEvalMode.OTHERS_VS_ALL, TrainingKind.TESTING):
            ignored = set(tested)
        case _:
            raise ValueError(f"Unknown feature evaluation mode {mode} / training kind {training_kind}")
    return sorted(ignored)


def describe_ignored_features(feature_set_idx: int, training_kind: TrainingKind, ignored: Sequence[int]) -> str:
    message = f"Feature set {feature_set_idx}, {training_kind.value}"
    if not ignored:
        return message + ", no additional ignored features"
    return message + ", additional ignored features " + ":".join(str(f) for f in ignored)


def update_ignored_features_in_learn(
    mode: FeatureEvalMode,
    training_kind: TrainingKind,
    feature_set_idx: int,
    feature_sets: Sequence[Sequence[int]],
    folds_data: List[FoldData],
) -> List[FoldData]:
    """Masked copies of every fold's views; the source views stay untouched"""
    ignored = get_ignored_features(mode, training_kind, feature_set_idx, feature_sets)
    logger.info(describe_ignored_features(feature_set_idx, training_kind, ignored))
    return [
        FoldData(
            learn=fold.learn.get_features_subset(ignored),
            test=None if fold.test is None else fold.test.get_features_subset(ignored),
        )
        for fold in folds_data
    ]


def have_features_to_evaluate(
    folds_data: List[FoldData],
    testing_folds_data: List[FoldData],
    tested_features: Sequence[int],
) -> bool:
    """False if in some fold every tested feature is ignored or constant, or testing has nothing to train on"""
    return all(
        fold.learn.has_available_features(tested_features) and testing_fold.learn.has_available_features()
        for fold, testing_fold in zip(folds_data, testing_folds_data)
    )
