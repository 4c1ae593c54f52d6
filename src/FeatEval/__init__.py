from .core import FeatureEvalMode, FeatureEvalOptions, FeatureEvaluator, FeatureEvaluationSummary
from .data import make_dataset_view
from .evaluation import run_feature_evaluation

__all__ = [
    "FeatureEvalMode",
    "FeatureEvalOptions",
    "FeatureEvaluator",
    "FeatureEvaluationSummary",
    "make_dataset_view",
    "run_feature_evaluation",
]
