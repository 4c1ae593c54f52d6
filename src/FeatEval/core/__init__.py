"""
Core abstractions for the FeatEval feature evaluation framework.

This module provides the fold partitioner, feature-set projector, evaluation
orchestrator, checkpointing and summary statistics, plus the protocols the
model trainer and dataset views implement.
"""

from .protocols import (
    DatasetView,
    FeatureEvalMode,
    FeatureStrengthCalculator,
    FoldContext,
    FoldData,
    FoldSpec,
    MetricDirection,
    ModelTrainer,
    SamplingUnit,
    TrainingCallbacks,
    TrainingKind,
    TreeModel,
)
from .config import CrossValidationConfig, FeatureEvalOptions, OutputOptions, TrainingOptions
from .errors import ConfigurationError, InternalError
from .metrics import Metric, create_metrics
from .checkpoint import FeatureEvaluationCallbacks, SnapshotState
from .cross_validation import FeatureEvaluator
from .results import FeatureEvaluationSummary


__all__ = [
    # Protocol interfaces
    "DatasetView",
    "TreeModel",
    "ModelTrainer",
    "TrainingCallbacks",
    "FeatureStrengthCalculator",
    # Shared types
    "SamplingUnit",
    "TrainingKind",
    "FeatureEvalMode",
    "MetricDirection",
    "FoldSpec",
    "FoldData",
    "FoldContext",
    "Metric",
    "create_metrics",
    # Configuration and errors
    "FeatureEvalOptions",
    "CrossValidationConfig",
    "TrainingOptions",
    "OutputOptions",
    "ConfigurationError",
    "InternalError",
    # Evaluation
    "FeatureEvaluator",
    "FeatureEvaluationCallbacks",
    "SnapshotState",
    "FeatureEvaluationSummary",
]
