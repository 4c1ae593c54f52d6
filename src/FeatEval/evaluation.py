from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

import pandas as pd
from ezcolorlog import root_logger as logger

from .core.config import CrossValidationConfig, FeatureEvalOptions, OutputOptions, TrainingOptions
from .core.cross_validation import FeatureEvaluator
from .core.protocols import DatasetView, FeatureStrengthCalculator, ModelTrainer
from .core.results import FeatureEvaluationSummary
from .evaluators import LightGBMFeatureStrength, LightGBMTrainer

REPORT_FILE = "feature_eval_summary.tsv"


# =============================================================================
# FEATURE EVALUATION -----------------------------------------------------------
# =============================================================================


def run_feature_evaluation(
    dataset: DatasetView,
    eval_options: FeatureEvalOptions,
    training_options: Optional[TrainingOptions] = None,
    output_options: Optional[OutputOptions] = None,
    cv_config: Optional[CrossValidationConfig] = None,
    trainer: Optional[ModelTrainer] = None,
    feature_strength: Optional[FeatureStrengthCalculator] = None,
    max_workers: Optional[int] = None,
    verbose: bool = True,
) -> FeatureEvaluationSummary:
    """
    Run feature evaluation and return the summary of all feature sets.

    Owns the thread pool the evaluator batches dataset subsetting and model
    application on, so nothing outlives the call.

    Args:
        dataset: Dataset view to cut into folds
        eval_options: Feature sets to evaluate, evaluation mode and fold geometry
        training_options: Trainer knobs (iterations, loss, metrics, seed, RAM limit)
        output_options: Per-fold logs, snapshot and feature strength settings
        cv_config: K-fold partitioning and shuffling
        trainer: Model trainer (default: LightGBMTrainer)
        feature_strength: Feature strength calculator (default: LightGBM importances when requested)
        max_workers: Thread pool size
        verbose: Whether to log the final table

    Returns:
        FeatureEvaluationSummary with Wx p-values and average metric deltas
    """
    training_options = training_options or TrainingOptions()
    output_options = output_options or OutputOptions()
    trainer = trainer or LightGBMTrainer()
    if feature_strength is None and output_options.calc_feature_strength:
        feature_strength = LightGBMFeatureStrength(output_options.feature_strength_type)

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        evaluator = FeatureEvaluator(trainer, executor, feature_strength)
        summary = evaluator.evaluate_features(dataset, training_options, eval_options, output_options, cv_config)

    if output_options.allow_write_files:
        report_path = Path(output_options.train_dir) / REPORT_FILE
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(summary.to_tsv())
        logger.info(f"Feature evaluation report written to {report_path}")

    if verbose:
        log_results(summary)
    return summary


# =============================================================================
# EVALUATION HELPER FUNCTIONS ------------------------------------------------
# =============================================================================


def log_results(summary: FeatureEvaluationSummary, significance: float = 0.05):
    """Log the summary table and flag feature sets whose effect is significant"""
    table = summary.to_frame()
    with pd.option_context("display.max_columns", None, "display.width", 200):
        logger.info(f"Feature evaluation results:\n{table}")

    if not summary.feature_sets:
        return
    loss_name = summary.metric_names[0]
    for feature_set_idx, row in table.iterrows():
        if row["p-value"] >= significance:
            continue
        verdict = "improves" if row[loss_name] > 0 else "degrades"
        logger.info(
            f"Feature set {feature_set_idx} [{row['feature set']}] {verdict} {loss_name} "
            f"by {abs(row[loss_name]):.6g} (p={row['p-value']:.4f})"
        )
