"""
Repeated cross-validated feature evaluation.

The dataset is cut into fold ranges (one pass over the disjoint folds each,
reshuffled per range). Within a range every feature set trains a BASELINE and
a TESTING model per fold through the ModelTrainer collaborator; per-iteration
test metrics of every fold are committed to a FeatureEvaluationSummary, which
finally turns them into Wx p-values and average metric deltas.
"""

import time
from concurrent.futures import Executor
from dataclasses import dataclass, replace
from pathlib import Path
from typing import List, Optional

import numpy as np
from ezcolorlog import root_logger as logger
from tqdm.auto import tqdm

from .checkpoint import FeatureEvaluationCallbacks
from .config import CrossValidationConfig, FeatureEvalOptions, OutputOptions, TrainingOptions
from .errors import ensure, ensure_internal
from .feature_sets import have_features_to_evaluate, update_ignored_features_in_learn, uses_common_baseline
from .metrics import Metric, create_metrics, get_best_value_types, staged_metric_values
from .partitioning import (
    FoldRangePlan,
    count_disjoint_folds,
    create_fold_data,
    plan_fold_ranges,
    prepare_folds,
    sampling_unit_count,
    shuffle_groups,
)
from .protocols import DatasetView, FeatureStrengthCalculator, FoldContext, FoldData, ModelTrainer, TrainingKind
from .results import FeatureEvaluationSummary, make_fold_dir_name
from ..utils import parse_memory_size


def derive_fold_seed(range_seed: int, feature_set_idx: int, is_test: bool, fold_idx: int) -> int:
    """Seed of one fold model, independent of which folds were skipped on resume"""
    sequence = np.random.SeedSequence([range_seed, feature_set_idx, int(is_test), fold_idx])
    return int(sequence.generate_state(1)[0])


@dataclass
class FeatureEvaluationSession:
    """Everything fixed for the duration of one evaluate_features call"""

    training_options: TrainingOptions
    eval_options: FeatureEvalOptions
    output_options: OutputOptions
    cv_config: CrossValidationConfig
    callbacks: FeatureEvaluationCallbacks
    summary: FeatureEvaluationSummary
    memory_budget: Optional[int] = None


class FeatureEvaluator:
    """Cross-validated feature evaluation engine over any ModelTrainer"""

    def __init__(
        self,
        trainer: ModelTrainer,
        executor: Executor,
        feature_strength: Optional[FeatureStrengthCalculator] = None,
    ):
        self.trainer = trainer
        self.executor = executor
        self.feature_strength = feature_strength

    def __str__(self):
        return f"FeatureEvaluator(trainer={type(self.trainer).__name__})"

    def evaluate_features(
        self,
        dataset: DatasetView,
        training_options: TrainingOptions,
        eval_options: FeatureEvalOptions,
        output_options: Optional[OutputOptions] = None,
        cv_config: Optional[CrossValidationConfig] = None,
    ) -> FeatureEvaluationSummary:
        """
        Evaluate every feature set over all fold ranges.

        Args:
            dataset: Full dataset; globally ignored features are hidden before partitioning
            training_options: Forwarded to the trainer; also supplies seed, metrics and RAM limit
            eval_options: Feature sets, mode and fold geometry
            output_options: Per-fold logs and snapshot settings
            cv_config: K-fold partitioning (when initialized) and shuffling

        Returns:
            Summary with Wx p-values and average metric deltas computed
        """
        output_options = self.check_output_options(output_options or OutputOptions())
        cv_config = cv_config or CrossValidationConfig()
        ensure(
            not output_options.calc_feature_strength or self.feature_strength is not None,
            "Feature strength was requested but no feature strength calculator is configured",
        )

        fold_count = cv_config.fold_count if cv_config.initialized else eval_options.fold_count
        ensure(fold_count > 0, "Fold count must be positive integer")
        if training_options.ignored_features:
            dataset = dataset.get_features_subset(training_options.ignored_features)

        if cv_config.initialized:
            fold_size = eval_options.fold_size
            disjoint_fold_count = cv_config.fold_count
            offset = 0
            if eval_options.offset > 0:
                logger.warning(f"Offset {eval_options.offset} is ignored in k-fold mode, every fold is evaluated")
        else:
            fold_size, disjoint_fold_count = count_disjoint_folds(dataset, eval_options, cv_config.shuffle)
            offset = eval_options.offset
            if disjoint_fold_count < offset + fold_count:
                unit_count = sampling_unit_count(dataset, eval_options.is_objectwise)
                ensure(
                    cv_config.shuffle,
                    "Dataset contains too few objects or groups to evaluate features without shuffling. "
                    f"Please decrease fold size to at most {unit_count // (offset + fold_count)}, "
                    "or enable dataset shuffling",
                )
        plans = plan_fold_ranges(offset, fold_count, disjoint_fold_count, training_options.random_seed)
        logger.info(
            f"Feature evaluation: {eval_options.feature_set_count} feature sets, mode {eval_options.feature_eval_mode.value}, "
            f"{fold_count} folds in {len(plans)} fold ranges of {disjoint_fold_count} disjoint folds"
        )

        summary = FeatureEvaluationSummary()
        callbacks = FeatureEvaluationCallbacks(training_options.iterations, eval_options, summary, absolute_offset=offset)
        snapshot_path = output_options.snapshot_path()
        if output_options.save_snapshot and snapshot_path.exists():
            callbacks.load_snapshot(snapshot_path)

        session = FeatureEvaluationSession(
            training_options=training_options,
            eval_options=eval_options,
            output_options=output_options,
            cv_config=cv_config,
            callbacks=callbacks,
            summary=summary,
            memory_budget=parse_memory_size(training_options.used_ram_limit),
        )
        for plan in plans:
            range_options = replace(eval_options, fold_size=fold_size, offset=plan.offset, fold_count=plan.fold_count)
            self.evaluate_fold_range(session, dataset, plan, range_options)

        summary.calc_wx_test_and_average_delta()
        return summary

    def evaluate_fold_range(
        self,
        session: FeatureEvaluationSession,
        dataset: DatasetView,
        plan: FoldRangePlan,
        range_options: FeatureEvalOptions,
    ) -> None:
        """Train and score every (feature set, training kind, fold) of one fold range"""
        fold_count = range_options.fold_count
        ensure(dataset.object_count > fold_count, "Pool is too small to be split into folds")
        ensure(dataset.object_count > range_options.fold_size, "Pool is too small to be split into folds")
        ensure(not dataset.ordered, "Feature evaluation for ordered objects data is not yet implemented")
        logger.info(
            f"Fold range {plan.range_idx}: folds [{plan.begin + plan.offset}, {plan.begin + plan.offset + plan.fold_count})"
        )

        if session.cv_config.shuffle:
            permutation = shuffle_groups(dataset, plan.random_seed)
            dataset = dataset.get_subset(permutation, session.memory_budget)

        folds = prepare_folds(dataset, session.cv_config, range_options)
        ensure_internal(len(folds) == fold_count, f"Expected {fold_count} folds, got {len(folds)}")
        folds_data = create_fold_data(dataset, folds, session.memory_budget, self.executor)

        approx_dimension = self.trainer.get_approx_dimension(dataset)
        metrics = create_metrics(session.training_options.loss_function, session.training_options.eval_metrics)
        get_best_value_types(metrics)

        summary = session.summary
        if not summary.has_header_info():
            summary.set_header_info(metrics, range_options.features_to_evaluate)
        ensure(
            summary.metric_names == [metric.name for metric in metrics],
            f"Metrics {[metric.name for metric in metrics]} differ from evaluated metrics {summary.metric_names}",
        )

        def train_folds(is_test: bool, feature_set_idx: int, masked_folds_data: List[FoldData]):
            self.train_full_models(
                session, plan, range_options, is_test, feature_set_idx, masked_folds_data, metrics, approx_dimension
            )

        if not range_options.features_to_evaluate:
            train_folds(False, 0, list(folds_data))
            summary.create_logs(
                session.output_options, range_options, False, plan.begin, session.callbacks.absolute_offset
            )
            return

        mode = range_options.feature_eval_mode
        feature_sets = range_options.features_to_evaluate
        use_common_baseline = uses_common_baseline(mode)
        for feature_set_idx in range(len(feature_sets)):
            if feature_set_idx > 0 and use_common_baseline:
                summary.clone_common_baseline(feature_set_idx)
            else:
                baseline_folds_data = update_ignored_features_in_learn(
                    mode, TrainingKind.BASELINE, feature_set_idx, feature_sets, folds_data
                )
                train_folds(False, feature_set_idx, baseline_folds_data)

            testing_folds_data = update_ignored_features_in_learn(
                mode, TrainingKind.TESTING, feature_set_idx, feature_sets, folds_data
            )
            if have_features_to_evaluate(folds_data, testing_folds_data, feature_sets[feature_set_idx]):
                train_folds(True, feature_set_idx, testing_folds_data)
            else:
                logger.warning(
                    f"Feature set {feature_set_idx} consists of ignored or constant features; "
                    "eval feature assumes baseline data = testing data for this feature set"
                )
                summary.copy_baseline_to_testing(feature_set_idx, 0 if use_common_baseline else feature_set_idx)

        for is_test in (False, True):
            summary.create_logs(
                session.output_options, range_options, is_test, plan.begin, session.callbacks.absolute_offset
            )

    def train_full_models(
        self,
        session: FeatureEvaluationSession,
        plan: FoldRangePlan,
        range_options: FeatureEvalOptions,
        is_test: bool,
        feature_set_idx: int,
        folds_data: List[FoldData],
        metrics: List[Metric],
        approx_dimension: int,
    ) -> None:
        """Train one model per fold of the range, skipping folds restored from a snapshot"""
        callbacks = session.callbacks
        output_options = session.output_options
        offset_in_range = range_options.offset
        kind = TrainingKind.TESTING if is_test else TrainingKind.BASELINE

        fold_pbar = tqdm(
            enumerate(folds_data),
            desc=f"[{kind.value.upper()}] Feature set {feature_set_idx}",
            total=len(folds_data),
            disable=not output_options.show_progress,
        )
        for fold_idx, fold_data in fold_pbar:
            fold_in_range = offset_in_range + fold_idx
            if callbacks.have_eval_feature_summary(plan.begin, feature_set_idx, is_test, fold_in_range):
                continue

            start_time = time.perf_counter()
            fold_context = FoldContext(
                fold_idx=plan.begin + fold_in_range,
                data=fold_data,
                random_seed=derive_fold_seed(plan.random_seed, feature_set_idx, is_test, fold_in_range),
            )
            train_dir = None
            if output_options.allow_write_files:
                fold_dir = make_fold_dir_name(range_options, is_test, feature_set_idx, fold_context.fold_idx)
                train_dir = str(Path(output_options.train_dir) / fold_dir)
            callbacks.set_progress(plan.begin, feature_set_idx, is_test, fold_in_range)
            callbacks.reset_iteration_index()

            self.trainer.train(session.training_options, train_dir, metrics, fold_context, callbacks)
            self.calc_metrics_for_test(metrics, approx_dimension, fold_context)

            feature_strength = None
            if output_options.calc_feature_strength:
                feature_strength = self.feature_strength(fold_context.model, None)
            session.summary.append_fold(is_test, feature_set_idx, fold_context.metric_values_on_test, feature_strength)

            elapsed = time.perf_counter() - start_time
            logger.info(f"Fold {fold_context.fold_idx}: model built in {elapsed:.2f} sec")
            fold_pbar.set_postfix({"fold": fold_context.fold_idx, "sec": f"{elapsed:.2f}"})

            if output_options.save_snapshot:
                callbacks.save_snapshot(output_options.snapshot_path())
            folds_data[fold_idx] = fold_context.data

    def calc_metrics_for_test(self, metrics: List[Metric], approx_dimension: int, fold_context: FoldContext) -> None:
        """Per-iteration metrics of the fold model on the fold's test view"""
        ensure_internal(fold_context.model is not None, f"No model in fold {fold_context.fold_idx}")
        ensure_internal(fold_context.data.test is not None, f"No test data in fold {fold_context.fold_idx}")
        tree_count = fold_context.model.tree_count
        iteration_count = len(fold_context.metric_values_on_train)
        ensure_internal(
            iteration_count == tree_count,
            f"Fold {fold_context.fold_idx}: model size ({tree_count}) differs from iteration count ({iteration_count})",
        )
        fold_context.metric_values_on_test = staged_metric_values(
            fold_context.model, fold_context.data.test, metrics, approx_dimension, self.executor
        )

    @staticmethod
    def check_output_options(output_options: OutputOptions) -> OutputOptions:
        if output_options.metric_period > 1:
            logger.warning(
                "Warning: metric_period is ignored because feature evaluation needs metric values on each iteration"
            )
            output_options = replace(output_options, metric_period=1)
        return output_options
