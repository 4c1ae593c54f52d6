"""
Fold partitioning for feature evaluation.

Folds are cut over sampling units (objects or groups) and expanded to object
indices. Three strategies are supported:
- k-fold: units split into `fold_count` near-equal contiguous parts, each part tested once
- fixed-size: units split into blocks of `fold_size`, a window of blocks is tested
- time split: blocks are cut from units up to a timestamp quantile, the tail is a shared test set
"""

import math
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from ezcolorlog import root_logger as logger

from .config import CrossValidationConfig, FeatureEvalOptions
from .errors import ensure, ensure_internal
from .protocols import DatasetView, FoldData, FoldSpec


###############################################################################
# Unit blocks -----------------------------------------------------------------
###############################################################################


def expand_groups(bounds: np.ndarray, group_indices) -> np.ndarray:
    """Object indices of the given groups, in the given group order"""
    group_indices = np.asarray(group_indices, dtype=np.int64)
    if len(group_indices) == 0:
        return np.zeros(0, dtype=np.int64)
    return np.concatenate([np.arange(bounds[g], bounds[g + 1]) for g in group_indices]).astype(np.int64)


def split_into_parts(bounds: np.ndarray, part_count: int) -> List[np.ndarray]:
    """Split groups into `part_count` contiguous parts of near-equal group count"""
    group_count = len(bounds) - 1
    ensure(part_count > 0, "Fold count must be positive integer")
    ensure(group_count >= part_count, f"Pool is too small to be split into {part_count} folds")
    edges = np.linspace(0, group_count, part_count + 1).round().astype(int)
    return [np.arange(bounds[edges[i]], bounds[edges[i + 1]], dtype=np.int64) for i in range(part_count)]


def blocks_by_groups(bounds: np.ndarray, group_indices, fold_size: int) -> List[np.ndarray]:
    """Full blocks of `fold_size` groups; trailing groups that do not fill a block are never tested"""
    group_indices = np.asarray(group_indices, dtype=np.int64)
    block_count = len(group_indices) // fold_size
    return [expand_groups(bounds, group_indices[i * fold_size : (i + 1) * fold_size]) for i in range(block_count)]


def blocks_by_objects(bounds: np.ndarray, group_indices, fold_size: int) -> List[np.ndarray]:
    """Blocks of at least `fold_size` objects grown group by group, so no group straddles two blocks"""
    blocks = []
    current: List[int] = []
    current_size = 0
    for g in np.asarray(group_indices, dtype=np.int64):
        current.append(g)
        current_size += bounds[g + 1] - bounds[g]
        if current_size >= fold_size:
            blocks.append(expand_groups(bounds, current))
            current = []
            current_size = 0
    return blocks


def split_into_blocks(bounds: np.ndarray, group_indices, fold_size: int, is_objectwise: bool) -> List[np.ndarray]:
    if is_objectwise:
        return blocks_by_objects(bounds, group_indices, fold_size)
    return blocks_by_groups(bounds, group_indices, fold_size)


def calc_train_subsets(test_subsets: List[np.ndarray], object_count: int) -> List[np.ndarray]:
    """Complement of every test subset, keeping object order"""
    all_objects = np.arange(object_count, dtype=np.int64)
    train_subsets = []
    for test in test_subsets:
        mask = np.ones(object_count, dtype=bool)
        mask[test] = False
        train_subsets.append(all_objects[mask])
    return train_subsets


def take_middle_elements(offset: int, count: int, subsets: List[np.ndarray]) -> List[np.ndarray]:
    ensure_internal(
        offset + count <= len(subsets),
        f"Dataset permutation logic failed: window [{offset}, {offset + count}) outside {len(subsets)} blocks",
    )
    return subsets[offset : offset + count]


###############################################################################
# Time split ------------------------------------------------------------------
###############################################################################


def group_timestamps(dataset: DatasetView) -> np.ndarray:
    """Timestamp of the first object of every group"""
    bounds = dataset.group_bounds()
    return dataset.timestamps[bounds[:-1]]


def find_quantile_timestamp(dataset: DatasetView, quantile: float) -> int:
    timestamps = np.sort(group_timestamps(dataset))
    ensure(len(timestamps) > 0, "Time split needs a non-empty dataset")
    position = min(int(len(timestamps) * quantile), len(timestamps) - 1)
    quantile_timestamp = int(timestamps[position])
    logger.info(f"Quantile timestamp {quantile_timestamp}")
    return quantile_timestamp


def quantile_split(
    dataset: DatasetView,
    quantile_timestamp: int,
    fold_size: int,
    is_objectwise: bool,
) -> Tuple[List[np.ndarray], np.ndarray]:
    """Train blocks cut from groups up to the quantile timestamp, and the test tail past it"""
    bounds = dataset.group_bounds()
    timestamps = group_timestamps(dataset)
    early = np.flatnonzero(timestamps <= quantile_timestamp)
    late = np.flatnonzero(timestamps > quantile_timestamp)
    train_blocks = split_into_blocks(bounds, early, fold_size, is_objectwise)
    return train_blocks, expand_groups(bounds, late)


###############################################################################
# Fold geometry ---------------------------------------------------------------
###############################################################################


@dataclass
class FoldRangePlan:
    """One pass over the disjoint folds of the dataset"""

    range_idx: int
    begin: int  # absolute index of the first disjoint fold of this range
    offset: int  # first fold of the window inside the range
    fold_count: int
    random_seed: int


def sampling_unit_count(dataset: DatasetView, is_objectwise: bool) -> int:
    return dataset.object_count if is_objectwise else len(dataset.group_bounds()) - 1


def min_objectwise_block_count(unit_count: int, fold_size: int, max_group_size: int) -> int:
    """Fewest full blocks `blocks_by_objects` cuts from `unit_count` objects in any group order.

    A full block holds at most `fold_size + max_group_size - 1` objects and the
    incomplete tail at most `fold_size - 1`.
    """
    remaining = unit_count - fold_size + 1
    if remaining <= 0:
        return 0
    return math.ceil(remaining / (fold_size + max_group_size - 1))


def count_disjoint_folds(dataset: DatasetView, options: FeatureEvalOptions, shuffle: bool = False) -> Tuple[int, int]:
    """Absolute fold size and how many disjoint folds fit into the dataset.

    With `shuffle`, every fold range reshuffles the groups before cutting blocks,
    so objectwise blocks on grouped data are counted for the worst group order.
    """
    bounds = dataset.group_bounds()
    if dataset.timestamps is None:
        group_indices = np.arange(len(bounds) - 1)
    else:
        ensure(dataset.group_ids is not None, "Timesplit feature evaluation requires dataset with groups")
        quantile_timestamp = find_quantile_timestamp(dataset, options.time_split_quantile)
        group_indices = np.flatnonzero(group_timestamps(dataset) <= quantile_timestamp)
    if options.is_objectwise:
        unit_count = int(sum(bounds[g + 1] - bounds[g] for g in group_indices))
    else:
        unit_count = len(group_indices)

    if options.fold_size > 0:
        fold_size = options.fold_size
    else:
        fold_size = int(options.relative_fold_size * unit_count)
        ensure(
            fold_size > 0,
            f"Relative fold size must be greater than {1.0 / max(unit_count, 1)} so that size of each fold is non-zero",
        )
    block_count = len(split_into_blocks(bounds, group_indices, fold_size, options.is_objectwise))
    if shuffle and options.is_objectwise and len(group_indices) > 0:
        max_group_size = int(max(bounds[g + 1] - bounds[g] for g in group_indices))
        block_count = min(block_count, min_objectwise_block_count(unit_count, fold_size, max_group_size))
    ensure(block_count > 0, f"Pool is too small to be split into folds of size {fold_size}")
    return fold_size, block_count


def plan_fold_ranges(offset: int, fold_count: int, disjoint_fold_count: int, random_seed: int) -> List[FoldRangePlan]:
    """Cut the fold window [offset, offset + fold_count) into ranges of at most `disjoint_fold_count` folds"""
    ensure(fold_count > 0, "Fold count must be positive integer")
    range_total = math.ceil((offset + fold_count) / disjoint_fold_count)
    seeds = np.random.default_rng(random_seed).integers(0, 2**63 - 1, size=range_total, dtype=np.int64)

    plans = []
    range_idx = offset // disjoint_fold_count
    offset_in_range = offset % disjoint_fold_count
    count_in_range = min(disjoint_fold_count - offset_in_range, fold_count)
    processed = 0
    while processed < fold_count:
        plans.append(
            FoldRangePlan(
                range_idx=range_idx,
                begin=range_idx * disjoint_fold_count,
                offset=offset_in_range,
                fold_count=count_in_range,
                random_seed=int(seeds[range_idx]),
            )
        )
        processed += count_in_range
        range_idx += 1
        offset_in_range = 0
        count_in_range = min(disjoint_fold_count, fold_count - processed)
    return plans


def shuffle_groups(dataset: DatasetView, random_seed: int) -> np.ndarray:
    """Object permutation that moves whole groups"""
    bounds = dataset.group_bounds()
    order = np.random.default_rng(random_seed).permutation(len(bounds) - 1)
    return expand_groups(bounds, order)


###############################################################################
# Folds -----------------------------------------------------------------------
###############################################################################


def prepare_folds(
    dataset: DatasetView,
    cv_config: CrossValidationConfig,
    options: FeatureEvalOptions,
) -> List[FoldSpec]:
    """Folds of one range; `options.offset` / `options.fold_count` are relative to the range"""
    bounds = dataset.group_bounds()
    if dataset.timestamps is not None:
        return prepare_time_split_folds(dataset, options)

    if cv_config.initialized:
        ensure(
            cv_config.cv_type == "inverted",
            f"Feature evaluation requires inverted cross-validation, got '{cv_config.cv_type}'",
        )
        test_subsets = split_into_parts(bounds, cv_config.fold_count)
        return [
            FoldSpec(train, test)
            for train, test in zip(calc_train_subsets(test_subsets, dataset.object_count), test_subsets)
        ]

    ensure(options.fold_size > 0, "Fold size must be positive integer")
    ensure(options.fold_count > 0, "Fold count must be positive integer")
    test_subsets = split_into_blocks(bounds, np.arange(len(bounds) - 1), options.fold_size, options.is_objectwise)
    test_subsets = take_middle_elements(options.offset, options.fold_count, test_subsets)
    train_subsets = calc_train_subsets(test_subsets, dataset.object_count)
    return [FoldSpec(train, test) for train, test in zip(train_subsets, test_subsets)]


def prepare_time_split_folds(dataset: DatasetView, options: FeatureEvalOptions) -> List[FoldSpec]:
    ensure(dataset.group_ids is not None, "Timesplit feature evaluation requires dataset with groups")
    ensure(dataset.timestamps is not None, "Timesplit feature evaluation requires dataset with timestamps")
    ensure(options.fold_size > 0, "Fold size must be positive integer")

    quantile_timestamp = find_quantile_timestamp(dataset, options.time_split_quantile)
    train_blocks, test_block = quantile_split(dataset, quantile_timestamp, options.fold_size, options.is_objectwise)
    train_blocks = take_middle_elements(options.offset, options.fold_count, train_blocks)
    return [FoldSpec(train, test_block) for train in train_blocks]


def create_fold_data(
    dataset: DatasetView,
    folds: List[FoldSpec],
    memory_budget: Optional[int],
    executor: Executor,
) -> List[FoldData]:
    """Materialize learn/test views of every fold as one batch of executor tasks"""
    ensure_internal(len(folds) > 0, "No folds to build")
    per_task_budget = None if memory_budget is None else memory_budget // (2 * len(folds))

    learn_futures = [executor.submit(dataset.get_subset, fold.train_indices, per_task_budget) for fold in folds]
    test_futures = {}
    for fold in folds:
        # time split folds share one test array
        if id(fold.test_indices) not in test_futures:
            test_futures[id(fold.test_indices)] = executor.submit(
                dataset.get_subset, fold.test_indices, per_task_budget
            )

    return [
        FoldData(learn=learn.result(), test=test_futures[id(fold.test_indices)].result())
        for fold, learn in zip(folds, learn_futures)
    ]
