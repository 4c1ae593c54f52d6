import re
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np
from scipy.stats import rankdata, wilcoxon


# =============================================================================
# SIGNIFICANCE ----------------------------------------------------------------
# =============================================================================


@dataclass
class WxTestResult:
    p_value: float
    w_plus: float
    w_minus: float


def wx_test(baseline: Iterable[float], test: Iterable[float]) -> WxTestResult:
    """Paired Wilcoxon signed-rank test between per-fold baseline and tested losses.

    Pairs with zero difference carry no information and are dropped. With fewer
    than two informative pairs the test cannot tell the samples apart and the
    p-value is 0.5.

    Args:
        baseline: per-fold values of the baseline run
        test: per-fold values of the tested run, same fold order

    Returns:
        two-sided p-value and the positive/negative rank sums of (baseline - test)
    """
    baseline = np.asarray(list(baseline), dtype=float)
    test = np.asarray(list(test), dtype=float)
    assert len(baseline) == len(test), f"Paired samples differ in size: {len(baseline)} vs {len(test)}"

    diffs = baseline - test
    diffs = diffs[diffs != 0]
    if len(diffs) < 2:
        return WxTestResult(p_value=0.5, w_plus=0.0, w_minus=0.0)

    ranks = rankdata(np.abs(diffs))
    w_plus = float(ranks[diffs > 0].sum())
    w_minus = float(ranks[diffs < 0].sum())
    p_value = float(wilcoxon(diffs, alternative="two-sided").pvalue)
    return WxTestResult(p_value=min(max(p_value, 0.0), 1.0), w_plus=w_plus, w_minus=w_minus)


# =============================================================================
# RESOURCES -------------------------------------------------------------------
# =============================================================================


_MEMORY_UNITS = {"": 1, "b": 1}
for _power, _prefix in enumerate("kmgt", start=1):
    _MEMORY_UNITS[_prefix] = _MEMORY_UNITS[_prefix + "b"] = 1024**_power


def parse_memory_size(description: Optional[str]) -> Optional[int]:
    """'512mb' -> 536870912; None stays None (no limit)"""
    if description is None:
        return None
    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*([kmgt]?b?)\s*", description.lower())
    if not match:
        raise ValueError(f"Cannot parse memory size: '{description}'")
    value, unit = match.groups()
    return int(float(value) * _MEMORY_UNITS[unit])


def join_ints(values: Iterable[int], sep: str = ",") -> str:
    return sep.join(str(int(v)) for v in values)
