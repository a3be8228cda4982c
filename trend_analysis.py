"""
Grouped Trend Analysis
======================
Trend estimation for water quality time series, applied per group.

This module provides:
- Mann-Kendall trend test (tie-corrected) with Sen's slope
- Ordinary least squares baselines (time trend, concentration vs covariate)
- Aggregation of raw observations to one value per group and period
- A grouped runner that applies a model independently to every group
  bundle and flattens the results into one summary table

License: MIT
"""

from __future__ import annotations

import functools
import logging
import multiprocessing
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats

logger = logging.getLogger(__name__)

ModelFunction = Callable[[pd.DataFrame], Mapping[str, float]]

# =============================================================================
# ERRORS
# =============================================================================

class TrendAnalysisError(Exception):
    """Base class for trend analysis errors."""


class InsufficientDataError(TrendAnalysisError):
    """Raised when a series is too short for the requested model."""

    def __init__(self, n: int, required: int):
        self.n = n
        self.required = required
        super().__init__(f"{n} observation(s) available, at least {required} required")


class ModelFailureError(TrendAnalysisError):
    """Wraps an unexpected error raised while fitting one group."""


# =============================================================================
# TREND ESTIMATOR
# =============================================================================

@dataclass(frozen=True)
class TrendResult:
    """Mann-Kendall / Sen's slope result for one series."""
    slope: float
    p_value: float
    s: int
    var_s: float
    z: float
    n: int

    def as_dict(self) -> dict[str, float]:
        return {
            'slope': self.slope,
            'p_value': self.p_value,
            'mk_s': self.s,
            'mk_var_s': self.var_s,
            'mk_z': self.z,
            'n': self.n,
        }


@dataclass(frozen=True)
class RegressionResult:
    """Slope and significance of an ordinary least squares fit."""
    estimate: float
    intercept: float
    p_value: float
    r_squared: float
    std_err: float
    n: int

    def as_dict(self) -> dict[str, float]:
        return {
            'estimate': self.estimate,
            'p_value': self.p_value,
            'r_squared': self.r_squared,
            'std_err': self.std_err,
            'n': self.n,
        }


def _as_series(values: Iterable[float], times: Optional[Iterable[float]]) -> tuple[np.ndarray, np.ndarray]:
    y = np.asarray(list(values), dtype=float)
    if times is None:
        x = np.arange(len(y), dtype=float)
    else:
        x = np.asarray(list(times), dtype=float)
        if len(x) != len(y):
            raise ValueError(f"times has length {len(x)} but values has length {len(y)}")
    if np.isnan(y).any() or np.isnan(x).any():
        raise ValueError("Missing values must be removed before trend estimation")
    return x, y


def mann_kendall_test(values: Iterable[float]) -> tuple[int, float, float, float]:
    """
    Mann-Kendall test for a monotonic trend.

    Returns (S, var(S), Z, two-sided p-value). The variance includes the
    correction for tied values. When every value is tied the variance is
    zero and Z and the p-value are NaN.
    """
    _, x = _as_series(values, None)
    n = len(x)
    if n < 2:
        raise InsufficientDataError(n, 2)

    i, j = np.triu_indices(n, k=1)
    s = int(np.sign(x[j] - x[i]).sum())

    _, tie_counts = np.unique(x, return_counts=True)
    tie_term = np.sum(tie_counts * (tie_counts - 1) * (2 * tie_counts + 5))
    var_s = (n * (n - 1) * (2 * n + 5) - tie_term) / 18

    if var_s <= 0:
        return s, 0.0, np.nan, np.nan

    if s > 0:
        z = (s - 1) / np.sqrt(var_s)
    elif s < 0:
        z = (s + 1) / np.sqrt(var_s)
    else:
        z = 0.0

    p_value = 2 * stats.norm.sf(abs(z))
    return s, float(var_s), float(z), float(min(p_value, 1.0))


def sens_slope(values: Iterable[float], times: Optional[Iterable[float]] = None) -> float:
    """Median of all pairwise slopes. Pairs sharing a time stamp are skipped."""
    x, y = _as_series(values, times)
    n = len(y)
    if n < 2:
        raise InsufficientDataError(n, 2)

    i, j = np.triu_indices(n, k=1)
    dx = x[j] - x[i]
    keep = dx != 0
    if not keep.any():
        return np.nan
    return float(np.median((y[j][keep] - y[i][keep]) / dx[keep]))


def estimate_trend(values: Iterable[float], times: Optional[Iterable[float]] = None) -> TrendResult:
    """
    Sen's slope with a Mann-Kendall significance test.

    ``values`` must be ordered by time and free of missing values. When
    ``times`` is omitted the slope is per position in the sequence,
    otherwise per unit of ``times`` (e.g. per year).
    """
    x, y = _as_series(values, times)
    if len(y) < 2:
        raise InsufficientDataError(len(y), 2)

    s, var_s, z, p_value = mann_kendall_test(y)
    if var_s == 0:
        # all values tied
        return TrendResult(slope=0.0, p_value=np.nan, s=s, var_s=0.0, z=np.nan, n=len(y))

    return TrendResult(
        slope=sens_slope(y, x),
        p_value=p_value,
        s=s,
        var_s=var_s,
        z=z,
        n=len(y),
    )


def linear_trend(values: Iterable[float], times: Optional[Iterable[float]] = None) -> RegressionResult:
    """OLS slope of values against time. Assumes independent residuals."""
    x, y = _as_series(values, times)
    return linear_regression(x, y)


def linear_regression(x: Iterable[float], y: Iterable[float]) -> RegressionResult:
    """Fit y = intercept + estimate * x and keep the coefficient of x."""
    x, y = _as_series(y, x)
    n = len(y)
    if n < 3:
        raise InsufficientDataError(n, 3)
    if np.all(x == x[0]):
        raise ModelFailureError("Covariate has zero variance")

    if np.all(y == y[0]):
        return RegressionResult(estimate=0.0, intercept=float(y[0]), p_value=np.nan,
                                r_squared=np.nan, std_err=0.0, n=n)

    slope, intercept, r_value, p_value, std_err = stats.linregress(x, y)
    return RegressionResult(
        estimate=float(slope),
        intercept=float(intercept),
        p_value=float(p_value),
        r_squared=float(r_value ** 2),
        std_err=float(std_err),
        n=n,
    )


# =============================================================================
# PER-GROUP MODELS
# =============================================================================

def _mann_kendall_bundle(bundle: pd.DataFrame, value_col: str, time_col: str) -> dict[str, float]:
    return estimate_trend(bundle[value_col].to_numpy(), bundle[time_col].to_numpy()).as_dict()


def _linear_trend_bundle(bundle: pd.DataFrame, value_col: str, time_col: str) -> dict[str, float]:
    result = linear_trend(bundle[value_col].to_numpy(), bundle[time_col].to_numpy())
    out = result.as_dict()
    out['slope'] = out.pop('estimate')
    return out


def _covariate_bundle(bundle: pd.DataFrame, response: str, covariate: str) -> dict[str, float]:
    return linear_regression(bundle[covariate].to_numpy(), bundle[response].to_numpy()).as_dict()


def mann_kendall_model(value_col: str = 'conc', time_col: str = 'year') -> ModelFunction:
    """Per-group Sen's slope / Mann-Kendall model. Output: slope, p_value."""
    return functools.partial(_mann_kendall_bundle, value_col=value_col, time_col=time_col)


def linear_trend_model(value_col: str = 'conc', time_col: str = 'year') -> ModelFunction:
    """Per-group OLS time trend, kept as a baseline. Output: slope, p_value."""
    return functools.partial(_linear_trend_bundle, value_col=value_col, time_col=time_col)


def covariate_regression_model(response: str = 'conc', covariate: str = 'q') -> ModelFunction:
    """Per-group OLS of ``response`` against ``covariate``. Output: estimate, p_value."""
    return functools.partial(_covariate_bundle, response=response, covariate=covariate)


# =============================================================================
# AGGREGATION
# =============================================================================

_AGGREGATIONS = ('median', 'mean', 'min', 'max')


def filter_months(df: pd.DataFrame, months: Optional[Sequence[int]], date_col: str = 'date') -> pd.DataFrame:
    """Keep rows whose date falls in one of ``months`` (1-12)."""
    if months is None:
        return df.copy()
    bad = [m for m in months if m not in range(1, 13)]
    if bad:
        raise ValueError(f"Invalid month(s): {bad}")
    dates = pd.to_datetime(df[date_col])
    return df[dates.dt.month.isin(list(months))].copy()


def aggregate_by_period(
    df: pd.DataFrame,
    group_keys: Sequence[str],
    value_col: str = 'conc',
    date_col: str = 'date',
    months: Optional[Sequence[int]] = None,
    stat: str = 'median',
    period_col: str = 'year',
) -> pd.DataFrame:
    """
    Reduce observations to one summary value per group and calendar year.

    Rows outside ``months`` and rows with a missing value are dropped before
    the reduction. The result has the group keys, ``period_col``,
    ``value_col`` (the summary) and ``n_samples``.
    """
    if stat not in _AGGREGATIONS:
        raise ValueError(f"Unknown aggregation statistic {stat!r}; expected one of {_AGGREGATIONS}")
    keys = _check_keys(df, group_keys)

    subset = filter_months(df, months, date_col=date_col)
    n_missing = int(subset[value_col].isna().sum())
    if n_missing:
        logger.debug(f"Excluding {n_missing:,} rows with missing {value_col}")
    subset = subset.dropna(subset=[value_col])
    n_no_key = int(subset[keys].isna().any(axis=1).sum())
    if n_no_key:
        logger.warning(f"{n_no_key:,} rows have a missing {keys} value; kept as their own group")

    subset[period_col] = pd.to_datetime(subset[date_col]).dt.year
    annual = (
        subset.groupby(keys + [period_col], observed=True, sort=True, dropna=False)[value_col]
        .agg([stat, 'count'])
        .reset_index()
        .rename(columns={stat: value_col, 'count': 'n_samples'})
    )
    logger.debug(f"Aggregated {len(subset):,} rows to {len(annual):,} {stat} values")
    return annual


# =============================================================================
# GROUPED PIPELINE RUNNER
# =============================================================================

@dataclass(frozen=True)
class GroupOutcome:
    """Result of applying a model to one group bundle."""
    key: tuple
    result: Optional[dict[str, float]] = None
    reason: Optional[str] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.result is not None


@dataclass
class GroupedResult:
    """Summary table plus the groups that were dropped."""
    summary: pd.DataFrame
    dropped: pd.DataFrame

    @property
    def n_groups(self) -> int:
        return len(self.summary) + len(self.dropped)


def _check_keys(df: pd.DataFrame, group_keys: Sequence[str]) -> list[str]:
    keys = list(group_keys)
    if not keys:
        raise ValueError("At least one grouping column is required")
    missing = [k for k in keys if k not in df.columns]
    if missing:
        raise ValueError(f"Grouping column(s) not found: {missing}")
    return keys


def _apply_model(task: tuple[tuple, pd.DataFrame, ModelFunction, int]) -> GroupOutcome:
    """Fit one bundle. Never raises; failures become a dropped outcome."""
    key, bundle, model, min_observations = task
    if len(bundle) < min_observations:
        err = InsufficientDataError(len(bundle), min_observations)
        return GroupOutcome(key=key, reason='insufficient_data', message=str(err))
    try:
        result = dict(model(bundle))
    except InsufficientDataError as e:
        return GroupOutcome(key=key, reason='insufficient_data', message=str(e))
    except Exception as e:
        return GroupOutcome(key=key, reason='model_failure', message=f"{type(e).__name__}: {e}")
    if 'p_value' not in result:
        return GroupOutcome(key=key, reason='model_failure', message="Model result has no p_value")
    try:
        result['p_value'] = float(result['p_value'])
    except (TypeError, ValueError):
        return GroupOutcome(key=key, reason='model_failure',
                            message=f"Model p_value is not a number: {result['p_value']!r}")
    return GroupOutcome(key=key, result=result)


def partition(df: pd.DataFrame, group_keys: Sequence[str], time_col: Optional[str] = None) -> dict[tuple, pd.DataFrame]:
    """Split ``df`` into bundles keyed by group, each sorted by ``time_col``."""
    keys = _check_keys(df, group_keys)
    if time_col is not None and time_col not in df.columns:
        raise ValueError(f"Time column not found: {time_col!r}")
    bundles = {}
    for key, bundle in df.groupby(keys, observed=True, sort=True, dropna=False):
        if not isinstance(key, tuple):
            key = (key,)
        if time_col is not None:
            bundle = bundle.sort_values(time_col, kind='mergesort')
        bundles[key] = bundle.reset_index(drop=True)
    return bundles


def run_grouped_model(
    df: pd.DataFrame,
    group_keys: Sequence[str],
    model: ModelFunction,
    *,
    alpha: float,
    time_col: Optional[str] = 'year',
    min_observations: int = 2,
    n_jobs: int = 1,
) -> GroupedResult:
    """
    Apply ``model`` once to every group of ``df`` and flatten the results.

    Each bundle is sorted by ``time_col`` and fitted independently. Groups
    that are too small or whose model raises are dropped, logged and listed
    in ``GroupedResult.dropped``. ``trend_flag`` is True iff p_value < alpha.
    With ``n_jobs > 1`` bundles are fitted in a process pool; ``model`` must
    then be picklable (the factories in this module are).
    """
    if not 0 < alpha < 1:
        raise ValueError(f"alpha must be between 0 and 1, got {alpha}")
    keys = _check_keys(df, group_keys)

    bundles = partition(df, keys, time_col=time_col)
    tasks = [(key, bundle, model, min_observations) for key, bundle in bundles.items()]
    logger.info(f"Fitting {len(tasks):,} groups by {keys}")

    if n_jobs > 1 and len(tasks) > 1:
        with multiprocessing.Pool(processes=min(n_jobs, len(tasks))) as pool:
            outcomes = pool.map(_apply_model, tasks)
    else:
        outcomes = [_apply_model(task) for task in tasks]

    rows = []
    dropped = []
    for outcome in outcomes:
        key_fields = dict(zip(keys, outcome.key))
        if outcome.ok:
            p_value = outcome.result['p_value']
            flag = bool(p_value < alpha) if not np.isnan(p_value) else False
            rows.append({**key_fields, **outcome.result, 'trend_flag': flag})
        else:
            logger.warning(f"  Dropped {key_fields}: {outcome.reason} ({outcome.message})")
            dropped.append({**key_fields, 'reason': outcome.reason, 'message': outcome.message})

    summary = pd.DataFrame(rows)
    if summary.empty:
        summary = pd.DataFrame(columns=keys + ['p_value', 'trend_flag'])
    else:
        summary = summary.sort_values(keys, kind='mergesort').reset_index(drop=True)
    summary['p_value'] = summary['p_value'].astype(float)
    summary['trend_flag'] = summary['trend_flag'].astype(bool)
    dropped_df = pd.DataFrame(dropped, columns=keys + ['reason', 'message'])

    n_flagged = int(summary['trend_flag'].sum()) if len(summary) else 0
    logger.info(f"  {len(summary):,} groups fitted, {n_flagged:,} significant at alpha={alpha}, "
                f"{len(dropped_df):,} dropped")
    return GroupedResult(summary=summary, dropped=dropped_df)


def summarize_outcomes(result: GroupedResult) -> dict[str, Any]:
    """Counts used in reports."""
    summary = result.summary
    return {
        'n_groups': result.n_groups,
        'n_fitted': len(summary),
        'n_significant': int(summary['trend_flag'].sum()) if len(summary) else 0,
        'n_dropped': len(result.dropped),
        'dropped_reasons': result.dropped['reason'].value_counts().to_dict() if len(result.dropped) else {},
    }
