"""
Correlation Feature Filter
==========================

Removes redundant numeric predictors whose pairwise absolute correlation
exceeds a threshold.

The filter is learned once from training predictors (`fit_filter`) and the
resulting `FilterState` is applied unchanged to every other table
(`apply_filter`).
"""

import logging
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np
import pandas as pd

from .exceptions import SchemaMismatch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FilterState:
    """
    Retained predictor columns of a fitted correlation filter.

    Attributes:
        threshold: Absolute correlation above which one column of a pair is dropped
        method: Correlation method used ('pearson', 'spearman' or 'kendall')
        retained: Columns kept, in original order
        dropped: Columns removed, in removal order
    """

    threshold: float
    method: str
    retained: Tuple[str, ...]
    dropped: Tuple[str, ...] = ()


def correlation_matrix(predictors: pd.DataFrame, method: str = 'pearson') -> pd.DataFrame:
    """
    Absolute pairwise correlation of the numeric predictors.

    Undefined correlations (constant columns) are reported as 0 and the
    diagonal is zeroed.
    """
    numeric = predictors.select_dtypes(include=[np.number])
    corr = numeric.corr(method=method).abs().fillna(0.0)
    values = corr.to_numpy(copy=True)
    np.fill_diagonal(values, 0.0)
    return pd.DataFrame(values, index=corr.index, columns=corr.columns)


def find_correlated(corr: pd.DataFrame, threshold: float) -> List[str]:
    """
    Choose columns to drop so that no remaining pair exceeds `threshold`.

    Repeatedly takes the most correlated remaining pair and drops the member
    with the higher mean absolute correlation to the other remaining columns.
    On a tie the column appearing later in the table is dropped.

    Args:
        corr: Absolute correlation matrix with a zero diagonal
        threshold: Correlation cutoff

    Returns:
        Column names in the order they were dropped
    """
    names = list(corr.columns)
    values = corr.to_numpy()
    remaining = list(range(len(names)))
    dropped = []

    while len(remaining) > 1:
        sub = values[np.ix_(remaining, remaining)]
        i, j = np.unravel_index(np.argmax(sub), sub.shape)
        if sub[i, j] <= threshold:
            break

        mean_corr = sub.sum(axis=1) / (len(remaining) - 1)
        first, second = min(i, j), max(i, j)
        victim = first if mean_corr[first] > mean_corr[second] else second

        logger.debug(
            f"{names[remaining[first]]} ~ {names[remaining[second]]}: |r|={sub[i, j]:.3f}, "
            f"dropping {names[remaining[victim]]}"
        )
        dropped.append(names[remaining[victim]])
        remaining.pop(victim)

    return dropped


def fit_filter(
    predictors: pd.DataFrame,
    threshold: float = 0.7,
    method: str = 'pearson'
) -> FilterState:
    """
    Learn which predictors to keep from training data.

    Non-numeric predictors are always retained.

    Args:
        predictors: Training predictor columns only (no identifier or target)
        threshold: Absolute correlation cutoff in [0, 1]
        method: Correlation method

    Returns:
        Fitted FilterState
    """
    if not 0.0 <= threshold <= 1.0:
        raise ValueError(f"threshold must be in [0, 1], got {threshold}")

    corr = correlation_matrix(predictors, method=method)
    dropped = find_correlated(corr, threshold)
    retained = tuple(col for col in predictors.columns if col not in set(dropped))

    logger.info(
        f"Correlation filter (|r| > {threshold}, {method}): "
        f"kept {len(retained)} of {predictors.shape[1]} predictors"
    )
    if dropped:
        logger.info(f"Dropped redundant predictors: {dropped}")

    return FilterState(
        threshold=threshold,
        method=method,
        retained=retained,
        dropped=tuple(dropped),
    )


def apply_filter(state: FilterState, table: pd.DataFrame) -> pd.DataFrame:
    """
    Project a table onto the retained predictor columns.

    Args:
        state: State returned by fit_filter
        table: Table containing at least the retained columns

    Returns:
        New DataFrame with exactly the retained columns, in fitted order

    Raises:
        SchemaMismatch: If a retained column is absent
    """
    missing = [col for col in state.retained if col not in table.columns]
    if missing:
        raise SchemaMismatch(
            f"Table is missing retained predictor columns: {missing}", missing=missing
        )
    return table.loc[:, list(state.retained)].copy()
