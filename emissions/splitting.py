"""
Data Splitting
==============

Stratified train/holdout splitting and k-fold cross-validation groups.

Continuous stratification variables are binned into quantiles so that the
distribution of the variable is preserved in every partition. All splits
are positional (row order of the input table) and reproducible for a
fixed seed.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.model_selection import KFold, StratifiedKFold, train_test_split

from .exceptions import EmptyFoldError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DataSplit:
    """Outer train/holdout split, as positional row indices."""

    train_index: np.ndarray
    holdout_index: np.ndarray

    @property
    def in_train(self) -> np.ndarray:
        mask = np.zeros(len(self.train_index) + len(self.holdout_index), dtype=bool)
        mask[self.train_index] = True
        return mask

    def training(self, table: pd.DataFrame) -> pd.DataFrame:
        return table.iloc[self.train_index]

    def holdout(self, table: pd.DataFrame) -> pd.DataFrame:
        return table.iloc[self.holdout_index]


@dataclass(frozen=True)
class Fold:
    """One cross-validation fold: fit on `train_index`, validate on `valid_index`."""

    fold_id: int
    train_index: np.ndarray
    valid_index: np.ndarray


def make_strata(values, breaks: int = 4) -> np.ndarray:
    """
    Turn a stratification variable into integer stratum labels.

    Numeric variables with more than `breaks` distinct values are cut into
    `breaks` quantile bins; anything else is used as-is. Missing values form
    their own stratum.

    Args:
        values: Stratification variable
        breaks: Number of quantile bins for continuous variables

    Returns:
        Integer array of stratum labels
    """
    series = pd.Series(values).reset_index(drop=True)

    if pd.api.types.is_numeric_dtype(series) and series.nunique(dropna=True) > breaks:
        bins = pd.qcut(series, q=breaks, labels=False, duplicates='drop')
        return bins.fillna(-1).astype(int).to_numpy()

    codes, _ = pd.factorize(series, sort=True)
    return codes.astype(int)


def _check_strata(strata: np.ndarray, minimum: int, context: str) -> None:
    labels, counts = np.unique(strata, return_counts=True)
    small = {int(label): int(count) for label, count in zip(labels, counts) if count < minimum}
    if small:
        raise EmptyFoldError(
            f"{context}: strata {small} have fewer than {minimum} rows; "
            f"reduce the number of partitions or strata"
        )


def stratified_split(
    table: pd.DataFrame,
    train_fraction: float = 0.75,
    stratify_column: Optional[str] = None,
    breaks: int = 4,
    seed: int = 42
) -> DataSplit:
    """
    Randomly split rows into training and holdout partitions.

    Args:
        table: Table to split
        train_fraction: Fraction of rows assigned to training, in (0, 1)
        stratify_column: Column whose distribution is preserved (None for a plain random split)
        breaks: Quantile bins for a continuous stratification column
        seed: Random seed

    Returns:
        DataSplit with positional train and holdout indices

    Raises:
        EmptyFoldError: If a partition or stratum would be empty
    """
    if not 0.0 < train_fraction < 1.0:
        raise ValueError(f"train_fraction must be in (0, 1), got {train_fraction}")

    n_rows = len(table)
    positions = np.arange(n_rows)

    strata = None
    if stratify_column is not None:
        strata = make_strata(table[stratify_column], breaks=breaks)
        _check_strata(strata, 2, "Holdout split")

    try:
        train_index, holdout_index = train_test_split(
            positions,
            train_size=train_fraction,
            random_state=seed,
            shuffle=True,
            stratify=strata,
        )
    except ValueError as exc:
        raise EmptyFoldError(f"Cannot split {n_rows} rows at {train_fraction}: {exc}") from exc

    if len(train_index) == 0 or len(holdout_index) == 0:
        raise EmptyFoldError(
            f"Split of {n_rows} rows at {train_fraction} leaves an empty partition"
        )

    split = DataSplit(
        train_index=np.sort(train_index),
        holdout_index=np.sort(holdout_index),
    )
    logger.info(
        f"Train/holdout split: {len(split.train_index)} train rows, "
        f"{len(split.holdout_index)} holdout rows"
        + (f" (stratified on '{stratify_column}')" if stratify_column else "")
    )
    return split


def k_fold(
    table: pd.DataFrame,
    k: int = 5,
    stratify_column: Optional[str] = None,
    breaks: int = 4,
    seed: int = 42
) -> List[Fold]:
    """
    Partition rows into k disjoint validation groups.

    Every row appears in exactly one validation group; each fold fits on
    the remaining rows.

    Args:
        table: Training table
        k: Number of folds (>= 2)
        stratify_column: Column whose distribution is balanced across folds
        breaks: Quantile bins for a continuous stratification column
        seed: Random seed

    Returns:
        List of k Fold objects, ordered by fold id

    Raises:
        EmptyFoldError: If a fold or a stratum within a fold would be empty
    """
    if k < 2:
        raise ValueError(f"k must be >= 2, got {k}")

    n_rows = len(table)
    if n_rows < k:
        raise EmptyFoldError(f"Cannot build {k} folds from {n_rows} rows")

    positions = np.arange(n_rows)
    if stratify_column is not None:
        strata = make_strata(table[stratify_column], breaks=breaks)
        _check_strata(strata, k, f"{k}-fold split")
        splitter = StratifiedKFold(n_splits=k, shuffle=True, random_state=seed)
        splits = splitter.split(positions, strata)
    else:
        splitter = KFold(n_splits=k, shuffle=True, random_state=seed)
        splits = splitter.split(positions)

    folds = [
        Fold(fold_id=fold_id, train_index=np.sort(train_idx), valid_index=np.sort(valid_idx))
        for fold_id, (train_idx, valid_idx) in enumerate(splits)
    ]

    for fold in folds:
        if len(fold.valid_index) == 0 or len(fold.train_index) == 0:
            raise EmptyFoldError(f"Fold {fold.fold_id} is empty")

    logger.info(
        f"Created {k} folds over {n_rows} rows "
        f"(validation sizes: {[len(f.valid_index) for f in folds]})"
    )
    return folds


def fold_assignment(folds: Sequence[Fold], n_rows: int) -> np.ndarray:
    """
    Map each row position to the id of the fold that validates it.

    Rows not covered by any validation group are marked -1.
    """
    assignment = np.full(n_rows, -1, dtype=int)
    for fold in folds:
        assignment[fold.valid_index] = fold.fold_id
    return assignment
