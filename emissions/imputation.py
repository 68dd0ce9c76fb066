"""
Missing Value Imputation
========================

Bagged-tree imputation of missing predictor cells.

For every modeled column a bagged ensemble of decision trees is trained on
the rows of the reference table where that column is observed, using the
other columns of the same row as inputs. Numeric columns use a
BaggingRegressor, categorical columns a BaggingClassifier (majority vote).

The fitted `ImputerState` is created once by `fit_imputer` and then passed
explicitly to `apply_imputer` for every table that needs filling.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.ensemble import BaggingClassifier, BaggingRegressor
from sklearn.tree import DecisionTreeClassifier, DecisionTreeRegressor

from .config import ImputationConfig
from .exceptions import ImputationIncomplete, SchemaMismatch

logger = logging.getLogger(__name__)

NUMERIC = 'numeric'
CATEGORICAL = 'categorical'


def column_kind(series: pd.Series) -> str:
    """Classify a column as numeric or categorical."""
    if pd.api.types.is_bool_dtype(series):
        return CATEGORICAL
    if pd.api.types.is_numeric_dtype(series):
        return NUMERIC
    return CATEGORICAL


@dataclass(frozen=True)
class ImputerState:
    """
    Fitted imputation models for one reference table.

    Attributes:
        columns: Modeled columns, in reference order
        kinds: Column name -> 'numeric' or 'categorical'
        fill_values: Median (numeric) or mode (categorical) of each column,
            used to pre-fill predictor inputs and as the estimate for
            columns that have no other predictors
        categories: Observed levels of each categorical column
        predictors: Column name -> columns used to estimate it
        estimators: Column name -> fitted bagged ensemble (None when the
            column has no predictors)
        untrainable: Columns with no observed values in the reference table
        missing_at_fit: Missing cell counts of the reference table
    """

    columns: Tuple[str, ...]
    kinds: Dict[str, str]
    fill_values: Dict[str, Any]
    categories: Dict[str, Tuple[Any, ...]]
    predictors: Dict[str, Tuple[str, ...]]
    estimators: Dict[str, Any]
    untrainable: Tuple[str, ...] = ()
    missing_at_fit: Dict[str, int] = field(default_factory=dict)

    @property
    def imputable_columns(self) -> Tuple[str, ...]:
        return tuple(c for c in self.columns if c not in self.untrainable)


def _encode_predictors(
    table: pd.DataFrame,
    pool: Tuple[str, ...],
    kinds: Dict[str, str],
    fill_values: Dict[str, Any],
    categories: Dict[str, Tuple[Any, ...]]
) -> pd.DataFrame:
    """
    Build the numeric design matrix used as input to every column model.

    Numeric columns are pre-filled with the reference median. Categorical
    columns become integer codes over the reference levels, with -1 for
    missing or unseen values.
    """
    encoded = {}
    for col in pool:
        if kinds[col] == NUMERIC:
            encoded[col] = pd.to_numeric(table[col], errors='coerce').astype(float).fillna(
                fill_values[col]
            )
        else:
            codes = pd.Categorical(table[col], categories=list(categories[col])).codes
            encoded[col] = pd.Series(codes, index=table.index, dtype=float)
    return pd.DataFrame(encoded, index=table.index)


def _check_schema(state: ImputerState, table: pd.DataFrame) -> None:
    missing = [col for col in state.columns if col not in table.columns]
    mismatched = [
        col for col in state.columns
        if col not in missing
        and not table[col].isna().all()
        and column_kind(table[col]) != state.kinds[col]
    ]
    if missing or mismatched:
        raise SchemaMismatch(
            f"Table does not match imputer schema (missing: {missing}, type changed: {mismatched})",
            missing=missing,
            mismatched=mismatched,
        )


def _make_estimator(kind: str, n_rows: int, config: ImputationConfig, random_state: int):
    max_samples = max(1, int(round(config.max_samples * n_rows)))
    if kind == NUMERIC:
        return BaggingRegressor(
            estimator=DecisionTreeRegressor(
                max_depth=config.max_depth,
                min_samples_leaf=config.min_samples_leaf,
            ),
            n_estimators=config.n_estimators,
            max_samples=max_samples,
            bootstrap=True,
            random_state=random_state,
        )
    return BaggingClassifier(
        estimator=DecisionTreeClassifier(
            max_depth=config.max_depth,
            min_samples_leaf=config.min_samples_leaf,
        ),
        n_estimators=config.n_estimators,
        max_samples=max_samples,
        bootstrap=True,
        random_state=random_state,
    )


def fit_imputer(
    reference: pd.DataFrame,
    exclude: Iterable[str] = (),
    config: Optional[ImputationConfig] = None,
    random_state: int = 42
) -> ImputerState:
    """
    Learn one bagged-tree estimator per column of the reference table.

    Args:
        reference: Table the imputation models are trained on
        exclude: Columns never imputed nor used as inputs (identifier, target)
        config: Bagging settings
        random_state: Seed for bootstrap resampling

    Returns:
        Fitted ImputerState
    """
    config = config or ImputationConfig()
    excluded = set(exclude)
    columns = tuple(col for col in reference.columns if col not in excluded)

    logger.info("=" * 60)
    logger.info("FITTING BAGGED-TREE IMPUTER")
    logger.info("=" * 60)
    logger.info(f"Reference table: {len(reference)} rows, {len(columns)} modeled columns")

    kinds = {col: column_kind(reference[col]) for col in columns}
    missing_at_fit = {col: int(reference[col].isna().sum()) for col in columns}
    untrainable = tuple(col for col in columns if reference[col].notna().sum() == 0)
    if untrainable:
        logger.warning(f"Columns with no observed values cannot be imputed: {list(untrainable)}")

    fill_values: Dict[str, Any] = {}
    categories: Dict[str, Tuple[Any, ...]] = {}
    for col in columns:
        if col in untrainable:
            continue
        observed = reference[col].dropna()
        if kinds[col] == NUMERIC:
            fill_values[col] = float(pd.to_numeric(observed).median())
        else:
            levels = observed.unique().tolist()
            categories[col] = tuple(sorted(levels, key=str))
            fill_values[col] = observed.mode().iloc[0]

    pool = tuple(col for col in columns if col not in untrainable)
    encoded = _encode_predictors(reference, pool, kinds, fill_values, categories)

    predictors: Dict[str, Tuple[str, ...]] = {}
    estimators: Dict[str, Any] = {}
    for position, col in enumerate(pool):
        inputs = tuple(c for c in pool if c != col)
        predictors[col] = inputs
        if not inputs:
            estimators[col] = None
            continue

        observed = reference[col].notna().to_numpy()
        X = encoded.loc[observed, list(inputs)].to_numpy()
        y = reference.loc[observed, col].to_numpy()
        if kinds[col] == NUMERIC:
            y = y.astype(float)

        estimator = _make_estimator(kinds[col], len(y), config, random_state + position)
        estimator.fit(X, y)
        estimators[col] = estimator

        if missing_at_fit[col]:
            logger.info(f"  • {col}: {missing_at_fit[col]} missing, trained on {len(y)} rows")

    state = ImputerState(
        columns=columns,
        kinds=kinds,
        fill_values=fill_values,
        categories=categories,
        predictors=predictors,
        estimators=estimators,
        untrainable=untrainable,
        missing_at_fit=missing_at_fit,
    )
    logger.info(f"Imputer fitted: {len(estimators)} column models")
    return state


def apply_imputer(state: ImputerState, table: pd.DataFrame) -> pd.DataFrame:
    """
    Fill missing cells of `table` using a fitted imputer state.

    The input table is not modified. Columns outside the imputer schema
    (identifier, target) are passed through untouched.

    Args:
        state: State returned by fit_imputer
        table: Table sharing the reference schema

    Returns:
        New DataFrame without missing values in the modeled columns

    Raises:
        SchemaMismatch: If a modeled column is absent or changed type
        ImputationIncomplete: If any modeled cell is still missing
    """
    _check_schema(state, table)

    result = table.copy()
    encoded = _encode_predictors(
        table, state.imputable_columns, state.kinds, state.fill_values, state.categories
    )

    n_filled = 0
    for col in state.imputable_columns:
        mask = result[col].isna().to_numpy()
        if not mask.any():
            continue

        estimator = state.estimators.get(col)
        if estimator is None:
            values = np.repeat(state.fill_values[col], mask.sum())
        else:
            values = estimator.predict(encoded.loc[mask, list(state.predictors[col])].to_numpy())

        if state.kinds[col] == NUMERIC:
            result[col] = pd.to_numeric(result[col], errors='coerce').astype(float)
        result.loc[mask, col] = values
        n_filled += int(mask.sum())

    remaining = [col for col in state.columns if result[col].isna().any()]
    if remaining:
        raise ImputationIncomplete(
            f"Missing values remain after imputation in columns: {remaining}",
            columns=remaining,
        )

    logger.info(f"Imputed {n_filled} missing cells across {len(table)} rows")
    return result
