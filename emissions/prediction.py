"""
Prediction Module
=================

Generates emission predictions for prediction-only tables.

Features:
    - Apply the fitted imputer and correlation filter, then predict
    - (identifier, predicted value) output tables in input row order
    - Export predictions to CSV
    - Run report generation
"""

import logging
import json
from pathlib import Path
from typing import Dict, Any, Optional
from datetime import datetime

import numpy as np
import pandas as pd

from .exceptions import SchemaMismatch
from .feature_selection import FilterState, apply_filter
from .imputation import ImputerState, apply_imputer
from .model import EmissionModel

logger = logging.getLogger(__name__)


def prepare_features(
    table: pd.DataFrame,
    imputer_state: ImputerState,
    filter_state: FilterState
) -> pd.DataFrame:
    """
    Impute and filter a table with states fitted on the reference data.

    Args:
        table: Raw table sharing the reference schema
        imputer_state: Fitted imputer
        filter_state: Fitted correlation filter

    Returns:
        Predictor table ready for the model
    """
    imputed = apply_imputer(imputer_state, table)
    return apply_filter(filter_state, imputed)


def predict_table(
    model: EmissionModel,
    imputer_state: ImputerState,
    filter_state: FilterState,
    table: pd.DataFrame,
    id_column: str,
    target_name: str = 'emission'
) -> pd.DataFrame:
    """
    Predict one value per row of a table.

    Args:
        model: Fitted model
        imputer_state: Imputer fitted on the reference table
        filter_state: Filter fitted on the reference predictors
        table: Table to predict (identifier plus modeled columns)
        id_column: Identifier column, carried to the output unchanged
        target_name: Name of the prediction column

    Returns:
        DataFrame with columns [id_column, target_name], one row per input
        row, in input order

    Raises:
        SchemaMismatch: If the identifier or a modeled column is absent
    """
    if id_column not in table.columns:
        raise SchemaMismatch(
            f"Prediction table is missing identifier column '{id_column}'", missing=[id_column]
        )

    features = prepare_features(table, imputer_state, filter_state)
    predictions = model.predict(features)

    output = pd.DataFrame({
        id_column: table[id_column].to_numpy(),
        target_name: predictions,
    })
    logger.info(f"Predicted {len(output)} rows")
    return output


def export_predictions(
    predictions: pd.DataFrame,
    output_path: str,
    name: str = "predictions",
    include_timestamp: bool = False
) -> str:
    """
    Export a prediction table to CSV.

    Args:
        predictions: Output of predict_table
        output_path: Directory to save the file
        name: Base file name
        include_timestamp: Whether to add timestamp to filename

    Returns:
        Path to the saved file
    """
    output_path = Path(output_path)
    output_path.mkdir(parents=True, exist_ok=True)

    if include_timestamp:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filename = f"{name}_{timestamp}.csv"
    else:
        filename = f"{name}.csv"

    filepath = output_path / filename
    predictions.to_csv(filepath, index=False)

    logger.info(f"Predictions exported to {filepath}")
    return str(filepath)


def _jsonable(value):
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, np.generic):
        return value.item()
    return value


def generate_run_report(
    summary: Dict[str, Any],
    output_path: Optional[str] = None
) -> Dict[str, Any]:
    """
    Assemble a JSON-serialisable report of a pipeline run.

    Args:
        summary: Run summary (selected hyperparameters, metrics, features...)
        output_path: Path to save the report (optional)

    Returns:
        Report dictionary
    """
    report = {'generated_at': datetime.now().isoformat()}
    report.update(_jsonable(summary))

    if output_path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w') as f:
            json.dump(report, f, indent=2)
        logger.info(f"Run report saved to {output_path}")

    return report


def print_prediction_results(predictions: pd.DataFrame, name: str = "predictions", n_rows: int = 10) -> None:
    """
    Print the head of a prediction table to console.

    Args:
        predictions: Output of predict_table
        name: Label of the prediction table
        n_rows: Rows to show
    """
    value_column = predictions.columns[-1]
    values = predictions[value_column]

    print("\n" + "=" * 60)
    print(f"PREDICTION RESULTS - {name.upper()}")
    print("=" * 60)
    print(predictions.head(n_rows).to_string(index=False))
    print("-" * 60)
    print(f"Rows: {len(predictions)} | mean: {values.mean():.4f} | "
          f"min: {values.min():.4f} | max: {values.max():.4f}")
    print("=" * 60 + "\n")
