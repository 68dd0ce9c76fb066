"""
Data Loader Module
==================

Handles configuration loading, CSV ingestion and data quality checks.

Functions:
    - load_config: Load YAML configuration file
    - load_data: Load CSV data
    - validate_data: Check schema and data quality constraints
    - get_data_summary: Generate basic statistics
"""

import logging
from pathlib import Path
from typing import Dict, Any, Iterable, Optional, Tuple

import pandas as pd
import numpy as np
import yaml

from .exceptions import SchemaMismatch

logger = logging.getLogger(__name__)


def load_config(config_path: str = "config/config.yaml") -> Dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to the configuration file

    Returns:
        Dictionary containing configuration parameters

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is malformed
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    logger.info(f"Loaded configuration from {config_path}")
    return config


def load_data(
    file_path: str,
    required_columns: Optional[Iterable[str]] = None
) -> pd.DataFrame:
    """
    Load a CSV observation table.

    Args:
        file_path: Path to the CSV file
        required_columns: Columns that must be present (optional validation)

    Returns:
        DataFrame containing the loaded data

    Raises:
        FileNotFoundError: If data file doesn't exist
        SchemaMismatch: If a required column is absent
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Data file not found: {file_path}")

    df = pd.read_csv(file_path)
    logger.info(f"Loaded data from {file_path}: {df.shape[0]} rows × {df.shape[1]} columns")

    if required_columns is not None:
        missing = [col for col in required_columns if col not in df.columns]
        if missing:
            raise SchemaMismatch(
                f"{file_path} is missing required columns: {missing}", missing=missing
            )

    return df


def validate_data(
    df: pd.DataFrame,
    id_column: str,
    target: Optional[str] = None,
    strict: bool = True
) -> Tuple[bool, Dict[str, Any]]:
    """
    Validate schema and data quality constraints for modeling.

    Checks:
        - Identifier (and target, when given) columns are present
        - Identifier values are unique
        - Non-identifier columns are numeric
        - Missing values per column and rows with a missing target

    Args:
        df: DataFrame to validate
        id_column: Name of the identifier column
        target: Name of the target column (None for prediction-only tables)
        strict: If True, raise SchemaMismatch on structural problems

    Returns:
        Tuple of (is_valid, validation_report)
    """
    report = {
        "total_rows": len(df),
        "total_columns": len(df.columns),
        "column_names": list(df.columns),
        "issues": []
    }

    # Check 1: Structural columns
    missing_columns = [col for col in (id_column, target) if col and col not in df.columns]
    if missing_columns:
        issue = f"Missing required columns: {missing_columns}"
        report["issues"].append(issue)
        logger.warning(issue)
        if strict:
            raise SchemaMismatch(issue, missing=missing_columns)

    # Check 2: Duplicate identifiers
    if id_column in df.columns:
        duplicates = int(df[id_column].duplicated().sum())
        if duplicates > 0:
            issue = f"Duplicate identifiers found: {duplicates}"
            report["issues"].append(issue)
            logger.warning(issue)

    # Check 3: Non-numeric modeled columns
    modeled = df.drop(columns=[c for c in (id_column, target) if c and c in df.columns])
    non_numeric_cols = modeled.select_dtypes(exclude=[np.number]).columns.tolist()
    if non_numeric_cols:
        issue = f"Non-numeric columns found: {non_numeric_cols}"
        report["issues"].append(issue)
        logger.warning(issue)

    # Check 4: Missing values
    missing_counts = modeled.isnull().sum()
    total_missing = int(missing_counts.sum())
    if total_missing > 0:
        missing_pct = (total_missing / max(modeled.size, 1)) * 100
        issue = f"Missing predictor values: {total_missing} ({missing_pct:.2f}%)"
        report["issues"].append(issue)
        report["missing_by_column"] = {
            col: int(count) for col, count in missing_counts[missing_counts > 0].items()
        }
        logger.warning(issue)

    all_missing = [col for col in modeled.columns if modeled[col].isnull().all()]
    if all_missing:
        issue = f"Columns with no observed values: {all_missing}"
        report["issues"].append(issue)
        logger.warning(issue)

    # Check 5: Missing target
    if target and target in df.columns:
        missing_target = int(df[target].isnull().sum())
        report["missing_target"] = missing_target
        if missing_target > 0:
            issue = f"Rows with missing target '{target}': {missing_target}"
            report["issues"].append(issue)
            logger.warning(issue)

    is_valid = len(report["issues"]) == 0
    report["is_valid"] = is_valid

    return is_valid, report


def get_data_summary(df: pd.DataFrame) -> Dict[str, Any]:
    """
    Generate summary statistics for the dataset.

    Args:
        df: DataFrame to summarize

    Returns:
        Dictionary containing summary statistics
    """
    summary = {
        "shape": df.shape,
        "columns": list(df.columns),
        "dtypes": df.dtypes.astype(str).to_dict(),
        "memory_usage_mb": df.memory_usage(deep=True).sum() / 1024 / 1024,
        "statistics": {}
    }

    for col in df.select_dtypes(include=[np.number]).columns:
        summary["statistics"][col] = {
            "count": int(df[col].count()),
            "missing": int(df[col].isnull().sum()),
            "mean": float(df[col].mean()),
            "std": float(df[col].std()),
            "min": float(df[col].min()),
            "50%": float(df[col].quantile(0.50)),
            "max": float(df[col].max()),
        }

    return summary


def print_data_summary(df: pd.DataFrame) -> None:
    """
    Print a formatted summary of the dataset to console.

    Args:
        df: DataFrame to summarize
    """
    print("\n" + "=" * 60)
    print("DATASET SUMMARY")
    print("=" * 60)
    print(f"Shape: {df.shape[0]} rows × {df.shape[1]} columns")
    print(f"Memory Usage: {df.memory_usage(deep=True).sum() / 1024:.2f} KB")
    print("\nColumn Information:")
    print("-" * 40)

    for col in df.columns:
        dtype = df[col].dtype
        non_null = df[col].count()
        null_pct = (1 - non_null / max(len(df), 1)) * 100
        print(f"  {col}: {dtype} | {non_null} non-null ({null_pct:.1f}% missing)")

    print("=" * 60 + "\n")
