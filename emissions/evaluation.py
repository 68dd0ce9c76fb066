"""
Model Evaluation Module
=======================

Scoring metrics and diagnostic plots for emission predictions.

Features:
    - RMSE, MAE and R² for a prediction vector
    - Metric optimisation directions used by the hyperparameter search
    - Actual vs Predicted and residual distribution plots
    - Holdout evaluation report generation
"""

import logging
import json
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

import numpy as np
import matplotlib.pyplot as plt
import seaborn as sns
from sklearn.metrics import mean_squared_error, mean_absolute_error, r2_score

logger = logging.getLogger(__name__)

# Lower is better for error metrics, higher for variance explained.
METRIC_DIRECTIONS = {
    'rmse': 'minimize',
    'mae': 'minimize',
    'r2': 'maximize',
}


def score(y_true, y_pred) -> Dict[str, float]:
    """
    Compute error-magnitude, squared-error and variance-explained metrics.

    Args:
        y_true: Observed target values
        y_pred: Predicted values, one per observation

    Returns:
        Dictionary with 'rmse', 'mae' and 'r2'
    """
    y_true = np.asarray(y_true, dtype=float).ravel()
    y_pred = np.asarray(y_pred, dtype=float).ravel()

    if len(y_true) != len(y_pred):
        raise ValueError(
            f"Got {len(y_pred)} predictions for {len(y_true)} observations"
        )
    if len(y_true) == 0:
        raise ValueError("Cannot score an empty prediction set")

    return {
        'rmse': float(np.sqrt(mean_squared_error(y_true, y_pred))),
        'mae': float(mean_absolute_error(y_true, y_pred)),
        'r2': float(r2_score(y_true, y_pred)) if len(y_true) > 1 else float('nan'),
    }


def calculate_metrics(y_true, y_pred) -> Dict[str, Any]:
    """
    Calculate the metric set plus residual statistics for a holdout set.

    Args:
        y_true: Observed target values
        y_pred: Predicted values

    Returns:
        Dictionary of scalar metrics
    """
    metrics = score(y_true, y_pred)
    residuals = np.asarray(y_true, dtype=float).ravel() - np.asarray(y_pred, dtype=float).ravel()

    metrics.update({
        'mean_error': float(np.mean(residuals)),
        'std_error': float(np.std(residuals)),
        'max_error': float(np.max(np.abs(residuals))),
        'n_samples': int(len(residuals)),
    })
    return metrics


def is_better(value: float, reference: float, direction: str) -> bool:
    """Return True if `value` strictly improves on `reference`."""
    if direction == 'minimize':
        return value < reference
    if direction == 'maximize':
        return value > reference
    raise ValueError(f"Unknown direction: {direction}")


def plot_actual_vs_predicted(
    y_true,
    y_pred,
    target_name: str = 'emission',
    figsize: Tuple[int, int] = (7, 6),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Scatter observed against predicted values with the identity line.

    Args:
        y_true: Observed values
        y_pred: Predicted values
        target_name: Label used in the title
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    y_true = np.asarray(y_true, dtype=float).ravel()
    y_pred = np.asarray(y_pred, dtype=float).ravel()

    fig, ax = plt.subplots(figsize=figsize)
    ax.scatter(y_true, y_pred, alpha=0.5, s=20)

    min_val = min(y_true.min(), y_pred.min())
    max_val = max(y_true.max(), y_pred.max())
    ax.plot([min_val, max_val], [min_val, max_val], 'r--', linewidth=2, label='Perfect')

    metrics = score(y_true, y_pred)
    ax.set_xlabel('Actual')
    ax.set_ylabel('Predicted')
    ax.set_title(
        f"{target_name}\nR²={metrics['r2']:.4f}, RMSE={metrics['rmse']:.4f}",
        fontsize=10, fontweight='bold'
    )
    ax.legend(loc='upper left', fontsize=8)
    fig.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Actual vs Predicted plot saved to {save_path}")

    return fig


def plot_residuals(
    y_true,
    y_pred,
    target_name: str = 'emission',
    figsize: Tuple[int, int] = (7, 5),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Plot the distribution of residuals (actual - predicted).

    Args:
        y_true: Observed values
        y_pred: Predicted values
        target_name: Label used in the title
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    residuals = np.asarray(y_true, dtype=float).ravel() - np.asarray(y_pred, dtype=float).ravel()

    fig, ax = plt.subplots(figsize=figsize)
    sns.histplot(residuals, kde=len(residuals) > 1, ax=ax, bins=30, alpha=0.7)

    ax.axvline(0, color='red', linestyle='--', linewidth=2, label='Zero')
    ax.axvline(np.mean(residuals), color='green', linestyle='--',
               linewidth=2, label=f'Mean: {np.mean(residuals):.4f}')

    ax.set_xlabel('Residual (Actual - Predicted)')
    ax.set_ylabel('Frequency')
    ax.set_title(f'{target_name} (Std: {np.std(residuals):.4f})', fontsize=10, fontweight='bold')
    ax.legend(fontsize=8)
    fig.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Residuals plot saved to {save_path}")

    return fig


def evaluate_holdout(
    y_true,
    y_pred,
    target_name: str = 'emission',
    output_dir: Optional[str] = None
) -> Dict[str, Any]:
    """
    Score holdout predictions and optionally write metrics and figures.

    Args:
        y_true: Observed holdout values
        y_pred: Predicted holdout values
        target_name: Name of the target column
        output_dir: Directory for metrics JSON and figures (nothing written if None)

    Returns:
        Dictionary containing metrics and written file paths
    """
    logger.info("Scoring holdout predictions...")
    metrics = calculate_metrics(y_true, y_pred)

    result = {'metrics': metrics, 'figures': [], 'metrics_file': None}

    if output_dir:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        metrics_file = output_dir / "holdout_metrics.json"
        with open(metrics_file, 'w') as f:
            json.dump(metrics, f, indent=2)
        result['metrics_file'] = str(metrics_file)
        logger.info(f"Metrics saved to {metrics_file}")

        for name, plot in (
            ("holdout_actual_vs_predicted.png", plot_actual_vs_predicted),
            ("holdout_residuals.png", plot_residuals),
        ):
            fig = plot(y_true, y_pred, target_name, save_path=str(output_dir / name))
            plt.close(fig)
            result['figures'].append(name)

    logger.info(
        f"Holdout RMSE: {metrics['rmse']:.6f} | MAE: {metrics['mae']:.6f} | R²: {metrics['r2']:.6f}"
    )
    return result


def print_evaluation_report(metrics: Dict[str, Any]) -> None:
    """
    Print a formatted evaluation report to console.

    Args:
        metrics: Metrics dictionary from calculate_metrics
    """
    print("\n" + "=" * 60)
    print("HOLDOUT EVALUATION REPORT")
    print("=" * 60)
    print(f"  • RMSE: {metrics['rmse']:.6f}")
    print(f"  • MAE:  {metrics['mae']:.6f}")
    print(f"  • R²:   {metrics['r2']:.6f}")
    if 'n_samples' in metrics:
        print(f"  • Samples evaluated: {metrics['n_samples']}")

    r2 = metrics['r2']
    print("\nInterpretation:")
    if r2 > 0.9:
        print("  ✓ Excellent model performance (R² > 0.9)")
    elif r2 > 0.7:
        print("  ✓ Good model performance (R² > 0.7)")
    elif r2 > 0.5:
        print("  ⚠ Moderate model performance (R² > 0.5)")
    else:
        print("  ✗ Poor model performance (R² < 0.5)")

    print("=" * 60 + "\n")
