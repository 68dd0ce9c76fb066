"""
Test Suite for Evaluation and Prediction Modules
================================================

Tests for scoring, holdout reports and prediction export.
"""

import json

import pytest
import numpy as np
import pandas as pd

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from emissions.config import BoostingParams
from emissions.evaluation import calculate_metrics, evaluate_holdout, is_better, score
from emissions.feature_selection import fit_filter
from emissions.imputation import apply_imputer, fit_imputer
from emissions.model import train_model
from emissions.prediction import export_predictions, generate_run_report, predict_table


class TestScore:
    """Tests for the metric set."""

    def test_perfect_predictions(self):
        metrics = score([1.0, 2.0, 3.0], [1.0, 2.0, 3.0])

        assert metrics['rmse'] == 0.0
        assert metrics['mae'] == 0.0
        assert metrics['r2'] == 1.0

    def test_known_values(self):
        metrics = score([1.0, 2.0, 3.0], [1.0, 2.0, 4.0])

        assert metrics['rmse'] == pytest.approx(np.sqrt(1 / 3))
        assert metrics['mae'] == pytest.approx(1 / 3)
        assert metrics['r2'] == pytest.approx(0.5)

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            score([1.0, 2.0], [1.0])

    def test_empty(self):
        with pytest.raises(ValueError):
            score([], [])

    def test_single_observation(self):
        metrics = score([2.0], [1.5])

        assert metrics['rmse'] == pytest.approx(0.5)
        assert np.isnan(metrics['r2'])

    def test_residual_statistics(self):
        metrics = calculate_metrics([1.0, 2.0, 3.0], [2.0, 2.0, 2.0])

        assert metrics['mean_error'] == pytest.approx(0.0)
        assert metrics['max_error'] == pytest.approx(1.0)
        assert metrics['n_samples'] == 3

    def test_is_better(self):
        assert is_better(1.0, 2.0, 'minimize')
        assert is_better(0.9, 0.8, 'maximize')
        assert not is_better(1.0, 1.0, 'minimize')


class TestHoldoutEvaluation:
    """Tests for holdout metrics and figures."""

    @pytest.fixture
    def predictions(self):
        np.random.seed(42)
        y_true = np.random.rand(40) * 100
        y_pred = y_true + np.random.randn(40) * 5
        return y_true, y_pred

    def test_nothing_written_without_directory(self, predictions):
        result = evaluate_holdout(*predictions)

        assert result['metrics_file'] is None
        assert result['figures'] == []
        assert result['metrics']['r2'] > 0.9

    def test_writes_metrics_and_figures(self, predictions, tmp_path):
        result = evaluate_holdout(*predictions, output_dir=str(tmp_path))

        with open(result['metrics_file']) as f:
            saved = json.load(f)
        assert saved['rmse'] == pytest.approx(result['metrics']['rmse'])
        for name in result['figures']:
            assert (tmp_path / name).exists()
        assert len(result['figures']) == 2


class TestPrediction:
    """Tests for predicting and exporting prediction-only tables."""

    @pytest.fixture
    def fitted(self):
        """Fit imputer, filter and model on a small reference table."""
        np.random.seed(42)
        n_samples = 80
        reference = pd.DataFrame({
            'id': [f"ID_{i}" for i in range(n_samples)],
            'x1': np.random.randn(n_samples),
            'x2': np.random.randn(n_samples),
        })
        reference['emission'] = 5 * reference['x1'] + np.random.randn(n_samples)
        reference.loc[[1, 5, 9], 'x2'] = np.nan

        imputer_state = fit_imputer(reference, exclude=['id', 'emission'])
        imputed = apply_imputer(imputer_state, reference)
        filter_state = fit_filter(imputed[['x1', 'x2']])
        model = train_model(
            imputed[list(filter_state.retained)], imputed['emission'], BoostingParams(n_estimators=20)
        )
        return model, imputer_state, filter_state

    @pytest.fixture
    def test_table(self):
        np.random.seed(0)
        table = pd.DataFrame({
            'id': ['c', 'a', 'b', 'd'],
            'x1': np.random.randn(4),
            'x2': [0.1, np.nan, 0.3, np.nan],
        })
        return table

    def test_rows_in_input_order(self, fitted, test_table):
        model, imputer_state, filter_state = fitted

        output = predict_table(model, imputer_state, filter_state, test_table, 'id')

        assert list(output.columns) == ['id', 'emission']
        assert output['id'].tolist() == ['c', 'a', 'b', 'd']
        assert np.all(np.isfinite(output['emission']))

    def test_export_predictions(self, fitted, test_table, tmp_path):
        model, imputer_state, filter_state = fitted
        output = predict_table(model, imputer_state, filter_state, test_table, 'id')

        path = export_predictions(output, str(tmp_path), name="test_predictions")

        saved = pd.read_csv(path)
        assert Path(path).name == "test_predictions.csv"
        assert saved['id'].tolist() == output['id'].tolist()

    def test_run_report(self, tmp_path):
        summary = {
            'n_stages': np.int64(30),
            'holdout_metrics': {'rmse': np.float64(1.25)},
            'retained_features': ('x1', 'x3'),
        }
        report = generate_run_report(summary, output_path=str(tmp_path / 'report.json'))

        with open(tmp_path / 'report.json') as f:
            saved = json.load(f)
        assert saved['n_stages'] == 30
        assert saved['holdout_metrics']['rmse'] == 1.25
        assert saved['retained_features'] == ['x1', 'x3']
        assert 'generated_at' in report


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
