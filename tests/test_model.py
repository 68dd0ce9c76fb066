"""
Test Suite for Model Module
===========================

Tests for EmissionModel training, prediction and persistence.
"""

import pytest
import numpy as np
import pandas as pd

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from emissions.config import BoostingParams
from emissions.exceptions import ImputationIncomplete, SchemaMismatch
from emissions.model import EmissionModel, train_model


class TestEmissionModel:
    """Tests for the gradient-boosted regressor."""

    @pytest.fixture
    def sample_data(self):
        """Create a linear target with noise."""
        np.random.seed(42)
        n_samples = 200
        X = pd.DataFrame({
            'x0': np.random.randn(n_samples),
            'x1': np.random.randn(n_samples),
            'x2': np.random.randn(n_samples),
            'x3': np.random.randn(n_samples)
        })
        y = 3 * X['x0'] - 2 * X['x1'] + np.random.randn(n_samples) * 0.5
        return X, y.to_numpy()

    @pytest.fixture
    def params(self):
        return BoostingParams(n_estimators=50, max_depth=3, learning_rate=0.1, min_samples_leaf=5)

    def test_fit_predict(self, sample_data, params):
        X, y = sample_data
        model = EmissionModel(params).fit(X, y)
        predictions = model.predict(X)

        assert predictions.shape == (len(X),)
        assert np.all(np.isfinite(predictions))
        assert np.corrcoef(predictions, y)[0, 1] > 0.9

    def test_fixed_stage_count(self, sample_data, params):
        """Without a stopping rule every stage is kept."""
        X, y = sample_data
        model = EmissionModel(params).fit(X, y)

        assert model.n_stages == 50
        assert model.training_info['n_stages'] == 50

    def test_stopping_rule_truncates(self, sample_data):
        X, y = sample_data
        params = BoostingParams(
            n_estimators=500, max_depth=3, learning_rate=0.3, min_samples_leaf=5, n_iter_no_change=3
        )
        model = EmissionModel(params).fit(X, y)

        assert model.n_stages < 500

    def test_staged_predict_ends_at_predict(self, sample_data, params):
        X, y = sample_data
        model = EmissionModel(params).fit(X, y)

        stages = list(model.staged_predict(X))

        assert len(stages) == 50
        np.testing.assert_allclose(stages[-1], model.predict(X))

    def test_large_loss_reduction_blocks_splits(self, sample_data):
        """No split clears the threshold, so every prediction is the target mean."""
        X, y = sample_data
        params = BoostingParams(n_estimators=10, min_loss_reduction=1e6)
        model = EmissionModel(params).fit(X, y)

        np.testing.assert_allclose(model.predict(X), y.mean())

    def test_missing_values_rejected(self, sample_data, params):
        X, y = sample_data
        X = X.copy()
        X.iloc[0, 0] = np.nan

        with pytest.raises(ImputationIncomplete):
            EmissionModel(params).fit(X, y)

    def test_wrong_columns_rejected(self, sample_data, params):
        X, y = sample_data
        model = EmissionModel(params).fit(X, y)

        with pytest.raises(SchemaMismatch):
            model.predict(X.drop(columns=['x3']))

    @pytest.mark.parametrize('override', [
        {'learning_rate': 0.0},
        {'min_samples_leaf': 0},
        {'max_depth': 0},
        {'min_loss_reduction': -1.0},
    ])
    def test_invalid_hyperparameters(self, sample_data, params, override):
        X, y = sample_data
        with pytest.raises(ValueError):
            train_model(X, y, params, **override)

    def test_predict_before_fit(self, sample_data, params):
        X, _ = sample_data
        with pytest.raises(ValueError):
            EmissionModel(params).predict(X)

    def test_feature_importances(self, sample_data, params):
        X, y = sample_data
        model = EmissionModel(params).fit(X, y)
        importances = model.get_feature_importances()

        assert set(importances.index) == set(X.columns)
        assert importances.index[0] == 'x0'

    def test_save_and_load(self, sample_data, params, tmp_path):
        X, y = sample_data
        model = train_model(X, y, params, save_path=str(tmp_path / 'model.joblib'))

        loaded = EmissionModel.load(str(tmp_path / 'model.joblib'))

        np.testing.assert_array_equal(loaded.predict(X), model.predict(X))
        assert loaded.params == params


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
