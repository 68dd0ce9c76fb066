"""
Test Suite for Imputation Module
================================

Tests for fit_imputer / apply_imputer.
"""

import pytest
import numpy as np
import pandas as pd

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from emissions.config import ImputationConfig
from emissions.exceptions import ImputationIncomplete, SchemaMismatch
from emissions.imputation import apply_imputer, fit_imputer


class TestBaggedTreeImputer:
    """Tests for the bagged-tree imputer."""

    @pytest.fixture
    def complete_data(self):
        """Create a complete table with a strong a -> b relationship."""
        np.random.seed(42)
        n_samples = 120
        a = np.random.randn(n_samples)
        return pd.DataFrame({
            'id': [f"site_{i}" for i in range(n_samples)],
            'a': a,
            'b': 2 * a + np.random.randn(n_samples) * 0.1,
            'c': np.random.randn(n_samples) + 5,
            'region': np.where(a > 0, 'north', 'south'),
            'emission': np.random.rand(n_samples) * 100
        })

    @pytest.fixture
    def sample_data(self, complete_data):
        """Knock out 10% of 'b' and 5% of 'region'."""
        df = complete_data.copy()
        rng = np.random.RandomState(0)
        df.loc[rng.choice(len(df), 12, replace=False), 'b'] = np.nan
        df.loc[rng.choice(len(df), 6, replace=False), 'region'] = np.nan
        return df

    @pytest.fixture
    def config(self):
        return ImputationConfig(n_estimators=10)

    def test_no_missing_after_apply(self, sample_data, config):
        """Every modeled cell is filled."""
        state = fit_imputer(sample_data, exclude=['id', 'emission'], config=config)
        result = apply_imputer(state, sample_data)

        assert result[list(state.columns)].isna().sum().sum() == 0

    def test_input_not_modified(self, sample_data, config):
        """Applying the imputer returns a new table."""
        before = sample_data.isna().sum().sum()
        state = fit_imputer(sample_data, exclude=['id', 'emission'], config=config)
        apply_imputer(state, sample_data)

        assert sample_data.isna().sum().sum() == before

    def test_excluded_columns(self, sample_data, config):
        """Identifier and target are neither imputed nor used as inputs."""
        state = fit_imputer(sample_data, exclude=['id', 'emission'], config=config)

        assert 'id' not in state.columns
        assert 'emission' not in state.columns
        for inputs in state.predictors.values():
            assert 'id' not in inputs
            assert 'emission' not in inputs

    def test_passthrough_and_observed_values_unchanged(self, sample_data, config):
        """Only missing cells change."""
        state = fit_imputer(sample_data, exclude=['id', 'emission'], config=config)
        result = apply_imputer(state, sample_data)

        pd.testing.assert_series_equal(result['id'], sample_data['id'])
        pd.testing.assert_series_equal(result['emission'], sample_data['emission'])
        observed = sample_data['b'].notna()
        np.testing.assert_array_equal(result.loc[observed, 'b'], sample_data.loc[observed, 'b'])

    def test_imputed_values_follow_other_columns(self, complete_data, sample_data, config):
        """Imputed 'b' tracks the true values through its relation with 'a'."""
        state = fit_imputer(sample_data, exclude=['id', 'emission'], config=config)
        result = apply_imputer(state, sample_data)

        mask = sample_data['b'].isna()
        corr = np.corrcoef(result.loc[mask, 'b'], complete_data.loc[mask, 'b'])[0, 1]
        assert corr > 0.8

    def test_categorical_imputation(self, sample_data, config):
        """Categorical cells are filled with observed levels."""
        state = fit_imputer(sample_data, exclude=['id', 'emission'], config=config)
        result = apply_imputer(state, sample_data)

        assert state.kinds['region'] == 'categorical'
        assert set(result['region']) <= {'north', 'south'}

    def test_apply_to_new_table(self, sample_data, config):
        """A prediction table without the target is filled with the same state."""
        state = fit_imputer(sample_data, exclude=['id', 'emission'], config=config)
        test_table = sample_data.drop(columns=['emission']).head(20).copy()
        test_table.loc[test_table.index[:3], 'c'] = np.nan

        result = apply_imputer(state, test_table)

        assert result[list(state.columns)].isna().sum().sum() == 0
        assert 'emission' not in result.columns

    def test_missing_column_raises(self, sample_data, config):
        """A table without a modeled column is rejected."""
        state = fit_imputer(sample_data, exclude=['id', 'emission'], config=config)

        with pytest.raises(SchemaMismatch) as exc_info:
            apply_imputer(state, sample_data.drop(columns=['c']))
        assert exc_info.value.missing == ['c']

    def test_type_change_raises(self, sample_data, config):
        """A numeric column turned into text is rejected."""
        state = fit_imputer(sample_data, exclude=['id', 'emission'], config=config)
        changed = sample_data.copy()
        changed['c'] = changed['c'].astype(str)

        with pytest.raises(SchemaMismatch):
            apply_imputer(state, changed)

    def test_all_missing_column_raises(self, sample_data, config):
        """A column with nothing to learn from cannot be imputed."""
        df = sample_data.copy()
        df['empty'] = np.nan

        state = fit_imputer(df, exclude=['id', 'emission'], config=config)
        assert state.untrainable == ('empty',)

        with pytest.raises(ImputationIncomplete) as exc_info:
            apply_imputer(state, df)
        assert exc_info.value.columns == ['empty']

    def test_single_column_uses_median(self, config):
        """Without other columns the reference median is used."""
        df = pd.DataFrame({'id': range(5), 'x': [1.0, 2.0, np.nan, 4.0, 100.0]})
        state = fit_imputer(df, exclude=['id'], config=config)
        result = apply_imputer(state, df)

        assert state.estimators['x'] is None
        assert result.loc[2, 'x'] == 3.0

    def test_deterministic(self, sample_data, config):
        """Same seed, same imputed values."""
        first = apply_imputer(
            fit_imputer(sample_data, exclude=['id', 'emission'], config=config, random_state=7),
            sample_data
        )
        second = apply_imputer(
            fit_imputer(sample_data, exclude=['id', 'emission'], config=config, random_state=7),
            sample_data
        )

        pd.testing.assert_frame_equal(first, second)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
