"""
Test Suite for Pipeline Module
==============================

End-to-end and stage-ordering tests for EmissionPipeline.
"""

import pytest
import numpy as np
import pandas as pd

import sys
from pathlib import Path
from dataclasses import replace
sys.path.insert(0, str(Path(__file__).parent.parent))

from emissions.config import (
    BoostingParams,
    FinalFitConfig,
    ImputationConfig,
    OutputConfig,
    PipelineConfig,
    SearchConfig,
    SplitConfig,
)
from emissions.exceptions import SchemaMismatch, StageOrderError
from emissions.pipeline import EmissionPipeline, Stage, run_pipeline
from emissions.splitting import fold_assignment


def make_table(n_samples, seed, with_target=True):
    """Five predictors (x1/x2 correlated at ~0.95), 10% missing in x3."""
    rng = np.random.RandomState(seed)
    x1 = rng.randn(n_samples)
    df = pd.DataFrame({
        'id': [f"ID_{seed}_{i}" for i in range(n_samples)],
        'x1': x1,
        'x2': 0.95 * x1 + np.sqrt(1 - 0.95 ** 2) * rng.randn(n_samples),
        'x3': rng.randn(n_samples),
        'x4': rng.randn(n_samples),
        'x5': rng.randn(n_samples)
    })
    if with_target:
        df['emission'] = (
            10 + 3 * df['x1'] + 2 * df['x3'] - df['x4'] + rng.randn(n_samples) * 0.5
        )
    missing = rng.choice(n_samples, n_samples // 10, replace=False)
    df.loc[missing, 'x3'] = np.nan
    return df


@pytest.fixture
def reference():
    return make_table(100, seed=42)


@pytest.fixture
def test_table():
    return make_table(20, seed=7, with_target=False)


@pytest.fixture
def config():
    return PipelineConfig(
        id_column='id',
        target='emission',
        imputation=ImputationConfig(n_estimators=10),
        split=SplitConfig(train_fraction=0.75, n_folds=5),
        search=SearchConfig(n_candidates=10, design_iterations=50),
        model=BoostingParams(n_estimators=30),
    )


class TestEndToEnd:
    """Full runs over a synthetic reference table."""

    def test_full_run(self, reference, test_table, config):
        pipeline = EmissionPipeline(config).run(reference, {'test': test_table})

        assert pipeline.stage == Stage.PREDICTED

        # Imputation
        assert reference['x3'].isna().sum() == 10
        assert pipeline.imputed.isna().sum().sum() == 0

        # Feature filter
        assert len(pipeline.filter_state.retained) == 4
        assert pipeline.filter_state.dropped[0] in ('x1', 'x2')

        # Search
        assert len(pipeline.search_result.results) == 10
        best = pipeline.search_result.get(pipeline.best_candidate.index)
        assert best.mean['rmse'] <= pipeline.search_result.get(0).mean['rmse']

        # Holdout
        holdout = pipeline.holdout_predictions
        assert len(holdout) == 25
        assert np.all(np.isfinite(holdout['emission']))
        assert set(holdout['id']) <= set(reference['id'])

        # Prediction
        predictions = pipeline.predictions['test']
        assert list(predictions.columns) == ['id', 'emission']
        assert predictions['id'].tolist() == test_table['id'].tolist()
        assert np.all(np.isfinite(predictions['emission']))

    def test_run_pipeline_helper(self, reference, test_table, config):
        pipeline = run_pipeline(reference, test_table, config)
        assert len(pipeline.predictions['test']) == len(test_table)

    def test_search_disabled(self, reference, config):
        config = replace(config, search=replace(config.search, enabled=False))
        pipeline = EmissionPipeline(config).run(reference, stop_after=Stage.FINAL_FIT)

        assert pipeline.search_result is None
        assert pipeline.selected_params == config.model
        assert pipeline.model.n_stages == 30

    def test_refit_on_full(self, reference, config):
        config = replace(
            config,
            search=replace(config.search, n_candidates=2),
            final_fit=FinalFitConfig(refit_on_full=True),
        )
        pipeline = EmissionPipeline(config).run(reference, stop_after=Stage.FINAL_FIT)

        assert pipeline.model.training_info['n_samples'] == 100
        assert len(pipeline.holdout_predictions) == 25

    def test_rows_with_missing_target_dropped(self, reference, config):
        reference.loc[:4, 'emission'] = np.nan
        pipeline = EmissionPipeline(config).run(reference, stop_after=Stage.FEATURE_FILTERED)

        assert len(pipeline.reference) == 95
        assert len(pipeline.features) == 95

    def test_deterministic(self, reference, config):
        first = EmissionPipeline(config).run(reference, stop_after=Stage.TUNED)
        second = EmissionPipeline(config).run(reference, stop_after=Stage.TUNED)

        np.testing.assert_array_equal(first.data_split.train_index, second.data_split.train_index)
        np.testing.assert_array_equal(
            fold_assignment(first.folds, 75), fold_assignment(second.folds, 75)
        )
        assert first.best_candidate == second.best_candidate


class TestStages:
    """Stage ordering and fitted-state reuse."""

    def test_stop_after(self, reference, config):
        pipeline = EmissionPipeline(config).run(reference, stop_after=Stage.SPLIT)

        assert pipeline.stage == Stage.SPLIT
        assert len(pipeline.folds) == 5
        assert pipeline.model is None

    def test_out_of_order_stage(self, config):
        with pytest.raises(StageOrderError):
            EmissionPipeline(config).split()

    def test_stage_cannot_repeat(self, reference, config):
        pipeline = EmissionPipeline(config)
        pipeline.impute(reference)

        with pytest.raises(StageOrderError):
            pipeline.impute(reference)

    def test_failed_run_is_locked(self, reference, config):
        config = replace(config, split=replace(config.split, strata='not_a_column'))
        pipeline = EmissionPipeline(config)

        with pytest.raises(SchemaMismatch):
            pipeline.run(reference, stop_after=Stage.SPLIT)

        assert pipeline.failed_stage == Stage.SPLIT
        assert pipeline.stage == Stage.FEATURE_FILTERED
        with pytest.raises(StageOrderError):
            pipeline.tune()

    def test_non_numeric_predictor_rejected(self, reference, config):
        reference['region'] = np.where(reference['x4'] > 0, 'north', 'south')
        pipeline = EmissionPipeline(config)

        with pytest.raises(SchemaMismatch):
            pipeline.run(reference, stop_after=Stage.FEATURE_FILTERED)

    def test_fitted_states_reused_for_prediction(self, reference, test_table, config):
        config = replace(config, search=replace(config.search, n_candidates=2))
        pipeline = EmissionPipeline(config).run(reference, stop_after=Stage.FINAL_FIT)
        imputer_state = pipeline.imputer_state
        filter_state = pipeline.filter_state

        pipeline.predict(test_table)

        assert pipeline.imputer_state is imputer_state
        assert pipeline.filter_state is filter_state
        assert test_table['x3'].isna().any()

    def test_prediction_schema_mismatch(self, reference, test_table, config):
        config = replace(config, search=replace(config.search, n_candidates=2))
        pipeline = EmissionPipeline(config).run(reference, stop_after=Stage.FINAL_FIT)

        with pytest.raises(SchemaMismatch):
            pipeline.predict({'test': test_table.drop(columns=['x4'])})

    def test_prediction_requires_identifier(self, reference, test_table, config):
        config = replace(config, search=replace(config.search, n_candidates=2))
        pipeline = EmissionPipeline(config).run(reference, stop_after=Stage.FINAL_FIT)

        with pytest.raises(SchemaMismatch):
            pipeline.predict(test_table.drop(columns=['id']))

    def test_summary_and_artifacts(self, reference, test_table, config, tmp_path):
        config = replace(config, search=replace(config.search, n_candidates=2))
        pipeline = EmissionPipeline(config).run(reference, {'test': test_table})

        summary = pipeline.summary()
        paths = pipeline.save_artifacts(str(tmp_path))

        assert summary['stage'] == 'predicted'
        assert summary['imputed_columns'] == {'x3': 10}
        assert len(summary['retained_features']) == 4
        assert summary['predictions'] == {'test': 20}
        assert set(paths) == {'imputer', 'filter', 'model'}
        assert all(Path(p).exists() for p in paths.values())


class TestCommandLine:
    """Runs through main.run with CSV inputs."""

    def test_run_writes_outputs(self, reference, test_table, config, tmp_path):
        from main import run

        reference.to_csv(tmp_path / 'train.csv', index=False)
        test_table.to_csv(tmp_path / 'test.csv', index=False)
        config = replace(
            config,
            search=replace(config.search, n_candidates=2),
            output=OutputConfig(
                predictions_path=str(tmp_path / 'predictions'),
                model_path=str(tmp_path / 'models' / 'emission_model.joblib'),
                figures_path=str(tmp_path / 'figures'),
                report_path=str(tmp_path / 'run_report.json'),
            ),
        )

        pipeline = run(str(tmp_path / 'train.csv'), [str(tmp_path / 'test.csv')], config)

        assert pipeline.stage == Stage.PREDICTED
        saved = pd.read_csv(tmp_path / 'predictions' / 'test_predictions.csv')
        assert saved['id'].tolist() == test_table['id'].tolist()
        assert (tmp_path / 'predictions' / 'holdout_predictions.csv').exists()
        assert (tmp_path / 'predictions' / 'search_results.csv').exists()
        assert (tmp_path / 'models' / 'emission_model.joblib').exists()
        assert (tmp_path / 'figures' / 'holdout_metrics.json').exists()
        assert (tmp_path / 'run_report.json').exists()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
