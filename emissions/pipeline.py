"""
Pipeline Orchestrator
=====================

Runs the emission modeling stages in their fixed order:

    RAW -> IMPUTED -> FEATURE-FILTERED -> SPLIT -> TUNED -> FINAL-FIT -> PREDICTED

Each stage consumes the previous stage's output. Transitions are one-way:
a stage cannot be re-run in place, and a failed run cannot continue. The
imputer and the correlation filter are fitted exactly once, on the
reference table, and applied unchanged to every other table of the run.
"""

import logging
from contextlib import contextmanager
from enum import IntEnum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import joblib
import numpy as np
import pandas as pd

from .config import BoostingParams, PipelineConfig
from .data_loader import validate_data
from .evaluation import evaluate_holdout
from .exceptions import SchemaMismatch, StageOrderError
from .feature_selection import FilterState, apply_filter, fit_filter
from .imputation import ImputerState, apply_imputer, fit_imputer
from .model import EmissionModel, train_model
from .prediction import predict_table
from .splitting import DataSplit, k_fold, stratified_split
from .tuning import Candidate, HyperparameterSearch, SearchResult

logger = logging.getLogger(__name__)


class Stage(IntEnum):
    RAW = 0
    IMPUTED = 1
    FEATURE_FILTERED = 2
    SPLIT = 3
    TUNED = 4
    FINAL_FIT = 5
    PREDICTED = 6

    @property
    def label(self) -> str:
        return self.name.lower().replace('_', '-')


class EmissionPipeline:
    """
    One run of the emission pipeline.

    Fitted artifacts (imputer_state, filter_state, search_result, model)
    are exposed as attributes once their stage has completed.
    """

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config or PipelineConfig()
        self.stage = Stage.RAW
        self.failed_stage: Optional[Stage] = None

        self.reference: Optional[pd.DataFrame] = None
        self.imputer_state: Optional[ImputerState] = None
        self.imputed: Optional[pd.DataFrame] = None
        self.filter_state: Optional[FilterState] = None
        self.features: Optional[pd.DataFrame] = None
        self.target: Optional[np.ndarray] = None
        self.data_split: Optional[DataSplit] = None
        self.folds = None
        self.search_result: Optional[SearchResult] = None
        self.best_candidate: Optional[Candidate] = None
        self.selected_params: Optional[BoostingParams] = None
        self.model: Optional[EmissionModel] = None
        self.holdout_predictions: Optional[pd.DataFrame] = None
        self.holdout_metrics: Optional[Dict[str, Any]] = None
        self.predictions: Dict[str, pd.DataFrame] = {}

    @contextmanager
    def _transition(self, expected: Stage, target: Stage):
        if self.failed_stage is not None:
            raise StageOrderError(
                f"Run failed during '{self.failed_stage.label}'; start a fresh run"
            )
        if self.stage is not expected:
            raise StageOrderError(
                f"Cannot enter '{target.label}' from '{self.stage.label}' "
                f"(requires '{expected.label}'); start a fresh run to repeat a stage"
            )

        logger.info("=" * 60)
        logger.info(f"STAGE: {target.label.upper()}")
        logger.info("=" * 60)
        try:
            yield
        except BaseException:
            self.failed_stage = target
            raise
        self.stage = target

    # Stage 1
    def impute(self, reference: pd.DataFrame) -> pd.DataFrame:
        """Fit the imputer on the reference table and fill its missing cells."""
        cfg = self.config
        with self._transition(Stage.RAW, Stage.IMPUTED):
            validate_data(reference, cfg.id_column, cfg.target, strict=True)

            missing_target = reference[cfg.target].isna()
            if missing_target.any():
                logger.warning(
                    f"Dropping {int(missing_target.sum())} rows with missing '{cfg.target}'"
                )
            self.reference = reference.loc[~missing_target].reset_index(drop=True)

            self.imputer_state = fit_imputer(
                self.reference,
                exclude=cfg.non_modeled_columns,
                config=cfg.imputation,
                random_state=cfg.seed,
            )
            self.imputed = apply_imputer(self.imputer_state, self.reference)
        return self.imputed

    # Stage 2
    def select_features(self) -> pd.DataFrame:
        """Fit the correlation filter on the imputed reference predictors."""
        cfg = self.config
        with self._transition(Stage.IMPUTED, Stage.FEATURE_FILTERED):
            predictors = self.imputed.drop(
                columns=[c for c in cfg.non_modeled_columns if c in self.imputed.columns]
            )
            non_numeric = predictors.select_dtypes(exclude=[np.number]).columns.tolist()
            if non_numeric:
                raise SchemaMismatch(
                    f"Predictors must be numeric; list {non_numeric} in exclude_columns "
                    f"or encode them before modeling",
                    mismatched=non_numeric,
                )

            self.filter_state = fit_filter(
                predictors,
                threshold=cfg.feature_selection.threshold,
                method=cfg.feature_selection.method,
            )
            self.features = apply_filter(self.filter_state, self.imputed)
            self.target = self.imputed[cfg.target].to_numpy(dtype=float)
        return self.features

    # Stage 3
    def split(self) -> DataSplit:
        """Stratified train/holdout split, then k folds over the training rows."""
        cfg = self.config
        with self._transition(Stage.FEATURE_FILTERED, Stage.SPLIT):
            strata = cfg.strata_column
            if strata not in self.imputed.columns:
                raise SchemaMismatch(
                    f"Stratification column '{strata}' not found", missing=[strata]
                )

            self.data_split = stratified_split(
                self.imputed,
                train_fraction=cfg.split.train_fraction,
                stratify_column=strata,
                breaks=cfg.split.breaks,
                seed=cfg.seed,
            )
            training_rows = self.data_split.training(self.imputed).reset_index(drop=True)
            self.folds = k_fold(
                training_rows,
                k=cfg.split.n_folds,
                stratify_column=strata,
                breaks=cfg.split.breaks,
                seed=cfg.seed,
            )
        return self.data_split

    @property
    def X_train(self) -> pd.DataFrame:
        return self.data_split.training(self.features).reset_index(drop=True)

    @property
    def y_train(self) -> np.ndarray:
        return self.target[self.data_split.train_index]

    @property
    def X_holdout(self) -> pd.DataFrame:
        return self.data_split.holdout(self.features).reset_index(drop=True)

    @property
    def y_holdout(self) -> np.ndarray:
        return self.target[self.data_split.holdout_index]

    # Stage 4
    def tune(self, checkpoint_path: Optional[str] = None) -> Candidate:
        """Select hyperparameters by cross-validated search (or take the configured ones)."""
        cfg = self.config
        with self._transition(Stage.SPLIT, Stage.TUNED):
            if cfg.search.enabled:
                search = HyperparameterSearch.from_config(cfg.search, cfg.model, seed=cfg.seed)
                self.search_result = search.run(
                    self.X_train,
                    self.y_train,
                    self.folds,
                    checkpoint_path=checkpoint_path or cfg.search.checkpoint_path,
                )
                self.best_candidate = self.search_result.select_best(
                    cfg.search.metric, cfg.search.resolved_direction
                )
                best = self.search_result.get(self.best_candidate.index)
                logger.info(
                    f"Selected {self.best_candidate.key}: "
                    f"{cfg.search.metric}={best.mean[cfg.search.metric]:.6f}"
                )
            else:
                logger.info("Search disabled; using configured model hyperparameters")
                self.best_candidate = Candidate.from_params(cfg.model)

            self.selected_params = self.best_candidate.to_params(cfg.model)
        return self.best_candidate

    # Stage 5
    def fit_final(self) -> EmissionModel:
        """Fit the selected hyperparameters on the training rows and score the holdout."""
        cfg = self.config
        with self._transition(Stage.TUNED, Stage.FINAL_FIT):
            model = train_model(self.X_train, self.y_train, self.selected_params)

            holdout_pred = model.predict(self.X_holdout)
            evaluation = evaluate_holdout(
                self.y_holdout, holdout_pred, cfg.target, output_dir=cfg.output.figures_path
            )
            self.holdout_metrics = evaluation['metrics']
            self.holdout_predictions = pd.DataFrame({
                cfg.id_column: self.data_split.holdout(self.reference)[cfg.id_column].to_numpy(),
                cfg.target: holdout_pred,
                'actual': self.y_holdout,
            })

            if cfg.final_fit.refit_on_full:
                logger.info(f"Refitting on all {len(self.features)} reference rows")
                model = train_model(self.features, self.target, self.selected_params)

            self.model = model
        return self.model

    # Stage 6
    def predict(
        self,
        tables: Union[pd.DataFrame, Mapping[str, pd.DataFrame], None] = None
    ) -> Dict[str, pd.DataFrame]:
        """Predict every prediction-only table with the run's fitted states."""
        cfg = self.config
        if tables is None:
            tables = {}
        elif isinstance(tables, pd.DataFrame):
            tables = {'test': tables}

        with self._transition(Stage.FINAL_FIT, Stage.PREDICTED):
            for name, table in tables.items():
                logger.info(f"Predicting '{name}' ({len(table)} rows)")
                self.predictions[name] = predict_table(
                    self.model,
                    self.imputer_state,
                    self.filter_state,
                    table,
                    id_column=cfg.id_column,
                    target_name=cfg.target,
                )
        return self.predictions

    def run(
        self,
        reference: pd.DataFrame,
        tables: Union[pd.DataFrame, Mapping[str, pd.DataFrame], None] = None,
        checkpoint_path: Optional[str] = None,
        stop_after: Stage = Stage.PREDICTED
    ) -> 'EmissionPipeline':
        """
        Execute stages from RAW up to `stop_after`.

        Args:
            reference: Training table (identifier, predictors, target)
            tables: Prediction-only table(s)
            checkpoint_path: Resumable search checkpoint
            stop_after: Last stage to run

        Returns:
            Self, with all artifacts of the completed stages
        """
        steps = (
            (Stage.IMPUTED, lambda: self.impute(reference)),
            (Stage.FEATURE_FILTERED, self.select_features),
            (Stage.SPLIT, self.split),
            (Stage.TUNED, lambda: self.tune(checkpoint_path)),
            (Stage.FINAL_FIT, self.fit_final),
            (Stage.PREDICTED, lambda: self.predict(tables)),
        )
        for stage, step in steps:
            if stage > stop_after:
                break
            step()
        return self

    def summary(self) -> Dict[str, Any]:
        """JSON-friendly description of the completed stages."""
        summary: Dict[str, Any] = {'stage': self.stage.label, 'seed': self.config.seed}

        if self.reference is not None:
            summary['reference_rows'] = len(self.reference)
        if self.imputer_state is not None:
            summary['imputed_columns'] = {
                col: count for col, count in self.imputer_state.missing_at_fit.items() if count
            }
        if self.filter_state is not None:
            summary['retained_features'] = list(self.filter_state.retained)
            summary['dropped_features'] = list(self.filter_state.dropped)
        if self.data_split is not None:
            summary['train_rows'] = len(self.data_split.train_index)
            summary['holdout_rows'] = len(self.data_split.holdout_index)
        if self.search_result is not None:
            summary['search'] = {
                'evaluated': len(self.search_result.results),
                'failed': len(self.search_result.failed),
                'stopped_early': self.search_result.stopped_early,
            }
        if self.best_candidate is not None:
            summary['selected_hyperparameters'] = self.selected_params.as_dict()
        if self.holdout_metrics is not None:
            summary['holdout_metrics'] = self.holdout_metrics
        if self.model is not None:
            summary['n_stages'] = self.model.n_stages
        if self.predictions:
            summary['predictions'] = {name: len(df) for name, df in self.predictions.items()}
        return summary

    def save_artifacts(self, directory: str) -> Dict[str, str]:
        """Persist the fitted states and model with joblib."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        paths = {}

        if self.imputer_state is not None:
            paths['imputer'] = str(directory / 'imputer_state.joblib')
            joblib.dump(self.imputer_state, paths['imputer'])
        if self.filter_state is not None:
            paths['filter'] = str(directory / 'filter_state.joblib')
            joblib.dump(self.filter_state, paths['filter'])
        if self.model is not None:
            paths['model'] = str(directory / 'emission_model.joblib')
            self.model.save(paths['model'])

        logger.info(f"Saved artifacts: {list(paths)}")
        return paths


def run_pipeline(
    reference: pd.DataFrame,
    tables: Union[pd.DataFrame, Mapping[str, pd.DataFrame], None] = None,
    config: Optional[PipelineConfig] = None,
    checkpoint_path: Optional[str] = None,
    stop_after: Stage = Stage.PREDICTED
) -> EmissionPipeline:
    """Run a fresh pipeline over a reference table and prediction tables."""
    return EmissionPipeline(config).run(
        reference, tables, checkpoint_path=checkpoint_path, stop_after=stop_after
    )
