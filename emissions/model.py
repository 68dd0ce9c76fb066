"""
Model Training Module
=====================

Handles emission model training with a gradient-boosted regression tree ensemble.

Features:
    - Squared-error gradient boosting with a fixed number of stages
    - Minimum loss reduction guard on every split (min_impurity_decrease)
    - Optional validation-based stopping rule (off unless configured)
    - Staged predictions, feature importances
    - Model persistence (save/load)
"""

import logging
from dataclasses import replace
from pathlib import Path
from typing import Dict, Any, Iterator, List, Optional
from datetime import datetime

import numpy as np
import pandas as pd
import joblib
from sklearn.ensemble import GradientBoostingRegressor

from .config import BoostingParams
from .exceptions import ImputationIncomplete, SchemaMismatch

logger = logging.getLogger(__name__)


class EmissionModel:
    """
    Gradient-boosted tree regressor for the emission target.

    Each stage fits a shallow regression tree to the residuals of the
    current ensemble and adds it scaled by the learning rate. A split is
    only accepted when it lowers the training squared error by at least
    `min_loss_reduction`.
    """

    def __init__(self, params: Optional[BoostingParams] = None):
        """
        Initialize the model with hyperparameters.

        Args:
            params: Boosting hyperparameters (defaults when None)
        """
        self.params = params or BoostingParams()

        self.model: Optional[GradientBoostingRegressor] = None
        self.feature_names_: Optional[List[str]] = None
        self.n_features_in_: Optional[int] = None
        self.training_info: Dict[str, Any] = {}
        self._is_fitted = False

    def _validate_params(self) -> None:
        p = self.params
        if p.learning_rate <= 0:
            raise ValueError(f"learning_rate must be > 0, got {p.learning_rate}")
        if p.max_depth < 1:
            raise ValueError(f"max_depth must be >= 1, got {p.max_depth}")
        if p.min_samples_leaf < 1:
            raise ValueError(f"min_samples_leaf must be >= 1, got {p.min_samples_leaf}")
        if p.min_loss_reduction < 0:
            raise ValueError(f"min_loss_reduction must be >= 0, got {p.min_loss_reduction}")

    def _create_estimator(self) -> GradientBoostingRegressor:
        """Create the underlying GradientBoostingRegressor."""
        p = self.params
        return GradientBoostingRegressor(
            loss='squared_error',
            n_estimators=p.n_estimators,
            learning_rate=p.learning_rate,
            max_depth=int(p.max_depth),
            min_samples_leaf=int(p.min_samples_leaf),
            min_impurity_decrease=p.min_loss_reduction,
            subsample=p.subsample,
            n_iter_no_change=p.n_iter_no_change,
            validation_fraction=p.validation_fraction,
            random_state=p.random_state,
            verbose=0
        )

    def fit(self, X: pd.DataFrame, y) -> 'EmissionModel':
        """
        Train the model on the provided data.

        Args:
            X: Predictor table of shape (n_samples, n_features)
            y: Target values of shape (n_samples,)

        Returns:
            Self for method chaining

        Raises:
            ImputationIncomplete: If X contains missing values
            ValueError: If hyperparameters are invalid, there are no rows,
                or the fitted loss is not finite
        """
        self._validate_params()
        start_time = datetime.now()

        X = pd.DataFrame(X)
        y = np.asarray(y, dtype=float).ravel()

        if len(X) == 0:
            raise ValueError("Cannot fit a model on zero rows")
        if len(X) != len(y):
            raise ValueError(f"X has {len(X)} rows but y has {len(y)}")

        missing = X.columns[X.isna().any()].tolist()
        if missing:
            raise ImputationIncomplete(
                f"Refusing to train on missing values in columns: {missing}", columns=missing
            )
        if np.isnan(y).any():
            raise ValueError("Target contains missing values")

        logger.debug(f"Fitting {self.params.n_estimators} stages on X={X.shape}")

        self.feature_names_ = [str(c) for c in X.columns]
        self.n_features_in_ = X.shape[1]

        self.model = self._create_estimator()
        self.model.fit(X.to_numpy(dtype=float), y)

        train_loss = np.asarray(self.model.train_score_)
        if not np.all(np.isfinite(train_loss)):
            raise ValueError("Boosting produced a non-finite training loss")

        training_duration = (datetime.now() - start_time).total_seconds()

        self.training_info = {
            'training_duration_seconds': training_duration,
            'n_samples': int(X.shape[0]),
            'n_features': int(X.shape[1]),
            'n_stages': int(self.model.n_estimators_),
            'final_train_loss': float(train_loss[-1]),
            'trained_at': datetime.now().isoformat(),
            'hyperparameters': self.params.as_dict()
        }

        if self.params.n_iter_no_change is not None:
            logger.info(
                f"Stopping rule kept {self.model.n_estimators_} of "
                f"{self.params.n_estimators} stages"
            )

        self._is_fitted = True
        return self

    def _check_input(self, X: pd.DataFrame) -> np.ndarray:
        if not self._is_fitted:
            raise ValueError("Model must be trained before prediction. Call fit() first.")

        X = pd.DataFrame(X)
        columns = [str(c) for c in X.columns]
        if columns != self.feature_names_:
            missing = [c for c in self.feature_names_ if c not in columns]
            raise SchemaMismatch(
                f"Expected features {self.feature_names_}, got {columns}", missing=missing
            )

        missing_values = X.columns[X.isna().any()].tolist()
        if missing_values:
            raise ImputationIncomplete(
                f"Cannot predict with missing values in columns: {missing_values}",
                columns=missing_values,
            )
        return X.to_numpy(dtype=float)

    def predict(self, X: pd.DataFrame) -> np.ndarray:
        """
        Predict the target: base value plus every stage's contribution.

        Args:
            X: Predictor table with the columns the model was fit on

        Returns:
            Predictions array of shape (n_samples,)
        """
        return self.model.predict(self._check_input(X))

    def staged_predict(self, X: pd.DataFrame) -> Iterator[np.ndarray]:
        """Yield the ensemble's predictions after each boosting stage."""
        yield from self.model.staged_predict(self._check_input(X))

    @property
    def n_stages(self) -> int:
        if not self._is_fitted:
            raise ValueError("Model must be trained first.")
        return int(self.model.n_estimators_)

    def get_feature_importances(self) -> pd.Series:
        """
        Get impurity-based feature importances.

        Returns:
            Series indexed by feature name, sorted descending
        """
        if not self._is_fitted:
            raise ValueError("Model must be trained first.")

        return pd.Series(
            self.model.feature_importances_, index=self.feature_names_
        ).sort_values(ascending=False)

    def save(self, filepath: str) -> None:
        """
        Save the trained model to disk.

        Args:
            filepath: Path to save the model
        """
        if not self._is_fitted:
            raise ValueError("Cannot save untrained model.")

        state = {
            'model': self.model,
            'hyperparameters': self.params.as_dict(),
            'feature_names_': self.feature_names_,
            'n_features_in_': self.n_features_in_,
            'training_info': self.training_info,
            '_is_fitted': self._is_fitted
        }

        Path(filepath).parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(state, filepath)
        logger.info(f"Model saved to {filepath}")

    @classmethod
    def load(cls, filepath: str) -> 'EmissionModel':
        """
        Load a trained model from disk.

        Args:
            filepath: Path to the saved model

        Returns:
            Loaded EmissionModel instance
        """
        state = joblib.load(filepath)

        model = cls(BoostingParams(**state['hyperparameters']))
        model.model = state['model']
        model.feature_names_ = state['feature_names_']
        model.n_features_in_ = state['n_features_in_']
        model.training_info = state['training_info']
        model._is_fitted = state['_is_fitted']

        logger.info(f"Model loaded from {filepath}")
        return model


def train_model(
    X_train: pd.DataFrame,
    y_train,
    params: Optional[BoostingParams] = None,
    save_path: Optional[str] = None,
    **overrides
) -> EmissionModel:
    """
    Train a model with the given hyperparameters.

    Args:
        X_train: Training predictors
        y_train: Training target
        params: Boosting hyperparameters
        save_path: Path to save the trained model (optional)
        **overrides: Individual hyperparameters replacing those in `params`

    Returns:
        Trained EmissionModel
    """
    params = params or BoostingParams()
    if overrides:
        params = replace(params, **overrides)

    logger.info("=" * 60)
    logger.info("STARTING MODEL TRAINING")
    logger.info("=" * 60)
    logger.info(f"Training data shape: X={X_train.shape}")
    logger.info(f"Hyperparameters:")
    for name, value in params.as_dict().items():
        logger.info(f"  - {name}: {value}")

    model = EmissionModel(params).fit(X_train, y_train)

    logger.info(
        f"MODEL TRAINING COMPLETE in {model.training_info['training_duration_seconds']:.2f} seconds "
        f"({model.n_stages} stages)"
    )

    if save_path:
        model.save(save_path)

    return model


def print_model_summary(model: EmissionModel) -> None:
    """
    Print a summary of the trained model.

    Args:
        model: Trained model instance
    """
    print("\n" + "=" * 50)
    print("MODEL SUMMARY")
    print("=" * 50)
    print(f"Model Type: GradientBoostingRegressor (squared error)")
    print(f"Number of input features: {model.n_features_in_}")
    print(f"\nHyperparameters:")
    for name, value in model.params.as_dict().items():
        print(f"  - {name}: {value}")

    if model.training_info:
        print(f"\nTraining Info:")
        print(f"  - Duration: {model.training_info.get('training_duration_seconds', 0.0):.2f}s")
        print(f"  - Samples: {model.training_info.get('n_samples', 'N/A')}")
        print(f"  - Stages fitted: {model.training_info.get('n_stages', 'N/A')}")

    if model._is_fitted:
        print(f"\nTop features:")
        for name, importance in model.get_feature_importances().head(5).items():
            print(f"  - {name}: {importance:.4f}")

    print("=" * 50 + "\n")
