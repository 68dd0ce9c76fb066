"""
Emission Prediction Pipeline
============================

A machine learning pipeline predicting emission levels from tabular,
geospatially and temporally indexed observations.

Modules:
    - data_loader: Configuration loading, CSV ingestion and validation
    - config: Immutable pipeline configuration
    - imputation: Bagged-tree missing value imputation (Stage 1)
    - feature_selection: Correlation-based predictor filter (Stage 2)
    - splitting: Stratified holdout split and k-fold groups (Stage 3)
    - tuning: Space-filling cross-validated hyperparameter search (Stage 4)
    - model: Gradient-boosted tree regressor (Stage 5)
    - evaluation: Metrics and diagnostic plots
    - prediction: Prediction tables and export (Stage 6)
    - pipeline: Stage orchestration
"""

__version__ = "1.0.0"
__author__ = "Predictive Analytics Team"
