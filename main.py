#!/usr/bin/env python3
"""
Emission Prediction Pipeline - Main Entry Point
===============================================

Runs the emission modeling pipeline end to end.

Stages:
    1. impute  - Fit bagged-tree imputer on the training table
    2. select  - Fit correlation filter on training predictors
    3. split   - Stratified train/holdout split and k folds
    4. tune    - Cross-validated hyperparameter search
    5. fit     - Final fit and holdout evaluation
    6. predict - Predict the test table(s)

Usage:
    # Run complete pipeline
    python main.py --data data/raw/train.csv --test data/raw/test.csv

    # Stop after the search, resuming from a checkpoint
    python main.py --data data/raw/train.csv --stage tune --checkpoint models/search.json

    # Run with custom config
    python main.py --data data/raw/train.csv --test data/raw/test.csv --config config/custom.yaml
"""

import argparse
import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Dict, List, Optional

import pandas as pd

sys.path.insert(0, str(Path(__file__).parent))

from emissions.config import PipelineConfig
from emissions.data_loader import load_config, load_data, validate_data, print_data_summary
from emissions.evaluation import print_evaluation_report
from emissions.model import print_model_summary
from emissions.pipeline import EmissionPipeline, Stage
from emissions.prediction import export_predictions, generate_run_report, print_prediction_results
from emissions.tuning import print_search_summary

STAGES = {
    'impute': Stage.IMPUTED,
    'select': Stage.FEATURE_FILTERED,
    'split': Stage.SPLIT,
    'tune': Stage.TUNED,
    'fit': Stage.FINAL_FIT,
    'predict': Stage.PREDICTED,
    'all': Stage.PREDICTED,
}


def setup_logging(level: str = "INFO", log_dir: Optional[str] = None) -> None:
    """Configure logging for the pipeline."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_dir is not None:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(
            Path(log_dir) / f'pipeline_{datetime.now().strftime("%Y%m%d_%H%M%S")}.log'
        ))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def load_tables(paths: List[str], config: PipelineConfig) -> Dict[str, pd.DataFrame]:
    """Load prediction-only tables keyed by file stem."""
    tables = {}
    for path in paths:
        table = load_data(path, required_columns=[config.id_column])
        validate_data(table, config.id_column, target=None, strict=False)
        tables[Path(path).stem] = table
    return tables


def write_outputs(pipeline: EmissionPipeline, config: PipelineConfig) -> Dict[str, str]:
    """Write predictions, artifacts and the run report."""
    outputs = {}
    output = config.output

    for name, predictions in pipeline.predictions.items():
        outputs[name] = export_predictions(predictions, output.predictions_path, name=f"{name}_predictions")

    if pipeline.holdout_predictions is not None:
        outputs['holdout'] = export_predictions(
            pipeline.holdout_predictions, output.predictions_path, name="holdout_predictions"
        )

    if output.model_path and pipeline.model is not None:
        artifacts = pipeline.save_artifacts(str(Path(output.model_path).parent))
        outputs.update(artifacts)

    if config.search.enabled and pipeline.search_result is not None:
        search_csv = Path(output.predictions_path) / "search_results.csv"
        search_csv.parent.mkdir(parents=True, exist_ok=True)
        pipeline.search_result.to_frame().to_csv(search_csv, index=False)
        outputs['search'] = str(search_csv)

    if output.report_path:
        generate_run_report(pipeline.summary(), output_path=output.report_path)
        outputs['report'] = output.report_path

    return outputs


def run(
    data_path: str,
    test_paths: List[str],
    config: PipelineConfig,
    stop_after: Stage = Stage.PREDICTED,
    checkpoint_path: Optional[str] = None
) -> EmissionPipeline:
    """
    Execute the pipeline up to `stop_after` and write its outputs.

    Args:
        data_path: Training CSV (identifier, predictors, target)
        test_paths: Prediction-only CSVs
        config: Pipeline configuration
        stop_after: Last stage to run
        checkpoint_path: Resumable search checkpoint

    Returns:
        The completed pipeline run
    """
    print("\n" + "=" * 70)
    print("EMISSION PREDICTION PIPELINE")
    print(f"Started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70)

    print("\n📊 Loading data...")
    reference = load_data(data_path, required_columns=[config.id_column, config.target])
    print_data_summary(reference)

    is_valid, _ = validate_data(reference, config.id_column, config.target, strict=False)
    if not is_valid:
        print("⚠️  Data validation warnings detected. Proceeding anyway...")

    tables = load_tables(test_paths, config)

    pipeline = EmissionPipeline(config)
    pipeline.run(reference, tables, checkpoint_path=checkpoint_path, stop_after=stop_after)

    if pipeline.search_result is not None:
        print_search_summary(pipeline.search_result, config.search.metric)
    if pipeline.model is not None:
        print_model_summary(pipeline.model)
    if pipeline.holdout_metrics is not None:
        print_evaluation_report(pipeline.holdout_metrics)
    for name, predictions in pipeline.predictions.items():
        print_prediction_results(predictions, name)

    outputs = write_outputs(pipeline, config)

    print("\n" + "=" * 70)
    print("PIPELINE COMPLETE")
    print("=" * 70)
    print(f"  • Stage reached: {pipeline.stage.label}")
    print(f"  • Input data: {reference.shape[0]} rows × {reference.shape[1]} columns")
    if pipeline.filter_state is not None:
        print(f"  • Retained features: {len(pipeline.filter_state.retained)}")
    if pipeline.holdout_metrics is not None:
        print(f"  • Holdout RMSE: {pipeline.holdout_metrics['rmse']:.4f}")
    for name, path in outputs.items():
        print(f"  • {name}: {path}")
    print(f"Completed at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70 + "\n")

    return pipeline


def main():
    """Main entry point with argument parsing."""
    parser = argparse.ArgumentParser(
        description="Emission prediction pipeline (impute, filter, tune, fit, predict)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --data data/raw/train.csv --test data/raw/test.csv
  python main.py --data data/raw/train.csv --stage tune --checkpoint models/search.json
  python main.py --data data/raw/train.csv --config config/custom.yaml
        """
    )

    parser.add_argument(
        '--data', '-d',
        type=str,
        required=True,
        help='Path to the training CSV file'
    )

    parser.add_argument(
        '--test', '-t',
        type=str,
        nargs='*',
        default=[],
        help='Path(s) to prediction-only CSV files'
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        default='config/config.yaml',
        help='Path to configuration file (default: config/config.yaml)'
    )

    parser.add_argument(
        '--stage', '-s',
        type=str,
        choices=list(STAGES),
        default='all',
        help='Last stage to run (default: all)'
    )

    parser.add_argument(
        '--checkpoint',
        type=str,
        default=None,
        help='JSON file used to resume the hyperparameter search'
    )

    parser.add_argument(
        '--output', '-o',
        type=str,
        default=None,
        help='Directory for prediction CSVs (overrides config)'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable debug logging'
    )

    args = parser.parse_args()

    if not Path(args.data).exists():
        print(f"Error: Data file not found: {args.data}")
        sys.exit(1)

    if not Path(args.config).exists():
        print(f"Error: Config file not found: {args.config}")
        sys.exit(1)

    try:
        raw_config = load_config(args.config)
        if args.output:
            raw_config['output'] = dict(raw_config.get('output') or {}, predictions_path=args.output)
        config = PipelineConfig.from_dict(raw_config)

        setup_logging('DEBUG' if args.verbose else config.log_level, log_dir='logs')

        run(args.data, args.test, config, stop_after=STAGES[args.stage],
            checkpoint_path=args.checkpoint)
        return 0

    except Exception as e:
        logging.error(f"Pipeline failed: {e}", exc_info=True)
        print(f"\n❌ Pipeline failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
