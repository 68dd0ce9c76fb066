"""
Hyperparameter Search
=====================

Cross-validated search over the boosting hyperparameters.

Workflow:
    1. generate_candidates: space-filling (max-min distance Latin hypercube)
       design over the declared parameter bounds
    2. evaluate_candidate: fit on every fold's training rows, score on its
       validation rows, average the metrics across folds
    3. select_best: pick the candidate optimising one metric; ties go to
       the candidate generated first

`HyperparameterSearch.run` evaluates candidates in parallel batches with
joblib, persists a JSON checkpoint after each batch and honours candidate
count and wall-clock budgets. A failing candidate is recorded as failed
and never aborts the rest of the search.
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed, effective_n_jobs
from scipy.spatial.distance import pdist

from .config import BoostingParams, ParamRange, SearchConfig, default_param_space
from .evaluation import METRIC_DIRECTIONS, score
from .exceptions import ConfigError, DegenerateCandidate, NoViableCandidate
from .model import EmissionModel
from .splitting import Fold

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1


@dataclass(frozen=True)
class Candidate:
    """One point of the hyperparameter space, numbered in generation order."""

    index: int
    min_samples_leaf: int
    max_depth: int
    learning_rate: float
    min_loss_reduction: float
    n_estimators: int

    @property
    def key(self) -> str:
        return f"candidate_{self.index:03d}"

    def to_params(self, base: BoostingParams) -> BoostingParams:
        """Overlay this candidate on a base set of boosting hyperparameters."""
        return replace(
            base,
            min_samples_leaf=int(self.min_samples_leaf),
            max_depth=int(self.max_depth),
            learning_rate=float(self.learning_rate),
            min_loss_reduction=float(self.min_loss_reduction),
            n_estimators=int(self.n_estimators),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'min_samples_leaf': self.min_samples_leaf,
            'max_depth': self.max_depth,
            'learning_rate': self.learning_rate,
            'min_loss_reduction': self.min_loss_reduction,
            'n_estimators': self.n_estimators,
        }

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'Candidate':
        return cls(
            index=int(values['index']),
            min_samples_leaf=int(values['min_samples_leaf']),
            max_depth=int(values['max_depth']),
            learning_rate=float(values['learning_rate']),
            min_loss_reduction=float(values['min_loss_reduction']),
            n_estimators=int(values['n_estimators']),
        )

    @classmethod
    def from_params(cls, params: BoostingParams, index: int = 0) -> 'Candidate':
        return cls(
            index=index,
            min_samples_leaf=int(params.min_samples_leaf),
            max_depth=int(params.max_depth),
            learning_rate=float(params.learning_rate),
            min_loss_reduction=float(params.min_loss_reduction),
            n_estimators=int(params.n_estimators),
        )


def _min_distance(design: np.ndarray) -> float:
    if len(design) < 2:
        return float('inf')
    return float(pdist(design).min())


def _latin_hypercube(count: int, dims: int, rng: np.random.Generator) -> np.ndarray:
    # One point per row stratum in every dimension, jittered inside its cell.
    strata = np.column_stack([rng.permutation(count) for _ in range(dims)])
    return (strata + rng.random((count, dims))) / count


def space_filling_design(
    count: int,
    dims: int,
    seed: int = 42,
    n_starts: int = 10,
    n_iter: int = 200
) -> np.ndarray:
    """
    Build a max-min distance Latin hypercube design in the unit cube.

    Several random Latin hypercubes are improved by element exchanges
    within a column (which keep the Latin property); an exchange is kept
    when it increases the smallest pairwise distance. The design with the
    largest smallest distance wins.

    Args:
        count: Number of points
        dims: Number of dimensions
        seed: Random seed
        n_starts: Independent random starting designs
        n_iter: Exchange attempts per start

    Returns:
        Array of shape (count, dims) with values in [0, 1)
    """
    if count < 1:
        raise ValueError(f"count must be >= 1, got {count}")
    if dims < 1:
        return np.empty((count, 0))

    rng = np.random.default_rng(seed)
    best, best_distance = None, -1.0

    for _ in range(max(1, n_starts)):
        design = _latin_hypercube(count, dims, rng)
        distance = _min_distance(design)

        if count > 1:
            for _ in range(n_iter):
                col = rng.integers(dims)
                a, b = rng.choice(count, size=2, replace=False)
                trial = design.copy()
                trial[[a, b], col] = trial[[b, a], col]
                trial_distance = _min_distance(trial)
                if trial_distance > distance:
                    design, distance = trial, trial_distance

        if distance > best_distance:
            best, best_distance = design, distance

    logger.debug(f"Space-filling design: {count} points, min distance {best_distance:.4f}")
    return best


def generate_candidates(
    param_space: Optional[Sequence[ParamRange]] = None,
    count: int = 10,
    base_params: Optional[BoostingParams] = None,
    seed: int = 42,
    n_starts: int = 10,
    n_iter: int = 200
) -> List[Candidate]:
    """
    Produce `count` candidates spread over the declared parameter bounds.

    Parameters absent from `param_space` keep their value from `base_params`;
    the ensemble size always comes from `base_params`.

    Args:
        param_space: Bounds of the tuned parameters
        count: Number of candidates
        base_params: Fixed hyperparameters
        seed: Random seed of the design
        n_starts: Random starts of the design optimiser
        n_iter: Exchange attempts per start

    Returns:
        Candidates in generation order (index 0 .. count-1)
    """
    param_space = tuple(param_space) if param_space is not None else default_param_space()
    base_params = base_params or BoostingParams()

    design = space_filling_design(count, len(param_space), seed, n_starts, n_iter)
    columns = {param.name: param.scale(design[:, i]) for i, param in enumerate(param_space)}

    candidates = []
    for index in range(count):
        values = {name: column[index] for name, column in columns.items()}
        candidates.append(Candidate(
            index=index,
            min_samples_leaf=int(values.get('min_samples_leaf', base_params.min_samples_leaf)),
            max_depth=int(values.get('max_depth', base_params.max_depth)),
            learning_rate=float(values.get('learning_rate', base_params.learning_rate)),
            min_loss_reduction=float(values.get('min_loss_reduction', base_params.min_loss_reduction)),
            n_estimators=int(base_params.n_estimators),
        ))

    logger.info(
        f"Generated {count} candidates over {[p.name for p in param_space]} (seed={seed})"
    )
    return candidates


@dataclass(frozen=True)
class CandidateResult:
    """Cross-validation outcome of one candidate."""

    candidate: Candidate
    mean: Dict[str, float] = field(default_factory=dict)
    std_err: Dict[str, float] = field(default_factory=dict)
    fold_metrics: Tuple[Dict[str, float], ...] = ()
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def n_folds(self) -> int:
        return len(self.fold_metrics)

    @classmethod
    def from_folds(cls, candidate: Candidate, fold_metrics: Sequence[Dict[str, float]]) -> 'CandidateResult':
        mean, std_err = {}, {}
        for metric in METRIC_DIRECTIONS:
            values = np.array([m[metric] for m in fold_metrics], dtype=float)
            mean[metric] = float(np.mean(values))
            std_err[metric] = (
                float(np.std(values, ddof=1) / np.sqrt(len(values))) if len(values) > 1 else 0.0
            )
        return cls(candidate, mean, std_err, tuple(dict(m) for m in fold_metrics))

    @classmethod
    def failure(cls, candidate: Candidate, error: str) -> 'CandidateResult':
        return cls(candidate, error=error)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'candidate': self.candidate.as_dict(),
            'mean': self.mean,
            'std_err': self.std_err,
            'fold_metrics': list(self.fold_metrics),
            'error': self.error,
        }

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'CandidateResult':
        return cls(
            candidate=Candidate.from_dict(values['candidate']),
            mean={k: float(v) for k, v in values.get('mean', {}).items()},
            std_err={k: float(v) for k, v in values.get('std_err', {}).items()},
            fold_metrics=tuple(values.get('fold_metrics', [])),
            error=values.get('error'),
        )


def evaluate_candidate(
    candidate: Candidate,
    X: pd.DataFrame,
    y,
    folds: Sequence[Fold],
    base_params: Optional[BoostingParams] = None
) -> CandidateResult:
    """
    Cross-validate one candidate.

    A model is fitted on each fold's training rows and scored on that
    fold's validation rows; metrics are averaged across folds. Fit
    failures are captured in the returned result instead of raised.

    Args:
        candidate: Hyperparameters to evaluate
        X: Training predictors (read-only)
        y: Training target
        folds: Cross-validation folds over the rows of X
        base_params: Non-tuned hyperparameters

    Returns:
        CandidateResult (failed when the candidate is degenerate)
    """
    base_params = base_params or BoostingParams()
    y = np.asarray(y, dtype=float).ravel()
    fold_metrics = []

    try:
        if not folds:
            raise DegenerateCandidate("No folds to evaluate on")
        params = candidate.to_params(base_params)

        for fold in folds:
            if len(fold.train_index) == 0 or len(fold.valid_index) == 0:
                raise DegenerateCandidate(f"Fold {fold.fold_id} has no usable rows")

            model = EmissionModel(params).fit(X.iloc[fold.train_index], y[fold.train_index])
            predictions = model.predict(X.iloc[fold.valid_index])
            if not np.all(np.isfinite(predictions)):
                raise DegenerateCandidate(f"Fold {fold.fold_id} produced non-finite predictions")

            fold_metrics.append(score(y[fold.valid_index], predictions))

    except (DegenerateCandidate, ValueError, ArithmeticError) as exc:
        logger.warning(f"{candidate.key} failed and is excluded: {exc}")
        return CandidateResult.failure(candidate, str(exc))

    result = CandidateResult.from_folds(candidate, fold_metrics)
    logger.debug(f"{candidate.key}: {result.mean}")
    return result


def _sort_key(result: CandidateResult, metric: str, direction: str) -> Tuple[float, int]:
    value = result.mean[metric]
    return (value if direction == 'minimize' else -value, result.candidate.index)


def _resolve_direction(metric: str, direction: Optional[str]) -> str:
    if metric not in METRIC_DIRECTIONS:
        raise ValueError(f"Unknown metric '{metric}'. Choose from: {', '.join(METRIC_DIRECTIONS)}")
    direction = direction or METRIC_DIRECTIONS[metric]
    if direction not in ('minimize', 'maximize'):
        raise ValueError(f"Unknown direction: {direction}")
    return direction


def rank_results(
    results: Iterable[CandidateResult],
    metric: str = 'rmse',
    direction: Optional[str] = None
) -> List[CandidateResult]:
    """Successful results ordered best first; ties by generation order."""
    direction = _resolve_direction(metric, direction)
    usable = [
        r for r in results
        if not r.failed and metric in r.mean and np.isfinite(r.mean[metric])
    ]
    return sorted(usable, key=lambda r: _sort_key(r, metric, direction))


def select_best(
    results: Iterable[CandidateResult],
    metric: str = 'rmse',
    direction: Optional[str] = None
) -> Candidate:
    """
    Pick the candidate optimising `metric`.

    The outcome does not depend on the order of `results`: ties are broken
    by candidate index (first generated wins). Failed candidates are never
    selected.

    Raises:
        NoViableCandidate: If no successful result is available
    """
    ranked = rank_results(results, metric, direction)
    if not ranked:
        raise NoViableCandidate(f"No successful candidate to select on '{metric}'")
    return ranked[0].candidate


@dataclass
class SearchResult:
    """Collected candidate results of one (possibly resumed) search run."""

    results: List[CandidateResult] = field(default_factory=list)
    stopped_early: bool = False

    def add(self, result: CandidateResult) -> None:
        if result.candidate.index in self.completed_indices:
            raise ValueError(f"{result.candidate.key} already has a result")
        self.results.append(result)

    @property
    def completed_indices(self) -> set:
        return {r.candidate.index for r in self.results}

    @property
    def successful(self) -> List[CandidateResult]:
        return [r for r in self.results if not r.failed]

    @property
    def failed(self) -> List[CandidateResult]:
        return [r for r in self.results if r.failed]

    def ranked(self, metric: str = 'rmse', direction: Optional[str] = None) -> List[CandidateResult]:
        return rank_results(self.results, metric, direction)

    def select_best(self, metric: str = 'rmse', direction: Optional[str] = None) -> Candidate:
        return select_best(self.results, metric, direction)

    def get(self, index: int) -> Optional[CandidateResult]:
        for result in self.results:
            if result.candidate.index == index:
                return result
        return None

    def to_frame(self) -> pd.DataFrame:
        """One row per candidate: parameters, mean and std error of each metric."""
        rows = []
        for result in sorted(self.results, key=lambda r: r.candidate.index):
            row = result.candidate.as_dict()
            for metric in METRIC_DIRECTIONS:
                row[f'mean_{metric}'] = result.mean.get(metric, np.nan)
                row[f'std_err_{metric}'] = result.std_err.get(metric, np.nan)
            row['n_folds'] = result.n_folds
            row['error'] = result.error
            rows.append(row)
        return pd.DataFrame(rows)

    def save(self, filepath: str) -> None:
        """Write results to JSON, replacing the file atomically."""
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            'version': CHECKPOINT_VERSION,
            'stopped_early': self.stopped_early,
            'results': [r.as_dict() for r in self.results],
        }
        tmp_path = filepath.with_name(filepath.name + '.tmp')
        with open(tmp_path, 'w') as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_path, filepath)
        logger.debug(f"Search checkpoint written to {filepath} ({len(self.results)} results)")

    @classmethod
    def load(cls, filepath: str) -> 'SearchResult':
        with open(filepath, 'r') as f:
            payload = json.load(f)
        if payload.get('version') != CHECKPOINT_VERSION:
            raise ConfigError(f"Unsupported search checkpoint version in {filepath}")
        results = [CandidateResult.from_dict(r) for r in payload.get('results', [])]
        logger.info(f"Loaded {len(results)} search results from {filepath}")
        return cls(results=results, stopped_early=bool(payload.get('stopped_early', False)))


class HyperparameterSearch:
    """
    Budgeted, resumable cross-validated search.

    Candidates are generated once per instance; evaluation runs in batches
    of `n_jobs` candidates. Budgets are checked between batches, so an
    early stop never leaves a half-recorded candidate behind.
    """

    def __init__(
        self,
        param_space: Optional[Sequence[ParamRange]] = None,
        n_candidates: int = 10,
        metric: str = 'rmse',
        direction: Optional[str] = None,
        base_params: Optional[BoostingParams] = None,
        n_jobs: int = 1,
        max_candidates: Optional[int] = None,
        time_budget_seconds: Optional[float] = None,
        seed: int = 42,
        design_starts: int = 10,
        design_iterations: int = 200
    ):
        self.param_space = tuple(param_space) if param_space is not None else default_param_space()
        self.n_candidates = n_candidates
        self.metric = metric
        self.direction = _resolve_direction(metric, direction)
        self.base_params = base_params or BoostingParams()
        self.n_jobs = n_jobs
        self.max_candidates = max_candidates
        self.time_budget_seconds = time_budget_seconds
        self.seed = seed
        self.design_starts = design_starts
        self.design_iterations = design_iterations
        self._candidates: Optional[List[Candidate]] = None

    @classmethod
    def from_config(
        cls,
        config: SearchConfig,
        base_params: BoostingParams,
        seed: int = 42
    ) -> 'HyperparameterSearch':
        return cls(
            param_space=config.param_space,
            n_candidates=config.n_candidates,
            metric=config.metric,
            direction=config.resolved_direction,
            base_params=base_params,
            n_jobs=config.n_jobs,
            max_candidates=config.max_candidates,
            time_budget_seconds=config.time_budget_seconds,
            seed=seed,
            design_starts=config.design_starts,
            design_iterations=config.design_iterations,
        )

    @property
    def candidates(self) -> List[Candidate]:
        if self._candidates is None:
            self._candidates = generate_candidates(
                self.param_space,
                self.n_candidates,
                base_params=self.base_params,
                seed=self.seed,
                n_starts=self.design_starts,
                n_iter=self.design_iterations,
            )
        return list(self._candidates)

    def _resume(self, checkpoint_path: Optional[str]) -> SearchResult:
        if not checkpoint_path or not Path(checkpoint_path).exists():
            return SearchResult()

        result = SearchResult.load(checkpoint_path)
        expected = {c.index: c for c in self.candidates}
        for previous in result.results:
            if expected.get(previous.candidate.index) != previous.candidate:
                raise ConfigError(
                    f"Checkpoint {checkpoint_path} does not match the current candidate list "
                    f"({previous.candidate.key} differs); remove it or restore the original settings"
                )
        result.stopped_early = False
        logger.info(f"Resuming search: {len(result.results)} candidates already evaluated")
        return result

    def run(
        self,
        X: pd.DataFrame,
        y,
        folds: Sequence[Fold],
        checkpoint_path: Optional[str] = None
    ) -> SearchResult:
        """
        Evaluate pending candidates on the given folds.

        Args:
            X: Training predictors shared read-only by all workers
            y: Training target
            folds: Cross-validation folds over the rows of X
            checkpoint_path: JSON file to resume from and write after each batch

        Returns:
            SearchResult with every evaluated candidate (partial if a budget
            or interruption stopped the search)
        """
        logger.info("=" * 60)
        logger.info("STARTING HYPERPARAMETER SEARCH")
        logger.info("=" * 60)

        result = self._resume(checkpoint_path)
        y = np.asarray(y, dtype=float).ravel()

        pending = [c for c in self.candidates if c.index not in result.completed_indices]
        if self.max_candidates is not None:
            budget = max(0, self.max_candidates - len(result.results))
            if budget < len(pending):
                logger.info(f"Candidate budget allows {budget} of {len(pending)} pending candidates")
                result.stopped_early = True
            pending = pending[:budget]

        batch_size = max(1, effective_n_jobs(self.n_jobs))
        logger.info(
            f"Evaluating {len(pending)} candidates on {len(folds)} folds "
            f"(batch size {batch_size}, metric {self.metric}, {self.direction})"
        )

        start = time.monotonic()
        try:
            with Parallel(n_jobs=self.n_jobs) as parallel:
                for offset in range(0, len(pending), batch_size):
                    elapsed = time.monotonic() - start
                    if self.time_budget_seconds is not None and elapsed >= self.time_budget_seconds:
                        logger.warning(
                            f"Time budget of {self.time_budget_seconds}s reached after "
                            f"{len(result.results)} candidates; stopping search"
                        )
                        result.stopped_early = True
                        break

                    batch = pending[offset:offset + batch_size]
                    batch_results = parallel(
                        delayed(evaluate_candidate)(candidate, X, y, folds, self.base_params)
                        for candidate in batch
                    )
                    for candidate_result in batch_results:
                        result.add(candidate_result)
                        if not candidate_result.failed:
                            logger.info(
                                f"  {candidate_result.candidate.key}: "
                                f"{self.metric}={candidate_result.mean[self.metric]:.6f}"
                            )

                    if checkpoint_path:
                        result.save(checkpoint_path)
        except KeyboardInterrupt:
            logger.warning(
                f"Search interrupted; keeping {len(result.results)} completed candidates"
            )
            result.stopped_early = True
            if checkpoint_path:
                result.save(checkpoint_path)

        logger.info("=" * 60)
        logger.info(
            f"SEARCH COMPLETE: {len(result.successful)} successful, {len(result.failed)} failed"
            + (" (stopped early)" if result.stopped_early else "")
        )
        logger.info("=" * 60)
        return result


def print_search_summary(result: SearchResult, metric: str = 'rmse', top: int = 5) -> None:
    """
    Print the best candidates of a search to console.

    Args:
        result: Search result
        metric: Metric to rank by
        top: Number of candidates to show
    """
    print("\n" + "=" * 70)
    print("HYPERPARAMETER SEARCH SUMMARY")
    print("=" * 70)
    print(f"Evaluated: {len(result.results)} | Successful: {len(result.successful)} "
          f"| Failed: {len(result.failed)}")

    print(f"\n{'Candidate':<15} {'leaf':<6} {'depth':<6} {'lr':<10} {'min_loss':<12} {metric:<12}")
    print("-" * 70)
    for r in result.ranked(metric)[:top]:
        c = r.candidate
        print(f"{c.key:<15} {c.min_samples_leaf:<6} {c.max_depth:<6} {c.learning_rate:<10.5f} "
              f"{c.min_loss_reduction:<12.3e} {r.mean[metric]:<12.6f}")

    for r in result.failed:
        print(f"  ✗ {r.candidate.key}: {r.error}")

    print("=" * 70 + "\n")
