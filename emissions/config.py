"""
Pipeline Configuration
======================

Immutable configuration structs passed by value through every pipeline stage.

A `PipelineConfig` is built once from the YAML dictionary returned by
`data_loader.load_config` and never mutated afterwards. Use
`dataclasses.replace` to derive a modified copy.
"""

import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

import numpy as np

from .evaluation import METRIC_DIRECTIONS
from .exceptions import ConfigError

TUNABLE_PARAMS = ("min_samples_leaf", "max_depth", "learning_rate", "min_loss_reduction")
INTEGER_PARAMS = ("min_samples_leaf", "max_depth")


@dataclass(frozen=True)
class BoostingParams:
    """Hyperparameters of the gradient-boosted tree regressor."""

    n_estimators: int = 500
    max_depth: int = 6
    learning_rate: float = 0.05
    min_samples_leaf: int = 10
    min_loss_reduction: float = 0.0
    subsample: float = 1.0
    n_iter_no_change: Optional[int] = None
    validation_fraction: float = 0.1
    random_state: int = 42

    def __post_init__(self):
        if self.n_estimators < 1:
            raise ConfigError(f"n_estimators must be >= 1, got {self.n_estimators}")
        if not 0.0 < self.subsample <= 1.0:
            raise ConfigError(f"subsample must be in (0, 1], got {self.subsample}")
        if self.n_iter_no_change is not None and self.n_iter_no_change < 1:
            raise ConfigError(f"n_iter_no_change must be >= 1, got {self.n_iter_no_change}")
        if not 0.0 < self.validation_fraction < 1.0:
            raise ConfigError(
                f"validation_fraction must be in (0, 1), got {self.validation_fraction}"
            )

    def as_dict(self) -> Dict[str, Any]:
        return {
            'n_estimators': self.n_estimators,
            'max_depth': self.max_depth,
            'learning_rate': self.learning_rate,
            'min_samples_leaf': self.min_samples_leaf,
            'min_loss_reduction': self.min_loss_reduction,
            'subsample': self.subsample,
            'n_iter_no_change': self.n_iter_no_change,
            'validation_fraction': self.validation_fraction,
            'random_state': self.random_state,
        }


@dataclass(frozen=True)
class ParamRange:
    """Bounds of one tunable hyperparameter."""

    name: str
    low: float
    high: float
    log: bool = False
    integer: bool = False

    def __post_init__(self):
        if self.name not in TUNABLE_PARAMS:
            raise ConfigError(
                f"Unknown tunable parameter '{self.name}'. Choose from: {', '.join(TUNABLE_PARAMS)}"
            )
        if self.low > self.high:
            raise ConfigError(f"{self.name}: low ({self.low}) must be <= high ({self.high})")
        if self.log and self.low <= 0:
            raise ConfigError(f"{self.name}: log-scaled bounds must be positive, got low={self.low}")

    def scale(self, unit):
        """Map an array of unit-interval values onto this parameter's bounds."""
        unit = np.asarray(unit, dtype=float)
        if self.log:
            lo, hi = math.log10(self.low), math.log10(self.high)
            values = 10 ** (lo + unit * (hi - lo))
        else:
            values = self.low + unit * (self.high - self.low)
        if self.integer:
            values = np.round(values).astype(int)
        return values


def default_param_space() -> Tuple[ParamRange, ...]:
    """Default search bounds for the four tunable parameters."""
    return (
        ParamRange('min_samples_leaf', 2, 40, integer=True),
        ParamRange('max_depth', 1, 15, integer=True),
        ParamRange('learning_rate', 1e-3, 0.3, log=True),
        ParamRange('min_loss_reduction', 1e-10, 10 ** 1.5, log=True),
    )


@dataclass(frozen=True)
class ImputationConfig:
    n_estimators: int = 25
    max_depth: Optional[int] = None
    min_samples_leaf: int = 1
    max_samples: float = 1.0

    def __post_init__(self):
        if self.n_estimators < 1:
            raise ConfigError(f"imputation.n_estimators must be >= 1, got {self.n_estimators}")
        if not 0.0 < self.max_samples <= 1.0:
            raise ConfigError(f"imputation.max_samples must be in (0, 1], got {self.max_samples}")


@dataclass(frozen=True)
class FeatureSelectionConfig:
    threshold: float = 0.7
    method: str = 'pearson'

    def __post_init__(self):
        if not 0.0 <= self.threshold <= 1.0:
            raise ConfigError(f"feature_selection.threshold must be in [0, 1], got {self.threshold}")
        if self.method not in ('pearson', 'spearman', 'kendall'):
            raise ConfigError(f"Unknown correlation method: {self.method}")


@dataclass(frozen=True)
class SplitConfig:
    train_fraction: float = 0.75
    n_folds: int = 5
    strata: Optional[str] = None
    breaks: int = 4

    def __post_init__(self):
        if not 0.0 < self.train_fraction < 1.0:
            raise ConfigError(f"split.train_fraction must be in (0, 1), got {self.train_fraction}")
        if self.n_folds < 2:
            raise ConfigError(f"split.n_folds must be >= 2, got {self.n_folds}")
        if self.breaks < 1:
            raise ConfigError(f"split.breaks must be >= 1, got {self.breaks}")


@dataclass(frozen=True)
class SearchConfig:
    enabled: bool = True
    n_candidates: int = 10
    metric: str = 'rmse'
    direction: Optional[str] = None
    param_space: Tuple[ParamRange, ...] = field(default_factory=default_param_space)
    n_jobs: int = 1
    max_candidates: Optional[int] = None
    time_budget_seconds: Optional[float] = None
    checkpoint_path: Optional[str] = None
    design_starts: int = 10
    design_iterations: int = 200

    def __post_init__(self):
        if self.n_candidates < 1:
            raise ConfigError(f"search.n_candidates must be >= 1, got {self.n_candidates}")
        if self.metric not in METRIC_DIRECTIONS:
            raise ConfigError(
                f"Unknown metric '{self.metric}'. Choose from: {', '.join(METRIC_DIRECTIONS)}"
            )
        if self.direction not in (None, 'minimize', 'maximize'):
            raise ConfigError(f"search.direction must be 'minimize' or 'maximize', got {self.direction}")
        names = [p.name for p in self.param_space]
        if len(names) != len(set(names)):
            raise ConfigError(f"Duplicate parameters in search.param_space: {names}")

    @property
    def resolved_direction(self) -> str:
        return self.direction or METRIC_DIRECTIONS[self.metric]


@dataclass(frozen=True)
class FinalFitConfig:
    refit_on_full: bool = False


@dataclass(frozen=True)
class OutputConfig:
    predictions_path: str = 'data/predictions/'
    model_path: Optional[str] = 'models/emission_model.joblib'
    figures_path: Optional[str] = None
    report_path: Optional[str] = 'reports/run_report.json'


@dataclass(frozen=True)
class PipelineConfig:
    """Complete configuration for one pipeline run."""

    id_column: str = 'ID_LAT_LON_YEAR_WEEK'
    target: str = 'emission'
    exclude_columns: Tuple[str, ...] = ()
    seed: int = 42
    imputation: ImputationConfig = field(default_factory=ImputationConfig)
    feature_selection: FeatureSelectionConfig = field(default_factory=FeatureSelectionConfig)
    split: SplitConfig = field(default_factory=SplitConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    model: BoostingParams = field(default_factory=BoostingParams)
    final_fit: FinalFitConfig = field(default_factory=FinalFitConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    log_level: str = 'INFO'

    @property
    def non_modeled_columns(self) -> Tuple[str, ...]:
        """Columns never used as predictors."""
        return (self.id_column, self.target) + tuple(self.exclude_columns)

    @property
    def strata_column(self) -> str:
        return self.split.strata or self.target

    def with_seed(self, seed: int) -> 'PipelineConfig':
        return replace(self, seed=seed, model=replace(self.model, random_state=seed))

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]]) -> 'PipelineConfig':
        """
        Build a configuration from a (YAML-loaded) dictionary.

        Missing sections fall back to defaults. Unknown keys inside a
        section raise ConfigError so typos do not pass silently.

        Args:
            config: Configuration dictionary

        Returns:
            Frozen PipelineConfig
        """
        config = config or {}
        seed = int(config.get('seed', 42))

        search_section = dict(config.get('search', {}) or {})
        if 'param_space' in search_section:
            search_section['param_space'] = _parse_param_space(search_section['param_space'])

        model_section = dict(config.get('model', {}) or {})
        model_section.setdefault('random_state', seed)

        return cls(
            id_column=config.get('id_column', 'ID_LAT_LON_YEAR_WEEK'),
            target=config.get('target', 'emission'),
            exclude_columns=tuple(config.get('exclude_columns', ()) or ()),
            seed=seed,
            imputation=_build(ImputationConfig, config.get('imputation'), 'imputation'),
            feature_selection=_build(
                FeatureSelectionConfig, config.get('feature_selection'), 'feature_selection'
            ),
            split=_build(SplitConfig, config.get('split'), 'split'),
            search=_build(SearchConfig, search_section, 'search'),
            model=_build(BoostingParams, model_section, 'model'),
            final_fit=_build(FinalFitConfig, config.get('final_fit'), 'final_fit'),
            output=_build(OutputConfig, config.get('output'), 'output'),
            log_level=(config.get('logging') or {}).get('level', 'INFO'),
        )


def _build(section_cls, values: Optional[Dict[str, Any]], name: str):
    values = values or {}
    try:
        return section_cls(**values)
    except TypeError as exc:
        raise ConfigError(f"Invalid '{name}' section: {exc}") from exc


def _parse_param_space(space: Dict[str, Dict[str, Any]]) -> Tuple[ParamRange, ...]:
    ranges = []
    for name, bounds in space.items():
        if 'low' not in bounds or 'high' not in bounds:
            raise ConfigError(f"Parameter '{name}' needs both 'low' and 'high' bounds")
        ranges.append(ParamRange(
            name=name,
            low=float(bounds['low']),
            high=float(bounds['high']),
            log=bool(bounds.get('log', False)),
            integer=bool(bounds.get('integer', name in INTEGER_PARAMS)),
        ))
    return tuple(ranges)
