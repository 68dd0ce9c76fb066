"""
Pipeline Exceptions
===================

Error taxonomy shared by every pipeline component.

Fatal (abort the run):
    - SchemaMismatch: column set/type differs between fit-time and apply-time tables
    - ImputationIncomplete: missing values survive imputation
    - EmptyFoldError: a split or fold has no rows for a partition or stratum
    - NoViableCandidate: the search produced no usable hyperparameter set
    - ConfigError: invalid configuration values
    - StageOrderError: a pipeline stage was invoked out of order

Recoverable:
    - DegenerateCandidate: a single hyperparameter candidate failed to fit
"""


class PipelineError(Exception):
    """Base class for all emission pipeline errors."""


class ConfigError(PipelineError):
    """Raised when configuration values are invalid."""


class SchemaMismatch(PipelineError):
    """Raised when a table's columns do not match the fitted state's schema."""

    def __init__(self, message: str, missing=None, mismatched=None):
        super().__init__(message)
        self.missing = list(missing or [])
        self.mismatched = list(mismatched or [])


class ImputationIncomplete(PipelineError):
    """Raised when missing cells remain after imputation."""

    def __init__(self, message: str, columns=None):
        super().__init__(message)
        self.columns = list(columns or [])


class DegenerateCandidate(PipelineError):
    """Raised when a hyperparameter candidate cannot produce a usable model."""


class EmptyFoldError(PipelineError):
    """Raised when a split or fold produces zero rows for a partition or stratum."""


class NoViableCandidate(PipelineError):
    """Raised when no candidate in a search result can be selected."""


class StageOrderError(PipelineError):
    """Raised when a pipeline stage is run out of order or twice."""
