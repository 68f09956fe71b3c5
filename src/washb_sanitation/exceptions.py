"""
Exception hierarchy for the sanitation / linear growth analysis.
"""

from typing import Optional


class AnalysisError(Exception):
    """Base error; records which country and pipeline stage failed."""

    def __init__(self, message: str, country: Optional[str] = None, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.country = country
        self.stage = stage

    def __str__(self) -> str:
        context = [part for part in (self.country, self.stage) if part]
        if context:
            return f"[{' / '.join(context)}] {self.message}"
        return self.message


class SchemaError(AnalysisError):
    """An expected join key or column is absent from an input table."""


class CohortEmptyError(AnalysisError):
    """A cohort filter left no rows."""


class EstimationError(AnalysisError):
    """A model could not be fit: empty contrast level, zero variance, singular design, too few clusters."""


class ReportingError(AnalysisError):
    """An estimate is missing when the cross-country table is assembled."""
