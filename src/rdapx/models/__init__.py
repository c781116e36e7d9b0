"""Data models for rdapx."""

from .query_models import Query, QueryKind
from .result_models import Failure, Outcome, ResolutionResult, ResultSource, Success

__all__ = [
    "Query",
    "QueryKind",
    "Failure",
    "Outcome",
    "ResolutionResult",
    "ResultSource",
    "Success",
]
