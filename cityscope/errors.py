"""
Errors
======

Exception types raised inside the aggregation engine.

Only ``AggregationCancelled`` and ``UnknownSourceError`` ever reach callers of
the query facade. Source and geometry errors are contained at the smallest
unit (one source, one feature) and reported through the log instead.
"""

from typing import Optional


class CityscopeError(Exception):
    """Base class for all engine errors."""


class SourceLoadError(CityscopeError):
    """A named source could not be fetched or parsed."""

    def __init__(self, source_name: str, reason: str):
        self.source_name = source_name
        self.reason = reason
        super().__init__(f"Failed to load source '{source_name}': {reason}")


class UnknownSourceError(CityscopeError, KeyError):
    """A source name is not present in the dataset catalogue."""

    def __init__(self, source_name: str):
        self.source_name = source_name
        super().__init__(source_name)

    def __str__(self) -> str:
        return f"Unknown source '{self.source_name}'"


class GeometryError(CityscopeError, ValueError):
    """A geometry is missing, of the wrong type, or has malformed coordinates."""

    def __init__(self, message: str, geometry_type: Optional[str] = None):
        self.geometry_type = geometry_type
        super().__init__(message)


class AggregationCancelled(CityscopeError):
    """Raised when an aggregation run is cancelled between chunks."""

    def __init__(self, metric: str, processed: int, total: int):
        self.metric = metric
        self.processed = processed
        self.total = total
        super().__init__(
            f"Aggregation of '{metric}' cancelled after {processed}/{total} features"
        )
