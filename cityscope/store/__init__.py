"""
Feature store and the fetchers behind it.
"""

from cityscope.store.feature_store import FeatureStore, SourceState
from cityscope.store.fetchers import (
    FeatureFetcher,
    HttpGeoJSONFetcher,
    InMemoryFetcher,
    LocalGeoJSONFetcher,
)

__all__ = [
    "FeatureStore",
    "SourceState",
    "FeatureFetcher",
    "HttpGeoJSONFetcher",
    "InMemoryFetcher",
    "LocalGeoJSONFetcher",
]
