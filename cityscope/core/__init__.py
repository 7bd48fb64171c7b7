"""
Cityscope Core: Spatial Aggregation Engine
==========================================

Counts geographic features (points, lines, polygons) inside community
boundaries without blocking the event loop.

Public API:
- BoundaryIndex: STRtree over community boundary extents
- SpatialJoinEngine: Feature -> matching boundaries
- AggregationScheduler: Chunked, cancellable, cooperative join driver
- CounterRule: How a matching feature updates the tally
- Feature / FeatureCollection / Boundary / CommunityStats: Data models
"""

from cityscope.core.schema import (
    Boundary,
    CommunityStats,
    Extent,
    Feature,
    FeatureCollection,
    GeometryType,
    LayerMetric,
    Metric,
)
from cityscope.core.join import BoundaryIndex, GeometryBackend, SpatialJoinEngine
from cityscope.core.scheduler import (
    AggregationScheduler,
    CancellationToken,
    ChunkProgress,
    CounterRule,
    new_tally,
)

__all__ = [
    "AggregationScheduler",
    "Boundary",
    "BoundaryIndex",
    "CancellationToken",
    "ChunkProgress",
    "CommunityStats",
    "CounterRule",
    "Extent",
    "Feature",
    "FeatureCollection",
    "GeometryBackend",
    "GeometryType",
    "LayerMetric",
    "Metric",
    "SpatialJoinEngine",
    "new_tally",
]
