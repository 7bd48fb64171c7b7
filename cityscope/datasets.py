"""
Dataset Catalogue
=================

Named geographic sources consumed by the aggregation engine, and how each
one feeds the per-community statistics.

This is used by the feature store (file names), the query facade (which
metric a source produces and how it is chunked) and the search path (which
sources an active map layer needs).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from cityscope.core.scheduler import FeatureFilter, has_positive_flow_rate
from cityscope.core.schema import Metric


class SourceName(str, Enum):
    """Identifiers of the geographic sources."""

    COMMUNITIES = "communities"
    TRAFFIC_INCIDENTS = "traffic_incidents"
    PARKS = "parks"
    TRAFFIC_SIGNALS = "traffic_signals"
    LRT_STOPS = "lrt_stops"
    LRT_LINES = "lrt_lines"
    FLOOD_ZONES = "flood_zones"
    MAJOR_ROADS = "major_roads"


@dataclass(frozen=True)
class DatasetSpec:
    """How one source is loaded and aggregated."""

    source: SourceName
    file_name: str
    metric: Optional[Metric]
    chunk_size: int
    description: str = ""
    feature_filter: Optional[FeatureFilter] = None


# =============================================================================
# Source Catalogue
# =============================================================================
# Chunk sizes are tuned per dataset: cheap point geometries get large chunks,
# polygon datasets get small ones so each chunk stays short.

DATASETS: dict[SourceName, DatasetSpec] = {
    SourceName.COMMUNITIES: DatasetSpec(
        source=SourceName.COMMUNITIES,
        file_name="community-borders.json",
        metric=None,
        chunk_size=0,
        description="Community boundary polygons with crime totals",
    ),
    SourceName.TRAFFIC_INCIDENTS: DatasetSpec(
        source=SourceName.TRAFFIC_INCIDENTS,
        file_name="traffic-incidents.json",
        metric=Metric.TRAFFIC_INCIDENTS,
        chunk_size=100,
        description="Reported traffic incidents (points)",
    ),
    SourceName.PARKS: DatasetSpec(
        source=SourceName.PARKS,
        file_name="parks.json",
        metric=Metric.PARKS,
        chunk_size=50,
        description="Parks (points and polygons)",
    ),
    SourceName.TRAFFIC_SIGNALS: DatasetSpec(
        source=SourceName.TRAFFIC_SIGNALS,
        file_name="traffic-signals.json",
        metric=Metric.TRAFFIC_SIGNALS,
        chunk_size=200,
        description="Traffic signal locations (points)",
    ),
    SourceName.LRT_STOPS: DatasetSpec(
        source=SourceName.LRT_STOPS,
        file_name="lrt-stops.json",
        metric=Metric.LRT_STOPS,
        chunk_size=200,
        description="Light rail stops (points)",
    ),
    SourceName.LRT_LINES: DatasetSpec(
        source=SourceName.LRT_LINES,
        file_name="lrt-lines.json",
        metric=Metric.LRT_LINES,
        chunk_size=100,
        description="Light rail lines (lines)",
    ),
    SourceName.FLOOD_ZONES: DatasetSpec(
        source=SourceName.FLOOD_ZONES,
        file_name="flood-01-chance.json",
        metric=Metric.FLOOD_RISK,
        chunk_size=25,
        description="1% annual chance flood zones; only zones with flow_rate > 0 count",
        feature_filter=has_positive_flow_rate,
    ),
    SourceName.MAJOR_ROADS: DatasetSpec(
        source=SourceName.MAJOR_ROADS,
        file_name="major-roads.json",
        metric=Metric.MAJOR_ROADS,
        chunk_size=100,
        description="Major road segments (lines)",
    ),
}

CANDIDATE_SOURCES: tuple[SourceName, ...] = tuple(
    source for source, spec in DATASETS.items() if spec.metric is not None
)
"""Every source that produces a metric, in aggregation order."""

SOURCE_FILES: dict[str, str] = {
    source.value: spec.file_name for source, spec in DATASETS.items()
}


# =============================================================================
# Layer Mapping
# =============================================================================
# Active map layer id -> sources whose metrics the search path computes.

LAYER_SOURCES: dict[str, tuple[SourceName, ...]] = {
    "lrt": (SourceName.LRT_STOPS, SourceName.LRT_LINES),
    "lrt_lines": (SourceName.LRT_STOPS, SourceName.LRT_LINES),
    "lrt_stops": (SourceName.LRT_STOPS, SourceName.LRT_LINES),
    "parks": (SourceName.PARKS,),
    "traffic": (SourceName.TRAFFIC_INCIDENTS, SourceName.TRAFFIC_SIGNALS),
    "traffic_incidents": (SourceName.TRAFFIC_INCIDENTS,),
    "traffic_signals": (SourceName.TRAFFIC_SIGNALS,),
    "flood": (SourceName.FLOOD_ZONES,),
    "flood_01_chance": (SourceName.FLOOD_ZONES,),
    "major_roads": (SourceName.MAJOR_ROADS,),
}


def sources_for_layer(layer: Optional[str]) -> tuple[SourceName, ...]:
    """Sources relevant to an active layer; empty for None or unknown ids."""
    if not layer:
        return ()
    return LAYER_SOURCES.get(layer, ())
