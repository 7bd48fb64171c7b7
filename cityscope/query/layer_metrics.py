"""
Layer Metrics
=============

Headline number for each map layer, shown next to the layer picker.

These are whole-dataset figures (counts, averages, a coverage estimate);
none of them needs the spatial join.
"""

from typing import Optional

from cityscope.core.geometry import line_length_km
from cityscope.core.schema import LayerMetric
from cityscope.datasets import SourceName
from cityscope.store.feature_store import FeatureStore


LRT_LAYERS = frozenset({"lrt", "lrt_lines", "lrt_stops"})
FLOOD_LAYERS = frozenset({"flood", "flood_01_chance"})
FLOOD_ZONE_COMMUNITY_FACTOR = 1.5
"""Estimated number of communities touched by one flood zone."""


def _count(value: float, label: str, unit: str = "") -> LayerMetric:
    return LayerMetric(value=value, display=f"{value:,}", label=label, unit=unit)


def _decimal(value: float, label: str, unit: str = "") -> LayerMetric:
    return LayerMetric(value=round(value, 1), display=f"{value:.1f}", label=label, unit=unit)


async def _size(store: FeatureStore, source: SourceName) -> int:
    collection = await store.load(source)
    return len(collection) if collection is not None else 0


async def calculate_layer_metric(
    store: FeatureStore,
    layer: Optional[str],
    road_sample_size: int = 200,
) -> Optional[LayerMetric]:
    """
    Compute the headline metric for a layer id.

    Returns None for layers without a metric. Sources that fail to load
    count as empty.
    """
    if layer in LRT_LAYERS:
        loaded = await store.load_many([SourceName.LRT_LINES, SourceName.LRT_STOPS])
        lines = len(loaded[SourceName.LRT_LINES.value] or ())
        stops = len(loaded[SourceName.LRT_STOPS.value] or ())
        score = (stops * 3 + lines) / 4 if stops or lines else 0.0
        return _decimal(score, "Average Transit Score")

    if layer == "traffic":
        loaded = await store.load_many([SourceName.TRAFFIC_INCIDENTS, SourceName.TRAFFIC_SIGNALS])
        total = sum(len(c) for c in loaded.values() if c is not None)
        return _count(total, "Total Traffic Points")

    if layer == "parks":
        return _count(await _size(store, SourceName.PARKS), "Total Parks")

    if layer == "major_roads":
        return await _average_road_length(store, road_sample_size)

    if layer == "community_borders":
        return _count(await _size(store, SourceName.COMMUNITIES), "Communities")

    if layer in FLOOD_LAYERS:
        return await _flood_coverage(store)

    if layer == "safety":
        communities = await store.load(SourceName.COMMUNITIES)
        if communities is None:
            return None
        total = 0
        for feature in communities.features:
            crime = feature.prop("crime_by_community_total_crime")
            if isinstance(crime, (int, float)) and not isinstance(crime, bool):
                total += crime
        return _count(total, "Violent Crimes Reported")

    return None


async def _average_road_length(store: FeatureStore, sample_size: int) -> LayerMetric:
    """Mean haversine length of the first ``sample_size`` roads with a length."""
    label = "Average Road Length"
    roads = await store.load(SourceName.MAJOR_ROADS)
    if roads is None or len(roads) == 0:
        return _decimal(0.0, label, "km")

    lengths = [line_length_km(f.geometry) for f in roads.features[:sample_size]]
    lengths = [length for length in lengths if length > 0]
    average = sum(lengths) / len(lengths) if lengths else 0.0
    return _decimal(average, label, "km")


async def _flood_coverage(store: FeatureStore) -> LayerMetric:
    """
    Rough share of communities at flood risk.

    Assumes each zone touches about 1.5 communities; this is an estimate,
    not an area overlay.
    """
    label = "Flood Risk Coverage"
    zones = await _size(store, SourceName.FLOOD_ZONES)
    if zones == 0:
        return LayerMetric(value=0, display="0", label=label, unit="%")

    communities = await _size(store, SourceName.COMMUNITIES)
    percentage = 0.0
    if communities > 0:
        affected = min(zones * FLOOD_ZONE_COMMUNITY_FACTOR, communities)
        percentage = affected / communities * 100
    return _decimal(percentage, label, "%")
