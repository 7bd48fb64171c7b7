"""
Community rankings derived from a finished aggregation.
"""

from typing import Mapping, Sequence, Union

from cityscope.core.schema import CommunityStats, Metric


RANKED_METRICS: tuple[str, ...] = (
    Metric.TRAFFIC_INCIDENTS.value,
    Metric.PARKS.value,
    Metric.TRAFFIC_SIGNALS.value,
    Metric.LRT_STOPS.value,
    Metric.LRT_LINES.value,
    Metric.MAJOR_ROADS.value,
    "crime",
)


def calculate_rankings(
    results: Union[Mapping[object, CommunityStats], Sequence[CommunityStats]],
) -> dict[str, dict[str, int]]:
    """
    1-based rank of every community for each ranked metric.

    Communities are sorted by metric value, highest first. Ties keep the
    input order. When two communities share a name the first one in sorted
    order defines the rank for that name.

    Returns
    -------
    dict
        ``{community name: {metric name: rank}}``
    """
    records = list(results.values()) if isinstance(results, Mapping) else list(results)
    rankings: dict[str, dict[str, int]] = {record.name: {} for record in records}

    for metric in RANKED_METRICS:
        ordered = sorted(records, key=lambda r: -r.metric(metric))
        for rank, record in enumerate(ordered, start=1):
            rankings[record.name].setdefault(metric, rank)

    return rankings
