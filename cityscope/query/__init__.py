"""
Query facade: full aggregation, search, rankings and layer metrics.
"""

from cityscope.query.facade import CommunityStatsService, RankedCommunity, build_fetcher
from cityscope.query.layer_metrics import calculate_layer_metric
from cityscope.query.rankings import RANKED_METRICS, calculate_rankings

__all__ = [
    "CommunityStatsService",
    "RankedCommunity",
    "build_fetcher",
    "calculate_layer_metric",
    "RANKED_METRICS",
    "calculate_rankings",
]
