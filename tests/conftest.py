"""
Shared fixtures: a small three-community city.

    y
    6 +------+
      |  PR  |
    4 +------+
    2 +------+      +------+
      |  PH  |      |  BL  |
    0 +------+      +------+
      0      2      4      6   x

PH = Panorama Hills, BL = Beltline, PR = Pineridge.
"""

import pytest

from cityscope.store.feature_store import FeatureStore
from cityscope.store.fetchers import InMemoryFetcher
from cityscope.query.facade import CommunityStatsService

from tests.builders import collection, feature, line, point, square


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def communities_doc() -> dict:
    return collection(
        feature(
            square(0, 0, 2, 2),
            id="ph", name="Panorama Hills", comm_code="PAN", sector="NORTH",
            crime_by_community_total_crime=120,
        ),
        feature(
            square(4, 0, 6, 2),
            id="bl", name="Beltline", comm_code="BLN", sector="CENTRE",
            crime_by_community_total_crime=300,
        ),
        feature(
            square(0, 4, 2, 6),
            id="pr", name="Pineridge", comm_code="PIN", sector="NORTHEAST",
            crime_by_community_total_crime=120,
        ),
    )


@pytest.fixture
def documents(communities_doc) -> dict:
    """Every source of the city, keyed by source name."""
    return {
        "communities": communities_doc,
        "traffic_incidents": collection(
            feature(point(1, 1), id=1),
            feature(point(5, 1), id=2),
            feature(point(5, 1.5), id=3),
            feature(point(1, 5), id=4),
        ),
        "traffic_signals": collection(
            feature(point(0.5, 1.5)),
        ),
        "parks": collection(
            feature(point(5.5, 0.5), name="Beltline Green"),
            feature(square(0.2, 0.2, 0.8, 0.8), name="Hills Park"),
            feature(square(-1, 3, 3, 7), name="Ridge Reserve"),
        ),
        "lrt_stops": collection(
            feature(point(1, 1), name="Panorama"),
            feature(point(1.5, 0.5), name="Hills"),
            feature(point(5, 1), name="Beltline"),
            feature(point(10, 10), name="Airport"),
        ),
        "lrt_lines": collection(
            feature(line((0.5, 0.5), (1, 1), (1.5, 1.5)), route="Red"),
            feature(line((3, 3), (3.5, 3.5)), route="Blue"),
        ),
        "flood_zones": collection(
            feature(square(4.2, 0.2, 4.8, 0.8), flow_rate=0),
            feature(square(0.2, 1.2, 0.8, 1.8), flow_rate=12.5),
        ),
        "major_roads": collection(
            feature(line((4.5, 0.5), (5.5, 1.5)), name="Macleod Trail"),
        ),
    }


@pytest.fixture
def fetcher(documents) -> InMemoryFetcher:
    return InMemoryFetcher(documents)


@pytest.fixture
def store(fetcher) -> FeatureStore:
    return FeatureStore(fetcher)


@pytest.fixture
def service(store) -> CommunityStatsService:
    return CommunityStatsService(store)
