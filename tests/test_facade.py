"""
Tests for the Community Stats Service
=====================================

Full aggregation, targeted search, rankings, single-community lookup and
layer metrics over the three-community city from conftest.
"""

import pytest

from cityscope.config import EngineSettings
from cityscope.core.join import GeometryBackend
from cityscope.core.scheduler import CancellationToken
from cityscope.core.schema import CommunityStats
from cityscope.datasets import CANDIDATE_SOURCES
from cityscope.errors import AggregationCancelled
from cityscope.query.facade import CommunityStatsService, build_fetcher
from cityscope.query.rankings import calculate_rankings
from cityscope.store.feature_store import FeatureStore
from cityscope.store.fetchers import HttpGeoJSONFetcher, InMemoryFetcher, LocalGeoJSONFetcher

from tests.builders import collection, feature, point, square


def by_name(results) -> dict[str, CommunityStats]:
    records = results.values() if isinstance(results, dict) else results
    return {record.name: record for record in records}


# =============================================================================
# Full Aggregation Tests
# =============================================================================

class TestFullAggregation:
    """Tests for calculate_community_stats / get_full_aggregation."""

    @pytest.mark.asyncio
    async def test_one_record_per_community(self, service):
        results = await service.get_full_aggregation()
        assert list(results) == ["ph", "bl", "pr"]

    @pytest.mark.asyncio
    async def test_metric_values(self, service):
        stats = by_name(await service.calculate_community_stats())

        hills = stats["Panorama Hills"]
        assert hills.traffic_incidents == 1
        assert hills.traffic_signals == 1
        assert hills.parks == 1
        assert hills.lrt_stops == 2
        assert hills.lrt_lines == 1
        assert hills.major_roads == 0
        assert hills.flood_risk is True
        assert hills.crime == 120
        assert hills.code == "PAN"
        assert hills.sector == "NORTH"

        beltline = stats["Beltline"]
        assert beltline.traffic_incidents == 2
        assert beltline.parks == 1
        assert beltline.lrt_stops == 1
        assert beltline.major_roads == 1
        assert beltline.flood_risk is False

        ridge = stats["Pineridge"]
        assert ridge.traffic_incidents == 1
        assert ridge.parks == 1
        assert ridge.lrt_stops == 0

    @pytest.mark.asyncio
    async def test_zero_flow_rate_zone_is_ignored(self, documents):
        # Beltline only touches the zone with flow_rate 0.
        service = CommunityStatsService(FeatureStore(InMemoryFetcher(documents)))
        stats = by_name(await service.calculate_community_stats())
        assert stats["Beltline"].flood_risk is False
        assert stats["Panorama Hills"].flood_risk is True

    @pytest.mark.asyncio
    async def test_idempotent(self, service):
        first = await service.get_full_aggregation()
        second = await service.get_full_aggregation()

        assert first is not second
        assert {k: v.to_dict() for k, v in first.items()} == {k: v.to_dict() for k, v in second.items()}

    @pytest.mark.asyncio
    async def test_point_counts_never_exceed_source_size(self, service, documents):
        results = await service.get_full_aggregation()
        for metric, source in [
            ("trafficIncidents", "traffic_incidents"),
            ("trafficSignals", "traffic_signals"),
            ("lrtStops", "lrt_stops"),
        ]:
            total = sum(r.metric(metric) for r in results.values())
            assert total <= len(documents[source]["features"])

    @pytest.mark.asyncio
    async def test_failed_source_reads_zero(self, documents):
        del documents["parks"]
        service = CommunityStatsService(FeatureStore(InMemoryFetcher(documents)))

        stats = by_name(await service.get_full_aggregation())
        assert all(s.parks == 0 for s in stats.values())
        assert stats["Panorama Hills"].lrt_stops == 2

    @pytest.mark.asyncio
    async def test_no_communities_returns_empty(self, documents):
        del documents["communities"]
        service = CommunityStatsService(FeatureStore(InMemoryFetcher(documents)))
        assert await service.get_full_aggregation() == {}

    @pytest.mark.asyncio
    async def test_sources_are_cached_across_runs(self, service, fetcher):
        await service.get_full_aggregation()
        await service.get_full_aggregation()
        assert set(fetcher.calls.values()) == {1}

    @pytest.mark.asyncio
    async def test_fallback_backend_agrees(self, documents, service):
        settings = EngineSettings(geometry_backend=GeometryBackend.FALLBACK)
        fallback = CommunityStatsService(FeatureStore(InMemoryFetcher(documents)), settings)

        expected = await service.get_full_aggregation()
        actual = await fallback.get_full_aggregation()
        assert {k: v.to_dict() for k, v in actual.items()} == {k: v.to_dict() for k, v in expected.items()}

    @pytest.mark.asyncio
    async def test_chunk_size_does_not_change_result(self, documents, service):
        settings = EngineSettings(chunk_sizes={source: 1 for source in CANDIDATE_SOURCES})
        tiny = CommunityStatsService(FeatureStore(InMemoryFetcher(documents)), settings)

        expected = await service.get_full_aggregation()
        actual = await tiny.get_full_aggregation()
        assert {k: v.to_dict() for k, v in actual.items()} == {k: v.to_dict() for k, v in expected.items()}

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, documents):
        token = CancellationToken()
        service = CommunityStatsService(
            FeatureStore(InMemoryFetcher(documents)),
            on_chunk=lambda progress: token.cancel(),
        )
        with pytest.raises(AggregationCancelled):
            await service.get_full_aggregation(token=token)

    @pytest.mark.asyncio
    async def test_camel_case_payload(self, service):
        payload = (await service.get_full_aggregation())["ph"].to_dict()
        assert payload["lrtStops"] == 2
        assert payload["floodRisk"] is True
        assert {"id", "name", "code", "sector", "crime", "trafficIncidents", "majorRoads"} <= set(payload)

    @pytest.mark.asyncio
    async def test_community_without_geometry_keeps_crime(self, documents):
        documents["communities"]["features"].append(feature(
            None, id="gh", name="Ghost Town", comm_code="GHT", crime_by_community_total_crime=42,
        ))
        service = CommunityStatsService(FeatureStore(InMemoryFetcher(documents)))

        results = await service.get_full_aggregation()
        ghost = results["gh"]
        assert ghost.crime == 42
        assert ghost.code == "GHT"
        assert ghost.flood_risk is False
        assert all(
            ghost.metric(metric) == 0
            for metric in ("trafficIncidents", "parks", "trafficSignals", "lrtStops", "lrtLines", "majorRoads")
        )
        assert by_name(results)["Panorama Hills"].traffic_incidents == 1

    @pytest.mark.asyncio
    async def test_missing_id_does_not_merge_with_numeric_id(self, documents):
        documents["communities"] = collection(
            feature(square(0, 0, 2, 2), name="No Id"),
            feature(square(4, 0, 6, 2), id=0, name="Zero"),
        )
        documents["traffic_incidents"] = collection(
            feature(point(1, 1)),
            feature(point(5, 1)),
        )
        service = CommunityStatsService(FeatureStore(InMemoryFetcher(documents)))

        results = await service.get_full_aggregation()
        assert list(results) == ["#0", 0]
        assert [r.name for r in results.values()] == ["No Id", "Zero"]
        assert [r.traffic_incidents for r in results.values()] == [1, 1]

    @pytest.mark.asyncio
    async def test_duplicate_ids_keep_separate_records(self, documents):
        documents["communities"] = collection(
            feature(square(0, 0, 2, 2), id="dup", name="First"),
            feature(square(4, 0, 6, 2), id="dup", name="Second"),
        )
        service = CommunityStatsService(FeatureStore(InMemoryFetcher(documents)))

        results = await service.get_full_aggregation()
        assert list(results) == ["dup", "dup#1"]
        assert results["dup"].traffic_incidents == 1
        assert results["dup#1"].traffic_incidents == 2

    @pytest.mark.asyncio
    async def test_shared_edge_point_counted_once(self, documents):
        documents["communities"] = collection(
            feature(square(0, 0, 2, 2), id="west", name="West"),
            feature(square(2, 0, 4, 2), id="east", name="East"),
        )
        documents["traffic_incidents"] = collection(feature(point(2, 1)))
        service = CommunityStatsService(FeatureStore(InMemoryFetcher(documents)))

        results = await service.get_full_aggregation()
        assert sum(r.traffic_incidents for r in results.values()) == 1


# =============================================================================
# Search Tests
# =============================================================================

class TestSearch:
    """Tests for search_communities / search."""

    @pytest.mark.asyncio
    async def test_lrt_search(self, service):
        results = await service.search("pan", "lrt")

        assert [r.name for r in results] == ["Panorama Hills"]
        assert results[0].lrt_stops == 2
        assert results[0].lrt_lines == 1
        assert results[0].traffic_incidents == 0
        assert results[0].parks == 0

    @pytest.mark.asyncio
    async def test_short_term_returns_nothing(self, service, fetcher):
        assert await service.search("p", "lrt") == []
        assert await service.search("", "lrt") == []
        assert await service.search(None) == []
        assert fetcher.calls == {}

    @pytest.mark.asyncio
    async def test_matches_code_case_insensitively(self, service):
        results = await service.search_communities("bln", "traffic")
        assert [r.name for r in results] == ["Beltline"]
        assert results[0].traffic_incidents == 2
        assert results[0].traffic_signals == 0

    @pytest.mark.asyncio
    async def test_results_in_source_order(self, service):
        # "in" is in both Beltline and Pineridge
        results = await service.search("in", "parks")
        assert [r.name for r in results] == ["Beltline", "Pineridge"]
        assert [r.parks for r in results] == [1, 1]

    @pytest.mark.asyncio
    async def test_unknown_layer_computes_nothing(self, service, fetcher):
        results = await service.search("pan", "bike_lanes")
        assert [r.name for r in results] == ["Panorama Hills"]
        assert results[0].lrt_stops == 0
        assert set(fetcher.calls) == {"communities"}

    @pytest.mark.asyncio
    async def test_flood_layer(self, service):
        results = await service.search("pan", "flood_01_chance")
        assert results[0].flood_risk is True

    @pytest.mark.asyncio
    async def test_search_limit(self, documents):
        service = CommunityStatsService(
            FeatureStore(InMemoryFetcher(documents)),
            EngineSettings(search_limit=1),
        )
        results = await service.search("in")
        assert [r.name for r in results] == ["Beltline"]

    @pytest.mark.asyncio
    async def test_at_most_ten_results(self, documents):
        documents["communities"] = collection(*[
            feature(square(i, 0, i + 1, 1), id=i, name=f"Ridge {i}") for i in range(15)
        ])
        service = CommunityStatsService(FeatureStore(InMemoryFetcher(documents)))
        assert len(await service.search("ridge")) == 10

    @pytest.mark.asyncio
    async def test_no_match(self, service):
        assert await service.search("zzz", "lrt") == []

    @pytest.mark.asyncio
    async def test_community_without_geometry(self, documents):
        documents["communities"]["features"].append(feature(
            None, id="gh", name="Ghost Town", comm_code="GHT", crime_by_community_total_crime=42,
        ))
        service = CommunityStatsService(FeatureStore(InMemoryFetcher(documents)))

        results = await service.search("ghost", "traffic")
        assert [r.name for r in results] == ["Ghost Town"]
        assert results[0].crime == 42
        assert results[0].traffic_incidents == 0
        assert results[0].traffic_signals == 0


# =============================================================================
# Rankings Tests
# =============================================================================

class TestRankings:
    """Tests for get_rankings."""

    @pytest.mark.asyncio
    async def test_rankings(self, service):
        rankings = service.get_rankings(await service.get_full_aggregation())

        assert rankings["Beltline"]["trafficIncidents"] == 1
        assert rankings["Panorama Hills"]["lrtStops"] == 1
        assert rankings["Beltline"]["crime"] == 1

    @pytest.mark.asyncio
    async def test_ties_keep_input_order(self, service):
        rankings = service.get_rankings(await service.get_full_aggregation())

        # PH and PR both have 1 incident and 120 crimes; PH comes first in the source
        assert rankings["Panorama Hills"]["trafficIncidents"] == 2
        assert rankings["Pineridge"]["trafficIncidents"] == 3
        assert rankings["Panorama Hills"]["crime"] == 2
        assert rankings["Pineridge"]["crime"] == 3

    @pytest.mark.asyncio
    async def test_every_community_ranked_for_every_metric(self, service):
        results = await service.get_full_aggregation()
        rankings = service.get_rankings(results)
        for name, ranks in rankings.items():
            assert set(ranks) == {
                "trafficIncidents", "parks", "trafficSignals", "lrtStops",
                "lrtLines", "majorRoads", "crime",
            }
            assert all(1 <= r <= len(results) for r in ranks.values())

    def test_accepts_sequence(self):
        records = [
            CommunityStats(id=1, name="A", parks=1),
            CommunityStats(id=2, name="B", parks=5),
        ]
        rankings = calculate_rankings(records)
        assert rankings["B"]["parks"] == 1
        assert rankings["A"]["parks"] == 2

    def test_empty(self):
        assert calculate_rankings({}) == {}


# =============================================================================
# Single Community and Layer Metric Tests
# =============================================================================

class TestCommunityLookup:
    """Tests for get_community_stats."""

    @pytest.mark.asyncio
    async def test_found_case_insensitive(self, service):
        community = await service.get_community_stats("beltline")

        assert community is not None
        assert community.stats.major_roads == 1
        assert community.rankings["majorRoads"] == 1

        payload = community.to_dict()
        assert payload["name"] == "Beltline"
        assert payload["rankings"]["crime"] == 1

    @pytest.mark.asyncio
    async def test_not_found(self, service):
        assert await service.get_community_stats("Atlantis") is None


class TestLayerMetrics:
    """Tests for calculate_layer_metric."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("layer, value, display, unit", [
        ("lrt", 3.5, "3.5", ""),
        ("lrt_stops", 3.5, "3.5", ""),
        ("traffic", 5, "5", ""),
        ("parks", 3, "3", ""),
        ("community_borders", 3, "3", ""),
        ("flood", 100.0, "100.0", "%"),
        ("safety", 540, "540", ""),
    ])
    async def test_layer_values(self, service, layer, value, display, unit):
        metric = await service.calculate_layer_metric(layer)
        assert metric.value == pytest.approx(value)
        assert metric.display == display
        assert metric.unit == unit

    @pytest.mark.asyncio
    async def test_average_road_length(self, service):
        metric = await service.calculate_layer_metric("major_roads")
        assert metric.unit == "km"
        assert metric.value == pytest.approx(157.2, abs=0.5)

    @pytest.mark.asyncio
    async def test_unknown_layer(self, service):
        assert await service.calculate_layer_metric("bike_lanes") is None
        assert await service.calculate_layer_metric(None) is None

    @pytest.mark.asyncio
    async def test_missing_sources_count_as_empty(self):
        service = CommunityStatsService(FeatureStore(InMemoryFetcher({})))
        assert (await service.calculate_layer_metric("parks")).value == 0
        assert (await service.calculate_layer_metric("flood")).display == "0"
        assert await service.calculate_layer_metric("safety") is None


# =============================================================================
# Wiring Tests
# =============================================================================

class TestWiring:
    """Tests for build_fetcher / from_settings."""

    def test_local_by_default(self, tmp_path):
        fetcher = build_fetcher(EngineSettings(data_dir=tmp_path))
        assert isinstance(fetcher, LocalGeoJSONFetcher)
        assert fetcher.data_dir == tmp_path

    def test_http_when_url_set(self):
        fetcher = build_fetcher(EngineSettings(data_url="https://data.example.org", http_timeout=3))
        assert isinstance(fetcher, HttpGeoJSONFetcher)
        assert fetcher.timeout == 3

    def test_from_settings(self, tmp_path):
        service = CommunityStatsService.from_settings(EngineSettings(data_dir=tmp_path))
        assert isinstance(service.store.fetcher, LocalGeoJSONFetcher)
        assert service.settings.data_dir == tmp_path
