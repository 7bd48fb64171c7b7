"""
Community Stats Service
=======================

Entry points consumed by the dashboard.

- calculate_community_stats / get_full_aggregation: every metric for every
  community, one scheduler pass per candidate source
- search_communities / search: name or code filter (max 10 results) that
  computes only the metrics of the active layer for the matched communities
- get_rankings: per-metric 1-based ranks of a finished aggregation
- get_community_stats: one community by name, with its ranks
- calculate_layer_metric: headline number for a layer

Every run builds new result objects. Nothing here holds state across calls;
the only session state lives in the feature store.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Sequence, Union

from loguru import logger

from cityscope.config import EngineSettings
from cityscope.core.join import BoundaryIndex, SpatialJoinEngine
from cityscope.core.scheduler import (
    AggregationScheduler,
    CancellationToken,
    ChunkProgress,
    CounterRule,
    Tally,
    new_tally,
)
from cityscope.core.schema import Boundary, CommunityStats, LayerMetric, Metric
from cityscope.datasets import CANDIDATE_SOURCES, DATASETS, SourceName, sources_for_layer
from cityscope.query.layer_metrics import calculate_layer_metric
from cityscope.query.rankings import calculate_rankings
from cityscope.store.feature_store import FeatureStore
from cityscope.store.fetchers import FeatureFetcher, HttpGeoJSONFetcher, LocalGeoJSONFetcher


@dataclass(frozen=True)
class RankedCommunity:
    """A community's statistics together with its per-metric ranks."""

    stats: CommunityStats
    rankings: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload = self.stats.to_dict()
        payload["rankings"] = dict(self.rankings)
        return payload


def build_fetcher(settings: EngineSettings) -> FeatureFetcher:
    """HTTP fetcher when a data URL is configured, local files otherwise."""
    if settings.data_url:
        return HttpGeoJSONFetcher(settings.data_url, timeout=settings.http_timeout)
    return LocalGeoJSONFetcher(settings.data_dir)


class CommunityStatsService:
    """
    Query facade over the feature store, join engine and scheduler.

    Example
    -------
    >>> service = CommunityStatsService.from_settings(EngineSettings.from_env())
    >>> stats = await service.get_full_aggregation()
    >>> rankings = service.get_rankings(stats)
    >>> hits = await service.search("pan", "lrt")
    """

    def __init__(
        self,
        store: FeatureStore,
        settings: Optional[EngineSettings] = None,
        yield_control: Optional[Callable[[], Awaitable[None]]] = None,
        on_chunk: Optional[Callable[[ChunkProgress], None]] = None,
    ):
        """
        Parameters
        ----------
        store : FeatureStore
            Session cache owned by the application root
        settings : EngineSettings, optional
            Defaults to ``EngineSettings()``
        yield_control : coroutine function, optional
            Passed to every AggregationScheduler
        on_chunk : callable, optional
            Progress hook passed to every AggregationScheduler
        """
        self._store = store
        self._settings = settings or EngineSettings()
        self._yield_control = yield_control
        self._on_chunk = on_chunk

    @classmethod
    def from_settings(cls, settings: Optional[EngineSettings] = None) -> "CommunityStatsService":
        settings = settings or EngineSettings.from_env()
        return cls(FeatureStore(build_fetcher(settings)), settings)

    @property
    def store(self) -> FeatureStore:
        return self._store

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    # =========================================================================
    # Full aggregation
    # =========================================================================

    async def calculate_community_stats(
        self,
        token: Optional[CancellationToken] = None,
    ) -> dict[Any, CommunityStats]:
        """
        Statistics for every community across every metric.

        Sources that fail to load leave their metric at zero / False.

        Returns
        -------
        dict
            Boundary id -> CommunityStats. Empty when the community
            boundaries themselves cannot be loaded.

        Raises
        ------
        AggregationCancelled
            If ``token`` is cancelled mid-run
        """
        communities = await self._store.load(SourceName.COMMUNITIES)
        if communities is None:
            logger.warning("[Stats] No community data available")
            return {}

        index = BoundaryIndex.from_collection(communities, backend=self._settings.geometry_backend)
        collections = await self._store.load_many(CANDIDATE_SOURCES)
        tally = await self._aggregate(index, CANDIDATE_SOURCES, collections, token)

        results: dict[Any, CommunityStats] = {}
        for boundary in index.boundaries:
            results[boundary.id] = self._record(boundary, tally)

        logger.info(f"[Stats] Aggregated {len(results)} communities")
        return results

    async def get_full_aggregation(
        self,
        token: Optional[CancellationToken] = None,
    ) -> dict[Any, CommunityStats]:
        return await self.calculate_community_stats(token)

    # =========================================================================
    # Targeted search
    # =========================================================================

    async def search_communities(
        self,
        term: Optional[str],
        active_dataset: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> list[CommunityStats]:
        """
        Communities whose name or code contains ``term``.

        Only the metrics of ``active_dataset`` are computed, only for the
        matched communities; every other metric reads zero / False.

        Returns
        -------
        list[CommunityStats]
            At most ``settings.search_limit`` records in source order; empty
            for terms shorter than ``settings.min_search_length``
        """
        if not term or len(term) < self._settings.min_search_length:
            return []

        communities = await self._store.load(SourceName.COMMUNITIES)
        if communities is None:
            return []

        matched: list[Boundary] = []
        for position, feature in enumerate(communities.features):
            boundary = Boundary.from_feature(feature, position)
            if boundary.matches_term(term):
                matched.append(boundary)
                if len(matched) >= self._settings.search_limit:
                    break

        if not matched:
            return []

        index = BoundaryIndex(matched, backend=self._settings.geometry_backend)
        sources = sources_for_layer(active_dataset)
        tally: Tally = {}
        if sources:
            collections = await self._store.load_many(sources)
            tally = await self._aggregate(index, sources, collections, token)

        return [self._record(boundary, tally) for boundary in index.boundaries]

    async def search(
        self,
        term: Optional[str],
        active_dataset: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> list[CommunityStats]:
        return await self.search_communities(term, active_dataset, token)

    # =========================================================================
    # Derived views
    # =========================================================================

    def get_rankings(
        self,
        results: Union[Mapping[Any, CommunityStats], Sequence[CommunityStats]],
    ) -> dict[str, dict[str, int]]:
        """Per-metric ranks; see ``calculate_rankings``."""
        return calculate_rankings(results)

    async def get_community_stats(self, name: str) -> Optional[RankedCommunity]:
        """Full statistics and ranks for one community (case-insensitive name)."""
        results = await self.calculate_community_stats()
        rankings = calculate_rankings(results)

        wanted = name.lower()
        for stats in results.values():
            if stats.name.lower() == wanted:
                return RankedCommunity(stats=stats, rankings=rankings.get(stats.name, {}))
        return None

    async def calculate_layer_metric(self, layer: Optional[str]) -> Optional[LayerMetric]:
        return await calculate_layer_metric(
            self._store,
            layer,
            road_sample_size=self._settings.road_sample_size,
        )

    # =========================================================================
    # Internals
    # =========================================================================

    async def _aggregate(
        self,
        index: BoundaryIndex,
        sources: Iterable[SourceName],
        collections: Mapping[str, Any],
        token: Optional[CancellationToken],
    ) -> Tally:
        """One scheduler pass per loaded source over a shared tally."""
        sources = list(sources)
        metrics = [DATASETS[source].metric for source in sources]
        tally = new_tally((entry.id for entry in index.entries), metrics)

        engine = SpatialJoinEngine(index, ring_samples=self._settings.ring_samples)
        scheduler = AggregationScheduler(
            engine,
            yield_control=self._yield_control,
            on_chunk=self._on_chunk,
        )

        for source in sources:
            collection = collections.get(source.value)
            if collection is None:
                logger.warning(f"[Stats] Source '{source.value}' unavailable; metric left at zero")
                continue

            spec = DATASETS[source]
            await scheduler.run(
                collection,
                CounterRule(spec.metric, spec.feature_filter),
                tally,
                chunk_size=self._settings.chunk_size_for(source),
                token=token,
            )

        return tally

    def _record(self, boundary: Boundary, tally: Tally) -> CommunityStats:
        counters = tally.get(boundary.id, {})
        metrics = {Metric(key).field_name: value for key, value in counters.items()}
        return CommunityStats(
            id=boundary.id,
            name=boundary.name,
            code=boundary.code,
            sector=boundary.sector,
            crime=boundary.crime,
            **metrics,
        )

    def __repr__(self) -> str:
        return f"CommunityStatsService(store={self._store!r})"
