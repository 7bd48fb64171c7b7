"""
Feature Store
=============

Loads and memoizes feature collections by source name. This is the only
I/O boundary of the aggregation engine.

Per source the store moves through ``UNLOADED -> LOADING -> CACHED``. A
cached collection is returned as the identical object on every later
request and is never invalidated during a session. A failed load is logged,
reported to the caller as ``None`` (the source is treated as absent) and
returns the source to ``UNLOADED`` so a later request may retry.

Concurrent loads of the same source are not de-duplicated; the first one to
complete populates the cache and every other one returns that cached object.
"""

import asyncio
from enum import Enum
from typing import Iterable, Optional, Union

from loguru import logger

from cityscope.core.schema import FeatureCollection
from cityscope.datasets import SourceName
from cityscope.errors import SourceLoadError, UnknownSourceError
from cityscope.store.fetchers import FeatureFetcher


class SourceState(str, Enum):
    """Load state of one named source."""

    UNLOADED = "unloaded"
    LOADING = "loading"
    CACHED = "cached"


SourceKey = Union[SourceName, str]


def _key(source_name: SourceKey) -> str:
    return source_name.value if isinstance(source_name, SourceName) else str(source_name)


class FeatureStore:
    """
    Session cache of feature collections in front of a fetcher.

    Example
    -------
    >>> store = FeatureStore(LocalGeoJSONFetcher("data"))
    >>> parks = await store.load(SourceName.PARKS)
    >>> parks is await store.load("parks")
    True
    """

    def __init__(self, fetcher: FeatureFetcher):
        self._fetcher = fetcher
        self._cache: dict[str, FeatureCollection] = {}
        self._states: dict[str, SourceState] = {}

    @property
    def fetcher(self) -> FeatureFetcher:
        return self._fetcher

    async def load(self, source_name: SourceKey) -> Optional[FeatureCollection]:
        """
        Return the collection for a source, fetching it on first access.

        Returns
        -------
        FeatureCollection or None
            None when the source could not be fetched or parsed

        Raises
        ------
        UnknownSourceError
            If the fetcher does not know the source name
        """
        name = _key(source_name)
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        self._states[name] = SourceState.LOADING
        try:
            document = await self._fetcher.fetch(name)
            collection = FeatureCollection.from_geojson(name, document)
        except UnknownSourceError:
            self._reset_state(name)
            raise
        except SourceLoadError as exc:
            logger.error(f"[FeatureStore] {exc}")
            self._reset_state(name)
            return None
        except Exception as exc:
            logger.error(f"[FeatureStore] Unexpected error loading '{name}': {exc!r}")
            self._reset_state(name)
            return None

        existing = self._cache.setdefault(name, collection)
        self._states[name] = SourceState.CACHED
        if existing is collection:
            logger.info(f"[FeatureStore] Loaded '{name}' ({len(collection)} features)")
        return existing

    async def load_many(
        self,
        source_names: Iterable[SourceKey],
    ) -> dict[str, Optional[FeatureCollection]]:
        """Load several independent sources concurrently."""
        names = [_key(n) for n in source_names]
        results = await asyncio.gather(*(self.load(n) for n in names))
        return dict(zip(names, results))

    def get_cached(self, source_name: SourceKey) -> Optional[FeatureCollection]:
        """Cached collection without triggering a fetch."""
        return self._cache.get(_key(source_name))

    def is_cached(self, source_name: SourceKey) -> bool:
        return _key(source_name) in self._cache

    def source_state(self, source_name: SourceKey) -> SourceState:
        return self._states.get(_key(source_name), SourceState.UNLOADED)

    def states(self) -> dict[str, SourceState]:
        """Snapshot of every source the store has seen."""
        return dict(self._states)

    def clear(self) -> None:
        """Drop every cached collection (application teardown and tests)."""
        self._cache.clear()
        self._states.clear()

    def _reset_state(self, name: str) -> None:
        if name not in self._cache:
            self._states[name] = SourceState.UNLOADED

    def __repr__(self) -> str:
        return f"FeatureStore(fetcher={self._fetcher!r}, cached={sorted(self._cache)})"
