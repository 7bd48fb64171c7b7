"""
Aggregation Scheduler
=====================

Runs a spatial join over an entire candidate collection without freezing
the event loop.

The collection is cut into fixed-size chunks. Before each chunk the
scheduler awaits ``yield_control`` (a zero-duration ``asyncio.sleep`` by
default) so other tasks on the loop get a turn, then checks its
cancellation token. Chunks run strictly in input order and every chunk
mutates the same tally in place; there is only one logical thread, so no
locks are involved.

Chunk size never changes the result: aggregating N features in one chunk
produces exactly the same tally as aggregating them in chunks of any k < N.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Iterator, Optional, Sequence, Union

from loguru import logger

from cityscope.core.join import SpatialJoinEngine
from cityscope.core.schema import Feature, FeatureCollection, Metric
from cityscope.errors import AggregationCancelled


Tally = dict[Any, dict[str, Union[int, bool]]]
"""Boundary id -> {metric name -> counter or flag}."""

FeatureFilter = Callable[[Feature], bool]


def has_positive_flow_rate(feature: Feature) -> bool:
    """True when ``flow_rate`` is present, numeric and greater than zero."""
    value = feature.prop("flow_rate")
    if value is None or isinstance(value, bool):
        return False
    try:
        return float(value) > 0
    except (TypeError, ValueError):
        return False


@dataclass(frozen=True)
class CounterRule:
    """
    How a matching feature updates the tally.

    Count metrics are incremented once per matching boundary. Flag metrics
    are set to True and never reset. Features rejected by ``feature_filter``
    are skipped before any geometry work.
    """

    metric: Metric
    feature_filter: Optional[FeatureFilter] = None

    @property
    def is_flag(self) -> bool:
        return self.metric.is_flag

    def accepts(self, feature: Feature) -> bool:
        return self.feature_filter is None or self.feature_filter(feature)


@dataclass(frozen=True)
class ChunkProgress:
    """Progress report emitted after every chunk."""

    metric: Metric
    chunk_index: int
    chunk_count: int
    processed: int
    total: int
    matched: int


class CancellationToken:
    """Cooperative cancellation flag, checked between chunks."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self, metric: Metric, processed: int, total: int) -> None:
        if self._cancelled:
            raise AggregationCancelled(metric.value, processed, total)


def new_tally(boundary_ids: Iterable[Any], metrics: Iterable[Metric]) -> Tally:
    """Zeroed tally for the given boundaries and metrics."""
    metrics = list(metrics)
    return {
        boundary_id: {m.value: (False if m.is_flag else 0) for m in metrics}
        for boundary_id in boundary_ids
    }


def iter_chunks(features: Sequence[Feature], size: int) -> Iterator[Sequence[Feature]]:
    """
    Consecutive slices of at most ``size`` features.

    Raises
    ------
    ValueError
        If size is smaller than 1
    """
    if size < 1:
        raise ValueError(f"chunk size must be >= 1, got {size}")
    for start in range(0, len(features), size):
        yield features[start:start + size]


async def zero_delay() -> None:
    """Hand control back to the event loop for one iteration."""
    await asyncio.sleep(0)


class AggregationScheduler:
    """
    Chunked, cooperative driver for the spatial join.

    Example
    -------
    >>> scheduler = AggregationScheduler(engine)
    >>> tally = new_tally(ids, [Metric.LRT_STOPS])
    >>> await scheduler.run(stops, CounterRule(Metric.LRT_STOPS), tally, chunk_size=200)
    """

    def __init__(
        self,
        engine: SpatialJoinEngine,
        yield_control: Optional[Callable[[], Awaitable[None]]] = None,
        on_chunk: Optional[Callable[[ChunkProgress], None]] = None,
    ):
        """
        Parameters
        ----------
        engine : SpatialJoinEngine
            Join engine bound to the boundary index
        yield_control : coroutine function, optional
            Awaited before every chunk. Defaults to ``zero_delay``.
        on_chunk : callable, optional
            Receives a ChunkProgress after every chunk
        """
        self._engine = engine
        self._yield_control = yield_control or zero_delay
        self._on_chunk = on_chunk

    @property
    def engine(self) -> SpatialJoinEngine:
        return self._engine

    async def run(
        self,
        collection: FeatureCollection,
        rule: CounterRule,
        tally: Tally,
        chunk_size: int,
        token: Optional[CancellationToken] = None,
    ) -> Tally:
        """
        Fold every feature of ``collection`` into ``tally``.

        Returns
        -------
        Tally
            The same tally object, once the whole collection is processed

        Raises
        ------
        AggregationCancelled
            If ``token`` is cancelled before a chunk starts
        """
        features = collection.features
        total = len(features)
        chunk_count = (total + chunk_size - 1) // chunk_size if chunk_size > 0 else 0
        processed = 0
        matched_total = 0

        for chunk_index, chunk in enumerate(iter_chunks(features, chunk_size)):
            await self._yield_control()
            if token is not None:
                token.raise_if_cancelled(rule.metric, processed, total)

            matched = self._apply_chunk(chunk, rule, tally, offset=processed)
            processed += len(chunk)
            matched_total += matched

            logger.debug(
                f"[Scheduler] {rule.metric.value}: chunk {chunk_index + 1}/{chunk_count} "
                f"({processed}/{total} features)"
            )
            if self._on_chunk is not None:
                self._on_chunk(ChunkProgress(
                    metric=rule.metric,
                    chunk_index=chunk_index,
                    chunk_count=chunk_count,
                    processed=processed,
                    total=total,
                    matched=matched,
                ))

        logger.info(
            f"[Scheduler] {rule.metric.value}: {matched_total} matches "
            f"from {total} features of '{collection.source_name}'"
        )
        return tally

    def _apply_chunk(
        self,
        chunk: Sequence[Feature],
        rule: CounterRule,
        tally: Tally,
        offset: int,
    ) -> int:
        """Apply one chunk; returns the number of (feature, boundary) matches."""
        key = rule.metric.value
        matched = 0

        for i, feature in enumerate(chunk):
            if not rule.accepts(feature):
                continue

            label = f"#{offset + i} ({feature.prop('id', 'no id')})"
            for entry in self._engine.matching_boundaries(feature, label=label):
                counters = tally.get(entry.id)
                if counters is None:
                    continue
                if rule.is_flag:
                    counters[key] = True
                else:
                    counters[key] = counters.get(key, 0) + 1
                matched += 1

        return matched

    def __repr__(self) -> str:
        return f"AggregationScheduler(engine={self._engine!r})"
