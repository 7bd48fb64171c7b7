"""
Spatial Join Engine
===================

Decides which community boundaries a candidate feature falls inside or
overlaps.

Key Design Principles:
1. Boundaries are indexed ONCE per run; candidate features are never indexed
2. An STRtree over boundary extents is the only pre-filter and never changes
   the outcome of the exact test
3. shapely is the primary containment backend; the ray-casting primitives in
   ``cityscope.core.geometry`` take over when shapely is disabled or cannot
   build a boundary
4. A malformed candidate feature is logged and treated as non-matching; it
   never aborts the join

Boundaries are assumed interior-disjoint. A point on an edge shared by two
boundaries is claimed by exactly one of them, with the same answer from both
backends. A feature that matches several overlapping boundaries is counted
once in each of them.
"""

from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Iterable, Optional

from loguru import logger
from shapely import STRtree, prepare
from shapely.errors import GEOSException
from shapely.geometry import Point as ShapelyPoint
from shapely.geometry import box, shape
from shapely.geometry.base import BaseGeometry

from cityscope.core.geometry import (
    DEFAULT_RING_SAMPLES,
    Point,
    as_point,
    extent_of,
    extents_overlap,
    first_position,
    line_sample_points,
    line_sampled_inside,
    point_in_polygon,
    polygon_sampled_overlaps,
)
from cityscope.core.schema import Boundary, Extent, Feature, FeatureCollection, GeometryType
from cityscope.errors import GeometryError


FEATURE_ERRORS = (GeometryError, GEOSException, ValueError, TypeError, IndexError, KeyError)
"""Errors that exclude a single feature from a join instead of failing it."""


class GeometryBackend(str, Enum):
    """Containment backend used by the join engine."""

    SHAPELY = "shapely"
    """Prepared shapely geometries; ray casting only when a build fails."""

    FALLBACK = "fallback"
    """Pure-Python ray casting everywhere."""


@dataclass
class IndexedBoundary:
    """A boundary plus the derived data the join needs."""

    boundary: Boundary
    position: int
    extent: Optional[Extent] = None
    shape: Optional[BaseGeometry] = field(default=None, repr=False)

    @property
    def id(self) -> Any:
        return self.boundary.id

    @property
    def geometry(self) -> Optional[dict[str, Any]]:
        return self.boundary.geometry

    @property
    def has_geometry(self) -> bool:
        """False when the boundary geometry could not be parsed at all."""
        return self.extent is not None


def _build_shape(geometry: dict[str, Any]) -> Optional[BaseGeometry]:
    """Build and prepare a shapely geometry, or None if shapely rejects it."""
    try:
        geom = shape(geometry)
        if geom.is_empty:
            return None
        prepare(geom)
        return geom
    except (GEOSException, ValueError, TypeError, AttributeError, IndexError, KeyError):
        return None


def _query_geometry(extent: Extent) -> BaseGeometry:
    if extent.min_x == extent.max_x and extent.min_y == extent.max_y:
        return ShapelyPoint(extent.min_x, extent.min_y)
    return box(*extent)


class BoundaryIndex:
    """
    Spatial index over a set of community boundaries.

    Example
    -------
    >>> index = BoundaryIndex(boundaries)
    >>> [entry.id for entry in index.candidates(Extent(1, 1, 1, 1))]
    ['panorama-hills']
    """

    def __init__(
        self,
        boundaries: Iterable[Boundary],
        backend: GeometryBackend = GeometryBackend.SHAPELY,
    ):
        """
        Index boundaries.

        Parameters
        ----------
        boundaries : iterable of Boundary
            Boundaries in source order. Order is preserved by every query.
            A repeated id is suffixed with ``#<position>`` so every boundary
            keeps its own tally row and result record.
        backend : GeometryBackend
            Whether to build shapely geometries for containment tests.
        """
        self._backend = GeometryBackend(backend)
        self._entries: list[IndexedBoundary] = []
        self._tree: Optional[STRtree] = None
        self._tree_positions: list[int] = []

        seen: set = set()
        for position, boundary in enumerate(boundaries):
            if boundary.id in seen:
                unique_id = f"{boundary.id}#{position}"
                logger.warning(
                    f"[BoundaryIndex] Duplicate boundary id {boundary.id!r} "
                    f"('{boundary.name}'); using {unique_id!r}"
                )
                boundary = boundary.model_copy(update={"id": unique_id})
            seen.add(boundary.id)
            self._entries.append(self._index_boundary(boundary, position))

        self._build_tree()

    @classmethod
    def from_collection(
        cls,
        collection: FeatureCollection,
        backend: GeometryBackend = GeometryBackend.SHAPELY,
    ) -> "BoundaryIndex":
        """Index every feature of a community-boundary collection."""
        return cls(
            (Boundary.from_feature(f, i) for i, f in enumerate(collection.features)),
            backend=backend,
        )

    @property
    def backend(self) -> GeometryBackend:
        return self._backend

    @property
    def entries(self) -> list[IndexedBoundary]:
        """All indexed boundaries in source order (including unusable ones)."""
        return list(self._entries)

    @property
    def boundaries(self) -> list[Boundary]:
        return [entry.boundary for entry in self._entries]

    def _index_boundary(self, boundary: Boundary, position: int) -> IndexedBoundary:
        entry = IndexedBoundary(boundary=boundary, position=position)

        geometry_type = None
        if boundary.geometry is not None:
            try:
                geometry_type = GeometryType(boundary.geometry.get("type"))
            except ValueError:
                geometry_type = None

        if geometry_type is None or not geometry_type.is_polygon:
            logger.warning(
                f"[BoundaryIndex] Boundary '{boundary.name or boundary.id}' has no "
                f"polygon geometry; its spatial metrics stay at zero"
            )
            return entry

        try:
            entry.extent = extent_of(boundary.geometry)
        except GeometryError as exc:
            logger.warning(
                f"[BoundaryIndex] Boundary '{boundary.name or boundary.id}' "
                f"has unparseable geometry: {exc}"
            )
            return entry

        if self._backend is GeometryBackend.SHAPELY:
            entry.shape = _build_shape(boundary.geometry)
            if entry.shape is None:
                logger.info(
                    f"[BoundaryIndex] shapely rejected boundary "
                    f"'{boundary.name or boundary.id}'; using ray casting"
                )

        return entry

    def _build_tree(self) -> None:
        """Build the STRtree over the extents of usable boundaries."""
        boxes = []
        self._tree_positions = []
        for entry in self._entries:
            if entry.extent is None:
                continue
            boxes.append(box(*entry.extent))
            self._tree_positions.append(entry.position)

        if boxes:
            self._tree = STRtree(boxes)

    def candidates(self, extent: Optional[Extent] = None) -> list[IndexedBoundary]:
        """
        Usable boundaries whose extent overlaps ``extent``, in source order.

        With no extent, every usable boundary is returned.
        """
        if extent is None:
            return [entry for entry in self._entries if entry.has_geometry]

        if self._tree is None:
            return []

        hits = self._tree.query(_query_geometry(extent))
        positions = sorted(self._tree_positions[int(i)] for i in hits)
        return [
            self._entries[p]
            for p in positions
            if extents_overlap(self._entries[p].extent, extent)
        ]

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        usable = sum(1 for entry in self._entries if entry.has_geometry)
        return (
            f"BoundaryIndex(boundaries={len(self._entries)}, usable={usable}, "
            f"backend={self._backend.value})"
        )


class SpatialJoinEngine:
    """
    Membership / overlap decisions between candidate features and boundaries.

    By candidate geometry type:

    - Point: point-in-boundary
    - LineString / MultiLineString: first / middle / last vertex sampling
    - Polygon / MultiPolygon: extent rejection, then vertex + centre sampling
      in both directions; on a parsing failure only the first coordinate is
      tested with ray casting
    """

    def __init__(self, index: BoundaryIndex, ring_samples: int = DEFAULT_RING_SAMPLES):
        self._index = index
        self._ring_samples = ring_samples

    @property
    def index(self) -> BoundaryIndex:
        return self._index

    def contains_point(self, entry: IndexedBoundary, point: Point) -> bool:
        """
        Point-in-boundary test with the configured backend.

        A point exactly on a boundary edge is decided by half-open ray
        casting, so of two boundaries sharing that edge only one claims it.
        """
        if entry.shape is not None:
            try:
                candidate = ShapelyPoint(point)
                if entry.shape.contains(candidate):
                    return True
                if not entry.shape.touches(candidate):
                    return False
            except GEOSException:
                pass
        return point_in_polygon(point, entry.geometry)

    def matching_boundaries(
        self,
        feature: Feature,
        label: Optional[str] = None,
    ) -> list[IndexedBoundary]:
        """
        Every boundary the feature falls inside or overlaps.

        Geometry errors are logged and yield an empty list.
        """
        try:
            return self._match(feature)
        except FEATURE_ERRORS as exc:
            logger.warning(
                f"[SpatialJoin] Excluding feature {label or feature.prop('id', '?')}: {exc}"
            )
            return []

    def matches(self, entry: IndexedBoundary, feature: Feature) -> bool:
        """True when ``feature`` falls inside / overlaps one boundary."""
        return any(m is entry for m in self.matching_boundaries(feature))

    def _match(self, feature: Feature) -> list[IndexedBoundary]:
        geometry_type = feature.geometry_type
        if geometry_type is None:
            raise GeometryError("Feature has no supported geometry")

        if geometry_type is GeometryType.POINT:
            return self._match_point(as_point(feature.coordinates))

        if geometry_type.is_line:
            return self._match_line(feature.geometry)

        return self._match_polygon(feature.geometry)

    def _match_point(self, point: Point) -> list[IndexedBoundary]:
        extent = Extent(point[0], point[1], point[0], point[1])
        return [
            entry for entry in self._index.candidates(extent)
            if self.contains_point(entry, point)
        ]

    def _match_line(self, line: dict[str, Any]) -> list[IndexedBoundary]:
        samples = line_sample_points(line)
        if not samples:
            return []

        extent = Extent(
            min(p[0] for p in samples),
            min(p[1] for p in samples),
            max(p[0] for p in samples),
            max(p[1] for p in samples),
        )
        return [
            entry for entry in self._index.candidates(extent)
            if line_sampled_inside(line, entry.geometry, contains=partial(self.contains_point, entry))
        ]

    def _match_polygon(self, polygon: dict[str, Any]) -> list[IndexedBoundary]:
        try:
            extent = extent_of(polygon)
            candidate_shape = (
                _build_shape(polygon)
                if self._index.backend is GeometryBackend.SHAPELY
                else None
            )
            matched = []
            for entry in self._index.candidates(extent):
                if self._polygon_overlaps(polygon, candidate_shape, entry):
                    matched.append(entry)
            return matched
        except GeometryError:
            return self._match_first_position(polygon)

    def _polygon_overlaps(
        self,
        polygon: dict[str, Any],
        candidate_shape: Optional[BaseGeometry],
        entry: IndexedBoundary,
    ) -> bool:
        if polygon_sampled_overlaps(
            polygon,
            entry.geometry,
            contains=partial(self.contains_point, entry),
            samples=self._ring_samples,
        ):
            return True

        # Boundary enclosed by the candidate: sample the boundary instead.
        def candidate_contains(point: Point) -> bool:
            if candidate_shape is not None:
                try:
                    return candidate_shape.intersects(ShapelyPoint(point))
                except GEOSException:
                    pass
            return point_in_polygon(point, polygon)

        return polygon_sampled_overlaps(
            entry.geometry,
            polygon,
            contains=candidate_contains,
            samples=self._ring_samples,
        )

    def _match_first_position(self, polygon: dict[str, Any]) -> list[IndexedBoundary]:
        """Malformed polygon: test only its first coordinate."""
        point = first_position(polygon)
        matched = []
        for entry in self._index.candidates():
            try:
                if point_in_polygon(point, entry.geometry):
                    matched.append(entry)
            except GeometryError:
                continue
        return matched

    def __repr__(self) -> str:
        return f"SpatialJoinEngine(index={self._index!r}, ring_samples={self._ring_samples})"
