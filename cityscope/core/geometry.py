"""
Geometry Primitives
===================

Pure, side-effect free predicates over GeoJSON geometry mappings.

These functions never touch shapely. They are the fallback primitives used
when a richer geometry backend is disabled or cannot build a geometry, and
they implement the sampling approximations the spatial join relies on:

- point_in_polygon: even-odd ray casting over outer rings only (holes ignored)
- centroid_of: bounding-box centre, NOT an area centroid
- line_sampled_inside: first / middle / last vertex of each line part
- polygon_sampled_overlaps: strided outer-ring vertices plus bbox centre

A line that enters and leaves a boundary between two sampled vertices is
reported as non-intersecting. That is a known limitation of the sampling
approach, not a defect.
"""

import math
from typing import Any, Callable, Iterator, Optional, Sequence

from cityscope.core.schema import Extent, GeometryType
from cityscope.errors import GeometryError


EARTH_RADIUS_KM = 6371.0
"""Mean Earth radius used by the haversine formula."""

DEFAULT_RING_SAMPLES = 5

Point = tuple[float, float]
Containment = Callable[[Point], bool]


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def as_point(value: Any) -> Point:
    """
    Coerce a GeoJSON position into an ``(x, y)`` tuple.

    Raises
    ------
    GeometryError
        If the position does not start with two finite numbers
    """
    if not isinstance(value, (list, tuple)) or len(value) < 2:
        raise GeometryError(f"Invalid position: {value!r}")

    x, y = value[0], value[1]
    if not _is_number(x) or not _is_number(y):
        raise GeometryError(f"Non-numeric position: {value!r}")

    return float(x), float(y)


def _try_point(value: Any) -> Optional[Point]:
    try:
        return as_point(value)
    except GeometryError:
        return None


def geometry_type_of(geometry: Any) -> GeometryType:
    """Resolve and validate the tag of a GeoJSON geometry mapping."""
    if not isinstance(geometry, dict):
        raise GeometryError("Geometry is missing")

    raw_type = geometry.get("type")
    try:
        geometry_type = GeometryType(raw_type)
    except ValueError as exc:
        raise GeometryError(f"Unsupported geometry type: {raw_type!r}") from exc

    coordinates = geometry.get("coordinates")
    if not isinstance(coordinates, (list, tuple)) or len(coordinates) == 0:
        raise GeometryError("Geometry has no coordinates", geometry_type.value)

    return geometry_type


def _sequence(value: Any, what: str, geometry_type: GeometryType) -> Sequence[Any]:
    if not isinstance(value, (list, tuple)):
        raise GeometryError(f"{what} must be a list", geometry_type.value)
    return value


def iter_positions(geometry: Any) -> Iterator[Point]:
    """Yield every position of a geometry, validating each one."""
    geometry_type = geometry_type_of(geometry)
    coordinates = geometry["coordinates"]

    if geometry_type is GeometryType.POINT:
        yield as_point(coordinates)
        return

    if geometry_type is GeometryType.LINE_STRING:
        for position in coordinates:
            yield as_point(position)
        return

    if geometry_type in (GeometryType.POLYGON, GeometryType.MULTI_LINE_STRING):
        for part in coordinates:
            for position in _sequence(part, "Ring or line part", geometry_type):
                yield as_point(position)
        return

    for polygon in coordinates:
        for ring in _sequence(polygon, "Polygon", geometry_type):
            for position in _sequence(ring, "Ring", geometry_type):
                yield as_point(position)


def extent_of(geometry: Any) -> Extent:
    """
    Minimal axis-aligned box covering all coordinates.

    A Point yields a degenerate box with ``min == max``.

    Raises
    ------
    GeometryError
        If the geometry is missing, empty, or has a malformed position
    """
    min_x = min_y = math.inf
    max_x = max_y = -math.inf

    for x, y in iter_positions(geometry):
        min_x = min(min_x, x)
        min_y = min(min_y, y)
        max_x = max(max_x, x)
        max_y = max(max_y, y)

    if min_x == math.inf:
        raise GeometryError("Geometry has no positions")

    return Extent(min_x, min_y, max_x, max_y)


def extents_overlap(a: Extent, b: Extent) -> bool:
    """Closed rectangle intersection test (touching edges overlap)."""
    return not (
        a.max_x < b.min_x
        or a.min_x > b.max_x
        or a.max_y < b.min_y
        or a.min_y > b.max_y
    )


def outer_rings(geometry: Any) -> list[Sequence[Any]]:
    """Outer ring of a Polygon, or of every part of a MultiPolygon."""
    geometry_type = geometry_type_of(geometry)
    coordinates = geometry["coordinates"]

    if geometry_type is GeometryType.POLYGON:
        return [_sequence(coordinates[0], "Ring", geometry_type)]

    if geometry_type is GeometryType.MULTI_POLYGON:
        rings = []
        for polygon in coordinates:
            polygon = _sequence(polygon, "Polygon", geometry_type)
            if polygon:
                rings.append(_sequence(polygon[0], "Ring", geometry_type))
        return rings

    raise GeometryError(
        f"Expected Polygon or MultiPolygon, got {geometry_type.value}",
        geometry_type.value,
    )


def ring_contains(point: Point, ring: Sequence[Any]) -> bool:
    """
    Even-odd ray casting against a single ring.

    Malformed vertices are skipped rather than failing the whole test.
    """
    if len(ring) < 3:
        return False

    x, y = point
    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        vi = _try_point(ring[i])
        vj = _try_point(ring[j])
        j = i
        if vi is None or vj is None:
            continue

        xi, yi = vi
        xj, yj = vj
        if (yi > y) != (yj > y) and x < (xj - xi) * (y - yi) / (yj - yi) + xi:
            inside = not inside

    return inside


def point_in_polygon(point: Any, geometry: Any) -> bool:
    """
    Ray-casting point-in-polygon test over outer rings.

    Works for Polygon and MultiPolygon geometries; a MultiPolygon matches
    when any constituent polygon contains the point. Holes are ignored.

    Raises
    ------
    GeometryError
        If the point or polygon geometry is malformed
    """
    candidate = as_point(point)
    return any(ring_contains(candidate, ring) for ring in outer_rings(geometry))


def centroid_of(geometry: Any) -> Point:
    """
    Bounding-box centre of a geometry.

    This is an approximation adequate for representative-point sampling.
    It is NOT the area-weighted centroid and may fall outside concave shapes.
    """
    extent = extent_of(geometry)
    return (
        (extent.min_x + extent.max_x) / 2.0,
        (extent.min_y + extent.max_y) / 2.0,
    )


def first_position(geometry: Any) -> Point:
    """First coordinate of any geometry, used by the malformed-geometry fallback."""
    coordinates = geometry.get("coordinates") if isinstance(geometry, dict) else None
    while isinstance(coordinates, (list, tuple)) and coordinates:
        if _is_number(coordinates[0]):
            return as_point(coordinates)
        coordinates = coordinates[0]
    raise GeometryError("Geometry has no first position")


def _line_parts(line: Any) -> list[Sequence[Any]]:
    geometry_type = geometry_type_of(line)
    if geometry_type is GeometryType.LINE_STRING:
        return [line["coordinates"]]
    if geometry_type is GeometryType.MULTI_LINE_STRING:
        return [
            _sequence(part, "Line part", geometry_type)
            for part in line["coordinates"]
        ]
    raise GeometryError(
        f"Expected LineString or MultiLineString, got {geometry_type.value}",
        geometry_type.value,
    )


def line_sample_points(line: Any) -> list[Point]:
    """First, middle and last vertex of each line part."""
    samples: list[Point] = []
    for part in _line_parts(line):
        if not part:
            continue
        picks = [part[0]]
        if len(part) > 2:
            picks.append(part[len(part) // 2])
        picks.append(part[-1])
        samples.extend(p for p in map(_try_point, picks) if p is not None)
    return samples


def ring_sample_points(ring: Sequence[Any], samples: int = DEFAULT_RING_SAMPLES) -> list[Point]:
    """Every ``len(ring) // samples``-th vertex, always including the last one."""
    if not ring:
        return []

    step = max(1, len(ring) // max(1, samples))
    picks = list(ring[::step])
    if (len(ring) - 1) % step != 0:
        picks.append(ring[-1])
    return [p for p in map(_try_point, picks) if p is not None]


def polygon_sample_points(geometry: Any, samples: int = DEFAULT_RING_SAMPLES) -> list[Point]:
    """Strided outer-ring vertices of every polygon part plus the bbox centre."""
    points: list[Point] = []
    for ring in outer_rings(geometry):
        points.extend(ring_sample_points(ring, samples))
    points.append(centroid_of(geometry))
    return points


def line_sampled_inside(
    line: Any,
    boundary: Any,
    contains: Optional[Containment] = None,
) -> bool:
    """
    Approximate line-intersects-polygon test.

    Parameters
    ----------
    line : dict
        LineString or MultiLineString geometry
    boundary : dict
        Polygon or MultiPolygon geometry
    contains : callable, optional
        Point containment test against ``boundary``. Defaults to
        ``point_in_polygon``.
    """
    test = contains or (lambda p: point_in_polygon(p, boundary))
    return any(test(p) for p in line_sample_points(line))


def polygon_sampled_overlaps(
    candidate: Any,
    boundary: Any,
    contains: Optional[Containment] = None,
    samples: int = DEFAULT_RING_SAMPLES,
) -> bool:
    """
    Approximate polygon-polygon overlap without clipping.

    True when any sampled vertex of the candidate's outer rings, or its
    bounding-box centre, falls inside ``boundary``.
    """
    test = contains or (lambda p: point_in_polygon(p, boundary))
    return any(test(p) for p in polygon_sample_points(candidate, samples))


def haversine_km(a: Any, b: Any) -> float:
    """Great-circle distance in kilometres between two lon/lat positions."""
    lon1, lat1 = as_point(a)
    lon2, lat2 = as_point(b)

    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def _path_length_km(path: Sequence[Any]) -> float:
    total = 0.0
    for start, end in zip(path, path[1:]):
        p1, p2 = _try_point(start), _try_point(end)
        if p1 is not None and p2 is not None:
            total += haversine_km(p1, p2)
    return total


def line_length_km(geometry: Any) -> float:
    """
    Summed haversine length of a LineString or MultiLineString.

    Returns 0.0 for any other or malformed geometry. Segments with a
    non-numeric endpoint are skipped.
    """
    try:
        parts = _line_parts(geometry)
    except GeometryError:
        return 0.0
    return sum(
        _path_length_km(part) for part in parts if isinstance(part, (list, tuple))
    )
