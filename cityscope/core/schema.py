"""
Feature Schema
==============

Data models shared by every layer of the aggregation engine.

- Feature / FeatureCollection: immutable GeoJSON records as loaded from a source
- Boundary: a community polygon plus the scalar attributes carried into results
- Extent: axis-aligned bounding box used as a cheap pre-filter
- CommunityStats: one aggregation record per boundary
- LayerMetric: headline number shown for the active map layer

Geometry is stored as the raw GeoJSON mapping. It is only interpreted by the
spatial join, so one malformed geometry can never reject a whole collection.
"""

from enum import Enum
from typing import Any, NamedTuple, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from cityscope.errors import SourceLoadError


class GeometryType(str, Enum):
    """GeoJSON geometry tags understood by the spatial join."""

    POINT = "Point"
    LINE_STRING = "LineString"
    POLYGON = "Polygon"
    MULTI_LINE_STRING = "MultiLineString"
    MULTI_POLYGON = "MultiPolygon"

    @property
    def is_line(self) -> bool:
        return self in (GeometryType.LINE_STRING, GeometryType.MULTI_LINE_STRING)

    @property
    def is_polygon(self) -> bool:
        return self in (GeometryType.POLYGON, GeometryType.MULTI_POLYGON)


class Metric(str, Enum):
    """Per-boundary counters produced by an aggregation run."""

    TRAFFIC_INCIDENTS = "trafficIncidents"
    PARKS = "parks"
    TRAFFIC_SIGNALS = "trafficSignals"
    LRT_STOPS = "lrtStops"
    LRT_LINES = "lrtLines"
    MAJOR_ROADS = "majorRoads"
    FLOOD_RISK = "floodRisk"

    @property
    def field_name(self) -> str:
        """Attribute name of this metric on CommunityStats."""
        return _METRIC_FIELDS[self]

    @property
    def is_flag(self) -> bool:
        return self is Metric.FLOOD_RISK


_METRIC_FIELDS: dict[Metric, str] = {
    Metric.TRAFFIC_INCIDENTS: "traffic_incidents",
    Metric.PARKS: "parks",
    Metric.TRAFFIC_SIGNALS: "traffic_signals",
    Metric.LRT_STOPS: "lrt_stops",
    Metric.LRT_LINES: "lrt_lines",
    Metric.MAJOR_ROADS: "major_roads",
    Metric.FLOOD_RISK: "flood_risk",
}


class Extent(NamedTuple):
    """Bounding box ``[min_x, min_y, max_x, max_y]`` in lon/lat degrees."""

    min_x: float
    min_y: float
    max_x: float
    max_y: float


class Feature(BaseModel):
    """A single GeoJSON feature. Never mutated after load."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    geometry: Optional[dict[str, Any]] = None
    """Raw GeoJSON geometry mapping (``type`` + ``coordinates``)."""

    properties: dict[str, Any] = Field(default_factory=dict)
    """Dataset-specific attributes. No fixed schema."""

    @field_validator("properties", mode="before")
    @classmethod
    def _null_properties(cls, value: Any) -> Any:
        """GeoJSON allows ``"properties": null``."""
        return {} if value is None else value

    @field_validator("geometry", mode="before")
    @classmethod
    def _non_mapping_geometry(cls, value: Any) -> Any:
        """Keep the feature but drop a geometry that is not even a mapping."""
        return value if isinstance(value, dict) else None

    @property
    def geometry_type(self) -> Optional[GeometryType]:
        """Resolved geometry tag, or None when missing or unsupported."""
        if self.geometry is None:
            return None
        try:
            return GeometryType(self.geometry.get("type"))
        except ValueError:
            return None

    @property
    def coordinates(self) -> Any:
        if self.geometry is None:
            return None
        return self.geometry.get("coordinates")

    def prop(self, key: str, default: Any = None) -> Any:
        """Safely read a property value."""
        return self.properties.get(key, default)


class FeatureCollection(BaseModel):
    """An ordered, immutable collection of features from one named source."""

    model_config = ConfigDict(frozen=True)

    source_name: str
    features: tuple[Feature, ...] = ()

    @classmethod
    def from_geojson(cls, source_name: str, document: Any) -> "FeatureCollection":
        """
        Build a collection from a parsed GeoJSON document.

        Raises
        ------
        SourceLoadError
            If the document is not a FeatureCollection object
        """
        if not isinstance(document, dict):
            raise SourceLoadError(source_name, "document is not a JSON object")

        if document.get("type") != "FeatureCollection":
            raise SourceLoadError(
                source_name,
                f"expected type 'FeatureCollection', got {document.get('type')!r}",
            )

        features = document.get("features")
        if not isinstance(features, list):
            raise SourceLoadError(source_name, "'features' must be a list")

        try:
            return cls(source_name=source_name, features=tuple(features))
        except ValidationError as exc:
            raise SourceLoadError(source_name, f"invalid feature: {exc}") from exc

    def __len__(self) -> int:
        return len(self.features)

    def __repr__(self) -> str:
        return f"FeatureCollection(source={self.source_name}, features={len(self.features)})"


class Boundary(BaseModel):
    """
    A community boundary.

    The identity comes from ``properties.id``. When a record has no id it
    gets ``"#<position>"`` (its position in the source collection) so that
    every boundary still yields exactly one result record. Ids that are not
    strings or numbers are stringified.
    """

    model_config = ConfigDict(frozen=True)

    id: Any
    name: str = ""
    code: str = ""
    sector: str = ""
    crime: Union[int, float] = 0
    geometry: Optional[dict[str, Any]] = None

    @classmethod
    def from_feature(cls, feature: Feature, position: int) -> "Boundary":
        boundary_id = feature.prop("id")
        if boundary_id is None:
            boundary_id = f"#{position}"
        elif not isinstance(boundary_id, (str, int, float)):
            boundary_id = str(boundary_id)

        crime = feature.prop("crime_by_community_total_crime")
        return cls(
            id=boundary_id,
            name=str(feature.prop("name") or ""),
            code=str(feature.prop("comm_code") or ""),
            sector=str(feature.prop("sector") or ""),
            crime=crime if isinstance(crime, (int, float)) and not isinstance(crime, bool) else 0,
            geometry=feature.geometry,
        )

    def matches_term(self, term: str) -> bool:
        """Case-insensitive substring match on name or code."""
        needle = term.lower()
        return needle in self.name.lower() or needle in self.code.lower()


class CommunityStats(BaseModel):
    """
    Statistics for one boundary, produced fresh by every aggregation run.

    Serialize with ``to_dict()`` to get the camelCase keys the dashboard
    consumes (``trafficIncidents``, ``lrtStops``, ``floodRisk`` ...).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: Any
    name: str = ""
    code: str = ""
    sector: str = ""
    crime: Union[int, float] = 0

    traffic_incidents: int = Field(default=0, alias="trafficIncidents")
    parks: int = 0
    traffic_signals: int = Field(default=0, alias="trafficSignals")
    lrt_stops: int = Field(default=0, alias="lrtStops")
    lrt_lines: int = Field(default=0, alias="lrtLines")
    major_roads: int = Field(default=0, alias="majorRoads")
    flood_risk: bool = Field(default=False, alias="floodRisk")

    def metric(self, metric: Union[Metric, str]) -> Union[int, float, bool]:
        """Read a metric (or ``crime``) by its camelCase name."""
        if metric == "crime":
            return self.crime
        return getattr(self, Metric(metric).field_name)

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable dictionary with camelCase metric keys."""
        return self.model_dump(mode="json", by_alias=True)


class LayerMetric(BaseModel):
    """Headline number for one map layer."""

    model_config = ConfigDict(frozen=True)

    value: float
    display: str
    label: str
    unit: str = ""

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
