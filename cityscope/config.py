"""
Engine Configuration
====================

Settings for the aggregation engine, read from the environment.

Environment variables (a ``.env`` file is loaded first when present):

- CITYSCOPE_DATA_DIR: directory holding the GeoJSON files (default ``data``)
- CITYSCOPE_DATA_URL: base URL; when set, sources are fetched over HTTP
- CITYSCOPE_HTTP_TIMEOUT: HTTP timeout in seconds (default 30)
- CITYSCOPE_GEOMETRY_BACKEND: ``shapely`` or ``fallback`` (default shapely)
- CITYSCOPE_SEARCH_LIMIT: max search results (default 10)
- CITYSCOPE_MIN_SEARCH_LENGTH: shortest accepted search term (default 2)
- CITYSCOPE_RING_SAMPLES: samples per polygon ring (default 5)
- CITYSCOPE_ROAD_SAMPLE_SIZE: roads used for the average length (default 200)
- CITYSCOPE_CHUNK_<SOURCE>: chunk size override, e.g. CITYSCOPE_CHUNK_PARKS=25
"""

import os
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from cityscope.core.join import GeometryBackend
from cityscope.datasets import CANDIDATE_SOURCES, DATASETS, SourceName


ENV_PREFIX = "CITYSCOPE_"


def default_chunk_sizes() -> dict[SourceName, int]:
    return {source: DATASETS[source].chunk_size for source in CANDIDATE_SOURCES}


class EngineSettings(BaseModel):
    """Validated engine settings."""

    data_dir: Path = Path("data")
    data_url: Optional[str] = None
    http_timeout: float = Field(default=30.0, gt=0)
    geometry_backend: GeometryBackend = GeometryBackend.SHAPELY
    search_limit: int = Field(default=10, ge=1)
    min_search_length: int = Field(default=2, ge=0)
    ring_samples: int = Field(default=5, ge=1)
    road_sample_size: int = Field(default=200, ge=1)
    chunk_sizes: dict[SourceName, int] = Field(default_factory=default_chunk_sizes)

    @field_validator("chunk_sizes")
    @classmethod
    def _positive_chunks(cls, value: dict[SourceName, int]) -> dict[SourceName, int]:
        for source, size in value.items():
            if size < 1:
                raise ValueError(f"chunk size for {source.value} must be >= 1, got {size}")
        return value

    def chunk_size_for(self, source: SourceName) -> int:
        """Configured chunk size, falling back to the catalogue default."""
        return self.chunk_sizes.get(source) or DATASETS[source].chunk_size or 100

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """
        Build settings from environment variables.

        Parameters
        ----------
        env : mapping, optional
            Variables to read. Defaults to ``os.environ`` after loading ``.env``.

        Raises
        ------
        pydantic.ValidationError
            If a variable holds an invalid value
        """
        if env is None:
            load_dotenv()
            env = os.environ

        def get(name: str) -> Optional[str]:
            value = env.get(f"{ENV_PREFIX}{name}")
            return value if value not in (None, "") else None

        values: dict = {}
        simple_fields = {
            "DATA_DIR": "data_dir",
            "DATA_URL": "data_url",
            "HTTP_TIMEOUT": "http_timeout",
            "GEOMETRY_BACKEND": "geometry_backend",
            "SEARCH_LIMIT": "search_limit",
            "MIN_SEARCH_LENGTH": "min_search_length",
            "RING_SAMPLES": "ring_samples",
            "ROAD_SAMPLE_SIZE": "road_sample_size",
        }
        for env_name, field_name in simple_fields.items():
            value = get(env_name)
            if value is not None:
                values[field_name] = value

        chunk_sizes = default_chunk_sizes()
        for source in CANDIDATE_SOURCES:
            value = get(f"CHUNK_{source.name}")
            if value is not None:
                chunk_sizes[source] = value
        values["chunk_sizes"] = chunk_sizes

        return cls(**values)
