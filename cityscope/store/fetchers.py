"""
Feature Fetchers
================

I/O collaborators of the feature store. A fetcher turns a source name into a
parsed GeoJSON document and raises ``SourceLoadError`` when it cannot.

- LocalGeoJSONFetcher: reads ``<data_dir>/<file name>`` from disk
- HttpGeoJSONFetcher: GETs ``<base_url>/<file name>`` with requests
- InMemoryFetcher: serves documents already held in memory

Blocking reads run in a worker thread via ``asyncio.to_thread`` so the event
loop keeps serving other tasks while a large file is parsed.
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, Union

import requests

from cityscope.datasets import SOURCE_FILES
from cityscope.errors import SourceLoadError, UnknownSourceError


class FeatureFetcher(Protocol):
    """Anything that can fetch a named GeoJSON document."""

    async def fetch(self, source_name: str) -> Any:
        ...


def _file_name(source_files: Mapping[str, str], source_name: str) -> str:
    try:
        return source_files[source_name]
    except KeyError:
        raise UnknownSourceError(source_name) from None


class LocalGeoJSONFetcher:
    """Read GeoJSON files from a local data directory."""

    def __init__(
        self,
        data_dir: Union[Path, str],
        source_files: Optional[Mapping[str, str]] = None,
    ):
        self.data_dir = Path(data_dir)
        self.source_files = dict(source_files or SOURCE_FILES)

    def path_for(self, source_name: str) -> Path:
        return self.data_dir / _file_name(self.source_files, source_name)

    async def fetch(self, source_name: str) -> Any:
        path = self.path_for(source_name)
        return await asyncio.to_thread(self._read, source_name, path)

    def _read(self, source_name: str, path: Path) -> Any:
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            raise SourceLoadError(source_name, f"file not found: {path}") from None
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise SourceLoadError(source_name, f"{type(exc).__name__}: {exc}") from exc

    def __repr__(self) -> str:
        return f"LocalGeoJSONFetcher(data_dir={str(self.data_dir)!r})"


class HttpGeoJSONFetcher:
    """Fetch GeoJSON documents over HTTP."""

    def __init__(
        self,
        base_url: str,
        source_files: Optional[Mapping[str, str]] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.source_files = dict(source_files or SOURCE_FILES)
        self.timeout = timeout
        self._session = session or requests.Session()

    def url_for(self, source_name: str) -> str:
        return f"{self.base_url}/{_file_name(self.source_files, source_name)}"

    async def fetch(self, source_name: str) -> Any:
        url = self.url_for(source_name)
        return await asyncio.to_thread(self._get, source_name, url)

    def _get(self, source_name: str, url: str) -> Any:
        try:
            response = self._session.get(url, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as exc:
            raise SourceLoadError(source_name, f"GET {url} failed: {exc}") from exc
        except ValueError as exc:
            raise SourceLoadError(source_name, f"GET {url} returned invalid JSON") from exc

    def __repr__(self) -> str:
        return f"HttpGeoJSONFetcher(base_url={self.base_url!r})"


class InMemoryFetcher:
    """Serve pre-parsed documents; counts fetches per source."""

    def __init__(self, documents: Mapping[str, Any]):
        self.documents = dict(documents)
        self.calls: dict[str, int] = {}

    async def fetch(self, source_name: str) -> Any:
        self.calls[source_name] = self.calls.get(source_name, 0) + 1
        await asyncio.sleep(0)
        if source_name not in self.documents:
            raise SourceLoadError(source_name, "no document registered")
        return self.documents[source_name]
