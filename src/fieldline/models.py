"""Domain types for the fetch-and-cache pipeline.

Sources and their API descriptors are immutable pydantic models loaded once
per process. The API descriptor is a closed union discriminated by ``type``;
each tag has exactly one adapter (see ``fieldline.clients``).

Fetch-time values (pages, progress, results) are plain dataclasses scoped to
a single pipeline run.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Callable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


# GeoJSON-shaped record: {"type": "Feature", "geometry": ..., "properties": {...}}
Feature = dict[str, Any]

# (feature, positional index) -> identity string
IdentityFn = Callable[[Feature, int], str]


class ArcGISApi(BaseModel):
    """ArcGIS REST feature service query endpoint."""

    model_config = ConfigDict(frozen=True)

    type: Literal["arcgis"] = "arcgis"
    url: str
    out_fields: tuple[str, ...]
    where: str | None = None
    out_sr: str = "4326"


class SocrataApi(BaseModel):
    """Socrata (SODA) dataset resource endpoint."""

    model_config = ConfigDict(frozen=True)

    type: Literal["socrata"] = "socrata"
    url: str
    fields: tuple[str, ...]
    where: str | None = None
    geometry_field: str = "the_geom"


class GenericApi(BaseModel):
    """Any other offset-paged JSON endpoint, described by hooks.

    Attributes:
        url: Endpoint URL; its own query string is sent with every request
        page_params: (offset, limit) -> query parameters for one page
        extract_features: Response body -> features on that page
        has_more: (body, features, offset) -> continuation. Defaults to
            "the page was full".
        count_params: Query parameters of a count request, if supported
        extract_count: Count response body -> total, or None
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["generic"] = "generic"
    url: str
    page_params: Callable[[int, int], dict[str, str]]
    extract_features: Callable[[Any], list[Feature]]
    has_more: Callable[[Any, list[Feature], int], bool] | None = None
    count_params: dict[str, str] | None = None
    extract_count: Callable[[Any], int | None] | None = None


ApiDescriptor = Annotated[
    Union[ArcGISApi, SocrataApi, GenericApi], Field(discriminator="type")
]


class Source(BaseModel):
    """Static descriptor of one external data endpoint.

    Attributes:
        id: Registry key, also the cache namespace and output directory name
        name: Human-readable name
        attribution: Data provider credit
        api: Access descriptor (ArcGIS, Socrata or generic)
        id_field: Property holding the stable feature identity (e.g. "APN").
            Features without it fall back to their positional index.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., pattern=r"^[A-Za-z0-9._-]+$")
    name: str
    attribution: str
    api: ApiDescriptor
    id_field: str | None = None
    attribution_url: str | None = None
    region: str | None = None
    license: str | None = None
    update_frequency: Literal["daily", "weekly", "monthly", "manual"] | None = None
    expected_count: int | None = Field(default=None, ge=0)
    notes: str | None = None


@dataclass
class SourceMetadata:
    """Persisted per-source bookkeeping that drives the staleness check."""

    source_id: str
    record_count: int
    last_fetched: datetime
    truncated: bool = False
    etag: str | None = None
    last_modified: str | None = None


@dataclass
class Page:
    """One page returned by an adapter.

    ``has_more`` is the continuation signal; the next cursor is always
    ``offset + batch_size`` and is computed by the orchestrator.
    """

    features: list[Feature]
    has_more: bool
    etag: str | None = None
    last_modified: str | None = None


@dataclass
class FetchProgress:
    """Status emitted after each completed page."""

    message: str
    fetched: int
    total: int | None
    batch_num: int
    offset: int


@dataclass(frozen=True)
class FetchResult:
    """Everything one orchestrator run retrieved."""

    features: list[Feature] = field(default_factory=list)
    total_fetched: int = 0
    truncated: bool = False
    pages_fetched: int = 0
    # Validators of the first page, if the server sent them
    etag: str | None = None
    last_modified: str | None = None
