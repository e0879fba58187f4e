"""
Records for the three entity kinds of the Census metadata API and for the
outcome of an ingestion run.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional, Tuple

ApiPathKey = Tuple[Optional[int], Tuple[str, ...]]


@dataclass
class ApiPath:
    """
    One endpoint of the API, as listed in each element of the `dataset` array
    of https://api.census.gov/data.json.
    """

    c_vintage: Optional[int]
    c_dataset: List[str]
    c_geography_link: str
    c_variables_link: str
    title: str
    description: str
    # Database primary key; only set on records loaded from the store.
    id: Optional[int] = None

    @property
    def key(self) -> ApiPathKey:
        return (self.c_vintage, tuple(self.c_dataset))

    @property
    def label(self) -> str:
        """A short human readable identifier, e.g. '2020/acs/acs5'."""
        vintage = str(self.c_vintage) if self.c_vintage is not None else "-"
        return "/".join([vintage, *self.c_dataset])


@dataclass
class Variable:
    """One entry of the top-level `variables` map in an endpoint's variables.json."""

    name: str
    label: List[str]
    concept: Optional[str] = None
    required: Optional[str] = None
    predicate_type: Optional[str] = None
    group: Optional[List[str]] = None
    limit: Optional[int] = None
    predicate_only: Optional[bool] = None
    attributes: Optional[List[str]] = None


@dataclass
class Geography:
    """One entry of the `fips` array in an endpoint's geography.json."""

    name: str
    geo_level_display: Optional[str] = None
    reference_date: Optional[date] = None
    requires: Optional[List[str]] = None
    wildcard: Optional[List[str]] = None
    limit: Optional[int] = None
    geo_level_id: Optional[str] = None
    optional_with_wildcard_for: Optional[str] = None


@dataclass
class EndpointResult:
    endpoint: str
    status: str
    variables_count: int = 0
    geography_count: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "SUCCESS"


@dataclass
class IngestSummary:
    """Outcome of one ingestion pass over the selected endpoints."""

    api_paths_count: int = 0
    results: List[EndpointResult] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> List[EndpointResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[EndpointResult]:
        return [r for r in self.results if not r.ok]

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0
