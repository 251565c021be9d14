"""Data types shared by the collector components.

This module defines the types that flow between the walker, the browser
driver, the normalizer and the merge engine:

1. AddressRecord - one canonical address entry, as stored in the dataset
2. QueryKey - a unit of work for the browser driver
3. ExtractionResult - the tagged outcome of one driver call
4. RangeWalk / LocalityWalk - validated run parameters
5. RunSummary - the report produced once per pipeline run

Query keys, extraction results and summaries are frozen dataclasses so the
walker can branch over them with exhaustive matching.
"""

from __future__ import annotations

import json
import unicodedata
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cepcollector.common import postal_codes

# =============================================================================
# Address records
# =============================================================================


class AddressRecord(BaseModel):
    """One postal address entry.

    Field names are English; the aliases are the field names used in the
    canonical dataset file (``cep, logradouro, bairro, cidade, estado,
    localidade``). Unknown fields found in the dataset are preserved.

    Example:
        record = AddressRecord(
            code="38400-100", street="Avenida Afonso Pena",
            neighborhood="Centro", city="Uberlândia", region="MG",
        )
        record.to_dataset_dict()["logradouro"]  # "Avenida Afonso Pena"
    """

    model_config = ConfigDict(
        frozen=True, populate_by_name=True, extra="allow"
    )

    code: str = Field(alias="cep")
    street: str = Field(default="", alias="logradouro")
    neighborhood: str = Field(default="", alias="bairro")
    city: str = Field(default="", alias="cidade")
    region: str = Field(default="", alias="estado")
    locality: str | None = Field(default=None, alias="localidade")

    @field_validator("code")
    @classmethod
    def _check_code(cls, value: str) -> str:
        value = value.strip()
        if not postal_codes.DATASET_CODE_RE.match(value):
            raise ValueError(f"invalid postal code {value!r}")
        return value

    @property
    def code_key(self) -> str:
        """The digit-only form of the code, used for deduplication."""
        return postal_codes.digits(self.code)

    @property
    def sort_key(self) -> tuple[str, str, str]:
        """Canonical dataset ordering: region, then city, then street."""
        return (self.region, self.city, self.street)

    def to_dataset_dict(self) -> dict[str, Any]:
        """Serialize using the dataset field names.

        ``localidade`` is omitted when unset; extra fields are kept as read,
        nulls included.
        """
        data = self.model_dump(by_alias=True)
        if self.locality is None:
            data.pop("localidade", None)
        return data


# =============================================================================
# Query keys
# =============================================================================


@dataclass(frozen=True)
class PostalCodeKey:
    """Direct lookup of a single postal code.

    Attributes:
        code: The code formatted as ``NNNNN-NNN``.
    """

    code: str

    def __str__(self) -> str:
        return self.code


@dataclass(frozen=True)
class LocalityKey:
    """One result page of a city/region locality lookup.

    Attributes:
        city: City name as typed into the locality form.
        region: Two-letter region code selected in the region dropdown.
        page: 1-based result page index within the dialogue.
    """

    city: str
    region: str
    page: int = 1

    @property
    def letter(self) -> str:
        """Initial-letter index entry for the city (accents removed)."""
        decomposed = unicodedata.normalize("NFD", self.city.strip())
        for char in decomposed:
            if char.isalpha() and not unicodedata.combining(char):
                return char.upper()
        return ""

    def __str__(self) -> str:
        return f"{self.city}/{self.region} p{self.page}"


QueryKey = PostalCodeKey | LocalityKey


# =============================================================================
# Extraction results
# =============================================================================

RawFields = dict[str, str]


class FailureReason(Enum):
    """Why a driver call failed.

    Values:
        SELECTOR_TIMEOUT: An expected element did not appear in time.
        NAVIGATION_ERROR: The site could not be reached or navigated.
        UNEXPECTED_PAGE: The page could not be interpreted at all.
    """

    SELECTOR_TIMEOUT = "selector_timeout"
    NAVIGATION_ERROR = "navigation_error"
    UNEXPECTED_PAGE = "unexpected_page"


@dataclass(frozen=True)
class Found:
    """The result page held at least one usable row.

    Attributes:
        rows: Raw canonical-field dicts, one per address on the page.
    """

    rows: tuple[RawFields, ...]


@dataclass(frozen=True)
class NotFound:
    """The result page held no row with both street and city."""

    detail: str = ""


@dataclass(frozen=True)
class Failed:
    """The query could not be completed."""

    reason: FailureReason
    detail: str = ""


ExtractionResult = Found | NotFound | Failed


@dataclass(frozen=True)
class Rejected:
    """A raw row the normalizer refused to turn into an AddressRecord."""

    reason: str
    raw: RawFields = field(default_factory=dict)


# =============================================================================
# Run parameters
# =============================================================================


class RangeWalk(BaseModel):
    """Walk a numeric postal-code range.

    Attributes:
        start_code: First code, inclusive.
        end_code: Last code, inclusive.
        max_results: Maximum number of codes to query.
        region: Region stamped on records whose page shows none.
    """

    mode: Literal["range"] = "range"
    start_code: str
    end_code: str
    max_results: int = Field(default=100, ge=1)
    region: str | None = None

    @field_validator("start_code", "end_code")
    @classmethod
    def _format(cls, value: str) -> str:
        if not postal_codes.is_valid(value):
            raise ValueError(f"invalid postal code {value!r}")
        return postal_codes.format_code(value)

    @field_validator("region")
    @classmethod
    def _check_region(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if len(value) != 2 or not value.isalpha():
            raise ValueError(f"invalid region {value!r}")
        return value.upper()


class LocalityWalk(BaseModel):
    """Walk the result pages of a city/region locality lookup.

    Attributes:
        city: City name.
        region: Two-letter region code.
        max_results: Maximum number of records to collect.
    """

    mode: Literal["locality"] = "locality"
    city: str = Field(min_length=1)
    region: str = "MG"
    max_results: int = Field(default=500, ge=1)

    @field_validator("region")
    @classmethod
    def _check_region(cls, value: str) -> str:
        value = value.strip()
        if len(value) != 2 or not value.isalpha():
            raise ValueError(f"invalid region {value!r}")
        return value.upper()


WalkRequest = RangeWalk | LocalityWalk


# =============================================================================
# Reporting
# =============================================================================


class RunStatus(Enum):
    """Final status of a pipeline run."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RunSummary:
    """Aggregate counters for one pipeline run.

    Attributes:
        mode: "range", "locality" or "import".
        status: How the run ended.
        processed: Query keys attempted (or raw rows read, for imports).
        found: Records that passed normalization.
        failed: Query keys whose extraction failed.
        rejected: Raw rows the normalizer rejected.
        added: Records newly written to the dataset.
        duplicates: Records discarded because their code already existed.
        new_regions: Regions that first appeared in the dataset in this run.
        elapsed_seconds: Wall-clock duration of the run.
        error: Description of the fatal error, if any.
    """

    mode: str
    status: RunStatus
    processed: int = 0
    found: int = 0
    failed: int = 0
    rejected: int = 0
    added: int = 0
    duplicates: int = 0
    new_regions: tuple[str, ...] = ()
    elapsed_seconds: float = 0.0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["new_regions"] = list(self.new_regions)
        data["elapsed_seconds"] = round(self.elapsed_seconds, 3)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)
