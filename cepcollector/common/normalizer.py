"""Raw field normalization.

Turns the raw key/value pairs extracted from a result page into an
AddressRecord, or a Rejected explaining why it could not. Pure: no I/O,
same input gives the same output.
"""

from __future__ import annotations

import re
from collections.abc import Mapping

from pydantic import ValidationError

from cepcollector.common import postal_codes
from cepcollector.data_types import AddressRecord, Rejected

# "Uberlândia/MG", "Uberlândia - MG"
_CITY_REGION_RE = re.compile(r"^(?P<city>.+?)\s*(?:/|\s-\s)\s*(?P<region>[A-Za-z]{2})$")


def clean(value: str | None) -> str:
    """Trim a raw value and collapse internal whitespace."""
    if value is None:
        return ""
    return " ".join(str(value).split())


def split_city_region(value: str) -> tuple[str, str]:
    """Split ``"City/UF"`` into its parts; plain city names get no region."""
    match = _CITY_REGION_RE.match(value)
    if match is None:
        return value, ""
    return match.group("city").strip(), match.group("region").upper()


def normalize(
    raw_fields: Mapping[str, str | None],
    expected_region: str | None = None,
) -> AddressRecord | Rejected:
    """Build an AddressRecord from raw extracted fields.

    Args:
        raw_fields: Canonical-field keyed values (code, street,
            neighborhood, city, region, locality).
        expected_region: Region known from the walk context; stamped on the
            record when the page surfaced none.

    Returns:
        The record, or Rejected if street, city or a valid code is missing.
    """
    raw = {key: clean(value) for key, value in raw_fields.items()}

    street = raw.get("street", "")
    neighborhood = raw.get("neighborhood", "")
    city, city_region = split_city_region(raw.get("city", ""))
    region = raw.get("region", "").upper()

    locality = raw.get("locality", "")
    if locality:
        locality_city, locality_region = split_city_region(locality)
        city = city or locality_city
        city_region = city_region or locality_region

    region = region or city_region or clean(expected_region).upper()

    if not street:
        return Rejected("missing street", raw)
    if not city:
        return Rejected("missing city", raw)

    code = raw.get("code", "")
    if not postal_codes.is_valid(code):
        return Rejected(f"invalid postal code {code!r}", raw)

    if region and (len(region) != 2 or not region.isalpha()):
        return Rejected(f"invalid region {region!r}", raw)

    try:
        return AddressRecord(
            code=postal_codes.format_code(code),
            street=street,
            neighborhood=neighborhood,
            city=city,
            region=region,
            locality=f"{city}/{region}" if region else None,
        )
    except ValidationError as e:
        return Rejected(str(e), raw)
