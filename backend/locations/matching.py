from __future__ import annotations

import re

from entities.types import PointEntity
from locations.types import LocationKind, SearchLocation

_ZIP_IN_TEXT_RE = re.compile(r"\b(\d{5})(?:-\d{4})?\b")
_COUNTY_SUFFIX_RE = re.compile(r"\s+(county|parish|borough)$")

US_STATE_CODES: dict[str, str] = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR",
    "california": "CA", "colorado": "CO", "connecticut": "CT", "delaware": "DE",
    "district of columbia": "DC", "florida": "FL", "georgia": "GA", "hawaii": "HI",
    "idaho": "ID", "illinois": "IL", "indiana": "IN", "iowa": "IA",
    "kansas": "KS", "kentucky": "KY", "louisiana": "LA", "maine": "ME",
    "maryland": "MD", "massachusetts": "MA", "michigan": "MI", "minnesota": "MN",
    "mississippi": "MS", "missouri": "MO", "montana": "MT", "nebraska": "NE",
    "nevada": "NV", "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM",
    "new york": "NY", "north carolina": "NC", "north dakota": "ND", "ohio": "OH",
    "oklahoma": "OK", "oregon": "OR", "pennsylvania": "PA", "puerto rico": "PR",
    "rhode island": "RI", "south carolina": "SC", "south dakota": "SD",
    "tennessee": "TN", "texas": "TX", "utah": "UT", "vermont": "VT",
    "virginia": "VA", "washington": "WA", "west virginia": "WV",
    "wisconsin": "WI", "wyoming": "WY",
}


def _norm(s: str | None) -> str:
    return " ".join((s or "").strip().lower().split())


def state_code_of(raw: str | None) -> str | None:
    s = _norm(raw)
    if not s:
        return None
    if len(s) == 2:
        return s.upper()
    return US_STATE_CODES.get(s)


def _entity_zip(entity: PointEntity) -> str | None:
    if entity.zip_code:
        return entity.zip_code.strip()[:5]
    m = _ZIP_IN_TEXT_RE.search(entity.address or "")
    return m.group(1) if m else None


def matches_place(entity: PointEntity, location: SearchLocation) -> bool:
    """
    Textual membership: does the entity's recorded city/county/state/ZIP name the
    searched place?

    Looser than the geometric test and independent of coordinates, so it also
    works for entities that were never geocoded.
    """
    loc_state = location.state_code.upper() if location.state_code else None
    ent_state = state_code_of(entity.state)

    if location.kind == LocationKind.state:
        target = loc_state or state_code_of(location.name)
        return target is not None and ent_state == target

    if loc_state and ent_state and ent_state != loc_state:
        return False

    if location.kind == LocationKind.zip:
        return _entity_zip(entity) == location.name.strip()[:5]

    if location.kind == LocationKind.county:
        want = _COUNTY_SUFFIX_RE.sub("", _norm(location.name))
        have = _COUNTY_SUFFIX_RE.sub("", _norm(entity.county))
        return bool(want) and want == have

    return bool(entity.city) and _norm(entity.city) == _norm(location.name)
