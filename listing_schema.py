"""Records exchanged between the resolver, the snapshot builder and the store."""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pandas as pd


FEATURES_VERSION = 1


@dataclass(frozen=True)
class ListingFeatures:
    price: Optional[float] = None
    area_m2: Optional[float] = None
    rooms: Optional[int] = None
    level: Optional[int] = None
    floor_raw: Optional[str] = None
    year_built: Optional[int] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    title: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    area_slug: Optional[str] = None
    photos: List[str] = field(default_factory=list)
    version: int = FEATURES_VERSION

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None

    @property
    def text(self) -> str:
        """Title, falling back to the raw address."""
        return self.title or self.address or ""


@dataclass
class Listing:
    id: str
    source_url: str
    features: ListingFeatures
    created_at: datetime
    group_id: Optional[str] = None


@dataclass
class Group:
    id: str
    signature: Optional[str] = None
    city: Optional[str] = None
    area_slug: Optional[str] = None
    centroid_lat: Optional[float] = None
    centroid_lng: Optional[float] = None
    member_count: int = 0
    canonical_url: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Edge:
    group_id: str
    listing_id: str
    score: float
    reasons: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None


@dataclass
class Snapshot:
    id: str
    group_id: str
    title: Optional[str]
    price: Optional[float]
    area_m2: Optional[float]
    rooms: Optional[int]
    level: Optional[int]
    floor_raw: Optional[str]
    year_built: Optional[int]
    lat: Optional[float]
    lng: Optional[float]
    photo: Optional[str]
    domains: List[str]
    price_min: Optional[float]
    price_max: Optional[float]
    sources: int
    explain: Dict[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class ResolveResult:
    group_id: str
    match_score: float
    match_reasons: Dict[str, Any]
    method: str
    created_group: bool = False


FEATURE_COLUMNS = [
    "price",
    "area_m2",
    "rooms",
    "level",
    "floor_raw",
    "year_built",
    "lat",
    "lng",
    "title",
    "address",
    "city",
    "area_slug",
    "photos",
]

LISTING_COLUMNS = ["id", "source_url", "created_at", "group_id", "features_version"] + FEATURE_COLUMNS

GROUP_COLUMNS = [
    "id",
    "signature",
    "city",
    "area_slug",
    "centroid_lat",
    "centroid_lng",
    "member_count",
    "canonical_url",
    "created_at",
]

EDGE_COLUMNS = ["group_id", "listing_id", "score", "reasons", "updated_at"]

SNAPSHOT_COLUMNS = [
    "id",
    "group_id",
    "title",
    "price",
    "area_m2",
    "rooms",
    "level",
    "floor_raw",
    "year_built",
    "lat",
    "lng",
    "photo",
    "domains",
    "price_min",
    "price_max",
    "sources",
    "explain",
    "created_at",
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def optional_value(value: Any) -> Any:
    """Coerce pandas NA and empty strings to None."""
    if value is None:
        return None
    if hasattr(value, "__len__") and not isinstance(value, str):
        return value
    if isinstance(value, float) and math.isnan(value):
        return None
    if pd.isna(value):
        return None
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    return value


def numeric_value(value: Any) -> Optional[float]:
    """Return numeric value as float or None."""
    value = optional_value(value)
    if value is None or isinstance(value, (list, tuple, dict)):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def int_value(value: Any) -> Optional[int]:
    number = numeric_value(value)
    if number is None:
        return None
    return int(round(number))


def timestamp_value(value: Any) -> Optional[datetime]:
    """Parse a timestamp cell into an aware UTC datetime."""
    value = optional_value(value)
    if value is None:
        return None
    parsed = pd.to_datetime(value, errors="coerce", utc=True)
    if pd.isna(parsed):
        return None
    return parsed.to_pydatetime()


def _string_list(raw_value: Any) -> List[str]:
    raw_value = optional_value(raw_value)
    if raw_value is None:
        return []
    if hasattr(raw_value, "tolist") and not isinstance(raw_value, str):
        raw_value = raw_value.tolist()
    if isinstance(raw_value, str):
        stripped = raw_value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                return [stripped]
            return [str(item).strip() for item in parsed if item is not None and str(item).strip()]
        return [stripped]
    if isinstance(raw_value, (list, tuple)):
        return [str(item).strip() for item in raw_value if item is not None and str(item).strip()]
    return [str(raw_value)]


def _text_value(value: Any) -> Optional[str]:
    value = optional_value(value)
    if value is None:
        return None
    return str(value)


def features_from_row(row: Dict[str, Any]) -> ListingFeatures:
    """Build a feature record from a loosely typed row, ignoring unknown keys."""
    return ListingFeatures(
        price=numeric_value(row.get("price")),
        area_m2=numeric_value(row.get("area_m2")),
        rooms=int_value(row.get("rooms")),
        level=int_value(row.get("level")),
        floor_raw=_text_value(row.get("floor_raw")),
        year_built=int_value(row.get("year_built")),
        lat=numeric_value(row.get("lat")),
        lng=numeric_value(row.get("lng")),
        title=_text_value(row.get("title")),
        address=_text_value(row.get("address")),
        city=_text_value(row.get("city")),
        area_slug=_text_value(row.get("area_slug")),
        photos=_string_list(row.get("photos")),
    )


def listing_from_row(row: Dict[str, Any]) -> Listing:
    listing_id = _text_value(row.get("id"))
    if listing_id is None:
        raise ValueError("Listing row has no id")
    return Listing(
        id=listing_id,
        source_url=_text_value(row.get("source_url")) or "",
        features=features_from_row(row),
        created_at=timestamp_value(row.get("created_at")) or utcnow(),
        group_id=_text_value(row.get("group_id")),
    )


def listing_to_row(listing: Listing) -> Dict[str, Any]:
    features = asdict(listing.features)
    row: Dict[str, Any] = {
        "id": listing.id,
        "source_url": listing.source_url,
        "created_at": listing.created_at,
        "group_id": listing.group_id,
        "features_version": features.pop("version"),
    }
    row.update({column: features.get(column) for column in FEATURE_COLUMNS})
    row["photos"] = json.dumps(row["photos"] or [], ensure_ascii=False)
    return row


def group_from_row(row: Dict[str, Any]) -> Group:
    return Group(
        id=str(row["id"]),
        signature=_text_value(row.get("signature")),
        city=_text_value(row.get("city")),
        area_slug=_text_value(row.get("area_slug")),
        centroid_lat=numeric_value(row.get("centroid_lat")),
        centroid_lng=numeric_value(row.get("centroid_lng")),
        member_count=int_value(row.get("member_count")) or 0,
        canonical_url=_text_value(row.get("canonical_url")),
        created_at=timestamp_value(row.get("created_at")),
    )


def group_to_row(group: Group) -> Dict[str, Any]:
    return {column: getattr(group, column) for column in GROUP_COLUMNS}


def _json_dict(raw_value: Any) -> Dict[str, Any]:
    raw_value = optional_value(raw_value)
    if raw_value is None:
        return {}
    if isinstance(raw_value, dict):
        return raw_value
    parsed = json.loads(raw_value)
    return parsed if isinstance(parsed, dict) else {}


def edge_from_row(row: Dict[str, Any]) -> Edge:
    return Edge(
        group_id=str(row["group_id"]),
        listing_id=str(row["listing_id"]),
        score=numeric_value(row.get("score")) or 0.0,
        reasons=_json_dict(row.get("reasons")),
        updated_at=timestamp_value(row.get("updated_at")),
    )


def edge_to_row(edge: Edge) -> Dict[str, Any]:
    row = {column: getattr(edge, column) for column in EDGE_COLUMNS}
    row["reasons"] = json.dumps(edge.reasons, ensure_ascii=False, sort_keys=True)
    return row


def snapshot_from_row(row: Dict[str, Any]) -> Snapshot:
    return Snapshot(
        id=str(row["id"]),
        group_id=str(row["group_id"]),
        title=_text_value(row.get("title")),
        price=numeric_value(row.get("price")),
        area_m2=numeric_value(row.get("area_m2")),
        rooms=int_value(row.get("rooms")),
        level=int_value(row.get("level")),
        floor_raw=_text_value(row.get("floor_raw")),
        year_built=int_value(row.get("year_built")),
        lat=numeric_value(row.get("lat")),
        lng=numeric_value(row.get("lng")),
        photo=_text_value(row.get("photo")),
        domains=_string_list(row.get("domains")),
        price_min=numeric_value(row.get("price_min")),
        price_max=numeric_value(row.get("price_max")),
        sources=int_value(row.get("sources")) or 0,
        explain=_json_dict(row.get("explain")),
        created_at=timestamp_value(row.get("created_at")) or utcnow(),
    )


def snapshot_to_row(snapshot: Snapshot) -> Dict[str, Any]:
    row = {column: getattr(snapshot, column) for column in SNAPSHOT_COLUMNS}
    row["domains"] = json.dumps(snapshot.domains, ensure_ascii=False)
    row["explain"] = json.dumps(snapshot.explain, ensure_ascii=False, sort_keys=True)
    return row
