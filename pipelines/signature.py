"""Deterministic composite keys for exact-match grouping."""

from __future__ import annotations

import math
from typing import Optional

from listing_schema import ListingFeatures


NO_VALUE = "-"


def _round_half_up(value: float, digits: int = 0) -> float:
    """Round halves toward +inf so 95.5 -> 96 and -0.5 -> 0."""
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def _format_number(value: float) -> str:
    """Render a rounded number without trailing zeros (44.4000 -> 44.4, 55.0 -> 55)."""
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.4f}".rstrip("0").rstrip(".")


def _known(value: Optional[float]) -> bool:
    """NaN and infinities count as missing."""
    return value is not None and math.isfinite(value)


def _qualifier(value: Optional[float]) -> str:
    if not _known(value):
        return NO_VALUE
    return _format_number(value)


def canonical_signature(
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    area_m2: Optional[float] = None,
    price: Optional[float] = None,
    level: Optional[int] = None,
    year_built: Optional[int] = None,
) -> Optional[str]:
    """Return the grouping key, or None when lat, lng, area or price is missing or not finite.

    Coordinates keep four decimals (~11 m), area is rounded to whole square
    meters and price is bucketed in thousands. Level and year are optional
    qualifiers printed as ``-`` when unknown. Callers may only compare keys for
    equality.
    """
    if not all(_known(value) for value in (lat, lng, area_m2, price)):
        return None
    lat_key = _round_half_up(lat, 4)
    lng_key = _round_half_up(lng, 4)
    area_key = _round_half_up(area_m2)
    band = _round_half_up(price / 1000)
    return (
        f"geo:{_format_number(lat_key)},{_format_number(lng_key)}"
        f"|m2:{_format_number(area_key)}"
        f"|k:{_format_number(band)}"
        f"|L:{_qualifier(level)}"
        f"|Y:{_qualifier(year_built)}"
    )


def signature_for(features: ListingFeatures) -> Optional[str]:
    return canonical_signature(
        lat=features.lat,
        lng=features.lng,
        area_m2=features.area_m2,
        price=features.price,
        level=features.level,
        year_built=features.year_built,
    )
