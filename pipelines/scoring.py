"""Weighted multi-feature similarity between two listings."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

from listing_schema import ListingFeatures
from pipelines.similarity import haversine_m, jaccard
from settings import DedupSettings


@dataclass(frozen=True)
class FuzzyScore:
    score: float
    reasons: Dict[str, Any] = field(default_factory=dict)


def step_score(value: float, steps: Sequence[Tuple[float, float]]) -> float:
    """Return the sub-score of the first step whose limit covers ``value``."""
    for limit, score in steps:
        if value <= limit:
            return score
    return 0.0


def relative_diff(a: Optional[float], b: Optional[float]) -> Optional[float]:
    """Return |a - b| / max(a, b), or None when either side is missing or not positive."""
    if not a or not b or a <= 0 or b <= 0:
        return None
    return abs(a - b) / max(a, b)


def _factor(sub_score: float, weight: float, **detail: Any) -> Dict[str, Any]:
    entry: Dict[str, Any] = dict(detail)
    entry.update({"score": sub_score, "weight": weight, "contribution": sub_score * weight})
    return entry


def fuzzy_score(
    a: ListingFeatures,
    b: ListingFeatures,
    settings: Optional[DedupSettings] = None,
) -> FuzzyScore:
    """Score how likely two feature bundles describe the same property.

    Each factor is scored only when both sides carry its inputs. Missing data
    adds nothing and leaves no entry in ``reasons``, so it neither helps nor
    hurts a match.
    """
    settings = settings or DedupSettings()
    weights = settings.weights
    total = 0.0
    reasons: Dict[str, Any] = {}

    text_sim = jaccard(a.text, b.text)
    if text_sim > 0:
        entry = _factor(text_sim, weights["title"], similarity=text_sim)
        total += entry["contribution"]
        reasons["title"] = entry

    if a.has_coordinates and b.has_coordinates:
        meters = haversine_m(a.lat, a.lng, b.lat, b.lng)
        entry = _factor(step_score(meters, settings.geo_steps), weights["geo"], meters=round(meters))
        total += entry["contribution"]
        reasons["geo"] = entry

    area_rel = relative_diff(a.area_m2, b.area_m2)
    if area_rel is not None:
        entry = _factor(step_score(area_rel, settings.area_bands), weights["area"], rel=area_rel)
        total += entry["contribution"]
        reasons["area"] = entry

    price_rel = relative_diff(a.price, b.price)
    if price_rel is not None:
        entry = _factor(step_score(price_rel, settings.price_bands), weights["price"], rel=price_rel)
        total += entry["contribution"]
        reasons["price"] = entry

    return FuzzyScore(score=max(0.0, min(1.0, total)), reasons=reasons)
