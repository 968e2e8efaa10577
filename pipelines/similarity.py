"""Trigram text similarity and geographic distance helpers."""

from __future__ import annotations

import math
import re
import unicodedata
from typing import Optional, Set

_STRIP_RE = re.compile(r"[^\w\s]|_")
_PAD = "  "


def normalize_text(value: Optional[str]) -> str:
    """Lowercase, NFKD-fold and drop everything but letters, digits and whitespace."""
    if not value:
        return ""
    folded = unicodedata.normalize("NFKD", value.lower())
    # Combining marks left behind by NFKD are neither letters nor digits.
    folded = "".join(ch for ch in folded if not unicodedata.combining(ch))
    return _STRIP_RE.sub("", folded)


def trigrams(value: Optional[str]) -> Set[str]:
    """Return the set of overlapping 3-character windows of the padded text."""
    padded = f"{_PAD}{normalize_text(value)}{_PAD}"
    return {padded[idx : idx + 3] for idx in range(len(padded) - 2)}


def jaccard(a: Optional[str], b: Optional[str]) -> float:
    """Jaccard index of the trigram sets of two strings, 0 when either is empty."""
    if not a or not b:
        return 0.0
    grams_a = trigrams(a)
    grams_b = trigrams(b)
    shared = len(grams_a & grams_b)
    denominator = len(grams_a) + len(grams_b) - shared
    if denominator <= 0:
        return 0.0
    return shared / denominator


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return haversine distance in meters."""
    radius = 6_371_000  # meters
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    a = min(1.0, a)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return radius * c
