"""Tunable policy constants for the deduplication engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional, Tuple


JOIN_THRESHOLD = 0.7
ADHOC_SCORE = 0.5
SIGNATURE_SCORE = 1.0

WEIGHT_TEXT = 0.35
WEIGHT_GEO = 0.35
WEIGHT_AREA = 0.15
WEIGHT_PRICE = 0.15

# (max distance in meters, sub-score), checked in order.
GEO_STEPS: Tuple[Tuple[float, float], ...] = ((60.0, 1.0), (120.0, 0.6), (250.0, 0.3))
# (max relative difference, sub-score), checked in order.
AREA_BANDS: Tuple[Tuple[float, float], ...] = ((0.05, 1.0), (0.10, 0.5))
PRICE_BANDS: Tuple[Tuple[float, float], ...] = ((0.07, 1.0), (0.12, 0.5))

CANDIDATE_LIMIT = 80
CANDIDATE_WINDOW_DAYS = 45

INVALIDATE_TIMEOUT = 10.0

ENV_PREFIX = "DEDUP_"


@dataclass(frozen=True)
class DedupSettings:
    join_threshold: float = JOIN_THRESHOLD
    adhoc_score: float = ADHOC_SCORE
    signature_score: float = SIGNATURE_SCORE
    weight_text: float = WEIGHT_TEXT
    weight_geo: float = WEIGHT_GEO
    weight_area: float = WEIGHT_AREA
    weight_price: float = WEIGHT_PRICE
    geo_steps: Tuple[Tuple[float, float], ...] = GEO_STEPS
    area_bands: Tuple[Tuple[float, float], ...] = AREA_BANDS
    price_bands: Tuple[Tuple[float, float], ...] = PRICE_BANDS
    candidate_limit: int = CANDIDATE_LIMIT
    candidate_window_days: int = CANDIDATE_WINDOW_DAYS
    fuzzy_on_signature_miss: bool = False
    invalidate_url: Optional[str] = None
    invalidate_secret: Optional[str] = field(default=None, repr=False)
    invalidate_timeout: float = INVALIDATE_TIMEOUT

    @property
    def weights(self) -> Dict[str, float]:
        return {
            "title": self.weight_text,
            "geo": self.weight_geo,
            "area": self.weight_area,
            "price": self.weight_price,
        }

    def validate(self) -> "DedupSettings":
        """Raise ValueError when a policy value cannot produce valid scores."""
        for name in ("join_threshold", "adhoc_score", "signature_score"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must lie in [0, 1], got {value}")
        for name, value in self.weights.items():
            if value < 0:
                raise ValueError(f"Weight for {name} must not be negative, got {value}")
        if self.candidate_limit <= 0:
            raise ValueError(f"candidate_limit must be positive, got {self.candidate_limit}")
        if self.candidate_window_days <= 0:
            raise ValueError(
                f"candidate_window_days must be positive, got {self.candidate_window_days}"
            )
        if self.invalidate_timeout <= 0:
            raise ValueError(f"invalidate_timeout must be positive, got {self.invalidate_timeout}")
        return self

    def with_overrides(self, **overrides: object) -> "DedupSettings":
        """Return a copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if not changes:
            return self
        return replace(self, **changes).validate()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DedupSettings":
        """Build settings from DEDUP_* environment variables."""
        env = os.environ if environ is None else environ
        values: Dict[str, object] = {}
        for name, caster in _ENV_FIELDS.items():
            key = ENV_PREFIX + name.upper()
            raw = env.get(key)
            if raw is None or not raw.strip():
                continue
            try:
                values[name] = caster(raw.strip())
            except ValueError as exc:
                raise ValueError(f"Invalid value for {key}: {raw!r}") from exc
        return cls(**values).validate()


def _env_flag(raw: str) -> bool:
    value = raw.lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Not a boolean flag: {raw!r}")


_ENV_FIELDS = {
    "join_threshold": float,
    "adhoc_score": float,
    "weight_text": float,
    "weight_geo": float,
    "weight_area": float,
    "weight_price": float,
    "candidate_limit": int,
    "candidate_window_days": int,
    "fuzzy_on_signature_miss": _env_flag,
    "invalidate_url": str,
    "invalidate_secret": str,
    "invalidate_timeout": float,
}
