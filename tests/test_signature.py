"""Tests for deterministic grouping signatures."""

import pytest

from listing_schema import ListingFeatures
from pipelines.signature import canonical_signature, signature_for


BASE = dict(lat=44.4274, lng=26.1032, area_m2=55, price=95_400, level=3, year_built=1978)


class TestCanonicalSignature:
    def test_format(self):
        assert canonical_signature(**BASE) == "geo:44.4274,26.1032|m2:55|k:95|L:3|Y:1978"

    def test_optional_qualifiers_render_as_dash(self):
        key = canonical_signature(lat=44.4274, lng=26.1032, area_m2=55, price=95_400)
        assert key == "geo:44.4274,26.1032|m2:55|k:95|L:-|Y:-"

    @pytest.mark.parametrize("missing", ["lat", "lng", "area_m2", "price"])
    def test_missing_required_field_yields_none(self, missing):
        values = dict(BASE)
        values[missing] = None
        assert canonical_signature(**values) is None

    def test_nearby_coordinates_round_to_same_key(self):
        first = canonical_signature(**BASE)
        second = canonical_signature(**{**BASE, "lat": 44.42741})
        assert first == second

    def test_price_band_and_area_rounding(self):
        assert canonical_signature(**{**BASE, "price": 95_499}) == canonical_signature(**BASE)
        assert canonical_signature(**{**BASE, "area_m2": 55.4}) == canonical_signature(**BASE)
        assert "|k:96|" in canonical_signature(**{**BASE, "price": 95_500})
        assert "|m2:56|" in canonical_signature(**{**BASE, "area_m2": 55.5})

    @pytest.mark.parametrize(
        "field,value",
        [
            ("lat", 44.4280),
            ("lng", 26.1040),
            ("area_m2", 57),
            ("price", 97_000),
            ("level", 4),
            ("year_built", 1980),
        ],
    )
    def test_any_rounded_difference_changes_key(self, field, value):
        assert canonical_signature(**{**BASE, field: value}) != canonical_signature(**BASE)

    def test_level_zero_is_kept(self):
        assert "|L:0|" in canonical_signature(**{**BASE, "level": 0})

    def test_trailing_zeros_are_dropped(self):
        key = canonical_signature(lat=44.4, lng=26.0, area_m2=55.0, price=100_000)
        assert key.startswith("geo:44.4,26|m2:55|k:100|")

    def test_negative_coordinates(self):
        key = canonical_signature(lat=-33.86781, lng=151.20732, area_m2=80, price=250_000)
        assert key.startswith("geo:-33.8678,151.2073|")


def test_signature_for_features():
    features = ListingFeatures(**BASE, title="Apartament 2 camere")
    assert signature_for(features) == canonical_signature(**BASE)
    assert signature_for(ListingFeatures(title="no numbers")) is None


@pytest.mark.parametrize("missing", ["lat", "lng", "area_m2", "price"])
@pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_required_field_yields_none(missing, value):
    assert canonical_signature(**{**BASE, missing: value}) is None


def test_non_finite_qualifiers_render_as_dash():
    key = canonical_signature(**{**BASE, "level": float("nan"), "year_built": float("inf")})
    assert key.endswith("|L:-|Y:-")
