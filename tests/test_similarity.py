"""Tests for trigram similarity and distance helpers."""

import pytest

from pipelines.similarity import haversine_m, jaccard, normalize_text, trigrams


SAMPLES = [
    "Apartament 2 camere Unirii",
    "2 camere zona Unirii",
    "Garsonieră Titan, bloc nou!",
    "Casa Baneasa",
    "   ",
    "x",
]


class TestNormalizeText:
    def test_strips_punctuation_and_diacritics(self):
        assert normalize_text("Garsonieră Ștefan-cel-Mare!") == "garsoniera stefancelmare"

    def test_underscores_are_removed(self):
        assert normalize_text("bloc_nou") == "blocnou"

    def test_empty(self):
        assert normalize_text(None) == ""
        assert normalize_text("") == ""


class TestTrigrams:
    def test_padding(self):
        assert trigrams("ab") == {"  a", " ab", "ab ", "b  "}

    def test_case_and_accents_fold(self):
        assert trigrams("ȘOSEA") == trigrams("sosea")


class TestJaccard:
    def test_identical_non_empty_is_one(self):
        for sample in SAMPLES:
            assert jaccard(sample, sample) == 1.0

    def test_empty_input_is_zero(self):
        assert jaccard("", "abc") == 0.0
        assert jaccard("abc", "") == 0.0
        assert jaccard(None, None) == 0.0

    @pytest.mark.parametrize("a", SAMPLES)
    @pytest.mark.parametrize("b", SAMPLES)
    def test_symmetric_and_bounded(self, a, b):
        assert jaccard(a, b) == jaccard(b, a)
        assert 0.0 <= jaccard(a, b) <= 1.0

    def test_disjoint_text(self):
        assert jaccard("Casa Baneasa", "Studio Titan") == 0.0

    def test_partial_overlap(self):
        score = jaccard("Apartament 2 camere Unirii", "2 camere zona Unirii")
        assert 0.35 < score < 0.5


class TestHaversine:
    def test_zero_distance(self):
        assert haversine_m(44.4274, 26.1032, 44.4274, 26.1032) == 0.0

    def test_short_distance(self):
        meters = haversine_m(44.4274, 26.1032, 44.4275, 26.1033)
        assert 10 < meters < 20

    def test_one_degree_latitude(self):
        assert haversine_m(0.0, 0.0, 1.0, 0.0) == pytest.approx(111_195, rel=1e-3)
