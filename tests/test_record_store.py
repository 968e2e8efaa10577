"""Tests for the in-memory and Parquet record stores."""

from datetime import timedelta

import pytest

from listing_schema import Edge, Group, Listing, ListingFeatures, Snapshot
from pipelines.record_store import (
    DedupIntegrityError,
    GroupNotFoundError,
    InMemoryRecordStore,
    ListingAlreadyGroupedError,
    ListingNotFoundError,
    ParquetRecordStore,
    SignatureConflictError,
)
from conftest import NOW


def listing(listing_id, hours_ago=1, group_id=None, **features):
    return Listing(
        id=listing_id,
        source_url=f"https://www.imobiliare.ro/oferta/{listing_id}",
        features=ListingFeatures(**features),
        created_at=NOW - timedelta(hours=hours_ago),
        group_id=group_id,
    )


class TestInMemoryRecordStore:
    def test_duplicate_listing_rejected(self):
        store = InMemoryRecordStore()
        store.add_listing(listing("L1"))
        with pytest.raises(ValueError):
            store.add_listing(listing("L1"))

    def test_returned_records_are_copies(self):
        store = InMemoryRecordStore()
        store.add_listing(listing("L1"))
        fetched = store.get_listing("L1")
        fetched.group_id = "G9"
        assert store.get_listing("L1").group_id is None

    def test_signature_is_unique(self):
        store = InMemoryRecordStore()
        store.create_group(Group(id="G1", signature="geo:1,1|m2:1|k:1|L:-|Y:-"))
        with pytest.raises(SignatureConflictError) as excinfo:
            store.create_group(Group(id="G2", signature="geo:1,1|m2:1|k:1|L:-|Y:-"))
        assert excinfo.value.signature == "geo:1,1|m2:1|k:1|L:-|Y:-"
        assert store.find_group_by_signature("geo:1,1|m2:1|k:1|L:-|Y:-").id == "G1"

    def test_groups_without_signature_do_not_conflict(self):
        store = InMemoryRecordStore()
        store.create_group(Group(id="G1"))
        store.create_group(Group(id="G2"))
        assert {group.id for group in store.all_groups()} == {"G1", "G2"}

    def test_update_group(self):
        store = InMemoryRecordStore()
        store.create_group(Group(id="G1", signature="sig"))
        assert store.update_group("G1", member_count=3).member_count == 3
        with pytest.raises(ValueError):
            store.update_group("G1", signature="other")
        with pytest.raises(ValueError):
            store.update_group("G1", colour="red")
        with pytest.raises(GroupNotFoundError):
            store.update_group("missing", member_count=1)

    def test_conditional_group_write(self):
        store = InMemoryRecordStore()
        store.add_listing(listing("L1"))
        assert store.set_listing_group("L1", "G1", only_if_ungrouped=True).group_id == "G1"
        with pytest.raises(ListingAlreadyGroupedError) as excinfo:
            store.set_listing_group("L1", "G2", only_if_ungrouped=True)
        assert excinfo.value.group_id == "G1"
        assert store.get_listing("L1").group_id == "G1"
        assert store.set_listing_group("L1", "G2").group_id == "G2"

    def test_unlinked_listing_ids(self):
        store = InMemoryRecordStore()
        store.create_group(Group(id="G1"))
        store.add_listing(listing("linked", group_id="G1"))
        store.add_listing(listing("unlinked", group_id="G1", hours_ago=2))
        store.add_listing(listing("ungrouped"))
        store.upsert_edge(Edge(group_id="G1", listing_id="linked", score=0.5))
        assert store.unlinked_listing_ids() == ["unlinked"]

    def test_set_group_of_unknown_listing(self):
        with pytest.raises(ListingNotFoundError):
            InMemoryRecordStore().set_listing_group("missing", "G1")

    def test_edge_upsert_replaces_same_pair(self):
        store = InMemoryRecordStore()
        store.add_listing(listing("L1"))
        store.create_group(Group(id="G1"))
        store.upsert_edge(Edge(group_id="G1", listing_id="L1", score=0.5))
        store.upsert_edge(Edge(group_id="G1", listing_id="L1", score=0.9))
        [edge] = store.edges_for_listing("L1")
        assert edge.score == 0.9

    def test_edge_requires_group_and_listing(self):
        store = InMemoryRecordStore()
        store.add_listing(listing("L1"))
        with pytest.raises(GroupNotFoundError):
            store.upsert_edge(Edge(group_id="G1", listing_id="L1", score=0.5))
        store.create_group(Group(id="G1"))
        with pytest.raises(ListingNotFoundError):
            store.upsert_edge(Edge(group_id="G1", listing_id="L2", score=0.5))

    def test_recent_grouped_listings(self):
        store = InMemoryRecordStore()
        store.add_listing(listing("old", hours_ago=24 * 50, group_id="G1"))
        store.add_listing(listing("ungrouped", hours_ago=1))
        store.add_listing(listing("self", hours_ago=1, group_id="G1"))
        store.add_listing(listing("a", hours_ago=3, group_id="G1"))
        store.add_listing(listing("b", hours_ago=2, group_id="G2"))

        recent = store.recent_grouped_listings(since=NOW - timedelta(days=45), limit=80, exclude_id="self")
        assert [item.id for item in recent] == ["b", "a"]
        assert [item.id for item in store.recent_grouped_listings(NOW - timedelta(days=45), limit=1)] == ["self"]

    def test_ungrouped_ids_oldest_first(self):
        store = InMemoryRecordStore()
        store.add_listing(listing("new", hours_ago=1))
        store.add_listing(listing("old", hours_ago=5))
        store.add_listing(listing("grouped", hours_ago=3, group_id="G1"))
        assert store.ungrouped_listing_ids() == ["old", "new"]

    def test_group_members_detects_dangling_edge(self):
        store = InMemoryRecordStore()
        store.add_listing(listing("L1"))
        store.create_group(Group(id="G1"))
        store.upsert_edge(Edge(group_id="G1", listing_id="L1", score=0.5))
        del store._listings["L1"]
        with pytest.raises(DedupIntegrityError):
            store.group_members("G1")


class TestParquetRecordStore:
    def test_round_trip(self, tmp_path):
        store = ParquetRecordStore(tmp_path / "store")
        store.add_listing(
            listing(
                "L1",
                group_id="G1",
                title="Apartament 2 camere",
                price=95_000,
                area_m2=55,
                rooms=2,
                lat=44.4274,
                lng=26.1032,
                photos=["a.jpg", "b.jpg"],
            )
        )
        store.add_listing(listing("L2", hours_ago=2))
        store.create_group(Group(id="G1", signature="sig-1", city="Bucuresti", member_count=1, created_at=NOW))
        store.upsert_edge(
            Edge(group_id="G1", listing_id="L1", score=1.0, reasons={"type": "signature"}, updated_at=NOW)
        )
        store.add_snapshot(
            Snapshot(
                id="S1",
                group_id="G1",
                title="Apartament 2 camere",
                price=95_000,
                area_m2=55,
                rooms=2,
                level=None,
                floor_raw=None,
                year_built=None,
                lat=44.4274,
                lng=26.1032,
                photo="a.jpg",
                domains=["imobiliare.ro"],
                price_min=95_000,
                price_max=95_000,
                sources=1,
                explain={"picked": "L1", "reason": "completeness"},
                created_at=NOW,
            )
        )
        store.flush()

        reopened = ParquetRecordStore.open(tmp_path / "store")

        restored = reopened.get_listing("L1")
        assert restored.group_id == "G1"
        assert restored.features.title == "Apartament 2 camere"
        assert restored.features.price == 95_000
        assert restored.features.rooms == 2
        assert restored.features.photos == ["a.jpg", "b.jpg"]
        assert restored.created_at == NOW - timedelta(hours=1)
        assert reopened.get_listing("L2").group_id is None
        assert reopened.find_group_by_signature("sig-1").city == "Bucuresti"
        [edge] = reopened.edges_for_group("G1")
        assert edge.reasons == {"type": "signature"}
        snapshot = reopened.latest_snapshot("G1")
        assert snapshot.domains == ["imobiliare.ro"]
        assert snapshot.explain["picked"] == "L1"
        assert reopened.ungrouped_listing_ids() == ["L2"]

    def test_signature_uniqueness_survives_reload(self, tmp_path):
        store = ParquetRecordStore(tmp_path)
        store.create_group(Group(id="G1", signature="sig-1", created_at=NOW))
        store.flush()

        reopened = ParquetRecordStore.open(tmp_path)
        with pytest.raises(SignatureConflictError):
            reopened.create_group(Group(id="G2", signature="sig-1"))

    def test_open_empty_directory(self, tmp_path):
        store = ParquetRecordStore.open(tmp_path / "fresh")
        assert store.all_groups() == []
        assert store.ungrouped_listing_ids() == []
