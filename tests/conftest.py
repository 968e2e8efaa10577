"""Shared fixtures for engine tests."""

from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from listing_schema import Listing, ListingFeatures
from pipelines.grouping import GroupResolver
from pipelines.record_store import InMemoryRecordStore
from tools.cache_hooks import RecordingInvalidator


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def invalidator():
    return RecordingInvalidator()


@pytest.fixture
def resolver(store, invalidator, clock):
    return GroupResolver(store, invalidator=invalidator, clock=clock)


@pytest.fixture
def make_listing(store, clock):
    """Insert a listing into the store and return it."""
    ids = count(1)

    def _make(
        source_url: str = "https://www.imobiliare.ro/oferta/1",
        created_at: datetime = None,
        listing_id: str = None,
        **features,
    ) -> Listing:
        listing = Listing(
            id=listing_id or f"L{next(ids)}",
            source_url=source_url,
            features=ListingFeatures(**features),
            created_at=created_at or clock.now - timedelta(hours=1),
        )
        return store.add_listing(listing)

    return _make
