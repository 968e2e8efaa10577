"""Record store interface used by the resolver and snapshot builder.

The engine never talks to a database directly. It receives a ``RecordStore``
and only relies on the operations below: point lookups, a bounded recency
query over grouped listings, group create/update, edge upsert and snapshot
append. ``InMemoryRecordStore`` is the reference implementation and the test
fake; ``ParquetRecordStore`` persists the same tables to disk between batch
runs.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd

from listing_schema import (
    EDGE_COLUMNS,
    GROUP_COLUMNS,
    LISTING_COLUMNS,
    SNAPSHOT_COLUMNS,
    Edge,
    Group,
    Listing,
    Snapshot,
    edge_from_row,
    edge_to_row,
    group_from_row,
    group_to_row,
    listing_from_row,
    listing_to_row,
    snapshot_from_row,
    snapshot_to_row,
)

logger = logging.getLogger(__name__)


class RecordStoreError(RuntimeError):
    """Store operation failed; the caller may retry."""


class SignatureConflictError(RecordStoreError):
    """Another group already owns this signature."""

    def __init__(self, signature: str) -> None:
        super().__init__(f"Signature already assigned to a group: {signature}")
        self.signature = signature


class ListingNotFoundError(RecordStoreError):
    pass


class GroupNotFoundError(RecordStoreError):
    pass


class ListingAlreadyGroupedError(RecordStoreError):
    """A conditional group write found the listing already grouped."""

    def __init__(self, listing_id: str, group_id: str) -> None:
        super().__init__(f"Listing {listing_id} is already in group {group_id}")
        self.listing_id = listing_id
        self.group_id = group_id


class DedupIntegrityError(RecordStoreError):
    """Stored records contradict the one-listing-one-group invariant."""


def new_id() -> str:
    return uuid.uuid4().hex


class RecordStore(ABC):
    """Create/read/update access to listings, groups, edges and snapshots."""

    @abstractmethod
    def add_listing(self, listing: Listing) -> Listing:
        pass

    @abstractmethod
    def get_listing(self, listing_id: str) -> Optional[Listing]:
        pass

    @abstractmethod
    def set_listing_group(self, listing_id: str, group_id: str, only_if_ungrouped: bool = False) -> Listing:
        """Point a listing at a group.

        With ``only_if_ungrouped`` the write is a compare-and-set: it raises
        ListingAlreadyGroupedError when the listing already has a group.
        """

    @abstractmethod
    def recent_grouped_listings(
        self,
        since: datetime,
        limit: int,
        exclude_id: Optional[str] = None,
    ) -> List[Listing]:
        """Return up to ``limit`` grouped listings created at or after ``since``, newest first."""

    @abstractmethod
    def ungrouped_listing_ids(self) -> List[str]:
        pass

    @abstractmethod
    def unlinked_listing_ids(self) -> List[str]:
        """Return grouped listings that have no edge, oldest first."""

    @abstractmethod
    def get_group(self, group_id: str) -> Optional[Group]:
        pass

    @abstractmethod
    def find_group_by_signature(self, signature: str) -> Optional[Group]:
        pass

    @abstractmethod
    def create_group(self, group: Group) -> Group:
        """Insert a group; raise SignatureConflictError when its signature is taken."""

    @abstractmethod
    def update_group(self, group_id: str, **fields: object) -> Group:
        pass

    @abstractmethod
    def all_groups(self) -> List[Group]:
        pass

    @abstractmethod
    def upsert_edge(self, edge: Edge) -> Edge:
        """Insert or replace the edge for (edge.group_id, edge.listing_id)."""

    @abstractmethod
    def edges_for_listing(self, listing_id: str) -> List[Edge]:
        pass

    @abstractmethod
    def edges_for_group(self, group_id: str) -> List[Edge]:
        pass

    @abstractmethod
    def add_snapshot(self, snapshot: Snapshot) -> Snapshot:
        pass

    @abstractmethod
    def snapshots(self, group_id: str) -> List[Snapshot]:
        """Return every snapshot of a group, oldest first."""

    def latest_snapshot(self, group_id: str) -> Optional[Snapshot]:
        history = self.snapshots(group_id)
        return history[-1] if history else None

    def group_members(self, group_id: str) -> List[Listing]:
        """Return the listings linked to a group through its edges."""
        members: List[Listing] = []
        for edge in self.edges_for_group(group_id):
            listing = self.get_listing(edge.listing_id)
            if listing is None:
                raise DedupIntegrityError(
                    f"Edge {group_id}/{edge.listing_id} references a missing listing"
                )
            members.append(listing)
        return members


class InMemoryRecordStore(RecordStore):
    """Thread-safe dict-backed store enforcing one group per signature."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._listings: Dict[str, Listing] = {}
        self._groups: Dict[str, Group] = {}
        self._signatures: Dict[str, str] = {}
        self._edges: Dict[Tuple[str, str], Edge] = {}
        self._snapshots: Dict[str, List[Snapshot]] = {}

    def add_listing(self, listing: Listing) -> Listing:
        with self._lock:
            if listing.id in self._listings:
                raise ValueError(f"Listing {listing.id} already exists")
            self._listings[listing.id] = copy.copy(listing)
            return copy.copy(listing)

    def get_listing(self, listing_id: str) -> Optional[Listing]:
        with self._lock:
            listing = self._listings.get(listing_id)
            return copy.copy(listing) if listing is not None else None

    def set_listing_group(self, listing_id: str, group_id: str, only_if_ungrouped: bool = False) -> Listing:
        with self._lock:
            listing = self._listings.get(listing_id)
            if listing is None:
                raise ListingNotFoundError(f"Listing {listing_id} does not exist")
            if only_if_ungrouped and listing.group_id is not None:
                raise ListingAlreadyGroupedError(listing_id, listing.group_id)
            listing.group_id = group_id
            return copy.copy(listing)

    def recent_grouped_listings(
        self,
        since: datetime,
        limit: int,
        exclude_id: Optional[str] = None,
    ) -> List[Listing]:
        with self._lock:
            candidates = [
                listing
                for listing in self._listings.values()
                if listing.group_id is not None
                and listing.id != exclude_id
                and listing.created_at >= since
            ]
        candidates.sort(key=lambda listing: (listing.created_at, listing.id), reverse=True)
        return [copy.copy(listing) for listing in candidates[:limit]]

    def ungrouped_listing_ids(self) -> List[str]:
        with self._lock:
            pending = [listing for listing in self._listings.values() if listing.group_id is None]
        pending.sort(key=lambda listing: (listing.created_at, listing.id))
        return [listing.id for listing in pending]

    def unlinked_listing_ids(self) -> List[str]:
        with self._lock:
            linked = {listing_id for _, listing_id in self._edges}
            unlinked = [
                listing
                for listing in self._listings.values()
                if listing.group_id is not None and listing.id not in linked
            ]
        unlinked.sort(key=lambda listing: (listing.created_at, listing.id))
        return [listing.id for listing in unlinked]

    def get_group(self, group_id: str) -> Optional[Group]:
        with self._lock:
            group = self._groups.get(group_id)
            return copy.copy(group) if group is not None else None

    def find_group_by_signature(self, signature: str) -> Optional[Group]:
        with self._lock:
            group_id = self._signatures.get(signature)
            if group_id is None:
                return None
            return copy.copy(self._groups[group_id])

    def create_group(self, group: Group) -> Group:
        with self._lock:
            if group.id in self._groups:
                raise ValueError(f"Group {group.id} already exists")
            if group.signature is not None:
                if group.signature in self._signatures:
                    raise SignatureConflictError(group.signature)
                self._signatures[group.signature] = group.id
            self._groups[group.id] = copy.copy(group)
            return copy.copy(group)

    def update_group(self, group_id: str, **fields: object) -> Group:
        with self._lock:
            group = self._groups.get(group_id)
            if group is None:
                raise GroupNotFoundError(f"Group {group_id} does not exist")
            for name, value in fields.items():
                if name in ("id", "signature") or not hasattr(group, name):
                    raise ValueError(f"Group field {name!r} cannot be updated")
                setattr(group, name, value)
            return copy.copy(group)

    def all_groups(self) -> List[Group]:
        with self._lock:
            return [copy.copy(group) for group in self._groups.values()]

    def upsert_edge(self, edge: Edge) -> Edge:
        with self._lock:
            if edge.group_id not in self._groups:
                raise GroupNotFoundError(f"Group {edge.group_id} does not exist")
            if edge.listing_id not in self._listings:
                raise ListingNotFoundError(f"Listing {edge.listing_id} does not exist")
            self._edges[(edge.group_id, edge.listing_id)] = copy.copy(edge)
            return copy.copy(edge)

    def edges_for_listing(self, listing_id: str) -> List[Edge]:
        with self._lock:
            return [copy.copy(edge) for edge in self._edges.values() if edge.listing_id == listing_id]

    def edges_for_group(self, group_id: str) -> List[Edge]:
        with self._lock:
            return [copy.copy(edge) for edge in self._edges.values() if edge.group_id == group_id]

    def add_snapshot(self, snapshot: Snapshot) -> Snapshot:
        with self._lock:
            if snapshot.group_id not in self._groups:
                raise GroupNotFoundError(f"Group {snapshot.group_id} does not exist")
            self._snapshots.setdefault(snapshot.group_id, []).append(copy.copy(snapshot))
            return copy.copy(snapshot)

    def snapshots(self, group_id: str) -> List[Snapshot]:
        with self._lock:
            history = list(self._snapshots.get(group_id, []))
        history.sort(key=lambda snap: snap.created_at)
        return [copy.copy(snap) for snap in history]


def load_parquet(path: Path, columns: List[str]) -> pd.DataFrame:
    if not path.exists():
        return pd.DataFrame(columns=columns)
    return pd.read_parquet(path)


def write_parquet(df: pd.DataFrame, path: Path) -> None:
    try:
        df.to_parquet(path, index=False, compression="zstd")
    except Exception as exc:  # pylint: disable=broad-except
        raise RuntimeError(
            f"Failed to write parquet file {path}: {exc}\n"
            "Ensure that a compatible pyarrow installation is available."
        ) from exc


class ParquetRecordStore(InMemoryRecordStore):
    """In-memory store persisted as one Parquet table per record type."""

    LISTINGS_FILE = "listings.parquet"
    GROUPS_FILE = "groups.parquet"
    EDGES_FILE = "edges.parquet"
    SNAPSHOTS_FILE = "snapshots.parquet"

    def __init__(self, root: Path) -> None:
        super().__init__()
        self.root = Path(root)

    @classmethod
    def open(cls, root: Path) -> "ParquetRecordStore":
        store = cls(root)
        store.load()
        return store

    def load(self) -> None:
        listings = load_parquet(self.root / self.LISTINGS_FILE, LISTING_COLUMNS)
        groups = load_parquet(self.root / self.GROUPS_FILE, GROUP_COLUMNS)
        edges = load_parquet(self.root / self.EDGES_FILE, EDGE_COLUMNS)
        snapshots = load_parquet(self.root / self.SNAPSHOTS_FILE, SNAPSHOT_COLUMNS)

        with self._lock:
            for row in listings.to_dict(orient="records"):
                listing = listing_from_row(row)
                self._listings[listing.id] = listing
            for row in groups.to_dict(orient="records"):
                group = group_from_row(row)
                self._groups[group.id] = group
                if group.signature is not None:
                    self._signatures[group.signature] = group.id
            for row in edges.to_dict(orient="records"):
                edge = edge_from_row(row)
                self._edges[(edge.group_id, edge.listing_id)] = edge
            for row in snapshots.to_dict(orient="records"):
                snapshot = snapshot_from_row(row)
                self._snapshots.setdefault(snapshot.group_id, []).append(snapshot)

        logger.info(
            "Loaded store %s: %s listings, %s groups, %s edges.",
            self.root,
            len(self._listings),
            len(self._groups),
            len(self._edges),
        )

    def flush(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        with self._lock:
            tables = {
                self.LISTINGS_FILE: (
                    [listing_to_row(listing) for listing in self._listings.values()],
                    LISTING_COLUMNS,
                ),
                self.GROUPS_FILE: (
                    [group_to_row(group) for group in self._groups.values()],
                    GROUP_COLUMNS,
                ),
                self.EDGES_FILE: (
                    [edge_to_row(edge) for edge in self._edges.values()],
                    EDGE_COLUMNS,
                ),
                self.SNAPSHOTS_FILE: (
                    [snapshot_to_row(snap) for history in self._snapshots.values() for snap in history],
                    SNAPSHOT_COLUMNS,
                ),
            }
        for filename, (rows, columns) in tables.items():
            df = pd.DataFrame(rows, columns=columns)
            write_parquet(df, self.root / filename)
        logger.info("Flushed store to %s.", self.root)
