"""Canonical member selection and aggregate views for a dedup group."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from listing_schema import Listing, Snapshot, utcnow
from pipelines.record_store import GroupNotFoundError, RecordStore, new_id

logger = logging.getLogger(__name__)

UNKNOWN_DOMAIN = "unknown"


def completeness(listing: Listing) -> int:
    """Count the populated key fields (0-6); zero and blank values count as missing."""
    features = listing.features
    return sum(
        (
            bool(features.price),
            bool(features.area_m2),
            bool(features.rooms),
            bool(features.year_built),
            bool(features.lat and features.lng),
            bool(features.title and features.title.strip()),
        )
    )


def source_domain(source_url: Optional[str]) -> str:
    """Return the listing host without a leading ``www.``."""
    if not source_url:
        return UNKNOWN_DOMAIN
    try:
        hostname = urlparse(source_url.strip()).hostname
    except ValueError:
        return UNKNOWN_DOMAIN
    if not hostname:
        return UNKNOWN_DOMAIN
    if hostname.startswith("www."):
        hostname = hostname[4:]
    return hostname or UNKNOWN_DOMAIN


def _ranking_key(listing: Listing) -> Tuple[int, float, str]:
    return (-completeness(listing), -listing.created_at.timestamp(), listing.id)


def rank_members(members: List[Listing]) -> List[Listing]:
    """Order members most complete first, then newest, then by id."""
    return sorted(members, key=_ranking_key)


def _distinct(values: List[str]) -> List[str]:
    seen: set[str] = set()
    ordered: List[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


class SnapshotBuilder:
    """Rebuilds the public view of a group from its current members."""

    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    def rebuild_snapshot(self, group_id: str) -> Optional[Snapshot]:
        """Append a fresh snapshot for ``group_id`` and refresh the group's denormalised fields.

        Returns None when the group currently has no members. Listings are never
        modified.
        """
        group = self.store.get_group(group_id)
        if group is None:
            raise GroupNotFoundError(f"Group {group_id} does not exist")

        members = self.store.group_members(group_id)
        if not members:
            logger.info("Group %s has no members; snapshot skipped.", group_id)
            return None

        ranked = rank_members(members)
        canonical, reason = ranked[0], "completeness"
        if group.canonical_url:
            pinned = next((m for m in ranked if m.source_url == group.canonical_url), None)
            if pinned is not None:
                canonical, reason = pinned, "pinned"
            else:
                logger.warning(
                    "Pinned canonical URL %s is not a member of group %s; using completeness.",
                    group.canonical_url,
                    group_id,
                )

        prices = [m.features.price for m in ranked if m.features.price is not None]
        domains = _distinct([source_domain(m.source_url) for m in ranked])
        features = canonical.features
        explain: Dict[str, Any] = {
            "picked": canonical.id,
            "reason": reason,
            "completeness": completeness(canonical),
            "sample_count": len(ranked),
        }

        snapshot = Snapshot(
            id=new_id(),
            group_id=group_id,
            title=features.title,
            price=features.price,
            area_m2=features.area_m2,
            rooms=features.rooms,
            level=features.level,
            floor_raw=features.floor_raw,
            year_built=features.year_built,
            lat=features.lat,
            lng=features.lng,
            photo=features.photos[0] if features.photos else None,
            domains=domains,
            price_min=min(prices) if prices else None,
            price_max=max(prices) if prices else None,
            sources=len(domains),
            explain=explain,
            created_at=self.clock(),
        )
        snapshot = self.store.add_snapshot(snapshot)

        group_fields: Dict[str, Any] = {"member_count": len(ranked)}
        if features.has_coordinates:
            group_fields["centroid_lat"] = features.lat
            group_fields["centroid_lng"] = features.lng
        self.store.update_group(group_id, **group_fields)

        logger.debug(
            "Snapshot %s for group %s: canonical=%s (%s), %s members, %s sources.",
            snapshot.id,
            group_id,
            canonical.id,
            reason,
            len(ranked),
            snapshot.sources,
        )
        return snapshot

    def set_canonical(self, group_id: str, source_url: Optional[str]) -> Optional[Snapshot]:
        """Pin (or clear, with None) the member URL shown as canonical, then rebuild."""
        self.store.update_group(group_id, canonical_url=source_url or None)
        return self.rebuild_snapshot(group_id)

    def latest_snapshot(self, group_id: str) -> Optional[Snapshot]:
        return self.store.latest_snapshot(group_id)

    def snapshot_history(self, group_id: str) -> List[Snapshot]:
        return self.store.snapshots(group_id)

    def group_sources(self, group_id: str) -> List[Dict[str, Any]]:
        """List every member source of a group, oldest first."""
        members = sorted(self.store.group_members(group_id), key=lambda m: (m.created_at, m.id))
        return [
            {
                "listing_id": member.id,
                "source_url": member.source_url,
                "domain": source_domain(member.source_url),
                "created_at": member.created_at,
            }
            for member in members
        ]
