"""Assign newly extracted listings to dedup groups.

Resolution runs in a fixed order for each listing:

1. exact signature lookup (join or create the signature group),
2. otherwise fuzzy scoring against a bounded window of recent grouped listings,
3. join the best candidate's group above the threshold, else open an ad-hoc group,
4. rebuild the group snapshot,
5. notify the cache invalidation hook.

With ``fuzzy_on_signature_miss`` enabled, a signature that has no group yet is
scored as in step 2 first and only opens its own group when nothing matches.

Steps 4 and 5 are best-effort. Failures before the group reference is written
propagate and leave the listing ungrouped so it can be retried.

Two listings resolved at the same time may both open a group for the same
property. The signature path is covered by the store rejecting duplicate
signatures (the loser re-reads and joins the winner's group). Ad-hoc groups
carry no signature, so concurrent fuzzy-only duplicates can still form and
have to be merged by a reconciliation sweep.

The same listing resolved twice at once keeps a single group and edge: the
group reference is written only while the listing is still ungrouped, and the
losing call returns the winner's assignment. A group the loser created stays
empty and is logged at ERROR for that sweep.
"""

from __future__ import annotations

import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from tqdm import tqdm

from listing_schema import Edge, Group, Listing, ResolveResult, Snapshot, utcnow
from pipelines.record_store import (
    DedupIntegrityError,
    GroupNotFoundError,
    ListingAlreadyGroupedError,
    ListingNotFoundError,
    RecordStore,
    SignatureConflictError,
    new_id,
)
from pipelines.scoring import FuzzyScore, fuzzy_score
from pipelines.signature import signature_for
from pipelines.snapshot import SnapshotBuilder
from settings import DedupSettings
from tools.cache_hooks import CacheInvalidator, NullInvalidator

logger = logging.getLogger(__name__)

METHOD_SIGNATURE = "signature"
METHOD_FUZZY = "fuzzy"
METHOD_ADHOC = "adhoc"
METHOD_EXISTING = "existing"


class GroupResolver:
    def __init__(
        self,
        store: RecordStore,
        settings: Optional[DedupSettings] = None,
        snapshot_builder: Optional[SnapshotBuilder] = None,
        invalidator: Optional[CacheInvalidator] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = (settings or DedupSettings()).validate()
        self.clock = clock
        self.snapshot_builder = snapshot_builder or SnapshotBuilder(store, clock=clock)
        self.invalidator = invalidator or NullInvalidator()

    def resolve(self, listing_id: str) -> ResolveResult:
        """Place one listing in a group and return where it landed.

        Calling this again for a grouped listing returns the recorded edge
        without writing anything, unless that edge went missing and has to be
        restored.
        """
        listing = self.store.get_listing(listing_id)
        if listing is None:
            raise ListingNotFoundError(f"Listing {listing_id} does not exist")
        if listing.group_id is not None:
            return self._resolve_existing(listing)

        stray_edges = self.store.edges_for_listing(listing.id)
        if stray_edges:
            logger.error(
                "Ungrouped listing %s already has edges to groups %s.",
                listing.id,
                [edge.group_id for edge in stray_edges],
            )
            raise DedupIntegrityError(f"Ungrouped listing {listing.id} already has edges")

        created = False
        signature = signature_for(listing.features)
        signature_group = self.store.find_group_by_signature(signature) if signature else None
        best: Optional[Tuple[Listing, FuzzyScore]] = None
        if signature_group is None and (signature is None or self.settings.fuzzy_on_signature_miss):
            best = self._best_candidate(listing)

        reasons: Dict[str, Any]
        if signature_group is not None:
            group = signature_group
            score = self.settings.signature_score
            reasons = {"type": METHOD_SIGNATURE, "signature": signature}
            method = METHOD_SIGNATURE
        elif best is not None and best[1].score >= self.settings.join_threshold:
            candidate, match = best
            group = self._candidate_group(candidate)
            score = match.score
            reasons = {"type": METHOD_FUZZY, "candidate": candidate.id, "factors": match.reasons}
            method = METHOD_FUZZY
        elif signature is not None:
            group, created = self._signature_group(signature, listing)
            score = self.settings.signature_score
            reasons = {"type": METHOD_SIGNATURE, "signature": signature}
            method = METHOD_SIGNATURE
        else:
            group = self.store.create_group(self._new_group(listing, signature=None))
            created = True
            score = self.settings.adhoc_score
            reasons = {"type": METHOD_ADHOC}
            if best is not None:
                reasons["best_candidate"] = best[0].id
                reasons["best_score"] = best[1].score
            method = METHOD_ADHOC

        try:
            self.store.set_listing_group(listing.id, group.id, only_if_ungrouped=True)
        except ListingAlreadyGroupedError as exc:
            self._report_orphan(group.id, listing.id, created)
            logger.info(
                "Listing %s was grouped into %s by a concurrent resolve; keeping that assignment.",
                listing.id,
                exc.group_id,
            )
            return self._resolve_existing(self.store.get_listing(listing.id))
        except Exception:  # pylint: disable=broad-except
            self._report_orphan(group.id, listing.id, created)
            raise
        self.store.upsert_edge(
            Edge(group_id=group.id, listing_id=listing.id, score=score, reasons=reasons, updated_at=self.clock())
        )
        logger.info(
            "Listing %s -> group %s via %s (score %.3f%s).",
            listing.id,
            group.id,
            method,
            score,
            ", new group" if created else "",
        )
        self._after_assignment(group.id)
        return ResolveResult(
            group_id=group.id,
            match_score=score,
            match_reasons=reasons,
            method=method,
            created_group=created,
        )

    def rebuild_snapshot(self, group_id: str) -> Optional[Snapshot]:
        """Rebuild a group's snapshot directly, e.g. after an admin split or merge."""
        return self.snapshot_builder.rebuild_snapshot(group_id)

    def resolve_many(
        self,
        listing_ids: Iterable[str],
        workers: int = 1,
        show_progress: bool = False,
    ) -> Dict[str, Any]:
        """Resolve a batch, logging per-listing failures instead of raising them."""
        ids = list(dict.fromkeys(listing_ids))
        methods: Counter = Counter()
        errors: Dict[str, str] = {}
        created_groups = 0
        progress_bar = tqdm(total=len(ids), unit="listing", desc="Resolving listings", disable=not show_progress)

        def record(listing_id: str, result: Optional[ResolveResult], exc: Optional[Exception]) -> None:
            nonlocal created_groups
            if exc is not None:
                logger.error("Failed to resolve listing %s: %s", listing_id, exc)
                errors[listing_id] = str(exc)
            elif result is not None:
                methods[result.method] += 1
                if result.created_group:
                    created_groups += 1
            progress_bar.update(1)

        try:
            if workers <= 1:
                for listing_id in ids:
                    try:
                        record(listing_id, self.resolve(listing_id), None)
                    except Exception as exc:  # pylint: disable=broad-except
                        record(listing_id, None, exc)
            else:
                with ThreadPoolExecutor(max_workers=workers) as executor:
                    future_to_id = {executor.submit(self.resolve, listing_id): listing_id for listing_id in ids}
                    for future in as_completed(future_to_id):
                        listing_id = future_to_id[future]
                        try:
                            record(listing_id, future.result(), None)
                        except Exception as exc:  # pylint: disable=broad-except
                            record(listing_id, None, exc)
        finally:
            progress_bar.close()

        summary = {
            "requested": len(ids),
            "resolved": sum(methods.values()),
            "failed": len(errors),
            "created_groups": created_groups,
            "methods": dict(methods),
            "errors": errors,
        }
        logger.info(
            "Resolved %s/%s listings (%s new groups). Methods: %s",
            summary["resolved"],
            summary["requested"],
            created_groups,
            summary["methods"],
        )
        return summary

    def _resolve_existing(self, listing: Listing) -> ResolveResult:
        edges = self.store.edges_for_listing(listing.id)
        if len(edges) > 1:
            logger.error(
                "Listing %s (group %s) has %s edges: %s",
                listing.id,
                listing.group_id,
                len(edges),
                [(edge.group_id, edge.score) for edge in edges],
            )
            raise DedupIntegrityError(f"Listing {listing.id} has {len(edges)} edges")

        group = self.store.get_group(listing.group_id)
        if group is None:
            logger.error("Listing %s references missing group %s.", listing.id, listing.group_id)
            raise GroupNotFoundError(f"Group {listing.group_id} does not exist")

        if edges:
            edge = edges[0]
            if edge.group_id != group.id:
                logger.error(
                    "Listing %s references group %s but its edge points at group %s.",
                    listing.id,
                    group.id,
                    edge.group_id,
                )
                raise DedupIntegrityError(f"Listing {listing.id} edge disagrees with its group")
            return ResolveResult(
                group_id=group.id,
                match_score=edge.score,
                match_reasons=edge.reasons,
                method=METHOD_EXISTING,
            )

        # An earlier attempt stopped between the group reference and the edge.
        signature = signature_for(listing.features)
        if signature is not None and signature == group.signature:
            score = self.settings.signature_score
            reasons: Dict[str, Any] = {"type": METHOD_SIGNATURE, "signature": signature, "recovered": True}
        else:
            score = self.settings.adhoc_score
            reasons = {"type": "recovered"}
        self.store.upsert_edge(
            Edge(group_id=group.id, listing_id=listing.id, score=score, reasons=reasons, updated_at=self.clock())
        )
        logger.warning("Listing %s had group %s but no edge; edge restored.", listing.id, group.id)
        self._after_assignment(group.id)
        return ResolveResult(group_id=group.id, match_score=score, match_reasons=reasons, method=METHOD_EXISTING)

    def _signature_group(self, signature: str, listing: Listing) -> Tuple[Group, bool]:
        group = self.store.find_group_by_signature(signature)
        if group is not None:
            return group, False
        try:
            return self.store.create_group(self._new_group(listing, signature=signature)), True
        except SignatureConflictError:
            group = self.store.find_group_by_signature(signature)
            if group is None:
                raise
            logger.info("Signature %s was created concurrently; joining group %s.", signature, group.id)
            return group, False

    def _best_candidate(self, listing: Listing) -> Optional[Tuple[Listing, FuzzyScore]]:
        since = self.clock() - timedelta(days=self.settings.candidate_window_days)
        candidates = self.store.recent_grouped_listings(
            since=since,
            limit=self.settings.candidate_limit,
            exclude_id=listing.id,
        )
        best: Optional[Tuple[Listing, FuzzyScore]] = None
        for candidate in candidates:
            match = fuzzy_score(listing.features, candidate.features, self.settings)
            logger.debug("Listing %s vs %s: %.3f %s", listing.id, candidate.id, match.score, match.reasons)
            if best is None or match.score > best[1].score:
                best = (candidate, match)
        logger.debug(
            "Scored %s candidates for listing %s; best %s.",
            len(candidates),
            listing.id,
            f"{best[0].id} ({best[1].score:.3f})" if best else "none",
        )
        return best

    def _candidate_group(self, candidate: Listing) -> Group:
        group = self.store.get_group(candidate.group_id) if candidate.group_id else None
        if group is None:
            logger.error("Candidate listing %s references missing group %s.", candidate.id, candidate.group_id)
            raise GroupNotFoundError(f"Group {candidate.group_id} does not exist")
        return group

    def _new_group(self, listing: Listing, signature: Optional[str]) -> Group:
        features = listing.features
        return Group(
            id=new_id(),
            signature=signature,
            city=features.city,
            area_slug=features.area_slug,
            centroid_lat=features.lat,
            centroid_lng=features.lng,
            created_at=self.clock(),
        )

    def _report_orphan(self, group_id: str, listing_id: str, created: bool) -> None:
        if created:
            logger.error(
                "Group %s was created for listing %s but never assigned; it has no members.",
                group_id,
                listing_id,
            )

    def _after_assignment(self, group_id: str) -> None:
        try:
            self.snapshot_builder.rebuild_snapshot(group_id)
        except Exception:  # pylint: disable=broad-except
            logger.warning("Snapshot rebuild failed for group %s.", group_id, exc_info=True)
        try:
            self.invalidator.invalidate_group(group_id)
        except Exception:  # pylint: disable=broad-except
            logger.warning("Cache invalidation failed for group %s.", group_id, exc_info=True)

