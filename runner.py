import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from listing_schema import listing_from_row
from pipelines.grouping import GroupResolver
from pipelines.record_store import ParquetRecordStore
from settings import DedupSettings
from tools.cache_hooks import build_invalidator


DEFAULT_STORE_DIR = "dedup_store"

# Silver-table and scraper column names accepted as listing input.
INPUT_COLUMN_ALIASES = {
    "listing_uid": "id",
    "url": "source_url",
    "link": "source_url",
    "valid_from": "created_at",
    "floor_area_m2": "area_m2",
    "price_eur": "price",
    "year_of_construction": "year_built",
    "address_street": "address",
    "property_name": "title",
}


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )


def load_listings_frame(path: Path) -> pd.DataFrame:
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")
    if path.suffix.lower() == ".parquet":
        df = pd.read_parquet(path)
    else:
        df = pd.read_csv(path, dtype=str).fillna("")
    renames = {
        source: target
        for source, target in INPUT_COLUMN_ALIASES.items()
        if source in df.columns and target not in df.columns
    }
    return df.rename(columns=renames)


def register_listings(store: ParquetRecordStore, df: pd.DataFrame) -> Dict[str, int]:
    """Add rows the store has not seen yet; existing listing ids are left untouched."""
    added = 0
    skipped = 0
    invalid = 0
    for row in df.to_dict(orient="records"):
        row.pop("group_id", None)
        try:
            listing = listing_from_row(row)
        except ValueError as exc:
            logging.warning("Skipping input row: %s", exc)
            invalid += 1
            continue
        if store.get_listing(listing.id) is not None:
            skipped += 1
            continue
        store.add_listing(listing)
        added += 1
    logging.info("Registered %s new listings (%s already known, %s invalid).", added, skipped, invalid)
    return {"added": added, "known": skipped, "invalid": invalid}


def build_settings(args: argparse.Namespace) -> DedupSettings:
    settings = DedupSettings.from_env()
    return settings.with_overrides(
        join_threshold=getattr(args, "join_threshold", None),
        candidate_limit=getattr(args, "candidate_limit", None),
        candidate_window_days=getattr(args, "window_days", None),
        fuzzy_on_signature_miss=getattr(args, "fuzzy_on_signature_miss", None),
        invalidate_url=getattr(args, "invalidate_url", None),
    )


def build_resolver(store: ParquetRecordStore, settings: DedupSettings) -> GroupResolver:
    invalidator = build_invalidator(
        settings.invalidate_url,
        secret=settings.invalidate_secret,
        timeout=settings.invalidate_timeout,
    )
    return GroupResolver(store, settings=settings, invalidator=invalidator)


def run_resolve(args: argparse.Namespace) -> Dict[str, Any]:
    settings = build_settings(args)
    store = ParquetRecordStore.open(Path(args.store))
    registered = register_listings(store, load_listings_frame(Path(args.input)))
    resolver = build_resolver(store, settings)
    # Grouped listings without an edge come from interrupted runs; resolving them restores the edge.
    unlinked = store.unlinked_listing_ids()
    if unlinked:
        logging.warning("Restoring missing edges for %s listings.", len(unlinked))
    pending = unlinked + store.ungrouped_listing_ids()
    summary = resolver.resolve_many(pending, workers=args.workers, show_progress=not args.no_progress)
    store.flush()
    summary["registered"] = registered
    summary["groups_total"] = len(store.all_groups())
    return summary


def run_rebuild(args: argparse.Namespace) -> Dict[str, Any]:
    settings = build_settings(args)
    store = ParquetRecordStore.open(Path(args.store))
    resolver = build_resolver(store, settings)
    group_ids: List[str] = [group.id for group in store.all_groups()] if args.all else list(args.group_ids)
    if not group_ids:
        raise ValueError("Pass group ids or --all.")
    rebuilt = 0
    empty = 0
    for group_id in group_ids:
        snapshot = resolver.rebuild_snapshot(group_id)
        if snapshot is None:
            empty += 1
            continue
        rebuilt += 1
        try:
            resolver.invalidator.invalidate_group(group_id)
        except Exception as exc:  # pylint: disable=broad-except
            logging.warning("Cache invalidation failed for group %s: %s", group_id, exc)
    store.flush()
    return {"rebuilt": rebuilt, "empty": empty}


def run_pin(args: argparse.Namespace) -> Dict[str, Any]:
    settings = build_settings(args)
    store = ParquetRecordStore.open(Path(args.store))
    resolver = build_resolver(store, settings)
    snapshot = resolver.snapshot_builder.set_canonical(args.group_id, args.source_url)
    store.flush()
    explain: Optional[Dict[str, Any]] = snapshot.explain if snapshot is not None else None
    return {"group_id": args.group_id, "canonical_url": args.source_url, "explain": explain}


def load_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Group duplicate property listings across sources.")
    parser.add_argument("--store", default=DEFAULT_STORE_DIR, help="Directory holding the Parquet record store.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    parser.add_argument("--invalidate-url", help="Cache revalidation endpoint (overrides DEDUP_INVALIDATE_URL).")
    subparsers = parser.add_subparsers(dest="command", required=True)

    resolve = subparsers.add_parser("resolve", help="Register listings from a file and group the ungrouped ones.")
    resolve.add_argument("input", help="CSV or Parquet file with extracted listing features.")
    resolve.add_argument("--workers", type=int, default=1, help="Concurrent resolutions (default: 1).")
    resolve.add_argument("--join-threshold", type=float, help="Minimum fuzzy score to join a group.")
    resolve.add_argument("--candidate-limit", type=int, help="Maximum recent listings scored per listing.")
    resolve.add_argument("--window-days", type=int, help="Age limit in days for fuzzy candidates.")
    resolve.add_argument(
        "--fuzzy-on-signature-miss",
        action="store_const",
        const=True,
        help="Try fuzzy matching before opening a new signature group.",
    )
    resolve.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")

    rebuild = subparsers.add_parser("rebuild", help="Rebuild group snapshots.")
    rebuild.add_argument("group_ids", nargs="*", help="Group ids to rebuild.")
    rebuild.add_argument("--all", action="store_true", help="Rebuild every group.")

    pin = subparsers.add_parser("pin", help="Pin the canonical source URL of a group.")
    pin.add_argument("group_id")
    pin.add_argument("source_url", nargs="?", help="Member URL to pin; omit to clear the pin.")

    return parser.parse_args(argv)


COMMANDS = {
    "resolve": run_resolve,
    "rebuild": run_rebuild,
    "pin": run_pin,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = load_arguments(argv)
    configure_logging(args.verbose)
    summary = COMMANDS[args.command](args)
    print(json.dumps(summary, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
