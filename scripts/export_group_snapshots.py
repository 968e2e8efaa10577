#!/usr/bin/env python3
"""
Export the current public view of every dedup group as JSON.

Reads the snapshot and group tables of a record store directory and keeps only
the latest snapshot per group. Consumers can restrict the result by city or
limit the number of returned groups.
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

DEFAULT_STORE_DIR = Path("dedup_store")
SNAPSHOTS_FILE = "snapshots.parquet"
GROUPS_FILE = "groups.parquet"


def resolve_store_path(explicit: Optional[str]) -> Path:
    """Return the store directory, preferring an explicit input."""
    candidate = Path(explicit).expanduser().resolve() if explicit else DEFAULT_STORE_DIR.resolve()
    if not (candidate / SNAPSHOTS_FILE).exists():
        raise FileNotFoundError(f"No snapshot table found under {candidate}")
    return candidate


def latest_snapshots(store_dir: Path) -> pd.DataFrame:
    snapshots = pd.read_parquet(store_dir / SNAPSHOTS_FILE)
    if snapshots.empty:
        return snapshots
    snapshots["created_at"] = pd.to_datetime(snapshots["created_at"], utc=True)
    latest = (
        snapshots.sort_values(["group_id", "created_at"], kind="mergesort")
        .groupby("group_id", sort=False)
        .tail(1)
    )
    groups_path = store_dir / GROUPS_FILE
    if groups_path.exists():
        groups = pd.read_parquet(groups_path)[["id", "city", "area_slug", "member_count", "signature"]]
        groups = groups.rename(columns={"id": "group_id"})
        latest = latest.merge(groups, on="group_id", how="left")
    return latest.sort_values("created_at", ascending=False).reset_index(drop=True)


def _to_serialisable(value):
    if isinstance(value, float) and (value != value):  # NaN check
        return None
    if value is pd.NaT or value is pd.NA:
        return None
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return [_to_serialisable(elem) for elem in value.tolist()]
    if isinstance(value, (list, tuple)):
        return [_to_serialisable(elem) for elem in value]
    if isinstance(value, dict):
        return {key: _to_serialisable(val) for key, val in value.items()}
    return value


def _decode_json(value):
    if isinstance(value, str) and value[:1] in ("[", "{"):
        return json.loads(value)
    return value


def main() -> None:
    parser = argparse.ArgumentParser(description="Export latest group snapshots to JSON.")
    parser.add_argument("--store", help="Record store directory (defaults to ./dedup_store).")
    parser.add_argument("--limit", type=int, help="Limit number of returned groups.")
    parser.add_argument(
        "--city",
        help="Optional city filter (case-insensitive). "
        "Use 'all' or omit to export every group.",
    )
    args = parser.parse_args()

    store_dir = resolve_store_path(args.store)
    df = latest_snapshots(store_dir)

    city = (args.city or "").strip().lower()
    if city and city not in {"all", "*"} and "city" in df.columns:
        df = df[df["city"].fillna("").str.lower() == city]

    total_rows = int(df.shape[0])
    if args.limit is not None and args.limit > 0:
        df = df.head(args.limit)

    records = []
    for row in df.to_dict(orient="records"):
        row["domains"] = _decode_json(row.get("domains"))
        row["explain"] = _decode_json(row.get("explain"))
        records.append({key: _to_serialisable(value) for key, value in row.items()})

    payload = {
        "data": records,
        "meta": {
            "total_groups": total_rows,
            "returned_groups": int(df.shape[0]),
            "store": str(store_dir),
        },
    }
    print(json.dumps(payload, ensure_ascii=False))


if __name__ == "__main__":
    main()
