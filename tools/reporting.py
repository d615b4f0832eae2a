"""
Scan reporting utilities.

Writes the per-scan cluster report (one row per multi-agency or exclusive
cluster) and prints a quick snapshot of a shared-listings Parquet file so the
outcome of a scan can be checked from the shell.
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List

import pandas as pd

from listing_schema import AgencyEntry, Cluster, UNKNOWN_AGENCY

logger = logging.getLogger(__name__)

DEFAULT_SHARED_PATH = Path("data") / "shared_listings.parquet"

REPORT_COLUMNS = [
    "cluster",
    "cluster_size",
    "is_multiagency",
    "exclusivity_hint",
    "match_score",
    "address",
    "member_ids",
    "portals",
    "match_reasons",
]


def build_cluster_report(clusters: Iterable[Cluster]) -> pd.DataFrame:
    rows: List[Dict[str, object]] = []
    for index, cluster in enumerate(clusters, start=1):
        first = cluster.records[0]
        rows.append(
            {
                "cluster": index,
                "cluster_size": cluster.cluster_size,
                "is_multiagency": cluster.is_multiagency,
                "exclusivity_hint": cluster.exclusivity_hint,
                "match_score": round(float(cluster.match_score), 2),
                "address": first.address or "",
                "member_ids": ",".join(str(record_id) for record_id in cluster.member_ids),
                "portals": ",".join(record.portal or UNKNOWN_AGENCY for record in cluster.records),
                "match_reasons": "; ".join(cluster.match_reasons),
            }
        )
    return pd.DataFrame(rows, columns=REPORT_COLUMNS)


def write_cluster_report(clusters: Iterable[Cluster], path: Path) -> pd.DataFrame:
    df = build_cluster_report(clusters)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    logger.info("Cluster report with %s rows written to %s.", len(df), path)
    return df


def summarize_shared_listings(path: Path) -> Dict[str, object]:
    """Count shared listings, attached agencies and agencies per portal."""
    if not path.exists():
        raise FileNotFoundError(f"Shared listings parquet not found: {path}")
    df = pd.read_parquet(path, columns=["address", "agencies_json"])
    portals: Dict[str, int] = {}
    agency_total = 0
    for raw in df["agencies_json"].fillna("[]"):
        for entry in json.loads(raw):
            name = AgencyEntry.coerce(entry).agency_name or UNKNOWN_AGENCY
            portals[name] = portals.get(name, 0) + 1
            agency_total += 1
    return {
        "shared_listings": int(len(df)),
        "agencies": agency_total,
        "by_portal": dict(sorted(portals.items(), key=lambda item: (-item[1], item[0]))),
    }


def print_summary(summary: Dict[str, object]) -> None:
    print("\nShared listings")
    print("---------------")
    print(f"Total: {summary['shared_listings']:,}")
    print(f"Agencies attached: {summary['agencies']:,}")
    by_portal = summary.get("by_portal") or {}
    if not by_portal:
        print("No agencies recorded.")
        return
    for portal, count in by_portal.items():
        print(f"  {portal}: {count:,}")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Summarise the shared listings produced by deduplication scans.")
    parser.add_argument(
        "--shared",
        type=Path,
        default=DEFAULT_SHARED_PATH,
        help="Shared listings parquet written by runner.py.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging for debugging.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s:%(name)s:%(message)s",
    )
    print_summary(summarize_shared_listings(args.shared))


if __name__ == "__main__":
    main()
