import argparse
import copy
import json
import logging
import os
import time
from pathlib import Path
from typing import Dict, Optional

from pipelines.deduplicate import DEFAULT_EXCLUSIVITY_KEYWORDS, MATCH_THRESHOLD
from pipelines.errors import DeduplicationError
from pipelines.scan import ScanConfig, ScanOrchestrator
from pipelines.scheduler import DEFAULT_INITIAL_DELAY_SEC, DEFAULT_INTERVAL_DAYS, DeduplicationScheduler
from pipelines.stores import ParquetListingStore, ParquetSharedListingStore

logger = logging.getLogger(__name__)


DEFAULT_CONFIG = {
    "data": {
        "dir": "data",
        "listings": "properties.parquet",
        "shared": "shared_listings.parquet",
    },
    "scan": {
        "match_threshold": MATCH_THRESHOLD,
        "exclusivity_keywords": list(DEFAULT_EXCLUSIVITY_KEYWORDS),
        "require_available_records": False,
        "use_photo_fingerprints": False,
        "report": None,
        "show_progress": True,
    },
    "scheduler": {
        "enabled": True,
        "interval_days": DEFAULT_INTERVAL_DAYS,
        "initial_delay_sec": DEFAULT_INITIAL_DELAY_SEC,
    },
}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() != "false"


def apply_env_overrides(config: Dict[str, Dict[str, object]]) -> Dict[str, Dict[str, object]]:
    data_dir = os.getenv("DEDUP_DATA_DIR")
    if data_dir:
        config["data"]["dir"] = data_dir
    threshold = os.getenv("DEDUP_MATCH_THRESHOLD")
    if threshold:
        config["scan"]["match_threshold"] = float(threshold)
    interval = os.getenv("DEDUP_SCAN_INTERVAL_DAYS")
    if interval:
        config["scheduler"]["interval_days"] = float(interval)
    config["scheduler"]["enabled"] = _env_flag("DEDUP_SCHEDULER_ENABLED", bool(config["scheduler"]["enabled"]))
    return config


def resolve_path(config: Dict[str, object], key: str, override: Optional[Path]) -> Path:
    if override is not None:
        return override
    return Path(str(config["dir"])) / str(config[key])


def build_orchestrator(
    data_cfg: Dict[str, object],
    scan_cfg: Dict[str, object],
    listings_path: Optional[Path] = None,
    shared_path: Optional[Path] = None,
) -> ScanOrchestrator:
    listings = resolve_path(data_cfg, "listings", listings_path)
    shared = resolve_path(data_cfg, "shared", shared_path)
    logger.info("Listings: %s, shared listings: %s", listings, shared)
    report = scan_cfg.get("report")
    config = ScanConfig(
        match_threshold=float(scan_cfg["match_threshold"]),
        exclusivity_keywords=tuple(scan_cfg["exclusivity_keywords"]),
        require_available_records=bool(scan_cfg["require_available_records"]),
        use_photo_fingerprints=bool(scan_cfg["use_photo_fingerprints"]),
        report_path=Path(str(report)) if report else None,
        show_progress=bool(scan_cfg["show_progress"]),
    )
    return ScanOrchestrator(ParquetListingStore(listings), ParquetSharedListingStore(shared), config=config)


def load_arguments() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Runner for the listing deduplication scan.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run a single scan and print its summary (default).")
    mode.add_argument("--schedule", action="store_true", help="Keep running and scan every --interval-days.")
    parser.add_argument("--listings", type=Path, help="Override the listings parquet path.")
    parser.add_argument("--shared", type=Path, help="Override the shared listings parquet path.")
    parser.add_argument("--report", type=Path, help="Write the cluster report CSV to this path.")
    parser.add_argument("--threshold", type=float, help="Override the match threshold (0-100).")
    parser.add_argument("--interval-days", type=float, help="Override the scheduler interval in days.")
    parser.add_argument(
        "--require-available",
        action="store_true",
        help="Fail instead of warning when no listing is tagged as available.",
    )
    parser.add_argument("--photo-fingerprints", action="store_true", help="Match listings sharing photos.")
    parser.add_argument("--no-progress", action="store_true", help="Disable the pair scoring progress bar.")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging for debugging.")
    return parser.parse_args()


def run_schedule(scheduler: DeduplicationScheduler) -> None:
    scheduler.start()
    if not scheduler.started:
        return
    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping scheduler.")
    finally:
        scheduler.stop()


def main() -> None:
    args = load_arguments()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    config = apply_env_overrides(copy.deepcopy(DEFAULT_CONFIG))
    data_cfg = config["data"]
    scan_cfg = config["scan"]
    scheduler_cfg = config["scheduler"]

    if args.threshold is not None:
        scan_cfg["match_threshold"] = args.threshold
    if args.report:
        scan_cfg["report"] = str(args.report)
    if args.require_available:
        scan_cfg["require_available_records"] = True
    if args.photo_fingerprints:
        scan_cfg["use_photo_fingerprints"] = True
    if args.no_progress:
        scan_cfg["show_progress"] = False
    if args.interval_days is not None:
        scheduler_cfg["interval_days"] = args.interval_days

    orchestrator = build_orchestrator(data_cfg, scan_cfg, args.listings, args.shared)
    scheduler = DeduplicationScheduler(
        orchestrator,
        interval_days=float(scheduler_cfg["interval_days"]),
        enabled=bool(scheduler_cfg["enabled"]),
        initial_delay_sec=float(scheduler_cfg["initial_delay_sec"]),
    )

    if args.schedule:
        run_schedule(scheduler)
        return

    try:
        result = scheduler.run_manual_scan()
    except DeduplicationError as exc:
        logger.error("%s", exc)
        raise SystemExit(1) from exc
    print(json.dumps(result.to_dict(), indent=2))


if __name__ == "__main__":
    main()
