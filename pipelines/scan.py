"""Single-flight orchestration of a full deduplication scan."""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Sequence

from pipelines.deduplicate import DEFAULT_EXCLUSIVITY_KEYWORDS, MATCH_THRESHOLD, deduplicate_listings
from pipelines.errors import DeduplicationError, EmptyPoolError, ScanAlreadyRunningError, ScanFailedError
from pipelines.image_similarity import ImageSimilarity, PhotoFingerprintMatcher, no_image_match
from pipelines.materialize import materialize_clusters
from pipelines.similarity import GeoDistance, haversine_m
from pipelines.stores import ListingStore, SharedListingStore
from tools.reporting import write_cluster_report

logger = logging.getLogger(__name__)


class ScanGuard:
    """Single-slot token allowing at most one scan in flight."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()

    @contextmanager
    def hold(self) -> Iterator[None]:
        if not self.try_acquire():
            raise ScanAlreadyRunningError()
        try:
            yield
        finally:
            self.release()


@dataclass
class ScanConfig:
    match_threshold: float = MATCH_THRESHOLD
    exclusivity_keywords: Sequence[str] = DEFAULT_EXCLUSIVITY_KEYWORDS
    require_available_records: bool = False
    use_photo_fingerprints: bool = False
    report_path: Optional[Path] = None
    show_progress: bool = False


@dataclass
class ScanResult:
    total_properties: int = 0
    clusters_found: int = 0
    multiagency_properties: int = 0
    exclusive_properties: int = 0
    properties_updated: int = 0
    shared_properties_created: int = 0
    shared_properties_updated: int = 0
    materialize_failures: int = 0
    duration_ms: int = 0
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ScanOrchestrator:
    """Load the pool, cluster it, classify singletons and materialise shared listings."""

    def __init__(
        self,
        listing_store: ListingStore,
        shared_store: SharedListingStore,
        config: Optional[ScanConfig] = None,
        guard: Optional[ScanGuard] = None,
        geo_distance: GeoDistance = haversine_m,
        image_similarity: Optional[ImageSimilarity] = None,
    ) -> None:
        self.listing_store = listing_store
        self.shared_store = shared_store
        self.config = config or ScanConfig()
        self.guard = guard or ScanGuard()
        self.geo_distance = geo_distance
        self.image_similarity = image_similarity

    @property
    def running(self) -> bool:
        return self.guard.running

    def run_scan(self) -> ScanResult:
        """Run one full scan. Raises ScanAlreadyRunningError if one is in flight."""
        with self.guard.hold():
            start = time.monotonic()
            logger.info("Starting deduplication scan.")
            try:
                result = self._scan()
            except DeduplicationError:
                raise
            except Exception as exc:
                logger.exception("Deduplication scan failed.")
                raise ScanFailedError(f"Deduplication scan failed: {exc}") from exc
            result.duration_ms = int((time.monotonic() - start) * 1000)
            logger.info(
                "Scan completed in %sms: %s multi-agency, %s exclusive, %s shared listings created, %s updated.",
                result.duration_ms,
                result.multiagency_properties,
                result.exclusive_properties,
                result.shared_properties_created,
                result.shared_properties_updated,
            )
            return result

    def _image_similarity(self) -> ImageSimilarity:
        if self.image_similarity is not None:
            return self.image_similarity
        # Fresh matcher per scan so photo tokens are never stale.
        if self.config.use_photo_fingerprints:
            return PhotoFingerprintMatcher()
        return no_image_match

    def _scan(self) -> ScanResult:
        records = self.listing_store.fetch_available()
        logger.info("%s available listings loaded.", len(records))
        if not records:
            logger.warning(
                "No listings with status 'available' found; check that ingestion tags imported listings as available."
            )
            if self.config.require_available_records:
                raise EmptyPoolError("No available listings to scan")
            return ScanResult()

        dedup = deduplicate_listings(
            records,
            threshold=self.config.match_threshold,
            geo_distance=self.geo_distance,
            image_similarity=self._image_similarity(),
            exclusivity_keywords=self.config.exclusivity_keywords,
            show_progress=self.config.show_progress,
        )
        stats = materialize_clusters(dedup.clusters, self.listing_store, self.shared_store)
        if stats.failures:
            logger.warning("%s clusters could not be materialized.", stats.failures)

        if self.config.report_path:
            write_cluster_report(dedup.clusters, Path(self.config.report_path))

        return ScanResult(
            total_properties=dedup.total_properties,
            clusters_found=dedup.clusters_found,
            multiagency_properties=dedup.multiagency_properties,
            exclusive_properties=dedup.exclusive_properties,
            properties_updated=stats.properties_updated,
            shared_properties_created=stats.shared_created,
            shared_properties_updated=stats.shared_updated,
            materialize_failures=stats.failures,
        )
