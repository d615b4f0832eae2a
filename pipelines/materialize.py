"""Idempotent upsert of multi-agency clusters into shared listings."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from listing_schema import AgencyEntry, Cluster, PropertyRecord, SharedListing
from pipelines.address import dedupe_key, is_generic_address
from pipelines.errors import MaterializationError, UnaddressableClusterError
from pipelines.stores import ListingStore, SharedListingStore, merge_agencies

logger = logging.getLogger(__name__)


@dataclass
class MaterializeStats:
    shared_created: int = 0
    shared_updated: int = 0
    properties_updated: int = 0
    errors: List[MaterializationError] = field(default_factory=list)

    @property
    def failures(self) -> int:
        return len(self.errors)


def anchor_record(cluster: Cluster) -> Optional[PropertyRecord]:
    """First member whose address identifies a building, or None."""
    for record in cluster.records:
        if not is_generic_address(record.address):
            return record
    return None


def shared_listing_from_cluster(cluster: Cluster) -> SharedListing:
    """Seed a new shared listing from the anchor member of the cluster."""
    first = anchor_record(cluster) or cluster.records[0]
    return SharedListing(
        address=first.address or "",
        dedupe_key=dedupe_key(first.address),
        city=first.city,
        size=first.size,
        type=first.type,
        price=first.price,
        floor=first.floor or None,
        owner_name=first.owner_name or None,
        owner_phone=first.owner_phone or None,
        agencies=[AgencyEntry.from_record(record) for record in cluster.records],
    )


def upsert_shared_listing(cluster: Cluster, shared_store: SharedListingStore) -> str:
    """Create or extend the shared listing for one cluster. Return "created", "updated" or "unchanged"."""
    anchor = anchor_record(cluster)
    if anchor is None:
        raise UnaddressableClusterError(cluster.member_ids)
    key = dedupe_key(anchor.address)
    incoming = [AgencyEntry.from_record(record) for record in cluster.records]

    existing = shared_store.find_by_normalized_address(key)
    if existing is None:
        created = shared_store.create(shared_listing_from_cluster(cluster))
        logger.info("Created shared listing #%s for %s.", created.id, created.address)
        return "created"
    fresh = merge_agencies(existing.agencies, incoming)
    if not fresh:
        logger.debug("Shared listing #%s already lists every agency.", existing.id)
        return "unchanged"
    shared_store.append_agencies(existing.id, fresh)
    logger.info("Added %s agencies to shared listing #%s (%s).", len(fresh), existing.id, existing.address)
    return "updated"


def mark_members(cluster: Cluster, listing_store: ListingStore) -> None:
    for record in cluster.records:
        listing_store.mark_shared(record.id, is_multiagency=True)


def upsert_cluster(cluster: Cluster, listing_store: ListingStore, shared_store: SharedListingStore) -> str:
    outcome = upsert_shared_listing(cluster, shared_store)
    mark_members(cluster, listing_store)
    return outcome


def _cluster_label(cluster: Cluster) -> str:
    anchor = anchor_record(cluster)
    return dedupe_key(anchor.address) if anchor is not None else ""


def materialize_clusters(
    clusters: Iterable[Cluster],
    listing_store: ListingStore,
    shared_store: SharedListingStore,
) -> MaterializeStats:
    """Upsert every multi-agency cluster; one failing cluster never stops the others."""
    stats = MaterializeStats()
    for cluster in clusters:
        if not cluster.is_multiagency:
            continue
        key = _cluster_label(cluster)
        try:
            outcome = upsert_shared_listing(cluster, shared_store)
        except UnaddressableClusterError as exc:
            logger.warning("%s", exc)
            stats.errors.append(MaterializationError(key, cluster.member_ids, exc))
            continue
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Failed to materialize cluster %s %s.", key, cluster.member_ids)
            stats.errors.append(MaterializationError(key, cluster.member_ids, exc))
            continue
        # The shared row is stored at this point even if the write-back below fails.
        if outcome == "created":
            stats.shared_created += 1
        elif outcome == "updated":
            stats.shared_updated += 1

        try:
            mark_members(cluster, listing_store)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Failed to flag members of cluster %s %s as shared.", key, cluster.member_ids)
            stats.errors.append(MaterializationError(key, cluster.member_ids, exc))
            continue
        stats.properties_updated += cluster.cluster_size
    return stats
