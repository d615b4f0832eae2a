"""Pairwise clustering of listings into multi-agency groups and exclusivity hints."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from tqdm import tqdm

from listing_schema import Cluster, PropertyRecord
from pipelines.image_similarity import ImageSimilarity, no_image_match
from pipelines.similarity import GeoDistance, haversine_m, score_pair

logger = logging.getLogger(__name__)

MATCH_THRESHOLD = 70.0
PHOTO_MATCH_REASON = "matching listing photos"
DEFAULT_EXCLUSIVITY_KEYWORDS = ("esclusiva", "esclusività", "exclusive")


class UnionFind:
    """Disjoint-set over positional ids, union by rank, no path compression."""

    def __init__(self, size: int) -> None:
        self.parent = list(range(size))
        self.rank = [0] * size

    def find(self, x: int) -> int:
        """Return canonical parent."""
        while self.parent[x] != x:
            x = self.parent[x]
        return x

    def union(self, x: int, y: int) -> bool:
        """Union sets containing x and y. Return True if merged."""
        root_x = self.find(x)
        root_y = self.find(y)
        if root_x == root_y:
            return False

        rank_x = self.rank[root_x]
        rank_y = self.rank[root_y]

        if rank_x < rank_y:
            self.parent[root_x] = root_y
        elif rank_x > rank_y:
            self.parent[root_y] = root_x
        else:
            self.parent[root_y] = root_x
            self.rank[root_x] += 1
        return True

    def groups(self) -> Dict[int, List[int]]:
        """Return mapping from root -> list of indices."""
        clusters: Dict[int, List[int]] = defaultdict(list)
        for idx in range(len(self.parent)):
            clusters[self.find(idx)].append(idx)
        return clusters


@dataclass
class DeduplicationResult:
    total_properties: int
    clusters_found: int
    multiagency_properties: int
    exclusive_properties: int
    clusters: List[Cluster] = field(default_factory=list)

    @property
    def multiagency_clusters(self) -> List[Cluster]:
        return [cluster for cluster in self.clusters if cluster.is_multiagency]


def _dedupe_preserve_order(tokens: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    ordered: List[str] = []
    for token in tokens:
        if token in seen:
            continue
        seen.add(token)
        ordered.append(token)
    return ordered


def _pair_count(size: int) -> int:
    return size * (size - 1) // 2


def build_cluster(
    members: Sequence[PropertyRecord],
    geo_distance: GeoDistance = haversine_m,
    photo_matches: Optional[set] = None,
) -> Cluster:
    """Summarise a group of matched records: mean internal score plus all reasons."""
    total_score = 0.0
    reasons: List[str] = []
    for i in range(len(members)):
        for j in range(i + 1, len(members)):
            result = score_pair(members[i], members[j], geo_distance)
            total_score += result.score
            reasons.extend(result.reasons)
            if photo_matches and frozenset((members[i].id, members[j].id)) in photo_matches:
                reasons.append(PHOTO_MATCH_REASON)
    pairs = _pair_count(len(members))
    return Cluster(
        records=list(members),
        match_score=total_score / pairs if pairs else 0.0,
        match_reasons=_dedupe_preserve_order(reasons),
    )


def find_clusters(
    records: Sequence[PropertyRecord],
    threshold: float = MATCH_THRESHOLD,
    geo_distance: GeoDistance = haversine_m,
    image_similarity: ImageSimilarity = no_image_match,
    show_progress: bool = False,
) -> List[Cluster]:
    """Return one cluster per connected component (size >= 2) of the match graph.

    Matching is transitive: A~B and B~C put A, B and C together even when A and
    C alone score below the threshold.
    """
    ordered = sorted(records, key=lambda rec: rec.id)
    uf = UnionFind(len(ordered))
    photo_matches: set = set()
    matches = 0

    progress = tqdm(
        total=_pair_count(len(ordered)),
        desc="Scoring pairs",
        unit="pair",
        disable=not show_progress,
        leave=False,
    )
    try:
        for i in range(len(ordered)):
            for j in range(i + 1, len(ordered)):
                first, second = ordered[i], ordered[j]
                result = score_pair(first, second, geo_distance)
                visual = image_similarity(first, second)
                if visual:
                    photo_matches.add(frozenset((first.id, second.id)))
                if result.score >= threshold or visual:
                    logger.debug(
                        "Match found: #%s <-> #%s (score: %.0f%%, photos: %s)",
                        first.id,
                        second.id,
                        result.score,
                        visual,
                    )
                    matches += 1
                    uf.union(i, j)
            progress.update(len(ordered) - i - 1)
    finally:
        progress.close()

    clusters: List[Cluster] = []
    for indices in sorted(uf.groups().values(), key=lambda ids: ids[0]):
        if len(indices) < 2:
            continue
        members = [ordered[idx] for idx in indices]
        clusters.append(build_cluster(members, geo_distance, photo_matches))

    logger.info(
        "Formed %s multi-agency clusters from %s listings (%s matching pairs).",
        len(clusters),
        len(ordered),
        matches,
    )
    return clusters


def find_exclusivity_keyword(description: Optional[str], keywords: Sequence[str]) -> Optional[str]:
    if not description:
        return None
    text = description.lower()
    for keyword in keywords:
        if keyword.lower() in text:
            return keyword
    return None


def classify_singletons(
    records: Sequence[PropertyRecord],
    clustered_ids: Iterable[int],
    keywords: Sequence[str] = DEFAULT_EXCLUSIVITY_KEYWORDS,
) -> List[Cluster]:
    """Flag unclustered listings whose text claims an exclusive mandate."""
    clustered = set(clustered_ids)
    hints: List[Cluster] = []
    for record in sorted(records, key=lambda rec: rec.id):
        if record.id in clustered:
            continue
        keyword = find_exclusivity_keyword(record.description, keywords)
        if keyword is None:
            continue
        logger.debug("Listing #%s has exclusivity keyword %r.", record.id, keyword)
        hints.append(
            Cluster(
                records=[record],
                match_score=0.0,
                match_reasons=[f'exclusivity keyword "{keyword}" found in description'],
                exclusivity_hint=True,
            )
        )
    return hints


def deduplicate_listings(
    records: Sequence[PropertyRecord],
    threshold: float = MATCH_THRESHOLD,
    geo_distance: GeoDistance = haversine_m,
    image_similarity: ImageSimilarity = no_image_match,
    exclusivity_keywords: Sequence[str] = DEFAULT_EXCLUSIVITY_KEYWORDS,
    show_progress: bool = False,
) -> DeduplicationResult:
    """Cluster duplicates, then classify the remaining singletons."""
    logger.info("Deduplicating %s listings.", len(records))

    clusters = find_clusters(
        records,
        threshold=threshold,
        geo_distance=geo_distance,
        image_similarity=image_similarity,
        show_progress=show_progress,
    )
    clustered_ids = {record_id for cluster in clusters for record_id in cluster.member_ids}
    clusters.extend(classify_singletons(records, clustered_ids, exclusivity_keywords))

    multiagency = sum(cluster.cluster_size for cluster in clusters if cluster.is_multiagency)
    exclusive = sum(cluster.cluster_size for cluster in clusters if cluster.exclusivity_hint)
    logger.info(
        "Found %s clusters: %s multi-agency listings, %s probably exclusive.",
        len(clusters),
        multiagency,
        exclusive,
    )
    return DeduplicationResult(
        total_properties=len(records),
        clusters_found=len(clusters),
        multiagency_properties=multiagency,
        exclusive_properties=exclusive,
        clusters=clusters,
    )
