"""Exceptions raised by the deduplication scan."""

from __future__ import annotations


class DeduplicationError(Exception):
    """Base class for scan errors."""


class ScanAlreadyRunningError(DeduplicationError):
    """A scan was requested while another one is in flight."""

    def __init__(self, message: str = "Deduplication scan already running") -> None:
        super().__init__(message)


class EmptyPoolError(DeduplicationError):
    """No listing is tagged as available; usually an ingestion-side tagging defect."""


class StoreError(DeduplicationError):
    """A storage backend could not read or write its data."""


class MaterializationError(DeduplicationError):
    """Creating or updating the shared listing for one cluster failed."""

    def __init__(self, cluster_key: str, member_ids, cause: BaseException) -> None:
        self.cluster_key = cluster_key
        self.member_ids = list(member_ids)
        self.cause = cause
        super().__init__(f"Failed to materialize cluster {cluster_key!r} {self.member_ids}: {cause}")


class ScanFailedError(DeduplicationError):
    """The scan aborted outside the per-cluster loop."""


class UnaddressableClusterError(DeduplicationError):
    """No member of a cluster has a specific address to key its shared listing on."""

    def __init__(self, member_ids) -> None:
        self.member_ids = list(member_ids)
        super().__init__(f"Cluster {self.member_ids} has no specific address; shared listing not created")
