from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional
import math


STATUS_AVAILABLE = "available"
STATUS_WITHDRAWN = "withdrawn"

UNKNOWN_AGENCY = "Unknown agency"


@dataclass(frozen=True)
class PropertyRecord:
    id: int
    address: Optional[str]
    city: Optional[str] = None
    price: Optional[int] = None
    size: Optional[float] = None
    floor: Optional[str] = None
    bedrooms: Optional[int] = None
    bathrooms: Optional[int] = None
    description: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    portal: Optional[str] = None
    external_link: Optional[str] = None
    type: Optional[str] = None
    owner_name: Optional[str] = None
    owner_phone: Optional[str] = None
    status: Optional[str] = STATUS_AVAILABLE
    photo_urls: tuple = ()
    is_shared: bool = False
    is_multiagency: bool = False

    @property
    def has_coordinates(self) -> bool:
        return _is_number(self.latitude) and _is_number(self.longitude)


@dataclass
class SimilarityResult:
    score: float
    reasons: List[str] = field(default_factory=list)


@dataclass
class Cluster:
    records: List[PropertyRecord]
    match_score: float = 0.0
    match_reasons: List[str] = field(default_factory=list)
    exclusivity_hint: bool = False

    @property
    def cluster_size(self) -> int:
        return len(self.records)

    @property
    def is_multiagency(self) -> bool:
        return len(self.records) >= 2

    @property
    def member_ids(self) -> List[int]:
        return [record.id for record in self.records]


@dataclass(frozen=True)
class AgencyEntry:
    agency_name: str
    listing_link: str = ""
    source_property_record_id: Optional[int] = None

    @classmethod
    def from_record(cls, record: PropertyRecord) -> "AgencyEntry":
        return cls(
            agency_name=record.portal or UNKNOWN_AGENCY,
            listing_link=record.external_link or "",
            source_property_record_id=record.id,
        )

    @classmethod
    def coerce(cls, raw: Any) -> "AgencyEntry":
        """Accept structured entries, dicts, or legacy bare agency names."""
        if isinstance(raw, AgencyEntry):
            return raw
        if isinstance(raw, str):
            return cls(agency_name=raw, listing_link="", source_property_record_id=None)
        if isinstance(raw, dict):
            source_id = raw.get("source_property_record_id", raw.get("sourcePropertyId"))
            return cls(
                agency_name=str(raw.get("agency_name") or raw.get("name") or UNKNOWN_AGENCY),
                listing_link=str(raw.get("listing_link") or raw.get("link") or ""),
                source_property_record_id=int(source_id) if source_id is not None else None,
            )
        raise TypeError(f"Unsupported agency entry: {raw!r}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SharedListing:
    address: str
    dedupe_key: str
    city: Optional[str] = None
    size: Optional[float] = None
    type: Optional[str] = None
    price: Optional[int] = None
    floor: Optional[str] = None
    owner_name: Optional[str] = None
    owner_phone: Optional[str] = None
    agencies: List[AgencyEntry] = field(default_factory=list)
    rating: int = 4
    stage: str = "result"
    stage_result: str = "multiagency"
    is_acquired: bool = False
    match_buyers: bool = True
    is_multiagency: bool = True
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def source_record_ids(self) -> set:
        return {
            entry.source_property_record_id
            for entry in self.agencies
            if entry.source_property_record_id is not None
        }


def _is_number(value: Any) -> bool:
    if value is None:
        return False
    try:
        return not math.isnan(float(value))
    except (TypeError, ValueError):
        return False
