"""Storage capabilities consumed by the scan: the listing pool and the shared listings."""

from __future__ import annotations

import dataclasses
import json
import logging
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from listing_schema import STATUS_AVAILABLE, AgencyEntry, PropertyRecord, SharedListing
from pipelines.address import dedupe_key
from pipelines.errors import StoreError

logger = logging.getLogger(__name__)


class ListingStore(Protocol):
    def fetch_available(self) -> List[PropertyRecord]:
        ...

    def mark_shared(self, record_id: int, is_multiagency: bool = True) -> None:
        ...


class SharedListingStore(Protocol):
    def find_by_normalized_address(self, key: str) -> Optional[SharedListing]:
        ...

    def create(self, shared: SharedListing) -> SharedListing:
        ...

    def append_agencies(self, shared_id: int, entries: List[AgencyEntry]) -> SharedListing:
        ...

    def count(self) -> int:
        ...


def merge_agencies(existing: Iterable[Any], incoming: Iterable[AgencyEntry]) -> List[AgencyEntry]:
    """Return incoming entries whose source record is not already listed."""
    known = {
        entry.source_property_record_id
        for entry in (AgencyEntry.coerce(raw) for raw in existing)
        if entry.source_property_record_id is not None
    }
    fresh: List[AgencyEntry] = []
    for entry in incoming:
        if entry.source_property_record_id in known:
            continue
        if entry.source_property_record_id is not None:
            known.add(entry.source_property_record_id)
        fresh.append(entry)
    return fresh


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryListingStore:
    """Listing pool held in a dict keyed by record id."""

    def __init__(self, records: Iterable[PropertyRecord] = ()) -> None:
        self._records: Dict[int, PropertyRecord] = {record.id: record for record in records}

    def fetch_available(self) -> List[PropertyRecord]:
        return [
            record
            for record in sorted(self._records.values(), key=lambda rec: rec.id)
            if record.status == STATUS_AVAILABLE
        ]

    def mark_shared(self, record_id: int, is_multiagency: bool = True) -> None:
        record = self._records.get(record_id)
        if record is None:
            raise StoreError(f"Unknown property record #{record_id}")
        self._records[record_id] = dataclasses.replace(record, is_shared=True, is_multiagency=is_multiagency)

    def get(self, record_id: int) -> Optional[PropertyRecord]:
        return self._records.get(record_id)


class InMemorySharedListingStore:
    """Shared listings held in insertion order."""

    def __init__(self, listings: Iterable[SharedListing] = ()) -> None:
        self._listings: List[SharedListing] = []
        for listing in listings:
            self.create(listing)

    def find_by_normalized_address(self, key: str) -> Optional[SharedListing]:
        for listing in self._listings:
            if listing.is_acquired:
                continue
            if dedupe_key(listing.address) == key:
                return listing
        return None

    def create(self, shared: SharedListing) -> SharedListing:
        now = _now()
        stored = dataclasses.replace(
            shared,
            id=shared.id if shared.id is not None else self._next_id(),
            agencies=[AgencyEntry.coerce(raw) for raw in shared.agencies],
            created_at=shared.created_at or now,
            updated_at=now,
        )
        self._listings.append(stored)
        return stored

    def _next_id(self) -> int:
        return max((listing.id for listing in self._listings if listing.id is not None), default=0) + 1

    def append_agencies(self, shared_id: int, entries: List[AgencyEntry]) -> SharedListing:
        for listing in self._listings:
            if listing.id == shared_id:
                existing = [AgencyEntry.coerce(raw) for raw in listing.agencies]
                listing.agencies = existing + merge_agencies(existing, entries)
                listing.updated_at = _now()
                return listing
        raise StoreError(f"Unknown shared listing #{shared_id}")

    def count(self) -> int:
        return len(self._listings)

    def all(self) -> List[SharedListing]:
        return list(self._listings)


LISTING_SCHEMA = pa.schema(
    [
        ("id", pa.int64()),
        ("address", pa.string()),
        ("city", pa.string()),
        ("price", pa.int64()),
        ("size", pa.float64()),
        ("floor", pa.string()),
        ("bedrooms", pa.int32()),
        ("bathrooms", pa.int32()),
        ("description", pa.string()),
        ("latitude", pa.float64()),
        ("longitude", pa.float64()),
        ("portal", pa.string()),
        ("external_link", pa.string()),
        ("type", pa.string()),
        ("owner_name", pa.string()),
        ("owner_phone", pa.string()),
        ("status", pa.string()),
        ("photo_urls", pa.list_(pa.string())),
        ("is_shared", pa.bool_()),
        ("is_multiagency", pa.bool_()),
    ]
)

SHARED_SCHEMA = pa.schema(
    [
        ("id", pa.int64()),
        ("address", pa.string()),
        ("dedupe_key", pa.string()),
        ("city", pa.string()),
        ("size", pa.float64()),
        ("type", pa.string()),
        ("price", pa.int64()),
        ("floor", pa.string()),
        ("owner_name", pa.string()),
        ("owner_phone", pa.string()),
        ("agencies_json", pa.string()),
        ("rating", pa.int32()),
        ("stage", pa.string()),
        ("stage_result", pa.string()),
        ("is_acquired", pa.bool_()),
        ("match_buyers", pa.bool_()),
        ("is_multiagency", pa.bool_()),
        ("created_at", pa.string()),
        ("updated_at", pa.string()),
    ]
)

_INT_FIELDS = {"id", "price", "bedrooms", "bathrooms", "rating"}


def _optional_value(value: Any) -> Any:
    """Coerce pandas NA and empty strings to None."""
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if not isinstance(value, (list, tuple)) and not hasattr(value, "tolist") and pd.isna(value):
        return None
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    return value


def _ensure_token_list(raw_value: Any) -> tuple:
    """Normalize a list-like parquet cell into a tuple of non-empty strings."""
    if raw_value is None:
        return ()
    if isinstance(raw_value, float) and math.isnan(raw_value):
        return ()
    if hasattr(raw_value, "tolist") and not isinstance(raw_value, str):
        raw_value = raw_value.tolist()
    if isinstance(raw_value, str):
        return (raw_value.strip(),) if raw_value.strip() else ()
    return tuple(str(tok).strip() for tok in raw_value if tok is not None and str(tok).strip())


def _clean_row(row: Dict[str, Any]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, value in row.items():
        value = _optional_value(value)
        if value is not None and key in _INT_FIELDS:
            value = int(value)
        cleaned[key] = value
    return cleaned


def _write_table(df: pd.DataFrame, schema: pa.Schema, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    for column in schema.names:
        if column not in df.columns:
            df[column] = None
    try:
        table = pa.Table.from_pandas(df[schema.names], schema=schema, preserve_index=False)
        pq.write_table(table, path, compression="snappy")
    except (OSError, pa.ArrowException) as exc:
        raise StoreError(f"Failed to write parquet file {path}: {exc}") from exc


def _read_table(path: Path, schema: pa.Schema) -> pd.DataFrame:
    if not path.exists():
        return pd.DataFrame({name: pd.Series(dtype="object") for name in schema.names})
    try:
        return pd.read_parquet(path)
    except (OSError, pa.ArrowException) as exc:
        raise StoreError(f"Failed to read parquet file {path}: {exc}") from exc


def _records_to_frame(records: Iterable[PropertyRecord]) -> pd.DataFrame:
    rows = []
    for record in records:
        row = dataclasses.asdict(record)
        row["photo_urls"] = list(record.photo_urls)
        rows.append(row)
    return pd.DataFrame(rows, columns=LISTING_SCHEMA.names)


class ParquetListingStore:
    """Listing pool snapshot stored as a single Parquet file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    @classmethod
    def write_records(cls, path: Path, records: Iterable[PropertyRecord]) -> "ParquetListingStore":
        _write_table(_records_to_frame(records), LISTING_SCHEMA, Path(path))
        return cls(path)

    def _load(self) -> pd.DataFrame:
        if not self.path.exists():
            raise StoreError(f"Listing snapshot {self.path} not found")
        return _read_table(self.path, LISTING_SCHEMA)

    def fetch_available(self) -> List[PropertyRecord]:
        df = self._load()
        if df.empty:
            return []
        untagged = int(df["status"].isna().sum()) if "status" in df.columns else len(df)
        if untagged:
            logger.warning(
                "%s listings in %s have no status; they are not treated as available.",
                untagged,
                self.path,
            )
        if "status" not in df.columns:
            return []
        available = df[df["status"] == STATUS_AVAILABLE]
        records: List[PropertyRecord] = []
        for row in available.to_dict("records"):
            cleaned = _clean_row({key: value for key, value in row.items() if key != "photo_urls"})
            cleaned["photo_urls"] = _ensure_token_list(row.get("photo_urls"))
            cleaned["is_shared"] = bool(cleaned.get("is_shared") or False)
            cleaned["is_multiagency"] = bool(cleaned.get("is_multiagency") or False)
            records.append(PropertyRecord(**{k: v for k, v in cleaned.items() if k in LISTING_SCHEMA.names}))
        return sorted(records, key=lambda rec: rec.id)

    def mark_shared(self, record_id: int, is_multiagency: bool = True) -> None:
        df = self._load()
        mask = df["id"] == record_id
        if not mask.any():
            raise StoreError(f"Unknown property record #{record_id}")
        df.loc[mask, "is_shared"] = True
        df.loc[mask, "is_multiagency"] = is_multiagency
        _write_table(df, LISTING_SCHEMA, self.path)


def _shared_to_row(listing: SharedListing) -> Dict[str, Any]:
    return {
        "id": listing.id,
        "address": listing.address,
        "dedupe_key": listing.dedupe_key,
        "city": listing.city,
        "size": listing.size,
        "type": listing.type,
        "price": listing.price,
        "floor": listing.floor,
        "owner_name": listing.owner_name,
        "owner_phone": listing.owner_phone,
        "agencies_json": json.dumps([entry.to_dict() for entry in listing.agencies], ensure_ascii=False),
        "rating": listing.rating,
        "stage": listing.stage,
        "stage_result": listing.stage_result,
        "is_acquired": listing.is_acquired,
        "match_buyers": listing.match_buyers,
        "is_multiagency": listing.is_multiagency,
        "created_at": listing.created_at.isoformat() if listing.created_at else None,
        "updated_at": listing.updated_at.isoformat() if listing.updated_at else None,
    }


def _row_to_shared(row: Dict[str, Any]) -> SharedListing:
    cleaned = _clean_row(row)
    raw_agencies = cleaned.get("agencies_json")
    try:
        agencies = json.loads(raw_agencies) if raw_agencies else []
    except json.JSONDecodeError:
        logger.warning("Shared listing #%s has unreadable agencies; treating as empty.", cleaned.get("id"))
        agencies = []
    return SharedListing(
        id=cleaned.get("id"),
        address=cleaned.get("address") or "",
        dedupe_key=cleaned.get("dedupe_key") or dedupe_key(cleaned.get("address")),
        city=cleaned.get("city"),
        size=cleaned.get("size"),
        type=cleaned.get("type"),
        price=cleaned.get("price"),
        floor=cleaned.get("floor"),
        owner_name=cleaned.get("owner_name"),
        owner_phone=cleaned.get("owner_phone"),
        agencies=[AgencyEntry.coerce(raw) for raw in agencies],
        rating=cleaned.get("rating") or 4,
        stage=cleaned.get("stage") or "result",
        stage_result=cleaned.get("stage_result") or "multiagency",
        is_acquired=bool(cleaned.get("is_acquired") or False),
        match_buyers=bool(cleaned.get("match_buyers") or False),
        is_multiagency=bool(cleaned.get("is_multiagency") or False),
        created_at=_parse_timestamp(cleaned.get("created_at")),
        updated_at=_parse_timestamp(cleaned.get("updated_at")),
    )


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class ParquetSharedListingStore:
    """Shared listings stored as a Parquet file; agencies kept as a JSON column."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _load(self) -> pd.DataFrame:
        return _read_table(self.path, SHARED_SCHEMA)

    def all(self) -> List[SharedListing]:
        return [_row_to_shared(row) for row in self._load().to_dict("records")]

    def count(self) -> int:
        return len(self._load())

    def find_by_normalized_address(self, key: str) -> Optional[SharedListing]:
        for listing in self.all():
            if listing.is_acquired:
                continue
            # Compare on the current normalisation, not the stored key, so rows
            # written by older runs still match.
            if dedupe_key(listing.address) == key:
                return listing
        return None

    def create(self, shared: SharedListing) -> SharedListing:
        df = self._load()
        next_id = int(df["id"].max()) + 1 if not df.empty else 1
        now = _now()
        stored = dataclasses.replace(
            shared,
            id=next_id,
            agencies=[AgencyEntry.coerce(raw) for raw in shared.agencies],
            created_at=shared.created_at or now,
            updated_at=now,
        )
        row = pd.DataFrame([_shared_to_row(stored)], columns=SHARED_SCHEMA.names)
        combined = row if df.empty else pd.concat([df, row], ignore_index=True)
        _write_table(combined, SHARED_SCHEMA, self.path)
        return stored

    def append_agencies(self, shared_id: int, entries: List[AgencyEntry]) -> SharedListing:
        df = self._load()
        mask = df["id"] == shared_id
        if not mask.any():
            raise StoreError(f"Unknown shared listing #{shared_id}")
        current = _row_to_shared(df[mask].iloc[0].to_dict())
        current.agencies = current.agencies + merge_agencies(current.agencies, entries)
        current.updated_at = _now()
        updated = _shared_to_row(current)
        idx = df.index[mask][0]
        df.at[idx, "agencies_json"] = updated["agencies_json"]
        df.at[idx, "updated_at"] = updated["updated_at"]
        _write_table(df, SHARED_SCHEMA, self.path)
        return current
